"""API request and response models"""

from datetime import datetime

from pydantic import BaseModel, Field

# ========== Requests ==========


class WorkItemCreateRequest(BaseModel):
    """Request to publish a work item"""

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=10000)
    budget: str = Field(..., description="Budget (positive number as string)")
    deadline: datetime
    category: str = Field(default="general", max_length=64)
    priority: str = Field(default="normal", max_length=32)
    metadata: dict = Field(default_factory=dict)


class BidCreateRequest(BaseModel):
    """Request to bid on a work item"""

    amount: str = Field(..., description="Proposed amount (positive number as string)")
    message: str = Field(default="", max_length=5000)


class EvidenceItem(BaseModel):
    """Reference to an already-uploaded file"""

    url: str = Field(..., min_length=1)
    name: str = ""
    type: str = "file"


class DisputeOpenRequest(BaseModel):
    """Request to open a dispute"""

    work_item_id: str
    reason: str = Field(..., max_length=5000)
    evidence: list[EvidenceItem] = Field(default_factory=list)


class FollowUpRequest(BaseModel):
    """Request to add a dispute follow-up"""

    message: str = Field(..., max_length=5000)
    evidence: list[EvidenceItem] = Field(default_factory=list)


class DisputeResolveRequest(BaseModel):
    """Arbiter decision"""

    outcome: str = Field(..., description="release or refund")
    note: str | None = Field(None, max_length=5000)


class SignedCallbackRequest(BaseModel):
    """Base64-encoded signed gateway callback"""

    data: str


# ========== Responses ==========


class WorkItemResponse(BaseModel):
    work_item_id: str
    poster_id: str
    doer_id: str | None = None
    status: str
    status_before_dispute: str | None = None
    title: str
    description: str
    category: str
    priority: str
    budget: str
    deadline: str
    accepted_bid_id: str | None = None
    created_at: str
    updated_at: str
    assigned_at: str | None = None
    started_at: str | None = None
    submitted_at: str | None = None
    completed_at: str | None = None
    cancelled_at: str | None = None
    version: int
    metadata: dict = Field(default_factory=dict)


class BidResponse(BaseModel):
    bid_id: str
    work_item_id: str
    doer_id: str
    amount: str
    message: str
    status: str
    created_at: str
    updated_at: str
    version: int


class PaymentResponse(BaseModel):
    payment_id: str
    work_item_id: str
    bid_id: str
    payer_id: str
    payee_id: str
    amount: str
    currency: str
    status: str
    gateway_reference: str | None = None
    captured_at: str | None = None
    released_at: str | None = None
    refunded_at: str | None = None
    settled_at: str | None = None
    failure_reason: str | None = None
    settlement_pending: bool = False
    created_at: str
    updated_at: str


class AcceptBidResponse(BaseModel):
    work_item: WorkItemResponse
    bid: BidResponse
    payment: PaymentResponse
    rejected_bid_ids: list[str]


class ApproveResponse(BaseModel):
    work_item: WorkItemResponse
    payment: PaymentResponse


class CaptureSessionResponse(BaseModel):
    gateway_reference: str
    capture_token: str
    redirect_url: str
    form_fields: dict[str, str]


class FollowUpResponse(BaseModel):
    followup_id: str
    dispute_id: str
    sender_id: str
    message: str
    sequence: int
    evidence: list[dict]
    created_at: str


class DisputeResponse(BaseModel):
    dispute_id: str
    work_item_id: str
    payment_id: str
    initiator_id: str
    reason: str
    evidence: list[dict]
    status: str
    outcome: str | None = None
    reviewer_id: str | None = None
    resolved_by: str | None = None
    resolution_note: str | None = None
    followups: list[FollowUpResponse]
    created_at: str
    updated_at: str
    review_started_at: str | None = None
    resolved_at: str | None = None
    closed_at: str | None = None


class CallbackResponse(BaseModel):
    recorded: bool
    payment: PaymentResponse | None = None
