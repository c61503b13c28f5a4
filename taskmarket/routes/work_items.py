"""Work Item API Routes

Route → Marketplace → AssignmentService / BidLedger → LedgerStore
"""

import structlog
from fastapi import APIRouter, HTTPException, Query

from ..core.entities import Bid, WorkItem, WorkItemStatus
from ..services import AcceptedBid
from .dependencies import ActorDep, MarketplaceDep, unwrap
from .schemas import (
    AcceptBidResponse,
    ApproveResponse,
    BidCreateRequest,
    BidResponse,
    PaymentResponse,
    WorkItemCreateRequest,
    WorkItemResponse,
)

router = APIRouter(prefix="/api/v1/work-items", tags=["work-items"])
bids_router = APIRouter(prefix="/api/v1/bids", tags=["bids"])
logger = structlog.get_logger()


def work_item_to_response(item: WorkItem) -> WorkItemResponse:
    return WorkItemResponse.model_validate(item.to_dict())


def bid_to_response(bid: Bid) -> BidResponse:
    return BidResponse.model_validate(bid.to_dict())


def _parse_status(status: str | None) -> WorkItemStatus | None:
    if status is None:
        return None
    try:
        return WorkItemStatus(status)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"code": "VALIDATION_ERROR", "message": f"Unknown status: {status}", "details": {}},
        )


# ========== Work Items ==========


@router.post("", response_model=WorkItemResponse, status_code=201)
async def create_work_item(
    request: WorkItemCreateRequest, actor: ActorDep, marketplace: MarketplaceDep
):
    """Publish a new work item (posters only)"""
    item = unwrap(
        await marketplace.create_work_item(
            actor,
            title=request.title,
            description=request.description,
            budget=request.budget,
            deadline=request.deadline,
            category=request.category,
            priority=request.priority,
            metadata=request.metadata,
        )
    )
    return work_item_to_response(item)


@router.get("", response_model=list[WorkItemResponse])
async def list_work_items(
    marketplace: MarketplaceDep,
    status: str | None = Query(None, description="Filter by status"),
    poster_id: str | None = Query(None),
    doer_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """List work items"""
    items = unwrap(
        await marketplace.list_work_items(
            status=_parse_status(status),
            poster_id=poster_id,
            doer_id=doer_id,
            limit=limit,
            offset=offset,
        )
    )
    return [work_item_to_response(item) for item in items]


@router.get("/{work_item_id}", response_model=WorkItemResponse)
async def get_work_item(work_item_id: str, marketplace: MarketplaceDep):
    """Get a work item"""
    return work_item_to_response(unwrap(await marketplace.get_work_item(work_item_id)))


@router.post("/{work_item_id}/start", response_model=WorkItemResponse)
async def start_work(work_item_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """Assigned doer starts work"""
    return work_item_to_response(unwrap(await marketplace.start_work(actor, work_item_id)))


@router.post("/{work_item_id}/submit", response_model=WorkItemResponse)
async def submit_work(work_item_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """Assigned doer submits work for review"""
    return work_item_to_response(unwrap(await marketplace.submit_work(actor, work_item_id)))


@router.post("/{work_item_id}/request-revision", response_model=WorkItemResponse)
async def request_revision(work_item_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """Poster sends submitted work back to the doer"""
    return work_item_to_response(
        unwrap(await marketplace.request_revision(actor, work_item_id))
    )


@router.post("/{work_item_id}/approve", response_model=ApproveResponse)
async def approve_and_release(work_item_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """Poster approves the work and releases escrowed funds to the doer"""
    item, payment = unwrap(await marketplace.approve_and_release(actor, work_item_id))
    return ApproveResponse(
        work_item=work_item_to_response(item),
        payment=PaymentResponse.model_validate(payment.to_dict()),
    )


@router.post("/{work_item_id}/cancel", response_model=WorkItemResponse)
async def cancel_work_item(work_item_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """Poster cancels an open or assigned work item"""
    return work_item_to_response(unwrap(await marketplace.cancel(actor, work_item_id)))


# ========== Bids ==========


@router.post("/{work_item_id}/bids", response_model=BidResponse, status_code=201)
async def place_bid(
    work_item_id: str, request: BidCreateRequest, actor: ActorDep, marketplace: MarketplaceDep
):
    """Doer bids on an open work item"""
    bid = unwrap(
        await marketplace.place_bid(actor, work_item_id, request.amount, request.message)
    )
    return bid_to_response(bid)


@router.get("/{work_item_id}/bids", response_model=list[BidResponse])
async def list_bids(work_item_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """List bids visible to the caller"""
    bids = unwrap(await marketplace.list_bids(actor, work_item_id))
    return [bid_to_response(bid) for bid in bids]


@bids_router.post("/{bid_id}/accept", response_model=AcceptBidResponse)
async def accept_bid(bid_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """
    Poster accepts a bid

    Exactly one bid per work item can win; concurrent accepts for the same
    work item receive 409 CONFLICT.
    """
    accepted: AcceptedBid = unwrap(await marketplace.accept_bid(actor, bid_id))
    logger.info("bid_accepted_via_api", bid_id=bid_id, work_item_id=accepted.work_item.work_item_id)
    return AcceptBidResponse(
        work_item=work_item_to_response(accepted.work_item),
        bid=bid_to_response(accepted.bid),
        payment=PaymentResponse.model_validate(accepted.payment.to_dict()),
        rejected_bid_ids=[b.bid_id for b in accepted.rejected_bids],
    )


@bids_router.post("/{bid_id}/withdraw", response_model=BidResponse)
async def withdraw_bid(bid_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """Doer withdraws a pending bid"""
    return bid_to_response(unwrap(await marketplace.withdraw_bid(actor, bid_id)))
