"""Dispute API Routes"""

import structlog
from fastapi import APIRouter, Query

from ..core.entities import Dispute, DisputeFollowUp
from .dependencies import ActorDep, MarketplaceDep, unwrap
from .schemas import (
    DisputeOpenRequest,
    DisputeResolveRequest,
    DisputeResponse,
    FollowUpRequest,
    FollowUpResponse,
)

router = APIRouter(prefix="/api/v1/disputes", tags=["disputes"])
logger = structlog.get_logger()


def dispute_to_response(dispute: Dispute) -> DisputeResponse:
    return DisputeResponse.model_validate(dispute.to_dict())


def followup_to_response(followup: DisputeFollowUp) -> FollowUpResponse:
    return FollowUpResponse.model_validate(followup.to_dict())


@router.post("", response_model=DisputeResponse, status_code=201)
async def open_dispute(request: DisputeOpenRequest, actor: ActorDep, marketplace: MarketplaceDep):
    """
    Open a dispute on a work item

    Either party may dispute work in progress or under review. Escrowed
    funds are frozen until an arbiter resolves it.
    """
    dispute = unwrap(
        await marketplace.open_dispute(
            actor,
            request.work_item_id,
            request.reason,
            [e.model_dump() for e in request.evidence],
        )
    )
    return dispute_to_response(dispute)


@router.get("", response_model=list[DisputeResponse])
async def list_disputes(
    actor: ActorDep,
    marketplace: MarketplaceDep,
    work_item_id: str | None = Query(None),
):
    """List disputes visible to the caller"""
    disputes = unwrap(await marketplace.list_disputes(actor, work_item_id=work_item_id))
    return [dispute_to_response(d) for d in disputes]


@router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(dispute_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """Get a dispute with its follow-up thread"""
    return dispute_to_response(unwrap(await marketplace.get_dispute(actor, dispute_id)))


@router.post("/{dispute_id}/followups", response_model=FollowUpResponse, status_code=201)
async def add_followup(
    dispute_id: str, request: FollowUpRequest, actor: ActorDep, marketplace: MarketplaceDep
):
    """Append a message to the dispute thread"""
    followup = unwrap(
        await marketplace.add_followup(
            actor, dispute_id, request.message, [e.model_dump() for e in request.evidence]
        )
    )
    return followup_to_response(followup)


@router.post("/{dispute_id}/review", response_model=DisputeResponse)
async def begin_review(dispute_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """Arbiter takes the dispute under review"""
    return dispute_to_response(unwrap(await marketplace.begin_review(actor, dispute_id)))


@router.post("/{dispute_id}/resolve", response_model=DisputeResponse)
async def resolve_dispute(
    dispute_id: str, request: DisputeResolveRequest, actor: ActorDep, marketplace: MarketplaceDep
):
    """Arbiter releases the funds to the doer or refunds the poster"""
    dispute = unwrap(
        await marketplace.resolve_dispute(actor, dispute_id, request.outcome, request.note)
    )
    logger.info("dispute_resolved_via_api", dispute_id=dispute_id, outcome=request.outcome)
    return dispute_to_response(dispute)
