"""Purchase request REST API routes.

The acting user of every write comes from the ``X-Actor-ID`` header; the
service decides whether that user is the buyer or the seller the action
requires.

Routes:
    POST   /api/v1/purchases                        — Open a purchase request
    GET    /api/v1/purchases                        — List the actor's requests
    GET    /api/v1/purchases/{id}                   — Get request details
    GET    /api/v1/purchases/{id}/status            — Get lightweight status check
    GET    /api/v1/purchases/{id}/events            — Get audit trail
    POST   /api/v1/purchases/{id}/respond           — Accept, reject or counter
    POST   /api/v1/purchases/{id}/fund              — Fund the escrow
    POST   /api/v1/purchases/{id}/verify            — Run pre-transfer verification
    POST   /api/v1/purchases/{id}/init-transfer     — Seller starts the transfer
    POST   /api/v1/purchases/{id}/confirm-transfer  — Seller completes the sale
    POST   /api/v1/purchases/{id}/cancel            — Buyer withdraws
    POST   /api/v1/purchases/{id}/messages          — Append to the negotiation log
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime

from fastapi import APIRouter, Depends, Query

from vehicle_escrow.api.deps import get_actor_id, get_purchase_service
from vehicle_escrow.domain.enums import ParticipantRole, PurchaseStatus  # noqa: TC001
from vehicle_escrow.logging_config import get_logger
from vehicle_escrow.schemas.purchase import (
    CancelRequest,
    CreatePurchaseRequest,
    EscrowResponse,
    FundEscrowRequest,
    MessageResponse,
    PostMessageRequest,
    PurchaseEventResponse,
    PurchaseRequestResponse,
    PurchaseStatusResponse,
    RespondRequest,
    SaleRecordResponse,
    VerificationResultResponse,
)
from vehicle_escrow.services.purchase_service import PurchaseService  # noqa: TC001

router = APIRouter(prefix="/api/v1/purchases", tags=["Purchases"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=PurchaseRequestResponse,
    status_code=201,
    summary="Open a purchase request",
)
async def create_purchase_request(
    request: CreatePurchaseRequest,
    actor_id: str = Depends(get_actor_id),
    svc: PurchaseService = Depends(get_purchase_service),
) -> PurchaseRequestResponse:
    """The acting user becomes the buyer. Starts in pending_seller."""
    purchase = await svc.create_request(
        listing_id=request.listing_id,
        vehicle_id=request.vehicle_id,
        buyer_id=actor_id,
        seller_id=request.seller_id,
        offered_price=request.offered_price,
        message=request.message,
    )
    return PurchaseRequestResponse.model_validate(purchase)


# ---------------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------------


@router.post(
    "/{purchase_request_id}/respond",
    response_model=PurchaseRequestResponse,
    summary="Accept, reject or counter",
)
async def respond(
    purchase_request_id: uuid.UUID,
    request: RespondRequest,
    actor_id: str = Depends(get_actor_id),
    svc: PurchaseService = Depends(get_purchase_service),
) -> PurchaseRequestResponse:
    """Seller answers an offer; buyer answers a counter-offer."""
    purchase = await svc.respond(
        purchase_request_id,
        actor_id=actor_id,
        action=request.action,
        counter_price=request.counter_price,
        message=request.message,
    )
    return PurchaseRequestResponse.model_validate(purchase)


# ---------------------------------------------------------------------------
# Fund
# ---------------------------------------------------------------------------


@router.post(
    "/{purchase_request_id}/fund",
    response_model=EscrowResponse,
    summary="Fund the escrow",
)
async def fund_escrow(
    purchase_request_id: uuid.UUID,
    request: FundEscrowRequest,
    actor_id: str = Depends(get_actor_id),
    svc: PurchaseService = Depends(get_purchase_service),
) -> EscrowResponse:
    """Transitions accepted -> escrow_funded. Repeating a funding reference returns the same escrow."""
    escrow = await svc.fund_escrow(
        purchase_request_id,
        actor_id=actor_id,
        amount=request.amount,
        funding_reference=request.funding_reference,
    )
    return EscrowResponse.model_validate(escrow)


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


@router.post(
    "/{purchase_request_id}/verify",
    response_model=VerificationResultResponse,
    summary="Run pre-transfer verification",
)
async def run_verification(
    purchase_request_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    svc: PurchaseService = Depends(get_purchase_service),
) -> VerificationResultResponse:
    """Transitions to verification_passed or verification_failed."""
    result = await svc.run_verification(purchase_request_id, actor_id=actor_id)
    return VerificationResultResponse.model_validate(result)


# ---------------------------------------------------------------------------
# Transfer
# ---------------------------------------------------------------------------


@router.post(
    "/{purchase_request_id}/init-transfer",
    response_model=PurchaseRequestResponse,
    summary="Start the ownership transfer",
)
async def init_transfer(
    purchase_request_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    svc: PurchaseService = Depends(get_purchase_service),
) -> PurchaseRequestResponse:
    purchase = await svc.init_transfer(purchase_request_id, actor_id=actor_id)
    return PurchaseRequestResponse.model_validate(purchase)


@router.post(
    "/{purchase_request_id}/confirm-transfer",
    response_model=SaleRecordResponse,
    summary="Complete the sale",
)
async def confirm_transfer(
    purchase_request_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    svc: PurchaseService = Depends(get_purchase_service),
) -> SaleRecordResponse:
    """Transitions transfer_pending -> sold. Safe to retry."""
    sale = await svc.confirm_transfer(purchase_request_id, actor_id=actor_id)
    return SaleRecordResponse.model_validate(sale)


# ---------------------------------------------------------------------------
# Cancel & messages
# ---------------------------------------------------------------------------


@router.post(
    "/{purchase_request_id}/cancel",
    response_model=PurchaseRequestResponse,
    summary="Cancel a purchase request",
)
async def cancel(
    purchase_request_id: uuid.UUID,
    request: CancelRequest,
    actor_id: str = Depends(get_actor_id),
    svc: PurchaseService = Depends(get_purchase_service),
) -> PurchaseRequestResponse:
    """Buyer withdraws; a funded escrow is refunded."""
    purchase = await svc.cancel(purchase_request_id, actor_id=actor_id, reason=request.reason)
    return PurchaseRequestResponse.model_validate(purchase)


@router.post(
    "/{purchase_request_id}/messages",
    response_model=MessageResponse,
    status_code=201,
    summary="Post a negotiation message",
)
async def post_message(
    purchase_request_id: uuid.UUID,
    request: PostMessageRequest,
    actor_id: str = Depends(get_actor_id),
    svc: PurchaseService = Depends(get_purchase_service),
) -> MessageResponse:
    message = await svc.post_message(purchase_request_id, actor_id=actor_id, text=request.text)
    return MessageResponse.model_validate(message)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=list[PurchaseRequestResponse],
    summary="List the actor's purchase requests",
)
async def list_purchase_requests(
    role: ParticipantRole | None = Query(default=None, description="Only as buyer or seller"),
    status: PurchaseStatus | None = Query(default=None),
    actor_id: str = Depends(get_actor_id),
    svc: PurchaseService = Depends(get_purchase_service),
) -> list[PurchaseRequestResponse]:
    """Newest first, at most 50."""
    purchases = await svc.list_requests(actor_id, role=role, status=status)
    return [PurchaseRequestResponse.model_validate(p) for p in purchases]


@router.get(
    "/{purchase_request_id}",
    response_model=PurchaseRequestResponse,
    summary="Get purchase request details",
)
async def get_purchase_request(
    purchase_request_id: uuid.UUID,
    svc: PurchaseService = Depends(get_purchase_service),
) -> PurchaseRequestResponse:
    purchase = await svc.get_request(purchase_request_id)
    return PurchaseRequestResponse.model_validate(purchase)


@router.get(
    "/{purchase_request_id}/status",
    response_model=PurchaseStatusResponse,
    summary="Get lightweight status check",
)
async def get_status(
    purchase_request_id: uuid.UUID,
    svc: PurchaseService = Depends(get_purchase_service),
) -> PurchaseStatusResponse:
    """Return the current status and allowed next events."""
    status_data = await svc.get_status(purchase_request_id)
    return PurchaseStatusResponse(**status_data)


@router.get(
    "/{purchase_request_id}/events",
    response_model=list[PurchaseEventResponse],
    summary="Get audit trail",
)
async def get_events(
    purchase_request_id: uuid.UUID,
    svc: PurchaseService = Depends(get_purchase_service),
) -> list[PurchaseEventResponse]:
    """Return the full audit trail for a purchase request, oldest first."""
    events = await svc.get_events(purchase_request_id)
    return [PurchaseEventResponse.model_validate(e) for e in events]
