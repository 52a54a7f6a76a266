"""Pydantic schemas for the Purchase API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models to maintain clean boundaries between the API and
database layers. The acting user is never part of a body; it comes from the
``X-Actor-ID`` header.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - resolved at runtime by pydantic
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field

from vehicle_escrow.domain.enums import RespondAction  # noqa: TC001

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreatePurchaseRequest(BaseModel):
    """Request body for opening a purchase request on a listing."""

    listing_id: str = Field(..., min_length=1, max_length=64)
    vehicle_id: str = Field(..., min_length=1, max_length=64)
    seller_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Owner of the listing",
    )
    offered_price: Decimal = Field(
        ...,
        decimal_places=2,
        description="Buyer's offer; must be positive",
        examples=["18500.00"],
    )
    message: str | None = Field(
        default=None,
        max_length=2000,
        description="Optional opening message to the seller",
    )


class RespondRequest(BaseModel):
    """Request body for accepting, rejecting or countering."""

    action: RespondAction
    counter_price: Decimal | None = Field(
        default=None,
        decimal_places=2,
        description="Required when action is 'counter'",
    )
    message: str | None = Field(default=None, max_length=2000)


class FundEscrowRequest(BaseModel):
    """Request body for funding the escrow of an accepted request."""

    amount: Decimal = Field(
        ...,
        decimal_places=2,
        description="Must equal the agreed price",
    )
    funding_reference: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Idempotency token; repeating it returns the original escrow",
    )


class CancelRequest(BaseModel):
    """Request body for cancelling a purchase request."""

    reason: str | None = Field(default=None, max_length=2000)


class PostMessageRequest(BaseModel):
    """Request body for appending to the negotiation log."""

    text: str = Field(..., min_length=1, max_length=2000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class EscrowResponse(BaseModel):
    """Response schema for an escrow."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    purchase_request_id: uuid.UUID
    amount: Decimal
    funding_reference: str
    status: str
    funded_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None
    created_at: datetime


class MessageResponse(BaseModel):
    """Response schema for one negotiation message."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    sender_id: str
    text: str
    created_at: datetime


class PurchaseRequestResponse(BaseModel):
    """Response schema for a purchase request."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    listing_id: str
    vehicle_id: str
    buyer_id: str
    seller_id: str
    offered_price: Decimal
    counter_price: Decimal | None
    agreed_price: Decimal
    status: str
    verification_result: dict | None
    verification_attempts: int
    escrow: EscrowResponse | None = None
    messages: list[MessageResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class VerificationResultResponse(BaseModel):
    """Outcome of one verification run."""

    model_config = ConfigDict(from_attributes=True)

    passed: bool
    telemetry_check: bool
    trust_score_check: bool
    ledger_check: bool
    storage_check: bool
    failure_reasons: list[str]
    verified_at: datetime


class SaleRecordResponse(BaseModel):
    """Response schema for a completed sale."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    purchase_request_id: uuid.UUID
    listing_id: str
    vehicle_id: str
    buyer_id: str
    seller_id: str
    final_price: Decimal
    ledger_tx_reference: str | None
    simulated: bool
    ownership_transferred_at: datetime


class OwnershipHistoryEntryResponse(BaseModel):
    """One owner's tenure of a vehicle."""

    model_config = ConfigDict(from_attributes=True)

    owner_user_id: str
    from_date: datetime
    to_date: datetime | None
    tx_hash: str | None
    note: str | None


class PurchaseEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    purchase_request_id: uuid.UUID
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class PurchaseStatusResponse(BaseModel):
    """Lightweight status check response."""

    purchase_request_id: uuid.UUID
    status: str
    verification_attempts: int
    max_verification_attempts: int
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
