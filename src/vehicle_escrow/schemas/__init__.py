"""Pydantic API schemas."""

from vehicle_escrow.schemas.purchase import (
    CancelRequest,
    CreatePurchaseRequest,
    EscrowResponse,
    FundEscrowRequest,
    HealthResponse,
    MessageResponse,
    OwnershipHistoryEntryResponse,
    PostMessageRequest,
    PurchaseEventResponse,
    PurchaseRequestResponse,
    PurchaseStatusResponse,
    RespondRequest,
    SaleRecordResponse,
    VerificationResultResponse,
)

__all__ = [
    "CancelRequest",
    "CreatePurchaseRequest",
    "EscrowResponse",
    "FundEscrowRequest",
    "HealthResponse",
    "MessageResponse",
    "OwnershipHistoryEntryResponse",
    "PostMessageRequest",
    "PurchaseEventResponse",
    "PurchaseRequestResponse",
    "PurchaseStatusResponse",
    "RespondRequest",
    "SaleRecordResponse",
    "VerificationResultResponse",
]
