"""Database infrastructure — engine, ORM models, and repositories."""

from vehicle_escrow.infrastructure.database.engine import (
    close_db,
    get_async_session,
    init_db,
)
from vehicle_escrow.infrastructure.database.orm_models import (
    Base,
    Escrow,
    OwnershipHistoryEntry,
    PurchaseEvent,
    PurchaseMessage,
    PurchaseRequest,
    SaleRecord,
)
from vehicle_escrow.infrastructure.database.repositories import (
    EscrowRepository,
    EventRepository,
    OwnershipHistoryRepository,
    PurchaseRequestRepository,
    SaleRecordRepository,
)

__all__ = [
    "Base",
    "Escrow",
    "OwnershipHistoryEntry",
    "PurchaseEvent",
    "PurchaseMessage",
    "PurchaseRequest",
    "SaleRecord",
    "EscrowRepository",
    "EventRepository",
    "OwnershipHistoryRepository",
    "PurchaseRequestRepository",
    "SaleRecordRepository",
    "get_async_session",
    "init_db",
    "close_db",
]
