"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select, update

from vehicle_escrow.domain.enums import TERMINAL_STATUSES, ParticipantRole, PurchaseStatus
from vehicle_escrow.infrastructure.database.orm_models import (
    Escrow,
    OwnershipHistoryEntry,
    PurchaseEvent,
    PurchaseMessage,
    PurchaseRequest,
    SaleRecord,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from vehicle_escrow.domain.enums import EscrowStatus, EventType


class PurchaseRequestRepository:
    """Data access for purchase requests and their negotiation log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, purchase: PurchaseRequest) -> PurchaseRequest:
        """Insert a new purchase request."""
        self._session.add(purchase)
        await self._session.flush()
        await self._session.refresh(purchase)
        return purchase

    async def get_by_id(self, purchase_request_id: uuid.UUID) -> PurchaseRequest | None:
        """Fetch a purchase request by its UUID."""
        result = await self._session.execute(
            select(PurchaseRequest).where(PurchaseRequest.id == purchase_request_id)
        )
        return result.scalar_one_or_none()

    async def find_active(self, vehicle_id: str, buyer_id: str) -> PurchaseRequest | None:
        """Return the buyer's open (non-terminal) request for a vehicle, if any."""
        result = await self._session.execute(
            select(PurchaseRequest)
            .where(
                PurchaseRequest.vehicle_id == vehicle_id,
                PurchaseRequest.buyer_id == buyer_id,
                PurchaseRequest.status.not_in([s.value for s in TERMINAL_STATUSES]),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        role: ParticipantRole | None = None,
        status: PurchaseStatus | None = None,
        limit: int = 50,
    ) -> list[PurchaseRequest]:
        """Fetch a user's requests as buyer, seller or either, newest first."""
        stmt = select(PurchaseRequest)
        if role is ParticipantRole.BUYER:
            stmt = stmt.where(PurchaseRequest.buyer_id == user_id)
        elif role is ParticipantRole.SELLER:
            stmt = stmt.where(PurchaseRequest.seller_id == user_id)
        else:
            stmt = stmt.where(
                or_(PurchaseRequest.buyer_id == user_id, PurchaseRequest.seller_id == user_id)
            )
        if status is not None:
            stmt = stmt.where(PurchaseRequest.status == status.value)
        stmt = stmt.order_by(PurchaseRequest.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def compare_and_set(
        self,
        purchase: PurchaseRequest,
        expected: PurchaseStatus,
        new_status: PurchaseStatus,
        **values: Any,
    ) -> bool:
        """Atomically move ``purchase`` from ``expected`` to ``new_status``.

        The UPDATE only matches while the stored status still equals
        ``expected``; a concurrent writer that got there first makes it match
        zero rows. Extra column ``values`` are written in the same statement.
        The instance is refreshed either way so the caller sees the current row.

        Returns:
            True if this call performed the transition.
        """
        result = await self._session.execute(
            update(PurchaseRequest)
            .where(
                PurchaseRequest.id == purchase.id,
                PurchaseRequest.status == expected.value,
            )
            .values(status=new_status.value, updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(purchase)
        return result.rowcount == 1

    async def add_message(
        self, purchase: PurchaseRequest, sender_id: str, text: str
    ) -> PurchaseMessage:
        """Append to the negotiation log."""
        message = PurchaseMessage(purchase_request_id=purchase.id, sender_id=sender_id, text=text)
        self._session.add(message)
        await self._session.flush()
        await self._session.refresh(purchase, attribute_names=["messages"])
        return message


class EscrowRepository:
    """Data access for escrow custody records."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, escrow: Escrow) -> Escrow:
        """Insert a new escrow (raises IntegrityError on a duplicate request or reference)."""
        self._session.add(escrow)
        await self._session.flush()
        return escrow

    async def get_by_purchase_request(self, purchase_request_id: uuid.UUID) -> Escrow | None:
        result = await self._session.execute(
            select(Escrow).where(Escrow.purchase_request_id == purchase_request_id)
        )
        return result.scalar_one_or_none()

    async def update_status(
        self,
        escrow: Escrow,
        new_status: EscrowStatus,
        **timestamps: datetime,
    ) -> Escrow:
        """Set the custody status plus the matching *_at timestamp."""
        escrow.status = new_status.value
        for name, value in timestamps.items():
            setattr(escrow, name, value)
        await self._session.flush()
        return escrow


class SaleRecordRepository:
    """Data access for sale records (insert-once, read-many)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, record: SaleRecord) -> SaleRecord:
        """Insert a sale record (raises IntegrityError if the request already has one)."""
        self._session.add(record)
        await self._session.flush()
        return record

    async def get_by_purchase_request(self, purchase_request_id: uuid.UUID) -> SaleRecord | None:
        result = await self._session.execute(
            select(SaleRecord).where(SaleRecord.purchase_request_id == purchase_request_id)
        )
        return result.scalar_one_or_none()


class OwnershipHistoryRepository:
    """Data access for the per-vehicle ownership timeline."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_open_entry(self, vehicle_id: str) -> OwnershipHistoryEntry | None:
        """Return the current owner's entry (to_date IS NULL), if any."""
        result = await self._session.execute(
            select(OwnershipHistoryEntry).where(
                OwnershipHistoryEntry.vehicle_id == vehicle_id,
                OwnershipHistoryEntry.to_date.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def close(self, entry: OwnershipHistoryEntry, at: datetime) -> OwnershipHistoryEntry:
        entry.to_date = at
        await self._session.flush()
        return entry

    async def append(self, entry: OwnershipHistoryEntry) -> OwnershipHistoryEntry:
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def list_for_vehicle(self, vehicle_id: str) -> list[OwnershipHistoryEntry]:
        """Fetch the full timeline, oldest owner first."""
        result = await self._session.execute(
            select(OwnershipHistoryEntry)
            .where(OwnershipHistoryEntry.vehicle_id == vehicle_id)
            .order_by(OwnershipHistoryEntry.id.asc())
        )
        return list(result.scalars().all())


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        purchase_request_id: uuid.UUID,
        event_type: EventType,
        old_status: PurchaseStatus | None,
        new_status: PurchaseStatus,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> PurchaseEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = PurchaseEvent(
            purchase_request_id=purchase_request_id,
            event_type=event_type.value,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_purchase_request(self, purchase_request_id: uuid.UUID) -> list[PurchaseEvent]:
        """Fetch all events for a request in the order they were recorded."""
        result = await self._session.execute(
            select(PurchaseEvent)
            .where(PurchaseEvent.purchase_request_id == purchase_request_id)
            .order_by(PurchaseEvent.id.asc())
        )
        return list(result.scalars().all())
