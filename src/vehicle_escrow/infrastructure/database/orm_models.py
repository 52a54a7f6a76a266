"""SQLAlchemy 2.0 ORM models for the vehicle resale escrow service.

Six tables:
    1. purchase_requests  — The aggregate root: one buyer's offer on one listing.
    2. purchase_messages  — Append-only negotiation log of a purchase request.
    3. escrows            — Simulated fund custody, at most one per request.
    4. sale_records       — Created exactly once when a request is sold.
    5. ownership_history  — Append-only owner timeline per vehicle.
    6. purchase_events    — Append-only audit log of every status transition.

Design decisions:
    - UUIDs as primary keys for aggregates; integer keys where insertion order
      is the meaning (messages, history, events).
    - Decimal for money (no floating point rounding errors).
    - JSON (JSONB on PostgreSQL) for the verification snapshot and metadata.
    - Uniqueness carries the exactly-once rules: one escrow per request, one
      funding reference per escrow, one sale record per request, one open
      ownership entry per vehicle.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from vehicle_escrow.domain.enums import EscrowStatus, PurchaseStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _in_clause(values: list[str]) -> str:
    return ", ".join(f"'{v}'" for v in values)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. purchase_requests
# ---------------------------------------------------------------------------
class PurchaseRequest(Base):
    """A buyer's offer on a listed vehicle and everything that follows from it.

    `status` is written only through PurchaseRequestRepository.compare_and_set,
    never by assigning the attribute.
    """

    __tablename__ = "purchase_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Participants & subject (immutable) ---
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Pricing ---
    offered_price: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        nullable=False,
        comment="Buyer's offer, immutable after creation",
    )
    counter_price: Mapped[Decimal | None] = mapped_column(
        Numeric(14, 2),
        nullable=True,
        default=None,
        comment="Seller's counter-offer (set only by the counter transition)",
    )

    # --- Status (guarded by PurchaseStateMachine) ---
    status: Mapped[str] = mapped_column(
        String(24),
        nullable=False,
        default=PurchaseStatus.PENDING_SELLER.value,
    )

    # --- Verification ---
    verification_result: Mapped[dict | None] = mapped_column(
        JSONType,
        nullable=True,
        default=None,
        comment="Snapshot of the last verification run, overwritten on each run",
    )
    verification_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    # --- Relationships ---
    escrow: Mapped[Escrow | None] = relationship(
        "Escrow",
        back_populates="purchase_request",
        uselist=False,
        lazy="selectin",
    )
    messages: Mapped[list[PurchaseMessage]] = relationship(
        "PurchaseMessage",
        back_populates="purchase_request",
        cascade="all, delete-orphan",
        order_by="PurchaseMessage.id.asc()",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_in_clause([s.value for s in PurchaseStatus])})",
            name="ck_purchase_valid_status",
        ),
        CheckConstraint("offered_price > 0", name="ck_purchase_positive_offer"),
        CheckConstraint(
            "counter_price IS NULL OR counter_price > 0",
            name="ck_purchase_positive_counter",
        ),
        Index("idx_purchase_buyer_status", "buyer_id", "status"),
        Index("idx_purchase_seller_status", "seller_id", "status"),
        Index("idx_purchase_listing_status", "listing_id", "status"),
        Index("idx_purchase_vehicle", "vehicle_id"),
    )

    @property
    def agreed_price(self) -> Decimal:
        """Counter price once one was offered and accepted, else the offer.

        The only way forward from counter_offer is the buyer accepting the
        counter, so a set counter_price on a live request is the agreed one.
        """
        return self.counter_price if self.counter_price is not None else self.offered_price

    def __repr__(self) -> str:
        return (
            f"<PurchaseRequest id={self.id} vehicle={self.vehicle_id} "
            f"status={self.status} offer={self.offered_price}>"
        )


# ---------------------------------------------------------------------------
# 2. purchase_messages (append-only)
# ---------------------------------------------------------------------------
class PurchaseMessage(Base):
    """One entry of the negotiation log. Insertion order is the meaning."""

    __tablename__ = "purchase_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    purchase_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("purchase_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    purchase_request: Mapped[PurchaseRequest] = relationship(
        "PurchaseRequest", back_populates="messages"
    )

    __table_args__ = (Index("idx_message_request", "purchase_request_id"),)


# ---------------------------------------------------------------------------
# 3. escrows
# ---------------------------------------------------------------------------
class Escrow(Base):
    """Simulated custody of the buyer's payment for one purchase request."""

    __tablename__ = "escrows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    purchase_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("purchase_requests.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        comment="Owning purchase request; at most one escrow each",
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    funding_reference: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
        comment="Caller-supplied idempotency token of the funding call",
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=EscrowStatus.PENDING.value
    )

    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    purchase_request: Mapped[PurchaseRequest] = relationship(
        "PurchaseRequest", back_populates="escrow"
    )

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_in_clause([s.value for s in EscrowStatus])})",
            name="ck_escrow_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_escrow_positive_amount"),
    )

    def __repr__(self) -> str:
        return f"<Escrow id={self.id} request={self.purchase_request_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 4. sale_records
# ---------------------------------------------------------------------------
class SaleRecord(Base):
    """Immutable record of a completed sale. One per purchase request."""

    __tablename__ = "sale_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    purchase_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("purchase_requests.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    final_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    ledger_tx_reference: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        comment="Reference returned by the anchor service",
    )
    simulated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ownership_transferred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint("final_price > 0", name="ck_sale_positive_price"),
        Index("idx_sale_vehicle", "vehicle_id"),
        Index("idx_sale_buyer", "buyer_id"),
        Index("idx_sale_seller", "seller_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<SaleRecord id={self.id} request={self.purchase_request_id} "
            f"price={self.final_price} tx={self.ledger_tx_reference}>"
        )


# ---------------------------------------------------------------------------
# 5. ownership_history (append-only per vehicle)
# ---------------------------------------------------------------------------
class OwnershipHistoryEntry(Base):
    """One owner's tenure of a vehicle. The newest entry has to_date = NULL."""

    __tablename__ = "ownership_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    from_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    to_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sale_record_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("sale_records.id", ondelete="SET NULL"), nullable=True
    )
    note: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        Index("idx_ownership_vehicle", "vehicle_id"),
        Index(
            "uq_ownership_open_entry",
            "vehicle_id",
            unique=True,
            postgresql_where=text("to_date IS NULL"),
            sqlite_where=text("to_date IS NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<OwnershipHistoryEntry vehicle={self.vehicle_id} owner={self.owner_user_id} "
            f"open={self.to_date is None}>"
        )


# ---------------------------------------------------------------------------
# 6. purchase_events (append-only audit log)
# ---------------------------------------------------------------------------
class PurchaseEvent(Base):
    """Immutable audit record of one status transition.

    This table is APPEND-ONLY. No UPDATE or DELETE at the application level.
    """

    __tablename__ = "purchase_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    purchase_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("purchase_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(24), nullable=True)
    new_status: Mapped[str] = mapped_column(String(24), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_event_request", "purchase_request_id"),
        Index("idx_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<PurchaseEvent type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


event.listen(Escrow, "before_update", _set_updated_at)
