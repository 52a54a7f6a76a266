"""Domain enumerations for the vehicle resale escrow service.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class PurchaseStatus(enum.StrEnum):
    """Lifecycle states of a purchase request.

    Transitions are enforced by PurchaseStateMachine.
    See domain/state_machine.py for the transition table.
    """

    PENDING_SELLER = "pending_seller"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COUNTER_OFFER = "counter_offer"
    ESCROW_FUNDED = "escrow_funded"
    VERIFICATION_PASSED = "verification_passed"
    VERIFICATION_FAILED = "verification_failed"
    TRANSFER_PENDING = "transfer_pending"
    SOLD = "sold"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {PurchaseStatus.REJECTED, PurchaseStatus.SOLD, PurchaseStatus.CANCELLED}
)


class EscrowStatus(enum.StrEnum):
    """Custody states of an escrow record. RELEASED and REFUNDED are terminal."""

    PENDING = "pending"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"


class RespondAction(enum.StrEnum):
    """Actions available when responding to an offer or a counter-offer."""

    ACCEPT = "accept"
    REJECT = "reject"
    COUNTER = "counter"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the purchase_events table.

    Every state transition MUST produce exactly one event.
    """

    # Negotiation
    REQUEST_CREATED = "REQUEST_CREATED"
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    OFFER_REJECTED = "OFFER_REJECTED"
    COUNTER_OFFERED = "COUNTER_OFFERED"

    # Custody
    ESCROW_FUNDED = "ESCROW_FUNDED"

    # Verification
    VERIFICATION_PASSED = "VERIFICATION_PASSED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"

    # Transfer
    TRANSFER_INITIATED = "TRANSFER_INITIATED"
    OWNERSHIP_TRANSFERRED = "OWNERSHIP_TRANSFERRED"

    # Exit
    REQUEST_CANCELLED = "REQUEST_CANCELLED"


class ParticipantRole(enum.StrEnum):
    """Which side of a purchase request a user is on (used for listing)."""

    BUYER = "buyer"
    SELLER = "seller"
