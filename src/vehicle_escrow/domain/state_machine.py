"""Purchase Request State Machine Guard.

Uses python-statemachine to enforce legal status transitions at the domain
level. Whatever the API or a retrying client does, an illegal transition
(e.g. pending_seller -> sold) raises TransitionNotAllowed before the
persisted status is touched.

The machine is instantiated per request from the persisted status; the
service layer fires the event, then writes the resulting status with a
compare-and-set against the status it started from.

Transition table:
    pending_seller       -> accepted             (accept)
    pending_seller       -> rejected             (reject)
    pending_seller       -> counter_offer        (counter)
    counter_offer        -> accepted             (accept, buyer takes the counter)
    counter_offer        -> rejected             (reject, buyer declines the counter)
    accepted             -> escrow_funded        (fund_escrow)
    escrow_funded        -> verification_passed  (verification_passes)
    escrow_funded        -> verification_failed  (verification_fails)
    verification_failed  -> verification_passed  (verification_passes)
    verification_failed  -> verification_failed  (verification_fails)
    verification_passed  -> transfer_pending     (init_transfer)
    transfer_pending     -> sold                 (confirm_transfer)
    pending_seller, counter_offer, accepted,
    verification_failed  -> cancelled            (cancel)
"""

from __future__ import annotations

from statemachine import State, StateMachine

from vehicle_escrow.domain.enums import PurchaseStatus


class PurchaseStateMachine(StateMachine):
    """State machine that guards the purchase request lifecycle.

    Usage:
        sm = PurchaseStateMachine(current_status="accepted")
        sm.fund_escrow()   # transitions to escrow_funded
        sm.status          # "escrow_funded"
    """

    # --- States ---
    PENDING_SELLER = State("Pending seller", value=PurchaseStatus.PENDING_SELLER.value, initial=True)
    ACCEPTED = State("Accepted", value=PurchaseStatus.ACCEPTED.value)
    REJECTED = State("Rejected", value=PurchaseStatus.REJECTED.value, final=True)
    COUNTER_OFFER = State("Counter offer", value=PurchaseStatus.COUNTER_OFFER.value)
    ESCROW_FUNDED = State("Escrow funded", value=PurchaseStatus.ESCROW_FUNDED.value)
    VERIFICATION_PASSED = State("Verification passed", value=PurchaseStatus.VERIFICATION_PASSED.value)
    VERIFICATION_FAILED = State("Verification failed", value=PurchaseStatus.VERIFICATION_FAILED.value)
    TRANSFER_PENDING = State("Transfer pending", value=PurchaseStatus.TRANSFER_PENDING.value)
    SOLD = State("Sold", value=PurchaseStatus.SOLD.value, final=True)
    CANCELLED = State("Cancelled", value=PurchaseStatus.CANCELLED.value, final=True)

    # --- Events / Transitions ---

    # Negotiation (single round: a counter cannot be countered)
    accept = PENDING_SELLER.to(ACCEPTED) | COUNTER_OFFER.to(ACCEPTED)
    reject = PENDING_SELLER.to(REJECTED) | COUNTER_OFFER.to(REJECTED)
    counter = PENDING_SELLER.to(COUNTER_OFFER)

    # Custody
    fund_escrow = ACCEPTED.to(ESCROW_FUNDED)

    # Verification outcomes
    verification_passes = ESCROW_FUNDED.to(VERIFICATION_PASSED) | VERIFICATION_FAILED.to(
        VERIFICATION_PASSED
    )
    verification_fails = ESCROW_FUNDED.to(VERIFICATION_FAILED) | VERIFICATION_FAILED.to.itself()

    # Transfer
    init_transfer = VERIFICATION_PASSED.to(TRANSFER_PENDING)
    confirm_transfer = TRANSFER_PENDING.to(SOLD)

    # Buyer walks away (escrow, if any, is refunded by the service)
    cancel = (
        PENDING_SELLER.to(CANCELLED)
        | COUNTER_OFFER.to(CANCELLED)
        | ACCEPTED.to(CANCELLED)
        | VERIFICATION_FAILED.to(CANCELLED)
    )

    def __init__(self, current_status: str = PurchaseStatus.PENDING_SELLER.value) -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current PurchaseStatus value (e.g. "accepted").
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=str(current_status))

    @property
    def status(self) -> PurchaseStatus:
        """Return the current state as a PurchaseStatus."""
        return PurchaseStatus(self.current_state_value)

    def get_allowed_events(self) -> list[str]:
        """Return the names of the events that can fire from the current state."""
        return [event.id for event in self.allowed_events]


def validate_transition(current_status: str, event_name: str) -> PurchaseStatus:
    """Fire ``event_name`` on a throwaway machine and return the resulting status.

    Raises:
        TransitionNotAllowed: If the event is not legal from ``current_status``.
        ValueError: If the status or event name is unknown.
    """
    sm = PurchaseStateMachine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_name not in {e.id for e in sm.events} or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
