"""Purchase Service — core business logic for the purchase request lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Repositories (data access, compare-and-set status writes)
    - EscrowLedger, VerificationService, OwnershipTransferExecutor
    - Event log (audit trail) and the status notifier

Every status change follows the same path: fire the event on a
PurchaseStateMachine built from the stored status, write the new status with
a compare-and-set against the status read, append exactly one audit event,
then queue a status notification. A compare-and-set that matches nothing
means a concurrent caller moved the request first, and is reported as an
invalid transition.

Notifications leave only through commit(), after the database commit has
succeeded. rollback(), or a savepoint that unwinds, drops the notifications
queued for the discarded work.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from statemachine.exceptions import TransitionNotAllowed

from vehicle_escrow.config import Settings, get_settings
from vehicle_escrow.domain.enums import (
    EscrowStatus,
    EventType,
    ParticipantRole,
    PurchaseStatus,
    RespondAction,
)
from vehicle_escrow.domain.exceptions import (
    DuplicateActiveRequestError,
    ForbiddenError,
    InvalidPriceError,
    InvalidTransitionError,
    PurchaseRequestNotFoundError,
    SelfPurchaseError,
    TransferFailedError,
    VerificationAttemptsExhaustedError,
)
from vehicle_escrow.domain.state_machine import PurchaseStateMachine
from vehicle_escrow.domain.verification import VerificationPolicy, VerificationResult
from vehicle_escrow.infrastructure.database.orm_models import PurchaseRequest
from vehicle_escrow.infrastructure.database.repositories import (
    EventRepository,
    OwnershipHistoryRepository,
    PurchaseRequestRepository,
    SaleRecordRepository,
)
from vehicle_escrow.logging_config import bind_purchase_context, get_logger
from vehicle_escrow.services.escrow_ledger import EscrowLedger
from vehicle_escrow.services.transfer_executor import OwnershipTransferExecutor
from vehicle_escrow.services.verification_service import VerificationService, utcnow

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncIterator, Callable
    from datetime import datetime
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from vehicle_escrow.domain.collaborators import (
        AnchorService,
        AttestationSource,
        StatusNotifier,
    )
    from vehicle_escrow.infrastructure.database.orm_models import (
        Escrow,
        OwnershipHistoryEntry,
        PurchaseEvent,
        PurchaseMessage,
        SaleRecord,
    )

logger = get_logger(__name__)

_RESPOND_EVENTS: dict[RespondAction, tuple[str, EventType]] = {
    RespondAction.ACCEPT: ("accept", EventType.OFFER_ACCEPTED),
    RespondAction.REJECT: ("reject", EventType.OFFER_REJECTED),
    RespondAction.COUNTER: ("counter", EventType.COUNTER_OFFERED),
}


class PurchaseService:
    """Manages purchase requests from offer to sale."""

    def __init__(
        self,
        session: AsyncSession,
        attestation_source: AttestationSource,
        anchor_service: AnchorService,
        notifier: StatusNotifier,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._notifier = notifier
        self._pending_notifications: list[tuple[uuid.UUID, PurchaseStatus]] = []

        self._purchase_repo = PurchaseRequestRepository(session)
        self._event_repo = EventRepository(session)
        self._sale_repo = SaleRecordRepository(session)
        self._history_repo = OwnershipHistoryRepository(session)

        self._ledger = EscrowLedger(session)
        self._verification = VerificationService(
            attestation_source,
            policy=VerificationPolicy(
                trust_score_threshold=self._settings.trust_score_threshold,
                telemetry_freshness=timedelta(hours=self._settings.telemetry_freshness_hours),
            ),
            timeout_seconds=self._settings.attestation_timeout_seconds,
            clock=clock,
        )
        self._executor = OwnershipTransferExecutor(
            session,
            anchor_service,
            anchor_timeout_seconds=self._settings.anchor_timeout_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    async def commit(self) -> None:
        """Commit the session, then send the notifications queued since the last commit.

        If the commit raises, the queue is dropped and nothing is sent.
        """
        pending, self._pending_notifications = self._pending_notifications, []
        await self._session.commit()
        for purchase_request_id, new_status in pending:
            await self._notify(purchase_request_id, new_status)

    async def rollback(self) -> None:
        """Roll back the session and drop every queued notification."""
        dropped = len(self._pending_notifications)
        self._pending_notifications = []
        await self._session.rollback()
        if dropped:
            logger.info("purchase.notifications_discarded", count=dropped)

    # ------------------------------------------------------------------
    # Request Creation
    # ------------------------------------------------------------------

    async def create_request(
        self,
        listing_id: str,
        vehicle_id: str,
        buyer_id: str,
        seller_id: str,
        offered_price: Decimal,
        message: str | None = None,
    ) -> PurchaseRequest:
        """Open a purchase request in pending_seller."""
        if offered_price is None or offered_price <= 0:
            raise InvalidPriceError("offered_price", offered_price)
        if buyer_id == seller_id:
            raise SelfPurchaseError(buyer_id)
        if await self._purchase_repo.find_active(vehicle_id, buyer_id) is not None:
            raise DuplicateActiveRequestError(vehicle_id, buyer_id)

        purchase = await self._purchase_repo.create(
            PurchaseRequest(
                listing_id=listing_id,
                vehicle_id=vehicle_id,
                buyer_id=buyer_id,
                seller_id=seller_id,
                offered_price=offered_price,
                status=PurchaseStatus.PENDING_SELLER.value,
            )
        )
        bind_purchase_context(str(purchase.id), buyer_id)

        await self._event_repo.record(
            purchase_request_id=purchase.id,
            event_type=EventType.REQUEST_CREATED,
            old_status=None,
            new_status=PurchaseStatus.PENDING_SELLER,
            actor=buyer_id,
            metadata={"offered_price": str(offered_price), "listing_id": listing_id},
        )
        if message:
            await self._purchase_repo.add_message(purchase, buyer_id, message)

        self._queue_notification(purchase, PurchaseStatus.PENDING_SELLER)
        logger.info(
            "purchase.created",
            purchase_request_id=str(purchase.id),
            vehicle_id=vehicle_id,
            offered_price=str(offered_price),
        )
        return purchase

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def respond(
        self,
        purchase_request_id: uuid.UUID,
        actor_id: str,
        action: RespondAction | str,
        counter_price: Decimal | None = None,
        message: str | None = None,
    ) -> PurchaseRequest:
        """Accept, reject or counter.

        The seller answers an offer in pending_seller; the buyer answers a
        counter-offer in counter_offer.
        """
        purchase = await self._get_or_raise(purchase_request_id)
        bind_purchase_context(str(purchase.id), actor_id)
        action = RespondAction(action)

        if purchase.status == PurchaseStatus.COUNTER_OFFER:
            self._require_buyer(purchase, actor_id, "respond to a counter-offer")
        else:
            self._require_seller(purchase, actor_id, "respond to this offer")

        event_name, event_type = _RESPOND_EVENTS[action]
        old_status = PurchaseStatus(purchase.status)
        new_status = self._fire_transition(purchase, event_name)

        values: dict = {}
        metadata: dict = {"action": action.value}
        if action is RespondAction.COUNTER:
            if counter_price is None or counter_price <= 0:
                raise InvalidPriceError("counter_price", counter_price)
            values["counter_price"] = counter_price
            metadata["counter_price"] = str(counter_price)

        await self._commit_transition(
            purchase, old_status, new_status, event_name, event_type, actor_id, metadata, **values
        )
        if message:
            await self._purchase_repo.add_message(purchase, actor_id, message)

        logger.info(
            "purchase.responded",
            purchase_request_id=str(purchase.id),
            action=action.value,
            status=purchase.status,
        )
        return purchase

    # ------------------------------------------------------------------
    # Custody
    # ------------------------------------------------------------------

    async def fund_escrow(
        self,
        purchase_request_id: uuid.UUID,
        actor_id: str,
        amount: Decimal,
        funding_reference: str,
    ) -> Escrow:
        """Fund the escrow at the agreed price; replays of the same reference are no-ops."""
        purchase = await self._get_or_raise(purchase_request_id)
        bind_purchase_context(str(purchase.id), actor_id)
        self._require_buyer(purchase, actor_id, "fund the escrow")

        async with self._savepoint():
            escrow, created = await self._ledger.fund(purchase, amount, funding_reference)
            if created:
                await self._commit_transition(
                    purchase,
                    PurchaseStatus.ACCEPTED,
                    PurchaseStatus.ESCROW_FUNDED,
                    "fund_escrow",
                    EventType.ESCROW_FUNDED,
                    actor_id,
                    {
                        "escrow_id": str(escrow.id),
                        "amount": str(amount),
                        "funding_reference": funding_reference,
                    },
                )
        return escrow

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def run_verification(
        self, purchase_request_id: uuid.UUID, actor_id: str
    ) -> VerificationResult:
        """Run the pre-transfer checks and record the outcome.

        If the attestation source is unavailable nothing is recorded: the
        status, the stored result and the attempt counter stay as they were.
        """
        purchase = await self._get_or_raise(purchase_request_id)
        bind_purchase_context(str(purchase.id), actor_id)
        self._require_buyer(purchase, actor_id, "run verification")

        # Both outcomes leave from the same statuses.
        self._fire_transition(purchase, "verification_passes")

        max_attempts = self._settings.max_verification_attempts
        if purchase.verification_attempts >= max_attempts:
            logger.info(
                "purchase.verification_exhausted",
                purchase_request_id=str(purchase.id),
                attempts=purchase.verification_attempts,
            )
            raise VerificationAttemptsExhaustedError(str(purchase.id), purchase.verification_attempts)

        result = await self._verification.verify_vehicle(purchase.vehicle_id)

        if result.passed:
            event_name, event_type = "verification_passes", EventType.VERIFICATION_PASSED
        else:
            event_name, event_type = "verification_fails", EventType.VERIFICATION_FAILED
        old_status = PurchaseStatus(purchase.status)
        new_status = self._fire_transition(purchase, event_name)

        await self._commit_transition(
            purchase,
            old_status,
            new_status,
            event_name,
            event_type,
            actor_id,
            {**result.to_dict(), "attempt": purchase.verification_attempts + 1},
            verification_result=result.to_dict(),
            verification_attempts=PurchaseRequest.verification_attempts + 1,
        )
        return result

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    async def init_transfer(
        self, purchase_request_id: uuid.UUID, actor_id: str
    ) -> PurchaseRequest:
        """Seller starts the ownership transfer after a passed verification."""
        purchase = await self._get_or_raise(purchase_request_id)
        bind_purchase_context(str(purchase.id), actor_id)
        self._require_seller(purchase, actor_id, "initiate the transfer")

        old_status = PurchaseStatus(purchase.status)
        new_status = self._fire_transition(purchase, "init_transfer")
        await self._commit_transition(
            purchase, old_status, new_status, "init_transfer", EventType.TRANSFER_INITIATED, actor_id
        )
        return purchase

    async def confirm_transfer(
        self, purchase_request_id: uuid.UUID, actor_id: str
    ) -> SaleRecord:
        """Seller completes the sale.

        Re-confirming a sold request returns the existing SaleRecord without
        running any step again. On failure the request stays transfer_pending
        and nothing from the attempt is kept, so the call can be retried.
        """
        purchase = await self._get_or_raise(purchase_request_id)
        bind_purchase_context(str(purchase.id), actor_id)
        self._require_seller(purchase, actor_id, "confirm the transfer")

        if purchase.status == PurchaseStatus.SOLD:
            existing = await self._sale_repo.get_by_purchase_request(purchase.id)
            if existing is not None:
                logger.info("purchase.transfer_replayed", purchase_request_id=str(purchase.id))
                return existing

        old_status = PurchaseStatus(purchase.status)
        new_status = self._fire_transition(purchase, "confirm_transfer")

        try:
            async with self._savepoint():
                sale = await self._executor.execute(purchase)
                await self._commit_transition(
                    purchase,
                    old_status,
                    new_status,
                    "confirm_transfer",
                    EventType.OWNERSHIP_TRANSFERRED,
                    actor_id,
                    {
                        "sale_record_id": str(sale.id),
                        "final_price": str(sale.final_price),
                        "ledger_tx_reference": sale.ledger_tx_reference,
                    },
                )
        except (IntegrityError, InvalidTransitionError) as exc:
            # A concurrent confirm may have completed the sale first.
            await self._session.refresh(purchase)
            if purchase.status == PurchaseStatus.SOLD:
                winner = await self._sale_repo.get_by_purchase_request(purchase.id)
                if winner is not None:
                    logger.info("purchase.transfer_race_lost", purchase_request_id=str(purchase.id))
                    return winner
            logger.error(
                "purchase.transfer_failed",
                purchase_request_id=str(purchase.id),
                step="persist",
                error=str(exc),
            )
            raise TransferFailedError(str(purchase.id), "persist", str(exc)) from exc
        except SQLAlchemyError as exc:
            logger.error(
                "purchase.transfer_failed",
                purchase_request_id=str(purchase.id),
                step="persist",
                error=str(exc),
            )
            raise TransferFailedError(str(purchase.id), "persist", str(exc)) from exc

        return sale

    # ------------------------------------------------------------------
    # Exit
    # ------------------------------------------------------------------

    async def cancel(
        self,
        purchase_request_id: uuid.UUID,
        actor_id: str,
        reason: str | None = None,
    ) -> PurchaseRequest:
        """Buyer withdraws the request; a funded escrow is refunded."""
        purchase = await self._get_or_raise(purchase_request_id)
        bind_purchase_context(str(purchase.id), actor_id)
        self._require_buyer(purchase, actor_id, "cancel this request")

        old_status = PurchaseStatus(purchase.status)
        new_status = self._fire_transition(purchase, "cancel")

        async with self._savepoint():
            escrow = await self._ledger.get(purchase)
            refunded = escrow is not None and escrow.status == EscrowStatus.FUNDED
            if refunded:
                await self._ledger.refund(purchase)
            await self._commit_transition(
                purchase,
                old_status,
                new_status,
                "cancel",
                EventType.REQUEST_CANCELLED,
                actor_id,
                {"reason": reason, "escrow_refunded": refunded},
            )
        return purchase

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def post_message(
        self, purchase_request_id: uuid.UUID, actor_id: str, text: str
    ) -> PurchaseMessage:
        """Append to the negotiation log of an open request."""
        purchase = await self._get_or_raise(purchase_request_id)
        if actor_id not in (purchase.buyer_id, purchase.seller_id):
            raise ForbiddenError(actor_id, "post messages", "buyer or seller")
        if PurchaseStatus(purchase.status).is_terminal:
            raise InvalidTransitionError(purchase.status, "post_message")

        msg = await self._purchase_repo.add_message(purchase, actor_id, text)
        logger.info("purchase.message_posted", purchase_request_id=str(purchase.id), sender=actor_id)
        return msg

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_request(self, purchase_request_id: uuid.UUID) -> PurchaseRequest:
        """Get a purchase request or raise."""
        return await self._get_or_raise(purchase_request_id)

    async def list_requests(
        self,
        user_id: str,
        role: ParticipantRole | None = None,
        status: PurchaseStatus | None = None,
        limit: int = 50,
    ) -> list[PurchaseRequest]:
        return await self._purchase_repo.list_for_user(user_id, role=role, status=status, limit=limit)

    async def get_status(self, purchase_request_id: uuid.UUID) -> dict:
        """Get request status with allowed events."""
        purchase = await self._get_or_raise(purchase_request_id)
        sm = PurchaseStateMachine(current_status=purchase.status)
        return {
            "purchase_request_id": str(purchase.id),
            "status": purchase.status,
            "verification_attempts": purchase.verification_attempts,
            "max_verification_attempts": self._settings.max_verification_attempts,
            "allowed_events": sm.get_allowed_events(),
        }

    async def get_events(self, purchase_request_id: uuid.UUID) -> list[PurchaseEvent]:
        """Get audit trail."""
        await self._get_or_raise(purchase_request_id)
        return await self._event_repo.get_by_purchase_request(purchase_request_id)

    async def get_ownership_history(self, vehicle_id: str) -> list[OwnershipHistoryEntry]:
        """Ownership timeline of a vehicle, oldest first. Unknown vehicles have none."""
        return await self._history_repo.list_for_vehicle(vehicle_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_or_raise(self, purchase_request_id: uuid.UUID) -> PurchaseRequest:
        purchase = await self._purchase_repo.get_by_id(purchase_request_id)
        if purchase is None:
            raise PurchaseRequestNotFoundError(str(purchase_request_id))
        return purchase

    @staticmethod
    def _require_buyer(purchase: PurchaseRequest, actor_id: str, action: str) -> None:
        if actor_id != purchase.buyer_id:
            raise ForbiddenError(actor_id, action, ParticipantRole.BUYER.value)

    @staticmethod
    def _require_seller(purchase: PurchaseRequest, actor_id: str, action: str) -> None:
        if actor_id != purchase.seller_id:
            raise ForbiddenError(actor_id, action, ParticipantRole.SELLER.value)

    def _fire_transition(self, purchase: PurchaseRequest, event_name: str) -> PurchaseStatus:
        """Validate a state machine transition and return the resulting status.

        Raises InvalidTransitionError if the transition is illegal.
        """
        sm = PurchaseStateMachine(current_status=purchase.status)
        event_method = getattr(sm, event_name, None)
        if event_method is None:
            raise InvalidTransitionError(purchase.status, event_name)
        try:
            event_method()
        except TransitionNotAllowed as err:
            raise InvalidTransitionError(purchase.status, event_name) from err
        return sm.status

    async def _commit_transition(
        self,
        purchase: PurchaseRequest,
        old_status: PurchaseStatus,
        new_status: PurchaseStatus,
        event_name: str,
        event_type: EventType,
        actor_id: str,
        metadata: dict | None = None,
        **values: object,
    ) -> None:
        """Compare-and-set the status, then record the event and queue a notification."""
        if not await self._purchase_repo.compare_and_set(purchase, old_status, new_status, **values):
            logger.info(
                "purchase.transition_conflict",
                purchase_request_id=str(purchase.id),
                expected=old_status.value,
                found=purchase.status,
                transition=event_name,
            )
            raise InvalidTransitionError(purchase.status, event_name)

        await self._event_repo.record(
            purchase_request_id=purchase.id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            actor=actor_id,
            metadata=metadata,
        )
        self._queue_notification(purchase, new_status)
        logger.info(
            "purchase.transitioned",
            purchase_request_id=str(purchase.id),
            transition=event_name,
            old_status=old_status.value,
            new_status=new_status.value,
        )

    @asynccontextmanager
    async def _savepoint(self) -> AsyncIterator[None]:
        """Nested transaction that also unwinds the notifications queued inside it."""
        mark = len(self._pending_notifications)
        try:
            async with self._session.begin_nested():
                yield
        except Exception:
            del self._pending_notifications[mark:]
            raise

    def _queue_notification(self, purchase: PurchaseRequest, new_status: PurchaseStatus) -> None:
        self._pending_notifications.append((purchase.id, new_status))

    async def _notify(self, purchase_request_id: uuid.UUID, new_status: PurchaseStatus) -> None:
        """Best-effort; a failed notification never undoes a committed transition."""
        try:
            await self._notifier.notify_status_changed(purchase_request_id, new_status.value)
        except Exception as exc:
            logger.warning(
                "purchase.notification_failed",
                purchase_request_id=str(purchase_request_id),
                new_status=new_status.value,
                error=str(exc),
            )
