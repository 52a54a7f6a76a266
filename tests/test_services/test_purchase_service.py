"""Tests for PurchaseService — negotiation, funding, verification and exit paths."""

from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import (
    BUYER,
    NOW,
    OFFER,
    SELLER,
    STRANGER,
    advance_to,
    healthy_snapshot,
    open_request,
)

from vehicle_escrow.domain.enums import (
    EscrowStatus,
    EventType,
    ParticipantRole,
    PurchaseStatus,
    RespondAction,
)
from vehicle_escrow.domain.exceptions import (
    AlreadyFundedError,
    AmountMismatchError,
    DuplicateActiveRequestError,
    ForbiddenError,
    InvalidPriceError,
    InvalidTransitionError,
    PurchaseRequestNotFoundError,
    SelfPurchaseError,
    VerificationAttemptsExhaustedError,
    VerificationUnavailableError,
)
from vehicle_escrow.domain.verification import REASON_FUTURE_TELEMETRY, REASON_STALE_TELEMETRY
from vehicle_escrow.services.escrow_ledger import EscrowLedger


class TestCreateRequest:
    @pytest.mark.asyncio
    async def test_starts_pending_seller(self, service, notifier) -> None:
        purchase = await open_request(service, message="Is the service history available?")

        assert purchase.status == PurchaseStatus.PENDING_SELLER
        assert purchase.offered_price == OFFER
        assert purchase.counter_price is None
        assert [m.text for m in purchase.messages] == ["Is the service history available?"]
        await service.commit()
        assert notifier.sent == [(purchase.id, "pending_seller")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", [Decimal("0"), Decimal("-1.00")])
    async def test_rejects_non_positive_price(self, service, price: Decimal) -> None:
        with pytest.raises(InvalidPriceError):
            await open_request(service, offered_price=price)

    @pytest.mark.asyncio
    async def test_rejects_buying_own_vehicle(self, service) -> None:
        with pytest.raises(SelfPurchaseError):
            await open_request(service, buyer_id=SELLER)

    @pytest.mark.asyncio
    async def test_one_active_request_per_vehicle_and_buyer(self, service) -> None:
        await open_request(service)
        with pytest.raises(DuplicateActiveRequestError):
            await open_request(service)

    @pytest.mark.asyncio
    async def test_new_request_allowed_after_rejection(self, service) -> None:
        first = await open_request(service)
        await service.respond(first.id, SELLER, RespondAction.REJECT)

        second = await open_request(service)
        assert second.id != first.id


class TestRespond:
    @pytest.mark.asyncio
    async def test_seller_accepts(self, service) -> None:
        purchase = await open_request(service)
        await service.respond(purchase.id, SELLER, "accept")
        assert purchase.status == PurchaseStatus.ACCEPTED
        assert purchase.agreed_price == OFFER

    @pytest.mark.asyncio
    async def test_non_seller_is_forbidden(self, service) -> None:
        """Scenario: a stranger responding leaves the request untouched."""
        purchase = await open_request(service)

        with pytest.raises(ForbiddenError):
            await service.respond(purchase.id, STRANGER, RespondAction.ACCEPT)

        reloaded = await service.get_request(purchase.id)
        assert reloaded.status == PurchaseStatus.PENDING_SELLER

    @pytest.mark.asyncio
    async def test_buyer_cannot_answer_own_offer(self, service) -> None:
        purchase = await open_request(service)
        with pytest.raises(ForbiddenError):
            await service.respond(purchase.id, BUYER, RespondAction.ACCEPT)

    @pytest.mark.asyncio
    async def test_counter_requires_positive_price(self, service) -> None:
        purchase = await open_request(service)
        with pytest.raises(InvalidPriceError):
            await service.respond(purchase.id, SELLER, RespondAction.COUNTER)
        assert purchase.status == PurchaseStatus.PENDING_SELLER

    @pytest.mark.asyncio
    async def test_buyer_accepts_counter_at_counter_price(self, service) -> None:
        purchase = await advance_to(service, PurchaseStatus.COUNTER_OFFER)
        assert purchase.counter_price == Decimal("480000.00")

        await service.respond(purchase.id, BUYER, RespondAction.ACCEPT)
        assert purchase.status == PurchaseStatus.ACCEPTED
        assert purchase.agreed_price == Decimal("480000.00")

    @pytest.mark.asyncio
    async def test_seller_cannot_answer_own_counter(self, service) -> None:
        purchase = await advance_to(service, PurchaseStatus.COUNTER_OFFER)
        with pytest.raises(ForbiddenError):
            await service.respond(purchase.id, SELLER, RespondAction.ACCEPT)

    @pytest.mark.asyncio
    async def test_counter_of_counter_is_invalid(self, service) -> None:
        purchase = await advance_to(service, PurchaseStatus.COUNTER_OFFER)
        with pytest.raises(InvalidTransitionError):
            await service.respond(
                purchase.id, BUYER, RespondAction.COUNTER, counter_price=Decimal("490000.00")
            )

    @pytest.mark.asyncio
    async def test_respond_after_rejection_is_invalid(self, service) -> None:
        purchase = await open_request(service)
        await service.respond(purchase.id, SELLER, RespondAction.REJECT)
        with pytest.raises(InvalidTransitionError):
            await service.respond(purchase.id, SELLER, RespondAction.ACCEPT)

    @pytest.mark.asyncio
    async def test_unknown_request(self, service) -> None:
        with pytest.raises(PurchaseRequestNotFoundError):
            await service.respond(uuid.uuid4(), SELLER, RespondAction.ACCEPT)


class TestFundEscrow:
    @pytest.mark.asyncio
    async def test_fund_and_replay_same_reference(self, service, session) -> None:
        """Scenario: funding with F1 twice yields one funded escrow."""
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)

        first = await service.fund_escrow(purchase.id, BUYER, Decimal("500000"), "F1")
        second = await service.fund_escrow(purchase.id, BUYER, Decimal("500000"), "F1")

        assert first.id == second.id
        assert first.status == EscrowStatus.FUNDED
        assert purchase.status == PurchaseStatus.ESCROW_FUNDED

        events = await service.get_events(purchase.id)
        assert [e.event_type for e in events].count(EventType.ESCROW_FUNDED) == 1

    @pytest.mark.asyncio
    async def test_amount_mismatch_keeps_accepted(self, service, session) -> None:
        """Scenario: 450000 against an agreed 500000."""
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)

        with pytest.raises(AmountMismatchError):
            await service.fund_escrow(purchase.id, BUYER, Decimal("450000"), "F1")

        reloaded = await service.get_request(purchase.id)
        assert reloaded.status == PurchaseStatus.ACCEPTED
        assert await EscrowLedger(session).get(reloaded) is None

    @pytest.mark.asyncio
    async def test_different_reference_after_funding(self, service) -> None:
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)
        await service.fund_escrow(purchase.id, BUYER, OFFER, "F1")

        with pytest.raises(AlreadyFundedError):
            await service.fund_escrow(purchase.id, BUYER, OFFER, "F2")

    @pytest.mark.asyncio
    async def test_fund_before_accept_is_invalid(self, service) -> None:
        purchase = await open_request(service)
        with pytest.raises(InvalidTransitionError):
            await service.fund_escrow(purchase.id, BUYER, OFFER, "F1")

    @pytest.mark.asyncio
    async def test_only_buyer_funds(self, service) -> None:
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)
        with pytest.raises(ForbiddenError):
            await service.fund_escrow(purchase.id, SELLER, OFFER, "F1")


class TestRunVerification:
    @pytest.mark.asyncio
    async def test_stale_telemetry_fails(self, service, attestation) -> None:
        """Scenario: telemetry 30 hours old, everything else fine."""
        attestation.snapshot = healthy_snapshot(last_telemetry_at=NOW - timedelta(hours=30))
        purchase = await advance_to(service, PurchaseStatus.ESCROW_FUNDED)

        result = await service.run_verification(purchase.id, BUYER)

        assert not result.passed
        assert list(result.failure_reasons) == [REASON_STALE_TELEMETRY]
        assert purchase.status == PurchaseStatus.VERIFICATION_FAILED
        assert purchase.verification_result["failure_reasons"] == [REASON_STALE_TELEMETRY]
        assert purchase.verification_attempts == 1

    @pytest.mark.asyncio
    async def test_fresh_telemetry_passes(self, service) -> None:
        """Scenario: telemetry 1 hour old, trust 80, both attestations."""
        purchase = await advance_to(service, PurchaseStatus.ESCROW_FUNDED)

        result = await service.run_verification(purchase.id, BUYER)

        assert result.passed
        assert result.failure_reasons == ()
        assert purchase.status == PurchaseStatus.VERIFICATION_PASSED
        assert purchase.verification_result["passed"] is True

    @pytest.mark.asyncio
    async def test_retry_after_failure_can_pass(self, service, attestation) -> None:
        attestation.snapshot = healthy_snapshot(has_storage_attestation=False)
        purchase = await advance_to(service, PurchaseStatus.ESCROW_FUNDED)
        await service.run_verification(purchase.id, BUYER)
        assert purchase.status == PurchaseStatus.VERIFICATION_FAILED

        attestation.snapshot = healthy_snapshot()
        result = await service.run_verification(purchase.id, BUYER)

        assert result.passed
        assert purchase.status == PurchaseStatus.VERIFICATION_PASSED
        assert purchase.verification_attempts == 2

    @pytest.mark.asyncio
    async def test_attempts_are_capped(self, service, attestation, settings) -> None:
        attestation.snapshot = healthy_snapshot(trust_score=10)
        purchase = await advance_to(service, PurchaseStatus.ESCROW_FUNDED)

        for _ in range(settings.max_verification_attempts):
            await service.run_verification(purchase.id, BUYER)

        with pytest.raises(VerificationAttemptsExhaustedError):
            await service.run_verification(purchase.id, BUYER)
        assert attestation.calls == settings.max_verification_attempts
        assert purchase.status == PurchaseStatus.VERIFICATION_FAILED

    @pytest.mark.asyncio
    async def test_source_timeout_records_nothing(self, service, attestation) -> None:
        purchase = await advance_to(service, PurchaseStatus.ESCROW_FUNDED)
        attestation.delay_seconds = 2

        with pytest.raises(VerificationUnavailableError):
            await service.run_verification(purchase.id, BUYER)

        reloaded = await service.get_request(purchase.id)
        assert reloaded.status == PurchaseStatus.ESCROW_FUNDED
        assert reloaded.verification_result is None
        assert reloaded.verification_attempts == 0

    @pytest.mark.asyncio
    async def test_source_error_is_wrapped(self, service, attestation) -> None:
        purchase = await advance_to(service, PurchaseStatus.ESCROW_FUNDED)
        attestation.error = ConnectionError("registry down")

        with pytest.raises(VerificationUnavailableError, match="registry down"):
            await service.run_verification(purchase.id, BUYER)
        assert purchase.status == PurchaseStatus.ESCROW_FUNDED

    @pytest.mark.asyncio
    async def test_naive_telemetry_timestamp_is_unavailable(self, service, attestation) -> None:
        attestation.snapshot = healthy_snapshot(
            last_telemetry_at=(NOW - timedelta(hours=1)).replace(tzinfo=None)
        )
        purchase = await advance_to(service, PurchaseStatus.ESCROW_FUNDED)

        with pytest.raises(VerificationUnavailableError, match="without a timezone"):
            await service.run_verification(purchase.id, BUYER)
        assert purchase.status == PurchaseStatus.ESCROW_FUNDED
        assert purchase.verification_attempts == 0

    @pytest.mark.asyncio
    async def test_telemetry_from_the_future_fails(self, service, attestation) -> None:
        attestation.snapshot = healthy_snapshot(last_telemetry_at=NOW + timedelta(hours=48))
        purchase = await advance_to(service, PurchaseStatus.ESCROW_FUNDED)

        result = await service.run_verification(purchase.id, BUYER)

        assert not result.telemetry_check
        assert list(result.failure_reasons) == [REASON_FUTURE_TELEMETRY]
        assert purchase.status == PurchaseStatus.VERIFICATION_FAILED

    @pytest.mark.asyncio
    async def test_verify_before_funding_is_invalid(self, service, attestation) -> None:
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)
        with pytest.raises(InvalidTransitionError):
            await service.run_verification(purchase.id, BUYER)
        assert attestation.calls == 0

    @pytest.mark.asyncio
    async def test_only_buyer_verifies(self, service) -> None:
        purchase = await advance_to(service, PurchaseStatus.ESCROW_FUNDED)
        with pytest.raises(ForbiddenError):
            await service.run_verification(purchase.id, SELLER)


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending_request(self, service) -> None:
        purchase = await open_request(service)
        await service.cancel(purchase.id, BUYER, reason="found another car")
        assert purchase.status == PurchaseStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_after_failed_verification_refunds(self, service, session, attestation) -> None:
        attestation.snapshot = healthy_snapshot(has_ledger_attestation=False)
        purchase = await advance_to(service, PurchaseStatus.VERIFICATION_FAILED)

        await service.cancel(purchase.id, BUYER)

        escrow = await EscrowLedger(session).get(purchase)
        assert purchase.status == PurchaseStatus.CANCELLED
        assert escrow.status == EscrowStatus.REFUNDED
        assert escrow.refunded_at is not None

        events = await service.get_events(purchase.id)
        assert events[-1].event_type == EventType.REQUEST_CANCELLED
        assert events[-1].metadata_json["escrow_refunded"] is True

    @pytest.mark.asyncio
    async def test_cannot_cancel_while_funded_and_unverified(self, service) -> None:
        purchase = await advance_to(service, PurchaseStatus.ESCROW_FUNDED)
        with pytest.raises(InvalidTransitionError):
            await service.cancel(purchase.id, BUYER)

    @pytest.mark.asyncio
    async def test_only_buyer_cancels(self, service) -> None:
        purchase = await open_request(service)
        with pytest.raises(ForbiddenError):
            await service.cancel(purchase.id, SELLER)


class TestMessages:
    @pytest.mark.asyncio
    async def test_participants_post_in_order(self, service) -> None:
        purchase = await open_request(service)
        await service.post_message(purchase.id, SELLER, "Can you do 4.8L?")
        await service.post_message(purchase.id, BUYER, "Let me think")

        reloaded = await service.get_request(purchase.id)
        assert [m.sender_id for m in reloaded.messages] == [SELLER, BUYER]

    @pytest.mark.asyncio
    async def test_stranger_cannot_post(self, service) -> None:
        purchase = await open_request(service)
        with pytest.raises(ForbiddenError):
            await service.post_message(purchase.id, STRANGER, "hello")

    @pytest.mark.asyncio
    async def test_closed_request_takes_no_messages(self, service) -> None:
        purchase = await open_request(service)
        await service.respond(purchase.id, SELLER, RespondAction.REJECT)
        with pytest.raises(InvalidTransitionError):
            await service.post_message(purchase.id, BUYER, "why?")


class TestReads:
    @pytest.mark.asyncio
    async def test_list_by_role(self, service) -> None:
        mine = await open_request(service)
        other = await open_request(service, vehicle_id="veh-other", buyer_id="buyer-2")

        as_buyer = await service.list_requests(BUYER, role=ParticipantRole.BUYER)
        as_seller = await service.list_requests(SELLER, role=ParticipantRole.SELLER)

        assert [p.id for p in as_buyer] == [mine.id]
        assert {p.id for p in as_seller} == {mine.id, other.id}

    @pytest.mark.asyncio
    async def test_list_by_status(self, service) -> None:
        accepted = await advance_to(service, PurchaseStatus.ACCEPTED)
        await open_request(service, vehicle_id="veh-other")

        found = await service.list_requests(BUYER, status=PurchaseStatus.ACCEPTED)
        assert [p.id for p in found] == [accepted.id]

    @pytest.mark.asyncio
    async def test_status_lists_allowed_events(self, service) -> None:
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)
        status = await service.get_status(purchase.id)

        assert status["status"] == "accepted"
        assert set(status["allowed_events"]) == {"fund_escrow", "cancel"}
        assert status["max_verification_attempts"] == 3

    @pytest.mark.asyncio
    async def test_unknown_vehicle_has_empty_history(self, service) -> None:
        assert await service.get_ownership_history("veh-never-sold") == []

    @pytest.mark.asyncio
    async def test_events_for_unknown_request(self, service) -> None:
        with pytest.raises(PurchaseRequestNotFoundError):
            await service.get_events(uuid.uuid4())


class TestNotifications:
    @pytest.mark.asyncio
    async def test_every_transition_notifies(self, service, notifier) -> None:
        purchase = await advance_to(service, PurchaseStatus.VERIFICATION_PASSED)
        await service.commit()
        assert [status for _, status in notifier.sent] == [
            "pending_seller",
            "accepted",
            "escrow_funded",
            "verification_passed",
        ]
        assert all(pid == purchase.id for pid, _ in notifier.sent)

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_undo_transition(self, service, notifier) -> None:
        notifier.fail = True
        purchase = await open_request(service)
        await service.respond(purchase.id, SELLER, RespondAction.ACCEPT)
        await service.commit()

        reloaded = await service.get_request(purchase.id)
        assert reloaded.status == PurchaseStatus.ACCEPTED
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_nothing_is_sent_before_commit(self, service, notifier) -> None:
        purchase = await open_request(service)
        await service.respond(purchase.id, SELLER, RespondAction.ACCEPT)

        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_rolled_back_transition_sends_nothing(self, service, notifier) -> None:
        purchase = await open_request(service)
        purchase_id = purchase.id
        await service.commit()

        await service.respond(purchase_id, SELLER, RespondAction.ACCEPT)
        await service.rollback()
        await service.commit()

        assert notifier.sent == [(purchase_id, "pending_seller")]
        reloaded = await service.get_request(purchase_id)
        assert reloaded.status == PurchaseStatus.PENDING_SELLER

    @pytest.mark.asyncio
    async def test_failed_commit_sends_nothing(self, service, session, notifier, monkeypatch) -> None:
        async def failing_commit() -> None:
            raise RuntimeError("database connection lost")

        purchase = await open_request(service)
        await service.respond(purchase.id, SELLER, RespondAction.ACCEPT)
        monkeypatch.setattr(session, "commit", failing_commit)

        with pytest.raises(RuntimeError, match="connection lost"):
            await service.commit()
        assert notifier.sent == []


class TestStaleWrites:
    @pytest.mark.asyncio
    async def test_lost_compare_and_set_is_invalid_transition(self, service, session) -> None:
        from sqlalchemy import update

        from vehicle_escrow.infrastructure.database.orm_models import PurchaseRequest

        purchase = await open_request(service)
        # Another writer moves the row after this caller read it.
        await session.execute(
            update(PurchaseRequest)
            .where(PurchaseRequest.id == purchase.id)
            .values(status=PurchaseStatus.REJECTED.value)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(InvalidTransitionError):
            await service._commit_transition(
                purchase,
                PurchaseStatus.PENDING_SELLER,
                PurchaseStatus.ACCEPTED,
                "accept",
                EventType.OFFER_ACCEPTED,
                SELLER,
            )
        assert purchase.status == PurchaseStatus.REJECTED

        events = await service.get_events(purchase.id)
        assert [e.event_type for e in events] == [EventType.REQUEST_CREATED]
