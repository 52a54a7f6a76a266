"""Tests for EscrowLedger custody rules."""

from __future__ import annotations

from decimal import Decimal

import pytest
from conftest import OFFER, advance_to

from vehicle_escrow.domain.enums import EscrowStatus, PurchaseStatus
from vehicle_escrow.domain.exceptions import (
    AlreadyFundedError,
    FundingReferenceConflictError,
    InvalidEscrowStateError,
)
from vehicle_escrow.infrastructure.database.orm_models import Escrow
from vehicle_escrow.services.escrow_ledger import EscrowLedger


@pytest.fixture
def ledger(session) -> EscrowLedger:
    return EscrowLedger(session)


class TestFund:
    @pytest.mark.asyncio
    async def test_creates_funded_escrow(self, service, ledger) -> None:
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)

        escrow, created = await ledger.fund(purchase, OFFER, "F1")

        assert created
        assert escrow.status == EscrowStatus.FUNDED
        assert escrow.amount == OFFER
        assert escrow.funded_at is not None

    @pytest.mark.asyncio
    async def test_replay_returns_original(self, service, ledger) -> None:
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)
        original, _ = await ledger.fund(purchase, OFFER, "F1")

        replayed, created = await ledger.fund(purchase, OFFER, "F1")

        assert not created
        assert replayed.id == original.id

    @pytest.mark.asyncio
    async def test_replay_ignores_amount(self, service, ledger) -> None:
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)
        original, _ = await ledger.fund(purchase, OFFER, "F1")

        replayed, _ = await ledger.fund(purchase, Decimal("1.00"), "F1")
        assert replayed.id == original.id
        assert replayed.amount == OFFER

    @pytest.mark.asyncio
    async def test_second_reference_rejected(self, service, ledger) -> None:
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)
        await ledger.fund(purchase, OFFER, "F1")

        with pytest.raises(AlreadyFundedError):
            await ledger.fund(purchase, OFFER, "F2")

    @pytest.mark.asyncio
    async def test_lost_insert_race_replays_winner(self, service, ledger, session) -> None:
        """A row inserted by a concurrent caller after the initial read wins the unique constraint."""
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)
        winner = Escrow(
            purchase_request_id=purchase.id,
            amount=OFFER,
            funding_reference="F1",
            status=EscrowStatus.FUNDED.value,
        )

        original_get = ledger._escrow_repo.get_by_purchase_request
        calls = 0

        async def get_after_concurrent_insert(purchase_request_id):
            nonlocal calls
            calls += 1
            if calls == 1:
                session.add(winner)
                await session.flush()
                return None
            return await original_get(purchase_request_id)

        ledger._escrow_repo.get_by_purchase_request = get_after_concurrent_insert

        escrow, created = await ledger.fund(purchase, OFFER, "F1")

        assert not created
        assert escrow.id == winner.id

    @pytest.mark.asyncio
    async def test_reference_reused_across_requests(self, service, ledger) -> None:
        first = await advance_to(service, PurchaseStatus.ACCEPTED)
        second = await advance_to(service, PurchaseStatus.ACCEPTED, vehicle_id="veh-other")
        await ledger.fund(first, OFFER, "F1")

        with pytest.raises(FundingReferenceConflictError):
            await ledger.fund(second, OFFER, "F1")


class TestSettlement:
    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, service, ledger) -> None:
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)
        await ledger.fund(purchase, OFFER, "F1")

        released = await ledger.release(purchase)
        first_released_at = released.released_at
        again = await ledger.release(purchase)

        assert again.status == EscrowStatus.RELEASED
        assert again.released_at == first_released_at

    @pytest.mark.asyncio
    async def test_refund_is_idempotent(self, service, ledger) -> None:
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)
        await ledger.fund(purchase, OFFER, "F1")

        await ledger.refund(purchase)
        refunded = await ledger.refund(purchase)
        assert refunded.status == EscrowStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_release_after_refund_is_invariant_violation(self, service, ledger) -> None:
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)
        await ledger.fund(purchase, OFFER, "F1")
        await ledger.refund(purchase)

        with pytest.raises(InvalidEscrowStateError):
            await ledger.release(purchase)

    @pytest.mark.asyncio
    async def test_release_without_escrow_is_invariant_violation(self, service, ledger) -> None:
        purchase = await advance_to(service, PurchaseStatus.ACCEPTED)
        with pytest.raises(InvalidEscrowStateError, match="missing"):
            await ledger.release(purchase)
