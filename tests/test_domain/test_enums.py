"""Tests for domain enumerations."""

from __future__ import annotations

from vehicle_escrow.domain.enums import (
    TERMINAL_STATUSES,
    EscrowStatus,
    EventType,
    PurchaseStatus,
    RespondAction,
)


class TestPurchaseStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {
            "pending_seller", "accepted", "rejected", "counter_offer",
            "escrow_funded", "verification_passed", "verification_failed",
            "transfer_pending", "sold", "cancelled",
        }
        actual = {s.value for s in PurchaseStatus}
        assert actual == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(PurchaseStatus.ACCEPTED, str)
        assert PurchaseStatus.ACCEPTED == "accepted"

    def test_terminal_statuses(self) -> None:
        assert {s.value for s in TERMINAL_STATUSES} == {"rejected", "sold", "cancelled"}
        assert PurchaseStatus.SOLD.is_terminal
        assert not PurchaseStatus.TRANSFER_PENDING.is_terminal


class TestEscrowStatus:
    def test_custody_states(self) -> None:
        assert [s.value for s in EscrowStatus] == ["pending", "funded", "released", "refunded"]


class TestEventType:
    def test_all_event_types_exist(self) -> None:
        # 4 negotiation + 1 custody + 2 verification + 2 transfer + 1 exit
        assert len(EventType) == 10

    def test_event_type_is_str_enum(self) -> None:
        assert isinstance(EventType.ESCROW_FUNDED, str)


class TestRespondAction:
    def test_actions(self) -> None:
        assert RespondAction("counter") is RespondAction.COUNTER
        assert {a.value for a in RespondAction} == {"accept", "reject", "counter"}
