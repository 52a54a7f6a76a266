"""Verification Evaluator.

Runs the fixed battery of pre-transfer checks against a vehicle attestation
snapshot:

    1. telemetry   — a sample exists within the freshness window, not after
                     the evaluation time
    2. trust score — score >= threshold
    3. ledger      — the vehicle state has a ledger attestation
    4. storage     — the record bundle has a storage attestation

The evaluation time is an explicit argument, so the same snapshot evaluated
at the same instant always yields an identical result. Nothing here reads a
clock, a database or the network.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from vehicle_escrow.domain.collaborators import VehicleAttestationSnapshot

REASON_NO_TELEMETRY = "no telemetry"
REASON_STALE_TELEMETRY = "stale telemetry"
REASON_FUTURE_TELEMETRY = "telemetry timestamp in the future"
REASON_LOW_TRUST_SCORE = "trust score below threshold"
REASON_NO_LEDGER_ATTESTATION = "missing ledger attestation"
REASON_NO_STORAGE_ATTESTATION = "missing storage attestation"


@dataclass(frozen=True)
class VerificationPolicy:
    """Thresholds applied by the evaluator."""

    trust_score_threshold: float = 50
    telemetry_freshness: timedelta = timedelta(hours=24)


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one verification run.

    Attributes:
        telemetry_check: Telemetry is fresh.
        trust_score_check: Trust score meets the threshold.
        ledger_check: Ledger attestation present.
        storage_check: Storage attestation present.
        failure_reasons: One entry per failing check, in check order.
        verified_at: The evaluation time.
    """

    telemetry_check: bool
    trust_score_check: bool
    ledger_check: bool
    storage_check: bool
    verified_at: datetime
    failure_reasons: tuple[str, ...] = field(default_factory=tuple)

    @property
    def passed(self) -> bool:
        return (
            self.telemetry_check
            and self.trust_score_check
            and self.ledger_check
            and self.storage_check
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage in the verification_result JSON column."""
        return {
            "telemetry_check": self.telemetry_check,
            "trust_score_check": self.trust_score_check,
            "ledger_check": self.ledger_check,
            "storage_check": self.storage_check,
            "passed": self.passed,
            "failure_reasons": list(self.failure_reasons),
            "verified_at": self.verified_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationResult:
        return cls(
            telemetry_check=bool(data["telemetry_check"]),
            trust_score_check=bool(data["trust_score_check"]),
            ledger_check=bool(data["ledger_check"]),
            storage_check=bool(data["storage_check"]),
            failure_reasons=tuple(data.get("failure_reasons") or ()),
            verified_at=datetime.fromisoformat(data["verified_at"]),
        )


def evaluate_vehicle(
    snapshot: VehicleAttestationSnapshot,
    evaluated_at: datetime,
    policy: VerificationPolicy | None = None,
) -> VerificationResult:
    """Evaluate all four checks against ``snapshot`` as of ``evaluated_at``."""
    policy = policy or VerificationPolicy()
    reasons: list[str] = []

    if snapshot.last_telemetry_at is None:
        telemetry_check = False
        reasons.append(REASON_NO_TELEMETRY)
    else:
        age = evaluated_at - snapshot.last_telemetry_at
        telemetry_check = timedelta(0) <= age <= policy.telemetry_freshness
        if age < timedelta(0):
            reasons.append(REASON_FUTURE_TELEMETRY)
        elif not telemetry_check:
            reasons.append(REASON_STALE_TELEMETRY)

    trust_score_check = snapshot.trust_score >= policy.trust_score_threshold
    if not trust_score_check:
        reasons.append(REASON_LOW_TRUST_SCORE)

    ledger_check = bool(snapshot.has_ledger_attestation)
    if not ledger_check:
        reasons.append(REASON_NO_LEDGER_ATTESTATION)

    storage_check = bool(snapshot.has_storage_attestation)
    if not storage_check:
        reasons.append(REASON_NO_STORAGE_ATTESTATION)

    return VerificationResult(
        telemetry_check=telemetry_check,
        trust_score_check=trust_score_check,
        ledger_check=ledger_check,
        storage_check=storage_check,
        failure_reasons=tuple(reasons),
        verified_at=evaluated_at,
    )
