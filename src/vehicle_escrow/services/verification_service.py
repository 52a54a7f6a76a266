"""Verification Service — reads the attestation snapshot and evaluates it.

Coordinates between:
    - AttestationSource (collaborator, bounded by a timeout)
    - evaluate_vehicle (pure evaluator)

Recording the outcome on the purchase request is PurchaseService's job; this
service only produces a VerificationResult or raises
VerificationUnavailableError when the snapshot could not be read.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from vehicle_escrow.domain.exceptions import VerificationUnavailableError
from vehicle_escrow.domain.verification import (
    VerificationPolicy,
    VerificationResult,
    evaluate_vehicle,
)
from vehicle_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from vehicle_escrow.domain.collaborators import AttestationSource

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


class VerificationService:
    """Runs the pre-transfer checks for one vehicle."""

    def __init__(
        self,
        attestation_source: AttestationSource,
        policy: VerificationPolicy | None = None,
        timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._source = attestation_source
        self._policy = policy or VerificationPolicy()
        self._timeout = timeout_seconds
        self._clock = clock

    async def verify_vehicle(self, vehicle_id: str) -> VerificationResult:
        """Read the snapshot and evaluate it as of now.

        Raises:
            VerificationUnavailableError: The attestation source failed, timed out
                or returned a telemetry timestamp without a timezone.
        """
        try:
            async with asyncio.timeout(self._timeout):
                snapshot = await self._source.get_vehicle_attestation_snapshot(vehicle_id)
        except TimeoutError as exc:
            logger.warning(
                "verification.snapshot_timeout",
                vehicle_id=vehicle_id,
                timeout_seconds=self._timeout,
            )
            raise VerificationUnavailableError(
                vehicle_id, f"attestation source timed out after {self._timeout}s"
            ) from exc
        except Exception as exc:
            logger.warning(
                "verification.snapshot_failed",
                vehicle_id=vehicle_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise VerificationUnavailableError(vehicle_id, str(exc) or type(exc).__name__) from exc

        telemetry_at = snapshot.last_telemetry_at
        if telemetry_at is not None and telemetry_at.utcoffset() is None:
            logger.warning(
                "verification.snapshot_naive_timestamp",
                vehicle_id=vehicle_id,
                last_telemetry_at=telemetry_at.isoformat(),
            )
            raise VerificationUnavailableError(
                vehicle_id, "attestation snapshot has a telemetry timestamp without a timezone"
            )

        result = evaluate_vehicle(snapshot, self._clock(), self._policy)
        logger.info(
            "verification.evaluated",
            vehicle_id=vehicle_id,
            passed=result.passed,
            failure_reasons=list(result.failure_reasons),
        )
        return result
