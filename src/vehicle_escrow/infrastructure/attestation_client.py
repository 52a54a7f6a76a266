"""HTTP client for the vehicle attestation service.

The attestation service aggregates the vehicle registry (trust score), the
telemetry store (latest sample) and the ledger/storage indexers. This client
only reads; it satisfies the AttestationSource protocol.

Expected response of ``GET /vehicles/{vehicle_id}/attestation``:
    {"trust_score": 80, "last_telemetry_at": "2026-10-18T09:00:00Z",
     "has_ledger_attestation": true, "has_storage_attestation": true}

A ``last_telemetry_at`` without a UTC offset fails validation.
"""

from __future__ import annotations

import httpx
from pydantic import AwareDatetime, BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from vehicle_escrow.config import get_settings
from vehicle_escrow.domain.collaborators import VehicleAttestationSnapshot
from vehicle_escrow.logging_config import get_logger

logger = get_logger(__name__)


class _AttestationPayload(BaseModel):
    trust_score: float = Field(ge=0, le=100)
    last_telemetry_at: AwareDatetime | None = None
    has_ledger_attestation: bool = False
    has_storage_attestation: bool = False


class HttpAttestationSource:
    """Reads attestation snapshots over HTTP."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None) -> None:
        settings = get_settings()
        self._base_url = base_url or settings.attestation_service_url
        self._timeout = timeout if timeout is not None else settings.attestation_timeout_seconds

    async def get_vehicle_attestation_snapshot(self, vehicle_id: str) -> VehicleAttestationSnapshot:
        payload = await self._fetch(vehicle_id)
        logger.debug(
            "attestation.snapshot_read",
            vehicle_id=vehicle_id,
            trust_score=payload.trust_score,
        )
        return VehicleAttestationSnapshot(
            vehicle_id=vehicle_id,
            trust_score=payload.trust_score,
            last_telemetry_at=payload.last_telemetry_at,
            has_ledger_attestation=payload.has_ledger_attestation,
            has_storage_attestation=payload.has_storage_attestation,
        )

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=1),
        reraise=True,
    )
    async def _fetch(self, vehicle_id: str) -> _AttestationPayload:
        """GET the attestation, retrying connection-level failures."""
        async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout) as client:
            response = await client.get(f"/vehicles/{vehicle_id}/attestation")
            response.raise_for_status()
        return _AttestationPayload.model_validate(response.json())
