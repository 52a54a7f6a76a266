"""Collaborator Protocols.

The core depends on three external services it does not own: the
attestation service (trust score, telemetry, ledger and storage records),
the anchor service (ledger write for ownership transfers) and notification
delivery. They are Protocols (structural subtyping), so HTTP clients,
simulators and test fakes only need to match the shape.

The domain layer has ZERO imports from httpx, Redis or any external service.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    import uuid
    from datetime import datetime
    from decimal import Decimal


@dataclass(frozen=True)
class VehicleAttestationSnapshot:
    """Read-only view of a vehicle's attested state.

    Attributes:
        vehicle_id: The vehicle the snapshot describes.
        trust_score: Trust score on a 0-100 scale.
        last_telemetry_at: Timestamp of the newest telemetry sample, if any.
        has_ledger_attestation: Current mileage/state is confirmed on the ledger.
        has_storage_attestation: The record bundle has a content-storage reference.
    """

    vehicle_id: str
    trust_score: float
    last_telemetry_at: datetime | None
    has_ledger_attestation: bool
    has_storage_attestation: bool


@dataclass(frozen=True)
class AnchorReceipt:
    """Result of anchoring an ownership transfer.

    Attributes:
        tx_reference: Ledger transaction reference; identical on retries with
            the same idempotency key.
        simulated: True when no real ledger write happened.
    """

    tx_reference: str
    simulated: bool = False


@runtime_checkable
class AttestationSource(Protocol):
    """Reads the attestation snapshot of a vehicle."""

    async def get_vehicle_attestation_snapshot(self, vehicle_id: str) -> VehicleAttestationSnapshot:
        ...


@runtime_checkable
class AnchorService(Protocol):
    """Records an ownership transfer on the external ledger.

    Implementations MUST be idempotent by ``request_idem_key``: a retry with
    the same key returns the same reference instead of a second ledger entry.
    """

    async def anchor_ownership_transfer(
        self,
        request_idem_key: str,
        vehicle_id: str,
        buyer_id: str,
        seller_id: str,
        final_price: Decimal,
    ) -> AnchorReceipt:
        ...


@runtime_checkable
class StatusNotifier(Protocol):
    """Fire-and-forget status change notifications."""

    async def notify_status_changed(self, purchase_request_id: uuid.UUID, new_status: str) -> None:
        ...
