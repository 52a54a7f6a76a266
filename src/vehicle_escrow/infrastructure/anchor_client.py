"""Anchor client — records ownership transfers on the external ledger.

Provides both a real HTTP integration and a simulated mode for running
without a ledger.

In simulation mode, generates ``sim_`` references. The reference for an
idempotency key is remembered (in Redis when it is connected, otherwise in
this process) so a retried transfer gets the same reference back.
In production mode, POSTs to the anchor service with an ``Idempotency-Key``
header and relies on the service's own replay guarantee.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from vehicle_escrow.config import get_settings
from vehicle_escrow.domain.collaborators import AnchorReceipt
from vehicle_escrow.infrastructure import redis_client
from vehicle_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from decimal import Decimal

logger = get_logger(__name__)


class AnchorClient:
    """Satisfies the AnchorService protocol."""

    def __init__(self, simulate: bool = True, base_url: str | None = None) -> None:
        """Initialize the anchor client.

        Args:
            simulate: If True, generate references locally instead of calling the ledger.
            base_url: Anchor service URL; defaults to ``anchor_service_url``.
        """
        self._simulate = simulate
        self._base_url = base_url or get_settings().anchor_service_url
        self._local_references: dict[str, str] = {}

    async def anchor_ownership_transfer(
        self,
        request_idem_key: str,
        vehicle_id: str,
        buyer_id: str,
        seller_id: str,
        final_price: Decimal,
    ) -> AnchorReceipt:
        if self._simulate:
            return await self._simulate_anchor(request_idem_key, vehicle_id, buyer_id, seller_id)

        tx_reference = await self._post_anchor(
            request_idem_key,
            {
                "vehicle_id": vehicle_id,
                "buyer_id": buyer_id,
                "seller_id": seller_id,
                "final_price": str(final_price),
            },
        )
        logger.info(
            "anchor.transfer_recorded",
            vehicle_id=vehicle_id,
            tx_reference=tx_reference,
            simulated=False,
        )
        return AnchorReceipt(tx_reference=tx_reference, simulated=False)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        reraise=True,
    )
    async def _post_anchor(self, request_idem_key: str, body: dict) -> str:
        """POST the transfer. Safe to retry: the service replays by Idempotency-Key."""
        async with httpx.AsyncClient(base_url=self._base_url) as client:
            response = await client.post(
                "/anchors/ownership-transfers",
                headers={"Idempotency-Key": request_idem_key},
                json=body,
            )
            response.raise_for_status()
        return response.json()["tx_reference"]

    async def _simulate_anchor(
        self, request_idem_key: str, vehicle_id: str, buyer_id: str, seller_id: str
    ) -> AnchorReceipt:
        candidate = f"sim_{uuid.uuid4().hex}"
        if redis_client.redis_available():
            tx_reference = await redis_client.remember_idempotent_result(request_idem_key, candidate)
        else:
            tx_reference = self._local_references.setdefault(request_idem_key, candidate)

        logger.info(
            "anchor.transfer_simulated",
            vehicle_id=vehicle_id,
            from_owner=seller_id,
            to_owner=buyer_id,
            tx_reference=tx_reference,
            replayed=tx_reference != candidate,
        )
        return AnchorReceipt(tx_reference=tx_reference, simulated=True)
