"""Ownership Transfer Executor.

Runs the side effects of completing a sale, in order:

    1. anchor    — record the transfer on the external ledger
    2. sale      — persist the SaleRecord
    3. release   — release the escrow to the seller
    4. ownership — close the seller's open history entry, open the buyer's

Every step is safe to re-run for the same purchase request:
    - the anchor call carries the idempotency key
      ``ownership-transfer:<purchase request id>``
    - an existing SaleRecord is reused, never duplicated
    - releasing a released escrow is a no-op
    - an ownership roll that already happened is detected and skipped

The executor does not change the purchase request status; PurchaseService
runs it inside a savepoint together with the transfer_pending -> sold write.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from vehicle_escrow.domain.exceptions import TransferFailedError
from vehicle_escrow.infrastructure.database.orm_models import OwnershipHistoryEntry, SaleRecord
from vehicle_escrow.infrastructure.database.repositories import (
    OwnershipHistoryRepository,
    SaleRecordRepository,
)
from vehicle_escrow.logging_config import get_logger
from vehicle_escrow.services.escrow_ledger import EscrowLedger
from vehicle_escrow.services.verification_service import utcnow

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from vehicle_escrow.domain.collaborators import AnchorReceipt, AnchorService
    from vehicle_escrow.infrastructure.database.orm_models import PurchaseRequest

logger = get_logger(__name__)


def transfer_idempotency_key(purchase: PurchaseRequest) -> str:
    return f"ownership-transfer:{purchase.id}"


class OwnershipTransferExecutor:
    """Anchors, records and settles one sale."""

    def __init__(
        self,
        session: AsyncSession,
        anchor_service: AnchorService,
        anchor_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._anchor = anchor_service
        self._anchor_timeout = anchor_timeout_seconds
        self._clock = clock
        self._ledger = EscrowLedger(session)
        self._sale_repo = SaleRecordRepository(session)
        self._history_repo = OwnershipHistoryRepository(session)

    async def execute(self, purchase: PurchaseRequest) -> SaleRecord:
        """Run all four steps for ``purchase`` and return its SaleRecord.

        Raises:
            TransferFailedError: The anchor service failed or timed out.
        """
        receipt = await self._anchor_transfer(purchase)
        transferred_at = self._clock()

        sale = await self._get_or_create_sale_record(purchase, receipt, transferred_at)
        await self._ledger.release(purchase)
        await self._roll_ownership(purchase, sale, receipt, transferred_at)

        logger.info(
            "transfer.executed",
            purchase_request_id=str(purchase.id),
            sale_record_id=str(sale.id),
            tx_reference=receipt.tx_reference,
            simulated=receipt.simulated,
        )
        return sale

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _anchor_transfer(self, purchase: PurchaseRequest) -> AnchorReceipt:
        try:
            async with asyncio.timeout(self._anchor_timeout):
                return await self._anchor.anchor_ownership_transfer(
                    request_idem_key=transfer_idempotency_key(purchase),
                    vehicle_id=purchase.vehicle_id,
                    buyer_id=purchase.buyer_id,
                    seller_id=purchase.seller_id,
                    final_price=purchase.agreed_price,
                )
        except TimeoutError as exc:
            logger.warning(
                "transfer.anchor_timeout",
                purchase_request_id=str(purchase.id),
                timeout_seconds=self._anchor_timeout,
            )
            raise TransferFailedError(
                str(purchase.id), "anchor", f"anchor service timed out after {self._anchor_timeout}s"
            ) from exc
        except Exception as exc:
            logger.warning(
                "transfer.anchor_failed",
                purchase_request_id=str(purchase.id),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise TransferFailedError(
                str(purchase.id), "anchor", str(exc) or type(exc).__name__
            ) from exc

    async def _get_or_create_sale_record(
        self,
        purchase: PurchaseRequest,
        receipt: AnchorReceipt,
        transferred_at: datetime,
    ) -> SaleRecord:
        existing = await self._sale_repo.get_by_purchase_request(purchase.id)
        if existing is not None:
            return existing

        escrow = await self._ledger.get(purchase)
        return await self._sale_repo.create(
            SaleRecord(
                purchase_request_id=purchase.id,
                listing_id=purchase.listing_id,
                vehicle_id=purchase.vehicle_id,
                buyer_id=purchase.buyer_id,
                seller_id=purchase.seller_id,
                final_price=purchase.agreed_price,
                ledger_tx_reference=receipt.tx_reference,
                simulated=receipt.simulated,
                ownership_transferred_at=transferred_at,
                metadata_json={
                    "escrow_id": str(escrow.id) if escrow is not None else None,
                    "verification_result": purchase.verification_result,
                },
            )
        )

    async def _roll_ownership(
        self,
        purchase: PurchaseRequest,
        sale: SaleRecord,
        receipt: AnchorReceipt,
        transferred_at: datetime,
    ) -> None:
        open_entry = await self._history_repo.get_open_entry(purchase.vehicle_id)
        if open_entry is not None and open_entry.sale_record_id == sale.id:
            return

        if open_entry is not None:
            # Closed and flushed first: at most one open entry per vehicle.
            await self._history_repo.close(open_entry, transferred_at)

        await self._history_repo.append(
            OwnershipHistoryEntry(
                vehicle_id=purchase.vehicle_id,
                owner_user_id=purchase.buyer_id,
                from_date=transferred_at,
                tx_hash=receipt.tx_reference,
                sale_record_id=sale.id,
                note=f"Purchased from {purchase.seller_id} via listing {purchase.listing_id}",
            )
        )
