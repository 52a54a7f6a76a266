"""Escrow Ledger — custody record of one purchase request.

Funding is idempotent by funding reference:
    - same reference again        -> the original escrow, unchanged
    - a different reference later -> AlreadyFundedError
    - two first calls racing      -> the unique constraint on
      escrows.purchase_request_id lets exactly one insert win; the loser
      re-reads and falls into one of the two rules above.

Only PurchaseService calls into this class; it never changes the purchase
request's status itself.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError
from statemachine.exceptions import TransitionNotAllowed

from vehicle_escrow.domain.enums import EscrowStatus
from vehicle_escrow.domain.exceptions import (
    AlreadyFundedError,
    AmountMismatchError,
    FundingReferenceConflictError,
    InvalidEscrowStateError,
    InvalidTransitionError,
)
from vehicle_escrow.domain.state_machine import validate_transition
from vehicle_escrow.infrastructure.database.orm_models import Escrow
from vehicle_escrow.infrastructure.database.repositories import EscrowRepository
from vehicle_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from vehicle_escrow.infrastructure.database.orm_models import PurchaseRequest

logger = get_logger(__name__)


class EscrowLedger:
    """Creates, funds, releases and refunds escrows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._escrow_repo = EscrowRepository(session)

    async def get(self, purchase: PurchaseRequest) -> Escrow | None:
        return await self._escrow_repo.get_by_purchase_request(purchase.id)

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def fund(
        self,
        purchase: PurchaseRequest,
        amount: Decimal,
        funding_reference: str,
    ) -> tuple[Escrow, bool]:
        """Fund the escrow of ``purchase``.

        Returns:
            ``(escrow, created)``; ``created`` is False for an idempotent replay.

        Raises:
            AlreadyFundedError: An escrow exists under a different reference.
            InvalidTransitionError: The request is not in a fundable status.
            AmountMismatchError: ``amount`` differs from the agreed price.
        """
        existing = await self._escrow_repo.get_by_purchase_request(purchase.id)
        if existing is not None:
            return self._replay(purchase, existing, funding_reference), False

        try:
            validate_transition(purchase.status, "fund_escrow")
        except TransitionNotAllowed as err:
            raise InvalidTransitionError(purchase.status, "fund_escrow") from err

        if amount != purchase.agreed_price:
            logger.info(
                "escrow.amount_mismatch",
                purchase_request_id=str(purchase.id),
                expected=str(purchase.agreed_price),
                received=str(amount),
            )
            raise AmountMismatchError(expected=str(purchase.agreed_price), received=str(amount))

        try:
            async with self._session.begin_nested():
                escrow = await self._escrow_repo.create(
                    Escrow(
                        purchase_request_id=purchase.id,
                        amount=amount,
                        funding_reference=funding_reference,
                        status=EscrowStatus.PENDING.value,
                    )
                )
                await self._escrow_repo.update_status(
                    escrow, EscrowStatus.FUNDED, funded_at=datetime.now(UTC)
                )
        except IntegrityError as err:
            winner = await self._escrow_repo.get_by_purchase_request(purchase.id)
            if winner is None:
                # The reference is taken by another purchase request.
                raise FundingReferenceConflictError(funding_reference) from err
            logger.info(
                "escrow.funding_race_lost",
                purchase_request_id=str(purchase.id),
                funding_reference=funding_reference,
            )
            return self._replay(purchase, winner, funding_reference), False

        logger.info(
            "escrow.funded",
            purchase_request_id=str(purchase.id),
            escrow_id=str(escrow.id),
            amount=str(amount),
            funding_reference=funding_reference,
        )
        return escrow, True

    def _replay(self, purchase: PurchaseRequest, escrow: Escrow, funding_reference: str) -> Escrow:
        if escrow.funding_reference != funding_reference:
            raise AlreadyFundedError(str(purchase.id))
        logger.info(
            "escrow.funding_replayed",
            purchase_request_id=str(purchase.id),
            escrow_id=str(escrow.id),
            funding_reference=funding_reference,
        )
        return escrow

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def release(self, purchase: PurchaseRequest) -> Escrow:
        """Release custody to the seller. Re-running on a released escrow is a no-op."""
        escrow = await self._escrow_repo.get_by_purchase_request(purchase.id)
        if escrow is not None and escrow.status == EscrowStatus.RELEASED:
            return escrow
        if escrow is None or escrow.status != EscrowStatus.FUNDED:
            self._invariant_violation(purchase, escrow, "release")

        await self._escrow_repo.update_status(
            escrow, EscrowStatus.RELEASED, released_at=datetime.now(UTC)
        )
        logger.info("escrow.released", purchase_request_id=str(purchase.id), escrow_id=str(escrow.id))
        return escrow

    async def refund(self, purchase: PurchaseRequest) -> Escrow:
        """Return custody to the buyer. Re-running on a refunded escrow is a no-op."""
        escrow = await self._escrow_repo.get_by_purchase_request(purchase.id)
        if escrow is not None and escrow.status == EscrowStatus.REFUNDED:
            return escrow
        if escrow is None or escrow.status != EscrowStatus.FUNDED:
            self._invariant_violation(purchase, escrow, "refund")

        await self._escrow_repo.update_status(
            escrow, EscrowStatus.REFUNDED, refunded_at=datetime.now(UTC)
        )
        logger.info("escrow.refunded", purchase_request_id=str(purchase.id), escrow_id=str(escrow.id))
        return escrow

    def _invariant_violation(
        self, purchase: PurchaseRequest, escrow: Escrow | None, operation: str
    ) -> None:
        current = escrow.status if escrow is not None else None
        logger.error(
            "escrow.invalid_state",
            purchase_request_id=str(purchase.id),
            operation=operation,
            escrow_status=current,
        )
        raise InvalidEscrowStateError(str(purchase.id), current, operation)
