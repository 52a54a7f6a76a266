"""Application services — use case orchestration."""

from vehicle_escrow.services.escrow_ledger import EscrowLedger
from vehicle_escrow.services.purchase_service import PurchaseService
from vehicle_escrow.services.transfer_executor import OwnershipTransferExecutor
from vehicle_escrow.services.verification_service import VerificationService

__all__ = ["EscrowLedger", "OwnershipTransferExecutor", "PurchaseService", "VerificationService"]
