"""Vehicle read routes.

Routes:
    GET    /api/v1/vehicles/{vehicle_id}/ownership-history — Ownership timeline
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from vehicle_escrow.api.deps import get_purchase_service
from vehicle_escrow.schemas.purchase import OwnershipHistoryEntryResponse
from vehicle_escrow.services.purchase_service import PurchaseService  # noqa: TC001

router = APIRouter(prefix="/api/v1/vehicles", tags=["Vehicles"])


@router.get(
    "/{vehicle_id}/ownership-history",
    response_model=list[OwnershipHistoryEntryResponse],
    summary="Get ownership history",
)
async def get_ownership_history(
    vehicle_id: str,
    svc: PurchaseService = Depends(get_purchase_service),
) -> list[OwnershipHistoryEntryResponse]:
    """Oldest owner first; the current owner's entry has no to_date. Unknown vehicles return []."""
    entries = await svc.get_ownership_history(vehicle_id)
    return [OwnershipHistoryEntryResponse.model_validate(e) for e in entries]
