"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the acting user, collaborators, and the purchase service.

Collaborators are process-wide singletons; tests replace them through
``app.dependency_overrides``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from functools import lru_cache

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from vehicle_escrow.config import Settings, get_settings
from vehicle_escrow.domain.collaborators import AnchorService, AttestationSource, StatusNotifier
from vehicle_escrow.infrastructure.anchor_client import AnchorClient
from vehicle_escrow.infrastructure.attestation_client import HttpAttestationSource
from vehicle_escrow.infrastructure.database.engine import get_async_session
from vehicle_escrow.infrastructure.notifier import LogStatusNotifier
from vehicle_escrow.services.purchase_service import PurchaseService


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_actor_id(
    x_actor_id: str = Header(
        ...,
        alias="X-Actor-ID",
        min_length=1,
        max_length=64,
        description="Authenticated user performing the call",
    ),
) -> str:
    """Provide the acting user from the gateway-authenticated header."""
    return x_actor_id


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


@lru_cache(maxsize=1)
def get_attestation_source() -> AttestationSource:
    """Provide the attestation service client."""
    return HttpAttestationSource()


@lru_cache(maxsize=1)
def get_anchor_service() -> AnchorService:
    """Provide the anchor client (simulated unless ANCHOR_SIMULATE=false)."""
    return AnchorClient(simulate=get_settings().anchor_simulate)


@lru_cache(maxsize=1)
def get_status_notifier() -> StatusNotifier:
    return LogStatusNotifier()


async def get_purchase_service(
    session: AsyncSession = Depends(get_db_session),
    attestation_source: AttestationSource = Depends(get_attestation_source),
    anchor_service: AnchorService = Depends(get_anchor_service),
    notifier: StatusNotifier = Depends(get_status_notifier),
    settings: Settings = Depends(get_app_settings),
) -> AsyncGenerator[PurchaseService, None]:
    """Provide a PurchaseService bound to the current session.

    A handler that returns normally has its work committed here, and the
    status notifications go out after that commit. A handler that raises
    skips this, and the session dependency rolls the work back.
    """
    service = PurchaseService(
        session,
        attestation_source=attestation_source,
        anchor_service=anchor_service,
        notifier=notifier,
        settings=settings,
    )
    yield service
    await service.commit()
