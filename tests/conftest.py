"""Shared test fixtures for the vehicle escrow test suite.

Provides:
    - A fresh in-memory SQLite database per test (aiosqlite, savepoints enabled)
    - Fake collaborators: attestation source, anchor service, notifier
    - A PurchaseService wired to the fakes with a fixed clock
    - Helpers that drive a purchase request to a given status
"""

from __future__ import annotations

import asyncio
import os
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

# Must be set before vehicle_escrow.config is imported anywhere.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("ANCHOR_SIMULATE", "true")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from vehicle_escrow.config import Settings
from vehicle_escrow.domain.collaborators import AnchorReceipt, VehicleAttestationSnapshot
from vehicle_escrow.domain.enums import PurchaseStatus, RespondAction
from vehicle_escrow.infrastructure.database.engine import enable_sqlite_savepoints
from vehicle_escrow.infrastructure.database.orm_models import Base
from vehicle_escrow.services.purchase_service import PurchaseService

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

BUYER = "buyer-ravi"
SELLER = "seller-meera"
STRANGER = "user-outsider"
VEHICLE = "veh-KA01-4521"
LISTING = "lst-00042"
OFFER = Decimal("500000.00")


def fixed_clock() -> datetime:
    return NOW


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


def healthy_snapshot(vehicle_id: str = VEHICLE, **overrides) -> VehicleAttestationSnapshot:
    values = {
        "vehicle_id": vehicle_id,
        "trust_score": 80,
        "last_telemetry_at": NOW - timedelta(hours=1),
        "has_ledger_attestation": True,
        "has_storage_attestation": True,
    }
    values.update(overrides)
    return VehicleAttestationSnapshot(**values)


@dataclass
class FakeAttestationSource:
    """Returns configured snapshots; can fail or stall on demand."""

    snapshot: VehicleAttestationSnapshot = field(default_factory=healthy_snapshot)
    error: Exception | None = None
    delay_seconds: float = 0.0
    calls: int = 0

    async def get_vehicle_attestation_snapshot(self, vehicle_id: str) -> VehicleAttestationSnapshot:
        self.calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error
        return self.snapshot


@dataclass
class FakeAnchorService:
    """Idempotent by key, like the real anchor service. Counts every call."""

    fail_next: int = 0
    delay_seconds: float = 0.0
    calls: list[str] = field(default_factory=list)
    references: dict[str, str] = field(default_factory=dict)

    async def anchor_ownership_transfer(
        self,
        request_idem_key: str,
        vehicle_id: str,
        buyer_id: str,
        seller_id: str,
        final_price: Decimal,
    ) -> AnchorReceipt:
        self.calls.append(request_idem_key)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ConnectionError("anchor service unreachable")
        tx_reference = self.references.setdefault(request_idem_key, f"tx-{uuid.uuid4().hex[:12]}")
        return AnchorReceipt(tx_reference=tx_reference, simulated=True)


@dataclass
class FakeNotifier:
    fail: bool = False
    sent: list[tuple[uuid.UUID, str]] = field(default_factory=list)

    async def notify_status_changed(self, purchase_request_id: uuid.UUID, new_status: str) -> None:
        if self.fail:
            raise RuntimeError("notification backend down")
        self.sent.append((purchase_request_id, new_status))


# ---------------------------------------------------------------------------
# Database Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Service Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        anchor_simulate=True,
        attestation_timeout_seconds=0.5,
        anchor_timeout_seconds=0.5,
        max_verification_attempts=3,
    )


@pytest.fixture
def attestation() -> FakeAttestationSource:
    return FakeAttestationSource()


@pytest.fixture
def anchor() -> FakeAnchorService:
    return FakeAnchorService()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def service(session, attestation, anchor, notifier, settings) -> PurchaseService:
    return PurchaseService(
        session,
        attestation_source=attestation,
        anchor_service=anchor,
        notifier=notifier,
        settings=settings,
        clock=fixed_clock,
    )


# ---------------------------------------------------------------------------
# Scenario helpers
# ---------------------------------------------------------------------------


async def open_request(svc: PurchaseService, offered_price: Decimal = OFFER, **overrides):
    values = {
        "listing_id": LISTING,
        "vehicle_id": VEHICLE,
        "buyer_id": BUYER,
        "seller_id": SELLER,
        "offered_price": offered_price,
    }
    values.update(overrides)
    return await svc.create_request(**values)


async def advance_to(svc: PurchaseService, target: PurchaseStatus, **overrides):
    """Create a request and walk the happy path until it reaches ``target``."""
    purchase = await open_request(svc, **overrides)
    if target == PurchaseStatus.PENDING_SELLER:
        return purchase

    if target == PurchaseStatus.COUNTER_OFFER:
        return await svc.respond(
            purchase.id, purchase.seller_id, RespondAction.COUNTER, counter_price=Decimal("480000.00")
        )

    await svc.respond(purchase.id, purchase.seller_id, RespondAction.ACCEPT)
    if target == PurchaseStatus.ACCEPTED:
        return purchase

    await svc.fund_escrow(purchase.id, purchase.buyer_id, purchase.agreed_price, f"F-{purchase.id}")
    if target == PurchaseStatus.ESCROW_FUNDED:
        return purchase

    await svc.run_verification(purchase.id, purchase.buyer_id)
    if target in (PurchaseStatus.VERIFICATION_PASSED, PurchaseStatus.VERIFICATION_FAILED):
        return purchase

    await svc.init_transfer(purchase.id, purchase.seller_id)
    if target == PurchaseStatus.TRANSFER_PENDING:
        return purchase

    await svc.confirm_transfer(purchase.id, purchase.seller_id)
    return purchase
