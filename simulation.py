#!/usr/bin/env python3
"""Vehicle Escrow — End-to-End Simulation.

Drives purchase requests through the service layer with BuyerBot and
SellerBot agents:

    Scenario 1: Happy Path
        - Buyer offers, seller counters, buyer accepts the counter
        - Buyer funds escrow, vehicle verifies, seller transfers -> SOLD

    Scenario 2: Stale Telemetry Then Retry
        - Vehicle has not reported for two days -> verification_failed
        - Telemetry arrives, buyer re-runs verification -> passed -> SOLD

    Scenario 3: Retries and Replays
        - Buyer's funding call is replayed with the same reference -> one escrow
        - Anchor service is down on the first confirm -> stays transfer_pending
        - Seller confirms again, then once more -> one sale, one ownership roll

    Scenario 4: Walk Away
        - Vehicle keeps failing verification until attempts run out
        - Buyer cancels -> escrow refunded

Usage:
    # Option A: With Docker (PostgreSQL + attestation service):
    docker compose up -d
    uv run python simulation.py

    # Option B: Without Docker (SQLite in-memory):
    uv run python simulation.py --sqlite

    # Option C: Dry-run (scripted attestations, simulated anchor, no network):
    uv run python simulation.py --sqlite --dry-run

    # Run a specific scenario:
    uv run python simulation.py --sqlite --dry-run --scenario 3
"""

from __future__ import annotations

import argparse
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from vehicle_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from vehicle_escrow.config import get_settings  # noqa: E402
from vehicle_escrow.domain.collaborators import VehicleAttestationSnapshot  # noqa: E402
from vehicle_escrow.domain.enums import PurchaseStatus, RespondAction  # noqa: E402
from vehicle_escrow.domain.exceptions import (  # noqa: E402
    TransferFailedError,
    VerificationAttemptsExhaustedError,
)
from vehicle_escrow.infrastructure.anchor_client import AnchorClient  # noqa: E402
from vehicle_escrow.infrastructure.attestation_client import HttpAttestationSource  # noqa: E402
from vehicle_escrow.infrastructure.notifier import LogStatusNotifier  # noqa: E402
from vehicle_escrow.services.purchase_service import PurchaseService  # noqa: E402

# Module-level state
_sqlite_engine = None
_sqlite_session_factory = None
_dry_run = False
_attestation: Any = None
_anchor: Any = None


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------
def healthy_snapshot(vehicle_id: str, **overrides: Any) -> VehicleAttestationSnapshot:
    values = {
        "vehicle_id": vehicle_id,
        "trust_score": 82.0,
        "last_telemetry_at": datetime.now(UTC) - timedelta(minutes=20),
        "has_ledger_attestation": True,
        "has_storage_attestation": True,
    }
    values.update(overrides)
    return VehicleAttestationSnapshot(**values)


@dataclass
class ScriptedAttestationSource:
    """Dry-run attestation source. Vehicles without a script look healthy."""

    snapshots: dict[str, VehicleAttestationSnapshot] = field(default_factory=dict)

    async def get_vehicle_attestation_snapshot(self, vehicle_id: str) -> VehicleAttestationSnapshot:
        return self.snapshots.get(vehicle_id) or healthy_snapshot(vehicle_id)


@dataclass
class FlakyAnchor:
    """Wraps the anchor client and fails the next ``outages`` calls."""

    inner: AnchorClient
    outages: int = 0

    async def anchor_ownership_transfer(self, **kwargs: Any):
        if self.outages > 0:
            self.outages -= 1
            raise ConnectionError("anchor service unreachable (simulated outage)")
        return await self.inner.anchor_ownership_transfer(**kwargs)


def init_collaborators(dry_run: bool) -> None:
    """Pick scripted or real collaborators."""
    global _dry_run, _attestation, _anchor

    _dry_run = dry_run
    _attestation = ScriptedAttestationSource() if dry_run else HttpAttestationSource()
    simulate_anchor = dry_run or get_settings().anchor_simulate
    _anchor = FlakyAnchor(inner=AnchorClient(simulate=simulate_anchor))


def script_vehicle(vehicle_id: str, **overrides: Any) -> None:
    """In dry-run mode, set what the attestation source reports for a vehicle.

    No-op when not in dry-run mode; the real attestation service decides.
    """
    if not _dry_run:
        return
    _attestation.snapshots[vehicle_id] = healthy_snapshot(vehicle_id, **overrides)


def purchase_service(session: Any) -> PurchaseService:
    return PurchaseService(
        session,
        attestation_source=_attestation,
        anchor_service=_anchor,
        notifier=LogStatusNotifier(),
    )


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False):
    """Initialize database engine and create tables."""
    global _sqlite_engine, _sqlite_session_factory

    if use_sqlite:
        from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
        from sqlalchemy.pool import StaticPool

        from vehicle_escrow.infrastructure.database.engine import enable_sqlite_savepoints
        from vehicle_escrow.infrastructure.database.orm_models import Base

        _sqlite_engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            poolclass=StaticPool,
            echo=False,
        )
        enable_sqlite_savepoints(_sqlite_engine)
        _sqlite_session_factory = async_sessionmaker(
            bind=_sqlite_engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        async with _sqlite_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.sqlite_initialized")
    else:
        from vehicle_escrow.infrastructure.database.engine import init_db
        await init_db()


async def get_session():
    """Get a fresh database session."""
    if _sqlite_session_factory is not None:
        return _sqlite_session_factory()

    from vehicle_escrow.infrastructure.database.engine import _get_session_factory
    factory = _get_session_factory()
    return factory()


async def shutdown_database():
    """Close database connections."""
    global _sqlite_engine, _sqlite_session_factory

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
        _sqlite_session_factory = None
    else:
        from vehicle_escrow.infrastructure.database.engine import close_db
        await close_db()


# ---------------------------------------------------------------------------
# Bot Agents
# ---------------------------------------------------------------------------
@dataclass
class BuyerBot:
    """Simulated buyer: offers, funds, verifies, walks away."""

    user_id: str = "buyer-ravi"

    async def make_offer(
        self,
        session: Any,
        seller: SellerBot,
        vehicle_id: str,
        price: Decimal,
        message: str | None = None,
    ) -> uuid.UUID:
        """Open a purchase request. Returns its id."""
        svc = purchase_service(session)
        purchase = await svc.create_request(
            listing_id=f"lst-{vehicle_id}",
            vehicle_id=vehicle_id,
            buyer_id=self.user_id,
            seller_id=seller.user_id,
            offered_price=price,
            message=message,
        )
        await svc.commit()
        logger.info("🔵 BUYER: Offer made", purchase_request_id=str(purchase.id), price=str(price))
        return purchase.id

    async def accept_counter(self, session: Any, purchase_id: uuid.UUID) -> None:
        svc = purchase_service(session)
        purchase = await svc.respond(
            purchase_id, self.user_id, RespondAction.ACCEPT
        )
        await svc.commit()
        logger.info("🔵 BUYER: Counter accepted", agreed_price=str(purchase.agreed_price))

    async def fund(self, session: Any, purchase_id: uuid.UUID, reference: str) -> None:
        """Fund the escrow at the agreed price."""
        svc = purchase_service(session)
        purchase = await svc.get_request(purchase_id)
        escrow = await svc.fund_escrow(purchase_id, self.user_id, purchase.agreed_price, reference)
        await svc.commit()
        logger.info(
            "🔵 BUYER: Escrow funded",
            escrow_id=str(escrow.id),
            amount=str(escrow.amount),
            funding_reference=reference,
        )

    async def verify(self, session: Any, purchase_id: uuid.UUID):
        svc = purchase_service(session)
        result = await svc.run_verification(purchase_id, self.user_id)
        await svc.commit()
        if result.passed:
            logger.info("🔵 BUYER: Vehicle verified ✅")
        else:
            logger.info("🔵 BUYER: Vehicle failed checks ❌", reasons=list(result.failure_reasons))
        return result

    async def cancel(self, session: Any, purchase_id: uuid.UUID, reason: str) -> None:
        svc = purchase_service(session)
        await svc.cancel(purchase_id, self.user_id, reason=reason)
        await svc.commit()
        logger.info("🔵 BUYER: Request cancelled", reason=reason)

    async def check_status(self, session: Any, purchase_id: uuid.UUID) -> dict:
        """Check the current request status."""
        status = await purchase_service(session).get_status(purchase_id)
        logger.info(
            "🔵 BUYER: Status check",
            status=status["status"],
            attempts=f"{status['verification_attempts']}/{status['max_verification_attempts']}",
            allowed=status["allowed_events"],
        )
        return status


@dataclass
class SellerBot:
    """Simulated seller: answers offers and hands the vehicle over."""

    user_id: str = "seller-meera"

    async def counter(self, session: Any, purchase_id: uuid.UUID, price: Decimal) -> None:
        svc = purchase_service(session)
        await svc.respond(
            purchase_id,
            self.user_id,
            RespondAction.COUNTER,
            counter_price=price,
            message="Lowest I can go, it has new tyres.",
        )
        await svc.commit()
        logger.info("🟢 SELLER: Countered", counter_price=str(price))

    async def accept(self, session: Any, purchase_id: uuid.UUID) -> None:
        svc = purchase_service(session)
        await svc.respond(purchase_id, self.user_id, RespondAction.ACCEPT)
        await svc.commit()
        logger.info("🟢 SELLER: Offer accepted")

    async def hand_over(self, session: Any, purchase_id: uuid.UUID) -> None:
        svc = purchase_service(session)
        await svc.init_transfer(purchase_id, self.user_id)
        await svc.commit()
        logger.info("🟢 SELLER: Transfer initiated")

    async def confirm(self, session: Any, purchase_id: uuid.UUID):
        """Confirm the transfer. Returns the SaleRecord."""
        svc = purchase_service(session)
        sale = await svc.confirm_transfer(purchase_id, self.user_id)
        await svc.commit()
        logger.info(
            "🟢 SELLER: Sale completed ✅",
            sale_record_id=str(sale.id),
            final_price=str(sale.final_price),
            tx_reference=sale.ledger_tx_reference,
        )
        return sale


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_audit_trail(session: Any, purchase_id: uuid.UUID) -> None:
    """Print the full audit trail for a purchase request."""
    events = await purchase_service(session).get_events(purchase_id)
    print("\n  📜 Audit Trail:")
    for i, evt in enumerate(events, 1):
        old = evt.old_status or "—"
        print(f"    {i}. [{evt.event_type}] {old} → {evt.new_status} (by {evt.actor})")
    print()


async def print_ownership(session: Any, vehicle_id: str) -> None:
    entries = await purchase_service(session).get_ownership_history(vehicle_id)
    print(f"  🚗 Ownership of {vehicle_id}:")
    for entry in entries:
        until = entry.to_date.date().isoformat() if entry.to_date else "present"
        print(f"    - {entry.owner_user_id}: {entry.from_date.date().isoformat()} → {until}")
    print()


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path() -> None:
    """Offer, counter, accept, fund, verify, transfer."""
    banner("SCENARIO 1: Happy Path — Counter-Offer to Sale")

    buyer = BuyerBot()
    seller = SellerBot()
    vehicle_id = "veh-KA01-4521"

    session = await get_session()
    async with session:
        section("Step 1: Buyer makes an offer")
        purchase_id = await buyer.make_offer(
            session, seller, vehicle_id, Decimal("520000.00"), message="Is the service book available?"
        )

        section("Step 2: Seller counters, buyer accepts")
        await seller.counter(session, purchase_id, Decimal("505000.00"))
        await buyer.accept_counter(session, purchase_id)

        section("Step 3: Buyer funds escrow")
        await buyer.fund(session, purchase_id, reference=f"upi-{uuid.uuid4().hex[:10]}")

        section("Step 4: Pre-transfer verification")
        await buyer.verify(session, purchase_id)

        section("Step 5: Seller transfers ownership")
        await seller.hand_over(session, purchase_id)
        await seller.confirm(session, purchase_id)

        section("Step 6: Final status")
        await buyer.check_status(session, purchase_id)
        await print_audit_trail(session, purchase_id)
        await print_ownership(session, vehicle_id)


# ===========================================================================
# Scenario 2: Stale Telemetry Then Retry
# ===========================================================================
async def scenario_2_stale_telemetry() -> None:
    """First verification fails on stale telemetry, the retry passes."""
    banner("SCENARIO 2: Stale Telemetry — Fail Then Retry")

    buyer = BuyerBot(user_id="buyer-anita")
    seller = SellerBot(user_id="seller-kiran")
    vehicle_id = "veh-MH12-0088"

    session = await get_session()
    async with session:
        section("Step 1: Setup (Offer -> Accept -> Fund)")
        purchase_id = await buyer.make_offer(session, seller, vehicle_id, Decimal("310000.00"))
        await seller.accept(session, purchase_id)
        await buyer.fund(session, purchase_id, reference="neft-558812")

        section("Step 2: Vehicle has been offline for two days")
        script_vehicle(vehicle_id, last_telemetry_at=datetime.now(UTC) - timedelta(days=2))
        await buyer.verify(session, purchase_id)
        await buyer.check_status(session, purchase_id)

        section("Step 3: Seller drives the car, telemetry arrives, buyer re-runs")
        script_vehicle(vehicle_id)
        result = await buyer.verify(session, purchase_id)

        if result.passed:
            section("Step 4: Transfer")
            await seller.hand_over(session, purchase_id)
            await seller.confirm(session, purchase_id)

        await buyer.check_status(session, purchase_id)
        await print_audit_trail(session, purchase_id)


# ===========================================================================
# Scenario 3: Retries and Replays
# ===========================================================================
async def scenario_3_retries_and_replays() -> None:
    """Replayed funding and an anchor outage do not duplicate anything."""
    banner("SCENARIO 3: Retries and Replays — Exactly-Once Settlement")

    buyer = BuyerBot(user_id="buyer-farah")
    seller = SellerBot(user_id="seller-joseph")
    vehicle_id = "veh-TN09-7310"

    session = await get_session()
    async with session:
        section("Step 1: Offer accepted")
        purchase_id = await buyer.make_offer(session, seller, vehicle_id, Decimal("415000.00"))
        await seller.accept(session, purchase_id)

        section("Step 2: Buyer's funding call is sent twice")
        await buyer.fund(session, purchase_id, reference="imps-771020")
        await buyer.fund(session, purchase_id, reference="imps-771020")
        print("  ✅ Replay returned the original escrow")

        await buyer.verify(session, purchase_id)
        await seller.hand_over(session, purchase_id)

        section("Step 3: Anchor service is down on the first confirm")
        _anchor.outages = 1
        try:
            await seller.confirm(session, purchase_id)
        except TransferFailedError as exc:
            await session.commit()
            logger.info("🟢 SELLER: Transfer failed, will retry", step=exc.step, error=exc.message)
        await buyer.check_status(session, purchase_id)

        section("Step 4: Seller retries, then the network replays the call")
        first = await seller.confirm(session, purchase_id)
        second = await seller.confirm(session, purchase_id)
        same = "same" if first.id == second.id else "DIFFERENT"
        print(f"  🧾 Both confirms returned the {same} sale record")

        await print_audit_trail(session, purchase_id)
        await print_ownership(session, vehicle_id)


# ===========================================================================
# Scenario 4: Walk Away
# ===========================================================================
async def scenario_4_walk_away() -> None:
    """Verification never passes; the buyer takes the refund."""
    banner("SCENARIO 4: Walk Away — Attempts Exhausted, Escrow Refunded")

    buyer = BuyerBot(user_id="buyer-dev")
    seller = SellerBot(user_id="seller-sana")
    vehicle_id = "veh-DL03-1144"

    session = await get_session()
    async with session:
        section("Step 1: Setup (Offer -> Accept -> Fund)")
        purchase_id = await buyer.make_offer(session, seller, vehicle_id, Decimal("275000.00"))
        await seller.accept(session, purchase_id)
        await buyer.fund(session, purchase_id, reference="rtgs-20931")

        section("Step 2: Vehicle has no storage attestation and a poor trust score")
        script_vehicle(vehicle_id, trust_score=31.5, has_storage_attestation=False)

        while True:
            try:
                result = await buyer.verify(session, purchase_id)
            except VerificationAttemptsExhaustedError as exc:
                logger.info("🔵 BUYER: No verification attempts left", error=exc.message)
                break
            if result.passed:
                break

        status = await buyer.check_status(session, purchase_id)
        if status["status"] == PurchaseStatus.VERIFICATION_FAILED:
            section("Step 3: Buyer cancels")
            await buyer.cancel(session, purchase_id, reason="Vehicle could not be verified")
            detail = await purchase_service(session).get_request(purchase_id)
            print(f"\n  🛡️  Escrow status: {detail.escrow.status}. Buyer funds protected!")
        else:
            print("  ⚠️  Vehicle passed verification; nothing to walk away from")

        await print_audit_trail(session, purchase_id)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_stale_telemetry,
    3: scenario_3_retries_and_replays,
    4: scenario_4_walk_away,
}


async def run_all(use_sqlite: bool = False, dry_run: bool = False) -> None:
    """Run all scenarios sequentially."""
    init_collaborators(dry_run)
    await init_database(use_sqlite=use_sqlite)

    try:
        print("\n" + "🚗" * 35)
        print("  VEHICLE ESCROW — SIMULATION")
        db_type = "SQLite (in-memory)" if use_sqlite else "PostgreSQL"
        mode = "DRY-RUN (scripted attestations)" if dry_run else "LIVE (attestation service)"
        print(f"  Database: {db_type}")
        print(f"  Mode: {mode}")
        print("🚗" * 35 + "\n")

        for scenario in SCENARIOS.values():
            await scenario()

        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")

    finally:
        await shutdown_database()


async def run_scenario(num: int, use_sqlite: bool = False, dry_run: bool = False) -> None:
    """Run a specific scenario."""
    init_collaborators(dry_run)
    await init_database(use_sqlite=use_sqlite)

    try:
        if num not in SCENARIOS:
            print(f"Unknown scenario {num}. Available: {', '.join(map(str, SCENARIOS))}")
            return
        await SCENARIOS[num]()
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Vehicle Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use SQLite in-memory instead of PostgreSQL (no Docker needed).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use scripted attestations and the simulated anchor (instant, no network).",
    )
    args = parser.parse_args()

    if args.scenario == 0:
        asyncio.run(run_all(use_sqlite=args.sqlite, dry_run=args.dry_run))
    else:
        asyncio.run(run_scenario(args.scenario, use_sqlite=args.sqlite, dry_run=args.dry_run))
