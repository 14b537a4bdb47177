#!/usr/bin/env python3
"""Escrow Challenge Engine — End-to-End Simulation.

Plays three scenarios between a CreatorBot and a CounterpartyBot:

    Scenario A: Fully staked
        - Creator opens an ENFORCED challenge requiring 1 ETH from each side
        - Both deposit and confirm with 12 confirmations -> traffic light GREEN
        - Counterparty accepts -> INTENT_LOCKED, both stakes HELD

    Scenario B: Under-staked
        - Same setup, but the creator deposits only 0.5 ETH
        - Deposit and confirmation succeed, traffic light is RED
        - Counterparty's accept is refused

    Scenario C: Accept window lapses
        - Challenge sits in AWAITING_COUNTERPARTY past its accept deadline
        - The timeout sweeper expires it and returns the confirmed stake

Usage:
    # With PostgreSQL (DATABASE_URL from .env):
    python simulation.py

    # Without Docker (SQLite in-memory):
    python simulation.py --sqlite

    # Run a specific scenario:
    python simulation.py --sqlite --scenario B
"""

from __future__ import annotations

import argparse
import asyncio
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from escrow_engine.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

ONE_ETH = "1000000000000000000"
HALF_ETH = "500000000000000000"
CHAIN = "eip155:1"

# Module-level state
_session_factory = None
_sqlite_engine = None


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False) -> None:
    """Initialize the database engine and create tables."""
    global _session_factory, _sqlite_engine

    from escrow_engine.infrastructure.database.engine import (
        _get_session_factory,
        init_db,
        make_session_factory,
    )

    if use_sqlite:
        from sqlalchemy.ext.asyncio import create_async_engine
        from sqlalchemy.pool import StaticPool

        from escrow_engine.infrastructure.database.orm_models import Base

        _sqlite_engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        async with _sqlite_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        _session_factory = make_session_factory(_sqlite_engine)
        logger.info("database.sqlite_initialized")
    else:
        await init_db()
        _session_factory = _get_session_factory()


async def shutdown_database() -> None:
    global _session_factory, _sqlite_engine

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
    else:
        from escrow_engine.infrastructure.database.engine import close_db

        await close_db()
    _session_factory = None


def work():  # noqa: ANN201
    """Open a unit of work against the simulation database."""
    from escrow_engine.infrastructure.events import NullEventEmitter
    from escrow_engine.infrastructure.unit_of_work import unit_of_work

    return unit_of_work(_session_factory, NullEventEmitter())


# ---------------------------------------------------------------------------
# Bot Agents
# ---------------------------------------------------------------------------
@dataclass
class PartyBot:
    """A simulated party with a user id and a wallet."""

    user_id: str
    wallet: str

    async def deposit_and_confirm(
        self, challenge_id: uuid.UUID, amount: str, confirmations: int = 12
    ) -> uuid.UUID:
        """Deposit ``amount`` wei and confirm it in two separate transactions."""
        from escrow_engine.services.stake_ledger import StakeLedger

        async with work() as uow:
            stake = await StakeLedger(uow.session, events=uow.events).deposit(
                challenge_id=challenge_id,
                user_id=self.user_id,
                wallet_address=self.wallet,
                amount=amount,
                currency="ETH",
                chain_id=CHAIN,
            )
        logger.info("💰 DEPOSIT", user=self.user_id, amount=amount, stake_id=str(stake.id))

        tx_hash = "0x" + uuid.uuid4().hex * 2
        async with work() as uow:
            stake = await StakeLedger(uow.session, events=uow.events).confirm(
                stake.id, tx_hash, confirmations
            )
        logger.info("✅ CONFIRMED", user=self.user_id, confirmations=stake.confirmations)
        return stake.id


@dataclass
class CreatorBot(PartyBot):
    async def open_challenge(
        self, counterparty: PartyBot, now: datetime | None = None
    ) -> uuid.UUID:
        """Create an ENFORCED challenge requiring 1 ETH each and send it."""
        from escrow_engine.domain.policies import ThresholdTerms
        from escrow_engine.services.challenge_service import ChallengeLifecycle

        terms = ThresholdTerms(
            min_usd="100",
            max_usd="1000",
            allowed_chains=(CHAIN,),
            allowed_assets=("ETH",),
            creator_stake=ONE_ETH,
            counterparty_stake=ONE_ETH,
            stake_currency="ETH",
            required_confirmations=12,
        )
        async with work() as uow:
            lifecycle = ChallengeLifecycle(uow.session, events=uow.events)
            challenge = await lifecycle.create_challenge(
                creator_id=self.user_id,
                mode="ENFORCED",
                title="Run 5k under 25 minutes",
                counterparty_id=counterparty.user_id,
                creator_wallet=self.wallet,
                counterparty_wallet=counterparty.wallet,
                terms=terms,
                now=now,
            )
            await lifecycle.send(challenge.id, self.user_id, now=now)
        logger.info("🔵 CREATOR: Challenge sent", challenge_id=str(challenge.id))
        return challenge.id


@dataclass
class CounterpartyBot(PartyBot):
    async def accept(self, challenge_id: uuid.UUID) -> str:
        from escrow_engine.domain.exceptions import EngineError
        from escrow_engine.services.challenge_service import ChallengeLifecycle

        try:
            async with work() as uow:
                challenge = await ChallengeLifecycle(uow.session, events=uow.events).accept(
                    challenge_id, self.user_id
                )
        except EngineError as exc:
            logger.info("🛑 ACCEPT REFUSED", code=exc.code, message=exc.message)
            return exc.code
        logger.info("🟢 COUNTERPARTY: Accepted", status=challenge.status)
        return challenge.status


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------
def section(title: str) -> None:
    print(f"\n{'─' * 70}\n  {title}\n{'─' * 70}")


async def print_status(challenge_id: uuid.UUID) -> None:
    from escrow_engine.services.challenge_service import ChallengeLifecycle

    async with work() as uow:
        view = await ChallengeLifecycle(uow.session).get_status(challenge_id)
    light = view.traffic_light.value if view.traffic_light else "-"
    print(f"\n  Challenge {challenge_id}")
    print(f"    status:        {view.challenge.status}")
    print(f"    traffic light: {light}")
    for stake in view.stakes:
        print(f"    stake {stake.user_id:<12} {stake.amount:>20} wei  {stake.status}")


async def print_audit_trail(challenge_id: uuid.UUID) -> None:
    from escrow_engine.services.challenge_service import ChallengeLifecycle

    async with work() as uow:
        events = await ChallengeLifecycle(uow.session).get_events(challenge_id)
    print("\n  📜 Audit trail:")
    for evt in events:
        transition = f"{evt.old_status or '-':>22} -> {evt.new_status:<22}"
        print(f"    {evt.event_type:<22} {transition} {evt.actor}")


def _bots() -> tuple[CreatorBot, CounterpartyBot]:
    return (
        CreatorBot("alice", "0x" + "a" * 40),
        CounterpartyBot("bob", "0x" + "b" * 40),
    )


# ===========================================================================
# Scenarios
# ===========================================================================
async def scenario_a_fully_staked() -> None:
    section("SCENARIO A: Both parties stake 1 ETH -> INTENT_LOCKED")
    creator, counterparty = _bots()

    challenge_id = await creator.open_challenge(counterparty)
    await creator.deposit_and_confirm(challenge_id, ONE_ETH)
    await counterparty.deposit_and_confirm(challenge_id, ONE_ETH)
    await counterparty.accept(challenge_id)

    await print_status(challenge_id)
    await print_audit_trail(challenge_id)


async def scenario_b_under_staked() -> None:
    section("SCENARIO B: Creator stakes 0.5 ETH -> accept refused")
    creator, counterparty = _bots()

    challenge_id = await creator.open_challenge(counterparty)
    await creator.deposit_and_confirm(challenge_id, HALF_ETH)
    await counterparty.deposit_and_confirm(challenge_id, ONE_ETH)
    outcome = await counterparty.accept(challenge_id)
    print(f"\n  Accept outcome: {outcome}")

    await print_status(challenge_id)


async def scenario_c_accept_timeout() -> None:
    section("SCENARIO C: Accept window lapses -> sweeper expires challenge")
    from escrow_engine.infrastructure.events import NullEventEmitter
    from escrow_engine.services.timeout_sweeper import TimeoutSweeper

    creator, counterparty = _bots()
    opened_at = datetime.now(UTC) - timedelta(hours=1)

    challenge_id = await creator.open_challenge(counterparty, now=opened_at)
    await creator.deposit_and_confirm(challenge_id, ONE_ETH)

    report = await TimeoutSweeper(_session_factory, emitter=NullEventEmitter()).sweep()
    print(
        f"\n  Sweep: processed={report.processed} expired={report.expired} "
        f"stakes_released={report.stakes_released}"
    )

    await print_status(challenge_id)
    await print_audit_trail(challenge_id)


SCENARIOS = {
    "A": scenario_a_fully_staked,
    "B": scenario_b_under_staked,
    "C": scenario_c_accept_timeout,
}


# ===========================================================================
# Main
# ===========================================================================
async def run(scenario: str | None, use_sqlite: bool = False) -> None:
    await init_database(use_sqlite=use_sqlite)
    try:
        print("\n" + "=" * 70)
        print("  ESCROW CHALLENGE ENGINE — SIMULATION")
        print(f"  Database: {'SQLite (in-memory)' if use_sqlite else 'PostgreSQL'}")
        print("=" * 70)

        selected = [scenario] if scenario else list(SCENARIOS)
        for name in selected:
            await SCENARIOS[name]()

        print("\n" + "=" * 70)
        print("  ✅ SIMULATION FINISHED")
        print("=" * 70 + "\n")
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Escrow Challenge Engine Simulation")
    parser.add_argument(
        "--scenario",
        choices=sorted(SCENARIOS),
        default=None,
        help="Run a single scenario (A, B or C). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use SQLite in-memory instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()
    asyncio.run(run(args.scenario, use_sqlite=args.sqlite))
