"""Shared test fixtures for the Escrow Challenge Engine test suite.

Provides:
    - An in-memory SQLite database (aiosqlite) with the full schema
    - Sessions and a session factory for service and sweeper tests
    - Recording / fake collaborators (event emitter, trust scores, confirmations)
    - Factories for ENFORCED challenges and confirmed stakes
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from escrow_engine.config import Settings
from escrow_engine.domain.collaborators import TrustScore
from escrow_engine.domain.enums import RiskLevel
from escrow_engine.domain.exceptions import UpstreamUnavailableError
from escrow_engine.domain.policies import ThresholdTerms
from escrow_engine.infrastructure.database.engine import make_session_factory
from escrow_engine.infrastructure.database.orm_models import Base, Challenge, Stake
from escrow_engine.services.challenge_service import ChallengeLifecycle
from escrow_engine.services.stake_ledger import StakeLedger

ONE_ETH = "1000000000000000000"
HALF_ETH = "500000000000000000"
CHAIN = "eip155:1"
CREATOR = "alice"
COUNTERPARTY = "bob"
CREATOR_WALLET = "0x" + "a" * 40
COUNTERPARTY_WALLET = "0x" + "b" * 40
TX_HASH = "0x" + "c" * 64


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class RecordingEventEmitter:
    """Keeps every emitted event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    async def emit(self, event_type: str, challenge_id: str, payload: dict) -> None:
        self.events.append((event_type, challenge_id, payload))

    @property
    def types(self) -> list[str]:
        return [event_type for event_type, _, _ in self.events]


class FakeTrustScoreProvider:
    """Scores every wallet LOW risk unless told otherwise."""

    def __init__(self, scores: dict[str, TrustScore] | None = None, fail: bool = False) -> None:
        self.scores = scores or {}
        self.fail = fail
        self.calls: list[str] = []

    async def get_trust_score(self, wallet: str) -> TrustScore:
        self.calls.append(wallet)
        if self.fail:
            raise UpstreamUnavailableError("trust_score", "connection refused")
        return self.scores.get(
            wallet.lower(), TrustScore(wallet=wallet.lower(), score=90, risk_level=RiskLevel.LOW)
        )


class FakeConfirmationSource:
    def __init__(self, confirmations: int = 12) -> None:
        self.confirmations = confirmations
        self.calls: list[tuple[str, str]] = []

    async def get_confirmations(self, chain_id: str, tx_hash: str) -> int:
        self.calls.append((chain_id, tx_hash))
        return self.confirmations


# ---------------------------------------------------------------------------
# Settings & database
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        app_env="development",
        database_url="sqlite+aiosqlite:///:memory:",
        db_isolation_level="SERIALIZABLE",
        webhook_url="",
        trust_score_url="",
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def recorder() -> RecordingEventEmitter:
    return RecordingEventEmitter()


@pytest.fixture
def trust_scores() -> FakeTrustScoreProvider:
    return FakeTrustScoreProvider()


@pytest.fixture
def confirmations() -> FakeConfirmationSource:
    return FakeConfirmationSource()


# ---------------------------------------------------------------------------
# Domain data
# ---------------------------------------------------------------------------


@pytest.fixture
def enforced_terms() -> ThresholdTerms:
    """1 ETH from each side on Ethereum mainnet, 12 confirmations."""
    return ThresholdTerms(
        min_usd="100",
        max_usd="1000",
        allowed_chains=(CHAIN,),
        allowed_assets=("ETH",),
        creator_stake=ONE_ETH,
        counterparty_stake=ONE_ETH,
        stake_currency="ETH",
        required_confirmations=12,
    )


@pytest.fixture
def lifecycle(session, recorder, trust_scores, settings) -> ChallengeLifecycle:
    return ChallengeLifecycle(session, events=recorder, trust_scores=trust_scores, settings=settings)


@pytest.fixture
def ledger(session, recorder, settings, confirmations) -> StakeLedger:
    return StakeLedger(session, events=recorder, settings=settings, confirmations=confirmations)


@pytest.fixture
def open_challenge(lifecycle, enforced_terms):
    """Factory: an ENFORCED challenge already sent to the counterparty."""

    async def _open(
        now: datetime | None = None, terms: ThresholdTerms | None = None
    ) -> Challenge:
        challenge = await lifecycle.create_challenge(
            creator_id=CREATOR,
            mode="ENFORCED",
            title="Run 5k under 25 minutes",
            counterparty_id=COUNTERPARTY,
            creator_wallet=CREATOR_WALLET,
            counterparty_wallet=COUNTERPARTY_WALLET,
            terms=terms or enforced_terms,
            now=now,
        )
        return await lifecycle.send(challenge.id, CREATOR, now=now)

    return _open


@pytest.fixture
def stake_confirmed(ledger):
    """Factory: deposit ``amount`` for ``user_id`` and confirm it."""

    async def _stake(challenge: Challenge, user_id: str, amount: str = ONE_ETH) -> Stake:
        wallet = CREATOR_WALLET if user_id == CREATOR else COUNTERPARTY_WALLET
        stake = await ledger.deposit(
            challenge_id=challenge.id,
            user_id=user_id,
            wallet_address=wallet,
            amount=amount,
            currency="ETH",
            chain_id=CHAIN,
        )
        return await ledger.confirm(stake.id, TX_HASH, 12)

    return _stake


@pytest.fixture
def locked_challenge(open_challenge, stake_confirmed, lifecycle):
    """Factory: both stakes HELD, challenge INTENT_LOCKED."""

    async def _locked(now: datetime | None = None) -> Challenge:
        challenge = await open_challenge(now=now)
        await stake_confirmed(challenge, CREATOR)
        await stake_confirmed(challenge, COUNTERPARTY)
        return await lifecycle.accept(challenge.id, COUNTERPARTY, now=now)

    return _locked
