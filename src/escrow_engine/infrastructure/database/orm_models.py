"""SQLAlchemy 2.0 ORM models for the Escrow Challenge Engine.

Tables:
    1. challenges                — One row per value exchange.
    2. enforced_thresholds       — Immutable stake policy of an ENFORCED challenge.
    3. enforced_configs          — Timeouts + current traffic light pointer.
    4. stakes                    — One row per (challenge, party) collateral deposit.
    5. stake_events              — Append-only audit log of stake transitions.
    6. traffic_light_evaluations — Append-only audit log of every evaluation.
    7. disputes                  — Raised / resolved disputes.
    8. challenge_completions     — Per-party "done" marks.
    9. challenge_events          — Append-only audit log of challenge transitions.

Design decisions:
    - UUIDs as primary keys (portable Uuid type, native on PostgreSQL).
    - Stake amounts are decimal strings of base units, never floats.
    - JSON columns become JSONB on PostgreSQL.
    - Timestamps are always timezone-aware UTC, including on SQLite.
    - CHECK constraints on status columns to reject invalid enum values at DB level.
    - Status columns are only written through conditional UPDATEs in the repositories.
    - The *_events and traffic_light_evaluations tables are append-only.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from escrow_engine.domain.enums import (
    ChallengeMode,
    ChallengeStatus,
    DisputeStatus,
    StakeStatus,
    TrafficLightState,
)
from escrow_engine.domain.policies import ThresholdTerms, TimeoutPolicy


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Column helpers
# ---------------------------------------------------------------------------
class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as an aware UTC datetime.

    SQLite drops tzinfo on the way back; this puts it back.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001, ANN201
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):  # noqa: ANN001, ANN201
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _in_list(column: str, values: list[str]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. challenges
# ---------------------------------------------------------------------------
class Challenge(Base):
    """A two-party (or solo) value exchange under verification."""

    __tablename__ = "challenges"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Participants ---
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    counterparty_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Absent for SOLO challenges, required otherwise",
    )
    creator_wallet: Mapped[str | None] = mapped_column(String(42), nullable=True)
    counterparty_wallet: Mapped[str | None] = mapped_column(String(42), nullable=True)

    # --- Terms ---
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    fee_arrangement: Mapped[str] = mapped_column(
        String(32), nullable=False, default="creator_pays"
    )
    coin_toss_call: Mapped[str | None] = mapped_column(
        String(8),
        nullable=True,
        comment="Creator's call (heads/tails) when fee_arrangement is coin_toss",
    )

    # --- Status (guarded by ChallengeStateMachine) ---
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ChallengeStatus.DRAFT.value
    )

    # --- Deadlines ---
    expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(timezone=True),
        nullable=True,
        comment="Accept deadline while AWAITING_COUNTERPARTY",
    )
    intent_locked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(timezone=True), nullable=True
    )
    response_deadline_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(timezone=True),
        nullable=True,
        comment="intent_locked_at + response timeout",
    )
    dispute_deadline_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(timezone=True),
        nullable=True,
        comment="Open dispute's created_at + dispute timeout",
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(timezone=True), nullable=True
    )

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            _in_list("status", [s.value for s in ChallengeStatus]),
            name="ck_challenge_valid_status",
        ),
        CheckConstraint(
            _in_list("mode", [m.value for m in ChallengeMode]),
            name="ck_challenge_valid_mode",
        ),
        CheckConstraint(
            "(mode = 'SOLO' AND counterparty_id IS NULL) "
            "OR (mode <> 'SOLO' AND counterparty_id IS NOT NULL)",
            name="ck_challenge_counterparty_by_mode",
        ),
        Index("idx_challenge_status", "status"),
        Index("idx_challenge_creator", "creator_id"),
        Index("idx_challenge_counterparty", "counterparty_id"),
        Index("idx_challenge_expires_at", "expires_at"),
    )

    @property
    def challenge_mode(self) -> ChallengeMode:
        return ChallengeMode(self.mode)

    @property
    def challenge_status(self) -> ChallengeStatus:
        return ChallengeStatus(self.status)

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.creator_id, self.counterparty_id)

    def __repr__(self) -> str:
        return f"<Challenge id={self.id} mode={self.mode} status={self.status}>"


# ---------------------------------------------------------------------------
# 2. enforced_thresholds
# ---------------------------------------------------------------------------
class EnforcedThreshold(Base):
    """Stake policy of an ENFORCED challenge. Written once at creation."""

    __tablename__ = "enforced_thresholds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    challenge_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    min_usd: Mapped[str] = mapped_column(String(32), nullable=False)
    max_usd: Mapped[str] = mapped_column(String(32), nullable=False)
    required_confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=12)
    allowed_chains: Mapped[list] = mapped_column(JSONType, nullable=False)
    allowed_assets: Mapped[list] = mapped_column(JSONType, nullable=False)
    deal_expiry: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    creator_stake: Mapped[str] = mapped_column(
        String(78), nullable=False, comment="Required creator stake in base units"
    )
    counterparty_stake: Mapped[str] = mapped_column(
        String(78), nullable=False, comment="Required counterparty stake in base units"
    )
    stake_currency: Mapped[str] = mapped_column(String(16), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=_utcnow
    )

    def to_terms(self) -> ThresholdTerms:
        return ThresholdTerms(
            min_usd=self.min_usd,
            max_usd=self.max_usd,
            allowed_chains=tuple(self.allowed_chains),
            allowed_assets=tuple(self.allowed_assets),
            creator_stake=self.creator_stake,
            counterparty_stake=self.counterparty_stake,
            stake_currency=self.stake_currency,
            required_confirmations=self.required_confirmations,
            deal_expiry=self.deal_expiry,
        )

    def __repr__(self) -> str:
        return f"<EnforcedThreshold challenge={self.challenge_id} currency={self.stake_currency}>"


# ---------------------------------------------------------------------------
# 3. enforced_configs
# ---------------------------------------------------------------------------
class EnforcedConfig(Base):
    """Timeouts and the denormalised current traffic light of an ENFORCED challenge.

    traffic_light_state mirrors the newest traffic_light_evaluations row and is
    written in the same transaction as that row. The audit table is authoritative.
    """

    __tablename__ = "enforced_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    challenge_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    accept_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    response_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    dispute_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False)

    traffic_light_state: Mapped[str] = mapped_column(
        String(8), nullable=False, default=TrafficLightState.YELLOW.value
    )
    last_evaluation_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            _in_list("traffic_light_state", [s.value for s in TrafficLightState]),
            name="ck_enforced_config_light",
        ),
    )

    def to_policy(self) -> TimeoutPolicy:
        return TimeoutPolicy(
            accept_seconds=self.accept_timeout_seconds,
            response_seconds=self.response_timeout_seconds,
            dispute_seconds=self.dispute_timeout_seconds,
        )


# ---------------------------------------------------------------------------
# 4. stakes
# ---------------------------------------------------------------------------
class Stake(Base):
    """One party's collateral on one challenge."""

    __tablename__ = "stakes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    challenge_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Deposit ---
    wallet_address: Mapped[str] = mapped_column(
        String(42), nullable=False, comment="Lower-cased depositor wallet"
    )
    amount: Mapped[str] = mapped_column(
        String(78), nullable=False, comment="Deposited amount in base units"
    )
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    chain_id: Mapped[str] = mapped_column(String(32), nullable=False)
    token_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    deposit_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    release_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # --- Status (guarded by StakeStateMachine) ---
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=StakeStatus.PENDING.value
    )

    # --- Timestamps ---
    deposited_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True))
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True))
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True))
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="uq_stake_challenge_user"),
        CheckConstraint(
            _in_list("status", [s.value for s in StakeStatus]),
            name="ck_stake_valid_status",
        ),
        Index("idx_stake_challenge", "challenge_id"),
        Index("idx_stake_status", "status"),
    )

    @property
    def stake_status(self) -> StakeStatus:
        return StakeStatus(self.status)

    def __repr__(self) -> str:
        return f"<Stake id={self.id} user={self.user_id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 5. stake_events (Append-Only)
# ---------------------------------------------------------------------------
class StakeEvent(Base):
    __tablename__ = "stake_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    stake_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("stakes.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_stake_event_stake", "stake_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<StakeEvent stake={self.stake_id} type={self.event_type}>"


# ---------------------------------------------------------------------------
# 6. traffic_light_evaluations (Append-Only)
# ---------------------------------------------------------------------------
class TrafficLightEvaluation(Base):
    """Immutable record of one Traffic Light verdict."""

    __tablename__ = "traffic_light_evaluations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    challenge_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    state: Mapped[str] = mapped_column(String(8), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    flags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    evaluated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            _in_list("state", [s.value for s in TrafficLightState]),
            name="ck_traffic_light_state",
        ),
        Index("idx_traffic_light_challenge", "challenge_id", "evaluated_at"),
    )

    def __repr__(self) -> str:
        return f"<TrafficLightEvaluation challenge={self.challenge_id} state={self.state}>"


# ---------------------------------------------------------------------------
# 7. disputes
# ---------------------------------------------------------------------------
class Dispute(Base):
    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    challenge_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    raised_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DisputeStatus.PENDING.value
    )
    winner_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="Null when auto-resolved on timeout"
    )
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=_utcnow
    )
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            _in_list("status", [s.value for s in DisputeStatus]),
            name="ck_dispute_valid_status",
        ),
        # At most one open dispute per challenge
        Index(
            "uq_dispute_one_pending",
            "challenge_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index("idx_dispute_challenge", "challenge_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Dispute id={self.id} challenge={self.challenge_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 8. challenge_completions
# ---------------------------------------------------------------------------
class ChallengeCompletion(Base):
    __tablename__ = "challenge_completions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    challenge_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="uq_completion_challenge_user"),
    )


# ---------------------------------------------------------------------------
# 9. challenge_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class ChallengeEvent(Base):
    """Immutable audit record of every status change in a challenge's lifecycle.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "challenge_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    challenge_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str] = mapped_column(String(32), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(64), nullable=False, default="SYSTEM", comment="User id or SYSTEM"
    )
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_event_challenge", "challenge_id", "created_at"),
        Index("idx_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<ChallengeEvent type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
for _model in (Challenge, EnforcedConfig, Stake):
    event.listen(_model, "before_update", _set_updated_at)
