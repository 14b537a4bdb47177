"""Domain enumerations for the Escrow Challenge Engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class ChallengeMode(enum.StrEnum):
    """Assurance level of a challenge.

    SOLO challenges have no counterparty. ENFORCED is the only mode that
    collects stakes and consults the Traffic Light.
    """

    SOLO = "SOLO"
    GATEKEEPER = "GATEKEEPER"
    FIRE = "FIRE"
    ENFORCED = "ENFORCED"


class ChallengeStatus(enum.StrEnum):
    """Lifecycle states of a challenge.

    State transitions are enforced by the ChallengeStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    DRAFT = "DRAFT"
    AWAITING_COUNTERPARTY = "AWAITING_COUNTERPARTY"
    AWAITING_GATEKEEPER = "AWAITING_GATEKEEPER"
    INTENT_LOCKED = "INTENT_LOCKED"
    AWAITING_RESOLUTION = "AWAITING_RESOLUTION"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    DISPUTED = "DISPUTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_CHALLENGE_STATUSES


TERMINAL_CHALLENGE_STATUSES = frozenset(
    {ChallengeStatus.COMPLETED, ChallengeStatus.CANCELLED, ChallengeStatus.EXPIRED}
)

# Statuses in which a party may still deposit collateral.
PRE_LOCK_STATUSES = frozenset(
    {
        ChallengeStatus.DRAFT,
        ChallengeStatus.AWAITING_COUNTERPARTY,
        ChallengeStatus.AWAITING_GATEKEEPER,
    }
)


class StakeStatus(enum.StrEnum):
    """Lifecycle states of a single party's stake."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    HELD = "HELD"
    RELEASED = "RELEASED"
    TRANSFERRED = "TRANSFERRED"
    SLASHED = "SLASHED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAKE_STATUSES


TERMINAL_STAKE_STATUSES = frozenset(
    {StakeStatus.RELEASED, StakeStatus.TRANSFERRED, StakeStatus.SLASHED}
)


class StakeEventType(enum.StrEnum):
    """Types of audit events recorded in the stake_events table."""

    DEPOSIT_INITIATED = "DEPOSIT_INITIATED"
    DEPOSIT_CONFIRMED = "DEPOSIT_CONFIRMED"
    LOCKED = "LOCKED"
    RELEASED = "RELEASED"
    TRANSFERRED = "TRANSFERRED"
    SLASHED = "SLASHED"


class StakeVerificationStatus(enum.StrEnum):
    """Outcome of checking one party's stake against the threshold."""

    NOT_REQUIRED = "NOT_REQUIRED"
    PENDING = "PENDING"
    INSUFFICIENT = "INSUFFICIENT"
    FAILED = "FAILED"
    CONFIRMED = "CONFIRMED"

    @property
    def is_satisfied(self) -> bool:
        return self in (StakeVerificationStatus.CONFIRMED, StakeVerificationStatus.NOT_REQUIRED)


class TrafficLightState(enum.StrEnum):
    """Safety verdict gating risk-sensitive transitions in ENFORCED mode."""

    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class RiskLevel(enum.StrEnum):
    """Coarse wallet risk level reported by the trust-score service."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class FlagSeverity(enum.StrEnum):
    """Severity of an individual trust-score flag."""

    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class DisputeStatus(enum.StrEnum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


class Party(enum.StrEnum):
    """Side of a two-party challenge."""

    CREATOR = "CREATOR"
    COUNTERPARTY = "COUNTERPARTY"

    @property
    def label(self) -> str:
        """Capitalised name used in human-readable flags."""
        return self.value.capitalize()


class EventType(enum.StrEnum):
    """Types of audit events recorded in the challenge_events table.

    Every challenge status transition MUST produce exactly one event.
    """

    CHALLENGE_CREATED = "CHALLENGE_CREATED"
    CHALLENGE_SENT = "CHALLENGE_SENT"
    CHALLENGE_ACCEPTED = "CHALLENGE_ACCEPTED"
    INTENT_LOCKED = "INTENT_LOCKED"
    GATEKEEPER_REJECTED = "GATEKEEPER_REJECTED"
    COMPLETION_RECORDED = "COMPLETION_RECORDED"
    CHALLENGE_COMPLETED = "CHALLENGE_COMPLETED"
    CHALLENGE_CANCELLED = "CHALLENGE_CANCELLED"
    CHALLENGE_EXPIRED = "CHALLENGE_EXPIRED"
    DISPUTE_RAISED = "DISPUTE_RAISED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    STATUS_CHANGED = "STATUS_CHANGED"


class WebhookEventType(enum.StrEnum):
    """Outbound notification types published to the event emitter."""

    CHALLENGE_CREATED = "challenge.created"
    CHALLENGE_STATUS_CHANGED = "challenge.status_changed"
    STAKE_DEPOSITED = "stake.deposited"
    STAKE_CONFIRMED = "stake.confirmed"
    STAKE_LOCKED = "stake.locked"
    STAKE_RELEASED = "stake.released"
    STAKE_TRANSFERRED = "stake.transferred"
    STAKE_SLASHED = "stake.slashed"
    TRAFFIC_LIGHT_EVALUATED = "traffic_light.evaluated"
    DISPUTE_RAISED = "dispute.raised"
    DISPUTE_RESOLVED = "dispute.resolved"


class FeeArrangement(enum.StrEnum):
    """Who pays the platform fee."""

    CREATOR_PAYS = "creator_pays"
    COUNTERPARTY_PAYS = "counterparty_pays"
    SPLIT = "split"
    COIN_TOSS = "coin_toss"


class CoinSide(enum.StrEnum):
    HEADS = "heads"
    TAILS = "tails"


class FeePayer(enum.StrEnum):
    CREATOR = "CREATOR"
    COUNTERPARTY = "COUNTERPARTY"
    SPLIT = "SPLIT"


class LoserDisposition(enum.StrEnum):
    """What happens to the losing party's stake when a dispute is resolved."""

    SLASH = "slash"
    TRANSFER = "transfer"
