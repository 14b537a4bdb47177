"""Database infrastructure — engine, ORM models, and repositories."""

from escrow_engine.infrastructure.database.engine import (
    close_db,
    get_async_session,
    init_db,
    session_scope,
)
from escrow_engine.infrastructure.database.orm_models import (
    Base,
    Challenge,
    ChallengeEvent,
    Dispute,
    EnforcedConfig,
    EnforcedThreshold,
    Stake,
    StakeEvent,
    TrafficLightEvaluation,
)
from escrow_engine.infrastructure.database.repositories import (
    ChallengeRepository,
    DisputeRepository,
    EventRepository,
    StakeRepository,
    TrafficLightRepository,
)

__all__ = [
    "Base",
    "Challenge",
    "ChallengeEvent",
    "Dispute",
    "EnforcedConfig",
    "EnforcedThreshold",
    "Stake",
    "StakeEvent",
    "TrafficLightEvaluation",
    "ChallengeRepository",
    "DisputeRepository",
    "EventRepository",
    "StakeRepository",
    "TrafficLightRepository",
    "get_async_session",
    "init_db",
    "close_db",
    "session_scope",
]
