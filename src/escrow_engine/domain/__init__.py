"""Domain layer — pure business logic with zero framework dependencies."""

from escrow_engine.domain.amounts import StakeAmountCheck, validate_stake_amount
from escrow_engine.domain.collaborators import (
    ConfirmationSource,
    EventEmitter,
    TrustFlag,
    TrustScore,
    TrustScoreProvider,
)
from escrow_engine.domain.enums import (
    ChallengeMode,
    ChallengeStatus,
    StakeStatus,
    TrafficLightState,
)
from escrow_engine.domain.exceptions import (
    ChallengeNotFoundError,
    EngineError,
    ErrorKind,
    InvalidStateTransitionError,
)
from escrow_engine.domain.state_machine import (
    ChallengeStateMachine,
    StakeStateMachine,
    validate_transition,
)
from escrow_engine.domain.traffic_light import TrafficLightResult, evaluate_traffic_light

__all__ = [
    "StakeAmountCheck",
    "validate_stake_amount",
    "ConfirmationSource",
    "EventEmitter",
    "TrustFlag",
    "TrustScore",
    "TrustScoreProvider",
    "ChallengeMode",
    "ChallengeStatus",
    "StakeStatus",
    "TrafficLightState",
    "ChallengeNotFoundError",
    "EngineError",
    "ErrorKind",
    "InvalidStateTransitionError",
    "ChallengeStateMachine",
    "StakeStateMachine",
    "validate_transition",
    "TrafficLightResult",
    "evaluate_traffic_light",
]
