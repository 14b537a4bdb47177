"""Pydantic API schemas."""

from escrow_engine.schemas.challenge import (
    CancelChallengeRequest,
    ChallengeEventResponse,
    ChallengeResponse,
    ChallengeStatusResponse,
    ConfirmStakeRequest,
    CreateChallengeRequest,
    DepositStakeRequest,
    DisputeOutcomeResponse,
    DisputeResponse,
    FeePayerResponse,
    GatekeeperResultRequest,
    HealthResponse,
    RaiseDisputeRequest,
    ResolveDisputeRequest,
    StakeActionRequest,
    StakeEventResponse,
    StakeResponse,
    SweepReportResponse,
    TrafficLightResponse,
)

__all__ = [
    "CancelChallengeRequest",
    "ChallengeEventResponse",
    "ChallengeResponse",
    "ChallengeStatusResponse",
    "ConfirmStakeRequest",
    "CreateChallengeRequest",
    "DepositStakeRequest",
    "DisputeOutcomeResponse",
    "DisputeResponse",
    "FeePayerResponse",
    "GatekeeperResultRequest",
    "HealthResponse",
    "RaiseDisputeRequest",
    "ResolveDisputeRequest",
    "StakeActionRequest",
    "StakeEventResponse",
    "StakeResponse",
    "SweepReportResponse",
    "TrafficLightResponse",
]
