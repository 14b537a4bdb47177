"""Application services — use case orchestration."""

from escrow_engine.services.challenge_service import ChallengeLifecycle, ChallengeStatusView
from escrow_engine.services.dispute_service import DisputeOutcome, DisputeResolver
from escrow_engine.services.stake_ledger import StakeLedger
from escrow_engine.services.timeout_sweeper import SweepReport, TimeoutSweeper
from escrow_engine.services.traffic_light_service import TrafficLightEvaluator

__all__ = [
    "ChallengeLifecycle",
    "ChallengeStatusView",
    "DisputeOutcome",
    "DisputeResolver",
    "StakeLedger",
    "SweepReport",
    "TimeoutSweeper",
    "TrafficLightEvaluator",
]
