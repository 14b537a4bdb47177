"""Tests for the pure Traffic Light reducer.

These tests verify that:
    1. Stake verification classifies each party correctly.
    2. RED dominates: insufficient stake, expiry or high risk always win.
    3. GREEN needs satisfied stakes, low risk and no warnings.
    4. Reasons and flags are stable for identical inputs.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from escrow_engine.domain.collaborators import TrustFlag, TrustScore
from escrow_engine.domain.enums import (
    FlagSeverity,
    RiskLevel,
    StakeStatus,
    StakeVerificationStatus,
    TrafficLightState,
)
from escrow_engine.domain.traffic_light import (
    GREEN_REASON,
    FlagCode,
    StakeSnapshot,
    TrafficLightInputs,
    evaluate_traffic_light,
    red_result,
    time_remaining_seconds,
    verify_stake,
)

ONE_ETH = "1000000000000000000"
HALF_ETH = "500000000000000000"


def _confirmed(amount: str = ONE_ETH) -> StakeSnapshot:
    return StakeSnapshot(status=StakeStatus.CONFIRMED, amount=amount, confirmations=12)


def _trust(score: int, level: RiskLevel, critical: bool = False) -> TrustScore:
    flags = (TrustFlag(FlagSeverity.CRITICAL, "SANCTIONED"),) if critical else ()
    return TrustScore(wallet="0xabc", score=score, risk_level=level, flags=flags)


def _inputs(
    creator: StakeSnapshot | None = None,
    counterparty: StakeSnapshot | None = None,
    creator_trust: TrustScore | None = None,
    counterparty_trust: TrustScore | None = None,
    remaining: int | None = None,
) -> TrafficLightInputs:
    return TrafficLightInputs(
        creator_stake=verify_stake(creator, ONE_ETH, 12),
        counterparty_stake=verify_stake(counterparty, ONE_ETH, 12),
        creator_trust=creator_trust,
        counterparty_trust=counterparty_trust,
        time_remaining_seconds=remaining,
    )


class TestVerifyStake:
    def test_nothing_required(self) -> None:
        assert verify_stake(None, "0", 12).status == StakeVerificationStatus.NOT_REQUIRED

    def test_missing_stake_is_pending(self) -> None:
        result = verify_stake(None, ONE_ETH, 12)
        assert result.status == StakeVerificationStatus.PENDING
        assert result.deposited == "0"

    def test_unconfirmed_stake_is_pending(self) -> None:
        stake = StakeSnapshot(status=StakeStatus.PENDING, amount=ONE_ETH)
        assert verify_stake(stake, ONE_ETH, 12).status == StakeVerificationStatus.PENDING

    @pytest.mark.parametrize(
        "status", [StakeStatus.RELEASED, StakeStatus.TRANSFERRED, StakeStatus.SLASHED]
    )
    def test_settled_stake_has_failed(self, status: StakeStatus) -> None:
        stake = StakeSnapshot(status=status, amount=ONE_ETH, confirmations=12)
        assert verify_stake(stake, ONE_ETH, 12).status == StakeVerificationStatus.FAILED

    def test_short_stake_is_insufficient(self) -> None:
        assert (
            verify_stake(_confirmed(HALF_ETH), ONE_ETH, 12).status
            == StakeVerificationStatus.INSUFFICIENT
        )

    def test_held_stake_counts_as_confirmed(self) -> None:
        stake = StakeSnapshot(status=StakeStatus.HELD, amount=ONE_ETH, confirmations=20)
        result = verify_stake(stake, ONE_ETH, 12)
        assert result.status == StakeVerificationStatus.CONFIRMED
        assert result.to_dict()["confirmations"] == 20


class TestReducer:
    def test_green_when_everything_passes(self) -> None:
        result = evaluate_traffic_light(
            _inputs(
                _confirmed(),
                _confirmed(),
                creator_trust=_trust(90, RiskLevel.LOW),
                counterparty_trust=_trust(85, RiskLevel.LOW),
            )
        )
        assert result.state == TrafficLightState.GREEN
        assert result.reason == GREEN_REASON
        assert result.flags == ()
        assert result.thresholds_met
        assert result.can_proceed

    def test_green_without_trust_scores(self) -> None:
        result = evaluate_traffic_light(_inputs(_confirmed(), _confirmed()))
        assert result.state == TrafficLightState.GREEN

    def test_insufficient_creator_stake_is_red(self) -> None:
        result = evaluate_traffic_light(_inputs(_confirmed(HALF_ETH), _confirmed()))
        assert result.state == TrafficLightState.RED
        assert result.reason == "Creator stake insufficient"
        assert not result.can_proceed
        assert not result.thresholds_met

    def test_pending_stake_is_yellow(self) -> None:
        result = evaluate_traffic_light(_inputs(_confirmed(), None))
        assert result.state == TrafficLightState.YELLOW
        assert result.flag_messages == ["Counterparty stake pending confirmation"]
        assert result.reason == "Counterparty stake pending confirmation"

    def test_yellow_reason_joins_flags(self) -> None:
        result = evaluate_traffic_light(_inputs(None, None))
        assert result.reason == (
            "Creator stake pending confirmation, Counterparty stake pending confirmation"
        )

    def test_medium_risk_is_yellow(self) -> None:
        result = evaluate_traffic_light(
            _inputs(_confirmed(), _confirmed(), counterparty_trust=_trust(55, RiskLevel.MEDIUM))
        )
        assert result.state == TrafficLightState.YELLOW
        assert [f.code for f in result.flags] == [FlagCode.MEDIUM_RISK]

    def test_high_risk_is_red(self) -> None:
        result = evaluate_traffic_light(
            _inputs(_confirmed(), _confirmed(), creator_trust=_trust(10, RiskLevel.HIGH))
        )
        assert result.state == TrafficLightState.RED
        assert result.reason == "Creator wallet has HIGH risk score (10)"

    def test_critical_trust_flag_is_red_even_when_low_risk(self) -> None:
        result = evaluate_traffic_light(
            _inputs(_confirmed(), _confirmed(), creator_trust=_trust(95, RiskLevel.LOW, True))
        )
        assert result.state == TrafficLightState.RED
        assert FlagCode.CRITICAL_TRUST_FLAGS in {f.code for f in result.flags}

    def test_expired_deal_is_red(self) -> None:
        result = evaluate_traffic_light(_inputs(_confirmed(), _confirmed(), remaining=0))
        assert result.state == TrafficLightState.RED
        assert result.reason == "Deal has expired"

    def test_expiry_soon_is_yellow(self) -> None:
        result = evaluate_traffic_light(_inputs(_confirmed(), _confirmed(), remaining=1800))
        assert result.state == TrafficLightState.YELLOW
        assert result.flag_messages == ["Less than 1 hour until deal expiry"]

    def test_red_dominates_everything(self) -> None:
        result = evaluate_traffic_light(
            _inputs(
                _confirmed(HALF_ETH),
                None,
                creator_trust=_trust(55, RiskLevel.MEDIUM),
                remaining=600,
            )
        )
        assert result.state == TrafficLightState.RED
        # Stake flags are collected first, so they lead the reason.
        assert result.reason == "Creator stake insufficient"

    def test_deterministic(self) -> None:
        inputs = _inputs(_confirmed(), None, counterparty_trust=_trust(50, RiskLevel.MEDIUM))
        first = evaluate_traffic_light(inputs)
        second = evaluate_traffic_light(inputs)
        assert first.state == second.state
        assert first.reason == second.reason
        assert first.flags == second.flags
        assert first.details() == second.details()

    def test_details_snapshot(self) -> None:
        details = evaluate_traffic_light(
            _inputs(_confirmed(), _confirmed(), creator_trust=_trust(90, RiskLevel.LOW))
        ).details()
        assert details["thresholds_met"] is True
        assert details["creator_stake"]["status"] == "CONFIRMED"
        assert details["trust_scores"]["creator"]["score"] == 90
        assert details["trust_scores"]["counterparty"] is None
        assert details["flag_codes"] == []

    def test_red_result(self) -> None:
        result = red_result("Challenge has no stake thresholds")
        assert result.state == TrafficLightState.RED
        assert result.details() == {"thresholds_met": False, "flag_codes": []}


class TestTimeRemaining:
    def test_no_expiry(self) -> None:
        assert time_remaining_seconds(None, datetime.now(UTC)) is None

    def test_floors_at_zero(self) -> None:
        now = datetime(2025, 1, 1, tzinfo=UTC)
        assert time_remaining_seconds(now - timedelta(minutes=5), now) == 0
        assert time_remaining_seconds(now + timedelta(minutes=5), now) == 300
