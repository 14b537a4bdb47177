"""Tests for domain enumerations."""

from __future__ import annotations

from escrow_engine.domain.enums import (
    PRE_LOCK_STATUSES,
    ChallengeMode,
    ChallengeStatus,
    EventType,
    Party,
    StakeStatus,
    StakeVerificationStatus,
    TrafficLightState,
    WebhookEventType,
)


class TestChallengeStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {
            "DRAFT", "AWAITING_COUNTERPARTY", "AWAITING_GATEKEEPER", "INTENT_LOCKED",
            "AWAITING_RESOLUTION", "COMPLETED", "CANCELLED", "EXPIRED", "DISPUTED",
        }
        assert {s.value for s in ChallengeStatus} == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(ChallengeStatus.DRAFT, str)
        assert ChallengeStatus.INTENT_LOCKED == "INTENT_LOCKED"

    def test_terminal_statuses(self) -> None:
        terminal = {s for s in ChallengeStatus if s.is_terminal}
        assert terminal == {
            ChallengeStatus.COMPLETED,
            ChallengeStatus.CANCELLED,
            ChallengeStatus.EXPIRED,
        }

    def test_disputed_is_not_terminal(self) -> None:
        assert not ChallengeStatus.DISPUTED.is_terminal

    def test_pre_lock_statuses(self) -> None:
        assert ChallengeStatus.AWAITING_GATEKEEPER in PRE_LOCK_STATUSES
        assert ChallengeStatus.INTENT_LOCKED not in PRE_LOCK_STATUSES


class TestStakeStatus:
    def test_terminal_statuses(self) -> None:
        terminal = {s for s in StakeStatus if s.is_terminal}
        assert terminal == {StakeStatus.RELEASED, StakeStatus.TRANSFERRED, StakeStatus.SLASHED}

    def test_verification_satisfied(self) -> None:
        assert StakeVerificationStatus.CONFIRMED.is_satisfied
        assert StakeVerificationStatus.NOT_REQUIRED.is_satisfied
        assert not StakeVerificationStatus.PENDING.is_satisfied
        assert not StakeVerificationStatus.INSUFFICIENT.is_satisfied


class TestOtherEnums:
    def test_modes(self) -> None:
        assert {m.value for m in ChallengeMode} == {"SOLO", "GATEKEEPER", "FIRE", "ENFORCED"}

    def test_traffic_light_states(self) -> None:
        assert [s.value for s in TrafficLightState] == ["GREEN", "YELLOW", "RED"]

    def test_party_label(self) -> None:
        assert Party.COUNTERPARTY.label == "Counterparty"

    def test_event_type_is_str_enum(self) -> None:
        assert isinstance(EventType.CHALLENGE_CREATED, str)

    def test_webhook_types_are_dotted(self) -> None:
        assert all("." in t.value for t in WebhookEventType)
