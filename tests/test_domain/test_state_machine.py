"""Tests for the challenge and stake state machine guards.

These tests verify that:
    1. Every pair in the transition table is allowed, every other pair is not.
    2. Terminal statuses are absorbing.
    3. Stake statuses only move forward.
    4. The validate_* helpers raise domain errors, not library errors.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from escrow_engine.domain.enums import ChallengeStatus, StakeStatus
from escrow_engine.domain.exceptions import InvalidStakeStateError, InvalidStateTransitionError
from escrow_engine.domain.state_machine import (
    ChallengeStateMachine,
    StakeStateMachine,
    validate_stake_operation,
    validate_transition,
)

S = ChallengeStatus

ALLOWED: set[tuple[ChallengeStatus, ChallengeStatus]] = {
    (S.DRAFT, S.AWAITING_COUNTERPARTY),
    (S.DRAFT, S.CANCELLED),
    (S.AWAITING_COUNTERPARTY, S.AWAITING_GATEKEEPER),
    (S.AWAITING_COUNTERPARTY, S.EXPIRED),
    (S.AWAITING_COUNTERPARTY, S.CANCELLED),
    (S.AWAITING_GATEKEEPER, S.INTENT_LOCKED),
    (S.AWAITING_GATEKEEPER, S.CANCELLED),
    (S.INTENT_LOCKED, S.AWAITING_RESOLUTION),
    (S.INTENT_LOCKED, S.COMPLETED),
    (S.INTENT_LOCKED, S.CANCELLED),
    (S.AWAITING_RESOLUTION, S.COMPLETED),
    (S.AWAITING_RESOLUTION, S.DISPUTED),
    (S.AWAITING_RESOLUTION, S.CANCELLED),
    (S.DISPUTED, S.COMPLETED),
    (S.DISPUTED, S.CANCELLED),
}


class TestHappyPath:
    def test_full_enforced_lifecycle(self) -> None:
        sm = ChallengeStateMachine("DRAFT")
        sm.publish()
        assert sm.status == "AWAITING_COUNTERPARTY"

        sm.accept()
        assert sm.status == "AWAITING_GATEKEEPER"

        sm.lock_intent()
        assert sm.status == "INTENT_LOCKED"

        sm.await_resolution()
        assert sm.status == "AWAITING_RESOLUTION"

        sm.complete()
        assert sm.status == "COMPLETED"

    def test_dispute_path(self) -> None:
        sm = ChallengeStateMachine("AWAITING_RESOLUTION")
        sm.dispute()
        assert sm.status == "DISPUTED"
        sm.cancel()
        assert sm.status == "CANCELLED"


class TestTransitionTable:
    @pytest.mark.parametrize("current", list(ChallengeStatus))
    @pytest.mark.parametrize("target", list(ChallengeStatus))
    def test_closure(self, current: ChallengeStatus, target: ChallengeStatus) -> None:
        if (current, target) in ALLOWED:
            assert validate_transition(current.value, target.value) == target
        else:
            with pytest.raises(InvalidStateTransitionError) as exc_info:
                validate_transition(current.value, target.value)
            assert exc_info.value.current_state == current.value
            assert exc_info.value.attempted_state == target.value

    @pytest.mark.parametrize("terminal", [S.COMPLETED, S.CANCELLED, S.EXPIRED])
    def test_terminal_is_absorbing(self, terminal: ChallengeStatus) -> None:
        assert ChallengeStateMachine(terminal.value).allowed_targets() == []

    def test_allowed_targets(self) -> None:
        sm = ChallengeStateMachine("AWAITING_COUNTERPARTY")
        assert sm.allowed_targets() == ["AWAITING_GATEKEEPER", "CANCELLED", "EXPIRED"]

    def test_library_error_on_direct_event(self) -> None:
        sm = ChallengeStateMachine("DRAFT")
        with pytest.raises(TransitionNotAllowed):
            sm.lock_intent()

    def test_unknown_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            ChallengeStateMachine("INVALID_STATUS")

    def test_unknown_target(self) -> None:
        with pytest.raises(ValueError):
            validate_transition("DRAFT", "NOWHERE")


class TestStakeMachine:
    def test_forward_path(self) -> None:
        sm = StakeStateMachine("PENDING")
        sm.confirm()
        sm.lock()
        sm.release()
        assert sm.status == "RELEASED"

    @pytest.mark.parametrize("operation", ["release", "transfer", "slash"])
    def test_custodied_stake_can_settle(self, operation: str) -> None:
        for source in ("CONFIRMED", "HELD"):
            new = validate_stake_operation("s-1", source, operation)
            assert new.is_terminal

    @pytest.mark.parametrize(
        "current,operation",
        [
            ("PENDING", "lock"),
            ("PENDING", "release"),
            ("PENDING", "slash"),
            ("HELD", "confirm"),
            ("HELD", "lock"),
            ("RELEASED", "slash"),
            ("SLASHED", "release"),
            ("TRANSFERRED", "transfer"),
        ],
    )
    def test_illegal_operations(self, current: str, operation: str) -> None:
        with pytest.raises(InvalidStakeStateError) as exc_info:
            validate_stake_operation("s-1", current, operation)
        assert exc_info.value.code == "STAKE_INVALID_STATUS"

    def test_never_moves_backwards(self) -> None:
        order = ["PENDING", "CONFIRMED", "HELD"]
        for operation in ("confirm", "lock", "release", "transfer", "slash"):
            for current in StakeStatus:
                try:
                    new = validate_stake_operation("s-1", current.value, operation)
                except InvalidStakeStateError:
                    continue
                if new.value in order:
                    assert order.index(new.value) > order.index(current.value)
                else:
                    assert new.is_terminal
