"""Challenge and Stake State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the API, the sweeper or the dispute resolver asks for, an illegal
transition (e.g., DRAFT -> INTENT_LOCKED) raises InvalidStateTransitionError.

The machines are instantiated per-record and validate a transition before the
repository issues the conditional status write.

Challenge transition table:
    DRAFT                 -> AWAITING_COUNTERPARTY (publish)
    DRAFT                 -> CANCELLED             (cancel)
    AWAITING_COUNTERPARTY -> AWAITING_GATEKEEPER   (accept)
    AWAITING_COUNTERPARTY -> EXPIRED               (expire)
    AWAITING_COUNTERPARTY -> CANCELLED             (cancel)
    AWAITING_GATEKEEPER   -> INTENT_LOCKED         (lock_intent)
    AWAITING_GATEKEEPER   -> CANCELLED             (cancel)
    INTENT_LOCKED         -> AWAITING_RESOLUTION   (await_resolution)
    INTENT_LOCKED         -> COMPLETED             (complete)
    INTENT_LOCKED         -> CANCELLED             (cancel)
    AWAITING_RESOLUTION   -> COMPLETED             (complete)
    AWAITING_RESOLUTION   -> DISPUTED              (dispute)
    AWAITING_RESOLUTION   -> CANCELLED             (cancel)
    DISPUTED              -> COMPLETED             (complete)
    DISPUTED              -> CANCELLED             (cancel)

Every target status is reached by exactly one event, so a transition can be
requested either by event name or by target status.
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from escrow_engine.domain.enums import ChallengeStatus, StakeStatus
from escrow_engine.domain.exceptions import (
    InvalidStakeStateError,
    InvalidStateTransitionError,
)


class ChallengeStateMachine(StateMachine):
    """State machine that guards challenge lifecycle transitions.

    Usage:
        sm = ChallengeStateMachine(current_status="AWAITING_COUNTERPARTY")
        sm.accept()          # transitions to AWAITING_GATEKEEPER
        sm.status            # "AWAITING_GATEKEEPER"
    """

    # --- States ---
    DRAFT = State("DRAFT", initial=True)
    AWAITING_COUNTERPARTY = State("AWAITING_COUNTERPARTY")
    AWAITING_GATEKEEPER = State("AWAITING_GATEKEEPER")
    INTENT_LOCKED = State("INTENT_LOCKED")
    AWAITING_RESOLUTION = State("AWAITING_RESOLUTION")
    DISPUTED = State("DISPUTED")
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)
    EXPIRED = State("EXPIRED", final=True)

    # --- Events / Transitions ---

    # Invitation
    publish = DRAFT.to(AWAITING_COUNTERPARTY)
    accept = AWAITING_COUNTERPARTY.to(AWAITING_GATEKEEPER)
    expire = AWAITING_COUNTERPARTY.to(EXPIRED)

    # Gatekeeping
    lock_intent = AWAITING_GATEKEEPER.to(INTENT_LOCKED)

    # Resolution
    await_resolution = INTENT_LOCKED.to(AWAITING_RESOLUTION)
    complete = (
        INTENT_LOCKED.to(COMPLETED)
        | AWAITING_RESOLUTION.to(COMPLETED)
        | DISPUTED.to(COMPLETED)
    )
    dispute = AWAITING_RESOLUTION.to(DISPUTED)

    # Cancellation from any non-terminal state
    cancel = (
        DRAFT.to(CANCELLED)
        | AWAITING_COUNTERPARTY.to(CANCELLED)
        | AWAITING_GATEKEEPER.to(CANCELLED)
        | INTENT_LOCKED.to(CANCELLED)
        | AWAITING_RESOLUTION.to(CANCELLED)
        | DISPUTED.to(CANCELLED)
    )

    def __init__(self, current_status: str = "DRAFT") -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current ChallengeStatus value (e.g., "DRAFT").
                           Must match one of the State value strings exactly.
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown status '{current_status}'. Valid states: {valid}")
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches ChallengeStatus enum)."""
        return str(self.current_state.value)

    def allowed_targets(self) -> list[str]:
        """Return the statuses reachable from the current state in one step."""
        return sorted({str(t.target.value) for t in self.current_state.transitions})


# Event that reaches each target status.
_CHALLENGE_EVENT_FOR_TARGET: dict[ChallengeStatus, str] = {
    ChallengeStatus.AWAITING_COUNTERPARTY: "publish",
    ChallengeStatus.AWAITING_GATEKEEPER: "accept",
    ChallengeStatus.EXPIRED: "expire",
    ChallengeStatus.INTENT_LOCKED: "lock_intent",
    ChallengeStatus.AWAITING_RESOLUTION: "await_resolution",
    ChallengeStatus.COMPLETED: "complete",
    ChallengeStatus.DISPUTED: "dispute",
    ChallengeStatus.CANCELLED: "cancel",
}


def validate_transition(current_status: str, target_status: str) -> ChallengeStatus:
    """Validate a challenge transition and return the new status.

    Creates a temporary state machine at ``current_status`` and fires the single
    event that leads to ``target_status``.

    Raises:
        InvalidStateTransitionError: If the pair is not in the transition table.
        ValueError: If either status is unknown.
    """
    target = ChallengeStatus(target_status)
    sm = ChallengeStateMachine(current_status=current_status)

    event_name = _CHALLENGE_EVENT_FOR_TARGET.get(target)
    if event_name is None:
        # Nothing transitions back into DRAFT
        raise InvalidStateTransitionError(current_status, target.value)

    try:
        getattr(sm, event_name)()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(current_status, target.value) from err
    return ChallengeStatus(sm.status)


class StakeStateMachine(StateMachine):
    """State machine that guards a stake's escrow lifecycle.

    PENDING -> CONFIRMED -> HELD -> {RELEASED, TRANSFERRED}
    {CONFIRMED, HELD} -> SLASHED
    CONFIRMED -> {RELEASED, TRANSFERRED} covers cancellation before intent lock.
    """

    PENDING = State("PENDING", initial=True)
    CONFIRMED = State("CONFIRMED")
    HELD = State("HELD")
    RELEASED = State("RELEASED", final=True)
    TRANSFERRED = State("TRANSFERRED", final=True)
    SLASHED = State("SLASHED", final=True)

    confirm = PENDING.to(CONFIRMED)
    lock = CONFIRMED.to(HELD)
    release = HELD.to(RELEASED) | CONFIRMED.to(RELEASED)
    transfer = HELD.to(TRANSFERRED) | CONFIRMED.to(TRANSFERRED)
    slash = HELD.to(SLASHED) | CONFIRMED.to(SLASHED)

    def __init__(self, current_status: str = "PENDING") -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown stake status '{current_status}'. Valid states: {valid}")
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        return str(self.current_state.value)


def validate_stake_operation(stake_id: str, current_status: str, operation: str) -> StakeStatus:
    """Validate a stake operation (confirm, lock, release, transfer, slash).

    Returns:
        The stake status after the operation.

    Raises:
        InvalidStakeStateError: If the stake is not in a required source status.
    """
    sm = StakeStateMachine(current_status=current_status)
    try:
        getattr(sm, operation)()
    except TransitionNotAllowed as err:
        raise InvalidStakeStateError(stake_id, current_status, operation) from err
    return StakeStatus(sm.status)
