"""Domain exceptions for the Escrow Challenge Engine.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware,
which keys off each exception's ``kind``.
"""

from __future__ import annotations

import enum


class ErrorKind(enum.StrEnum):
    """Coarse error taxonomy reported to callers."""

    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION = "VALIDATION"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    CONFLICT = "CONFLICT"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"


class EngineError(Exception):
    """Base exception for all domain errors."""

    kind: ErrorKind = ErrorKind.VALIDATION
    retryable: bool = False

    def __init__(self, message: str, code: str = "ENGINE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Serialize for API and MCP error payloads."""
        return {
            "error": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }


# --- Not Found ---


class NotFoundError(EngineError):
    kind = ErrorKind.NOT_FOUND


class ChallengeNotFoundError(NotFoundError):
    """Raised when a challenge ID does not exist."""

    def __init__(self, challenge_id: str) -> None:
        super().__init__(
            message=f"Challenge not found: {challenge_id}",
            code="CHALLENGE_NOT_FOUND",
        )
        self.challenge_id = challenge_id


class StakeNotFoundError(NotFoundError):
    def __init__(self, stake_id: str) -> None:
        super().__init__(message=f"Stake not found: {stake_id}", code="STAKE_NOT_FOUND")
        self.stake_id = stake_id


class DisputeNotFoundError(NotFoundError):
    def __init__(self, challenge_id: str) -> None:
        super().__init__(
            message=f"No pending dispute for challenge: {challenge_id}",
            code="DISPUTE_NOT_FOUND",
        )
        self.challenge_id = challenge_id


# --- Invalid State ---


class InvalidStateError(EngineError):
    kind = ErrorKind.INVALID_STATE


class InvalidStateTransitionError(InvalidStateError):
    """Raised when an attempted challenge transition is not in the transition table.

    Example: DRAFT -> INTENT_LOCKED (must go through AWAITING_COUNTERPARTY, etc.)
    """

    def __init__(self, current_state: str, attempted_state: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_state = attempted_state


class InvalidStakeStateError(InvalidStateError):
    """Raised when a stake operation is attempted from a disallowed source status."""

    def __init__(self, stake_id: str, current_status: str, operation: str) -> None:
        super().__init__(
            message=f"Cannot {operation} stake {stake_id} in status {current_status}",
            code="STAKE_INVALID_STATUS",
        )
        self.stake_id = stake_id
        self.current_status = current_status
        self.operation = operation


class AlreadyDepositedError(InvalidStateError):
    def __init__(self, challenge_id: str, user_id: str) -> None:
        super().__init__(
            message=f"User {user_id} already has a stake on challenge {challenge_id}",
            code="STAKE_ALREADY_DEPOSITED",
        )
        self.challenge_id = challenge_id
        self.user_id = user_id


class ChallengeNotOpenError(InvalidStateError):
    """Raised when an operation needs a challenge that has not yet locked intent."""

    def __init__(self, challenge_id: str, status: str, operation: str) -> None:
        super().__init__(
            message=f"Cannot {operation} on challenge {challenge_id} in status {status}",
            code="CHALLENGE_NOT_OPEN",
        )
        self.challenge_id = challenge_id
        self.status = status


class ChallengeExpiredError(InvalidStateError):
    def __init__(self, challenge_id: str) -> None:
        super().__init__(
            message=f"Challenge has expired: {challenge_id}",
            code="CHALLENGE_EXPIRED",
        )
        self.challenge_id = challenge_id


class TrafficLightRedError(InvalidStateError):
    """Raised when the Traffic Light blocks an ENFORCED transition."""

    def __init__(self, challenge_id: str, reason: str, flags: list[str] | None = None) -> None:
        super().__init__(
            message=f"Traffic light is RED for challenge {challenge_id}: {reason}",
            code="TRAFFIC_LIGHT_RED",
        )
        self.challenge_id = challenge_id
        self.reason = reason
        self.flags = flags or []

    def to_dict(self) -> dict:
        return {**super().to_dict(), "reason": self.reason, "flags": self.flags}


# --- Forbidden ---


class ForbiddenError(EngineError):
    kind = ErrorKind.FORBIDDEN

    def __init__(self, message: str, code: str = "FORBIDDEN") -> None:
        super().__init__(message=message, code=code)


class NotAPartyError(ForbiddenError):
    def __init__(self, challenge_id: str, user_id: str) -> None:
        super().__init__(
            message=f"User {user_id} is not a party to challenge {challenge_id}",
            code="NOT_A_PARTY",
        )
        self.user_id = user_id


class NotCounterpartyError(ForbiddenError):
    def __init__(self, challenge_id: str, user_id: str) -> None:
        super().__init__(
            message=f"Only the counterparty can accept challenge {challenge_id}",
            code="CHALLENGE_NOT_COUNTERPARTY",
        )
        self.user_id = user_id


# --- Validation ---


class ValidationError(EngineError):
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message=message, code=code)


class InvalidAmountError(ValidationError):
    def __init__(self, amount: str) -> None:
        super().__init__(
            message=f"Amount must be an unsigned integer string, got {amount!r}",
            code="INVALID_AMOUNT",
        )
        self.amount = amount


class ChainNotAllowedError(ValidationError):
    def __init__(self, chain_id: str, allowed: list[str]) -> None:
        super().__init__(
            message=f"Chain {chain_id} is not allowed. Allowed: {', '.join(allowed)}",
            code="STAKE_CHAIN_NOT_ALLOWED",
        )
        self.chain_id = chain_id
        self.allowed = allowed


class AssetNotAllowedError(ValidationError):
    def __init__(self, asset: str, allowed: list[str]) -> None:
        super().__init__(
            message=f"Asset {asset} is not allowed. Allowed: {', '.join(allowed)}",
            code="STAKE_ASSET_NOT_ALLOWED",
        )
        self.asset = asset
        self.allowed = allowed


class InsufficientConfirmationsError(ValidationError):
    def __init__(self, observed: int, required: int) -> None:
        super().__init__(
            message=f"Deposit has {observed} confirmations, {required} required",
            code="STAKE_INSUFFICIENT_CONFIRMATIONS",
        )
        self.observed = observed
        self.required = required


class CounterpartyRequiredError(ValidationError):
    def __init__(self, mode: str) -> None:
        super().__init__(
            message=f"{mode} challenges require a counterparty",
            code="CHALLENGE_COUNTERPARTY_REQUIRED",
        )


class CounterpartyNotAllowedError(ValidationError):
    def __init__(self) -> None:
        super().__init__(
            message="SOLO challenges cannot have a counterparty",
            code="CHALLENGE_SOLO_NO_COUNTERPARTY",
        )


# --- Insufficient Funds ---


class InsufficientStakeError(EngineError):
    """Raised when a deposited amount is below the required stake."""

    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, required: str, deposited: str, deficit: str) -> None:
        super().__init__(
            message=f"Insufficient stake: required {required}, deposited {deposited}",
            code="STAKE_AMOUNT_INSUFFICIENT",
        )
        self.required = required
        self.deposited = deposited
        self.deficit = deficit

    def to_dict(self) -> dict:
        return {**super().to_dict(), "deficit": self.deficit}


# --- Conflict ---


class ConcurrencyConflictError(EngineError):
    """Raised when an optimistic-lock precondition fails.

    The stored status changed between the read and the conditional write.
    Callers re-read and replay their intent.
    """

    kind = ErrorKind.CONFLICT
    retryable = True

    def __init__(self, entity: str, entity_id: str, expected_status: str) -> None:
        super().__init__(
            message=(
                f"{entity} {entity_id} is no longer in status {expected_status}; "
                "re-read and retry"
            ),
            code="CONCURRENT_MODIFICATION",
        )
        self.entity = entity
        self.entity_id = entity_id
        self.expected_status = expected_status


# --- Upstream ---


class UpstreamUnavailableError(EngineError):
    """Raised when an external collaborator (trust score, RPC) fails."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE

    def __init__(self, service: str, detail: str) -> None:
        super().__init__(
            message=f"{service} unavailable: {detail}",
            code=f"{service.upper()}_UNAVAILABLE",
        )
        self.service = service
        self.detail = detail
