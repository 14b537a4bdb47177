"""Stake Ledger — collateral sub-ledger of ENFORCED challenges.

Coordinates between:
    - Domain stake state machine (transition guard)
    - Threshold policy (allow-lists, required amounts and confirmations)
    - Stake repository (conditional status writes + append-only stake events)
    - Event emitter (stake.* notifications)

The ledger records custody decisions; moving funds on-chain is somebody
else's job. Every status write is conditional on the status just read, so a
retried lock/release/slash on a stake that already moved fails instead of
applying twice.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from escrow_engine.config import Settings, get_settings
from escrow_engine.domain.amounts import parse_amount, validate_stake_amount
from escrow_engine.domain.enums import (
    PRE_LOCK_STATUSES,
    ChallengeMode,
    StakeEventType,
    StakeStatus,
    WebhookEventType,
)
from escrow_engine.domain.exceptions import (
    AlreadyDepositedError,
    AssetNotAllowedError,
    ChainNotAllowedError,
    ChallengeNotFoundError,
    ChallengeNotOpenError,
    InsufficientConfirmationsError,
    InsufficientStakeError,
    InvalidAmountError,
    NotAPartyError,
    StakeNotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from escrow_engine.domain.state_machine import validate_stake_operation
from escrow_engine.infrastructure.database.orm_models import Stake
from escrow_engine.infrastructure.database.repositories import (
    ChallengeRepository,
    EnforcedTermsRepository,
    StakeRepository,
)
from escrow_engine.infrastructure.events import NullEventEmitter
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.domain.collaborators import ConfirmationSource, EventEmitter
    from escrow_engine.infrastructure.database.orm_models import Challenge, StakeEvent

logger = get_logger(__name__)

# Stakes that still represent collateral in custody.
CUSTODIED_STATUSES = (StakeStatus.HELD, StakeStatus.CONFIRMED)


class StakeLedger:
    """Manages each party's stake on ENFORCED challenges."""

    def __init__(
        self,
        session: AsyncSession,
        events: EventEmitter | None = None,
        settings: Settings | None = None,
        confirmations: ConfirmationSource | None = None,
    ) -> None:
        self._session = session
        self._events = events or NullEventEmitter()
        self._settings = settings or get_settings()
        self._confirmations = confirmations
        self._challenge_repo = ChallengeRepository(session)
        self._terms_repo = EnforcedTermsRepository(session)
        self._stake_repo = StakeRepository(session)

    # ------------------------------------------------------------------
    # Deposit
    # ------------------------------------------------------------------

    async def deposit(
        self,
        challenge_id: uuid.UUID,
        user_id: str,
        wallet_address: str,
        amount: str,
        currency: str,
        chain_id: str,
        token_address: str | None = None,
    ) -> Stake:
        """Record a party's deposit as a PENDING stake."""
        challenge = await self._get_challenge_or_raise(challenge_id)

        if challenge.challenge_mode != ChallengeMode.ENFORCED:
            raise ValidationError(
                "Stakes are only collected on ENFORCED challenges",
                code="STAKE_MODE_NOT_ENFORCED",
            )
        if not challenge.is_party(user_id):
            raise NotAPartyError(str(challenge_id), user_id)
        if challenge.challenge_status not in PRE_LOCK_STATUSES:
            raise ChallengeNotOpenError(str(challenge_id), challenge.status, "deposit")

        threshold = await self._terms_repo.get_threshold(challenge.id)
        if threshold is None:
            raise ValidationError(
                f"Challenge {challenge_id} has no stake thresholds", code="THRESHOLDS_MISSING"
            )
        terms = threshold.to_terms()

        if parse_amount(amount) == 0:
            raise InvalidAmountError(amount)
        if not terms.is_chain_allowed(chain_id):
            raise ChainNotAllowedError(chain_id, list(terms.allowed_chains))
        if not terms.is_asset_allowed(currency):
            raise AssetNotAllowedError(currency, list(terms.allowed_assets))

        if await self._stake_repo.get_for_user(challenge.id, user_id) is not None:
            raise AlreadyDepositedError(str(challenge_id), user_id)

        is_creator = user_id == challenge.creator_id
        required = terms.creator_stake if is_creator else terms.counterparty_stake
        check = validate_stake_amount(amount, required)
        if not check.valid and self._settings.stake_reject_underfunded_deposits:
            raise InsufficientStakeError(required, amount, check.deficit)

        wallet = wallet_address.lower()
        if is_creator and challenge.creator_wallet is None:
            challenge.creator_wallet = wallet
        elif not is_creator and challenge.counterparty_wallet is None:
            challenge.counterparty_wallet = wallet

        stake = Stake(
            challenge_id=challenge.id,
            user_id=user_id,
            wallet_address=wallet,
            amount=amount,
            currency=currency.upper(),
            chain_id=chain_id,
            token_address=token_address.lower() if token_address else None,
            status=StakeStatus.PENDING.value,
            deposited_at=datetime.now(UTC),
        )
        try:
            stake = await self._stake_repo.create(stake)
        except IntegrityError as err:
            # Lost a race with a concurrent deposit for the same party
            raise AlreadyDepositedError(str(challenge_id), user_id) from err

        details = {
            "amount": amount,
            "currency": stake.currency,
            "chain_id": chain_id,
            "required": required,
            "deficit": check.deficit,
        }
        await self._stake_repo.record_event(
            stake.id, StakeEventType.DEPOSIT_INITIATED, details=details
        )
        await self._emit(WebhookEventType.STAKE_DEPOSITED, stake, details)

        logger.info(
            "stake.deposited",
            challenge_id=str(challenge.id),
            stake_id=str(stake.id),
            user_id=user_id,
            amount=amount,
            deficit=check.deficit,
        )
        return stake

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def confirm(self, stake_id: uuid.UUID, tx_hash: str, confirmations: int) -> Stake:
        """Mark a deposit CONFIRMED once it has enough on-chain confirmations."""
        stake = await self._get_stake_or_raise(stake_id)
        validate_stake_operation(str(stake.id), stake.status, "confirm")

        threshold = await self._terms_repo.get_threshold(stake.challenge_id)
        required = (
            threshold.required_confirmations
            if threshold is not None
            else self._settings.enforced_required_confirmations
        )
        if confirmations < required:
            raise InsufficientConfirmationsError(confirmations, required)

        return await self._apply(
            stake,
            "confirm",
            StakeEventType.DEPOSIT_CONFIRMED,
            WebhookEventType.STAKE_CONFIRMED,
            tx_hash=tx_hash,
            details={"confirmations": confirmations},
            deposit_tx_hash=tx_hash,
            confirmations=confirmations,
            confirmed_at=datetime.now(UTC),
        )

    async def confirm_from_chain(self, stake_id: uuid.UUID, tx_hash: str) -> Stake:
        """Ask the confirmation source how deep ``tx_hash`` is, then confirm.

        Raises:
            UpstreamUnavailableError: No source is configured or it failed.
            InsufficientConfirmationsError: The transaction is not deep enough yet.
        """
        if self._confirmations is None:
            raise UpstreamUnavailableError("rpc", "no confirmation source configured")
        stake = await self._get_stake_or_raise(stake_id)
        observed = await self._confirmations.get_confirmations(stake.chain_id, tx_hash)
        return await self.confirm(stake_id, tx_hash, observed)

    # ------------------------------------------------------------------
    # Custody transitions
    # ------------------------------------------------------------------

    async def lock(self, stake_id: uuid.UUID) -> Stake:
        """CONFIRMED -> HELD."""
        stake = await self._get_stake_or_raise(stake_id)
        now = datetime.now(UTC)
        return await self._apply(
            stake,
            "lock",
            StakeEventType.LOCKED,
            WebhookEventType.STAKE_LOCKED,
            details={"locked_at": now.isoformat()},
            locked_at=now,
        )

    async def release(
        self, stake_id: uuid.UUID, reason: str, tx_hash: str | None = None
    ) -> Stake:
        """Return the stake to its depositor."""
        stake = await self._get_stake_or_raise(stake_id)
        now = datetime.now(UTC)
        return await self._apply(
            stake,
            "release",
            StakeEventType.RELEASED,
            WebhookEventType.STAKE_RELEASED,
            tx_hash=tx_hash,
            details={"reason": reason, "released_to": stake.user_id, "released_at": now.isoformat()},
            released_at=now,
            release_tx_hash=tx_hash,
        )

    async def transfer(
        self, stake_id: uuid.UUID, reason: str, tx_hash: str | None = None
    ) -> Stake:
        """Award the stake to the other party of the challenge."""
        stake = await self._get_stake_or_raise(stake_id)
        challenge = await self._get_challenge_or_raise(stake.challenge_id)
        recipient = (
            challenge.counterparty_id
            if stake.user_id == challenge.creator_id
            else challenge.creator_id
        )
        now = datetime.now(UTC)
        return await self._apply(
            stake,
            "transfer",
            StakeEventType.TRANSFERRED,
            WebhookEventType.STAKE_TRANSFERRED,
            tx_hash=tx_hash,
            details={"reason": reason, "awarded_to": recipient, "transferred_at": now.isoformat()},
            released_at=now,
            release_tx_hash=tx_hash,
        )

    async def slash(
        self, stake_id: uuid.UUID, reason: str, details: dict | None = None
    ) -> Stake:
        """Record forfeiture of the stake."""
        stake = await self._get_stake_or_raise(stake_id)
        now = datetime.now(UTC)
        return await self._apply(
            stake,
            "slash",
            StakeEventType.SLASHED,
            WebhookEventType.STAKE_SLASHED,
            details={"reason": reason, **(details or {}), "slashed_at": now.isoformat()},
            released_at=now,
        )

    # ------------------------------------------------------------------
    # Bulk helpers used by the lifecycle, disputes and the sweeper
    # ------------------------------------------------------------------

    async def lock_confirmed(self, challenge_id: uuid.UUID) -> list[Stake]:
        """Lock every CONFIRMED stake of a challenge."""
        stakes = await self._stake_repo.list_by_challenge(
            challenge_id, statuses=(StakeStatus.CONFIRMED,)
        )
        return [await self.lock(stake.id) for stake in stakes]

    async def release_custodied(self, challenge_id: uuid.UUID, reason: str) -> list[Stake]:
        """Release every HELD or CONFIRMED stake back to its depositor."""
        stakes = await self._stake_repo.list_by_challenge(challenge_id, statuses=CUSTODIED_STATUSES)
        return [await self.release(stake.id, reason) for stake in stakes]

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_stake(self, stake_id: uuid.UUID) -> Stake:
        return await self._get_stake_or_raise(stake_id)

    async def list_stakes(self, challenge_id: uuid.UUID) -> list[Stake]:
        return await self._stake_repo.list_by_challenge(challenge_id)

    async def history(self, stake_id: uuid.UUID) -> list[StakeEvent]:
        """Stake events in chronological order."""
        await self._get_stake_or_raise(stake_id)
        return await self._stake_repo.get_events(stake_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_challenge_or_raise(self, challenge_id: uuid.UUID) -> Challenge:
        challenge = await self._challenge_repo.get_by_id(challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(str(challenge_id))
        return challenge

    async def _get_stake_or_raise(self, stake_id: uuid.UUID) -> Stake:
        stake = await self._stake_repo.get_by_id(stake_id)
        if stake is None:
            raise StakeNotFoundError(str(stake_id))
        return stake

    async def _apply(
        self,
        stake: Stake,
        operation: str,
        event_type: StakeEventType,
        webhook_type: WebhookEventType,
        tx_hash: str | None = None,
        details: dict | None = None,
        **fields: object,
    ) -> Stake:
        """Validate ``operation``, write the new status conditionally, log the event."""
        current = StakeStatus(stake.status)
        new_status = validate_stake_operation(str(stake.id), stake.status, operation)
        stake = await self._stake_repo.transition_status(stake, current, new_status, **fields)
        await self._stake_repo.record_event(stake.id, event_type, tx_hash=tx_hash, details=details)
        await self._emit(webhook_type, stake, details)

        logger.info(
            f"stake.{new_status.value.lower()}",
            stake_id=str(stake.id),
            challenge_id=str(stake.challenge_id),
            from_status=current.value,
        )
        return stake

    async def _emit(self, event_type: WebhookEventType, stake: Stake, details: dict | None) -> None:
        await self._events.emit(
            event_type.value,
            str(stake.challenge_id),
            {
                "stake_id": str(stake.id),
                "user_id": stake.user_id,
                "status": stake.status,
                **(details or {}),
            },
        )
