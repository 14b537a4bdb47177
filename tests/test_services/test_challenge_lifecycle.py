"""Tests for the Challenge Lifecycle service.

These tests verify that:
    1. Creation validates mode, counterparty and threshold combinations.
    2. Accepting an ENFORCED challenge is gated by the traffic light.
    3. Intent lock holds every confirmed stake; closing releases them.
    4. Every status change is written conditionally and audited exactly once.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from escrow_engine.domain.enums import ChallengeStatus, EventType
from escrow_engine.domain.exceptions import (
    ChallengeExpiredError,
    ChallengeNotFoundError,
    ChallengeNotOpenError,
    ConcurrencyConflictError,
    CounterpartyNotAllowedError,
    CounterpartyRequiredError,
    ForbiddenError,
    InvalidStateTransitionError,
    NotAPartyError,
    NotCounterpartyError,
    TrafficLightRedError,
    ValidationError,
)
from escrow_engine.infrastructure.database.orm_models import Challenge

HALF_ETH = "500000000000000000"


class TestCreate:
    @pytest.mark.asyncio
    async def test_enforced_challenge_starts_in_draft(
        self, lifecycle, enforced_terms, recorder
    ) -> None:
        now = datetime.now(UTC)

        challenge = await lifecycle.create_challenge(
            creator_id="alice",
            mode="ENFORCED",
            title="Run 5k",
            counterparty_id="bob",
            terms=enforced_terms,
            now=now,
        )

        assert challenge.status == ChallengeStatus.DRAFT.value
        assert challenge.expires_at == now + timedelta(seconds=900)

        view = await lifecycle.get_status(challenge.id)
        assert view.threshold.creator_stake == enforced_terms.creator_stake
        assert view.config.accept_timeout_seconds == 900
        assert view.allowed_transitions == ["AWAITING_COUNTERPARTY", "CANCELLED"]

        events = await lifecycle.get_events(challenge.id)
        assert [e.event_type for e in events] == [EventType.CHALLENGE_CREATED.value]
        assert events[0].old_status is None
        assert recorder.types[0] == "challenge.created"

    @pytest.mark.asyncio
    async def test_solo_challenge_has_no_counterparty(self, lifecycle) -> None:
        with pytest.raises(CounterpartyNotAllowedError):
            await lifecycle.create_challenge(
                creator_id="alice", mode="SOLO", title="Meditate", counterparty_id="bob"
            )

        challenge = await lifecycle.create_challenge(
            creator_id="alice", mode="SOLO", title="Meditate"
        )
        assert challenge.expires_at is None

    @pytest.mark.asyncio
    async def test_two_party_modes_need_a_counterparty(self, lifecycle) -> None:
        with pytest.raises(CounterpartyRequiredError):
            await lifecycle.create_challenge(creator_id="alice", mode="GATEKEEPER", title="x")

    @pytest.mark.asyncio
    async def test_counterparty_must_differ(self, lifecycle) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.create_challenge(
                creator_id="alice", mode="FIRE", title="x", counterparty_id="alice"
            )
        assert exc_info.value.code == "CHALLENGE_SELF_COUNTERPARTY"

    @pytest.mark.asyncio
    async def test_enforced_needs_thresholds(self, lifecycle) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.create_challenge(
                creator_id="alice", mode="ENFORCED", title="x", counterparty_id="bob"
            )
        assert exc_info.value.code == "THRESHOLDS_REQUIRED"

    @pytest.mark.asyncio
    async def test_thresholds_only_for_enforced(self, lifecycle, enforced_terms) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.create_challenge(
                creator_id="alice",
                mode="GATEKEEPER",
                title="x",
                counterparty_id="bob",
                terms=enforced_terms,
            )
        assert exc_info.value.code == "THRESHOLDS_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_transaction_limit(self, lifecycle, enforced_terms, settings) -> None:
        assert settings.max_transaction_usd == Decimal("1000")
        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.create_challenge(
                creator_id="alice",
                mode="ENFORCED",
                title="x",
                counterparty_id="bob",
                terms=replace(enforced_terms, max_usd="5000"),
            )
        assert exc_info.value.code == "TRANSACTION_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_coin_toss_needs_a_call(self, lifecycle) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.create_challenge(
                creator_id="alice",
                mode="FIRE",
                title="x",
                counterparty_id="bob",
                fee_arrangement="coin_toss",
            )
        assert exc_info.value.code == "COIN_TOSS_CALL_REQUIRED"


class TestSendAndAccept:
    @pytest.mark.asyncio
    async def test_only_creator_can_send(self, lifecycle, enforced_terms) -> None:
        challenge = await lifecycle.create_challenge(
            creator_id="alice",
            mode="ENFORCED",
            title="x",
            counterparty_id="bob",
            terms=enforced_terms,
        )
        with pytest.raises(ForbiddenError):
            await lifecycle.send(challenge.id, "bob")

    @pytest.mark.asyncio
    async def test_send_restarts_accept_window(self, lifecycle, enforced_terms) -> None:
        created = datetime.now(UTC) - timedelta(hours=2)
        challenge = await lifecycle.create_challenge(
            creator_id="alice",
            mode="ENFORCED",
            title="x",
            counterparty_id="bob",
            terms=enforced_terms,
            now=created,
        )
        sent = datetime.now(UTC)

        challenge = await lifecycle.send(challenge.id, "alice", now=sent)

        assert challenge.status == ChallengeStatus.AWAITING_COUNTERPARTY.value
        assert challenge.expires_at == sent + timedelta(seconds=900)

    @pytest.mark.asyncio
    async def test_fully_staked_accept_locks_intent(self, lifecycle, locked_challenge) -> None:
        now = datetime.now(UTC)

        challenge = await locked_challenge(now=now)

        assert challenge.status == ChallengeStatus.INTENT_LOCKED.value
        assert challenge.intent_locked_at == now
        assert challenge.response_deadline_at == now + timedelta(seconds=86_400)

        stakes = await lifecycle.ledger.list_stakes(challenge.id)
        assert {s.status for s in stakes} == {"HELD"}

        events = await lifecycle.get_events(challenge.id)
        assert [e.event_type for e in events] == [
            "CHALLENGE_CREATED",
            "CHALLENGE_SENT",
            "CHALLENGE_ACCEPTED",
            "INTENT_LOCKED",
        ]
        assert events[-1].actor == "bob"
        assert len(events[-1].metadata_json["locked_stakes"]) == 2

    @pytest.mark.asyncio
    async def test_underfunded_accept_is_refused(
        self, lifecycle, open_challenge, stake_confirmed
    ) -> None:
        challenge = await open_challenge()
        await stake_confirmed(challenge, "alice", amount=HALF_ETH)
        await stake_confirmed(challenge, "bob")

        with pytest.raises(TrafficLightRedError) as exc_info:
            await lifecycle.accept(challenge.id, "bob")

        assert exc_info.value.reason == "Creator stake insufficient"
        assert exc_info.value.to_dict()["flags"] == ["Creator stake insufficient"]

        challenge = await lifecycle.get_challenge(challenge.id)
        assert challenge.status == ChallengeStatus.AWAITING_COUNTERPARTY.value
        stakes = await lifecycle.ledger.list_stakes(challenge.id)
        assert {s.status for s in stakes} == {"CONFIRMED"}

    @pytest.mark.asyncio
    async def test_yellow_light_still_allows_accept(
        self, lifecycle, open_challenge, stake_confirmed
    ) -> None:
        challenge = await open_challenge()
        await stake_confirmed(challenge, "alice")

        challenge = await lifecycle.accept(challenge.id, "bob")

        assert challenge.status == ChallengeStatus.INTENT_LOCKED.value
        statuses = {s.user_id: s.status for s in await lifecycle.ledger.list_stakes(challenge.id)}
        assert statuses == {"alice": "HELD"}

    @pytest.mark.asyncio
    async def test_only_counterparty_can_accept(self, lifecycle, open_challenge) -> None:
        challenge = await open_challenge()

        with pytest.raises(NotCounterpartyError):
            await lifecycle.accept(challenge.id, "alice")

    @pytest.mark.asyncio
    async def test_accept_after_deadline(self, lifecycle, open_challenge) -> None:
        challenge = await open_challenge(now=datetime.now(UTC) - timedelta(hours=1))

        with pytest.raises(ChallengeExpiredError):
            await lifecycle.accept(challenge.id, "bob")

        challenge = await lifecycle.get_challenge(challenge.id)
        assert challenge.status == ChallengeStatus.AWAITING_COUNTERPARTY.value

    @pytest.mark.asyncio
    async def test_accept_twice(self, lifecycle, locked_challenge) -> None:
        challenge = await locked_challenge()

        with pytest.raises(InvalidStateTransitionError):
            await lifecycle.accept(challenge.id, "bob")


class TestGatekeeper:
    async def _accepted(self, lifecycle) -> Challenge:
        challenge = await lifecycle.create_challenge(
            creator_id="alice", mode="GATEKEEPER", title="Read a book", counterparty_id="bob"
        )
        await lifecycle.send(challenge.id, "alice")
        return await lifecycle.accept(challenge.id, "bob")

    @pytest.mark.asyncio
    async def test_accept_waits_for_gatekeeper(self, lifecycle) -> None:
        challenge = await self._accepted(lifecycle)
        assert challenge.status == ChallengeStatus.AWAITING_GATEKEEPER.value

    @pytest.mark.asyncio
    async def test_gatekeeper_pass_locks_intent(self, lifecycle) -> None:
        challenge = await self._accepted(lifecycle)

        challenge = await lifecycle.record_gatekeeper_result(challenge.id, passed=True)

        assert challenge.status == ChallengeStatus.INTENT_LOCKED.value
        assert challenge.response_deadline_at is not None

    @pytest.mark.asyncio
    async def test_gatekeeper_failure_cancels(self, lifecycle) -> None:
        challenge = await self._accepted(lifecycle)

        challenge = await lifecycle.record_gatekeeper_result(
            challenge.id, passed=False, failures=["goal too vague"]
        )

        assert challenge.status == ChallengeStatus.CANCELLED.value
        events = await lifecycle.get_events(challenge.id)
        assert events[-1].event_type == EventType.GATEKEEPER_REJECTED.value
        assert events[-1].metadata_json == {"failures": ["goal too vague"]}

    @pytest.mark.asyncio
    async def test_enforced_challenges_skip_gatekeeper(self, lifecycle, open_challenge) -> None:
        challenge = await open_challenge()

        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.record_gatekeeper_result(challenge.id, passed=True)
        assert exc_info.value.code == "GATEKEEPER_NOT_APPLICABLE"


class TestCompleteAndCancel:
    @pytest.mark.asyncio
    async def test_both_parties_complete(self, lifecycle, locked_challenge) -> None:
        challenge = await locked_challenge()

        challenge = await lifecycle.complete(challenge.id, "alice")
        assert challenge.status == ChallengeStatus.AWAITING_RESOLUTION.value

        # Completing again is a no-op
        challenge = await lifecycle.complete(challenge.id, "alice")
        assert challenge.status == ChallengeStatus.AWAITING_RESOLUTION.value

        challenge = await lifecycle.complete(challenge.id, "bob")
        assert challenge.status == ChallengeStatus.COMPLETED.value
        assert challenge.resolved_at is not None

        stakes = await lifecycle.ledger.list_stakes(challenge.id)
        assert {s.status for s in stakes} == {"RELEASED"}

    @pytest.mark.asyncio
    async def test_outsider_cannot_complete(self, lifecycle, locked_challenge) -> None:
        challenge = await locked_challenge()

        with pytest.raises(NotAPartyError):
            await lifecycle.complete(challenge.id, "mallory")

    @pytest.mark.asyncio
    async def test_complete_before_lock(self, lifecycle, open_challenge) -> None:
        challenge = await open_challenge()

        with pytest.raises(ChallengeNotOpenError):
            await lifecycle.complete(challenge.id, "alice")

    @pytest.mark.asyncio
    async def test_cancel_returns_confirmed_stakes(
        self, lifecycle, open_challenge, stake_confirmed
    ) -> None:
        challenge = await open_challenge()
        await stake_confirmed(challenge, "alice")

        challenge = await lifecycle.cancel(challenge.id, "alice", reason="changed my mind")

        assert challenge.status == ChallengeStatus.CANCELLED.value
        stakes = await lifecycle.ledger.list_stakes(challenge.id)
        assert [s.status for s in stakes] == ["RELEASED"]
        events = await lifecycle.ledger.history(stakes[0].id)
        assert events[-1].details["reason"] == "changed my mind"

    @pytest.mark.asyncio
    async def test_cancel_rules(self, lifecycle, locked_challenge, open_challenge) -> None:
        challenge = await open_challenge()
        with pytest.raises(ForbiddenError):
            await lifecycle.cancel(challenge.id, "bob")

        locked = await locked_challenge()
        with pytest.raises(ChallengeNotOpenError):
            await lifecycle.cancel(locked.id, "alice")


class TestTransition:
    @pytest.mark.asyncio
    async def test_illegal_target(self, lifecycle, open_challenge) -> None:
        challenge = await open_challenge()

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await lifecycle.transition(challenge.id, "COMPLETED")
        assert exc_info.value.current_state == "AWAITING_COUNTERPARTY"

    @pytest.mark.asyncio
    async def test_disputes_need_raise_dispute(self, lifecycle, locked_challenge) -> None:
        challenge = await locked_challenge()
        await lifecycle.complete(challenge.id, "alice")

        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.transition(challenge.id, ChallengeStatus.DISPUTED)
        assert exc_info.value.code == "DISPUTE_REQUIRES_RAISE"

    @pytest.mark.asyncio
    async def test_terminal_target_releases_stakes(self, lifecycle, locked_challenge) -> None:
        challenge = await locked_challenge()

        challenge = await lifecycle.transition(challenge.id, "CANCELLED", actor="ops")

        assert challenge.status == ChallengeStatus.CANCELLED.value
        stakes = await lifecycle.ledger.list_stakes(challenge.id)
        assert {s.status for s in stakes} == {"RELEASED"}
        events = await lifecycle.get_events(challenge.id)
        assert events[-1].actor == "ops"

    @pytest.mark.asyncio
    async def test_one_audit_event_per_status_change(self, lifecycle, locked_challenge) -> None:
        challenge = await locked_challenge()
        await lifecycle.complete(challenge.id, "alice")
        await lifecycle.complete(challenge.id, "bob")

        events = await lifecycle.get_events(challenge.id)
        changes = [(e.old_status, e.new_status) for e in events if e.old_status != e.new_status]
        assert changes == [
            (None, "DRAFT"),
            ("DRAFT", "AWAITING_COUNTERPARTY"),
            ("AWAITING_COUNTERPARTY", "AWAITING_GATEKEEPER"),
            ("AWAITING_GATEKEEPER", "INTENT_LOCKED"),
            ("INTENT_LOCKED", "AWAITING_RESOLUTION"),
            ("AWAITING_RESOLUTION", "COMPLETED"),
        ]

    @pytest.mark.asyncio
    async def test_stale_write_conflicts(self, session, lifecycle, open_challenge) -> None:
        challenge = await open_challenge()
        await session.execute(
            update(Challenge)
            .where(Challenge.id == challenge.id)
            .values(status=ChallengeStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(ConcurrencyConflictError):
            await lifecycle.apply_transition(
                challenge, ChallengeStatus.AWAITING_GATEKEEPER, "bob"
            )


class TestQueries:
    @pytest.mark.asyncio
    async def test_status_view(self, lifecycle, locked_challenge) -> None:
        challenge = await locked_challenge()

        view = await lifecycle.get_status(challenge.id)

        assert view.challenge.id == challenge.id
        assert len(view.stakes) == 2
        assert view.traffic_light is not None
        assert view.traffic_light.value == "GREEN"
        assert view.allowed_transitions == ["AWAITING_RESOLUTION", "CANCELLED", "COMPLETED"]

    @pytest.mark.asyncio
    async def test_list_for_user(self, lifecycle, open_challenge) -> None:
        challenge = await open_challenge()

        assert [c.id for c in await lifecycle.list_for_user("bob")] == [challenge.id]
        assert await lifecycle.list_for_user("carol") == []

    @pytest.mark.asyncio
    async def test_unknown_challenge(self, lifecycle) -> None:
        with pytest.raises(ChallengeNotFoundError):
            await lifecycle.get_challenge(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_coin_toss_fee_payer(self, lifecycle) -> None:
        challenge = await lifecycle.create_challenge(
            creator_id="alice",
            mode="FIRE",
            title="x",
            counterparty_id="bob",
            fee_arrangement="coin_toss",
            coin_toss_call="heads",
        )

        # 0x00 is even, so heads: the creator called it and wins the toss
        result = await lifecycle.resolve_fee_payer(challenge.id, block_hash="0x00" + "f" * 62)

        assert result == {
            "fee_arrangement": "coin_toss",
            "fee_payer": "COUNTERPARTY",
            "coin_result": "heads",
            "creator_call": "heads",
        }
