"""Tests for the operator endpoints.

Fixtures from the top-level conftest build the data; it is committed before
the request because each request opens its own unit of work.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from escrow_engine.services.dispute_service import DisputeResolver

ADMIN = "/api/v1/admin"
OPERATOR = {"X-User-ID": "ops-1"}


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_expires_lapsed_invitation(
        self, client, session, open_challenge, lifecycle
    ) -> None:
        challenge = await open_challenge(now=datetime.now(UTC) - timedelta(hours=1))
        await session.commit()

        response = await client.post(f"{ADMIN}/sweep", headers=OPERATOR)

        assert response.status_code == 200
        report = response.json()
        assert report["processed"] == 1
        assert report["expired"] == 1
        assert report["outcomes"][0]["challenge_id"] == str(challenge.id)
        assert report["outcomes"][0]["reason"] == "accept timeout"

        challenge = await lifecycle.get_challenge(challenge.id)
        assert challenge.status == "EXPIRED"

    @pytest.mark.asyncio
    async def test_empty_sweep(self, client) -> None:
        response = await client.post(f"{ADMIN}/sweep", headers=OPERATOR)

        assert response.json()["processed"] == 0


class TestDisputeResolution:
    @pytest.mark.asyncio
    async def test_resolve_slashes_loser(
        self, client, session, recorder, settings, locked_challenge
    ) -> None:
        challenge = await locked_challenge()
        resolver = DisputeResolver(session, events=recorder, settings=settings)
        await resolver.raise_dispute(challenge.id, "bob", reason="no proof of the run")
        await session.commit()

        response = await client.post(
            f"{ADMIN}/challenges/{challenge.id}/disputes/resolve",
            json={"winner_id": "alice", "resolution": "GPS trace checks out"},
            headers=OPERATOR,
        )

        assert response.status_code == 200, response.text
        outcome = response.json()
        assert outcome["disposition"] == "slash"
        assert outcome["challenge"]["status"] == "COMPLETED"
        assert outcome["dispute"]["winner_id"] == "alice"
        assert [s["status"] for s in outcome["winner_stakes"]] == ["RELEASED"]
        assert [s["status"] for s in outcome["loser_stakes"]] == ["SLASHED"]

    @pytest.mark.asyncio
    async def test_winner_must_be_a_party(
        self, client, session, recorder, settings, locked_challenge
    ) -> None:
        challenge = await locked_challenge()
        resolver = DisputeResolver(session, events=recorder, settings=settings)
        await resolver.raise_dispute(challenge.id, "bob", reason="no proof of the run")
        await session.commit()

        response = await client.post(
            f"{ADMIN}/challenges/{challenge.id}/disputes/resolve",
            json={"winner_id": "mallory", "resolution": "?"},
            headers=OPERATOR,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "DISPUTE_WINNER_NOT_PARTY"

    @pytest.mark.asyncio
    async def test_challenge_not_disputed(self, client, session, locked_challenge) -> None:
        challenge = await locked_challenge()
        await session.commit()

        response = await client.post(
            f"{ADMIN}/challenges/{challenge.id}/disputes/resolve",
            json={"winner_id": "alice", "resolution": "early call"},
            headers=OPERATOR,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "CHALLENGE_NOT_DISPUTED"


class TestTransitions:
    @pytest.mark.asyncio
    async def test_illegal_transition(self, client, session, open_challenge) -> None:
        challenge = await open_challenge()
        await session.commit()

        response = await client.post(
            f"{ADMIN}/challenges/{challenge.id}/transition",
            params={"target": "COMPLETED"},
            headers=OPERATOR,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE_TRANSITION"

    @pytest.mark.asyncio
    async def test_operator_recorded_as_actor(
        self, client, session, open_challenge, lifecycle
    ) -> None:
        challenge = await open_challenge()
        await session.commit()

        response = await client.post(
            f"{ADMIN}/challenges/{challenge.id}/transition",
            params={"target": "CANCELLED"},
            headers=OPERATOR,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        events = await lifecycle.get_events(challenge.id)
        assert events[-1].actor == "ops-1"

    @pytest.mark.asyncio
    async def test_gatekeeper_pass(self, client, session, lifecycle) -> None:
        challenge = await lifecycle.create_challenge(
            creator_id="alice", mode="GATEKEEPER", title="Read a book", counterparty_id="bob"
        )
        await lifecycle.send(challenge.id, "alice")
        await lifecycle.accept(challenge.id, "bob")
        await session.commit()

        response = await client.post(
            f"{ADMIN}/challenges/{challenge.id}/gatekeeper",
            json={"passed": True},
            headers=OPERATOR,
        )

        assert response.status_code == 200, response.text
        assert response.json()["status"] == "INTENT_LOCKED"


class TestStakeActions:
    @pytest.mark.asyncio
    async def test_slash_confirmed_stake(
        self, client, session, open_challenge, stake_confirmed, ledger
    ) -> None:
        challenge = await open_challenge()
        stake = await stake_confirmed(challenge, "alice")
        await session.commit()

        response = await client.post(
            f"{ADMIN}/stakes/{stake.id}/slash",
            json={"reason": "fraudulent deposit"},
            headers=OPERATOR,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "SLASHED"
        history = await ledger.history(stake.id)
        assert history[-1].details["slashed_by"] == "ops-1"

    @pytest.mark.asyncio
    async def test_release_twice_is_refused(
        self, client, session, open_challenge, stake_confirmed
    ) -> None:
        challenge = await open_challenge()
        stake = await stake_confirmed(challenge, "alice")
        await session.commit()

        first = await client.post(
            f"{ADMIN}/stakes/{stake.id}/release", json={"reason": "refund"}, headers=OPERATOR
        )
        second = await client.post(
            f"{ADMIN}/stakes/{stake.id}/release", json={"reason": "refund"}, headers=OPERATOR
        )

        assert first.json()["status"] == "RELEASED"
        assert second.status_code == 409
        assert second.json()["error"] == "STAKE_INVALID_STATUS"
