"""HTTP surface: auth, sessions, rewards, leaderboards and error bodies."""

from __future__ import annotations

import pytest_asyncio
from conftest import (
    FakeArqPool,
    Ledger,
    make_token,
    new_address,
    seed_catalog,
    seed_category,
    seed_tokens,
    witness_set_hex,
)
from fakeredis import FakeAsyncRedis
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.db.models import Question
from trivia.ledger.keys import IssuerKey
from trivia.rewards.events import ForgeInitiated, forge_idempotency_key
from trivia.rewards.workflow import WorkflowEngine
from trivia.sessions import service


@pytest_asyncio.fixture
async def science(db: AsyncSession) -> None:
    await seed_category(db, "science", questions=40)
    await seed_catalog(db, "science", count=2)


async def _play_perfect(client: AsyncClient, redis: FakeAsyncRedis, headers: dict[str, str]) -> dict:
    started = await client.post("/api/v1/sessions/start", json={"category_id": "science"}, headers=headers)
    assert started.status_code == 201
    session_id = started.json()["id"]

    state = await service.get_active_session(redis, session_id)
    for i, question in enumerate(state.questions):
        answered = await client.post(
            f"/api/v1/sessions/{session_id}/answer",
            json={"question_index": i, "option_index": question.correct_index, "elapsed_ms": 1200},
            headers=headers,
        )
        assert answered.status_code == 200
        assert answered.json()["correct"] is True

    completed = await client.post(f"/api/v1/sessions/{session_id}/complete", headers=headers)
    assert completed.status_code == 200
    return completed.json()


class TestAuth:
    async def test_missing_token(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/sessions/start", json={"category_id": "science"})
        assert response.status_code in (401, 403)

    async def test_invalid_token(self, client: AsyncClient) -> None:
        response = await client.get(
            "/api/v1/sessions/history", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    async def test_guest_cannot_see_forge_progress(
        self, client: AsyncClient, guest_headers: dict[str, str]
    ) -> None:
        response = await client.get("/api/v1/forge/progress", headers=guest_headers)
        assert response.status_code == 403

    async def test_guest_has_no_rank(self, client: AsyncClient, guest_headers: dict[str, str]) -> None:
        response = await client.get("/api/v1/leaderboard/me", headers=guest_headers)
        assert response.status_code == 403


class TestSessionFlow:
    async def test_play_win_and_mint(
        self,
        client: AsyncClient,
        redis: FakeAsyncRedis,
        arq_pool: FakeArqPool,
        connected_headers: dict[str, str],
        science: None,
    ) -> None:
        result = await _play_perfect(client, redis, connected_headers)
        assert result["status"] == "won"
        assert result["is_perfect"] is True
        assert result["points_earned"] == 20
        eligibility_id = result["eligibility"]["id"]

        listed = await client.get("/api/v1/eligibilities", headers=connected_headers)
        assert listed.status_code == 200
        assert [e["id"] for e in listed.json()["eligibilities"]] == [eligibility_id]

        address = new_address()
        minted = await client.post(
            f"/api/v1/mint/{eligibility_id}", json={"destination_address": address}, headers=connected_headers
        )
        assert minted.status_code == 202
        assert minted.json()["status"] == "pending"
        assert arq_pool.jobs[0]["function"] == "handle_mint_initiated"

        again = await client.post(
            f"/api/v1/mint/{eligibility_id}", json={"destination_address": address}, headers=connected_headers
        )
        assert again.json()["mint_id"] == minted.json()["mint_id"]
        assert len(arq_pool.jobs) == 1

        status = await client.get(f"/api/v1/mint/{minted.json()['mint_id']}/status", headers=connected_headers)
        assert status.status_code == 200
        assert status.json()["status"] == "pending"
        assert status.json()["eligibility_id"] == eligibility_id

        board = await client.get("/api/v1/leaderboard/global")
        assert board.status_code == 200
        entries = board.json()["entries"]
        assert entries[0]["stake_key"] == "stake_test1uconnected"
        assert entries[0]["username"] == "alice"
        assert entries[0]["points"] == 20

        rank = await client.get("/api/v1/leaderboard/me", headers=connected_headers)
        assert rank.json()["rank"] == 1

    async def test_session_state_and_history(
        self,
        client: AsyncClient,
        connected_headers: dict[str, str],
        guest_headers: dict[str, str],
        science: None,
    ) -> None:
        started = await client.post("/api/v1/sessions/start", json={"category_id": "science"}, headers=connected_headers)
        session_id = started.json()["id"]

        state = await client.get(f"/api/v1/sessions/{session_id}", headers=connected_headers)
        assert state.status_code == 200
        assert state.json()["current_index"] == 0
        assert len(state.json()["questions"]) == 10

        foreign = await client.get(f"/api/v1/sessions/{session_id}", headers=guest_headers)
        assert foreign.status_code == 403
        assert foreign.json()["code"] == "forbidden"

        history = await client.get("/api/v1/sessions/history", headers=connected_headers)
        assert history.status_code == 200
        assert history.json()["total"] == 0

    async def test_domain_errors_carry_code(
        self,
        client: AsyncClient,
        connected_headers: dict[str, str],
        science: None,
    ) -> None:
        await client.post("/api/v1/sessions/start", json={"category_id": "science"}, headers=connected_headers)
        blocked = await client.post("/api/v1/sessions/start", json={"category_id": "science"}, headers=connected_headers)

        assert blocked.status_code == 409
        assert blocked.json() == {"detail": "Active session already exists", "code": "precondition_failed"}

        missing = await client.get("/api/v1/sessions/no-such-session", headers=connected_headers)
        assert missing.status_code == 404
        assert missing.json()["code"] == "not_found"

    async def test_request_validation_error(self, client: AsyncClient, connected_headers: dict[str, str]) -> None:
        response = await client.post("/api/v1/sessions/start", json={}, headers=connected_headers)
        assert response.status_code == 422
        assert response.json()["detail"] == "Validation error"


class TestRewardsApi:
    async def test_mint_with_bad_address(
        self,
        client: AsyncClient,
        redis: FakeAsyncRedis,
        connected_headers: dict[str, str],
        science: None,
    ) -> None:
        result = await _play_perfect(client, redis, connected_headers)

        response = await client.post(
            f"/api/v1/mint/{result['eligibility']['id']}",
            json={"destination_address": "addr_test1nope"},
            headers=connected_headers,
        )

        assert response.status_code == 409
        assert response.json()["code"] == "invalid_address"

    async def test_forge_progress_for_connected_player(
        self, client: AsyncClient, connected_headers: dict[str, str], science: None
    ) -> None:
        response = await client.get("/api/v1/forge/progress", headers=connected_headers)

        assert response.status_code == 200
        types = [p["type"] for p in response.json()["progress"]]
        assert types == ["master", "season"]

    async def test_forge_with_unowned_tokens(self, client: AsyncClient, connected_headers: dict[str, str]) -> None:
        response = await client.post(
            "/api/v1/forge/master",
            json={"input_token_ids": ["t1", "t2"], "destination_address": new_address()},
            headers=connected_headers,
        )
        assert response.status_code == 409
        assert response.json()["detail"] == "Player does not own all input tokens"

    async def test_unknown_forge_type(self, client: AsyncClient, connected_headers: dict[str, str]) -> None:
        response = await client.post(
            "/api/v1/forge/legendary",
            json={"input_token_ids": ["t1"], "destination_address": new_address()},
            headers=connected_headers,
        )
        assert response.status_code == 422

    async def test_sign_forge_through_status(
        self,
        client: AsyncClient,
        db: AsyncSession,
        ledger: Ledger,
        reward_engine: WorkflowEngine,
        arq_pool: FakeArqPool,
        connected_headers: dict[str, str],
    ) -> None:
        key = IssuerKey.generate()
        address = key.enterprise_address("preprod")
        stake = "stake_test1uconnected"
        tokens = await seed_tokens(db, ledger, stake, address, ["science"] * 10)
        ids = [t.id for t in tokens]
        event = ForgeInitiated(
            forge_type="category",
            player_id="player-connected",
            stake_key=stake,
            input_token_ids=ids,
            category_id="science",
            destination_address=address,
        )
        key_id = forge_idempotency_key("category", stake, ids)
        run = await reward_engine.start("forge", key_id, event.model_dump(mode="json"))
        await reward_engine.advance(run.id)

        status = await client.get(f"/api/v1/forge/{run.id}/status", headers=connected_headers)
        assert status.status_code == 200
        assert status.json()["awaiting_signature"] is True
        unsigned = status.json()["unsigned_tx"]

        signed = await client.post(
            f"/api/v1/forge/{run.id}/sign",
            json={"witness_set": witness_set_hex(key, unsigned)},
            headers=connected_headers,
        )

        assert signed.status_code == 200
        assert signed.json()["awaiting_signature"] is False
        assert signed.json()["unsigned_tx"] is None
        assert [job["function"] for job in arq_pool.jobs] == ["resume_workflow"]

    async def test_sign_rejects_non_hex_witness(self, client: AsyncClient, connected_headers: dict[str, str]) -> None:
        response = await client.post(
            "/api/v1/forge/some-forge/sign", json={"witness_set": "not hex"}, headers=connected_headers
        )
        assert response.status_code == 422

    async def test_sign_unknown_forge(self, client: AsyncClient, connected_headers: dict[str, str]) -> None:
        response = await client.post(
            "/api/v1/forge/some-forge/sign", json={"witness_set": "a0"}, headers=connected_headers
        )
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"


class TestQuestionsApi:
    async def test_flag_question(
        self, client: AsyncClient, db: AsyncSession, guest_headers: dict[str, str], science: None
    ) -> None:
        question_id = (await db.execute(select(Question.id).limit(1))).scalar_one()
        body = {"question_id": question_id, "reason": "wrong_answer", "comment": "Should be B"}

        first = await client.post("/api/v1/questions/flag", json=body, headers=guest_headers)
        second = await client.post("/api/v1/questions/flag", json=body, headers=guest_headers)

        assert first.status_code == 201
        assert first.json()["question_id"] == question_id
        assert second.status_code == 409

    async def test_blank_reason_rejected(
        self, client: AsyncClient, db: AsyncSession, guest_headers: dict[str, str], science: None
    ) -> None:
        question_id = (await db.execute(select(Question.id).limit(1))).scalar_one()
        response = await client.post(
            "/api/v1/questions/flag", json={"question_id": question_id, "reason": "   "}, headers=guest_headers
        )
        assert response.status_code == 422
        body = response.json()
        assert body["detail"] == "Validation error"
        assert body["errors"][0]["loc"][-1] == "reason"


class TestLeaderboardApi:
    async def test_empty_boards(self, client: AsyncClient) -> None:
        board = await client.get("/api/v1/leaderboard/global")
        category = await client.get("/api/v1/leaderboard/category/science")
        season = await client.get("/api/v1/leaderboard/season/autumn-s9")

        assert board.json()["entries"] == []
        assert board.json()["season_id"] == "winter-s1"
        assert category.json()["category_id"] == "science"
        assert season.json()["snapshot_date"] is None

    async def test_unranked_player(self, client: AsyncClient) -> None:
        token = make_token("player-x", stake_key="stake_test1ux")
        response = await client.get("/api/v1/leaderboard/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json()["rank"] == 0
        assert response.json()["season_id"] == "winter-s1"
