"""Mint workflow end to end against the in-memory ledger."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from conftest import ADA, SEASON_ID, FakeArqPool, Ledger, later, new_address, seed_catalog, seed_category
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trivia.auth.dependencies import ensure_player
from trivia.auth.schemas import Identity
from trivia.db.models import CatalogItem, Eligibility, MintOperation, PlayerToken, SeasonPoints
from trivia.db.models import WorkflowRun
from trivia.errors import ForbiddenError, InvalidAddressError, NotFoundError, PreconditionError, TransientError
from trivia.rewards import mint_service
from trivia.rewards.events import MintInitiated, mint_idempotency_key, workflow_run_id
from trivia.rewards.workflow import WorkflowEngine

PLAYER = Identity(player_id="player-mint", stake_key="stake_test1uminter", username="minter")


async def _eligibility(
    db: AsyncSession,
    category_id: str = "science",
    expires_in: timedelta = timedelta(minutes=60),
    player: Identity = PLAYER,
) -> Eligibility:
    await ensure_player(db, player)
    eligibility = Eligibility(
        type="category",
        player_id=player.player_id,
        stake_key=player.stake_key,
        category_id=category_id,
        season_id=SEASON_ID,
        status="active",
        expires_at=datetime.now(timezone.utc) + expires_in,
    )
    db.add(eligibility)
    await db.commit()
    return eligibility


async def _start(engine: WorkflowEngine, eligibility: Eligibility, address: str) -> str:
    event = MintInitiated(
        eligibility_id=eligibility.id,
        player_id=eligibility.player_id,
        stake_key=eligibility.stake_key or "",
        destination_address=address,
    )
    run = await engine.start("mint", mint_idempotency_key(eligibility.id), event.model_dump(mode="json"))
    return run.id


async def _count(session_factory: async_sessionmaker[AsyncSession], model: type) -> int:
    async with session_factory() as s:
        return int(await s.scalar(select(func.count()).select_from(model)) or 0)


@pytest_asyncio.fixture
async def stocked(db: AsyncSession) -> list[CatalogItem]:
    await seed_category(db, "science", questions=0)
    return await seed_catalog(db, "science", count=2)


class TestMintWorkflow:
    async def test_full_run_with_confirmation_sleep(
        self,
        db: AsyncSession,
        reward_engine: WorkflowEngine,
        ledger: Ledger,
        session_factory: async_sessionmaker[AsyncSession],
        stocked: list[CatalogItem],
    ) -> None:
        eligibility = await _eligibility(db)
        run_id = await _start(reward_engine, eligibility, new_address())

        first = await reward_engine.advance(run_id)
        assert first.status == "sleeping"
        assert first.step == "wait-for-confirmation"
        assert first.delay_seconds == 120
        assert len(ledger.provider.submitted) == 1

        done = await reward_engine.advance(run_id, now=later(121))
        assert done.status == "completed"

        async with session_factory() as s:
            mint = await s.get(MintOperation, run_id)
            assert mint is not None
            assert mint.status == "confirmed"
            assert mint.tx_hash in ledger.provider.confirmed
            assert mint.token_name is not None and mint.token_name.startswith("TNFT_V1_SCI_REG_")
            assert mint.asset_fingerprint == ledger.unit(mint.token_name)

            item = await s.get(CatalogItem, mint.catalog_id)
            assert item is not None
            assert item.is_minted is True
            assert item.reserved_by == run_id

            used = await s.get(Eligibility, eligibility.id)
            assert used is not None
            assert used.status == "used"
            assert used.used_at is not None

            token = (
                await s.execute(select(PlayerToken).where(PlayerToken.mint_operation_id == run_id))
            ).scalar_one()
            assert token.stake_key == PLAYER.stake_key
            assert token.tier == "category"
            assert token.source == "mint"

            points = (await s.execute(select(SeasonPoints))).scalar_one()
            assert points.minted_count == 1

    async def test_replay_is_idempotent(
        self,
        db: AsyncSession,
        reward_engine: WorkflowEngine,
        ledger: Ledger,
        session_factory: async_sessionmaker[AsyncSession],
        stocked: list[CatalogItem],
    ) -> None:
        eligibility = await _eligibility(db)
        address = new_address()
        run_id = await _start(reward_engine, eligibility, address)
        await reward_engine.advance(run_id)
        await reward_engine.advance(run_id, now=later(121))

        assert await _start(reward_engine, eligibility, address) == run_id
        again = await reward_engine.advance(run_id, now=later(300))

        assert again.status == "completed"
        assert run_id == workflow_run_id(mint_idempotency_key(eligibility.id))
        assert len(ledger.provider.submitted) == 1
        assert await _count(session_factory, MintOperation) == 1
        assert await _count(session_factory, PlayerToken) == 1

    async def test_unconfirmed_transaction_is_polled(
        self,
        db: AsyncSession,
        reward_engine: WorkflowEngine,
        ledger: Ledger,
        session_factory: async_sessionmaker[AsyncSession],
        stocked: list[CatalogItem],
    ) -> None:
        ledger.provider.auto_confirm = False
        eligibility = await _eligibility(db)
        run_id = await _start(reward_engine, eligibility, new_address())
        await reward_engine.advance(run_id)

        pending = await reward_engine.advance(run_id, now=later(121))
        assert pending.status == "sleeping"
        assert pending.step == "check-confirmation"

        async with session_factory() as s:
            mint = await s.get(MintOperation, run_id)
            assert mint is not None
            assert mint.status == "pending"
            ledger.provider.confirmed.add(mint.tx_hash or "")

        done = await reward_engine.advance(run_id, now=later(152))
        assert done.status == "completed"
        assert len(ledger.provider.submitted) == 1

    async def test_submit_timeout_after_acceptance_mints_once(
        self,
        db: AsyncSession,
        reward_engine: WorkflowEngine,
        ledger: Ledger,
        session_factory: async_sessionmaker[AsyncSession],
        stocked: list[CatalogItem],
    ) -> None:
        ledger.provider.auto_confirm = False
        ledger.provider.submit_errors = [TransientError("read timeout")]
        eligibility = await _eligibility(db)
        run_id = await _start(reward_engine, eligibility, new_address())

        failed = await reward_engine.advance(run_id)
        assert failed.status == "retrying"
        assert failed.step == "submit-mint-transaction"
        async with session_factory() as s:
            mint = await s.get(MintOperation, run_id)
            assert mint is not None
            stored_hash = mint.tx_hash
            assert stored_hash is not None
            assert mint.signed_tx == ledger.provider.submitted[0]

        retried = await reward_engine.advance(run_id)
        assert retried.status == "sleeping"
        assert retried.step == "wait-for-confirmation"
        assert len(ledger.provider.submitted) == 1

        ledger.provider.confirm_all()
        done = await reward_engine.advance(run_id, now=later(121))
        assert done.status == "completed"
        async with session_factory() as s:
            token = (
                await s.execute(select(PlayerToken).where(PlayerToken.mint_operation_id == run_id))
            ).scalar_one()
            assert token.token_metadata["tx_hash"] == stored_hash
        assert await _count(session_factory, PlayerToken) == 1

    async def test_slow_confirmation_does_not_spend_attempts(
        self,
        db: AsyncSession,
        reward_engine: WorkflowEngine,
        ledger: Ledger,
        session_factory: async_sessionmaker[AsyncSession],
        stocked: list[CatalogItem],
    ) -> None:
        ledger.provider.auto_confirm = False
        eligibility = await _eligibility(db)
        run_id = await _start(reward_engine, eligibility, new_address())
        await reward_engine.advance(run_id)

        for seconds in (121, 160, 200, 240, 280, 320):
            pending = await reward_engine.advance(run_id, now=later(seconds))
            assert pending.status == "sleeping"
            assert pending.step == "check-confirmation"

        async with session_factory() as s:
            run = await s.get(WorkflowRun, run_id)
            assert run is not None
            assert run.attempts == 0
            mint = await s.get(MintOperation, run_id)
            assert mint is not None
            assert mint.status == "pending"
            item = await s.get(CatalogItem, mint.catalog_id)
            assert item is not None
            assert item.reserved_by == run_id

        ledger.provider.confirm_all()
        done = await reward_engine.advance(run_id, now=later(360))
        assert done.status == "completed"
        assert len(ledger.provider.submitted) == 1

    async def test_deadline_keeps_reservation_until_tx_lapses(
        self,
        db: AsyncSession,
        reward_engine: WorkflowEngine,
        arq_pool: FakeArqPool,
        ledger: Ledger,
        session_factory: async_sessionmaker[AsyncSession],
        stocked: list[CatalogItem],
    ) -> None:
        ledger.provider.auto_confirm = False
        eligibility = await _eligibility(db)
        run_id = await _start(reward_engine, eligibility, new_address())
        await reward_engine.advance(run_id)

        result = await reward_engine.advance(run_id, now=later(1300))
        assert result.status == "failed"
        assert result.error == "Workflow time budget exceeded"

        async with session_factory() as s:
            mint = await s.get(MintOperation, run_id)
            assert mint is not None
            assert mint.status == "failed"
            item = await s.get(CatalogItem, mint.catalog_id)
            assert item is not None
            assert item.reserved_by == run_id

        async with session_factory() as s:
            with pytest.raises(PreconditionError, match="not settled"):
                await mint_service.initiate_mint(s, arq_pool, PLAYER, eligibility.id, new_address())  # type: ignore[arg-type]

        async with session_factory() as s:
            assert await mint_service.settle_failed_mints(s, ledger.builder) == {"resumed": [], "released": []}

        ledger.provider.tip = 60_000
        async with session_factory() as s:
            settled = await mint_service.settle_failed_mints(s, ledger.builder)
            assert settled == {"resumed": [], "released": [run_id]}
            assert await mint_service.get_available_count(s, "science") == 2

    async def test_out_of_stock_fails_before_reserving(
        self,
        db: AsyncSession,
        reward_engine: WorkflowEngine,
        ledger: Ledger,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await seed_category(db, "history", questions=0)
        eligibility = await _eligibility(db, "history")
        run_id = await _start(reward_engine, eligibility, new_address())

        result = await reward_engine.advance(run_id)

        assert result.status == "failed"
        assert result.step == "check-stock"
        assert "Out of stock" in (result.error or "")
        assert ledger.provider.submitted == []
        async with session_factory() as s:
            still = await s.get(Eligibility, eligibility.id)
            assert still is not None
            assert still.status == "active"

    async def test_failure_releases_reservation(
        self,
        db: AsyncSession,
        reward_engine: WorkflowEngine,
        ledger: Ledger,
        session_factory: async_sessionmaker[AsyncSession],
        stocked: list[CatalogItem],
    ) -> None:
        ledger.provider.utxos.clear()
        eligibility = await _eligibility(db)
        run_id = await _start(reward_engine, eligibility, new_address())

        result = await reward_engine.advance(run_id)

        assert result.status == "failed"
        assert result.step == "submit-mint-transaction"
        async with session_factory() as s:
            mint = await s.get(MintOperation, run_id)
            assert mint is not None
            assert mint.status == "failed"
            assert "Insufficient funds" in (mint.error or "")
            reserved = (await s.execute(select(CatalogItem).where(CatalogItem.reserved_by.is_not(None)))).all()
            assert reserved == []
            still = await s.get(Eligibility, eligibility.id)
            assert still is not None
            assert still.status == "active"
        assert await _count(session_factory, PlayerToken) == 0

    async def test_expired_eligibility(
        self,
        db: AsyncSession,
        reward_engine: WorkflowEngine,
        session_factory: async_sessionmaker[AsyncSession],
        stocked: list[CatalogItem],
    ) -> None:
        eligibility = await _eligibility(db, expires_in=timedelta(minutes=-1))
        run_id = await _start(reward_engine, eligibility, new_address())

        result = await reward_engine.advance(run_id)

        assert result.status == "failed"
        assert result.error == "Eligibility expired"
        async with session_factory() as s:
            expired = await s.get(Eligibility, eligibility.id)
            assert expired is not None
            assert expired.status == "expired"


class TestMintService:
    async def test_initiate_enqueues_one_job(
        self,
        db: AsyncSession,
        arq_pool: FakeArqPool,
        stocked: list[CatalogItem],
    ) -> None:
        eligibility = await _eligibility(db)
        address = new_address()

        first = await mint_service.initiate_mint(db, arq_pool, PLAYER, eligibility.id, address)  # type: ignore[arg-type]
        second = await mint_service.initiate_mint(db, arq_pool, PLAYER, eligibility.id, address)  # type: ignore[arg-type]

        assert first == second == {"mint_id": workflow_run_id(mint_idempotency_key(eligibility.id)), "status": "pending"}
        assert len(arq_pool.jobs) == 1
        job = arq_pool.jobs[0]
        assert job["function"] == "handle_mint_initiated"
        assert job["job_id"] == mint_idempotency_key(eligibility.id)
        assert job["args"][0]["destination_address"] == address

    async def test_initiate_rejects_other_players_eligibility(
        self,
        db: AsyncSession,
        arq_pool: FakeArqPool,
        stocked: list[CatalogItem],
    ) -> None:
        eligibility = await _eligibility(db)
        other = Identity(player_id="someone-else", stake_key="stake_test1uother")

        with pytest.raises(ForbiddenError):
            await mint_service.initiate_mint(db, arq_pool, other, eligibility.id, new_address())  # type: ignore[arg-type]
        assert arq_pool.jobs == []

    async def test_initiate_rejects_bad_address(
        self,
        db: AsyncSession,
        arq_pool: FakeArqPool,
        stocked: list[CatalogItem],
    ) -> None:
        eligibility = await _eligibility(db)
        with pytest.raises(InvalidAddressError):
            await mint_service.initiate_mint(db, arq_pool, PLAYER, eligibility.id, "addr_test1garbage")  # type: ignore[arg-type]

    async def test_initiate_out_of_stock(self, db: AsyncSession, arq_pool: FakeArqPool) -> None:
        await seed_category(db, "history", questions=0)
        eligibility = await _eligibility(db, "history")

        with pytest.raises(PreconditionError, match="Out of stock"):
            await mint_service.initiate_mint(db, arq_pool, PLAYER, eligibility.id, new_address())  # type: ignore[arg-type]

    async def test_eligibility_listing_and_expiry_sweep(self, db: AsyncSession) -> None:
        live = await _eligibility(db)
        await _eligibility(db, expires_in=timedelta(minutes=-5))

        listed = await mint_service.get_eligibilities(db, PLAYER.player_id)
        assert [e.id for e in listed] == [live.id]

        assert await mint_service.expire_eligibilities(db) == 1
        assert await mint_service.expire_eligibilities(db) == 0

    async def test_reservations_never_share_an_item(self, db: AsyncSession, stocked: list[CatalogItem]) -> None:
        first = await mint_service.reserve_catalog_item(db, "science", "run-a")
        again = await mint_service.reserve_catalog_item(db, "science", "run-a")
        second = await mint_service.reserve_catalog_item(db, "science", "run-b")

        assert first.id == again.id
        assert second.id != first.id
        with pytest.raises(PreconditionError, match="Out of stock"):
            await mint_service.reserve_catalog_item(db, "science", "run-c")

        assert await mint_service.release_catalog_item(db, "run-a") == 1
        assert await mint_service.get_available_count(db, "science") == 1

    async def test_status_falls_back_to_run(
        self,
        db: AsyncSession,
        reward_engine: WorkflowEngine,
        stocked: list[CatalogItem],
    ) -> None:
        eligibility = await _eligibility(db)
        run_id = await _start(reward_engine, eligibility, new_address())

        status = await mint_service.get_mint_status(db, run_id, PLAYER.player_id)

        assert status["status"] == "pending"
        assert status["eligibility_id"] == eligibility.id
        with pytest.raises(NotFoundError):
            await mint_service.get_mint_status(db, run_id, "someone-else")

        await reward_engine.advance(run_id)
        submitted = await mint_service.get_mint_status(db, run_id, PLAYER.player_id)
        assert submitted["tx_hash"] is not None
        with pytest.raises(ForbiddenError):
            await mint_service.get_mint_status(db, run_id, "someone-else")

    async def test_failed_mint_can_be_retried(
        self,
        db: AsyncSession,
        reward_engine: WorkflowEngine,
        arq_pool: FakeArqPool,
        ledger: Ledger,
        session_factory: async_sessionmaker[AsyncSession],
        stocked: list[CatalogItem],
    ) -> None:
        ledger.provider.utxos.clear()
        eligibility = await _eligibility(db)
        key = mint_idempotency_key(eligibility.id)

        first = await mint_service.initiate_mint(db, arq_pool, PLAYER, eligibility.id, new_address())  # type: ignore[arg-type]
        failed = await reward_engine.advance(first["mint_id"])
        assert failed.status == "failed"

        ledger.provider.fund(ledger.builder.issuer_address, 500 * ADA)
        async with session_factory() as s:
            again = await mint_service.initiate_mint(s, arq_pool, PLAYER, eligibility.id, new_address())  # type: ignore[arg-type]

        assert again == {"mint_id": first["mint_id"], "status": "pending"}
        assert [job["job_id"] for job in arq_pool.jobs] == [key, f"{key}:1"]

        sleeping = await reward_engine.advance(first["mint_id"])
        assert sleeping.status == "sleeping"
        done = await reward_engine.advance(first["mint_id"], now=later(121))
        assert done.status == "completed"
        async with session_factory() as s:
            used = await s.get(Eligibility, eligibility.id)
            assert used is not None
            assert used.status == "used"
            mint = await s.get(MintOperation, first["mint_id"])
            assert mint is not None
            assert mint.status == "confirmed"
            assert mint.error is None
        assert len(ledger.provider.submitted) == 1

    async def test_confirmed_mint_cannot_be_initiated_again(
        self,
        db: AsyncSession,
        reward_engine: WorkflowEngine,
        arq_pool: FakeArqPool,
        session_factory: async_sessionmaker[AsyncSession],
        stocked: list[CatalogItem],
    ) -> None:
        eligibility = await _eligibility(db)
        address = new_address()
        first = await mint_service.initiate_mint(db, arq_pool, PLAYER, eligibility.id, address)  # type: ignore[arg-type]
        await reward_engine.advance(first["mint_id"])
        await reward_engine.advance(first["mint_id"], now=later(121))

        async with session_factory() as s:
            with pytest.raises(PreconditionError, match="already used"):
                await mint_service.initiate_mint(s, arq_pool, PLAYER, eligibility.id, address)  # type: ignore[arg-type]
        assert len(arq_pool.jobs) == 1
