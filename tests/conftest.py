"""Shared test fixtures.

Tests run without live services: the durable store is an in-memory SQLite
database (aiosqlite), the fast store is fakeredis, the ledger is an
in-memory provider and the arq pool only records enqueued jobs.
"""

from __future__ import annotations

import os
import uuid
from collections import defaultdict
from collections.abc import AsyncGenerator, Generator
from datetime import datetime, timedelta, timezone
from typing import Any

os.environ["TRIVIA_DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["TRIVIA_JWT_ALGORITHM"] = "HS256"
os.environ["TRIVIA_JWT_SECRET"] = "test-secret-key-with-at-least-32-bytes!"
os.environ["TRIVIA_RATE_LIMIT_REQUESTS"] = "0"
os.environ["TRIVIA_LEDGER_NETWORK"] = "preprod"
os.environ["TRIVIA_LOG_FORMAT"] = "console"

import cbor2  # noqa: E402
import jwt  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fakeredis import FakeAsyncRedis  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

import trivia.db.models  # noqa: E402, F401
from trivia.config import Settings, get_settings  # noqa: E402
from trivia.database import close_db, get_engine, get_session_factory, init_db  # noqa: E402
from trivia.db.base import Base  # noqa: E402
from trivia.db.models import CatalogItem, Category, PlayerToken, Question, Season  # noqa: E402
from trivia.errors import PreconditionError  # noqa: E402
from trivia.ledger.builder import TransactionBuilder  # noqa: E402
from trivia.ledger.keys import IssuerKey, blake2b_224, payment_key_hash  # noqa: E402
from trivia.ledger.provider import LedgerProvider  # noqa: E402
from trivia.ledger.tx import ProtocolParameters, Utxo, decode_transaction, transaction_hash, witness_keys  # noqa: E402
from trivia.redis_client import set_redis  # noqa: E402
from trivia.rewards.events import set_arq  # noqa: E402
from trivia.rewards import forge_workflow, mint_workflow  # noqa: E402
from trivia.rewards.workflow import WorkflowEngine  # noqa: E402

get_settings.cache_clear()

ADA = 1_000_000
SEASON_ID = "winter-s1"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeLedgerProvider(LedgerProvider):
    """In-memory chain: funded addresses, recorded submissions, instant confirmation.

    Like a node, it refuses a transaction it already accepted and one whose
    inputs are not witnessed by the keys behind their addresses.
    ``submit_errors`` are raised after the transaction has been accepted, the
    way a timed-out response loses the node's answer.
    """

    def __init__(self) -> None:
        self.utxos: dict[str, list[Utxo]] = defaultdict(list)
        self.submitted: list[str] = []
        self.confirmed: set[str] = set()
        self.submit_errors: list[Exception] = []
        self.auto_confirm = True
        self.tip = 50_000

    def fund(self, address: str, lovelace: int, assets: dict[str, int] | None = None) -> Utxo:
        utxo = Utxo(
            tx_hash=os.urandom(32).hex(),
            output_index=0,
            address=address,
            lovelace=lovelace,
            assets=dict(assets or {}),
        )
        self.utxos[address].append(utxo)
        return utxo

    async def get_utxos(self, address: str) -> list[Utxo]:
        return list(self.utxos.get(address, []))

    async def get_protocol_parameters(self) -> ProtocolParameters:
        return ProtocolParameters(min_fee_a=44, min_fee_b=155381, max_tx_size=16384)

    async def get_tip_slot(self) -> int:
        return self.tip

    def _owner(self, tx_hash: bytes, index: int) -> str | None:
        for address, utxos in self.utxos.items():
            if any(u.tx_hash == tx_hash.hex() and u.output_index == index for u in utxos):
                return address
        return None

    async def submit_tx(self, cbor_hex: str) -> str:
        tx_hash = transaction_hash(cbor_hex)
        if any(transaction_hash(s) == tx_hash for s in self.submitted):
            msg = "Transaction rejected: already in the mempool"
            raise PreconditionError(msg)
        body = decode_transaction(cbor_hex)[0]
        signers = {blake2b_224(vkey) for vkey in witness_keys(cbor_hex)}
        for ref_hash, index in body[0]:
            owner = self._owner(ref_hash, index)
            if owner is not None and payment_key_hash(owner) not in signers:
                msg = f"Transaction rejected: input {ref_hash.hex()}#{index} is not witnessed"
                raise PreconditionError(msg)
        self.submitted.append(cbor_hex)
        if self.auto_confirm:
            self.confirmed.add(tx_hash)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return tx_hash

    def confirm_all(self) -> None:
        self.confirmed.update(transaction_hash(s) for s in self.submitted)

    async def is_confirmed(self, tx_hash: str) -> bool:
        return tx_hash in self.confirmed


class FakeArqPool:
    """Records enqueued jobs; a repeated ``_job_id`` is refused like arq does."""

    def __init__(self) -> None:
        self.jobs: list[dict[str, Any]] = []

    async def enqueue_job(self, function: str, *args: Any, _job_id: str | None = None, **kwargs: Any) -> object | None:
        if _job_id is not None and any(j["job_id"] == _job_id for j in self.jobs):
            return None
        job = {"function": function, "args": args, "job_id": _job_id or uuid.uuid4().hex, "kwargs": kwargs}
        self.jobs.append(job)
        return job

    async def aclose(self) -> None:
        return None


class Ledger:
    """Provider plus a builder under a freshly generated issuer key."""

    def __init__(self) -> None:
        self.provider = FakeLedgerProvider()
        self.issuer = IssuerKey.generate()
        self.builder = TransactionBuilder(self.provider, self.issuer, network="preprod")
        self.provider.fund(self.builder.issuer_address, 500 * ADA)

    def unit(self, name: str) -> str:
        return self.builder.policy.unit(name)


def later(seconds: float) -> datetime:
    """A wall-clock time ``seconds`` from now, for waking sleeping workflows."""
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


def new_address() -> str:
    """A valid preprod enterprise address."""
    return IssuerKey.generate().enterprise_address("preprod")


def witness_set_hex(key: IssuerKey, unsigned_tx: str) -> str:
    """What a wallet hands back after signing ``unsigned_tx`` with ``key``."""
    signature = key.sign(bytes.fromhex(transaction_hash(unsigned_tx)))
    return cbor2.dumps({0: [[key.verification_key, signature]]}).hex()


def make_token(
    player_id: str,
    stake_key: str | None = None,
    anon_id: str | None = None,
    username: str | None = None,
) -> str:
    settings = get_settings()
    payload: dict[str, Any] = {
        "sub": player_id,
        "iss": settings.jwt_issuer,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    if stake_key:
        payload["stake_key"] = stake_key
    if anon_id:
        payload["anon_id"] = anon_id
    if username:
        payload["username"] = username
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------


async def seed_category(db: AsyncSession, category_id: str, questions: int = 12, name: str | None = None) -> None:
    db.add(Category(id=category_id, name=name or category_id.title(), is_active=True))
    base = datetime.now(timezone.utc) - timedelta(days=30)
    for i in range(questions):
        db.add(Question(
            category_id=category_id,
            text=f"{category_id} question {i}?",
            options=["A", "B", "C", "D"],
            correct_index=i % 4,
            explanation=f"Because {i}",
            is_active=True,
            created_at=base + timedelta(minutes=i),
        ))
    await db.commit()


async def seed_catalog(db: AsyncSession, category_id: str, count: int = 3) -> list[CatalogItem]:
    items = [
        CatalogItem(
            category_id=category_id,
            name=f"{category_id.title()} Relic #{i}",
            description=f"A relic of {category_id}",
            image_cid=f"bafy{category_id}{i}",
            attributes={"Rarity": "common"},
            tier="category",
        )
        for i in range(count)
    ]
    db.add_all(items)
    await db.commit()
    return items


async def seed_tokens(
    db: AsyncSession,
    ledger: Ledger,
    stake_key: str,
    address: str,
    categories: list[str],
    season_id: str = SEASON_ID,
) -> list[PlayerToken]:
    """Confirmed category tokens in the database, held on chain at ``address``."""
    tokens = []
    for i, category_id in enumerate(categories):
        name = f"TNFT_V1_T{i:02d}_REG_{uuid.uuid4().hex[:8]}"
        tokens.append(PlayerToken(
            stake_key=stake_key,
            policy_id=ledger.builder.policy.policy_id,
            asset_fingerprint=ledger.unit(name),
            token_name=name,
            source="mint",
            category_id=category_id,
            season_id=season_id,
            tier="category",
            type_code=category_id,
            status="confirmed",
        ))
    db.add_all(tokens)
    await db.commit()
    ledger.provider.fund(address, 5 * ADA, {t.asset_fingerprint: 1 for t in tokens})
    ledger.provider.fund(address, 20 * ADA)
    return tokens


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest_asyncio.fixture
async def redis() -> AsyncGenerator[FakeAsyncRedis, None]:
    """Fast store, installed as the process-wide client."""
    client = FakeAsyncRedis(decode_responses=True)
    set_redis(client)
    yield client
    await client.flushall()
    set_redis(None)


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory database with every table created."""
    await init_db("sqlite+aiosqlite://")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield get_session_factory()
    await close_db()


@pytest_asyncio.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Direct database session for setup and assertions."""
    async with session_factory() as session:
        session.add(Season(
            id=SEASON_ID,
            name="Winter Season 1",
            code="WI1",
            starts_at=datetime.now(timezone.utc) - timedelta(days=10),
            ends_at=datetime.now(timezone.utc) + timedelta(days=80),
            is_active=True,
        ))
        await session.commit()
        yield session


@pytest.fixture
def ledger() -> Ledger:
    return Ledger()


@pytest.fixture
def arq_pool() -> Generator[FakeArqPool, None, None]:
    pool = FakeArqPool()
    set_arq(pool)  # type: ignore[arg-type]
    yield pool
    set_arq(None)


@pytest_asyncio.fixture
async def client(
    db: AsyncSession,
    redis: FakeAsyncRedis,
    arq_pool: FakeArqPool,
    ledger: Ledger,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, with every backing store faked."""
    from trivia.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def reward_engine(
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    redis: FakeAsyncRedis,
    ledger: Ledger,
    settings: Settings,
) -> WorkflowEngine:
    """Engine with the real mint and forge workflows over the faked stores."""
    return WorkflowEngine(
        [mint_workflow.build_definition(), forge_workflow.build_definition()],
        session_factory,
        redis,
        settings,
        builder=ledger.builder,
    )


@pytest.fixture
def connected_headers() -> dict[str, str]:
    token = make_token("player-connected", stake_key="stake_test1uconnected", username="alice")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def guest_headers() -> dict[str, str]:
    token = make_token("player-guest", anon_id="anon-guest-1")
    return {"Authorization": f"Bearer {token}"}
