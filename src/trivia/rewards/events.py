"""Reward trigger events and their arq enqueueing.

Events are enqueued as arq jobs whose ``_job_id`` is the workflow's
idempotency key (suffixed with the run generation once a failed run has been
reopened), so a redelivered event does not queue a second job while the
first is pending.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from typing import Literal

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

MINT_INITIATED = "mint.initiated"
FORGE_INITIATED = "forge.initiated"

_RUN_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "trivia-rewards/workflow-runs")

ForgeType = Literal["category", "master", "season"]


class MintInitiated(BaseModel):
    name: Literal["mint.initiated"] = MINT_INITIATED
    eligibility_id: str
    player_id: str
    stake_key: str
    destination_address: str


class ForgeInitiated(BaseModel):
    name: Literal["forge.initiated"] = FORGE_INITIATED
    forge_type: ForgeType
    player_id: str | None = None
    stake_key: str
    input_token_ids: list[str] = Field(min_length=1)
    category_id: str | None = None
    season_id: str | None = None
    destination_address: str


def mint_idempotency_key(eligibility_id: str) -> str:
    return f"mint:{eligibility_id}"


def forge_idempotency_key(forge_type: str, stake_key: str, input_token_ids: list[str]) -> str:
    """Same type, owner and input set (in any order) always map to the same key."""
    digest = hashlib.sha256()
    for part in (forge_type, stake_key, *sorted(input_token_ids)):
        digest.update(part.encode())
        digest.update(b"\x00")
    return f"forge:{digest.hexdigest()}"


def event_job_id(idempotency_key: str, generation: int = 0) -> str:
    """arq job id of an event; each generation of a reopened run gets its own."""
    return idempotency_key if generation == 0 else f"{idempotency_key}:{generation}"


def workflow_run_id(idempotency_key: str) -> str:
    """Deterministic run id; the mint or forge operation reuses it as its primary key."""
    return str(uuid.uuid5(_RUN_NAMESPACE, idempotency_key))


# ---------------------------------------------------------------------------
# arq pool
# ---------------------------------------------------------------------------

_pool: ArqRedis | None = None


async def init_arq(url: str) -> None:
    """Create the arq connection pool used to enqueue workflow jobs."""
    global _pool  # noqa: PLW0603
    _pool = await create_pool(RedisSettings.from_dsn(url))


def set_arq(pool: ArqRedis | None) -> None:
    """Install an already-constructed pool (worker context, tests)."""
    global _pool  # noqa: PLW0603
    _pool = pool


async def close_arq() -> None:
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_arq() -> ArqRedis:
    if _pool is None:
        msg = "arq pool not initialized. Call init_arq() first."
        raise RuntimeError(msg)
    return _pool


async def publish_mint_initiated(pool: ArqRedis, event: MintInitiated, generation: int = 0) -> str:
    """Enqueue a mint event. Returns the workflow run id the event maps to."""
    key = mint_idempotency_key(event.eligibility_id)
    job = await pool.enqueue_job(
        "handle_mint_initiated",
        event.model_dump(mode="json"),
        _job_id=event_job_id(key, generation),
    )
    if job is None:
        logger.info("Mint event for %s already queued", event.eligibility_id)
    return workflow_run_id(key)


async def publish_forge_initiated(pool: ArqRedis, event: ForgeInitiated, generation: int = 0) -> str:
    """Enqueue a forge event. Returns the workflow run id the event maps to."""
    key = forge_idempotency_key(event.forge_type, event.stake_key, event.input_token_ids)
    job = await pool.enqueue_job(
        "handle_forge_initiated",
        event.model_dump(mode="json"),
        _job_id=event_job_id(key, generation),
    )
    if job is None:
        logger.info("Forge event %s already queued", key)
    return workflow_run_id(key)
