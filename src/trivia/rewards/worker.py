"""Reward arq worker: drives mint and forge workflows.

Jobs:
- handle_mint_initiated / handle_forge_initiated: start (or find) the run
  for an event and advance it
- resume_workflow: advance a run after a sleep or a retry backoff

Schedule:
- Eligibility expiry sweep: every 5 minutes
- Stale workflow sweep (deadline passed, missed wake-ups): every minute
- Failed-mint settlement (in-flight transactions that landed or lapsed): every 5 minutes

Import path for arq CLI: arq trivia.rewards.worker.WorkerSettings
"""

from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import ArqRedis, RedisSettings

from trivia.config import get_settings
from trivia.database import close_db, get_session_factory, init_db
from trivia.ledger.builder import TransactionBuilder
from trivia.ledger.provider import BlockfrostProvider
from trivia.middleware.logging import setup_logging
from trivia.redis_client import close_redis, init_redis
from trivia.rewards import forge_workflow, mint_workflow
from trivia.rewards.events import (
    ForgeInitiated,
    MintInitiated,
    forge_idempotency_key,
    mint_idempotency_key,
    set_arq,
)
from trivia.rewards.mint_service import expire_eligibilities, settle_failed_mints
from trivia.rewards.workflow import AdvanceResult, WorkflowEngine

logger = logging.getLogger(__name__)

_RESCHEDULE = ("sleeping", "retrying", "busy")


async def _schedule(pool: ArqRedis, result: AdvanceResult) -> None:
    """Enqueue the next advance of a run that is waiting on time."""
    if result.status not in _RESCHEDULE:
        return
    delay = max(result.delay_seconds or 0.0, 0.0)
    # One job per (step, wake-up time): redelivered advances of the same sleep
    # collapse, while each poll or retry gets a job of its own. A busy run gets a fresh job.
    job_id = None
    if result.wake_at is not None and result.status in ("sleeping", "retrying"):
        kind = "wake" if result.status == "sleeping" else "retry"
        job_id = f"{result.run_id}:{kind}:{result.step}:{int(result.wake_at.timestamp() * 1000)}"
    await pool.enqueue_job("resume_workflow", result.run_id, _job_id=job_id, _defer_by=delay)
    logger.debug("Run %s rescheduled in %.1fs (%s)", result.run_id, delay, result.status)


async def _drive(ctx: dict, run_id: str) -> str:  # type: ignore[type-arg]
    engine: WorkflowEngine = ctx["engine"]
    result = await engine.advance(run_id)
    await _schedule(ctx["redis"], result)
    return result.status


async def handle_mint_initiated(ctx: dict, event: dict[str, Any]) -> str:  # type: ignore[type-arg]
    """Start the mint workflow for a ``mint.initiated`` event."""
    mint = MintInitiated.model_validate(event)
    engine: WorkflowEngine = ctx["engine"]
    run = await engine.start(mint_workflow.KIND, mint_idempotency_key(mint.eligibility_id), mint.model_dump(mode="json"))
    return await _drive(ctx, run.id)


async def handle_forge_initiated(ctx: dict, event: dict[str, Any]) -> str:  # type: ignore[type-arg]
    """Start the forge workflow for a ``forge.initiated`` event."""
    forge = ForgeInitiated.model_validate(event)
    engine: WorkflowEngine = ctx["engine"]
    key = forge_idempotency_key(forge.forge_type, forge.stake_key, forge.input_token_ids)
    run = await engine.start(forge_workflow.KIND, key, forge.model_dump(mode="json"))
    return await _drive(ctx, run.id)


async def resume_workflow(ctx: dict, run_id: str) -> str:  # type: ignore[type-arg]
    """Advance a run from its persisted cursor."""
    return await _drive(ctx, run_id)


async def expire_eligibilities_job(ctx: dict) -> int:  # type: ignore[type-arg]
    async with get_session_factory()() as db:
        return await expire_eligibilities(db)


async def fail_stale_workflows(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Fail runs past their deadline and re-enqueue sleepers whose wake-up was lost."""
    engine: WorkflowEngine = ctx["engine"]
    failed = await engine.fail_stale()
    overdue = await engine.overdue_sleepers()
    for run_id in overdue:
        await ctx["redis"].enqueue_job("resume_workflow", run_id)
    if overdue:
        logger.info("Re-enqueued %d overdue workflow runs", len(overdue))
    return {"failed": failed, "resumed": len(overdue)}


async def settle_failed_mints_job(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Resume failed mints whose transaction landed; release items of lapsed ones."""
    engine: WorkflowEngine = ctx["engine"]
    if engine.builder is None:
        return {"resumed": 0, "released": 0}
    async with get_session_factory()() as db:
        settled = await settle_failed_mints(db, engine.builder)
    for run_id in settled["resumed"]:
        await ctx["redis"].enqueue_job("resume_workflow", run_id)
    return {"resumed": len(settled["resumed"]), "released": len(settled["released"])}


async def rewards_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB, fast store and the workflow engine on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    store = await init_redis(settings)
    # arq's own pool; workflow events enqueued from inside steps go through it
    set_arq(ctx["redis"])
    ctx["engine"] = WorkflowEngine(
        [mint_workflow.build_definition(), forge_workflow.build_definition()],
        get_session_factory(),
        store,
        settings,
        builder=TransactionBuilder.from_settings(
            BlockfrostProvider(settings.blockfrost_url, settings.blockfrost_project_id),
            settings,
        ),
    )
    logger.info("Rewards worker started")


async def rewards_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    await close_redis()
    set_arq(None)
    await close_db()
    logger.info("Rewards worker shut down")


class WorkerSettings:
    """arq worker settings for the reward workflows."""

    functions = [handle_mint_initiated, handle_forge_initiated, resume_workflow]
    cron_jobs = [  # noqa: RUF012
        cron(expire_eligibilities_job, minute=set(range(0, 60, 5))),
        cron(fail_stale_workflows, minute=set(range(60))),
        cron(settle_failed_mints_job, minute=set(range(2, 60, 5))),
    ]
    on_startup = rewards_startup
    on_shutdown = rewards_shutdown
    max_jobs = 10
    job_timeout = 300
    keep_result = 3600
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
