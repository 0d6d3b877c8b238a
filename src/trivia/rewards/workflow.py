"""Persisted-cursor step executor for reward workflows.

A workflow is an ordered list of steps. ``run`` steps call an async function
and memoize its JSON result in ``workflow_runs.step_results``; ``sleep``
steps persist a wake-up time and hand control back to the caller, which
schedules a deferred ``resume_workflow`` job. Advancing a run always starts
right after ``last_completed_step``, so completed side effects are never
executed twice and a restarted process continues from the database.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import httpx
from redis.asyncio import Redis
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trivia.config import Settings, get_settings
from trivia.db.models import WorkflowRun
from trivia.errors import NotFoundError, PendingError, TriviaError
from trivia.keys import workflow_lock_key
from trivia.rewards.events import workflow_run_id

if TYPE_CHECKING:
    from trivia.ledger.builder import TransactionBuilder
    from trivia.ledger.provider import LedgerProvider

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed")

# Network and database driver failures are retried
TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    OSError,
    OperationalError,
    InterfaceError,
    httpx.TransportError,
)

# Lower-cased phrases of error messages that will not change on retry
PERMANENT_MARKERS = (
    "insufficient funds",
    "invalid address",
    "does not own",
    "not owned",
    "out of stock",
    "eligibility expired",
    "eligibility already used",
    "missing tokens",
    "policy mismatch",
    "transaction rejected",
)


def is_permanent(exc: BaseException) -> bool:
    """Classify a step error as permanent (fail the run) or transient (retry).

    Domain errors carry their own classification and driver or network
    errors are always transient. Anything else is judged by its message.
    """
    if isinstance(exc, TriviaError):
        return exc.permanent
    if isinstance(exc, TRANSIENT_TYPES):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in PERMANENT_MARKERS)


def backoff_seconds(attempt: int, base: float) -> float:
    return base * (2 ** max(attempt - 1, 0))


@dataclass
class StepContext:
    """What a step sees: the open DB session, the fast store, the run itself and the ledger."""

    db: AsyncSession
    redis: Redis
    run: WorkflowRun
    builder: TransactionBuilder | None = None

    def transaction_builder(self) -> TransactionBuilder:
        if self.builder is None:
            msg = f"Workflow {self.run.kind} needs a transaction builder"
            raise RuntimeError(msg)
        return self.builder

    @property
    def provider(self) -> LedgerProvider:
        return self.transaction_builder().provider

    @property
    def payload(self) -> dict[str, Any]:
        return self.run.payload

    def result(self, step_name: str) -> Any:  # noqa: ANN401
        """Memoized result of an earlier step."""
        return self.run.step_results.get(step_name)


StepFn = Callable[[StepContext], Awaitable[Any]]
FailureHook = Callable[[StepContext, str], Awaitable[None]]


@dataclass
class Step:
    name: str
    fn: StepFn | None = None
    sleep_seconds: float | None = None

    @property
    def is_sleep(self) -> bool:
        return self.fn is None


def run_step(name: str, fn: StepFn) -> Step:
    return Step(name=name, fn=fn)


def sleep_step(name: str, seconds: float) -> Step:
    return Step(name=name, sleep_seconds=seconds)


@dataclass
class WorkflowDefinition:
    kind: str
    steps: list[Step]
    on_failure: FailureHook | None = None

    def __post_init__(self) -> None:
        names = [s.name for s in self.steps]
        if len(names) != len(set(names)):
            msg = f"Duplicate step names in workflow {self.kind}"
            raise ValueError(msg)

    def remaining(self, last_completed: str | None) -> list[Step]:
        if last_completed is None:
            return list(self.steps)
        names = [s.name for s in self.steps]
        return self.steps[names.index(last_completed) + 1 :]


@dataclass
class AdvanceResult:
    """Outcome of one ``advance`` call.

    ``status`` is the run status afterwards, or ``retrying``/``busy``;
    ``delay_seconds`` says when the caller should advance again and
    ``wake_at`` is that same moment, stable across redelivered calls.
    """

    run_id: str
    status: str
    delay_seconds: float | None = None
    wake_at: datetime | None = None
    step: str | None = None
    error: str | None = None
    completed_steps: list[str] = field(default_factory=list)


async def _run_by_key(db: AsyncSession, idempotency_key: str) -> WorkflowRun | None:
    result = await db.execute(select(WorkflowRun).where(WorkflowRun.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


async def ensure_run(
    db: AsyncSession,
    kind: str,
    idempotency_key: str,
    payload: dict[str, Any],
    settings: Settings | None = None,
) -> WorkflowRun:
    """Get or create the run for ``idempotency_key``. Redelivered events never create a second run."""
    settings = settings or get_settings()
    existing = await _run_by_key(db, idempotency_key)
    if existing is not None:
        return existing

    now = datetime.now(timezone.utc)
    run = WorkflowRun(
        id=workflow_run_id(idempotency_key),
        kind=kind,
        idempotency_key=idempotency_key,
        payload=payload,
        status="running",
        step_results={},
        attempts=0,
        generation=0,
        deadline=now + timedelta(seconds=settings.workflow_time_budget_seconds),
        created_at=now,
        updated_at=now,
    )
    db.add(run)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race against a concurrent delivery of the same event
        await db.rollback()
        existing = await _run_by_key(db, idempotency_key)
        if existing is None:
            raise
        return existing
    logger.info("Workflow %s (%s) created for %s", run.id, kind, idempotency_key)
    return run


async def reopen_run(
    db: AsyncSession,
    run: WorkflowRun,
    *,
    from_start: bool,
    payload: dict[str, Any] | None = None,
    settings: Settings | None = None,
) -> WorkflowRun:
    """Give a failed run a new generation with a fresh time budget.

    ``from_start`` clears the cursor and every memoized result; otherwise the
    run continues after its last completed step, skipping a sleep it was
    waiting in. Two callers reopening the same run at once bump the
    generation only once.
    """
    settings = settings or get_settings()
    if run.status != "failed":
        return run
    now = datetime.now(timezone.utc)
    values: dict[str, Any] = {
        "generation": run.generation + 1,
        "status": "running",
        "attempts": 0,
        "error": None,
        "wake_at": None,
        "deadline": now + timedelta(seconds=settings.workflow_time_budget_seconds),
        "updated_at": now,
    }
    if from_start:
        values["last_completed_step"] = None
        values["step_results"] = {}
    else:
        values["status"] = "sleeping"
        values["wake_at"] = now
    if payload is not None:
        values["payload"] = payload
    await db.execute(
        update(WorkflowRun)
        .where(WorkflowRun.id == run.id, WorkflowRun.status == "failed", WorkflowRun.generation == run.generation)
        .values(**values)
    )
    await db.commit()
    await db.refresh(run)
    logger.info("Workflow %s reopened as generation %d (from_start=%s)", run.id, run.generation, from_start)
    return run


async def wake_run(db: AsyncSession, run_id: str) -> bool:
    """Bring a sleeping run's wake-up forward to now. Returns False if it was not sleeping."""
    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(WorkflowRun)
        .where(WorkflowRun.id == run_id, WorkflowRun.status == "sleeping")
        .values(wake_at=now, updated_at=now)
    )
    await db.commit()
    return bool(result.rowcount)


class WorkflowEngine:
    """Executes registered workflow definitions against ``workflow_runs``."""

    def __init__(
        self,
        definitions: list[WorkflowDefinition],
        session_factory: async_sessionmaker[AsyncSession],
        redis: Redis,
        settings: Settings | None = None,
        *,
        builder: TransactionBuilder | None = None,
    ) -> None:
        self.definitions = {d.kind: d for d in definitions}
        self.session_factory = session_factory
        self.redis = redis
        self.settings = settings or get_settings()
        self.builder = builder

    def _context(self, db: AsyncSession, run: WorkflowRun) -> StepContext:
        return StepContext(db=db, redis=self.redis, run=run, builder=self.builder)

    def _definition(self, kind: str) -> WorkflowDefinition:
        try:
            return self.definitions[kind]
        except KeyError:
            msg = f"Unknown workflow kind: {kind}"
            raise ValueError(msg) from None

    async def start(self, kind: str, idempotency_key: str, payload: dict[str, Any]) -> WorkflowRun:
        """Create the run for ``idempotency_key``, or return the existing one."""
        self._definition(kind)
        async with self.session_factory() as db:
            return await ensure_run(db, kind, idempotency_key, payload, self.settings)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        async with self.session_factory() as db:
            return await db.get(WorkflowRun, run_id)

    async def advance(self, run_id: str, now: datetime | None = None) -> AdvanceResult:
        """Run steps after the cursor until the workflow completes, sleeps or fails.

        A Redis lock keeps two workers from advancing the same run at once.
        """
        lock = workflow_lock_key(run_id)
        if not await self.redis.set(lock, "1", nx=True, ex=self.settings.workflow_lock_seconds):
            return AdvanceResult(run_id=run_id, status="busy", delay_seconds=self.settings.workflow_backoff_base_seconds)
        try:
            async with self.session_factory() as db:
                return await self._advance(db, run_id, now)
        finally:
            await self.redis.delete(lock)

    async def _advance(self, db: AsyncSession, run_id: str, now: datetime | None) -> AdvanceResult:
        run = await db.get(WorkflowRun, run_id)
        if run is None:
            msg = f"Workflow run {run_id} not found"
            raise NotFoundError(msg)
        if run.status in TERMINAL_STATUSES:
            return AdvanceResult(run_id=run.id, status=run.status, error=run.error)

        definition = self._definition(run.kind)
        ctx = self._context(db, run)
        now = now or datetime.now(timezone.utc)
        completed: list[str] = []
        remaining = definition.remaining(run.last_completed_step)

        if run.status == "sleeping" and run.wake_at is not None and run.wake_at > now:
            delay = (run.wake_at - now).total_seconds()
            step_name = remaining[0].name if remaining else None
            return AdvanceResult(
                run_id=run.id,
                status="sleeping",
                delay_seconds=delay,
                wake_at=run.wake_at,
                step=step_name,
            )

        for step in remaining:
            if now > run.deadline:
                return await self._fail(ctx, definition, step.name, "Workflow time budget exceeded")

            if step.is_sleep:
                if run.status == "sleeping" and run.wake_at is not None and run.wake_at <= now:
                    await self._record(db, run, step.name, {"woke_at": now.isoformat()})
                    completed.append(step.name)
                    continue
                run.status = "sleeping"
                run.wake_at = now + timedelta(seconds=step.sleep_seconds or 0)
                run.updated_at = now
                await db.commit()
                logger.info("Workflow %s sleeping at %s until %s", run.id, step.name, run.wake_at.isoformat())
                return AdvanceResult(
                    run_id=run.id,
                    status="sleeping",
                    delay_seconds=step.sleep_seconds,
                    wake_at=run.wake_at,
                    step=step.name,
                    completed_steps=completed,
                )

            try:
                result = await step.fn(ctx)  # type: ignore[misc]
            except Exception as exc:
                return await self._step_failed(ctx, definition, step.name, exc, completed, now)

            await self._record(db, run, step.name, result)
            completed.append(step.name)
            now = max(now, datetime.now(timezone.utc))

        run.status = "completed"
        run.wake_at = None
        run.updated_at = datetime.now(timezone.utc)
        await db.commit()
        logger.info("Workflow %s (%s) completed", run.id, run.kind)
        return AdvanceResult(run_id=run.id, status="completed", completed_steps=completed)

    @staticmethod
    async def _record(db: AsyncSession, run: WorkflowRun, step_name: str, result: Any) -> None:  # noqa: ANN401
        """Commit one step's result and move the cursor past it."""
        # New dict so the JSON column is flagged dirty
        run.step_results = {**run.step_results, step_name: result}
        run.last_completed_step = step_name
        run.status = "running"
        run.wake_at = None
        run.attempts = 0
        run.error = None
        run.updated_at = datetime.now(timezone.utc)
        await db.commit()

    async def _step_failed(
        self,
        ctx: StepContext,
        definition: WorkflowDefinition,
        step_name: str,
        exc: Exception,
        completed: list[str],
        now: datetime,
    ) -> AdvanceResult:
        db, run = ctx.db, ctx.run
        await db.rollback()
        await db.refresh(run)

        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, PendingError):
            # Polled until the deadline; the retry budget is left untouched
            run.status = "sleeping"
            run.error = message
            run.wake_at = now + timedelta(seconds=self.settings.confirmation_poll_seconds)
            run.updated_at = datetime.now(timezone.utc)
            await db.commit()
            logger.info("Workflow %s step %s pending until %s: %s", run.id, step_name, run.wake_at.isoformat(), message)
            return AdvanceResult(
                run_id=run.id,
                status="sleeping",
                delay_seconds=float(self.settings.confirmation_poll_seconds),
                wake_at=run.wake_at,
                step=step_name,
                error=message,
                completed_steps=completed,
            )

        permanent = is_permanent(exc)
        run.attempts += 1
        run.error = message
        run.updated_at = datetime.now(timezone.utc)

        if permanent or run.attempts >= self.settings.workflow_max_attempts:
            reason = "permanent" if permanent else "retries exhausted"
            logger.warning("Workflow %s step %s failed (%s): %s", run.id, step_name, reason, message)
            return await self._fail(ctx, definition, step_name, message)

        run.status = "running"
        await db.commit()
        delay = backoff_seconds(run.attempts, self.settings.workflow_backoff_base_seconds)
        logger.info(
            "Workflow %s step %s attempt %d failed, retrying in %.1fs: %s",
            run.id,
            step_name,
            run.attempts,
            delay,
            message,
        )
        return AdvanceResult(
            run_id=run.id,
            status="retrying",
            delay_seconds=delay,
            wake_at=now + timedelta(seconds=delay),
            step=step_name,
            error=message,
            completed_steps=completed,
        )

    async def _fail(
        self,
        ctx: StepContext,
        definition: WorkflowDefinition,
        step_name: str | None,
        message: str,
    ) -> AdvanceResult:
        run = ctx.run
        run.status = "failed"
        run.error = message
        run.wake_at = None
        run.updated_at = datetime.now(timezone.utc)
        await ctx.db.commit()

        if definition.on_failure is not None:
            try:
                await definition.on_failure(ctx, message)
            except Exception:
                await ctx.db.rollback()
                logger.exception("Failure hook of workflow %s raised", run.id)
        return AdvanceResult(run_id=run.id, status="failed", step=step_name, error=message)

    async def fail_stale(self, now: datetime | None = None) -> int:
        """Fail every unfinished run past its deadline. Returns how many were failed."""
        now = now or datetime.now(timezone.utc)
        async with self.session_factory() as db:
            result = await db.execute(
                select(WorkflowRun.id).where(
                    WorkflowRun.status.in_(("running", "sleeping")),
                    WorkflowRun.deadline < now,
                )
            )
            run_ids = list(result.scalars())

        failed = 0
        for run_id in run_ids:
            async with self.session_factory() as db:
                run = await db.get(WorkflowRun, run_id)
                if run is None or run.status in TERMINAL_STATUSES:
                    continue
                ctx = self._context(db, run)
                await self._fail(ctx, self._definition(run.kind), run.last_completed_step, "Workflow time budget exceeded")
                failed += 1
        if failed:
            logger.warning("Failed %d stale workflow runs", failed)
        return failed

    async def overdue_sleepers(self, now: datetime | None = None) -> list[str]:
        """Sleeping runs whose wake-up job apparently never ran."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.settings.workflow_wake_grace_seconds)
        async with self.session_factory() as db:
            result = await db.execute(
                select(WorkflowRun.id).where(WorkflowRun.status == "sleeping", WorkflowRun.wake_at < cutoff)
            )
            return list(result.scalars())
