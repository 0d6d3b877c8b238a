"""Eligibilities, catalog stock and mint operations."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from arq.connections import ArqRedis
from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.auth.schemas import Identity
from trivia.db.models import CatalogItem, Eligibility, MintOperation, WorkflowRun
from trivia.errors import ForbiddenError, NotFoundError, PreconditionError
from trivia.ledger.builder import TransactionBuilder
from trivia.ledger.keys import address_to_bytes
from trivia.rewards.events import MintInitiated, mint_idempotency_key, publish_mint_initiated
from trivia.rewards.workflow import ensure_run, reopen_run

logger = logging.getLogger(__name__)

_RESERVE_CANDIDATES = 5


async def get_eligibilities(db: AsyncSession, player_id: str, now: datetime | None = None) -> list[Eligibility]:
    """Active, unexpired eligibilities of a player, soonest expiry first."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(Eligibility)
        .where(
            Eligibility.player_id == player_id,
            Eligibility.status == "active",
            Eligibility.expires_at > now,
        )
        .order_by(Eligibility.expires_at)
    )
    return list(result.scalars())


async def validate_eligibility(
    db: AsyncSession,
    eligibility_id: str,
    player_id: str,
    now: datetime | None = None,
) -> Eligibility:
    """Check an eligibility can be spent by ``player_id``.

    An eligibility found past its expiry is marked expired on the spot.

    Raises:
        NotFoundError: unknown eligibility.
        ForbiddenError: it belongs to another player.
        PreconditionError: already used, or expired.
    """
    now = now or datetime.now(timezone.utc)
    eligibility = await db.get(Eligibility, eligibility_id)
    if eligibility is None:
        msg = "Eligibility not found"
        raise NotFoundError(msg)
    if eligibility.player_id != player_id:
        msg = "Eligibility does not belong to this player"
        raise ForbiddenError(msg)
    if eligibility.status == "used":
        msg = "Eligibility already used"
        raise PreconditionError(msg)
    if eligibility.status == "expired":
        msg = "Eligibility expired"
        raise PreconditionError(msg)
    if eligibility.expires_at <= now:
        eligibility.status = "expired"
        await db.commit()
        logger.info("Eligibility %s expired at validation", eligibility_id)
        msg = "Eligibility expired"
        raise PreconditionError(msg)
    return eligibility


async def mark_eligibility_used(db: AsyncSession, eligibility_id: str, now: datetime | None = None) -> bool:
    """active -> used. Returns False when it was already used."""
    result = await db.execute(
        update(Eligibility)
        .where(Eligibility.id == eligibility_id, Eligibility.status == "active")
        .values(status="used", used_at=now or datetime.now(timezone.utc))
    )
    await db.commit()
    return result.rowcount > 0


async def expire_eligibilities(db: AsyncSession, now: datetime | None = None) -> int:
    """Sweep: every active eligibility past its expiry becomes expired."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        update(Eligibility)
        .where(Eligibility.status == "active", Eligibility.expires_at <= now)
        .values(status="expired")
    )
    await db.commit()
    if result.rowcount:
        logger.info("Expired %d eligibilities", result.rowcount)
    return result.rowcount


def _available(category_id: str) -> tuple[ColumnElement[bool], ...]:
    return (
        CatalogItem.category_id == category_id,
        CatalogItem.tier == "category",
        CatalogItem.is_minted.is_(False),
        CatalogItem.reserved_by.is_(None),
    )


async def get_available_count(db: AsyncSession, category_id: str) -> int:
    result = await db.execute(select(func.count(CatalogItem.id)).where(*_available(category_id)))
    return int(result.scalar() or 0)


async def check_stock(db: AsyncSession, category_id: str) -> int:
    available = await get_available_count(db, category_id)
    if available == 0:
        msg = f"Out of stock for category {category_id}"
        raise PreconditionError(msg)
    return available


async def reserve_catalog_item(db: AsyncSession, category_id: str, reservation_id: str) -> CatalogItem:
    """Reserve one unminted catalog item for ``reservation_id``.

    Re-running with the same reservation returns the item already held. The
    reservation itself is a conditional update, so two workflows can never
    hold the same item.
    """
    held = await db.execute(select(CatalogItem).where(CatalogItem.reserved_by == reservation_id))
    item = held.scalars().first()
    if item is not None:
        return item

    candidates = await db.execute(
        select(CatalogItem.id).where(*_available(category_id)).order_by(func.random()).limit(_RESERVE_CANDIDATES)
    )
    for item_id in candidates.scalars():
        result = await db.execute(
            update(CatalogItem)
            .where(CatalogItem.id == item_id, CatalogItem.reserved_by.is_(None), CatalogItem.is_minted.is_(False))
            .values(reserved_by=reservation_id)
        )
        await db.commit()
        if result.rowcount == 1:
            reserved = await db.get(CatalogItem, item_id)
            if reserved is not None:
                await db.refresh(reserved)
                return reserved

    msg = f"Out of stock for category {category_id}"
    raise PreconditionError(msg)


async def release_catalog_item(db: AsyncSession, reservation_id: str) -> int:
    """Return a reserved, still unminted item to the pool."""
    result = await db.execute(
        update(CatalogItem)
        .where(CatalogItem.reserved_by == reservation_id, CatalogItem.is_minted.is_(False))
        .values(reserved_by=None)
    )
    await db.commit()
    return result.rowcount


async def get_mint_operation(db: AsyncSession, mint_id: str) -> MintOperation:
    """The operation row; raises NotFoundError until the workflow has created it."""
    mint = await db.get(MintOperation, mint_id)
    if mint is None:
        msg = "Mint operation not found"
        raise NotFoundError(msg)
    return mint


async def get_mint_status(db: AsyncSession, mint_id: str, player_id: str) -> dict[str, object]:
    """Status of a mint, falling back to its workflow run before the operation row exists."""
    mint = await db.get(MintOperation, mint_id)
    if mint is not None:
        if mint.player_id != player_id:
            msg = "Mint operation belongs to another player"
            raise ForbiddenError(msg)
        return {
            "mint_id": mint.id,
            "eligibility_id": mint.eligibility_id,
            "status": mint.status,
            "tx_hash": mint.tx_hash,
            "policy_id": mint.policy_id,
            "token_name": mint.token_name,
            "asset_fingerprint": mint.asset_fingerprint,
            "error": mint.error,
            "created_at": mint.created_at,
            "confirmed_at": mint.confirmed_at,
        }

    run = await db.get(WorkflowRun, mint_id)
    if run is None or run.kind != "mint" or run.payload.get("player_id") != player_id:
        msg = "Mint operation not found"
        raise NotFoundError(msg)
    return {
        "mint_id": run.id,
        "eligibility_id": run.payload.get("eligibility_id"),
        "status": "failed" if run.status == "failed" else "pending",
        "tx_hash": None,
        "policy_id": None,
        "token_name": None,
        "asset_fingerprint": None,
        "error": run.error,
        "created_at": run.created_at,
        "confirmed_at": None,
    }


async def prepare_retry(db: AsyncSession, mint: MintOperation) -> None:
    """Reset a failed operation so the eligibility can be spent again.

    Raises:
        PreconditionError: the failed attempt's transaction is still in flight
            and holds its catalog item.
    """
    if mint.tx_hash:
        held = await db.execute(
            select(CatalogItem.id).where(CatalogItem.reserved_by == mint.id, CatalogItem.is_minted.is_(False))
        )
        if held.first() is not None:
            msg = "Previous mint transaction has not settled yet"
            raise PreconditionError(msg)
    mint.status = "pending"
    mint.error = None
    mint.tx_hash = None
    mint.signed_tx = None
    mint.tx_ttl = None
    mint.asset_fingerprint = None
    await db.commit()
    logger.info("Mint %s reset for another attempt", mint.id)


async def settle_failed_mints(db: AsyncSession, builder: TransactionBuilder) -> dict[str, list[str]]:
    """Failed mints whose transaction was still in flight at failure time.

    A transaction that landed reopens its run so the remaining steps record
    the token. One whose validity window has passed unconfirmed releases its
    catalog item. Anything else is left for the next sweep.
    """
    result = await db.execute(
        select(MintOperation)
        .join(CatalogItem, CatalogItem.reserved_by == MintOperation.id)
        .where(
            MintOperation.status == "failed",
            MintOperation.tx_hash.is_not(None),
            CatalogItem.is_minted.is_(False),
        )
    )
    resumed: list[str] = []
    released: list[str] = []
    for mint in list(result.scalars().unique()):
        if await builder.provider.is_confirmed(mint.tx_hash):
            run = await db.get(WorkflowRun, mint.id)
            if run is not None and run.status == "failed":
                await reopen_run(db, run, from_start=False)
                resumed.append(mint.id)
        elif await builder.has_lapsed(mint.tx_hash, mint.tx_ttl):
            await release_catalog_item(db, mint.id)
            released.append(mint.id)
    if resumed or released:
        logger.info("Settled failed mints: %d resumed, %d released", len(resumed), len(released))
    return {"resumed": resumed, "released": released}


async def initiate_mint(
    db: AsyncSession,
    arq: ArqRedis,
    identity: Identity,
    eligibility_id: str,
    destination_address: str,
) -> dict[str, str]:
    """Pre-check the eligibility and the address, then emit ``mint.initiated``.

    The workflow repeats every check; this only turns obvious rejections into
    an immediate HTTP error instead of a failed operation. While the
    eligibility is still active, a failed mint is retried by reopening its
    run as a new generation.
    """
    address_to_bytes(destination_address)
    eligibility = await validate_eligibility(db, eligibility_id, identity.player_id)
    if eligibility.category_id is None:
        msg = "Eligibility has no category to mint from"
        raise PreconditionError(msg)

    existing = await db.execute(select(MintOperation).where(MintOperation.eligibility_id == eligibility_id))
    mint = existing.scalar_one_or_none()
    if mint is not None and mint.status != "failed":
        return {"mint_id": mint.id, "status": mint.status}
    if mint is not None:
        await prepare_retry(db, mint)

    await check_stock(db, eligibility.category_id)
    event = MintInitiated(
        eligibility_id=eligibility_id,
        player_id=identity.player_id,
        stake_key=identity.stake_key or "",
        destination_address=destination_address,
    )
    payload = event.model_dump(mode="json")
    run = await ensure_run(db, "mint", mint_idempotency_key(eligibility_id), payload)
    if run.status == "failed":
        run = await reopen_run(db, run, from_start=True, payload=payload)
    elif run.status == "completed":
        return {"mint_id": run.id, "status": "confirmed"}
    await publish_mint_initiated(arq, event, generation=run.generation)
    logger.info("Mint %s initiated for eligibility %s (generation %d)", run.id, eligibility_id, run.generation)
    return {"mint_id": run.id, "status": "pending"}
