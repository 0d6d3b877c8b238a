"""Mint workflow: eligibility -> reserved catalog item -> signed mint -> player token.

Idempotency key: the eligibility id. The mint operation reuses the workflow
run id as its primary key, so every step can find "its" operation without
carrying state of its own.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update

from trivia.config import get_settings
from trivia.db.models import CatalogItem, MintOperation, PlayerToken
from trivia.errors import NotFoundError, PendingError, PreconditionError
from trivia.leaderboard.service import record_token_minted
from trivia.ledger.builder import TokenSpec
from trivia.ledger.metadata import image_uri
from trivia.ledger.naming import regular_name
from trivia.rewards import mint_service
from trivia.rewards.events import MintInitiated
from trivia.rewards.workflow import StepContext, WorkflowDefinition, run_step, sleep_step
from trivia.seasons.service import get_current_season_id

logger = logging.getLogger(__name__)

KIND = "mint"


def _event(ctx: StepContext) -> MintInitiated:
    return MintInitiated.model_validate(ctx.payload)


async def _operation(ctx: StepContext) -> MintOperation:
    mint = await mint_service.get_mint_operation(ctx.db, ctx.run.id)
    await ctx.db.refresh(mint)
    return mint


async def validate_eligibility(ctx: StepContext) -> dict[str, Any]:
    event = _event(ctx)
    eligibility = await mint_service.validate_eligibility(ctx.db, event.eligibility_id, event.player_id)
    if eligibility.category_id is None:
        msg = "Eligibility has no category to mint from"
        raise PreconditionError(msg)
    return {
        "eligibility_id": eligibility.id,
        "category_id": eligibility.category_id,
        "season_id": eligibility.season_id,
    }


async def check_stock(ctx: StepContext) -> dict[str, Any]:
    category_id = ctx.result("validate-eligibility")["category_id"]
    return {"available": await mint_service.check_stock(ctx.db, category_id)}


async def reserve_catalog_item(ctx: StepContext) -> dict[str, Any]:
    category_id = ctx.result("validate-eligibility")["category_id"]
    item = await mint_service.reserve_catalog_item(ctx.db, category_id, ctx.run.id)
    return {"catalog_id": item.id, "name": item.name}


async def create_mint_operation(ctx: StepContext) -> dict[str, Any]:
    """One operation per eligibility; a replay returns the existing one.

    A retried mint that never got a transaction out is pointed at the item
    reserved by this attempt.
    """
    event = _event(ctx)
    existing = await ctx.db.execute(
        select(MintOperation).where(MintOperation.eligibility_id == event.eligibility_id)
    )
    mint = existing.scalar_one_or_none()
    eligibility = ctx.result("validate-eligibility")
    catalog_id = ctx.result("reserve-catalog-item")["catalog_id"]
    if mint is not None and mint.tx_hash is None:
        mint.catalog_id = catalog_id
        mint.token_name = regular_name(eligibility["category_id"], catalog_id)
        mint.destination_address = event.destination_address
        await ctx.db.commit()
    if mint is None:
        mint = MintOperation(
            id=ctx.run.id,
            eligibility_id=event.eligibility_id,
            catalog_id=catalog_id,
            player_id=event.player_id,
            stake_key=event.stake_key or None,
            destination_address=event.destination_address,
            token_name=regular_name(eligibility["category_id"], catalog_id),
            status="pending",
        )
        ctx.db.add(mint)
        await ctx.db.commit()
        logger.info("Mint operation %s created for eligibility %s", mint.id, event.eligibility_id)
    return {"mint_id": mint.id, "token_name": mint.token_name}


async def submit_mint_transaction(ctx: StepContext) -> dict[str, Any]:
    """Build and sign the mint once, persist it, then submit it.

    A retry after a crash or a failed submit sends the stored transaction
    again (same hash) instead of building a second mint.
    """
    mint = await _operation(ctx)
    builder = ctx.transaction_builder()
    if mint.signed_tx and mint.tx_hash:
        if await ctx.provider.is_confirmed(mint.tx_hash):
            return {"tx_hash": mint.tx_hash, "unit": mint.asset_fingerprint, "reused": True}
        await builder.submit_stored(mint.signed_tx, mint.tx_hash, resubmission=True)
        logger.info("Mint %s resubmitted: %s", mint.id, mint.tx_hash)
        return {"tx_hash": mint.tx_hash, "unit": mint.asset_fingerprint, "reused": True}

    item = await ctx.db.get(CatalogItem, mint.catalog_id)
    if item is None:
        msg = f"Catalog item {mint.catalog_id} not found"
        raise NotFoundError(msg)

    token = TokenSpec(
        asset_name=mint.token_name or regular_name(item.category_id, item.id),
        display_name=item.name,
        image=image_uri(item.image_cid),
        description=item.description,
        attributes={"Category": item.category_id, "Tier": item.tier, **(item.attributes or {})},
    )
    built = await builder.build_mint(mint.destination_address, token)
    mint.tx_hash = built.tx_hash
    mint.signed_tx = built.cbor_hex
    mint.tx_ttl = built.ttl
    mint.policy_id = built.policy_id
    mint.token_name = built.asset_name
    mint.asset_fingerprint = built.unit
    await ctx.db.commit()

    try:
        await builder.submit_stored(built.cbor_hex, built.tx_hash, resubmission=False)
    except PreconditionError:
        # Rejected outright: nothing can land, so the reservation may be released
        mint.tx_hash = None
        mint.signed_tx = None
        mint.tx_ttl = None
        await ctx.db.commit()
        raise
    logger.info("Mint %s submitted: %s", mint.id, built.tx_hash)
    return {"tx_hash": built.tx_hash, "unit": built.unit, "reused": False}


async def check_confirmation(ctx: StepContext) -> dict[str, Any]:
    """Polled until the run's deadline; an unconfirmed mint is not a step failure."""
    tx_hash = ctx.result("submit-mint-transaction")["tx_hash"]
    if not await ctx.provider.is_confirmed(tx_hash):
        msg = f"Mint transaction {tx_hash} not yet confirmed"
        raise PendingError(msg)
    return {"confirmed": True}


async def mark_mint_confirmed(ctx: StepContext) -> dict[str, Any]:
    mint = await _operation(ctx)
    now = datetime.now(timezone.utc)
    if mint.status != "confirmed":
        mint.status = "confirmed"
        mint.confirmed_at = now
        mint.error = None
    await ctx.db.execute(
        update(CatalogItem)
        .where(CatalogItem.id == mint.catalog_id, CatalogItem.is_minted.is_(False))
        .values(is_minted=True, minted_at=now)
    )
    await ctx.db.commit()
    return {"status": "confirmed"}


async def mark_eligibility_used(ctx: StepContext) -> dict[str, Any]:
    used = await mint_service.mark_eligibility_used(ctx.db, _event(ctx).eligibility_id)
    return {"marked": used}


async def create_player_token(ctx: StepContext) -> dict[str, Any]:
    """Idempotent by mint operation: the operation id is unique on player_tokens."""
    mint = await _operation(ctx)
    existing = await ctx.db.execute(select(PlayerToken).where(PlayerToken.mint_operation_id == mint.id))
    token = existing.scalar_one_or_none()
    if token is None:
        eligibility = ctx.result("validate-eligibility")
        item = await ctx.db.get(CatalogItem, mint.catalog_id)
        token = PlayerToken(
            stake_key=_event(ctx).stake_key,
            policy_id=mint.policy_id or "",
            asset_fingerprint=mint.asset_fingerprint or "",
            token_name=mint.token_name or "",
            source="mint",
            category_id=eligibility["category_id"],
            season_id=eligibility["season_id"],
            tier="category",
            type_code=eligibility["category_id"],
            status="confirmed",
            token_metadata={
                "name": item.name if item else mint.token_name,
                "image": image_uri(item.image_cid) if item else "",
                "tx_hash": mint.tx_hash,
            },
            mint_operation_id=mint.id,
        )
        ctx.db.add(token)
        await ctx.db.commit()
    return {"token_id": token.id}


async def update_season_minted(ctx: StepContext) -> dict[str, Any]:
    stake_key = _event(ctx).stake_key
    if not stake_key:
        return {"updated": False}
    season_id = ctx.result("validate-eligibility")["season_id"] or await get_current_season_id(ctx.db)
    await record_token_minted(ctx.db, ctx.redis, stake_key, season_id)
    return {"updated": True, "season_id": season_id}


async def on_failure(ctx: StepContext, error: str) -> None:
    """Operation -> failed. The eligibility stays as it is.

    The reservation is released unless a submitted transaction may still
    land; ``settle_failed_mints`` revisits those once the ledger decides.
    """
    mint = await ctx.db.get(MintOperation, ctx.run.id)
    if mint is not None and mint.status != "confirmed":
        mint.status = "failed"
        mint.error = error
        await ctx.db.commit()
    if mint is not None and mint.tx_hash:
        if not await ctx.transaction_builder().has_lapsed(mint.tx_hash, mint.tx_ttl):
            logger.warning("Mint workflow %s failed with %s in flight, item kept: %s", ctx.run.id, mint.tx_hash, error)
            return
    released = await mint_service.release_catalog_item(ctx.db, ctx.run.id)
    logger.warning("Mint workflow %s failed (%d reservation released): %s", ctx.run.id, released, error)


def build_definition() -> WorkflowDefinition:
    settings = get_settings()
    return WorkflowDefinition(
        kind=KIND,
        steps=[
            run_step("validate-eligibility", validate_eligibility),
            run_step("check-stock", check_stock),
            run_step("reserve-catalog-item", reserve_catalog_item),
            run_step("create-mint-operation", create_mint_operation),
            run_step("submit-mint-transaction", submit_mint_transaction),
            sleep_step("wait-for-confirmation", settings.confirmation_delay_seconds),
            run_step("check-confirmation", check_confirmation),
            run_step("mark-mint-confirmed", mark_mint_confirmed),
            run_step("mark-eligibility-used", mark_eligibility_used),
            run_step("create-player-token", create_player_token),
            run_step("update-season-minted", update_season_minted),
        ],
        on_failure=on_failure,
    )
