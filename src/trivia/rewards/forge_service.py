"""Forging rules, progress and forge operations.

Forging burns a set of category-tier tokens and mints one higher-tier token:

- category forge: ``category_forge_count`` tokens of one category -> ultimate
- master forge: ``master_forge_count`` tokens of distinct categories -> master
- season forge: ``seasonal_forge_per_category`` tokens of every active
  category, all from one season, while the season (plus grace) is open -> seasonal
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from arq.connections import ArqRedis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.auth.schemas import Identity
from trivia.config import get_settings
from trivia.db.models import Category, ForgeOperation, PlayerToken, Season, WorkflowRun
from trivia.errors import ForbiddenError, NotFoundError, PreconditionError, ValidationError
from trivia.ledger.builder import TokenSpec
from trivia.ledger.keys import address_to_bytes, blake2b_224, payment_key_hash, verify_signature
from trivia.ledger.metadata import image_uri
from trivia.ledger.naming import master_name, seasonal_name, ultimate_name
from trivia.ledger.tx import add_vkey_witnesses, decode_vkey_witnesses, transaction_hash
from trivia.rewards.events import ForgeInitiated, forge_idempotency_key, publish_forge_initiated
from trivia.rewards.workflow import ensure_run, reopen_run, wake_run
from trivia.seasons.service import get_current_season, get_season, season_code, within_grace

logger = logging.getLogger(__name__)

OUTPUT_TIERS = {"category": "ultimate", "master": "master", "season": "seasonal"}


@dataclass
class ForgedOutput:
    tier: str
    type_code: str
    token_name: str
    display_name: str


async def load_owned_tokens(db: AsyncSession, stake_key: str, token_ids: list[str]) -> list[PlayerToken]:
    """The requested tokens, all confirmed and held by ``stake_key``."""
    unique_ids = set(token_ids)
    if len(unique_ids) != len(token_ids):
        msg = "Duplicate input tokens"
        raise ValidationError(msg)
    result = await db.execute(select(PlayerToken).where(PlayerToken.id.in_(unique_ids)))
    tokens = list(result.scalars())
    owned = [t for t in tokens if t.stake_key == stake_key and t.status == "confirmed"]
    if len(owned) != len(unique_ids):
        msg = "Player does not own all input tokens"
        raise PreconditionError(msg)
    return sorted(owned, key=lambda t: token_ids.index(t.id))


async def _active_category_ids(db: AsyncSession) -> list[str]:
    result = await db.execute(select(Category.id).where(Category.is_active.is_(True)).order_by(Category.id))
    return list(result.scalars())


async def check_forge_rules(
    db: AsyncSession,
    forge_type: str,
    tokens: list[PlayerToken],
    category_id: str | None = None,
    season_id: str | None = None,
    now: datetime | None = None,
) -> None:
    """Raise ``PreconditionError`` unless ``tokens`` make a valid forge of ``forge_type``."""
    settings = get_settings()
    if forge_type not in OUTPUT_TIERS:
        msg = f"Unknown forge type: {forge_type}"
        raise ValidationError(msg)

    if any(t.tier != "category" for t in tokens):
        msg = "Cannot forge with non-category tokens"
        raise PreconditionError(msg)

    categories = [t.category_id for t in tokens]

    if forge_type == "category":
        if not category_id:
            msg = "category_id is required for a category forge"
            raise ValidationError(msg)
        required = settings.category_forge_count
        if len(tokens) != required:
            msg = f"Category forge requires exactly {required} tokens, got {len(tokens)}"
            raise PreconditionError(msg)
        if set(categories) != {category_id}:
            msg = f"Category mismatch: every input must be from {category_id}"
            raise PreconditionError(msg)

    elif forge_type == "master":
        required = settings.master_forge_count
        if len(tokens) != required:
            msg = f"Master forge requires exactly {required} tokens, got {len(tokens)}"
            raise PreconditionError(msg)
        if len(set(categories)) != len(tokens) or None in categories:
            msg = f"Master forge requires tokens from {required} distinct categories"
            raise PreconditionError(msg)

    else:
        if not season_id:
            msg = "season_id is required for a season forge"
            raise ValidationError(msg)
        if any(t.season_id != season_id for t in tokens):
            msg = f"Season mismatch: every input must be from season {season_id}"
            raise PreconditionError(msg)
        season = await get_season(db, season_id)
        if not within_grace(season, now):
            msg = f"Season {season_id} forging window has closed"
            raise PreconditionError(msg)
        per_category = settings.seasonal_forge_per_category
        active = await _active_category_ids(db)
        counts: dict[str, int] = defaultdict(int)
        for c in categories:
            counts[c or ""] += 1
        if set(counts) != set(active) or any(n != per_category for n in counts.values()):
            msg = f"Season forge requires {per_category} tokens from each of the {len(active)} active categories"
            raise PreconditionError(msg)


async def forged_output(
    db: AsyncSession,
    forge_type: str,
    operation_id: str,
    category_id: str | None = None,
    season_id: str | None = None,
) -> ForgedOutput:
    """Tier, type code and on-chain name of the token a forge produces."""
    tier = OUTPUT_TIERS[forge_type]
    if forge_type == "category":
        return ForgedOutput(
            tier=tier,
            type_code=f"ultimate_{category_id}",
            token_name=ultimate_name(category_id or "", operation_id),
            display_name=f"Ultimate {category_id}",
        )
    if forge_type == "master":
        return ForgedOutput(
            tier=tier,
            type_code="master",
            token_name=master_name(operation_id),
            display_name="Master Ultimate",
        )
    season = await db.get(Season, season_id) if season_id else None
    return ForgedOutput(
        tier=tier,
        type_code=f"seasonal_{season_id}",
        token_name=seasonal_name(season_code(season, season_id or ""), operation_id),
        display_name=f"Seasonal Ultimate {season.name if season else season_id}",
    )


def forged_token_spec(output: ForgedOutput, forge_type: str, input_count: int) -> TokenSpec:
    settings = get_settings()
    return TokenSpec(
        asset_name=output.token_name,
        display_name=output.display_name,
        image=image_uri(settings.forged_image_cid),
        description=f"{output.tier.capitalize()} token forged from {input_count} category tokens",
        attributes={"Tier": output.tier, "Forge Type": forge_type, "Input Count": input_count},
    )


# ---------------------------------------------------------------------------
# Progress & status
# ---------------------------------------------------------------------------


def _token_view(token: PlayerToken) -> dict[str, Any]:
    return {
        "id": token.id,
        "token_name": token.token_name,
        "asset_fingerprint": token.asset_fingerprint,
        "category_id": token.category_id,
        "season_id": token.season_id,
        "minted_at": token.minted_at,
    }


async def get_forge_progress(db: AsyncSession, stake_key: str, now: datetime | None = None) -> list[dict[str, Any]]:
    """Progress toward every forge the player could attempt."""
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(PlayerToken)
        .where(
            PlayerToken.stake_key == stake_key,
            PlayerToken.status == "confirmed",
            PlayerToken.tier == "category",
        )
        .order_by(PlayerToken.category_id, PlayerToken.minted_at)
    )
    tokens = list(result.scalars())

    by_category: dict[str, list[PlayerToken]] = defaultdict(list)
    for token in tokens:
        if token.category_id:
            by_category[token.category_id].append(token)

    progress: list[dict[str, Any]] = []
    required = settings.category_forge_count
    for category_id, owned in sorted(by_category.items()):
        progress.append({
            "type": "category",
            "category_id": category_id,
            "season_id": None,
            "required": required,
            "current": len(owned),
            "tokens": [_token_view(t) for t in owned[:required]],
            "can_forge": len(owned) >= required,
        })

    master_required = settings.master_forge_count
    master_tokens = [owned[0] for _, owned in sorted(by_category.items())][:master_required]
    progress.append({
        "type": "master",
        "category_id": None,
        "season_id": None,
        "required": master_required,
        "current": len(by_category),
        "tokens": [_token_view(t) for t in master_tokens],
        "can_forge": len(by_category) >= master_required,
    })

    season = await get_current_season(db, now)
    if season is not None:
        per_category = settings.seasonal_forge_per_category
        active = await _active_category_ids(db)
        complete = [
            [t for t in by_category.get(c, []) if t.season_id == season.id][:per_category] for c in active
        ]
        complete = [group for group in complete if len(group) >= per_category]
        progress.append({
            "type": "season",
            "category_id": None,
            "season_id": season.id,
            "required": len(active),
            "current": len(complete),
            "tokens": [_token_view(t) for group in complete for t in group],
            "can_forge": len(complete) >= len(active) and within_grace(season, now),
        })
    return progress


async def get_forge_operation(db: AsyncSession, forge_id: str, stake_key: str) -> dict[str, Any]:
    """Status of a forge, falling back to its workflow run before the operation row exists."""
    forge = await db.get(ForgeOperation, forge_id)
    if forge is not None:
        if forge.stake_key != stake_key:
            msg = "Forge operation belongs to another player"
            raise ForbiddenError(msg)
        return {
            "forge_id": forge.id,
            "type": forge.type,
            "status": forge.status,
            "category_id": forge.category_id,
            "season_id": forge.season_id,
            "input_token_ids": forge.input_token_ids,
            "burn_tx_hash": forge.burn_tx_hash,
            "mint_tx_hash": forge.mint_tx_hash,
            "output_token_name": forge.output_token_name,
            "output_asset_fingerprint": forge.output_asset_fingerprint,
            "awaiting_signature": bool(forge.unsigned_tx) and not forge.signed_tx and forge.status == "pending",
            "unsigned_tx": forge.unsigned_tx if not forge.signed_tx else None,
            "error": forge.error,
            "created_at": forge.created_at,
            "confirmed_at": forge.confirmed_at,
        }

    run = await db.get(WorkflowRun, forge_id)
    if run is None or run.kind != "forge" or run.payload.get("stake_key") != stake_key:
        msg = "Forge operation not found"
        raise NotFoundError(msg)
    return {
        "forge_id": run.id,
        "type": run.payload.get("forge_type"),
        "status": "failed" if run.status == "failed" else "pending",
        "category_id": run.payload.get("category_id"),
        "season_id": run.payload.get("season_id"),
        "input_token_ids": run.payload.get("input_token_ids", []),
        "burn_tx_hash": None,
        "mint_tx_hash": None,
        "output_token_name": None,
        "output_asset_fingerprint": None,
        "awaiting_signature": False,
        "unsigned_tx": None,
        "error": run.error,
        "created_at": run.created_at,
        "confirmed_at": None,
    }


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------


async def _retry_forge(db: AsyncSession, run: WorkflowRun, payload: dict[str, Any]) -> WorkflowRun:
    """Reopen a failed forge from the start unless its transaction may have been submitted."""
    if "await-player-signature" in (run.step_results or {}):
        return run
    forge = await db.get(ForgeOperation, run.id)
    if forge is not None:
        forge.status = "pending"
        forge.error = None
        forge.unsigned_tx = None
        forge.signed_tx = None
        forge.tx_ttl = None
        forge.burn_tx_hash = None
        forge.mint_tx_hash = None
        forge.output_asset_fingerprint = None
        await db.commit()
    return await reopen_run(db, run, from_start=True, payload=payload)


async def initiate_forge(
    db: AsyncSession,
    arq: ArqRedis,
    identity: Identity,
    forge_type: str,
    input_token_ids: list[str],
    destination_address: str,
    category_id: str | None = None,
    season_id: str | None = None,
) -> dict[str, str]:
    """Pre-check ownership and rules, then emit ``forge.initiated``.

    A failed forge whose transaction never reached the ledger is retried as a
    new generation of its run; one that did reach it stays failed.
    """
    if not identity.stake_key:
        msg = "A connected wallet is required to forge"
        raise ForbiddenError(msg)
    address_to_bytes(destination_address)
    tokens = await load_owned_tokens(db, identity.stake_key, input_token_ids)
    await check_forge_rules(db, forge_type, tokens, category_id, season_id)

    event = ForgeInitiated(
        forge_type=forge_type,  # type: ignore[arg-type]
        player_id=identity.player_id,
        stake_key=identity.stake_key,
        input_token_ids=input_token_ids,
        category_id=category_id,
        season_id=season_id,
        destination_address=destination_address,
    )
    key = forge_idempotency_key(forge_type, identity.stake_key, input_token_ids)
    payload = event.model_dump(mode="json")
    run = await ensure_run(db, "forge", key, payload)
    if run.status == "completed":
        return {"forge_id": run.id, "status": "confirmed"}
    if run.status == "failed":
        run = await _retry_forge(db, run, payload)
        if run.status == "failed":
            return {"forge_id": run.id, "status": "failed"}
    await publish_forge_initiated(arq, event, generation=run.generation)
    logger.info("Forge %s (%s) initiated by %s", run.id, forge_type, identity.stake_key)
    return {"forge_id": run.id, "status": "pending"}


async def attach_player_witness(
    db: AsyncSession,
    arq: ArqRedis,
    identity: Identity,
    forge_id: str,
    witness_set_hex: str,
) -> dict[str, Any]:
    """Attach the player's wallet witness to a forge transaction and queue its submission.

    The witness must come from the key behind the forging address and sign
    the transaction built by the workflow.

    Raises:
        NotFoundError: unknown forge, or no transaction built yet.
        ForbiddenError: the forge belongs to another player.
        PreconditionError: the forge is no longer waiting for a signature.
        ValidationError: malformed witness set, wrong key or bad signature.
    """
    forge = await db.get(ForgeOperation, forge_id)
    if forge is None:
        msg = "Forge operation not found"
        raise NotFoundError(msg)
    if forge.stake_key != identity.stake_key:
        msg = "Forge operation belongs to another player"
        raise ForbiddenError(msg)
    if forge.signed_tx:
        return await get_forge_operation(db, forge_id, forge.stake_key)
    if forge.status != "pending" or not forge.unsigned_tx:
        msg = "Forge transaction is not waiting for a signature"
        raise PreconditionError(msg)

    tx_hash = bytes.fromhex(transaction_hash(forge.unsigned_tx))
    owner = payment_key_hash(forge.destination_address)
    witnesses = [(vkey, sig) for vkey, sig in decode_vkey_witnesses(witness_set_hex) if blake2b_224(vkey) == owner]
    if not witnesses:
        msg = "Witness set does not sign for the forging address"
        raise ValidationError(msg)
    if not all(verify_signature(vkey, sig, tx_hash) for vkey, sig in witnesses):
        msg = "Witness signature does not match the forge transaction"
        raise ValidationError(msg)

    stake_key = forge.stake_key
    forge.signed_tx = add_vkey_witnesses(forge.unsigned_tx, witnesses)
    await db.commit()
    await wake_run(db, forge_id)
    await arq.enqueue_job("resume_workflow", forge_id)
    logger.info("Forge %s signed by its owner", forge_id)
    return await get_forge_operation(db, forge_id, stake_key)
