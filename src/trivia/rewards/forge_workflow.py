"""Forge workflow: burn N owned tokens and mint one forged token in a single transaction.

The inputs belong to the player, so the transaction is built unsigned and
parked until the player's wallet returns its witness
(``forge_service.attach_player_witness``). The issuer then adds the minting
policy witness and submits. ``burn_tx_hash`` and ``mint_tx_hash`` both name
that one transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update

from trivia.config import get_settings
from trivia.db.models import ForgeOperation, PlayerToken
from trivia.errors import NotFoundError, PendingError
from trivia.rewards.events import ForgeInitiated
from trivia.rewards.forge_service import (
    check_forge_rules,
    forged_output,
    forged_token_spec,
    load_owned_tokens,
)
from trivia.rewards.workflow import StepContext, WorkflowDefinition, run_step, sleep_step

logger = logging.getLogger(__name__)

KIND = "forge"


def _event(ctx: StepContext) -> ForgeInitiated:
    return ForgeInitiated.model_validate(ctx.payload)


async def _operation(ctx: StepContext) -> ForgeOperation:
    forge = await ctx.db.get(ForgeOperation, ctx.run.id)
    if forge is None:
        msg = f"Forge operation {ctx.run.id} not found"
        raise NotFoundError(msg)
    await ctx.db.refresh(forge)
    return forge


async def validate_ownership(ctx: StepContext) -> dict[str, Any]:
    event = _event(ctx)
    tokens = await load_owned_tokens(ctx.db, event.stake_key, event.input_token_ids)
    return {"units": [t.asset_fingerprint for t in tokens]}


async def validate_forge_rules(ctx: StepContext) -> dict[str, Any]:
    event = _event(ctx)
    tokens = await load_owned_tokens(ctx.db, event.stake_key, event.input_token_ids)
    await check_forge_rules(ctx.db, event.forge_type, tokens, event.category_id, event.season_id)
    return {"input_count": len(tokens)}


async def create_forge_operation(ctx: StepContext) -> dict[str, Any]:
    """Unique per idempotency key; a replay returns the existing operation."""
    event = _event(ctx)
    existing = await ctx.db.execute(
        select(ForgeOperation).where(ForgeOperation.idempotency_key == ctx.run.idempotency_key)
    )
    forge = existing.scalar_one_or_none()
    if forge is not None and not forge.unsigned_tx and forge.destination_address != event.destination_address:
        forge.destination_address = event.destination_address
        await ctx.db.commit()
    if forge is None:
        output = await forged_output(ctx.db, event.forge_type, ctx.run.id, event.category_id, event.season_id)
        forge = ForgeOperation(
            id=ctx.run.id,
            idempotency_key=ctx.run.idempotency_key,
            type=event.forge_type,
            player_id=event.player_id,
            stake_key=event.stake_key,
            category_id=event.category_id,
            season_id=event.season_id,
            destination_address=event.destination_address,
            input_token_ids=list(event.input_token_ids),
            input_fingerprints=list(ctx.result("validate-ownership")["units"]),
            output_token_name=output.token_name,
            status="pending",
        )
        ctx.db.add(forge)
        await ctx.db.commit()
        logger.info("Forge operation %s created (%s, %d inputs)", forge.id, forge.type, len(forge.input_token_ids))
    return {"forge_id": forge.id, "output_token_name": forge.output_token_name}


async def build_forge_transaction(ctx: StepContext) -> dict[str, Any]:
    """One unsigned transaction that burns every input and mints the forged token.

    Missing inputs fail here, before anything is submitted. Both hash columns
    name this single transaction.
    """
    forge = await _operation(ctx)
    if forge.unsigned_tx and forge.mint_tx_hash:
        return {
            "tx_hash": forge.mint_tx_hash,
            "unit": forge.output_asset_fingerprint,
            "policy_id": (forge.output_asset_fingerprint or "")[:56],
            "reused": True,
        }

    output = await forged_output(ctx.db, forge.type, forge.id, forge.category_id, forge.season_id)
    built = await ctx.transaction_builder().build_burn_and_mint(
        forge.destination_address,
        list(forge.input_fingerprints),
        forged_token_spec(output, forge.type, len(forge.input_token_ids)),
        sign=False,
    )
    forge.unsigned_tx = built.cbor_hex
    forge.burn_tx_hash = built.tx_hash
    forge.mint_tx_hash = built.tx_hash
    forge.tx_ttl = built.ttl
    forge.output_token_name = built.asset_name
    forge.output_asset_fingerprint = built.unit
    await ctx.db.commit()
    logger.info("Forge %s built %s, waiting for the player's signature", forge.id, built.tx_hash)
    return {"tx_hash": built.tx_hash, "unit": built.unit, "policy_id": built.policy_id, "reused": False}


async def await_player_signature(ctx: StepContext) -> dict[str, Any]:
    forge = await _operation(ctx)
    if not forge.signed_tx:
        msg = f"Forge {forge.id} is waiting for the player's signature"
        raise PendingError(msg)
    return {"signed": True}


async def submit_forge_transaction(ctx: StepContext) -> dict[str, Any]:
    """Add the policy witness, persist the fully signed transaction, then submit it.

    A retry resubmits the stored transaction unless the ledger already has it.
    """
    forge = await _operation(ctx)
    builder = ctx.transaction_builder()
    tx_hash = forge.mint_tx_hash or ""
    if not builder.is_cosigned(forge.signed_tx or ""):
        forge.signed_tx = builder.cosign(forge.signed_tx or "")
        await ctx.db.commit()
        await builder.submit_stored(forge.signed_tx, tx_hash, resubmission=False)
        logger.info("Forge %s submitted: %s", forge.id, tx_hash)
        return {"tx_hash": tx_hash, "reused": False}

    if not await ctx.provider.is_confirmed(tx_hash):
        await builder.submit_stored(forge.signed_tx or "", tx_hash, resubmission=True)
        logger.info("Forge %s resubmitted: %s", forge.id, tx_hash)
    return {"tx_hash": tx_hash, "reused": True}


async def check_confirmation(ctx: StepContext) -> dict[str, Any]:
    """Polled until the run's deadline."""
    tx_hash = ctx.result("submit-forge-transaction")["tx_hash"]
    if not await ctx.provider.is_confirmed(tx_hash):
        msg = f"Forge transaction {tx_hash} not yet confirmed"
        raise PendingError(msg)
    return {"confirmed": True}


async def mark_forge_confirmed(ctx: StepContext) -> dict[str, Any]:
    forge = await _operation(ctx)
    if forge.status != "confirmed":
        forge.status = "confirmed"
        forge.confirmed_at = datetime.now(timezone.utc)
        forge.error = None
        await ctx.db.commit()
    return {"status": "confirmed"}


async def mark_inputs_burned(ctx: StepContext) -> dict[str, Any]:
    forge = await _operation(ctx)
    result = await ctx.db.execute(
        update(PlayerToken)
        .where(PlayerToken.id.in_(forge.input_token_ids), PlayerToken.status == "confirmed")
        .values(status="burned", burned_at=datetime.now(timezone.utc))
    )
    await ctx.db.commit()
    return {"burned": result.rowcount}


async def create_forged_token(ctx: StepContext) -> dict[str, Any]:
    """Idempotent by forge operation: the operation id is unique on player_tokens."""
    forge = await _operation(ctx)
    existing = await ctx.db.execute(select(PlayerToken).where(PlayerToken.forge_operation_id == forge.id))
    token = existing.scalar_one_or_none()
    if token is None:
        output = await forged_output(ctx.db, forge.type, forge.id, forge.category_id, forge.season_id)
        minted = ctx.result("build-forge-transaction")
        token = PlayerToken(
            stake_key=forge.stake_key,
            policy_id=minted.get("policy_id") or (forge.output_asset_fingerprint or "")[:56],
            asset_fingerprint=forge.output_asset_fingerprint or "",
            token_name=forge.output_token_name or output.token_name,
            source="forge",
            category_id=forge.category_id,
            season_id=forge.season_id,
            tier=output.tier,
            type_code=output.type_code,
            status="confirmed",
            token_metadata={
                "name": output.display_name,
                "burn_tx_hash": forge.burn_tx_hash,
                "tx_hash": forge.mint_tx_hash,
                "inputs": list(forge.input_fingerprints),
            },
            forge_operation_id=forge.id,
        )
        ctx.db.add(token)
        await ctx.db.commit()
    return {"token_id": token.id, "tier": token.tier}


async def on_failure(ctx: StepContext, error: str) -> None:
    forge = await ctx.db.get(ForgeOperation, ctx.run.id)
    if forge is not None and forge.status != "confirmed":
        forge.status = "failed"
        forge.error = error
        await ctx.db.commit()
    logger.warning("Forge workflow %s failed: %s", ctx.run.id, error)


def build_definition() -> WorkflowDefinition:
    delay = get_settings().confirmation_delay_seconds
    return WorkflowDefinition(
        kind=KIND,
        steps=[
            run_step("validate-ownership", validate_ownership),
            run_step("validate-forge-rules", validate_forge_rules),
            run_step("create-forge-operation", create_forge_operation),
            run_step("build-forge-transaction", build_forge_transaction),
            run_step("await-player-signature", await_player_signature),
            run_step("submit-forge-transaction", submit_forge_transaction),
            sleep_step("wait-for-confirmation", delay),
            run_step("check-confirmation", check_confirmation),
            run_step("mark-forge-confirmed", mark_forge_confirmed),
            run_step("mark-inputs-burned", mark_inputs_burned),
            run_step("create-forged-token", create_forged_token),
        ],
        on_failure=on_failure,
    )
