"""Reward API endpoints: eligibilities, mint, forge."""

from __future__ import annotations

from arq.connections import ArqRedis
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.auth.dependencies import get_connected_identity, get_current_identity
from trivia.auth.schemas import Identity
from trivia.database import get_session
from trivia.dependencies import get_arq_dep
from trivia.rewards import forge_service, mint_service
from trivia.rewards.schemas import (
    EligibilityListResponse,
    EligibilityResponse,
    ForgeInitiatedResponse,
    ForgeProgressEntry,
    ForgeProgressResponse,
    ForgeRequest,
    ForgeSignRequest,
    ForgeStatusResponse,
    ForgeTypeName,
    MintInitiatedResponse,
    MintRequest,
    MintStatusResponse,
)

router = APIRouter(prefix="/api/v1", tags=["Rewards"])


@router.get("/eligibilities", response_model=EligibilityListResponse)
async def list_eligibilities(
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_session),
) -> EligibilityListResponse:
    """Active, unexpired mint eligibilities of the caller."""
    rows = await mint_service.get_eligibilities(db, identity.player_id)
    return EligibilityListResponse(
        eligibilities=[EligibilityResponse.model_validate(r) for r in rows],
        total=len(rows),
    )


# --- Mint ---


@router.post("/mint/{eligibility_id}", response_model=MintInitiatedResponse, status_code=202)
async def mint(
    eligibility_id: str,
    body: MintRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_session),
    arq: ArqRedis = Depends(get_arq_dep),
) -> MintInitiatedResponse:
    """Start the mint workflow for an eligibility. Re-posting returns the same mint."""
    data = await mint_service.initiate_mint(db, arq, identity, eligibility_id, body.destination_address)
    return MintInitiatedResponse(**data)


@router.get("/mint/{mint_id}/status", response_model=MintStatusResponse)
async def mint_status(
    mint_id: str,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_session),
) -> MintStatusResponse:
    data = await mint_service.get_mint_status(db, mint_id, identity.player_id)
    return MintStatusResponse(**data)  # type: ignore[arg-type]


# --- Forge ---


# Registered before /forge/{forge_id}/status and /forge/{forge_type}
@router.get("/forge/progress", response_model=ForgeProgressResponse)
async def forge_progress(
    identity: Identity = Depends(get_connected_identity),
    db: AsyncSession = Depends(get_session),
) -> ForgeProgressResponse:
    """Progress toward each forge type, with the tokens that would be consumed."""
    progress = await forge_service.get_forge_progress(db, identity.stake_key or "")
    return ForgeProgressResponse(progress=[ForgeProgressEntry(**p) for p in progress])


@router.get("/forge/{forge_id}/status", response_model=ForgeStatusResponse)
async def forge_status(
    forge_id: str,
    identity: Identity = Depends(get_connected_identity),
    db: AsyncSession = Depends(get_session),
) -> ForgeStatusResponse:
    data = await forge_service.get_forge_operation(db, forge_id, identity.stake_key or "")
    return ForgeStatusResponse(**data)


@router.post("/forge/{forge_type}", response_model=ForgeInitiatedResponse, status_code=202)
async def forge(
    forge_type: ForgeTypeName,
    body: ForgeRequest,
    identity: Identity = Depends(get_connected_identity),
    db: AsyncSession = Depends(get_session),
    arq: ArqRedis = Depends(get_arq_dep),
) -> ForgeInitiatedResponse:
    """Start a forge: burn the listed tokens, mint one higher-tier token."""
    data = await forge_service.initiate_forge(
        db,
        arq,
        identity,
        forge_type,
        body.input_token_ids,
        body.destination_address,
        category_id=body.category_id,
        season_id=body.season_id,
    )
    return ForgeInitiatedResponse(**data)


@router.post("/forge/{forge_id}/sign", response_model=ForgeStatusResponse)
async def sign_forge(
    forge_id: str,
    body: ForgeSignRequest,
    identity: Identity = Depends(get_connected_identity),
    db: AsyncSession = Depends(get_session),
    arq: ArqRedis = Depends(get_arq_dep),
) -> ForgeStatusResponse:
    """Hand back the wallet's witness for the forge transaction shown in its status."""
    data = await forge_service.attach_player_witness(db, arq, identity, forge_id, body.witness_set)
    return ForgeStatusResponse(**data)
