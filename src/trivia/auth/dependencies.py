"""FastAPI authentication dependencies."""

from __future__ import annotations

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.auth.jwt import verify_token
from trivia.auth.schemas import Identity
from trivia.database import get_session
from trivia.db.models import Player

_bearer = HTTPBearer()


async def ensure_player(db: AsyncSession, identity: Identity) -> Player:
    """Get or create the player row the token refers to."""
    result = await db.execute(select(Player).where(Player.id == identity.player_id))
    player = result.scalar_one_or_none()
    if player is None:
        player = Player(
            id=identity.player_id,
            stake_key=identity.stake_key,
            anon_id=None if identity.stake_key else identity.anon_id,
            username=identity.username,
        )
        db.add(player)
        await db.commit()
    return player


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> Identity:
    """Verify the bearer token and return the caller's identity. Raises 401 on failure."""
    try:
        payload = verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e

    identity = Identity(
        player_id=str(payload["sub"]),
        stake_key=payload.get("stake_key") or None,
        anon_id=payload.get("anon_id") or None,
        username=payload.get("username"),
    )
    await ensure_player(db, identity)
    return identity


async def get_connected_identity(
    identity: Identity = Depends(get_current_identity),
) -> Identity:
    """Same as get_current_identity but requires a connected wallet."""
    if not identity.is_connected:
        raise HTTPException(status_code=403, detail="A connected wallet is required")
    return identity
