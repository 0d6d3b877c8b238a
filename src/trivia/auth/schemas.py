"""Caller identity resolved from the bearer token."""

from __future__ import annotations

from pydantic import BaseModel


class Identity(BaseModel):
    """A connected player (stake key) or a guest (anon id)."""

    player_id: str
    stake_key: str | None = None
    anon_id: str | None = None
    username: str | None = None

    @property
    def is_connected(self) -> bool:
        return bool(self.stake_key)

    @property
    def key(self) -> str:
        """Identifier used in fast-store keys."""
        return self.stake_key or self.anon_id or self.player_id
