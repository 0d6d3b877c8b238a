"""Reward API schemas: eligibilities, mints, forges."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ForgeTypeName = Literal["category", "master", "season"]


class EligibilityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    category_id: str | None = None
    season_id: str | None = None
    session_id: str | None = None
    status: str
    expires_at: datetime
    created_at: datetime


class EligibilityListResponse(BaseModel):
    eligibilities: list[EligibilityResponse]
    total: int


# --- Mint ---


class MintRequest(BaseModel):
    destination_address: str = Field(min_length=1, max_length=128)

    @field_validator("destination_address")
    @classmethod
    def strip_address(cls, v: str) -> str:
        return v.strip()


class MintInitiatedResponse(BaseModel):
    mint_id: str
    status: str


class MintStatusResponse(BaseModel):
    mint_id: str
    eligibility_id: str | None = None
    status: str
    tx_hash: str | None = None
    policy_id: str | None = None
    token_name: str | None = None
    asset_fingerprint: str | None = None
    error: str | None = None
    created_at: datetime | None = None
    confirmed_at: datetime | None = None


# --- Forge ---


class ForgeRequest(BaseModel):
    input_token_ids: list[str] = Field(min_length=1, max_length=64)
    destination_address: str = Field(min_length=1, max_length=128)
    category_id: str | None = None
    season_id: str | None = None


class ForgeSignRequest(BaseModel):
    """CBOR witness set returned by the wallet for ``unsigned_tx``."""

    witness_set: str = Field(min_length=2, max_length=4096, pattern=r"^[0-9a-fA-F]+$")


class ForgeInitiatedResponse(BaseModel):
    forge_id: str
    status: str


class ForgeStatusResponse(BaseModel):
    forge_id: str
    type: str | None = None
    status: str
    category_id: str | None = None
    season_id: str | None = None
    input_token_ids: list[str] = Field(default_factory=list)
    burn_tx_hash: str | None = None
    mint_tx_hash: str | None = None
    output_token_name: str | None = None
    output_asset_fingerprint: str | None = None
    awaiting_signature: bool = False
    unsigned_tx: str | None = None
    error: str | None = None
    created_at: datetime | None = None
    confirmed_at: datetime | None = None


class ForgeTokenView(BaseModel):
    id: str
    token_name: str
    category_id: str | None = None
    season_id: str | None = None
    asset_fingerprint: str
    minted_at: datetime


class ForgeProgressEntry(BaseModel):
    type: ForgeTypeName
    category_id: str | None = None
    season_id: str | None = None
    required: int
    current: int
    tokens: list[ForgeTokenView]
    can_forge: bool


class ForgeProgressResponse(BaseModel):
    progress: list[ForgeProgressEntry]
