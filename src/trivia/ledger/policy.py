"""Native-script minting policy and asset naming."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import cbor2

from trivia.errors import ValidationError
from trivia.ledger.keys import IssuerKey, blake2b_224

ASSET_NAME_MAX_BYTES = 32
_ASSET_NAME_STRIP = re.compile(r"[^a-zA-Z0-9_]")
_NATIVE_SCRIPT_TAG = b"\x00"


def clean_asset_name(name: str) -> str:
    """Strip everything except letters, digits and underscores."""
    cleaned = _ASSET_NAME_STRIP.sub("", name)
    if not cleaned:
        msg = f"Asset name '{name}' is empty after cleaning"
        raise ValidationError(msg)
    if len(cleaned.encode()) > ASSET_NAME_MAX_BYTES:
        msg = f"Asset name '{cleaned}' exceeds {ASSET_NAME_MAX_BYTES} bytes"
        raise ValidationError(msg)
    return cleaned


def asset_name_hex(name: str) -> str:
    return clean_asset_name(name).encode().hex()


def asset_unit(policy_id: str, name: str) -> str:
    """Unit = policy id hex + asset name hex."""
    return policy_id + asset_name_hex(name)


def split_unit(unit: str) -> tuple[bytes, bytes]:
    """Split a unit into (policy id bytes, asset name bytes)."""
    return bytes.fromhex(unit[:56]), bytes.fromhex(unit[56:])


@dataclass(frozen=True)
class MintingPolicy:
    """Single-signature native script: tokens can be minted or burned only with the issuer key."""

    script: list[Any]
    policy_id: str

    @classmethod
    def from_key(cls, key: IssuerKey) -> MintingPolicy:
        script = [0, key.key_hash]
        digest = blake2b_224(_NATIVE_SCRIPT_TAG + cbor2.dumps(script))
        return cls(script=script, policy_id=digest.hex())

    def unit(self, name: str) -> str:
        return asset_unit(self.policy_id, name)
