"""CIP-25 token metadata (label 721)."""

from __future__ import annotations

from typing import Any

CIP25_LABEL = 721
CIP25_VERSION = "1.0"
DEFAULT_CHUNK_SIZE = 64


def chunk_string(value: str, size: int = DEFAULT_CHUNK_SIZE) -> str | list[str]:
    """Metadata strings are capped at 64 bytes; longer ones become a list of segments."""
    if len(value) <= size:
        return value
    return [value[i : i + size] for i in range(0, len(value), size)]


def build_cip25_metadata(
    policy_id: str,
    asset_name: str,
    *,
    name: str,
    image: str,
    description: str | None = None,
    attributes: dict[str, Any] | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> dict[int, Any]:
    """Build the auxiliary metadata map for one token."""
    asset: dict[str, Any] = {
        "name": chunk_string(name, chunk_size),
        "image": chunk_string(image, chunk_size),
        "mediaType": "image/png",
    }
    if description:
        asset["description"] = chunk_string(description, chunk_size)
    if attributes:
        asset["attributes"] = {
            str(key): chunk_string(str(value), chunk_size) for key, value in attributes.items()
        }
    return {
        CIP25_LABEL: {
            policy_id: {asset_name: asset},
            "version": CIP25_VERSION,
        }
    }


def image_uri(image_cid: str | None) -> str:
    if not image_cid:
        return ""
    if image_cid.startswith(("ipfs://", "https://")):
        return image_cid
    return f"ipfs://{image_cid}"
