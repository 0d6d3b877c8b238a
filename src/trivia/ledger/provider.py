"""
Ledger provider abstraction.

Blockfrost-compatible REST backend by default. The reward worker builds one
at startup and hands it to the workflow engine; tests pass an in-memory one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from trivia.errors import PreconditionError, TransientError
from trivia.ledger.tx import ProtocolParameters, Utxo

logger = structlog.get_logger()

_PAGE_SIZE = 100


class LedgerProvider(ABC):
    """Read chain state and submit transactions."""

    @abstractmethod
    async def get_utxos(self, address: str) -> list[Utxo]:
        """All unspent outputs at an address."""
        ...

    @abstractmethod
    async def get_protocol_parameters(self) -> ProtocolParameters:
        ...

    @abstractmethod
    async def get_tip_slot(self) -> int:
        ...

    @abstractmethod
    async def submit_tx(self, cbor_hex: str) -> str:
        """Submit a signed transaction. Returns the transaction hash."""
        ...

    @abstractmethod
    async def is_confirmed(self, tx_hash: str) -> bool:
        ...


class BlockfrostProvider(LedgerProvider):
    """Blockfrost REST API over httpx."""

    def __init__(self, base_url: str, project_id: str, timeout: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self.timeout = timeout

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:  # noqa: ANN401
        headers = {"project_id": self.project_id, **kwargs.pop("headers", {})}
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                response = await client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            logger.warning("ledger_provider_unreachable", path=path, error=str(e))
            msg = f"Ledger provider unreachable: {e}"
            raise TransientError(msg) from e

        if response.status_code == 429 or response.status_code >= 500:
            msg = f"Ledger provider error {response.status_code} on {path}"
            raise TransientError(msg)
        if response.status_code in (401, 403):
            msg = "Ledger provider rejected credentials"
            raise PreconditionError(msg)
        return response

    async def get_utxos(self, address: str) -> list[Utxo]:
        utxos: list[Utxo] = []
        page = 1
        while True:
            response = await self._request(
                "GET", f"/addresses/{address}/utxos", params={"page": page, "count": _PAGE_SIZE}
            )
            if response.status_code == 404:
                # Address never seen on chain
                return utxos
            response.raise_for_status()
            items: list[dict[str, Any]] = response.json()
            for item in items:
                utxos.append(_parse_utxo(address, item))
            if len(items) < _PAGE_SIZE:
                return utxos
            page += 1

    async def get_protocol_parameters(self) -> ProtocolParameters:
        response = await self._request("GET", "/epochs/latest/parameters")
        response.raise_for_status()
        data = response.json()
        return ProtocolParameters(
            min_fee_a=int(data["min_fee_a"]),
            min_fee_b=int(data["min_fee_b"]),
            max_tx_size=int(data.get("max_tx_size", 16384)),
        )

    async def get_tip_slot(self) -> int:
        response = await self._request("GET", "/blocks/latest")
        response.raise_for_status()
        return int(response.json()["slot"])

    async def submit_tx(self, cbor_hex: str) -> str:
        response = await self._request(
            "POST",
            "/tx/submit",
            content=bytes.fromhex(cbor_hex),
            headers={"Content-Type": "application/cbor"},
        )
        if response.status_code == 400:
            msg = f"Transaction rejected: {response.text}"
            raise PreconditionError(msg)
        response.raise_for_status()
        tx_hash: str = response.json()
        logger.info("ledger_tx_submitted", tx_hash=tx_hash)
        return tx_hash

    async def is_confirmed(self, tx_hash: str) -> bool:
        response = await self._request("GET", f"/txs/{tx_hash}")
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True


def _parse_utxo(address: str, item: dict[str, Any]) -> Utxo:
    lovelace = 0
    assets: dict[str, int] = {}
    for amount in item.get("amount", []):
        if amount["unit"] == "lovelace":
            lovelace = int(amount["quantity"])
        else:
            assets[amount["unit"]] = int(amount["quantity"])
    return Utxo(
        tx_hash=item["tx_hash"],
        output_index=int(item["output_index"]),
        address=address,
        lovelace=lovelace,
        assets=assets,
    )
