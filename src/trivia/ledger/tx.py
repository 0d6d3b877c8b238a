"""Transaction model and CBOR serialization.

Transactions are encoded as ``[body, witness_set, is_valid, auxiliary_data]``
with map-keyed bodies. Values follow the ``coin | [coin, multiasset]`` form,
and mint maps carry signed quantities (negative = burn).
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import cbor2

from trivia.errors import ValidationError
from trivia.ledger.keys import address_to_bytes, blake2b_256
from trivia.ledger.policy import split_unit

# Body map keys
_INPUTS = 0
_OUTPUTS = 1
_FEE = 2
_TTL = 3
_AUX_DATA_HASH = 7
_MINT = 9

# Witness set keys
_VKEY_WITNESSES = 0
_NATIVE_SCRIPTS = 1

# Placeholder witness used for fee estimation
_DUMMY_WITNESS = (b"\x00" * 32, b"\x00" * 64)


@dataclass
class Utxo:
    """An unspent output as reported by the ledger provider."""

    tx_hash: str
    output_index: int
    address: str
    lovelace: int
    assets: dict[str, int] = field(default_factory=dict)

    @property
    def ref(self) -> str:
        return f"{self.tx_hash}#{self.output_index}"


@dataclass
class TxOutput:
    address: str
    lovelace: int
    assets: dict[str, int] = field(default_factory=dict)


@dataclass
class ProtocolParameters:
    min_fee_a: int
    min_fee_b: int
    max_tx_size: int = 16384


def encode_multiasset(assets: dict[str, int]) -> dict[bytes, dict[bytes, int]]:
    """Group units by policy. Zero quantities are dropped."""
    grouped: dict[bytes, dict[bytes, int]] = defaultdict(dict)
    for unit, quantity in sorted(assets.items()):
        if quantity == 0:
            continue
        policy, name = split_unit(unit)
        grouped[policy][name] = quantity
    return dict(grouped)


def encode_value(lovelace: int, assets: dict[str, int]) -> int | list[Any]:
    multiasset = encode_multiasset(assets)
    if not multiasset:
        return lovelace
    return [lovelace, multiasset]


@dataclass
class TransactionDraft:
    """Everything needed to serialize a transaction, before witnesses."""

    inputs: list[Utxo]
    outputs: list[TxOutput]
    fee: int = 0
    mint: dict[str, int] = field(default_factory=dict)
    metadata: dict[int, Any] | None = None
    ttl: int | None = None
    native_scripts: list[list[Any]] = field(default_factory=list)

    def auxiliary_data(self) -> bytes | None:
        if not self.metadata:
            return None
        return cbor2.dumps(self.metadata)

    def body(self) -> dict[int, Any]:
        ordered_inputs = sorted(self.inputs, key=lambda u: (u.tx_hash, u.output_index))
        body: dict[int, Any] = {
            _INPUTS: [[bytes.fromhex(u.tx_hash), u.output_index] for u in ordered_inputs],
            _OUTPUTS: [
                [address_to_bytes(out.address), encode_value(out.lovelace, out.assets)] for out in self.outputs
            ],
            _FEE: self.fee,
        }
        if self.ttl is not None:
            body[_TTL] = self.ttl
        aux = self.auxiliary_data()
        if aux is not None:
            body[_AUX_DATA_HASH] = blake2b_256(aux)
        mint = encode_multiasset(self.mint)
        if mint:
            body[_MINT] = mint
        return body

    def body_cbor(self) -> bytes:
        return cbor2.dumps(self.body())

    def tx_id(self) -> str:
        """Transaction hash: blake2b-256 of the serialized body."""
        return blake2b_256(self.body_cbor()).hex()

    def serialize(self, vkey_witnesses: list[tuple[bytes, bytes]]) -> bytes:
        witness_set: dict[int, Any] = {}
        if vkey_witnesses:
            witness_set[_VKEY_WITNESSES] = [[vkey, sig] for vkey, sig in vkey_witnesses]
        if self.native_scripts:
            witness_set[_NATIVE_SCRIPTS] = self.native_scripts
        return cbor2.dumps([self.body(), witness_set, True, self.metadata or None])

    def estimated_size(self, signer_count: int) -> int:
        return len(self.serialize([_DUMMY_WITNESS] * signer_count))


def linear_fee(params: ProtocolParameters, size: int) -> int:
    return params.min_fee_a * size + params.min_fee_b


def decode_transaction(cbor_hex: str) -> list[Any]:
    """Decode a serialized transaction back into its four top-level parts."""
    return cbor2.loads(bytes.fromhex(cbor_hex))


def add_vkey_witnesses(cbor_hex: str, witnesses: list[tuple[bytes, bytes]]) -> str:
    """Merge additional vkey witnesses into a serialized transaction."""
    body, witness_set, is_valid, aux = decode_transaction(cbor_hex)
    existing = list(witness_set.get(_VKEY_WITNESSES, []))
    known = {bytes(w[0]) for w in existing}
    for vkey, sig in witnesses:
        if vkey not in known:
            existing.append([vkey, sig])
    witness_set[_VKEY_WITNESSES] = existing
    return cbor2.dumps([body, witness_set, is_valid, aux]).hex()


def transaction_hash(cbor_hex: str) -> str:
    """Hash of a serialized transaction; witnesses do not change it."""
    body = decode_transaction(cbor_hex)[0]
    return blake2b_256(cbor2.dumps(body)).hex()


def decode_vkey_witnesses(witness_set_hex: str) -> list[tuple[bytes, bytes]]:
    """The ``(vkey, signature)`` pairs of a serialized witness set, as wallets return it."""
    try:
        witness_set = cbor2.loads(bytes.fromhex(witness_set_hex))
        pairs = witness_set.get(_VKEY_WITNESSES, [])
        return [(bytes(vkey), bytes(sig)) for vkey, sig in pairs]
    except (ValueError, TypeError, AttributeError, cbor2.CBORDecodeError) as exc:
        msg = "Malformed witness set"
        raise ValidationError(msg) from exc


def witness_keys(cbor_hex: str) -> set[bytes]:
    """Verification keys that already witness a serialized transaction."""
    witness_set = decode_transaction(cbor_hex)[1]
    return {bytes(w[0]) for w in witness_set.get(_VKEY_WITNESSES, [])}
