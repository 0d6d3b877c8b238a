"""Transaction builder for minting, burning and forging tokens.

Two signing modes:

- backend-signed: the issuer key witnesses the transaction and it is
  submitted directly (plain mints funded by the issuer wallet);
- unsigned: the serialized transaction carries only the policy script and
  is handed to the player's wallet, which adds its own witness. Used when
  the inputs being burned belong to the player.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any

import structlog

from trivia.config import Settings, get_settings
from trivia.errors import InsufficientFundsError, MissingTokensError, PreconditionError, ValidationError
from trivia.ledger.keys import IssuerKey, address_to_bytes
from trivia.ledger.metadata import build_cip25_metadata
from trivia.ledger.policy import MintingPolicy, clean_asset_name
from trivia.ledger.provider import LedgerProvider
from trivia.ledger.tx import (
    ProtocolParameters,
    TransactionDraft,
    TxOutput,
    Utxo,
    add_vkey_witnesses,
    linear_fee,
    transaction_hash,
    witness_keys,
)

logger = structlog.get_logger()

_MAX_FEE_ITERATIONS = 5


@dataclass
class BuiltTransaction:
    tx_hash: str
    cbor_hex: str
    fee: int
    signed: bool
    policy_id: str
    asset_name: str | None = None
    unit: str | None = None
    burned: dict[str, int] = field(default_factory=dict)
    input_refs: list[str] = field(default_factory=list)
    ttl: int | None = None


@dataclass
class TokenSpec:
    """What to mint: on-chain asset name plus the CIP-25 display fields."""

    asset_name: str
    display_name: str
    image: str
    description: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


def select_burn_inputs(utxos: list[Utxo], required: dict[str, int]) -> list[Utxo]:
    """Greedily pick the fewest outputs that together hold every required token.

    Each round takes the output covering the most still-needed units. An
    output may hold zero, one or several of the needed tokens.

    Raises:
        MissingTokensError: if any required unit is not fully found.
    """
    needed = {unit: count for unit, count in required.items() if count > 0}
    remaining = list(utxos)
    selected: list[Utxo] = []

    while needed:
        best: Utxo | None = None
        best_cover = 0
        for utxo in remaining:
            cover = sum(min(utxo.assets.get(unit, 0), count) for unit, count in needed.items())
            if cover > best_cover:
                best, best_cover = utxo, cover
        if best is None:
            break
        selected.append(best)
        remaining.remove(best)
        for unit in list(needed):
            needed[unit] -= min(best.assets.get(unit, 0), needed[unit])
            if needed[unit] <= 0:
                del needed[unit]

    if needed:
        raise MissingTokensError(needed)
    return selected


def top_up_for_fees(utxos: list[Utxo], selected: list[Utxo], min_lovelace: int) -> list[Utxo]:
    """Add outputs to the selection until it carries at least ``min_lovelace``.

    Pure-coin outputs are preferred, largest first.

    Raises:
        InsufficientFundsError: if all outputs together cannot reach the threshold.
    """
    chosen = list(selected)
    refs = {u.ref for u in chosen}
    total = sum(u.lovelace for u in chosen)
    candidates = sorted(
        (u for u in utxos if u.ref not in refs),
        key=lambda u: (bool(u.assets), -u.lovelace),
    )
    for utxo in candidates:
        if total >= min_lovelace:
            break
        chosen.append(utxo)
        total += utxo.lovelace
    if total < min_lovelace:
        msg = f"Insufficient funds: {total} lovelace available, {min_lovelace} required to cover fees"
        raise InsufficientFundsError(msg)
    return chosen


def balance_transaction(
    draft: TransactionDraft,
    change_address: str,
    params: ProtocolParameters,
    signer_count: int,
    min_output_lovelace: int,
) -> TransactionDraft:
    """Compute the fee and the change output for a draft.

    Change collects leftover coin plus every input token that is neither
    paid out nor burned. Coin-only change below the minimum output is
    folded into the fee.
    """
    in_lovelace = sum(u.lovelace for u in draft.inputs)
    out_lovelace = sum(o.lovelace for o in draft.outputs)

    asset_totals: Counter[str] = Counter()
    for utxo in draft.inputs:
        asset_totals.update(utxo.assets)
    for unit, delta in draft.mint.items():
        asset_totals[unit] += delta
    for output in draft.outputs:
        asset_totals.subtract(output.assets)
    short = {unit: -count for unit, count in asset_totals.items() if count < 0}
    if short:
        raise MissingTokensError(short)
    change_assets = {unit: count for unit, count in asset_totals.items() if count > 0}

    def with_change(fee: int) -> TransactionDraft:
        change = TxOutput(change_address, in_lovelace - out_lovelace - fee, change_assets)
        return replace(draft, outputs=[*draft.outputs, change], fee=fee)

    fee = 0
    candidate = with_change(fee)
    for _ in range(_MAX_FEE_ITERATIONS):
        estimated = linear_fee(params, candidate.estimated_size(signer_count))
        if estimated <= fee:
            break
        fee = estimated
        candidate = with_change(fee)

    change_lovelace = in_lovelace - out_lovelace - fee
    if change_lovelace < 0:
        msg = f"Insufficient funds: short {-change_lovelace} lovelace after fee of {fee}"
        raise InsufficientFundsError(msg)
    if change_lovelace < min_output_lovelace:
        if change_assets:
            msg = f"Insufficient funds: change of {change_lovelace} lovelace cannot carry returned tokens"
            raise InsufficientFundsError(msg)
        candidate = replace(draft, fee=in_lovelace - out_lovelace)

    if candidate.estimated_size(signer_count) > params.max_tx_size:
        msg = "Transaction exceeds the maximum size"
        raise ValidationError(msg)
    return candidate


class TransactionBuilder:
    """Builds, signs and submits token transactions under the issuer's policy."""

    def __init__(
        self,
        provider: LedgerProvider,
        issuer: IssuerKey,
        *,
        network: str = "preprod",
        issuer_address: str | None = None,
        min_fee_coverage_lovelace: int = 3_000_000,
        min_output_lovelace: int = 2_000_000,
        metadata_chunk_size: int = 64,
        ttl_slots: int = 7200,
    ) -> None:
        self.provider = provider
        self.issuer = issuer
        self.policy = MintingPolicy.from_key(issuer)
        self.network = network
        self.issuer_address = issuer_address or issuer.enterprise_address(network)
        self.min_fee_coverage_lovelace = min_fee_coverage_lovelace
        self.min_output_lovelace = min_output_lovelace
        self.metadata_chunk_size = metadata_chunk_size
        self.ttl_slots = ttl_slots

    @classmethod
    def from_settings(cls, provider: LedgerProvider, settings: Settings | None = None) -> TransactionBuilder:
        settings = settings or get_settings()
        if not settings.issuer_signing_key_hex:
            msg = "TRIVIA_ISSUER_SIGNING_KEY_HEX is not configured"
            raise RuntimeError(msg)
        return cls(
            provider,
            IssuerKey.from_hex(settings.issuer_signing_key_hex),
            network=settings.ledger_network,
            issuer_address=settings.issuer_address or None,
            min_fee_coverage_lovelace=settings.min_fee_coverage_lovelace,
            min_output_lovelace=settings.min_output_lovelace,
            metadata_chunk_size=settings.metadata_chunk_size,
            ttl_slots=settings.tx_ttl_slots,
        )

    def _metadata(self, token: TokenSpec, asset_name: str) -> dict[int, Any]:
        return build_cip25_metadata(
            self.policy.policy_id,
            asset_name,
            name=token.display_name,
            image=token.image,
            description=token.description,
            attributes=token.attributes,
            chunk_size=self.metadata_chunk_size,
        )

    async def _ttl(self) -> int:
        return await self.provider.get_tip_slot() + self.ttl_slots

    def _finish(
        self,
        draft: TransactionDraft,
        *,
        sign: bool,
        asset_name: str | None = None,
        burned: dict[str, int] | None = None,
    ) -> BuiltTransaction:
        tx_hash = draft.tx_id()
        witnesses = [(self.issuer.verification_key, self.issuer.sign(bytes.fromhex(tx_hash)))] if sign else []
        return BuiltTransaction(
            tx_hash=tx_hash,
            cbor_hex=draft.serialize(witnesses).hex(),
            fee=draft.fee,
            signed=sign,
            policy_id=self.policy.policy_id,
            asset_name=asset_name,
            unit=self.policy.unit(asset_name) if asset_name else None,
            burned=dict(burned or {}),
            input_refs=[u.ref for u in draft.inputs],
            ttl=draft.ttl,
        )

    async def build_mint(self, recipient: str, token: TokenSpec) -> BuiltTransaction:
        """Issuer-funded, issuer-signed mint of one token to ``recipient``."""
        address_to_bytes(recipient)
        asset_name = clean_asset_name(token.asset_name)
        unit = self.policy.unit(asset_name)

        utxos = await self.provider.get_utxos(self.issuer_address)
        available = sum(u.lovelace for u in utxos)
        if available < self.min_output_lovelace:
            msg = f"Insufficient funds: issuer wallet holds {available} lovelace"
            raise InsufficientFundsError(msg)
        inputs = top_up_for_fees(utxos, [], self.min_fee_coverage_lovelace)
        params = await self.provider.get_protocol_parameters()

        draft = TransactionDraft(
            inputs=inputs,
            outputs=[TxOutput(recipient, self.min_output_lovelace, {unit: 1})],
            mint={unit: 1},
            metadata=self._metadata(token, asset_name),
            ttl=await self._ttl(),
            native_scripts=[self.policy.script],
        )
        balanced = balance_transaction(draft, self.issuer_address, params, 1, self.min_output_lovelace)
        return self._finish(balanced, sign=True, asset_name=asset_name)

    async def _burn_draft(
        self,
        owner_address: str,
        burn_units: list[str],
    ) -> tuple[TransactionDraft, Counter[str], ProtocolParameters]:
        address_to_bytes(owner_address)
        required: Counter[str] = Counter(burn_units)
        foreign = [unit for unit in required if not unit.startswith(self.policy.policy_id)]
        if foreign:
            msg = f"Cannot burn tokens outside the issuer policy: {', '.join(sorted(foreign))}"
            raise ValidationError(msg)

        utxos = await self.provider.get_utxos(owner_address)
        selected = select_burn_inputs(utxos, required)
        inputs = top_up_for_fees(utxos, selected, self.min_fee_coverage_lovelace)
        params = await self.provider.get_protocol_parameters()
        draft = TransactionDraft(
            inputs=inputs,
            outputs=[],
            mint={unit: -count for unit, count in required.items()},
            ttl=await self._ttl(),
            native_scripts=[self.policy.script],
        )
        return draft, required, params

    async def build_burn_and_mint(
        self,
        owner_address: str,
        burn_units: list[str],
        token: TokenSpec,
        *,
        sign: bool = False,
    ) -> BuiltTransaction:
        """One transaction burning every input token and minting the forged token back to the owner.

        Metadata describes the new token only. With ``sign=False`` the result
        is unsigned and meant for the owner's wallet.
        """
        draft, required, params = await self._burn_draft(owner_address, burn_units)
        asset_name = clean_asset_name(token.asset_name)
        unit = self.policy.unit(asset_name)
        mint = dict(draft.mint)
        mint[unit] = mint.get(unit, 0) + 1
        draft = replace(
            draft,
            outputs=[TxOutput(owner_address, self.min_output_lovelace, {unit: 1})],
            mint=mint,
            metadata=self._metadata(token, asset_name),
        )
        balanced = balance_transaction(draft, owner_address, params, 2, self.min_output_lovelace)
        logger.info(
            "ledger_forge_built",
            owner=owner_address,
            burned=sum(required.values()),
            asset_name=asset_name,
            signed=sign,
        )
        return self._finish(balanced, sign=sign, asset_name=asset_name, burned=dict(required))

    def is_cosigned(self, cbor_hex: str) -> bool:
        return self.issuer.verification_key in witness_keys(cbor_hex)

    def cosign(self, cbor_hex: str) -> str:
        """Add the issuer's witness (the minting policy key) to a serialized transaction."""
        tx_hash = transaction_hash(cbor_hex)
        witness = (self.issuer.verification_key, self.issuer.sign(bytes.fromhex(tx_hash)))
        return add_vkey_witnesses(cbor_hex, [witness])

    async def submit_stored(self, cbor_hex: str, tx_hash: str, *, resubmission: bool) -> bool:
        """Submit a transaction whose signed form is already persisted.

        A rejected first submission means the transaction can never land and
        the error propagates. A rejected resubmission usually means the ledger
        already has it, so it returns False and confirmation decides.
        """
        try:
            await self.provider.submit_tx(cbor_hex)
        except PreconditionError as exc:
            if not resubmission:
                raise
            logger.warning("ledger_resubmit_rejected", tx_hash=tx_hash, error=str(exc))
            return False
        logger.info("ledger_tx_stored_submitted", tx_hash=tx_hash, resubmission=resubmission)
        return True

    async def has_lapsed(self, tx_hash: str, ttl: int | None) -> bool:
        """True once ``tx_hash`` is unconfirmed and the chain is past its validity window."""
        if await self.provider.is_confirmed(tx_hash):
            return False
        if ttl is None:
            return False
        return await self.provider.get_tip_slot() > ttl
