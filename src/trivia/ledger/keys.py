"""Issuer key material, hashing and address handling."""

from __future__ import annotations

import hashlib

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from trivia.errors import InvalidAddressError
from trivia.ledger import _bech32

# Shelley address header nibbles
_ENTERPRISE_KEY_HEADER = 0x60
_NETWORK_IDS = {"mainnet": 1}


def blake2b_224(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=28).digest()


def blake2b_256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


def network_id(network: str) -> int:
    """Mainnet is 1, every test network is 0."""
    return _NETWORK_IDS.get(network, 0)


def address_hrp(network: str) -> str:
    return "addr" if network_id(network) == 1 else "addr_test"


def address_to_bytes(address: str) -> bytes:
    """Decode a bech32 payment address into its raw bytes."""
    try:
        hrp, payload = _bech32.decode(address)
    except ValueError as e:
        msg = f"Invalid address: {e}"
        raise InvalidAddressError(msg) from e
    if hrp not in ("addr", "addr_test"):
        msg = f"Invalid address: unexpected prefix '{hrp}'"
        raise InvalidAddressError(msg)
    if len(payload) < 29:
        msg = "Invalid address: payload too short"
        raise InvalidAddressError(msg)
    return payload


def bytes_to_address(payload: bytes, network: str) -> str:
    return _bech32.encode(address_hrp(network), payload)


def payment_key_hash(address: str) -> bytes:
    """Payment credential of a Shelley address: the 28 bytes after the header."""
    return address_to_bytes(address)[1:29]


def verify_signature(verification_key: bytes, signature: bytes, message: bytes) -> bool:
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(verification_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


class IssuerKey:
    """Ed25519 signing key that controls the minting policy and the issuer wallet."""

    def __init__(self, private_key: ed25519.Ed25519PrivateKey) -> None:
        self._private_key = private_key
        self.verification_key: bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.key_hash: bytes = blake2b_224(self.verification_key)

    @classmethod
    def from_hex(cls, seed_hex: str) -> IssuerKey:
        """Load from a 32-byte hex seed (the raw Ed25519 private key)."""
        seed = bytes.fromhex(seed_hex)
        if len(seed) != 32:
            msg = "Issuer signing key must be a 32-byte hex seed"
            raise ValueError(msg)
        return cls(ed25519.Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def generate(cls) -> IssuerKey:
        return cls(ed25519.Ed25519PrivateKey.generate())

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)

    def enterprise_address(self, network: str) -> str:
        """Payment address with no stake part, used as the issuer wallet."""
        header = _ENTERPRISE_KEY_HEADER | network_id(network)
        return bytes_to_address(bytes([header]) + self.key_hash, network)
