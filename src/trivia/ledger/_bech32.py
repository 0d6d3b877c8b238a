"""
Bech32 encoding and decoding for ledger addresses.

Ledger addresses are plain bech32 (BIP173 checksum) over raw address bytes,
without segwit witness versions and without the 90 character cap.
Reference: https://github.com/bitcoin/bips/blob/master/bip-0173.mediawiki
"""

from __future__ import annotations

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_CONST = 1


def _polymod(values: list[int]) -> int:
    """Internal function that computes the Bech32 checksum."""
    gen = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= gen[i] if ((top >> i) & 1) else 0
    return chk


def _hrp_expand(hrp: str) -> list[int]:
    """Expand HRP into values for checksum computation."""
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def _create_checksum(hrp: str, data: list[int]) -> list[int]:
    values = _hrp_expand(hrp) + data
    polymod = _polymod(values + [0, 0, 0, 0, 0, 0]) ^ BECH32_CONST
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def _convertbits(data: bytes | list[int], frombits: int, tobits: int, pad: bool = True) -> list[int] | None:
    """General power-of-2 base conversion."""
    acc = 0
    bits = 0
    ret: list[int] = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1
    for value in data:
        if value < 0 or (value >> frombits):
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)
    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None
    return ret


def decode(address: str) -> tuple[str, bytes]:
    """
    Decode a bech32 ledger address.

    Returns:
        Tuple of (hrp, address bytes).

    Raises:
        ValueError: If the address is malformed or the checksum fails.
    """
    if any(ord(x) < 33 or ord(x) > 126 for x in address):
        msg = "Invalid character in address"
        raise ValueError(msg)
    if address.lower() != address and address.upper() != address:
        msg = "Mixed case in address"
        raise ValueError(msg)
    address = address.lower()
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address):
        msg = "Invalid bech32 address format"
        raise ValueError(msg)
    hrp = address[:pos]
    data_part = address[pos + 1 :]
    if not all(x in CHARSET for x in data_part):
        msg = "Invalid character in data part"
        raise ValueError(msg)
    data = [CHARSET.find(x) for x in data_part]
    if _polymod(_hrp_expand(hrp) + data) != BECH32_CONST:
        msg = "Invalid bech32 checksum"
        raise ValueError(msg)
    payload = _convertbits(data[:-6], 5, 8, pad=False)
    if not payload:
        msg = "Empty address payload"
        raise ValueError(msg)
    return hrp, bytes(payload)


def encode(hrp: str, payload: bytes) -> str:
    """Encode raw address bytes under the given human-readable part."""
    converted = _convertbits(list(payload), 8, 5)
    if converted is None:
        msg = "Failed to convert address payload"
        raise ValueError(msg)
    checksum = _create_checksum(hrp, converted)
    return hrp + "1" + "".join(CHARSET[d] for d in converted + checksum)
