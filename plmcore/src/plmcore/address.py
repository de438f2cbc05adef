"""
Palladium address and script helpers.

Every chat wallet uses a single script template: P2WPKH with bech32 HRP "plm".
Legacy base58 outputs (P2PKH, P2SH) are only decoded, never created.
"""

from __future__ import annotations

import hashlib

import base58
import bech32

from plmcore.constants import BECH32_HRP, PUBKEY_HASH_VERSION, SCRIPT_HASH_VERSION


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def pubkey_to_p2wpkh_script(pubkey: bytes | str) -> bytes:
    """Create P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    pubkey_bytes = bytes.fromhex(pubkey) if isinstance(pubkey, str) else pubkey
    return bytes([0x00, 0x14]) + hash160(pubkey_bytes)


def pubkey_to_p2wpkh_address(pubkey: bytes | str, hrp: str = BECH32_HRP) -> str:
    """
    Convert a public key to a P2WPKH (native segwit) address.

    Accepts 33-byte compressed or 65-byte uncompressed keys, as bytes or hex.
    """
    pubkey_bytes = bytes.fromhex(pubkey) if isinstance(pubkey, str) else pubkey

    if len(pubkey_bytes) not in (33, 65):
        raise ValueError(f"Invalid pubkey length: {len(pubkey_bytes)}")

    address = bech32.encode(hrp, 0, hash160(pubkey_bytes))
    if address is None:
        raise ValueError(f"Failed to encode P2WPKH address for {pubkey_bytes.hex()}")
    return address


def address_to_scriptpubkey(address: str, hrp: str = BECH32_HRP) -> bytes:
    """Convert a bech32 segwit or base58 legacy address to its scriptPubKey."""
    if not address.lower().startswith(hrp + "1"):
        return _legacy_address_to_scriptpubkey(address)

    witver, witprog = bech32.decode(hrp, address)
    if witver is None or witprog is None:
        raise ValueError(f"Invalid bech32 address: {address}")

    program = bytes(witprog)
    if witver == 0:
        # OP_0 <20-byte-pubkeyhash> or OP_0 <32-byte-scripthash>
        return bytes([0x00, len(program)]) + program
    if witver == 1 and len(program) == 32:
        return bytes([0x51, 0x20]) + program

    raise ValueError(f"Unsupported witness version: {witver}")


def scriptpubkey_to_address(scriptpubkey: bytes, hrp: str = BECH32_HRP) -> str | None:
    """
    Convert a segwit v0, P2PKH or P2SH scriptPubKey to an address.

    Returns None for scripts that do not map to an address.
    """
    if len(scriptpubkey) in (22, 34) and scriptpubkey[0] == 0x00:
        if scriptpubkey[1] != len(scriptpubkey) - 2:
            return None
        return bech32.encode(hrp, 0, scriptpubkey[2:])
    if (
        len(scriptpubkey) == 25
        and scriptpubkey[:3] == bytes([0x76, 0xA9, 0x14])
        and scriptpubkey[23:] == bytes([0x88, 0xAC])
    ):
        return base58.b58encode_check(bytes([PUBKEY_HASH_VERSION]) + scriptpubkey[3:23]).decode()
    if (
        len(scriptpubkey) == 23
        and scriptpubkey[:2] == bytes([0xA9, 0x14])
        and scriptpubkey[22] == 0x87
    ):
        return base58.b58encode_check(bytes([SCRIPT_HASH_VERSION]) + scriptpubkey[2:22]).decode()
    return None


def _legacy_address_to_scriptpubkey(address: str) -> bytes:
    try:
        payload = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid address: {address}") from e
    if len(payload) != 21:
        raise ValueError(f"Invalid address: {address}")

    version, program = payload[0], payload[1:]
    if version == PUBKEY_HASH_VERSION:
        return bytes([0x76, 0xA9, 0x14]) + program + bytes([0x88, 0xAC])
    if version == SCRIPT_HASH_VERSION:
        return bytes([0xA9, 0x14]) + program + bytes([0x87])
    raise ValueError(f"Unsupported address version: {version}")


def address_to_scripthash(address: str, hrp: str = BECH32_HRP) -> str:
    """
    Electrum protocol scripthash: SHA256 of the output script, byte-reversed, hex.
    """
    script = address_to_scriptpubkey(address, hrp)
    return hashlib.sha256(script).digest()[::-1].hex()
