"""
Keypair lifecycle: generation, WIF import/export, address and storage key derivation.
"""

from __future__ import annotations

import hashlib

import base58
from coincurve import PrivateKey, PublicKey
from loguru import logger

from plmcore.address import pubkey_to_p2wpkh_address
from plmcore.constants import WIF_IMPORT_CANDIDATES, WIF_VERSION
from plmcore.errors import InvalidKeyFormat


class KeyPair:
    """secp256k1 keypair owned by one wallet session."""

    def __init__(self, private_key: PrivateKey | None = None):
        if private_key is None:
            private_key = PrivateKey()
        self._private_key = private_key
        self._public_key = private_key.public_key

    @property
    def private_key(self) -> PrivateKey:
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        return self._public_key

    def private_key_bytes(self) -> bytes:
        return self._private_key.secret

    def public_key_bytes(self) -> bytes:
        return self._public_key.format(compressed=True)

    def public_key_hex(self) -> str:
        return self.public_key_bytes().hex()

    def address(self) -> str:
        return derive_address(self.public_key_bytes())

    def to_wif(self, version: int = WIF_VERSION) -> str:
        """Export as compressed-key WIF."""
        payload = bytes([version]) + self.private_key_bytes() + b"\x01"
        return base58.b58encode_check(payload).decode("ascii")


def generate_keypair() -> KeyPair:
    """Create a fresh random keypair."""
    return KeyPair()


def keypair_to_wif(keypair: KeyPair, version: int = WIF_VERSION) -> str:
    return keypair.to_wif(version)


def _decode_wif(wif: str, version: int) -> PrivateKey:
    payload = base58.b58decode_check(wif)
    if not payload:
        raise ValueError("Empty WIF payload")

    if payload[0] != version:
        raise ValueError(f"Invalid network version {payload[0]:#04x}, expected {version:#04x}")

    if len(payload) == 34:
        if payload[33] != 0x01:
            raise ValueError("Invalid compression flag")
    elif len(payload) != 33:
        raise ValueError(f"Invalid WIF payload length: {len(payload)}")

    return PrivateKey(payload[1:33])


def import_wif(wif: str) -> KeyPair:
    """
    Import a WIF-encoded secret key.

    Each candidate version byte is tried in order. Uncompressed-key WIFs are
    accepted; the session always uses the compressed public key.

    Raises:
        InvalidKeyFormat: If no candidate decodes the key
    """
    wif = wif.strip()
    last_error: Exception | None = None

    for version in WIF_IMPORT_CANDIDATES:
        try:
            return KeyPair(_decode_wif(wif, version))
        except ValueError as e:
            last_error = e

    logger.error(f"WIF import failed: {last_error}")
    raise InvalidKeyFormat("Invalid WIF key format. Please check your key.") from last_error


def derive_address(pubkey: bytes | str) -> str:
    """Derive the P2WPKH address for a public key."""
    return pubkey_to_p2wpkh_address(pubkey)


def derive_storage_key(private_key_bytes: bytes) -> bytes:
    """
    Derive the 32-byte key that encrypts locally persisted state.

    SHA256 over the hex rendering of the raw private scalar. Never transmitted.
    """
    return hashlib.sha256(private_key_bytes.hex().encode("ascii")).digest()


def is_valid_pubkey(pubkey_hex: str) -> bool:
    """True if the hex string encodes a point on secp256k1."""
    try:
        PublicKey(bytes.fromhex(pubkey_hex))
        return True
    except Exception:
        return False
