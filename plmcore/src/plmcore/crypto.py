"""
Message encryption between two chat keypairs.

ECDH over secp256k1 derives a shared AES-256 key; payloads are AES-CBC with
PKCS7 padding and travel as ``hex(iv) + ":" + base64(ciphertext)`` behind a
4-byte tag in the OP_RETURN output.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from dataclasses import dataclass

from coincurve import PrivateKey, PublicKey
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from plmcore.constants import MESSAGE_PREFIX, PAYLOAD_SEPARATOR
from plmcore.errors import KeyAgreementError

IV_LENGTH = 16


@dataclass
class DecryptResult:
    """
    Outcome of decoding one payload.

    ``legacy`` marks payloads without a separator, which are plaintext by
    convention. ``error`` is set when decryption failed; ``text`` is then None.
    """

    text: str | None
    legacy: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.text is not None


def _as_private_key(private_key: PrivateKey | bytes) -> PrivateKey:
    if isinstance(private_key, PrivateKey):
        return private_key
    return PrivateKey(private_key)


def shared_secret(private_key: PrivateKey | bytes, their_pubkey_hex: str) -> bytes:
    """
    Derive the 32-byte symmetric key shared with a counterparty.

    SHA256 over the hex rendering of the compressed ECDH point.

    Raises:
        KeyAgreementError: If the counterparty key is not a valid point or the
            multiplication fails
    """
    priv = _as_private_key(private_key)
    try:
        their_pubkey = PublicKey(bytes.fromhex(their_pubkey_hex.strip()))
        shared_point = their_pubkey.multiply(priv.secret)
    except ValueError as e:
        raise KeyAgreementError(f"Could not generate shared secret: {e}") from e

    shared_hex = shared_point.format(compressed=True).hex()
    return hashlib.sha256(shared_hex.encode("ascii")).digest()


def encrypt_message(
    plaintext: str, their_pubkey_hex: str, private_key: PrivateKey | bytes
) -> str:
    """Encrypt text for a counterparty. Returns ``hex(iv):base64(ciphertext)``."""
    key = shared_secret(private_key, their_pubkey_hex)
    iv = os.urandom(IV_LENGTH)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return f"{iv.hex()}{PAYLOAD_SEPARATOR}{base64.b64encode(ciphertext).decode('ascii')}"


def try_decrypt(
    payload: str, their_pubkey_hex: str, private_key: PrivateKey | bytes
) -> DecryptResult:
    """Decode a payload without raising."""
    if PAYLOAD_SEPARATOR not in payload:
        return DecryptResult(text=payload, legacy=True)

    iv_hex, ciphertext_b64 = payload.split(PAYLOAD_SEPARATOR)[:2]
    if not iv_hex or not ciphertext_b64:
        return DecryptResult(text=None, error="Malformed payload")

    try:
        iv = bytes.fromhex(iv_hex)
        ciphertext = base64.b64decode(ciphertext_b64, validate=True)
    except (ValueError, binascii.Error) as e:
        return DecryptResult(text=None, error=f"Malformed payload: {e}")

    if len(iv) != IV_LENGTH:
        return DecryptResult(text=None, error=f"Invalid IV length: {len(iv)}")

    try:
        key = shared_secret(private_key, their_pubkey_hex)
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plaintext = (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
    except (KeyAgreementError, ValueError) as e:
        return DecryptResult(text=None, error=str(e))

    if not plaintext:
        return DecryptResult(text=None, error="Empty plaintext")

    return DecryptResult(text=plaintext)


def decrypt_message(
    payload: str, their_pubkey_hex: str, private_key: PrivateKey | bytes
) -> str:
    """Decrypt a payload, falling back to the payload itself when it cannot be decoded."""
    result = try_decrypt(payload, their_pubkey_hex, private_key)
    return result.text if result.ok else payload


def encode_envelope(payload: str) -> bytes:
    """OP_RETURN data for a payload string: tag + UTF-8 bytes."""
    return MESSAGE_PREFIX + payload.encode("utf-8")


def decode_envelope(data: bytes) -> str:
    """Payload string from OP_RETURN data. Untagged data is read as legacy plaintext."""
    if len(data) > len(MESSAGE_PREFIX) and data.startswith(MESSAGE_PREFIX):
        data = data[len(MESSAGE_PREFIX) :]
    return data.decode("utf-8", errors="replace")
