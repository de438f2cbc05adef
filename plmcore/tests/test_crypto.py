"""
Tests for plmcore.crypto
"""

import base64
import hashlib

import pytest
from coincurve import PublicKey

from plmcore.crypto import (
    decode_envelope,
    decrypt_message,
    encode_envelope,
    encrypt_message,
    shared_secret,
    try_decrypt,
)
from plmcore.errors import KeyAgreementError
from plmcore.keys import generate_keypair


@pytest.fixture
def alice():
    return generate_keypair()


@pytest.fixture
def bob():
    return generate_keypair()


class TestSharedSecret:
    def test_symmetric(self, alice, bob):
        assert shared_secret(alice.private_key, bob.public_key_hex()) == shared_secret(
            bob.private_key, alice.public_key_hex()
        )

    def test_hash_of_compressed_point_hex(self, alice, bob):
        point = PublicKey(bob.public_key_bytes()).multiply(alice.private_key_bytes())
        expected = hashlib.sha256(point.format(compressed=True).hex().encode()).digest()
        assert shared_secret(alice.private_key_bytes(), bob.public_key_hex()) == expected

    def test_accepts_uncompressed_counterparty(self, alice, bob):
        uncompressed = bob.public_key.format(compressed=False).hex()
        assert shared_secret(alice.private_key, uncompressed) == shared_secret(
            alice.private_key, bob.public_key_hex()
        )

    @pytest.mark.parametrize("pubkey", ["", "02" + "zz" * 32, "04" + "00" * 64])
    def test_invalid_point(self, alice, pubkey):
        with pytest.raises(KeyAgreementError):
            shared_secret(alice.private_key, pubkey)


class TestEncryption:
    @pytest.mark.parametrize(
        "text",
        ["hello", "x" * 16, "Ciao! Come stai? è ☃ \U0001f600", "a" * 60],
    )
    def test_roundtrip(self, alice, bob, text):
        payload = encrypt_message(text, bob.public_key_hex(), alice.private_key)
        assert decrypt_message(payload, alice.public_key_hex(), bob.private_key) == text

    def test_payload_format(self, alice, bob):
        payload = encrypt_message("hello", bob.public_key_hex(), alice.private_key)
        iv_hex, ciphertext_b64 = payload.split(":")
        assert len(iv_hex) == 32
        assert len(base64.b64decode(ciphertext_b64)) == 16

    def test_fresh_iv_per_message(self, alice, bob):
        first = encrypt_message("same", bob.public_key_hex(), alice.private_key)
        second = encrypt_message("same", bob.public_key_hex(), alice.private_key)
        assert first != second
        assert first.split(":")[0] != second.split(":")[0]

    def test_invalid_recipient_raises(self, alice):
        with pytest.raises(KeyAgreementError):
            encrypt_message("hello", "02" + "ff" * 32, alice.private_key)


class TestDecryption:
    def test_legacy_plaintext(self, alice, bob):
        result = try_decrypt("just text", alice.public_key_hex(), bob.private_key)
        assert result.ok
        assert result.legacy
        assert result.text == "just text"

    def test_wrong_key_falls_back_to_payload(self, alice, bob):
        eve = generate_keypair()
        payload = encrypt_message("secret", bob.public_key_hex(), alice.private_key)
        result = try_decrypt(payload, alice.public_key_hex(), eve.private_key)
        assert not result.ok
        assert result.error
        assert decrypt_message(payload, alice.public_key_hex(), eve.private_key) == payload

    @pytest.mark.parametrize(
        "payload",
        [":", "zz:AAAA", "00" * 16 + ":not base64!", "00" * 8 + ":" + "A" * 24, "00" * 16 + ":"],
    )
    def test_malformed_payloads(self, alice, bob, payload):
        result = try_decrypt(payload, alice.public_key_hex(), bob.private_key)
        assert not result.ok
        assert decrypt_message(payload, alice.public_key_hex(), bob.private_key) == payload

    def test_never_raises_on_bad_sender_key(self, bob):
        payload = "00" * 16 + ":" + base64.b64encode(b"\x00" * 16).decode()
        assert decrypt_message(payload, "not-a-key", bob.private_key) == payload


class TestEnvelope:
    def test_tagged(self):
        data = encode_envelope("abc:def")
        assert data == b"PLMCabc:def"
        assert decode_envelope(data) == "abc:def"

    def test_untagged_is_legacy_plaintext(self):
        assert decode_envelope(b"hello world") == "hello world"

    def test_bare_tag_is_kept(self):
        assert decode_envelope(b"PLMC") == "PLMC"

    def test_invalid_utf8_is_replaced(self):
        assert decode_envelope(b"PLMC\xff") == "\ufffd"
