"""
Tests for plmcore.keys and plmcore.address
"""

import hashlib

import base58
import bech32
import pytest

from plmcore.address import (
    address_to_scripthash,
    address_to_scriptpubkey,
    hash160,
    pubkey_to_p2wpkh_address,
    pubkey_to_p2wpkh_script,
    scriptpubkey_to_address,
)
from plmcore.constants import TESTNET_WIF_VERSION
from plmcore.errors import InvalidKeyFormat
from plmcore.keys import (
    derive_address,
    derive_storage_key,
    generate_keypair,
    import_wif,
    is_valid_pubkey,
    keypair_to_wif,
)

# Private key 0x01
KEY_ONE_WIF = "KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWn"
KEY_ONE_WIF_UNCOMPRESSED = "5HpHagT65TZzG1PH3CSu63k8DbpvD8s5ip4nEB3kEsreAnchuDf"
KEY_ONE_PUBKEY = "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
KEY_ONE_HASH160 = "751e76e8199196d454941c45d1b3a323f1433bd6"


class TestWifImport:
    def test_known_mainnet_wif(self):
        kp = import_wif(KEY_ONE_WIF)
        assert kp.private_key_bytes() == (1).to_bytes(32, "big")
        assert kp.public_key_hex() == KEY_ONE_PUBKEY

    def test_uncompressed_wif_uses_compressed_pubkey(self):
        kp = import_wif(KEY_ONE_WIF_UNCOMPRESSED)
        assert kp.public_key_hex() == KEY_ONE_PUBKEY

    def test_testnet_version_is_second_candidate(self):
        original = generate_keypair()
        wif = original.to_wif(TESTNET_WIF_VERSION)
        assert import_wif(wif).public_key_hex() == original.public_key_hex()

    def test_roundtrip(self):
        original = generate_keypair()
        restored = import_wif(original.to_wif())
        assert restored.private_key_bytes() == original.private_key_bytes()
        assert restored.address() == original.address()

    def test_key_one_export(self):
        assert keypair_to_wif(import_wif(KEY_ONE_WIF)) == KEY_ONE_WIF

    def test_whitespace_is_stripped(self):
        assert import_wif(f"  {KEY_ONE_WIF}\n").public_key_hex() == KEY_ONE_PUBKEY

    @pytest.mark.parametrize("wif", ["", "not-a-key", KEY_ONE_WIF[:-1] + "X"])
    def test_invalid_wif(self, wif):
        with pytest.raises(InvalidKeyFormat, match="Invalid WIF key format"):
            import_wif(wif)

    def test_unknown_version_byte(self):
        payload = bytes([0x00]) + (1).to_bytes(32, "big") + b"\x01"
        wif = base58.b58encode_check(payload).decode()
        with pytest.raises(InvalidKeyFormat):
            import_wif(wif)

    def test_bad_compression_flag(self):
        payload = bytes([0x80]) + (1).to_bytes(32, "big") + b"\x02"
        wif = base58.b58encode_check(payload).decode()
        with pytest.raises(InvalidKeyFormat):
            import_wif(wif)


class TestAddresses:
    def test_hash160_known_vector(self):
        assert hash160(bytes.fromhex(KEY_ONE_PUBKEY)).hex() == KEY_ONE_HASH160

    def test_p2wpkh_address_uses_plm_hrp(self):
        address = derive_address(KEY_ONE_PUBKEY)
        assert address.startswith("plm1q")
        witver, witprog = bech32.decode("plm", address)
        assert witver == 0
        assert bytes(witprog).hex() == KEY_ONE_HASH160

    def test_address_accepts_bytes_and_hex(self):
        assert pubkey_to_p2wpkh_address(bytes.fromhex(KEY_ONE_PUBKEY)) == derive_address(
            KEY_ONE_PUBKEY
        )

    def test_invalid_pubkey_length(self):
        with pytest.raises(ValueError):
            pubkey_to_p2wpkh_address(b"\x02" * 20)

    def test_script_roundtrip(self):
        address = derive_address(KEY_ONE_PUBKEY)
        script = address_to_scriptpubkey(address)
        assert script == pubkey_to_p2wpkh_script(KEY_ONE_PUBKEY)
        assert script == bytes.fromhex("0014" + KEY_ONE_HASH160)
        assert scriptpubkey_to_address(script) == address

    @pytest.mark.parametrize(
        "script_hex, version",
        [
            ("76a914" + KEY_ONE_HASH160 + "88ac", 55),
            ("a914" + KEY_ONE_HASH160 + "87", 5),
        ],
    )
    def test_legacy_script_roundtrip(self, script_hex, version):
        script = bytes.fromhex(script_hex)
        address = scriptpubkey_to_address(script)
        assert base58.b58decode_check(address)[0] == version
        assert address_to_scriptpubkey(address) == script

    def test_non_segwit_script_has_no_address(self):
        assert scriptpubkey_to_address(bytes.fromhex("6a0474657374")) is None
        assert scriptpubkey_to_address(b"") is None

    def test_foreign_hrp_rejected(self):
        with pytest.raises(ValueError):
            address_to_scriptpubkey("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4")
        with pytest.raises(ValueError):
            address_to_scriptpubkey(base58.b58encode_check(bytes([0x30]) + bytes(20)).decode())

    def test_scripthash(self):
        address = derive_address(KEY_ONE_PUBKEY)
        script = pubkey_to_p2wpkh_script(KEY_ONE_PUBKEY)
        expected = hashlib.sha256(script).digest()[::-1].hex()
        assert address_to_scripthash(address) == expected


class TestDerivedKeys:
    def test_storage_key_is_sha256_of_hex(self):
        kp = import_wif(KEY_ONE_WIF)
        expected = hashlib.sha256(("00" * 31 + "01").encode()).digest()
        assert derive_storage_key(kp.private_key_bytes()) == expected
        assert len(expected) == 32

    def test_storage_key_differs_per_wallet(self):
        a, b = generate_keypair(), generate_keypair()
        assert derive_storage_key(a.private_key_bytes()) != derive_storage_key(
            b.private_key_bytes()
        )

    def test_is_valid_pubkey(self):
        assert is_valid_pubkey(KEY_ONE_PUBKEY)
        assert not is_valid_pubkey("04" + "00" * 64)
        assert not is_valid_pubkey("05" + "11" * 32)
        assert not is_valid_pubkey("zz")
        assert not is_valid_pubkey("")
