"""
Palladium network and chat protocol constants.
"""

from __future__ import annotations

# Satoshis per coin
COIN = 100_000_000

# Standard P2WPKH/P2PKH dust limit in satoshis.
# No non-data output below this value is ever created.
STANDARD_DUST_LIMIT = 546

# Every chat message pays at least this much to the recipient so the
# transaction shows up in the recipient's own address history.
MIN_RECIPIENT_AMOUNT = 1_000

# Palladium network parameters
BECH32_HRP = "plm"
PUBKEY_HASH_VERSION = 55
SCRIPT_HASH_VERSION = 5
WIF_VERSION = 0x80
TESTNET_WIF_VERSION = 0xEF

# WIF version bytes tried, in order, when importing a secret key
WIF_IMPORT_CANDIDATES = (WIF_VERSION, TESTNET_WIF_VERSION)

# 4-byte ASCII tag prefixing every chat payload in the OP_RETURN output
MESSAGE_PREFIX = b"PLMC"

# Separator between hex(iv) and the ciphertext in the payload string
PAYLOAD_SEPARATOR = ":"

# Bucket for inbound messages whose sender key could not be recovered
ANONYMOUS_CONTACT_ID = "anonymous"
