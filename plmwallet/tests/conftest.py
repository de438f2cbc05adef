"""
Shared fixtures for plmwallet tests.

FakeBackend is an in-memory chain: transactions are real signed bytes, history
and heights are set by the test.
"""

from __future__ import annotations

import hashlib
import os
from collections.abc import Callable

import pytest
from plmcore.address import address_to_scriptpubkey, pubkey_to_p2wpkh_script
from plmcore.crypto import encode_envelope, encrypt_message
from plmcore.errors import BackendError
from plmcore.keys import KeyPair, derive_address, derive_storage_key, generate_keypair
from plmcore.models import BackendMode, ChatConfig

from plmwallet.backends.base import UTXO, ChainBackend, HistoryEntry
from plmwallet.wallet.scanner import ChainScanner
from plmwallet.wallet.signing import TxOutput, deserialize_transaction
from plmwallet.wallet.storage import MemoryStore, WalletStore
from plmwallet.wallet.tx_builder import SpendInput, build_outputs, sign_transaction


class FakeBackend(ChainBackend):
    def __init__(self, mode: BackendMode = BackendMode.ELECTRUM, tip_height: int = 100):
        super().__init__()
        self.mode = mode
        self.tip_height = tip_height
        self.utxos: dict[str, list[UTXO]] = {}
        self.transactions: dict[str, bytes] = {}
        self.history: dict[str, list[HistoryEntry]] = {}
        self.broadcasted: list[bytes] = []
        self.broadcast_error: Exception | None = None
        self.fail_with: Exception | None = None
        self.use_status = True
        self.history_calls = 0
        self.fetch_calls = 0
        self.watched: list[str] = []
        self.connected = False
        self.closed = False

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def connect(self) -> None:
        self._check()
        self.connected = True

    async def list_unspent(self, address: str, include_unconfirmed: bool = True) -> list[UTXO]:
        self._check()
        utxos = list(self.utxos.get(address, []))
        if not include_unconfirmed:
            utxos = [u for u in utxos if u.confirmed]
        return utxos

    async def fetch_raw_transaction(self, txid: str) -> bytes:
        self._check()
        self.fetch_calls += 1
        try:
            return self.transactions[txid]
        except KeyError:
            raise BackendError(f"No such mempool or blockchain transaction: {txid}") from None

    async def broadcast(self, raw_tx: bytes) -> str:
        self._check()
        if self.broadcast_error is not None:
            raise self.broadcast_error
        txid = deserialize_transaction(raw_tx).txid
        self.transactions[txid] = raw_tx
        self.broadcasted.append(raw_tx)
        return txid

    async def get_history(self, address: str, window_hours: int = 0) -> list[HistoryEntry]:
        self._check()
        self.history_calls += 1
        return [HistoryEntry(e.txid, e.height, e.timestamp) for e in self.history.get(address, [])]

    async def get_tip_height(self) -> int:
        self._check()
        return self.tip_height

    async def subscribe_address(self, address: str) -> str | None:
        self._check()
        entries = self.history.get(address, [])
        if not self.use_status or not entries:
            return None
        status = "".join(f"{e.txid}:{e.height}:" for e in entries)
        return hashlib.sha256(status.encode()).hexdigest()

    async def watch_address(self, address: str) -> None:
        self.watched.append(address)

    async def close(self) -> None:
        self.closed = True

    def add_transaction(
        self,
        raw: bytes,
        addresses: list[str],
        height: int = 0,
        timestamp: int | None = None,
    ) -> str:
        """Publish a transaction into the history of ``addresses``."""
        txid = deserialize_transaction(raw).txid
        self.transactions[txid] = raw
        for address in addresses:
            entries = self.history.setdefault(address, [])
            if not any(e.txid == txid for e in entries):
                entries.append(HistoryEntry(txid, height, timestamp))
        self.set_height(txid, height)
        return txid

    def set_height(self, txid: str, height: int) -> None:
        for entries in self.history.values():
            for entry in entries:
                if entry.txid == txid:
                    entry.height = height

    def fund(self, address: str, value: int, height: int = 1) -> UTXO:
        utxo = UTXO(txid=os.urandom(32).hex(), vout=0, value=value, height=height)
        self.utxos.setdefault(address, []).append(utxo)
        return utxo


def build_message_tx(
    sender: KeyPair,
    recipient_pubkey: str,
    text: str,
    payment: int = 1000,
    funding_value: int = 100_000,
    encrypt: bool = True,
) -> bytes:
    """A signed message transaction from ``sender`` to ``recipient_pubkey``."""
    funding = UTXO(txid=os.urandom(32).hex(), vout=0, value=funding_value, height=1)
    payload = encrypt_message(text, recipient_pubkey, sender.private_key) if encrypt else text
    outputs = build_outputs(
        encode_envelope(payload),
        derive_address(recipient_pubkey),
        payment,
        sender.address(),
        funding_value - payment - 300,
    )
    inputs = [SpendInput(funding, pubkey_to_p2wpkh_script(sender.public_key_bytes()), funding_value)]
    return sign_transaction(sender, inputs, outputs).raw


def build_plain_payment(sender: KeyPair, address: str, value: int = 5000) -> bytes:
    """A signed transaction without any data output."""
    funding = UTXO(txid=os.urandom(32).hex(), vout=0, value=value + 500, height=1)
    inputs = [SpendInput(funding, pubkey_to_p2wpkh_script(sender.public_key_bytes()), value + 500)]
    outputs = [TxOutput(value=value, script=address_to_scriptpubkey(address))]
    return sign_transaction(sender, inputs, outputs).raw


@pytest.fixture
def alice() -> KeyPair:
    return generate_keypair()


@pytest.fixture
def bob() -> KeyPair:
    return generate_keypair()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def rpc_backend() -> FakeBackend:
    return FakeBackend(mode=BackendMode.RPC)


@pytest.fixture
def config() -> ChatConfig:
    return ChatConfig()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def alice_store(memory_store: MemoryStore, alice: KeyPair) -> WalletStore:
    return WalletStore(memory_store, alice.address(), derive_storage_key(alice.private_key_bytes()))


@pytest.fixture
def scanner(
    alice: KeyPair, backend: FakeBackend, alice_store: WalletStore, config: ChatConfig
) -> ChainScanner:
    return ChainScanner(alice, backend, alice_store, config)


@pytest.fixture
def message_tx() -> Callable[..., bytes]:
    return build_message_tx


@pytest.fixture
def plain_payment() -> Callable[..., bytes]:
    return build_plain_payment
