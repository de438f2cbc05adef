"""
Chat wallet session service.

One ChatWallet per secret key. ``open()`` moves it from UNINITIALIZED through
LOADING to READY (or FAILED); every other operation requires READY.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from loguru import logger
from plmcore.constants import ANONYMOUS_CONTACT_ID
from plmcore.errors import ChatError, WalletNotReady
from plmcore.keys import KeyPair, derive_address, derive_storage_key, import_wif
from plmcore.models import (
    ChatConfig,
    Contact,
    Message,
    OutgoingMessage,
    coins_to_sats,
    sats_to_coins,
)

from plmwallet.backends import create_backend
from plmwallet.backends.base import ChainBackend
from plmwallet.backends.electrum import ElectrumBackend
from plmwallet.wallet.scanner import ChainScanner, MessageEvent, MessageListener
from plmwallet.wallet.storage import KeyValueStore, MemoryStore, WalletStore, save_config
from plmwallet.wallet.tx_builder import MessageTxBuilder, validate_recipient_pubkey

BalanceListener = Callable[["Balance"], None]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass
class Balance:
    """Wallet balance in satoshis."""

    total: int = 0
    spendable: int = 0

    @property
    def pending(self) -> int:
        return max(0, self.total - self.spendable)

    def as_coins(self) -> dict[str, Decimal]:
        return {
            "balance": sats_to_coins(self.total),
            "spendable": sats_to_coins(self.spendable),
            "pending": sats_to_coins(self.pending),
        }


@dataclass
class SessionInfo:
    address: str
    public_key: str
    balance: Balance


class ChatWallet:
    """
    Wallet-embedded messaging session.

    Args:
        store: Key-value store for persisted state (in-memory if omitted)
        backend_factory: Builds the chain backend from the config
        auto_accept_contacts: Add senders of inbound messages as contacts
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        backend_factory: Callable[[ChatConfig], ChainBackend] = create_backend,
        auto_accept_contacts: bool = True,
    ):
        self.store = store if store is not None else MemoryStore()
        self.backend_factory = backend_factory
        self.auto_accept_contacts = auto_accept_contacts

        self.state = SessionState.UNINITIALIZED
        self.config = ChatConfig()
        self.keypair: KeyPair | None = None
        self.backend: ChainBackend | None = None
        self.wallet_store: WalletStore | None = None
        self.scanner: ChainScanner | None = None
        self.builder: MessageTxBuilder | None = None
        self.balance = Balance()

        self.running = False
        self._stop_event = asyncio.Event()
        self._scan_wakeup = asyncio.Event()
        self._poll_tasks: list[asyncio.Task[None]] = []
        self._listeners: list[MessageListener] = []

    @property
    def address(self) -> str:
        return self._require_ready().address()

    @property
    def public_key(self) -> str:
        return self._require_ready().public_key_hex()

    def _require_ready(self) -> KeyPair:
        if self.state != SessionState.READY or self.keypair is None:
            raise WalletNotReady(f"Wallet not ready (state: {self.state.value})")
        return self.keypair

    def _scanner(self) -> ChainScanner:
        self._require_ready()
        assert self.scanner is not None
        return self.scanner

    def _wallet_store(self) -> WalletStore:
        self._require_ready()
        assert self.wallet_store is not None
        return self.wallet_store

    async def open(self, config: ChatConfig, secret: str) -> SessionInfo:
        """
        Open a session for ``secret`` (WIF) against the configured backend.

        Raises:
            InvalidKeyFormat: The secret is not a valid WIF
            BackendError: The backend is unreachable or refused the handshake
        """
        if self.state == SessionState.READY:
            await self.close()

        self.state = SessionState.LOADING
        try:
            keypair = import_wif(secret)
            address = keypair.address()
            logger.info(f"Opening chat wallet {address} ({config.mode.value} backend)")

            backend = self.backend_factory(config)
            self.backend = backend
            if isinstance(backend, ElectrumBackend):
                backend.on_notification(self._on_chain_notification)
            await backend.connect()

            if config.is_electrum:
                await backend.get_tip_height()
                await backend.list_unspent(address)
            else:
                await backend.watch_address(address)

            self.config = config
            self.keypair = keypair
            self.wallet_store = WalletStore(
                self.store, address, derive_storage_key(keypair.private_key_bytes())
            )
            save_config(self.store, config)

            self.scanner = ChainScanner(keypair, backend, self.wallet_store, config)
            self.scanner.load()
            if self.auto_accept_contacts:
                self.scanner.add_listener(self._accept_inbound_sender)
            for listener in self._listeners:
                self.scanner.add_listener(listener)

            self.builder = MessageTxBuilder(keypair, backend)

            self.state = SessionState.READY
            self.balance = await self.get_balance()
            logger.info(
                f"Chat wallet ready: balance={self.balance.total:,} sats, "
                f"spendable={self.balance.spendable:,} sats"
            )
            return SessionInfo(address, keypair.public_key_hex(), self.balance)

        except Exception as e:
            logger.error(f"Failed to open chat wallet: {e}")
            self.state = SessionState.FAILED
            if self.backend is not None:
                await self.backend.close()
            raise

    def on_message(self, listener: MessageListener) -> None:
        """Register a listener for added and updated messages."""
        self._listeners.append(listener)
        if self.scanner is not None:
            self.scanner.add_listener(listener)

    async def get_balance(self) -> Balance:
        keypair = self._require_ready()
        assert self.backend is not None

        utxos = await self.backend.list_unspent(keypair.address(), include_unconfirmed=True)
        total = sum(u.value for u in utxos)
        if self.config.is_electrum:
            spendable = sum(u.value for u in utxos if u.confirmed)
        else:
            confirmed = await self.backend.list_unspent(keypair.address(), include_unconfirmed=False)
            spendable = sum(u.value for u in confirmed)

        self.balance = Balance(total=total, spendable=spendable)
        return self.balance

    async def send_message(
        self, recipient_pubkey: str, text: str, amount: Decimal | None = None
    ) -> OutgoingMessage:
        """
        Send ``text`` to a counterparty, optionally paying ``amount`` coins.

        The message is stored in the recipient's conversation with status
        SENDING until the scanner sees it in the address history.
        """
        self._require_ready()
        assert self.builder is not None
        scanner = self._scanner()

        if amount is None:
            amount = self.config.default_amount
        payment = coins_to_sats(amount) if amount and amount > 0 else 0

        message = await self.builder.send_message(
            recipient_pubkey,
            text,
            payment=payment,
            fee_rate=self.config.fee_rate,
            include_unconfirmed=self.config.allow_unconfirmed_spend,
        )
        logger.info(f"Message sent: {message.txid}")

        scanner.add_message(recipient_pubkey.strip().lower(), message)
        scanner.persist()
        return message

    # Contacts

    def get_contacts(self) -> list[Contact]:
        return self._wallet_store().load_contacts()

    def get_contact(self, contact_id: str) -> Contact | None:
        contact_id = contact_id.strip().lower()
        return next((c for c in self.get_contacts() if c.id == contact_id), None)

    def _store_contact(self, pubkey_hex: str, name: str) -> Contact:
        store = self._wallet_store()
        contacts = store.load_contacts()
        contact = Contact(id=pubkey_hex, address=derive_address(pubkey_hex), name=name.strip())
        if not contact.name:
            contact.name = contact.display_name()
        contacts.append(contact)
        store.save_contacts(contacts)
        return contact

    async def add_contact(self, pubkey_hex: str, name: str = "") -> Contact:
        """
        Add a contact, or rename it if it already exists.

        Pending self-sent messages to the contact are resolved immediately.
        """
        pubkey_hex = validate_recipient_pubkey(pubkey_hex)
        existing = self.get_contact(pubkey_hex)
        if existing is not None:
            return self.rename_contact(pubkey_hex, name) if name.strip() else existing

        contact = self._store_contact(pubkey_hex, name)
        logger.info(f"Added contact {contact.display_name()} ({contact.address})")

        scanner = self._scanner()
        scanner.resolve_pending(contact)
        await scanner.scan_contact_history(contact)
        return contact

    def rename_contact(self, contact_id: str, name: str) -> Contact:
        store = self._wallet_store()
        contact_id = contact_id.strip().lower()
        contacts = store.load_contacts()
        for contact in contacts:
            if contact.id == contact_id:
                contact.name = name.strip() or f"...{contact.id[-4:]}"
                store.save_contacts(contacts)
                return contact
        raise ChatError(f"Unknown contact: {contact_id}")

    async def accept_contact(self, contact_id: str) -> Contact:
        """Promote the sender of an inbound conversation to a contact."""
        if contact_id == ANONYMOUS_CONTACT_ID:
            raise ChatError("Anonymous messages cannot be accepted as a contact")
        return await self.add_contact(contact_id)

    def _accept_inbound_sender(self, event: MessageEvent) -> None:
        if not event.is_inbound or event.contact_id == ANONYMOUS_CONTACT_ID:
            return
        if self.get_contact(event.contact_id) is None:
            contact = self._store_contact(event.contact_id, "")
            logger.info(f"New contact from inbound message: {contact.display_name()}")

    # Conversations

    def get_messages(self, contact_id: str) -> list[Message]:
        return self._scanner().get_messages(contact_id.strip().lower())

    def mark_read(self, contact_id: str) -> None:
        self._scanner().mark_read(contact_id.strip().lower())

    def delete_conversation(self, contact_id: str) -> None:
        self._scanner().delete_conversation(contact_id.strip().lower())

    async def scan(self) -> int:
        return await self._scanner().scan()

    async def rescan(self) -> int:
        """Forget processed transactions and rebuild conversations from the chain."""
        logger.info("Rescanning message history...")
        added = await self._scanner().scan(force_rescan=True)
        logger.info(f"Rescan complete: {added} message(s) recovered")
        return added

    # Background polling

    def start_polling(self, on_balance: BalanceListener | None = None) -> None:
        """Start the periodic scan and balance tasks."""
        self._require_ready()
        if self.running:
            return

        self.running = True
        self._stop_event = asyncio.Event()
        self._poll_tasks = [
            asyncio.create_task(
                self._poll("scan", self.config.scan_interval, self.scan, wake=self._scan_wakeup)
            ),
            asyncio.create_task(
                self._poll("balance", self.config.balance_interval, self._balance_tick(on_balance))
            ),
        ]

    def _balance_tick(self, on_balance: BalanceListener | None) -> Callable[[], Awaitable[Balance]]:
        async def tick() -> Balance:
            balance = await self.get_balance()
            if on_balance is not None:
                on_balance(balance)
            return balance

        return tick

    def _on_chain_notification(self, method: str, params: list[object]) -> None:
        if method == "blockchain.scripthash.subscribe":
            logger.debug("Address status changed, scanning early")
            self._scan_wakeup.set()

    async def _poll(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[object]],
        wake: asyncio.Event | None = None,
    ) -> None:
        logger.debug(f"Started {name} polling every {interval}s")

        while self.running:
            try:
                await tick()
            except ChatError as e:
                logger.warning(f"{name.capitalize()} tick failed: {e}")
            except Exception as e:
                logger.error(f"Error in {name} polling: {e}")

            await self._sleep(interval, wake)

        logger.debug(f"Stopped {name} polling")

    async def _sleep(self, interval: float, wake: asyncio.Event | None) -> None:
        """Wait for the next tick, returning early on stop or a wake-up."""
        waiters = [asyncio.ensure_future(self._stop_event.wait())]
        if wake is not None:
            waiters.append(asyncio.ensure_future(wake.wait()))
        try:
            await asyncio.wait(waiters, timeout=interval, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if wake is not None:
            wake.clear()

    async def stop_polling(self) -> None:
        """
        Stop scheduling new ticks. A tick already in flight runs to completion
        and its results are applied.
        """
        if not self.running:
            return
        self.running = False
        self._stop_event.set()
        await asyncio.gather(*self._poll_tasks, return_exceptions=True)
        self._poll_tasks = []

    async def close(self) -> None:
        await self.stop_polling()
        if self.scanner is not None:
            self.scanner.persist()
        if self.backend is not None:
            await self.backend.close()
        self.state = SessionState.UNINITIALIZED
        self.keypair = None
        self.scanner = None
        self.builder = None
        self.wallet_store = None
        self.backend = None
