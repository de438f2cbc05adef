"""
Chain scanner: rebuilds the conversation from the session address history.

Per-transaction lifecycle:

    UNSEEN -> {SELF_SENT, RECEIVED_KNOWN, RECEIVED_UNKNOWN_SENDER, IGNORED}
           -> PROCESSED

A self-sent transaction whose recipient is not a contact yet stays in
PENDING_CONTACT_RESOLUTION. It is retried on every scan and eagerly when a
contact is added, and only becomes PROCESSED once it lands in a conversation.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum

from coincurve import PublicKey
from loguru import logger
from plmcore.address import scriptpubkey_to_address
from plmcore.constants import ANONYMOUS_CONTACT_ID, MIN_RECIPIENT_AMOUNT
from plmcore.crypto import decode_envelope, try_decrypt
from plmcore.keys import KeyPair
from plmcore.models import (
    BackendMode,
    ChatConfig,
    Contact,
    IncomingMessage,
    Message,
    MessageStatus,
    OutgoingMessage,
    sats_to_coins,
    utc_now,
)

from plmwallet.backends.base import ChainBackend, HistoryEntry
from plmwallet.backends.electrum import SENSITIVE_LOGGING
from plmwallet.wallet.script import OP_RETURN, ScriptError, decompile, extract_op_return_data
from plmwallet.wallet.signing import Transaction, TransactionParseError, deserialize_transaction
from plmwallet.wallet.storage import WalletStore


class TxState(str, Enum):
    UNSEEN = "unseen"
    SELF_SENT = "self_sent"
    RECEIVED_KNOWN = "received_known"
    RECEIVED_UNKNOWN_SENDER = "received_unknown_sender"
    IGNORED = "ignored"
    PENDING_CONTACT_RESOLUTION = "pending_contact_resolution"
    PROCESSED = "processed"


@dataclass
class MessageEvent:
    contact_id: str
    message: Message
    is_status_update: bool = False
    is_inbound: bool = False


MessageListener = Callable[[MessageEvent], None]


@dataclass
class TxInspection:
    """What a message transaction tells us, independent of contacts."""

    txid: str
    payload: str | None = None
    sender_pubkey: str | None = None
    recipient_address: str | None = None
    recipient_value: int = 0
    received_value: int = 0

    @property
    def pays_us(self) -> bool:
        return self.received_value > 0


@dataclass
class PendingTx:
    """A self-sent message waiting for its recipient to become a contact."""

    txid: str
    recipient_address: str
    payload: str
    amount: int
    status: MessageStatus
    timestamp: datetime


@dataclass
class ScanState:
    processed: set[str] = field(default_factory=set)
    pending: dict[str, PendingTx] = field(default_factory=dict)
    scripthash_status: str | None = None

    def state_of(self, txid: str) -> TxState:
        if txid in self.processed:
            return TxState.PROCESSED
        if txid in self.pending:
            return TxState.PENDING_CONTACT_RESOLUTION
        return TxState.UNSEEN


def recover_sender_pubkey(tx: Transaction) -> str | None:
    """
    Sender key candidate from the first input only.

    P2WPKH spends carry ``[signature, pubkey]`` in the witness; legacy spends
    end their scriptSig with the pubkey push. The candidate is accepted only
    if it is a point on secp256k1.
    """
    if not tx.inputs:
        return None

    first = tx.inputs[0]
    candidate: bytes | None = None

    if len(first.witness) == 2:
        candidate = first.witness[1]
    elif first.script:
        try:
            chunks = decompile(first.script)
        except ScriptError:
            return None
        if chunks and isinstance(chunks[-1], bytes):
            candidate = chunks[-1]

    if not candidate or len(candidate) not in (33, 65):
        return None
    try:
        PublicKey(candidate)
    except ValueError:
        return None
    return candidate.hex()


def inspect_transaction(tx: Transaction, own_address: str) -> TxInspection:
    inspection = TxInspection(txid=tx.txid)

    for output in tx.outputs:
        if output.script[:1] == bytes([OP_RETURN]):
            data = extract_op_return_data(output.script)
            if data and inspection.payload is None:
                inspection.payload = decode_envelope(data)
            continue

        address = scriptpubkey_to_address(output.script)
        if address is None:
            continue
        if address == own_address:
            inspection.received_value += output.value
        elif inspection.recipient_address is None:
            inspection.recipient_address = address
            inspection.recipient_value += output.value
        elif address == inspection.recipient_address:
            inspection.recipient_value += output.value

    inspection.sender_pubkey = recover_sender_pubkey(tx)
    return inspection


def _reported_amount(value: int) -> Decimal | None:
    """Amounts at or below the carrier output are not reported as payments."""
    return sats_to_coins(value) if value > MIN_RECIPIENT_AMOUNT else None


def _entry_time(entry: HistoryEntry) -> datetime:
    if entry.timestamp:
        return datetime.fromtimestamp(entry.timestamp, UTC)
    return utc_now()


class ChainScanner:
    """
    Incremental, idempotent scanner for one wallet session.

    Owns the in-memory message history and scan state; contacts live in the
    store and are re-read on every tick.
    """

    def __init__(
        self,
        keypair: KeyPair,
        backend: ChainBackend,
        store: WalletStore,
        config: ChatConfig,
    ):
        self.keypair = keypair
        self.backend = backend
        self.store = store
        self.config = config
        self.address = keypair.address()
        self.own_pubkey = keypair.public_key_hex()

        self.messages: dict[str, list[Message]] = {}
        self.last_seen: dict[str, datetime] = {}
        self.state = ScanState()
        self._listeners: list[MessageListener] = []

    def load(self) -> None:
        """Load persisted history and scan state, then apply retention."""
        for contact_id, messages in self.store.load_messages().items():
            bucket = self.messages.setdefault(contact_id, [])
            known = {m.id for m in bucket}
            bucket.extend(m for m in messages if m.id not in known)
        self.state.processed = self.store.load_processed()
        self.last_seen = self.store.load_last_seen()
        self.enforce_retention()

    def persist(self) -> None:
        self.store.save_messages(self.messages)
        self.store.save_processed(self.state.processed)

    def add_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: MessageEvent) -> None:
        for listener in self._listeners:
            listener(event)

    # Message history

    def get_messages(self, contact_id: str) -> list[Message]:
        return sorted(self.messages.get(contact_id, []), key=lambda m: m.timestamp)

    def _message_count(self) -> int:
        return sum(len(messages) for messages in self.messages.values())

    def add_message(self, contact_id: str, message: Message, inbound: bool = False) -> bool:
        """Append ``message`` unless its id is already in the bucket."""
        bucket = self.messages.setdefault(contact_id, [])
        if any(m.id == message.id for m in bucket):
            return False
        bucket.append(message)
        self._emit(MessageEvent(contact_id, message, is_status_update=False, is_inbound=inbound))
        return True

    def refresh_status(self, txid: str, status: MessageStatus, force: bool = False) -> bool:
        """
        Update the status of every stored message for ``txid``.

        Status only moves forward unless ``force`` is set, in which case chain
        truth wins. Message content is never touched.
        """
        changed = False
        for contact_id, messages in self.messages.items():
            for index, message in enumerate(messages):
                if message.id != txid and message.txid != txid:
                    continue
                new_status = status if force else max(message.status, status)
                if new_status == message.status:
                    continue
                updated = message.model_copy(update={"status": new_status})
                messages[index] = updated
                changed = True
                self._emit(MessageEvent(contact_id, updated, is_status_update=True))
        return changed

    def enforce_retention(self) -> int:
        """Drop messages older than the retention window. Returns the number removed."""
        days = self.config.retention_days
        if not days or days <= 0:
            return 0

        cutoff = utc_now() - timedelta(days=days)
        removed = 0
        for contact_id, messages in self.messages.items():
            kept = [m for m in messages if m.timestamp > cutoff]
            removed += len(messages) - len(kept)
            self.messages[contact_id] = kept

        if removed:
            logger.info(f"Retention: removed {removed} message(s) older than {days} day(s)")
            self.store.save_messages(self.messages)
        return removed

    def delete_conversation(self, contact_id: str) -> None:
        """Forget a conversation and its contact."""
        self.messages.pop(contact_id, None)
        self.store.save_messages(self.messages)
        contacts = [c for c in self.store.load_contacts() if c.id != contact_id]
        self.store.save_contacts(contacts)

    def mark_read(self, contact_id: str) -> None:
        self.last_seen[contact_id] = utc_now()
        self.store.save_last_seen(self.last_seen)

        contacts = self.store.load_contacts()
        for contact in contacts:
            if contact.id == contact_id and contact.unread:
                contact.unread = 0
                self.store.save_contacts(contacts)
                break

    def _bump_unread(self, contact_id: str) -> None:
        contacts = self.store.load_contacts()
        for contact in contacts:
            if contact.id == contact_id:
                contact.unread += 1
                self.store.save_contacts(contacts)
                return

    def _decrypt(self, payload: str, counterparty: str) -> str:
        result = try_decrypt(payload, counterparty, self.keypair.private_key)
        if not result.ok:
            logger.debug(f"Keeping undecryptable payload as-is: {result.error}")
            return payload
        return result.text  # type: ignore[return-value]

    # Scanning

    async def scan(self, force_rescan: bool = False) -> int:
        """
        Run one scan tick. Returns the number of messages added.

        Raises:
            BackendError: If the backend fails mid-tick; nothing is lost, the
                next tick retries
        """
        if force_rescan:
            logger.info("Forced rescan: clearing processed transaction set")
            self.state.processed.clear()
            self.state.pending.clear()
            self.store.save_processed(self.state.processed)

        contacts = self.store.load_contacts()
        added = 0

        if force_rescan and self.backend.mode == BackendMode.ELECTRUM:
            for contact in contacts:
                added += await self.scan_contact_history(contact, force=True)

        status = await self.backend.subscribe_address(self.address)
        if (
            not force_rescan
            and status is not None
            and status == self.state.scripthash_status
            and not self.state.pending
        ):
            return added

        history = await self.backend.get_history(self.address, self.config.rescan_hours)
        tip_height = await self.backend.get_tip_height()
        added += await self._process_history(history, tip_height, contacts, force_rescan)

        self.state.scripthash_status = status
        self.persist()
        return added

    async def scan_contact_history(self, contact: Contact, force: bool = False) -> int:
        """Walk a contact's own address history (indexer only)."""
        if self.backend.mode != BackendMode.ELECTRUM:
            return 0

        history = await self.backend.get_history(contact.address)
        tip_height = await self.backend.get_tip_height()
        added = await self._process_history(
            history, tip_height, self.store.load_contacts(), force
        )
        self.persist()
        return added

    async def _process_history(
        self,
        history: list[HistoryEntry],
        tip_height: int,
        contacts: list[Contact],
        force: bool,
    ) -> int:
        by_address = {c.address: c for c in contacts}
        before = self._message_count()

        for entry in history:
            status = MessageStatus.from_confirmations(entry.confirmations(tip_height))
            self.refresh_status(entry.txid, status, force)

            if self.state.state_of(entry.txid) == TxState.PROCESSED:
                continue

            await self.process_transaction(entry, status, by_address)

        return self._message_count() - before

    async def process_transaction(
        self,
        entry: HistoryEntry,
        status: MessageStatus,
        contacts_by_address: dict[str, Contact],
    ) -> TxState:
        """
        Classify one unprocessed transaction and record its outcome.

        Returns the classification; anything but PENDING_CONTACT_RESOLUTION
        leaves the txid in the processed set.
        """
        raw = await self.backend.get_raw_transaction(entry.txid)
        try:
            tx = deserialize_transaction(raw)
        except TransactionParseError as e:
            logger.warning(f"Ignoring unparseable transaction {entry.txid}: {e}")
            self.state.processed.add(entry.txid)
            return TxState.IGNORED

        inspection = inspect_transaction(tx, self.address)
        if not inspection.payload:
            self.state.processed.add(entry.txid)
            return TxState.IGNORED

        if SENSITIVE_LOGGING:
            logger.debug(f"Message tx {entry.txid} payload: {inspection.payload}")

        timestamp = _entry_time(entry)

        if inspection.sender_pubkey == self.own_pubkey:
            pending = PendingTx(
                txid=entry.txid,
                recipient_address=inspection.recipient_address or "",
                payload=inspection.payload,
                amount=inspection.recipient_value,
                status=status,
                timestamp=timestamp,
            )
            contact = contacts_by_address.get(pending.recipient_address)
            if contact is None:
                if entry.txid not in self.state.pending:
                    logger.debug(f"Self-sent {entry.txid} waits for its recipient contact")
                self.state.pending[entry.txid] = pending
                return TxState.PENDING_CONTACT_RESOLUTION
            self._record_self_sent(pending, contact)
            return TxState.SELF_SENT

        if not inspection.pays_us:
            self.state.processed.add(entry.txid)
            return TxState.IGNORED

        sender = inspection.sender_pubkey
        if sender:
            text = self._decrypt(inspection.payload, sender)
            contact_id = sender
            classification = TxState.RECEIVED_KNOWN
        else:
            text = inspection.payload
            contact_id = ANONYMOUS_CONTACT_ID
            classification = TxState.RECEIVED_UNKNOWN_SENDER

        message = IncomingMessage(
            id=entry.txid,
            text=text,
            timestamp=timestamp,
            status=status,
            txid=entry.txid,
            amount=_reported_amount(inspection.received_value),
        )
        self.state.processed.add(entry.txid)
        if self.add_message(contact_id, message, inbound=True):
            logger.info(f"New message {entry.txid} in conversation {contact_id[:16]}")
            self._bump_unread(contact_id)
        return classification

    def _record_self_sent(self, pending: PendingTx, contact: Contact) -> None:
        message = OutgoingMessage(
            id=pending.txid,
            text=self._decrypt(pending.payload, contact.id),
            timestamp=pending.timestamp,
            status=pending.status,
            txid=pending.txid,
            amount=_reported_amount(pending.amount),
        )
        self.state.pending.pop(pending.txid, None)
        self.state.processed.add(pending.txid)
        if self.add_message(contact.id, message):
            logger.info(f"Recovered sent message {pending.txid} for {contact.display_name()}")

    def resolve_pending(self, contact: Contact) -> int:
        """Move pending self-sent transactions addressed to ``contact`` into its conversation."""
        resolved = 0
        for pending in list(self.state.pending.values()):
            if pending.recipient_address == contact.address:
                self._record_self_sent(pending, contact)
                resolved += 1
        if resolved:
            self.persist()
        return resolved
