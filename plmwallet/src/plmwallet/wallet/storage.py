"""
Persisted wallet state on top of an opaque key-value store.

Keys are namespaced by the owning address (``<name>_<address>``). Contacts,
processed txids and the config are stored as plain JSON; message history and
last-seen timestamps are encrypted with Fernet under the session storage key.
"""

from __future__ import annotations

import base64
import json
import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger
from plmcore.models import ChatConfig, Contact, ContactList, Message, MessageHistory
from pydantic import ValidationError

CONFIG_KEY = "plmchat_config"
CONTACTS_KEY = "plmchat_contacts"
MESSAGES_KEY = "plmchat_all_msgs"
LEGACY_MESSAGES_KEY = "plmchat_sent_msgs"
PROCESSED_KEY = "plmchat_processed_txids"
LAST_SEEN_KEY = "plmchat_last_seen"


class KeyValueStore(ABC):
    """String-to-string store. The physical medium is up to the implementation."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass


class MemoryStore(KeyValueStore):
    def __init__(self, data: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(data or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """All keys in one JSON object on disk, rewritten on every change."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._data: dict[str, str] = {}
        if self.path.exists():
            with open(self.path, encoding="utf-8") as f:
                self._data = json.load(f)

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)


def load_config(store: KeyValueStore) -> ChatConfig | None:
    raw = store.get(CONFIG_KEY)
    if not raw:
        return None
    try:
        return ChatConfig.model_validate_json(raw)
    except ValidationError as e:
        logger.warning(f"Ignoring unreadable config: {e}")
        return None


def save_config(store: KeyValueStore, config: ChatConfig) -> None:
    store.set(CONFIG_KEY, config.model_dump_json())


class WalletStore:
    """
    Per-address view of the store for one wallet session.

    Args:
        store: Backing key-value store
        address: Session address used to scope keys
        storage_key: 32-byte key derived from the private key
    """

    def __init__(self, store: KeyValueStore, address: str, storage_key: bytes):
        self.store = store
        self.address = address
        self._fernet = Fernet(base64.urlsafe_b64encode(storage_key))

    def scoped(self, name: str) -> str:
        return f"{name}_{self.address}" if self.address else name

    def _encrypt(self, value: Any) -> str:
        return self._fernet.encrypt(json.dumps(value).encode("utf-8")).decode("ascii")

    def _decrypt(self, token: str) -> Any:
        return json.loads(self._fernet.decrypt(token.encode("ascii")))

    def load_contacts(self) -> list[Contact]:
        raw = self.store.get(self.scoped(CONTACTS_KEY))
        if not raw:
            legacy = self.store.get(CONTACTS_KEY)
            if legacy:
                logger.info("Migrating unscoped contact list")
                self.store.set(self.scoped(CONTACTS_KEY), legacy)
                raw = legacy
        if not raw:
            return []

        contacts = ContactList.validate_json(raw)
        for contact in contacts:
            if not contact.name:
                contact.name = contact.display_name()
        return contacts

    def save_contacts(self, contacts: list[Contact]) -> None:
        self.store.set(
            self.scoped(CONTACTS_KEY),
            ContactList.dump_json(contacts).decode("utf-8"),
        )

    def load_messages(self) -> dict[str, list[Message]]:
        token = self.store.get(self.scoped(MESSAGES_KEY))
        if not token:
            token = self.store.get(self.scoped(LEGACY_MESSAGES_KEY))
        if not token:
            return {}

        try:
            return MessageHistory.validate_python(self._decrypt(token))
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Could not decrypt local history, starting fresh: {e}")
            return {}

    def save_messages(self, messages: dict[str, list[Message]]) -> None:
        history = {cid: msgs for cid, msgs in messages.items() if msgs}
        self.store.set(
            self.scoped(MESSAGES_KEY),
            self._encrypt(MessageHistory.dump_python(history, mode="json")),
        )

    def load_processed(self) -> set[str]:
        raw = self.store.get(self.scoped(PROCESSED_KEY))
        if not raw:
            return set()
        try:
            return set(json.loads(raw))
        except ValueError:
            logger.warning("Could not load processed tx IDs")
            return set()

    def save_processed(self, txids: set[str]) -> None:
        self.store.set(self.scoped(PROCESSED_KEY), json.dumps(sorted(txids)))

    def load_last_seen(self) -> dict[str, datetime]:
        token = self.store.get(self.scoped(LAST_SEEN_KEY))
        if not token:
            return {}
        try:
            return {cid: datetime.fromisoformat(ts) for cid, ts in self._decrypt(token).items()}
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Could not decrypt last seen timestamps, starting fresh: {e}")
            return {}

    def save_last_seen(self, last_seen: dict[str, datetime]) -> None:
        self.store.set(
            self.scoped(LAST_SEEN_KEY),
            self._encrypt({cid: ts.isoformat() for cid, ts in last_seen.items()}),
        )
