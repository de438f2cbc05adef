"""
Base chain backend interface.

Both backend protocols are normalized to the same shapes: integer satoshi
values and heights where ``height <= 0`` means unconfirmed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

from plmcore.models import BackendMode, sats_to_coins


@dataclass
class UTXO:
    txid: str
    vout: int
    value: int
    height: int = 0

    @property
    def amount(self) -> Decimal:
        return sats_to_coins(self.value)

    @property
    def confirmed(self) -> bool:
        return self.height > 0


@dataclass
class HistoryEntry:
    txid: str
    height: int = 0
    timestamp: int | None = None  # unix seconds, when the backend knows it

    def confirmations(self, tip_height: int) -> int:
        if self.height <= 0:
            return 0
        return max(0, tip_height - self.height + 1)


class ChainBackend(ABC):
    """
    Abstract chain backend.

    ``mode`` is the single flag callers consult when behaviour differs
    between the indexer and the legacy node.
    """

    mode: BackendMode

    def __init__(self) -> None:
        self._tx_cache: dict[str, bytes] = {}

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection and verify the backend answers"""

    @abstractmethod
    async def list_unspent(self, address: str, include_unconfirmed: bool = True) -> list[UTXO]:
        """Get UTXOs for an address, in backend order"""

    @abstractmethod
    async def fetch_raw_transaction(self, txid: str) -> bytes:
        """Fetch raw transaction bytes from the backend"""

    @abstractmethod
    async def broadcast(self, raw_tx: bytes) -> str:
        """Broadcast transaction, returns txid"""

    @abstractmethod
    async def get_history(self, address: str, window_hours: int = 0) -> list[HistoryEntry]:
        """Get transactions touching an address"""

    @abstractmethod
    async def get_tip_height(self) -> int:
        """Get current chain height"""

    async def get_raw_transaction(self, txid: str) -> bytes:
        """Raw transaction bytes, cached for the backend's lifetime."""
        cached = self._tx_cache.get(txid)
        if cached is not None:
            return cached
        raw = await self.fetch_raw_transaction(txid)
        if raw:
            self._tx_cache[txid] = raw
        return raw

    async def subscribe_address(self, address: str) -> str | None:
        """
        Subscribe to status changes for an address.

        Returns an opaque status cursor that changes whenever the address
        history changes, or None if the backend has no such notion.
        """
        return None

    async def watch_address(self, address: str) -> None:
        """Register an address the backend must track. No-op where not needed."""

    async def close(self) -> None:
        """Close backend connection"""
        pass
