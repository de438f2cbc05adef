"""
Palladium node JSON-RPC backend (legacy polling mode).

Stateless unary calls over HTTP. The node only reports on addresses it
watches, so the wallet address must be registered with ``importaddress``.
"""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Any

import httpx
from loguru import logger
from plmcore.errors import BackendConnectionError, BackendError, BroadcastError
from plmcore.models import BackendMode, coins_to_sats

from plmwallet.backends.base import UTXO, ChainBackend, HistoryEntry

# Timeout for RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 10.0

# History window used when no rescan window is configured
DEFAULT_RESCAN_HOURS = 24
MIN_HISTORY_COUNT = 100

WATCH_LABEL = "palladium_chat_user"
MAX_CONFIRMATIONS = 9_999_999


class NodeRpcBackend(ChainBackend):
    """Chain backend over a Palladium node's wallet RPC."""

    mode = BackendMode.RPC

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:2332",
        rpc_user: str = "",
        rpc_password: str = "",
        timeout: float = DEFAULT_RPC_TIMEOUT,
    ):
        super().__init__()
        self.rpc_url = rpc_url.rstrip("/")
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        self.client = httpx.AsyncClient(timeout=timeout, auth=(rpc_user, rpc_password))

    async def _rpc_call(self, method: str, params: list | None = None) -> Any:
        """
        Make an RPC call to the node.

        Raises:
            BackendError: On RPC errors, carrying the node's message
            BackendConnectionError: On connection/timeout errors
        """
        payload = {
            "jsonrpc": "1.0",
            "id": "palladium-client",
            "method": method,
            "params": params or [],
        }

        try:
            response = await self.client.post(self.rpc_url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise BackendConnectionError(f"Node connection failed: {e}") from e

        # The node reports RPC errors with HTTP 500 and a JSON body
        try:
            data = response.json()
        except ValueError as e:
            raise BackendConnectionError(
                f"Invalid RPC response ({response.status_code}) for {method}"
            ) from e

        error_info = data.get("error") if isinstance(data, dict) else None
        if error_info:
            message = (
                error_info.get("message", str(error_info))
                if isinstance(error_info, dict)
                else str(error_info)
            )
            raise BackendError(message)

        return data.get("result")

    async def connect(self) -> None:
        info = await self._rpc_call("getblockchaininfo")
        logger.info(f"Connected to node: {(info or {}).get('chain')}")

    async def watch_address(self, address: str) -> None:
        try:
            await self._rpc_call("importaddress", [address, WATCH_LABEL, False])
            logger.debug("Registered watch-only address")
        except BackendConnectionError:
            raise
        except BackendError as e:
            logger.warning(f"Could not import watch-only address (maybe already exists): {e}")

    async def get_tip_height(self) -> int:
        return int(await self._rpc_call("getblockcount"))

    @staticmethod
    def _height_from_confirmations(confirmations: int, tip_height: int) -> int:
        if confirmations <= 0:
            return 0
        return tip_height - confirmations + 1

    async def list_unspent(self, address: str, include_unconfirmed: bool = True) -> list[UTXO]:
        min_conf = 0 if include_unconfirmed else 1
        result = await self._rpc_call(
            "listunspent", [min_conf, MAX_CONFIRMATIONS, [address], True]
        )
        if not result:
            return []

        tip_height = 0
        if any(item.get("confirmations", 0) > 0 for item in result):
            tip_height = await self.get_tip_height()

        return [
            UTXO(
                txid=item["txid"],
                vout=item["vout"],
                value=coins_to_sats(Decimal(str(item["amount"]))),
                height=self._height_from_confirmations(item.get("confirmations", 0), tip_height),
            )
            for item in result
        ]

    async def fetch_raw_transaction(self, txid: str) -> bytes:
        raw_hex = await self._rpc_call("getrawtransaction", [txid])
        return bytes.fromhex(raw_hex) if raw_hex else b""

    async def broadcast(self, raw_tx: bytes) -> str:
        try:
            txid = await self._rpc_call("sendrawtransaction", [raw_tx.hex()])
        except BackendConnectionError:
            raise
        except BackendError as e:
            logger.error(f"Failed to broadcast transaction: {e}")
            raise BroadcastError(str(e)) from e
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def get_history(self, address: str, window_hours: int = 0) -> list[HistoryEntry]:
        """
        Recent wallet transactions, newest window only.

        The node lists per-output entries, so a transaction can appear once
        per category; entries are folded by txid.
        """
        hours = window_hours or DEFAULT_RESCAN_HOURS
        count = max(MIN_HISTORY_COUNT, math.ceil(hours * 24))
        entries = await self._rpc_call("listtransactions", ["*", count, 0, True]) or []
        tip_height = await self.get_tip_height()

        confirmations: dict[str, int] = {}
        timestamps: dict[str, int | None] = {}
        for entry in entries:
            txid = entry.get("txid")
            if not txid:
                continue
            confirmations[txid] = max(
                confirmations.get(txid, 0), int(entry.get("confirmations") or 0)
            )
            timestamps.setdefault(txid, entry.get("timereceived") or entry.get("time"))

        return [
            HistoryEntry(
                txid=txid,
                height=self._height_from_confirmations(confs, tip_height),
                timestamp=timestamps.get(txid),
            )
            for txid, confs in confirmations.items()
        ]

    async def close(self) -> None:
        await self.client.aclose()
