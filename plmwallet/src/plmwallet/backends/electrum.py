"""
ElectrumX indexer backend.

Speaks newline-delimited JSON-RPC over a persistent TCP (optionally TLS)
connection. One connection per endpoint is shared by every backend instance
and every in-flight request; responses are matched to requests by id.
Closing or losing the connection fails all outstanding requests.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import os
import ssl
from collections.abc import Callable
from typing import Any

from loguru import logger
from plmcore.address import address_to_scripthash
from plmcore.errors import BackendConnectionError, BackendError, BroadcastError
from plmcore.models import BackendMode

from plmwallet.backends.base import UTXO, ChainBackend, HistoryEntry

DEFAULT_TIMEOUT = 30.0
CLIENT_NAME = "palladium-secure-chat"
PROTOCOL_VERSION = "1.4"

SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")

NotificationHandler = Callable[[str, list[Any]], None]


def endpoint_url(host: str, port: int, use_ssl: bool = True) -> str:
    scheme = "ssl" if use_ssl else "tcp"
    return f"{scheme}://{host}:{port}"


class ElectrumConnection:
    """A shared JSON-RPC session with one ElectrumX server."""

    def __init__(
        self,
        host: str,
        port: int,
        use_ssl: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
        max_line_size: int = 16 * 1024 * 1024,
    ):
        self.host = host
        self.port = port
        self.use_ssl = use_ssl
        self.timeout = timeout
        self.max_line_size = max_line_size

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._ids = itertools.count(1)
        self._handlers: list[NotificationHandler] = []
        self._connected = False

    @property
    def url(self) -> str:
        return endpoint_url(self.host, self.port, self.use_ssl)

    def is_connected(self) -> bool:
        return self._connected

    def add_notification_handler(self, handler: NotificationHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    async def ensure_connected(self) -> None:
        """Connect once; concurrent callers share the same attempt."""
        if self._connected:
            return
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.ensure_future(self._connect())
        task = self._connect_task
        try:
            await asyncio.shield(task)
        finally:
            if self._connect_task is task and task.done():
                self._connect_task = None

    async def _connect(self) -> None:
        ssl_context: ssl.SSLContext | None = None
        if self.use_ssl:
            # ElectrumX servers commonly present self-signed certificates
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        logger.debug(f"Connecting to Electrum server {self.url}")
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(
                    self.host, self.port, ssl=ssl_context, limit=self.max_line_size
                ),
                timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise BackendConnectionError(f"Could not connect to {self.url}: {e}") from e

        self._connected = True
        self._read_task = asyncio.ensure_future(self._read_loop())

        version = await self._send("server.version", [CLIENT_NAME, PROTOCOL_VERSION])
        logger.info(f"Connected to {self.url} ({version})")

    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        await self.ensure_connected()
        return await self._send(method, params or [])

    async def _send(self, method: str, params: list[Any]) -> Any:
        if not self._connected or self._writer is None:
            raise BackendConnectionError("Connection closed")

        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        payload = json.dumps({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        if SENSITIVE_LOGGING:
            logger.debug(f"Electrum -> {payload}")

        try:
            self._writer.write(payload.encode("utf-8") + b"\n")
            await self._writer.drain()
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise BackendConnectionError(f"Electrum request timed out: {method}") from e
        except OSError as e:
            await self._fail_all(BackendConnectionError(f"Connection lost: {e}"))
            raise BackendConnectionError(f"Connection lost: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        assert self._reader is not None
        error: Exception = BackendConnectionError("Connection closed by server")
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                self._dispatch(line)
        except (OSError, ValueError, asyncio.IncompleteReadError, asyncio.LimitOverrunError) as e:
            logger.warning(f"Electrum connection {self.url} failed: {e}")
            error = BackendConnectionError(f"Connection lost: {e}")
        except asyncio.CancelledError:
            error = BackendConnectionError("Connection closed")
            raise
        finally:
            await self._fail_all(error)

    def _dispatch(self, line: bytes) -> None:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed Electrum message: {line[:200]!r}")
            return

        if SENSITIVE_LOGGING:
            logger.debug(f"Electrum <- {data}")

        request_id = data.get("id")
        if request_id is None:
            method = data.get("method")
            if method:
                for handler in self._handlers:
                    try:
                        handler(method, data.get("params") or [])
                    except Exception as e:
                        logger.error(f"Notification handler for {method} failed: {e}")
            return

        future = self._pending.get(request_id)
        if future is None or future.done():
            return

        error = data.get("error")
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            future.set_exception(BackendError(message))
        else:
            future.set_result(data.get("result"))

    async def _fail_all(self, error: Exception) -> None:
        self._connected = False
        if _connections.get(self.url) is self:
            del _connections[self.url]
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)
        if self._writer is not None:
            writer, self._writer = self._writer, None
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def close(self) -> None:
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        await self._fail_all(BackendConnectionError("Connection closed"))


_connections: dict[str, ElectrumConnection] = {}


def get_connection(host: str, port: int, use_ssl: bool = True) -> ElectrumConnection:
    """Shared connection for an endpoint, created on first use."""
    url = endpoint_url(host, port, use_ssl)
    conn = _connections.get(url)
    if conn is None:
        conn = ElectrumConnection(host, port, use_ssl=use_ssl)
        _connections[url] = conn
    return conn


class ElectrumBackend(ChainBackend):
    """
    Chain backend over the ElectrumX protocol.

    Lookups are keyed by scripthash. ``list_unspent`` filters unconfirmed
    outputs on this side since the server has no such option.
    """

    mode = BackendMode.ELECTRUM

    def __init__(self, host: str, port: int = 50002, use_ssl: bool = True):
        super().__init__()
        self.host = host
        self.port = port
        self.use_ssl = use_ssl
        self._notification_handlers: list[NotificationHandler] = []

    @property
    def connection(self) -> ElectrumConnection:
        conn = get_connection(self.host, self.port, self.use_ssl)
        for handler in self._notification_handlers:
            conn.add_notification_handler(handler)
        return conn

    def on_notification(self, handler: NotificationHandler) -> None:
        """Receive server push notifications (header and scripthash status changes)."""
        self._notification_handlers.append(handler)

    async def _call(self, method: str, params: list[Any] | None = None) -> Any:
        return await self.connection.request(method, params)

    async def connect(self) -> None:
        await self.get_tip_height()

    async def list_unspent(self, address: str, include_unconfirmed: bool = True) -> list[UTXO]:
        scripthash = address_to_scripthash(address)
        result = await self._call("blockchain.scripthash.listunspent", [scripthash])

        utxos = [
            UTXO(
                txid=item["tx_hash"],
                vout=item["tx_pos"],
                value=int(item["value"]),
                height=int(item.get("height") or 0),
            )
            for item in result or []
        ]
        if not include_unconfirmed:
            utxos = [u for u in utxos if u.confirmed]
        return utxos

    async def fetch_raw_transaction(self, txid: str) -> bytes:
        raw_hex = await self._call("blockchain.transaction.get", [txid, False])
        return bytes.fromhex(raw_hex) if raw_hex else b""

    async def broadcast(self, raw_tx: bytes) -> str:
        try:
            txid = await self._call("blockchain.transaction.broadcast", [raw_tx.hex()])
        except BackendConnectionError:
            raise
        except BackendError as e:
            logger.error(f"Failed to broadcast transaction: {e}")
            raise BroadcastError(str(e)) from e
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def get_history(self, address: str, window_hours: int = 0) -> list[HistoryEntry]:
        scripthash = address_to_scripthash(address)
        result = await self._call("blockchain.scripthash.get_history", [scripthash])
        return [
            HistoryEntry(txid=item["tx_hash"], height=int(item.get("height") or 0))
            for item in result or []
        ]

    async def get_tip_height(self) -> int:
        tip = await self._call("blockchain.headers.subscribe", [])
        return int((tip or {}).get("height", 0))

    async def subscribe_address(self, address: str) -> str | None:
        return await self._call("blockchain.scripthash.subscribe", [address_to_scripthash(address)])

    async def close(self) -> None:
        conn = _connections.get(endpoint_url(self.host, self.port, self.use_ssl))
        if conn is not None:
            await conn.close()
