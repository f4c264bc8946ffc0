"""Channel-oriented push socket.

Clients connect over WebSocket and manage subscriptions with small JSON
commands:

    {"type": "subscribe", "channel": "pool:7:progress"}
    {"type": "unsubscribe", "channel": "pool:7:progress"}
    {"type": "ping"}

`broadcast(channel, payload)` wraps the payload in an `update` envelope and
fans it out to every subscriber of that channel.
"""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol

from websockets.asyncio.server import Server, ServerConnection, broadcast, serve
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 10  # seconds
DEFAULT_PING_TIMEOUT = 30  # seconds


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _stringify_big_ints(value: Any) -> Any:
    # JavaScript subscribers lose precision above 2**53.
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and abs(value) > 2**53:
        return str(value)
    if isinstance(value, dict):
        return {k: _stringify_big_ints(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_stringify_big_ints(v) for v in value]
    return value


def to_json(value: Any) -> str:
    """Serialize a sink payload; large ints become strings."""
    return json.dumps(_stringify_big_ints(value), default=_json_default, separators=(",", ":"))


def now_ms() -> int:
    return int(time.time() * 1000)


class BroadcastSink(Protocol):
    async def broadcast(self, channel: str, payload: dict[str, Any]) -> int: ...


class NullBroadcaster:
    """Sink used when the push socket is disabled."""

    async def broadcast(self, channel: str, payload: dict[str, Any]) -> int:
        logger.debug("Broadcast disabled; dropping %s", channel)
        return 0


class ChannelBroadcaster:
    """WebSocket server that routes updates by channel name."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8765,
        *,
        path: str = "/ws",
        ping_interval: float = DEFAULT_PING_INTERVAL,
        ping_timeout: float = DEFAULT_PING_TIMEOUT,
    ) -> None:
        self._host = host
        self._port = port
        self._path = path
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._server: Server | None = None
        self._subscriptions: dict[str, set[ServerConnection]] = defaultdict(set)
        self._clients: dict[ServerConnection, set[str]] = {}

    @property
    def is_initialized(self) -> bool:
        return self._server is not None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscriptions.get(channel, ()))

    async def initialize(self) -> None:
        if self._server is not None:
            return
        self._server = await serve(
            self._handle_connection,
            self._host,
            self._port,
            ping_interval=self._ping_interval,
            ping_timeout=self._ping_timeout,
        )
        logger.info("Broadcast socket listening on ws://%s:%s%s", self._host, self._port, self._path)

    async def shutdown(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self._subscriptions.clear()
        self._clients.clear()
        logger.info("Broadcast socket closed")

    async def broadcast(self, channel: str, payload: dict[str, Any]) -> int:
        """Send an update to every subscriber of `channel`.

        Returns:
            Number of connections the message was queued for.
        """
        targets = list(self._subscriptions.get(channel, ()))
        if not targets:
            return 0
        message = to_json(
            {"type": "update", "channel": channel, "data": payload, "timestamp": now_ms()}
        )
        # Slow or closed connections are skipped by the library, never awaited.
        broadcast(targets, message)
        return len(targets)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def subscribe(self, connection: ServerConnection, channel: str) -> None:
        self._subscriptions[channel].add(connection)
        self._clients.setdefault(connection, set()).add(channel)

    def unsubscribe(self, connection: ServerConnection, channel: str) -> None:
        subscribers = self._subscriptions.get(channel)
        if subscribers is not None:
            subscribers.discard(connection)
            if not subscribers:
                del self._subscriptions[channel]
        self._clients.get(connection, set()).discard(channel)

    def _drop(self, connection: ServerConnection) -> None:
        for channel in self._clients.pop(connection, set()):
            subscribers = self._subscriptions.get(channel)
            if subscribers is not None:
                subscribers.discard(connection)
                if not subscribers:
                    del self._subscriptions[channel]

    async def handle_message(self, connection: ServerConnection, raw: str | bytes) -> dict[str, Any]:
        """Apply one client command and return the reply envelope."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return {"type": "error", "message": "invalid JSON", "timestamp": now_ms()}
        if not isinstance(message, dict):
            return {"type": "error", "message": "expected an object", "timestamp": now_ms()}

        kind = message.get("type")
        channel = message.get("channel")
        if kind == "ping":
            return {"type": "pong", "timestamp": now_ms()}
        if kind in ("subscribe", "unsubscribe"):
            if not isinstance(channel, str) or not channel:
                return {"type": "error", "message": "channel is required", "timestamp": now_ms()}
            if kind == "subscribe":
                self.subscribe(connection, channel)
                return {"type": "subscribed", "channel": channel, "timestamp": now_ms()}
            self.unsubscribe(connection, channel)
            return {"type": "unsubscribed", "channel": channel, "timestamp": now_ms()}
        return {"type": "error", "message": f"unknown message type: {kind}", "timestamp": now_ms()}

    async def _handle_connection(self, connection: ServerConnection) -> None:
        request_path = connection.request.path if connection.request else "/"
        if self._path and request_path.split("?", 1)[0] != self._path:
            await connection.close(code=1008, reason="unknown path")
            return

        self._clients[connection] = set()
        logger.debug("Broadcast client connected (%d total)", len(self._clients))
        try:
            await connection.send(to_json({"type": "connected", "timestamp": now_ms()}))
            async for raw in connection:
                reply = await self.handle_message(connection, raw)
                await connection.send(to_json(reply))
        except ConnectionClosed as e:
            logger.debug("Broadcast client closed: %s", e)
        finally:
            self._drop(connection)
            logger.debug("Broadcast client disconnected (%d remaining)", len(self._clients))
