"""Normalized log views and polling log subscriptions.

Raw logs reach us in two shapes: web3's flat `LogReceipt` mapping, or an
event wrapper carrying the receipt under a nested `log` key. `LogView` is
built once at the subscription boundary so handlers never see either.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from hexbytes import HexBytes

from bitredict_sync.chain.abi import EVENTS_BY_TOPIC, EventSpec

if TYPE_CHECKING:
    from bitredict_sync.chain.client import ChainClient

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 2.0


class LogFormatError(ValueError):
    """A raw log is missing a positional field or has an unknown topic."""


LogHandler = Callable[["LogView"], Awaitable[Any]]
DisconnectHandler = Callable[["LogSubscription", Exception], Awaitable[None]]


def _hex(value: Any) -> str:
    if isinstance(value, str):
        text = value.lower()
        return text if text.startswith("0x") else "0x" + text
    return "0x" + bytes(HexBytes(value)).hex()


def _int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
    return int(value)


@dataclass(frozen=True)
class LogView:
    """Transport-independent view of one contract log."""

    event_name: str
    address: str
    transaction_hash: str
    block_number: int
    log_index: int
    arguments: Mapping[str, Any] = field(default_factory=dict)
    removed: bool = False

    @property
    def key(self) -> tuple[str, int]:
        return (self.transaction_hash, self.log_index)

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    def arg(self, name: str) -> Any:
        try:
            return self.arguments[name]
        except KeyError:
            raise LogFormatError(f"{self.event_name} log has no argument {name!r}") from None

    def describe(self) -> str:
        return f"{self.event_name} tx={self.transaction_hash} log={self.log_index}"

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, spec: EventSpec | None = None) -> LogView:
        """Build a view from either raw shape, decoding topics/data when needed.

        Raises:
            LogFormatError: If a positional field is missing or the topic is
                not one of ours.
        """
        sources: list[Mapping[str, Any]] = [raw]
        nested = raw.get("log")
        if isinstance(nested, Mapping):
            sources.append(nested)

        def pick(*names: str) -> Any:
            for source in sources:
                for name in names:
                    value = source.get(name)
                    if value is not None:
                        return value
            return None

        tx_hash = pick("transactionHash", "transaction_hash")
        block_number = pick("blockNumber", "block_number")
        log_index = pick("logIndex", "log_index")
        if tx_hash is None or block_number is None or log_index is None:
            raise LogFormatError("log is missing transactionHash, blockNumber or logIndex")

        arguments = pick("args", "arguments")
        event_name = pick("event", "event_name")
        if arguments is None:
            topics = [HexBytes(t) for t in (pick("topics") or [])]
            if not topics:
                raise LogFormatError(f"log {_hex(tx_hash)} has no topics")
            if spec is None:
                spec = EVENTS_BY_TOPIC.get(_hex(topics[0]))
                if spec is None:
                    raise LogFormatError(f"unknown topic0 {_hex(topics[0])}")
            try:
                arguments = spec.decode(list(topics), bytes(HexBytes(pick("data") or b"")))
            except Exception as e:
                raise LogFormatError(f"cannot decode {spec.name}: {e}") from e
            event_name = spec.name

        return cls(
            event_name=str(event_name or (spec.name if spec else "")),
            address=_hex(pick("address") or "0x"),
            transaction_hash=_hex(tx_hash),
            block_number=_int(block_number),
            log_index=_int(log_index),
            arguments=dict(arguments),
            removed=bool(pick("removed") or False),
        )


def sort_logs(logs: Sequence[LogView]) -> list[LogView]:
    return sorted(logs, key=lambda log: log.position)


class LogSubscription:
    """Polls `eth_getLogs` for one contract and dispatches logs in order.

    Logs are handed to `handler` one at a time in block/log-index order. A
    handler error is logged and the stream moves on. An RPC failure ends the
    subscription and is reported through `on_disconnect`, after which the
    owner re-subscribes from `resume_block`.
    """

    def __init__(
        self,
        client: ChainClient,
        *,
        address: str,
        event_names: Sequence[str],
        handler: LogHandler,
        from_block: int | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        on_disconnect: DisconnectHandler | None = None,
        name: str | None = None,
    ) -> None:
        self._client = client
        self.address = address
        self.event_names = tuple(event_names)
        self._handler = handler
        self._next_block = from_block
        self._poll_interval = poll_interval
        self._on_disconnect = on_disconnect
        self.name = name or f"{address[:10]}:{','.join(self.event_names)}"

        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.dispatched = 0
        self.handler_errors = 0
        self.error: Exception | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def resume_block(self) -> int | None:
        """First block not yet fully dispatched."""
        return self._next_block

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"logs:{self.name}")

    async def stop(self) -> None:
        self._stop_event.set()
        task, self._task = self._task, None
        if task is None:
            return
        if task is not asyncio.current_task():
            try:
                await asyncio.wait_for(task, timeout=self._poll_interval + 5)
            except TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                head = await self._client.current_block()
                if self._next_block is None:
                    self._next_block = head
                if head >= self._next_block:
                    await self._poll_range(self._next_block, head)

                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
        except Exception as e:
            self.error = e
            logger.warning("Log subscription %s disconnected: %s", self.name, e)
            if self._on_disconnect is not None and not self._stop_event.is_set():
                await self._on_disconnect(self, e)

    async def _poll_range(self, from_block: int, to_block: int) -> None:
        logs = await self._client.query_logs(self.address, self.event_names, from_block, to_block)
        for log in logs:
            if self._stop_event.is_set():
                # Resume at the interrupted block; handlers are idempotent.
                self._next_block = log.block_number
                return
            await self._dispatch(log)
        self._next_block = to_block + 1

    async def _dispatch(self, log: LogView) -> None:
        if log.removed:
            logger.debug("Skipping removed log %s", log.describe())
            return
        logger.debug("Dispatching %s block=%d", log.describe(), log.block_number)
        try:
            await self._handler(log)
            self.dispatched += 1
        except Exception:
            self.handler_errors += 1
            logger.exception("Handler failed for %s", log.describe())
