"""Async chain client for the Bitredict contracts.

This module provides the single chain connection a sync process owns:
- Rate limiting to respect provider limits
- Retry logic with exponential backoff on transient RPC failures
- Typed contract reads (pools, slips, cycles)
- Chunked `eth_getLogs` queries and polling log subscriptions
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from eth_abi import encode as abi_encode
from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from bitredict_sync.chain.abi import ODDYSSEY_ABI, POOL_CORE_ABI, EventSpec, get_event
from bitredict_sync.chain.logs import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DisconnectHandler,
    LogFormatError,
    LogHandler,
    LogSubscription,
    LogView,
    sort_logs,
)
from bitredict_sync.chain.structs import CycleStruct, PoolStruct, SlipStruct

if TYPE_CHECKING:
    from bitredict_sync.config import ChainSettings, SyncSettings

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30
MAX_QUERY_CHUNK_BLOCKS = 900

_TRANSIENT_ERRORS = (Web3Exception, TimeoutError, OSError)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after all retries."""


class ContractCallReverted(ChainClientError):
    """Raised when a view call reverts (e.g. an id that does not exist)."""


class ContractMismatchError(ChainClientError):
    """Raised when a contract or its return data does not match our ABI."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.max_tokens, self.tokens + (now - self.last_refill) * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            await asyncio.sleep((tokens - self.tokens) / self.refill_rate)


@dataclass(frozen=True)
class ContractAddresses:
    """Deployed contract addresses the pipeline reads from."""

    pool_core: str
    oddyssey: str
    combo_pools: str | None = None
    boost_system: str | None = None

    def configured(self) -> Iterator[tuple[str, str]]:
        for name in ("pool_core", "oddyssey", "combo_pools", "boost_system"):
            address = getattr(self, name)
            if address:
                yield name, address


def chunk_ranges(from_block: int, to_block: int, chunk_size: int) -> list[tuple[int, int]]:
    """Split an inclusive block range into windows of at most `chunk_size` blocks."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    if to_block < from_block:
        return []
    return [
        (start, min(start + chunk_size - 1, to_block))
        for start in range(from_block, to_block + 1, chunk_size)
    ]


def _topic_for(spec: EventSpec, argument: str, value: Any) -> tuple[int, str]:
    indexed = [i for i in spec.inputs if i.indexed]
    for position, item in enumerate(indexed, start=1):
        if item.name == argument:
            return position, AsyncWeb3.to_hex(abi_encode([item.type], [value]))
    raise ValueError(f"{spec.name} has no indexed argument {argument!r}")


def build_topics(
    specs: Sequence[EventSpec], argument_filters: Mapping[str, Any] | None = None
) -> list[Any]:
    """Build an `eth_getLogs` topics filter for one or more events.

    Argument filters must name an indexed argument at the same position in
    every event passed.
    """
    topics: list[Any] = [[spec.topic0 for spec in specs]]
    for argument, value in (argument_filters or {}).items():
        placed = {_topic_for(spec, argument, value) for spec in specs}
        if len(placed) != 1:
            raise ValueError(f"indexed argument {argument!r} differs across events")
        position, topic = placed.pop()
        while len(topics) <= position:
            topics.append(None)
        topics[position] = topic
    return topics


class ChainClient:
    """Chain access for the sync services.

    Example:
        ```python
        client = ChainClient(
            "https://dream-rpc.somnia.network",
            contracts=ContractAddresses(pool_core="0x...", oddyssey="0x..."),
        )
        await client.initialize()
        pool = await client.get_pool(7)
        logs = await client.query_logs(client.contracts.pool_core, ["BetPlaced"], 100, 2000)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        contracts: ContractAddresses,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        query_chunk_blocks: int = MAX_QUERY_CHUNK_BLOCKS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: JSON-RPC endpoint URL.
            contracts: Contract addresses to read from.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Attempts per RPC call before giving up.
            retry_delay_seconds: Initial delay between attempts.
            request_timeout: Timeout for a single RPC attempt.
            query_chunk_blocks: Block span of one `eth_getLogs` request (<= 900).
            poll_interval: Subscription polling interval in seconds.
        """
        self._rpc_url = rpc_url
        self.contracts = contracts
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay_seconds
        self._request_timeout = request_timeout
        self._chunk_blocks = max(1, min(query_chunk_blocks, MAX_QUERY_CHUNK_BLOCKS))
        self._poll_interval = poll_interval

        self._w3 = self._new_web3_client(rpc_url)
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._pool_core = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contracts.pool_core), abi=POOL_CORE_ABI
        )
        self._oddyssey = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contracts.oddyssey), abi=ODDYSSEY_ABI
        )
        self._initialized = False

    @classmethod
    def from_settings(cls, chain: ChainSettings, sync: SyncSettings) -> ChainClient:
        return cls(
            chain.rpc_url,
            contracts=ContractAddresses(
                pool_core=chain.pool_core_address,
                oddyssey=chain.oddyssey_address,
                combo_pools=chain.combo_pools_address,
                boost_system=chain.boost_system_address,
            ),
            max_requests_per_second=chain.max_requests_per_second,
            request_timeout=chain.request_timeout_s,
            query_chunk_blocks=sync.query_chunk_blocks,
            poll_interval=chain.poll_interval_ms / 1000,
        )

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._inject_poa_middleware(client, rpc_url=rpc_url)
        return client

    def _inject_poa_middleware(self, client: AsyncWeb3[AsyncHTTPProvider], *, rpc_url: str) -> None:
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def chunk_blocks(self) -> int:
        return self._chunk_blocks

    async def initialize(self) -> None:
        """Check connectivity and that every configured contract is deployed.

        Raises:
            RPCError: If the node cannot be reached.
            ContractMismatchError: If a configured address has no code.
        """
        if self._initialized:
            return
        chain_id = await self._with_retry("chain_id", lambda: self._w3.eth.chain_id)
        for name, address in self.contracts.configured():
            code = await self._execute_with_retry(
                "get_code", AsyncWeb3.to_checksum_address(address)
            )
            if not code or len(code) == 0:
                raise ContractMismatchError(f"No contract code at {name}={address}")
        self._initialized = True
        logger.info("Chain client connected (chain_id=%s, rpc=%s)", chain_id, self._rpc_url)

    async def _with_retry(self, label: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run an RPC call with rate limiting, a per-attempt timeout and backoff.

        Raises:
            ContractCallReverted: If a view call reverts (never retried).
            RPCError: If all attempts fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None
        delay = self._retry_delay
        for attempt in range(self._max_retries):
            try:
                return await asyncio.wait_for(call(), timeout=self._request_timeout)
            except ContractLogicError as e:
                raise ContractCallReverted(f"{label} reverted: {e}") from e
            except _TRANSIENT_ERRORS as e:
                last_error = e
                logger.warning(
                    "RPC %s failed (attempt %d/%d): %s",
                    label,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff

        raise RPCError(f"RPC call {label} failed after all retries: {last_error}") from last_error

    async def _execute_with_retry(self, func_name: str, *args: Any, **kwargs: Any) -> Any:
        """Call a `web3.eth` method by name with retry semantics."""
        return await self._with_retry(
            func_name, lambda: getattr(self._w3.eth, func_name)(*args, **kwargs)
        )

    async def _call(self, contract: Any, func_name: str, *args: Any) -> Any:
        function = getattr(contract.functions, func_name)
        return await self._with_retry(func_name, lambda: function(*args).call())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def current_block(self) -> int:
        return int(await self._with_retry("block_number", lambda: self._w3.eth.block_number))

    async def get_pool(self, pool_id: int) -> PoolStruct:
        """Read the authoritative pool record.

        Callers treat any `ChainClientError` here as "enrichment unavailable".
        """
        raw = await self._call(self._pool_core, "getPool", pool_id)
        try:
            return PoolStruct.from_tuple(raw)
        except (TypeError, ValueError) as e:
            raise ContractMismatchError(f"getPool({pool_id}) returned unexpected data: {e}") from e

    async def get_pool_count(self) -> int:
        return int(await self._call(self._pool_core, "poolCount"))

    async def get_slip(self, slip_id: int) -> SlipStruct:
        raw = await self._call(self._oddyssey, "getSlip", slip_id)
        try:
            return SlipStruct.from_tuple(raw)
        except (TypeError, ValueError) as e:
            raise ContractMismatchError(f"getSlip({slip_id}) returned unexpected data: {e}") from e

    async def get_slip_count(self) -> int:
        return int(await self._call(self._oddyssey, "slipCount"))

    async def get_current_cycle(self) -> int:
        return int(await self._call(self._oddyssey, "getCurrentCycle"))

    async def get_cycle(self, cycle_id: int) -> CycleStruct:
        info = await self._call(self._oddyssey, "cycleInfo", cycle_id)
        matches = await self._call(self._oddyssey, "getDailyMatches", cycle_id)
        try:
            return CycleStruct.from_tuple(cycle_id, info, matches)
        except (TypeError, ValueError) as e:
            raise ContractMismatchError(f"cycle {cycle_id} returned unexpected data: {e}") from e

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def query_logs(
        self,
        address: str,
        event_names: Sequence[str],
        from_block: int,
        to_block: int,
        *,
        argument_filters: Mapping[str, Any] | None = None,
    ) -> list[LogView]:
        """Fetch and decode logs over an inclusive block range.

        The range is split into windows of at most `query_chunk_blocks`.
        Results are sorted by block number, then log index.
        Logs that fail to decode are logged and left out of the result.

        Raises:
            ContractMismatchError: For event names outside our ABI.
            RPCError: If a window cannot be fetched.
        """
        try:
            specs = [get_event(name) for name in event_names]
        except KeyError as e:
            raise ContractMismatchError(str(e)) from e
        by_topic = {spec.topic0: spec for spec in specs}
        topics = build_topics(specs, argument_filters)
        checksum = AsyncWeb3.to_checksum_address(address)

        views: list[LogView] = []
        for start, end in chunk_ranges(max(0, from_block), to_block, self._chunk_blocks):
            logger.debug("get_logs %s %s [%d, %d]", address, ",".join(event_names), start, end)
            raw_logs = await self._execute_with_retry(
                "get_logs",
                {"address": checksum, "fromBlock": start, "toBlock": end, "topics": topics},
            )
            for raw in raw_logs:
                topic0 = AsyncWeb3.to_hex(raw["topics"][0]) if raw.get("topics") else ""
                spec = by_topic.get(topic0)
                try:
                    views.append(LogView.from_raw(raw, spec=spec))
                except LogFormatError as e:
                    tx_hash = raw.get("transactionHash")
                    logger.error(
                        "Skipping undecodable log %s tx=%s index=%s: %s",
                        spec.name if spec else topic0 or "?",
                        HexBytes(tx_hash).to_0x_hex() if tx_hash else None,
                        raw.get("logIndex"),
                        e,
                    )
        return sort_logs(views)

    def subscribe(
        self,
        address: str,
        event_names: Sequence[str],
        handler: LogHandler,
        *,
        from_block: int | None = None,
        on_disconnect: DisconnectHandler | None = None,
        name: str | None = None,
    ) -> LogSubscription:
        """Start a polling subscription that calls `handler` once per log."""
        for event_name in event_names:
            try:
                get_event(event_name)
            except KeyError as e:
                raise ContractMismatchError(str(e)) from e
        subscription = LogSubscription(
            self,
            address=address,
            event_names=event_names,
            handler=handler,
            from_block=from_block,
            poll_interval=self._poll_interval,
            on_disconnect=on_disconnect,
            name=name,
        )
        subscription.start()
        return subscription

    async def health_check(self) -> bool:
        try:
            await self.current_block()
            return True
        except RPCError:
            return False

    async def shutdown(self) -> None:
        await self.aclose()
        self._initialized = False

    async def aclose(self) -> None:
        """Close the async HTTP provider session."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session: %s", e)
