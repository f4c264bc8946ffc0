"""Downstream data-stream publisher backed by Redis.

Each record is written twice in one pipeline: into the `{context}:records`
hash keyed by its deterministic id (so re-publishing overwrites rather than
duplicates), and appended to the `{context}` stream for tailing consumers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from eth_account import Account
from web3 import Web3

from bitredict_sync.sinks.broadcast import now_ms, to_json

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

CONTEXT_PREFIX = "bitredict:"

POOLS_CREATED = f"{CONTEXT_PREFIX}pools:created"
POOLS_SETTLED = f"{CONTEXT_PREFIX}pools:settled"
POOLS_PROGRESS = f"{CONTEXT_PREFIX}pools:progress"
BETS = f"{CONTEXT_PREFIX}bets"
LIQUIDITY = f"{CONTEXT_PREFIX}liquidity"
REPUTATION = f"{CONTEXT_PREFIX}reputation"
CYCLES = f"{CONTEXT_PREFIX}cycles"
SLIPS = f"{CONTEXT_PREFIX}slips"
PRIZES = f"{CONTEXT_PREFIX}prizes"


def make_data_id(context: str, *parts: Any) -> str:
    """Deterministic record id: keccak256 of "context:part1:part2..."."""
    material = ":".join([context, *(str(p).lower() for p in parts)])
    return Web3.to_hex(Web3.keccak(text=material))


class DataStreamPublisher:
    """Publishes enriched records; never raises."""

    def __init__(
        self,
        redis: Redis,
        *,
        enabled: bool = True,
        key_prefix: str = "",
        maxlen: int = 10_000,
        timeout: float = 30.0,
        private_key: str | None = None,
    ) -> None:
        self._redis = redis
        self._enabled = enabled
        self._key_prefix = key_prefix
        self._maxlen = maxlen
        self._timeout = timeout
        self._publisher = Account.from_key(private_key).address if private_key else None
        self.published = 0
        self.failed = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def publisher_address(self) -> str | None:
        return self._publisher

    async def publish(self, context: str, data_id: str, payload: dict[str, Any]) -> bool:
        """Record `payload` under `data_id`.

        Returns:
            True if stored, False if disabled or the write failed.
        """
        if not self._enabled:
            logger.debug("Data stream disabled; skipping %s %s", context, data_id)
            return False
        key = f"{self._key_prefix}{context}"
        try:
            body = to_json(payload)
            entry = {"id": data_id, "data": body, "ts": str(now_ms())}
            if self._publisher:
                entry["publisher"] = self._publisher
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(f"{key}:records", data_id, body)
                pipe.xadd(key, entry, maxlen=self._maxlen, approximate=True)
                await asyncio.wait_for(pipe.execute(), timeout=self._timeout)
        except Exception as e:
            self.failed += 1
            logger.warning("Data stream publish to %s failed (id=%s): %s", context, data_id, e)
            return False
        self.published += 1
        return True
