"""Decode and validate raw contract data into storage DTOs.

Everything here is pure: no I/O, no logging of its own. Validation problems
raise `DecodeError` subclasses which the sync layer treats as terminal.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from bitredict_sync.chain.structs import PoolStruct
from bitredict_sync.pool_math import recompute_max_bettor_stake
from bitredict_sync.storage.repos import (
    POOL_STATUS_ACTIVE,
    POOL_STATUS_REFUNDED,
    POOL_STATUS_SETTLED,
    PoolDTO,
)

ZERO_BYTES32 = b"\x00" * 32

# 2020-01-01T00:00:00Z and 2100-01-01T00:00:00Z
MIN_TIMESTAMP = 1_577_836_800
MAX_TIMESTAMP = 4_102_444_800

FLAG_SETTLED = 1 << 0
FLAG_CREATOR_SIDE_WON = 1 << 1
FLAG_PRIVATE = 1 << 2
FLAG_USES_BITR = 1 << 3
FLAG_FILLED_ABOVE_60 = 1 << 4

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


class DecodeError(Exception):
    """Event or struct data failed validation."""


class PoolValidationError(DecodeError):
    """A pool struct cannot be projected."""

    def __init__(self, pool_id: int, reason: str) -> None:
        self.pool_id = pool_id
        self.reason = reason
        super().__init__(f"pool {pool_id}: {reason}")


class InvalidEventError(DecodeError):
    """An event argument is missing or out of range."""


@dataclass(frozen=True)
class PoolFlags:
    is_settled: bool
    creator_side_won: bool
    is_private: bool
    use_bitr: bool
    filled_above_60: bool


def to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            return bytes.fromhex(text)
        except ValueError:
            return value.encode("utf-8")
    raise InvalidEventError(f"cannot interpret {type(value).__name__} as bytes")


def to_hex32(value: Any) -> str:
    """Normalize a bytes32 value to a lowercase 0x-prefixed string."""
    raw = to_bytes(value)
    return "0x" + raw.rjust(32, b"\x00")[-32:].hex()


def is_zero_hash(value: Any) -> bool:
    raw = to_bytes(value)
    return not any(raw)


def decode_bytes32(value: Any) -> str:
    """Decode a fixed bytes32 label.

    All-zero becomes "", trailing NULs are trimmed, and bytes that are not
    valid UTF-8 come back as their 0x hex form.
    """
    raw = to_bytes(value)
    if not any(raw):
        return ""
    trimmed = raw.rstrip(b"\x00")
    try:
        return trimmed.decode("utf-8")
    except UnicodeDecodeError:
        return "0x" + raw.hex()


def validate_timestamp(
    pool_id: int, name: str, value: int, *, required: bool
) -> int | None:
    """Check a unix-seconds timestamp; zero means unset for optional fields."""
    ts = int(value)
    if ts == 0:
        if required:
            raise PoolValidationError(pool_id, f"{name} is zero")
        return None
    if not MIN_TIMESTAMP <= ts <= MAX_TIMESTAMP:
        raise PoolValidationError(pool_id, f"{name}={ts} outside [{MIN_TIMESTAMP}, {MAX_TIMESTAMP}]")
    return ts


def decode_flags(flags: int) -> PoolFlags:
    return PoolFlags(
        is_settled=bool(flags & FLAG_SETTLED),
        creator_side_won=bool(flags & FLAG_CREATOR_SIDE_WON),
        is_private=bool(flags & FLAG_PRIVATE),
        use_bitr=bool(flags & FLAG_USES_BITR),
        filled_above_60=bool(flags & FLAG_FILLED_ABOVE_60),
    )


def normalize_address(value: Any, *, field_name: str = "address") -> str:
    text = str(value or "")
    if not _ADDRESS_RE.match(text):
        raise InvalidEventError(f"invalid {field_name}: {text!r}")
    return text.lower()


def settlement_status(result: Any) -> str:
    return POOL_STATUS_REFUNDED if is_zero_hash(result) else POOL_STATUS_SETTLED


def decode_pool(
    pool_id: int,
    struct: PoolStruct,
    *,
    block_number: int | None = None,
    tx_hash: str | None = None,
) -> PoolDTO:
    """Project an on-chain pool struct into a `PoolDTO`.

    Aggregates are taken from chain as a starting point; the persistence
    layer reconciles them with stored bets and LP rows.

    Raises:
        PoolValidationError: On zero/out-of-range required timestamps,
            odds not above 100, or a zero creator address.
    """
    if struct.odds <= 100:
        raise PoolValidationError(pool_id, f"odds={struct.odds} must be greater than 100")
    if not struct.creator or int(struct.creator, 16) == 0:
        raise PoolValidationError(pool_id, "creator is the zero address")

    event_start = validate_timestamp(pool_id, "event_start_time", struct.event_start_time, required=True)
    event_end = validate_timestamp(pool_id, "event_end_time", struct.event_end_time, required=True)
    betting_end = validate_timestamp(pool_id, "betting_end_time", struct.betting_end_time, required=False)
    result_ts = validate_timestamp(pool_id, "result_timestamp", struct.result_timestamp, required=False)
    arbitration = validate_timestamp(
        pool_id, "arbitration_deadline", struct.arbitration_deadline, required=False
    )

    flags = decode_flags(struct.flags)
    tcss = max(struct.total_creator_side_stake, struct.creator_stake)
    status = settlement_status(struct.result) if flags.is_settled else POOL_STATUS_ACTIVE

    return PoolDTO(
        pool_id=pool_id,
        creator=struct.creator.lower(),
        odds=struct.odds,
        creator_stake=struct.creator_stake,
        total_creator_side_stake=tcss,
        total_bettor_stake=struct.total_bettor_stake,
        max_bettor_stake=recompute_max_bettor_stake(
            struct.creator_stake, tcss, struct.total_bettor_stake, struct.odds
        ),
        predicted_outcome=decode_bytes32(struct.predicted_outcome),
        use_bitr=flags.use_bitr,
        is_private=flags.is_private,
        event_start_time=event_start or 0,
        event_end_time=event_end or 0,
        betting_end_time=betting_end,
        result_timestamp=result_ts,
        arbitration_deadline=arbitration,
        max_bet_per_user=struct.max_bet_per_user or None,
        league=decode_bytes32(struct.league),
        category=decode_bytes32(struct.category),
        region=decode_bytes32(struct.region),
        home_team=decode_bytes32(struct.home_team),
        away_team=decode_bytes32(struct.away_team),
        title=decode_bytes32(struct.title),
        oracle_type=struct.oracle_type,
        market_type=struct.market_type,
        market_id=struct.market_id or None,
        is_settled=flags.is_settled,
        creator_side_won=flags.creator_side_won if flags.is_settled else None,
        result=to_hex32(struct.result) if flags.is_settled else None,
        status=status,
        block_number=block_number,
        tx_hash=tx_hash.lower() if tx_hash else None,
    )
