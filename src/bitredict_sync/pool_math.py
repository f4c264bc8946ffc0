"""Pool sizing and progress arithmetic.

All inputs and outputs are wei integers. Ratios go through `Fraction` so
that no amount is ever rounded through a binary float before display.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from fractions import Fraction
from typing import Any

ODDS_BASE = 100
TOKEN_DECIMALS = 18
WEI_PER_TOKEN = 10**TOKEN_DECIMALS


def effective_creator_side_stake(
    creator_stake: int, total_creator_side_stake: int, total_bettor_stake: int
) -> int:
    """Creator-side amount used to size the bettor cap.

    Liquidity providers only count once bettors have outgrown the creator's
    own stake (or nobody has bet yet).
    """
    if total_bettor_stake == 0 or total_bettor_stake > creator_stake:
        return total_creator_side_stake
    return creator_stake


def max_bettor_stake_for(effective_stake: int, odds: int) -> int:
    """floor(effective × 100 / (odds − 100))."""
    if odds <= ODDS_BASE:
        raise ValueError(f"odds must be greater than {ODDS_BASE}, got {odds}")
    return (effective_stake * ODDS_BASE) // (odds - ODDS_BASE)


def recompute_max_bettor_stake(
    creator_stake: int, total_creator_side_stake: int, total_bettor_stake: int, odds: int
) -> int:
    effective = effective_creator_side_stake(
        creator_stake, total_creator_side_stake, total_bettor_stake
    )
    return max_bettor_stake_for(effective, odds)


def wei_to_tokens(wei: int) -> str:
    """Display-only token amount, e.g. 1500000000000000000 -> '1.5'."""
    whole, frac = divmod(int(wei), WEI_PER_TOKEN)
    frac_text = f"{frac:0{TOKEN_DECIMALS}d}".rstrip("0")
    return f"{whole}.{frac_text}" if frac_text else str(whole)


@dataclass(frozen=True)
class PoolProgress:
    """Live fill state of a pool, as broadcast on `pool:{id}:progress`."""

    pool_id: int
    creator_stake: int
    total_creator_side_stake: int
    total_bettor_stake: int
    effective_creator_side_stake: int
    current_max_bettor_stake: int
    max_pool_size: int
    fill_percentage: float
    participants: int
    bet_count: int
    avg_bet: int
    last_updated: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "poolId": str(self.pool_id),
            "fillPercentage": self.fill_percentage,
            "totalBettorStake": str(self.total_bettor_stake),
            "totalCreatorSideStake": str(self.total_creator_side_stake),
            "maxPoolSize": str(self.max_pool_size),
            "currentMaxBettorStake": str(self.current_max_bettor_stake),
            "effectiveCreatorSideStake": str(self.effective_creator_side_stake),
            "participants": self.participants,
            "participantCount": self.participants,
            "betCount": self.bet_count,
            "totalBets": self.bet_count,
            "avgBet": str(self.avg_bet),
            "lastUpdated": int(self.last_updated.timestamp()),
        }


def compute_progress(
    *,
    pool_id: int,
    creator_stake: int,
    total_creator_side_stake: int,
    total_bettor_stake: int,
    odds: int,
    participants: int,
    bet_count: int,
    now: datetime | None = None,
) -> PoolProgress:
    effective = effective_creator_side_stake(
        creator_stake, total_creator_side_stake, total_bettor_stake
    )
    current_max = max_bettor_stake_for(effective, odds)
    max_pool_size = effective + current_max

    if max_pool_size > 0:
        ratio = Fraction(effective + total_bettor_stake, max_pool_size) * 100
        fill = float(min(Fraction(100), ratio))
    else:
        fill = 0.0

    avg_bet = total_bettor_stake // bet_count if bet_count > 0 else 0

    return PoolProgress(
        pool_id=pool_id,
        creator_stake=creator_stake,
        total_creator_side_stake=total_creator_side_stake,
        total_bettor_stake=total_bettor_stake,
        effective_creator_side_stake=effective,
        current_max_bettor_stake=current_max,
        max_pool_size=max_pool_size,
        fill_percentage=fill,
        participants=participants,
        bet_count=bet_count,
        avg_bet=avg_bet,
        last_updated=now or datetime.now(UTC),
    )
