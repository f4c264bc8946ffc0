"""Tests for pool sizing and progress arithmetic."""

from __future__ import annotations

import random
from datetime import UTC, datetime

import pytest

from bitredict_sync.pool_math import (
    WEI_PER_TOKEN,
    compute_progress,
    effective_creator_side_stake,
    max_bettor_stake_for,
    recompute_max_bettor_stake,
    wei_to_tokens,
)

TOKEN = WEI_PER_TOKEN


def progress(**overrides):
    values = {
        "pool_id": 7,
        "creator_stake": 100 * TOKEN,
        "total_creator_side_stake": 100 * TOKEN,
        "total_bettor_stake": 0,
        "odds": 200,
        "participants": 0,
        "bet_count": 0,
    }
    values.update(overrides)
    return compute_progress(**values)


class TestEffectiveCreatorSideStake:
    def test_no_bets_counts_liquidity(self) -> None:
        assert effective_creator_side_stake(100, 300, 0) == 300

    def test_bets_within_creator_stake_ignore_liquidity(self) -> None:
        assert effective_creator_side_stake(100, 300, 50) == 100
        assert effective_creator_side_stake(100, 300, 100) == 100

    def test_bets_above_creator_stake_count_liquidity(self) -> None:
        assert effective_creator_side_stake(100, 300, 101) == 300


class TestMaxBettorStake:
    def test_even_odds(self) -> None:
        assert max_bettor_stake_for(100 * TOKEN, 200) == 100 * TOKEN

    def test_floor_division(self) -> None:
        # 10 * 100 / 75 = 13.33...
        assert max_bettor_stake_for(10, 175) == 13

    @pytest.mark.parametrize("odds", [100, 99, 0])
    def test_odds_at_or_below_base_rejected(self, odds: int) -> None:
        with pytest.raises(ValueError):
            max_bettor_stake_for(100, odds)

    def test_formula_holds_for_random_pools(self) -> None:
        rng = random.Random(20261018)
        for _ in range(200):
            creator = rng.randint(1, 10**24)
            lp = rng.choice([0, rng.randint(1, 10**24)])
            bets = rng.choice([0, rng.randint(1, 2 * creator)])
            odds = rng.randint(101, 10_000)

            effective = creator + lp if bets == 0 or bets > creator else creator
            expected = (effective * 100) // (odds - 100)

            assert recompute_max_bettor_stake(creator, creator + lp, bets, odds) == expected


class TestWeiToTokens:
    @pytest.mark.parametrize(
        ("wei", "expected"),
        [
            (0, "0"),
            (TOKEN, "1"),
            (3 * TOKEN // 2, "1.5"),
            (1, "0.000000000000000001"),
            (123 * TOKEN + 45 * TOKEN // 100, "123.45"),
        ],
    )
    def test_display(self, wei: int, expected: str) -> None:
        assert wei_to_tokens(wei) == expected


class TestComputeProgress:
    """Fill state for the pool lifecycle: create, bet, add liquidity, bet again."""

    def test_fresh_pool(self) -> None:
        result = progress()

        assert result.total_creator_side_stake == 100 * TOKEN
        assert result.current_max_bettor_stake == 100 * TOKEN
        assert result.max_pool_size == 200 * TOKEN
        assert result.fill_percentage == 50.0
        assert result.avg_bet == 0

    def test_after_first_bet(self) -> None:
        result = progress(total_bettor_stake=50 * TOKEN, participants=1, bet_count=1)

        assert result.current_max_bettor_stake == 100 * TOKEN
        assert result.fill_percentage == 75.0
        assert result.avg_bet == 50 * TOKEN

    def test_liquidity_ignored_while_bets_within_creator_stake(self) -> None:
        result = progress(
            total_creator_side_stake=200 * TOKEN,
            total_bettor_stake=50 * TOKEN,
            participants=1,
            bet_count=1,
        )

        assert result.effective_creator_side_stake == 100 * TOKEN
        assert result.current_max_bettor_stake == 100 * TOKEN

    def test_liquidity_counts_once_bets_exceed_creator_stake(self) -> None:
        result = progress(
            total_creator_side_stake=200 * TOKEN,
            total_bettor_stake=110 * TOKEN,
            participants=2,
            bet_count=2,
        )

        assert result.effective_creator_side_stake == 200 * TOKEN
        assert result.current_max_bettor_stake == 200 * TOKEN
        assert result.fill_percentage == 77.5

    def test_fill_is_capped_at_100(self) -> None:
        result = progress(total_bettor_stake=100 * TOKEN, bet_count=1)
        assert result.fill_percentage == 100.0

        overfilled = progress(total_bettor_stake=500 * TOKEN, bet_count=1)
        assert overfilled.fill_percentage == 100.0

    def test_fill_monotonic_in_bettor_stake_without_liquidity(self) -> None:
        rng = random.Random(7)
        for _ in range(50):
            creator = rng.randint(TOKEN, 1000 * TOKEN)
            odds = rng.randint(101, 1000)
            stakes = sorted(rng.randint(0, 2 * creator) for _ in range(10))
            fills = [
                progress(
                    creator_stake=creator,
                    total_creator_side_stake=creator,
                    total_bettor_stake=stake,
                    odds=odds,
                    bet_count=1,
                ).fill_percentage
                for stake in stakes
            ]
            assert fills == sorted(fills)

    def test_payload_stringifies_amounts(self) -> None:
        now = datetime(2026, 1, 1, tzinfo=UTC)
        payload = progress(
            total_bettor_stake=50 * TOKEN, participants=1, bet_count=1, now=now
        ).to_payload()

        assert payload["poolId"] == "7"
        assert payload["totalBettorStake"] == str(50 * TOKEN)
        assert payload["maxPoolSize"] == str(200 * TOKEN)
        assert payload["participants"] == payload["participantCount"] == 1
        assert payload["betCount"] == payload["totalBets"] == 1
        assert payload["fillPercentage"] == 75.0
        assert payload["lastUpdated"] == int(now.timestamp())
