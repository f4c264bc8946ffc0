"""Typed views of contract structs returned by view calls.

web3 returns structs as positional tuples; these dataclasses name the
fields and keep every integer as an arbitrary-precision Python int.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class PoolStruct:
    """On-chain `Pool` record as returned by `getPool(uint256)`."""

    creator: str
    odds: int
    flags: int
    oracle_type: int
    market_type: int
    creator_stake: int
    total_creator_side_stake: int
    max_bettor_stake: int
    total_bettor_stake: int
    predicted_outcome: bytes
    result: bytes
    event_start_time: int
    event_end_time: int
    betting_end_time: int
    result_timestamp: int
    arbitration_deadline: int
    max_bet_per_user: int
    league: bytes
    category: bytes
    region: bytes
    home_team: bytes
    away_team: bytes
    title: bytes
    market_id: str

    @classmethod
    def from_tuple(cls, raw: tuple[Any, ...] | list[Any]) -> PoolStruct:
        if len(raw) != 25:
            raise ValueError(f"Pool struct has {len(raw)} fields, expected 25")
        return cls(
            creator=str(raw[0]),
            odds=int(raw[1]),
            flags=int(raw[2]),
            oracle_type=int(raw[3]),
            market_type=int(raw[4]),
            # raw[5] is a reserved padding byte.
            creator_stake=int(raw[6]),
            total_creator_side_stake=int(raw[7]),
            max_bettor_stake=int(raw[8]),
            total_bettor_stake=int(raw[9]),
            predicted_outcome=bytes(raw[10]),
            result=bytes(raw[11]),
            event_start_time=int(raw[12]),
            event_end_time=int(raw[13]),
            betting_end_time=int(raw[14]),
            result_timestamp=int(raw[15]),
            arbitration_deadline=int(raw[16]),
            max_bet_per_user=int(raw[17]),
            league=bytes(raw[18]),
            category=bytes(raw[19]),
            region=bytes(raw[20]),
            home_team=bytes(raw[21]),
            away_team=bytes(raw[22]),
            title=bytes(raw[23]),
            market_id=str(raw[24]),
        )


@dataclass(frozen=True)
class Prediction:
    match_id: int
    bet_type: int
    selection: str
    selected_odd: int

    def to_json(self) -> dict[str, Any]:
        return {
            "matchId": str(self.match_id),
            "betType": self.bet_type,
            "selection": self.selection,
            "selectedOdd": self.selected_odd,
        }


@dataclass(frozen=True)
class SlipStruct:
    """On-chain Oddyssey slip as returned by `getSlip(uint256)`."""

    player: str
    cycle_id: int
    placed_at: int
    predictions: tuple[Prediction, ...]
    final_score: int
    correct_count: int
    is_evaluated: bool

    @classmethod
    def from_tuple(cls, raw: tuple[Any, ...] | list[Any]) -> SlipStruct:
        if len(raw) != 7:
            raise ValueError(f"Slip struct has {len(raw)} fields, expected 7")
        predictions = tuple(
            Prediction(
                match_id=int(p[0]),
                bet_type=int(p[1]),
                selection=str(p[2]),
                selected_odd=int(p[3]),
            )
            for p in raw[3]
        )
        return cls(
            player=str(raw[0]),
            cycle_id=int(raw[1]),
            placed_at=int(raw[2]),
            predictions=predictions,
            final_score=int(raw[4]),
            correct_count=int(raw[5]),
            is_evaluated=bool(raw[6]),
        )


@dataclass(frozen=True)
class MatchStruct:
    match_id: int
    start_time: int
    odds_home: int
    odds_draw: int
    odds_away: int
    odds_over: int
    odds_under: int

    @classmethod
    def from_tuple(cls, raw: tuple[Any, ...] | list[Any]) -> MatchStruct:
        return cls(
            match_id=int(raw[0]),
            start_time=int(raw[1]),
            odds_home=int(raw[2]),
            odds_draw=int(raw[3]),
            odds_away=int(raw[4]),
            odds_over=int(raw[5]),
            odds_under=int(raw[6]),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "id": str(self.match_id),
            "startTime": self.start_time,
            "oddsHome": self.odds_home,
            "oddsDraw": self.odds_draw,
            "oddsAway": self.odds_away,
            "oddsOver": self.odds_over,
            "oddsUnder": self.odds_under,
        }


@dataclass(frozen=True)
class CycleStruct:
    """`cycleInfo(uint256)` plus the cycle's daily matches."""

    cycle_id: int
    start_time: int
    end_time: int
    prize_pool: int
    slip_count: int
    evaluated_slips: int
    state: int
    has_winner: bool
    matches: tuple[MatchStruct, ...] = field(default_factory=tuple)

    @classmethod
    def from_tuple(
        cls,
        cycle_id: int,
        raw: tuple[Any, ...] | list[Any],
        matches: tuple[Any, ...] | list[Any] = (),
    ) -> CycleStruct:
        if len(raw) != 7:
            raise ValueError(f"Cycle info has {len(raw)} fields, expected 7")
        return cls(
            cycle_id=cycle_id,
            start_time=int(raw[0]),
            end_time=int(raw[1]),
            prize_pool=int(raw[2]),
            slip_count=int(raw[3]),
            evaluated_slips=int(raw[4]),
            state=int(raw[5]),
            has_winner=bool(raw[6]),
            matches=tuple(MatchStruct.from_tuple(m) for m in matches),
        )


__all__ = ["CycleStruct", "MatchStruct", "PoolStruct", "Prediction", "SlipStruct"]
