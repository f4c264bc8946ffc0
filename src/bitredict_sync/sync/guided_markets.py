"""Link guided-oracle pools to the markets their resolver bots watch.

Football pools get a `football_prediction_markets` row with a normalized
outcome label; crypto pools get a `crypto_prediction_markets` row parsed
from predictions like "BTC > $130,000". Linking is optional: failures are
logged and never fail the pool write that triggered them.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bitredict_sync.storage.persistence import EventStore
    from bitredict_sync.storage.repos import PoolDTO

logger = logging.getLogger(__name__)

GUIDED_ORACLE = 0

COINPAPRIKA_IDS: dict[str, str] = {
    "BTC": "btc-bitcoin",
    "ETH": "eth-ethereum",
    "BNB": "bnb-binance-coin",
    "ADA": "ada-cardano",
    "SOL": "sol-solana",
    "DOT": "dot-polkadot",
    "LINK": "link-chainlink",
    "LTC": "ltc-litecoin",
    "MATIC": "matic-polygon",
    "AVAX": "avax-avalanche",
    "UNI": "uni-uniswap",
}

_CRYPTO_RE = re.compile(
    r"^([A-Z]+)\s*(?:([><=]+)|(above|below))\s*\$?([0-9,]+(?:\.\d+)?)$", re.IGNORECASE
)
_GOAL_LINES = ("0.5", "1.5", "2.5", "3.5")


@dataclass(frozen=True)
class CryptoPrediction:
    coin: str
    coinpaprika_id: str
    direction: str
    target_price: Decimal


def normalize_football_outcome(predicted: str, home_team: str | None, away_team: str | None) -> str:
    """Map a free-text outcome onto the resolver's standard labels."""
    outcome = predicted.lower().strip()

    if home_team and home_team.lower() in outcome:
        return "Home wins"
    if away_team and away_team.lower() in outcome:
        return "Away wins"
    if "draw" in outcome or outcome == "x":
        return "Draw"

    for side in ("over", "under"):
        if side in outcome:
            for line in _GOAL_LINES:
                if line in outcome:
                    return f"{side.title()} {line} goals"

    if "not both" in outcome or ("btts" in outcome and "no" in outcome):
        return "Not both teams to score"
    if "both" in outcome and "score" in outcome:
        return "Both teams to score"

    return predicted


def football_outcome_type(outcome: str) -> str:
    text = outcome.lower()
    if "home wins" in text or "away wins" in text or text == "draw":
        return "1X2"
    for line in _GOAL_LINES:
        if line in text:
            return "OU" + line.replace(".", "")
    if "both" in text and "score" in text:
        return "BTTS"
    return "1X2"


def parse_crypto_prediction(predicted: str) -> CryptoPrediction | None:
    """Parse "BTC > $130,000" / "SOL below 200" style predictions."""
    match = _CRYPTO_RE.match(predicted.strip())
    if match is None:
        return None
    coin, operator, keyword, price = match.groups()

    if operator:
        if ">" in operator:
            direction = "above"
        elif "<" in operator:
            direction = "below"
        else:
            return None
    else:
        direction = keyword.lower()

    coinpaprika_id = COINPAPRIKA_IDS.get(coin.upper())
    if coinpaprika_id is None:
        logger.warning("Unknown crypto coin in prediction: %s", coin)
        return None
    try:
        target = Decimal(price.replace(",", ""))
    except InvalidOperation:
        return None
    return CryptoPrediction(
        coin=coin.upper(), coinpaprika_id=coinpaprika_id, direction=direction, target_price=target
    )


class GuidedMarketLinker:
    """Creates the resolver-market rows for guided pools."""

    def __init__(self, store: EventStore) -> None:
        self._store = store

    async def link(self, pool: PoolDTO) -> str | None:
        """Link `pool` if it is a guided football or crypto market.

        Returns:
            "football", "crypto", or None when nothing was linked.
        """
        if pool.oracle_type != GUIDED_ORACLE:
            return None
        category = (pool.category or "").lower()
        try:
            if "football" in category or "soccer" in category:
                return await self._link_football(pool)
            if "crypto" in category:
                return await self._link_crypto(pool)
        except Exception as e:
            logger.error("Failed to link pool %s to its %s market: %s", pool.pool_id, category, e)
        return None

    async def _link_football(self, pool: PoolDTO) -> str | None:
        if not pool.market_id:
            logger.warning("Pool %s: no market_id for football pool", pool.pool_id)
            return None
        outcome = normalize_football_outcome(pool.predicted_outcome or "", pool.home_team, pool.away_team)
        outcome_type = football_outcome_type(outcome)
        await self._store.link_football_market(
            pool_id=pool.pool_id,
            market_id=pool.market_id,
            outcome_type=outcome_type,
            predicted_outcome=outcome[:50],
            end_time=pool.event_end_time,
        )
        logger.info("Linked pool %s to football market (%s: %s)", pool.pool_id, outcome_type, outcome)
        return "football"

    async def _link_crypto(self, pool: PoolDTO) -> str | None:
        if not pool.market_id:
            logger.warning("Pool %s: no market_id for crypto pool", pool.pool_id)
            return None
        prediction = parse_crypto_prediction(pool.predicted_outcome or "")
        if prediction is None:
            logger.warning(
                "Pool %s: could not parse crypto prediction %r", pool.pool_id, pool.predicted_outcome
            )
            return None
        await self._store.link_crypto_market(
            pool_id=pool.pool_id,
            market_id=pool.market_id,
            coinpaprika_id=prediction.coinpaprika_id,
            target_price=prediction.target_price,
            direction=prediction.direction,
            end_time=pool.event_end_time,
        )
        logger.info(
            "Linked pool %s to crypto market (%s %s %s)",
            pool.pool_id,
            prediction.coin,
            prediction.direction,
            prediction.target_price,
        )
        return "crypto"
