"""Event and view-function ABIs for the Bitredict contracts.

Events are described once as `EventSpec` values; the canonical signature,
topic0 and the JSON ABI fragment are all derived from that description so
they cannot drift apart. Logs are decoded with eth_abi directly (indexed
arguments from topics[1:], the rest from data).
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from typing import Any

from eth_abi import decode as abi_decode
from web3 import Web3


@dataclass(frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSpec:
    name: str
    inputs: tuple[EventInput, ...]

    @cached_property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @cached_property
    def topic0(self) -> str:
        return Web3.to_hex(Web3.keccak(text=self.signature))

    def abi(self) -> dict[str, Any]:
        return {
            "anonymous": False,
            "type": "event",
            "name": self.name,
            "inputs": [{"name": i.name, "type": i.type, "indexed": i.indexed} for i in self.inputs],
        }

    def decode(self, topics: list[bytes], data: bytes) -> dict[str, Any]:
        """Decode indexed arguments from topics[1:] and the rest from data.

        Raises:
            ValueError: If the topic count does not match the indexed inputs.
        """
        indexed = [i for i in self.inputs if i.indexed]
        if len(topics) - 1 != len(indexed):
            raise ValueError(
                f"{self.signature}: expected {len(indexed)} indexed topics, got {len(topics) - 1}"
            )
        args: dict[str, Any] = {}
        for spec, topic in zip(indexed, topics[1:], strict=True):
            if spec.type in ("string", "bytes") or spec.type.endswith("]"):
                # Dynamic indexed values are stored as their keccak hash.
                args[spec.name] = topic
            else:
                args[spec.name] = abi_decode([spec.type], topic)[0]

        plain = [i for i in self.inputs if not i.indexed]
        if plain:
            values = abi_decode([i.type for i in plain], data)
            for spec, value in zip(plain, values, strict=True):
                args[spec.name] = value
        return args


def _event(name: str, *inputs: tuple[str, str] | tuple[str, str, bool]) -> EventSpec:
    return EventSpec(name=name, inputs=tuple(EventInput(*i) for i in inputs))


POOL_CREATED = _event(
    "PoolCreated",
    ("poolId", "uint256", True),
    ("creator", "address", True),
    ("eventStartTime", "uint256"),
    ("eventEndTime", "uint256"),
    ("oracleType", "uint8"),
    ("marketType", "uint8"),
    ("marketId", "string"),
    ("league", "string"),
    ("category", "string"),
)
BET_PLACED = _event(
    "BetPlaced",
    ("poolId", "uint256", True),
    ("bettor", "address", True),
    ("amount", "uint256"),
    ("isForOutcome", "bool"),
)
LIQUIDITY_ADDED = _event(
    "LiquidityAdded",
    ("poolId", "uint256", True),
    ("provider", "address", True),
    ("amount", "uint256"),
)
POOL_SETTLED = _event(
    "PoolSettled",
    ("poolId", "uint256", True),
    ("result", "bytes32"),
    ("creatorSideWon", "bool"),
    ("timestamp", "uint256"),
)
POOL_REFUNDED = _event(
    "PoolRefunded",
    ("poolId", "uint256", True),
    ("reason", "string"),
)
POOL_BOOSTED = _event(
    "PoolBoosted",
    ("poolId", "uint256", True),
    ("tier", "uint8"),
    ("expiry", "uint256"),
    ("fee", "uint256"),
    ("booster", "address"),
)
REPUTATION_ACTION_OCCURRED = _event(
    "ReputationActionOccurred",
    ("user", "address", True),
    ("action", "uint8"),
    ("value", "uint256"),
    ("poolId", "bytes32", True),
    ("timestamp", "uint256"),
)
CYCLE_STARTED = _event(
    "CycleStarted",
    ("cycleId", "uint256", True),
    ("endTime", "uint256"),
)
CYCLE_RESOLVED = _event(
    "CycleResolved",
    ("cycleId", "uint256", True),
    ("prizePool", "uint256"),
    ("totalSlips", "uint256"),
    ("timestamp", "uint256"),
)
SLIP_PLACED = _event(
    "SlipPlaced",
    ("cycleId", "uint256", True),
    ("player", "address", True),
    ("slipId", "uint256", True),
)
SLIP_EVALUATED = _event(
    "SlipEvaluated",
    ("slipId", "uint256", True),
    ("isWinner", "bool"),
    ("correctPredictions", "uint256"),
    ("totalPredictions", "uint256"),
)
PRIZE_CLAIMED = _event(
    "PrizeClaimed",
    ("player", "address", True),
    ("slipId", "uint256", True),
    ("prizeAmount", "uint256"),
)

EVENTS: dict[str, EventSpec] = {
    spec.name: spec
    for spec in (
        POOL_CREATED,
        BET_PLACED,
        LIQUIDITY_ADDED,
        POOL_SETTLED,
        POOL_REFUNDED,
        POOL_BOOSTED,
        REPUTATION_ACTION_OCCURRED,
        CYCLE_STARTED,
        CYCLE_RESOLVED,
        SLIP_PLACED,
        SLIP_EVALUATED,
        PRIZE_CLAIMED,
    )
}
EVENTS_BY_TOPIC: dict[str, EventSpec] = {spec.topic0: spec for spec in EVENTS.values()}


def get_event(name: str) -> EventSpec:
    """Look up an event by name.

    Raises:
        KeyError: For events this service does not know.
    """
    try:
        return EVENTS[name]
    except KeyError:
        raise KeyError(f"Unknown event: {name}") from None


# ----------------------------------------------------------------------------
# View functions
# ----------------------------------------------------------------------------


def _param(name: str, type_: str, components: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    param: dict[str, Any] = {"name": name, "type": type_}
    if components is not None:
        param["components"] = components
    return param


def _view(name: str, inputs: list[dict[str, Any]], outputs: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": inputs,
        "outputs": outputs,
    }


_POOL_COMPONENTS = [
    _param("creator", "address"),
    _param("odds", "uint16"),
    _param("flags", "uint8"),
    _param("oracleType", "uint8"),
    _param("marketType", "uint8"),
    _param("reserved", "uint8"),
    _param("creatorStake", "uint256"),
    _param("totalCreatorSideStake", "uint256"),
    _param("maxBettorStake", "uint256"),
    _param("totalBettorStake", "uint256"),
    _param("predictedOutcome", "bytes32"),
    _param("result", "bytes32"),
    _param("eventStartTime", "uint256"),
    _param("eventEndTime", "uint256"),
    _param("bettingEndTime", "uint256"),
    _param("resultTimestamp", "uint256"),
    _param("arbitrationDeadline", "uint256"),
    _param("maxBetPerUser", "uint256"),
    _param("league", "bytes32"),
    _param("category", "bytes32"),
    _param("region", "bytes32"),
    _param("homeTeam", "bytes32"),
    _param("awayTeam", "bytes32"),
    _param("title", "bytes32"),
    _param("marketId", "string"),
]

_PREDICTION_COMPONENTS = [
    _param("matchId", "uint64"),
    _param("betType", "uint8"),
    _param("selection", "string"),
    _param("selectedOdd", "uint32"),
]

_SLIP_COMPONENTS = [
    _param("player", "address"),
    _param("cycleId", "uint256"),
    _param("placedAt", "uint256"),
    _param("predictions", "tuple[10]", _PREDICTION_COMPONENTS),
    _param("finalScore", "uint256"),
    _param("correctCount", "uint8"),
    _param("isEvaluated", "bool"),
]

_MATCH_COMPONENTS = [
    _param("id", "uint64"),
    _param("startTime", "uint64"),
    _param("oddsHome", "uint32"),
    _param("oddsDraw", "uint32"),
    _param("oddsAway", "uint32"),
    _param("oddsOver", "uint32"),
    _param("oddsUnder", "uint32"),
    _param("result", "tuple", [_param("moneyline", "uint8"), _param("overUnder", "uint8")]),
]

POOL_CORE_ABI: list[dict[str, Any]] = [
    _view("getPool", [_param("poolId", "uint256")], [_param("", "tuple", _POOL_COMPONENTS)]),
    _view("poolCount", [], [_param("", "uint256")]),
    *(
        spec.abi()
        for spec in (
            POOL_CREATED,
            BET_PLACED,
            LIQUIDITY_ADDED,
            POOL_SETTLED,
            POOL_REFUNDED,
            POOL_BOOSTED,
            REPUTATION_ACTION_OCCURRED,
        )
    ),
]

ODDYSSEY_ABI: list[dict[str, Any]] = [
    _view("getSlip", [_param("slipId", "uint256")], [_param("", "tuple", _SLIP_COMPONENTS)]),
    _view("slipCount", [], [_param("", "uint256")]),
    _view("getCurrentCycle", [], [_param("", "uint256")]),
    _view(
        "cycleInfo",
        [_param("cycleId", "uint256")],
        [
            _param("startTime", "uint256"),
            _param("endTime", "uint256"),
            _param("prizePool", "uint256"),
            _param("slipCount", "uint32"),
            _param("evaluatedSlips", "uint32"),
            _param("state", "uint8"),
            _param("hasWinner", "bool"),
        ],
    ),
    _view(
        "getDailyMatches",
        [_param("cycleId", "uint256")],
        [_param("", "tuple[10]", _MATCH_COMPONENTS)],
    ),
    *(
        spec.abi()
        for spec in (
            CYCLE_STARTED,
            CYCLE_RESOLVED,
            SLIP_PLACED,
            SLIP_EVALUATED,
            PRIZE_CLAIMED,
            REPUTATION_ACTION_OCCURRED,
        )
    ),
]

COMBO_POOLS_ABI: list[dict[str, Any]] = [REPUTATION_ACTION_OCCURRED.abi()]
BOOST_SYSTEM_ABI: list[dict[str, Any]] = [POOL_BOOSTED.abi()]
