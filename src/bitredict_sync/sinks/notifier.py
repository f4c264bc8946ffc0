"""User notifications: persisted rows plus a push on `user:{address}`."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from bitredict_sync.storage.repos import NotificationDTO

if TYPE_CHECKING:
    from bitredict_sync.sinks.broadcast import BroadcastSink
    from bitredict_sync.storage.persistence import EventStore

logger = logging.getLogger(__name__)

POOL_CREATED = "pool_created"
POOL_SETTLED = "pool_settled"
BET_WON = "bet_won"
BET_LOST = "bet_lost"
SLIP_PLACED = "slip_placed"
SLIP_EVALUATED = "slip_evaluated"
PRIZE_AVAILABLE = "prize_available"

_TEMPLATES: dict[str, tuple[str, str]] = {
    POOL_CREATED: ("Pool Created", 'Your pool "{title}" is now live!'),
    POOL_SETTLED: ("Market Resolved", 'Pool "{title}" has been settled'),
    BET_WON: ("You Won!", 'Won {amount} {currency} on "{title}"'),
    BET_LOST: ("Bet Closed", 'Pool "{title}" was settled'),
    SLIP_PLACED: ("Slip Placed", "Your slip #{slipId} is in for cycle {cycleId}"),
    SLIP_EVALUATED: ("Slip Evaluated", "Slip #{slipId} scored {correctPredictions}/{totalPredictions}"),
    PRIZE_AVAILABLE: ("Prize Available", "Slip #{slipId} won a prize in cycle {cycleId}"),
}


class _Defaults(dict[str, Any]):
    def __missing__(self, key: str) -> str:
        return "?"


def render(kind: str, payload: dict[str, Any]) -> tuple[str, str]:
    title, message = _TEMPLATES.get(kind, (kind.replace("_", " ").title(), "{message}"))
    values = _Defaults(payload)
    values.setdefault("title", payload.get("poolTitle") or f"#{payload.get('poolId', '?')}")
    values.setdefault("currency", "STT")
    return title, message.format_map(values)


class Notifier:
    """Delivers notifications; failures are logged and swallowed."""

    def __init__(self, store: EventStore, broadcaster: BroadcastSink) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self.sent = 0
        self.failed = 0

    async def notify(self, user: str, kind: str, payload: dict[str, Any]) -> NotificationDTO | None:
        address = user.lower()
        try:
            title, message = render(kind, payload)
            stored, unread = await self._store.create_notification(
                NotificationDTO(
                    user_address=address,
                    type=kind,
                    title=title,
                    message=message,
                    data=payload,
                )
            )
            channel = f"user:{address}"
            await self._broadcaster.broadcast(
                channel, {"type": "notification", "notification": stored.to_payload()}
            )
            await self._broadcaster.broadcast(channel, {"type": "unread_count", "count": unread})
        except Exception as e:
            self.failed += 1
            logger.warning("Notification %s for %s failed: %s", kind, address, e)
            return None
        self.sent += 1
        return stored
