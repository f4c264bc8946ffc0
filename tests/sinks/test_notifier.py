"""Tests for user notifications."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from bitredict_sync.sinks.notifier import (
    BET_WON,
    POOL_CREATED,
    SLIP_EVALUATED,
    Notifier,
    render,
)

USER = "0x" + "AB" * 20


class TestRender:
    def test_pool_created(self) -> None:
        title, message = render(POOL_CREATED, {"poolId": "7", "title": "Arsenal vs Chelsea"})

        assert title == "Pool Created"
        assert message == 'Your pool "Arsenal vs Chelsea" is now live!'

    def test_bet_won_defaults_currency(self) -> None:
        _, message = render(BET_WON, {"poolId": "7", "amount": "1.5"})
        assert message == 'Won 1.5 STT on "#7"'

    def test_missing_values(self) -> None:
        _, message = render(SLIP_EVALUATED, {"slipId": 3})
        assert message == "Slip #3 scored ?/?"

    def test_unknown_kind(self) -> None:
        title, message = render("cycle_started", {"message": "Cycle 4 is open"})
        assert title == "Cycle Started"
        assert message == "Cycle 4 is open"


class TestNotifier:
    @pytest.mark.asyncio
    async def test_persists_and_pushes(self, store, mock_broadcaster) -> None:
        notifier = Notifier(store, mock_broadcaster)

        stored = await notifier.notify(USER, POOL_CREATED, {"poolId": "7", "title": "Derby"})

        assert stored is not None
        assert stored.user_address == USER.lower()
        assert notifier.sent == 1
        channels = [c.args[0] for c in mock_broadcaster.broadcast.await_args_list]
        assert channels == [f"user:{USER.lower()}"] * 2
        first, second = (c.args[1] for c in mock_broadcaster.broadcast.await_args_list)
        assert first["type"] == "notification"
        assert first["notification"]["title"] == "Pool Created"
        assert second == {"type": "unread_count", "count": 1}
        assert len(await store.list_notifications(USER)) == 1

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self, mock_broadcaster) -> None:
        store = MagicMock()
        store.create_notification = AsyncMock(side_effect=RuntimeError("db down"))
        notifier = Notifier(store, mock_broadcaster)

        assert await notifier.notify(USER, POOL_CREATED, {}) is None
        assert notifier.failed == 1
        mock_broadcaster.broadcast.assert_not_awaited()
