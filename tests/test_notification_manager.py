"""
Tests for provider fallback in the notification manager.
"""

from unittest.mock import AsyncMock

import pytest

from passkey_readiness.managers.notification_manager import NotificationManager


def provider(name, side_effect=None):
    mock = AsyncMock(side_effect=side_effect)
    mock.__name__ = name
    return mock


class TestNotificationManager:
    @pytest.mark.asyncio
    async def test_falls_back_to_next_email_provider(self):
        broken = provider("broken", RuntimeError("smtp down"))
        working = provider("working")
        manager = NotificationManager(email_providers=[broken, working])

        assert await manager.send_email("dana@example.com", "Code", "Your code is 123456.") is True
        working.assert_awaited_once_with("dana@example.com", "Code", "Your code is 123456.")

    @pytest.mark.asyncio
    async def test_all_sms_providers_failing(self):
        manager = NotificationManager(sms_providers=[provider("a", RuntimeError("x")), provider("b", RuntimeError("y"))])

        assert await manager.send_sms("+15550100", "Your code is 123456.") is False

    @pytest.mark.asyncio
    async def test_console_providers_by_default(self, capsys):
        manager = NotificationManager()

        assert await manager.send_sms("+15550100", "Your code is 123456.") is True
        assert "[DEV SMS] To: +15550100" in capsys.readouterr().out
