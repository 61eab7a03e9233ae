import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from playwright.async_api import Error as PlaywrightError

from replay_service_lib.service_errors import MessagingUnavailable
from replay_service_lib.service_messaging import is_context_gone, page_call, post_to_page, send_to_page


def test_context_gone_markers():
    assert is_context_gone(Exception("Execution context was destroyed, most likely because of a navigation"))
    assert is_context_gone(Exception("Target page, context or browser has been closed"))
    assert not is_context_gone(Exception("Timeout 30000ms exceeded"))


def test_page_call_translates_teardown_only():
    with pytest.raises(MessagingUnavailable):
        with page_call():
            raise PlaywrightError("Frame was detached")
    with pytest.raises(PlaywrightError):
        with page_call():
            raise PlaywrightError("SyntaxError: unexpected token")


def test_send_to_closed_page():
    page = Mock()
    page.is_closed.return_value = True
    with pytest.raises(MessagingUnavailable):
        asyncio.run(send_to_page(page, "() => 1"))


def test_post_to_page_swallows_teardown():
    page = Mock()
    page.is_closed.return_value = False
    page.evaluate = AsyncMock(side_effect=PlaywrightError("Target closed"))
    assert asyncio.run(post_to_page(page, "() => 1")) is False
    assert asyncio.run(post_to_page(None, "() => 1")) is False

    page.evaluate = AsyncMock(return_value=1)
    assert asyncio.run(post_to_page(page, "() => 1")) is True
    page.evaluate.assert_awaited_once_with("() => 1")
