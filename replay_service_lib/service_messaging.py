from __future__ import annotations

import contextlib
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, Iterator, Optional, Union

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .service_errors import MessagingUnavailable
from .service_models import PlaybackNotice

logger = logging.getLogger("service")

NoticeListener = Callable[[PlaybackNotice], Union[Awaitable[None], None]]

_GONE_MARKERS = (
    "target closed",
    "target page, context or browser has been closed",
    "has been closed",
    "execution context was destroyed",
    "frame was detached",
    "not attached to the dom",
    "jshandle is disposed",
    "elementhandle is disposed",
    "cannot find context with specified id",
)


def is_context_gone(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return any(marker in msg for marker in _GONE_MARKERS)


@contextlib.contextmanager
def page_call() -> Iterator[None]:
    """Translate Playwright errors caused by a torn-down page into MessagingUnavailable."""
    try:
        yield
    except PlaywrightError as exc:
        if is_context_gone(exc):
            raise MessagingUnavailable(str(exc)) from exc
        raise


async def send_to_page(page: Page, script: str, arg: Any = None) -> Any:
    """Evaluate in the page and return the result (response-expected variant)."""
    if page.is_closed():
        raise MessagingUnavailable("page is closed")
    with page_call():
        if arg is None:
            return await page.evaluate(script)
        return await page.evaluate(script, arg)


async def post_to_page(page: Optional[Page], script: str, arg: Any = None) -> bool:
    """Fire-and-forget variant: a torn-down page is a no-op."""
    if page is None:
        return False
    try:
        await send_to_page(page, script, arg)
        return True
    except MessagingUnavailable as exc:
        logger.debug("[messaging] page unavailable, dropped message: %s", exc)
        return False


async def notify_listeners(listeners: Iterable[NoticeListener], notice: PlaybackNotice) -> None:
    for listener in list(listeners):
        try:
            res = listener(notice)
            if inspect.isawaitable(res):
                await res
        except MessagingUnavailable as exc:
            logger.debug("[messaging] listener unavailable for %s notice: %s", notice.kind, exc)
