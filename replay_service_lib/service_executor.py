from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .service_dom import DomDocument, DomNode
from .service_errors import ElementDisabled, ElementNotVisible, MessagingUnavailable
from .service_models import Action, DisclosureProfile, ExecutionOutcome, PlaybackTimings

logger = logging.getLogger("service")

BOOLEAN_INPUT_TYPES = frozenset({"checkbox", "radio"})


class ActionExecutor:
    """Performs one recorded Action against an already resolved element."""

    def __init__(self, timings: Optional[PlaybackTimings] = None, disclosure: Optional[DisclosureProfile] = None):
        self.timings = timings or PlaybackTimings()
        self.disclosure = disclosure or DisclosureProfile()

    async def apply(self, doc: DomDocument, node: DomNode, action: Action) -> ExecutionOutcome:
        await node.scroll_into_view()
        await asyncio.sleep(self.timings.scroll_settle)
        await node.highlight()

        if action.type == "input":
            await self._perform_input(node, action)
            return ExecutionOutcome()

        if await self._is_toggle(node):
            return await self._open_disclosure(node)

        await self._ensure_region_open(node)

        if not await node.is_visible():
            alternative = await self._visible_submit(doc, action.value) if action.value else None
            if alternative is None:
                raise ElementNotVisible(action.selector, "hidden after disclosure handling")
            logger.info("[execute] using visible submit with value %r instead", action.value)
            node = alternative
            await node.highlight()

        if await node.is_disabled():
            raise ElementDisabled(action.selector)

        await self._perform_click(node)
        return ExecutionOutcome()

    # ----------------------------- disclosure ---------------------------
    async def _is_toggle(self, node: DomNode) -> bool:
        if await node.matches(self.disclosure.toggle_selector):
            return True
        return await node.closest(self.disclosure.toggle_selector) is not None

    async def _is_open(self, container: Optional[DomNode], toggle: Optional[DomNode]) -> bool:
        if container is not None:
            classes = (await container.get_attribute("class") or "").split()
            if self.disclosure.open_class in classes:
                return True
        if toggle is not None and (await toggle.get_attribute("aria-expanded")) == "true":
            return True
        return False

    async def _open_disclosure(self, node: DomNode) -> ExecutionOutcome:
        logger.info("[execute] clicking disclosure toggle")
        await node.activate()

        container = await node.closest(self.disclosure.container_selector)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timings.disclosure_open_wait
        is_open = await self._is_open(container, node)
        while not is_open and loop.time() < deadline:
            await asyncio.sleep(self.timings.disclosure_poll)
            is_open = await self._is_open(container, node)

        if is_open:
            logger.info("[execute] disclosure open")
        else:
            logger.warning("[execute] disclosure did not report open after %.1fs", self.timings.disclosure_open_wait)
        return ExecutionOutcome(toggled_disclosure=True, disclosure_open=is_open)

    async def _ensure_region_open(self, node: DomNode) -> None:
        d = self.disclosure
        container = await node.closest(d.container_selector)
        if container is None or await node.closest(d.item_selector) is None:
            return
        toggle = await container.query(d.toggle_button_selector)
        if toggle is None:
            return
        if await self._is_open(container, toggle) or await node.is_visible():
            logger.debug("[execute] disclosure already open")
            return

        logger.info("[execute] target is in a collapsed region, opening it first")
        await toggle.activate()
        await asyncio.sleep(self.timings.disclosure_open_wait)
        if not await node.is_visible():
            logger.info("[execute] target still hidden, toggling once more")
            await toggle.activate()
            await asyncio.sleep(self.timings.disclosure_open_wait)

    async def _visible_submit(self, doc: DomDocument, value: str) -> Optional[DomNode]:
        for candidate in await doc.query_all('input[type="submit"]'):
            if (await candidate.snapshot()).value == value and await candidate.is_visible():
                return candidate
        return None

    # ----------------------------- sequences ----------------------------
    async def _perform_click(self, node: DomNode) -> None:
        await node.focus()
        await asyncio.sleep(self.timings.click_step)
        try:
            await node.activate()
            await asyncio.sleep(self.timings.click_step)
            # some handlers only listen for the granular pointer events
            for event_type in ("mousedown", "mouseup", "click"):
                await node.dispatch_mouse(event_type)
        except MessagingUnavailable:
            logger.info("[execute] page went away after activation (navigated)")

    async def _perform_input(self, node: DomNode, action: Action) -> None:
        if action.input_type.lower() in BOOLEAN_INPUT_TYPES:
            await node.focus()
            await node.set_checked(bool(action.checked))
            await node.dispatch_event("change")
            return

        await node.focus()
        await asyncio.sleep(self.timings.input_step)
        await node.set_value(action.value)
        await node.dispatch_event("input")
        await asyncio.sleep(self.timings.input_step)
        await node.dispatch_event("change")
