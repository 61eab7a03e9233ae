from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import socket
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

import httpx
from playwright.async_api import BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError

from .service_config import BASE_PROFILE_DIR, CHROME_BIN, HEADLESS, NAVIGATION_TIMEOUT_MS, START_URL
from .service_dom import CAPTURE_BINDING, CAPTURE_SCRIPT, PageDocument, PageNode
from .service_errors import MessagingUnavailable
from .service_messaging import post_to_page, send_to_page
from .service_models import ElementSnapshot
from .service_navigation import LoadCallback
from .service_recorder import CaptureEvent

logger = logging.getLogger("service")

CaptureHandler = Callable[[CaptureEvent], Awaitable[None]]


def pick_free_port() -> int:
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


async def wait_for_cdp_json_version(port: int, timeout_s: float = 25.0) -> dict:
    url = f"http://127.0.0.1:{port}/json/version"
    start = time.time()
    async with httpx.AsyncClient() as client:
        while time.time() - start < timeout_s:
            try:
                resp = await client.get(url, timeout=2.0)
                if resp.status_code == 200:
                    return resp.json()
            except httpx.HTTPError:
                pass
            await asyncio.sleep(0.2)
    raise RuntimeError(f"CDP /json/version not ready on port {port}")


class BrowserHost:
    """
    Tabs, capture surface and load signal on top of one Playwright BrowserContext.

    Tab ids are `tab-<n>` in open order. The capture script is installed for
    every new document and re-evaluated on demand through inject().
    """

    def __init__(self, headless: bool = HEADLESS, chrome_bin: Optional[str] = CHROME_BIN, start_url: str = START_URL):
        self.headless = headless
        self.chrome_bin = chrome_bin
        self.start_url = start_url
        self.on_capture: Optional[CaptureHandler] = None

        self.playwright = None
        self.browser = None
        self.context: Optional[BrowserContext] = None
        self.chrome_proc: Optional[asyncio.subprocess.Process] = None

        self._pages: dict[str, Page] = {}
        self._tab_ids: dict[int, str] = {}
        self._seq = 0
        self._last_capture_tab: Optional[str] = None
        self._load_listeners: dict[str, list[LoadCallback]] = {}
        self._capture_lock = asyncio.Lock()

    # ----------------------------- lifecycle ----------------------------
    async def start(self) -> None:
        self.playwright = await async_playwright().start()
        if self.chrome_bin:
            ws = await self._launch_chrome()
            self.browser = await self.playwright.chromium.connect_over_cdp(ws)
            self.context = self.browser.contexts[0] if self.browser.contexts else await self.browser.new_context()
            logger.info("[browser] attached to %s over CDP", self.chrome_bin)
        else:
            self.browser = await self.playwright.chromium.launch(
                headless=self.headless,
                args=["--no-sandbox", "--disable-dev-shm-usage"],
            )
            self.context = await self.browser.new_context()
            logger.info("[browser] launched bundled chromium (headless=%s)", self.headless)

        await self.context.expose_binding(CAPTURE_BINDING, self._on_binding, handle=True)
        await self.context.add_init_script(CAPTURE_SCRIPT)
        self.context.on("page", self._register)

        for page in self.context.pages:
            self._register(page)
            await post_to_page(page, CAPTURE_SCRIPT)

        if not self._pages:
            page = await self.context.new_page()
            self._register(page)
            if self.start_url and self.start_url != "about:blank":
                await self.navigate(self._tab_ids[id(page)], self.start_url)

    async def _launch_chrome(self) -> str:
        port = pick_free_port()
        profile = BASE_PROFILE_DIR / f"profile-{uuid.uuid4().hex[:10]}"
        profile.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.chrome_bin,
            f"--remote-debugging-port={port}",
            f"--user-data-dir={profile}",
            "--no-first-run",
            "--no-default-browser-check",
            "--disable-background-networking",
            "--disable-sync",
            "--disable-dev-shm-usage",
        ]
        if self.headless:
            cmd.append("--headless=new")
        self.chrome_proc = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.DEVNULL
        )
        ver = await wait_for_cdp_json_version(port, timeout_s=25.0)
        ws = ver.get("webSocketDebuggerUrl")
        if not ws:
            raise RuntimeError(f"webSocketDebuggerUrl missing: {json.dumps(ver)}")
        return ws

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            if self.context:
                await self.context.close()
        with contextlib.suppress(Exception):
            if self.browser:
                await self.browser.close()
        with contextlib.suppress(Exception):
            if self.playwright:
                await self.playwright.stop()
        with contextlib.suppress(ProcessLookupError):
            if self.chrome_proc and self.chrome_proc.returncode is None:
                self.chrome_proc.kill()
        self._pages.clear()
        self._tab_ids.clear()

    # ----------------------------- tabs ---------------------------------
    def _register(self, page: Page) -> None:
        if id(page) in self._tab_ids:
            return
        self._seq += 1
        tab_id = f"tab-{self._seq}"
        self._pages[tab_id] = page
        self._tab_ids[id(page)] = tab_id
        page.on("load", lambda p: self._on_load(tab_id, p))
        page.on("close", lambda p: self._on_close(tab_id, p))
        logger.info("[browser] opened %s", tab_id)

    def _on_close(self, tab_id: str, page: Page) -> None:
        self._pages.pop(tab_id, None)
        self._tab_ids.pop(id(page), None)
        self._load_listeners.pop(tab_id, None)
        if self._last_capture_tab == tab_id:
            self._last_capture_tab = None
        logger.info("[browser] closed %s", tab_id)

    def _page(self, tab_id: str) -> Page:
        page = self._pages.get(tab_id)
        if page is None or page.is_closed():
            raise MessagingUnavailable(f"tab {tab_id} is not open")
        return page

    def has_tab(self, tab_id: str) -> bool:
        page = self._pages.get(tab_id)
        return page is not None and not page.is_closed()

    def active_tab_id(self) -> Optional[str]:
        if self._last_capture_tab and self.has_tab(self._last_capture_tab):
            return self._last_capture_tab
        open_tabs = [tid for tid in self._pages if self.has_tab(tid)]
        return open_tabs[-1] if open_tabs else None

    def tab_url(self, tab_id: str) -> Optional[str]:
        page = self._pages.get(tab_id)
        if page is None or page.is_closed():
            return None
        return page.url

    def document(self, tab_id: str) -> PageDocument:
        return PageDocument(self._page(tab_id))

    async def navigate(self, tab_id: str, url: str) -> None:
        page = self._page(tab_id)
        try:
            await page.goto(url, wait_until="commit", timeout=NAVIGATION_TIMEOUT_MS)
        except PlaywrightError as exc:
            # readiness is observed through the load signal, not here
            logger.warning("[browser] navigation of %s to %s reported: %s", tab_id, url, exc)

    async def inject(self, tab_id: str) -> None:
        await send_to_page(self._page(tab_id), CAPTURE_SCRIPT)

    # ----------------------------- signals ------------------------------
    def add_load_listener(self, tab_id: str, callback: LoadCallback) -> Callable[[], None]:
        self._load_listeners.setdefault(tab_id, []).append(callback)

        def remove() -> None:
            listeners = self._load_listeners.get(tab_id)
            if listeners and callback in listeners:
                listeners.remove(callback)

        return remove

    def _on_load(self, tab_id: str, page: Page) -> None:
        url = page.url
        for callback in list(self._load_listeners.get(tab_id, ())):
            try:
                callback(tab_id, url)
            except Exception:
                logger.exception("[browser] load listener failed for %s", tab_id)

    async def _on_binding(self, source: Any, payload: Any) -> None:
        # the lock keeps capture events in page order
        async with self._capture_lock:
            page: Page = source["page"]
            if source["frame"] != page.main_frame:
                return
            tab_id = self._tab_ids.get(id(page))
            if tab_id is None:
                return
            try:
                data = await payload.evaluate("p => p.event")
                target = (await payload.evaluate_handle("p => p.target")).as_element()
            except PlaywrightError as exc:
                logger.debug("[browser] capture payload unavailable: %s", exc)
                return

            self._last_capture_tab = tab_id
            if self.on_capture is None:
                return
            ev = CaptureEvent(
                kind=str(data.get("type") or ""),
                key=str(data.get("key") or ""),
                snapshot=ElementSnapshot.model_validate(data.get("element") or {}),
                url=str(data.get("url") or page.url),
                node=PageNode(target) if target else None,
                document=PageDocument(page),
                client_x=data.get("clientX"),
                client_y=data.get("clientY"),
                timestamp=data.get("timestamp"),
                tab_id=tab_id,
            )
            try:
                await self.on_capture(ev)
            except Exception:
                logger.exception("[browser] capture handler failed for %s event", ev.kind)
