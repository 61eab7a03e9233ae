"""
Shared fakes for the replay tests: an in-memory DOM with a small CSS matcher
and a tab host that serves those documents by URL.
"""
from __future__ import annotations

import asyncio
import inspect
import re
from typing import Callable, Optional

import pytest

from replay_service_lib.service_db import KEY_PROGRESS, MemoryStore
from replay_service_lib.service_errors import MessagingUnavailable
from replay_service_lib.service_models import ElementSnapshot, PlaybackTimings, RecorderTimings

SNAPSHOT_ATTRS = ("name", "data-drupal-selector", "data-test", "data-testid", "aria-label", "aria-expanded", "role")


# -------------------------------------------------------------------
# Mini CSS matcher (the selector forms the service produces and uses)
# -------------------------------------------------------------------
_TAG_RE = re.compile(r"[a-zA-Z*][\w-]*")
_IDENT_RE = re.compile(r"(?:\\.|[\w-])+")


def _unescape(s: str) -> str:
    return re.sub(r"\\(.)", r"\1", s)


def _split_top(selector: str, sep: str) -> list[str]:
    parts, buf, depth, quote = [], [], 0, None
    i = 0
    while i < len(selector):
        ch = selector[i]
        if quote:
            buf.append(ch)
            if ch == "\\" and i + 1 < len(selector):
                buf.append(selector[i + 1])
                i += 1
            elif ch == quote:
                quote = None
        elif ch in "\"'":
            quote = ch
            buf.append(ch)
        elif ch in "[(":
            depth += 1
            buf.append(ch)
        elif ch in "])":
            depth -= 1
            buf.append(ch)
        elif ch == sep and depth == 0:
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
        i += 1
    if quote or depth:
        raise ValueError(f"malformed selector {selector!r}")
    parts.append("".join(buf))
    return parts


def _parse_compound(text: str) -> list[tuple]:
    conds: list[tuple] = []
    i = 0
    m = _TAG_RE.match(text)
    if m:
        if m.group(0) != "*":
            conds.append(("tag", m.group(0).lower()))
        i = m.end()
    while i < len(text):
        ch = text[i]
        if ch in "#.":
            m = _IDENT_RE.match(text, i + 1)
            if not m:
                raise ValueError(f"bad selector part {text!r}")
            conds.append(("id" if ch == "#" else "class", _unescape(m.group(0))))
            i = m.end()
        elif ch == "[":
            end = i + 1
            quote = None
            while end < len(text):
                c = text[end]
                if quote:
                    if c == "\\":
                        end += 1
                    elif c == quote:
                        quote = None
                elif c in "\"'":
                    quote = c
                elif c == "]":
                    break
                end += 1
            body = text[i + 1 : end]
            m = re.fullmatch(r"\s*([\w-]+)\s*(?:(\^?=)\s*([\"'])(.*)\3)?\s*", body, re.S)
            if not m:
                raise ValueError(f"bad attribute selector {body!r}")
            name, op, _, value = m.groups()
            conds.append(("attr", name, op, _unescape(value) if value is not None else None))
            i = end + 1
        elif text.startswith(":nth-child(", i):
            end = text.index(")", i)
            conds.append(("nth", int(text[i + len(":nth-child(") : end])))
            i = end + 1
        else:
            raise ValueError(f"unsupported selector {text!r}")
    if not conds and text != "*":
        raise ValueError(f"empty selector part {text!r}")
    return conds


def parse_selector(selector: str) -> list[list[tuple]]:
    """Each alternative becomes [compound, combinator, compound, ...] right to left."""
    alternatives = []
    for alt in _split_top(selector, ","):
        alt = alt.strip()
        if not alt:
            raise ValueError(f"empty selector in {selector!r}")
        tokens = re.split(r"\s*(>)\s*|\s+", alt)
        chain: list = []
        pending_comb = None
        for tok in tokens:
            if tok is None or tok == "":
                continue
            if tok == ">":
                pending_comb = ">"
                continue
            if chain:
                chain.append(pending_comb or " ")
            chain.append(_parse_compound(tok))
            pending_comb = None
        alternatives.append(list(reversed(chain)))
    return alternatives


def _match_compound(node: "FakeNode", conds: list[tuple]) -> bool:
    for cond in conds:
        kind = cond[0]
        if kind == "tag" and node.tag != cond[1]:
            return False
        if kind == "id" and node.attrs.get("id") != cond[1]:
            return False
        if kind == "class" and cond[1] not in node.class_list:
            return False
        if kind == "attr":
            _, name, op, value = cond
            actual = node.attrs.get(name)
            if actual is None:
                return False
            if op == "=" and actual != value:
                return False
            if op == "^=" and (not value or not actual.startswith(value)):
                return False
        if kind == "nth":
            if node._parent is None or node._parent.children.index(node) + 1 != cond[1]:
                return False
    return True


def _match_chain(node: Optional["FakeNode"], chain: list) -> bool:
    if node is None or not _match_compound(node, chain[0]):
        return False
    if len(chain) == 1:
        return True
    comb, rest = chain[1], chain[2:]
    if comb == ">":
        return _match_chain(node._parent, rest)
    ancestor = node._parent
    while ancestor is not None:
        if _match_chain(ancestor, rest):
            return True
        ancestor = ancestor._parent
    return False


def css_matches(node: "FakeNode", selector: str) -> bool:
    return any(_match_chain(node, chain) for chain in _split_quoted_safe(selector))


def _split_quoted_safe(selector: str):
    # whitespace inside quoted values must not split compounds
    placeholders: list[str] = []

    def _stash(m: re.Match) -> str:
        placeholders.append(m.group(0))
        return f'"\x00{len(placeholders) - 1}\x00"'

    masked = re.sub(r'"(?:\\.|[^"\\])*"', _stash, selector)
    chains = parse_selector(masked)

    def _restore(conds):
        out = []
        for cond in conds:
            if cond[0] == "attr" and cond[3] is not None and cond[3].startswith("\x00"):
                idx = int(cond[3].strip("\x00"))
                out.append(("attr", cond[1], cond[2], _unescape(placeholders[idx][1:-1])))
            else:
                out.append(cond)
        return out

    return [[_restore(part) if isinstance(part, list) else part for part in chain] for chain in chains]


# -------------------------------------------------------------------
# Fake DOM
# -------------------------------------------------------------------
class FakeNode:
    def __init__(
        self,
        tag: str,
        id: str = "",
        classes: tuple[str, ...] = (),
        attrs: Optional[dict] = None,
        value: str = "",
        text: str = "",
        input_type: str = "",
        href: str = "",
        checked: Optional[bool] = None,
        visible: bool = True,
        disabled: bool = False,
        content_editable: bool = False,
        children: tuple["FakeNode", ...] = (),
    ):
        self.tag = tag.lower()
        self.attrs: dict[str, str] = dict(attrs or {})
        if id:
            self.attrs["id"] = id
        if classes:
            self.attrs["class"] = " ".join(classes)
        if input_type:
            self.attrs["type"] = input_type
        if value and self.tag == "input":
            self.attrs["value"] = value
        self.value = value
        self.text = text
        self.href = href
        self.checked = checked
        self.visible = visible
        self.disabled = disabled
        self.content_editable = content_editable
        self.selected_index: Optional[int] = None
        self.selected_text: Optional[str] = None

        self._parent: Optional[FakeNode] = None
        self.children: list[FakeNode] = []
        self.events: list[str] = []
        self.on_activate: list[Callable] = []
        self.gate: Optional[asyncio.Event] = None
        self.gone = False
        for child in children:
            self.append(child)

    def __repr__(self) -> str:
        return f"<FakeNode {self.tag}#{self.attrs.get('id', '')}>"

    def append(self, child: "FakeNode") -> "FakeNode":
        child._parent = self
        self.children.append(child)
        return child

    def iter(self):
        yield self
        for child in self.children:
            yield from child.iter()

    @property
    def class_list(self) -> list[str]:
        return self.attrs.get("class", "").split()

    def add_class(self, name: str) -> None:
        if name not in self.class_list:
            self.attrs["class"] = " ".join(self.class_list + [name])

    def _check(self) -> None:
        if self.gone:
            raise MessagingUnavailable("execution context was destroyed")

    def _shown(self) -> bool:
        node: Optional[FakeNode] = self
        while node is not None:
            if not node.visible:
                return False
            node = node._parent
        return True

    # DomNode protocol
    async def snapshot(self) -> ElementSnapshot:
        self._check()
        siblings = self._parent.children if self._parent else [self]
        text = self.text + "".join(c.text for c in self.iter() if c is not self)
        return ElementSnapshot(
            tag_name=self.tag.upper(),
            id=self.attrs.get("id", ""),
            input_type=self.attrs.get("type", ""),
            value=self.value,
            text=text[:100],
            href=self.href,
            name=self.attrs.get("name", ""),
            class_name=self.attrs.get("class", ""),
            checked=self.checked,
            selected_index=self.selected_index,
            selected_text=self.selected_text,
            content_editable=self.content_editable,
            attributes={k: v for k, v in self.attrs.items() if k in SNAPSHOT_ATTRS},
            sibling_index=siblings.index(self) + 1 if self._parent else 0,
            same_tag_siblings=sum(1 for s in siblings if s.tag == self.tag),
            visible=self._shown(),
            disabled=self.disabled,
        )

    async def parent(self) -> Optional["FakeNode"]:
        self._check()
        return self._parent

    async def closest(self, selector: str) -> Optional["FakeNode"]:
        self._check()
        node: Optional[FakeNode] = self
        while node is not None:
            if css_matches(node, selector):
                return node
            node = node._parent
        return None

    async def query(self, selector: str) -> Optional["FakeNode"]:
        self._check()
        for node in self.iter():
            if node is not self and css_matches(node, selector):
                return node
        return None

    async def matches(self, selector: str) -> bool:
        self._check()
        return css_matches(self, selector)

    async def get_attribute(self, name: str) -> Optional[str]:
        self._check()
        return self.attrs.get(name)

    async def is_visible(self) -> bool:
        self._check()
        return self._shown()

    async def is_disabled(self) -> bool:
        self._check()
        return self.disabled

    async def scroll_into_view(self) -> None:
        self._check()
        self.events.append("scroll")

    async def highlight(self) -> None:
        self._check()
        self.events.append("highlight")

    async def focus(self) -> None:
        self._check()
        self.events.append("focus")

    async def activate(self) -> None:
        self._check()
        self.events.append("activate")
        if self.gate is not None:
            await self.gate.wait()
        for callback in list(self.on_activate):
            res = callback(self)
            if inspect.isawaitable(res):
                await res

    async def dispatch_mouse(self, event_type: str) -> None:
        self._check()
        self.events.append(event_type)

    async def dispatch_event(self, event_type: str) -> None:
        self._check()
        self.events.append(event_type)

    async def set_value(self, value: str) -> None:
        self._check()
        self.value = value
        self.events.append("set_value")

    async def set_checked(self, checked: bool) -> None:
        self._check()
        self.checked = checked
        self.events.append("set_checked")


class FakeDocument:
    def __init__(self, *body_children: FakeNode):
        self.body = FakeNode("body", children=body_children)
        self.root = FakeNode("html", children=(self.body,))
        self.gone = False

    def select(self, selector: str) -> list[FakeNode]:
        if self.gone:
            raise MessagingUnavailable("document is gone")
        chains = _split_quoted_safe(selector)
        return [n for n in self.root.iter() if any(_match_chain(n, c) for c in chains)]

    def find(self, selector: str) -> FakeNode:
        found = self.select(selector)
        assert found, f"no node for {selector}"
        return found[0]

    async def count(self, selector: str) -> int:
        return len(self.select(selector))

    async def query(self, selector: str) -> Optional[FakeNode]:
        found = self.select(selector)
        return found[0] if found else None

    async def query_all(self, selector: str) -> list[FakeNode]:
        return self.select(selector)


# -------------------------------------------------------------------
# Fake tab host
# -------------------------------------------------------------------
class FakeHost:
    """Serves FakeDocuments by URL; loads are fired shortly after a navigation unless auto_load is off."""

    def __init__(
        self,
        pages: dict[str, FakeDocument],
        start_url: str,
        tab_id: str = "tab-1",
        auto_load: bool = True,
        load_delay: float = 0.01,
        redirects: Optional[dict[str, str]] = None,
    ):
        self.pages = pages
        self.urls: dict[str, str] = {tab_id: start_url}
        self.active = tab_id
        self.auto_load = auto_load
        self.load_delay = load_delay
        self.redirects = dict(redirects or {})
        self.navigations: list[str] = []
        self.injections: list[str] = []
        self._listeners: dict[str, list] = {}

    def active_tab_id(self) -> Optional[str]:
        return self.active

    def has_tab(self, tab_id: str) -> bool:
        return tab_id in self.urls

    def tab_url(self, tab_id: str) -> Optional[str]:
        return self.urls.get(tab_id)

    async def navigate(self, tab_id: str, url: str) -> None:
        self.navigations.append(url)
        self.follow(tab_id, url)

    def follow(self, tab_id: str, url: str) -> None:
        """Page-initiated navigation (link click, form post)."""
        target = self.redirects.get(url, url)
        self.urls[tab_id] = target
        if self.auto_load:
            asyncio.get_running_loop().call_later(self.load_delay, self.fire_load, tab_id, target)

    def fire_load(self, tab_id: str, url: Optional[str] = None) -> None:
        if url is not None:
            self.urls[tab_id] = url
        for callback in list(self._listeners.get(tab_id, ())):
            callback(tab_id, self.urls[tab_id])

    async def inject(self, tab_id: str) -> None:
        self.injections.append(self.urls[tab_id])

    def document(self, tab_id: str) -> FakeDocument:
        return self.pages.get(self.urls[tab_id]) or FakeDocument()

    def add_load_listener(self, tab_id: str, callback) -> Callable[[], None]:
        self._listeners.setdefault(tab_id, []).append(callback)

        def remove() -> None:
            if callback in self._listeners.get(tab_id, []):
                self._listeners[tab_id].remove(callback)

        return remove


class SpyStore(MemoryStore):
    """MemoryStore that keeps every progress value written."""

    def __init__(self):
        super().__init__()
        self.progress_writes: list[dict] = []

    async def set(self, key, value):
        if key == KEY_PROGRESS:
            self.progress_writes.append(value)
        await super().set(key, value)


# -------------------------------------------------------------------
# Fixtures
# -------------------------------------------------------------------
@pytest.fixture
def fast_playback_timings() -> PlaybackTimings:
    return PlaybackTimings(
        scroll_settle=0,
        disclosure_open_wait=0.05,
        disclosure_poll=0.01,
        click_step=0,
        input_step=0,
        inject_settle=0,
        after_navigation_action=0,
        after_disclosure=0,
        after_input=0,
        after_click=0,
        navigation_fallback=0.2,
    )


@pytest.fixture
def fast_recorder_timings() -> RecorderTimings:
    return RecorderTimings(quiet_period=0.05, click_window=0.02, dedupe_window=0.3)
