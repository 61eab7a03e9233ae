from __future__ import annotations

from typing import Any, Optional, Protocol

from playwright.async_api import ElementHandle, JSHandle, Page

from .service_messaging import page_call
from .service_models import ElementSnapshot

CAPTURE_BINDING = "__replayCapture"


class DomNode(Protocol):
    async def snapshot(self) -> ElementSnapshot: ...
    async def parent(self) -> Optional["DomNode"]: ...
    async def closest(self, selector: str) -> Optional["DomNode"]: ...
    async def query(self, selector: str) -> Optional["DomNode"]: ...
    async def matches(self, selector: str) -> bool: ...
    async def get_attribute(self, name: str) -> Optional[str]: ...
    async def is_visible(self) -> bool: ...
    async def is_disabled(self) -> bool: ...
    async def scroll_into_view(self) -> None: ...
    async def highlight(self) -> None: ...
    async def focus(self) -> None: ...
    async def activate(self) -> None: ...
    async def dispatch_mouse(self, event_type: str) -> None: ...
    async def dispatch_event(self, event_type: str) -> None: ...
    async def set_value(self, value: str) -> None: ...
    async def set_checked(self, checked: bool) -> None: ...


class DomDocument(Protocol):
    async def count(self, selector: str) -> int: ...
    async def query(self, selector: str) -> Optional[DomNode]: ...
    async def query_all(self, selector: str) -> list[DomNode]: ...


# -------------------------------------------------------------------
# Page-side JS
# -------------------------------------------------------------------
SNAPSHOT_JS = r"""
(el) => {
  const ATTRS = ['name', 'data-drupal-selector', 'data-test', 'data-testid', 'aria-label', 'aria-expanded', 'role'];
  const parent = el.parentElement;
  const siblings = parent ? Array.from(parent.children) : [el];
  const attributes = {};
  for (const a of ATTRS) {
    if (el.hasAttribute && el.hasAttribute(a)) attributes[a] = el.getAttribute(a);
  }
  let selectedIndex = null;
  let selectedText = null;
  if (el.tagName === 'SELECT') {
    selectedIndex = el.selectedIndex;
    const opt = el.options[el.selectedIndex];
    selectedText = opt ? opt.text : null;
  }
  const editable = !!el.isContentEditable;
  let value = '';
  if (typeof el.value === 'string' || typeof el.value === 'number') {
    value = String(el.value);
  } else if (editable) {
    value = el.innerText || '';
  }
  const style = window.getComputedStyle(el);
  return {
    tagName: el.tagName || '',
    id: typeof el.id === 'string' ? el.id : '',
    inputType: typeof el.type === 'string' ? el.type : '',
    value,
    text: (el.textContent || '').substring(0, 100),
    href: typeof el.href === 'string' ? el.href : '',
    name: typeof el.name === 'string' ? el.name : (el.getAttribute && el.getAttribute('name')) || '',
    className: typeof el.className === 'string' ? el.className : '',
    checked: (el.type === 'checkbox' || el.type === 'radio') ? !!el.checked : null,
    selectedIndex,
    selectedText,
    contentEditable: editable,
    attributes,
    siblingIndex: parent ? siblings.indexOf(el) + 1 : 0,
    sameTagSiblings: siblings.filter(s => s.tagName === el.tagName).length,
    visible: el.getClientRects().length > 0 && style.visibility !== 'hidden',
    disabled: !!el.disabled,
  };
}
"""

_VISIBLE_JS = r"""
(el) => {
  if (!el.isConnected) return false;
  const style = window.getComputedStyle(el);
  return el.getClientRects().length > 0 && style.visibility !== 'hidden';
}
"""

_HIGHLIGHT_JS = r"""
(el, ms) => {
  const original = el.style.outline;
  el.style.outline = '3px solid #00ff00';
  setTimeout(() => { el.style.outline = original; }, ms);
}
"""

CAPTURE_SCRIPT = (
    r"""
(() => {
  if (window.__replayCaptureInstalled) return;
  window.__replayCaptureInstalled = true;

  const BINDING = '%s';
  const snapshot = %s;
  let counter = 0;

  function keyOf(el) {
    if (!el.__replayKey) {
      counter += 1;
      el.__replayKey = 'el-' + Date.now().toString(36) + '-' + counter;
    }
    return el.__replayKey;
  }

  function emit(type, el, e) {
    if (!el || el.nodeType !== 1 || typeof window[BINDING] !== 'function') return;
    let element;
    try { element = snapshot(el); } catch (err) { return; }
    const event = {
      type,
      key: keyOf(el),
      url: window.location.href,
      timestamp: Date.now(),
      clientX: typeof e.clientX === 'number' ? e.clientX : null,
      clientY: typeof e.clientY === 'number' ? e.clientY : null,
      element,
    };
    try {
      const pending = window[BINDING]({ event, target: el });
      if (pending && typeof pending.catch === 'function') pending.catch(() => {});
    } catch (err) {}
  }

  // Capture phase so page handlers that stop propagation cannot hide the event.
  document.addEventListener('click', (e) => emit('click', e.target, e), true);
  document.addEventListener('mousedown', (e) => emit('mousedown', e.target, e), true);
  document.addEventListener('submit', (e) => emit('submit', e.submitter || document.activeElement, e), true);
  document.addEventListener('input', (e) => emit('input', e.target, e), true);
  document.addEventListener('change', (e) => emit('change', e.target, e), true);
  document.addEventListener('blur', (e) => emit('blur', e.target, e), true);
})();
"""
    % (CAPTURE_BINDING, SNAPSHOT_JS.strip())
)


def _as_node(handle: Optional[JSHandle]) -> Optional["PageNode"]:
    if handle is None:
        return None
    element = handle.as_element()
    return PageNode(element) if element else None


# -------------------------------------------------------------------
# Playwright implementations
# -------------------------------------------------------------------
class PageNode:
    """DomNode backed by a Playwright ElementHandle."""

    def __init__(self, handle: ElementHandle, highlight_ms: int = 500):
        self.handle = handle
        self.highlight_ms = highlight_ms

    async def _eval(self, js: str, arg: Any = None) -> Any:
        with page_call():
            if arg is None:
                return await self.handle.evaluate(js)
            return await self.handle.evaluate(js, arg)

    async def _eval_node(self, js: str, arg: Any = None) -> Optional["PageNode"]:
        with page_call():
            if arg is None:
                return _as_node(await self.handle.evaluate_handle(js))
            return _as_node(await self.handle.evaluate_handle(js, arg))

    async def snapshot(self) -> ElementSnapshot:
        return ElementSnapshot.model_validate(await self._eval(SNAPSHOT_JS))

    async def parent(self) -> Optional["PageNode"]:
        return await self._eval_node("el => el.parentElement")

    async def closest(self, selector: str) -> Optional["PageNode"]:
        return await self._eval_node("(el, s) => el.closest(s)", selector)

    async def query(self, selector: str) -> Optional["PageNode"]:
        return await self._eval_node("(el, s) => el.querySelector(s)", selector)

    async def matches(self, selector: str) -> bool:
        return bool(await self._eval("(el, s) => el.matches(s)", selector))

    async def get_attribute(self, name: str) -> Optional[str]:
        with page_call():
            return await self.handle.get_attribute(name)

    async def is_visible(self) -> bool:
        return bool(await self._eval(_VISIBLE_JS))

    async def is_disabled(self) -> bool:
        return bool(await self._eval("el => !!el.disabled"))

    async def scroll_into_view(self) -> None:
        await self._eval("el => el.scrollIntoView({behavior: 'smooth', block: 'center'})")

    async def highlight(self) -> None:
        await self._eval(_HIGHLIGHT_JS, self.highlight_ms)

    async def focus(self) -> None:
        await self._eval("el => { if (el.focus) el.focus(); }")

    async def activate(self) -> None:
        await self._eval("el => el.click()")

    async def dispatch_mouse(self, event_type: str) -> None:
        await self._eval(
            "(el, t) => el.dispatchEvent(new MouseEvent(t, {view: window, bubbles: true, cancelable: true}))",
            event_type,
        )

    async def dispatch_event(self, event_type: str) -> None:
        await self._eval("(el, t) => el.dispatchEvent(new Event(t, {bubbles: true, cancelable: true}))", event_type)

    async def set_value(self, value: str) -> None:
        await self._eval(
            """(el, v) => {
              if (el.isContentEditable && !('value' in el)) { el.textContent = v; return; }
              el.value = '';
              el.value = v;
            }""",
            value,
        )

    async def set_checked(self, checked: bool) -> None:
        await self._eval("(el, c) => { el.checked = c; }", checked)


class PageDocument:
    """DomDocument over the top-level document of a Playwright page."""

    def __init__(self, page: Page):
        self.page = page

    async def count(self, selector: str) -> int:
        with page_call():
            return int(await self.page.evaluate("s => document.querySelectorAll(s).length", selector))

    async def query(self, selector: str) -> Optional[PageNode]:
        with page_call():
            return _as_node(await self.page.evaluate_handle("s => document.querySelector(s)", selector))

    async def query_all(self, selector: str) -> list[PageNode]:
        with page_call():
            handle = await self.page.evaluate_handle("s => Array.from(document.querySelectorAll(s))", selector)
            props = await handle.get_properties()
        nodes: list[PageNode] = []
        # array indices come back as string keys next to "length"
        for key in sorted((k for k in props if k.isdigit()), key=int):
            element = props[key].as_element()
            if element:
                nodes.append(PageNode(element))
        return nodes
