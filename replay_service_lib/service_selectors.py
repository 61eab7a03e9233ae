from __future__ import annotations

import logging
from typing import Optional

from .service_dom import DomDocument, DomNode
from .service_errors import MessagingUnavailable
from .service_models import Action, ElementSnapshot

logger = logging.getLogger("service")

ID_DELIMITER = "--"
SEMANTIC_ATTRIBUTES: tuple[str, ...] = ("name", "data-drupal-selector", "data-test", "data-testid", "aria-label")
MAX_PATH_CLASSES = 2
BUTTON_INPUTS = 'input[type="submit"], input[type="button"]'


def stable_id(element_id: str, delimiter: str = ID_DELIMITER) -> str:
    """Drop the per-render suffix some server frameworks append after `--`."""
    if not element_id:
        return ""
    if delimiter in element_id:
        return element_id.split(delimiter, 1)[0]
    return element_id


def css_ident(value: str) -> str:
    """Escape a CSS identifier the way CSS.escape() does."""
    out: list[str] = []
    for i, ch in enumerate(value):
        code = ord(ch)
        if code == 0:
            out.append("\ufffd")
        elif 0x01 <= code <= 0x1F or code == 0x7F:
            out.append(f"\\{code:x} ")
        elif i == 0 and ch.isdigit():
            out.append(f"\\{code:x} ")
        elif i == 1 and ch.isdigit() and value[0] == "-":
            out.append(f"\\{code:x} ")
        elif i == 0 and ch == "-" and len(value) == 1:
            out.append("\\-")
        elif code >= 0x80 or ch in "-_" or ch.isalnum():
            out.append(ch)
        else:
            out.append("\\" + ch)
    return "".join(out)


def css_string(value: str) -> str:
    """Escape a value for use inside a double-quoted attribute selector."""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\a ").replace("\r", "\\d ")


def _is_noise_class(name: str) -> bool:
    return name.startswith("js-") or "drupal" in name


class SelectorResolver:
    """
    Element -> durable locator, and locator + action hints -> live element.

    Stateless; every document lookup goes through the DomDocument it is handed.
    """

    def __init__(
        self,
        attributes: tuple[str, ...] = SEMANTIC_ATTRIBUTES,
        id_delimiter: str = ID_DELIMITER,
        max_classes: int = MAX_PATH_CLASSES,
    ):
        self.attributes = attributes
        self.id_delimiter = id_delimiter
        self.max_classes = max_classes

    # ----------------------------- generate -----------------------------
    async def generate(self, doc: DomDocument, node: DomNode, snap: Optional[ElementSnapshot] = None) -> str:
        snap = snap or await node.snapshot()

        sid = stable_id(snap.id, self.id_delimiter)
        if sid:
            return self.prefix_id_locator(sid)

        if snap.tag == "input" and snap.value:
            value = css_string(snap.value)
            candidates = [f'input[value="{value}"]']
            if snap.input_type:
                candidates.append(f'input[type="{css_string(snap.input_type)}"][value="{value}"]')
            for candidate in candidates:
                if await self._unique(doc, candidate):
                    return candidate

        for attr in self.attributes:
            value = self._attribute(snap, attr)
            if not value:
                continue
            candidate = f'{snap.tag}[{attr}="{css_string(value)}"]'
            if await self._unique(doc, candidate):
                return candidate

        return await self._path(doc, node, snap)

    def fallback(self, snap: ElementSnapshot) -> str:
        """Locator built from the snapshot alone, for when the document is gone."""
        sid = stable_id(snap.id, self.id_delimiter)
        if sid:
            return self.prefix_id_locator(sid)
        name = self._attribute(snap, "name")
        if name and snap.tag:
            return f'{snap.tag}[name="{css_string(name)}"]'
        return snap.tag or "*"

    @staticmethod
    def prefix_id_locator(sid: str) -> str:
        return f'[id^="{css_string(sid)}"]'

    @staticmethod
    def _attribute(snap: ElementSnapshot, attr: str) -> str:
        if attr == "name":
            return snap.name or snap.attributes.get("name", "")
        return snap.attributes.get(attr, "")

    def _segment(self, snap: ElementSnapshot) -> str:
        segment = snap.tag
        classes = [c for c in snap.classes if not _is_noise_class(c)][: self.max_classes]
        if classes:
            segment += "." + ".".join(css_ident(c) for c in classes)
        if snap.sibling_index and snap.same_tag_siblings > 1:
            segment += f":nth-child({snap.sibling_index})"
        return segment

    async def _path(self, doc: DomDocument, node: DomNode, snap: ElementSnapshot) -> str:
        path: list[str] = []
        current: Optional[DomNode] = node
        current_snap: Optional[ElementSnapshot] = snap
        while current is not None and current_snap is not None and current_snap.tag:
            path.insert(0, self._segment(current_snap))
            if await self._unique(doc, " > ".join(path)):
                break
            current = await current.parent()
            current_snap = await current.snapshot() if current is not None else None
        return " > ".join(path)

    async def _unique(self, doc: DomDocument, selector: str) -> bool:
        try:
            return await doc.count(selector) == 1
        except MessagingUnavailable:
            raise
        except Exception as exc:
            logger.debug("[resolve] selector %r not usable: %s", selector, exc)
            return False

    # ----------------------------- resolve ------------------------------
    async def resolve(self, doc: DomDocument, locator: str, action: Action) -> Optional[DomNode]:
        """
        Best-effort lookup, in order: stored locator, id prefix scan,
        button value match, tag + name. Returns None when every strategy fails.
        """
        node = await self._try("selector", self._by_selector(doc, locator))
        if node is not None:
            return node

        if action.id:
            node = await self._try("id-prefix", self._by_id_prefix(doc, action.id))
            if node is not None:
                logger.info("[resolve] matched id prefix %r", action.id)
                return node

        if action.tag_name.upper() == "INPUT" and action.value:
            node = await self._try("button-value", self._by_button_value(doc, action.value))
            if node is not None:
                logger.info("[resolve] matched button value %r", action.value)
                return node

        if action.name and action.tag_name:
            node = await self._try("name", self._by_name(doc, action.tag_name, action.name))
            if node is not None:
                logger.info("[resolve] matched name attribute %r", action.name)
                return node

        return None

    async def _try(self, strategy: str, lookup) -> Optional[DomNode]:
        try:
            return await lookup
        except MessagingUnavailable:
            raise
        except Exception as exc:
            logger.debug("[resolve] strategy %s failed: %s", strategy, exc)
            return None

    async def _by_selector(self, doc: DomDocument, locator: str) -> Optional[DomNode]:
        if not locator:
            return None
        return await doc.query(locator)

    async def _by_id_prefix(self, doc: DomDocument, hint: str) -> Optional[DomNode]:
        for candidate in await doc.query_all("[id]"):
            cid = await candidate.get_attribute("id") or ""
            if cid.startswith(hint):
                return candidate
        return None

    async def _by_button_value(self, doc: DomDocument, value: str) -> Optional[DomNode]:
        for candidate in await doc.query_all(BUTTON_INPUTS):
            if (await candidate.snapshot()).value == value:
                return candidate
        return None

    async def _by_name(self, doc: DomDocument, tag_name: str, name: str) -> Optional[DomNode]:
        return await doc.query(f'{tag_name.lower()}[name="{css_string(name)}"]')
