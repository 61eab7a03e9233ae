import asyncio

from replay_service_lib.service_models import Action, ElementSnapshot
from replay_service_lib.service_selectors import SelectorResolver, css_ident, css_string, stable_id

from conftest import FakeDocument, FakeNode

URL = "https://admin.example.test/node/add"


def _click(selector, **kw):
    return Action(type="click", selector=selector, url=URL, **kw)


def test_stable_id_strips_render_suffix():
    assert stable_id("edit-submit--x7Ab") == "edit-submit"
    assert stable_id("login") == "login"
    assert stable_id("") == ""


def test_css_escaping():
    assert css_ident("1abc") == "\\31 abc"
    assert css_ident("a.b") == "a\\.b"
    assert css_ident("plain-name_2") == "plain-name_2"
    assert css_string('say "hi"') == 'say \\"hi\\"'


def test_generate_uses_id_prefix_that_survives_rerender():
    resolver = SelectorResolver()
    node = FakeNode("input", id="edit-submit--x7Ab", input_type="submit", value="Save")
    doc = FakeDocument(node)

    selector = asyncio.run(resolver.generate(doc, node))
    assert selector == '[id^="edit-submit"]'

    rerendered = FakeNode("input", id="edit-submit--Q9zz", input_type="submit", value="Save")
    found = asyncio.run(resolver.resolve(FakeDocument(rerendered), selector, _click(selector)))
    assert found is rerendered


def test_generate_prefers_unique_value_for_inputs():
    resolver = SelectorResolver()
    save = FakeNode("input", input_type="submit", value="Save")
    doc = FakeDocument(FakeNode("input", input_type="text", value="title"), save)
    assert asyncio.run(resolver.generate(doc, save)) == 'input[value="Save"]'


def test_generate_adds_type_when_value_is_shared():
    resolver = SelectorResolver()
    preview = FakeNode("input", input_type="submit", value="Preview")
    doc = FakeDocument(FakeNode("input", input_type="hidden", value="Preview"), preview)
    assert asyncio.run(resolver.generate(doc, preview)) == 'input[type="submit"][value="Preview"]'


def test_generate_escapes_quotes_in_values():
    resolver = SelectorResolver()
    node = FakeNode("input", input_type="button", value='He said "go"')
    doc = FakeDocument(node)
    selector = asyncio.run(resolver.generate(doc, node))
    assert selector == 'input[value="He said \\"go\\""]'
    assert doc.select(selector) == [node]


def test_generate_uses_semantic_attributes_in_order():
    resolver = SelectorResolver()
    email = FakeNode("input", attrs={"name": "email"})
    doc = FakeDocument(email, FakeNode("input", attrs={"name": "phone"}))
    assert asyncio.run(resolver.generate(doc, email)) == 'input[name="email"]'

    first = FakeNode("input", attrs={"name": "qty", "data-testid": "qty-1"})
    doc = FakeDocument(first, FakeNode("input", attrs={"name": "qty", "data-testid": "qty-2"}))
    assert asyncio.run(resolver.generate(doc, first)) == 'input[data-testid="qty-1"]'


def test_generate_builds_structural_path_without_noise_classes():
    resolver = SelectorResolver()
    noisy = ("item", "js-toggle", "drupal-x", "extra")
    second = FakeNode("a", text="Two")
    doc = FakeDocument(
        FakeNode(
            "ul",
            classes=("menu",),
            children=(
                FakeNode("li", classes=noisy, children=(FakeNode("a", text="One"),)),
                FakeNode("li", classes=noisy, children=(second,)),
            ),
        )
    )

    selector = asyncio.run(resolver.generate(doc, second))
    assert selector == "li.item.extra:nth-child(2) > a"
    assert asyncio.run(resolver.resolve(doc, selector, _click(selector))) is second


def test_fallback_from_snapshot_only():
    resolver = SelectorResolver()
    assert resolver.fallback(ElementSnapshot(tag_name="DIV", id="block--4")) == '[id^="block"]'
    assert resolver.fallback(ElementSnapshot(tag_name="SELECT", name="country")) == 'select[name="country"]'
    assert resolver.fallback(ElementSnapshot(tag_name="SPAN")) == "span"
    assert resolver.fallback(ElementSnapshot()) == "*"


def test_resolve_falls_back_to_id_prefix_scan():
    resolver = SelectorResolver()
    target = FakeNode("a", id="edit-delete--3")
    doc = FakeDocument(FakeNode("a", id="other"), target)
    action = _click("#gone", tag_name="A", id="edit-delete")
    assert asyncio.run(resolver.resolve(doc, "#gone", action)) is target


def test_resolve_falls_back_to_button_value():
    resolver = SelectorResolver()
    target = FakeNode("input", input_type="button", value="Delete")
    doc = FakeDocument(FakeNode("input", input_type="submit", value="Save"), target)
    action = _click('input[value="Remove"]', tag_name="INPUT", value="Delete")
    assert asyncio.run(resolver.resolve(doc, action.selector, action)) is target


def test_resolve_falls_back_to_name_after_broken_selector():
    resolver = SelectorResolver()
    target = FakeNode("select", attrs={"name": "country"})
    doc = FakeDocument(target)
    action = Action(type="input", selector='select[name="country', url=URL, tag_name="SELECT", name="country")
    assert asyncio.run(resolver.resolve(doc, action.selector, action)) is target


def test_resolve_returns_none_when_nothing_matches():
    resolver = SelectorResolver()
    doc = FakeDocument(FakeNode("div", id="content"))
    action = _click("#missing", tag_name="BUTTON", id="missing")
    assert asyncio.run(resolver.resolve(doc, "#missing", action)) is None
