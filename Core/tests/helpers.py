from __future__ import annotations

import asyncio
import json
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

import pytest
from selenium.common.exceptions import WebDriverException

from selfheal.config.schema import ElementDefinition, HealingSettings
from selfheal.core.browser import BrowserSession, SeleniumDomSurface, SeleniumFingerprintExtractor
from selfheal.core.dom import DomSurface, ElementIdentifier, FingerprintExtractor
from selfheal.core.fingerprint import BoundingBox, ElementFingerprint
from selfheal.core.healer import SelfHealingEngine
from selfheal.core.locators import is_xpath
from selfheal.core.metadata import ElementDescription, PathStep
from selfheal.utils.dom_extract import build_fingerprint
from selfheal.utils.wait import wait_until


@dataclass(eq=False)
class FakeElement:
    tag: str
    attributes: dict[str, str] = field(default_factory=dict)
    own_text: str = ""
    box: BoundingBox = field(default_factory=BoundingBox)
    visible: bool = True
    style: dict[str, str] = field(default_factory=dict)
    children: list[FakeElement] = field(default_factory=list)
    parent: FakeElement | None = None

    def __repr__(self) -> str:
        return f"<{self.tag} {self.attributes}>"

    @property
    def classes(self) -> list[str]:
        return self.attributes.get("class", "").split()

    @property
    def full_text(self) -> str:
        parts = [self.own_text, *(child.full_text for child in self.children)]
        return " ".join(" ".join(part for part in parts if part).split())

    @property
    def siblings(self) -> list[FakeElement]:
        return self.parent.children if self.parent else [self]


def el(
    tag: str,
    attributes: dict[str, str] | None = None,
    *children: FakeElement,
    text: str = "",
    box: tuple[float, float, float, float] = (0, 0, 0, 0),
    visible: bool = True,
    style: dict[str, str] | None = None,
) -> FakeElement:
    """Builds a fake element; ``box`` is (x, y, width, height)."""

    x, y, width, height = box
    element = FakeElement(
        tag=tag,
        attributes=dict(attributes or {}),
        own_text=text,
        box=BoundingBox(x=x, y=y, width=width, height=height),
        visible=visible,
        style=dict(style or {}),
        children=list(children),
    )
    for child in element.children:
        child.parent = element
    return element


def page(*body_children: FakeElement, url: str = "http://shop.test/checkout") -> FakePage:
    body = el("body", None, *body_children, box=(0, 0, 1920, 1080))
    return FakePage(el("html", None, body, box=(0, 0, 1920, 1080)), url=url)


_SIMPLE_SELECTOR = re.compile(
    r"""
    \#(?P<id>[\w-]+)
    |\.(?P<cls>[\w-]+)
    |\[(?P<attr>[\w-]+)(?:(?P<op>\*?=)(?:"(?P<dq>(?:[^"\\]|\\.)*)"|'(?P<sq>[^']*)'|(?P<bare>[^\]]+)))?\]
    |:nth-child\((?P<nth>\d+)\)
    |:(?P<pseudo>first-child|last-child)
    """,
    re.VERBOSE,
)
_TAG = re.compile(r"^(\*|[A-Za-z][\w-]*)")
_XPATH_TEXT = re.compile(
    r"""^//(?P<tag>[\w*-]+)\[(?:normalize-space\(\)=(?P<eq>"[^"]*"|'[^']*')"""
    r"""|contains\(normalize-space\(\), (?P<has>"[^"]*"|'[^']*')\))\]$"""
)
_XPATH_STEP = re.compile(r"^(?P<tag>[\w-]+)(?:\[(?P<index>\d+)\])?$")


def _split_outside_brackets(selector: str, separator: str) -> list[str]:
    parts, depth, quote, current = [], 0, "", ""
    for char in selector:
        if quote:
            quote = "" if char == quote else quote
        elif char in "\"'":
            quote = char
        elif char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
        elif char == separator and depth == 0:
            parts.append(current)
            current = ""
            continue
        current += char
    parts.append(current)
    return [part.strip() for part in parts if part.strip()]


def _compound_matches(element: FakeElement, compound: str) -> bool:
    tag_match = _TAG.match(compound)
    rest = compound
    if tag_match:
        if tag_match.group(1) != "*" and tag_match.group(1).lower() != element.tag:
            return False
        rest = compound[tag_match.end():]
    position = 0
    while position < len(rest):
        match = _SIMPLE_SELECTOR.match(rest, position)
        if match is None:
            raise ValueError(f"Unsupported selector: {compound}")
        position = match.end()
        if match.group("id") is not None and element.attributes.get("id") != match.group("id"):
            return False
        if match.group("cls") is not None and match.group("cls") not in element.classes:
            return False
        if match.group("attr") is not None:
            actual = element.attributes.get(match.group("attr"))
            if actual is None:
                return False
            if match.group("op"):
                expected = match.group("dq") or match.group("sq") or match.group("bare") or ""
                expected = expected.replace('\\"', '"').replace("\\\\", "\\")
                if match.group("op") == "=" and actual != expected:
                    return False
                if match.group("op") == "*=" and expected not in actual:
                    return False
        if match.group("nth") is not None and element.siblings.index(element) + 1 != int(match.group("nth")):
            return False
        if match.group("pseudo") == "first-child" and element.siblings[0] is not element:
            return False
        if match.group("pseudo") == "last-child" and element.siblings[-1] is not element:
            return False
    return True


def _chain_matches(element: FakeElement | None, chain: list[tuple[str, str]]) -> bool:
    if element is None:
        return False
    combinator, compound = chain[-1]
    if not _compound_matches(element, compound):
        return False
    if len(chain) == 1:
        return True
    if combinator == ">":
        return _chain_matches(element.parent, chain[:-1])
    if combinator == "+":
        index = element.siblings.index(element)
        return index > 0 and _chain_matches(element.siblings[index - 1], chain[:-1])
    ancestor = element.parent
    while ancestor is not None:
        if _chain_matches(ancestor, chain[:-1]):
            return True
        ancestor = ancestor.parent
    return False


def _parse_chain(selector: str) -> list[tuple[str, str]]:
    chain: list[tuple[str, str]] = []
    combinator = ""
    for token in _split_outside_brackets(selector.replace(">", " > ").replace("+", " + "), " "):
        if token in {">", "+"}:
            combinator = token
            continue
        chain.append((combinator or " ", token))
        combinator = ""
    return chain


def _literal(value: str) -> str:
    return value[1:-1]


class FakePage(DomSurface, FingerprintExtractor):
    """In-memory page: enough CSS and XPath to run the engine without a browser."""

    def __init__(self, root: FakeElement, url: str = "http://shop.test/") -> None:
        self.root = root
        self.url = url
        self.locate_calls = 0

    def all_elements(self) -> list[FakeElement]:
        found: list[FakeElement] = []
        stack = [self.root]
        while stack:
            element = stack.pop()
            found.append(element)
            stack.extend(reversed(element.children))
        return found

    def find(self, selector: str) -> FakeElement:
        matches = self._match(selector)
        assert len(matches) == 1, f"{selector} matched {len(matches)} elements"
        return matches[0]

    def _match(self, selector: str) -> list[FakeElement]:
        if is_xpath(selector):
            return self._match_xpath(selector.strip())
        found: list[FakeElement] = []
        for group in _split_outside_brackets(selector, ","):
            chain = _parse_chain(group)
            for element in self.all_elements():
                if element not in found and _chain_matches(element, chain):
                    found.append(element)
        return found

    def _match_xpath(self, selector: str) -> list[FakeElement]:
        text_match = _XPATH_TEXT.match(selector)
        if text_match:
            tag = text_match.group("tag")
            candidates = [item for item in self.all_elements() if tag == "*" or item.tag == tag]
            if text_match.group("eq"):
                return [item for item in candidates if item.full_text == _literal(text_match.group("eq"))]
            return [item for item in candidates if _literal(text_match.group("has")) in item.full_text]
        steps = selector.strip("/").split("/")
        current = [self.root] if steps and steps[0] == self.root.tag else []
        for step in steps[1:]:
            match = _XPATH_STEP.match(step)
            if match is None:
                raise ValueError(f"Unsupported XPath: {selector}")
            following = []
            for parent in current:
                same_tag = [child for child in parent.children if child.tag == match.group("tag")]
                if match.group("index"):
                    index = int(match.group("index")) - 1
                    same_tag = same_tag[index : index + 1]
                following.extend(same_tag)
            current = following
        return current

    async def locate(self, selector: str) -> list[FakeElement]:
        self.locate_calls += 1
        await asyncio.sleep(0)
        return self._match(selector)

    async def elements_with_text(self, fragment: str) -> list[FakeElement]:
        needle = fragment.lower()
        return [item for item in self.all_elements() if item.own_text and needle in item.own_text.lower()]

    async def children(self, element: FakeElement) -> list[FakeElement]:
        return list(element.children)

    async def parent(self, element: FakeElement) -> FakeElement | None:
        return element.parent

    async def next_sibling(self, element: FakeElement) -> FakeElement | None:
        siblings = element.siblings
        index = siblings.index(element)
        return siblings[index + 1] if index + 1 < len(siblings) else None

    async def tag_name(self, element: FakeElement) -> str:
        return element.tag

    async def text(self, element: FakeElement) -> str:
        return element.full_text

    async def attributes(self, element: FakeElement) -> dict[str, str]:
        return dict(element.attributes)

    async def bounding_box(self, element: FakeElement) -> BoundingBox:
        return element.box

    async def computed_style(self, element: FakeElement, prop: str) -> str:
        return element.style.get(prop, "")

    async def is_visible(self, element: FakeElement) -> bool:
        return element.visible

    async def describe(self, element: FakeElement) -> ElementDescription:
        return ElementDescription(
            tag=element.tag,
            attributes=dict(element.attributes),
            text=element.full_text,
            path=[_path_step(item) for item in _lineage(element)],
            bounding_box=element.box,
        )

    async def wait_until_attached(self, selector: str, timeout: float) -> bool:
        return bool(await wait_until(lambda: self.count(selector), timeout, 0.01))

    async def current_url(self) -> str:
        return self.url

    async def extract(self, element: FakeElement) -> ElementFingerprint:
        return self.fingerprint(element)

    def fingerprint(self, element: FakeElement) -> ElementFingerprint:
        siblings = element.siblings
        index = siblings.index(element)
        previous = siblings[index - 1].full_text if index > 0 else ""
        following = siblings[index + 1].full_text if index + 1 < len(siblings) else ""
        form = next((item for item in _lineage(element) if item.tag == "form"), None)
        return build_fingerprint(
            {
                "tag": element.tag,
                "attributes": element.attributes,
                "content": element.full_text,
                "visible_text": element.full_text if element.visible else "",
                "value": element.attributes.get("value"),
                "rect": element.box.model_dump(),
                "is_visible": element.visible,
                "in_viewport": True,
                "style": {
                    "z_index": element.style.get("z-index", "0"),
                    "opacity": element.style.get("opacity", "1"),
                    "color": element.style.get("color", "rgb(0, 0, 0)"),
                    "background_color": element.style.get("background-color", "rgba(0, 0, 0, 0)"),
                    "font_size": element.style.get("font-size", "16px"),
                    "font_weight": element.style.get("font-weight", "400"),
                    "display": element.style.get("display", "block"),
                    "position": element.style.get("position", "static"),
                },
                "child_tags": [child.tag for child in element.children],
                "path": [".".join([item.tag, *item.classes]) for item in _lineage(element)],
                "sibling_index": index,
                "sibling_count": len(siblings),
                "in_form": form is not None,
                "form_id": form.attributes.get("id", "") if form else "",
                "parent_tag": element.parent.tag if element.parent else "",
                "parent_text": element.parent.full_text if element.parent else "",
                "sibling_texts": [previous, following],
            }
        )


def _lineage(element: FakeElement) -> list[FakeElement]:
    chain = []
    current: FakeElement | None = element
    while current is not None:
        chain.insert(0, current)
        current = current.parent
    return chain


def _path_step(element: FakeElement) -> PathStep:
    siblings = element.siblings
    same_tag = [item for item in siblings if item.tag == element.tag]
    return PathStep(
        tag=element.tag,
        attributes=dict(element.attributes),
        position=same_tag.index(element) + 1,
        same_tag_count=len(same_tag),
        nth_child=siblings.index(element) + 1,
        sibling_count=len(siblings),
    )


class StubIdentifier(ElementIdentifier):
    provider_name = "stub"

    def __init__(self, selector: str | None) -> None:
        self.selector = selector
        self.trained: list[tuple[str, str]] = []

    async def identify(self, description, dom):
        if self.selector is None:
            return None
        matches = await dom.locate(self.selector)
        return matches[0] if matches else None

    async def train_on_success(self, description, locator):
        self.trained.append((description, locator))


def checkout_page(*, submit: FakeElement | None = None) -> FakePage:
    """Checkout form with an email field and a submit button."""

    submit = submit or el(
        "button",
        {"id": "submit-order", "class": "btn primary", "type": "submit"},
        text="Submit Order",
        box=(100, 200, 120, 40),
    )
    return page(
        el("h2", None, text="Checkout", box=(100, 40, 300, 32)),
        el(
            "form",
            {"id": "checkout"},
            el(
                "input",
                {"name": "email", "type": "email", "placeholder": "Email address"},
                box=(100, 100, 240, 32),
            ),
            submit,
            box=(80, 80, 400, 200),
        ),
    )


def submit_definition(fingerprint: ElementFingerprint | None = None) -> ElementDefinition:
    if fingerprint is None:
        original = checkout_page()
        fingerprint = original.fingerprint(original.find("#submit-order"))
    return ElementDefinition(
        key="submit_order",
        selector_type="css",
        selector="#submit-order",
        description="Submit Order button",
        fingerprint=fingerprint,
    )


def make_engine(dom: FakePage, settings: HealingSettings | None = None, **kwargs) -> SelfHealingEngine:
    return SelfHealingEngine(dom, dom, settings or HealingSettings(), **kwargs)


def healing_log_contains(element_key: str, root: str | Path = "artifacts") -> bool:
    path = Path(root) / "healed_elements.jsonl"
    if not path.exists():
        return False
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            if not line.strip():
                continue
            payload = json.loads(line)
            if payload.get("element_key") == element_key and payload.get("success"):
                return True
    return False


@dataclass(slots=True)
class BrowserRuntime:
    driver: object
    dom: SeleniumDomSurface
    extractor: SeleniumFingerprintExtractor


@contextmanager
def managed_runtime(suite_config, browser_name: str | None = None) -> Iterator[BrowserRuntime]:
    browser_session = BrowserSession(suite_config.environment)
    try:
        driver = browser_session.start(browser_name)
    except WebDriverException as exc:
        pytest.skip(f"WebDriver could not start for {browser_name or suite_config.environment.browser}: {exc}")
    try:
        yield BrowserRuntime(driver, SeleniumDomSurface(driver), SeleniumFingerprintExtractor(driver))
    finally:
        driver.quit()
