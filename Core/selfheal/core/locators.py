from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from selfheal.core.exceptions import LocatorGenerationError
from selfheal.core.metadata import ElementDescription, RobustLocator

log = logging.getLogger(__name__)

LOCATOR_PRIORITIES = {
    "id": 10,
    "test_id": 9,
    "aria_label": 8,
    "unique_class": 7,
    "role": 6,
    "text": 5,
    "placeholder": 4,
    "title": 3,
    "path": 2,
    "attributes": 1,
}

TEST_ID_ATTRIBUTES = ("data-testid", "data-test", "data-qa", "data-automation-id")

ATTRIBUTE_PRIORITIES = (
    "data-testid",
    "data-test",
    "data-qa",
    "data-automation-id",
    "aria-label",
    "role",
    "name",
    "type",
    "placeholder",
    "title",
    "alt",
)

SEMANTIC_TAGS = frozenset({"button", "input", "select", "a", "textarea"})
FORM_FIELD_TAGS = frozenset({"input", "select", "textarea"})

GENERIC_CLASS_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"^js-", r"^is-", r"^has-", r"^state-", r"^ng-",
        r"^active$", r"^selected$", r"^disabled$", r"^hidden$", r"^visible$",
        r"^open$", r"^closed$", r"^first$", r"^last$", r"^odd$", r"^even$",
        r"^col-", r"^row-", r"^grid-", r"^flex-", r"^text-", r"^bg-", r"^border-",
        r"^m-\d", r"^p-\d", r"^mt-", r"^mb-", r"^ml-", r"^mr-", r"^pt-", r"^pb-", r"^pl-", r"^pr-",
    )
)

GENERIC_ID_PATTERNS = (
    re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE),
    re.compile(r"^[0-9]+$"),
    re.compile(r"^temp", re.IGNORECASE),
    re.compile(r"^auto", re.IGNORECASE),
    re.compile(r"^generated", re.IGNORECASE),
    re.compile(r"^dynamic", re.IGNORECASE),
    re.compile(r"^ember\d+"),
    re.compile(r"^react-"),
    re.compile(r"^vue-"),
    re.compile(r"^ng-"),
    re.compile(r"^ext-gen"),
    re.compile(r"^yui_"),
)

_CSS_IDENTIFIER = re.compile(r"^-?[A-Za-z_][\w-]*$")
_QUOTED_ATTRIBUTE = re.compile(r'\[([^=\]]+)="([^"]*?)"\]')
_PLAIN_VALUE = re.compile(r"^[A-Za-z0-9_-]+$")


def is_generic_class(name: str) -> bool:
    return any(pattern.search(name) for pattern in GENERIC_CLASS_PATTERNS)


def is_generic_id(value: str) -> bool:
    return any(pattern.search(value) for pattern in GENERIC_ID_PATTERNS)


def is_xpath(locator: str) -> bool:
    stripped = locator.strip()
    return stripped.startswith("/") or stripped.startswith("(")


def css_attribute(name: str, value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'[{name}="{escaped}"]'


def xpath_literal(value: str) -> str:
    if '"' not in value:
        return f'"{value}"'
    if "'" not in value:
        return f"'{value}'"
    pieces = value.split('"')
    return "concat(" + ", '\"', ".join(f'"{piece}"' for piece in pieces) + ")"


@dataclass(slots=True)
class LocatorCandidate:
    selector: str
    kind: str
    score: float


class LocatorGenerator:
    """Enumerates and ranks locators for a described live element."""

    def generate(self, element: ElementDescription) -> list[str]:
        candidates: list[LocatorCandidate] = []
        attributes = element.attributes
        tag = element.tag or "*"

        if element.element_id:
            if _CSS_IDENTIFIER.match(element.element_id):
                selector = f"#{element.element_id}"
            else:
                selector = f"{tag}{css_attribute('id', element.element_id)}"
            candidates.append(self._candidate(selector, "id", element))

        for name in TEST_ID_ATTRIBUTES:
            if attributes.get(name):
                candidates.append(self._candidate(css_attribute(name, attributes[name]), "test_id", element))

        if attributes.get("aria-label"):
            selector = css_attribute("aria-label", attributes["aria-label"])
            candidates.append(self._candidate(selector, "aria_label", element))

        if attributes.get("role"):
            selector = f"{tag}{css_attribute('role', attributes['role'])}"
            candidates.append(self._candidate(selector, "role", element))

        text_selector = self._text_selector(element)
        if text_selector:
            candidates.append(self._candidate(text_selector, "text", element))

        for name, kind in (("placeholder", "placeholder"), ("title", "title")):
            if attributes.get(name):
                candidates.append(self._candidate(f"{tag}{css_attribute(name, attributes[name])}", kind, element))

        attribute_selector = self._attribute_selector(element)
        if attribute_selector:
            candidates.append(self._candidate(attribute_selector, "attributes", element))

        class_selector = self._class_selector(element)
        if class_selector:
            candidates.append(self._candidate(class_selector, "unique_class", element))

        css_path = self._css_path(element)
        if css_path:
            candidates.append(self._candidate(css_path, "path", element))

        position_path = self._position_xpath(element)
        if position_path:
            candidate = self._candidate(position_path, "attributes", element)
            candidate.score *= 0.5
            candidates.append(candidate)

        unique: list[LocatorCandidate] = []
        seen: set[str] = set()
        for candidate in candidates:
            normalized = candidate.selector.lower().strip()
            if normalized not in seen:
                seen.add(normalized)
                unique.append(candidate)
        unique.sort(key=lambda item: item.score, reverse=True)

        locators: list[str] = []
        for candidate in unique:
            optimized = self.optimize(candidate.selector)
            if optimized and optimized not in locators:
                locators.append(optimized)
        log.debug("Generated %s locators for <%s>, primary %s", len(locators), tag, locators[:1])
        return locators

    def build_robust_locator(self, element: ElementDescription) -> RobustLocator:
        locators = self.generate(element)
        if not locators:
            raise LocatorGenerationError(f"Could not generate any locator for <{element.tag}>")
        scored = [(locator, self.score_stability(locator, element)) for locator in locators[:5]]
        scored.sort(key=lambda item: item[1], reverse=True)
        box = element.bounding_box
        return RobustLocator(
            primary=scored[0][0],
            fallbacks=[locator for locator, _ in scored[1:]],
            confidence=scored[0][1] if scored else 0.5,
            metadata={
                "tag": element.tag,
                "text": element.text,
                "attributes": dict(element.attributes),
                "position": box.model_dump() if box else None,
            },
        )

    def score_stability(self, locator: str, element: ElementDescription | None = None) -> float:
        score = 0.5
        if locator.startswith("#") and _CSS_IDENTIFIER.match(locator[1:]):
            score = 0.95
        elif "data-testid" in locator or "data-test" in locator:
            score = 0.9
        elif "aria-label" in locator:
            score = 0.85
        elif "role=" in locator:
            score = 0.8
        elif "normalize-space" in locator:
            score = 0.6
        elif (
            ":nth-child" in locator
            or ":nth-of-type" in locator
            or ":first-child" in locator
            or locator.startswith("/html")
        ):
            score = 0.4
        elif locator.count(">") > 2:
            score = 0.3

        brackets = locator.count("[")
        if brackets:
            score += min(brackets * 0.05, 0.2)
        if len(locator) > 100:
            score *= 0.8
        if element is not None and any(is_generic_class(name) for name in element.classes):
            score *= 0.9
        return max(0.0, min(1.0, score))

    def optimize(self, locator: str) -> str:
        """Normalizes whitespace and combinators and collapses long CSS paths."""

        optimized = " ".join(locator.split())
        if not optimized or is_xpath(optimized):
            return optimized
        optimized = re.sub(r"\s*>\s*", " > ", optimized)
        optimized = re.sub(r"\s*\+\s*", " + ", optimized)
        optimized = re.sub(r"\s*~\s*", " ~ ", optimized)
        optimized = _QUOTED_ATTRIBUTE.sub(
            lambda match: f"[{match.group(1)}={match.group(2)}]"
            if _PLAIN_VALUE.match(match.group(2))
            else match.group(0),
            optimized,
        )
        optimized = optimized.replace(":nth-child(1)", ":first-child")
        optimized = optimized.replace(":nth-last-child(1)", ":last-child")
        if optimized.startswith("body > "):
            optimized = optimized[len("body > "):]
        parts = optimized.split(" > ")
        if len(parts) > 4:
            kept: list[str] = []
            for part in reversed(parts):
                kept.insert(0, part)
                if "#" in part or "[data-" in part or len(kept) >= 3:
                    break
            optimized = " > ".join(kept)
        return optimized

    def _candidate(self, selector: str, kind: str, element: ElementDescription) -> LocatorCandidate:
        score = float(LOCATOR_PRIORITIES[kind])
        if kind == "id" and element.element_id and not is_generic_id(element.element_id):
            score += 2
        if element.tag in SEMANTIC_TAGS:
            score += 0.5
        if kind == "unique_class" and any(is_generic_class(name) for name in element.classes):
            score -= 1
        if element.attributes.get("name") and element.tag in FORM_FIELD_TAGS:
            score += 1
        return LocatorCandidate(selector=selector, kind=kind, score=max(1.0, score))

    @staticmethod
    def _text_selector(element: ElementDescription) -> str | None:
        text = " ".join(element.text.split())
        if not text or len(text) >= 100:
            return None
        tag = element.tag or "*"
        if len(text) < 30:
            return f"//{tag}[normalize-space()={xpath_literal(text)}]"
        words = " ".join(text.split()[:5])
        return f"//{tag}[contains(normalize-space(), {xpath_literal(words)})]"

    @staticmethod
    def _attribute_selector(element: ElementDescription) -> str | None:
        parts = [element.tag or "*"]
        for name in ATTRIBUTE_PRIORITIES:
            value = element.attributes.get(name)
            if value and len(value) < 100:
                parts.append(css_attribute(name, value))
                if len(parts) >= 3:
                    break
        if len(parts) == 1:
            return None
        return "".join(parts)

    @staticmethod
    def _class_selector(element: ElementDescription) -> str | None:
        semantic = [name for name in element.classes if not is_generic_class(name) and 2 < len(name) < 50]
        if not semantic:
            return None
        return f"{element.tag or '*'}." + ".".join(semantic[:2])

    @staticmethod
    def _css_path(element: ElementDescription) -> str | None:
        if not element.path:
            return None
        parts: list[str] = []
        for step in reversed(element.path):
            if step.tag in {"html", "body"}:
                break
            if step.element_id and _CSS_IDENTIFIER.match(step.element_id):
                parts.insert(0, f"#{step.element_id}")
                break
            anchor = next((name for name in TEST_ID_ATTRIBUTES if step.attributes.get(name)), None)
            if anchor:
                parts.insert(0, f"{step.tag}{css_attribute(anchor, step.attributes[anchor])}")
                break
            selector = step.tag
            classes = [
                name
                for name in step.attributes.get("class", "").split()
                if not is_generic_class(name) and _CSS_IDENTIFIER.match(name)
            ]
            if classes:
                selector += "." + ".".join(classes[:2])
            if step.sibling_count > 1:
                selector += f":nth-child({step.nth_child})"
            parts.insert(0, selector)
        return " > ".join(parts) or None

    @staticmethod
    def _position_xpath(element: ElementDescription) -> str | None:
        if not element.path:
            return None
        steps = []
        for step in element.path:
            part = step.tag
            if step.same_tag_count > 1:
                part += f"[{step.position}]"
            steps.append(part)
        return "/" + "/".join(steps)
