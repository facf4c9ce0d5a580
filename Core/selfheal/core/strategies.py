"""Healing strategies.

Each strategy looks at what a broken element used to be (its last-known
fingerprint and description) and proposes one live replacement. Strategies
score raw candidates with the fingerprint comparator and hand the winner to
the locator generator. A result carries both the strategy's combined match
score and a confidence scaled by the generated locator's stability; the
engine thresholds on the match score. ``run_strategy`` turns any internal
error or timeout into ``None`` so the engine can move on to the next strategy.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Awaitable, Callable

from selfheal.core.dom import DomSurface, ElementIdentifier, FingerprintExtractor
from selfheal.core.exceptions import (
    IdentificationServiceError,
    LocatorGenerationError,
    SelectorValidationError,
    StrategyError,
)
from selfheal.core.fingerprint import ElementFingerprint
from selfheal.core.locators import LocatorGenerator
from selfheal.core.metadata import Candidate, HealingRequest, HealingResult
from selfheal.core.patterns import PatternCatalog
from selfheal.core.similarity import FingerprintComparator
from selfheal.utils.scoring import jaccard, significant_words, text_similarity

log = logging.getLogger(__name__)

MIN_COMBINED_SCORE = 0.7
PROXIMITY_RADIUS = 100.0
MIN_TEXT_SIMILARITY = 0.8
MIN_ATTRIBUTE_SIMILARITY = 0.7
MIN_CHILDREN_MATCH = 0.7
EXTERNAL_CONFIDENCE = 0.8

IMPORTANT_ATTRIBUTES = {
    "class": 0.3,
    "role": 0.25,
    "type": 0.2,
    "name": 0.15,
    "aria-label": 0.15,
    "placeholder": 0.1,
}
OTHER_ATTRIBUTE_WEIGHT = 0.1

ELEMENT_TYPES = ("button", "input", "link", "dropdown", "checkbox", "radio", "text", "image")

TYPE_SELECTORS: dict[str, list[str]] = {
    "button": ["button", 'input[type="button"]', 'input[type="submit"]', '[role="button"]'],
    "link": ["a", '[role="link"]'],
    "input": ["input", "textarea"],
    "dropdown": ["select", '[role="listbox"]'],
    "checkbox": ['input[type="checkbox"]', '[role="checkbox"]'],
    "radio": ['input[type="radio"]', '[role="radio"]'],
    "image": ["img", "svg"],
    "text": ["span", "p", "div", "label", "h1", "h2", "h3", "h4", "h5", "h6"],
}

COMPATIBLE_TAGS: dict[str, tuple[str, ...]] = {
    "button": ("button", "input", "a", "div", "span"),
    "input": ("input", "textarea"),
    "link": ("a", "button", "div", "span"),
    "dropdown": ("select", "div", "ul"),
    "checkbox": ("input",),
    "radio": ("input",),
}

_TAG_TYPES = {
    "button": "button",
    "a": "link",
    "select": "dropdown",
    "textarea": "input",
    "img": "image",
}


class StrategyKind(StrEnum):
    PROXIMITY = "proximity"
    TEXT_SIMILARITY = "text-similarity"
    ATTRIBUTE_SIMILARITY = "attribute-similarity"
    PARENT_CHILD = "parent-child"
    EXTERNAL_IDENTIFICATION = "external-identification"


DEFAULT_STRATEGY_ORDER: tuple[StrategyKind, ...] = (
    StrategyKind.PROXIMITY,
    StrategyKind.TEXT_SIMILARITY,
    StrategyKind.ATTRIBUTE_SIMILARITY,
    StrategyKind.PARENT_CHILD,
    StrategyKind.EXTERNAL_IDENTIFICATION,
)


@dataclass(slots=True)
class StrategyContext:
    """Collaborators shared by every strategy invocation."""

    dom: DomSurface
    extractor: FingerprintExtractor
    comparator: FingerprintComparator
    patterns: PatternCatalog
    locators: LocatorGenerator
    identifier: ElementIdentifier | None = None


def infer_element_type(
    element_type: str | None,
    description: str = "",
    fingerprint: ElementFingerprint | None = None,
) -> str:
    if element_type:
        return element_type.lower()
    lowered = description.lower()
    for candidate in ELEMENT_TYPES:
        if candidate in lowered:
            return candidate
    if fingerprint is None or not fingerprint.tag:
        return "element"
    if fingerprint.tag == "input":
        input_type = (fingerprint.attributes.get("type") or "text").lower()
        if input_type in {"checkbox", "radio"}:
            return input_type
        if input_type in {"submit", "button", "reset"}:
            return "button"
        return "input"
    return _TAG_TYPES.get(fingerprint.tag, "element")


def is_compatible_tag(element_type: str, tag: str) -> bool:
    allowed = COMPATIBLE_TAGS.get(element_type)
    return allowed is None or tag.lower() in allowed


def candidate_selectors(request: HealingRequest) -> list[str]:
    selectors: list[str] = []
    if request.fingerprint and request.fingerprint.tag:
        selectors.append(request.fingerprint.tag)
    element_type = infer_element_type(request.element_type, request.description, request.fingerprint)
    for selector in TYPE_SELECTORS.get(element_type, []):
        if selector not in selectors:
            selectors.append(selector)
    return selectors or ["*"]


def attribute_similarity(first: dict[str, str], second: dict[str, str]) -> float:
    """Weighted agreement over important attributes plus equal extra attributes.

    An important attribute only weighs in when at least one side carries it.
    """

    score = 0.0
    total = 0.0
    for name, weight in IMPORTANT_ATTRIBUTES.items():
        left = first.get(name)
        right = second.get(name)
        if not left and not right:
            continue
        total += weight
        if not left or not right:
            continue
        if name == "class":
            score += weight * jaccard(left.split(), right.split())
        elif left == right:
            score += weight
    for name in (set(first) | set(second)) - set(IMPORTANT_ATTRIBUTES):
        if first.get(name) and first.get(name) == second.get(name):
            score += OTHER_ATTRIBUTE_WEIGHT
            total += OTHER_ATTRIBUTE_WEIGHT
    return score / total if total else 0.0


async def _locate_all(dom: DomSurface, selectors: list[str]) -> list[Any]:
    found: list[Any] = []
    for selector in selectors:
        for element in await dom.locate(selector):
            if not any(element is existing or element == existing for existing in found):
                found.append(element)
    return found


def _pattern_score(request: HealingRequest, context: StrategyContext, fingerprint: ElementFingerprint) -> float:
    if not request.pattern:
        return 0.0
    pattern = context.patterns.patterns.get(request.pattern)
    return context.patterns.pattern_score(fingerprint, pattern) if pattern else 0.0


async def _materialize(
    kind: StrategyKind,
    scored: list[Candidate],
    context: StrategyContext,
) -> HealingResult | None:
    scored.sort(key=lambda item: (item.score, item.pattern_score), reverse=True)
    for candidate in scored:
        if candidate.score < MIN_COMBINED_SCORE:
            break
        description = await context.dom.describe(candidate.element)
        try:
            robust = context.locators.build_robust_locator(description)
        except LocatorGenerationError as exc:
            log.debug("%s: skipping candidate without locator: %s", kind, exc)
            continue
        if await context.dom.count(robust.primary) != 1:
            log.debug("%s: generated locator %s is not unique", kind, robust.primary)
            continue
        candidate.locator = robust.primary
        return HealingResult(
            strategy=kind.value,
            locator=robust,
            confidence=candidate.score * robust.confidence,
            match_score=candidate.score,
            reason=candidate.reason,
            element=candidate.element,
            fingerprint=candidate.fingerprint,
        )
    return None


async def heal_by_proximity(request: HealingRequest, context: StrategyContext) -> HealingResult | None:
    original = request.fingerprint
    origin = original.bounding_box if original else None
    if original is None or origin is None or origin.area == 0:
        log.debug("proximity: no last-known position for %s", request.key)
        return None
    scored: list[Candidate] = []
    for element in await _locate_all(context.dom, candidate_selectors(request)):
        box = await context.dom.bounding_box(element)
        distance = origin.distance_to(box)
        if distance > PROXIMITY_RADIUS:
            continue
        fingerprint = await context.extractor.extract(element)
        similarity = context.comparator.score(original, fingerprint)
        total = (1 - distance / PROXIMITY_RADIUS) * 0.3 + similarity * 0.7
        scored.append(
            Candidate(
                element=element,
                score=total,
                reason=f"Found similar element {round(distance)}px from original position",
                fingerprint=fingerprint,
                pattern_score=_pattern_score(request, context, fingerprint),
            )
        )
    return await _materialize(StrategyKind.PROXIMITY, scored, context)


async def heal_by_text(request: HealingRequest, context: StrategyContext) -> HealingResult | None:
    original = request.fingerprint
    text = original.primary_text if original else ""
    words = significant_words(text)[:3]
    if original is None or not words:
        log.debug("text-similarity: no significant text for %s", request.key)
        return None
    selectors = candidate_selectors(request)
    allowed = {selector for selector in selectors if selector.isalnum()}
    best_by_text: dict[str, tuple[Any, float]] = {}
    for word in words:
        for element in await context.dom.elements_with_text(word):
            if allowed and "*" not in selectors and await context.dom.tag_name(element) not in allowed:
                continue
            candidate_text = " ".join((await context.dom.text(element)).split())
            if not candidate_text:
                continue
            similarity = text_similarity(text, candidate_text)
            if similarity < MIN_TEXT_SIMILARITY:
                continue
            previous = best_by_text.get(candidate_text)
            if previous is None or previous[1] < similarity:
                best_by_text[candidate_text] = (element, similarity)
    scored: list[Candidate] = []
    for candidate_text, (element, similarity) in best_by_text.items():
        fingerprint = await context.extractor.extract(element)
        total = similarity * 0.6 + context.comparator.score(original, fingerprint) * 0.4
        scored.append(
            Candidate(
                element=element,
                score=total,
                reason=f"Found element with similar text {candidate_text!r}",
                fingerprint=fingerprint,
                pattern_score=_pattern_score(request, context, fingerprint),
            )
        )
    return await _materialize(StrategyKind.TEXT_SIMILARITY, scored, context)


async def heal_by_attributes(request: HealingRequest, context: StrategyContext) -> HealingResult | None:
    original = request.fingerprint
    if original is None or not original.tag:
        return None
    expected = original.attributes
    scored: list[Candidate] = []
    for element in await context.dom.locate(original.tag):
        similarity = attribute_similarity(expected, await context.dom.attributes(element))
        if similarity < MIN_ATTRIBUTE_SIMILARITY:
            continue
        fingerprint = await context.extractor.extract(element)
        total = similarity * 0.5 + context.comparator.score(original, fingerprint) * 0.5
        scored.append(
            Candidate(
                element=element,
                score=total,
                reason=f"Found element with {similarity:.0%} attribute similarity",
                fingerprint=fingerprint,
                pattern_score=_pattern_score(request, context, fingerprint),
            )
        )
    return await _materialize(StrategyKind.ATTRIBUTE_SIMILARITY, scored, context)


async def heal_by_relationships(request: HealingRequest, context: StrategyContext) -> HealingResult | None:
    original = request.fingerprint
    if original is None or original.structural is None:
        log.debug("parent-child: no structural snapshot for %s", request.key)
        return None
    for attempt in (_heal_by_parent, _heal_by_children, _heal_by_sibling):
        result = await attempt(original, request, context)
        if result is not None:
            return result
    return None


async def _heal_by_parent(
    original: ElementFingerprint, request: HealingRequest, context: StrategyContext
) -> HealingResult | None:
    parent_tag = original.context.parent_tag if original.context else ""
    if not parent_tag:
        return None
    scored: list[Candidate] = []
    for parent in await context.dom.locate(parent_tag):
        for child in await context.dom.children(parent):
            if await context.dom.tag_name(child) != original.tag:
                continue
            fingerprint = await context.extractor.extract(child)
            similarity = context.comparator.score(original, fingerprint)
            if similarity >= MIN_COMBINED_SCORE:
                scored.append(
                    Candidate(
                        element=child,
                        score=similarity,
                        reason=f"Found element by parent relationship (<{parent_tag}>)",
                        fingerprint=fingerprint,
                        pattern_score=_pattern_score(request, context, fingerprint),
                    )
                )
    return await _materialize(StrategyKind.PARENT_CHILD, scored, context)


async def _heal_by_children(
    original: ElementFingerprint, request: HealingRequest, context: StrategyContext
) -> HealingResult | None:
    expected = original.structural.child_tags if original.structural else []
    if not expected:
        return None
    scored: list[Candidate] = []
    for candidate in await context.dom.locate(original.tag):
        children = await context.dom.children(candidate)
        if len(children) != len(expected):
            continue
        tags = [await context.dom.tag_name(child) for child in children]
        match = sum(1 for actual, wanted in zip(tags, expected) if actual == wanted) / len(expected)
        if match <= MIN_CHILDREN_MATCH:
            continue
        fingerprint = await context.extractor.extract(candidate)
        total = match * 0.4 + context.comparator.score(original, fingerprint) * 0.6
        scored.append(
            Candidate(
                element=candidate,
                score=total,
                reason="Found element by children structure",
                fingerprint=fingerprint,
                pattern_score=_pattern_score(request, context, fingerprint),
            )
        )
    return await _materialize(StrategyKind.PARENT_CHILD, scored, context)


async def _heal_by_sibling(
    original: ElementFingerprint, request: HealingRequest, context: StrategyContext
) -> HealingResult | None:
    sibling_texts = original.context.sibling_texts if original.context else []
    if not sibling_texts or not sibling_texts[0].strip():
        return None
    previous_text = sibling_texts[0]
    scored: list[Candidate] = []
    for previous in await context.dom.elements_with_text(previous_text):
        if text_similarity(previous_text, await context.dom.text(previous)) < MIN_TEXT_SIMILARITY:
            continue
        following = await context.dom.next_sibling(previous)
        if following is None:
            continue
        fingerprint = await context.extractor.extract(following)
        similarity = context.comparator.score(original, fingerprint)
        if similarity >= MIN_COMBINED_SCORE:
            scored.append(
                Candidate(
                    element=following,
                    score=similarity,
                    reason=f"Found element by sibling relationship (after {previous_text!r})",
                    fingerprint=fingerprint,
                    pattern_score=_pattern_score(request, context, fingerprint),
                )
            )
    return await _materialize(StrategyKind.PARENT_CHILD, scored, context)


async def heal_by_identifier(request: HealingRequest, context: StrategyContext) -> HealingResult | None:
    if context.identifier is None or not request.description:
        log.debug("external-identification: unavailable for %s", request.key)
        return None
    try:
        element = await context.identifier.identify(request.description, context.dom)
    except (SelectorValidationError, IdentificationServiceError) as exc:
        raise StrategyError(
            f"{context.identifier.provider_name} gave no usable selector: {exc}", request.key
        ) from exc
    if element is None:
        return None
    fingerprint = await context.extractor.extract(element)
    candidate = Candidate(
        element=element,
        score=EXTERNAL_CONFIDENCE,
        reason=f"{context.identifier.provider_name} identified element from description",
        fingerprint=fingerprint,
    )
    return await _materialize(StrategyKind.EXTERNAL_IDENTIFICATION, [candidate], context)


StrategyFn = Callable[[HealingRequest, StrategyContext], Awaitable[HealingResult | None]]

STRATEGIES: dict[StrategyKind, StrategyFn] = {
    StrategyKind.PROXIMITY: heal_by_proximity,
    StrategyKind.TEXT_SIMILARITY: heal_by_text,
    StrategyKind.ATTRIBUTE_SIMILARITY: heal_by_attributes,
    StrategyKind.PARENT_CHILD: heal_by_relationships,
    StrategyKind.EXTERNAL_IDENTIFICATION: heal_by_identifier,
}


async def run_strategy(
    kind: StrategyKind,
    request: HealingRequest,
    context: StrategyContext,
    timeout: float | None = None,
) -> HealingResult | None:
    try:
        return await asyncio.wait_for(STRATEGIES[kind](request, context), timeout)
    except TimeoutError:
        log.warning("Strategy %s timed out after %ss for %s", kind, timeout, request.key)
        return None
    except StrategyError as exc:
        log.info("Strategy %s gave no result for %s: %s", kind, request.key, exc)
        return None
    except Exception as exc:  # noqa: BLE001 - a failing strategy must not end the heal.
        log.warning("Strategy %s failed for %s: %s", kind, request.key, exc)
        return None
