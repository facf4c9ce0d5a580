from __future__ import annotations

import asyncio

import pytest

from selfheal.core.exceptions import IdentificationServiceError, StrategyError
from selfheal.core.locators import LocatorGenerator
from selfheal.core.metadata import HealingRequest
from selfheal.core.patterns import PatternCatalog
from selfheal.core.similarity import FingerprintComparator
from selfheal.core.strategies import (
    StrategyContext,
    StrategyKind,
    attribute_similarity,
    heal_by_attributes,
    heal_by_identifier,
    heal_by_proximity,
    heal_by_relationships,
    heal_by_text,
    infer_element_type,
    is_compatible_tag,
    run_strategy,
)
from selfheal.llm.parser import parse_selector_response
from tests.helpers import FakePage, StubIdentifier, checkout_page, el, page


def _context(dom: FakePage, identifier=None) -> StrategyContext:
    return StrategyContext(
        dom=dom,
        extractor=dom,
        comparator=FingerprintComparator(),
        patterns=PatternCatalog(),
        locators=LocatorGenerator(),
        identifier=identifier,
    )


def _request(fingerprint, description: str = "Submit Order button") -> HealingRequest:
    return HealingRequest(
        element_id="submit_order:css:#submit-order",
        key="submit_order",
        locator="#submit-order",
        selector_type="css",
        description=description,
        fingerprint=fingerprint,
    )


def _original_submit():
    original = checkout_page()
    return original.fingerprint(original.find("#submit-order"))


def test_infer_element_type():
    fingerprint = _original_submit()
    assert infer_element_type("Link", "", None) == "link"
    assert infer_element_type(None, "the search input", None) == "input"
    assert infer_element_type(None, "", fingerprint) == "button"
    assert infer_element_type(None, "", None) == "element"


def test_tag_compatibility_table():
    assert is_compatible_tag("button", "a")
    assert not is_compatible_tag("checkbox", "div")
    assert is_compatible_tag("element", "section")


def test_attribute_similarity_weights_only_present_attributes():
    assert attribute_similarity({"type": "submit"}, {"type": "submit"}) == pytest.approx(1.0)
    assert attribute_similarity({"class": "a b", "role": "tab"}, {"class": "a", "role": "tab"}) == pytest.approx(
        (0.3 * 0.5 + 0.25) / 0.55
    )
    assert attribute_similarity({"id": "x"}, {"id": "y"}) == 0.0


@pytest.mark.asyncio
async def test_proximity_finds_shifted_element_with_new_id():
    dom = checkout_page(
        submit=el("button", {"id": "submit-order-v2", "class": "btn primary", "type": "submit"},
                  text="Submit Order", box=(100, 205, 120, 40))
    )
    result = await heal_by_proximity(_request(_original_submit()), _context(dom))
    assert result is not None
    assert result.strategy == "proximity"
    assert result.locator.primary == "#submit-order-v2"
    assert result.confidence >= 0.7
    assert "px from original position" in result.reason


@pytest.mark.asyncio
async def test_proximity_ignores_far_elements():
    dom = checkout_page(
        submit=el("button", {"id": "submit-order-v2", "class": "btn primary", "type": "submit"},
                  text="Submit Order", box=(900, 800, 120, 40))
    )
    assert await heal_by_proximity(_request(_original_submit()), _context(dom)) is None


@pytest.mark.asyncio
async def test_text_strategy_follows_moved_and_restyled_element():
    dom = checkout_page(
        submit=el("button", {"id": "place-order-btn", "class": "cta-large"},
                  text="Submit Order", box=(600, 700, 160, 48))
    )
    result = await heal_by_text(_request(_original_submit()), _context(dom))
    assert result is not None
    assert result.strategy == "text-similarity"
    assert result.locator.primary == "#place-order-btn"
    assert result.confidence >= 0.7


@pytest.mark.asyncio
async def test_only_text_matches_after_attributes_and_position_change():
    original = page(
        el("button", {"type": "submit", "class": "order-submit"}, text="Submit Order", box=(100, 200, 80, 30))
    )
    fingerprint = original.fingerprint(original.find("button"))
    dom = page(
        el("button", {"class": "cta-large", "data-track": "checkout"}, text="Submit Order", box=(700, 900, 200, 60))
    )
    request = _request(fingerprint)
    assert await heal_by_proximity(request, _context(dom)) is None
    assert await heal_by_attributes(request, _context(dom)) is None
    result = await heal_by_text(request, _context(dom))
    assert result is not None
    assert result.match_score >= 0.7
    assert dom.find(result.locator.primary) is dom.find("button")


@pytest.mark.asyncio
async def test_attribute_strategy_tolerates_id_change():
    dom = checkout_page(
        submit=el("button", {"class": "btn primary", "type": "submit", "data-testid": "checkout-submit"},
                  text="Submit Order", box=(100, 300, 120, 40))
    )
    result = await heal_by_attributes(_request(_original_submit()), _context(dom))
    assert result is not None
    assert result.locator.primary == '[data-testid=checkout-submit]'


@pytest.mark.asyncio
async def test_relationship_strategy_uses_previous_sibling_text():
    def layout(button_id: str, y: float) -> FakePage:
        return page(
            el(
                "div",
                {"class": "toolbar"},
                el("span", None, text="Quantity"),
                el("button", {"id": button_id, "class": "stepper"}, text="+", box=(300, y, 24, 24)),
                box=(280, y - 10, 200, 44),
            )
        )

    original = layout("qty-plus", 100)
    fingerprint = original.fingerprint(original.find("#qty-plus"))
    dom = layout("quantity-increase", 400)
    request = _request(fingerprint, description="")
    result = await heal_by_relationships(request, _context(dom))
    assert result is not None
    assert result.strategy == "parent-child"
    assert result.locator.primary == "#quantity-increase"


@pytest.mark.asyncio
async def test_identifier_strategy_needs_description_and_identifier():
    dom = checkout_page(
        submit=el("button", {"id": "pay-now"}, text="Pay now", box=(10, 10, 80, 30))
    )
    request = _request(_original_submit())
    assert await heal_by_identifier(request, _context(dom)) is None

    result = await heal_by_identifier(request, _context(dom, StubIdentifier("#pay-now")))
    assert result is not None
    assert result.locator.primary == "#pay-now"
    assert result.match_score == pytest.approx(0.8)
    assert result.confidence == pytest.approx(0.8 * 0.95)

    request.description = ""
    assert await heal_by_identifier(request, _context(dom, StubIdentifier("#pay-now"))) is None


class _ExplodingPage(FakePage):
    async def locate(self, selector):
        raise RuntimeError("browser went away")


class _SlowPage(FakePage):
    async def locate(self, selector):
        await asyncio.sleep(1)
        return []


@pytest.mark.asyncio
async def test_run_strategy_contains_errors_and_timeouts():
    exploding = _ExplodingPage(checkout_page().root)
    slow = _SlowPage(checkout_page().root)
    request = _request(_original_submit())
    assert await run_strategy(StrategyKind.PROXIMITY, request, _context(exploding)) is None
    assert await run_strategy(StrategyKind.PROXIMITY, request, _context(slow), timeout=0.05) is None


class _GarbledIdentifier(StubIdentifier):
    async def identify(self, description, dom):
        parse_selector_response("```css\n#pay-now\n```")


@pytest.mark.asyncio
async def test_unusable_identifier_answer_is_contained():
    dom = checkout_page()
    request = _request(_original_submit())
    context = _context(dom, _GarbledIdentifier(None))
    with pytest.raises(StrategyError):
        await heal_by_identifier(request, context)
    assert await run_strategy(StrategyKind.EXTERNAL_IDENTIFICATION, request, context) is None


class _UnreachableIdentifier(StubIdentifier):
    async def identify(self, description, dom):
        raise IdentificationServiceError("Identification request could not be completed: timed out")


@pytest.mark.asyncio
async def test_unreachable_identification_service_is_contained():
    request = _request(_original_submit())
    context = _context(checkout_page(), _UnreachableIdentifier(None))
    with pytest.raises(StrategyError, match="timed out"):
        await heal_by_identifier(request, context)
    assert await run_strategy(StrategyKind.EXTERNAL_IDENTIFICATION, request, context) is None
