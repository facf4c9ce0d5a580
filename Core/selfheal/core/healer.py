from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any, Callable

from selfheal.config.schema import ElementDefinition, HealingSettings
from selfheal.core.dom import DomSurface, ElementIdentifier, FingerprintExtractor
from selfheal.core.exceptions import (
    HealInProgressError,
    HealingDisabledError,
    LowConfidenceError,
    NoCandidatesError,
    ValidationFailedError,
)
from selfheal.core.fingerprint import ElementFingerprint
from selfheal.core.history import HealingHistory
from selfheal.core.locators import LocatorGenerator, is_xpath
from selfheal.core.metadata import HealAttempt, HealingRequest, HealingResult, RobustLocator
from selfheal.core.patterns import PatternCatalog
from selfheal.core.similarity import FingerprintComparator
from selfheal.core.strategies import (
    StrategyContext,
    StrategyKind,
    infer_element_type,
    is_compatible_tag,
    run_strategy,
)
from selfheal.logging.artifacts import ArtifactManager
from selfheal.logging.audit import HealingAuditLogger
from selfheal.utils.scoring import text_similarity

log = logging.getLogger(__name__)

MIN_DESCRIPTION_SIMILARITY = 0.5
MAX_SNAPSHOTS_PER_ELEMENT = 10
FAILED_STRATEGY = "all"

_DESCRIBING_ATTRIBUTES = ("aria-label", "placeholder", "title", "value", "alt")


class SelfHealingEngine:
    """Finds a live replacement for an element whose locator stopped matching.

    One heal per element identity at a time; a second caller for the same
    identity fails fast with ``HealInProgressError``. Successful heals are
    cached for ``cache_ttl_seconds`` and written back onto the element
    definition (new primary locator, old one first in the fallback chain).
    """

    def __init__(
        self,
        dom: DomSurface,
        extractor: FingerprintExtractor,
        settings: HealingSettings | None = None,
        *,
        history: HealingHistory | None = None,
        identifier: ElementIdentifier | None = None,
        audit_logger: HealingAuditLogger | None = None,
        artifact_manager: ArtifactManager | None = None,
        patterns: PatternCatalog | None = None,
        locators: LocatorGenerator | None = None,
        comparator: FingerprintComparator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or HealingSettings()
        self.dom = dom
        self.identifier = identifier
        self.audit_logger = audit_logger
        self.artifact_manager = artifact_manager
        if history is None:
            history_settings = self.settings.history
            history = HealingHistory(
                artifact_manager,
                max_records_per_element=history_settings.max_records_per_element,
                retention_days=history_settings.retention_days,
                autosave_interval_seconds=history_settings.autosave_interval_seconds,
            )
        self.history = history
        self.patterns = patterns or PatternCatalog()
        self.context = StrategyContext(
            dom=dom,
            extractor=extractor,
            comparator=comparator or FingerprintComparator(self.settings.similarity_weights),
            patterns=self.patterns,
            locators=locators or LocatorGenerator(),
            identifier=identifier,
        )
        self.clock = clock
        self._in_flight: set[str] = set()
        self._cache: dict[str, tuple[RobustLocator, float]] = {}
        self._snapshots: dict[str, deque[ElementFingerprint]] = {}

    @classmethod
    def from_settings(
        cls,
        dom: DomSurface,
        extractor: FingerprintExtractor,
        settings: HealingSettings,
        identifier: ElementIdentifier | None = None,
    ) -> SelfHealingEngine:
        """Engine whose history, reports and audit log live under ``history.artifacts_root``."""

        root = settings.history.artifacts_root
        return cls(
            dom,
            extractor,
            settings,
            identifier=identifier,
            audit_logger=HealingAuditLogger(root),
            artifact_manager=ArtifactManager(root),
        )

    async def start(self) -> None:
        await self.history.start()

    async def shutdown(self) -> None:
        await self.history.shutdown()

    async def heal(self, element: ElementDefinition) -> RobustLocator:
        element_id = element.identity
        if not self.settings.enabled:
            raise HealingDisabledError(element.key)
        if element_id in self._in_flight:
            raise HealInProgressError(element.key)
        self._in_flight.add(element_id)
        try:
            cached = await self._cached(element, element_id)
            if cached is not None:
                return cached
            return await self._heal(element, element_id)
        finally:
            self._in_flight.discard(element_id)

    async def _cached(self, element: ElementDefinition, element_id: str) -> RobustLocator | None:
        entry = self._cache.get(element_id)
        if entry is None:
            return None
        locator, cached_at = entry
        if self.clock() - cached_at > self.settings.cache_ttl_seconds:
            del self._cache[element_id]
            return None
        if not await self._still_live(locator.primary, element.wait_for_visible):
            log.info("Cached healing for %s no longer resolves, healing again", element.key)
            del self._cache[element_id]
            return None
        log.info("Self-healing cache hit for %s: %s", element.key, locator.primary)
        self._event("cache_hit", element_key=element.key, element_id=element_id, locator=locator.primary)
        return locator

    async def _still_live(self, locator: str, require_visible: bool) -> bool:
        matches = await self.dom.locate(locator)
        if len(matches) != 1:
            return False
        return not require_visible or await self.dom.is_visible(matches[0])

    async def _heal(self, element: ElementDefinition, element_id: str) -> RobustLocator:
        started = time.perf_counter()
        fingerprint = self.last_known_fingerprint(element)
        pattern = self.patterns.classify(fingerprint) if fingerprint else None
        element_type = infer_element_type(element.element_type, element.description, fingerprint)
        request = HealingRequest(
            element_id=element_id,
            key=element.key,
            locator=element.selector,
            selector_type=element.selector_type,
            description=element.description,
            element_type=element.element_type,
            fingerprint=fingerprint,
            require_visible=element.wait_for_visible,
            pattern=pattern.name if pattern else None,
        )
        log.info("Self-healing started for %s (%s)", element.key, element.selector)
        self._event(
            "attempt_started",
            element_key=element.key,
            element_id=element_id,
            locator=element.selector,
            element_type=element_type,
            pattern=request.pattern,
        )

        threshold = self.settings.confidence_threshold
        best_score = 0.0
        saw_candidate = False
        rejected: HealingResult | None = None
        attempts = 0
        for kind in self.order_strategies(element_type):
            if attempts >= self.settings.max_attempts:
                break
            if kind.value in request.attempted:
                continue
            request.attempted.add(kind.value)
            attempts += 1
            result = await run_strategy(kind, request, self.context, self.settings.strategy_timeout_seconds)
            self._event(
                "strategy_tried",
                element_key=element.key,
                strategy=kind.value,
                attempt=attempts,
                match_score=result.match_score if result else None,
                confidence=result.confidence if result else None,
            )
            if result is None:
                continue
            saw_candidate = True
            best_score = max(best_score, result.match_score)
            if result.match_score < threshold:
                log.info(
                    "Strategy %s proposed %s for %s below threshold (%.2f < %.2f)",
                    kind,
                    result.locator.primary,
                    element.key,
                    result.match_score,
                    threshold,
                )
                continue
            if await self._validate_locator(
                result.locator.primary, element.description, element_type, element.wait_for_visible
            ):
                return await self._succeed(element, element_id, request, result, element_type, started)
            log.info("Strategy %s candidate %s failed validation for %s", kind, result.locator.primary, element.key)
            if rejected is None or result.match_score > rejected.match_score:
                rejected = result

        if rejected is not None:
            error = ValidationFailedError(element.key, rejected.locator.primary, rejected.match_score, threshold)
        elif saw_candidate:
            error = LowConfidenceError(element.key, best_score, threshold)
        else:
            error = NoCandidatesError(element.key, sorted(request.attempted))
        await self._fail(element, element_id, request, element_type, started, best_score, error)
        raise error

    def order_strategies(self, element_type: str | None = None) -> list[StrategyKind]:
        """Configured strategies by historical success rate, external identification last."""

        configured = list(dict.fromkeys(StrategyKind(kind) for kind in self.settings.strategies))
        ranked = sorted(
            (kind for kind in configured if kind is not StrategyKind.EXTERNAL_IDENTIFICATION),
            key=lambda kind: self.history.strategy_rate(kind.value, element_type),
            reverse=True,
        )
        if StrategyKind.EXTERNAL_IDENTIFICATION in configured:
            ranked.append(StrategyKind.EXTERNAL_IDENTIFICATION)
        return ranked

    async def validate(self, element: ElementDefinition, locator: str) -> bool:
        element_type = infer_element_type(
            element.element_type, element.description, self.last_known_fingerprint(element)
        )
        return await self._validate_locator(locator, element.description, element_type, element.wait_for_visible)

    async def _validate_locator(
        self,
        locator: str,
        description: str,
        element_type: str,
        require_visible: bool,
    ) -> bool:
        try:
            matches = await self.dom.locate(locator)
            if len(matches) != 1:
                return False
            if not await self.dom.wait_until_attached(locator, self.settings.validation_timeout_seconds):
                return False
            live = matches[0]
            if description and await self._description_similarity(description, live) < MIN_DESCRIPTION_SIMILARITY:
                return False
            if not is_compatible_tag(element_type, await self.dom.tag_name(live)):
                return False
            if require_visible and not await self.dom.is_visible(live):
                return False
        except Exception as exc:  # noqa: BLE001 - a broken candidate is a failed validation.
            log.warning("Healing validation failed for %s: %s", locator, exc)
            return False
        return True

    async def _description_similarity(self, description: str, live: Any) -> float:
        texts = [await self.dom.text(live)]
        attributes = await self.dom.attributes(live)
        texts.extend(attributes[name] for name in _DESCRIBING_ATTRIBUTES if attributes.get(name))
        return max(text_similarity(description, text) for text in texts)

    async def _succeed(
        self,
        element: ElementDefinition,
        element_id: str,
        request: HealingRequest,
        result: HealingResult,
        element_type: str,
        started: float,
    ) -> RobustLocator:
        duration_ms = (time.perf_counter() - started) * 1000
        old_selector = element.selector
        new_selector = result.locator.primary
        chain = dict.fromkeys([old_selector, *element.fallback_selectors])
        element.fallback_selectors = [item for item in chain if item != new_selector]
        element.selector = new_selector
        element.selector_type = "xpath" if is_xpath(new_selector) else "css"

        self.history.record_attempt(
            element_id,
            result.strategy,
            True,
            {
                "duration": duration_ms,
                "confidence": result.confidence,
                "old_locator": old_selector,
                "new_locator": new_selector,
                "element_type": element_type,
                "page_url": await self._page_url(),
            },
        )
        if request.pattern:
            self.patterns.record_outcome(request.pattern, True)
        self._cache[element_id] = (result.locator, self.clock())
        if result.fingerprint is not None:
            self._store_snapshot(element_id, result.fingerprint)
        if result.strategy == StrategyKind.EXTERNAL_IDENTIFICATION and self.identifier is not None:
            await self._train_identifier(element, new_selector)

        log.info(
            "Self-healing succeeded for %s via %s: %s -> %s (match %.2f, confidence %.2f, %.0f ms)",
            element.key,
            result.strategy,
            old_selector,
            new_selector,
            result.match_score,
            result.confidence,
            duration_ms,
        )
        self._event(
            "healing_succeeded",
            element_key=element.key,
            strategy=result.strategy,
            reason=result.reason,
            confidence=result.confidence,
            match_score=result.match_score,
            new_locator=new_selector,
            fallbacks=result.locator.fallbacks,
        )
        self._audit(
            HealAttempt(
                element_key=element.key,
                element_id=element_id,
                old_selector=old_selector,
                new_selector=new_selector,
                strategy=result.strategy,
                confidence=result.confidence,
                success=True,
                duration_ms=duration_ms,
            )
        )
        return result.locator

    async def _fail(
        self,
        element: ElementDefinition,
        element_id: str,
        request: HealingRequest,
        element_type: str,
        started: float,
        best_score: float,
        error: Exception,
    ) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        self.history.record_attempt(
            element_id,
            FAILED_STRATEGY,
            False,
            {
                "duration": duration_ms,
                "confidence": 0.0,
                "error_message": "All healing strategies failed",
                "old_locator": element.selector,
                "element_type": element_type,
                "page_url": await self._page_url(),
            },
        )
        if request.pattern:
            self.patterns.record_outcome(request.pattern, False)
        log.warning("Self-healing failed for %s: %s", element.key, error)
        self._event(
            "healing_failed",
            element_key=element.key,
            strategies=sorted(request.attempted),
            best_score=best_score,
            error=str(error),
        )
        self._audit(
            HealAttempt(
                element_key=element.key,
                element_id=element_id,
                old_selector=element.selector,
                new_selector="",
                strategy=FAILED_STRATEGY,
                confidence=best_score,
                success=False,
                duration_ms=duration_ms,
                error_message=str(error),
            )
        )

    async def _page_url(self) -> str | None:
        try:
            return await self.dom.current_url()
        except Exception as exc:  # noqa: BLE001 - the URL is only history metadata.
            log.debug("Could not read current URL: %s", exc)
            return None

    async def _train_identifier(self, element: ElementDefinition, locator: str) -> None:
        try:
            await self.identifier.train_on_success(element.description, locator)
        except Exception as exc:  # noqa: BLE001 - training is best effort.
            log.warning("Identifier training failed for %s: %s", element.key, exc)

    # snapshots

    def last_known_fingerprint(self, element: ElementDefinition) -> ElementFingerprint | None:
        snapshots = self._snapshots.get(element.identity)
        if snapshots:
            return snapshots[-1]
        return element.fingerprint

    def snapshots(self, element: ElementDefinition) -> list[ElementFingerprint]:
        return list(self._snapshots.get(element.identity, ()))

    def _store_snapshot(self, element_id: str, fingerprint: ElementFingerprint) -> None:
        snapshots = self._snapshots.setdefault(element_id, deque(maxlen=MAX_SNAPSHOTS_PER_ELEMENT))
        snapshots.append(fingerprint)

    async def take_snapshot(self, element: ElementDefinition) -> ElementFingerprint | None:
        """Captures a fingerprint while the element's locator still works."""

        try:
            matches = await self.dom.locate(element.selector)
            if not matches:
                return None
            fingerprint = await self.context.extractor.extract(matches[0])
        except Exception as exc:  # noqa: BLE001 - preventive snapshots are best effort.
            log.debug("Failed to take preventive snapshot for %s: %s", element.key, exc)
            return None
        self._store_snapshot(element.identity, fingerprint)
        return fingerprint

    # history facade

    def stats(self) -> dict[str, Any]:
        by_strategy = self.history.strategy_statistics()
        attempts = sum(item["total_attempts"] for item in by_strategy.values())
        successes = sum(item["success_count"] for item in by_strategy.values())
        return {
            "totals": {
                "attempts": attempts,
                "successful_heals": successes,
                "failed_heals": attempts - successes,
            },
            "by_strategy": by_strategy,
            "fragile_elements": self.history.fragile_elements(),
            "patterns": self.patterns.analyze(),
        }

    def export_history(self) -> dict[str, Any]:
        return {
            "stats": self.stats(),
            "history": self.history.export_records(),
            "snapshots": {
                element_id: [snapshot.model_dump(mode="json") for snapshot in snapshots]
                for element_id, snapshots in self._snapshots.items()
            },
        }

    def import_history(self, data: dict[str, Any] | list[dict[str, Any]]) -> int:
        if isinstance(data, list):
            return self.history.import_records(data)
        imported = self.history.import_records(data.get("history", []))
        for element_id, snapshots in (data.get("snapshots") or {}).items():
            self._snapshots[element_id] = deque(
                (ElementFingerprint.model_validate(item) for item in snapshots),
                maxlen=MAX_SNAPSHOTS_PER_ELEMENT,
            )
        return imported

    def reset_history(self) -> None:
        self.history.reset()
        self._snapshots.clear()
        self.clear_cache()

    def clear_cache(self) -> None:
        self._cache.clear()

    def write_report(self, fmt: str = "json"):
        return self.history.write_report(fmt)

    # telemetry

    def _event(self, name: str, **fields: Any) -> None:
        if self.audit_logger is not None:
            self.audit_logger.event(name, **fields)

    def _audit(self, attempt: HealAttempt) -> None:
        if self.audit_logger is not None:
            self.audit_logger.write(attempt)
