from __future__ import annotations

import logging
from typing import Any

from selenium.common.exceptions import NoSuchElementException, TimeoutException

from selfheal.config.schema import ElementDefinition, SuiteConfig
from selfheal.core.dom import DomSurface
from selfheal.core.exceptions import HealingError
from selfheal.core.healer import SelfHealingEngine
from selfheal.logging.audit import HealingAuditLogger
from selfheal.utils.wait import wait_until

log = logging.getLogger(__name__)


class SafeFinder:
    """Centralized element lookup with automatic healing.

    Tries the last healed override, the element's primary selector and its
    fallback chain; when nothing matches within the timeout the engine heals
    the element and the new primary selector is used.
    """

    def __init__(
        self,
        dom: DomSurface,
        suite_config: SuiteConfig,
        engine: SelfHealingEngine,
        audit_logger: HealingAuditLogger | None = None,
        poll_interval: float = 0.2,
    ) -> None:
        self.dom = dom
        self.suite_config = suite_config
        self.engine = engine
        self.poll_interval = poll_interval
        self.selector_overrides = audit_logger.read_overrides() if audit_logger else {}

    async def find(self, element_key: str, timeout: float | None = None) -> Any:
        element_definition = self.suite_config.get_element(element_key)
        duration = self._timeout(timeout)
        try:
            found = await self._wait_for_first_match(self._selector_specs(element_definition), duration)
        except TimeoutException as exc:
            log.info("No selector for %s matched within %ss, healing", element_key, duration)
            try:
                healed = await self.engine.heal(element_definition)
            except HealingError as healing_error:
                raise NoSuchElementException(f"{element_key}: {healing_error}") from exc
            self.selector_overrides[element_key] = healed.primary
            return await self.find_by_selector(healed.primary, timeout=duration)
        if element_definition.fingerprint is None and not self.engine.snapshots(element_definition):
            await self.engine.take_snapshot(element_definition)
        return found

    async def find_by_selector(self, selector: str, timeout: float | None = None) -> Any:
        return await self._wait_for_first_match([selector], self._timeout(timeout))

    def _timeout(self, timeout: float | None) -> float:
        return timeout or self.suite_config.environment.default_timeout_seconds

    def _selector_specs(self, element_definition: ElementDefinition) -> list[str]:
        selectors: list[str] = []
        override = self.selector_overrides.get(element_definition.key)
        if override:
            selectors.append(override)
        selectors.append(element_definition.selector)
        selectors.extend(element_definition.fallback_selectors)
        return list(dict.fromkeys(selectors))

    async def _wait_for_first_match(self, selectors: list[str], timeout: float) -> Any:
        async def first_match():
            for selector in selectors:
                matches = await self.dom.locate(selector)
                if matches:
                    return matches[0]
            return None

        found = await wait_until(first_match, timeout, self.poll_interval)
        if found is None:
            raise TimeoutException("Timed out waiting for element")
        return found
