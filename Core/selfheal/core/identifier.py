from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import UTC, datetime
from typing import Any

from selfheal.core.dom import DomSurface, ElementIdentifier
from selfheal.llm.client import ElementLocatorClient, IdentificationRequest
from selfheal.llm.parser import parse_selector_response
from selfheal.logging.artifacts import ArtifactManager

log = logging.getLogger(__name__)

CANDIDATE_SELECTOR = 'a, button, input, select, textarea, [role], [data-testid], [aria-label], [onclick]'


class LLMElementIdentifier(ElementIdentifier):
    """Asks a language model which listed candidate matches a description.

    Confirmed (description, locator) pairs from earlier heals are replayed to
    the model as examples and appended to the training log.
    """

    def __init__(
        self,
        client: ElementLocatorClient,
        artifact_manager: ArtifactManager | None = None,
        max_candidates: int = 80,
        max_examples: int = 20,
    ) -> None:
        self.client = client
        self.artifact_manager = artifact_manager
        self.max_candidates = max_candidates
        self.examples: deque[dict[str, str]] = deque(maxlen=max_examples)

    @property
    def provider_name(self) -> str:
        return self.client.provider_name

    async def identify(self, description: str, dom: DomSurface) -> Any | None:
        candidates = []
        for element in (await dom.locate(CANDIDATE_SELECTOR))[: self.max_candidates]:
            described = await dom.describe(element)
            candidates.append(
                {
                    "tag": described.tag,
                    "text": described.text[:200],
                    "attributes": described.attributes,
                    "parent_tag": described.path[-2].tag if len(described.path) > 1 else "",
                }
            )
        if not candidates:
            return None
        identification = IdentificationRequest(
            description=description,
            page_url=await dom.current_url(),
            candidates=candidates,
            examples=list(self.examples),
        )
        suggestion = await asyncio.to_thread(self.client.identify_element, identification)
        log.debug("%s (%s) answered %r for %r", suggestion.provider, suggestion.model, suggestion.answer, description)
        selector, _ = parse_selector_response(suggestion.answer)
        matches = await dom.locate(selector)
        if len(matches) != 1:
            log.info("%s selector %r matched %s elements for %r", self.provider_name, selector, len(matches), description)
            return None
        return matches[0]

    async def train_on_success(self, description: str, locator: str) -> None:
        example = {"description": description, "locator": locator}
        self.examples.append(example)
        if self.artifact_manager is not None:
            record = {**example, "provider": self.provider_name, "timestamp": datetime.now(UTC).isoformat()}
            await asyncio.to_thread(self.artifact_manager.append_training, record)
