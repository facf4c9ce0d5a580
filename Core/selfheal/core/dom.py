from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from selfheal.core.fingerprint import BoundingBox, ElementFingerprint
from selfheal.core.metadata import ElementDescription


class DomSurface(ABC):
    """Read-only, asynchronous view of the live page.

    Element references are opaque to the engine; a binding hands them out from
    ``locate`` and friends and accepts them back in the per-element queries.
    Selectors are CSS, or XPath when they start with ``/`` or ``(``.
    """

    @abstractmethod
    async def locate(self, selector: str) -> list[Any]:
        raise NotImplementedError

    async def count(self, selector: str) -> int:
        return len(await self.locate(selector))

    @abstractmethod
    async def elements_with_text(self, fragment: str) -> list[Any]:
        """Innermost elements whose text contains ``fragment``, case-insensitively."""

        raise NotImplementedError

    @abstractmethod
    async def children(self, element: Any) -> list[Any]:
        raise NotImplementedError

    @abstractmethod
    async def parent(self, element: Any) -> Any | None:
        raise NotImplementedError

    @abstractmethod
    async def next_sibling(self, element: Any) -> Any | None:
        raise NotImplementedError

    @abstractmethod
    async def tag_name(self, element: Any) -> str:
        raise NotImplementedError

    @abstractmethod
    async def text(self, element: Any) -> str:
        raise NotImplementedError

    @abstractmethod
    async def attributes(self, element: Any) -> dict[str, str]:
        raise NotImplementedError

    @abstractmethod
    async def bounding_box(self, element: Any) -> BoundingBox:
        raise NotImplementedError

    @abstractmethod
    async def computed_style(self, element: Any, prop: str) -> str:
        raise NotImplementedError

    @abstractmethod
    async def is_visible(self, element: Any) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def describe(self, element: Any) -> ElementDescription:
        raise NotImplementedError

    @abstractmethod
    async def wait_until_attached(self, selector: str, timeout: float) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def current_url(self) -> str:
        raise NotImplementedError


class FingerprintExtractor(ABC):
    @abstractmethod
    async def extract(self, element: Any) -> ElementFingerprint:
        raise NotImplementedError


class ElementIdentifier(ABC):
    """Best-effort lookup of an element from a free-text description."""

    provider_name = "unknown"

    @abstractmethod
    async def identify(self, description: str, dom: DomSurface) -> Any | None:
        raise NotImplementedError

    async def train_on_success(self, description: str, locator: str) -> None:
        return None
