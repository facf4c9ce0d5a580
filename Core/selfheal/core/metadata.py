from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from selfheal.core.fingerprint import BoundingBox, ElementFingerprint


@dataclass(slots=True)
class PathStep:
    """One element on the root-to-target chain of an ElementDescription."""

    tag: str
    attributes: dict[str, str] = field(default_factory=dict)
    position: int = 1
    same_tag_count: int = 1
    nth_child: int = 1
    sibling_count: int = 1

    @property
    def element_id(self) -> str:
        return self.attributes.get("id", "")


@dataclass(slots=True)
class ElementDescription:
    tag: str
    attributes: dict[str, str]
    text: str
    path: list[PathStep] = field(default_factory=list)
    bounding_box: BoundingBox | None = None

    @property
    def element_id(self) -> str:
        return self.attributes.get("id", "")

    @property
    def classes(self) -> list[str]:
        return self.attributes.get("class", "").split()


@dataclass(slots=True)
class Candidate:
    """A live element proposed by a strategy, with its combined match score.

    ``locator`` is filled in once the locator generator has produced a unique
    selector for the element.
    """

    element: Any
    score: float
    reason: str
    fingerprint: ElementFingerprint | None = None
    pattern_score: float = 0.0
    locator: str | None = None


@dataclass(slots=True)
class RobustLocator:
    primary: str
    fallbacks: list[str]
    confidence: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def all_locators(self) -> list[str]:
        return [self.primary, *self.fallbacks]


@dataclass(slots=True)
class HealingRequest:
    """Per-attempt context: what the broken element used to look like."""

    element_id: str
    key: str
    locator: str
    selector_type: str
    description: str = ""
    element_type: str | None = None
    fingerprint: ElementFingerprint | None = None
    require_visible: bool = True
    pattern: str | None = None
    attempted: set[str] = field(default_factory=set)


@dataclass(slots=True)
class HealingResult:
    strategy: str
    locator: RobustLocator
    confidence: float
    match_score: float
    reason: str
    element: Any = None
    fingerprint: ElementFingerprint | None = None


@dataclass(slots=True)
class HealAttempt:
    element_key: str
    element_id: str
    old_selector: str
    new_selector: str
    strategy: str
    confidence: float
    success: bool
    duration_ms: float
    error_message: str | None = None
