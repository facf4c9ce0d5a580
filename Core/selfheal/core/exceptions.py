from __future__ import annotations


class HealingError(RuntimeError):
    """Raised when locator healing fails."""

    def __init__(self, message: str, element_key: str | None = None) -> None:
        super().__init__(message)
        self.element_key = element_key


class HealingDisabledError(HealingError):
    """Raised when healing is switched off in the configuration."""

    def __init__(self, element_key: str) -> None:
        super().__init__(f"Self-healing is disabled; cannot heal '{element_key}'", element_key)


class HealInProgressError(HealingError):
    """Raised when the same element is already being healed."""

    def __init__(self, element_key: str) -> None:
        super().__init__(f"Healing already in progress for '{element_key}'", element_key)


class NoCandidatesError(HealingError):
    """Raised when no strategy proposed any replacement element."""

    def __init__(self, element_key: str, strategies: list[str]) -> None:
        tried = ", ".join(strategies) or "none"
        super().__init__(
            f"All healing strategies failed for '{element_key}': no candidates found (tried {tried})",
            element_key,
        )
        self.strategies = strategies


class LowConfidenceError(HealingError):
    """Raised when candidates existed but none reached the confidence threshold."""

    def __init__(self, element_key: str, best_score: float, threshold: float) -> None:
        super().__init__(
            f"All healing strategies failed for '{element_key}': "
            f"best match score {best_score:.2f} is below threshold {threshold:.2f}",
            element_key,
        )
        self.best_score = best_score
        self.threshold = threshold


class ValidationFailedError(HealingError):
    """Raised when every confident candidate failed live validation."""

    def __init__(self, element_key: str, locator: str, best_score: float, threshold: float) -> None:
        super().__init__(
            f"All healing strategies failed for '{element_key}': "
            f"candidate {locator!r} (match score {best_score:.2f}, threshold {threshold:.2f}) failed validation",
            element_key,
        )
        self.locator = locator
        self.best_score = best_score
        self.threshold = threshold


class StrategyError(HealingError):
    """Raised inside a strategy; contained by the strategy runner."""


class LocatorGenerationError(HealingError):
    """Raised when no locator can be formed for an element."""


class SelectorValidationError(HealingError):
    """Raised when an identifier returns an unusable selector."""


class PersistenceError(RuntimeError):
    """Raised by the artifact store; logged by the history, never propagated."""


class IdentificationServiceError(RuntimeError):
    """Raised when the element identification service gives no usable answer."""
