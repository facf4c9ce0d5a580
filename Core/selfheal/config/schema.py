from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator

from selfheal.core.fingerprint import ElementFingerprint
from selfheal.core.similarity import DEFAULT_WEIGHTS
from selfheal.core.strategies import DEFAULT_STRATEGY_ORDER, StrategyKind


class EnvironmentConfig(BaseModel):
    base_url: str | None = None
    browser: str = "chrome"
    default_timeout_seconds: int = 10
    headless: bool = True

    @field_validator("browser")
    @classmethod
    def validate_browser(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"chrome", "firefox"}:
            raise ValueError(f"Unsupported browser: {value}")
        return normalized


class HistorySettings(BaseModel):
    artifacts_root: str = "artifacts"
    autosave_interval_seconds: float = Field(default=30.0, gt=0)
    retention_days: int = Field(default=30, ge=1)
    max_records_per_element: int = Field(default=100, ge=1)


class HealingSettings(BaseModel):
    enabled: bool = True
    max_attempts: int = Field(default=5, ge=1)
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    cache_ttl_seconds: float = Field(default=300.0, ge=0)
    validation_timeout_seconds: float = Field(default=5.0, gt=0)
    strategy_timeout_seconds: float = Field(default=15.0, gt=0)
    strategies: list[StrategyKind] = Field(default_factory=lambda: list(DEFAULT_STRATEGY_ORDER))
    similarity_weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    history: HistorySettings = Field(default_factory=HistorySettings)

    @field_validator("strategies", mode="before")
    @classmethod
    def validate_strategies(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",") if item.strip()]
        allowed = {kind.value for kind in StrategyKind}
        invalid = [item for item in value if str(item) not in allowed]
        if invalid:
            raise ValueError(f"Unknown healing strategies: {', '.join(map(str, invalid))}")
        return value

    @field_validator("similarity_weights")
    @classmethod
    def validate_weights(cls, value: dict[str, float]) -> dict[str, float]:
        unknown = set(value) - set(DEFAULT_WEIGHTS)
        if unknown:
            raise ValueError(f"Unknown similarity dimensions: {', '.join(sorted(unknown))}")
        if any(weight < 0 for weight in value.values()):
            raise ValueError("similarity weights must not be negative")
        return {**DEFAULT_WEIGHTS, **value}


class ElementDefinition(BaseModel):
    key: str
    selector_type: str = "css"
    selector: str
    declared_selector: str = ""
    declared_selector_type: str = ""
    fallback_selectors: list[str] = Field(default_factory=list)
    description: str = ""
    element_type: str | None = None
    wait_for_visible: bool = True
    fingerprint: ElementFingerprint | None = None

    @field_validator("selector_type")
    @classmethod
    def validate_selector_type(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"css", "xpath"}:
            raise ValueError("selector_type must be 'css' or 'xpath'")
        return normalized

    @model_validator(mode="after")
    def remember_declared_selector(self) -> ElementDefinition:
        if not self.declared_selector:
            self.declared_selector = self.selector
        if not self.declared_selector_type:
            self.declared_selector_type = self.selector_type
        return self

    @property
    def identity(self) -> str:
        """Stable id built from the declared locator, so healing does not change it."""

        return f"{self.key}:{self.declared_selector_type}:{self.declared_selector}"


class SuiteConfig(BaseModel):
    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    healing: HealingSettings = Field(default_factory=HealingSettings)
    elements: list[ElementDefinition] = Field(default_factory=list)

    def get_element(self, key: str) -> ElementDefinition:
        for element in self.elements:
            if element.key == key:
                return element
        raise KeyError(f"Unknown element key: {key}")
