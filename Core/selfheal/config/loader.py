from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping

from selfheal.config.schema import SuiteConfig

log = logging.getLogger(__name__)

ENVIRONMENT_OVERRIDES = {
    "SELF_HEALING_ENABLED": "enabled",
    "HEALING_MAX_ATTEMPTS": "max_attempts",
    "HEALING_CONFIDENCE_THRESHOLD": "confidence_threshold",
    "HEALING_CACHE_TIMEOUT": "cache_ttl_seconds",
    "HEALING_STRATEGIES": "strategies",
}


class ConfigLoader:
    """Loads and validates the JSON suite configuration."""

    @staticmethod
    def load(path: str | Path, environ: Mapping[str, str] | None = None) -> SuiteConfig:
        config_path = Path(path)
        with config_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        return ConfigLoader.from_payload(payload, environ)

    @staticmethod
    def from_payload(payload: dict[str, Any], environ: Mapping[str, str] | None = None) -> SuiteConfig:
        environ = os.environ if environ is None else environ
        healing = dict(payload.get("healing") or {})
        for variable, field in ENVIRONMENT_OVERRIDES.items():
            value = environ.get(variable)
            if value is None or value == "":
                continue
            if field == "enabled":
                healing[field] = value.strip().lower() not in {"0", "false", "no", "off"}
            else:
                healing[field] = value
            log.debug("Healing setting %s overridden by %s", field, variable)
        return SuiteConfig.model_validate({**payload, "healing": healing})
