from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from selfheal.core.metadata import HealAttempt

log = logging.getLogger(__name__)


class HealingAuditLogger:
    """Telemetry sink: healing events, heal outcomes and latest selector overrides.

    Writes are advisory. A failing write is logged and never reaches the caller.
    """

    def __init__(self, root: str | Path = "artifacts") -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.events_path = self.root / "healing_events.jsonl"
        self.healed_elements_path = self.root / "healed_elements.jsonl"
        self.selector_overrides_path = self.root / "selector_overrides.json"

    def event(self, name: str, **fields: Any) -> None:
        payload = {"event": name, "timestamp": datetime.now(UTC).isoformat(), **fields}
        try:
            with self.events_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, default=str) + "\n")
        except OSError as exc:
            log.warning("Could not write healing event %s: %s", name, exc)

    def write(self, attempt: HealAttempt) -> None:
        payload = {
            "element_key": attempt.element_key,
            "element_id": attempt.element_id,
            "old_selector": attempt.old_selector,
            "new_selector": attempt.new_selector,
            "strategy": attempt.strategy,
            "confidence": attempt.confidence,
            "success": attempt.success,
            "duration_ms": attempt.duration_ms,
            "error_message": attempt.error_message,
        }
        try:
            with self.healed_elements_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload) + "\n")

            if attempt.success and attempt.new_selector:
                overrides = self.read_overrides()
                overrides[attempt.element_key] = attempt.new_selector
                self.selector_overrides_path.write_text(
                    json.dumps(overrides, indent=2, sort_keys=True),
                    encoding="utf-8",
                )
        except OSError as exc:
            log.warning("Could not write healing audit for %s: %s", attempt.element_key, exc)

    def read_overrides(self) -> dict[str, str]:
        if not self.selector_overrides_path.exists():
            return {}
        try:
            return json.loads(self.selector_overrides_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("Ignoring unreadable selector overrides: %s", exc)
            return {}
