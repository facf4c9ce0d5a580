from __future__ import annotations

import json
from typing import Any

SYSTEM_PROMPT = """You locate web page elements for a Selenium test suite. Return exactly one valid selector string and nothing else.
Rules:
1. The target is the element matching the natural-language description in the payload.
2. Use only elements listed in the provided candidates; do not invent tags, attributes, text, or hierarchy.
3. Prefer a CSS selector built from an id, data-testid, aria-label or name when it uniquely identifies the element.
4. If a CSS selector cannot safely identify the element, return a valid XPath.
5. Output must be a single line with no explanation, no quotes, no markdown, and no code fence.
6. Previously confirmed examples show descriptions that were resolved correctly on this application."""


def build_user_prompt(payload: dict[str, Any]) -> str:
    """Formats a deterministic user payload for the model."""

    return json.dumps(payload, indent=2, sort_keys=True)
