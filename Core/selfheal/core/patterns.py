from __future__ import annotations

import logging
import math
import re
import time
from collections import Counter
from datetime import UTC, datetime
from typing import Any, Iterable

from pydantic import BaseModel, Field, ValidationError

from selfheal.core.fingerprint import ElementFingerprint

log = logging.getLogger(__name__)

_ANCESTOR_SELECTOR = re.compile(r"^(?P<tag>[\w-]+|\*)?(?:\[(?P<attr>[\w-]+)(?P<op>\*?=)(?P<value>[^\]]+)\])?$")

PATTERN_EXPORT_VERSION = "1.0"


class UIPattern(BaseModel):
    name: str
    tags: list[str]
    attributes: list[str] = Field(default_factory=list)
    weight: float = 1.0
    parent: str | None = None
    children: list[str] = Field(default_factory=list)


class PatternStats(BaseModel):
    matches: int = 0
    successes: int = 0
    failures: int = 0
    last_used: datetime | None = None

    @property
    def success_rate(self) -> float:
        decided = self.successes + self.failures
        if not decided:
            return 0.5
        return self.successes / decided


DEFAULT_PATTERNS: tuple[UIPattern, ...] = (
    UIPattern(
        name="primary-button",
        tags=["button", "input"],
        attributes=["type=submit", "class*=primary", "class*=btn-primary", "id*=submit"],
        weight=1.2,
        parent="form",
    ),
    UIPattern(
        name="secondary-button",
        tags=["button", "a"],
        attributes=["class*=secondary", "class*=btn-secondary", "class*=cancel"],
    ),
    UIPattern(
        name="navigation-link",
        tags=["a"],
        attributes=["href", "class*=nav", "role=navigation"],
        parent="nav",
    ),
    UIPattern(
        name="form-input",
        tags=["input", "textarea"],
        attributes=["type=text", "type=email", "type=password", "name", "id"],
        parent="form",
    ),
    UIPattern(
        name="dropdown-select",
        tags=["select"],
        attributes=["name", "id", "class*=select", "class*=dropdown"],
    ),
    UIPattern(name="checkbox-input", tags=["input"], attributes=["type=checkbox"]),
    UIPattern(name="radio-input", tags=["input"], attributes=["type=radio"]),
    UIPattern(
        name="search-input",
        tags=["input"],
        attributes=["type=search", "placeholder*=search", "class*=search", "id*=search"],
        weight=1.1,
    ),
    UIPattern(
        name="modal-close",
        tags=["button", "a", "span"],
        attributes=["class*=close", "aria-label*=close", "data-dismiss"],
        weight=1.1,
        parent="div[class*=modal]",
    ),
    UIPattern(
        name="data-table",
        tags=["table"],
        attributes=["class*=table", "class*=grid", "role=grid"],
    ),
    UIPattern(
        name="card-component",
        tags=["div", "article"],
        attributes=["class*=card", "class*=panel", "class*=tile"],
        weight=0.9,
    ),
    UIPattern(
        name="alert-message",
        tags=["div"],
        attributes=["role=alert", "class*=alert", "class*=message", "class*=notification"],
        weight=1.1,
    ),
    UIPattern(
        name="tab-navigation",
        tags=["a", "button", "li"],
        attributes=["role=tab", "class*=tab", "data-toggle=tab"],
    ),
    UIPattern(
        name="menu-item",
        tags=["a", "button", "li"],
        attributes=["role=menuitem", "class*=menu-item", "class*=dropdown-item"],
    ),
    UIPattern(
        name="pagination-control",
        tags=["a", "button"],
        attributes=["class*=page", "class*=pagination", "aria-label*=page"],
        weight=0.9,
    ),
)


def predicate_holds(attributes: dict[str, str], predicate: str) -> bool:
    """Evaluates ``attr``, ``attr=value`` or ``attr*=value`` against an attribute map."""

    if "*=" in predicate:
        name, _, value = predicate.partition("*=")
        if not name or not value:
            return False
        actual = attributes.get(name)
        return actual is not None and value in actual
    if "=" in predicate:
        name, _, value = predicate.partition("=")
        if not name or not value:
            return False
        return attributes.get(name) == value
    return predicate in attributes


def _path_entry(entry: str) -> tuple[str, list[str]]:
    tag, *classes = entry.split(".")
    return tag.split("#")[0], classes


def _ancestor_matches(selector: str, fingerprint: ElementFingerprint) -> bool:
    parsed = _ANCESTOR_SELECTOR.match(selector.strip())
    if parsed is None:
        return False
    tag = parsed.group("tag") or "*"
    attr = parsed.group("attr")
    value = (parsed.group("value") or "").strip("'\"")
    ancestors: list[tuple[str, list[str]]] = []
    if fingerprint.structural:
        ancestors.extend(_path_entry(entry) for entry in fingerprint.structural.path[:-1])
    if fingerprint.context and fingerprint.context.parent_tag:
        ancestors.append((fingerprint.context.parent_tag, []))
    for ancestor_tag, classes in ancestors:
        if tag != "*" and ancestor_tag != tag:
            continue
        if attr is None:
            return True
        if attr == "class" and any(value in name for name in classes):
            return True
    return False


class PatternCatalog:
    """Registry of UI patterns with learned success statistics."""

    def __init__(self, patterns: Iterable[UIPattern] = DEFAULT_PATTERNS) -> None:
        self.patterns: dict[str, UIPattern] = {}
        self.stats: dict[str, PatternStats] = {}
        for pattern in patterns:
            self.register(pattern)
        log.debug("Pattern catalog initialized with %s patterns", len(self.patterns))

    def register(self, pattern: UIPattern) -> None:
        self.patterns[pattern.name] = pattern
        self.stats.setdefault(pattern.name, PatternStats())

    def matches(self, fingerprint: ElementFingerprint, pattern: UIPattern) -> bool:
        if fingerprint.tag not in pattern.tags and "*" not in pattern.tags:
            return False
        if pattern.attributes:
            attributes = fingerprint.attributes
            required = math.ceil(len(pattern.attributes) * 0.5)
            held = sum(1 for predicate in pattern.attributes if predicate_holds(attributes, predicate))
            if held < required:
                return False
        if pattern.parent and not _ancestor_matches(pattern.parent, fingerprint):
            return False
        if pattern.children:
            child_tags = set(fingerprint.structural.child_tags) if fingerprint.structural else set()
            if not all(child in child_tags for child in pattern.children):
                return False
        return True

    def classify(self, fingerprint: ElementFingerprint) -> UIPattern | None:
        best: UIPattern | None = None
        best_score = 0.0
        for name, pattern in self.patterns.items():
            if not self.matches(fingerprint, pattern):
                continue
            score = pattern.weight * (0.5 + 0.5 * self.stats[name].success_rate)
            if best is None or score > best_score:
                best, best_score = pattern, score
        if best is None:
            return None
        stats = self.stats[best.name]
        stats.matches += 1
        stats.last_used = datetime.now(UTC)
        log.debug("Pattern identified: %s (score %.2f)", best.name, best_score)
        return best

    def pattern_score(self, fingerprint: ElementFingerprint, pattern: UIPattern | None = None) -> float:
        if pattern is None:
            pattern = self.classify(fingerprint)
            if pattern is None:
                return 0.0
        if not self.matches(fingerprint, pattern):
            return 0.0
        score = pattern.weight
        stats = self.stats.get(pattern.name)
        if stats and stats.matches:
            score *= 0.5 + 0.5 * stats.success_rate
        if pattern.attributes:
            attributes = fingerprint.attributes
            held = sum(1 for predicate in pattern.attributes if predicate_holds(attributes, predicate))
            score *= 0.5 + 0.5 * held / len(pattern.attributes)
        return min(score, 1.0)

    def record_outcome(self, name: str, success: bool) -> None:
        stats = self.stats.get(name)
        if stats is None:
            return
        if success:
            stats.successes += 1
        else:
            stats.failures += 1

    def suggest_patterns(self, fingerprints: Iterable[ElementFingerprint]) -> list[UIPattern]:
        sample = [fp for fp in fingerprints if fp.structural]
        if not sample:
            return []
        tags: Counter[str] = Counter()
        predicates: Counter[str] = Counter()
        for fingerprint in sample:
            tags[fingerprint.tag] += 1
            for name, value in fingerprint.attributes.items():
                if name in {"id", "style"}:
                    continue
                predicates[name if len(value) > 20 else f"{name}={value}"] += 1
        threshold = len(sample) * 0.3
        significant = [predicate for predicate, count in predicates.items() if count >= threshold]
        if not significant:
            return []
        tag = tags.most_common(1)[0][0]
        return [
            UIPattern(
                name=f"suggested-pattern-{int(time.time() * 1000)}",
                tags=[tag],
                attributes=significant,
            )
        ]

    def analyze(self) -> dict[str, Any]:
        used = [(name, stats) for name, stats in self.stats.items() if stats.matches]
        unused = [name for name, stats in self.stats.items() if not stats.matches]

        def summary(entry: tuple[str, PatternStats]) -> dict[str, Any]:
            name, stats = entry
            return {"name": name, "matches": stats.matches, "success_rate": stats.success_rate}

        by_usage = sorted(used, key=lambda entry: entry[1].matches, reverse=True)
        significant = sorted(
            (entry for entry in used if entry[1].matches >= 10),
            key=lambda entry: entry[1].success_rate,
            reverse=True,
        )
        total_matches = sum(stats.matches for stats in self.stats.values())
        total_successes = sum(stats.successes for stats in self.stats.values())
        return {
            "total_patterns": len(self.patterns),
            "most_used": [summary(entry) for entry in by_usage[:5]],
            "most_successful": [summary(entry) for entry in significant[:5]],
            "least_successful": [summary(entry) for entry in reversed(significant[-5:])],
            "unused_patterns": unused,
            "overall": {
                "total_matches": total_matches,
                "total_successes": total_successes,
                "total_failures": sum(stats.failures for stats in self.stats.values()),
                "average_success_rate": total_successes / total_matches if total_matches else 0.0,
            },
        }

    def export_patterns(self) -> dict[str, Any]:
        return {
            "version": PATTERN_EXPORT_VERSION,
            "exported_at": datetime.now(UTC).isoformat(),
            "patterns": [
                {
                    "pattern": pattern.model_dump(),
                    "stats": self.stats[name].model_dump(mode="json"),
                }
                for name, pattern in self.patterns.items()
            ],
        }

    def import_patterns(self, data: dict[str, Any]) -> int:
        imported = 0
        for entry in data.get("patterns", []):
            try:
                pattern = UIPattern.model_validate(entry["pattern"])
                stats = PatternStats.model_validate(entry.get("stats") or {})
            except (KeyError, TypeError, ValidationError) as exc:
                log.warning("Skipping invalid pattern entry: %s", exc)
                continue
            self.register(pattern)
            self.stats[pattern.name] = stats
            imported += 1
        log.info("Imported %s patterns (version %s)", imported, data.get("version", "unknown"))
        return imported
