"""Durable healing history with derived statistics.

Records are kept per element (most recent ``max_records_per_element``) and
persisted as a single JSON document through the ArtifactManager. Aggregates
are running counters updated on every ``record_attempt`` and rebuilt from the
records whenever the record set is replaced (load, import, pruning).

All mutation and snapshotting happens under one ``threading.Lock`` so the
autosave writer, which runs in a worker thread, only ever serializes a
consistent copy.
"""

from __future__ import annotations

import asyncio
import contextlib
import html
import json
import logging
import math
import secrets
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ValidationError

from selfheal.core.exceptions import PersistenceError
from selfheal.logging.artifacts import ArtifactManager

log = logging.getLogger(__name__)

HISTORY_FORMAT_VERSION = 1

_SEVERITY_ORDER = {"high": 0, "medium": 1, "low": 2}


class HealingRecord(BaseModel):
    id: str
    element_id: str
    strategy: str
    success: bool
    timestamp: datetime
    session_id: str
    duration: float = 0.0
    confidence: float = 0.0
    error_message: str | None = None
    old_locator: str | None = None
    new_locator: str | None = None
    element_type: str | None = None
    page_url: str | None = None


@dataclass(slots=True)
class StrategyStatistics:
    strategy: str
    total_attempts: int = 0
    success_count: int = 0
    failure_count: int = 0
    average_duration: float = 0.0
    last_used: datetime | None = None
    attempts_by_type: dict[str, int] = field(default_factory=dict)
    successes_by_type: dict[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total_attempts if self.total_attempts else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "total_attempts": self.total_attempts,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": self.success_rate,
            "average_duration": self.average_duration,
            "last_used": self.last_used.isoformat() if self.last_used else None,
        }


@dataclass(slots=True)
class ElementStatistics:
    element_id: str
    first_seen: datetime
    total_attempts: int = 0
    success_count: int = 0
    failure_count: int = 0
    strategies_used: set[str] = field(default_factory=set)
    last_healed: datetime | None = None
    last_failure: datetime | None = None
    days_tracked: int = 1

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total_attempts if self.total_attempts else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "element_id": self.element_id,
            "total_attempts": self.total_attempts,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "strategies_used": sorted(self.strategies_used),
            "first_seen": self.first_seen.isoformat(),
            "last_healed": self.last_healed.isoformat() if self.last_healed else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
            "days_tracked": self.days_tracked,
        }


def _utc_now() -> datetime:
    return datetime.now(UTC)


class HealingHistory:
    def __init__(
        self,
        artifacts: ArtifactManager | None = None,
        *,
        max_records_per_element: int = 100,
        retention_days: int = 30,
        autosave_interval_seconds: float = 30.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.artifacts = artifacts
        self.max_records_per_element = max_records_per_element
        self.retention_days = retention_days
        self.autosave_interval_seconds = autosave_interval_seconds
        self.clock = clock
        self.session_id = secrets.token_hex(16)
        self._records: dict[str, list[HealingRecord]] = {}
        self._strategy_stats: dict[str, StrategyStatistics] = {}
        self._element_stats: dict[str, ElementStatistics] = {}
        self._lock = threading.Lock()
        self._dirty = False
        self._autosave_task: asyncio.Task[None] | None = None

    # lifecycle

    async def start(self) -> None:
        self.load()
        removed = self.prune()
        if removed:
            log.info("Pruned %s healing records older than %s days", removed, self.retention_days)
        if self.artifacts is not None and self._autosave_task is None:
            self._autosave_task = asyncio.create_task(self._autosave_loop())
        log.info("Healing history started (session %s)", self.session_id)

    async def shutdown(self) -> None:
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._autosave_task
            self._autosave_task = None
        if self._dirty:
            await asyncio.to_thread(self.save)

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.autosave_interval_seconds)
            if self._dirty:
                await asyncio.to_thread(self.save)

    def load(self) -> int:
        if self.artifacts is None:
            return 0
        try:
            payload = self.artifacts.read_history()
        except PersistenceError as exc:
            log.error("Failed to load healing history, continuing in memory: %s", exc)
            return 0
        if not payload:
            return 0
        loaded = self.import_records(payload.get("records", []))
        self._dirty = False
        log.info("Loaded %s healing records from %s", loaded, self.artifacts.history_path)
        return loaded

    def save(self) -> bool:
        if self.artifacts is None:
            return False
        with self._lock:
            payload = {
                "version": HISTORY_FORMAT_VERSION,
                "session_id": self.session_id,
                "saved_at": self.clock().isoformat(),
                "records": self._export_unlocked(),
            }
            self._dirty = False
        try:
            self.artifacts.write_history(payload)
        except PersistenceError as exc:
            log.error("Failed to save healing history: %s", exc)
            self._dirty = True
            return False
        log.debug("Saved %s healing records", len(payload["records"]))
        return True

    @property
    def dirty(self) -> bool:
        return self._dirty

    # recording

    def record_attempt(
        self,
        element_id: str,
        strategy: str,
        success: bool,
        details: dict[str, Any] | None = None,
    ) -> HealingRecord:
        details = details or {}
        now = self.clock()
        record = HealingRecord(
            id=f"{int(time.time() * 1000)}-{secrets.token_hex(8)}",
            element_id=element_id,
            strategy=strategy,
            success=success,
            timestamp=now,
            session_id=self.session_id,
            duration=details.get("duration") or 0.0,
            confidence=details.get("confidence") or 0.0,
            error_message=details.get("error_message"),
            old_locator=details.get("old_locator"),
            new_locator=details.get("new_locator"),
            element_type=details.get("element_type"),
            page_url=details.get("page_url"),
        )
        with self._lock:
            self._append_unlocked(record)
            self._update_stats_unlocked(record, now)
            self._dirty = True
        log.debug(
            "Recorded healing attempt element=%s strategy=%s success=%s confidence=%.2f",
            element_id,
            strategy,
            success,
            record.confidence,
        )
        return record

    def _append_unlocked(self, record: HealingRecord) -> None:
        records = self._records.setdefault(record.element_id, [])
        records.append(record)
        if len(records) > self.max_records_per_element:
            del records[: len(records) - self.max_records_per_element]

    def _update_stats_unlocked(self, record: HealingRecord, now: datetime) -> None:
        strategy = self._strategy_stats.get(record.strategy)
        if strategy is None:
            strategy = self._strategy_stats[record.strategy] = StrategyStatistics(record.strategy)
        strategy.total_attempts += 1
        if record.success:
            strategy.success_count += 1
        else:
            strategy.failure_count += 1
        strategy.average_duration += (record.duration - strategy.average_duration) / strategy.total_attempts
        strategy.last_used = record.timestamp
        if record.element_type:
            kind = record.element_type
            strategy.attempts_by_type[kind] = strategy.attempts_by_type.get(kind, 0) + 1
            if record.success:
                strategy.successes_by_type[kind] = strategy.successes_by_type.get(kind, 0) + 1

        element = self._element_stats.get(record.element_id)
        if element is None:
            element = self._element_stats[record.element_id] = ElementStatistics(
                record.element_id, first_seen=record.timestamp
            )
        element.first_seen = min(element.first_seen, record.timestamp)
        element.total_attempts += 1
        if record.success:
            element.success_count += 1
            element.last_healed = record.timestamp
        else:
            element.failure_count += 1
            element.last_failure = record.timestamp
        element.strategies_used.add(record.strategy)
        elapsed_days = (now - element.first_seen).total_seconds() / 86400
        element.days_tracked = max(1, math.ceil(elapsed_days))

    def _rebuild_stats_unlocked(self) -> None:
        self._strategy_stats.clear()
        self._element_stats.clear()
        now = self.clock()
        for record in sorted(self._iter_unlocked(), key=lambda item: item.timestamp):
            self._update_stats_unlocked(record, now)

    def _iter_unlocked(self) -> Iterable[HealingRecord]:
        for records in self._records.values():
            yield from records

    # queries

    def success_rate(self, strategy: str) -> float:
        with self._lock:
            stats = self._strategy_stats.get(strategy)
            return stats.success_rate if stats else 0.0

    def strategy_rate(self, strategy: str, element_type: str | None = None) -> float:
        """Success rate for ``element_type`` when it has been seen, else overall."""

        with self._lock:
            stats = self._strategy_stats.get(strategy)
            if stats is None:
                return 0.0
            attempts = stats.attempts_by_type.get(element_type or "", 0)
            if attempts:
                return stats.successes_by_type.get(element_type or "", 0) / attempts
            return stats.success_rate

    def strategy_statistics(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {name: stats.to_dict() for name, stats in self._strategy_stats.items()}

    def element_statistics(self, element_id: str) -> dict[str, Any] | None:
        with self._lock:
            stats = self._element_stats.get(element_id)
            return stats.to_dict() if stats else None

    def most_successful_strategy(self, element_type: str) -> str | None:
        with self._lock:
            used = {
                record.strategy
                for record in self._iter_unlocked()
                if record.element_type == element_type and record.success
            }
            if not used:
                return None
            return max(sorted(used), key=lambda name: self._strategy_stats[name].success_rate)

    def stability(self, element_id: str) -> float:
        with self._lock:
            return self._stability_unlocked(element_id)

    def _stability_unlocked(self, element_id: str) -> float:
        stats = self._element_stats.get(element_id)
        if stats is None or not stats.total_attempts:
            return 1.0
        frequency = stats.total_attempts / max(1, stats.days_tracked)
        return math.exp(-frequency / 5) * 0.7 + stats.success_rate * 0.3

    def fragile_elements(self, threshold: float = 0.5) -> list[dict[str, Any]]:
        with self._lock:
            fragile = []
            for element_id, stats in self._element_stats.items():
                stability = self._stability_unlocked(element_id)
                if stability >= threshold:
                    continue
                fragile.append(
                    {
                        "element_id": element_id,
                        "stability": stability,
                        "total_attempts": stats.total_attempts,
                        "success_rate": stats.success_rate,
                        "last_failure": stats.last_failure.isoformat() if stats.last_failure else None,
                        "most_successful_strategy": self._best_strategy_for_element_unlocked(element_id),
                    }
                )
        return sorted(fragile, key=lambda item: item["stability"])

    def _best_strategy_for_element_unlocked(self, element_id: str) -> str | None:
        totals: Counter[str] = Counter()
        successes: Counter[str] = Counter()
        for record in self._records.get(element_id, []):
            totals[record.strategy] += 1
            if record.success:
                successes[record.strategy] += 1
        best, best_rate = None, 0.0
        for strategy, total in totals.items():
            rate = successes[strategy] / total
            if rate > best_rate:
                best, best_rate = strategy, rate
        return best

    def trends(self, days: int = 7) -> list[dict[str, Any]]:
        cutoff = self.clock() - timedelta(days=days)
        buckets: dict[str, dict[str, Any]] = {}
        with self._lock:
            for record in self._iter_unlocked():
                if record.timestamp < cutoff:
                    continue
                key = record.timestamp.date().isoformat()
                bucket = buckets.setdefault(
                    key,
                    {"date": key, "total": 0, "successes": 0, "failures": 0, "duration": 0.0,
                     "strategies": set(), "elements": set()},
                )
                bucket["total"] += 1
                bucket["successes" if record.success else "failures"] += 1
                bucket["duration"] += record.duration
                bucket["strategies"].add(record.strategy)
                bucket["elements"].add(record.element_id)
        return [
            {
                "date": bucket["date"],
                "total_attempts": bucket["total"],
                "successful_attempts": bucket["successes"],
                "failed_attempts": bucket["failures"],
                "average_duration": bucket["duration"] / bucket["total"],
                "strategies_used": sorted(bucket["strategies"]),
                "elements_healed": sorted(bucket["elements"]),
            }
            for _, bucket in sorted(buckets.items())
        ]

    def recommendations(self) -> list[dict[str, Any]]:
        recommendations: list[dict[str, Any]] = []
        for fragile in self.fragile_elements(0.5):
            element_id = fragile["element_id"]
            recent = self.element_history(element_id)[-20:]
            failures = [record for record in recent if not record.success]
            locators = Counter(record.old_locator for record in failures if record.old_locator)
            same_locator_rate = max(locators.values()) / len(failures) if locators else 0.0
            strategies = sorted({record.strategy for record in failures})

            if same_locator_rate > 0.5:
                recommendations.append(
                    {
                        "element_id": element_id,
                        "severity": "high",
                        "type": "locator_update",
                        "message": "Element locator is consistently failing. Consider a more stable locator.",
                        "suggested_action": "Use data-testid or aria-label attributes for stable identification.",
                    }
                )
            if len(strategies) >= 3:
                recommendations.append(
                    {
                        "element_id": element_id,
                        "severity": "medium",
                        "type": "multiple_strategy_failures",
                        "message": f"Multiple healing strategies are failing ({', '.join(strategies)}).",
                        "suggested_action": "Element structure has likely changed. Review the element definition.",
                    }
                )
            if fragile["stability"] < 0.3:
                recommendations.append(
                    {
                        "element_id": element_id,
                        "severity": "high",
                        "type": "highly_unstable",
                        "message": f"Element has very low stability ({fragile['stability']:.1%}).",
                        "suggested_action": "Add a description for external identification or a custom locator.",
                    }
                )

        for strategy, stats in self.strategy_statistics().items():
            if stats["success_rate"] < 0.3 and stats["total_attempts"] >= 10:
                recommendations.append(
                    {
                        "element_id": None,
                        "severity": "low",
                        "type": "strategy_performance",
                        "message": f"{strategy} strategy has a low success rate ({stats['success_rate']:.1%}).",
                        "suggested_action": "Adjust the strategy parameters or disable it for some element types.",
                    }
                )
        return sorted(recommendations, key=lambda item: _SEVERITY_ORDER[item["severity"]])

    def element_history(self, element_id: str) -> list[HealingRecord]:
        with self._lock:
            return list(self._records.get(element_id, []))

    def all_records(self) -> list[HealingRecord]:
        with self._lock:
            records = list(self._iter_unlocked())
        return sorted(records, key=lambda record: record.timestamp, reverse=True)

    def recent_failures(self, limit: int = 20) -> list[HealingRecord]:
        return [record for record in self.all_records() if not record.success][:limit]

    # maintenance

    def prune(self) -> int:
        cutoff = self.clock() - timedelta(days=self.retention_days)
        removed = 0
        with self._lock:
            for element_id in list(self._records):
                kept = [record for record in self._records[element_id] if record.timestamp >= cutoff]
                removed += len(self._records[element_id]) - len(kept)
                if kept:
                    self._records[element_id] = kept
                else:
                    del self._records[element_id]
            if removed:
                self._rebuild_stats_unlocked()
                self._dirty = True
        return removed

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._strategy_stats.clear()
            self._element_stats.clear()
            self._dirty = True
        log.info("Healing history cleared")

    def export_records(self) -> list[dict[str, Any]]:
        with self._lock:
            return self._export_unlocked()

    def _export_unlocked(self) -> list[dict[str, Any]]:
        records = sorted(self._iter_unlocked(), key=lambda record: (record.timestamp, record.id))
        return [record.model_dump(mode="json") for record in records]

    def import_records(self, rows: Iterable[Any]) -> int:
        """Replaces the whole history with ``rows``; invalid rows are skipped."""

        parsed: list[HealingRecord] = []
        for row in rows:
            try:
                parsed.append(HealingRecord.model_validate(row))
            except ValidationError as exc:
                log.warning("Skipping invalid healing record: %s", exc.errors()[0]["msg"])
        parsed.sort(key=lambda record: record.timestamp)
        with self._lock:
            self._records.clear()
            for record in parsed:
                self._append_unlocked(record)
            self._rebuild_stats_unlocked()
            self._dirty = True
        return len(parsed)

    # reporting

    def build_report(self) -> dict[str, Any]:
        strategies = self.strategy_statistics()
        total_attempts = sum(stats["total_attempts"] for stats in strategies.values())
        total_successes = sum(stats["success_count"] for stats in strategies.values())
        best = max(
            (name for name, stats in strategies.items() if stats["success_rate"] > 0),
            key=lambda name: strategies[name]["success_rate"],
            default=None,
        )
        with self._lock:
            element_ids = list(self._element_stats)
            elements = [
                {**self._element_stats[element_id].to_dict(), "stability": self._stability_unlocked(element_id)}
                for element_id in element_ids
            ]
        return {
            "generated_at": self.clock().isoformat(),
            "session_id": self.session_id,
            "summary": {
                "total_elements": len(element_ids),
                "total_attempts": total_attempts,
                "overall_success_rate": total_successes / total_attempts if total_attempts else 0.0,
                "most_successful_strategy": best,
                "most_fragile_elements": self.fragile_elements(0.3)[:10],
            },
            "strategy_statistics": list(strategies.values()),
            "element_statistics": elements,
            "trends": self.trends(30),
            "recent_failures": [record.model_dump(mode="json") for record in self.recent_failures(20)],
            "recommendations": self.recommendations(),
        }

    def write_report(self, fmt: str = "json") -> Any:
        if self.artifacts is None:
            raise PersistenceError("No artifact store configured for history reports")
        report = self.build_report()
        if fmt == "html":
            return self.artifacts.write_report(render_html(report), suffix="html")
        return self.artifacts.write_report(json.dumps(report, indent=2), suffix="json")


def _stability_class(stability: float) -> str:
    if stability < 0.3:
        return "unstable"
    if stability < 0.7:
        return "warning"
    return "stable"


def render_html(report: dict[str, Any]) -> str:
    summary = report["summary"]
    strategy_rows = "".join(
        "<tr><td>{}</td><td>{}</td><td>{:.1%}</td><td>{:.0f}</td></tr>".format(
            html.escape(stats["strategy"]),
            stats["total_attempts"],
            stats["success_rate"],
            stats["average_duration"],
        )
        for stats in report["strategy_statistics"]
    )
    fragile_rows = "".join(
        '<tr><td>{}</td><td class="{}">{:.1%}</td><td>{:.1%}</td><td>{}</td></tr>'.format(
            html.escape(element["element_id"]),
            _stability_class(element["stability"]),
            element["stability"],
            element["success_rate"],
            element["total_attempts"],
        )
        for element in summary["most_fragile_elements"]
    )
    best = html.escape(summary["most_successful_strategy"] or "N/A")
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Healing History Report</title>
  <style>
    body {{ font-family: Arial, sans-serif; margin: 20px; }}
    .summary {{ background: #f5f5f5; padding: 15px; margin: 20px 0; }}
    table {{ border-collapse: collapse; width: 100%; }}
    th, td {{ border: 1px solid #ddd; padding: 8px; text-align: left; }}
    .stable {{ color: green; }}
    .unstable {{ color: red; }}
    .warning {{ color: orange; }}
  </style>
</head>
<body>
  <h1>Healing History Report</h1>
  <p>Generated: {html.escape(report["generated_at"])}</p>
  <div class="summary">
    <h2>Summary</h2>
    <p>Total Elements: {summary["total_elements"]}</p>
    <p>Total Healing Attempts: {summary["total_attempts"]}</p>
    <p>Overall Success Rate: {summary["overall_success_rate"]:.1%}</p>
    <p>Most Successful Strategy: {best}</p>
  </div>
  <h2>Strategy Performance</h2>
  <table>
    <tr><th>Strategy</th><th>Attempts</th><th>Success Rate</th><th>Avg Duration (ms)</th></tr>
    {strategy_rows}
  </table>
  <h2>Most Fragile Elements</h2>
  <table>
    <tr><th>Element ID</th><th>Stability</th><th>Success Rate</th><th>Total Attempts</th></tr>
    {fragile_rows}
  </table>
</body>
</html>
"""
