from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest

from selfheal.core.exceptions import PersistenceError
from selfheal.core.history import HealingHistory, render_html
from selfheal.logging.artifacts import ArtifactManager

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class Clock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


def _failures(history: HealingHistory, element_id: str, count: int, strategy: str = "all", **details) -> None:
    for _ in range(count):
        history.record_attempt(element_id, strategy, False, {"old_locator": "#old", **details})


def test_strategy_success_rate():
    history = HealingHistory(clock=Clock())
    for index in range(10):
        history.record_attempt("login:css:#go", "proximity", index < 3, {"duration": 10.0})
    assert history.success_rate("proximity") == pytest.approx(0.3)
    assert history.success_rate("text-similarity") == 0.0
    stats = history.strategy_statistics()["proximity"]
    assert stats["total_attempts"] == 10
    assert stats["failure_count"] == 7
    assert stats["average_duration"] == pytest.approx(10.0)


def test_strategy_rate_prefers_element_type():
    history = HealingHistory(clock=Clock())
    history.record_attempt("a", "proximity", True, {"element_type": "button"})
    history.record_attempt("b", "proximity", False, {"element_type": "link"})
    history.record_attempt("c", "proximity", False, {"element_type": "link"})
    assert history.strategy_rate("proximity", "button") == 1.0
    assert history.strategy_rate("proximity", "link") == 0.0
    assert history.strategy_rate("proximity", "input") == pytest.approx(1 / 3)
    assert history.strategy_rate("parent-child", "button") == 0.0
    assert history.most_successful_strategy("button") == "proximity"
    assert history.most_successful_strategy("link") is None


def test_stability_drops_with_frequent_heals():
    history = HealingHistory(clock=Clock())
    assert history.stability("unseen") == 1.0
    history.record_attempt("calm", "proximity", True)
    _failures(history, "noisy", 12)
    calm = history.stability("calm")
    noisy = history.stability("noisy")
    assert calm == pytest.approx(0.7 * 2.718281828 ** (-1 / 5) + 0.3)
    assert noisy < calm
    assert 0.0 <= noisy <= 1.0


def _mixed_attempts(history: HealingHistory, element_id: str, attempts: int, successes: int) -> None:
    for index in range(attempts):
        history.record_attempt(element_id, "proximity", index < successes)


def test_stability_never_rises_with_heal_frequency_at_fixed_success_rate():
    history = HealingHistory(clock=Clock())
    for attempts in (2, 4, 8, 16, 32):
        _mixed_attempts(history, f"heals-{attempts}", attempts, attempts // 2)
    scores = [history.stability(f"heals-{attempts}") for attempts in (2, 4, 8, 16, 32)]
    assert scores == sorted(scores, reverse=True)
    assert scores[0] > scores[-1]


def test_stability_never_falls_with_success_rate_at_fixed_frequency():
    history = HealingHistory(clock=Clock())
    for successes in range(11):
        _mixed_attempts(history, f"wins-{successes}", 10, successes)
    scores = [history.stability(f"wins-{successes}") for successes in range(11)]
    assert scores == sorted(scores)
    assert scores[-1] - scores[0] == pytest.approx(0.3)


def test_fragile_elements_and_recommendations():
    history = HealingHistory(clock=Clock())
    history.record_attempt("steady", "proximity", True)
    for strategy in ("proximity", "text-similarity", "attribute-similarity"):
        _failures(history, "flaky", 4, strategy=strategy)

    fragile = history.fragile_elements()
    assert [item["element_id"] for item in fragile] == ["flaky"]
    assert fragile[0]["success_rate"] == 0.0

    kinds = {(item["element_id"], item["type"]) for item in history.recommendations()}
    assert ("flaky", "locator_update") in kinds
    assert ("flaky", "multiple_strategy_failures") in kinds
    assert ("flaky", "highly_unstable") in kinds
    assert history.recommendations()[0]["severity"] == "high"


def test_low_performing_strategy_is_reported():
    history = HealingHistory(clock=Clock())
    for index in range(10):
        history.record_attempt(f"element-{index}", "attribute-similarity", index == 0)
    messages = [item for item in history.recommendations() if item["type"] == "strategy_performance"]
    assert len(messages) == 1
    assert "attribute-similarity" in messages[0]["message"]


def test_records_are_capped_per_element():
    history = HealingHistory(clock=Clock(), max_records_per_element=5)
    _failures(history, "x", 8)
    assert len(history.element_history("x")) == 5


def test_trends_group_by_day():
    clock = Clock()
    history = HealingHistory(clock=clock)
    history.record_attempt("a", "proximity", True, {"duration": 4.0})
    clock.advance(days=1)
    history.record_attempt("a", "text-similarity", False, {"duration": 2.0})
    history.record_attempt("b", "proximity", True, {"duration": 6.0})
    trends = history.trends(7)
    assert [day["date"] for day in trends] == ["2026-03-02", "2026-03-03"]
    assert trends[1]["total_attempts"] == 2
    assert trends[1]["failed_attempts"] == 1
    assert trends[1]["average_duration"] == pytest.approx(4.0)
    assert trends[1]["elements_healed"] == ["a", "b"]


def test_prune_drops_old_records_and_rebuilds_stats():
    clock = Clock()
    history = HealingHistory(clock=clock, retention_days=30)
    history.record_attempt("old", "proximity", False)
    clock.advance(days=40)
    history.record_attempt("new", "proximity", True)
    assert history.prune() == 1
    assert history.element_history("old") == []
    assert history.success_rate("proximity") == 1.0
    assert history.element_statistics("old") is None


def test_export_import_replaces_history_and_skips_invalid_rows():
    source = HealingHistory(clock=Clock())
    source.record_attempt("a", "proximity", True, {"confidence": 0.9, "new_locator": "#a2"})
    source.record_attempt("b", "all", False, {"error_message": "All healing strategies failed"})
    rows = source.export_records()

    target = HealingHistory(clock=Clock())
    target.record_attempt("stale", "proximity", True)
    assert target.import_records([*rows, {"element_id": "broken"}]) == 2
    assert target.element_history("stale") == []
    assert target.element_history("a")[0].new_locator == "#a2"
    assert target.success_rate("all") == 0.0
    assert target.dirty


def test_reimported_history_exports_the_same_records():
    clock = Clock()
    source = HealingHistory(clock=clock)
    source.record_attempt("a", "proximity", True, {"confidence": 0.9, "old_locator": "#a", "new_locator": "#a2"})
    clock.advance(hours=3)
    source.record_attempt("a", "text-similarity", True, {"duration": 42.0, "element_type": "button"})
    clock.advance(days=1)
    _failures(source, "b", 2, page_url="http://shop.test/cart")
    first_export = source.export_records()

    target = HealingHistory(clock=Clock())
    target.import_records(json.loads(json.dumps(first_export)))
    second_export = target.export_records()

    def as_multiset(rows):
        return sorted(json.dumps(row, sort_keys=True) for row in rows)

    assert len(second_export) == 4
    assert as_multiset(second_export) == as_multiset(first_export)


def test_save_and_load_through_artifacts(tmp_path):
    artifacts = ArtifactManager(tmp_path / "artifacts")
    history = HealingHistory(artifacts, clock=Clock())
    history.record_attempt("a", "proximity", True, {"element_type": "button"})
    assert history.save()
    assert not history.dirty

    payload = json.loads(artifacts.history_path.read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert len(payload["records"]) == 1

    restored = HealingHistory(artifacts, clock=Clock())
    assert restored.load() == 1
    assert restored.strategy_rate("proximity", "button") == 1.0
    assert not restored.dirty


def test_corrupt_history_file_is_tolerated(tmp_path):
    artifacts = ArtifactManager(tmp_path / "artifacts")
    artifacts.history_path.write_text("{not json", encoding="utf-8")
    history = HealingHistory(artifacts, clock=Clock())
    assert history.load() == 0
    assert history.all_records() == []


def test_failed_save_keeps_history_dirty(tmp_path, monkeypatch):
    artifacts = ArtifactManager(tmp_path / "artifacts")
    history = HealingHistory(artifacts, clock=Clock())
    history.record_attempt("a", "proximity", True)

    def broken(payload):
        raise PersistenceError("disk full")

    monkeypatch.setattr(artifacts, "write_history", broken)
    assert history.save() is False
    assert history.dirty


@pytest.mark.asyncio
async def test_start_and_shutdown_persist(tmp_path):
    artifacts = ArtifactManager(tmp_path / "artifacts")
    history = HealingHistory(artifacts, autosave_interval_seconds=60)
    await history.start()
    history.record_attempt("a", "proximity", True)
    await history.shutdown()
    assert artifacts.history_path.exists()
    assert not history.dirty


def test_reports(tmp_path):
    artifacts = ArtifactManager(tmp_path / "artifacts")
    history = HealingHistory(artifacts, clock=Clock())
    history.record_attempt("steady", "proximity", True)
    _failures(history, "<flaky>", 10)

    report = history.build_report()
    assert report["summary"]["total_elements"] == 2
    assert report["summary"]["total_attempts"] == 11
    assert report["summary"]["most_successful_strategy"] == "proximity"
    assert len(report["recent_failures"]) == 10

    page = render_html(report)
    assert "Healing History Report" in page
    assert "&lt;flaky&gt;" in page

    json_path = history.write_report("json")
    html_path = history.write_report("html")
    assert json.loads(json_path.read_text(encoding="utf-8"))["summary"]["total_elements"] == 2
    assert html_path.suffix == ".html"


def test_report_without_artifacts_raises():
    with pytest.raises(PersistenceError):
        HealingHistory().write_report()
