from datetime import UTC, datetime, timedelta

import pytest

from repair_analytics.config import DEFAULT_STAGE_PATTERNS
from repair_analytics.models import StageTransitionEvent
from repair_analytics.repositories import (
    InMemoryStageRepository,
    InMemoryTransitionEventRepository,
)
from repair_analytics.services.lookup_cache import LookupCache
from repair_analytics.services.stage_classifier import StageCatalog
from repair_analytics.services.stage_intervals import (
    StageTimeService,
    current_stage,
    history_stats,
    reconstruct,
    summarize_intervals,
    waiting_minutes_by_technician,
)


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 5, 6, hour, minute, tzinfo=UTC)


def _event(stage: str | None, when: datetime, technician: str | None = None, seq: int = 0):
    return StageTransitionEvent(
        item_id="X",
        to_stage_id=stage,
        occurred_at=when,
        technician_id=technician,
        sequence=seq,
    )


def test_three_stage_scenario_intervals_and_current_stage() -> None:
    events = [
        _event("A", _at(9, 0)),
        _event("B", _at(9, 40)),
        _event("C", _at(10, 15)),
    ]
    now = _at(10, 30)

    intervals = reconstruct(events, now)

    assert [(i.stage_id, i.duration_minutes) for i in intervals] == [
        ("A", 40.0),
        ("B", 35.0),
        ("C", 15.0),
    ]
    assert [i.is_open for i in intervals] == [False, False, True]

    current = current_stage(events, now)
    assert current is not None
    assert current.stage_id == "C"
    assert current.elapsed_seconds == 15 * 60


def test_intervals_are_contiguous_and_cover_until_now() -> None:
    start = _at(8, 0)
    events = [_event(f"s{i}", start + timedelta(minutes=7 * i)) for i in range(6)]
    now = _at(12, 0)

    intervals = reconstruct(events, now)

    for left, right in zip(intervals, intervals[1:]):
        assert left.end == right.start
    assert intervals[-1].end == now
    total = sum(i.duration_seconds for i in intervals)
    assert total == (now - start).total_seconds()


def test_empty_and_stageless_events_yield_no_intervals() -> None:
    assert reconstruct([], _at(10)) == []
    assert reconstruct([_event(None, _at(9))], _at(10)) == []
    assert current_stage([], _at(10)) is None


def test_unsorted_input_is_ordered_and_ties_keep_given_order() -> None:
    events = [
        _event("late", _at(10)),
        _event("first", _at(9)),
        _event("second", _at(9)),
    ]
    intervals = reconstruct(events, _at(11))
    assert [i.stage_id for i in intervals] == ["first", "second", "late"]
    assert intervals[0].duration_seconds == 0


def test_categories_are_applied_and_unknown_stages_are_other() -> None:
    events = [_event("A", _at(9)), _event("B", _at(10))]
    intervals = reconstruct(events, _at(11), {"A": "in_progress"})
    assert [i.category for i in intervals] == ["in_progress", "other"]


def test_totals_and_averages_share_grouping_key() -> None:
    events = [
        _event("A", _at(9, 0)),
        _event("B", _at(9, 30)),
        _event("A", _at(10, 0)),
        _event("C", _at(11, 0)),
    ]
    categories = {"A": "in_progress", "B": "waiting", "C": "done"}
    intervals = reconstruct(events, _at(11, 0), categories)

    by_category = summarize_intervals(intervals, key="category")
    assert by_category["in_progress"].total_seconds == 90 * 60
    assert by_category["in_progress"].count == 2
    assert by_category["in_progress"].average_seconds == 45 * 60
    assert by_category["done"].total_seconds == 0

    by_stage = summarize_intervals(intervals, key="stage_id")
    assert by_stage["A"].total_seconds == by_category["in_progress"].total_seconds

    with pytest.raises(ValueError):
        summarize_intervals(intervals, key="technician_id")


def test_history_stats_reports_moves_and_current_stage() -> None:
    events = [_event("A", _at(9)), _event("B", _at(9, 45))]
    stats = history_stats(events, _at(10))
    assert stats.total_moves == 2
    assert stats.first_move_at == _at(9)
    assert stats.last_move_at == _at(9, 45)
    assert stats.time_in_current_stage_seconds == 15 * 60

    empty = history_stats([], _at(10))
    assert empty.total_moves == 0
    assert empty.current_stage is None
    assert empty.time_in_current_stage_seconds is None


def test_waiting_minutes_follow_each_technicians_own_moves() -> None:
    categories = {"W": "waiting", "P": "in_progress"}
    events = [
        _event("W", _at(9, 0), technician="t1"),
        _event("P", _at(9, 10), technician="t2"),
        _event("P", _at(9, 30), technician="t1"),
        _event("W", _at(10, 0), technician="t2"),
        _event("W", _at(10, 5)),
    ]
    minutes = waiting_minutes_by_technician(events, categories, _at(10, 20))
    assert minutes == {"t1": 30.0, "t2": 20.0}


def test_stage_time_service_classifies_through_catalog() -> None:
    stages = InMemoryStageRepository()
    stages.upsert("In lucru", pipeline_id="p", stage_id="s-work")
    stages.upsert("In asteptare", pipeline_id="p", stage_id="s-wait")
    transitions = InMemoryTransitionEventRepository()
    transitions.append("item-1", "s-work", technician_id="t1", occurred_at=_at(9))
    transitions.append("item-1", "s-wait", technician_id="t1", occurred_at=_at(10))
    transitions.append("item-2", "s-work", occurred_at=_at(9, 30))

    catalog = StageCatalog(
        stages_repo=stages,
        cache=LookupCache(namespace="test_stage_time"),
        patterns=DEFAULT_STAGE_PATTERNS,
    )
    service = StageTimeService(
        transitions_repo=transitions, catalog=catalog, clock=lambda: _at(11)
    )

    intervals = service.intervals_for_item("item-1")
    assert [i.category for i in intervals] == ["in_progress", "waiting"]

    stats = service.stats_for_item("item-1")
    assert stats.current_stage is not None
    assert stats.current_stage.category == "waiting"

    assert service.waiting_minutes_for_item("item-1") == {"t1": 60.0}

    report = service.stage_time_report(["item-1", "item-2", "item-1"])
    assert report["in_progress"].total_seconds == (60 + 90) * 60
    assert report["in_progress"].count == 2
    assert report["waiting"].total_seconds == 60 * 60
