from datetime import UTC, datetime, timedelta

import pytest

from repair_analytics.errors import InvalidRange, OpenSessionConflict, SessionNotFound
from repair_analytics.metrics import metrics
from repair_analytics.repositories import (
    InMemoryStageRepository,
    InMemoryTransitionEventRepository,
    InMemoryWorkItemRepository,
    InMemoryWorkSessionRepository,
)
from repair_analytics.services.lookup_cache import LookupCache
from repair_analytics.services.stage_classifier import StageCatalog
from repair_analytics.services.stage_intervals import StageTimeService
from repair_analytics.services.work_sessions import WorkSessionTracker


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 5, 6, hour, minute, tzinfo=UTC)


@pytest.fixture
def sessions() -> InMemoryWorkSessionRepository:
    return InMemoryWorkSessionRepository()


@pytest.fixture
def items() -> InMemoryWorkItemRepository:
    return InMemoryWorkItemRepository()


@pytest.fixture
def tracker(sessions, items, clock) -> WorkSessionTracker:
    return WorkSessionTracker(sessions_repo=sessions, work_items_repo=items, clock=clock)


def test_start_is_idempotent_for_open_pair(tracker, sessions, clock) -> None:
    clock.set(_at(8, 50))
    first = tracker.start("Y", "T", note="begin")
    clock.advance(minutes=3)
    second = tracker.start("Y", "T")

    assert first == second
    assert len(sessions.list_for_pair("Y", "T")) == 1
    assert sessions.get(first).started_at == _at(8, 50)
    assert metrics.work_sessions_started == 1
    assert metrics.work_sessions_reused == 1


def test_start_after_finish_creates_new_session(tracker, clock) -> None:
    clock.set(_at(9))
    first = tracker.start("Y", "T")
    clock.advance(minutes=10)
    assert tracker.finish("Y", "T") is True
    second = tracker.start("Y", "T")
    assert second != first


def test_start_requires_ids(tracker) -> None:
    with pytest.raises(ValueError):
        tracker.start("", "T")
    with pytest.raises(ValueError):
        tracker.start("Y", "   ")


def test_finish_without_open_session_returns_false(tracker) -> None:
    assert tracker.finish("Y", "T") is False
    assert metrics.work_sessions_finish_noop == 1


def test_finish_appends_note(tracker, sessions, clock) -> None:
    clock.set(_at(9))
    session_id = tracker.start("Y", "T", note="diag")
    clock.advance(minutes=5)
    tracker.finish("Y", "T", note="replaced screen")
    stored = sessions.get(session_id)
    assert stored.finished_at == _at(9, 5)
    assert stored.notes == "diag\nreplaced screen"


def test_finish_closes_newest_when_duplicates_exist(tracker, sessions, clock) -> None:
    # Two open sessions can exist after a concurrent double start.
    older = sessions.create("Y", "T", started_at=_at(8))
    newer = sessions.create("Y", "T", started_at=_at(8, 1))
    clock.set(_at(9))

    assert tracker.finish("Y", "T") is True
    assert sessions.get(newer.id).finished_at == _at(9)
    assert sessions.get(older.id).finished_at is None
    assert metrics.work_sessions_duplicate_open == 1


def test_elapsed_minutes_for_finished_session(tracker, clock) -> None:
    clock.set(_at(8, 50))
    tracker.start("Y", "T")
    clock.set(_at(9, 10))
    tracker.finish("Y", "T")

    assert tracker.elapsed_minutes("Y", "T") == 20.0
    # Constant regardless of now once finished.
    assert tracker.elapsed_minutes("Y", "T", now=_at(17)) == 20.0


def test_elapsed_minutes_grows_while_session_is_open(tracker, clock) -> None:
    clock.set(_at(9))
    tracker.start("Y", "T")
    readings = [
        tracker.elapsed_minutes("Y", "T", now=_at(9, 0) + timedelta(minutes=m))
        for m in (1, 5, 30)
    ]
    assert readings == sorted(readings)
    assert readings[0] < readings[1] < readings[2]
    assert readings[2] == 30.0


def test_elapsed_minutes_sums_sessions_and_never_negative(tracker, sessions) -> None:
    sessions.create("Y", "T", started_at=_at(8))
    sessions.update(sessions.list_open("Y", "T")[0].id, finished_at=_at(8, 30))
    sessions.create("Y", "T", started_at=_at(10))
    # "now" before the open session started contributes nothing.
    assert tracker.elapsed_minutes("Y", "T", now=_at(9)) == 30.0
    assert tracker.elapsed_minutes("missing", "T") == 0


def test_edit_rejects_finish_before_start(tracker, clock) -> None:
    clock.set(_at(9))
    session_id = tracker.start("Y", "T")
    with pytest.raises(InvalidRange) as excinfo:
        tracker.edit(session_id, finished_at=_at(8))
    assert excinfo.value.field == "finished_at"


def test_edit_validates_against_stored_finish(tracker, clock) -> None:
    clock.set(_at(9))
    session_id = tracker.start("Y", "T")
    clock.set(_at(10))
    tracker.finish("Y", "T")
    with pytest.raises(InvalidRange) as excinfo:
        tracker.edit(session_id, started_at=_at(11))
    assert excinfo.value.field == "started_at"


def test_edit_updates_both_timestamps(tracker, clock) -> None:
    clock.set(_at(9))
    session_id = tracker.start("Y", "T")
    updated = tracker.edit(session_id, started_at=_at(8), finished_at=_at(8, 45))
    assert updated.started_at == _at(8)
    assert updated.finished_at == _at(8, 45)
    assert tracker.elapsed_minutes("Y", "T") == 45.0
    assert metrics.work_sessions_edited == 1


def test_edit_reopen_conflicts_with_existing_open_session(tracker, clock) -> None:
    clock.set(_at(9))
    first = tracker.start("Y", "T")
    clock.set(_at(9, 30))
    tracker.finish("Y", "T")
    tracker.start("Y", "T")
    with pytest.raises(OpenSessionConflict):
        tracker.edit(first, finished_at=None)


def test_edit_unknown_session_and_empty_patch(tracker) -> None:
    with pytest.raises(SessionNotFound):
        tracker.edit("nope", finished_at=_at(9))
    with pytest.raises(ValueError):
        tracker.edit("nope")


def test_session_queries(tracker, clock) -> None:
    clock.set(_at(9))
    tracker.start("Y", "T1")
    tracker.start("Z", "T1")
    tracker.start("Y", "T2")
    clock.set(_at(9, 30))
    tracker.finish("Y", "T2")

    assert tracker.has_active_session("Y", "T1") is True
    assert tracker.has_active_session("Y", "T2") is False
    assert len(tracker.active_sessions("Y", "T1")) == 1
    assert {s.item_id for s in tracker.technician_active_sessions("T1")} == {"Y", "Z"}
    assert len(tracker.sessions_for_item("Y")) == 2
    assert tracker.minutes_by_technician("Y", now=_at(10)) == {"T1": 60.0, "T2": 30.0}


def test_item_technician_summary_includes_assigned_technicians(
    tracker, items, clock
) -> None:
    items.upsert("Y", number="R-100", technician_ids=["T1", "T3"])
    stages = InMemoryStageRepository()
    stages.upsert("In asteptare", stage_id="wait")
    stages.upsert("In lucru", stage_id="work")
    transitions = InMemoryTransitionEventRepository()
    transitions.append("Y", "wait", technician_id="T1", occurred_at=_at(9))
    transitions.append("Y", "work", technician_id="T1", occurred_at=_at(9, 15))
    stage_time = StageTimeService(
        transitions_repo=transitions,
        catalog=StageCatalog(stages_repo=stages, cache=LookupCache(namespace="t")),
        clock=clock,
    )

    clock.set(_at(9))
    tracker.start("Y", "T1")
    tracker.start("Y", "T2")
    clock.set(_at(10))
    tracker.finish("Y", "T1")

    rows = {
        r.technician_id: r
        for r in tracker.item_technician_summary(
            "Y", stage_time=stage_time, estimated_minutes_total=90
        )
    }
    assert set(rows) == {"T1", "T2", "T3"}
    assert rows["T1"].work_minutes == 60.0
    assert rows["T2"].work_minutes == 60.0
    assert rows["T3"].work_minutes == 0.0
    assert rows["T1"].estimated_minutes == 30.0
    assert rows["T1"].waiting_minutes == 15.0
    assert rows["T2"].waiting_minutes == 0.0


def test_item_technician_summary_empty_item(tracker) -> None:
    assert tracker.item_technician_summary("nothing") == []
