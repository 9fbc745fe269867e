from datetime import UTC, datetime, timedelta

import pytest

from repair_analytics.config import DEFAULT_FUNNEL_PATTERNS
from repair_analytics.errors import AdapterError, InvalidRange
from repair_analytics.metrics import metrics
from repair_analytics.repositories import (
    InMemoryFunnelRecordRepository,
    InMemoryStageRepository,
)
from repair_analytics.services.funnel import FunnelRecorder, default_qualifying_move
from repair_analytics.services.lookup_cache import LookupCache
from repair_analytics.services.stage_classifier import StageCatalog


class _UnreachableDedupRepository(InMemoryFunnelRecordRepository):
    def find_recent(self, item_id, to_stage_id, since, pipeline_id=None):
        raise AdapterError("find_recent_funnel_record", "connection refused")


def _stages() -> InMemoryStageRepository:
    repo = InMemoryStageRepository()
    repo.upsert("Leads", pipeline_id="sales", stage_id="leads", position=1)
    repo.upsert("Avem comanda", pipeline_id="sales", stage_id="order", position=2)
    repo.upsert("Callback", pipeline_id="sales", stage_id="callback", position=3)
    repo.upsert("Nu raspunde", pipeline_id="sales", stage_id="no-answer", position=4)
    repo.upsert("Curier trimis", pipeline_id="sales", stage_id="courier", position=5)
    repo.upsert("Arhiva", pipeline_id="sales", stage_id="archive", position=6)
    return repo


def _recorder(clock, records=None, window=timedelta(minutes=2)) -> FunnelRecorder:
    catalog = StageCatalog(
        stages_repo=_stages(),
        cache=LookupCache(namespace="test_funnel"),
        patterns=DEFAULT_FUNNEL_PATTERNS,
        vocabulary="funnel",
    )
    return FunnelRecorder(
        records_repo=records if records is not None else InMemoryFunnelRecordRepository(),
        catalog=catalog,
        dedup_window=window,
        clock=clock,
    )


def test_default_predicate() -> None:
    assert default_qualifying_move("intake", "callback") is True
    assert default_qualifying_move("intake", "order") is True
    assert default_qualifying_move("other", "delivery") is True
    assert default_qualifying_move("callback", "order") is False
    assert default_qualifying_move("intake", "other") is False


def test_repeated_move_within_window_is_recorded_once(clock) -> None:
    records = InMemoryFunnelRecordRepository()
    recorder = _recorder(clock, records)

    first = recorder.record_move("lead-1", "sales", "leads", "callback", actor_id="u1")
    clock.advance(seconds=30)
    second = recorder.record_move("lead-1", "sales", "leads", "callback", actor_id="u1")

    assert first.recorded is True
    assert second.recorded is False
    assert second.reason == "duplicate"
    assert second.record is not None and second.record.id == first.record.id
    assert len(records.list_for_item("lead-1")) == 1
    assert metrics.funnel_moves_deduplicated == 1


def test_same_move_after_window_is_recorded_again(clock) -> None:
    records = InMemoryFunnelRecordRepository()
    recorder = _recorder(clock, records)

    recorder.record_move("lead-1", "sales", "leads", "callback")
    clock.advance(minutes=3)
    again = recorder.record_move("lead-1", "sales", "leads", "callback")

    assert again.recorded is True
    assert len(records.list_for_item("lead-1")) == 2


def test_different_destination_is_not_a_duplicate(clock) -> None:
    records = InMemoryFunnelRecordRepository()
    recorder = _recorder(clock, records)
    recorder.record_move("lead-1", "sales", "leads", "callback")
    result = recorder.record_move("lead-1", "sales", "leads", "no-answer")
    assert result.recorded is True
    assert len(records.list_for_item("lead-1")) == 2


def test_non_qualifying_move_is_skipped(clock) -> None:
    records = InMemoryFunnelRecordRepository()
    recorder = _recorder(clock, records)
    result = recorder.record_move("lead-1", "sales", "callback", "archive")
    assert result.recorded is False
    assert result.reason == "not_qualifying"
    assert records.list_for_item("lead-1") == []
    assert metrics.funnel_moves_not_qualifying == 1


def test_any_move_into_delivery_qualifies(clock) -> None:
    recorder = _recorder(clock)
    result = recorder.record_move("lead-2", "sales", "order", "courier")
    assert result.recorded is True


def test_failed_dedup_check_skips_recording(clock, caplog) -> None:
    records = _UnreachableDedupRepository()
    recorder = _recorder(clock, records)

    result = recorder.record_move("lead-1", "sales", "leads", "order")

    assert result.recorded is False
    assert result.reason == "dedup_check_failed"
    assert "connection refused" in (result.error or "")
    assert records._records == []  # type: ignore[attr-defined]
    assert metrics.funnel_dedup_check_failures == 1
    assert any(r.message == "funnel_dedup_check_failed" for r in caplog.records)


def test_insert_failure_propagates(clock) -> None:
    class _FailingInsert(InMemoryFunnelRecordRepository):
        def insert(self, record):
            raise AdapterError("insert_funnel_record", "disk full")

    recorder = _recorder(clock, _FailingInsert())
    with pytest.raises(AdapterError):
        recorder.record_move("lead-1", "sales", "leads", "order")


def test_missing_ids_are_rejected(clock) -> None:
    recorder = _recorder(clock)
    with pytest.raises(ValueError):
        recorder.record_move("", "sales", "leads", "order")


def test_counts_by_category_and_periods(clock) -> None:
    clock.set(datetime(2024, 5, 8, 10, 0, tzinfo=UTC))
    recorder = _recorder(clock)
    recorder.record_move("lead-1", "sales", "leads", "callback")
    recorder.record_move("lead-2", "sales", "leads", "order")
    recorder.record_move("lead-3", "sales", "leads", "order")
    clock.set(datetime(2024, 5, 2, 10, 0, tzinfo=UTC))
    recorder.record_move("lead-4", "sales", "leads", "no-answer")
    clock.set(datetime(2024, 5, 8, 12, 0, tzinfo=UTC))

    day_counts = recorder.counts_by_category(
        "sales",
        datetime(2024, 5, 8, tzinfo=UTC),
        datetime(2024, 5, 9, tzinfo=UTC),
    )
    assert day_counts["order"] == 2
    assert day_counts["callback"] == 1
    assert day_counts["no_answer"] == 0

    periods = recorder.counts_for_periods("sales", tz=UTC)
    assert periods["day"]["order"] == 2
    assert periods["week"]["no_answer"] == 0
    assert periods["month"]["no_answer"] == 1

    with pytest.raises(InvalidRange):
        recorder.counts_by_category(
            "sales",
            datetime(2024, 5, 9, tzinfo=UTC),
            datetime(2024, 5, 8, tzinfo=UTC),
        )


def test_item_history_resolves_stage_names(clock) -> None:
    recorder = _recorder(clock)
    recorder.record_move("lead-1", "sales", "leads", "callback", actor_id="u1")
    clock.advance(minutes=10)
    recorder.record_move("lead-1", "sales", "callback", "courier", actor_id="u2")

    history = recorder.item_history("lead-1")
    assert [(h.from_stage_name, h.to_stage_name) for h in history] == [
        ("Callback", "Curier trimis"),
        ("Leads", "Callback"),
    ]
