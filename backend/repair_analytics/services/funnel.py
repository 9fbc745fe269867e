from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Callable, Dict, List, Optional

from ..config import get_settings
from ..errors import AdapterError, InvalidRange
from ..metrics import metrics
from ..models import FunnelCategory, FunnelMoveRecord, new_funnel_record_id
from .range_aggregator import PERIODS, period_bounds
from .stage_classifier import StageCatalog

logger = logging.getLogger(__name__)

QualifyingPredicate = Callable[[str, str], bool]

CALL_OUTCOMES = frozenset(
    {
        FunnelCategory.ORDER.value,
        FunnelCategory.NO_DEAL.value,
        FunnelCategory.CALLBACK.value,
        FunnelCategory.NO_ANSWER.value,
        FunnelCategory.DELIVERY.value,
    }
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def default_qualifying_move(from_category: str, to_category: str) -> bool:
    """A lead leaving intake for a call outcome, or any move into delivery."""
    if to_category == FunnelCategory.DELIVERY.value:
        return True
    return from_category == FunnelCategory.INTAKE.value and to_category in CALL_OUTCOMES


@dataclass(frozen=True)
class FunnelRecordResult:
    """Outcome of ``record_move``.

    ``recorded`` is the primary outcome. ``error`` carries an auxiliary
    failure (the dedup lookup) that made the recorder skip the insert.
    """

    recorded: bool
    reason: str
    record: Optional[FunnelMoveRecord] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class FunnelHistoryEntry:
    record: FunnelMoveRecord
    from_stage_name: Optional[str]
    to_stage_name: Optional[str]


class FunnelRecorder:
    """Persists qualifying stage moves for conversion analytics.

    Repeated moves of the same item into the same stage inside the dedup
    window collapse to one record. When the dedup lookup itself fails the
    move is not recorded, so an unreachable store can only under-count.
    """

    def __init__(
        self,
        records_repo=None,
        catalog: StageCatalog | None = None,
        predicate: QualifyingPredicate = default_qualifying_move,
        dedup_window: timedelta | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if records_repo is None:
            from ..repositories import funnel_records_repo as default_repo

            records_repo = default_repo
        self._records = records_repo
        self._catalog = catalog or StageCatalog(vocabulary="funnel")
        self._predicate = predicate
        self._dedup_window = (
            dedup_window
            if dedup_window is not None
            else timedelta(seconds=get_settings().funnel.dedup_window_seconds)
        )
        self._clock = clock

    def record_move(
        self,
        item_id: str,
        pipeline_id: str,
        from_stage_id: str | None,
        to_stage_id: str,
        actor_id: str | None = None,
        dedup_window: timedelta | None = None,
    ) -> FunnelRecordResult:
        if not item_id or not pipeline_id or not to_stage_id:
            raise ValueError("item_id, pipeline_id and to_stage_id are required")
        metrics.funnel_moves_seen += 1

        categories = self._catalog.categories_for_stages([from_stage_id, to_stage_id])
        from_category = categories.get(from_stage_id or "", FunnelCategory.OTHER.value)
        to_category = categories.get(to_stage_id, FunnelCategory.OTHER.value)
        if not self._predicate(from_category, to_category):
            metrics.funnel_moves_not_qualifying += 1
            return FunnelRecordResult(recorded=False, reason="not_qualifying")

        now = self._clock()
        window = dedup_window if dedup_window is not None else self._dedup_window
        try:
            existing = self._records.find_recent(
                item_id, to_stage_id, now - window, pipeline_id=pipeline_id
            )
        except AdapterError as exc:
            metrics.funnel_dedup_check_failures += 1
            logger.warning(
                "funnel_dedup_check_failed",
                extra={
                    "item_id": item_id,
                    "to_stage_id": to_stage_id,
                    "error": str(exc),
                },
            )
            return FunnelRecordResult(
                recorded=False, reason="dedup_check_failed", error=str(exc)
            )

        if existing is not None:
            metrics.funnel_moves_deduplicated += 1
            logger.info(
                "funnel_move_deduplicated",
                extra={
                    "item_id": item_id,
                    "to_stage_id": to_stage_id,
                    "existing_record_id": existing.id,
                },
            )
            return FunnelRecordResult(recorded=False, reason="duplicate", record=existing)

        record = FunnelMoveRecord(
            id=new_funnel_record_id(),
            item_id=item_id,
            pipeline_id=pipeline_id,
            to_stage_id=to_stage_id,
            from_stage_id=from_stage_id,
            actor_id=actor_id,
            recorded_at=now,
        )
        self._records.insert(record)
        metrics.funnel_moves_recorded += 1
        logger.info(
            "funnel_move_recorded",
            extra={
                "item_id": item_id,
                "pipeline_id": pipeline_id,
                "from_category": from_category,
                "to_category": to_category,
            },
        )
        return FunnelRecordResult(recorded=True, reason="recorded", record=record)

    def counts_by_category(
        self, pipeline_id: str, range_start: datetime, range_end: datetime
    ) -> Dict[str, int]:
        """Recorded moves per destination category in ``[range_start, range_end)``."""
        if range_end < range_start:
            raise InvalidRange("range_end must not be before range_start", field="range_end")
        records = self._records.list_for_pipeline(pipeline_id, range_start, range_end)
        categories = self._catalog.categories_for_stages(r.to_stage_id for r in records)
        counts: Dict[str, int] = {c.value: 0 for c in FunnelCategory}
        for record in records:
            category = categories.get(record.to_stage_id, FunnelCategory.OTHER.value)
            counts[category] = counts.get(category, 0) + 1
        return counts

    def counts_for_periods(
        self,
        pipeline_id: str,
        reference: datetime | None = None,
        tz: tzinfo | None = None,
    ) -> Dict[str, Dict[str, int]]:
        """Category counts for the current day, week and month."""
        moment = reference or self._clock()
        result: Dict[str, Dict[str, int]] = {}
        for period in PERIODS:
            start, end = period_bounds(period, moment, tz)
            result[period] = self.counts_by_category(pipeline_id, start, end)
        return result

    def item_history(
        self, item_id: str, pipeline_id: str | None = None, limit: int = 200
    ) -> List[FunnelHistoryEntry]:
        records = self._records.list_for_item(item_id, pipeline_id=pipeline_id, limit=limit)
        stage_ids: List[str] = []
        for r in records:
            stage_ids.append(r.to_stage_id)
            if r.from_stage_id:
                stage_ids.append(r.from_stage_id)
        names = self._catalog.stage_names(stage_ids)
        return [
            FunnelHistoryEntry(
                record=r,
                from_stage_name=names.get(r.from_stage_id) if r.from_stage_id else None,
                to_stage_name=names.get(r.to_stage_id),
            )
            for r in records
        ]
