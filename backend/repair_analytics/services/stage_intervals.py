from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from ..models import StageCategory, StageInterval, StageTransitionEvent
from .stage_classifier import StageCatalog

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class CurrentStage:
    stage_id: str
    category: str
    entered_at: datetime
    elapsed_seconds: float


@dataclass(frozen=True)
class StageTimeSummary:
    key: str
    total_seconds: float
    count: int

    @property
    def average_seconds(self) -> float:
        return self.total_seconds / self.count if self.count else 0.0


@dataclass(frozen=True)
class StageHistoryStats:
    total_moves: int
    first_move_at: Optional[datetime]
    last_move_at: Optional[datetime]
    current_stage: Optional[CurrentStage]

    @property
    def time_in_current_stage_seconds(self) -> Optional[float]:
        return self.current_stage.elapsed_seconds if self.current_stage else None


def _usable(events: Iterable[StageTransitionEvent]) -> List[StageTransitionEvent]:
    # Stable sort: ties keep the order the store supplied.
    return sorted((e for e in events if e.to_stage_id), key=lambda e: e.occurred_at)


def reconstruct(
    events: Sequence[StageTransitionEvent],
    now: datetime,
    categories: Mapping[str, str] | None = None,
) -> List[StageInterval]:
    """Turn one item's transition log into contiguous per-stage intervals.

    Interval ``i`` starts at event ``i`` and ends at event ``i + 1``; the
    last interval is open and ends at ``now``. Events without a destination
    stage are ignored. Stages missing from ``categories`` count as other.
    """
    ordered = _usable(events)
    categories = categories or {}
    intervals: List[StageInterval] = []
    for index, event in enumerate(ordered):
        is_last = index == len(ordered) - 1
        end = now if is_last else ordered[index + 1].occurred_at
        stage_id = event.to_stage_id or ""
        intervals.append(
            StageInterval(
                item_id=event.item_id,
                stage_id=stage_id,
                category=categories.get(stage_id, StageCategory.OTHER.value),
                start=event.occurred_at,
                end=end,
                is_open=is_last,
                technician_id=event.technician_id,
            )
        )
    return intervals


def current_stage(
    events: Sequence[StageTransitionEvent],
    now: datetime,
    categories: Mapping[str, str] | None = None,
) -> Optional[CurrentStage]:
    intervals = reconstruct(events, now, categories)
    if not intervals:
        return None
    last = intervals[-1]
    return CurrentStage(
        stage_id=last.stage_id,
        category=last.category,
        entered_at=last.start,
        elapsed_seconds=last.duration_seconds,
    )


def summarize_intervals(
    intervals: Iterable[StageInterval], key: str = "category"
) -> Dict[str, StageTimeSummary]:
    """Total and average time per group.

    ``key`` is ``"category"`` or ``"stage_id"``; totals and averages always
    come from the same grouping so the two reports agree.
    """
    if key not in ("category", "stage_id"):
        raise ValueError(f"unsupported grouping key: {key!r}")
    totals: Dict[str, float] = defaultdict(float)
    counts: Dict[str, int] = defaultdict(int)
    for interval in intervals:
        group = getattr(interval, key)
        totals[group] += interval.duration_seconds
        counts[group] += 1
    return {
        group: StageTimeSummary(key=group, total_seconds=totals[group], count=counts[group])
        for group in totals
    }


def history_stats(
    events: Sequence[StageTransitionEvent],
    now: datetime,
    categories: Mapping[str, str] | None = None,
) -> StageHistoryStats:
    ordered = _usable(events)
    return StageHistoryStats(
        total_moves=len(ordered),
        first_move_at=ordered[0].occurred_at if ordered else None,
        last_move_at=ordered[-1].occurred_at if ordered else None,
        current_stage=current_stage(ordered, now, categories),
    )


def waiting_minutes_by_technician(
    events: Sequence[StageTransitionEvent],
    categories: Mapping[str, str],
    now: datetime,
) -> Dict[str, float]:
    """Minutes each technician's own moves kept the item in a waiting stage.

    Only events carrying a technician count. A waiting spell runs from the
    technician's move into a waiting stage until that technician's next
    move on the item, or ``now``.
    """
    by_technician: Dict[str, List[StageTransitionEvent]] = defaultdict(list)
    for event in _usable(events):
        if event.technician_id:
            by_technician[event.technician_id].append(event)

    waiting = StageCategory.WAITING.value
    minutes: Dict[str, float] = {}
    for technician_id, own_events in by_technician.items():
        total = 0.0
        for index, event in enumerate(own_events):
            if categories.get(event.to_stage_id or "") != waiting:
                continue
            leave_at = (
                own_events[index + 1].occurred_at
                if index + 1 < len(own_events)
                else now
            )
            total += max(0.0, (leave_at - event.occurred_at).total_seconds()) / 60.0
        minutes[technician_id] = total
    return minutes


class StageTimeService:
    """Loads an item's transition log and classifies it for dashboards."""

    def __init__(
        self,
        transitions_repo=None,
        catalog: StageCatalog | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if transitions_repo is None:
            from ..repositories import transitions_repo as default_repo

            transitions_repo = default_repo
        self._transitions = transitions_repo
        self._catalog = catalog or StageCatalog()
        self._clock = clock

    def _categories(self, events: Iterable[StageTransitionEvent]) -> Dict[str, str]:
        return self._catalog.categories_for_stages(
            e.to_stage_id for e in events if e.to_stage_id
        )

    def intervals_for_item(
        self, item_id: str, now: datetime | None = None
    ) -> List[StageInterval]:
        events = self._transitions.list_for_item(item_id)
        return reconstruct(events, now or self._clock(), self._categories(events))

    def stats_for_item(
        self, item_id: str, now: datetime | None = None
    ) -> StageHistoryStats:
        events = self._transitions.list_for_item(item_id)
        return history_stats(events, now or self._clock(), self._categories(events))

    def waiting_minutes_for_item(
        self, item_id: str, now: datetime | None = None
    ) -> Dict[str, float]:
        events = self._transitions.list_for_item(item_id)
        return waiting_minutes_by_technician(
            events, self._categories(events), now or self._clock()
        )

    def stage_time_report(
        self,
        item_ids: Iterable[str],
        key: str = "category",
        now: datetime | None = None,
    ) -> Dict[str, StageTimeSummary]:
        """Total and average stage time across several items."""
        moment = now or self._clock()
        ids = list(dict.fromkeys(item_ids))
        events = self._transitions.list_for_items(ids)
        categories = self._categories(events)
        by_item: Dict[str, List[StageTransitionEvent]] = defaultdict(list)
        for event in events:
            by_item[event.item_id].append(event)
        intervals: List[StageInterval] = []
        for item_id in ids:
            intervals.extend(reconstruct(by_item.get(item_id, []), moment, categories))
        logger.debug(
            "stage_time_report_built",
            extra={"items": len(ids), "intervals": len(intervals)},
        )
        return summarize_intervals(intervals, key=key)
