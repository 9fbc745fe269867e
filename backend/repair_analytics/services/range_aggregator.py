from __future__ import annotations

import logging
from collections import defaultdict
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..config import get_settings
from ..errors import InvalidRange
from ..metrics import metrics
from ..models import RangeAggregate, WorkSession

logger = logging.getLogger(__name__)

PERIODS = ("day", "week", "month")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _default_tz() -> tzinfo:
    return get_settings().reporting.tzinfo


def _as_utc(value: datetime) -> datetime:
    # Naive values are taken as UTC, never as host-local time.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _local_midnight(day: date, tz: tzinfo) -> datetime:
    # Converted to UTC so later subtraction measures elapsed time, not wall time.
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(UTC)


def _minutes(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60.0


def day_key(moment: datetime, tz: tzinfo | None = None) -> str:
    """Calendar date of ``moment`` in ``tz`` as ``YYYY-MM-DD``."""
    return _as_utc(moment).astimezone(tz or _default_tz()).date().isoformat()


def split_by_local_day(
    start: datetime, end: datetime, tz: tzinfo | None = None
) -> List[Tuple[str, datetime, datetime]]:
    """Cut ``[start, end)`` at every local midnight.

    Returns ``(day_key, slice_start, slice_end)`` triples in UTC. Day
    lengths follow the zone, so DST days are 23 or 25 hours long.
    """
    zone = tz or _default_tz()
    cursor = _as_utc(start)
    stop = _as_utc(end)
    slices: List[Tuple[str, datetime, datetime]] = []
    while cursor < stop:
        local_day = cursor.astimezone(zone).date()
        next_midnight = _local_midnight(local_day + timedelta(days=1), zone)
        slice_end = min(next_midnight, stop)
        slices.append((local_day.isoformat(), cursor, slice_end))
        cursor = slice_end
    return slices


def clip_session(
    session: WorkSession, range_start: datetime, range_end: datetime, now: datetime
) -> Optional[Tuple[datetime, datetime]]:
    """Part of a session inside the window, or None when nothing overlaps.

    Open sessions run until ``now`` (never past ``range_end``).
    """
    end = session.finished_at if session.finished_at is not None else now
    clipped_start = max(session.started_at, range_start)
    clipped_end = min(end, range_end)
    if clipped_end <= clipped_start:
        return None
    return clipped_start, clipped_end


def aggregate(
    sessions: Iterable[WorkSession],
    range_start: datetime,
    range_end: datetime,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> RangeAggregate:
    """Per-technician, per-day and per-(technician, item) minutes in a window.

    Sessions of different technicians are summed independently even when
    they overlap in wall-clock time.
    """
    if range_end < range_start:
        raise InvalidRange("range_end must not be before range_start", field="range_end")
    range_start = _as_utc(range_start)
    range_end = _as_utc(range_end)
    moment = _as_utc(now) if now is not None else _utcnow()
    zone = tz or _default_tz()

    by_technician: Dict[str, float] = defaultdict(float)
    by_day: Dict[str, float] = defaultdict(float)
    by_pair: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))

    for session in sessions:
        clipped = clip_session(session, range_start, range_end, moment)
        if clipped is None:
            continue
        start, end = clipped
        minutes = _minutes(start, end)
        by_technician[session.technician_id] += minutes
        by_pair[session.technician_id][session.item_id] += minutes
        for key, slice_start, slice_end in split_by_local_day(start, end, zone):
            by_day[key] += _minutes(slice_start, slice_end)

    return RangeAggregate(
        minutes_by_technician=dict(by_technician),
        minutes_by_day=dict(sorted(by_day.items())),
        minutes_by_technician_and_item={t: dict(items) for t, items in by_pair.items()},
    )


def month_bounds(year: int, month: int, tz: tzinfo | None = None) -> Tuple[datetime, datetime]:
    if not 1 <= month <= 12:
        raise ValueError(f"month must be between 1 and 12, got {month}")
    zone = tz or _default_tz()
    first = date(year, month, 1)
    following = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return _local_midnight(first, zone), _local_midnight(following, zone)


def period_bounds(
    period: str, reference: datetime, tz: tzinfo | None = None
) -> Tuple[datetime, datetime]:
    """Half-open ``[start, end)`` of the local day, week or month around ``reference``.

    Weeks start on Monday.
    """
    zone = tz or _default_tz()
    local_day = _as_utc(reference).astimezone(zone).date()
    if period == "day":
        return (
            _local_midnight(local_day, zone),
            _local_midnight(local_day + timedelta(days=1), zone),
        )
    if period == "week":
        monday = local_day - timedelta(days=local_day.weekday())
        return (
            _local_midnight(monday, zone),
            _local_midnight(monday + timedelta(days=7), zone),
        )
    if period == "month":
        return month_bounds(local_day.year, local_day.month, zone)
    raise ValueError(f"unsupported period: {period!r}")


class WorkMinutesReport:
    """Loads overlapping sessions from the store and aggregates them."""

    def __init__(
        self,
        sessions_repo=None,
        clock: Callable[[], datetime] = _utcnow,
        tz: tzinfo | None = None,
    ) -> None:
        if sessions_repo is None:
            from ..repositories import work_sessions_repo as default_repo

            sessions_repo = default_repo
        self._sessions = sessions_repo
        self._clock = clock
        self._tz = tz

    @property
    def tz(self) -> tzinfo:
        return self._tz or _default_tz()

    def aggregate_for_items(
        self,
        item_ids: Iterable[str],
        range_start: datetime,
        range_end: datetime,
        technician_id: str | None = None,
        now: datetime | None = None,
    ) -> RangeAggregate:
        if range_end < range_start:
            raise InvalidRange("range_end must not be before range_start", field="range_end")
        ids = list(dict.fromkeys(item_ids))
        sessions = self._sessions.list_overlapping(ids, range_start, range_end)
        if technician_id:
            sessions = [s for s in sessions if s.technician_id == technician_id]
        result = aggregate(
            sessions, range_start, range_end, now=now or self._clock(), tz=self.tz
        )
        metrics.range_aggregations += 1
        logger.debug(
            "work_minutes_aggregated",
            extra={
                "items": len(ids),
                "sessions": len(sessions),
                "range_start": range_start.isoformat(),
                "range_end": range_end.isoformat(),
            },
        )
        return result

    def aggregate_for_period(
        self,
        item_ids: Iterable[str],
        period: str,
        reference: datetime | None = None,
        technician_id: str | None = None,
    ) -> RangeAggregate:
        moment = self._clock()
        start, end = period_bounds(period, reference or moment, self.tz)
        return self.aggregate_for_items(
            item_ids, start, end, technician_id=technician_id, now=moment
        )
