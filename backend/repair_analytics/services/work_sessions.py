from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Dict, List, Optional

from ..errors import InvalidRange, OpenSessionConflict, SessionNotFound
from ..metrics import metrics
from ..models import WorkSession

logger = logging.getLogger(__name__)

UNSET = object()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def session_minutes(session: WorkSession, now: datetime) -> float:
    """Minutes covered by a session; open sessions run until ``now``."""
    end = session.finished_at or now
    return max(0.0, (end - session.started_at).total_seconds() / 60.0)


def _require(value: str, name: str) -> str:
    if not value or not str(value).strip():
        raise ValueError(f"{name} is required")
    return value


@dataclass(frozen=True)
class TechnicianItemSummary:
    technician_id: str
    work_minutes: float
    estimated_minutes: float
    waiting_minutes: float


class WorkSessionTracker:
    """Start/finish lifecycle and elapsed time of technician work sessions.

    ``start`` is idempotent per (item, technician): while an open session
    exists it is returned instead of creating another. This is a
    read-before-write check, not a lock; two concurrent first starts for
    the same pair can still both insert. ``finish`` closes the newest open
    session and logs when it finds more than one.
    """

    def __init__(
        self,
        sessions_repo=None,
        work_items_repo=None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if sessions_repo is None or work_items_repo is None:
            from .. import repositories

            sessions_repo = sessions_repo or repositories.work_sessions_repo
            work_items_repo = work_items_repo or repositories.work_items_repo
        self._sessions = sessions_repo
        self._items = work_items_repo
        self._clock = clock

    def start(self, item_id: str, technician_id: str, note: str | None = None) -> str:
        _require(item_id, "item_id")
        _require(technician_id, "technician_id")
        open_sessions = self._sessions.list_open(item_id, technician_id)
        if open_sessions:
            metrics.work_sessions_reused += 1
            logger.info(
                "work_session_start_reused",
                extra={
                    "item_id": item_id,
                    "technician_id": technician_id,
                    "session_id": open_sessions[0].id,
                },
            )
            return open_sessions[0].id

        session = self._sessions.create(
            item_id=item_id,
            technician_id=technician_id,
            started_at=self._clock(),
            notes=note or None,
        )
        metrics.work_sessions_started += 1
        logger.info(
            "work_session_started",
            extra={
                "item_id": item_id,
                "technician_id": technician_id,
                "session_id": session.id,
            },
        )
        return session.id

    def finish(self, item_id: str, technician_id: str, note: str | None = None) -> bool:
        _require(item_id, "item_id")
        _require(technician_id, "technician_id")
        open_sessions = self._sessions.list_open(item_id, technician_id)
        if not open_sessions:
            metrics.work_sessions_finish_noop += 1
            return False
        if len(open_sessions) > 1:
            metrics.work_sessions_duplicate_open += 1
            logger.warning(
                "work_session_duplicate_open",
                extra={
                    "item_id": item_id,
                    "technician_id": technician_id,
                    "open_sessions": [s.id for s in open_sessions],
                },
            )
        newest = open_sessions[0]
        notes = newest.notes
        if note:
            notes = f"{notes}\n{note}" if notes else note
        self._sessions.update(newest.id, finished_at=self._clock(), notes=notes)
        metrics.work_sessions_finished += 1
        logger.info(
            "work_session_finished",
            extra={
                "item_id": item_id,
                "technician_id": technician_id,
                "session_id": newest.id,
            },
        )
        return True

    def elapsed_minutes(
        self, item_id: str, technician_id: str, now: datetime | None = None
    ) -> float:
        moment = now or self._clock()
        return sum(
            session_minutes(s, moment)
            for s in self._sessions.list_for_pair(item_id, technician_id)
        )

    def edit(
        self,
        session_id: str,
        *,
        started_at: datetime | None = None,
        finished_at=UNSET,
    ) -> WorkSession:
        """Privileged correction of a session's timestamps.

        ``finished_at=None`` reopens the session. The merged pair of
        timestamps must satisfy ``finished_at >= started_at``.
        """
        if started_at is None and finished_at is UNSET:
            raise ValueError("no updates provided")
        existing = self._sessions.get(session_id)
        if existing is None:
            raise SessionNotFound(session_id)

        new_start = started_at if started_at is not None else existing.started_at
        new_finish = existing.finished_at if finished_at is UNSET else finished_at
        if new_finish is not None and new_finish < new_start:
            field = "finished_at" if finished_at is not UNSET else "started_at"
            raise InvalidRange("finished_at must not be before started_at", field=field)

        if new_finish is None and existing.finished_at is not None:
            others = [
                s
                for s in self._sessions.list_open(existing.item_id, existing.technician_id)
                if s.id != session_id
            ]
            if others:
                raise OpenSessionConflict(existing.item_id, existing.technician_id)

        updated = self._sessions.update(
            session_id, started_at=started_at, finished_at=new_finish
        )
        if updated is None:
            raise SessionNotFound(session_id)
        metrics.work_sessions_edited += 1
        logger.info(
            "work_session_edited",
            extra={"session_id": session_id, "item_id": updated.item_id},
        )
        return updated

    def active_sessions(self, item_id: str, technician_id: str) -> List[WorkSession]:
        return self._sessions.list_open(item_id, technician_id)

    def has_active_session(self, item_id: str, technician_id: str) -> bool:
        return bool(self._sessions.list_open(item_id, technician_id))

    def sessions_for_item(self, item_id: str) -> List[WorkSession]:
        return self._sessions.list_for_item(item_id)

    def technician_active_sessions(self, technician_id: str) -> List[WorkSession]:
        return self._sessions.list_open_for_technician(technician_id)

    def minutes_by_technician(
        self, item_id: str, now: datetime | None = None
    ) -> Dict[str, float]:
        moment = now or self._clock()
        minutes: Dict[str, float] = defaultdict(float)
        for session in self._sessions.list_for_item(item_id):
            minutes[session.technician_id] += session_minutes(session, moment)
        return dict(minutes)

    def item_technician_summary(
        self,
        item_id: str,
        stage_time=None,
        estimated_minutes_total: float = 0.0,
        now: Optional[datetime] = None,
    ) -> List[TechnicianItemSummary]:
        """Per-technician worked, estimated and waiting minutes for one item.

        Technicians come from the item's sessions plus its assigned
        collaborators. The estimate is split evenly between them.
        """
        moment = now or self._clock()
        worked = self.minutes_by_technician(item_id, now=moment)
        technician_ids = list(worked)
        item = self._items.get(item_id)
        if item is not None:
            for tid in item.technician_ids:
                if tid not in technician_ids:
                    technician_ids.append(tid)
        if not technician_ids:
            return []

        waiting: Dict[str, float] = {}
        if stage_time is not None:
            waiting = stage_time.waiting_minutes_for_item(item_id, now=moment)

        share = estimated_minutes_total / len(technician_ids)
        return [
            TechnicianItemSummary(
                technician_id=tid,
                work_minutes=worked.get(tid, 0.0),
                estimated_minutes=share,
                waiting_minutes=waiting.get(tid, 0.0),
            )
            for tid in technician_ids
        ]
