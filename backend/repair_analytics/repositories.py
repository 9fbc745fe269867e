from __future__ import annotations

from datetime import UTC, datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import get_settings
from .db import SessionLocal
from .db_models import (
    FunnelRecordDB,
    StageDB,
    StageTransitionDB,
    WorkItemDB,
    WorkSessionDB,
)
from .errors import AdapterError
from .models import (
    FunnelMoveRecord,
    Stage,
    StageTransitionEvent,
    WorkItem,
    WorkSession,
    new_funnel_record_id,
    new_session_id,
    new_stage_id,
)

_UNSET = object()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive values read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _db_time(value: datetime | None) -> datetime | None:
    """Store timestamps as naive UTC so every backend compares them alike."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _split_ids(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [t.strip() for t in str(raw).split(",") if t.strip()]


def _join_ids(ids: Iterable[str] | None) -> str | None:
    if not ids:
        return None
    cleaned = [t.strip() for t in ids if t and t.strip()]
    return ",".join(cleaned) if cleaned else None


def _overlaps(
    session: WorkSession, range_start: datetime, range_end: datetime
) -> bool:
    if session.started_at >= range_end:
        return False
    return session.finished_at is None or session.finished_at > range_start


# ---------------------------------------------------------------------------
# In-memory repositories
# ---------------------------------------------------------------------------


class InMemoryStageRepository:
    def __init__(self) -> None:
        self._by_id: Dict[str, Stage] = {}

    def upsert(
        self,
        name: str,
        pipeline_id: str | None = None,
        stage_id: str | None = None,
        position: int = 0,
        is_active: bool = True,
    ) -> Stage:
        stage = Stage(
            id=stage_id or new_stage_id(),
            name=name,
            pipeline_id=pipeline_id,
            position=position,
            is_active=is_active,
        )
        self._by_id[stage.id] = stage
        return stage

    def get(self, stage_id: str) -> Optional[Stage]:
        return self._by_id.get(stage_id)

    def resolve_names(self, stage_ids: Iterable[str]) -> Dict[str, str]:
        names: Dict[str, str] = {}
        for sid in stage_ids:
            stage = self._by_id.get(sid)
            if stage is not None:
                names[sid] = stage.name
        return names

    def list_for_pipeline(self, pipeline_id: str) -> List[Stage]:
        stages = [
            s
            for s in self._by_id.values()
            if s.pipeline_id == pipeline_id and s.is_active
        ]
        return sorted(stages, key=lambda s: s.position)

    def clear(self) -> None:
        self._by_id.clear()


class InMemoryWorkItemRepository:
    def __init__(self) -> None:
        self._by_id: Dict[str, WorkItem] = {}

    def upsert(
        self,
        item_id: str,
        number: str | None = None,
        technician_ids: list[str] | None = None,
    ) -> WorkItem:
        existing = self._by_id.get(item_id)
        if existing:
            if number is not None:
                existing.number = number
            if technician_ids is not None:
                existing.technician_ids = list(technician_ids)
            return existing
        item = WorkItem(
            id=item_id, number=number, technician_ids=list(technician_ids or [])
        )
        self._by_id[item_id] = item
        return item

    def get(self, item_id: str) -> Optional[WorkItem]:
        return self._by_id.get(item_id)

    def clear(self) -> None:
        self._by_id.clear()


class InMemoryTransitionEventRepository:
    def __init__(self) -> None:
        self._events: List[StageTransitionEvent] = []
        self._by_item: Dict[str, List[StageTransitionEvent]] = {}

    def append(
        self,
        item_id: str,
        to_stage_id: str | None,
        from_stage_id: str | None = None,
        technician_id: str | None = None,
        pipeline_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> StageTransitionEvent:
        event = StageTransitionEvent(
            item_id=item_id,
            to_stage_id=to_stage_id,
            from_stage_id=from_stage_id,
            technician_id=technician_id,
            pipeline_id=pipeline_id,
            occurred_at=occurred_at or _utcnow(),
            sequence=len(self._events) + 1,
        )
        self._events.append(event)
        self._by_item.setdefault(item_id, []).append(event)
        return event

    def list_for_item(self, item_id: str) -> List[StageTransitionEvent]:
        # sorted() is stable, so equal timestamps keep insertion order.
        return sorted(self._by_item.get(item_id, []), key=lambda e: e.occurred_at)

    def list_for_items(
        self,
        item_ids: Iterable[str],
        range_start: datetime | None = None,
        range_end: datetime | None = None,
    ) -> List[StageTransitionEvent]:
        wanted = set(item_ids)
        rows = [
            e
            for e in self._events
            if e.item_id in wanted
            and (range_start is None or e.occurred_at >= range_start)
            and (range_end is None or e.occurred_at < range_end)
        ]
        return sorted(rows, key=lambda e: (e.occurred_at, e.sequence))

    def clear(self) -> None:
        self._events.clear()
        self._by_item.clear()


class InMemoryWorkSessionRepository:
    def __init__(self) -> None:
        self._by_id: Dict[str, WorkSession] = {}

    def create(
        self,
        item_id: str,
        technician_id: str,
        started_at: datetime,
        notes: str | None = None,
    ) -> WorkSession:
        session = WorkSession(
            id=new_session_id(),
            item_id=item_id,
            technician_id=technician_id,
            started_at=started_at,
            notes=notes,
        )
        self._by_id[session.id] = session
        return session

    def get(self, session_id: str) -> Optional[WorkSession]:
        return self._by_id.get(session_id)

    def update(
        self,
        session_id: str,
        *,
        started_at: datetime | None = None,
        finished_at=_UNSET,
        notes: str | None = None,
    ) -> Optional[WorkSession]:
        session = self._by_id.get(session_id)
        if not session:
            return None
        if started_at is not None:
            session.started_at = started_at
        if finished_at is not _UNSET:
            session.finished_at = finished_at
        if notes is not None:
            session.notes = notes
        session.updated_at = _utcnow()
        return session

    def list_open(self, item_id: str, technician_id: str) -> List[WorkSession]:
        rows = [
            s
            for s in self._by_id.values()
            if s.item_id == item_id
            and s.technician_id == technician_id
            and s.finished_at is None
        ]
        return sorted(rows, key=lambda s: s.started_at, reverse=True)

    def list_for_pair(self, item_id: str, technician_id: str) -> List[WorkSession]:
        rows = [
            s
            for s in self._by_id.values()
            if s.item_id == item_id and s.technician_id == technician_id
        ]
        return sorted(rows, key=lambda s: s.started_at)

    def list_for_item(self, item_id: str) -> List[WorkSession]:
        rows = [s for s in self._by_id.values() if s.item_id == item_id]
        return sorted(rows, key=lambda s: s.started_at)

    def list_open_for_technician(self, technician_id: str) -> List[WorkSession]:
        rows = [
            s
            for s in self._by_id.values()
            if s.technician_id == technician_id and s.finished_at is None
        ]
        return sorted(rows, key=lambda s: s.started_at, reverse=True)

    def list_overlapping(
        self, item_ids: Iterable[str], range_start: datetime, range_end: datetime
    ) -> List[WorkSession]:
        wanted = set(item_ids)
        rows = [
            s
            for s in self._by_id.values()
            if s.item_id in wanted and _overlaps(s, range_start, range_end)
        ]
        return sorted(rows, key=lambda s: s.started_at)

    def clear(self) -> None:
        self._by_id.clear()


class InMemoryFunnelRecordRepository:
    def __init__(self) -> None:
        self._records: List[FunnelMoveRecord] = []

    def insert(self, record: FunnelMoveRecord) -> None:
        self._records.append(record)

    def find_recent(
        self,
        item_id: str,
        to_stage_id: str,
        since: datetime,
        pipeline_id: str | None = None,
    ) -> Optional[FunnelMoveRecord]:
        for record in reversed(self._records):
            if (
                record.item_id == item_id
                and record.to_stage_id == to_stage_id
                and record.recorded_at >= since
                and (pipeline_id is None or record.pipeline_id == pipeline_id)
            ):
                return record
        return None

    def list_for_item(
        self, item_id: str, pipeline_id: str | None = None, limit: int = 200
    ) -> List[FunnelMoveRecord]:
        rows = [
            r
            for r in self._records
            if r.item_id == item_id
            and (pipeline_id is None or r.pipeline_id == pipeline_id)
        ]
        rows.sort(key=lambda r: r.recorded_at, reverse=True)
        return rows[:limit]

    def list_for_pipeline(
        self, pipeline_id: str, range_start: datetime, range_end: datetime
    ) -> List[FunnelMoveRecord]:
        rows = [
            r
            for r in self._records
            if r.pipeline_id == pipeline_id
            and range_start <= r.recorded_at < range_end
        ]
        return sorted(rows, key=lambda r: r.recorded_at)

    def clear(self) -> None:
        self._records.clear()


# ---------------------------------------------------------------------------
# Database repositories
# ---------------------------------------------------------------------------


class _DbRepository:
    """Shared session handling for the SQLAlchemy-backed repositories.

    Any SQLAlchemy failure is re-raised as AdapterError so callers see one
    error type for the store boundary.
    """

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def _session(self) -> Session:
        if self._session_factory is None:
            raise AdapterError("open_session", "session factory is not available")
        return self._session_factory()

    def _run(self, operation: str, fn: Callable[[Session], object]):
        session = self._session()
        try:
            return fn(session)
        except SQLAlchemyError as exc:
            session.rollback()
            raise AdapterError(operation, str(exc)) from exc
        finally:
            session.close()


class DbStageRepository(_DbRepository):
    """Stage name lookups backed by the `stages` table."""

    def _to_model(self, row: StageDB) -> Stage:
        return Stage(
            id=row.id,
            name=row.name,
            pipeline_id=row.pipeline_id,
            position=row.position or 0,
            is_active=bool(row.is_active),
        )

    def upsert(
        self,
        name: str,
        pipeline_id: str | None = None,
        stage_id: str | None = None,
        position: int = 0,
        is_active: bool = True,
    ) -> Stage:
        def _do(session: Session) -> Stage:
            row = session.get(StageDB, stage_id) if stage_id else None
            if row is None:
                row = StageDB(id=stage_id or new_stage_id())  # type: ignore[call-arg]
            row.name = name
            row.pipeline_id = pipeline_id
            row.position = position
            row.is_active = is_active
            row.updated_at = _db_time(_utcnow())
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)

        return self._run("upsert_stage", _do)

    def get(self, stage_id: str) -> Optional[Stage]:
        def _do(session: Session) -> Optional[Stage]:
            row = session.get(StageDB, stage_id)
            return self._to_model(row) if row else None

        return self._run("get_stage", _do)

    def resolve_names(self, stage_ids: Iterable[str]) -> Dict[str, str]:
        ids = list(dict.fromkeys(stage_ids))
        if not ids:
            return {}

        def _do(session: Session) -> Dict[str, str]:
            rows = session.query(StageDB).filter(StageDB.id.in_(ids)).all()
            return {row.id: row.name for row in rows}

        return self._run("resolve_stage_names", _do)

    def list_for_pipeline(self, pipeline_id: str) -> List[Stage]:
        def _do(session: Session) -> List[Stage]:
            rows = (
                session.query(StageDB)
                .filter(StageDB.pipeline_id == pipeline_id, StageDB.is_active.is_(True))
                .order_by(StageDB.position.asc())
                .all()
            )
            return [self._to_model(r) for r in rows]

        return self._run("list_pipeline_stages", _do)


class DbWorkItemRepository(_DbRepository):
    def _to_model(self, row: WorkItemDB) -> WorkItem:
        return WorkItem(
            id=row.id,
            number=row.number,
            technician_ids=_split_ids(row.technician_ids),
            created_at=_as_utc(row.created_at),
        )

    def upsert(
        self,
        item_id: str,
        number: str | None = None,
        technician_ids: list[str] | None = None,
    ) -> WorkItem:
        def _do(session: Session) -> WorkItem:
            row = session.get(WorkItemDB, item_id)
            if row is None:
                row = WorkItemDB(
                    id=item_id,
                    number=number,
                    technician_ids=_join_ids(technician_ids),
                    created_at=_db_time(_utcnow()),
                )  # type: ignore[call-arg]
            else:
                if number is not None:
                    row.number = number
                if technician_ids is not None:
                    row.technician_ids = _join_ids(technician_ids)
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)

        return self._run("upsert_work_item", _do)

    def get(self, item_id: str) -> Optional[WorkItem]:
        def _do(session: Session) -> Optional[WorkItem]:
            row = session.get(WorkItemDB, item_id)
            return self._to_model(row) if row else None

        return self._run("get_work_item", _do)


class DbTransitionEventRepository(_DbRepository):
    """Append-only stage history backed by the `stage_history` table."""

    def _to_model(self, row: StageTransitionDB) -> StageTransitionEvent:
        return StageTransitionEvent(
            item_id=row.item_id,
            to_stage_id=row.to_stage_id,
            from_stage_id=row.from_stage_id,
            technician_id=row.technician_id,
            pipeline_id=row.pipeline_id,
            occurred_at=_as_utc(row.occurred_at),
            sequence=row.id or 0,
        )

    def append(
        self,
        item_id: str,
        to_stage_id: str | None,
        from_stage_id: str | None = None,
        technician_id: str | None = None,
        pipeline_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> StageTransitionEvent:
        def _do(session: Session) -> StageTransitionEvent:
            row = StageTransitionDB(
                item_id=item_id,
                to_stage_id=to_stage_id,
                from_stage_id=from_stage_id,
                technician_id=technician_id,
                pipeline_id=pipeline_id,
                occurred_at=_db_time(occurred_at or _utcnow()),
            )  # type: ignore[call-arg]
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)

        return self._run("append_transition", _do)

    def list_for_item(self, item_id: str) -> List[StageTransitionEvent]:
        def _do(session: Session) -> List[StageTransitionEvent]:
            rows = (
                session.query(StageTransitionDB)
                .filter(StageTransitionDB.item_id == item_id)
                .order_by(
                    StageTransitionDB.occurred_at.asc(), StageTransitionDB.id.asc()
                )
                .all()
            )
            return [self._to_model(r) for r in rows]

        return self._run("list_transitions", _do)

    def list_for_items(
        self,
        item_ids: Iterable[str],
        range_start: datetime | None = None,
        range_end: datetime | None = None,
    ) -> List[StageTransitionEvent]:
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return []

        def _do(session: Session) -> List[StageTransitionEvent]:
            query = session.query(StageTransitionDB).filter(
                StageTransitionDB.item_id.in_(ids)
            )
            if range_start is not None:
                query = query.filter(
                    StageTransitionDB.occurred_at >= _db_time(range_start)
                )
            if range_end is not None:
                query = query.filter(StageTransitionDB.occurred_at < _db_time(range_end))
            rows = query.order_by(
                StageTransitionDB.occurred_at.asc(), StageTransitionDB.id.asc()
            ).all()
            return [self._to_model(r) for r in rows]

        return self._run("list_transitions_batch", _do)


class DbWorkSessionRepository(_DbRepository):
    """Work sessions backed by the `technician_work_sessions` table."""

    def _to_model(self, row: WorkSessionDB) -> WorkSession:
        return WorkSession(
            id=row.id,
            item_id=row.item_id,
            technician_id=row.technician_id,
            started_at=_as_utc(row.started_at),
            finished_at=_as_utc(row.finished_at),
            notes=row.notes,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    def create(
        self,
        item_id: str,
        technician_id: str,
        started_at: datetime,
        notes: str | None = None,
    ) -> WorkSession:
        def _do(session: Session) -> WorkSession:
            now = _db_time(_utcnow())
            row = WorkSessionDB(
                id=new_session_id(),
                item_id=item_id,
                technician_id=technician_id,
                started_at=_db_time(started_at),
                finished_at=None,
                notes=notes,
                created_at=now,
                updated_at=now,
            )  # type: ignore[call-arg]
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)

        return self._run("create_work_session", _do)

    def get(self, session_id: str) -> Optional[WorkSession]:
        def _do(session: Session) -> Optional[WorkSession]:
            row = session.get(WorkSessionDB, session_id)
            return self._to_model(row) if row else None

        return self._run("get_work_session", _do)

    def update(
        self,
        session_id: str,
        *,
        started_at: datetime | None = None,
        finished_at=_UNSET,
        notes: str | None = None,
    ) -> Optional[WorkSession]:
        def _do(session: Session) -> Optional[WorkSession]:
            row = session.get(WorkSessionDB, session_id)
            if row is None:
                return None
            if started_at is not None:
                row.started_at = _db_time(started_at)
            if finished_at is not _UNSET:
                row.finished_at = _db_time(finished_at)
            if notes is not None:
                row.notes = notes
            row.updated_at = _db_time(_utcnow())
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)

        return self._run("update_work_session", _do)

    def _list(self, operation: str, *criteria, descending: bool = False):
        def _do(session: Session) -> List[WorkSession]:
            order = (
                WorkSessionDB.started_at.desc()
                if descending
                else WorkSessionDB.started_at.asc()
            )
            rows = session.query(WorkSessionDB).filter(*criteria).order_by(order).all()
            return [self._to_model(r) for r in rows]

        return self._run(operation, _do)

    def list_open(self, item_id: str, technician_id: str) -> List[WorkSession]:
        return self._list(
            "list_open_work_sessions",
            WorkSessionDB.item_id == item_id,
            WorkSessionDB.technician_id == technician_id,
            WorkSessionDB.finished_at.is_(None),
            descending=True,
        )

    def list_for_pair(self, item_id: str, technician_id: str) -> List[WorkSession]:
        return self._list(
            "list_pair_work_sessions",
            WorkSessionDB.item_id == item_id,
            WorkSessionDB.technician_id == technician_id,
        )

    def list_for_item(self, item_id: str) -> List[WorkSession]:
        return self._list("list_item_work_sessions", WorkSessionDB.item_id == item_id)

    def list_open_for_technician(self, technician_id: str) -> List[WorkSession]:
        return self._list(
            "list_technician_open_sessions",
            WorkSessionDB.technician_id == technician_id,
            WorkSessionDB.finished_at.is_(None),
            descending=True,
        )

    def list_overlapping(
        self, item_ids: Iterable[str], range_start: datetime, range_end: datetime
    ) -> List[WorkSession]:
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return []
        # Started before the range end and not finished before the range start:
        # covers sessions started earlier, still open, or finished inside.
        return self._list(
            "list_overlapping_work_sessions",
            WorkSessionDB.item_id.in_(ids),
            WorkSessionDB.started_at < _db_time(range_end),
            or_(
                WorkSessionDB.finished_at.is_(None),
                WorkSessionDB.finished_at > _db_time(range_start),
            ),
        )


class DbFunnelRecordRepository(_DbRepository):
    """Funnel move records backed by the `funnel_records` table."""

    def _to_model(self, row: FunnelRecordDB) -> FunnelMoveRecord:
        return FunnelMoveRecord(
            id=row.id,
            item_id=row.item_id,
            pipeline_id=row.pipeline_id,
            from_stage_id=row.from_stage_id,
            to_stage_id=row.to_stage_id,
            actor_id=row.actor_id,
            recorded_at=_as_utc(row.recorded_at),
        )

    def insert(self, record: FunnelMoveRecord) -> None:
        def _do(session: Session) -> None:
            session.add(
                FunnelRecordDB(
                    id=record.id or new_funnel_record_id(),
                    item_id=record.item_id,
                    pipeline_id=record.pipeline_id,
                    from_stage_id=record.from_stage_id,
                    to_stage_id=record.to_stage_id,
                    actor_id=record.actor_id,
                    recorded_at=_db_time(record.recorded_at),
                )  # type: ignore[call-arg]
            )
            session.commit()

        self._run("insert_funnel_record", _do)

    def find_recent(
        self,
        item_id: str,
        to_stage_id: str,
        since: datetime,
        pipeline_id: str | None = None,
    ) -> Optional[FunnelMoveRecord]:
        def _do(session: Session) -> Optional[FunnelMoveRecord]:
            criteria = [
                FunnelRecordDB.item_id == item_id,
                FunnelRecordDB.to_stage_id == to_stage_id,
                FunnelRecordDB.recorded_at >= _db_time(since),
            ]
            if pipeline_id is not None:
                criteria.append(FunnelRecordDB.pipeline_id == pipeline_id)
            row = (
                session.query(FunnelRecordDB)
                .filter(and_(*criteria))
                .order_by(FunnelRecordDB.recorded_at.desc())
                .first()
            )
            return self._to_model(row) if row else None

        return self._run("find_recent_funnel_record", _do)

    def list_for_item(
        self, item_id: str, pipeline_id: str | None = None, limit: int = 200
    ) -> List[FunnelMoveRecord]:
        def _do(session: Session) -> List[FunnelMoveRecord]:
            query = session.query(FunnelRecordDB).filter(
                FunnelRecordDB.item_id == item_id
            )
            if pipeline_id is not None:
                query = query.filter(FunnelRecordDB.pipeline_id == pipeline_id)
            rows = (
                query.order_by(FunnelRecordDB.recorded_at.desc())
                .limit(min(limit, 500))
                .all()
            )
            return [self._to_model(r) for r in rows]

        return self._run("list_item_funnel_records", _do)

    def list_for_pipeline(
        self, pipeline_id: str, range_start: datetime, range_end: datetime
    ) -> List[FunnelMoveRecord]:
        def _do(session: Session) -> List[FunnelMoveRecord]:
            rows = (
                session.query(FunnelRecordDB)
                .filter(
                    FunnelRecordDB.pipeline_id == pipeline_id,
                    FunnelRecordDB.recorded_at >= _db_time(range_start),
                    FunnelRecordDB.recorded_at < _db_time(range_end),
                )
                .order_by(FunnelRecordDB.recorded_at.asc())
                .all()
            )
            return [self._to_model(r) for r in rows]

        return self._run("list_pipeline_funnel_records", _do)


if get_settings().use_db_repositories:
    stages_repo = DbStageRepository()
    work_items_repo = DbWorkItemRepository()
    transitions_repo = DbTransitionEventRepository()
    work_sessions_repo = DbWorkSessionRepository()
    funnel_records_repo = DbFunnelRecordRepository()
else:
    stages_repo = InMemoryStageRepository()
    work_items_repo = InMemoryWorkItemRepository()
    transitions_repo = InMemoryTransitionEventRepository()
    work_sessions_repo = InMemoryWorkSessionRepository()
    funnel_records_repo = InMemoryFunnelRecordRepository()
