from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..deps import (
    get_funnel_recorder,
    get_stage_time_service,
    get_work_minutes_report,
    get_work_session_tracker,
    require_owner_dashboard_auth,
)
from ..errors import AdapterError, InvalidRange, OpenSessionConflict, SessionNotFound
from ..models import WorkSession
from ..services.funnel import FunnelRecorder
from ..services.range_aggregator import PERIODS, WorkMinutesReport, period_bounds
from ..services.stage_intervals import StageTimeService, summarize_intervals
from ..services.work_sessions import WorkSessionTracker

router = APIRouter()
logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _store_unavailable(exc: AdapterError) -> HTTPException:
    logger.warning("analytics_store_error", extra={"operation": exc.operation})
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"Store unavailable: {exc.operation}",
    )


def _invalid_range(exc: InvalidRange) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"field": exc.field, "message": exc.message},
    )


class StageIntervalOut(BaseModel):
    stage_id: str
    category: str
    start: datetime
    end: datetime
    is_open: bool
    duration_minutes: float


class CurrentStageOut(BaseModel):
    stage_id: str
    category: str
    entered_at: datetime
    elapsed_seconds: float


class StageTotalOut(BaseModel):
    total_seconds: float
    average_seconds: float
    count: int


class ItemStagesResponse(BaseModel):
    item_id: str
    intervals: List[StageIntervalOut]
    current_stage: Optional[CurrentStageOut] = None
    total_moves: int
    first_move_at: Optional[datetime] = None
    last_move_at: Optional[datetime] = None
    totals: Dict[str, StageTotalOut]


class TechnicianSummaryOut(BaseModel):
    technician_id: str
    work_minutes: float
    estimated_minutes: float
    waiting_minutes: float


class SessionActionRequest(BaseModel):
    item_id: str = Field(..., min_length=1, max_length=128)
    technician_id: str = Field(..., min_length=1, max_length=128)
    note: str | None = Field(default=None, max_length=2000)


class StartSessionResponse(BaseModel):
    session_id: str


class FinishSessionResponse(BaseModel):
    finished: bool


class ElapsedResponse(BaseModel):
    item_id: str
    technician_id: str
    minutes: float
    active: bool


class SessionPatchRequest(BaseModel):
    started_at: datetime | None = None
    finished_at: datetime | None = None


class WorkSessionOut(BaseModel):
    id: str
    item_id: str
    technician_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    notes: Optional[str] = None

    @classmethod
    def from_model(cls, session: WorkSession) -> "WorkSessionOut":
        return cls(
            id=session.id,
            item_id=session.item_id,
            technician_id=session.technician_id,
            started_at=session.started_at,
            finished_at=session.finished_at,
            notes=session.notes,
        )


class WorkMinutesResponse(BaseModel):
    range_start: datetime
    range_end: datetime
    has_session_data: bool
    total_minutes: float
    minutes_by_technician: Dict[str, float]
    minutes_by_day: Dict[str, float]
    minutes_by_technician_and_item: Dict[str, Dict[str, float]]


class FunnelMoveRequest(BaseModel):
    item_id: str = Field(..., min_length=1, max_length=128)
    pipeline_id: str = Field(..., min_length=1, max_length=128)
    from_stage_id: str | None = None
    to_stage_id: str = Field(..., min_length=1, max_length=128)
    actor_id: str | None = None


class FunnelMoveResponse(BaseModel):
    recorded: bool
    reason: str
    record_id: str | None = None
    error: str | None = None


class FunnelCountsResponse(BaseModel):
    pipeline_id: str
    counts: Dict[str, Dict[str, int]]


@router.get("/items/{item_id}/stages", response_model=ItemStagesResponse)
def get_item_stages(
    item_id: str,
    group_by: str = Query(default="category", pattern="^(category|stage_id)$"),
    service: StageTimeService = Depends(get_stage_time_service),
) -> ItemStagesResponse:
    """Stage intervals, current stage and per-group totals for one item."""
    now = datetime.now(UTC)
    try:
        intervals = service.intervals_for_item(item_id, now=now)
        stats = service.stats_for_item(item_id, now=now)
    except AdapterError as exc:
        raise _store_unavailable(exc)
    totals = summarize_intervals(intervals, key=group_by)
    current = stats.current_stage
    return ItemStagesResponse(
        item_id=item_id,
        intervals=[
            StageIntervalOut(
                stage_id=i.stage_id,
                category=i.category,
                start=i.start,
                end=i.end,
                is_open=i.is_open,
                duration_minutes=i.duration_minutes,
            )
            for i in intervals
        ],
        current_stage=(
            CurrentStageOut(
                stage_id=current.stage_id,
                category=current.category,
                entered_at=current.entered_at,
                elapsed_seconds=current.elapsed_seconds,
            )
            if current
            else None
        ),
        total_moves=stats.total_moves,
        first_move_at=stats.first_move_at,
        last_move_at=stats.last_move_at,
        totals={
            group: StageTotalOut(
                total_seconds=s.total_seconds,
                average_seconds=s.average_seconds,
                count=s.count,
            )
            for group, s in totals.items()
        },
    )


@router.get(
    "/items/{item_id}/technicians", response_model=List[TechnicianSummaryOut]
)
def get_item_technicians(
    item_id: str,
    estimated_minutes: float = Query(default=0.0, ge=0),
    tracker: WorkSessionTracker = Depends(get_work_session_tracker),
    stage_time: StageTimeService = Depends(get_stage_time_service),
) -> List[TechnicianSummaryOut]:
    try:
        rows = tracker.item_technician_summary(
            item_id, stage_time=stage_time, estimated_minutes_total=estimated_minutes
        )
    except AdapterError as exc:
        raise _store_unavailable(exc)
    return [
        TechnicianSummaryOut(
            technician_id=r.technician_id,
            work_minutes=r.work_minutes,
            estimated_minutes=r.estimated_minutes,
            waiting_minutes=r.waiting_minutes,
        )
        for r in rows
    ]


@router.post("/work-sessions/start", response_model=StartSessionResponse)
def start_work_session(
    payload: SessionActionRequest,
    tracker: WorkSessionTracker = Depends(get_work_session_tracker),
) -> StartSessionResponse:
    try:
        session_id = tracker.start(payload.item_id, payload.technician_id, payload.note)
    except AdapterError as exc:
        raise _store_unavailable(exc)
    return StartSessionResponse(session_id=session_id)


@router.post("/work-sessions/finish", response_model=FinishSessionResponse)
def finish_work_session(
    payload: SessionActionRequest,
    tracker: WorkSessionTracker = Depends(get_work_session_tracker),
) -> FinishSessionResponse:
    try:
        finished = tracker.finish(payload.item_id, payload.technician_id, payload.note)
    except AdapterError as exc:
        raise _store_unavailable(exc)
    return FinishSessionResponse(finished=finished)


@router.get("/work-sessions/elapsed", response_model=ElapsedResponse)
def get_elapsed_minutes(
    item_id: str = Query(..., min_length=1),
    technician_id: str = Query(..., min_length=1),
    tracker: WorkSessionTracker = Depends(get_work_session_tracker),
) -> ElapsedResponse:
    try:
        minutes = tracker.elapsed_minutes(item_id, technician_id)
        active = tracker.has_active_session(item_id, technician_id)
    except AdapterError as exc:
        raise _store_unavailable(exc)
    return ElapsedResponse(
        item_id=item_id, technician_id=technician_id, minutes=minutes, active=active
    )


@router.patch(
    "/work-sessions/{session_id}",
    response_model=WorkSessionOut,
    dependencies=[Depends(require_owner_dashboard_auth)],
)
def edit_work_session(
    session_id: str,
    payload: SessionPatchRequest,
    tracker: WorkSessionTracker = Depends(get_work_session_tracker),
) -> WorkSessionOut:
    """Correct a session's timestamps. An explicit ``finished_at: null`` reopens it."""
    changes: dict = {}
    if "started_at" in payload.model_fields_set and payload.started_at is not None:
        changes["started_at"] = _as_utc(payload.started_at)
    if "finished_at" in payload.model_fields_set:
        changes["finished_at"] = _as_utc(payload.finished_at)
    try:
        updated = tracker.edit(session_id, **changes)
    except SessionNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Work session not found"
        )
    except InvalidRange as exc:
        raise _invalid_range(exc)
    except OpenSessionConflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except AdapterError as exc:
        raise _store_unavailable(exc)
    return WorkSessionOut.from_model(updated)


@router.get("/reports/work-minutes", response_model=WorkMinutesResponse)
def get_work_minutes(
    item_id: List[str] = Query(...),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    period: str | None = Query(default=None),
    technician_id: str | None = Query(default=None),
    report: WorkMinutesReport = Depends(get_work_minutes_report),
) -> WorkMinutesResponse:
    """Work minutes for the given items over ``[start, end)`` or a named period."""
    if period is not None:
        if period not in PERIODS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"period must be one of {', '.join(PERIODS)}",
            )
        range_start, range_end = period_bounds(period, datetime.now(UTC), report.tz)
    elif start is not None and end is not None:
        range_start, range_end = _as_utc(start), _as_utc(end)
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide either period or both start and end",
        )
    try:
        result = report.aggregate_for_items(
            item_id, range_start, range_end, technician_id=technician_id
        )
    except InvalidRange as exc:
        raise _invalid_range(exc)
    except AdapterError as exc:
        raise _store_unavailable(exc)
    return WorkMinutesResponse(
        range_start=range_start,
        range_end=range_end,
        has_session_data=result.has_session_data,
        total_minutes=result.total_minutes,
        minutes_by_technician=result.minutes_by_technician,
        minutes_by_day=result.minutes_by_day,
        minutes_by_technician_and_item=result.minutes_by_technician_and_item,
    )


@router.post("/funnel/moves", response_model=FunnelMoveResponse)
def record_funnel_move(
    payload: FunnelMoveRequest,
    recorder: FunnelRecorder = Depends(get_funnel_recorder),
) -> FunnelMoveResponse:
    try:
        result = recorder.record_move(
            item_id=payload.item_id,
            pipeline_id=payload.pipeline_id,
            from_stage_id=payload.from_stage_id,
            to_stage_id=payload.to_stage_id,
            actor_id=payload.actor_id,
        )
    except AdapterError as exc:
        raise _store_unavailable(exc)
    return FunnelMoveResponse(
        recorded=result.recorded,
        reason=result.reason,
        record_id=result.record.id if result.record else None,
        error=result.error,
    )


@router.get("/funnel/counts", response_model=FunnelCountsResponse)
def get_funnel_counts(
    pipeline_id: str = Query(..., min_length=1),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    recorder: FunnelRecorder = Depends(get_funnel_recorder),
) -> FunnelCountsResponse:
    """Counts per funnel category for ``[start, end)``, or for day/week/month."""
    try:
        if start is not None and end is not None:
            counts = {
                "range": recorder.counts_by_category(
                    pipeline_id, _as_utc(start), _as_utc(end)
                )
            }
        else:
            counts = recorder.counts_for_periods(pipeline_id)
    except InvalidRange as exc:
        raise _invalid_range(exc)
    except AdapterError as exc:
        raise _store_unavailable(exc)
    return FunnelCountsResponse(pipeline_id=pipeline_id, counts=counts)
