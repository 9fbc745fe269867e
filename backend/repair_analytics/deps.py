from __future__ import annotations

from fastapi import Header, HTTPException, status

from .config import get_settings
from .services.funnel import FunnelRecorder
from .services.range_aggregator import WorkMinutesReport
from .services.stage_classifier import StageCatalog
from .services.stage_intervals import StageTimeService
from .services.work_sessions import WorkSessionTracker


async def require_owner_dashboard_auth(
    x_owner_token: str | None = Header(default=None, alias="X-Owner-Token"),
) -> None:
    """Owner authentication for privileged session corrections.

    - If OWNER_DASHBOARD_TOKEN is not set, the routes remain open
      (development mode).
    - If set, callers must send a matching X-Owner-Token header or
      receive 401 Unauthorized.
    """
    expected = get_settings().owner_dashboard_token
    if not expected:
        return
    if x_owner_token != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid owner dashboard token",
        )


# Built per request; each binds the module-level repository singletons.


def get_stage_time_service() -> StageTimeService:
    return StageTimeService(catalog=StageCatalog())


def get_work_session_tracker() -> WorkSessionTracker:
    return WorkSessionTracker()


def get_work_minutes_report() -> WorkMinutesReport:
    return WorkMinutesReport()


def get_funnel_recorder() -> FunnelRecorder:
    return FunnelRecorder()
