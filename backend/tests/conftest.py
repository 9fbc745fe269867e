from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from repair_analytics import repositories
from repair_analytics.config import get_settings
from repair_analytics.metrics import metrics
from repair_analytics.services.lookup_cache import stage_lookup_cache


def _clear_in_memory_repositories() -> None:
    for repo in (
        repositories.stages_repo,
        repositories.work_items_repo,
        repositories.transitions_repo,
        repositories.work_sessions_repo,
        repositories.funnel_records_repo,
    ):
        clear = getattr(repo, "clear", None)
        if clear is not None:
            clear()


@pytest.fixture(autouse=True)
def _isolate_global_state():
    _clear_in_memory_repositories()
    stage_lookup_cache.invalidate_all()
    metrics.reset()
    yield
    _clear_in_memory_repositories()
    stage_lookup_cache.invalidate_all()
    metrics.reset()
    get_settings.cache_clear()


class FakeClock:
    """Manually advanced UTC clock for services that take ``clock=``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 6, 8, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
