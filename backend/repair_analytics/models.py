from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StageCategory(str, Enum):
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    DONE = "done"
    OTHER = "other"


class FunnelCategory(str, Enum):
    INTAKE = "intake"
    ORDER = "order"
    NO_DEAL = "no_deal"
    CALLBACK = "callback"
    NO_ANSWER = "no_answer"
    DELIVERY = "delivery"
    OTHER = "other"


@dataclass
class Stage:
    id: str
    name: str
    pipeline_id: Optional[str] = None
    position: int = 0
    is_active: bool = True


@dataclass
class WorkItem:
    id: str
    number: Optional[str] = None
    technician_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class StageTransitionEvent:
    item_id: str
    to_stage_id: Optional[str]
    occurred_at: datetime
    from_stage_id: Optional[str] = None
    technician_id: Optional[str] = None
    pipeline_id: Optional[str] = None
    sequence: int = 0


@dataclass(frozen=True)
class StageInterval:
    item_id: str
    stage_id: str
    category: str
    start: datetime
    end: datetime
    is_open: bool = False
    technician_id: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.end - self.start).total_seconds())

    @property
    def duration_minutes(self) -> float:
        return self.duration_seconds / 60.0


@dataclass
class WorkSession:
    id: str
    item_id: str
    technician_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_open(self) -> bool:
        return self.finished_at is None


@dataclass
class RangeAggregate:
    minutes_by_technician: Dict[str, float] = field(default_factory=dict)
    minutes_by_day: Dict[str, float] = field(default_factory=dict)
    minutes_by_technician_and_item: Dict[str, Dict[str, float]] = field(
        default_factory=dict
    )

    @property
    def has_session_data(self) -> bool:
        return bool(self.minutes_by_technician)

    @property
    def total_minutes(self) -> float:
        return sum(self.minutes_by_technician.values())


@dataclass
class FunnelMoveRecord:
    id: str
    item_id: str
    pipeline_id: str
    to_stage_id: str
    from_stage_id: Optional[str] = None
    actor_id: Optional[str] = None
    recorded_at: datetime = field(default_factory=_utcnow)


def new_session_id() -> str:
    return str(uuid4())


def new_funnel_record_id() -> str:
    return str(uuid4())


def new_stage_id() -> str:
    return str(uuid4())
