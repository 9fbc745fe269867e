from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from .db import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


class StageDB(Base):
    __tablename__ = "stages"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    pipeline_id = Column(String, nullable=True, index=True)
    position = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)


class WorkItemDB(Base):
    __tablename__ = "work_items"

    id = Column(String, primary_key=True)
    number = Column(String, nullable=True, index=True)
    # Comma-separated technician ids assigned to the item.
    technician_ids = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow, index=True)


class StageTransitionDB(Base):
    __tablename__ = "stage_history"

    # Autoincrement id doubles as the tie-break sequence for equal timestamps.
    id = Column(Integer, primary_key=True, autoincrement=True)
    item_id = Column(String, nullable=False, index=True)
    pipeline_id = Column(String, nullable=True, index=True)
    from_stage_id = Column(String, nullable=True)
    to_stage_id = Column(String, nullable=True, index=True)
    technician_id = Column(String, nullable=True, index=True)
    occurred_at = Column(DateTime, nullable=False, default=_utcnow, index=True)


class WorkSessionDB(Base):
    __tablename__ = "technician_work_sessions"

    id = Column(String, primary_key=True, default=_new_id)
    item_id = Column(String, nullable=False, index=True)
    technician_id = Column(String, nullable=False, index=True)
    started_at = Column(DateTime, nullable=False, index=True)
    finished_at = Column(DateTime, nullable=True, index=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)


class FunnelRecordDB(Base):
    __tablename__ = "funnel_records"

    id = Column(String, primary_key=True, default=_new_id)
    item_id = Column(String, nullable=False, index=True)
    pipeline_id = Column(String, nullable=False, index=True)
    from_stage_id = Column(String, nullable=True)
    to_stage_id = Column(String, nullable=False, index=True)
    actor_id = Column(String, nullable=True, index=True)
    recorded_at = Column(DateTime, nullable=False, default=_utcnow, index=True)
