"""Baseline schema for stages, stage history, work sessions and funnel records."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision = "0001_analytics_baseline"
down_revision = None
branch_labels = None
depends_on = None


def _table_names(inspector: sa.Inspector) -> set[str]:
    return set(inspector.get_table_names())


def _index_names(inspector: sa.Inspector, table_name: str) -> set[str]:
    try:
        return {idx["name"] for idx in inspector.get_indexes(table_name)}
    except sa.exc.NoSuchTableError:
        return set()


INDEX_SPECS: dict[str, list[tuple[str, list[str]]]] = {
    "stages": [("ix_stages_pipeline_id", ["pipeline_id"])],
    "work_items": [
        ("ix_work_items_number", ["number"]),
        ("ix_work_items_created_at", ["created_at"]),
    ],
    "stage_history": [
        ("ix_stage_history_item_id", ["item_id"]),
        ("ix_stage_history_pipeline_id", ["pipeline_id"]),
        ("ix_stage_history_to_stage_id", ["to_stage_id"]),
        ("ix_stage_history_technician_id", ["technician_id"]),
        ("ix_stage_history_occurred_at", ["occurred_at"]),
    ],
    "technician_work_sessions": [
        ("ix_technician_work_sessions_item_id", ["item_id"]),
        ("ix_technician_work_sessions_technician_id", ["technician_id"]),
        ("ix_technician_work_sessions_started_at", ["started_at"]),
        ("ix_technician_work_sessions_finished_at", ["finished_at"]),
    ],
    "funnel_records": [
        ("ix_funnel_records_item_id", ["item_id"]),
        ("ix_funnel_records_pipeline_id", ["pipeline_id"]),
        ("ix_funnel_records_to_stage_id", ["to_stage_id"]),
        ("ix_funnel_records_actor_id", ["actor_id"]),
        ("ix_funnel_records_recorded_at", ["recorded_at"]),
    ],
}


def upgrade() -> None:
    bind = op.get_bind()
    inspector = inspect(bind)
    tables = _table_names(inspector)

    if "stages" not in tables:
        op.create_table(
            "stages",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("pipeline_id", sa.String(), nullable=True),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.Column(
                "is_active", sa.Boolean(), nullable=False, server_default=sa.true()
            ),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )

    if "work_items" not in tables:
        op.create_table(
            "work_items",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("number", sa.String(), nullable=True),
            sa.Column("technician_ids", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )

    if "stage_history" not in tables:
        op.create_table(
            "stage_history",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("item_id", sa.String(), nullable=False),
            sa.Column("pipeline_id", sa.String(), nullable=True),
            sa.Column("from_stage_id", sa.String(), nullable=True),
            sa.Column("to_stage_id", sa.String(), nullable=True),
            sa.Column("technician_id", sa.String(), nullable=True),
            sa.Column("occurred_at", sa.DateTime(), nullable=False),
        )

    if "technician_work_sessions" not in tables:
        op.create_table(
            "technician_work_sessions",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("item_id", sa.String(), nullable=False),
            sa.Column("technician_id", sa.String(), nullable=False),
            sa.Column("started_at", sa.DateTime(), nullable=False),
            sa.Column("finished_at", sa.DateTime(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )

    if "funnel_records" not in tables:
        op.create_table(
            "funnel_records",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("item_id", sa.String(), nullable=False),
            sa.Column("pipeline_id", sa.String(), nullable=False),
            sa.Column("from_stage_id", sa.String(), nullable=True),
            sa.Column("to_stage_id", sa.String(), nullable=False),
            sa.Column("actor_id", sa.String(), nullable=True),
            sa.Column("recorded_at", sa.DateTime(), nullable=False),
        )

    inspector = inspect(bind)
    for table_name, specs in INDEX_SPECS.items():
        existing = _index_names(inspector, table_name)
        for index_name, columns in specs:
            if index_name not in existing:
                op.create_index(index_name, table_name, columns)


def downgrade() -> None:
    for table_name in reversed(list(INDEX_SPECS)):
        op.drop_table(table_name)
