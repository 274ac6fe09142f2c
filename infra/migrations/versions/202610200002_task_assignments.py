"""task assignment rows and event entity columns

Revision ID: 202610200002
Revises: 202610190001
Create Date: 2026-10-20
"""

from __future__ import annotations

import json
import uuid

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610200002"
down_revision = "202610190001"
branch_labels = None
depends_on = None


def _canonical_ids(raw: object) -> list[str]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    if not isinstance(raw, list):
        return []
    result: list[str] = []
    for item in raw:
        try:
            value = str(uuid.UUID(str(item).strip()))
        except ValueError:
            continue
        if value not in result:
            result.append(value)
    return result


def upgrade() -> None:
    assignments = op.create_table(
        "task_assignments",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id", "kind", "subject_id"),
    )
    op.create_index("ix_task_assignments_kind_subject", "task_assignments", ["kind", "subject_id"])
    op.create_index("ix_task_assignments_org_id", "task_assignments", ["org_id"])

    bind = op.get_bind()
    rows = []
    tasks = bind.execute(
        sa.text("SELECT id, org_id, assigned_user_ids, assigned_group_ids FROM tasks")
    ).mappings()
    for task in tasks:
        for kind, column in (("user", "assigned_user_ids"), ("group", "assigned_group_ids")):
            for subject_id in _canonical_ids(task[column]):
                rows.append(
                    {"task_id": task["id"], "kind": kind, "subject_id": subject_id, "org_id": task["org_id"]}
                )
    if rows:
        op.bulk_insert(assignments, rows)

    op.add_column("events", sa.Column("entity_type", sa.String(), nullable=True))
    op.add_column("events", sa.Column("entity_id", sa.String(), nullable=True))
    op.create_index("ix_events_entity_id", "events", ["entity_id"])


def downgrade() -> None:
    op.drop_index("ix_events_entity_id", table_name="events")
    with op.batch_alter_table("events") as batch:
        batch.drop_column("entity_id")
        batch.drop_column("entity_type")
    op.drop_index("ix_task_assignments_org_id", table_name="task_assignments")
    op.drop_index("ix_task_assignments_kind_subject", table_name="task_assignments")
    op.drop_table("task_assignments")
