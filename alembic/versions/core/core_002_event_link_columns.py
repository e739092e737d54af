"""event_link_columns

Revision ID: core_002
Revises: core_001
Create Date: 2026-10-01 00:00:00.000000

Adds the external event link to subtasks and the ``sync_version`` counter
guarding every write of ``google_calendar_event_id``.
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_002"
down_revision = "core_001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("ALTER TABLE tasks ADD COLUMN IF NOT EXISTS google_calendar_event_id TEXT")
    op.execute("ALTER TABLE subtasks ADD COLUMN IF NOT EXISTS google_calendar_event_id TEXT")
    op.execute(
        "ALTER TABLE tasks ADD COLUMN IF NOT EXISTS sync_version INTEGER NOT NULL DEFAULT 1"
    )
    op.execute(
        "ALTER TABLE subtasks ADD COLUMN IF NOT EXISTS sync_version INTEGER NOT NULL DEFAULT 1"
    )

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_tasks_google_calendar_event_id
        ON tasks (google_calendar_event_id)
        WHERE google_calendar_event_id IS NOT NULL
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_subtasks_google_calendar_event_id
        ON subtasks (google_calendar_event_id)
        WHERE google_calendar_event_id IS NOT NULL
    """)

    # Log entries may reference subtasks as well as tasks.
    op.execute(
        "ALTER TABLE calendar_sync_log DROP CONSTRAINT IF EXISTS calendar_sync_log_task_id_fkey"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_subtasks_google_calendar_event_id")
    op.execute("DROP INDEX IF EXISTS idx_tasks_google_calendar_event_id")
    op.execute("ALTER TABLE subtasks DROP COLUMN IF EXISTS sync_version")
    op.execute("ALTER TABLE tasks DROP COLUMN IF EXISTS sync_version")
    op.execute("ALTER TABLE subtasks DROP COLUMN IF EXISTS google_calendar_event_id")
