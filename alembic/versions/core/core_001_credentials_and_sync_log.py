"""credentials_and_sync_log

Revision ID: core_001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    # Base task tables.  On a database that already carries the app schema
    # these are no-ops; identity lives in the hosted auth service, so user
    # columns are plain UUIDs here.
    op.execute("""
        CREATE TABLE IF NOT EXISTS projects (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name TEXT NOT NULL,
            description TEXT,
            owner_id UUID NOT NULL,
            created_at TIMESTAMPTZ DEFAULT now(),
            updated_at TIMESTAMPTZ
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS project_members (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            user_id UUID NOT NULL,
            role TEXT NOT NULL DEFAULT 'member'
                CHECK (role IN ('owner', 'admin', 'member')),
            created_at TIMESTAMPTZ DEFAULT now(),
            UNIQUE (project_id, user_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS tasks (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            title TEXT NOT NULL,
            description TEXT,
            status TEXT NOT NULL DEFAULT 'backlog'
                CHECK (status IN ('backlog', 'todo', 'in_progress', 'done', 'cancelled')),
            priority INTEGER NOT NULL DEFAULT 0 CHECK (priority >= 0 AND priority <= 4),
            project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            assignee_id UUID,
            creator_id UUID NOT NULL,
            due_date DATE,
            google_calendar_event_id TEXT,
            position INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ DEFAULT now(),
            updated_at TIMESTAMPTZ
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS subtasks (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            task_id UUID NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            description TEXT,
            status TEXT NOT NULL DEFAULT 'todo'
                CHECK (status IN ('todo', 'in_progress', 'done')),
            priority INTEGER NOT NULL DEFAULT 0 CHECK (priority >= 0 AND priority <= 4),
            assigned_to UUID,
            due_date DATE,
            due_time TIME,
            duration INTEGER,
            position INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ DEFAULT now(),
            updated_at TIMESTAMPTZ
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS google_oauth_tokens (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL UNIQUE,
            access_token TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            scope TEXT NOT NULL,
            token_type TEXT DEFAULT 'Bearer',
            created_at TIMESTAMPTZ DEFAULT now(),
            updated_at TIMESTAMPTZ
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_log (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL,
            task_id UUID,
            event_id TEXT,
            action TEXT NOT NULL CHECK (action IN ('create', 'update', 'delete', 'sync')),
            status TEXT NOT NULL CHECK (status IN ('success', 'failed', 'pending')),
            error_message TEXT,
            created_at TIMESTAMPTZ DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_sync_log_user_id
        ON calendar_sync_log (user_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_sync_log_task_id
        ON calendar_sync_log (task_id)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_sync_log")
    op.execute("DROP TABLE IF EXISTS google_oauth_tokens")
    op.execute("DROP TABLE IF EXISTS subtasks")
    op.execute("DROP TABLE IF EXISTS tasks")
    op.execute("DROP TABLE IF EXISTS project_members")
    op.execute("DROP TABLE IF EXISTS projects")
