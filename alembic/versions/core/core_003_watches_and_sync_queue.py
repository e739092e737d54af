"""watches_and_sync_queue

Revision ID: core_003
Revises: core_002
Create Date: 2026-10-01 00:00:00.000000

Push-notification channels and the reconciliation work queue they feed.
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_003"
down_revision = "core_002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_watches (
            channel_id TEXT PRIMARY KEY,
            user_id UUID NOT NULL,
            resource_id TEXT,
            expiration TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_watches_user_id
        ON calendar_watches (user_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_queue (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL,
            action TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'processing', 'done', 'failed')),
            error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            processed_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_sync_queue_pending
        ON calendar_sync_queue (created_at)
        WHERE status = 'pending'
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_sync_queue")
    op.execute("DROP TABLE IF EXISTS calendar_watches")
