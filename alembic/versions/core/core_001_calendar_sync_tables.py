"""create_calendar_sync_tables

Revision ID: core_001
Revises:
Create Date: 2026-01-05 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_connections (
            user_id TEXT PRIMARY KEY,
            google_user_id TEXT,
            account_email TEXT,
            access_token_encrypted TEXT NOT NULL,
            refresh_token_encrypted TEXT,
            token_expiry TIMESTAMPTZ NOT NULL,
            selected_calendar_id TEXT,
            selected_calendar_name TEXT,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_state (
            user_id TEXT PRIMARY KEY,
            calendar_id TEXT,
            sync_token TEXT,
            sync_status TEXT NOT NULL DEFAULT 'active',
            last_error TEXT,
            last_full_sync_at TIMESTAMPTZ,
            last_incremental_sync_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calendar_sync_state_status_check
                CHECK (sync_status IN ('active', 'error'))
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_event_mappings (
            id BIGSERIAL PRIMARY KEY,
            user_id TEXT NOT NULL,
            block_id TEXT NOT NULL,
            google_event_id TEXT NOT NULL,
            google_etag TEXT,
            sync_direction TEXT NOT NULL,
            last_synced_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calendar_event_mappings_block_unique UNIQUE (user_id, block_id),
            CONSTRAINT calendar_event_mappings_event_unique UNIQUE (user_id, google_event_id),
            CONSTRAINT calendar_event_mappings_direction_check
                CHECK (sync_direction IN ('app_to_google', 'google_to_app'))
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_event_mappings")
    op.execute("DROP TABLE IF EXISTS calendar_sync_state")
    op.execute("DROP TABLE IF EXISTS calendar_connections")
