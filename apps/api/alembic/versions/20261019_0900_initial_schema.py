"""Initial schema (workspace policy, channels, messages, drafts, auto-send queue, audit)

Revision ID: 20261019_0900
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op

revision = "20261019_0900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    op.execute(
        """
CREATE TABLE IF NOT EXISTS workspace_settings (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL UNIQUE,

  auto_send_enabled boolean NOT NULL DEFAULT false,
  auto_send_paused boolean NOT NULL DEFAULT false,
  auto_send_delay_type varchar(16) NOT NULL DEFAULT 'random'
    CHECK (auto_send_delay_type IN ('exact','random')),
  auto_send_delay_min integer NOT NULL DEFAULT 10 CHECK (auto_send_delay_min >= 0),
  auto_send_delay_max integer NOT NULL DEFAULT 30 CHECK (auto_send_delay_max >= 0),
  auto_send_confidence_threshold double precision NOT NULL DEFAULT 0.85
    CHECK (auto_send_confidence_threshold >= 0 AND auto_send_confidence_threshold <= 1),
  auto_send_time_start text NOT NULL DEFAULT '09:00',
  auto_send_time_end text NOT NULL DEFAULT '21:00',
  timezone text NOT NULL DEFAULT 'UTC',

  excluded_categories jsonb,
  excluded_sender_patterns jsonb,
  domain_allowlist jsonb,
  domain_blocklist jsonb,
  max_replies_per_thread integer NOT NULL DEFAULT 1,
  sender_cooldown_minutes integer NOT NULL DEFAULT 60,

  inbox_zero_enabled boolean NOT NULL DEFAULT true,
  auto_archive_handled boolean NOT NULL DEFAULT true,
  apply_handled_label boolean NOT NULL DEFAULT true,

  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS channel_connections (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL,
  provider varchar(16) NOT NULL CHECK (provider IN ('gmail','outlook')),
  account_email text NOT NULL,

  encrypted_access_token bytea,
  encrypted_refresh_token bytea,
  token_expires_at timestamptz,

  is_enabled boolean NOT NULL DEFAULT true,
  needs_reconnect boolean NOT NULL DEFAULT false,
  last_error text,

  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_channel_connections_workspace_id ON channel_connections (workspace_id);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS messages (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL,
  channel_connection_id uuid REFERENCES channel_connections(id) ON DELETE SET NULL,

  provider_message_id text,
  provider_thread_id text,
  rfc_message_id text,
  references_header text,

  subject text,
  sender_email text NOT NULL,
  sender_name text,
  timestamp timestamptz NOT NULL DEFAULT now(),

  priority varchar(16) CHECK (priority IN ('urgent','high','medium','low')),
  category text,
  classification_confidence double precision,

  requires_human_review boolean NOT NULL DEFAULT false,
  review_reason text,
  review_context jsonb,
  reviewed_at timestamptz,
  reviewed_by uuid,

  handled_by_assistant boolean NOT NULL DEFAULT false,
  handled_at timestamptz,
  handle_action varchar(32)
    CHECK (handle_action IN ('auto_replied','classified_no_action','manually_dismissed','manually_handled')),
  archived_in_provider boolean NOT NULL DEFAULT false,

  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now(),

  CONSTRAINT messages_handled_fields_ck
    CHECK (NOT handled_by_assistant OR (handled_at IS NOT NULL AND handle_action IS NOT NULL))
);
"""
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_messages_workspace_id ON messages (workspace_id);")
    op.execute(
        "CREATE INDEX IF NOT EXISTS messages_review_idx ON messages (workspace_id, requires_human_review, reviewed_at);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS messages_thread_idx ON messages (workspace_id, provider_thread_id);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS message_drafts (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL,
  message_id uuid NOT NULL REFERENCES messages(id) ON DELETE CASCADE,

  body text NOT NULL,
  confidence_score double precision NOT NULL DEFAULT 0,
  hold_for_review boolean NOT NULL DEFAULT false,
  review_reason text,
  uncertainty_notes text,
  scheduling_context jsonb,

  original_body text,
  edited_at timestamptz,
  edited_by uuid,
  edit_count integer NOT NULL DEFAULT 0,

  auto_sent boolean NOT NULL DEFAULT false,
  auto_sent_at timestamptz,

  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now(),

  CONSTRAINT message_drafts_hold_reason_ck
    CHECK (NOT hold_for_review OR (review_reason IS NOT NULL AND review_reason <> ''))
);
"""
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_message_drafts_message_id ON message_drafts (message_id);")
    op.execute(
        "CREATE INDEX IF NOT EXISTS message_drafts_hold_idx ON message_drafts (workspace_id, hold_for_review);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS auto_send_queue (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL,
  message_id uuid NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
  draft_id uuid NOT NULL REFERENCES message_drafts(id) ON DELETE CASCADE,
  connection_id uuid NOT NULL REFERENCES channel_connections(id) ON DELETE CASCADE,

  source varchar(16) NOT NULL DEFAULT 'gate' CHECK (source IN ('gate','review')),
  status varchar(16) NOT NULL DEFAULT 'pending'
    CHECK (status IN ('pending','processing','sent','failed','cancelled')),
  scheduled_send_at timestamptz NOT NULL,
  confidence_score double precision,
  delay_minutes integer,

  attempts integer NOT NULL DEFAULT 0,
  max_attempts integer NOT NULL DEFAULT 3,
  last_attempt_at timestamptz,
  locked_at timestamptz,
  locked_by text,
  error_message text,

  sent_at timestamptz,
  sent_message_id text,

  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_auto_send_queue_workspace_id ON auto_send_queue (workspace_id);")
    op.execute(
        "CREATE INDEX IF NOT EXISTS auto_send_queue_due_idx ON auto_send_queue (status, scheduled_send_at);"
    )
    # At most one non-terminal item per message.
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS auto_send_queue_active_message_uq
  ON auto_send_queue (message_id)
  WHERE status IN ('pending', 'processing');
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS audit_events (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL,
  actor_user_id uuid,
  message_id uuid,
  event_type text NOT NULL,
  event_data jsonb NOT NULL DEFAULT '{}'::jsonb,
  created_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS audit_events_workspace_created_idx ON audit_events (workspace_id, created_at DESC);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS audit_events_message_idx ON audit_events (message_id, created_at DESC);"
    )

    # Audit rows are append-only.
    op.execute(
        """
CREATE OR REPLACE FUNCTION audit_events_append_only() RETURNS trigger AS $$
BEGIN
  RAISE EXCEPTION 'audit_events is append-only';
END;
$$ LANGUAGE plpgsql;
"""
    )
    op.execute(
        """
DO $$
BEGIN
  IF NOT EXISTS (
    SELECT 1 FROM pg_trigger WHERE tgname = 'audit_events_no_update'
  ) THEN
    CREATE TRIGGER audit_events_no_update
    BEFORE UPDATE OR DELETE ON audit_events
    FOR EACH ROW
    EXECUTE FUNCTION audit_events_append_only();
  END IF;
END $$;
"""
    )

    # Keep updated_at consistent even for conditional UPDATEs issued by the worker.
    op.execute(
        """
CREATE OR REPLACE FUNCTION set_updated_at() RETURNS trigger AS $$
BEGIN
  NEW.updated_at = now();
  RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""
    )

    for table in (
        "workspace_settings",
        "channel_connections",
        "messages",
        "message_drafts",
        "auto_send_queue",
    ):
        op.execute(
            f"""
DO $$
BEGIN
  IF NOT EXISTS (
    SELECT 1 FROM pg_trigger WHERE tgname = 'set_updated_at_{table}'
  ) THEN
    CREATE TRIGGER set_updated_at_{table}
    BEFORE UPDATE ON {table}
    FOR EACH ROW
    EXECUTE FUNCTION set_updated_at();
  END IF;
END $$;
"""
        )


def downgrade() -> None:
    # No downgrade support (early-stage schema; breaking changes allowed).
    pass
