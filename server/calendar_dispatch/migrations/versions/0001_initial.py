from __future__ import annotations
"""server/calendar_dispatch/migrations/versions/0001_initial.py
~~~~~~~~~~~~~~~~~~~~~~~~
Schéma initial : events, notification_outbox, scheduler_state.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

OUTBOX_STATUSES = ("pending", "processing", "sent", "failed", "cancelled")

_TRIGGER_TABLES = ("events", "notification_outbox", "scheduler_state")


def _uuid():
    return sa.String(36).with_variant(postgresql.UUID(as_uuid=True), "postgresql")


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _tstz():
    return sa.DateTime().with_variant(sa.TIMESTAMP(timezone=True), "postgresql")


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("start_at", _tstz(), nullable=False),
        sa.Column("end_at", _tstz(), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("all_day", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("color", sa.String(32), nullable=True),
        sa.Column("created_at", _tstz(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", _tstz(), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("end_at >= start_at", name="ck_events_end_after_start"),
    )
    op.create_index("ix_events_start_at", "events", ["start_at"])

    op.create_table(
        "notification_outbox",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("event_id", _uuid(), nullable=False),
        sa.Column("scheduled_for", _tstz(), nullable=False),
        sa.Column("channel", sa.String(32), nullable=False, server_default="in_app"),
        sa.Column("payload", _json(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=False, server_default=""),
        sa.Column("sent_at", _tstz(), nullable=True),
        sa.Column("created_at", _tstz(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", _tstz(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "status IN (" + ", ".join(f"'{s}'" for s in OUTBOX_STATUSES) + ")",
            name="outbox_status",
        ),
        sa.CheckConstraint(
            "(status = 'sent' AND sent_at IS NOT NULL) OR (status <> 'sent' AND sent_at IS NULL)",
            name="ck_notification_outbox_sent_at",
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_notification_outbox_attempts"),
    )
    op.create_index(
        "ix_notification_outbox_status_scheduled_for",
        "notification_outbox",
        ["status", "scheduled_for"],
    )
    op.create_index("ix_notification_outbox_event_id", "notification_outbox", ["event_id"])

    op.create_table(
        "scheduler_state",
        sa.Column("key", sa.String(128), primary_key=True),
        sa.Column("value", _json(), nullable=False),
        sa.Column("updated_at", _tstz(), server_default=sa.func.now(), nullable=False),
    )

    if op.get_bind().dialect.name == "postgresql":
        # updated_at maintenu par la base aussi pour les écritures hors ORM.
        op.execute(
            """
            CREATE OR REPLACE FUNCTION set_updated_at() RETURNS trigger AS $$
            BEGIN
                NEW.updated_at := GREATEST(NOW(), NEW.updated_at);
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql;
            """
        )
        for table in _TRIGGER_TABLES:
            op.execute(
                f"CREATE TRIGGER trg_{table}_updated_at BEFORE UPDATE ON {table} "
                f"FOR EACH ROW EXECUTE FUNCTION set_updated_at();"
            )


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        for table in _TRIGGER_TABLES:
            op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_updated_at ON {table};")
        op.execute("DROP FUNCTION IF EXISTS set_updated_at();")
    op.drop_table("scheduler_state")
    op.drop_index("ix_notification_outbox_event_id", table_name="notification_outbox")
    op.drop_index("ix_notification_outbox_status_scheduled_for", table_name="notification_outbox")
    op.drop_table("notification_outbox")
    op.drop_index("ix_events_start_at", table_name="events")
    op.drop_table("events")
