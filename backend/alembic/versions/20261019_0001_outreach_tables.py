"""Create conversation thread, message and processed-message ledger tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "outreach_threads",
        sa.Column("thread_id", sa.String(length=256), nullable=False),
        sa.Column("participant_address", sa.String(length=320), nullable=False),
        sa.Column("campaign_id", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("event_name", sa.String(length=256), nullable=True),
        sa.Column("event_date", sa.String(length=64), nullable=True),
        sa.Column("participant_name", sa.String(length=256), nullable=True),
        sa.Column("interests_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("thread_id"),
    )
    op.create_index("ix_outreach_threads_participant_address", "outreach_threads", ["participant_address"], unique=False)
    op.create_index("ix_outreach_threads_campaign_id", "outreach_threads", ["campaign_id"], unique=False)
    op.create_index("ix_outreach_threads_status", "outreach_threads", ["status"], unique=False)
    op.create_index("ix_outreach_threads_last_activity_at", "outreach_threads", ["last_activity_at"], unique=False)

    op.create_table(
        "outreach_messages",
        sa.Column("thread_id", sa.String(length=256), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("message_id", sa.String(length=256), nullable=False),
        sa.Column("sender_address", sa.String(length=320), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("campaign_id", sa.String(length=128), nullable=True),
        sa.Column("intent", sa.String(length=16), nullable=True),
        sa.ForeignKeyConstraint(["thread_id"], ["outreach_threads.thread_id"]),
        sa.PrimaryKeyConstraint("thread_id", "sequence"),
    )
    op.create_index("ix_outreach_messages_message_id", "outreach_messages", ["message_id"], unique=False)

    op.create_table(
        "outreach_processed_messages",
        sa.Column("message_id", sa.String(length=256), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("message_id"),
    )


def downgrade() -> None:
    op.drop_table("outreach_processed_messages")
    op.drop_index("ix_outreach_messages_message_id", table_name="outreach_messages")
    op.drop_table("outreach_messages")
    op.drop_index("ix_outreach_threads_last_activity_at", table_name="outreach_threads")
    op.drop_index("ix_outreach_threads_status", table_name="outreach_threads")
    op.drop_index("ix_outreach_threads_campaign_id", table_name="outreach_threads")
    op.drop_index("ix_outreach_threads_participant_address", table_name="outreach_threads")
    op.drop_table("outreach_threads")
