"""001_initial_schema

Revision ID: 001
Revises:
Create Date: 2026-09-28 09:00:00.000000

Creates the spare request schema:
- Members and leagues: members, leagues, member_availability, settings
- Spare requests: spare_requests, spare_request_invitations, spare_responses
- Notifications: spare_request_notification_queue (current generation only)
  and spare_request_notification_deliveries (append-only ledger whose unique
  key prevents duplicate sends)
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


spare_request_status = sa.Enum("open", "filled", "cancelled", name="sparerequeststatus")
spare_request_type = sa.Enum("public", "private", name="sparerequesttype")
spare_position = sa.Enum("unspecified", "lead", "second", "vice", "skip", name="spareposition")
notification_status = sa.Enum(
    "none", "in_progress", "completed", "paused", "stopped", name="notificationstatus"
)
delivery_channel = sa.Enum("email", "sms", name="deliverychannel")


def _table_exists(conn, table_name: str) -> bool:
    """Check if a table exists."""
    return sa.inspect(conn).has_table(table_name)


def upgrade() -> None:
    """Create all tables."""
    conn = op.get_bind()

    if not _table_exists(conn, "members"):
        op.create_table(
            "members",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("phone", sa.String(), nullable=True),
            sa.Column("email_subscribed", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("opted_in_sms", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("spare_only", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_members_email", "members", ["email"])

    if not _table_exists(conn, "leagues"):
        op.create_table(
            "leagues",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(conn, "member_availability"):
        op.create_table(
            "member_availability",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("member_id", sa.Integer(), nullable=False),
            sa.Column("league_id", sa.Integer(), nullable=False),
            sa.Column("available", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("can_skip", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["league_id"], ["leagues.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("member_id", "league_id", name="uq_member_availability_member_league"),
        )
        op.create_index("idx_member_availability_league", "member_availability", ["league_id"])

    if not _table_exists(conn, "settings"):
        op.create_table(
            "settings",
            sa.Column("key", sa.String(), nullable=False),
            sa.Column("value", sa.Text(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("key"),
        )

    if not _table_exists(conn, "spare_requests"):
        op.create_table(
            "spare_requests",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("requester_id", sa.Integer(), nullable=False),
            sa.Column("league_id", sa.Integer(), nullable=False),
            sa.Column("game_date", sa.Date(), nullable=False),
            sa.Column("game_time", sa.Time(), nullable=False),
            sa.Column("position", spare_position, nullable=False, server_default="unspecified"),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("request_type", spare_request_type, nullable=False),
            sa.Column("status", spare_request_status, nullable=False, server_default="open"),
            sa.Column("filled_by_member_id", sa.Integer(), nullable=True),
            sa.Column("filled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancelled_by_member_id", sa.Integer(), nullable=True),
            sa.Column("had_cancellation", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("fill_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("notification_generation", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("notification_status", notification_status, nullable=False, server_default="none"),
            sa.Column("next_notification_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("notification_paused", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("notifications_sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["requester_id"], ["members.id"]),
            sa.ForeignKeyConstraint(["league_id"], ["leagues.id"]),
            sa.ForeignKeyConstraint(["filled_by_member_id"], ["members.id"]),
            sa.ForeignKeyConstraint(["cancelled_by_member_id"], ["members.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_spare_requests_requester_id", "spare_requests", ["requester_id"])
        op.create_index("idx_spare_requests_league_id", "spare_requests", ["league_id"])
        op.create_index("idx_spare_requests_status", "spare_requests", ["status"])
        op.create_index(
            "idx_spare_requests_dispatch",
            "spare_requests",
            ["status", "notification_status", "notification_paused", "next_notification_at"],
        )

    if not _table_exists(conn, "spare_request_invitations"):
        op.create_table(
            "spare_request_invitations",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("spare_request_id", sa.Integer(), nullable=False),
            sa.Column("member_id", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["spare_request_id"], ["spare_requests.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["member_id"], ["members.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "spare_request_id", "member_id", name="uq_spare_request_invitations_request_member"
            ),
        )
        op.create_index(
            "idx_spare_request_invitations_request_id", "spare_request_invitations", ["spare_request_id"]
        )

    if not _table_exists(conn, "spare_responses"):
        op.create_table(
            "spare_responses",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("spare_request_id", sa.Integer(), nullable=False),
            sa.Column("member_id", sa.Integer(), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["spare_request_id"], ["spare_requests.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["member_id"], ["members.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("spare_request_id", "member_id", name="uq_spare_responses_request_member"),
        )

    if not _table_exists(conn, "spare_request_notification_queue"):
        op.create_table(
            "spare_request_notification_queue",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("spare_request_id", sa.Integer(), nullable=False),
            sa.Column("member_id", sa.Integer(), nullable=False),
            sa.Column("notification_generation", sa.Integer(), nullable=False),
            sa.Column("queue_order", sa.Integer(), nullable=False),
            sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["spare_request_id"], ["spare_requests.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["member_id"], ["members.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("spare_request_id", "member_id", name="uq_notification_queue_request_member"),
            sa.UniqueConstraint("spare_request_id", "queue_order", name="uq_notification_queue_request_order"),
        )
        op.create_index(
            "idx_notification_queue_order",
            "spare_request_notification_queue",
            ["spare_request_id", "queue_order"],
        )
        op.create_index(
            "idx_notification_queue_claimed",
            "spare_request_notification_queue",
            ["spare_request_id", "claimed_at"],
        )

    if not _table_exists(conn, "spare_request_notification_deliveries"):
        op.create_table(
            "spare_request_notification_deliveries",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("spare_request_id", sa.Integer(), nullable=False),
            sa.Column("member_id", sa.Integer(), nullable=False),
            sa.Column("notification_generation", sa.Integer(), nullable=False),
            sa.Column("channel", delivery_channel, nullable=False),
            sa.Column("kind", sa.String(length=64), nullable=False),
            sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["spare_request_id"], ["spare_requests.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["member_id"], ["members.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "spare_request_id",
                "member_id",
                "notification_generation",
                "channel",
                "kind",
                name="uq_notification_deliveries_key",
            ),
        )
        op.create_index(
            "idx_notification_deliveries_request",
            "spare_request_notification_deliveries",
            ["spare_request_id"],
        )
        op.create_index(
            "idx_notification_deliveries_member",
            "spare_request_notification_deliveries",
            ["member_id"],
        )
        op.create_index(
            "idx_notification_deliveries_sent",
            "spare_request_notification_deliveries",
            ["spare_request_id", "sent_at"],
        )


def downgrade() -> None:
    """Drop all tables and enum types."""
    for table_name in (
        "spare_request_notification_deliveries",
        "spare_request_notification_queue",
        "spare_responses",
        "spare_request_invitations",
        "spare_requests",
        "settings",
        "member_availability",
        "leagues",
        "members",
    ):
        op.drop_table(table_name)

    bind = op.get_bind()
    for enum_type in (
        delivery_channel,
        notification_status,
        spare_position,
        spare_request_type,
        spare_request_status,
    ):
        enum_type.drop(bind, checkfirst=True)
