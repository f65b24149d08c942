"""create chatdesk schema

Revision ID: a0c1d2e3f4b5
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "a0c1d2e3f4b5"
down_revision = None
branch_labels = None
depends_on = None

user_role = postgresql.ENUM("org_admin", "agent", "customer", name="userrole", create_type=False)
device_type = postgresql.ENUM("desktop", "mobile", "tablet", name="devicetype", create_type=False)
conversation_status = postgresql.ENUM(
    "waiting", "active", "closed", "ticket", name="conversationstatus", create_type=False
)
sender_type = postgresql.ENUM("agent", "customer", "system", name="sendertype", create_type=False)
message_type = postgresql.ENUM("text", "image", "audio", "file", "system", name="messagetype", create_type=False)
message_status = postgresql.ENUM("sent", "delivered", "read", name="messagestatus", create_type=False)

_ENUMS = (user_role, device_type, conversation_status, sender_type, message_type, message_status)


def _uuid_pk() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _fk(name: str, target: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), sa.ForeignKey(target), nullable=nullable)


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "organizations",
        _uuid_pk(),
        sa.Column("name", sa.String(160), nullable=False),
        _timestamp("created_at"),
    )

    op.create_table(
        "users",
        _uuid_pk(),
        _fk("organization_id", "organizations.id", nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(160), nullable=True),
        sa.Column("avatar_url", sa.String(500), nullable=True),
        sa.Column("role", user_role, server_default="agent", nullable=False),
        _timestamp("created_at"),
    )

    op.create_table(
        "departments",
        _uuid_pk(),
        _fk("organization_id", "organizations.id", nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("pre_chat_form", postgresql.JSON(), nullable=True),
        _timestamp("created_at"),
    )

    op.create_table(
        "widget_settings",
        _uuid_pk(),
        _fk("organization_id", "organizations.id", nullable=False),
        sa.Column("widget_key", sa.String(64), nullable=False),
        sa.Column("enabled", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("allowed_domains", postgresql.JSON(), nullable=True),
        sa.Column("primary_color", sa.String(20), server_default="#3B82F6", nullable=False),
        sa.Column("position", sa.String(20), server_default="bottom-right", nullable=False),
        sa.Column("widget_title", sa.String(80), server_default="Chat with us", nullable=False),
        sa.Column("greeting_message", sa.Text(), nullable=True),
        sa.Column("auto_open", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("auto_open_delay", sa.Integer(), server_default="5", nullable=False),
        sa.Column("show_agent_avatars", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("show_typing_indicator", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("play_notification_sound", sa.Boolean(), server_default="true", nullable=False),
        _fk("default_department_id", "departments.id"),
        sa.Column("rate_limit_sessions_per_ip", sa.Integer(), server_default="20", nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_widget_settings_widget_key", "widget_settings", ["widget_key"], unique=True)

    op.create_table(
        "widget_customers",
        _uuid_pk(),
        _fk("organization_id", "organizations.id", nullable=False),
        sa.Column("visitor_id", sa.String(160), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("full_name", sa.String(160), nullable=True),
        sa.Column("phone", sa.String(40), nullable=True),
        sa.Column("metadata", postgresql.JSON(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("organization_id", "visitor_id", name="uq_widget_customers_org_visitor"),
    )

    op.create_table(
        "conversations",
        _uuid_pk(),
        _fk("organization_id", "organizations.id", nullable=False),
        _fk("department_id", "departments.id", nullable=False),
        _fk("customer_id", "users.id"),
        _fk("widget_customer_id", "widget_customers.id"),
        _fk("agent_id", "users.id"),
        sa.Column("status", conversation_status, server_default="waiting", nullable=False),
        sa.Column("pre_chat_data", postgresql.JSON(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("assigned_at", nullable=True),
        _timestamp("closed_at", nullable=True),
    )
    op.create_index(
        "ix_conversations_org_status_updated",
        "conversations",
        ["organization_id", "status", "updated_at"],
    )

    op.create_table(
        "widget_sessions",
        _uuid_pk(),
        _fk("organization_id", "organizations.id", nullable=False),
        sa.Column("widget_key", sa.String(64), nullable=False),
        sa.Column("session_token", sa.String(96), nullable=False),
        sa.Column("visitor_id", sa.String(160), nullable=True),
        _fk("conversation_id", "conversations.id"),
        sa.Column("device_type", device_type, server_default="desktop", nullable=False),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("referrer", sa.String(2048), nullable=True),
        sa.Column("current_url", sa.String(2048), nullable=True),
        sa.Column("user_data", postgresql.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        _timestamp("last_seen_at"),
        _timestamp("created_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_widget_sessions_session_token", "widget_sessions", ["session_token"], unique=True)
    op.create_index(
        "ix_widget_sessions_visitor_widget",
        "widget_sessions",
        ["visitor_id", "widget_key", "created_at"],
    )
    # At most one active session per visitor and widget.
    op.create_index(
        "uq_widget_sessions_active_visitor",
        "widget_sessions",
        ["visitor_id", "widget_key"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "messages",
        _uuid_pk(),
        _fk("conversation_id", "conversations.id", nullable=False),
        _fk("sender_id", "users.id"),
        _fk("widget_sender_id", "widget_customers.id"),
        sa.Column("sender_type", sender_type, nullable=False),
        sa.Column("content", sa.Text(), server_default="", nullable=False),
        sa.Column("message_type", message_type, server_default="text", nullable=False),
        sa.Column("media_url", sa.String(1024), nullable=True),
        sa.Column("media_type", sa.String(120), nullable=True),
        sa.Column("media_size", sa.Integer(), nullable=True),
        sa.Column("media_name", sa.String(255), nullable=True),
        sa.Column("status", message_status, server_default="sent", nullable=False),
        sa.Column("client_message_id", sa.String(64), nullable=True),
        _timestamp("created_at"),
        sa.CheckConstraint(
            "(sender_id IS NULL) <> (widget_sender_id IS NULL)",
            name="ck_messages_single_sender",
        ),
    )
    op.create_index("ix_messages_conversation_created", "messages", ["conversation_id", "created_at"])
    op.create_index(
        "uq_messages_client_message_id",
        "messages",
        ["conversation_id", "client_message_id"],
        unique=True,
        postgresql_where=sa.text("client_message_id IS NOT NULL"),
    )

    op.create_table(
        "typing_indicators",
        _uuid_pk(),
        _fk("conversation_id", "conversations.id", nullable=False),
        _fk("user_id", "users.id"),
        _fk("widget_customer_id", "widget_customers.id"),
        sa.Column("actor_key", sa.String(80), nullable=False),
        sa.Column("is_typing", sa.Boolean(), server_default="false", nullable=False),
        _timestamp("updated_at"),
        sa.UniqueConstraint("conversation_id", "actor_key", name="uq_typing_indicators_conversation_actor"),
        sa.CheckConstraint(
            "(user_id IS NULL) <> (widget_customer_id IS NULL)",
            name="ck_typing_indicators_single_actor",
        ),
    )


def downgrade() -> None:
    op.drop_table("typing_indicators")
    op.drop_index("uq_messages_client_message_id", table_name="messages")
    op.drop_index("ix_messages_conversation_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("uq_widget_sessions_active_visitor", table_name="widget_sessions")
    op.drop_index("ix_widget_sessions_visitor_widget", table_name="widget_sessions")
    op.drop_index("ix_widget_sessions_session_token", table_name="widget_sessions")
    op.drop_table("widget_sessions")
    op.drop_index("ix_conversations_org_status_updated", table_name="conversations")
    op.drop_table("conversations")
    op.drop_table("widget_customers")
    op.drop_index("ix_widget_settings_widget_key", table_name="widget_settings")
    op.drop_table("widget_settings")
    op.drop_table("departments")
    op.drop_table("users")
    op.drop_table("organizations")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
