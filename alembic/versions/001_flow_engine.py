"""Flow engine schema

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_LIVE_WHERE = sa.text("status IN ('ACTIVE', 'PAUSED')")


def upgrade() -> None:
    op.create_table(
        "bots",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("default_fallback_message", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "flows",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("bot_id", sa.Integer(), sa.ForeignKey("bots.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("is_main_flow", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "flow_versions",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("flow_id", sa.Integer(), sa.ForeignKey("flows.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("version_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("flow_data", postgresql.JSONB(), nullable=False),
        sa.Column("is_draft", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_production", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deployed_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_flow_versions_flow_production", "flow_versions", ["flow_id", "is_production"])
    op.create_table(
        "ai_providers",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("base_url", sa.String(512)),
        sa.Column("api_key_encrypted", sa.Text()),
        sa.Column("default_model", sa.String(128), server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "flow_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("bot_id", sa.Integer(), sa.ForeignKey("bots.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("flow_version_id", sa.Integer(), sa.ForeignKey("flow_versions.id"), nullable=True),
        sa.Column("user_address", sa.String(64), nullable=False),
        sa.Column("current_node_id", sa.String(128)),
        sa.Column("status", sa.String(16), nullable=False, server_default="ACTIVE"),
        sa.Column("waiting", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("subflow_call_stack", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("node_state", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("resume_at", sa.DateTime()),
        sa.Column("closed_at", sa.DateTime()),
        sa.Column("is_test", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        "uq_flow_sessions_live_user",
        "flow_sessions",
        ["bot_id", "user_address"],
        unique=True,
        postgresql_where=_LIVE_WHERE,
    )
    op.create_index("ix_flow_sessions_status_resume", "flow_sessions", ["status", "resume_at"])
    op.create_table(
        "bot_variables",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("bot_id", sa.Integer(), sa.ForeignKey("bots.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("variable_name", sa.String(128), nullable=False),
        sa.Column("variable_value", postgresql.JSONB(), nullable=True),
        sa.Column("variable_type", sa.String(16), nullable=False, server_default="STRING"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("bot_id", "variable_name", name="uq_bot_variables_name"),
    )
    op.create_table(
        "session_variables",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column(
            "session_id", sa.Integer(), sa.ForeignKey("flow_sessions.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("variable_name", sa.String(128), nullable=False),
        sa.Column("variable_value", postgresql.JSONB(), nullable=True),
        sa.Column("variable_type", sa.String(16), nullable=False, server_default="STRING"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("session_id", "variable_name", name="uq_session_variables_name"),
    )
    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("flow_sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sender", sa.String(8), nullable=False),
        sa.Column("message_type", sa.String(16), nullable=False, server_default="TEXT"),
        sa.Column("content", sa.Text()),
        sa.Column("node_id", sa.String(128)),
        sa.Column("delivery_status", sa.String(16)),
        sa.Column("sent_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_messages_session_sent", "messages", ["session_id", "sent_at"])
    op.create_table(
        "execution_logs",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("flow_sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("node_id", sa.String(128), nullable=False),
        sa.Column("node_type", sa.String(32), nullable=False),
        sa.Column("duration_ms", sa.Integer()),
        sa.Column("input_json", postgresql.JSONB(), nullable=True),
        sa.Column("output_json", postgresql.JSONB(), nullable=True),
        sa.Column("next_node_id", sa.String(128)),
        sa.Column("error", sa.Text()),
        sa.Column("executed_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_execution_logs_session_executed", "execution_logs", ["session_id", "executed_at"])
    op.create_table(
        "ai_api_logs",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("bot_id", sa.Integer(), sa.ForeignKey("bots.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column(
            "session_id", sa.Integer(), sa.ForeignKey("flow_sessions.id", ondelete="SET NULL"), nullable=True, index=True
        ),
        sa.Column("node_id", sa.String(128), nullable=False),
        sa.Column("node_label", sa.String(256)),
        sa.Column("ai_provider_id", sa.Integer(), sa.ForeignKey("ai_providers.id", ondelete="SET NULL"), nullable=True),
        sa.Column("provider", sa.String(32)),
        sa.Column("model_name", sa.String(128)),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("prompt_tokens", sa.Integer(), server_default="0"),
        sa.Column("completion_tokens", sa.Integer(), server_default="0"),
        sa.Column("total_tokens", sa.Integer(), server_default="0"),
        sa.Column("error_message", sa.Text()),
        sa.Column("error_code", sa.String(32)),
        sa.Column("response_time_ms", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "whatsapp_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("bot_id", sa.Integer(), sa.ForeignKey("bots.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("phone_number_id", sa.String(64), nullable=False, unique=True, index=True),
        sa.Column("phone_number", sa.String(32)),
        sa.Column("access_token_encrypted", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "outbox",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("bot_id", sa.Integer(), sa.ForeignKey("bots.id"), nullable=False, index=True),
        sa.Column("message_id", sa.Integer(), sa.ForeignKey("messages.id"), index=True),
        sa.Column("status", sa.String(32), server_default="created"),
        sa.Column("retry_count", sa.Integer(), server_default="0"),
        sa.Column("payload_json", sa.Text()),
        sa.Column("error_message", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime()),
    )


def downgrade() -> None:
    op.drop_table("outbox")
    op.drop_table("whatsapp_accounts")
    op.drop_table("ai_api_logs")
    op.drop_index("ix_execution_logs_session_executed", table_name="execution_logs")
    op.drop_table("execution_logs")
    op.drop_index("ix_messages_session_sent", table_name="messages")
    op.drop_table("messages")
    op.drop_table("session_variables")
    op.drop_table("bot_variables")
    op.drop_index("ix_flow_sessions_status_resume", table_name="flow_sessions")
    op.drop_index("uq_flow_sessions_live_user", table_name="flow_sessions")
    op.drop_table("flow_sessions")
    op.drop_table("ai_providers")
    op.drop_index("ix_flow_versions_flow_production", table_name="flow_versions")
    op.drop_table("flow_versions")
    op.drop_table("flows")
    op.drop_table("bots")
