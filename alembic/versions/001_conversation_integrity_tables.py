"""Create chat, message, tool call, checkpoint and recovery context tables.

Revision ID: 001_conversation_integrity_tables
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001_conversation_integrity_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ==========================================================================
    # Chats
    # ==========================================================================
    op.create_table(
        "chats",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("model_id", sa.String(100), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column(
            "conversation_state", sa.String(20), nullable=False, server_default="stable"
        ),
        sa.Column("last_stable_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", JSONB, nullable=False, server_default="{}"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_chats_owner_id", "chats", ["owner_id"])
    op.create_index("ix_chats_status", "chats", ["status"])
    op.create_index("ix_chats_conversation_state", "chats", ["conversation_state"])
    op.create_index("ix_chats_last_stable_at", "chats", ["last_stable_at"])
    op.create_index("chats_owner_status_idx", "chats", ["owner_id", "status"])

    # ==========================================================================
    # Messages (ordered by position; duplicates tolerated so they can be repaired)
    # ==========================================================================
    op.create_table(
        "messages",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column(
            "chat_id",
            sa.Text(),
            sa.ForeignKey("chats.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("tool_call_id", sa.String(255), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("metadata", JSONB, nullable=False, server_default="{}"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_messages_chat_id", "messages", ["chat_id"])
    op.create_index("messages_chat_position_idx", "messages", ["chat_id", "position"])
    op.create_index(
        "messages_chat_tool_call_id_idx", "messages", ["chat_id", "tool_call_id"]
    )

    # ==========================================================================
    # Tool calls
    # ==========================================================================
    op.create_table(
        "tool_calls",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column(
            "message_id",
            sa.Text(),
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tool_call_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("arguments", JSONB, nullable=False, server_default="{}"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_tool_calls_message_id", "tool_calls", ["message_id"])
    op.create_index("ix_tool_calls_tool_call_id", "tool_calls", ["tool_call_id"])

    # ==========================================================================
    # Checkpoints (no FK: retention purges rows whose chat is gone)
    # ==========================================================================
    op.create_table(
        "conversation_checkpoints",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("chat_id", sa.Text(), nullable=False),
        sa.Column("label", sa.String(255), nullable=False),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tool_calls_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "conversation_state", sa.String(20), nullable=False, server_default="stable"
        ),
        sa.Column("snapshot", JSONB, nullable=False, server_default="[]"),
        sa.Column("context", JSONB, nullable=False, server_default="{}"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "chat_id", "label", name="conversation_checkpoints_chat_label_uq"
        ),
    )
    op.create_index(
        "ix_conversation_checkpoints_chat_id", "conversation_checkpoints", ["chat_id"]
    )
    op.create_index(
        "ix_conversation_checkpoints_created_at",
        "conversation_checkpoints",
        ["created_at"],
    )

    # ==========================================================================
    # Recovery contexts
    # ==========================================================================
    op.create_table(
        "recovery_contexts",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("original_chat_id", sa.Text(), nullable=False),
        sa.Column("recovery_chat_id", sa.Text(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("diagnostics", JSONB, nullable=False, server_default="{}"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_recovery_contexts_original_chat_id", "recovery_contexts", ["original_chat_id"]
    )
    op.create_index(
        "ix_recovery_contexts_recovery_chat_id", "recovery_contexts", ["recovery_chat_id"]
    )
    op.create_index("ix_recovery_contexts_owner_id", "recovery_contexts", ["owner_id"])
    op.create_index("ix_recovery_contexts_expires_at", "recovery_contexts", ["expires_at"])
    op.create_index("ix_recovery_contexts_created_at", "recovery_contexts", ["created_at"])


def downgrade() -> None:
    op.drop_table("recovery_contexts")
    op.drop_table("conversation_checkpoints")
    op.drop_table("tool_calls")
    op.drop_table("messages")
    op.drop_table("chats")
