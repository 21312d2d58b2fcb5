"""Checkpoint and recovery-branch audit models."""

from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint

from src.db.models.conversations import Base
from src.kernel.ids import IdPrefix, new_prefixed_id
from src.kernel.time import utc_now


class ConversationCheckpoint(Base):
    __tablename__ = "conversation_checkpoints"

    id = Column(Text, primary_key=True, default=lambda: new_prefixed_id(IdPrefix.CHECKPOINT))
    # No foreign key: retention must be able to find checkpoints whose chat
    # row is already gone.
    chat_id = Column(Text, nullable=False, index=True)
    label = Column(String(255), nullable=False)

    message_count = Column(Integer, nullable=False, default=0)
    tool_calls_count = Column(Integer, nullable=False, default=0)
    conversation_state = Column(String(20), nullable=False, default="stable")

    snapshot = Column(JSON, nullable=False, default=list)  # [{message_id, position, role, digest}]
    context = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    __table_args__ = (
        UniqueConstraint("chat_id", "label", name="conversation_checkpoints_chat_label_uq"),
    )


class RecoveryContext(Base):
    __tablename__ = "recovery_contexts"

    id = Column(Text, primary_key=True, default=lambda: new_prefixed_id(IdPrefix.RECOVERY_CONTEXT))
    original_chat_id = Column(Text, nullable=False, index=True)
    recovery_chat_id = Column(Text, nullable=False, index=True)
    owner_id = Column(Text, nullable=False, index=True)

    diagnostics = Column(JSON, nullable=False, default=dict)

    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
