"""
Conversation Database Models

SQLAlchemy models for chats, their ordered messages and the tool calls
emitted by assistant turns. Rows are produced by the chat-completion
service; this engine only reads, repairs and forks them.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

from src.kernel.ids import IdPrefix, new_prefixed_id
from src.kernel.time import utc_now

Base = declarative_base()


class Chat(Base):
    """A conversation aggregate owned by a user."""

    __tablename__ = "chats"

    id = Column(Text, primary_key=True, default=lambda: new_prefixed_id(IdPrefix.CHAT))
    owner_id = Column(Text, nullable=False, index=True)
    title = Column(String(255), nullable=True)
    model_id = Column(String(100), nullable=True)

    status = Column(String(20), nullable=False, default="active", index=True)  # active, archived, deleted
    conversation_state = Column(
        String(20),
        nullable=False,
        default="stable",
        index=True,
    )  # stable, needs_cleanup, error
    last_stable_at = Column(DateTime(timezone=True), nullable=True, index=True)

    meta = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    messages = relationship(
        "Message",
        back_populates="chat",
        cascade="all, delete-orphan",
        order_by="Message.position",
    )

    __table_args__ = (
        Index("chats_owner_status_idx", "owner_id", "status"),
    )


class Message(Base):
    """A single turn in a chat, ordered by an explicit position."""

    __tablename__ = "messages"

    id = Column(Text, primary_key=True, default=lambda: new_prefixed_id(IdPrefix.MESSAGE))
    chat_id = Column(Text, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)

    role = Column(String(20), nullable=False)  # user, assistant, system, tool
    content = Column(Text, nullable=True)
    tool_call_id = Column(String(255), nullable=True)  # only for role=tool
    # Not unique at the database level: corrupted logs with colliding
    # positions must still be loadable so they can be repaired.
    position = Column(Integer, nullable=False)

    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    chat = relationship("Chat", back_populates="messages")
    tool_calls = relationship(
        "ToolCall",
        back_populates="message",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("messages_chat_position_idx", "chat_id", "position"),
        Index("messages_chat_tool_call_id_idx", "chat_id", "tool_call_id"),
    )


class ToolCall(Base):
    """A function invocation requested by an assistant message."""

    __tablename__ = "tool_calls"

    id = Column(Text, primary_key=True, default=lambda: new_prefixed_id(IdPrefix.TOOL_CALL))
    message_id = Column(Text, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)

    tool_call_id = Column(String(255), nullable=False, index=True)  # call_<token>
    name = Column(String(255), nullable=False)
    arguments = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    message = relationship("Message", back_populates="tool_calls")
