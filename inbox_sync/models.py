"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, DateTime, ForeignKey, String, Text

from inbox_sync.storage import Base


class Conversation(Base):
    """
    SQLAlchemy model for a customer conversation.

    Table: conversations
    Status is one of queued, active, on_hold, closed.
    """
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, index=True)
    phone = Column(String, nullable=False, index=True)
    name = Column(String, nullable=True)
    status = Column(String, nullable=False, default="queued")
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Message(Base):
    """
    SQLAlchemy model for storing WhatsApp-like messages.

    Table: messages
    channel_message_id is unique (ensures idempotent webhook ingestion) and
    stays NULL until the delivery channel accepts an outbound message.
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True, index=True)
    channel_message_id = Column(String, unique=True, nullable=True, index=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    direction = Column(String, nullable=False)
    text = Column(Text, nullable=True)
    media_ref = Column(String, nullable=True)
    template_name = Column(String, nullable=True)
    status = Column(String, nullable=False)
    sender = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
