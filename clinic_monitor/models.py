"""
SQLAlchemy ORM models for the tables the monitor reads.

The tables are owned by the clinic database and the automation pipeline;
the monitor only queries them. For Pydantic schemas, see schemas.py.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from clinic_monitor.storage import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Patient(Base):
    """
    Patient record, used only to label conversations.

    Table: patients
    """
    __tablename__ = "patients"

    id = Column(String, primary_key=True)
    whatsapp_number = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ChatHistory(Base):
    """
    The assistant's generation log, written by the automation pipeline.

    Table: n8n_chat_histories
    `message` holds {"type": "ai" | "human" | "tool", "content": "..."}
    plus "name" on tool rows and "tool_calls" on assistant rows
    """
    __tablename__ = "n8n_chat_histories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, nullable=False, index=True)  # contact phone number
    message = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class ConversationLog(Base):
    """
    Outgoing message log with follow-up resolution state.

    Table: conversation_logs
    """
    __tablename__ = "conversation_logs"

    id = Column(String, primary_key=True)
    whatsapp_number = Column(String, nullable=False, index=True)
    message_type = Column(String, nullable=False, default="outgoing")  # incoming | outgoing
    message_content = Column(Text, nullable=True)
    is_bot_question = Column(Boolean, nullable=False, default=False)
    question_type = Column(String, nullable=True)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
