"""
Database-backed log sources for the reconciler.

The repository functions in storage.py are synchronous; each read runs in a
worker thread with its own session so the reconciler can fan out.
"""

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from clinic_monitor.aggregator import PatientNameIndex
from clinic_monitor.identity import stored_forms, try_resolve_contact_key
from clinic_monitor.schemas import Direction, GenerationLogRow, LogRole, OutgoingLogRow
from clinic_monitor.storage import (
    SessionLocal,
    get_all_conversation_log_rows,
    get_chat_history_rows,
    get_conversation_log_rows,
    get_patients,
    list_chat_history_sessions,
    list_conversation_log_numbers,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

# n8n message types -> generation log roles
_ROLE_BY_TYPE = {
    "ai": LogRole.ASSISTANT,
    "assistant": LogRole.ASSISTANT,
    "human": LogRole.HUMAN,
    "user": LogRole.HUMAN,
    "tool": LogRole.TOOL,
}


def _resolved_keys(raw_keys: list[str]) -> list[str]:
    keys = []
    for raw in raw_keys:
        key = try_resolve_contact_key(raw)
        if key and key not in keys:
            keys.append(key)
    return keys


def _tool_call_names(payload: dict) -> tuple[str, ...]:
    calls = payload.get("tool_calls")
    if not isinstance(calls, list):
        return ()
    return tuple(
        call["name"] for call in calls
        if isinstance(call, dict) and isinstance(call.get("name"), str) and call["name"]
    )


def chat_history_to_row(record) -> Optional[GenerationLogRow]:
    """Map a ChatHistory ORM object; None for unusable rows."""
    payload = record.message if isinstance(record.message, dict) else {}
    role = _ROLE_BY_TYPE.get(str(payload.get("type", "")).lower())
    contact_key = try_resolve_contact_key(record.session_id or "")
    if role is None or contact_key is None:
        return None
    content = payload.get("content")
    name = payload.get("name")
    return GenerationLogRow(
        id=str(record.id),
        contact_key=contact_key,
        role=role,
        text=content if isinstance(content, str) else "",
        created_at=record.created_at,
        tool_name=name if isinstance(name, str) and name else None,
        tool_calls=_tool_call_names(payload),
    )


def conversation_log_to_row(record, contact_key: str = "") -> OutgoingLogRow:
    direction = Direction.INCOMING if record.message_type == "incoming" else Direction.OUTGOING
    return OutgoingLogRow(
        id=str(record.id),
        text=record.message_content or "",
        created_at=record.created_at,
        resolved=bool(record.resolved),
        direction=direction,
        contact_key=contact_key,
        is_bot_question=bool(record.is_bot_question),
        question_type=record.question_type,
        resolved_at=record.resolved_at,
    )


class ChatHistoryLog:
    """Generation log backed by the n8n_chat_histories table."""

    def __init__(self, session_factory: SessionFactory = SessionLocal) -> None:
        self._session_factory = session_factory

    def _read_rows(self, contact_key: Optional[str]) -> list[GenerationLogRow]:
        with self._session_factory() as db:
            session_ids = stored_forms(contact_key) if contact_key is not None else None
            rows = [chat_history_to_row(record) for record in get_chat_history_rows(db, session_ids)]
        return [row for row in rows if row is not None]

    def _read_keys(self) -> list[str]:
        with self._session_factory() as db:
            return _resolved_keys(list_chat_history_sessions(db))

    async def fetch_rows(self, contact_key: Optional[str] = None) -> list[GenerationLogRow]:
        return await asyncio.to_thread(self._read_rows, contact_key)

    async def list_contact_keys(self) -> list[str]:
        return await asyncio.to_thread(self._read_keys)


class ConversationLogStore:
    """Outgoing log backed by the conversation_logs table."""

    def __init__(self, session_factory: SessionFactory = SessionLocal) -> None:
        self._session_factory = session_factory

    def _read_rows(self, contact_key: str) -> list[OutgoingLogRow]:
        with self._session_factory() as db:
            records = get_conversation_log_rows(db, stored_forms(contact_key))
            return [conversation_log_to_row(record, contact_key) for record in records]

    def _read_all_rows(self) -> list[OutgoingLogRow]:
        rows = []
        with self._session_factory() as db:
            for record in get_all_conversation_log_rows(db):
                contact_key = try_resolve_contact_key(record.whatsapp_number or "")
                if contact_key is not None:
                    rows.append(conversation_log_to_row(record, contact_key))
        return rows

    def _read_keys(self) -> list[str]:
        with self._session_factory() as db:
            return _resolved_keys(list_conversation_log_numbers(db))

    async def fetch_rows(self, contact_key: str) -> list[OutgoingLogRow]:
        return await asyncio.to_thread(self._read_rows, contact_key)

    async def fetch_all_rows(self) -> list[OutgoingLogRow]:
        """Every row with a one-to-one contact, oldest first."""
        return await asyncio.to_thread(self._read_all_rows)

    async def list_contact_keys(self) -> list[str]:
        return await asyncio.to_thread(self._read_keys)


def _read_patient_index(session_factory: SessionFactory) -> PatientNameIndex:
    with session_factory() as db:
        return PatientNameIndex((p.whatsapp_number, p.name) for p in get_patients(db))


async def load_patient_index(session_factory: SessionFactory = SessionLocal) -> PatientNameIndex:
    """Patient names for display; an unreadable table yields an empty index."""
    try:
        return await asyncio.to_thread(_read_patient_index, session_factory)
    except Exception as e:
        logger.warning(f"Patient lookup unavailable: {e}")
        return PatientNameIndex(())
