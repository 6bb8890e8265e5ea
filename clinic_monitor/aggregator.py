"""
Conversation summaries over reconciled timelines.
"""

import logging
from typing import Iterable, Mapping, Optional

from clinic_monitor.schemas import CanonicalMessage, Conversation, DeliveryStatus, Direction
from clinic_monitor.utils import digits_only, phones_match

logger = logging.getLogger(__name__)


class PatientNameIndex:
    """
    Best-effort phone -> patient name lookup.

    Matching is fuzzy (digits-only containment either way) and is only used
    for display, never to merge contacts.
    """

    def __init__(self, patients: Iterable[tuple[str, str]]) -> None:
        self._entries = [
            (phone, name)
            for phone, name in patients
            if digits_only(phone) and name
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, phone: str) -> Optional[str]:
        for patient_phone, name in self._entries:
            if phones_match(phone, patient_phone):
                return name
        return None


def unread_count(messages: Iterable[CanonicalMessage]) -> int:
    return sum(
        1 for m in messages
        if m.direction == Direction.INCOMING and m.delivery_status != DeliveryStatus.READ
    )


def resolve_display_name(
    contact_key: str,
    contact_names: Mapping[str, str],
    patient_index: Optional[PatientNameIndex],
) -> str:
    if patient_index is not None:
        name = patient_index.lookup(contact_key)
        if name:
            return name
    return contact_names.get(contact_key) or contact_key


def build_conversations(
    messages: Mapping[str, list[CanonicalMessage]],
    contact_names: Optional[Mapping[str, str]] = None,
    patient_index: Optional[PatientNameIndex] = None,
) -> list[Conversation]:
    """
    Summarize each contact's timeline, most recent conversation first.

    Args:
        messages: Reconciled per-contact timelines (oldest first)
        contact_names: Provider-observed names per contact
        patient_index: Optional patient records for display names

    Returns:
        Conversations; an empty list if anything goes wrong
    """
    contact_names = contact_names or {}
    try:
        conversations = [
            Conversation(
                contact_key=contact_key,
                display_name=resolve_display_name(contact_key, contact_names, patient_index),
                messages=timeline,
                last_message=timeline[-1],
                unread_count=unread_count(timeline),
            )
            for contact_key, timeline in messages.items()
            if timeline
        ]
    except Exception:
        logger.exception("Failed to build conversations")
        return []

    conversations.sort(key=lambda c: (-c.last_message.timestamp_ms, c.contact_key))
    logger.debug(f"Built {len(conversations)} conversations")
    return conversations


def filter_conversations(
    conversations: list[Conversation],
    query: Optional[str] = None,
    unread_only: bool = False,
) -> list[Conversation]:
    """Search by number, display name or message text; optionally unread only."""
    needle = (query or "").strip().lower()

    def matches(conv: Conversation) -> bool:
        if unread_only and conv.unread_count == 0:
            return False
        if not needle:
            return True
        return (
            needle in conv.contact_key
            or needle in conv.display_name.lower()
            or any(needle in m.text.lower() for m in conv.messages)
        )

    return [conv for conv in conversations if matches(conv)]


def summarize(conversations: list[Conversation]) -> dict:
    """
    Message totals across conversations.

    Returns:
        Dictionary with conversation, direction and attribution counts
    """
    incoming = outgoing = automated = 0
    for conv in conversations:
        for m in conv.messages:
            if m.direction == Direction.INCOMING:
                incoming += 1
            else:
                outgoing += 1
                if m.is_automated:
                    automated += 1

    return {
        "total_conversations": len(conversations),
        "total_messages": incoming + outgoing,
        "incoming_messages": incoming,
        "outgoing_messages": outgoing,
        "automated_messages": automated,
        "human_messages": outgoing - automated,
        "unread_conversations": sum(1 for c in conversations if c.unread_count > 0),
    }
