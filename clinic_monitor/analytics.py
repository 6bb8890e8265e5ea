"""
Assistant performance report.

Each contact's generation-log rows form one session. Sessions are scored
for staff intervention, completed bookings and tool usage, then rolled up
with the outgoing log's question/resolution state into an
AIPerformanceReport with detected problems and strengths.
"""

import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Iterable, Optional

from clinic_monitor.schemas import (
    AIPerformanceReport,
    Finding,
    FindingExample,
    GenerationLogRow,
    Language,
    LogRole,
    OutgoingLogRow,
    Severity,
    StaffIntervention,
)
from clinic_monitor.utils import to_epoch_ms

BOOKING_TOOL = "Book_Appointment"

# Short, informal replies typed by staff through the assistant's channel
STAFF_REPLY_PATTERNS = (
    re.compile(r"^(yes|no|ok|okay|sure|done|khalas|تمام|اوكي|نعم|لا)\s*(dear)?$", re.IGNORECASE),
    re.compile(r"^(wednesday|thursday|tomorrow)", re.IGNORECASE),
    re.compile(r"will (do|transfer|check)", re.IGNORECASE),
)
STAFF_REPLY_MAX_LENGTH = 50

BOOKING_ATTEMPT_MARKERS = ("confirm", "📅")
FRIENDLY_MARKERS = ("🌸", "✅", "dear", "أهلاً", "مرحبا")

SLOW_REPLY_SECONDS = 60
QUICK_RESOLUTION_SECONDS = 300
MAX_EXAMPLES = 3
TOP_TOOLS = 5

_ARABIC = re.compile(r"[\u0600-\u06FF]")
_LATIN = re.compile(r"[a-zA-Z]")


def detect_language(text: str) -> Language:
    has_arabic = bool(_ARABIC.search(text))
    has_latin = bool(_LATIN.search(text))
    if has_arabic and has_latin:
        return Language.MIXED
    if has_arabic:
        return Language.ARABIC
    return Language.ENGLISH


def is_staff_reply(row: GenerationLogRow) -> bool:
    if row.role != LogRole.ASSISTANT:
        return False
    text = row.text.strip().lower()
    return len(text) < STAFF_REPLY_MAX_LENGTH and any(p.search(text) for p in STAFF_REPLY_PATTERNS)


def is_confirmed_booking(row: GenerationLogRow) -> bool:
    return (
        row.role == LogRole.TOOL
        and row.tool_name == BOOKING_TOOL
        and '"status":"confirmed"' in row.text.replace(" ", "")
    )


def is_tool_error(row: GenerationLogRow) -> bool:
    return row.role == LogRole.TOOL and ("error" in row.text.lower() or row.text.strip() in ('""', "[]"))


def _ordered(rows: Iterable[GenerationLogRow]) -> list[GenerationLogRow]:
    return sorted(rows, key=lambda r: to_epoch_ms(r.created_at))


# =============================================================================
# Sessions
# =============================================================================

@dataclass(frozen=True)
class SessionSummary:
    contact_key: str
    rows: tuple[GenerationLogRow, ...]
    patient_messages: int
    ai_messages: int
    tool_calls: int
    started_at: datetime
    ended_at: datetime
    duration_minutes: int
    staff_reply: Optional[GenerationLogRow]
    booking_completed: bool
    tools_used: tuple[str, ...]
    response_gaps: tuple[float, ...]

    @property
    def had_staff_intervention(self) -> bool:
        return self.staff_reply is not None

    @property
    def conversation_rows(self) -> list[GenerationLogRow]:
        return [r for r in self.rows if r.role != LogRole.TOOL]


def analyze_session(contact_key: str, rows: Iterable[GenerationLogRow]) -> SessionSummary:
    """Score one contact's generation-log rows. `rows` must not be empty."""
    ordered = _ordered(rows)
    started_at, ended_at = ordered[0].created_at, ordered[-1].created_at
    duration_ms = to_epoch_ms(ended_at) - to_epoch_ms(started_at)

    tools = {r.tool_name for r in ordered if r.role == LogRole.TOOL and r.tool_name}
    tools.update(name for r in ordered for name in r.tool_calls)

    # Seconds from a patient turn to the assistant turn right after it
    gaps = tuple(
        (to_epoch_ms(cur.created_at) - to_epoch_ms(prev.created_at)) / 1000
        for prev, cur in zip(ordered, ordered[1:])
        if prev.role == LogRole.HUMAN and cur.role == LogRole.ASSISTANT
    )

    return SessionSummary(
        contact_key=contact_key,
        rows=tuple(ordered),
        patient_messages=sum(1 for r in ordered if r.role == LogRole.HUMAN),
        ai_messages=sum(1 for r in ordered if r.role == LogRole.ASSISTANT),
        tool_calls=sum(1 for r in ordered if r.role == LogRole.TOOL),
        started_at=started_at,
        ended_at=ended_at,
        duration_minutes=round(duration_ms / 60_000),
        staff_reply=next((r for r in ordered if is_staff_reply(r)), None),
        booking_completed=any(is_confirmed_booking(r) for r in ordered),
        tools_used=tuple(sorted(tools)),
        response_gaps=gaps,
    )


def group_sessions(rows: Iterable[GenerationLogRow]) -> dict[str, SessionSummary]:
    grouped: dict[str, list[GenerationLogRow]] = {}
    for row in rows:
        grouped.setdefault(row.contact_key, []).append(row)
    return {key: analyze_session(key, group) for key, group in sorted(grouped.items())}


# =============================================================================
# Problems and strengths
# =============================================================================

def _severity(count: int, high_above: int) -> Severity:
    return Severity.HIGH if count > high_above else Severity.MEDIUM


def detect_problems(
    sessions: dict[str, SessionSummary],
    rows: list[GenerationLogRow],
    log_rows: list[OutgoingLogRow],
) -> list[Finding]:
    problems = []

    intervened = [s for s in sessions.values() if s.had_staff_intervention]
    if intervened:
        problems.append(Finding(
            id="staff_intervention",
            category="escalation_needed",
            severity=_severity(len(intervened), 5),
            count=len(intervened),
            examples=[
                FindingExample(
                    contact_key=s.contact_key,
                    message=s.staff_reply.text,
                    context="Staff replied through the assistant",
                )
                for s in intervened[:MAX_EXAMPLES]
            ],
        ))

    open_questions = [r for r in log_rows if r.is_bot_question and not r.resolved]
    if open_questions:
        problems.append(Finding(
            id="unresolved_questions",
            category="incomplete",
            severity=_severity(len(open_questions), 10),
            count=len(open_questions),
            examples=[
                FindingExample(
                    contact_key=r.contact_key,
                    message=r.text[:100],
                    context=f"Question type: {r.question_type or 'unknown'}",
                )
                for r in open_questions[:MAX_EXAMPLES]
            ],
        ))

    slow = [s for s in sessions.values() if any(gap > SLOW_REPLY_SECONDS for gap in s.response_gaps)]
    if slow:
        problems.append(Finding(
            id="slow_response",
            category="slow_response",
            severity=Severity.LOW,
            count=len(slow),
            examples=[
                FindingExample(
                    contact_key=s.contact_key,
                    message=f"Slowest reply: {round(max(s.response_gaps))} seconds",
                    context=f"Duration: {s.duration_minutes} minutes",
                )
                for s in slow[:MAX_EXAMPLES]
            ],
        ))

    tool_errors = [r for r in rows if is_tool_error(r)]
    if tool_errors:
        problems.append(Finding(
            id="tool_errors",
            category="tool_error",
            severity=_severity(len(tool_errors), 5),
            count=len(tool_errors),
            examples=[
                FindingExample(
                    contact_key=r.contact_key,
                    message=r.tool_name or "Unknown tool",
                    context=r.text[:100],
                )
                for r in tool_errors[:MAX_EXAMPLES]
            ],
        ))

    repeated: list[str] = []
    for session in sessions.values():
        seen: set[str] = set()
        for row in session.rows:
            if row.role != LogRole.ASSISTANT or "?" not in row.text:
                continue
            question = row.text.strip().lower()[:50]
            if question in seen:
                repeated.append(session.contact_key)
            seen.add(question)
    if repeated:
        problems.append(Finding(
            id="repeated_questions",
            category="understanding",
            severity=Severity.MEDIUM,
            count=len(repeated),
            examples=[
                FindingExample(contact_key=key, message="Repeated question detected")
                for key in repeated[:MAX_EXAMPLES]
            ],
        ))

    return problems


def detect_strengths(
    sessions: dict[str, SessionSummary],
    rows: list[GenerationLogRow],
    log_rows: list[OutgoingLogRow],
) -> list[Finding]:
    strengths = []
    ai_rows = [r for r in rows if r.role == LogRole.ASSISTANT]

    booked = [s for s in sessions.values() if s.booking_completed]
    if booked:
        strengths.append(Finding(
            id="booking_success",
            category="booking",
            count=len(booked),
            examples=[
                FindingExample(contact_key=s.contact_key, message="Booking completed")
                for s in booked[:MAX_EXAMPLES]
            ],
        ))

    languages = Counter(detect_language(r.text) for r in ai_rows)
    if languages[Language.ARABIC] and languages[Language.ENGLISH]:
        strengths.append(Finding(
            id="multilingual",
            category="multilingual",
            count=languages[Language.ARABIC] + languages[Language.ENGLISH],
            examples=[
                FindingExample(contact_key="", message=f"Arabic messages: {languages[Language.ARABIC]}"),
                FindingExample(contact_key="", message=f"English messages: {languages[Language.ENGLISH]}"),
            ],
        ))

    quick = [
        r for r in log_rows
        if r.resolved and r.resolved_at is not None
        and to_epoch_ms(r.resolved_at) - to_epoch_ms(r.created_at) < QUICK_RESOLUTION_SECONDS * 1000
    ]
    if quick:
        strengths.append(Finding(
            id="quick_resolution",
            category="information",
            count=len(quick),
            examples=[
                FindingExample(contact_key=r.contact_key, message=r.text[:50])
                for r in quick[:MAX_EXAMPLES]
            ],
        ))

    usage = tool_usage(rows)
    if usage:
        top = sorted(usage.items(), key=lambda item: (-item[1], item[0]))[:TOP_TOOLS]
        strengths.append(Finding(
            id="tool_proficiency",
            category="tool_usage",
            count=sum(usage.values()),
            examples=[FindingExample(contact_key="", message=f"{name}: {count} uses") for name, count in top],
        ))

    friendly = [r for r in ai_rows if any(marker in r.text.lower() for marker in FRIENDLY_MARKERS)]
    if friendly:
        strengths.append(Finding(
            id="friendly_tone",
            category="greeting",
            count=len(friendly),
            examples=[
                FindingExample(contact_key=r.contact_key, message=r.text[:80])
                for r in friendly[:MAX_EXAMPLES]
            ],
        ))

    return strengths


# =============================================================================
# Report
# =============================================================================

def tool_usage(rows: Iterable[GenerationLogRow]) -> dict[str, int]:
    counts = Counter(r.tool_name for r in rows if r.role == LogRole.TOOL and r.tool_name)
    return dict(sorted(counts.items()))


def _percent(part: float, whole: float) -> float:
    if whole <= 0:
        return 0.0
    return round(min(100.0, part / whole * 100), 1)


def _local_hour(value: datetime, tz: tzinfo) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz).hour


def analyze_performance(
    rows: list[GenerationLogRow],
    log_rows: list[OutgoingLogRow],
    tz: tzinfo = timezone.utc,
) -> AIPerformanceReport:
    """
    Build the assistant performance report.

    Args:
        rows: Every generation-log row (all roles, any order)
        log_rows: Every outgoing-log row, with contact keys
        tz: Time zone for the busiest-hours histogram
    """
    sessions = group_sessions(rows)
    total = len(sessions)
    ai_rows = [r for r in rows if r.role == LogRole.ASSISTANT]

    intervened = [s for s in sessions.values() if s.had_staff_intervention]
    intervened_keys = {s.contact_key for s in intervened}
    resolved_by_ai = sum(1 for r in log_rows if r.resolved and r.contact_key not in intervened_keys)

    bookings_completed = sum(1 for s in sessions.values() if s.booking_completed)
    bookings_attempted = sum(
        1 for r in ai_rows
        if BOOKING_TOOL in r.tool_calls
        or any(marker in r.text.lower() for marker in BOOKING_ATTEMPT_MARKERS)
    )

    gaps = [gap for s in sessions.values() for gap in s.response_gaps]
    hours = Counter(_local_hour(r.created_at, tz) for r in rows)
    languages = Counter(
        detect_language(" ".join(r.text for r in s.conversation_rows)) for s in sessions.values()
    )

    return AIPerformanceReport(
        total_conversations=total,
        total_messages=len(rows),
        total_ai_messages=len(ai_rows),
        total_patient_messages=sum(1 for r in rows if r.role == LogRole.HUMAN),
        total_tool_calls=sum(1 for r in rows if r.role == LogRole.TOOL),
        resolved_by_ai=resolved_by_ai,
        resolved_by_staff=len(intervened),
        unresolved=sum(1 for r in log_rows if not r.resolved),
        resolution_rate=_percent(resolved_by_ai + len(intervened), total),
        avg_response_time_seconds=round(sum(gaps) / len(gaps), 1) if gaps else None,
        avg_messages_per_conversation=round(len(rows) / total, 1) if total else 0.0,
        avg_ai_messages_per_conversation=round(len(ai_rows) / total, 1) if total else 0.0,
        bookings_completed=bookings_completed,
        bookings_attempted=bookings_attempted,
        booking_success_rate=_percent(bookings_completed, bookings_attempted),
        tool_usage=tool_usage(rows),
        problems=detect_problems(sessions, rows, log_rows),
        strengths=detect_strengths(sessions, rows, log_rows),
        staff_interventions=[
            StaffIntervention(
                contact_key=s.contact_key,
                timestamp=s.staff_reply.created_at,
                staff_message=s.staff_reply.text,
                context=[r.text[:50] for r in s.conversation_rows[:3]],
            )
            for s in intervened
        ],
        staff_intervention_rate=_percent(len(intervened), total),
        busiest_hours=dict(sorted(hours.items())),
        avg_conversation_duration_minutes=(
            round(sum(s.duration_minutes for s in sessions.values()) / total) if total else 0
        ),
        arabic_conversations=languages[Language.ARABIC],
        english_conversations=languages[Language.ENGLISH],
        mixed_conversations=languages[Language.MIXED],
    )
