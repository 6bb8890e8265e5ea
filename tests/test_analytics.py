"""
Tests for the assistant performance report.

Tests cover:
- Language, staff-reply, booking and tool-error detection
- Per-session summaries (durations, response gaps, tools)
- Report totals, rates and busiest hours
- Detected problems and strengths
"""

from datetime import timedelta, timezone

import pytest

from clinic_monitor.analytics import (
    analyze_performance,
    analyze_session,
    detect_language,
    is_confirmed_booking,
    is_staff_reply,
    is_tool_error,
)
from clinic_monitor.schemas import Language, Severity

from fakes import assistant_row, at, human_row, outgoing_row, tool_row

MONA = "971500000001"
KHALID = "971500000002"
OTHER = "971500000009"


@pytest.fixture
def rows():
    return [
        human_row(1, MONA, "Hi, I want to book botox", offset=0),
        assistant_row(2, MONA, "أهلاً! Which day suits you?", offset=10),
        human_row(3, MONA, "Thursday", offset=40),
        assistant_row(4, MONA, "Booking your appointment now", offset=45, tool_calls=("Book_Appointment",)),
        tool_row(5, MONA, "Book_Appointment", '{"status": "confirmed", "id": 7}', offset=46),
        assistant_row(6, MONA, "✅ Your appointment is confirmed for Thursday 📅", offset=50),
        human_row(10, KHALID, "كم سعر الفيلر؟", offset=1000),
        assistant_row(11, KHALID, "تمام", offset=1200),
        tool_row(12, KHALID, "Get_Prices", "Error: timeout", offset=1201),
    ]


@pytest.fixture
def log_rows():
    return [
        outgoing_row(1, "Which branch do you prefer?", resolved=True, contact_key=MONA,
                     is_bot_question=True, question_type="branch", resolved_at=at(120)),
        outgoing_row(2, "Reminder: appointment tomorrow", contact_key=KHALID),
        outgoing_row(3, "Did you receive the results?", contact_key=OTHER,
                     is_bot_question=True, question_type="follow_up"),
    ]


class TestDetectors:

    def test_language(self):
        assert detect_language("مرحبا") == Language.ARABIC
        assert detect_language("hello") == Language.ENGLISH
        assert detect_language("مرحبا hello") == Language.MIXED
        assert detect_language("123 📅") == Language.ENGLISH

    @pytest.mark.parametrize("text", ["ok", "OK dear", "  sure  ", "تمام", "Tomorrow at 5", "I will check and revert"])
    def test_staff_reply(self, text):
        assert is_staff_reply(assistant_row(1, MONA, text))

    @pytest.mark.parametrize("text", [
        "Okay, the clinic opens at 10am and closes at 10pm every day of the week",
        "Which day suits you?",
        "",
    ])
    def test_not_staff_reply(self, text):
        assert not is_staff_reply(assistant_row(1, MONA, text))

    def test_patient_text_never_staff_reply(self):
        assert not is_staff_reply(human_row(1, MONA, "ok"))

    def test_confirmed_booking(self):
        assert is_confirmed_booking(tool_row(1, MONA, "Book_Appointment", '{"status":"confirmed"}'))
        assert is_confirmed_booking(tool_row(1, MONA, "Book_Appointment", '{"status" : "confirmed"}'))
        assert not is_confirmed_booking(tool_row(1, MONA, "Book_Appointment", '{"status": "pending"}'))
        assert not is_confirmed_booking(tool_row(1, MONA, "Get_Slots", '{"status": "confirmed"}'))

    def test_tool_error(self):
        assert is_tool_error(tool_row(1, MONA, "Get_Slots", "Error: no slots"))
        assert is_tool_error(tool_row(1, MONA, "Get_Slots", "[]"))
        assert is_tool_error(tool_row(1, MONA, "Get_Slots", '""'))
        assert not is_tool_error(tool_row(1, MONA, "Get_Slots", '["10:00"]'))
        assert not is_tool_error(assistant_row(1, MONA, "error"))


class TestSession:

    def test_summary(self, rows):
        session = analyze_session(MONA, reversed([r for r in rows if r.contact_key == MONA]))

        assert [r.id for r in session.rows] == ["1", "2", "3", "4", "5", "6"]
        assert session.patient_messages == 2
        assert session.ai_messages == 3
        assert session.tool_calls == 1
        assert session.duration_minutes == 1
        assert session.response_gaps == (10.0, 5.0)
        assert session.booking_completed is True
        assert session.had_staff_intervention is False
        assert session.tools_used == ("Book_Appointment",)

    def test_staff_reply_found(self, rows):
        session = analyze_session(KHALID, [r for r in rows if r.contact_key == KHALID])

        assert session.had_staff_intervention is True
        assert session.staff_reply.id == "11"
        assert session.tools_used == ("Get_Prices",)


class TestReport:

    def test_totals(self, rows, log_rows):
        report = analyze_performance(rows, log_rows)

        assert report.total_conversations == 2
        assert report.total_messages == 9
        assert report.total_ai_messages == 4
        assert report.total_patient_messages == 3
        assert report.total_tool_calls == 2
        assert report.avg_messages_per_conversation == 4.5
        assert report.avg_ai_messages_per_conversation == 2.0
        assert report.avg_conversation_duration_minutes == 2
        assert report.avg_response_time_seconds == 71.7
        assert report.tool_usage == {"Book_Appointment": 1, "Get_Prices": 1}

    def test_resolution(self, rows, log_rows):
        report = analyze_performance(rows, log_rows)

        assert report.resolved_by_ai == 1
        assert report.resolved_by_staff == 1
        assert report.unresolved == 2
        assert report.resolution_rate == 100.0
        assert report.staff_intervention_rate == 50.0

    def test_bookings(self, rows, log_rows):
        report = analyze_performance(rows, log_rows)

        assert report.bookings_completed == 1
        assert report.bookings_attempted == 2
        assert report.booking_success_rate == 50.0

    def test_languages(self, rows, log_rows):
        report = analyze_performance(rows, log_rows)

        assert report.mixed_conversations == 1
        assert report.arabic_conversations == 1
        assert report.english_conversations == 0

    def test_staff_interventions(self, rows, log_rows):
        report = analyze_performance(rows, log_rows)

        assert len(report.staff_interventions) == 1
        intervention = report.staff_interventions[0]
        assert intervention.contact_key == KHALID
        assert intervention.staff_message == "تمام"
        assert intervention.timestamp == at(1200)
        assert intervention.context == ["كم سعر الفيلر؟", "تمام"]

    def test_busiest_hours_in_local_time(self, rows, log_rows):
        assert analyze_performance(rows, log_rows).busiest_hours == {10: 9}

        report = analyze_performance(rows, log_rows, tz=timezone(timedelta(hours=4)))

        assert report.busiest_hours == {14: 9}

    def test_empty(self):
        report = analyze_performance([], [])

        assert report.total_conversations == 0
        assert report.resolution_rate == 0.0
        assert report.booking_success_rate == 0.0
        assert report.avg_response_time_seconds is None
        assert report.avg_conversation_duration_minutes == 0
        assert report.problems == []
        assert report.strengths == []


class TestFindings:

    def test_problems(self, rows, log_rows):
        problems = {p.id: p for p in analyze_performance(rows, log_rows).problems}

        assert list(problems) == ["staff_intervention", "unresolved_questions", "slow_response", "tool_errors"]
        assert problems["staff_intervention"].severity == Severity.MEDIUM
        assert problems["staff_intervention"].examples[0].message == "تمام"
        assert problems["unresolved_questions"].count == 1
        assert problems["unresolved_questions"].examples[0].contact_key == OTHER
        assert problems["unresolved_questions"].examples[0].context == "Question type: follow_up"
        assert problems["slow_response"].severity == Severity.LOW
        assert [e.contact_key for e in problems["slow_response"].examples] == [KHALID]
        assert problems["tool_errors"].examples[0].message == "Get_Prices"

    def test_staff_intervention_severity_rises(self):
        rows = [assistant_row(i, f"97150000010{i}", "ok", offset=i) for i in range(6)]

        problems = {p.id: p for p in analyze_performance(rows, []).problems}

        assert problems["staff_intervention"].count == 6
        assert problems["staff_intervention"].severity == Severity.HIGH
        assert len(problems["staff_intervention"].examples) == 3

    def test_repeated_question(self):
        rows = [
            assistant_row(1, MONA, "Which day suits you?", offset=0),
            human_row(2, MONA, "not sure", offset=10),
            assistant_row(3, MONA, "which day suits you?", offset=20),
        ]

        problems = {p.id: p for p in analyze_performance(rows, []).problems}

        assert problems["repeated_questions"].count == 1
        assert problems["repeated_questions"].examples[0].contact_key == MONA

    def test_strengths(self, rows, log_rows):
        strengths = {s.id: s for s in analyze_performance(rows, log_rows).strengths}

        assert list(strengths) == [
            "booking_success", "multilingual", "quick_resolution", "tool_proficiency", "friendly_tone",
        ]
        assert all(s.severity is None for s in strengths.values())
        assert strengths["booking_success"].examples[0].contact_key == MONA
        assert strengths["multilingual"].count == 3
        assert strengths["quick_resolution"].count == 1
        assert strengths["tool_proficiency"].count == 2
        assert strengths["friendly_tone"].count == 2
