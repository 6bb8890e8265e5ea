"""
Tests for conversation summaries.

Tests cover:
- Unread counts, last message and ordering
- Display name resolution (patient, provider name, raw key)
- Search / unread filtering and totals
"""

from clinic_monitor.aggregator import (
    PatientNameIndex,
    build_conversations,
    filter_conversations,
    summarize,
)
from clinic_monitor.schemas import CanonicalMessage, DeliveryStatus, Direction

from fakes import BASE_TS


def message(contact, msg_id, offset, direction=Direction.INCOMING, text="hi",
            status=DeliveryStatus.SENT, automated=False):
    return CanonicalMessage(
        id=msg_id,
        contact_key=contact,
        direction=direction,
        text=text,
        timestamp_ms=(BASE_TS + offset) * 1000,
        delivery_status=status,
        is_automated=automated,
    )


class TestPatientNameIndex:

    def test_digits_containment_either_way(self):
        index = PatientNameIndex([("+971 50 123 4567", "Mona Ali")])

        assert index.lookup("971501234567") == "Mona Ali"
        assert index.lookup("501234567") == "Mona Ali"
        assert index.lookup("00971501234567") == "Mona Ali"

    def test_no_match(self):
        index = PatientNameIndex([("971501234567", "Mona Ali")])
        assert index.lookup("971509999999") is None

    def test_empty_phone_never_matches(self):
        index = PatientNameIndex([("", "Nobody"), ("n/a", "Nobody either")])
        assert len(index) == 0
        assert index.lookup("971501234567") is None
        assert PatientNameIndex([("971501234567", "Mona")]).lookup("") is None


class TestBuildConversations:

    def test_summary_fields(self):
        timeline = [
            message("971500000001", "a", 0, status=DeliveryStatus.READ),
            message("971500000001", "b", 10, direction=Direction.OUTGOING),
            message("971500000001", "c", 20, status=DeliveryStatus.DELIVERED),
            message("971500000001", "d", 30),
        ]

        [conversation] = build_conversations({"971500000001": timeline})

        assert conversation.last_message.id == "d"
        assert conversation.unread_count == 2
        assert conversation.messages == timeline

    def test_most_recent_first(self):
        conversations = build_conversations({
            "971500000001": [message("971500000001", "a", 0)],
            "971500000002": [message("971500000002", "b", 100)],
            "971500000003": [message("971500000003", "c", 50)],
        })

        assert [c.contact_key for c in conversations] == ["971500000002", "971500000003", "971500000001"]

    def test_empty_timelines_skipped(self):
        assert build_conversations({"971500000001": []}) == []

    def test_display_name_prefers_patient_record(self):
        index = PatientNameIndex([("+971 50 123 4567", "Mona Ali")])
        conversations = build_conversations(
            {"971501234567": [message("971501234567", "a", 0)]},
            contact_names={"971501234567": "mona 🌸"},
            patient_index=index,
        )

        assert conversations[0].display_name == "Mona Ali"

    def test_display_name_falls_back_to_provider_then_key(self):
        index = PatientNameIndex([])
        conversations = build_conversations(
            {
                "971500000001": [message("971500000001", "a", 10)],
                "971500000002": [message("971500000002", "b", 0)],
            },
            contact_names={"971500000001": "Khalid"},
            patient_index=index,
        )

        assert [c.display_name for c in conversations] == ["Khalid", "971500000002"]


class TestFilterAndSummarize:

    def _conversations(self):
        return build_conversations(
            {
                "971500000001": [
                    message("971500000001", "a", 0, text="Botox price?"),
                    message("971500000001", "b", 5, direction=Direction.OUTGOING, text="From 900 AED", automated=True),
                ],
                "971500000002": [
                    message("971500000002", "c", 10, text="thanks", status=DeliveryStatus.READ),
                    message("971500000002", "d", 15, direction=Direction.OUTGOING, text="You're welcome"),
                ],
            },
            contact_names={"971500000002": "Layla"},
        )

    def test_search_by_text_name_and_number(self):
        conversations = self._conversations()

        assert [c.contact_key for c in filter_conversations(conversations, "botox")] == ["971500000001"]
        assert [c.contact_key for c in filter_conversations(conversations, "layla")] == ["971500000002"]
        assert [c.contact_key for c in filter_conversations(conversations, "00000001")] == ["971500000001"]
        assert len(filter_conversations(conversations, "  ")) == 2

    def test_unread_only(self):
        conversations = self._conversations()
        assert [c.contact_key for c in filter_conversations(conversations, unread_only=True)] == ["971500000001"]

    def test_summarize(self):
        stats = summarize(self._conversations())

        assert stats == {
            "total_conversations": 2,
            "total_messages": 4,
            "incoming_messages": 2,
            "outgoing_messages": 2,
            "automated_messages": 1,
            "human_messages": 1,
            "unread_conversations": 1,
        }

    def test_summarize_empty(self):
        assert summarize([])["total_messages"] == 0
