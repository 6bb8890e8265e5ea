"""
Tests for the Evolution API client.

Tests cover:
- Response envelope shapes and invalid record filtering
- Request construction (headers, body, paths)
- Media fetch failures returning None
- Instance stats lookup
"""

import json

import httpx
import pytest

from clinic_monitor.evolution import EvolutionClient, parse_instance_stats, parse_message_envelope
from clinic_monitor.schemas import MediaKind

from fakes import jid, provider_record

RECORDS = [
    provider_record("m1", jid("971500000001"), "hi"),
    provider_record("m2", jid("971500000002"), "hello", from_me=True),
]


def make_client(handler) -> EvolutionClient:
    return EvolutionClient(
        base_url="http://evolution.test/",
        api_key="secret",
        instance="clinic",
        transport=httpx.MockTransport(handler),
    )


class TestParseMessageEnvelope:

    def test_records_under_messages(self):
        page = parse_message_envelope({"messages": {"records": RECORDS, "total": 250, "pages": 3}})

        assert [r.id for r in page.records] == ["m1", "m2"]
        assert page.total == 250
        assert page.pages == 3

    def test_messages_array(self):
        page = parse_message_envelope({"messages": RECORDS})
        assert len(page.records) == 2
        assert page.total == 2

    def test_bare_array(self):
        page = parse_message_envelope(RECORDS)
        assert [r.key.remote_jid for r in page.records] == [jid("971500000001"), jid("971500000002")]

    @pytest.mark.parametrize("body", [{}, {"messages": "nope"}, {"data": RECORDS}, "text", None, 42])
    def test_unknown_shapes_are_empty(self, body):
        page = parse_message_envelope(body)
        assert page.records == []
        assert page.total == 0

    def test_records_without_identity_filtered(self):
        page = parse_message_envelope([
            RECORDS[0],
            {"id": "no-key"},
            {"id": "no-jid", "key": {"id": "k", "fromMe": False}},
            {"id": "empty-jid", "key": {"remoteJid": ""}},
            "garbage",
            None,
        ])

        assert [r.id for r in page.records] == ["m1"]

    def test_missing_total_defaults_to_record_count(self):
        page = parse_message_envelope({"messages": {"records": RECORDS}})
        assert page.total == 2
        assert page.pages == 1


class TestFetchMessages:

    async def test_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["apikey"] = request.headers.get("apikey")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": {"records": RECORDS, "total": 2, "pages": 1}})

        async with make_client(handler) as client:
            page = await client.fetch_messages(page=2, limit=50, from_me=True)

        assert seen["method"] == "POST"
        assert seen["path"] == "/chat/findMessages/clinic"
        assert seen["apikey"] == "secret"
        assert seen["body"] == {"where": {"key": {"fromMe": True}}, "page": 2, "limit": 50}
        assert len(page.records) == 2

    async def test_no_filter_by_default(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=[])

        async with make_client(handler) as client:
            await client.fetch_messages()

        assert bodies == [{"where": {}, "page": 1, "limit": 100}]

    async def test_error_status_raises(self):
        async with make_client(lambda request: httpx.Response(502)) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await client.fetch_messages()


class TestFetchMedia:

    async def test_success(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"base64": "aGVsbG8=", "mimetype": "image/jpeg"})

        async with make_client(handler) as client:
            media = await client.fetch_media("key-1", MediaKind.IMAGE)

        assert media.base64 == "aGVsbG8="
        assert media.mimetype == "image/jpeg"
        assert bodies == [{"message": {"key": {"id": "key-1"}}, "convertToMp4": False}]

    async def test_video_requests_mp4(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"base64": "AAAA"})

        async with make_client(handler) as client:
            media = await client.fetch_media("key-2", MediaKind.VIDEO)

        assert bodies[0]["convertToMp4"] is True
        assert media.mimetype == "application/octet-stream"

    @pytest.mark.parametrize("response", [
        httpx.Response(404),
        httpx.Response(200, json={"base64": ""}),
        httpx.Response(200, content=b"not json"),
    ])
    async def test_failures_return_none(self, response):
        async with make_client(lambda request: response) as client:
            assert await client.fetch_media("key-1", MediaKind.AUDIO) is None

    async def test_transport_error_returns_none(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_client(handler) as client:
            assert await client.fetch_media("key-1", MediaKind.DOCUMENT) is None


class TestInstanceStats:

    INSTANCES = [
        {"name": "other", "_count": {"Message": 1}},
        {
            "name": "clinic",
            "connectionStatus": "open",
            "profileName": "Elite Clinic",
            "number": "971500000000",
            "_count": {"Message": 1200, "Contact": 300, "Chat": 150},
        },
    ]

    def test_parse(self):
        stats = parse_instance_stats(self.INSTANCES, "clinic")

        assert stats.total_messages == 1200
        assert stats.total_contacts == 300
        assert stats.total_chats == 150
        assert stats.connection_status == "open"
        assert stats.profile_name == "Elite Clinic"

    def test_unknown_instance(self):
        assert parse_instance_stats(self.INSTANCES, "missing") is None
        assert parse_instance_stats({"error": "x"}, "clinic") is None

    async def test_fetch(self):
        async with make_client(lambda request: httpx.Response(200, json=self.INSTANCES)) as client:
            stats = await client.fetch_instance_stats()
        assert stats.phone_number == "971500000000"

    async def test_fetch_failure_returns_none(self):
        async with make_client(lambda request: httpx.Response(500)) as client:
            assert await client.fetch_instance_stats() is None
