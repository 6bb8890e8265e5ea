"""
Evolution API client (WhatsApp provider).

Only the three calls the monitor needs: the recent message window, base64
media for a single message, and the instance counters.
"""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from clinic_monitor.schemas import (
    InstanceStats,
    MediaKind,
    MediaPayload,
    MessagePage,
    ProviderMessage,
)

logger = logging.getLogger(__name__)


def _valid_records(raw_records: list[Any]) -> list[ProviderMessage]:
    """Drop anything that is not a dict with key.remoteJid."""
    records = []
    for raw in raw_records:
        if not isinstance(raw, dict):
            continue
        try:
            records.append(ProviderMessage.model_validate(raw))
        except ValidationError as e:
            logger.debug(f"Skipping invalid provider record {raw.get('id')}: {e.error_count()} errors")
    return records


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


def parse_message_envelope(data: Any) -> MessagePage:
    """
    Parse a findMessages response body.

    Known shapes, tried in order:
    - {"messages": {"records": [...], "total": n, "pages": n}}
    - {"messages": [...]}
    - [...]
    Anything else yields an empty page.
    """
    if isinstance(data, dict):
        messages = data.get("messages")
        if isinstance(messages, dict) and isinstance(messages.get("records"), list):
            records = _valid_records(messages["records"])
            return MessagePage(
                records=records,
                total=_as_int(messages.get("total"), len(records)),
                pages=_as_int(messages.get("pages"), 1),
            )
        if isinstance(messages, list):
            records = _valid_records(messages)
            return MessagePage(records=records, total=len(records), pages=1)
    elif isinstance(data, list):
        records = _valid_records(data)
        return MessagePage(records=records, total=len(records), pages=1)

    logger.warning("Unrecognized findMessages response shape")
    return MessagePage()


def parse_instance_stats(data: Any, instance_name: str) -> Optional[InstanceStats]:
    if not isinstance(data, list):
        return None
    for instance in data:
        if not isinstance(instance, dict) or instance.get("name") != instance_name:
            continue
        counts = instance.get("_count") or {}
        return InstanceStats(
            total_messages=_as_int(counts.get("Message"), 0),
            total_contacts=_as_int(counts.get("Contact"), 0),
            total_chats=_as_int(counts.get("Chat"), 0),
            connection_status=instance.get("connectionStatus") or "unknown",
            profile_name=instance.get("profileName") or "",
            phone_number=instance.get("number") or "",
        )
    return None


class EvolutionClient:
    """
    Async client for one provider instance.

    Args:
        base_url: Evolution API base URL
        api_key: Sent as the `apikey` header
        instance: Instance name used in every path
        timeout_s: httpx timeout; the only bound on a hanging request
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        instance: str,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.instance = instance
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"apikey": api_key, "Content-Type": "application/json"},
            timeout=timeout_s,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "EvolutionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def fetch_messages(
        self,
        page: int = 1,
        limit: int = 100,
        from_me: Optional[bool] = None,
    ) -> MessagePage:
        """
        Fetch one page of the instance's recent messages.

        Raises:
            httpx.HTTPError: transport failure or non-2xx response
        """
        where: dict[str, Any] = {}
        if from_me is not None:
            where["key"] = {"fromMe": from_me}

        response = await self._client.post(
            f"/chat/findMessages/{self.instance}",
            json={"where": where, "page": page, "limit": limit},
        )
        response.raise_for_status()

        page_data = parse_message_envelope(response.json())
        logger.info(f"Fetched {len(page_data.records)} valid messages from provider (total={page_data.total})")
        return page_data

    async def fetch_media(self, message_key: str, kind: MediaKind) -> Optional[MediaPayload]:
        """
        Fetch a message's media as base64. Returns None on any failure.
        """
        try:
            response = await self._client.post(
                f"/chat/getBase64FromMediaMessage/{self.instance}",
                json={
                    "message": {"key": {"id": message_key}},
                    "convertToMp4": kind == MediaKind.VIDEO,
                },
            )
            if response.status_code >= 400:
                logger.error(f"Failed to fetch media {message_key}: {response.status_code}")
                return None
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error fetching media {message_key}: {e}")
            return None

        if not isinstance(data, dict) or not data.get("base64"):
            logger.warning(f"Provider returned no media for {message_key}")
            return None
        return MediaPayload(
            base64=data["base64"],
            mimetype=data.get("mimetype") or "application/octet-stream",
        )

    async def fetch_instance_stats(self) -> Optional[InstanceStats]:
        """Counters and connection status for this instance, or None."""
        try:
            response = await self._client.get("/instance/fetchInstances")
            response.raise_for_status()
            return parse_instance_stats(response.json(), self.instance)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error fetching instance stats: {e}")
            return None
