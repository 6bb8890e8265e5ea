"""
Provider payload normalization.

A provider message carries at most one populated payload field
(``conversation``, ``imageMessage``, ...). ``parse_payload`` turns the raw
dict into one variant of a closed union; ``normalize_payload`` maps every
variant to ``(text, media_kind, media_locator)``.
"""

from dataclasses import dataclass
from typing import Any, Optional, Union, assert_never

from clinic_monitor.schemas import DeliveryStatus, MediaKind, ProviderStatusUpdate

# Localized fallback strings, keyed by assistant language
LABELS: dict[str, dict[str, str]] = {
    "ar": {
        "document": "مستند",
        "contact": "جهة اتصال",
        "attachment": "📎 مرفق",
    },
    "en": {
        "document": "Document",
        "contact": "Contact",
        "attachment": "📎 Attachment",
    },
}
DEFAULT_REACTION = "👍"


# =============================================================================
# Payload Variants
# =============================================================================

@dataclass(frozen=True)
class NoPayload:
    pass


@dataclass(frozen=True)
class TextPayload:
    text: str


@dataclass(frozen=True)
class ImagePayload:
    caption: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class AudioPayload:
    url: Optional[str] = None


@dataclass(frozen=True)
class DocumentPayload:
    file_name: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class VideoPayload:
    caption: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class StickerPayload:
    url: Optional[str] = None


@dataclass(frozen=True)
class LocationPayload:
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass(frozen=True)
class ContactCardPayload:
    display_name: Optional[str] = None


@dataclass(frozen=True)
class ReactionPayload:
    emoji: Optional[str] = None


@dataclass(frozen=True)
class UnknownPayload:
    fields: tuple[str, ...] = ()


Payload = Union[
    NoPayload,
    TextPayload,
    ImagePayload,
    AudioPayload,
    DocumentPayload,
    VideoPayload,
    StickerPayload,
    LocationPayload,
    ContactCardPayload,
    ReactionPayload,
    UnknownPayload,
]


@dataclass(frozen=True)
class NormalizedContent:
    text: str
    media_kind: MediaKind
    media_locator: Optional[str] = None


# =============================================================================
# Parsing
# =============================================================================

def _section(raw: dict[str, Any], name: str) -> Optional[dict[str, Any]]:
    value = raw.get(name)
    return value if isinstance(value, dict) else None


def _str(section: dict[str, Any], name: str) -> Optional[str]:
    value = section.get(name)
    return value if isinstance(value, str) and value else None


def _float(section: dict[str, Any], name: str) -> Optional[float]:
    value = section.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def parse_payload(raw: Optional[dict[str, Any]]) -> Payload:
    """
    Classify a raw provider payload. The first populated field wins, in the
    same order the provider documents them.
    """
    if raw is None:
        return NoPayload()

    conversation = raw.get("conversation")
    if isinstance(conversation, str) and conversation:
        return TextPayload(text=conversation)

    extended = _section(raw, "extendedTextMessage")
    if extended and _str(extended, "text"):
        return TextPayload(text=extended["text"])

    if (section := _section(raw, "imageMessage")) is not None:
        return ImagePayload(caption=_str(section, "caption"), url=_str(section, "url"))
    if (section := _section(raw, "audioMessage")) is not None:
        return AudioPayload(url=_str(section, "url"))
    if (section := _section(raw, "documentMessage")) is not None:
        return DocumentPayload(file_name=_str(section, "fileName"), url=_str(section, "url"))
    if (section := _section(raw, "videoMessage")) is not None:
        return VideoPayload(caption=_str(section, "caption"), url=_str(section, "url"))
    if (section := _section(raw, "stickerMessage")) is not None:
        return StickerPayload(url=_str(section, "url"))
    if (section := _section(raw, "locationMessage")) is not None:
        return LocationPayload(
            latitude=_float(section, "degreesLatitude"),
            longitude=_float(section, "degreesLongitude"),
        )
    if (section := _section(raw, "contactMessage")) is not None:
        return ContactCardPayload(display_name=_str(section, "displayName"))
    if (section := _section(raw, "reactionMessage")) is not None:
        return ReactionPayload(emoji=_str(section, "text"))

    return UnknownPayload(fields=tuple(sorted(raw)))


# =============================================================================
# Normalization
# =============================================================================

def _labels(locale: str) -> dict[str, str]:
    return LABELS.get(locale, LABELS["en"])


def _coordinate(value: Optional[float]) -> str:
    return f"{value:.4f}" if value is not None else "?"


def normalize_payload(payload: Payload, locale: str = "ar") -> NormalizedContent:
    """Map a parsed payload to displayable content."""
    labels = _labels(locale)
    match payload:
        case NoPayload():
            return NormalizedContent("", MediaKind.OTHER)
        case TextPayload(text=text):
            return NormalizedContent(text, MediaKind.TEXT)
        case ImagePayload(caption=caption, url=url):
            return NormalizedContent(caption or "", MediaKind.IMAGE, url)
        case AudioPayload(url=url):
            return NormalizedContent("", MediaKind.AUDIO, url)
        case DocumentPayload(file_name=file_name, url=url):
            return NormalizedContent(file_name or labels["document"], MediaKind.DOCUMENT, url)
        case VideoPayload(caption=caption, url=url):
            return NormalizedContent(caption or "", MediaKind.VIDEO, url)
        case StickerPayload(url=url):
            return NormalizedContent("", MediaKind.STICKER, url)
        case LocationPayload(latitude=lat, longitude=lng):
            return NormalizedContent(f"📍 {_coordinate(lat)}, {_coordinate(lng)}", MediaKind.OTHER)
        case ContactCardPayload(display_name=name):
            return NormalizedContent(f"👤 {name or labels['contact']}", MediaKind.OTHER)
        case ReactionPayload(emoji=emoji):
            return NormalizedContent(emoji or DEFAULT_REACTION, MediaKind.OTHER)
        case UnknownPayload():
            return NormalizedContent(labels["attachment"], MediaKind.OTHER)
        case _:
            assert_never(payload)


def extract_content(raw: Optional[dict[str, Any]], locale: str = "ar") -> NormalizedContent:
    return normalize_payload(parse_payload(raw), locale)


def is_content_free(content: NormalizedContent) -> bool:
    """No text and no media: nothing to display or deduplicate on."""
    return not content.text and content.media_kind == MediaKind.OTHER


def delivery_status_from_updates(updates: Optional[list[ProviderStatusUpdate]]) -> DeliveryStatus:
    """The provider appends acks in order; the last one wins."""
    if not updates:
        return DeliveryStatus.SENT
    last = updates[-1].status
    if last in ("READ", "PLAYED"):
        return DeliveryStatus.READ
    if last == "DELIVERY_ACK":
        return DeliveryStatus.DELIVERED
    return DeliveryStatus.SENT
