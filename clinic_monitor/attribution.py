"""
Assistant vs. staff attribution for outgoing messages.

The assistant's generation log is the ground truth: an outgoing message is
automated when its fingerprint and one of the contact's logged assistant
fingerprints are prefixes of one another. Contacts without log entries, or
runs where the log could not be read, fall back to matching known assistant
phrases.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Sequence

from clinic_monitor.schemas import Direction, GenerationLogRow, LogRole

logger = logging.getLogger(__name__)

# Phrases the assistant opens or confirms with, per configured language
GREETING_PATTERNS: dict[str, tuple[str, ...]] = {
    "ar": (
        "أهلاً",
        "مرحبا",
        "شكراً لتواصلك",
        "يسعدنا تذكيرك",
        "تم حجز موعدك",
        "تم تأكيد",
        "تم إلغاء",
        "للتأكيد رد بـ",
        "أنا موجودة لو عندك",
        "كيف أقدر أساعدك",
    ),
    "en": (
        "thank you for contacting",
        "your appointment has been booked",
        "your appointment is confirmed",
        "your appointment has been cancelled",
        "reply to confirm",
        "how can i help you",
        "this is a reminder",
    ),
}


def fingerprint(text: str, length: int) -> str:
    """Lower-cased, whitespace-collapsed, length-bounded text."""
    return " ".join((text or "").lower().split())[:length]


def prefix_match(a: str, b: str) -> bool:
    """True when either fingerprint is a prefix of the other. Empty never matches."""
    if not a or not b:
        return False
    return a.startswith(b) or b.startswith(a)


# =============================================================================
# Fingerprint Snapshot
# =============================================================================

@dataclass(frozen=True)
class FingerprintSnapshot:
    """Assistant-authored fingerprints per contact, as of `built_at` (epoch seconds)."""
    built_at: float
    data: Mapping[str, frozenset[str]] = field(default_factory=lambda: MappingProxyType({}))

    def fingerprints_for(self, contact_key: str) -> frozenset[str]:
        return self.data.get(contact_key, frozenset())


def build_snapshot(rows: Iterable[GenerationLogRow], now: float, length: int) -> FingerprintSnapshot:
    collected: dict[str, set[str]] = {}
    for row in rows:
        if row.role != LogRole.ASSISTANT:
            continue
        fp = fingerprint(row.text, length)
        if fp:
            collected.setdefault(row.contact_key, set()).add(fp)
    data = {contact: frozenset(fps) for contact, fps in collected.items()}
    logger.debug(f"Built fingerprint snapshot: {len(data)} contacts")
    return FingerprintSnapshot(built_at=now, data=MappingProxyType(data))


def is_stale(snapshot: Optional[FingerprintSnapshot], now: float, ttl_seconds: float) -> bool:
    if snapshot is None:
        return True
    return now - snapshot.built_at >= ttl_seconds


# =============================================================================
# Classifier
# =============================================================================

class AttributionClassifier:
    """
    Decides whether an outgoing message was produced by the assistant.

    Args:
        snapshot: Generation-log fingerprints, or None when the log is unavailable
        patterns: Fallback assistant phrases
        fingerprint_length: Prefix length used for both sides of the comparison
    """

    def __init__(
        self,
        snapshot: Optional[FingerprintSnapshot],
        patterns: Sequence[str],
        fingerprint_length: int,
    ) -> None:
        self._snapshot = snapshot
        self._patterns = tuple(p.lower() for p in patterns)
        self._length = fingerprint_length

    @classmethod
    def for_locale(
        cls,
        snapshot: Optional[FingerprintSnapshot],
        locale: str,
        fingerprint_length: int,
    ) -> "AttributionClassifier":
        return cls(snapshot, GREETING_PATTERNS.get(locale, ()), fingerprint_length)

    def matches_generation_log(self, contact_key: str, text: str) -> Optional[bool]:
        """
        Prefix test against the contact's logged fingerprints.
        Returns None when the log has nothing for this contact.
        """
        if self._snapshot is None:
            return None
        known = self._snapshot.fingerprints_for(contact_key)
        if not known:
            return None
        fp = fingerprint(text, self._length)
        return any(prefix_match(fp, candidate) for candidate in known)

    def matches_patterns(self, text: str) -> bool:
        lowered = (text or "").lower()
        return any(pattern in lowered for pattern in self._patterns)

    def is_automated(self, contact_key: str, text: str, direction: Direction) -> bool:
        if direction != Direction.OUTGOING:
            return False
        from_log = self.matches_generation_log(contact_key, text)
        if from_log is not None:
            return from_log
        return self.matches_patterns(text)
