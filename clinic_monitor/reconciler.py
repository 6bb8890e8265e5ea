"""
Multi-source conversation reconciliation.

Merges three imperfectly overlapping inputs into one ordered, deduplicated
timeline per contact:

- the provider's recent message window
- the assistant's generation log (assistant and human turns)
- the outgoing message log

Each run recomputes everything from the sources. The only state carried
between runs is the fingerprint snapshot, which the caller passes in and
gets back in the result.
"""

import asyncio
import logging
import time
from bisect import bisect_left, bisect_right, insort_right
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, Sequence, TypeVar

from clinic_monitor.attribution import (
    AttributionClassifier,
    FingerprintSnapshot,
    build_snapshot,
    fingerprint,
    is_stale,
    prefix_match,
)
from clinic_monitor.identity import try_resolve_contact_key
from clinic_monitor.metrics import record_reconcile_duration, record_reconcile_outcome, record_source_failure
from clinic_monitor.normalizer import delivery_status_from_updates, extract_content, is_content_free
from clinic_monitor.schemas import (
    CanonicalMessage,
    DeliveryStatus,
    Direction,
    EngineOptions,
    GenerationLogRow,
    LogRole,
    MediaKind,
    MessagePage,
    MessageSource,
    OutgoingLogRow,
    ProviderMessage,
)
from clinic_monitor.utils import to_epoch_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

PROVIDER = MessageSource.PROVIDER.value
GENERATION_LOG = MessageSource.GENERATION_LOG.value
OUTGOING_LOG = MessageSource.OUTGOING_LOG.value


# =============================================================================
# Source Protocols
# =============================================================================

class MessageProvider(Protocol):
    async def fetch_messages(
        self, page: int = 1, limit: int = 100, from_me: Optional[bool] = None
    ) -> MessagePage: ...


class GenerationLog(Protocol):
    async def fetch_rows(self, contact_key: Optional[str] = None) -> list[GenerationLogRow]: ...

    async def list_contact_keys(self) -> list[str]: ...


class OutgoingLog(Protocol):
    async def fetch_rows(self, contact_key: str) -> list[OutgoingLogRow]: ...

    async def fetch_all_rows(self) -> list[OutgoingLogRow]: ...

    async def list_contact_keys(self) -> list[str]: ...


@dataclass(frozen=True)
class ReconcileResult:
    """
    Output of one reconciliation run.

    - messages: contact key -> timeline, oldest first
    - contact_names: provider-observed names of contacts
    - snapshot: fingerprint snapshot to pass to the next run (None forces a rebuild)
    - degraded_sources: sources that failed during this run
    """
    messages: dict[str, list[CanonicalMessage]] = field(default_factory=dict)
    contact_names: dict[str, str] = field(default_factory=dict)
    snapshot: Optional[FingerprintSnapshot] = None
    degraded_sources: tuple[str, ...] = ()


# =============================================================================
# Helpers
# =============================================================================

async def guard_source(source: str, call: Awaitable[T], default: T, degraded: set[str]) -> T:
    """Await `call`; on failure log it, count it, mark `source` degraded and return `default`."""
    try:
        return await call
    except Exception as e:
        logger.warning(
            f"Source {source} unavailable: {type(e).__name__}: {e}",
            extra={"source": source},
        )
        record_source_failure(source)
        degraded.add(source)
        return default


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int,
) -> list[R]:
    """
    Run `worker` over `items` with at most `limit` calls in flight.

    Results keep the order of `items`.
    """
    results: list[Any] = [None] * len(items)
    pending = iter(enumerate(items))

    async def drain() -> None:
        # Workers share one iterator; each pulls the next item when free
        for index, item in pending:
            results[index] = await worker(item)

    await asyncio.gather(*(drain() for _ in range(min(limit, len(items)))))
    return results


def _is_duplicate(kept: CanonicalMessage, candidate: CanonicalMessage, tolerance_ms: int, length: int) -> bool:
    if kept.source == candidate.source or kept.direction != candidate.direction:
        return False
    if abs(kept.timestamp_ms - candidate.timestamp_ms) > tolerance_ms:
        return False
    return prefix_match(fingerprint(kept.text, length), fingerprint(candidate.text, length))


def _timestamp(message: CanonicalMessage) -> int:
    return message.timestamp_ms


def merge_timelines(
    groups: Iterable[list[CanonicalMessage]],
    tolerance_ms: int,
    fingerprint_length: int,
) -> tuple[list[CanonicalMessage], int]:
    """
    Merge per-source timelines for one contact.

    Groups are taken in priority order; a message is dropped when an already
    kept message from a different source, in the same direction, has a
    matching fingerprint within `tolerance_ms`. Messages without text never
    deduplicate.

    Returns:
        (merged timeline sorted by timestamp, number of duplicates dropped)
    """
    # Kept sorted by timestamp; equal timestamps stay in insertion order
    kept: list[CanonicalMessage] = []
    duplicates = 0

    for group in groups:
        for candidate in sorted(group, key=_timestamp):
            lo = bisect_left(kept, candidate.timestamp_ms - tolerance_ms, key=_timestamp)
            hi = bisect_right(kept, candidate.timestamp_ms + tolerance_ms, key=_timestamp)
            match = next(
                (
                    i for i in range(lo, hi)
                    if _is_duplicate(kept[i], candidate, tolerance_ms, fingerprint_length)
                ),
                None,
            )
            if match is None:
                insort_right(kept, candidate, key=_timestamp)
                continue

            duplicates += 1
            existing = kept[match]
            # The log may know the assistant wrote it even when the snapshot didn't
            if (
                candidate.is_automated
                and candidate.direction == Direction.OUTGOING
                and not existing.is_automated
            ):
                kept[match] = existing.model_copy(update={"is_automated": True})

    return kept, duplicates


# =============================================================================
# Reconciler
# =============================================================================

class Reconciler:
    """
    Orchestrates one reconciliation run over the three sources.

    Args:
        provider: Provider message window
        generation_log: Assistant generation log
        outgoing_log: Outgoing message log
        options: Tunable thresholds
    """

    def __init__(
        self,
        provider: MessageProvider,
        generation_log: GenerationLog,
        outgoing_log: OutgoingLog,
        options: Optional[EngineOptions] = None,
    ) -> None:
        self.provider = provider
        self.generation_log = generation_log
        self.outgoing_log = outgoing_log
        self.options = options or EngineOptions()

    async def reconcile(
        self,
        snapshot: Optional[FingerprintSnapshot] = None,
        now: Optional[float] = None,
    ) -> ReconcileResult:
        """
        Build per-contact timelines from all sources.

        Never raises: failed sources contribute nothing, and a failure of the
        run itself yields an empty result.

        Args:
            snapshot: Fingerprint snapshot from the previous run, if any
            now: Current epoch seconds (defaults to time.time())
        """
        started = time.monotonic()
        now = time.time() if now is None else now
        try:
            return await _Run(self, now).execute(snapshot)
        except Exception:
            logger.exception("Reconciliation failed")
            return ReconcileResult(snapshot=snapshot)
        finally:
            record_reconcile_duration(time.monotonic() - started)


class _Run:
    """State of a single reconcile call."""

    def __init__(self, reconciler: Reconciler, now: float) -> None:
        self.provider = reconciler.provider
        self.generation_log = reconciler.generation_log
        self.outgoing_log = reconciler.outgoing_log
        self.options = reconciler.options
        self.now = now
        self.degraded: set[str] = set()
        self.classifier: Optional[AttributionClassifier] = None

    async def guard(self, source: str, call: Awaitable[T], default: T) -> T:
        return await guard_source(source, call, default, self.degraded)

    async def execute(self, snapshot: Optional[FingerprintSnapshot]) -> ReconcileResult:
        opts = self.options
        rebuild = is_stale(snapshot, self.now, opts.cache_ttl_seconds)

        async def no_rows() -> Optional[list[GenerationLogRow]]:
            return None

        page, generation_keys, outgoing_keys, snapshot_rows = await asyncio.gather(
            self.guard(PROVIDER, self.provider.fetch_messages(limit=opts.provider_window_limit), MessagePage()),
            self.guard(GENERATION_LOG, self.generation_log.list_contact_keys(), None),
            self.guard(OUTGOING_LOG, self.outgoing_log.list_contact_keys(), None),
            self.guard(GENERATION_LOG, self.generation_log.fetch_rows(), None) if rebuild else no_rows(),
        )

        if rebuild:
            snapshot = (
                build_snapshot(snapshot_rows, self.now, opts.fingerprint_length)
                if snapshot_rows is not None
                else None
            )
        self.classifier = AttributionClassifier.for_locale(snapshot, opts.locale, opts.fingerprint_length)

        provider_timelines, contact_names = self.normalize_provider(page.records)

        logged_keys = set(generation_keys or ()) | set(outgoing_keys or ())
        contacts = sorted(set(provider_timelines) | logged_keys)
        if opts.restrict_to_logged_contacts and (generation_keys is not None or outgoing_keys is not None):
            contacts = [c for c in contacts if c in logged_keys]

        async def backfill(contact_key: str) -> list[list[CanonicalMessage]]:
            return await self.backfill_contact(contact_key, generation_keys, outgoing_keys)

        backfilled = await run_bounded(contacts, backfill, opts.backfill_batch_size)

        timelines: dict[str, list[CanonicalMessage]] = {}
        total_duplicates = 0
        for contact_key, log_groups in zip(contacts, backfilled):
            merged, duplicates = merge_timelines(
                [provider_timelines.get(contact_key, []), *log_groups],
                opts.dedup_tolerance_ms,
                opts.fingerprint_length,
            )
            total_duplicates += duplicates
            if merged:
                timelines[contact_key] = merged

        record_reconcile_outcome("duplicate", total_duplicates)
        record_reconcile_outcome("kept", sum(len(t) for t in timelines.values()))
        logger.info(
            f"Reconciled {len(timelines)} contacts "
            f"({len(page.records)} provider records, {total_duplicates} duplicates dropped)"
        )

        return ReconcileResult(
            messages=timelines,
            contact_names={k: v for k, v in contact_names.items() if k in timelines},
            snapshot=snapshot,
            degraded_sources=tuple(sorted(self.degraded)),
        )

    # -------------------------------------------------------------------------
    # Provider window
    # -------------------------------------------------------------------------

    def normalize_provider(
        self, records: list[ProviderMessage]
    ) -> tuple[dict[str, list[CanonicalMessage]], dict[str, str]]:
        timelines: dict[str, list[CanonicalMessage]] = {}
        names: dict[str, str] = {}
        unresolvable = content_free = 0

        for record in records:
            contact_key = try_resolve_contact_key(record.key.remote_jid, record.key.alternate_jid)
            if contact_key is None:
                unresolvable += 1
                continue

            message = self.provider_message(record, contact_key)
            if message is None:
                content_free += 1
                continue

            timelines.setdefault(contact_key, []).append(message)

        # Latest incoming push name wins
        for timeline in timelines.values():
            for message in sorted(timeline, key=lambda m: m.timestamp_ms):
                if message.direction == Direction.INCOMING and message.sender_label != message.contact_key:
                    names[message.contact_key] = message.sender_label

        record_reconcile_outcome("unresolvable_identity", unresolvable)
        record_reconcile_outcome("content_free", content_free)
        if unresolvable or content_free:
            logger.debug(f"Dropped provider records: {unresolvable} unresolvable, {content_free} empty")
        return timelines, names

    def provider_message(self, record: ProviderMessage, contact_key: str) -> Optional[CanonicalMessage]:
        content = extract_content(record.message, self.options.locale)
        if is_content_free(content):
            return None

        raw_ts = record.message_timestamp or int(self.now)
        # Some provider versions report milliseconds
        timestamp_ms = raw_ts if raw_ts > 10**12 else raw_ts * 1000
        direction = Direction.OUTGOING if record.key.from_me else Direction.INCOMING

        return CanonicalMessage(
            id=record.id or record.key.id or f"msg-{contact_key}-{timestamp_ms}",
            source_message_key=record.key.id,
            contact_key=contact_key,
            sender_label=record.push_name or contact_key,
            direction=direction,
            text=content.text,
            media_kind=content.media_kind,
            media_locator=content.media_locator,
            timestamp_ms=timestamp_ms,
            delivery_status=delivery_status_from_updates(record.message_updates),
            is_automated=self.classifier.is_automated(contact_key, content.text, direction),
            source=MessageSource.PROVIDER,
        )

    # -------------------------------------------------------------------------
    # Log backfill
    # -------------------------------------------------------------------------

    async def backfill_contact(
        self,
        contact_key: str,
        generation_keys: Optional[list[str]],
        outgoing_keys: Optional[list[str]],
    ) -> list[list[CanonicalMessage]]:
        """Full log history for one contact, one list per log."""

        async def nothing() -> list:
            return []

        # Skip a log whose key listing succeeded and does not mention the contact
        want_generation = generation_keys is None or contact_key in generation_keys
        want_outgoing = outgoing_keys is None or contact_key in outgoing_keys

        generation_rows, outgoing_rows = await asyncio.gather(
            self.guard(GENERATION_LOG, self.generation_log.fetch_rows(contact_key), [])
            if want_generation else nothing(),
            self.guard(OUTGOING_LOG, self.outgoing_log.fetch_rows(contact_key), [])
            if want_outgoing else nothing(),
        )

        return [
            self.generation_messages(contact_key, generation_rows),
            self.outgoing_messages(contact_key, outgoing_rows),
        ]

    def generation_messages(self, contact_key: str, rows: list[GenerationLogRow]) -> list[CanonicalMessage]:
        # A patient turn the assistant has answered since counts as read
        last_reply_ms = max(
            (
                to_epoch_ms(row.created_at) for row in rows
                if row.role == LogRole.ASSISTANT and row.contact_key == contact_key
            ),
            default=None,
        )

        messages = []
        for row in rows:
            # Tool turns are pipeline internals, never sent over WhatsApp
            if row.role == LogRole.TOOL or row.contact_key != contact_key or not row.text.strip():
                continue
            automated = row.role == LogRole.ASSISTANT
            timestamp_ms = to_epoch_ms(row.created_at)
            answered = not automated and last_reply_ms is not None and last_reply_ms >= timestamp_ms
            messages.append(CanonicalMessage(
                id=f"history-{row.id}",
                contact_key=contact_key,
                sender_label=self.options.outgoing_sender_label if automated else contact_key,
                direction=Direction.OUTGOING if automated else Direction.INCOMING,
                text=row.text,
                media_kind=MediaKind.TEXT,
                timestamp_ms=timestamp_ms,
                delivery_status=DeliveryStatus.READ if answered else DeliveryStatus.SENT,
                is_automated=automated,
                source=MessageSource.GENERATION_LOG,
            ))
        return messages

    def outgoing_messages(self, contact_key: str, rows: list[OutgoingLogRow]) -> list[CanonicalMessage]:
        messages = []
        for row in rows:
            if not row.text.strip():
                continue
            incoming = row.direction == Direction.INCOMING
            messages.append(CanonicalMessage(
                id=f"log-{row.id}",
                contact_key=contact_key,
                sender_label=contact_key if incoming else self.options.outgoing_sender_label,
                direction=row.direction,
                text=row.text,
                media_kind=MediaKind.TEXT,
                timestamp_ms=to_epoch_ms(row.created_at),
                delivery_status=DeliveryStatus.READ if incoming and row.resolved else DeliveryStatus.SENT,
                is_automated=self.classifier.is_automated(contact_key, row.text, row.direction),
                source=MessageSource.OUTGOING_LOG,
            ))
        return messages
