"""
Batch Orchestrator.

Drives one scrape batch through the deduplication engine. Each record goes
through:

    fast path (known source key)  -> refresh, counted ``updated``
    pool match above threshold    -> merge,   counted ``merged``
    otherwise                     -> insert,  counted ``inserted``

Records are processed strictly in order: every write is visible to the
records after it through the candidate pool. A failing record is counted
``skipped`` and the batch continues; only ``FatalStorageError`` aborts it.
"""

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from event_catalog.configs.config import DedupConfig
from event_catalog.ingestion.candidates import CandidatePool
from event_catalog.ingestion.errors import (
    DuplicateKeyError,
    FatalStorageError,
    StorageError,
)
from event_catalog.ingestion.merge import MergeEngine, MergeResult
from event_catalog.ingestion.notifications import ChangeNotifier
from event_catalog.ingestion.persist import EventStore
from event_catalog.ingestion.resolver import MatchResolver
from event_catalog.ingestion.similarity import SimilarityScorer
from event_catalog.monitoring.logging import LogSampler, with_context
from event_catalog.schemas.event import CanonicalEvent, NormalizedEvent, lineage_key

logger = logging.getLogger(__name__)

RecordInput = Union[NormalizedEvent, Mapping[str, Any]]


@dataclass
class BatchStats:
    """Per-batch outcome counts."""

    inserted: int = 0
    updated: int = 0
    merged: int = 0
    skipped: int = 0
    notifications: int = 0

    @property
    def processed(self) -> int:
        return self.inserted + self.updated + self.merged + self.skipped

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class BatchResult:
    batch_id: str
    source_name: str
    stats: BatchStats
    inserted_events: List[CanonicalEvent] = field(default_factory=list)
    stopped: bool = False
    suppressed_logs: Dict[str, int] = field(default_factory=dict)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BatchOrchestrator:
    """
    Deduplicate and persist scrape batches against an ``EventStore``.

    One orchestrator runs one batch at a time. Concurrent batches against the
    same catalog do not see each other's inserts.
    """

    def __init__(
        self,
        store: EventStore,
        *,
        config: Optional[DedupConfig] = None,
        notifier: Optional[ChangeNotifier] = None,
        sampler: Optional[LogSampler] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.config = config or DedupConfig()
        self.notifier = notifier
        self.sampler = sampler or LogSampler()
        self.clock = clock

        self.scorer = SimilarityScorer(self.config.matching)
        self.resolver = MatchResolver(self.scorer)
        self.merger = MergeEngine(self.config)

        self._stop = threading.Event()

    def request_stop(self) -> None:
        """Finish the current record, then end the batch."""
        self._stop.set()

    # ========================================================================
    # BATCH
    # ========================================================================

    def run_batch(self, events: Iterable[RecordInput], source_name: str) -> BatchResult:
        """
        Process ``events`` in order.

        Raises:
            FatalStorageError: the snapshot could not be loaded or storage
                stayed unreachable; ``partial_stats`` holds the counts so far.
        """
        result = BatchResult(
            batch_id=uuid.uuid4().hex[:12],
            source_name=source_name,
            stats=BatchStats(),
        )
        log = with_context(logger, batch_id=result.batch_id, source=source_name, stage="dedup")
        self.sampler.reset()

        try:
            snapshot = self.store.fetch_all()
        except FatalStorageError as e:
            e.partial_stats = result.stats.to_dict()
            raise
        except StorageError as e:
            raise FatalStorageError(
                f"Could not load catalog snapshot: {e}", result.stats.to_dict()
            ) from e

        pool = CandidatePool(snapshot, self.config.matching)
        log.info(f"Processing batch against {len(pool)} canonical events")

        try:
            for position, raw in enumerate(events):
                if self._stop.is_set():
                    result.stopped = True
                    log.warning(f"Stop requested; ending batch before record {position}")
                    break
                self._process_safely(raw, position, source_name, pool, result, log)
        except FatalStorageError as e:
            e.partial_stats = result.stats.to_dict()
            log.error(f"Aborting batch: {e}")
            raise
        finally:
            self._stop.clear()

        result.suppressed_logs = self.sampler.suppressed()
        stats = result.stats
        log.info(
            f"Batch complete: {stats.inserted} inserted, {stats.updated} updated, "
            f"{stats.merged} merged, {stats.skipped} skipped, "
            f"{stats.notifications} notifications"
        )
        if result.suppressed_logs:
            log.info(f"Suppressed per-record log lines: {result.suppressed_logs}")
        return result

    def _process_safely(
        self,
        raw: RecordInput,
        position: int,
        source_name: str,
        pool: CandidatePool,
        result: BatchResult,
        log: logging.LoggerAdapter,
    ) -> None:
        try:
            self._process(self._coerce(raw, source_name), pool, result, log)
        except FatalStorageError:
            raise
        except ValidationError as e:
            self._skip(result, log, "invalid", f"Record {position} failed validation: {e}")
        except DuplicateKeyError as e:
            self._skip(result, log, "duplicate", f"Record {position} hit a duplicate key: {e}")
        except StorageError as e:
            self._skip(result, log, "storage", f"Record {position} could not be stored: {e}")
        except Exception as e:
            log.exception(f"Unexpected error on record {position}: {e}")
            result.stats.skipped += 1

    def _skip(self, result: BatchResult, log, kind: str, message: str) -> None:
        result.stats.skipped += 1
        if self.sampler.allow(kind):
            log.warning(message)

    @staticmethod
    def _coerce(raw: RecordInput, source_name: str) -> NormalizedEvent:
        if isinstance(raw, NormalizedEvent):
            return raw
        data = dict(raw)
        if not data.get("source"):
            data["source"] = source_name
        return NormalizedEvent.model_validate(data)

    # ========================================================================
    # PER RECORD
    # ========================================================================

    def _process(
        self,
        record: NormalizedEvent,
        pool: CandidatePool,
        result: BatchResult,
        log: logging.LoggerAdapter,
    ) -> None:
        now = self.clock()
        key = lineage_key(record.source, record.source_id)

        owner = pool.owner_of(record.source, record.source_id)
        if owner is not None:
            merged = self.merger.refresh(owner, record, now)
            self._apply(merged, pool)
            result.stats.updated += 1
            if self.sampler.allow("updated"):
                log.debug(f"Updated {owner.event_id} from {key}")
            self._notify(merged, result, log)
            return

        match = self.resolver.resolve(record, pool)
        if match is not None:
            merged = self.merger.merge(match.event, record, now)
            self._apply(merged, pool)
            result.stats.merged += 1
            if self.sampler.allow("merged"):
                log.info(
                    f"Merged {key} into {match.event_id} "
                    f"(confidence={match.confidence:.2f}, {match.reason})"
                )
            self._notify(merged, result, log)
            return

        event = CanonicalEvent.from_normalized(record, now)
        self.store.insert(event)
        pool.add_pending(event)
        result.inserted_events.append(event)
        result.stats.inserted += 1
        if self.sampler.allow("inserted"):
            log.debug(f"Inserted {event.event_id} for {key}")

    def _apply(self, merged: MergeResult, pool: CandidatePool) -> None:
        # The pool only changes once the store has accepted the write
        self.store.update(merged.event.event_id, merged.patch)
        pool.replace(merged.event)

    def _notify(self, merged: MergeResult, result: BatchResult, log) -> None:
        if self.notifier is None or not merged.changes.has_changes:
            return
        try:
            self.notifier.on_significant_change(merged.event, merged.changes)
        except Exception as e:
            if self.sampler.allow("notification_failed"):
                log.warning(f"Notification for {merged.event.event_id} failed: {e}")
            return
        result.stats.notifications += 1


def process_events_with_deduplication(
    events: Iterable[RecordInput],
    source_name: str,
    store: EventStore,
    **kwargs: Any,
) -> Dict[str, int]:
    """
    Run one batch and return ``{inserted, updated, merged, skipped, notifications}``.

    Keyword arguments are passed to ``BatchOrchestrator``.
    """
    orchestrator = BatchOrchestrator(store, **kwargs)
    return orchestrator.run_batch(events, source_name).stats.to_dict()
