"""
Candidate pool for one batch.

The pool is the existing catalog snapshot plus every event inserted earlier in
the same batch. It answers two questions:

- which canonical event already owns a ``(source, source_id)`` key
- which canonical events could plausibly match an incoming record

The second is narrowed with a date-window prefilter. Events whose day gap to
the record is wider than the matching window score 0 on the date signal, so
their best possible confidence is ``1 - date_weight``. When that is below the
match threshold the prefilter drops nothing a full scan would have matched;
otherwise the pool falls back to a full scan.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Iterable, Iterator

from event_catalog.configs.config import MatchingConfig
from event_catalog.ingestion.errors import PoolInconsistencyError
from event_catalog.schemas.event import CanonicalEvent, NormalizedEvent

logger = logging.getLogger(__name__)

# Events running longer than this are kept in a list scanned on every lookup
MAX_BUCKETED_SPAN_DAYS = 14


def _span(event: NormalizedEvent) -> tuple[date, date]:
    start = event.start_date.date()
    end = event.end_date.date() if event.end_date else start
    return start, max(start, end)


def _days(start: date, end: date) -> Iterator[date]:
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


class CandidatePool:
    """Snapshot + batch-pending canonical events with lookup indexes."""

    def __init__(
        self,
        snapshot: Iterable[CanonicalEvent] = (),
        matching: MatchingConfig | None = None,
    ):
        self.matching = matching or MatchingConfig()
        self.window_days = self.matching.date_window_days

        best_without_date = 1.0 - self.matching.weights.date
        self.prefilter_enabled = best_without_date < self.matching.threshold

        self._events: dict[str, CanonicalEvent] = {}
        self._ordinals: dict[str, int] = {}
        self._pending: set[str] = set()
        self._by_day: dict[date, set[str]] = defaultdict(set)
        self._spanning: set[str] = set()
        self._keys: dict[tuple[str, str], str] = {}

        for event in snapshot:
            self._add(event)

        logger.debug(
            f"Candidate pool: {len(self._events)} snapshot events, "
            f"{len(self._spanning)} long-running, prefilter={self.prefilter_enabled}"
        )

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, event_id: str) -> CanonicalEvent:
        try:
            return self._events[event_id]
        except KeyError:
            raise PoolInconsistencyError(event_id) from None

    def ordinal(self, event_id: str) -> int:
        """Position of the event in pool order (snapshot first, then pending)."""
        return self._ordinals[event_id]

    def is_pending(self, event_id: str) -> bool:
        return event_id in self._pending

    @property
    def pending(self) -> list[CanonicalEvent]:
        return sorted(
            (self._events[eid] for eid in self._pending),
            key=lambda e: self._ordinals[e.event_id],
        )

    def owner_of(self, source: str, source_id: str) -> CanonicalEvent | None:
        """Canonical event that already carries this source key, if any."""
        event_id = self._keys.get((source, source_id))
        return self._events.get(event_id) if event_id else None

    def candidates_for(self, record: NormalizedEvent) -> list[CanonicalEvent]:
        """Canonical events that could score above threshold against ``record``."""
        if not self.prefilter_enabled:
            ids: Iterable[str] = self._events
        else:
            ids = self._window_ids(record)
        return sorted((self._events[eid] for eid in ids), key=lambda e: self._ordinals[e.event_id])

    def _window_ids(self, record: NormalizedEvent) -> set[str]:
        start, end = _span(record)
        lo = start - timedelta(days=self.window_days)
        hi = end + timedelta(days=self.window_days)

        if (end - start).days > MAX_BUCKETED_SPAN_DAYS:
            ids = {
                eid
                for eid, event in self._events.items()
                if self._overlaps(event, lo, hi)
            }
            return ids

        ids = set()
        for day in _days(lo, hi):
            ids.update(self._by_day.get(day, ()))
        ids.update(eid for eid in self._spanning if self._overlaps(self._events[eid], lo, hi))
        return ids

    @staticmethod
    def _overlaps(event: NormalizedEvent, lo: date, hi: date) -> bool:
        start, end = _span(event)
        return start <= hi and lo <= end

    # ------------------------------------------------------------------
    # Mutation (only after a successful write)
    # ------------------------------------------------------------------

    def add_pending(self, event: CanonicalEvent) -> None:
        """Register an event inserted earlier in this batch."""
        self._add(event)
        self._pending.add(event.event_id)

    def replace(self, event: CanonicalEvent) -> None:
        """Swap in the post-merge version of an event already in the pool."""
        if event.event_id not in self._events:
            raise PoolInconsistencyError(event.event_id)
        self._unindex(self._events[event.event_id])
        self._events[event.event_id] = event
        self._index(event)

    def _add(self, event: CanonicalEvent) -> None:
        if event.event_id in self._events:
            self.replace(event)
            return
        self._ordinals[event.event_id] = len(self._ordinals)
        self._events[event.event_id] = event
        self._index(event)

    def _index(self, event: CanonicalEvent) -> None:
        start, end = _span(event)
        if (end - start).days > MAX_BUCKETED_SPAN_DAYS:
            self._spanning.add(event.event_id)
        else:
            for day in _days(start, end):
                self._by_day[day].add(event.event_id)

        for key in event.source_keys():
            # First owner wins; a later claim would be a catalog inconsistency
            self._keys.setdefault(key, event.event_id)

    def _unindex(self, event: CanonicalEvent) -> None:
        if event.event_id in self._spanning:
            self._spanning.discard(event.event_id)
            return
        start, end = _span(event)
        for day in _days(start, end):
            bucket = self._by_day.get(day)
            if bucket:
                bucket.discard(event.event_id)
