"""In-memory event store for tests and dry runs."""

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from event_catalog.ingestion.errors import DuplicateKeyError, StorageError
from event_catalog.ingestion.merge import apply_patch
from event_catalog.ingestion.persist import EventStore
from event_catalog.schemas.changes import EventPatch
from event_catalog.schemas.event import CanonicalEvent

logger = logging.getLogger(__name__)


class InMemoryEventStore(EventStore):
    """
    Dictionary-backed ``EventStore`` that enforces the same
    ``(source, source_id)`` uniqueness as the Postgres tables.

    Events are copied on the way in and out so callers can never mutate
    stored state behind the store's back.
    """

    def __init__(self, events: Iterable[CanonicalEvent] = ()) -> None:
        self._events: Dict[str, CanonicalEvent] = {}
        self._keys: Dict[Tuple[str, str], str] = {}
        for event in events:
            self.insert(event)

    def __len__(self) -> int:
        return len(self._events)

    # ------------------------------------------------------------------
    # JSON catalog files
    # ------------------------------------------------------------------

    @classmethod
    def from_json(cls, path: Path | str) -> "InMemoryEventStore":
        """Seed from a catalog export: a list of events or ``{"events": [...]}``."""
        with open(path, encoding="utf-8") as f:
            payload = json.load(f)
        if isinstance(payload, dict):
            payload = payload.get("events", [])
        store = cls(CanonicalEvent.model_validate(item) for item in payload)
        logger.info(f"Seeded in-memory catalog with {len(store)} events from {path}")
        return store

    def dump(self, path: Path | str) -> None:
        """Write the catalog as camelCase JSON, oldest event first."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = [e.model_dump(mode="json", by_alias=True) for e in self._events.values()]
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
        logger.info(f"Wrote {len(payload)} events to {path}")

    # ------------------------------------------------------------------
    # EventStore
    # ------------------------------------------------------------------

    def get(self, event_id: str) -> Optional[CanonicalEvent]:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    def fetch_all(self) -> List[CanonicalEvent]:
        return [e.model_copy(deep=True) for e in self._events.values()]

    def find_by_source_id(self, source: str, source_id: str) -> Optional[CanonicalEvent]:
        event_id = self._keys.get((source, source_id))
        return self.get(event_id) if event_id else None

    def insert(self, event: CanonicalEvent) -> CanonicalEvent:
        if event.event_id in self._events:
            raise StorageError(f"Canonical event {event.event_id} already exists")
        self._claim_keys(event)
        self._events[event.event_id] = event.model_copy(deep=True)
        return event

    def update(self, event_id: str, patch: EventPatch) -> None:
        current = self._events.get(event_id)
        if current is None:
            raise StorageError(f"No canonical event {event_id}")
        updated = apply_patch(current, patch)
        self._claim_keys(updated)
        self._events[event_id] = updated

    def _claim_keys(self, event: CanonicalEvent) -> None:
        keys = list(event.source_keys())
        for source, sid in keys:
            owner = self._keys.get((source, sid))
            if owner is not None and owner != event.event_id:
                raise DuplicateKeyError(source, sid)
        for key in keys:
            self._keys[key] = event.event_id
