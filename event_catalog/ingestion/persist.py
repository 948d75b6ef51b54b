# Persistence layer for canonical events
"""
Persistence Layer for the Event Catalog.

``EventStore`` is the contract the batch orchestrator depends on:

- ``fetch_all()``: full snapshot of canonical events
- ``find_by_source_id(source, source_id)``: lookup by any contributing key
- ``insert(event)``: create a canonical event
- ``update(event_id, patch)``: apply a field-level patch

``PostgresEventStore`` maps canonical events onto two tables. The
``(source, source_id)`` uniqueness constraint lives on ``event_source_keys``
and surfaces as ``DuplicateKeyError``.
"""

import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import psycopg2
import psycopg2.errors
from psycopg2.extras import Json, execute_values
from pydantic import ValidationError

from event_catalog.configs.settings import Settings, get_settings
from event_catalog.ingestion.errors import (
    CatalogError,
    DuplicateKeyError,
    FatalStorageError,
    StorageError,
)
from event_catalog.schemas.changes import EventPatch
from event_catalog.schemas.event import CanonicalEvent

logger = logging.getLogger(__name__)


class EventStore(ABC):
    """Storage operations required by the deduplication engine."""

    @abstractmethod
    def fetch_all(self) -> List[CanonicalEvent]:
        """Return every canonical event, oldest first."""

    @abstractmethod
    def find_by_source_id(self, source: str, source_id: str) -> Optional[CanonicalEvent]:
        """Return the canonical event carrying ``(source, source_id)``, if any."""

    @abstractmethod
    def insert(self, event: CanonicalEvent) -> CanonicalEvent:
        """Persist a new canonical event and claim all of its source keys."""

    @abstractmethod
    def update(self, event_id: str, patch: EventPatch) -> None:
        """Apply ``patch`` to an existing canonical event."""

    def close(self) -> None:
        """Release any held resources."""


# ---------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 30.0
    jitter: float = 0.25

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.STORAGE_MAX_RETRIES,
            base_delay_s=settings.STORAGE_RETRY_BASE_DELAY,
        )

    def compute_backoff_s(self, attempt: int) -> float:
        """
        attempt: 1..N
        """
        delay = min(self.base_delay_s * (2 ** max(0, attempt - 1)), self.max_delay_s)
        if self.jitter > 0:
            delay = delay * (1.0 + (random.random() * 2 - 1) * self.jitter)  # +- jitter
        return max(0.0, delay)


# ---------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS canonical_events (
    event_id        TEXT PRIMARY KEY,
    title           TEXT NOT NULL,
    description     TEXT NOT NULL DEFAULT '',
    category        TEXT,
    subcategories   TEXT[] NOT NULL DEFAULT '{}',
    start_date      TIMESTAMPTZ NOT NULL,
    end_date        TIMESTAMPTZ,
    venue           JSONB NOT NULL DEFAULT '{}'::jsonb,
    price_min       NUMERIC(10, 2),
    price_max       NUMERIC(10, 2),
    price_details   TEXT,
    is_free         BOOLEAN NOT NULL DEFAULT FALSE,
    booking_url     TEXT NOT NULL DEFAULT '',
    image_url       TEXT,
    video_url       TEXT,
    accessibility   TEXT[] NOT NULL DEFAULT '{}',
    age_restriction TEXT,
    duration        TEXT,
    source          TEXT NOT NULL,
    source_id       TEXT NOT NULL,
    sources         TEXT[] NOT NULL DEFAULT '{}',
    primary_source  TEXT NOT NULL,
    source_ids      JSONB NOT NULL DEFAULT '{}'::jsonb,
    booking_urls    JSONB NOT NULL DEFAULT '{}'::jsonb,
    merged_from     TEXT[] NOT NULL DEFAULT '{}',
    scraped_at      TIMESTAMPTZ NOT NULL,
    last_updated    TIMESTAMPTZ NOT NULL,
    stats           JSONB NOT NULL DEFAULT '{}'::jsonb
);

CREATE TABLE IF NOT EXISTS event_source_keys (
    source    TEXT NOT NULL,
    source_id TEXT NOT NULL,
    event_id  TEXT NOT NULL REFERENCES canonical_events (event_id),
    PRIMARY KEY (source, source_id)
);

CREATE INDEX IF NOT EXISTS idx_canonical_events_start_date
    ON canonical_events (start_date);
"""

COLUMNS = (
    "event_id",
    "title",
    "description",
    "category",
    "subcategories",
    "start_date",
    "end_date",
    "venue",
    "price_min",
    "price_max",
    "price_details",
    "is_free",
    "booking_url",
    "image_url",
    "video_url",
    "accessibility",
    "age_restriction",
    "duration",
    "source",
    "source_id",
    "sources",
    "primary_source",
    "source_ids",
    "booking_urls",
    "merged_from",
    "scraped_at",
    "last_updated",
    "stats",
)
JSONB_COLUMNS = frozenset({"venue", "source_ids", "booking_urls", "stats"})
ARRAY_COLUMNS = frozenset({"subcategories", "accessibility", "sources", "merged_from"})

_SELECT = "SELECT " + ", ".join(f"e.{c}" for c in COLUMNS) + " FROM canonical_events e"


def _adapt(column: str, value: Any) -> Any:
    if column in JSONB_COLUMNS:
        return Json(value)
    if column == "category" and hasattr(value, "value"):
        return value.value
    return value


class PostgresEventStore(EventStore):
    """
    Canonical events in PostgreSQL via psycopg2.

    Every write runs in its own transaction. Connection-level failures are
    retried with exponential backoff on a fresh connection; once retries are
    exhausted the failure is raised as ``FatalStorageError``.
    """

    def __init__(
        self,
        db_connection=None,
        *,
        connect: Optional[Callable[[], Any]] = None,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if db_connection is None and connect is None:
            raise ValueError("PostgresEventStore needs a connection or a connect factory")
        self.conn = db_connection
        self._connect = connect
        self.retry = retry or RetryPolicy()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PostgresEventStore":
        settings = settings or get_settings()
        params = settings.get_psycopg2_params()
        return cls(
            connect=lambda: psycopg2.connect(**params),
            retry=RetryPolicy.from_settings(settings),
        )

    # ------------------------------------------------------------------
    # Transaction handling
    # ------------------------------------------------------------------

    def _execute(
        self,
        operation: str,
        fn: Callable[[Any], Any],
        key: Tuple[str, str] = ("", ""),
    ) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                if self.conn is None:
                    self.conn = self._connect()
                with self.conn.cursor() as cur:
                    result = fn(cur)
                self.conn.commit()
                return result
            except CatalogError:
                self._rollback()
                raise
            except psycopg2.errors.UniqueViolation as e:
                self._rollback()
                raise DuplicateKeyError(key[0], key[1], f"{operation}: {e}") from e
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._rollback()
                if attempt > self.retry.max_retries:
                    raise FatalStorageError(
                        f"{operation} failed after {attempt} attempts: {e}"
                    ) from e
                delay = self.retry.compute_backoff_s(attempt)
                logger.warning(
                    f"{operation} failed (attempt {attempt}/{self.retry.max_retries + 1}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                self._sleep(delay)
                self._reset_connection()
            except psycopg2.Error as e:
                self._rollback()
                raise StorageError(f"{operation} failed: {e}") from e

    def _rollback(self) -> None:
        if self.conn is None:
            return
        try:
            self.conn.rollback()
        except psycopg2.Error as e:
            logger.debug(f"Rollback failed on broken connection: {e}")

    def _reset_connection(self) -> None:
        if self._connect is None:
            return
        if self.conn is not None:
            try:
                self.conn.close()
            except psycopg2.Error as e:
                logger.debug(f"Closing broken connection failed: {e}")
        self.conn = None

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        self._execute("ensure_schema", lambda cur: cur.execute(SCHEMA_SQL))
        logger.info("Catalog schema is in place")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_all(self) -> List[CanonicalEvent]:
        def run(cur):
            cur.execute(f"{_SELECT} ORDER BY e.scraped_at, e.event_id")
            return cur.fetchall()

        rows = self._execute("fetch_all", run)
        events = [e for e in (self._row_to_event(row) for row in rows) if e is not None]
        logger.info(f"Loaded {len(events)} canonical events")
        return events

    def find_by_source_id(self, source: str, source_id: str) -> Optional[CanonicalEvent]:
        def run(cur):
            cur.execute(
                f"""
                {_SELECT}
                JOIN event_source_keys k ON k.event_id = e.event_id
                WHERE k.source = %s AND k.source_id = %s
                """,
                (source, source_id),
            )
            return cur.fetchone()

        row = self._execute("find_by_source_id", run)
        return self._row_to_event(row) if row else None

    @staticmethod
    def _row_to_event(row) -> Optional[CanonicalEvent]:
        data = dict(zip(COLUMNS, row))
        try:
            return CanonicalEvent.model_validate(data)
        except ValidationError as e:
            logger.error(f"Unreadable catalog row {data.get('event_id')}: {e}")
            return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, event: CanonicalEvent) -> CanonicalEvent:
        data = event.model_dump()
        values = [_adapt(c, data[c]) for c in COLUMNS]
        keys = [(source, sid, event.event_id) for source, sid in event.source_keys()]

        def run(cur):
            cur.execute(
                f"INSERT INTO canonical_events ({', '.join(COLUMNS)}) "
                f"VALUES ({', '.join(['%s'] * len(COLUMNS))})",
                values,
            )
            execute_values(
                cur,
                "INSERT INTO event_source_keys (source, source_id, event_id) VALUES %s",
                keys,
            )

        self._execute("insert", run, key=event.key)
        return event

    def update(self, event_id: str, patch: EventPatch) -> None:
        assignments: List[str] = []
        params: List[Any] = []

        for column, value in patch.set_fields.items():
            if column not in COLUMNS:
                raise StorageError(f"Unknown column in patch: {column}")
            assignments.append(f"{column} = %s")
            params.append(_adapt(column, value))

        for column, values in patch.add_to_set.items():
            if column not in ARRAY_COLUMNS:
                raise StorageError(f"Cannot union into non-array column: {column}")
            # Appends unseen values in patch order
            assignments.append(
                f"{column} = {column} || ARRAY("
                f"SELECT v FROM unnest(%s::text[]) WITH ORDINALITY AS t(v, n) "
                f"WHERE NOT (v = ANY({column})) ORDER BY n)"
            )
            params.append(list(values))

        for column, entries in patch.map_entries.items():
            if column not in JSONB_COLUMNS:
                raise StorageError(f"Cannot merge entries into column: {column}")
            assignments.append(f"{column} = {column} || %s::jsonb")
            params.append(Json(entries))

        if not assignments:
            return

        new_keys: Dict[str, str] = patch.map_entries.get("source_ids", {})
        key = next(iter(new_keys.items()), ("", ""))

        def run(cur):
            cur.execute(
                f"UPDATE canonical_events SET {', '.join(assignments)} WHERE event_id = %s",
                params + [event_id],
            )
            if cur.rowcount == 0:
                raise StorageError(f"No canonical event {event_id}")
            for source, sid in new_keys.items():
                cur.execute(
                    """
                    INSERT INTO event_source_keys (source, source_id, event_id)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (source, source_id) DO UPDATE
                        SET event_id = EXCLUDED.event_id
                        WHERE event_source_keys.event_id = EXCLUDED.event_id
                    RETURNING event_id
                    """,
                    (source, sid, event_id),
                )
                if cur.fetchone() is None:
                    raise DuplicateKeyError(source, sid)

        self._execute("update", run, key=key)

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None
