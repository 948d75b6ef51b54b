"""
Error taxonomy for batch deduplication.

Only ``FatalStorageError`` aborts a batch; everything else is recovered per
record by the orchestrator.
"""

from __future__ import annotations

from typing import Any


class CatalogError(Exception):
    """Base class for catalog engine errors."""


class StorageError(CatalogError):
    """A single persistence call failed; the record is skipped."""


class DuplicateKeyError(StorageError):
    """The ``(source, source_id)`` uniqueness constraint rejected a write."""

    def __init__(self, source: str, source_id: str, message: str | None = None):
        self.source = source
        self.source_id = source_id
        super().__init__(message or f"Duplicate source key {source}:{source_id}")


class FatalStorageError(CatalogError):
    """
    Storage is unreachable (snapshot fetch failed or retries are exhausted).

    ``partial_stats`` is filled in by the orchestrator with the counts
    accumulated before the failure.
    """

    def __init__(self, message: str, partial_stats: dict[str, Any] | None = None):
        super().__init__(message)
        self.partial_stats = partial_stats or {}


class PoolInconsistencyError(CatalogError):
    """A resolved match id is neither in the snapshot nor batch-pending."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Matched event {event_id} is not in the candidate pool")


class NotificationDeliveryError(CatalogError):
    """The change notifier failed; the merge it reports stays applied."""
