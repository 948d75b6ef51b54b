"""Deduplication, merge and persistence for scrape batches."""

from event_catalog.ingestion.orchestrator import (
    BatchOrchestrator,
    BatchResult,
    BatchStats,
    process_events_with_deduplication,
)

__all__ = [
    "BatchOrchestrator",
    "BatchResult",
    "BatchStats",
    "process_events_with_deduplication",
]
