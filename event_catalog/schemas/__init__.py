"""Schemas for scraped records, canonical events and merge results."""

from event_catalog.schemas.changes import EventChanges, EventPatch
from event_catalog.schemas.event import (
    CanonicalEvent,
    EventCategory,
    EventStats,
    NormalizedEvent,
    VenueInfo,
    lineage_key,
)

__all__ = [
    "CanonicalEvent",
    "EventCategory",
    "EventChanges",
    "EventPatch",
    "EventStats",
    "NormalizedEvent",
    "VenueInfo",
    "lineage_key",
]
