"""
Shared pytest fixtures for the event catalog test suite.

Provides factories for scraped records and canonical events plus a fixed clock.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import pytest

from event_catalog.schemas.event import CanonicalEvent, NormalizedEvent, VenueInfo

FIXED_NOW = datetime(2025, 2, 20, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    """Return a callable that always reports ``FIXED_NOW``."""
    return lambda: FIXED_NOW


@pytest.fixture
def create_record():
    """
    Return a function that creates NormalizedEvent objects with sensible defaults.

    All defaults can be overridden via keyword arguments.

    Example:
        record = create_record(title="Hamilton", source="ticketmaster", source_id="TM1")
    """
    counter = {"n": 0}

    def _create_record(
        title: str = "Test Event",
        venue_name: Optional[str] = "Test Venue",
        start_date: Optional[datetime] = None,
        source: str = "test",
        source_id: Optional[str] = None,
        **kwargs,
    ) -> NormalizedEvent:
        counter["n"] += 1
        if start_date is None:
            start_date = datetime(2025, 3, 1, 19, 30, tzinfo=timezone.utc)

        defaults = {
            "title": title,
            "start_date": start_date,
            "venue": VenueInfo(name=venue_name or ""),
            "source": source,
            "source_id": source_id or f"{source}-{counter['n']}",
            "booking_url": f"https://{source}.example.com/events/{counter['n']}",
            "scraped_at": datetime(2025, 2, 1, tzinfo=timezone.utc),
        }
        defaults.update(kwargs)
        return NormalizedEvent(**defaults)

    return _create_record


@pytest.fixture
def create_canonical(create_record):
    """
    Return a function that creates CanonicalEvent objects.

    Keyword arguments go to ``create_record``; ``event_id`` and other canonical
    fields are applied on top.
    """

    def _create_canonical(event_id: Optional[str] = None, **kwargs) -> CanonicalEvent:
        canonical_fields = {
            k: kwargs.pop(k)
            for k in list(kwargs)
            if k in CanonicalEvent.model_fields and k not in NormalizedEvent.model_fields
        }
        record = create_record(**kwargs)
        event = CanonicalEvent.from_normalized(
            record, datetime(2025, 2, 1, tzinfo=timezone.utc)
        )
        updates = dict(canonical_fields)
        if event_id:
            updates["event_id"] = event_id
        if updates:
            event = CanonicalEvent.model_validate({**event.model_dump(), **updates})
        return event

    return _create_canonical


@pytest.fixture(autouse=True)
def reset_catalog_logger():
    """Undo setup_logging() so caplog sees package log records."""
    yield
    logger = logging.getLogger("event_catalog")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
