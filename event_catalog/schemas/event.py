# event_catalog/schemas/event.py
"""
Event schemas for the cross-source event catalog.

Scrapers emit ``NormalizedEvent`` records; the deduplication engine folds them
into ``CanonicalEvent`` documents, one per real-world event, carrying the
provenance of every source that has contributed to it.

Field names are snake_case. Scraper payloads written in camelCase
(``sourceId``, ``startDate``, ``priceMin`` ...) are accepted through aliases.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _unique(values) -> List[str]:
    """Drop blanks and duplicates while keeping first-seen order."""
    seen: List[str] = []
    for value in values or []:
        if value is None:
            continue
        text = str(value).strip()
        if text and text not in seen:
            seen.append(text)
    return seen


def lineage_key(source: str, source_id: str) -> str:
    """Lineage key used in ``merged_from``: ``"{source}:{source_id}"``."""
    return f"{source}:{source_id}"


# ============================================================================
# ENUMS
# ============================================================================


class EventCategory(str, Enum):
    """
    Top-level catalog categories.
    """

    MUSIC = "music"
    THEATRE = "theatre"
    SPORTS = "sports"
    ARTS = "arts"
    FAMILY = "family"
    OTHER = "other"


# ============================================================================
# NESTED MODELS
# ============================================================================


class CatalogModel(BaseModel):
    """Base model accepting both snake_case names and camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


class VenueInfo(CatalogModel):
    """
    Venue as reported by a source.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Princess Theatre",
                "address": "163 Spring St",
                "suburb": "Melbourne",
            }
        }
    )

    name: str = ""
    address: str = ""
    suburb: str = ""

    @field_validator("name", "address", "suburb", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else v


class EventStats(CatalogModel):
    """
    Engagement counters. Owned by the browse/analytics subsystems; the
    deduplication engine reads them but never writes them.
    """

    view_count: int = 0
    favourite_count: int = 0
    clickthrough_count: int = 0


# ============================================================================
# NORMALIZED RECORD (scraper output)
# ============================================================================


class NormalizedEvent(CatalogModel):
    """
    A single scraped event in the common schema.

    ``(source, source_id)`` is the only identifier guaranteed unique; nothing
    else is trustworthy as a key across sources.
    """

    title: str = Field(..., min_length=1)
    description: str = ""
    category: Optional[EventCategory] = None
    subcategories: List[str] = Field(default_factory=list)

    start_date: datetime
    end_date: Optional[datetime] = None

    venue: VenueInfo = Field(default_factory=VenueInfo)

    price_min: Optional[Decimal] = Field(default=None, ge=0)
    price_max: Optional[Decimal] = Field(default=None, ge=0)
    price_details: Optional[str] = None
    is_free: bool = False

    booking_url: str = ""
    image_url: Optional[str] = None
    video_url: Optional[str] = None

    accessibility: List[str] = Field(default_factory=list)
    age_restriction: Optional[str] = None
    duration: Optional[str] = None

    source: str = Field(..., min_length=1)
    source_id: str = Field(..., min_length=1)
    scraped_at: datetime = Field(default_factory=_utc_now)

    @field_validator("title", "source", "source_id", mode="before")
    @classmethod
    def strip_identity(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("description", "booking_url", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else v

    @field_validator("category", mode="before")
    @classmethod
    def blank_category(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return v or None
        return v

    @field_validator("venue", mode="before")
    @classmethod
    def venue_from_string(cls, v):
        """Some sources only report a venue name."""
        if isinstance(v, str):
            return {"name": v}
        return v

    @field_validator("subcategories", "accessibility", mode="before")
    @classmethod
    def as_unique_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return _unique([v])
        return _unique(v)

    @field_validator("start_date", "end_date", "scraped_at", mode="before")
    @classmethod
    def parse_dates(cls, v):
        """Accept bare ISO dates; naive datetimes are taken as UTC."""
        if isinstance(v, str) and len(v.strip()) == 10:
            v = date.fromisoformat(v.strip())
        if isinstance(v, date) and not isinstance(v, datetime):
            return datetime(v.year, v.month, v.day, tzinfo=timezone.utc)
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("start_date", "end_date", "scraped_at", mode="after")
    @classmethod
    def ensure_aware(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("price_min", "price_max", mode="before")
    @classmethod
    def coerce_to_decimal(cls, v):
        """Coerce float/int/str to Decimal for price fields."""
        if v is None or v == "":
            return None
        if isinstance(v, Decimal):
            return v
        return Decimal(str(v))

    @model_validator(mode="after")
    def validate_price_range(self):
        if (
            self.price_min is not None
            and self.price_max is not None
            and self.price_max < self.price_min
        ):
            raise ValueError("price_max cannot be less than price_min")
        return self

    @field_serializer("price_min", "price_max", when_used="json")
    def serialize_decimal(self, v: Optional[Decimal]) -> Optional[float]:
        """Serialize Decimal to float for JSON compatibility."""
        if v is None:
            return None
        return float(v)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source, self.source_id)


# ============================================================================
# CANONICAL EVENT (persisted, deduplicated)
# ============================================================================


class CanonicalEvent(NormalizedEvent):
    """
    The single persisted representation of a real-world event.

    ``source``/``source_id``/``booking_url`` describe the primary source;
    ``source_ids`` and ``booking_urls`` hold one entry per contributing source.
    ``merged_from`` is append-only lineage of ``source:source_id`` strings
    absorbed into this record after its creation.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    sources: List[str] = Field(default_factory=list)
    primary_source: str = ""
    source_ids: Dict[str, str] = Field(default_factory=dict)
    booking_urls: Dict[str, str] = Field(default_factory=dict)
    merged_from: List[str] = Field(default_factory=list)

    last_updated: datetime = Field(default_factory=_utc_now)
    stats: EventStats = Field(default_factory=EventStats)

    @field_validator("sources", "merged_from", mode="before")
    @classmethod
    def as_unique_provenance(cls, v):
        return _unique(v) if v is not None else []

    @field_validator("source_ids", "booking_urls", mode="before")
    @classmethod
    def none_to_mapping(cls, v):
        return {} if v is None else v

    @field_validator("last_updated", mode="before")
    @classmethod
    def parse_last_updated(cls, v):
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def seed_provenance(self) -> "CanonicalEvent":
        """Older documents may predate the map-based provenance fields."""
        if not self.primary_source:
            self.primary_source = self.source
        if self.source not in self.sources:
            self.sources.insert(0, self.source)
        self.source_ids.setdefault(self.source, self.source_id)
        if self.booking_url:
            self.booking_urls.setdefault(self.source, self.booking_url)
        return self

    @classmethod
    def from_normalized(
        cls, record: NormalizedEvent, now: Optional[datetime] = None
    ) -> "CanonicalEvent":
        """Create the canonical event for a first sighting."""
        now = now or _utc_now()
        data: Dict[str, Any] = record.model_dump(include=set(NormalizedEvent.model_fields))
        data.update(
            {
                "sources": [record.source],
                "primary_source": record.source,
                "source_ids": {record.source: record.source_id},
                "booking_urls": {record.source: record.booking_url} if record.booking_url else {},
                "merged_from": [],
                "last_updated": now,
            }
        )
        return cls.model_validate(data)

    def source_keys(self) -> Iterator[Tuple[str, str]]:
        """
        Every ``(source, source_id)`` this event is reachable by.

        ``source_ids`` only holds the latest id per source, so ids absorbed
        earlier are recovered from ``merged_from``.
        """
        seen = {(self.source, self.source_id)}
        yield (self.source, self.source_id)
        lineage = (tuple(entry.split(":", 1)) for entry in self.merged_from if ":" in entry)
        for key in (*self.source_ids.items(), *lineage):
            if key not in seen:
                seen.add(key)
                yield key
