"""
Merge engine.

Folds an incoming scrape into the canonical event it was matched to. The
canonical record is authoritative: incoming values are only taken where the
canonical field is empty. Provenance (``sources``, ``source_ids``,
``booking_urls``, ``merged_from``) always records the incoming source.

The engine never writes to the store. It returns the post-merge event, the
field-level patch the store should apply, and the changes worth notifying.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List

from event_catalog.configs.config import DedupConfig
from event_catalog.schemas.changes import EventChanges, EventPatch
from event_catalog.schemas.event import CanonicalEvent, NormalizedEvent, lineage_key

logger = logging.getLogger(__name__)

# Scalar and collection fields governed by the fill-empty policy
FILL_FIELDS = (
    "description",
    "end_date",
    "image_url",
    "video_url",
    "booking_url",
    "price_min",
    "price_max",
    "price_details",
    "accessibility",
    "age_restriction",
    "duration",
)
VENUE_PARTS = ("name", "address", "suburb")
PRICE_FIELDS = ("price_min", "price_max")


@dataclass(frozen=True)
class MergeResult:
    event: CanonicalEvent
    patch: EventPatch
    changes: EventChanges


def apply_patch(event: CanonicalEvent, patch: EventPatch) -> CanonicalEvent:
    """Return a copy of ``event`` with ``patch`` applied, as a store would."""
    data = event.model_dump()
    data.update(patch.set_fields)
    for field, values in patch.add_to_set.items():
        current = list(data.get(field) or [])
        current.extend(v for v in values if v not in current)
        data[field] = current
    for field, entries in patch.map_entries.items():
        data[field] = {**(data.get(field) or {}), **entries}
    return CanonicalEvent.model_validate(data)


class MergeEngine:
    """Field-level merge policy and change detection."""

    def __init__(self, config: DedupConfig | None = None):
        self.config = config or DedupConfig()
        self.price_threshold = self.config.changes.price_change_threshold
        self._keywords = [
            (kw, re.compile(rf"\b{re.escape(kw)}\b"))
            for kw in self.config.changes.significant_keywords
        ]
        self._placeholder_descriptions = set(self.config.merge.placeholder_descriptions)
        self._placeholder_addresses = [
            re.compile(rf"\b{re.escape(p)}\b", re.IGNORECASE)
            for p in self.config.merge.placeholder_addresses
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def merge(
        self,
        primary: CanonicalEvent,
        incoming: NormalizedEvent,
        now: datetime | None = None,
    ) -> MergeResult:
        """Merge a record from another listing into ``primary``."""
        return self._combine(primary, incoming, now, record_lineage=True)

    def refresh(
        self,
        current: CanonicalEvent,
        incoming: NormalizedEvent,
        now: datetime | None = None,
    ) -> MergeResult:
        """Re-sighting of a ``(source, source_id)`` the event already carries."""
        return self._combine(current, incoming, now, record_lineage=False)

    def detect_changes(self, primary: NormalizedEvent, incoming: NormalizedEvent) -> EventChanges:
        """Compare the pre-merge record with the incoming scrape."""
        messages: List[str] = []
        price_dropped = False
        price_drop: Decimal | None = None

        old, new = primary.price_min, incoming.price_min
        if new is not None:
            if (old is None or old == 0) and new > 0:
                messages.append(f"Price now available: ${new:.2f}")
            elif old is not None:
                delta = new - old
                if abs(delta) >= self.price_threshold and delta != 0:
                    if delta < 0:
                        price_dropped = True
                        price_drop = abs(delta)
                    else:
                        messages.append(f"Price increased by ${delta:.2f}")

        old_text = (primary.description or "").lower()
        new_text = (incoming.description or "").lower()
        new_keywords = [
            kw
            for kw, pattern in self._keywords
            if pattern.search(new_text) and not pattern.search(old_text)
        ]
        if new_keywords:
            messages.append("Status update: " + ", ".join(new_keywords))

        return EventChanges(
            price_dropped=price_dropped,
            price_drop=price_drop,
            significant_update="; ".join(messages) or None,
        )

    # ------------------------------------------------------------------
    # Emptiness
    # ------------------------------------------------------------------

    def is_empty(self, field: str, value: Any, event: NormalizedEvent) -> bool:
        if value is None:
            return True
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return True
            if field == "description":
                return text.lower() in self._placeholder_descriptions
            if field == "address":
                return any(p.search(text) for p in self._placeholder_addresses)
            return False
        if isinstance(value, (list, dict, set, tuple)):
            return not value
        if field in PRICE_FIELDS:
            return value == 0 and not event.is_free
        return False

    def has_price(self, event: NormalizedEvent) -> bool:
        return any(not self.is_empty(f, getattr(event, f), event) for f in PRICE_FIELDS)

    # ------------------------------------------------------------------
    # Patch building
    # ------------------------------------------------------------------

    def _combine(
        self,
        primary: CanonicalEvent,
        incoming: NormalizedEvent,
        now: datetime | None,
        record_lineage: bool,
    ) -> MergeResult:
        now = now or datetime.now(timezone.utc)
        changes = self.detect_changes(primary, incoming)

        set_fields: Dict[str, Any] = {}
        add_to_set: Dict[str, List[str]] = {}
        map_entries: Dict[str, Dict[str, str]] = {}

        for field in FILL_FIELDS:
            current, offered = getattr(primary, field), getattr(incoming, field)
            if self.is_empty(field, current, primary) and not self.is_empty(
                field, offered, incoming
            ):
                set_fields[field] = list(offered) if isinstance(offered, list) else offered

        if any(field in set_fields for field in PRICE_FIELDS):
            for field in PRICE_FIELDS:
                current = getattr(primary, field)
                if field not in set_fields and current is not None and self.is_empty(
                    field, current, primary
                ):
                    # A placeholder zero cannot bound a real price
                    set_fields[field] = None

        low = set_fields.get("price_min", primary.price_min)
        high = set_fields.get("price_max", primary.price_max)
        if low is not None and high is not None and high < low:
            # Half a price range from each source; keep the primary's
            for field in PRICE_FIELDS:
                set_fields.pop(field, None)

        venue = self._fill_venue(primary, incoming)
        if venue is not None:
            set_fields["venue"] = venue

        if primary.category is None and incoming.category is not None:
            set_fields["category"] = incoming.category.value

        if not primary.is_free and incoming.is_free and not self.has_price(primary):
            set_fields["is_free"] = True

        self._union(add_to_set, "subcategories", primary.subcategories, incoming.subcategories)
        self._union(add_to_set, "sources", primary.sources, [incoming.source])
        if record_lineage:
            lineage = lineage_key(incoming.source, incoming.source_id)
            self._union(add_to_set, "merged_from", primary.merged_from, [lineage])

        # A refresh through an older id of a source leaves that source's
        # current id and link alone
        is_new_key = incoming.key not in set(primary.source_keys())
        is_current_id = primary.source_ids.get(incoming.source) == incoming.source_id
        if is_new_key:
            map_entries["source_ids"] = {incoming.source: incoming.source_id}
        if (
            (is_new_key or is_current_id)
            and incoming.booking_url
            and primary.booking_urls.get(incoming.source) != incoming.booking_url
        ):
            map_entries["booking_urls"] = {incoming.source: incoming.booking_url}

        set_fields["last_updated"] = now

        patch = EventPatch(set_fields=set_fields, add_to_set=add_to_set, map_entries=map_entries)
        merged = apply_patch(primary, patch)

        logger.debug(
            f"{'Merged' if record_lineage else 'Refreshed'} "
            f"{lineage_key(incoming.source, incoming.source_id)} into {primary.event_id}: "
            f"set={sorted(k for k in set_fields if k != 'last_updated')} "
            f"added={sorted(add_to_set)}"
        )
        return MergeResult(event=merged, patch=patch, changes=changes)

    def _fill_venue(self, primary: NormalizedEvent, incoming: NormalizedEvent) -> dict | None:
        venue = primary.venue.model_dump()
        changed = False
        for part in VENUE_PARTS:
            offered = getattr(incoming.venue, part)
            if self.is_empty(part, venue[part], primary) and not self.is_empty(
                part, offered, incoming
            ):
                venue[part] = offered
                changed = True
        return venue if changed else None

    @staticmethod
    def _union(
        add_to_set: Dict[str, List[str]],
        field: str,
        current: List[str],
        offered: List[str],
    ) -> None:
        missing = [v for v in offered if v not in current]
        if missing:
            add_to_set[field] = missing
