# event_catalog/schemas/changes.py
"""
Value objects passed between the merge engine, the store and the notifier.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

# Fields owned by other subsystems or fixed at creation
PROTECTED_FIELDS = frozenset({"event_id", "stats"})


class EventChanges(BaseModel):
    """
    Changes worth telling the people who favourited an event about.

    Detected by comparing the catalog record before a merge/refresh with the
    incoming scrape.
    """

    price_dropped: bool = False
    price_drop: Optional[Decimal] = None
    significant_update: Optional[str] = None

    @property
    def has_changes(self) -> bool:
        return self.price_dropped or bool(self.significant_update)

    @field_serializer("price_drop", when_used="json")
    def serialize_decimal(self, v: Optional[Decimal]) -> Optional[float]:
        if v is None:
            return None
        return float(v)


class EventPatch(BaseModel):
    """
    Field-level update for one canonical event.

    - ``set_fields``: overwrite these fields (``$set``)
    - ``add_to_set``: union these values into list fields (``$addToSet``)
    - ``map_entries``: upsert keys into ``source_ids`` / ``booking_urls``

    ``event_id`` and ``stats`` are rejected.
    """

    set_fields: Dict[str, Any] = Field(default_factory=dict)
    add_to_set: Dict[str, List[str]] = Field(default_factory=dict)
    map_entries: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    @field_validator("set_fields", "add_to_set", "map_entries")
    @classmethod
    def reject_protected(cls, v):
        protected = PROTECTED_FIELDS.intersection(v)
        if protected:
            raise ValueError(f"Patch may not touch {sorted(protected)}")
        return v

    @property
    def is_empty(self) -> bool:
        return not (self.set_fields or self.add_to_set or self.map_entries)
