"""
Match resolution: pick the canonical event an incoming record belongs to.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from event_catalog.ingestion.candidates import CandidatePool
from event_catalog.ingestion.errors import PoolInconsistencyError
from event_catalog.ingestion.similarity import SimilarityScorer
from event_catalog.schemas.event import CanonicalEvent, NormalizedEvent, lineage_key

logger = logging.getLogger(__name__)

# Confidences closer than this are treated as a tie
TIE_TOLERANCE = 1e-9


@dataclass(frozen=True)
class DuplicateMatch:
    """A scored pair above threshold. ``id_a`` is the incoming record's lineage key."""

    id_a: str
    id_b: str
    confidence: float
    reason: str


@dataclass(frozen=True)
class MatchResult:
    event: CanonicalEvent
    confidence: float
    reason: str

    @property
    def event_id(self) -> str:
        return self.event.event_id


class MatchResolver:
    """
    Score a record against its candidates and select at most one winner.

    Ties on confidence go to a candidate that already carries the record's
    source, then to the earliest-created candidate in pool order.
    """

    def __init__(self, scorer: SimilarityScorer | None = None):
        self.scorer = scorer or SimilarityScorer()
        self.threshold = self.scorer.threshold

    def matches(self, record: NormalizedEvent, pool: CandidatePool) -> list[DuplicateMatch]:
        """Every candidate scoring at or above the threshold, in pool order."""
        record_key = _record_key(record)
        found = []
        for candidate in pool.candidates_for(record):
            confidence, reason = self.scorer.score(record, candidate)
            if confidence >= self.threshold or math.isclose(
                confidence, self.threshold, abs_tol=TIE_TOLERANCE
            ):
                found.append(DuplicateMatch(record_key, candidate.event_id, confidence, reason))
        return found

    def resolve(self, record: NormalizedEvent, pool: CandidatePool) -> MatchResult | None:
        matches = self.matches(record, pool)
        if not matches:
            return None

        best = max(m.confidence for m in matches)
        tied = [m for m in matches if math.isclose(m.confidence, best, abs_tol=TIE_TOLERANCE)]

        def tie_break(match: DuplicateMatch) -> tuple[int, int]:
            candidate = pool.get(match.id_b)
            shares_source = record.source in candidate.sources
            return (0 if shares_source else 1, pool.ordinal(match.id_b))

        try:
            winner = min(tied, key=tie_break) if len(tied) > 1 else tied[0]
            event = pool.get(winner.id_b)
        except PoolInconsistencyError as e:
            logger.warning(f"Ignoring match for {_record_key(record)}: {e}")
            return None

        if len(tied) > 1:
            logger.debug(
                f"{len(tied)} candidates tied at {best:.3f} for {_record_key(record)}; "
                f"chose {event.event_id}"
            )
        return MatchResult(event=event, confidence=winner.confidence, reason=winner.reason)


def _record_key(record: NormalizedEvent) -> str:
    return lineage_key(record.source, record.source_id)
