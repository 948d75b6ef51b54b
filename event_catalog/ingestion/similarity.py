"""
Pairwise similarity scoring for cross-source event matching.

Four signals are scored in [0, 1] and combined with configurable weights:

- title: token-set overlap after stop-word removal, with an edit-ratio
  fallback for short near-identical titles
- date: same calendar day (or overlapping runs) decaying to 0 over the window
- venue: normalized names, generic suffixes ("Theatre", "Melbourne") ignored
- category: agreement, neutral when either side is unset

Scores are symmetric: every string comparison runs on an ordered pair.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from datetime import date
from difflib import SequenceMatcher

from event_catalog.configs.config import MatchingConfig
from event_catalog.schemas.event import NormalizedEvent

_PUNCT = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")

SIGNALS = ("title", "date", "venue", "category")
STRONG_SIGNAL = 0.8


def normalise(text: str | None) -> str:
    """Lowercase, replace punctuation with spaces, collapse whitespace."""
    if not text:
        return ""
    text = _PUNCT.sub(" ", text.lower())
    return _SPACES.sub(" ", text).strip()


def _ratio(a: str, b: str) -> float:
    a, b = sorted((a, b))
    return SequenceMatcher(None, a, b).ratio()


def _contains_words(haystack: str, needle: str) -> bool:
    return f" {needle} " in f" {haystack} "


def _day_span(event: NormalizedEvent) -> tuple[date, date]:
    start = event.start_date.date()
    end = event.end_date.date() if event.end_date else start
    return start, max(start, end)


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-signal scores for one pair of records."""

    title: float
    date: float
    venue: float
    category: float
    confidence: float
    reason: str

    def as_dict(self) -> dict:
        return asdict(self)


class SimilarityScorer:
    """
    Score how likely two event records describe the same real-world event.

    ``score(a, b)`` is pure, symmetric and total: it accepts any pair of
    normalized or canonical records, however sparsely populated.
    """

    def __init__(self, config: MatchingConfig | None = None):
        self.config = config or MatchingConfig()
        self.weights = self.config.weights.as_dict()
        self.threshold = self.config.threshold
        self.window_days = self.config.date_window_days
        self._stop_words = frozenset(self.config.title_stop_words)
        suffixes = "|".join(re.escape(s) for s in self.config.venue_suffixes)
        self._venue_suffix = re.compile(rf"\s+(?:{suffixes})$") if suffixes else None

    # ------------------------------------------------------------------
    # Normalisation
    # ------------------------------------------------------------------

    def title_tokens(self, title: str | None) -> list[str]:
        words = [w for w in normalise(title).split(" ") if len(w) > 1]
        significant = [w for w in words if w not in self._stop_words]
        # Titles made only of stop words ("The Show") keep their words
        return significant or words

    def normalise_venue(self, venue: str | None) -> str:
        name = normalise(venue)
        if not self._venue_suffix:
            return name
        while True:
            stripped = self._venue_suffix.sub("", name)
            if stripped == name:
                return name
            name = stripped

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def title_similarity(self, a: NormalizedEvent, b: NormalizedEvent) -> float:
        tokens_a, tokens_b = self.title_tokens(a.title), self.title_tokens(b.title)
        if not tokens_a or not tokens_b:
            return 0.0

        n1, n2 = " ".join(tokens_a), " ".join(tokens_b)
        if n1 == n2:
            return 1.0

        set_a, set_b = set(tokens_a), set(tokens_b)
        # "Hamilton" vs "Hamilton the Musical"
        if set_a <= set_b or set_b <= set_a:
            return 0.95

        jaccard = len(set_a & set_b) / len(set_a | set_b)

        edit = 0.0
        max_tokens = self.config.short_title_max_tokens
        if len(set_a) <= max_tokens and len(set_b) <= max_tokens:
            ratio = _ratio(n1, n2)
            if ratio >= self.config.near_identical_ratio:
                edit = ratio

        return max(jaccard, edit)

    def date_proximity(self, a: NormalizedEvent, b: NormalizedEvent) -> float:
        start_a, end_a = _day_span(a)
        start_b, end_b = _day_span(b)

        if start_a <= end_b and start_b <= end_a:
            return 1.0

        gap = (start_b - end_a).days if end_a < start_b else (start_a - end_b).days
        return max(0.0, 1.0 - gap / self.window_days)

    def venue_similarity(self, a: NormalizedEvent, b: NormalizedEvent) -> float:
        v1, v2 = sorted((normalise(a.venue.name), normalise(b.venue.name)))
        if not v1 or not v2:
            return 0.5
        if v1 == v2:
            return 1.0

        s1, s2 = self.normalise_venue(v1), self.normalise_venue(v2)
        if s1 and s1 == s2:
            return 1.0

        # "Forum" vs "Forum Melbourne"
        if _contains_words(v1, v2) or _contains_words(v2, v1):
            return 0.9
        if s1 and s2 and (_contains_words(s1, s2) or _contains_words(s2, s1)):
            return 0.9

        return _ratio(v1, v2)

    @staticmethod
    def category_agreement(a: NormalizedEvent, b: NormalizedEvent) -> float:
        if a.category is None or b.category is None:
            return 0.5
        return 1.0 if a.category == b.category else 0.0

    # ------------------------------------------------------------------
    # Combined score
    # ------------------------------------------------------------------

    def explain(self, a: NormalizedEvent, b: NormalizedEvent) -> ScoreBreakdown:
        scores = {
            "title": self.title_similarity(a, b),
            "date": self.date_proximity(a, b),
            "venue": self.venue_similarity(a, b),
            "category": self.category_agreement(a, b),
        }
        contributions = {name: scores[name] * self.weights[name] for name in SIGNALS}
        confidence = min(1.0, max(0.0, sum(contributions.values())))

        def rank(name: str) -> tuple[float, int]:
            return (-contributions[name], SIGNALS.index(name))

        dominant = sorted(
            (n for n in SIGNALS if scores[n] >= STRONG_SIGNAL and self.weights[n] > 0),
            key=rank,
        )
        if not dominant:
            dominant = [min(SIGNALS, key=rank)]

        return ScoreBreakdown(
            confidence=confidence,
            reason="+".join(dominant),
            **scores,
        )

    def score(self, a: NormalizedEvent, b: NormalizedEvent) -> tuple[float, str]:
        """Return ``(confidence, reason)`` for a pair of records."""
        breakdown = self.explain(a, b)
        return breakdown.confidence, breakdown.reason

    def is_duplicate(self, a: NormalizedEvent, b: NormalizedEvent) -> bool:
        return self.score(a, b)[0] >= self.threshold
