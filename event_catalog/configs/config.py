"""Configuration loader for the deduplication engine."""

from __future__ import annotations

import math
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from event_catalog.configs.settings import get_settings


class SignalWeights(BaseModel):
    """Relative weight of each similarity signal. Must sum to 1."""

    title: float = Field(default=0.45, ge=0)
    date: float = Field(default=0.30, ge=0)
    venue: float = Field(default=0.20, ge=0)
    category: float = Field(default=0.05, ge=0)

    @model_validator(mode="after")
    def validate_total(self) -> "SignalWeights":
        total = self.title + self.date + self.venue + self.category
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ValueError(f"Signal weights must sum to 1.0 (got {total:.3f})")
        return self

    def as_dict(self) -> dict[str, float]:
        return self.model_dump()


class MatchingConfig(BaseModel):
    threshold: float = Field(default=0.72, gt=0, le=1)
    date_window_days: int = Field(default=2, ge=1)
    weights: SignalWeights = Field(default_factory=SignalWeights)
    short_title_max_tokens: int = Field(default=4, ge=1)
    near_identical_ratio: float = Field(default=0.85, gt=0, le=1)
    title_stop_words: list[str] = Field(
        default_factory=lambda: [
            "the", "a", "an", "and", "or", "at", "to", "for", "of", "in", "on",
            "live", "presents", "featuring", "feat", "ft", "show", "tour",
        ]
    )
    venue_suffixes: list[str] = Field(
        default_factory=lambda: [
            "theatre", "theater", "centre", "center", "arena", "stadium",
            "hall", "auditorium", "melbourne", "hotel",
        ]
    )

    @field_validator("title_stop_words", "venue_suffixes")
    @classmethod
    def lowercase_words(cls, v: list[str]) -> list[str]:
        return [w.strip().lower() for w in v if w and w.strip()]


class ChangeDetectionConfig(BaseModel):
    price_change_threshold: Decimal = Field(default=Decimal("5"), ge=0)
    significant_keywords: list[str] = Field(
        default_factory=lambda: [
            "cancelled", "postponed", "rescheduled", "sold out",
            "extra show", "additional show", "new date", "date change",
        ]
    )

    @field_validator("significant_keywords")
    @classmethod
    def lowercase_keywords(cls, v: list[str]) -> list[str]:
        return [w.strip().lower() for w in v if w and w.strip()]


class MergeConfig(BaseModel):
    placeholder_descriptions: list[str] = Field(default_factory=lambda: ["no description"])
    placeholder_addresses: list[str] = Field(default_factory=lambda: ["tba"])


class DedupConfig(BaseModel):
    """Validated contents of dedup.yaml."""

    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    changes: ChangeDetectionConfig = Field(default_factory=ChangeDetectionConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)


class Config:
    """Configuration for the event catalog."""

    CONFIG_DIR = Path(__file__).parent.resolve()

    @staticmethod
    def _substitute(content: str) -> str:
        """Replace ``${SETTING}`` placeholders with values from Settings."""
        for key, value in get_settings().model_dump().items():
            placeholder = f"${{{key}}}"
            if placeholder in content:
                val_str = (
                    value.get_secret_value()
                    if hasattr(value, "get_secret_value")
                    else str(value)
                )
                content = content.replace(placeholder, val_str)
        return content

    @classmethod
    def load_dedup_config(cls, path: Path | str | None = None) -> DedupConfig:
        """Load and validate the deduplication tunables."""
        config_path = Path(path) if path else get_settings().DEDUP_CONFIG_PATH
        return _load_dedup_config(str(config_path))


@lru_cache
def _load_dedup_config(config_path: str) -> DedupConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Missing config at {path}")

    with open(path, encoding="utf-8") as f:
        content = Config._substitute(f.read())

    return DedupConfig.model_validate(yaml.safe_load(content) or {})
