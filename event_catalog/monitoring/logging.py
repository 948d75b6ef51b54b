"""Structured logging with context injection.

Features:
- console handler, optional file handler
- JSON logs optional (easy ingestion)
- context injection (batch_id/source/stage) without needing a big framework
- first-N sampling for chatty per-record lines
"""

from __future__ import annotations

import json
import logging
import sys
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any

CONTEXT_KEYS = ("batch_id", "source", "stage", "event_id")

# ---------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        base = {
            "ts": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k in CONTEXT_KEYS:
            if hasattr(record, k):
                base[k] = getattr(record, k)

        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)

        payload = getattr(record, "payload", None)
        if isinstance(payload, dict):
            base["payload"] = payload

        return json.dumps(base, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Format log records as human-readable text."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [self.formatTime(record, "%Y-%m-%d %H:%M:%S"), record.levelname, record.name]

        ctx = []
        for key, label in (("batch_id", "batch"), ("source", "source"), ("stage", "stage")):
            value = getattr(record, key, None)
            if value:
                ctx.append(f"{label}={value}")
        if ctx:
            parts.append("[" + " ".join(ctx) + "]")

        parts.append(record.getMessage())
        s = " ".join(parts)

        if record.exc_info:
            s += "\n" + self.formatException(record.exc_info)

        return s


# ---------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class LoggingOptions:
    """Configure logging behavior for a batch run."""

    level: str = "INFO"
    json_logs: bool = False
    enable_console: bool = True
    log_file: Path | None = None


def setup_logging(options: LoggingOptions | None = None) -> logging.Logger:
    """Configure the ``event_catalog`` logger tree and return its root."""
    options = options or LoggingOptions()
    logger = logging.getLogger("event_catalog")
    logger.setLevel(getattr(logging, options.level.upper(), logging.INFO))
    logger.propagate = False

    # Clear old handlers if re-configuring
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    fmt = JsonFormatter() if options.json_logs else TextFormatter()

    if options.enable_console:
        # stdout carries the stats report
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(logger.level)
        ch.setFormatter(fmt)
        logger.addHandler(ch)

    if options.log_file:
        options.log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(options.log_file, encoding="utf-8")
        fh.setLevel(logger.level)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    return logger


# ---------------------------------------------------------------------
# Context injection
# ---------------------------------------------------------------------


class ContextAdapter(logging.LoggerAdapter):
    """Inject context fields into log records."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.get("extra", {})
        merged = dict(self.extra)
        merged.update(extra)
        kwargs["extra"] = merged
        return msg, kwargs


def with_context(
    logger: logging.Logger | logging.LoggerAdapter,
    *,
    batch_id: str | None = None,
    source: str | None = None,
    stage: str | None = None,
) -> ContextAdapter:
    """Return a logger adapter that stamps every record with batch context."""
    ctx: dict[str, Any] = {}
    if batch_id:
        ctx["batch_id"] = batch_id
    if source:
        ctx["source"] = source
    if stage:
        ctx["stage"] = stage
    if isinstance(logger, logging.LoggerAdapter):
        base = dict(logger.extra or {})
        base.update(ctx)
        return ContextAdapter(logger.logger, base)
    return ContextAdapter(logger, ctx)


# ---------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------


class LogSampler:
    """
    Let the first ``limit`` lines of each kind through, count the rest.

    One sampler is created per batch and handed to the orchestrator, so
    counts never leak between runs.
    """

    def __init__(self, limit: int = 25):
        self.limit = limit
        self._seen: Counter[str] = Counter()

    def allow(self, kind: str) -> bool:
        self._seen[kind] += 1
        return self._seen[kind] <= self.limit

    def suppressed(self) -> dict[str, int]:
        return {
            kind: count - self.limit
            for kind, count in sorted(self._seen.items())
            if count > self.limit
        }

    def reset(self) -> None:
        self._seen.clear()
