#!/usr/bin/env python3
"""Command-line interface for the event catalog deduplication engine.

Commands:
  - catalog-dedup run      : Deduplicate a scrape batch into the catalog
  - catalog-dedup init-db  : Create the PostgreSQL catalog tables
  - catalog-dedup score    : Score two records against each other

Typical usage:
  catalog-dedup run --input batch.json --source ticketmaster
  catalog-dedup run --input batch.json --store memory --catalog catalog.json --dump out.json
  catalog-dedup score --a hamilton_tm.json --b hamilton_mg.json

Exit codes for ``run``: 0 when the batch completed (even with skipped
records), 1 on a fatal storage failure, 2 when the input cannot be read.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from event_catalog import __version__
from event_catalog.configs.config import Config
from event_catalog.configs.settings import get_settings
from event_catalog.ingestion.errors import FatalStorageError
from event_catalog.ingestion.memory_store import InMemoryEventStore
from event_catalog.ingestion.notifications import (
    ChangeNotifier,
    LoggingNotifier,
    WebhookNotifier,
)
from event_catalog.ingestion.orchestrator import BatchOrchestrator
from event_catalog.ingestion.persist import EventStore, PostgresEventStore
from event_catalog.ingestion.similarity import SimilarityScorer
from event_catalog.monitoring.logging import LoggingOptions, LogSampler, setup_logging
from event_catalog.schemas.event import NormalizedEvent

logger = logging.getLogger("event_catalog.cli")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_BAD_INPUT = 2


class InputError(Exception):
    """The batch file is missing or malformed."""


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = get_settings()
    p = argparse.ArgumentParser(prog="catalog-dedup", description="Event catalog deduplication")
    p.add_argument("--version", action="store_true", help="Print version and exit")
    sub = p.add_subparsers(dest="cmd")

    # run
    pr = sub.add_parser("run", help="Deduplicate a scrape batch into the catalog")
    pr.add_argument("--input", "-i", required=True, help="Batch JSON: list or {events, sourceName}")
    pr.add_argument("--source", "-s", default=None, help="Source name (overrides sourceName)")
    pr.add_argument("--store", choices=["postgres", "memory"], default="postgres")
    pr.add_argument("--catalog", default=None, help="Seed the memory store from a catalog JSON")
    pr.add_argument("--dump", default=None, help="Write the memory store to this JSON file")
    pr.add_argument("--notify", choices=["none", "log", "webhook"], default="log")
    pr.add_argument("--config", "-c", default=None, help="Path to dedup YAML config")
    pr.add_argument("--json-logs", action="store_true", default=settings.JSON_LOGS)
    pr.add_argument("--log-level", default=settings.LOG_LEVEL)

    # init-db
    pi = sub.add_parser("init-db", help="Create the catalog schema in PostgreSQL")
    pi.add_argument("--log-level", default=settings.LOG_LEVEL)

    # score
    ps = sub.add_parser("score", help="Score two records against each other")
    ps.add_argument("--a", required=True, help="First record JSON")
    ps.add_argument("--b", required=True, help="Second record JSON")
    ps.add_argument("--config", "-c", default=None, help="Path to dedup YAML config")

    return p.parse_args(argv)


def _read_json(path: str) -> Any:
    p = Path(path)
    if not p.exists():
        raise InputError(f"File not found: {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise InputError(f"Invalid JSON in {p}: {e}") from e


def load_batch(path: str, source: str | None = None) -> tuple[list[dict], str]:
    """Read a batch file; returns ``(events, source_name)``."""
    payload = _read_json(path)
    if isinstance(payload, list):
        events, source_name = payload, source
    elif isinstance(payload, dict) and isinstance(payload.get("events"), list):
        events = payload["events"]
        source_name = source or payload.get("sourceName") or payload.get("source_name")
    else:
        raise InputError("Batch must be a list of events or an object with an 'events' list")

    if not source_name:
        raise InputError("No source name: pass --source or set 'sourceName' in the batch")
    if not all(isinstance(e, dict) for e in events):
        raise InputError("Every batch entry must be a JSON object")
    return events, source_name


def _build_store(args: argparse.Namespace) -> EventStore:
    if args.store == "memory":
        if args.catalog:
            try:
                return InMemoryEventStore.from_json(args.catalog)
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                raise InputError(f"Could not load catalog {args.catalog}: {e}") from e
        return InMemoryEventStore()
    try:
        return PostgresEventStore.from_settings()
    except ValueError as e:
        raise FatalStorageError(str(e)) from e


def _build_notifier(kind: str) -> ChangeNotifier | None:
    if kind == "log":
        return LoggingNotifier()
    if kind == "webhook":
        return WebhookNotifier.from_settings()
    return None


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    """Run the CLI with the given arguments."""
    args = _parse_args(argv)

    if args.version:
        print(f"catalog-dedup version {__version__}")
        return EXIT_OK

    if not args.cmd:
        print("Error: Command required. Use --help for usage info.", file=sys.stderr)
        return EXIT_FATAL

    if args.cmd == "run":
        return _cmd_run(args)
    if args.cmd == "init-db":
        return _cmd_init_db(args)
    if args.cmd == "score":
        return _cmd_score(args)

    print(f"Error: Unknown command {args.cmd}", file=sys.stderr)
    return EXIT_FATAL


def _cmd_run(args: argparse.Namespace) -> int:
    setup_logging(LoggingOptions(level=args.log_level, json_logs=args.json_logs))
    settings = get_settings()

    try:
        events, source_name = load_batch(args.input, args.source)
        config = Config.load_dedup_config(args.config)
    except (InputError, FileNotFoundError, ValidationError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_BAD_INPUT

    try:
        store = _build_store(args)
    except InputError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_BAD_INPUT
    except FatalStorageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL

    try:
        notifier = _build_notifier(args.notify)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        store.close()
        return EXIT_BAD_INPUT

    orchestrator = BatchOrchestrator(
        store,
        config=config,
        notifier=notifier,
        sampler=LogSampler(settings.LOG_SAMPLE_LIMIT),
    )

    def _handle_signal(signum, frame):
        logger.warning(f"Received signal {signum}; stopping after the current record")
        orchestrator.request_stop()

    previous = {
        sig: signal.signal(sig, _handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        result = orchestrator.run_batch(events, source_name)
    except FatalStorageError as e:
        logger.error(f"Batch aborted: {e}")
        _print_json({"source": source_name, "fatal": str(e), **e.partial_stats})
        return EXIT_FATAL
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        if notifier is not None:
            notifier.close()
        store.close()

    if args.dump and isinstance(store, InMemoryEventStore):
        store.dump(args.dump)

    _print_json(
        {
            "batchId": result.batch_id,
            "source": source_name,
            "stopped": result.stopped,
            **result.stats.to_dict(),
        }
    )
    return EXIT_OK


def _cmd_init_db(args: argparse.Namespace) -> int:
    setup_logging(LoggingOptions(level=args.log_level))
    try:
        store = PostgresEventStore.from_settings()
        store.ensure_schema()
    except (ValueError, FatalStorageError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL
    store.close()
    print("Catalog schema ready")
    return EXIT_OK


def _load_record(path: str, fallback_id: str) -> NormalizedEvent:
    data = _read_json(path)
    if not isinstance(data, dict):
        raise InputError(f"{path} must contain a single JSON object")
    data.setdefault("source", fallback_id)
    if not data.get("sourceId") and not data.get("source_id"):
        data["sourceId"] = fallback_id
    return NormalizedEvent.model_validate(data)


def _cmd_score(args: argparse.Namespace) -> int:
    try:
        config = Config.load_dedup_config(args.config)
        a = _load_record(args.a, "a")
        b = _load_record(args.b, "b")
    except (InputError, FileNotFoundError, ValidationError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_BAD_INPUT

    scorer = SimilarityScorer(config.matching)
    breakdown = scorer.explain(a, b)
    _print_json(
        {
            "confidence": round(breakdown.confidence, 4),
            "reason": breakdown.reason,
            "isDuplicate": breakdown.confidence >= scorer.threshold,
            "breakdown": {
                name: round(getattr(breakdown, name), 4)
                for name in ("title", "date", "venue", "category")
            },
        }
    )
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
