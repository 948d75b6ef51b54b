"""
Unit tests for the batch orchestrator.

Batches run against the in-memory store; failure paths use a store that
raises on chosen calls.
"""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from event_catalog.ingestion.errors import (
    DuplicateKeyError,
    FatalStorageError,
    NotificationDeliveryError,
    StorageError,
)
from event_catalog.ingestion.memory_store import InMemoryEventStore
from event_catalog.ingestion.notifications import ChangeNotifier, LoggingNotifier
from event_catalog.ingestion.orchestrator import (
    BatchOrchestrator,
    BatchStats,
    process_events_with_deduplication,
)
from event_catalog.ingestion.persist import EventStore
from event_catalog.monitoring.logging import LogSampler


# =============================================================================
# FIXTURES
# =============================================================================


class FlakyStore(InMemoryEventStore):
    """In-memory store whose n-th insert/update raises a given error."""

    def __init__(self, events=(), insert_errors=None, update_errors=None):
        self.insert_errors = {}
        self.update_errors = {}
        self.inserts = 0
        self.updates = 0
        super().__init__(events)
        self.inserts = 0
        self.insert_errors = dict(insert_errors or {})
        self.update_errors = dict(update_errors or {})

    def insert(self, event):
        self.inserts += 1
        error = self.insert_errors.get(self.inserts)
        if error is not None:
            raise error
        return super().insert(event)

    def update(self, event_id, patch):
        self.updates += 1
        error = self.update_errors.get(self.updates)
        if error is not None:
            raise error
        super().update(event_id, patch)


@pytest.fixture
def store():
    return InMemoryEventStore()


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def orchestrator(store, notifier, clock):
    return BatchOrchestrator(store, notifier=notifier, clock=clock)


@pytest.fixture
def tm_hamilton(create_record):
    return create_record(
        title="Hamilton",
        venue_name="Princess Theatre",
        source="ticketmaster",
        source_id="TM1",
        booking_url="https://tm.example.com/TM1",
        price_min=40,
        price_max=120,
    )


@pytest.fixture
def mg_hamilton(create_record):
    return create_record(
        title="Hamilton the Musical",
        venue_name="Princess Theatre, Melbourne",
        source="marriner",
        source_id="MG9",
        booking_url="https://mg.example.com/MG9",
        description="Award-winning musical",
        image_url="https://mg.example.com/MG9.jpg",
    )


def _distinct_records(create_record, n):
    titles = ["Hamilton", "Wicked", "Cats", "Chicago", "Matilda"]
    return [create_record(title=titles[i], source="whatson") for i in range(n)]


# =============================================================================
# TEST CLASSES
# =============================================================================


class TestBatchStats:
    def test_processed_and_dict(self):
        stats = BatchStats(inserted=2, updated=1, merged=3, skipped=1, notifications=2)
        assert stats.processed == 7
        assert stats.to_dict() == {
            "inserted": 2,
            "updated": 1,
            "merged": 3,
            "skipped": 1,
            "notifications": 2,
        }


class TestCrossSourceMerge:
    """One real-world event reported by two sources ends up as one record."""

    def test_second_source_merges(self, orchestrator, store, clock, tm_hamilton, mg_hamilton):
        first = orchestrator.run_batch([tm_hamilton], "ticketmaster")
        second = orchestrator.run_batch([mg_hamilton], "marriner")

        assert first.stats.inserted == 1
        assert second.stats.merged == 1
        assert second.stats.inserted == 0

        [event] = store.fetch_all()
        assert event.title == "Hamilton"
        assert event.sources == ["ticketmaster", "marriner"]
        assert event.description == "Award-winning musical"
        assert event.last_updated == clock()

    def test_same_batch_sees_its_own_inserts(self, orchestrator, store, tm_hamilton, mg_hamilton):
        result = orchestrator.run_batch([tm_hamilton, mg_hamilton], "mixed")
        assert (result.stats.inserted, result.stats.merged) == (1, 1)
        assert len(store) == 1
        assert [e.event_id for e in result.inserted_events] == [store.fetch_all()[0].event_id]

    def test_provenance(self, orchestrator, store, tm_hamilton, mg_hamilton):
        orchestrator.run_batch([tm_hamilton], "ticketmaster")
        orchestrator.run_batch([mg_hamilton], "marriner")

        [event] = store.fetch_all()
        assert event.primary_source == "ticketmaster"
        assert event.source_ids == {"ticketmaster": "TM1", "marriner": "MG9"}
        assert event.booking_urls == {
            "ticketmaster": "https://tm.example.com/TM1",
            "marriner": "https://mg.example.com/MG9",
        }
        assert event.merged_from == ["marriner:MG9"]
        assert store.find_by_source_id("marriner", "MG9").event_id == event.event_id

    def test_order_independent_for_non_conflicting_fields(self, clock, tm_hamilton, mg_hamilton):
        results = []
        for batch in ([tm_hamilton, mg_hamilton], [mg_hamilton, tm_hamilton]):
            store = InMemoryEventStore()
            BatchOrchestrator(store, clock=clock).run_batch(batch, "mixed")
            [event] = store.fetch_all()
            results.append(event)

        ab, ba = results
        for field in ("description", "image_url", "price_min", "price_max", "source_ids", "booking_urls"):
            assert getattr(ab, field) == getattr(ba, field), field
        assert set(ab.sources) == set(ba.sources)

    def test_unrelated_events_stay_separate(self, orchestrator, store, create_record):
        result = orchestrator.run_batch(_distinct_records(create_record, 3), "whatson")
        assert result.stats.inserted == 3
        assert len(store) == 3


class TestRepeatedKeys:
    def test_rerun_is_idempotent(self, orchestrator, store, tm_hamilton, mg_hamilton):
        orchestrator.run_batch([tm_hamilton, mg_hamilton], "mixed")
        before = store.fetch_all()

        rerun = orchestrator.run_batch([tm_hamilton, mg_hamilton], "mixed")

        assert rerun.stats.to_dict() == {
            "inserted": 0,
            "updated": 2,
            "merged": 0,
            "skipped": 0,
            "notifications": 0,
        }
        after = store.fetch_all()
        assert [e.event_id for e in after] == [e.event_id for e in before]
        assert after[0].merged_from == ["marriner:MG9"]

    def test_rerun_after_second_id_from_same_source(
        self, orchestrator, store, create_record, tm_hamilton, mg_hamilton
    ):
        mg_next_night = create_record(
            title="Hamilton",
            venue_name="Princess Theatre",
            start_date=datetime(2025, 3, 2, 19, 30, tzinfo=timezone.utc),
            source="marriner",
            source_id="MG10",
            booking_url="https://mg.example.com/MG10",
        )
        orchestrator.run_batch([tm_hamilton], "ticketmaster")

        first = orchestrator.run_batch([mg_hamilton, mg_next_night], "marriner")
        rerun = orchestrator.run_batch([mg_hamilton, mg_next_night], "marriner")

        assert (first.stats.inserted, first.stats.merged) == (0, 2)
        assert (rerun.stats.inserted, rerun.stats.updated, rerun.stats.merged) == (0, 2, 0)
        assert len(store) == 1
        event = store.fetch_all()[0]
        assert event.source_ids == {"ticketmaster": "TM1", "marriner": "MG10"}
        assert event.booking_urls["marriner"] == "https://mg.example.com/MG10"
        assert event.merged_from == ["marriner:MG9", "marriner:MG10"]

    def test_same_key_twice_in_one_batch(self, orchestrator, store, notifier, create_record):
        first = create_record(source="ticketmaster", source_id="TM1", price_min=40)
        cheaper = create_record(source="ticketmaster", source_id="TM1", price_min=30)

        result = orchestrator.run_batch([first, cheaper], "ticketmaster")

        assert (result.stats.inserted, result.stats.updated) == (1, 1)
        assert len(store) == 1
        assert result.stats.notifications == 1
        assert notifier.sent[0]["message"].endswith("is now $10.00 cheaper!")


class TestNotifications:
    def test_inserts_do_not_notify(self, store, create_record, clock):
        notifier = MagicMock(spec=ChangeNotifier)
        BatchOrchestrator(store, notifier=notifier, clock=clock).run_batch(
            [create_record(price_min=10)], "test"
        )
        notifier.on_significant_change.assert_not_called()

    def test_price_drop_on_merge(self, orchestrator, notifier, tm_hamilton, mg_hamilton):
        orchestrator.run_batch([tm_hamilton], "ticketmaster")
        cheaper = mg_hamilton.model_copy(update={"price_min": Decimal("30")})
        result = orchestrator.run_batch([cheaper], "marriner")

        assert result.stats.merged == 1
        assert result.stats.notifications == 1
        assert notifier.sent[0]["title"] == "Price Drop on Favourited Event"

    def test_notifier_failure_keeps_merge(self, store, clock, tm_hamilton, mg_hamilton):
        notifier = MagicMock(spec=ChangeNotifier)
        notifier.on_significant_change.side_effect = NotificationDeliveryError("503")
        orchestrator = BatchOrchestrator(store, notifier=notifier, clock=clock)

        orchestrator.run_batch([tm_hamilton], "ticketmaster")
        result = orchestrator.run_batch([mg_hamilton.model_copy(update={"price_min": Decimal("30")})], "marriner")

        assert result.stats.merged == 1
        assert result.stats.notifications == 0
        assert result.stats.skipped == 0
        notifier.on_significant_change.assert_called_once()
        assert "marriner" in store.fetch_all()[0].sources

    def test_no_notifier(self, store, clock, tm_hamilton):
        orchestrator = BatchOrchestrator(store, clock=clock)
        orchestrator.run_batch([tm_hamilton], "ticketmaster")
        result = orchestrator.run_batch([tm_hamilton.model_copy(update={"price_min": Decimal("20")})], "ticketmaster")
        assert result.stats.updated == 1
        assert result.stats.notifications == 0


class TestRecordFailures:
    def test_invalid_record_skipped(self, orchestrator, store, create_record):
        records = [{"startDate": "2025-03-01", "sourceId": "X1"}, create_record()]
        result = orchestrator.run_batch(records, "whatson")
        assert (result.stats.skipped, result.stats.inserted) == (1, 1)

    def test_mapping_defaults_source(self, orchestrator, store):
        result = orchestrator.run_batch(
            [{"title": "Hamilton", "startDate": "2025-03-01", "sourceId": "W1"}], "whatson"
        )
        assert result.stats.inserted == 1
        assert store.find_by_source_id("whatson", "W1") is not None

    def test_duplicate_key_skipped(self, clock, create_record):
        store = FlakyStore(insert_errors={1: DuplicateKeyError("whatson", "W1")})
        records = _distinct_records(create_record, 2)
        result = BatchOrchestrator(store, clock=clock).run_batch(records, "whatson")
        assert (result.stats.skipped, result.stats.inserted) == (1, 1)
        assert len(store) == 1

    def test_failed_update_leaves_pool_untouched(self, clock, tm_hamilton, mg_hamilton):
        store = FlakyStore(update_errors={1: StorageError("lock timeout")})
        orchestrator = BatchOrchestrator(store, clock=clock)
        orchestrator.run_batch([tm_hamilton], "ticketmaster")

        result = orchestrator.run_batch([mg_hamilton, mg_hamilton], "marriner")

        # The retry of the same key still resolves by similarity, not the fast path
        assert result.stats.skipped == 1
        assert result.stats.merged == 1
        assert result.stats.updated == 0

    def test_unexpected_error_skipped(self, clock, create_record, caplog):
        store = FlakyStore(insert_errors={1: RuntimeError("boom")})
        result = BatchOrchestrator(store, clock=clock).run_batch(
            _distinct_records(create_record, 2), "whatson"
        )
        assert (result.stats.skipped, result.stats.inserted) == (1, 1)
        assert "Unexpected error on record 0" in caplog.text

    def test_skip_logs_are_sampled(self, store, clock):
        orchestrator = BatchOrchestrator(store, sampler=LogSampler(limit=1), clock=clock)
        records = [{"sourceId": f"X{i}"} for i in range(3)]
        result = orchestrator.run_batch(records, "whatson")
        assert result.stats.skipped == 3
        assert result.suppressed_logs == {"invalid": 2}


class TestFatalStorage:
    def test_snapshot_failure(self, create_record):
        store = MagicMock(spec=EventStore)
        store.fetch_all.side_effect = StorageError("relation does not exist")

        with pytest.raises(FatalStorageError) as exc_info:
            BatchOrchestrator(store).run_batch([create_record()], "whatson")
        assert exc_info.value.partial_stats == BatchStats().to_dict()
        store.insert.assert_not_called()

    def test_mid_batch_failure_carries_partial_stats(self, clock, create_record):
        store = FlakyStore(insert_errors={2: FatalStorageError("connection refused")})
        records = _distinct_records(create_record, 3)

        with pytest.raises(FatalStorageError) as exc_info:
            BatchOrchestrator(store, clock=clock).run_batch(records, "whatson")

        assert exc_info.value.partial_stats["inserted"] == 1
        assert exc_info.value.partial_stats["skipped"] == 0
        assert len(store) == 1


class TestStop:
    def test_request_stop_finishes_current_record(self, orchestrator, store, create_record):
        first, second = _distinct_records(create_record, 2)

        def records():
            yield first
            orchestrator.request_stop()
            yield second

        result = orchestrator.run_batch(records(), "whatson")
        assert result.stopped
        assert result.stats.inserted == 1

        # The stop request does not carry over to the next batch
        again = orchestrator.run_batch([second], "whatson")
        assert not again.stopped
        assert again.stats.inserted == 1


class TestProcessEventsWithDeduplication:
    def test_returns_counts(self, store, clock, tm_hamilton, mg_hamilton):
        counts = process_events_with_deduplication(
            [tm_hamilton, mg_hamilton], "mixed", store, clock=clock
        )
        assert counts == {
            "inserted": 1,
            "updated": 0,
            "merged": 1,
            "skipped": 0,
            "notifications": 0,
        }
