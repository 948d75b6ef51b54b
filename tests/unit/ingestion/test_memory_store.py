"""
Unit tests for the in-memory event store.
"""

import json

import pytest

from event_catalog.ingestion.errors import DuplicateKeyError, StorageError
from event_catalog.ingestion.memory_store import InMemoryEventStore
from event_catalog.schemas.changes import EventPatch


@pytest.fixture
def event(create_canonical):
    return create_canonical(event_id="evt-1", title="Hamilton", source="ticketmaster", source_id="TM1")


class TestReadsAndInserts:
    def test_insert_and_lookup(self, event):
        store = InMemoryEventStore()
        store.insert(event)

        assert len(store) == 1
        assert store.get("evt-1") == event
        assert store.find_by_source_id("ticketmaster", "TM1") == event
        assert store.find_by_source_id("ticketmaster", "TM2") is None

    def test_fetch_all_in_insertion_order(self, create_canonical):
        events = [create_canonical(event_id=f"e{i}") for i in range(3)]
        store = InMemoryEventStore(events)
        assert [e.event_id for e in store.fetch_all()] == ["e0", "e1", "e2"]

    def test_returns_copies(self, event):
        store = InMemoryEventStore([event])
        fetched = store.fetch_all()[0]
        fetched.sources.append("tampered")
        assert store.get("evt-1").sources == ["ticketmaster"]

    def test_insert_existing_id(self, event):
        store = InMemoryEventStore([event])
        with pytest.raises(StorageError):
            store.insert(event)

    def test_insert_claimed_key(self, event, create_canonical):
        store = InMemoryEventStore([event])
        other = create_canonical(event_id="evt-2", source="ticketmaster", source_id="TM1")
        with pytest.raises(DuplicateKeyError) as exc_info:
            store.insert(other)
        assert exc_info.value.source_id == "TM1"
        assert store.get("evt-2") is None


class TestUpdate:
    def test_update_applies_patch(self, event):
        store = InMemoryEventStore([event])
        store.update(
            "evt-1",
            EventPatch(
                set_fields={"description": "Award-winning musical"},
                add_to_set={"sources": ["marriner"]},
                map_entries={"source_ids": {"marriner": "MG9"}},
            ),
        )
        stored = store.get("evt-1")
        assert stored.description == "Award-winning musical"
        assert stored.sources == ["ticketmaster", "marriner"]
        assert store.find_by_source_id("marriner", "MG9").event_id == "evt-1"

    def test_update_unknown_event(self):
        with pytest.raises(StorageError, match="No canonical event"):
            InMemoryEventStore().update("ghost", EventPatch(set_fields={"description": "x"}))

    def test_update_key_owned_elsewhere(self, event, create_canonical):
        other = create_canonical(event_id="evt-2", source="marriner", source_id="MG9")
        store = InMemoryEventStore([event, other])
        with pytest.raises(DuplicateKeyError):
            store.update("evt-1", EventPatch(map_entries={"source_ids": {"marriner": "MG9"}}))
        assert "marriner" not in store.get("evt-1").source_ids


class TestJsonFiles:
    def test_dump_and_reload(self, tmp_path, event, create_canonical):
        path = tmp_path / "catalog" / "events.json"
        store = InMemoryEventStore([event, create_canonical(event_id="evt-2", price_min=25)])
        store.dump(path)

        payload = json.loads(path.read_text())
        assert payload[0]["eventId"] == "evt-1"
        assert payload[0]["sourceIds"] == {"ticketmaster": "TM1"}

        reloaded = InMemoryEventStore.from_json(path)
        assert reloaded.fetch_all() == store.fetch_all()

    def test_from_json_wrapped(self, tmp_path, event):
        path = tmp_path / "events.json"
        path.write_text(
            json.dumps({"events": [event.model_dump(mode="json", by_alias=True)]})
        )
        assert len(InMemoryEventStore.from_json(path)) == 1
