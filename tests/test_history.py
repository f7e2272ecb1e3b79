import dataclasses
import json
from datetime import timedelta

import pytest

from locations.audit.history import CREATED_FIELD, DELETED_FIELD, HistoryFilter
from locations.core.errors import NotFoundError
from locations.models import Actor, ChangeSource, LocationRecord

ALICE = Actor(actor_id="u-1", email="alice@example.com")
BOB = Actor(actor_id="u-2", email="Bob@Example.com")


@pytest.fixture
def record(location_store):
    return location_store.insert(
        LocationRecord(
            tenant_id="t1",
            store_code="S-001",
            business_name="Acme",
            address_line1="1 Main St",
            country="US",
            primary_category="Retail",
        )
    )


def test_record_change_appends_serialised_values(ledger, record):
    entry = ledger.record_change("t1", record.record_id, "business_name", "Acme", "Acme Tools", ALICE)

    assert entry.entry_id is not None
    assert (entry.old_value, entry.new_value) == ("Acme", "Acme Tools")
    assert (entry.actor_id, entry.actor_email) == ("u-1", "alice@example.com")
    assert entry.change_source is ChangeSource.MANUAL_EDIT


@pytest.mark.parametrize(
    "field, old, new",
    [
        ("business_name", "Acme", "Acme"),
        ("website", None, ""),
        ("additional_categories", [], None),
        ("monday_hours", "Closed", "x"),
        ("monday_hours", "", None),
        ("social_media_urls", {"x": "a", "facebook": "b"}, {"facebook": "b", "x": "a"}),
    ],
)
def test_no_op_writes_produce_no_entry(ledger, history_store, field, old, new):
    assert ledger.record_change("t1", "r1", field, old, new) is None
    assert history_store.entries == []


def test_window_keeps_six_most_recent_per_field(ledger, history_store, record):
    for i in range(10):
        ledger.record_change("t1", record.record_id, "city", f"City {i}", f"City {i + 1}")
    ledger.record_change("t1", record.record_id, "state", None, "CA")

    history = ledger.history(record.record_id, HistoryFilter(field="city"))

    assert [e.new_value for e in history] == [f"City {i}" for i in range(10, 4, -1)]
    assert ledger.change_summary(record.record_id) == {"city": 6, "state": 1}


def test_record_changes_diffs_snapshots(ledger, record):
    after = dataclasses.replace(
        record,
        business_name="Acme Tools",
        additional_categories=["Paint"],
        website="",
        monday_hours="Closed",
    )

    entries = ledger.record_changes(record, after, BOB, ChangeSource.IMPORT)

    assert {e.field_name: (e.old_value, e.new_value) for e in entries} == {
        "business_name": ("Acme", "Acme Tools"),
        "additional_categories": (None, '["Paint"]'),
    }
    assert all(e.change_source is ChangeSource.IMPORT for e in entries)


def test_record_changes_rejects_different_records(ledger, record):
    other = dataclasses.replace(record, record_id="other")

    with pytest.raises(ValueError):
        ledger.record_changes(record, other)


def test_creation_and_deletion_sentinels_survive_the_record(ledger, location_store, record):
    ledger.record_creation(record, ALICE)
    ledger.record_deletion(record, BOB)
    location_store.delete(record.record_id)

    deleted, created = ledger.history(record.record_id)

    assert created.field_name == CREATED_FIELD
    assert created.old_value is None
    assert json.loads(created.new_value) == {"store_code": "S-001", "business_name": "Acme"}
    assert deleted.field_name == DELETED_FIELD
    assert json.loads(deleted.old_value) == {"store_code": "S-001", "business_name": "Acme"}
    assert deleted.new_value is None


def test_rollback_restores_old_value_and_audits_it(ledger, location_store, record):
    location_store.save(dataclasses.replace(record, business_name="Acme Tools"))
    entry = ledger.record_change("t1", record.record_id, "business_name", "Acme", "Acme Tools", ALICE)

    result = ledger.rollback(entry.entry_id, BOB)

    assert result.restored_value == "Acme"
    assert location_store.get(record.record_id).business_name == "Acme"
    assert result.entry.change_source is ChangeSource.ROLLBACK
    assert (result.entry.old_value, result.entry.new_value) == ("Acme Tools", "Acme")
    assert result.entry.actor_id == "u-2"
    assert [e.entry_id for e in ledger.history(record.record_id)] == [result.entry.entry_id, entry.entry_id]


def test_rollback_restores_typed_values(ledger, location_store, record):
    location_store.save(dataclasses.replace(record, additional_categories=["Paint"], is_async=True))
    categories = ledger.record_change("t1", record.record_id, "additional_categories", [], ["Paint"])
    flag = ledger.record_change("t1", record.record_id, "is_async", False, True)

    ledger.rollback(categories.entry_id)
    ledger.rollback(flag.entry_id)

    restored = location_store.get(record.record_id)
    assert restored.additional_categories == []
    assert restored.is_async is False


def test_rollback_of_current_value_writes_nothing(ledger, history_store, record):
    entry = ledger.record_change("t1", record.record_id, "business_name", "Acme", "Acme Tools")

    result = ledger.rollback(entry.entry_id)

    assert result.entry is None
    assert len(history_store.entries) == 1


def test_rollback_after_delete_is_not_found_and_writes_nothing(ledger, history_store, location_store, record):
    entry = ledger.record_change("t1", record.record_id, "business_name", "Acme", "Acme Tools")
    location_store.delete(record.record_id)

    with pytest.raises(NotFoundError):
        ledger.rollback(entry.entry_id)

    assert len(history_store.entries) == 1
    assert location_store.get(record.record_id) is None


def test_rollback_of_unknown_entry(ledger):
    with pytest.raises(NotFoundError):
        ledger.rollback(999)


def test_sentinel_entries_cannot_be_rolled_back(ledger, record):
    created = ledger.record_creation(record)

    with pytest.raises(ValueError):
        ledger.rollback(created.entry_id)


def test_concurrent_rollbacks_each_write_their_own_entry(ledger, location_store, history_store, record):
    first = ledger.record_change("t1", record.record_id, "city", None, "Springfield")
    second = ledger.record_change("t1", record.record_id, "city", "Springfield", "Shelbyville")
    location_store.save(dataclasses.replace(record, city="Shelbyville"))

    ledger.rollback(second.entry_id)
    ledger.rollback(first.entry_id)

    rollbacks = [e for e in history_store.entries if e.change_source is ChangeSource.ROLLBACK]
    assert [(e.old_value, e.new_value) for e in rollbacks] == [("Shelbyville", "Springfield"), ("Springfield", None)]
    assert location_store.get(record.record_id).city is None


def test_history_filters_are_conjunctive(ledger, clock, record):
    start = clock.current
    ledger.record_change("t1", record.record_id, "city", None, "Springfield", ALICE)
    ledger.record_change("t1", record.record_id, "state", None, "Illinois", ALICE)
    ledger.record_change("t1", record.record_id, "city", "Springfield", "Shelbyville", BOB)

    def fields(filters):
        return [(e.field_name, e.new_value) for e in ledger.history(record.record_id, filters)]

    assert fields(HistoryFilter(field="city")) == [("city", "Shelbyville"), ("city", "Springfield")]
    assert fields(HistoryFilter(actor="bob@example.com")) == [("city", "Shelbyville")]
    assert fields(HistoryFilter(actor="u-1", field="city")) == [("city", "Springfield")]
    assert fields(HistoryFilter(search="ILLIN")) == [("state", "Illinois")]
    assert fields(HistoryFilter(search="example.com", field="state")) == [("state", "Illinois")]
    assert fields(HistoryFilter(since=start + timedelta(seconds=2))) == [
        ("city", "Shelbyville"),
        ("state", "Illinois"),
    ]
    assert fields(HistoryFilter(until=start + timedelta(seconds=1))) == [("city", "Springfield")]
    assert fields(HistoryFilter(field="city", actor="u-3")) == []


def test_tenant_history_spans_records(ledger, record):
    ledger.record_change("t1", record.record_id, "city", None, "Springfield")
    ledger.record_change("t1", "gone", "city", None, "Ogdenville")
    ledger.record_change("t2", "elsewhere", "city", None, "Capital City")

    entries = ledger.tenant_history("t1")

    assert [(e.record_id, e.new_value) for e in entries] == [("gone", "Ogdenville"), (record.record_id, "Springfield")]
