import json
from datetime import datetime, timedelta, timezone

import pytest
import requests

from locations.audit import backups
from locations.audit.retention import RollingWindow
from locations.core.config import Settings
from locations.core.errors import NotFoundError
from locations.models import Cadence, LocationRecord

MONDAY_10 = datetime(2025, 3, 3, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def stocked(location_store):
    for code in ("B-2", "A-1"):
        location_store.insert(LocationRecord(tenant_id="t1", store_code=code, business_name=f"Shop {code}"))
    location_store.insert(LocationRecord(tenant_id="t2", store_code="Z-9", business_name="Other"))
    return location_store


def test_snapshot_content_is_deterministic(rotation, stocked):
    first = rotation.snapshot("t1", Cadence.ON_WRITE, MONDAY_10)
    second = rotation.snapshot("t1", Cadence.ON_WRITE, MONDAY_10)

    assert first.content == second.content
    assert first.name == "t1/crud/t1-2025-03-03-100000.json"
    assert first.record_count == 2
    assert [row["store_code"] for row in json.loads(first.content)] == ["A-1", "B-2"]


def test_on_write_window_keeps_five(rotation, backup_store, stocked):
    for i in range(9):
        rotation.on_mutation("t1", MONDAY_10 + timedelta(minutes=i))

    kept = backup_store.list("t1", Cadence.ON_WRITE)
    assert len(kept) == 5
    assert kept[0].created_at == MONDAY_10 + timedelta(minutes=8)
    assert kept[-1].created_at == MONDAY_10 + timedelta(minutes=4)


def test_cadences_are_pruned_independently(rotation, backup_store, stocked):
    for week in range(14):
        rotation.run_weekly(["t1"], MONDAY_10 + timedelta(weeks=week, hours=1))
    for i in range(7):
        rotation.on_mutation("t1", MONDAY_10 + timedelta(minutes=i))
    rotation.on_mutation("t2", MONDAY_10)

    assert len(backup_store.list("t1", Cadence.WEEKLY)) == 12
    assert len(backup_store.list("t1", Cadence.ON_WRITE)) == 5
    assert len(backup_store.list("t2", Cadence.ON_WRITE)) == 1


def test_weekly_slot_is_latest_scheduled_time(rotation):
    assert rotation.weekly_slot(MONDAY_10) == MONDAY_10
    assert rotation.weekly_slot(MONDAY_10 - timedelta(minutes=1)) == MONDAY_10 - timedelta(weeks=1)
    assert rotation.weekly_slot(datetime(2025, 3, 7, 18, 30, tzinfo=timezone.utc)) == MONDAY_10


def test_weekly_rerun_overwrites_same_slot(rotation, backup_store, stocked):
    rotation.run_weekly(None, MONDAY_10 + timedelta(hours=2))
    stocked.insert(LocationRecord(tenant_id="t1", store_code="C-3"))
    rotation.run_weekly(None, MONDAY_10 + timedelta(hours=5))

    weekly = backup_store.list("t1", Cadence.WEEKLY)
    assert [s.name for s in weekly] == ["t1/weekly/t1-2025-03-03-100000.json"]
    assert weekly[0].record_count == 3
    assert backup_store.get("t2/weekly/t2-2025-03-03-100000.json") is not None


def test_on_mutation_never_raises(rotation, backup_store, stocked, caplog):
    backup_store.fail = True

    with caplog.at_level("ERROR"):
        assert rotation.on_mutation("t1", MONDAY_10) is None

    assert "On-write backup failed for tenant t1" in caplog.text


def test_run_weekly_continues_after_failure(backup_store, stocked, settings):
    class FlakyLocations:
        def tenants(self):
            return ["t1", "broken", "t2"]

        def list_for_tenant(self, tenant_id):
            if tenant_id == "broken":
                raise RuntimeError("boom")
            return stocked.list_for_tenant(tenant_id)

    rotation = backups.BackupRotation(backup_store, FlakyLocations(), settings)

    stored = rotation.run_weekly(now=MONDAY_10)

    assert [s.tenant_id for s in stored] == ["t1", "t2"]


def test_callback_posts_metadata(monkeypatch, rotation, stocked):
    calls = []

    class DummyResponse:
        def raise_for_status(self):
            return None

    class DummySession:
        def post(self, url, json, timeout):
            calls.append((url, json, timeout))
            return DummyResponse()

    monkeypatch.setattr(backups, "_callback_session", lambda: DummySession())
    rotation.settings = Settings(database_url="", backup_callback_url="https://hooks.example.com/")

    snapshot = rotation.snapshot("t1", Cadence.WEEKLY, MONDAY_10)

    url, payload, timeout = calls[0]
    assert url == "https://hooks.example.com/backup-result"
    assert payload == {
        "tenant_id": "t1",
        "cadence": "weekly",
        "name": snapshot.name,
        "created_at": "2025-03-03T10:00:00+00:00",
        "record_count": 2,
    }
    assert timeout == backups.CALLBACK_TIMEOUT


def test_callback_failure_is_logged(monkeypatch, caplog):
    class FailingSession:
        def post(self, *args, **kwargs):
            raise requests.ConnectionError("down")

    monkeypatch.setattr(backups, "_callback_session", lambda: FailingSession())
    snapshot = backups.BackupSnapshot("t1", Cadence.ON_WRITE, MONDAY_10, "t1/crud/x.json", "[]")

    with caplog.at_level("ERROR"):
        backups.post_backup_result(snapshot, Settings(database_url="", backup_callback_url="https://hooks.example.com"))

    assert "Failed to POST backup result for t1/crud/x.json" in caplog.text


def test_callback_skipped_without_url(monkeypatch):
    monkeypatch.setattr(backups, "_callback_session", lambda: pytest.fail("session should not be created"))
    snapshot = backups.BackupSnapshot("t1", Cadence.ON_WRITE, MONDAY_10, "t1/crud/x.json", "[]")

    backups.post_backup_result(snapshot, Settings(database_url=""))


def test_list_snapshots_is_newest_first_within_window(rotation, backup_store, stocked):
    for i in range(8):
        snapshot = backups.BackupSnapshot(
            "t1", Cadence.ON_WRITE, MONDAY_10 + timedelta(minutes=i), f"t1/crud/t1-{i}.json", "[]"
        )
        backup_store.put(snapshot, RollingWindow(10))

    listed = rotation.list_snapshots("t1", Cadence.ON_WRITE)

    assert [s.name for s in listed] == [f"t1/crud/t1-{i}.json" for i in (7, 6, 5, 4, 3)]
    assert rotation.list_snapshots("t1", Cadence.WEEKLY) == []


def test_get_and_delete_snapshot(rotation, backup_store, stocked):
    snapshot = rotation.snapshot("t1", Cadence.ON_WRITE, MONDAY_10)

    assert rotation.get_snapshot(snapshot.name) == snapshot
    assert rotation.delete_snapshot(snapshot.name) == snapshot
    assert backup_store.get(snapshot.name) is None
    with pytest.raises(NotFoundError):
        rotation.get_snapshot(snapshot.name)
    with pytest.raises(NotFoundError):
        rotation.delete_snapshot(snapshot.name)


def test_snapshot_rows_returns_stored_records(rotation, stocked):
    snapshot = rotation.snapshot("t1", Cadence.ON_WRITE, MONDAY_10)

    rows = backups.snapshot_rows(snapshot)

    assert [row["store_code"] for row in rows] == ["A-1", "B-2"]
    assert rows[0]["business_name"] == "Shop A-1"


@pytest.mark.parametrize("content", ["not json", '{"store_code": "A-1"}', "[1, 2]"])
def test_snapshot_rows_rejects_malformed_content(content):
    snapshot = backups.BackupSnapshot("t1", Cadence.ON_WRITE, MONDAY_10, "t1/crud/bad.json", content)

    with pytest.raises(ValueError):
        backups.snapshot_rows(snapshot)
