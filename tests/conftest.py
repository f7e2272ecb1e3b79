import copy
import dataclasses
import itertools
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure the `locations` package is importable when running pytest from the repo root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from locations.audit.backups import BackupRotation  # noqa: E402
from locations.audit.history import FieldHistoryLedger  # noqa: E402
from locations.audit.retention import RollingWindow  # noqa: E402
from locations.core.config import Settings  # noqa: E402
from locations.core.errors import ConflictError, NotFoundError  # noqa: E402
from locations.core.writes import LocationService  # noqa: E402

T0 = datetime(2025, 3, 5, 12, 0, tzinfo=timezone.utc)


class TickingClock:
    """Returns a strictly increasing time, one second per call."""

    def __init__(self, start=T0):
        self.current = start

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


class ImmediateExecutor:
    def __init__(self):
        self.calls = []

    def submit(self, fn, *args):
        self.calls.append((fn, args))
        fn(*args)


class InMemoryLocationStore:
    def __init__(self, clock):
        self.rows = {}
        self.clock = clock
        self.deleted = []
        self._ids = itertools.count(1)

    def get(self, record_id):
        row = self.rows.get(record_id)
        return copy.deepcopy(row) if row is not None else None

    def list_for_tenant(self, tenant_id):
        rows = [r for r in self.rows.values() if r.tenant_id == tenant_id]
        return [copy.deepcopy(r) for r in sorted(rows, key=lambda r: (r.store_code or "", r.record_id))]

    def tenants(self):
        return sorted({r.tenant_id for r in self.rows.values()})

    def _check_unique(self, record):
        for other in self.rows.values():
            if (
                other.record_id != record.record_id
                and other.tenant_id == record.tenant_id
                and record.store_code
                and other.store_code == record.store_code
            ):
                raise ConflictError(f"store code {record.store_code!r} already exists")

    def insert(self, record):
        self._check_unique(record)
        record.record_id = record.record_id or f"loc-{next(self._ids)}"
        record.created_at = record.created_at or self.clock()
        record.updated_at = record.created_at
        self.rows[record.record_id] = copy.deepcopy(record)
        return record

    def save(self, record):
        if record.record_id not in self.rows:
            raise NotFoundError(record.record_id)
        self._check_unique(record)
        record.updated_at = self.clock()
        self.rows[record.record_id] = copy.deepcopy(record)
        return record

    def delete(self, record_id):
        self.deleted.append(record_id)
        return self.rows.pop(record_id, None) is not None


class InMemoryHistoryStore:
    def __init__(self):
        self.entries = []
        self.fail = False
        self._ids = itertools.count(1)

    def append(self, entry, window):
        if self.fail:
            raise RuntimeError("history store unavailable")
        stored = dataclasses.replace(entry, entry_id=next(self._ids))
        self.entries.append(stored)
        same_key = [
            e for e in self.entries if e.record_id == stored.record_id and e.field_name == stored.field_name
        ]
        for old in window.overflow(same_key, key=lambda e: (e.changed_at, e.entry_id)):
            self.entries.remove(old)
        return stored

    def get(self, entry_id):
        return next((e for e in self.entries if e.entry_id == entry_id), None)

    def for_record(self, record_id):
        return [e for e in self.entries if e.record_id == record_id]

    def for_tenant(self, tenant_id, since=None, until=None):
        return [
            e
            for e in self.entries
            if e.tenant_id == tenant_id
            and (since is None or e.changed_at >= since)
            and (until is None or e.changed_at <= until)
        ]


class InMemoryBackupStore:
    def __init__(self):
        self.snapshots = {}
        self.fail = False

    def put(self, snapshot, window):
        if self.fail:
            raise RuntimeError("backup store unavailable")
        self.snapshots[snapshot.name] = snapshot
        same_key = [
            s
            for s in self.snapshots.values()
            if s.tenant_id == snapshot.tenant_id and s.cadence == snapshot.cadence
        ]
        for old in window.overflow(same_key, key=lambda s: (s.created_at, s.name)):
            del self.snapshots[old.name]
        return snapshot

    def list(self, tenant_id, cadence):
        rows = [s for s in self.snapshots.values() if s.tenant_id == tenant_id and s.cadence == cadence]
        return sorted(rows, key=lambda s: (s.created_at, s.name), reverse=True)

    def get(self, name):
        return self.snapshots.get(name)

    def delete(self, name):
        return self.snapshots.pop(name, None) is not None


class InMemoryServiceStore:
    def __init__(self):
        self.services = {}

    def catalog(self, tenant_id):
        return dict(self.services.get(tenant_id, {}))

    def put(self, tenant_id, service):
        self.services.setdefault(tenant_id, {})[service.service_id] = service
        return service


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def settings():
    return Settings(database_url="")


@pytest.fixture
def location_store(clock):
    return InMemoryLocationStore(clock)


@pytest.fixture
def history_store():
    return InMemoryHistoryStore()


@pytest.fixture
def backup_store():
    return InMemoryBackupStore()


@pytest.fixture
def service_store():
    return InMemoryServiceStore()


@pytest.fixture
def ledger(history_store, location_store, clock):
    return FieldHistoryLedger(history_store, location_store, window=RollingWindow(6), clock=clock)


@pytest.fixture
def rotation(backup_store, location_store, settings, clock):
    return BackupRotation(backup_store, location_store, settings, clock=clock)


@pytest.fixture
def executor():
    return ImmediateExecutor()


@pytest.fixture
def service(location_store, ledger, rotation, executor, clock, service_store):
    return LocationService(location_store, ledger, rotation, executor=executor, clock=clock, services=service_store)


@pytest.fixture
def valid_payload():
    return {
        "storeCode": "S-001",
        "businessName": "Acme Hardware",
        "addressLine1": "1 Main St",
        "city": "Springfield",
        "country": "US",
        "primaryCategory": "Hardware store",
        "website": "https://acme.example.com",
        "mondayHours": "09:00-12:00, 13:00-18:00",
        "status": "active",
    }
