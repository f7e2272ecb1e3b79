"""Full-tenant snapshots on two independent rolling windows."""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from locations.audit.retention import RollingWindow
from locations.core.config import Settings, get_settings
from locations.core.errors import NotFoundError
from locations.etl.transform import record_to_dict
from locations.models import BackupSnapshot, Cadence, LocationRecord

logger = logging.getLogger(__name__)

CALLBACK_TIMEOUT = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def snapshot_name(tenant_id: str, cadence: Cadence, created_at: datetime) -> str:
    cadence = Cadence(cadence)
    return f"{tenant_id}/{cadence.value}/{tenant_id}-{created_at:%Y-%m-%d-%H%M%S}.json"


def serialize_records(records: Iterable[LocationRecord]) -> str:
    """Deterministic JSON for a record set: sorted records, sorted keys."""
    rows = [record_to_dict(record) for record in records]
    rows.sort(key=lambda row: (row.get("store_code") or "", row.get("record_id") or ""))
    return json.dumps(rows, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def snapshot_rows(snapshot: BackupSnapshot) -> List[Dict[str, Any]]:
    """Record mappings stored in a snapshot, ready for the write path."""
    try:
        rows = json.loads(snapshot.content)
    except ValueError as exc:
        raise ValueError(f"backup {snapshot.name} does not hold valid JSON") from exc
    if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
        raise ValueError(f"backup {snapshot.name} does not hold a list of records")
    return rows


def _callback_session() -> requests.Session:
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("POST",),
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session


def post_backup_result(snapshot: BackupSnapshot, settings: Optional[Settings] = None) -> None:
    """POST snapshot metadata to the configured callback; failures are logged."""
    settings = settings or get_settings()
    if not settings.backup_callback_url:
        logger.debug("BACKUP_CALLBACK_URL missing; skipping callback for %s", snapshot.name)
        return

    payload = {
        "tenant_id": snapshot.tenant_id,
        "cadence": snapshot.cadence.value,
        "name": snapshot.name,
        "created_at": snapshot.created_at.isoformat(),
        "record_count": snapshot.record_count,
    }
    try:
        response = _callback_session().post(
            settings.backup_callback_url.rstrip("/") + "/backup-result",
            json=payload,
            timeout=CALLBACK_TIMEOUT,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.error("Failed to POST backup result for %s: %s", snapshot.name, exc)


class BackupRotation:
    """Snapshots a tenant's record set and keeps the newest N per cadence."""

    def __init__(
        self,
        store,
        locations,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.locations = locations
        self.settings = settings or get_settings()
        self.clock = clock
        self.windows = {
            Cadence.ON_WRITE: RollingWindow(self.settings.crud_backup_keep),
            Cadence.WEEKLY: RollingWindow(self.settings.weekly_backup_keep),
        }

    def weekly_slot(self, now: Optional[datetime] = None) -> datetime:
        """The most recent scheduled weekly slot at or before ``now``."""
        now = now or self.clock()
        days_back = (now.weekday() - self.settings.weekly_backup_weekday) % 7
        slot = now.replace(hour=self.settings.weekly_backup_hour, minute=0, second=0, microsecond=0)
        slot -= timedelta(days=days_back)
        if slot > now:
            slot -= timedelta(days=7)
        return slot

    def snapshot(self, tenant_id: str, cadence: Cadence, now: Optional[datetime] = None) -> BackupSnapshot:
        cadence = Cadence(cadence)
        created_at = now or self.clock()
        records = self.locations.list_for_tenant(tenant_id)
        snapshot = BackupSnapshot(
            tenant_id=tenant_id,
            cadence=cadence,
            created_at=created_at,
            name=snapshot_name(tenant_id, cadence, created_at),
            content=serialize_records(records),
            record_count=len(records),
        )
        self.store.put(snapshot, self.windows[cadence])
        logger.info("Stored %s backup %s (%d records)", cadence.value, snapshot.name, snapshot.record_count)
        post_backup_result(snapshot, self.settings)
        return snapshot

    def on_mutation(self, tenant_id: str, now: Optional[datetime] = None) -> Optional[BackupSnapshot]:
        """Backup after a write; never raises into the write path."""
        try:
            return self.snapshot(tenant_id, Cadence.ON_WRITE, now)
        except Exception:  # noqa: BLE001
            logger.exception("On-write backup failed for tenant %s", tenant_id)
            return None

    def run_weekly(
        self,
        tenant_ids: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> List[BackupSnapshot]:
        """Snapshot every tenant into this week's slot; a rerun overwrites the same names."""
        slot = self.weekly_slot(now)
        if tenant_ids is None:
            tenant_ids = self.locations.tenants()
        stored = []
        for tenant_id in tenant_ids:
            try:
                stored.append(self.snapshot(tenant_id, Cadence.WEEKLY, slot))
            except Exception:  # noqa: BLE001
                logger.exception("Weekly backup failed for tenant %s", tenant_id)
        return stored

    def list_snapshots(self, tenant_id: str, cadence: Cadence) -> List[BackupSnapshot]:
        """Newest first, limited to the current window for ``cadence``."""
        cadence = Cadence(cadence)
        snapshots = self.store.list(tenant_id, cadence)
        return self.windows[cadence].retained(snapshots, key=lambda s: (s.created_at, s.name))

    def get_snapshot(self, name: str) -> BackupSnapshot:
        snapshot = self.store.get(name)
        if snapshot is None:
            raise NotFoundError(f"backup {name} not found")
        return snapshot

    def delete_snapshot(self, name: str) -> BackupSnapshot:
        snapshot = self.get_snapshot(name)
        self.store.delete(name)
        logger.info("Deleted %s backup %s", snapshot.cadence.value, name)
        return snapshot
