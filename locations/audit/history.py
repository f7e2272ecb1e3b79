"""Append-only field history with a bounded per-field window and rollback."""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from locations.audit.retention import RollingWindow
from locations.core.errors import NotFoundError
from locations.etl.transform import deserialize_value, identity_snapshot, normalize_for_write, serialize_value
from locations.models import Actor, ChangeSource, FieldHistoryEntry, LocationRecord, tracked_fields

logger = logging.getLogger(__name__)

CREATED_FIELD = "business_created"
DELETED_FIELD = "business_deleted"
SENTINEL_FIELDS = (CREATED_FIELD, DELETED_FIELD)

DEFAULT_WINDOW = RollingWindow(6)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _newest_first(entries: Iterable[FieldHistoryEntry]) -> List[FieldHistoryEntry]:
    return sorted(entries, key=lambda e: (e.changed_at, e.entry_id or 0), reverse=True)


@dataclass(frozen=True)
class HistoryFilter:
    """Conjunctive filter over history entries; unset criteria match everything."""

    since: Optional[datetime] = None
    until: Optional[datetime] = None
    field: Optional[str] = None
    actor: Optional[str] = None
    search: Optional[str] = None

    def matches(self, entry: FieldHistoryEntry) -> bool:
        if self.since is not None and entry.changed_at < self.since:
            return False
        if self.until is not None and entry.changed_at > self.until:
            return False
        if self.field and entry.field_name != self.field:
            return False
        if self.actor:
            email = (entry.actor_email or "").lower()
            if self.actor != entry.actor_id and self.actor.lower() != email:
                return False
        if self.search:
            needle = self.search.lower()
            haystack = (entry.field_name, entry.old_value, entry.new_value, entry.actor_email)
            if not any(needle in value.lower() for value in haystack if value):
                return False
        return True


@dataclass(frozen=True)
class RollbackResult:
    record: LocationRecord
    field_name: str
    restored_value: Any
    entry: Optional[FieldHistoryEntry]


class FieldHistoryLedger:
    """Records field-level changes for location records.

    ``store`` persists entries and prunes each (record, field) pair to the
    window in the same transaction; ``locations`` is only needed for rollback.
    """

    def __init__(
        self,
        store,
        locations=None,
        window: RollingWindow = DEFAULT_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.locations = locations
        self.window = window
        self.clock = clock

    def _append(
        self,
        tenant_id: str,
        record_id: str,
        field_name: str,
        old_value: Optional[str],
        new_value: Optional[str],
        actor: Optional[Actor],
        source: ChangeSource,
    ) -> FieldHistoryEntry:
        actor = actor or Actor()
        entry = FieldHistoryEntry(
            tenant_id=tenant_id,
            record_id=record_id,
            field_name=field_name,
            old_value=old_value,
            new_value=new_value,
            actor_id=actor.actor_id,
            actor_email=actor.email,
            changed_at=self.clock(),
            change_source=ChangeSource(source),
        )
        return self.store.append(entry, self.window)

    def record_change(
        self,
        tenant_id: str,
        record_id: str,
        field_name: str,
        old_value: Any,
        new_value: Any,
        actor: Optional[Actor] = None,
        source: ChangeSource = ChangeSource.MANUAL_EDIT,
    ) -> Optional[FieldHistoryEntry]:
        """Append one entry, or nothing when the serialised values are equal."""
        old_text = serialize_value(field_name, old_value)
        new_text = serialize_value(field_name, new_value)
        if old_text == new_text:
            return None
        return self._append(tenant_id, record_id, field_name, old_text, new_text, actor, source)

    def record_changes(
        self,
        before: LocationRecord,
        after: LocationRecord,
        actor: Optional[Actor] = None,
        source: ChangeSource = ChangeSource.MANUAL_EDIT,
    ) -> List[FieldHistoryEntry]:
        """Diff two snapshots of the same record and append one entry per changed field."""
        if before.record_id != after.record_id:
            raise ValueError("snapshots belong to different records")
        entries = []
        for name in tracked_fields():
            entry = self.record_change(
                after.tenant_id,
                after.record_id,
                name,
                getattr(before, name),
                getattr(after, name),
                actor,
                source,
            )
            if entry is not None:
                entries.append(entry)
        if entries:
            logger.info("Recorded %d field change(s) for %s", len(entries), after.record_id)
        return entries

    def record_creation(
        self,
        record: LocationRecord,
        actor: Optional[Actor] = None,
        source: ChangeSource = ChangeSource.CRUD,
    ) -> FieldHistoryEntry:
        return self._append(
            record.tenant_id, record.record_id, CREATED_FIELD, None, identity_snapshot(record), actor, source
        )

    def record_deletion(
        self,
        record: LocationRecord,
        actor: Optional[Actor] = None,
        source: ChangeSource = ChangeSource.CRUD,
    ) -> FieldHistoryEntry:
        """Capture the deletion; callers must do this before removing the record."""
        return self._append(
            record.tenant_id, record.record_id, DELETED_FIELD, identity_snapshot(record), None, actor, source
        )

    def rollback(self, entry_id: int, actor: Optional[Actor] = None) -> RollbackResult:
        """Re-apply an entry's old value to the live record and audit the rollback."""
        entry = self.store.get(entry_id)
        if entry is None:
            raise NotFoundError(f"history entry {entry_id} not found")
        if entry.field_name in SENTINEL_FIELDS:
            raise ValueError(f"{entry.field_name} entries cannot be rolled back")
        if entry.field_name not in tracked_fields():
            raise ValueError(f"unknown field {entry.field_name!r}")
        if self.locations is None:
            raise RuntimeError("rollback requires a location store")

        record = self.locations.get(entry.record_id)
        if record is None:
            raise NotFoundError(f"location {entry.record_id} no longer exists")

        restored = deserialize_value(entry.field_name, entry.old_value)
        current = getattr(record, entry.field_name)
        if serialize_value(entry.field_name, current) == entry.old_value:
            logger.info("Rollback of entry %s is a no-op; %s already holds that value", entry_id, entry.field_name)
            return RollbackResult(record, entry.field_name, restored, None)

        setattr(record, entry.field_name, restored)
        record = self.locations.save(normalize_for_write(record))
        audit = self.record_change(
            record.tenant_id,
            record.record_id,
            entry.field_name,
            current,
            restored,
            actor,
            ChangeSource.ROLLBACK,
        )
        logger.info("Rolled back %s on %s to entry %s", entry.field_name, record.record_id, entry_id)
        return RollbackResult(record, entry.field_name, restored, audit)

    def history(self, record_id: str, filters: Optional[HistoryFilter] = None) -> List[FieldHistoryEntry]:
        filters = filters or HistoryFilter()
        return _newest_first(e for e in self.store.for_record(record_id) if filters.matches(e))

    def tenant_history(self, tenant_id: str, filters: Optional[HistoryFilter] = None) -> List[FieldHistoryEntry]:
        filters = filters or HistoryFilter()
        entries = self.store.for_tenant(tenant_id, since=filters.since, until=filters.until)
        return _newest_first(e for e in entries if filters.matches(e))

    def change_summary(self, record_id: str) -> Dict[str, int]:
        """Retained entry counts per field for one record."""
        return dict(Counter(entry.field_name for entry in self.store.for_record(record_id)))
