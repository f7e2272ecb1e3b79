"""Write path for location records: validate, persist, classify, then audit."""

import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional

from locations.audit.backups import BackupRotation, snapshot_rows
from locations.audit.history import FieldHistoryLedger, RollbackResult
from locations.core.errors import ConflictError, InvalidRecordError, NotFoundError
from locations.etl.transform import (
    field_name_for,
    normalize_for_write,
    record_from_dict,
    record_to_dict,
    serialize_value,
)
from locations.models import IDENTITY_FIELDS, Actor, ChangeSource, LocationRecord, Status, tracked_fields
from locations.rules.lifecycle import Classification, classify, transition
from locations.rules.validation import RuleContext, ValidationError, entry_errors, service_errors

logger = logging.getLogger(__name__)

# Edits to these fields re-check custom-service eligibility.
_SERVICE_FIELDS = ("custom_services", "primary_category", "additional_categories")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WriteResult:
    record: LocationRecord
    classification: Classification
    warnings: List[ValidationError] = field(default_factory=list)
    changed_fields: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "record": record_to_dict(self.record),
            "classification": self.classification.as_dict(),
            "warnings": [warning.as_dict() for warning in self.warnings],
            "changed_fields": list(self.changed_fields),
        }


@dataclass
class RestoreResult:
    """Outcome of replaying a backup through the write path, by store code."""

    name: str
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "created": list(self.created),
            "updated": list(self.updated),
            "unchanged": list(self.unchanged),
            "failed": list(self.failed),
        }


class LocationService:
    """Coordinates location writes with the history ledger and backup rotation.

    History appends and on-write backups are submitted to ``executor`` and
    never fail the write; deletion capture is the exception and runs inline.
    When ``services`` is given, its per-tenant catalog feeds the rule context
    and custom-service assignments that fail eligibility are rejected.
    """

    def __init__(
        self,
        locations,
        ledger: FieldHistoryLedger,
        backups: BackupRotation,
        executor: Optional[Executor] = None,
        context: Optional[RuleContext] = None,
        clock: Callable[[], datetime] = _utcnow,
        services=None,
    ):
        self.locations = locations
        self.ledger = ledger
        self.backups = backups
        self.executor = executor
        self.context = context
        self.clock = clock
        self.services = services

    # ---------- Internals ----------

    def _run_safe(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Background %s failed: %s", getattr(fn, "__name__", fn), exc)

    def _submit(self, fn: Callable[..., Any], *args: Any) -> None:
        if self.executor is None:
            self._run_safe(fn, *args)
        else:
            self.executor.submit(self._run_safe, fn, *args)

    def _get(self, record_id: str) -> LocationRecord:
        record = self.locations.get(record_id)
        if record is None:
            raise NotFoundError(f"location {record_id} not found")
        return record

    def _result(
        self,
        record: LocationRecord,
        changed: Optional[List[str]] = None,
        context: Optional[RuleContext] = None,
    ) -> WriteResult:
        return WriteResult(
            record=record,
            classification=classify(record, self.clock(), context),
            warnings=entry_errors(record, context),
            changed_fields=changed or [],
        )

    def _check_services(self, record: LocationRecord, context: Optional[RuleContext]) -> None:
        errors = service_errors(record, context)
        if errors:
            detail = ", ".join(f"{error.detail} ({error.kind.value})" for error in errors)
            raise InvalidRecordError(f"custom services rejected for {record.store_code}: {detail}", errors)

    def rule_context(self, tenant_id: str) -> Optional[RuleContext]:
        """The configured context, carrying the tenant's service catalog when one is wired."""
        if self.services is None:
            return self.context
        return replace(self.context or RuleContext(), services=self.services.catalog(tenant_id))

    # ---------- Operations ----------

    def create(
        self,
        data: Mapping[str, Any],
        tenant_id: str,
        actor: Optional[Actor] = None,
        source: ChangeSource = ChangeSource.CRUD,
        *,
        backup: bool = True,
    ) -> WriteResult:
        record = normalize_for_write(record_from_dict(data, tenant_id=tenant_id))
        record.record_id = None
        context = self.rule_context(tenant_id)
        self._check_services(record, context)
        record = self.locations.insert(record)
        logger.info("Created location %s for tenant %s", record.record_id, tenant_id)
        self._submit(self.ledger.record_creation, record, actor, source)
        if backup:
            self._submit(self.backups.on_mutation, tenant_id)
        return self._result(record, context=context)

    def update(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        actor: Optional[Actor] = None,
        source: ChangeSource = ChangeSource.MANUAL_EDIT,
        *,
        backup: bool = True,
    ) -> WriteResult:
        before = self._get(record_id)
        merged = record_to_dict(before)
        for key, value in changes.items():
            name = field_name_for(key)
            if name is None or name in IDENTITY_FIELDS:
                logger.debug("Ignoring non-editable key %r on %s", key, record_id)
                continue
            merged[name] = value
        after = normalize_for_write(record_from_dict(merged, tenant_id=before.tenant_id))
        transition(before.status, after.status)

        changed = [
            name
            for name in tracked_fields()
            if serialize_value(name, getattr(before, name)) != serialize_value(name, getattr(after, name))
        ]
        context = self.rule_context(before.tenant_id)
        if not changed:
            logger.debug("Update of %s changed nothing", record_id)
            return self._result(before, context=context)
        if any(name in _SERVICE_FIELDS for name in changed):
            self._check_services(after, context)

        after = self.locations.save(after)
        logger.info("Updated location %s fields=%s", record_id, ",".join(changed))
        self._submit(self.ledger.record_changes, before, after, actor, source)
        if backup:
            self._submit(self.backups.on_mutation, after.tenant_id)
        return self._result(after, changed, context)

    def set_status(self, record_id: str, status: Status, actor: Optional[Actor] = None) -> WriteResult:
        record = self._get(record_id)
        target = transition(record.status, status)
        return self.update(record_id, {"status": target.value}, actor, ChangeSource.MANUAL_EDIT)

    def delete(
        self,
        record_id: str,
        actor: Optional[Actor] = None,
        source: ChangeSource = ChangeSource.CRUD,
    ) -> LocationRecord:
        record = self._get(record_id)
        # Capture must be durable before the row goes; a failure aborts the delete.
        self.ledger.record_deletion(record, actor, source)
        self.locations.delete(record_id)
        logger.info("Deleted location %s for tenant %s", record_id, record.tenant_id)
        self._submit(self.backups.on_mutation, record.tenant_id)
        return record

    def rollback(self, entry_id: int, actor: Optional[Actor] = None) -> RollbackResult:
        result = self.ledger.rollback(entry_id, actor)
        if result.entry is not None:
            self._submit(self.backups.on_mutation, result.record.tenant_id)
        return result

    def restore_backup(
        self,
        name: str,
        actor: Optional[Actor] = None,
        tenant_id: Optional[str] = None,
    ) -> RestoreResult:
        """Upsert every record of a backup by store code, audited as an import.

        Records missing from the backup are left alone. One on-write backup is
        taken after the whole restore rather than one per record.
        """
        snapshot = self.backups.get_snapshot(name)
        if tenant_id is not None and snapshot.tenant_id != tenant_id:
            raise NotFoundError(f"backup {name} not found for tenant {tenant_id}")
        rows = snapshot_rows(snapshot)
        existing = {
            record.store_code: record.record_id
            for record in self.locations.list_for_tenant(snapshot.tenant_id)
            if record.store_code
        }
        result = RestoreResult(name=name)
        for row in rows:
            data = {key: value for key, value in row.items() if key not in IDENTITY_FIELDS}
            code = str(data.get("store_code") or "").strip()
            try:
                if code in existing:
                    written = self.update(existing[code], data, actor, ChangeSource.IMPORT, backup=False)
                    (result.updated if written.changed_fields else result.unchanged).append(code)
                else:
                    written = self.create(data, snapshot.tenant_id, actor, ChangeSource.IMPORT, backup=False)
                    if code:
                        existing[code] = written.record.record_id
                    result.created.append(code)
            except (ConflictError, ValueError) as exc:
                logger.error("Restoring %s from %s failed: %s", code or "<no store code>", name, exc)
                result.failed.append(code)

        logger.info(
            "Restored backup %s: %d created, %d updated, %d unchanged, %d failed",
            name,
            len(result.created),
            len(result.updated),
            len(result.unchanged),
            len(result.failed),
        )
        if result.created or result.updated:
            self._submit(self.backups.on_mutation, snapshot.tenant_id)
        return result
