"""HTTP entrypoint for location validation, lifecycle and audit operations."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request

from locations.audit.backups import BackupRotation
from locations.audit.history import FieldHistoryLedger, HistoryFilter
from locations.audit.retention import RollingWindow
from locations.core.config import get_settings
from locations.core.db import (
    PostgresBackupStore,
    PostgresHistoryStore,
    PostgresLocationStore,
    PostgresServiceStore,
)
from locations.core.errors import ConflictError, InvalidRecordError, NotFoundError
from locations.core.writes import LocationService
from locations.etl.transform import record_from_dict, record_to_dict
from locations.models import Actor, BackupSnapshot, Cadence, ChangeSource, FieldHistoryEntry, ServiceDefinition, Status
from locations.rules.lifecycle import classify, is_publishable
from locations.rules.validation import Tier, validate_batch

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App & executor ----------
app = Flask(__name__)
_executor = ThreadPoolExecutor(max_workers=4)
_service: Optional[LocationService] = None

_TIER_NAMES = {"entry": Tier.ENTRY, "import": Tier.IMPORT, "publish": Tier.PUBLISH}


def _get_service() -> LocationService:
    global _service
    if _service is None:
        settings = get_settings()
        locations = PostgresLocationStore()
        ledger = FieldHistoryLedger(
            PostgresHistoryStore(),
            locations,
            window=RollingWindow(settings.history_keep_per_field),
        )
        backups = BackupRotation(PostgresBackupStore(), locations, settings)
        _service = LocationService(
            locations,
            ledger,
            backups,
            executor=_executor,
            services=PostgresServiceStore(),
        )
    return _service


# ---------- Error mapping ----------


@app.errorhandler(NotFoundError)
def _not_found(exc: NotFoundError) -> Any:
    return jsonify({"error": str(exc)}), 404


@app.errorhandler(ConflictError)
def _conflict(exc: ConflictError) -> Any:
    return jsonify({"error": str(exc)}), 409


@app.errorhandler(InvalidRecordError)
def _invalid_record(exc: InvalidRecordError) -> Any:
    return jsonify({"error": str(exc), "errors": [error.as_dict() for error in exc.errors]}), 400


@app.errorhandler(ValueError)
def _bad_request(exc: ValueError) -> Any:
    return jsonify({"error": str(exc)}), 400


# ---------- Helpers ----------


def _payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _actor() -> Actor:
    return Actor(
        actor_id=request.headers.get("X-Actor-Id"),
        email=request.headers.get("X-Actor-Email"),
    )


def _parse_tier(raw: Any) -> Tier:
    if raw is None:
        return Tier.IMPORT
    if isinstance(raw, str) and raw.lower() in _TIER_NAMES:
        return _TIER_NAMES[raw.lower()]
    try:
        return Tier(int(raw))
    except (TypeError, ValueError):
        raise ValueError(f"unknown tier {raw!r}") from None


def _parse_timestamp(name: str) -> Optional[datetime]:
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw)
    except ValueError:
        raise ValueError(f"{name} must be an ISO-8601 timestamp") from None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _history_filter() -> HistoryFilter:
    return HistoryFilter(
        since=_parse_timestamp("since"),
        until=_parse_timestamp("until"),
        field=request.args.get("field") or None,
        actor=request.args.get("actor") or None,
        search=request.args.get("search") or None,
    )


def _snapshot_dict(snapshot: BackupSnapshot) -> Dict[str, Any]:
    return {
        "name": snapshot.name,
        "tenant_id": snapshot.tenant_id,
        "cadence": snapshot.cadence.value,
        "created_at": snapshot.created_at.isoformat(),
        "record_count": snapshot.record_count,
    }


def _service_dict(service: ServiceDefinition) -> Dict[str, Any]:
    return {"service_id": service.service_id, "name": service.name, "categories": list(service.categories)}


def _entry_dict(entry: FieldHistoryEntry) -> Dict[str, Any]:
    return {
        "id": entry.entry_id,
        "record_id": entry.record_id,
        "field": entry.field_name,
        "old_value": entry.old_value,
        "new_value": entry.new_value,
        "actor_id": entry.actor_id,
        "actor_email": entry.actor_email,
        "changed_at": entry.changed_at.isoformat(),
        "source": entry.change_source.value,
    }


# ---------- Routes ----------


@app.get("/")
def root() -> Any:
    """Simple root to avoid 404 on GET /"""
    return "ok", 200


@app.get("/healthz")
def healthcheck() -> Any:
    """Lightweight health endpoint; reads settings only, no database round-trip."""
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "worker_port_config": settings.worker_port,
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.post("/validate")
def validate_records() -> Any:
    """
    Validate one record or a batch without persisting anything.
    JSON: {"tier": "entry"|"import"|"publish"|1|2|3, "tenant_id": str,
           "records": [...]} or {"record": {...}}
    """
    payload = _payload()
    tier = _parse_tier(payload.get("tier"))
    raw_records = payload.get("records")
    if raw_records is None and isinstance(payload.get("record"), dict):
        raw_records = [payload["record"]]
    if not isinstance(raw_records, list) or not raw_records:
        return jsonify({"error": "records must be a non-empty list"}), 400

    tenant_id = payload.get("tenant_id")
    context = _get_service().rule_context(tenant_id) if tenant_id else None
    records = [record_from_dict(item, tenant_id=tenant_id or "-") for item in raw_records]
    results = validate_batch(records, tier, context)
    return (
        jsonify(
            {
                "data": [
                    {"index": index, "errors": [error.as_dict() for error in errors]}
                    for index, errors in enumerate(results)
                ]
            }
        ),
        200,
    )


@app.post("/tenants/<tenant_id>/locations")
def create_location(tenant_id: str) -> Any:
    payload = _payload()
    source = ChangeSource(payload.pop("source", ChangeSource.CRUD.value))
    result = _get_service().create(payload, tenant_id, _actor(), source)
    return jsonify({"data": result.as_dict()}), 201


@app.get("/tenants/<tenant_id>/locations")
def list_locations(tenant_id: str) -> Any:
    service = _get_service()
    records = service.locations.list_for_tenant(tenant_id)
    context = service.rule_context(tenant_id)
    now = datetime.now(timezone.utc)
    data = [
        {"record": record_to_dict(record), "classification": classify(record, now, context).as_dict()}
        for record in records
    ]
    return jsonify({"data": data}), 200


@app.get("/locations/<record_id>")
def get_location(record_id: str) -> Any:
    service = _get_service()
    record = service.locations.get(record_id)
    if record is None:
        raise NotFoundError(f"location {record_id} not found")
    classification = classify(record, context=service.rule_context(record.tenant_id))
    return jsonify({"data": {"record": record_to_dict(record), "classification": classification.as_dict()}}), 200


@app.patch("/locations/<record_id>")
def update_location(record_id: str) -> Any:
    payload = _payload()
    source = ChangeSource(payload.pop("source", ChangeSource.MANUAL_EDIT.value))
    result = _get_service().update(record_id, payload, _actor(), source)
    return jsonify({"data": result.as_dict()}), 200


@app.delete("/locations/<record_id>")
def delete_location(record_id: str) -> Any:
    record = _get_service().delete(record_id, _actor())
    return jsonify({"data": {"record_id": record.record_id, "status": "deleted"}}), 200


@app.post("/locations/<record_id>/status")
def change_status(record_id: str) -> Any:
    status = _payload().get("status")
    if not status:
        return jsonify({"error": "status is required"}), 400
    result = _get_service().set_status(record_id, Status(str(status).lower()), _actor())
    return jsonify({"data": result.as_dict()}), 200


@app.get("/locations/<record_id>/history")
def location_history(record_id: str) -> Any:
    entries = _get_service().ledger.history(record_id, _history_filter())
    return jsonify({"data": [_entry_dict(entry) for entry in entries]}), 200


@app.get("/locations/<record_id>/history/summary")
def location_history_summary(record_id: str) -> Any:
    return jsonify({"data": _get_service().ledger.change_summary(record_id)}), 200


@app.get("/tenants/<tenant_id>/history")
def tenant_history(tenant_id: str) -> Any:
    entries = _get_service().ledger.tenant_history(tenant_id, _history_filter())
    return jsonify({"data": [_entry_dict(entry) for entry in entries]}), 200


@app.post("/history/<int:entry_id>/rollback")
def rollback_entry(entry_id: int) -> Any:
    result = _get_service().rollback(entry_id, _actor())
    return (
        jsonify(
            {
                "data": {
                    "record_id": result.record.record_id,
                    "field": result.field_name,
                    "applied": result.entry is not None,
                    "entry": _entry_dict(result.entry) if result.entry else None,
                }
            }
        ),
        200,
    )


@app.get("/tenants/<tenant_id>/publishable")
def publishable_locations(tenant_id: str) -> Any:
    """The Active set; export consumers read this instead of re-deriving eligibility."""
    service = _get_service()
    records = service.locations.list_for_tenant(tenant_id)
    context = service.rule_context(tenant_id)
    data = [record_to_dict(record) for record in records if is_publishable(record, context)]
    return jsonify({"data": data, "count": len(data)}), 200


@app.post("/tenants/<tenant_id>/backups/weekly")
def trigger_weekly_backup(tenant_id: str) -> Any:
    logger.info("Queueing weekly backup for tenant %s", tenant_id)
    _executor.submit(_run_weekly_safe, tenant_id)
    return jsonify({"data": {"status": "queued"}}), 202


@app.get("/tenants/<tenant_id>/backups")
def list_backups(tenant_id: str) -> Any:
    """Backups newest first; `?cadence=crud|weekly` narrows to one window."""
    raw = request.args.get("cadence")
    cadences = [Cadence(raw)] if raw else list(Cadence)
    backups = _get_service().backups
    data = {
        cadence.value: [_snapshot_dict(snapshot) for snapshot in backups.list_snapshots(tenant_id, cadence)]
        for cadence in cadences
    }
    return jsonify({"data": data}), 200


@app.get("/backups/<path:name>")
def download_backup(name: str) -> Any:
    snapshot = _get_service().backups.get_snapshot(name)
    filename = name.rsplit("/", 1)[-1]
    return Response(
        snapshot.content,
        mimetype="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.delete("/backups/<path:name>")
def delete_backup(name: str) -> Any:
    snapshot = _get_service().backups.delete_snapshot(name)
    return jsonify({"data": {"name": snapshot.name, "status": "deleted"}}), 200


@app.post("/tenants/<tenant_id>/backups/restore")
def restore_backup(tenant_id: str) -> Any:
    """
    Replay a backup through the write path; every change lands in field history.
    JSON: {"name": "<tenant>/<cadence>/<file>.json"}
    """
    name = _payload().get("name")
    if not name:
        return jsonify({"error": "name is required"}), 400
    result = _get_service().restore_backup(str(name), _actor(), tenant_id=tenant_id)
    return jsonify({"data": result.as_dict()}), 200


@app.get("/tenants/<tenant_id>/services")
def list_services(tenant_id: str) -> Any:
    catalog = _get_service().services.catalog(tenant_id)
    return jsonify({"data": [_service_dict(service) for service in catalog.values()]}), 200


@app.put("/tenants/<tenant_id>/services/<service_id>")
def put_service(tenant_id: str, service_id: str) -> Any:
    payload = _payload()
    name = payload.get("name")
    if not name:
        return jsonify({"error": "name is required"}), 400
    categories = payload.get("categories") or []
    if not isinstance(categories, list):
        return jsonify({"error": "categories must be a list"}), 400
    service = ServiceDefinition(
        service_id=service_id,
        name=str(name),
        categories=tuple(str(category) for category in categories),
    )
    _get_service().services.put(tenant_id, service)
    return jsonify({"data": _service_dict(service)}), 200


# ---------- Internals ----------


def _run_weekly_safe(tenant_id: str) -> None:
    try:
        _get_service().backups.run_weekly([tenant_id])
    except Exception as exc:  # noqa: BLE001
        logger.exception("Weekly backup job failed: %s", exc)


def main() -> None:
    """Bind on PORT when provided (Cloud Run), otherwise WORKER_PORT."""
    env_port = os.getenv("PORT")
    port = int(env_port or get_settings().worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
