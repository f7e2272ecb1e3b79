"""Database helpers for the location engine."""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from psycopg2 import errors, extras, pool

from locations.audit.retention import RollingWindow
from locations.core.config import get_settings
from locations.core.errors import ConflictError
from locations.etl.transform import record_from_dict, record_to_dict
from locations.models import (
    BackupSnapshot,
    Cadence,
    ChangeSource,
    FieldHistoryEntry,
    LocationRecord,
    ServiceDefinition,
)

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.SimpleConnectionPool] = None


def init_pool(minconn: int = 1, maxconn: int = 5) -> pool.SimpleConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        _connection_pool = pool.SimpleConnectionPool(
            minconn,
            maxconn,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    finally:
        pg_pool.putconn(conn)


@contextmanager
def transaction() -> Iterator[Any]:
    """Yield a dict cursor; commit on success, roll back on any error."""
    with get_connection() as conn:
        try:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise


SCHEMA = """
CREATE TABLE IF NOT EXISTS locations (
    record_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    store_code TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'active')),
    is_async BOOLEAN NOT NULL DEFAULT FALSE,
    payload JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS locations_tenant_store_code
    ON locations (tenant_id, store_code)
    WHERE store_code IS NOT NULL AND store_code <> '';
CREATE TABLE IF NOT EXISTS location_field_history (
    id BIGSERIAL PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    record_id TEXT NOT NULL,
    field_name TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    changed_by TEXT,
    changed_by_email TEXT,
    change_source TEXT NOT NULL,
    changed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS location_field_history_record_field
    ON location_field_history (record_id, field_name, changed_at DESC);
CREATE INDEX IF NOT EXISTS location_field_history_tenant
    ON location_field_history (tenant_id, changed_at DESC);
CREATE TABLE IF NOT EXISTS location_backups (
    name TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    cadence TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    record_count INTEGER NOT NULL,
    content TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS location_backups_window
    ON location_backups (tenant_id, cadence, created_at DESC);
CREATE TABLE IF NOT EXISTS location_services (
    tenant_id TEXT NOT NULL,
    service_id TEXT NOT NULL,
    name TEXT NOT NULL,
    categories JSONB NOT NULL DEFAULT '[]'::jsonb,
    PRIMARY KEY (tenant_id, service_id)
);
"""


def ensure_schema() -> None:
    """Create tables and indexes when they are missing."""
    with transaction() as cur:
        cur.execute(SCHEMA)
    logger.info("Location schema ensured")


# ---------- Locations ----------

_LOCATION_COLUMNS = "record_id, tenant_id, store_code, status, is_async, payload, created_at, updated_at"


def _record_from_row(row: Dict[str, Any]) -> LocationRecord:
    data = dict(row.get("payload") or {})
    for column in ("record_id", "tenant_id", "store_code", "status", "is_async", "created_at", "updated_at"):
        data[column] = row.get(column)
    return record_from_dict(data)


def _location_params(record: LocationRecord) -> Dict[str, Any]:
    payload = record_to_dict(record)
    for column in ("record_id", "tenant_id", "created_at", "updated_at"):
        payload.pop(column, None)
    return {
        "record_id": record.record_id,
        "tenant_id": record.tenant_id,
        "store_code": record.store_code,
        "status": payload["status"],
        "is_async": bool(record.is_async),
        "payload": extras.Json(payload),
    }


class PostgresLocationStore:
    """Location records keyed by record id, unique store code per tenant."""

    def get(self, record_id: str) -> Optional[LocationRecord]:
        with transaction() as cur:
            cur.execute(f"SELECT {_LOCATION_COLUMNS} FROM locations WHERE record_id = %s", (record_id,))
            row = cur.fetchone()
        return _record_from_row(row) if row else None

    def list_for_tenant(self, tenant_id: str) -> List[LocationRecord]:
        with transaction() as cur:
            cur.execute(
                f"SELECT {_LOCATION_COLUMNS} FROM locations WHERE tenant_id = %s ORDER BY store_code, record_id",
                (tenant_id,),
            )
            rows = cur.fetchall()
        return [_record_from_row(row) for row in rows]

    def tenants(self) -> List[str]:
        with transaction() as cur:
            cur.execute("SELECT DISTINCT tenant_id FROM locations ORDER BY tenant_id")
            rows = cur.fetchall()
        return [row["tenant_id"] for row in rows]

    def insert(self, record: LocationRecord) -> LocationRecord:
        if not record.record_id:
            record.record_id = str(uuid.uuid4())
        params = _location_params(record)
        try:
            with transaction() as cur:
                cur.execute(
                    """
                    INSERT INTO locations (record_id, tenant_id, store_code, status, is_async, payload)
                    VALUES (%(record_id)s, %(tenant_id)s, %(store_code)s, %(status)s, %(is_async)s, %(payload)s)
                    RETURNING created_at, updated_at
                    """,
                    params,
                )
                row = cur.fetchone()
        except errors.UniqueViolation as exc:
            raise ConflictError(f"store code {record.store_code!r} already exists for tenant {record.tenant_id}") from exc
        if row:
            record.created_at = row["created_at"]
            record.updated_at = row["updated_at"]
        logger.debug("Inserted location %s (%s)", record.record_id, record.store_code)
        return record

    def save(self, record: LocationRecord) -> LocationRecord:
        params = _location_params(record)
        try:
            with transaction() as cur:
                cur.execute(
                    """
                    UPDATE locations SET
                        store_code = %(store_code)s,
                        status = %(status)s,
                        is_async = %(is_async)s,
                        payload = %(payload)s,
                        updated_at = NOW()
                    WHERE record_id = %(record_id)s
                    RETURNING updated_at
                    """,
                    params,
                )
                row = cur.fetchone()
        except errors.UniqueViolation as exc:
            raise ConflictError(f"store code {record.store_code!r} already exists for tenant {record.tenant_id}") from exc
        if row:
            record.updated_at = row["updated_at"]
        return record

    def delete(self, record_id: str) -> bool:
        with transaction() as cur:
            cur.execute("DELETE FROM locations WHERE record_id = %s", (record_id,))
            deleted = cur.rowcount > 0
        return deleted


# ---------- Field history ----------

_HISTORY_COLUMNS = (
    "id, tenant_id, record_id, field_name, old_value, new_value, "
    "changed_by, changed_by_email, change_source, changed_at"
)


def _entry_from_row(row: Dict[str, Any]) -> FieldHistoryEntry:
    return FieldHistoryEntry(
        entry_id=row["id"],
        tenant_id=row["tenant_id"],
        record_id=row["record_id"],
        field_name=row["field_name"],
        old_value=row.get("old_value"),
        new_value=row.get("new_value"),
        actor_id=row.get("changed_by"),
        actor_email=row.get("changed_by_email"),
        changed_at=row["changed_at"],
        change_source=ChangeSource(row["change_source"]),
    )


class PostgresHistoryStore:
    """Append-only field history; inserts and window pruning share one transaction."""

    def append(self, entry: FieldHistoryEntry, window: RollingWindow) -> FieldHistoryEntry:
        params = {
            "tenant_id": entry.tenant_id,
            "record_id": entry.record_id,
            "field_name": entry.field_name,
            "old_value": entry.old_value,
            "new_value": entry.new_value,
            "changed_by": entry.actor_id,
            "changed_by_email": entry.actor_email,
            "change_source": entry.change_source.value,
            "changed_at": entry.changed_at,
            "keep": window.capacity,
        }
        with transaction() as cur:
            # Serialise writers of the same (record, field) window.
            cur.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%(record_id)s || ':' || %(field_name)s))",
                params,
            )
            cur.execute(
                f"""
                INSERT INTO location_field_history (
                    tenant_id, record_id, field_name, old_value, new_value,
                    changed_by, changed_by_email, change_source, changed_at
                ) VALUES (
                    %(tenant_id)s, %(record_id)s, %(field_name)s, %(old_value)s, %(new_value)s,
                    %(changed_by)s, %(changed_by_email)s, %(change_source)s, %(changed_at)s
                )
                RETURNING {_HISTORY_COLUMNS}
                """,
                params,
            )
            row = cur.fetchone()
            cur.execute(
                """
                DELETE FROM location_field_history WHERE id IN (
                    SELECT id FROM location_field_history
                    WHERE record_id = %(record_id)s AND field_name = %(field_name)s
                    ORDER BY changed_at DESC, id DESC
                    OFFSET %(keep)s
                )
                """,
                params,
            )
            pruned = cur.rowcount
        if pruned and pruned > 0:
            logger.debug("Pruned %d history rows for %s.%s", pruned, entry.record_id, entry.field_name)
        return _entry_from_row(row)

    def get(self, entry_id: int) -> Optional[FieldHistoryEntry]:
        with transaction() as cur:
            cur.execute(f"SELECT {_HISTORY_COLUMNS} FROM location_field_history WHERE id = %s", (entry_id,))
            row = cur.fetchone()
        return _entry_from_row(row) if row else None

    def for_record(self, record_id: str) -> List[FieldHistoryEntry]:
        with transaction() as cur:
            cur.execute(
                f"""
                SELECT {_HISTORY_COLUMNS} FROM location_field_history
                WHERE record_id = %s ORDER BY changed_at DESC, id DESC
                """,
                (record_id,),
            )
            rows = cur.fetchall()
        return [_entry_from_row(row) for row in rows]

    def for_tenant(
        self,
        tenant_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[FieldHistoryEntry]:
        with transaction() as cur:
            cur.execute(
                f"""
                SELECT {_HISTORY_COLUMNS} FROM location_field_history
                WHERE tenant_id = %(tenant_id)s
                  AND (%(since)s::timestamptz IS NULL OR changed_at >= %(since)s)
                  AND (%(until)s::timestamptz IS NULL OR changed_at <= %(until)s)
                ORDER BY changed_at DESC, id DESC
                """,
                {"tenant_id": tenant_id, "since": since, "until": until},
            )
            rows = cur.fetchall()
        return [_entry_from_row(row) for row in rows]


# ---------- Backups ----------

_BACKUP_COLUMNS = "name, tenant_id, cadence, created_at, record_count, content"


def _snapshot_from_row(row: Dict[str, Any]) -> BackupSnapshot:
    created_at = row["created_at"]
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return BackupSnapshot(
        tenant_id=row["tenant_id"],
        cadence=Cadence(row["cadence"]),
        created_at=created_at,
        name=row["name"],
        content=row["content"],
        record_count=row["record_count"],
    )


class PostgresBackupStore:
    """Snapshot blobs addressable by name, pruned per (tenant, cadence)."""

    def put(self, snapshot: BackupSnapshot, window: RollingWindow) -> BackupSnapshot:
        params = {
            "name": snapshot.name,
            "tenant_id": snapshot.tenant_id,
            "cadence": snapshot.cadence.value,
            "created_at": snapshot.created_at,
            "record_count": snapshot.record_count,
            "content": snapshot.content,
            "keep": window.capacity,
        }
        with transaction() as cur:
            cur.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%(tenant_id)s || ':' || %(cadence)s))",
                params,
            )
            cur.execute(
                """
                INSERT INTO location_backups (name, tenant_id, cadence, created_at, record_count, content)
                VALUES (%(name)s, %(tenant_id)s, %(cadence)s, %(created_at)s, %(record_count)s, %(content)s)
                ON CONFLICT (name) DO UPDATE SET
                    record_count = EXCLUDED.record_count,
                    content = EXCLUDED.content
                """,
                params,
            )
            cur.execute(
                """
                DELETE FROM location_backups WHERE name IN (
                    SELECT name FROM location_backups
                    WHERE tenant_id = %(tenant_id)s AND cadence = %(cadence)s
                    ORDER BY created_at DESC, name DESC
                    OFFSET %(keep)s
                )
                """,
                params,
            )
        return snapshot

    def list(self, tenant_id: str, cadence: Cadence) -> List[BackupSnapshot]:
        with transaction() as cur:
            cur.execute(
                f"""
                SELECT {_BACKUP_COLUMNS} FROM location_backups
                WHERE tenant_id = %s AND cadence = %s
                ORDER BY created_at DESC, name DESC
                """,
                (tenant_id, cadence.value),
            )
            rows = cur.fetchall()
        return [_snapshot_from_row(row) for row in rows]

    def get(self, name: str) -> Optional[BackupSnapshot]:
        with transaction() as cur:
            cur.execute(f"SELECT {_BACKUP_COLUMNS} FROM location_backups WHERE name = %s", (name,))
            row = cur.fetchone()
        return _snapshot_from_row(row) if row else None

    def delete(self, name: str) -> bool:
        with transaction() as cur:
            cur.execute("DELETE FROM location_backups WHERE name = %s", (name,))
            deleted = cur.rowcount > 0
        return deleted


# ---------- Custom services ----------


class PostgresServiceStore:
    """Per-tenant custom-service catalog consulted by the eligibility rule."""

    def catalog(self, tenant_id: str) -> Dict[str, ServiceDefinition]:
        with transaction() as cur:
            cur.execute(
                "SELECT service_id, name, categories FROM location_services WHERE tenant_id = %s ORDER BY service_id",
                (tenant_id,),
            )
            rows = cur.fetchall()
        return {
            row["service_id"]: ServiceDefinition(
                service_id=row["service_id"],
                name=row["name"],
                categories=tuple(row.get("categories") or ()),
            )
            for row in rows
        }

    def put(self, tenant_id: str, service: ServiceDefinition) -> ServiceDefinition:
        with transaction() as cur:
            cur.execute(
                """
                INSERT INTO location_services (tenant_id, service_id, name, categories)
                VALUES (%(tenant_id)s, %(service_id)s, %(name)s, %(categories)s)
                ON CONFLICT (tenant_id, service_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    categories = EXCLUDED.categories
                """,
                {
                    "tenant_id": tenant_id,
                    "service_id": service.service_id,
                    "name": service.name,
                    "categories": extras.Json(list(service.categories)),
                },
            )
        logger.debug("Stored custom service %s for tenant %s", service.service_id, tenant_id)
        return service
