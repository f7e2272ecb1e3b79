"""CLI job that writes tenant backups (weekly scheduler entrypoint)."""

import argparse
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from locations.audit.backups import BackupRotation
from locations.core.config import get_settings
from locations.core.db import PostgresBackupStore, PostgresLocationStore, ensure_schema, init_pool
from locations.models import BackupSnapshot, Cadence

logger = logging.getLogger(__name__)


def run_backup_job(
    *,
    tenant_ids: Optional[Sequence[str]],
    cadence: Cadence,
    now: Optional[datetime] = None,
    rotation: Optional[BackupRotation] = None,
) -> List[BackupSnapshot]:
    if rotation is None:
        init_pool()
        locations = PostgresLocationStore()
        rotation = BackupRotation(PostgresBackupStore(), locations, get_settings())

    if cadence is Cadence.WEEKLY:
        slot = rotation.weekly_slot(now)
        logger.info("Running weekly backups for slot %s", slot.isoformat())
        return rotation.run_weekly(tenant_ids, slot)

    tenants = list(tenant_ids) if tenant_ids else rotation.locations.tenants()
    stored = []
    for tenant_id in tenants:
        snapshot = rotation.on_mutation(tenant_id, now)
        if snapshot is not None:
            stored.append(snapshot)
    return stored


def _timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Write location backups")
    parser.add_argument(
        "--tenant",
        dest="tenant_ids",
        action="append",
        help="Tenant to back up (repeatable); defaults to every tenant with records",
    )
    parser.add_argument(
        "--cadence",
        dest="cadence",
        choices=[c.value for c in Cadence],
        default=Cadence.WEEKLY.value,
        help="Retention window to write into",
    )
    parser.add_argument("--now", dest="now", type=_timestamp, help="Override the current time (ISO-8601)")
    parser.add_argument(
        "--init-schema",
        dest="init_schema",
        action="store_true",
        help="Create missing tables before running",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.init_schema:
        ensure_schema()

    stored = run_backup_job(
        tenant_ids=args.tenant_ids,
        cadence=Cadence(args.cadence),
        now=args.now,
    )
    logger.info("Completed run: backups_written=%d", len(stored))
    if args.tenant_ids and len(stored) < len(args.tenant_ids):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
