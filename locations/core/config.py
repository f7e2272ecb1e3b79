"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass, replace
from functools import lru_cache

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    database_url: str
    worker_port: int = 9000
    history_keep_per_field: int = 6
    crud_backup_keep: int = 5
    weekly_backup_keep: int = 12
    weekly_backup_weekday: int = 0
    weekly_backup_hour: int = 10
    backup_callback_url: str = ""


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer; using default %d.", name, raw, default)
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    backup_callback_url = os.getenv("BACKUP_CALLBACK_URL", "")

    settings = Settings(
        database_url=database_url,
        worker_port=_int_env("WORKER_PORT", 9000),
        history_keep_per_field=_int_env("HISTORY_KEEP_PER_FIELD", 6),
        crud_backup_keep=_int_env("CRUD_BACKUP_KEEP", 5),
        weekly_backup_keep=_int_env("WEEKLY_BACKUP_KEEP", 12),
        weekly_backup_weekday=_int_env("WEEKLY_BACKUP_WEEKDAY", 0),
        weekly_backup_hour=_int_env("WEEKLY_BACKUP_HOUR", 10),
        backup_callback_url=backup_callback_url,
    )

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not backup_callback_url:
        logger.warning("BACKUP_CALLBACK_URL is not configured; backup callbacks will be skipped.")
    if settings.history_keep_per_field < 1:
        logger.warning("HISTORY_KEEP_PER_FIELD must be positive; falling back to 6.")
        settings = replace(settings, history_keep_per_field=6)
    if settings.crud_backup_keep < 1 or settings.weekly_backup_keep < 1:
        logger.warning("Backup windows must be positive; falling back to 5 (crud) and 12 (weekly).")
        settings = replace(settings, crud_backup_keep=5, weekly_backup_keep=12)
    if not 0 <= settings.weekly_backup_weekday <= 6:
        logger.warning("WEEKLY_BACKUP_WEEKDAY must be 0 (Monday) to 6 (Sunday); falling back to 0.")
        settings = replace(settings, weekly_backup_weekday=0)
    if not 0 <= settings.weekly_backup_hour <= 23:
        logger.warning("WEEKLY_BACKUP_HOUR must be 0 to 23; falling back to 10.")
        settings = replace(settings, weekly_backup_hour=10)

    return settings
