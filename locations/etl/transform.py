"""Utilities for moving location data between records, rows and history values."""

import json
import logging
import re
from dataclasses import fields
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from locations.models import DAY_FIELDS, SERVICE_URL_FIELDS, LocationRecord, Status
from locations.rules.hours import is_closed_literal, normalize_hours

logger = logging.getLogger(__name__)

LIST_FIELDS = ("additional_categories", "additional_phones", "custom_services")
DICT_FIELDS = ("social_media_urls",)
BOOL_FIELDS = ("temporarily_closed", "is_async")
COORDINATE_FIELDS = ("latitude", "longitude")
URL_FIELDS = ("website",) + SERVICE_URL_FIELDS
NON_TEXT_FIELDS = LIST_FIELDS + DICT_FIELDS + BOOL_FIELDS + COORDINATE_FIELDS + (
    "opening_date",
    "status",
    "created_at",
    "updated_at",
)

_RECORD_FIELDS = {f.name for f in fields(LocationRecord)}
_EXTERNAL_NAMES = {
    "fromTheBusiness": "description",
    "appointmentURL": "appointment_url",
    "menuURL": "menu_url",
    "reservationsURL": "reservations_url",
    "orderAheadURL": "order_ahead_url",
    "id": "record_id",
    "client_id": "tenant_id",
}
_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def field_name_for(key: str) -> Optional[str]:
    """Map an external column name (camelCase or snake_case) to a record field."""
    if key in _RECORD_FIELDS:
        return key
    if key in _EXTERNAL_NAMES:
        return _EXTERNAL_NAMES[key]
    candidate = _CAMEL_RE.sub("_", key).lower()
    return candidate if candidate in _RECORD_FIELDS else None


def _split_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part).strip() for part in value if part is not None and str(part).strip()]


def _social_urls(value: Any) -> Dict[str, Optional[str]]:
    if not value:
        return {}
    if isinstance(value, str):
        value = json.loads(value)
    if isinstance(value, Mapping):
        return {str(k): v for k, v in value.items()}
    # Exports list networks as [{"name": "url_facebook", "url": "..."}].
    result: Dict[str, Optional[str]] = {}
    for item in value:
        name = str(item.get("name", "")).removeprefix("url_")
        if name:
            result[name] = item.get("url")
    return result


def _coordinate(value: Any) -> Any:
    if value is None or (isinstance(value, (int, float)) and not isinstance(value, bool)):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return text


def _opening_date(value: Any) -> Any:
    if value is None or isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        return text


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.debug("Ignoring unparseable timestamp %r", value)
        return None


def _scalar_text(value: Any) -> Any:
    """Spreadsheet and JSON imports deliver store codes and phones as numbers."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def _clean_url(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    text = value.strip()
    if text.startswith("<") and text.endswith(">"):
        text = text[1:-1].strip()
    return text or None


def record_from_dict(data: Mapping[str, Any], tenant_id: Optional[str] = None) -> LocationRecord:
    """Build a record from a row or request payload; unknown keys are ignored."""
    values: Dict[str, Any] = {}
    for key, value in data.items():
        name = field_name_for(key)
        if name is None:
            continue
        if isinstance(value, str):
            value = value.strip() if name not in DAY_FIELDS + ("special_hours",) else value
            if value == "":
                value = None
        values[name] = value

    for name, value in values.items():
        if name not in NON_TEXT_FIELDS:
            values[name] = _scalar_text(value)
    for name in LIST_FIELDS:
        if name in values:
            values[name] = _split_list(values[name])
    if "social_media_urls" in values:
        values["social_media_urls"] = _social_urls(values["social_media_urls"])
    for name in BOOL_FIELDS:
        if name in values:
            values[name] = bool(values[name]) and str(values[name]).lower() not in ("false", "0", "no")
    for name in COORDINATE_FIELDS:
        if name in values:
            values[name] = _coordinate(values[name])
    for name in URL_FIELDS:
        if name in values:
            values[name] = _clean_url(values[name])
    if "opening_date" in values:
        values["opening_date"] = _opening_date(values["opening_date"])
    if values.get("status") is not None:
        values["status"] = Status(str(values["status"]).lower())
    else:
        values.pop("status", None)
    for name in ("created_at", "updated_at"):
        if name in values:
            values[name] = _timestamp(values[name])
    for name in ("record_id", "tenant_id"):
        if values.get(name) is not None:
            values[name] = str(values[name])

    if tenant_id is not None:
        values["tenant_id"] = tenant_id
    if not values.get("tenant_id"):
        raise ValueError("tenant_id is required to build a location record")
    return LocationRecord(**values)


def normalize_for_write(record: LocationRecord) -> LocationRecord:
    """Canonicalise values before persisting: closed days become ``x``."""
    for name in DAY_FIELDS:
        setattr(record, name, normalize_hours(getattr(record, name)))
    if record.special_hours is not None and is_closed_literal(record.special_hours):
        record.special_hours = None
    return record


def _json_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def record_to_dict(record: LocationRecord) -> Dict[str, Any]:
    """JSON-friendly mapping of every record field."""
    return {f.name: _json_value(getattr(record, f.name)) for f in fields(LocationRecord)}


def serialize_value(field_name: str, value: Any) -> Optional[str]:
    """Serialise a field value for history comparison and storage.

    ``None``, ``""`` and empty collections all map to ``None``; closed day
    hours map to ``x`` whatever their spelling.
    """
    if field_name in DAY_FIELDS:
        value = normalize_hours(value)
    if value is None or value == "":
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, dict)):
        if not value:
            return None
        return json.dumps(value, sort_keys=True, ensure_ascii=False)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def deserialize_value(field_name: str, text: Optional[str]) -> Any:
    """Inverse of :func:`serialize_value` for the type stored on ``field_name``."""
    if field_name in LIST_FIELDS:
        return json.loads(text) if text else []
    if field_name in DICT_FIELDS:
        return json.loads(text) if text else {}
    if field_name in BOOL_FIELDS:
        return text == "true"
    if text is None:
        return None
    if field_name in COORDINATE_FIELDS:
        return _coordinate(text)
    if field_name == "opening_date":
        return _opening_date(text)
    if field_name == "status":
        return Status(text)
    return text


def identity_snapshot(record: LocationRecord) -> str:
    """Small JSON blob that keeps a created/deleted record recognisable."""
    return json.dumps(
        {"store_code": record.store_code, "business_name": record.business_name},
        sort_keys=True,
        ensure_ascii=False,
    )
