"""Core data models shared by the validation engine and the audit trail."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

REQUIRED_FIELDS = ("store_code", "business_name", "address_line1", "country", "primary_category")

DAY_FIELDS = (
    "monday_hours",
    "tuesday_hours",
    "wednesday_hours",
    "thursday_hours",
    "friday_hours",
    "saturday_hours",
    "sunday_hours",
)

SERVICE_URL_FIELDS = ("appointment_url", "menu_url", "reservations_url", "order_ahead_url")

SOCIAL_NETWORKS = ("facebook", "instagram", "linkedin", "pinterest", "tiktok", "twitter", "x", "youtube")

# Fields that identify a record rather than describe it; they are never diffed.
IDENTITY_FIELDS = ("tenant_id", "record_id", "created_at", "updated_at")


class Status(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"


class ChangeSource(str, Enum):
    MANUAL_EDIT = "manual_edit"
    IMPORT = "import"
    MULTI_EDIT = "multi_edit"
    BULK_UPDATE = "bulk_update"
    ROLLBACK = "rollback"
    CRUD = "crud"


class Cadence(str, Enum):
    ON_WRITE = "crud"
    WEEKLY = "weekly"


@dataclass(slots=True)
class LocationRecord:
    """Snapshot of a single tenant-owned location."""

    tenant_id: str
    record_id: Optional[str] = None
    store_code: Optional[str] = None
    business_name: Optional[str] = None
    primary_category: Optional[str] = None
    additional_categories: List[str] = field(default_factory=list)
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    address_line3: Optional[str] = None
    address_line4: Optional[str] = None
    address_line5: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    district: Optional[str] = None
    country: Optional[str] = None
    # Imports may deliver raw text (e.g. DMS notation); validation flags it.
    latitude: Optional[Union[float, str]] = None
    longitude: Optional[Union[float, str]] = None
    primary_phone: Optional[str] = None
    additional_phones: List[str] = field(default_factory=list)
    website: Optional[str] = None
    opening_date: Optional[Union[date, str]] = None
    monday_hours: Optional[str] = None
    tuesday_hours: Optional[str] = None
    wednesday_hours: Optional[str] = None
    thursday_hours: Optional[str] = None
    friday_hours: Optional[str] = None
    saturday_hours: Optional[str] = None
    sunday_hours: Optional[str] = None
    special_hours: Optional[str] = None
    appointment_url: Optional[str] = None
    menu_url: Optional[str] = None
    reservations_url: Optional[str] = None
    order_ahead_url: Optional[str] = None
    social_media_urls: Dict[str, Optional[str]] = field(default_factory=dict)
    description: Optional[str] = None
    temporarily_closed: bool = False
    is_async: bool = False
    status: Status = Status.PENDING
    custom_services: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def tracked_fields() -> Tuple[str, ...]:
    """Names of the record fields whose changes are written to the ledger."""
    return tuple(f.name for f in fields(LocationRecord) if f.name not in IDENTITY_FIELDS)


@dataclass(frozen=True)
class TimeRange:
    """An opening interval expressed in minutes since midnight."""

    opens: int
    closes: int


@dataclass(frozen=True)
class DayHours:
    """Opening hours for one day; no ranges means closed."""

    ranges: Tuple[TimeRange, ...] = ()

    @property
    def closed(self) -> bool:
        return not self.ranges


@dataclass(frozen=True)
class SpecialHoursEntry:
    day: date
    hours: DayHours


@dataclass(frozen=True)
class Actor:
    actor_id: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class FieldHistoryEntry:
    tenant_id: str
    record_id: str
    field_name: str
    old_value: Optional[str]
    new_value: Optional[str]
    actor_id: Optional[str]
    actor_email: Optional[str]
    changed_at: datetime
    change_source: ChangeSource
    entry_id: Optional[int] = None


@dataclass(frozen=True)
class BackupSnapshot:
    tenant_id: str
    cadence: Cadence
    created_at: datetime
    name: str
    content: str = field(repr=False)
    record_count: int = 0


@dataclass(frozen=True)
class ServiceDefinition:
    """Tenant-level custom service; empty ``categories`` means eligible everywhere."""

    service_id: str
    name: str
    categories: Tuple[str, ...] = ()

