"""Derive the lifecycle bucket of a location from its current data.

Buckets are never stored: ``classify`` recomputes them from the record's
status, its external-pending flag and the publish-tier validation result, so
the Active set always equals what an export would select.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional

from locations.models import REQUIRED_FIELDS, LocationRecord, Status
from locations.rules.validation import RuleContext, ValidationError, blocking, publish_errors

NEW_LOCATION_WINDOW = timedelta(days=3)


class Bucket(str, Enum):
    ACTIVE = "active"
    NEEDS_ATTENTION = "needs_attention"


class InvalidTransition(ValueError):
    """Raised when a status change targets something other than pending/active."""


@dataclass(frozen=True)
class Classification:
    bucket: Bucket
    is_new: bool
    errors: List[ValidationError] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)

    @property
    def critical_errors(self) -> List[ValidationError]:
        """Blocking problems on the required fields."""
        return [e for e in blocking(self.errors) if _base_field(e.field) in REQUIRED_FIELDS]

    @property
    def minor_errors(self) -> List[ValidationError]:
        return [e for e in blocking(self.errors) if _base_field(e.field) not in REQUIRED_FIELDS]

    def as_dict(self) -> dict:
        return {
            "bucket": self.bucket.value,
            "is_new": self.is_new,
            "reasons": list(self.reasons),
            "errors": [error.as_dict() for error in self.errors],
        }


def _base_field(name: str) -> str:
    return name.split(".", 1)[0].split("[", 1)[0]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_new(record: LocationRecord, now: Optional[datetime] = None) -> bool:
    if record.created_at is None:
        return False
    now = _as_utc(now or datetime.now(timezone.utc))
    return now - _as_utc(record.created_at) <= NEW_LOCATION_WINDOW


def attention_reasons(record: LocationRecord, errors: List[ValidationError]) -> List[str]:
    reasons: List[str] = []
    if Status(record.status) is Status.PENDING:
        reasons.append("pending")
    if record.is_async:
        reasons.append("external_pending")
    if blocking(errors):
        reasons.append("validation")
    return reasons


def is_publishable(record: LocationRecord, context: Optional[RuleContext] = None) -> bool:
    """Single publish predicate; classification, export and the API all go through it."""
    return not attention_reasons(record, publish_errors(record, context))


def classify(
    record: LocationRecord,
    now: Optional[datetime] = None,
    context: Optional[RuleContext] = None,
) -> Classification:
    errors = publish_errors(record, context)
    reasons = attention_reasons(record, errors)
    bucket = Bucket.NEEDS_ATTENTION if reasons else Bucket.ACTIVE
    return Classification(bucket=bucket, is_new=is_new(record, now), errors=errors, reasons=reasons)


def publishable(records: Iterable[LocationRecord], context: Optional[RuleContext] = None) -> List[LocationRecord]:
    """The Active set, in input order."""
    return [record for record in records if is_publishable(record, context)]


def transition(current: Status, target: Status) -> Status:
    """Validate a status change; only pending and active exist and they swap freely."""
    try:
        current, target = Status(current), Status(target)
    except ValueError as exc:
        raise InvalidTransition(str(exc)) from exc
    return target
