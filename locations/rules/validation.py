"""Tiered validation rules for location records.

The same pure functions back every caller: the authoring path runs the entry
tier, imports run the import tier and both the lifecycle classifier and the
publish/export path run the publish tier. Nothing here performs I/O, so the
result for a given record and context is always the same.
"""

from __future__ import annotations

import calendar
import re
from collections import Counter
from dataclasses import dataclass
from datetime import date
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from locations.models import (
    DAY_FIELDS,
    REQUIRED_FIELDS,
    SERVICE_URL_FIELDS,
    SOCIAL_NETWORKS,
    LocationRecord,
    ServiceDefinition,
)
from locations.rules.hours import ParseError, hours_warnings, parse_hours, parse_special_hours
from locations.rules.messages import ErrorKind, describe

OPENING_DATE_HORIZON_MONTHS = 6
MAX_ADDITIONAL_CATEGORIES = 10

FIELD_MAX_LENGTHS = {
    "store_code": 64,
    "business_name": 300,
    "address_line1": 80,
    "address_line2": 80,
    "address_line3": 80,
    "address_line4": 80,
    "address_line5": 80,
    "postal_code": 80,
    "district": 80,
    "city": 80,
    "state": 80,
    "website": 2083,
    "menu_url": 2083,
    "description": 750,
}

FREE_TEXT_FIELDS = (
    "business_name",
    "address_line1",
    "address_line2",
    "address_line3",
    "address_line4",
    "address_line5",
    "city",
    "state",
    "district",
    "primary_category",
    "description",
)

SOCIAL_HOSTS = {
    "facebook": ("facebook.com", "fb.com"),
    "instagram": ("instagram.com",),
    "linkedin": ("linkedin.com",),
    "pinterest": ("pinterest.com",),
    "tiktok": ("tiktok.com",),
    "twitter": ("twitter.com", "x.com"),
    "x": ("x.com", "twitter.com"),
    "youtube": ("youtube.com", "youtu.be"),
}

_PHONE_RE = re.compile(r"^\(?[+]?[0-9a-zA-Z ()./–-]*$")
_DMS_RE = re.compile(r"[°'\"′″]|\d\s*[NSEW]$", re.IGNORECASE)
_URL_IN_TEXT_RE = re.compile(r"(https?://|www\.)\S+", re.IGNORECASE)
_URL_HOST_RE = re.compile(r"^[^\s.]+(\.[^\s.]+)+$")


class Tier(IntEnum):
    ENTRY = 1
    IMPORT = 2
    PUBLISH = 3


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationError:
    field: str
    kind: ErrorKind
    tier: Tier
    severity: Severity = Severity.ERROR
    detail: Optional[str] = None

    @property
    def message(self) -> str:
        return describe(self.kind)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "kind": self.kind.value,
            "tier": int(self.tier),
            "severity": self.severity.value,
            "message": self.message,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class RuleContext:
    """Inputs beyond the record itself; everything is plain in-memory data."""

    today: Optional[date] = None
    opening_date_horizon_months: int = OPENING_DATE_HORIZON_MONTHS
    services: Optional[Mapping[str, ServiceDefinition]] = None

    def current_date(self) -> date:
        return self.today or date.today()


Rule = Callable[[LocationRecord, Tier, RuleContext], List[ValidationError]]


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _coerce_date(value: Any) -> Optional[date]:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        return None


# ---------- Entry tier ----------


def _check_required(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    errors: List[ValidationError] = []
    for name in REQUIRED_FIELDS:
        value = getattr(record, name)
        if _is_missing(value):
            errors.append(ValidationError(name, ErrorKind.MISSING_REQUIRED, Tier.ENTRY))
        elif tier >= Tier.PUBLISH and not str(value).strip():
            errors.append(ValidationError(name, ErrorKind.BLANK_REQUIRED, Tier.PUBLISH))
    return errors


def _check_opening_date(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    if _is_missing(record.opening_date):
        return []
    opening = _coerce_date(record.opening_date)
    if opening is None:
        return [ValidationError("opening_date", ErrorKind.INVALID_DATE, Tier.ENTRY, detail=_text(record.opening_date))]
    limit = add_months(context.current_date(), context.opening_date_horizon_months)
    if opening > limit:
        return [
            ValidationError(
                "opening_date",
                ErrorKind.OPENING_DATE_TOO_FAR,
                Tier.ENTRY,
                detail=f"{opening.isoformat()} is after {limit.isoformat()}",
            )
        ]
    return []


def _check_coordinates(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    errors: List[ValidationError] = []
    for name, bound in (("latitude", 90.0), ("longitude", 180.0)):
        value = getattr(record, name)
        if _is_missing(value):
            continue
        if isinstance(value, bool):
            errors.append(ValidationError(name, ErrorKind.INVALID_COORDINATE, Tier.ENTRY, detail=str(value)))
            continue
        if isinstance(value, str):
            raw = value.strip()
            if tier >= Tier.IMPORT and _DMS_RE.search(raw):
                errors.append(ValidationError(name, ErrorKind.DMS_COORDINATE, Tier.IMPORT, detail=raw))
                continue
            try:
                number = float(raw)
            except ValueError:
                errors.append(ValidationError(name, ErrorKind.INVALID_COORDINATE, Tier.ENTRY, detail=raw))
                continue
        else:
            number = float(value)
        if not -bound <= number <= bound:
            errors.append(ValidationError(name, ErrorKind.OUT_OF_RANGE, Tier.ENTRY, detail=str(value)))
    return errors


# ---------- Import tier ----------


def _check_lengths(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    errors: List[ValidationError] = []
    for name, limit in FIELD_MAX_LENGTHS.items():
        value = getattr(record, name)
        if isinstance(value, str) and len(value) > limit:
            errors.append(ValidationError(name, ErrorKind.TOO_LONG, Tier.IMPORT, detail=f"{len(value)} > {limit}"))
    return errors


def contains_html(text: str) -> bool:
    if "<" not in text:
        return False
    return BeautifulSoup(text, "html.parser").find() is not None


def _check_free_text(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    errors: List[ValidationError] = []
    for name in FREE_TEXT_FIELDS:
        value = getattr(record, name)
        if isinstance(value, str) and contains_html(value):
            errors.append(ValidationError(name, ErrorKind.HTML_TAGS, Tier.IMPORT, detail=value[:80]))
    for index, category in enumerate(record.additional_categories):
        category = _text(category)
        if contains_html(category):
            errors.append(
                ValidationError(f"additional_categories[{index}]", ErrorKind.HTML_TAGS, Tier.IMPORT, detail=category[:80])
            )

    if record.description:
        match = _URL_IN_TEXT_RE.search(_text(record.description))
        if match:
            errors.append(ValidationError("description", ErrorKind.URL_IN_DESCRIPTION, Tier.IMPORT, detail=match.group(0)))
    return errors


def url_problem(value: str) -> Optional[ErrorKind]:
    """Return why ``value`` is not an absolute http(s) URL, or ``None`` when it is."""
    candidate = value.strip()
    if not candidate:
        return None
    if any(char.isspace() for char in candidate):
        return ErrorKind.INVALID_URL
    if "://" not in candidate:
        return ErrorKind.MISSING_SCHEME
    try:
        parsed = urlparse(candidate)
        hostname = parsed.hostname
    except ValueError:
        # urllib rejects unbalanced IPv6 brackets and bad ports.
        return ErrorKind.INVALID_URL
    if parsed.scheme.lower() not in ("http", "https"):
        return ErrorKind.INVALID_URL
    if not hostname or not _URL_HOST_RE.match(hostname):
        return ErrorKind.INVALID_URL
    return None


def _hostname(value: str) -> str:
    try:
        return (urlparse(value.strip()).hostname or "").lower()
    except ValueError:
        return ""


def _check_urls(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    errors: List[ValidationError] = []
    for name in ("website",) + SERVICE_URL_FIELDS:
        value = getattr(record, name)
        if _is_missing(value):
            continue
        problem = url_problem(str(value))
        if problem is not None:
            errors.append(ValidationError(name, problem, Tier.IMPORT, detail=str(value)))
    return errors


def _check_phones(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    errors: List[ValidationError] = []
    primary = _text(record.primary_phone).strip()
    if primary and not _PHONE_RE.match(primary):
        errors.append(ValidationError("primary_phone", ErrorKind.INVALID_PHONE, Tier.IMPORT, detail=primary))
    for index, phone in enumerate(record.additional_phones):
        text = _text(phone).strip()
        if text and not _PHONE_RE.match(text):
            errors.append(ValidationError(f"additional_phones[{index}]", ErrorKind.INVALID_PHONE, Tier.IMPORT, detail=text))
    return errors


def _check_categories(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    count = len([c for c in record.additional_categories if _text(c).strip()])
    if count > MAX_ADDITIONAL_CATEGORIES:
        return [ValidationError("additional_categories", ErrorKind.TOO_MANY_CATEGORIES, Tier.IMPORT, detail=str(count))]
    return []


def _check_day_hours(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    errors: List[ValidationError] = []
    for name in DAY_FIELDS:
        parsed = parse_hours(getattr(record, name))
        if isinstance(parsed, ParseError):
            errors.append(ValidationError(name, parsed.kind, Tier.IMPORT, detail=parsed.token))
            continue
        for kind in hours_warnings(parsed):
            errors.append(ValidationError(name, kind, Tier.IMPORT, Severity.WARNING))
    return errors


def service_eligible(service: ServiceDefinition, categories: Iterable[str]) -> bool:
    if not service.categories:
        return True
    wanted = {c.strip().lower() for c in service.categories}
    return any(_text(c).strip().lower() in wanted for c in categories if _text(c).strip())


def _check_services(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    if context.services is None:
        return []
    categories = [_text(record.primary_category)] + [_text(c) for c in record.additional_categories]
    errors: List[ValidationError] = []
    for service_id in record.custom_services:
        service_id = _text(service_id)
        service = context.services.get(service_id)
        if service is None:
            errors.append(ValidationError("custom_services", ErrorKind.UNKNOWN_SERVICE, Tier.IMPORT, detail=service_id))
        elif not service_eligible(service, categories):
            errors.append(ValidationError("custom_services", ErrorKind.SERVICE_NOT_ELIGIBLE, Tier.IMPORT, detail=service_id))
    return errors


# ---------- Publish tier ----------


def _check_social_urls(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    errors: List[ValidationError] = []
    for network, url in record.social_media_urls.items():
        name = f"social_media_urls.{network}"
        if network not in SOCIAL_NETWORKS:
            errors.append(ValidationError(name, ErrorKind.UNKNOWN_SOCIAL_NETWORK, Tier.PUBLISH, detail=network))
            continue
        if _is_missing(url):
            continue
        problem = url_problem(str(url))
        if problem is not None:
            errors.append(ValidationError(name, problem, Tier.PUBLISH, detail=str(url)))
            continue
        host = _hostname(str(url))
        allowed = SOCIAL_HOSTS[network]
        if not any(host == h or host.endswith("." + h) for h in allowed):
            errors.append(ValidationError(name, ErrorKind.SOCIAL_HOST_MISMATCH, Tier.PUBLISH, detail=str(url)))
    return errors


def _check_special_hours(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    parsed = parse_special_hours(record.special_hours)
    if isinstance(parsed, ParseError):
        return [ValidationError("special_hours", parsed.kind, Tier.PUBLISH, detail=parsed.token)]
    return []


def _check_external_pending(record: LocationRecord, tier: Tier, context: RuleContext) -> List[ValidationError]:
    if record.is_async:
        return [ValidationError("is_async", ErrorKind.EXTERNAL_PENDING, Tier.PUBLISH)]
    return []


_RULES: Sequence[Tuple[Tier, Rule]] = (
    (Tier.ENTRY, _check_required),
    (Tier.ENTRY, _check_opening_date),
    (Tier.ENTRY, _check_coordinates),
    (Tier.IMPORT, _check_lengths),
    (Tier.IMPORT, _check_free_text),
    (Tier.IMPORT, _check_urls),
    (Tier.IMPORT, _check_phones),
    (Tier.IMPORT, _check_categories),
    (Tier.IMPORT, _check_day_hours),
    (Tier.IMPORT, _check_services),
    (Tier.PUBLISH, _check_social_urls),
    (Tier.PUBLISH, _check_special_hours),
    (Tier.PUBLISH, _check_external_pending),
)


def validate(record: LocationRecord, tier: Tier, context: Optional[RuleContext] = None) -> List[ValidationError]:
    """Run every rule up to ``tier`` and return all problems in rule order."""
    context = context or RuleContext()
    errors: List[ValidationError] = []
    for rule_tier, check in _RULES:
        if rule_tier <= tier:
            errors.extend(check(record, tier, context))
    return errors


def entry_errors(record: LocationRecord, context: Optional[RuleContext] = None) -> List[ValidationError]:
    return validate(record, Tier.ENTRY, context)


def import_errors(record: LocationRecord, context: Optional[RuleContext] = None) -> List[ValidationError]:
    return validate(record, Tier.IMPORT, context)


def publish_errors(record: LocationRecord, context: Optional[RuleContext] = None) -> List[ValidationError]:
    return validate(record, Tier.PUBLISH, context)


def validate_batch(
    records: Sequence[LocationRecord],
    tier: Tier = Tier.IMPORT,
    context: Optional[RuleContext] = None,
) -> List[List[ValidationError]]:
    """Validate a batch; repeated store codes are flagged on every occurrence after the first."""
    results = [validate(record, tier, context) for record in records]
    if tier < Tier.IMPORT:
        return results

    codes = [_text(record.store_code).strip() for record in records]
    counts = Counter(code for code in codes if code)
    seen = set()
    for code, errors in zip(codes, results):
        if not code or counts[code] < 2:
            continue
        if code in seen:
            errors.append(ValidationError("store_code", ErrorKind.DUPLICATE_STORE_CODE, Tier.IMPORT, detail=code))
        seen.add(code)
    return results


def blocking(errors: Iterable[ValidationError]) -> List[ValidationError]:
    return [error for error in errors if error.severity is Severity.ERROR]


def service_errors(record: LocationRecord, context: Optional[RuleContext] = None) -> List[ValidationError]:
    """Custom-service assignment problems alone; empty when no catalog is supplied."""
    context = context or RuleContext()
    return _check_services(record, Tier.IMPORT, context)
