"""Parser, validator and formatter for the opening-hours mini-language.

A day is written as ``09:00-12:00, 13:00-18:00``; ``x``, ``Closed`` or an
empty value mean closed. Special hours prefix a day with its date:
``2025-12-25: x, 2025-01-01: 10:00-15:00``.

Parsing never raises: failures come back as a :class:`ParseError` value so
callers can collect every problem of a record at once.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Union

from locations.models import DayHours, SpecialHoursEntry, TimeRange
from locations.rules.messages import ErrorKind, describe

CLOSED = "x"

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_FOUR_DIGIT_RE = re.compile(r"^\d{4}$")
_BARE_HOUR_RE = re.compile(r"^\d{1,2}$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_AND_RE = re.compile(r"\band\b", re.IGNORECASE)
# A special-hours piece that opens a new dated entry rather than adding a range.
_DATED_PIECE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}|[^:]+:\s)")
_ALLOWED_CHARS = frozenset("0123456789:-, ")
_WRONG_DASHES = ("–", "—")


@dataclass(frozen=True)
class ParseError:
    """Why a day-hours or special-hours value could not be parsed."""

    kind: ErrorKind
    raw: str
    token: str

    @property
    def message(self) -> str:
        return describe(self.kind)


def is_closed_literal(value: str) -> bool:
    stripped = value.strip()
    return stripped == "" or stripped == CLOSED or stripped.lower() == "closed"


def _format_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(token: str) -> Union[int, ErrorKind]:
    match = _TIME_RE.match(token)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if minute > 59 or hour > 24 or (hour == 24 and minute):
            return ErrorKind.INVALID_TIME
        return hour * 60 + minute
    if _FOUR_DIGIT_RE.match(token):
        return ErrorKind.FOUR_DIGIT_TIME
    if _BARE_HOUR_RE.match(token):
        return ErrorKind.MISSING_COLON
    return ErrorKind.INVALID_FORMAT


def _parse_range(token: str) -> Union[TimeRange, ErrorKind]:
    if not token:
        return ErrorKind.INVALID_FORMAT
    parts = token.split("-")
    if len(parts) == 1:
        return ErrorKind.MISSING_RANGE_SEPARATOR
    if len(parts) > 2:
        return ErrorKind.INVALID_FORMAT

    opens = _parse_time(parts[0].strip())
    if isinstance(opens, ErrorKind):
        return opens
    closes = _parse_time(parts[1].strip())
    if isinstance(closes, ErrorKind):
        return closes
    return TimeRange(opens=opens, closes=closes)


def parse_hours(text: Optional[str]) -> Union[DayHours, ParseError]:
    """Parse a single day's hours into a :class:`DayHours` or a :class:`ParseError`."""
    raw = "" if text is None else str(text)
    value = raw.strip()
    if is_closed_literal(value):
        return DayHours()

    if ";" in value or _AND_RE.search(value):
        return ParseError(ErrorKind.WRONG_SEPARATOR, raw, value)
    if any(dash in value for dash in _WRONG_DASHES):
        return ParseError(ErrorKind.WRONG_DASH, raw, value)
    if any(char not in _ALLOWED_CHARS for char in value):
        return ParseError(ErrorKind.INVALID_CHARACTERS, raw, value)

    ranges: List[TimeRange] = []
    for token in value.split(","):
        token = token.strip()
        parsed = _parse_range(token)
        if isinstance(parsed, ErrorKind):
            return ParseError(parsed, raw, token)
        ranges.append(parsed)
    return DayHours(ranges=tuple(ranges))


def format_hours(hours: DayHours) -> str:
    if hours.closed:
        return CLOSED
    return ", ".join(f"{_format_time(r.opens)}-{_format_time(r.closes)}" for r in hours.ranges)


def normalize_hours(text: Optional[str]) -> Optional[str]:
    """Return the canonical spelling of ``text``; unparseable input is kept as-is."""
    parsed = parse_hours(text)
    if isinstance(parsed, ParseError):
        return text
    return format_hours(parsed)


def hours_warnings(hours: DayHours) -> List[ErrorKind]:
    """Structural oddities that parse fine but deserve a second look."""
    warnings: List[ErrorKind] = []
    for time_range in hours.ranges:
        if time_range.opens == time_range.closes:
            kind = ErrorKind.ZERO_LENGTH_RANGE
        elif time_range.opens > time_range.closes:
            kind = ErrorKind.OVERNIGHT_RANGE
        else:
            continue
        if kind not in warnings:
            warnings.append(kind)

    forward = sorted((r for r in hours.ranges if r.opens < r.closes), key=lambda r: r.opens)
    for previous, current in zip(forward, forward[1:]):
        if current.opens < previous.closes:
            warnings.append(ErrorKind.OVERLAPPING_RANGES)
            break
    return warnings


def _parse_date(value: str) -> Optional[date]:
    if not _DATE_RE.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _split_special_entries(value: str) -> List[str]:
    entries: List[str] = []
    for piece in value.split(","):
        piece = piece.strip()
        if entries and piece and not _DATED_PIECE_RE.match(piece):
            entries[-1] = f"{entries[-1]}, {piece}"
        else:
            entries.append(piece)
    return entries


def parse_special_hours(text: Optional[str]) -> Union[List[SpecialHoursEntry], ParseError]:
    """Parse ``YYYY-MM-DD: <hours>`` overrides; the split happens on the first colon only."""
    raw = "" if text is None else str(text)
    value = raw.strip()
    if is_closed_literal(value):
        return []

    result: List[SpecialHoursEntry] = []
    for entry in _split_special_entries(value):
        if not entry:
            return ParseError(ErrorKind.INVALID_FORMAT, raw, entry)
        date_part, separator, hours_part = entry.partition(":")
        if not separator:
            return ParseError(ErrorKind.MISSING_DATE_SEPARATOR, raw, entry)
        day = _parse_date(date_part.strip())
        if day is None:
            return ParseError(ErrorKind.INVALID_DATE, raw, entry)
        hours = parse_hours(hours_part)
        if isinstance(hours, ParseError):
            return ParseError(hours.kind, raw, entry)
        result.append(SpecialHoursEntry(day=day, hours=hours))
    return result


def format_special_hours(entries: List[SpecialHoursEntry]) -> str:
    return ", ".join(f"{entry.day.isoformat()}: {format_hours(entry.hours)}" for entry in entries)
