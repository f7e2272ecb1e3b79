"""Error kinds produced by the rule set and their default English descriptions.

Callers that render text in other languages should key their own catalogs by
``ErrorKind`` instead of parsing these strings.
"""

from enum import Enum


class ErrorKind(str, Enum):
    # Hours grammar
    WRONG_SEPARATOR = "wrong_separator"
    WRONG_DASH = "wrong_dash"
    INVALID_CHARACTERS = "invalid_characters"
    MISSING_COLON = "missing_colon"
    FOUR_DIGIT_TIME = "four_digit_time"
    MISSING_RANGE_SEPARATOR = "missing_range_separator"
    INVALID_TIME = "invalid_time"
    INVALID_FORMAT = "invalid_format"
    MISSING_DATE_SEPARATOR = "missing_date_separator"
    ZERO_LENGTH_RANGE = "zero_length_range"
    OVERNIGHT_RANGE = "overnight_range"
    OVERLAPPING_RANGES = "overlapping_ranges"
    # Field rules
    MISSING_REQUIRED = "missing_required"
    BLANK_REQUIRED = "blank_required"
    INVALID_DATE = "invalid_date"
    OPENING_DATE_TOO_FAR = "opening_date_too_far"
    INVALID_COORDINATE = "invalid_coordinate"
    OUT_OF_RANGE = "out_of_range"
    DMS_COORDINATE = "dms_coordinate"
    HTML_TAGS = "html_tags"
    URL_IN_DESCRIPTION = "url_in_description"
    MISSING_SCHEME = "missing_scheme"
    INVALID_URL = "invalid_url"
    UNKNOWN_SOCIAL_NETWORK = "unknown_social_network"
    SOCIAL_HOST_MISMATCH = "social_host_mismatch"
    TOO_LONG = "too_long"
    INVALID_PHONE = "invalid_phone"
    TOO_MANY_CATEGORIES = "too_many_categories"
    UNKNOWN_SERVICE = "unknown_service"
    SERVICE_NOT_ELIGIBLE = "service_not_eligible"
    DUPLICATE_STORE_CODE = "duplicate_store_code"
    EXTERNAL_PENDING = "external_pending"


MESSAGES = {
    ErrorKind.WRONG_SEPARATOR: "Separate time ranges with commas, not semicolons: '09:00-12:00, 13:00-18:00'.",
    ErrorKind.WRONG_DASH: "Use a plain hyphen between times, not an en or em dash: '09:00-17:00'.",
    ErrorKind.INVALID_CHARACTERS: "Hours may only contain digits, ':', '-', ',' and spaces (or 'x' for closed).",
    ErrorKind.MISSING_COLON: "Times need hours and minutes separated by a colon: '09:00'.",
    ErrorKind.FOUR_DIGIT_TIME: "Write four-digit times with a colon: '0900' should be '09:00'.",
    ErrorKind.MISSING_RANGE_SEPARATOR: "Each range needs an opening and closing time joined by '-': '09:00-17:00'.",
    ErrorKind.INVALID_TIME: "Times must be between 00:00 and 24:00.",
    ErrorKind.INVALID_FORMAT: "Expected '09:00-17:00', '09:00-12:00, 13:00-17:00' or 'x' for closed.",
    ErrorKind.MISSING_DATE_SEPARATOR: "Special hours entries need a date and hours separated by ':': '2025-12-25: x'.",
    ErrorKind.ZERO_LENGTH_RANGE: "Opening and closing time are identical.",
    ErrorKind.OVERNIGHT_RANGE: "Closing time is earlier than opening time; check for an overnight range.",
    ErrorKind.OVERLAPPING_RANGES: "Time ranges overlap.",
    ErrorKind.MISSING_REQUIRED: "This field is required.",
    ErrorKind.BLANK_REQUIRED: "This field is required and cannot contain only whitespace.",
    ErrorKind.INVALID_DATE: "Dates must use the YYYY-MM-DD format.",
    ErrorKind.OPENING_DATE_TOO_FAR: "Opening date must not be more than 6 months in the future.",
    ErrorKind.INVALID_COORDINATE: "Coordinates must be decimal numbers such as 52.385983.",
    ErrorKind.OUT_OF_RANGE: "Latitude must be between -90 and 90, longitude between -180 and 180.",
    ErrorKind.DMS_COORDINATE: "Coordinates are in degrees/minutes/seconds; convert them to decimal degrees.",
    ErrorKind.HTML_TAGS: "Remove HTML tags from this text.",
    ErrorKind.URL_IN_DESCRIPTION: "The description must not contain URLs.",
    ErrorKind.MISSING_SCHEME: "URLs must start with http:// or https://.",
    ErrorKind.INVALID_URL: "This is not a valid URL.",
    ErrorKind.UNKNOWN_SOCIAL_NETWORK: "This social network is not supported.",
    ErrorKind.SOCIAL_HOST_MISMATCH: "The URL does not point to the named social network.",
    ErrorKind.TOO_LONG: "The value is too long.",
    ErrorKind.INVALID_PHONE: "Use a phone format such as +43-1-236-2933.",
    ErrorKind.TOO_MANY_CATEGORIES: "At most 10 additional categories are allowed.",
    ErrorKind.UNKNOWN_SERVICE: "The assigned custom service does not exist.",
    ErrorKind.SERVICE_NOT_ELIGIBLE: "The custom service is not available for this location's categories.",
    ErrorKind.DUPLICATE_STORE_CODE: "Store code appears more than once in this batch.",
    ErrorKind.EXTERNAL_PENDING: "The location is waiting for an external system and cannot be published.",
}


def describe(kind: ErrorKind) -> str:
    return MESSAGES.get(kind, kind.value)
