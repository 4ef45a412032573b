"""Field normalization helpers shared by parsers and the transformer.

All helpers are pure and tolerant: unrecognized input returns None (or the
documented default) instead of raising.
"""

import json
import math
import re
from datetime import date, datetime
from typing import Any, Optional

from clinical_import.domain.enums import InOutCode, ObservationCategory, ValueType

_SEX_CODES = {
    "m": "M", "male": "M", "man": "M", "1": "M",
    "f": "F", "female": "F", "woman": "F", "2": "F",
    "u": "U", "unknown": "U", "other": "U", "3": "U",
}

_INOUT_CODES = {
    "i": InOutCode.INPATIENT, "inpatient": InOutCode.INPATIENT, "in": InOutCode.INPATIENT, "1": InOutCode.INPATIENT,
    "o": InOutCode.OUTPATIENT, "outpatient": InOutCode.OUTPATIENT, "out": InOutCode.OUTPATIENT, "2": InOutCode.OUTPATIENT,
    "e": InOutCode.EMERGENCY, "emergency": InOutCode.EMERGENCY, "er": InOutCode.EMERGENCY, "3": InOutCode.EMERGENCY,
}

_DATE_PATTERNS = (
    (re.compile(r"^\d{4}-\d{2}-\d{2}$"), "%Y-%m-%d"),
    (re.compile(r"^\d{1,2}/\d{1,2}/\d{4}$"), "%m/%d/%Y"),
    (re.compile(r"^\d{1,2}\.\d{1,2}\.\d{4}$"), "%d.%m.%Y"),
    (re.compile(r"^\d{4}/\d{1,2}/\d{1,2}$"), "%Y/%m/%d"),
    (re.compile(r"^\d{1,2}-\d{1,2}-\d{4}$"), "%m-%d-%Y"),
)

_ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}")

# (prefix, code fragments, category) checked in order against a lowercased title.
_CATEGORY_RULES = (
    ("lid:", ("72172",), ObservationCategory.SURVEY),
    ("sctid:", ("47965005",), ObservationCategory.DIAGNOSIS),
    ("lid:", ("2947", "6298"), ObservationCategory.LAB),
    ("sctid:", ("399423000",), ObservationCategory.ADMINISTRATIVE),
    ("sctid:", ("60621009",), ObservationCategory.VITAL_SIGNS),
    ("lid:", ("52418",), ObservationCategory.MEDICATION),
    ("lid:", ("74287",), ObservationCategory.SOCIAL_HISTORY),
    ("sctid:", ("262188008",), ObservationCategory.ASSESSMENT),
)

_SURVEY_KEYWORDS = ("questionnaire", "survey", "custom")


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def normalize_sex(value: Any) -> Optional[str]:
    """Map sex/gender spellings to M/F/U; unknown values pass through."""
    if is_blank(value):
        return None
    text = str(value).strip()
    return _SEX_CODES.get(text.lower(), text)


def normalize_inout(value: Any) -> tuple[InOutCode, bool]:
    """Map an in/out spelling to the closed set.

    Returns:
        (code, recognized): unknown or blank input yields Outpatient with
        ``recognized`` False so callers can warn.
    """
    if is_blank(value):
        return InOutCode.OUTPATIENT, True
    code = _INOUT_CODES.get(str(value).strip().lower())
    if code is None:
        return InOutCode.OUTPATIENT, False
    return code, True


def inout_from_location(location: Optional[str]) -> InOutCode:
    """Keyword classification used by HL7 visit sections."""
    text = (location or "").lower()
    if "hospital" in text:
        return InOutCode.INPATIENT
    if "clinic" in text:
        return InOutCode.OUTPATIENT
    if "emergency" in text:
        return InOutCode.EMERGENCY
    return InOutCode.OUTPATIENT


def parse_number(value: Any) -> Optional[float]:
    """Strict finite float coercion; booleans are not numbers."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def scalar_text(value: Any) -> Any:
    """Render a boolean or number as JSON writes it; other values pass through.

    Loosely typed sources send codes such as ``VITAL_STATUS_CD: 1``; text
    columns store them as ``"1"``, and booleans as ``"true"``/``"false"``.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value)) if value.is_integer() else repr(value)
    return value


def parse_age(value: Any) -> Optional[int]:
    """Non-negative integer age, or None."""
    number = parse_number(value)
    if number is None or number < 0 or number != int(number):
        return None
    return int(number)


def normalize_date(value: Any) -> Optional[date]:
    """Parse common date spellings (ISO, US, European, ISO datetime)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    for pattern, fmt in _DATE_PATTERNS:
        if pattern.match(text):
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                return None
    if _ISO_DATETIME.match(text):
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def looks_like_date(value: Any) -> bool:
    return isinstance(value, str) and normalize_date(value) is not None


def looks_like_json(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    text = value.strip()
    if not (text.startswith("{") or text.startswith("[")):
        return False
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def infer_value_type(value: Any) -> ValueType:
    """Sniff the value type of an untyped cell: numeric, JSON blob or text."""
    if parse_number(value) is not None:
        return ValueType.NUMERIC
    if looks_like_json(value):
        return ValueType.BLOB
    return ValueType.TEXT


def infer_category(title: Optional[str]) -> ObservationCategory:
    """Infer an observation category from keywords or coded fragments."""
    text = (title or "").lower()
    if any(keyword in text for keyword in _SURVEY_KEYWORDS):
        return ObservationCategory.SURVEY
    for prefix, fragments, category in _CATEGORY_RULES:
        if prefix in text and any(fragment in text for fragment in fragments):
            return category
    return ObservationCategory.CLINICAL


_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(B|KB|MB|GB)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"B": 1, "KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3}
DEFAULT_MAX_FILE_SIZE = 50 * 1024 ** 2


def parse_file_size(value: Any) -> int:
    """Parse ``"50MB"``-style sizes to bytes; unparseable input yields 50MB."""
    if isinstance(value, bool):
        return DEFAULT_MAX_FILE_SIZE
    if isinstance(value, (int, float)):
        return int(value)
    match = _SIZE_PATTERN.match(str(value or ""))
    if not match:
        return DEFAULT_MAX_FILE_SIZE
    unit = (match.group(2) or "B").upper()
    return int(float(match.group(1)) * _SIZE_UNITS[unit])
