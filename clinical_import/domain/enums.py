"""Closed code sets used across the import pipeline.

Every enum inherits from ``str`` so members compare equal to their persisted
codes and serialize transparently through pydantic.
"""

from enum import Enum
from typing import Optional


class ValueType(str, Enum):
    """Observation value-type codes (``VALTYPE_CD``)."""
    NUMERIC = "N"
    TEXT = "T"
    BLOB = "B"
    SELECTION = "S"
    FINDING = "F"
    ANSWER = "A"
    QUESTIONNAIRE = "Q"
    RAW = "R"
    MEDICATION = "M"

    @classmethod
    def parse(cls, code: Optional[str]) -> Optional["ValueType"]:
        """Resolve a code or a human tag (``numeric``, ``date`` ...) to a member.

        Returns None for unknown or empty codes.
        """
        if code is None:
            return None
        key = str(code).strip().lower()
        if not key:
            return None
        if key in VALUE_TYPE_ALIASES:
            return VALUE_TYPE_ALIASES[key]
        for member in cls:
            if member.value.lower() == key:
                return member
        return None

    @property
    def slot(self) -> "ValueSlot":
        return VALUE_SLOTS[self]


class ValueSlot(str, Enum):
    """Typed storage slot an observation value occupies."""
    NUMERIC = "nval_num"
    TEXT = "tval_char"
    BLOB = "observation_blob"


VALUE_SLOTS = {
    ValueType.NUMERIC: ValueSlot.NUMERIC,
    ValueType.TEXT: ValueSlot.TEXT,
    ValueType.FINDING: ValueSlot.TEXT,
    ValueType.SELECTION: ValueSlot.TEXT,
    ValueType.ANSWER: ValueSlot.TEXT,
    ValueType.BLOB: ValueSlot.BLOB,
    ValueType.QUESTIONNAIRE: ValueSlot.BLOB,
    ValueType.RAW: ValueSlot.BLOB,
    ValueType.MEDICATION: ValueSlot.BLOB,
}

# Date cells are stored as normalized ISO text.
VALUE_TYPE_ALIASES = {
    "numeric": ValueType.NUMERIC,
    "number": ValueType.NUMERIC,
    "text": ValueType.TEXT,
    "string": ValueType.TEXT,
    "date": ValueType.TEXT,
    "d": ValueType.TEXT,
    "finding": ValueType.FINDING,
    "blob": ValueType.BLOB,
    "json": ValueType.BLOB,
    "selection": ValueType.SELECTION,
    "answer": ValueType.ANSWER,
    "questionnaire": ValueType.QUESTIONNAIRE,
    "raw": ValueType.RAW,
    "file": ValueType.RAW,
    "medication": ValueType.MEDICATION,
}

DATE_VALUE_TAGS = frozenset({"date", "d"})


class InOutCode(str, Enum):
    """Visit in/out classification (``INOUT_CD``)."""
    OUTPATIENT = "O"
    INPATIENT = "I"
    EMERGENCY = "E"


class ObservationCategory(str, Enum):
    """Category tags written to ``CATEGORY_CHAR``."""
    SURVEY = "SURVEY_BEST"
    DIAGNOSIS = "DIAGNOSIS"
    LAB = "LAB"
    ADMINISTRATIVE = "ADMINISTRATIVE"
    VITAL_SIGNS = "VITAL_SIGNS"
    MEDICATION = "MEDICATION"
    SOCIAL_HISTORY = "SOCIAL_HISTORY"
    ASSESSMENT = "ASSESSMENT"
    CLINICAL = "CLINICAL"


class ImportFormat(str, Enum):
    """Source formats understood by the detectors."""
    CSV = "csv"
    JSON = "json"
    HL7 = "hl7"
    HTML = "html"
    UNKNOWN = "unknown"


class CsvVariant(str, Enum):
    """CSV header conventions."""
    FULL_EXPORT = "full_export"
    CONDENSED = "condensed"


class DuplicateHandling(str, Enum):
    SKIP = "skip"
    UPDATE = "update"
    ERROR = "error"


class TransactionMode(str, Enum):
    SINGLE = "single"
    BATCH = "batch"
    NONE = "none"


class Hl7Assignment(str, Enum):
    """Strategies for linking HL7 visits and observations to patients."""
    POSITIONAL = "positional"
    EXPLICIT = "explicit"


class IssueKind(str, Enum):
    """Error taxonomy; a kind, not an exception type."""
    FORMAT = "format"
    STRUCTURAL = "structural"
    BUSINESS_RULE = "business_rule"
    ROW_LEVEL = "row_level"
    VALUE_COERCION = "value_coercion"
    STORAGE = "storage"
    INVARIANT = "invariant"
