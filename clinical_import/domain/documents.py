"""Format-native intermediate documents.

Parsers produce these; validators inspect them; the transformer maps them to
the canonical ``ImportStructure``. They carry source values untouched apart
from field-name normalization.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from clinical_import.domain.enums import CsvVariant, ValueType
from clinical_import.domain.results import ImportIssue


class ColumnRole(str, Enum):
    PATIENT = "patient"
    VISIT = "visit"
    OBSERVATION = "observation"
    LABEL = "label"


@dataclass(frozen=True)
class CsvColumn:
    """One CSV column with its resolved role.

    ``value_type`` is None for full-export observation columns, whose type is
    inferred per cell.
    """
    index: int
    code: str
    label: Optional[str] = None
    role: ColumnRole = ColumnRole.OBSERVATION
    value_type: Optional[ValueType] = None
    is_date: bool = False
    unit: Optional[str] = None
    raw_tag: Optional[str] = None


@dataclass(frozen=True)
class CsvRow:
    number: int
    cells: tuple[str, ...]

    def get(self, column: CsvColumn) -> Optional[str]:
        if column.index >= len(self.cells):
            return None
        value = self.cells[column.index].strip()
        return value or None


@dataclass
class CsvDocument:
    variant: CsvVariant
    delimiter: str
    columns: list[CsvColumn]
    rows: list[CsvRow] = field(default_factory=list)
    row_errors: list[ImportIssue] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    total_rows: int = 0

    def column(self, code: str) -> Optional[CsvColumn]:
        for candidate in self.columns:
            if candidate.code == code and candidate.role is not ColumnRole.OBSERVATION:
                return candidate
        return None

    def columns_with_role(self, role: ColumnRole) -> list[CsvColumn]:
        return [c for c in self.columns if c.role is role]


@dataclass
class JsonDocument:
    """Top-level JSON export. Sections keep their raw shape for validation."""
    metadata: Any = None
    patients: Any = None
    visits: Any = None
    observations: Any = None
    wrapped: bool = False


@dataclass(frozen=True)
class Hl7Entry:
    title: str
    value: Any


@dataclass
class Hl7Patient:
    code: str
    gender: Optional[str] = None
    age: Any = None
    entries: list[Hl7Entry] = field(default_factory=list)


@dataclass
class Hl7VisitSection:
    index: int
    title: str
    visit_date: Any = None
    location: Optional[str] = None
    subject_ref: Optional[str] = None


@dataclass
class Hl7ObservationSection:
    index: int
    title: str
    entries: list[Hl7Entry] = field(default_factory=list)
    encounter_ref: Optional[str] = None


@dataclass
class Hl7Document:
    """Parsed FHIR Composition.

    ``has_sections`` is False when the composition carried no ``section``
    array at all.
    """
    title: str = "HL7 FHIR Composition Import"
    author: Optional[str] = None
    date: Optional[str] = None
    identifier: Optional[str] = None
    has_sections: bool = True
    patients: list[Hl7Patient] = field(default_factory=list)
    visits: list[Hl7VisitSection] = field(default_factory=list)
    observation_sections: list[Hl7ObservationSection] = field(default_factory=list)
    skipped_sections: int = 0


@dataclass(frozen=True)
class SurveyResponse:
    index: int
    value: Any
    code: Optional[str] = None
    question: Optional[str] = None
    options: Optional[list] = None
    value_type: Optional[str] = None


@dataclass
class SurveyDocument:
    """HTML page with an optional embedded clinical document.

    ``cda`` is None when no strategy recovered a document; ``responses`` is
    None when the document carried no responses array.
    """
    html_length: int = 0
    has_html_shell: bool = False
    has_script: bool = False
    page_title: Optional[str] = None
    cda: Optional[dict] = None
    patient: Optional[dict] = None
    questionnaire: Optional[dict] = None
    responses: Optional[list[SurveyResponse]] = None
    completed_at: Optional[str] = None
    survey_type: Optional[str] = None
    extraction_strategy: Optional[str] = None


ImportDocument = Union[CsvDocument, JsonDocument, Hl7Document, SurveyDocument]
