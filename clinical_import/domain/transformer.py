"""Canonical Transformer.

Maps a validated intermediate document to the canonical ``ImportStructure``.

Architecture:
    - One ``_Builder`` per call owns the ``KeyAllocator`` and the issue lists;
      no state survives between imports
    - Surrogate keys are 1-based and assigned in source order; storage
      reconciles them against existing rows later
    - Values are typed through ``ValueTyper``; degradations become warnings
    - References that cannot be resolved drop the record with an Invariant
      warning instead of producing a dangling key
    - The cancellation token is checked between top-level records

HL7 visits and observation sections carry no reliable patient link, so the
linking rule is a named strategy (see ``PositionalAssignmentStrategy`` and
``ExplicitReferenceStrategy``).
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterator, Mapping, Optional, Sequence

from pydantic import ValidationError

from clinical_import.domain.documents import (
    ColumnRole,
    CsvDocument,
    Hl7Document,
    Hl7ObservationSection,
    Hl7VisitSection,
    ImportDocument,
    JsonDocument,
    SurveyDocument,
    SurveyResponse,
)
from clinical_import.domain.enums import (
    Hl7Assignment,
    ImportFormat,
    InOutCode,
    IssueKind,
    ObservationCategory,
    ValueType,
)
from clinical_import.domain.guardrails import CancellationToken
from clinical_import.domain.import_structure import ImportStructure, Observation, Patient, Visit
from clinical_import.domain.normalizers import (
    infer_category,
    infer_value_type,
    inout_from_location,
    is_blank,
    looks_like_date,
    normalize_date,
    normalize_inout,
    normalize_sex,
    parse_age,
    parse_number,
)
from clinical_import.domain.ports import TransformationError
from clinical_import.domain.results import ImportIssue
from clinical_import.domain.value_typer import (
    Resolution,
    SelectionOption,
    ValueTyper,
    observation_fields,
    stringify,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUS_CD = "SCTID: 55561003"
HL7_VITAL_STATUS_CD = "SCTID: 438949009"
HL7_DEFAULT_LOCATION = "HL7_IMPORT"
SURVEY_LOCATION = "OUTPATIENT"
QUESTIONNAIRE_CONCEPT = "CUSTOM: QUESTIONNAIRE"
UNKNOWN_PATIENT_CD = "UNKNOWN"

SOURCE_SYSTEMS = {
    ImportFormat.CSV: "CSV_IMPORT",
    ImportFormat.JSON: "JSON_IMPORT",
    ImportFormat.HL7: "HL7_IMPORT",
    ImportFormat.HTML: "SURVEY_SYSTEM",
}


class KeyAllocator:
    """Hands out 1-based surrogate keys per entity type, in call order."""

    def __init__(self) -> None:
        self._next: dict[str, int] = defaultdict(lambda: 1)

    def peek(self, entity: str) -> int:
        """Key the next ``next`` call will return, without consuming it."""
        return self._next[entity]

    def next(self, entity: str) -> int:
        key = self._next[entity]
        self._next[entity] = key + 1
        return key


@dataclass
class TransformOutcome:
    """Transformer output: the structure plus issues raised while mapping."""
    structure: ImportStructure
    errors: list[ImportIssue] = field(default_factory=list)
    warnings: list[ImportIssue] = field(default_factory=list)


def _default(fields: dict, key: str, value: Any) -> None:
    if is_blank(fields.get(key)):
        fields[key] = value


def parse_options(raw: Any) -> list[SelectionOption]:
    """Read an inline option list (``[{label, value}]`` or plain labels)."""
    if not isinstance(raw, list):
        return []
    options: list[SelectionOption] = []
    for item in raw:
        if isinstance(item, dict) and not is_blank(item.get("label")):
            options.append(SelectionOption.model_validate(item))
        elif isinstance(item, (str, int, float)) and not isinstance(item, bool) and not is_blank(item):
            options.append(SelectionOption(label=str(item), value=str(item)))
    return options


class _Builder:
    """Accumulates canonical rows and issues for one transform call."""

    def __init__(
        self,
        source_system: str,
        today: date,
        cancel_token: Optional[CancellationToken],
    ):
        self.source_system = source_system
        self.today = today
        self.cancel_token = cancel_token
        self.keys = KeyAllocator()
        self.patients: list[Patient] = []
        self.visits: list[Visit] = []
        self.observations: list[Observation] = []
        self.errors: list[ImportIssue] = []
        self.warnings: list[ImportIssue] = []
        self._by_code: dict[str, Patient] = {}
        self._instances: dict[tuple, int] = defaultdict(int)

    def checkpoint(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

    def warn(self, code: str, message: str, kind: IssueKind, **kwargs: Any) -> None:
        self.warnings.append(ImportIssue.warning(code, message, kind, **kwargs))

    @contextmanager
    def record(self, label: str, row: Optional[int] = None) -> Iterator[None]:
        """Drop one source record whose fields fail model validation.

        Rows added before the failure stay; the failing row and everything
        after it in the block are skipped with a RowLevel warning.
        """
        try:
            yield
        except ValidationError as e:
            first = e.errors()[0]
            column = str(first["loc"][0]).upper() if first.get("loc") else None
            logger.debug(f"Dropped malformed record ({label}): {str(e)}")
            self.warn(
                "INVALID_RECORD",
                f"{label} has an invalid {column or 'field'} ({first['msg']}); dropped",
                IssueKind.ROW_LEVEL,
                field=column,
                row=row,
            )

    def patient(self, code: str, **fields: Any) -> Patient:
        """Return the patient for ``code``, creating it on first sight."""
        code = code.strip()
        existing = self._by_code.get(code)
        if existing is not None:
            return existing
        _default(fields, "sourcesystem_cd", self.source_system)
        patient = Patient(
            patient_num=self.keys.peek("patient"),
            patient_cd=code,
            **{k: v for k, v in fields.items() if v is not None},
        )
        self._by_code[code] = patient
        self.keys.next("patient")
        self.patients.append(patient)
        return patient

    def visit(
        self,
        patient: Patient,
        start: Any,
        *,
        end: Any = None,
        location: Optional[str] = None,
        inout: Any = None,
        row: Optional[int] = None,
        **fields: Any,
    ) -> Visit:
        start_date = normalize_date(start)
        if start_date is None:
            start_date = self.today
            self.warn(
                "MISSING_START_DATE",
                f"Visit for patient {patient.patient_cd} has no usable start date; "
                f"using {self.today.isoformat()}",
                IssueKind.BUSINESS_RULE,
                field="START_DATE",
                row=row,
            )
        if isinstance(inout, InOutCode):
            inout_cd = inout
        else:
            inout_cd, recognized = normalize_inout(inout)
            if not recognized:
                self.warn(
                    "INVALID_INOUT_CODE",
                    f"Unknown in/out code {inout!r}; using {inout_cd.value}",
                    IssueKind.VALUE_COERCION,
                    field="INOUT_CD",
                    row=row,
                )
        _default(fields, "active_status_cd", ACTIVE_STATUS_CD)
        _default(fields, "sourcesystem_cd", self.source_system)
        visit = Visit(
            encounter_num=self.keys.peek("visit"),
            patient_num=patient.patient_num,
            start_date=start_date,
            end_date=normalize_date(end),
            location_cd=None if is_blank(location) else str(location).strip(),
            inout_cd=inout_cd,
            **{k: v for k, v in fields.items() if v is not None},
        )
        self.visits.append(visit)
        self.keys.next("visit")
        return visit

    def observation(
        self,
        visit: Visit,
        concept_cd: str,
        resolution: Resolution,
        *,
        category: Any = None,
        unit: Optional[str] = None,
        start: Any = None,
        instance_num: Optional[int] = None,
        **fields: Any,
    ) -> Observation:
        start_date = normalize_date(start) or visit.start_date
        concept_cd = concept_cd.strip()
        instance_key = (visit.encounter_num, concept_cd, start_date)
        if instance_num is None:
            instance_num = self._instances[instance_key] + 1
        _default(fields, "sourcesystem_cd", self.source_system)
        observation = Observation(
            observation_id=self.keys.peek("observation"),
            encounter_num=visit.encounter_num,
            patient_num=visit.patient_num,
            concept_cd=concept_cd,
            category_char=category.value if isinstance(category, ObservationCategory) else category,
            unit_cd=None if is_blank(unit) else unit,
            start_date=start_date,
            instance_num=instance_num,
            **observation_fields(resolution.value),
            **{k: v for k, v in fields.items() if v is not None},
        )
        self.keys.next("observation")
        self._instances[instance_key] = max(self._instances[instance_key], instance_num)
        if resolution.warning is not None:
            self.warnings.append(resolution.warning)
        self.observations.append(observation)
        return observation


# ============================================================================
# HL7 assignment strategies
# ============================================================================

class Hl7AssignmentStrategy(ABC):
    """Decide which patient owns a visit and which visit owns an observation."""

    @abstractmethod
    def visit_owner(self, section: Hl7VisitSection, ordinal: int, patients: Sequence[Patient]) -> Optional[Patient]:
        pass

    @abstractmethod
    def observation_visit(
        self, section: Hl7ObservationSection, visits: Sequence[tuple[Hl7VisitSection, Visit]]
    ) -> Optional[Visit]:
        pass


class PositionalAssignmentStrategy(Hl7AssignmentStrategy):
    """Exporter layout: the first two visits belong to the first patient, the
    rest to the second; every observation section belongs to the first visit.
    A visit whose positional owner does not exist is left unassigned.
    """

    visits_per_first_patient = 2

    def visit_owner(self, section, ordinal, patients):
        index = 0 if ordinal < self.visits_per_first_patient else 1
        return patients[index] if index < len(patients) else None

    def observation_visit(self, section, visits):
        return visits[0][1] if visits else None


def _ref_matches(reference: Optional[str], candidate: str) -> bool:
    if not reference:
        return False
    reference = reference.strip().lower()
    candidate = candidate.strip().lower()
    return reference == candidate or reference.rsplit("/", 1)[-1] == candidate


class ExplicitReferenceStrategy(Hl7AssignmentStrategy):
    """Resolve ``subject`` / ``encounter`` references carried by sections."""

    def visit_owner(self, section, ordinal, patients):
        for patient in patients:
            if _ref_matches(section.subject_ref, patient.patient_cd):
                return patient
        return None

    def observation_visit(self, section, visits):
        for visit_section, visit in visits:
            if _ref_matches(section.encounter_ref, visit_section.title):
                return visit
        return None


def strategy_for(assignment: Hl7Assignment) -> Hl7AssignmentStrategy:
    if Hl7Assignment(assignment) is Hl7Assignment.EXPLICIT:
        return ExplicitReferenceStrategy()
    return PositionalAssignmentStrategy()


# ============================================================================
# Transformer
# ============================================================================

class CanonicalTransformer:
    """Map intermediate documents to ``ImportStructure``.

    Parameters:
        value_typer: Resolves raw values into typed slots
        hl7_strategy: Patient/visit linking rule for HL7 documents
        selection_catalogs: Option catalogs keyed by concept code
        patient_cd: Fallback identity for HTML surveys without a patient
        today: Date used when a visit has no start date
        cancel_token: Checked between top-level records
    """

    def __init__(
        self,
        value_typer: Optional[ValueTyper] = None,
        hl7_strategy: Optional[Hl7AssignmentStrategy] = None,
        selection_catalogs: Optional[Mapping[str, Sequence[SelectionOption]]] = None,
        patient_cd: Optional[str] = None,
        today: Optional[date] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.value_typer = value_typer or ValueTyper()
        self.hl7_strategy = hl7_strategy or PositionalAssignmentStrategy()
        self.selection_catalogs = dict(selection_catalogs or {})
        self.patient_cd = patient_cd
        self.today = today
        self.cancel_token = cancel_token

    def transform(self, document: ImportDocument, filename: Optional[str] = None) -> TransformOutcome:
        """Transform a document.

        Raises:
            ImportCancelledError: If the cancellation token fires
            TransformationError: If the assembled structure violates a
                structural invariant or a record outside per-record
                isolation fails validation
            TypeError: For an unknown document type
        """
        if isinstance(document, CsvDocument):
            fmt, handler = ImportFormat.CSV, self._from_csv
        elif isinstance(document, JsonDocument):
            fmt, handler = ImportFormat.JSON, self._from_json
        elif isinstance(document, Hl7Document):
            fmt, handler = ImportFormat.HL7, self._from_hl7
        elif isinstance(document, SurveyDocument):
            fmt, handler = ImportFormat.HTML, self._from_survey
        else:
            raise TypeError(f"Cannot transform {type(document).__name__}")

        builder = _Builder(SOURCE_SYSTEMS[fmt], self.today or date.today(), self.cancel_token)
        try:
            metadata = handler(document, builder)
            if not builder.patients:
                builder.errors.append(ImportIssue.error(
                    "NO_PATIENTS",
                    "No patient could be built from the document",
                    IssueKind.BUSINESS_RULE,
                    fatal=True,
                ))
            structure = ImportStructure.assemble(
                format=fmt.value,
                patients=builder.patients,
                visits=builder.visits,
                observations=builder.observations,
                filename=filename,
                **metadata,
            )
        except ValidationError as e:
            raise TransformationError(
                f"{fmt.value} document could not be mapped: {e.error_count()} validation errors, "
                f"first: {e.errors()[0]['msg']}",
                source=filename,
            ) from e
        logger.info(
            f"Transformed {fmt.value} document: {len(builder.patients)} patients, "
            f"{len(builder.visits)} visits, {len(builder.observations)} observations, "
            f"{len(builder.warnings)} warnings"
        )
        return TransformOutcome(structure=structure, errors=builder.errors, warnings=builder.warnings)

    def _resolve(self, value_type: Any, raw: Any, concept: str, row: Optional[int],
                 options: Optional[Sequence[SelectionOption]] = None) -> Resolution:
        catalog = options or self.selection_catalogs.get(concept)
        return self.value_typer.resolve(value_type, raw, catalog, field=concept, row=row)

    # ------------------------------------------------------------------ CSV

    def _from_csv(self, document: CsvDocument, b: _Builder) -> dict:
        fixed = {
            c.code: c for c in document.columns
            if c.role in (ColumnRole.PATIENT, ColumnRole.VISIT)
        }
        observation_columns = document.columns_with_role(ColumnRole.OBSERVATION)

        def cell(row, code):
            column = fixed.get(code)
            return row.get(column) if column is not None else None

        for row in document.rows:
            b.checkpoint()
            patient_cd = cell(row, "PATIENT_CD")
            if patient_cd is None:
                b.errors.append(ImportIssue.error(
                    "MISSING_PATIENT_CD",
                    f"Row {row.number} has no patient code; row skipped",
                    IssueKind.ROW_LEVEL,
                    fatal=False,
                    field="PATIENT_CD",
                    row=row.number,
                ))
                continue
            with b.record(f"Row {row.number}", row=row.number):
                patient = b.patient(
                    patient_cd,
                    sex_cd=normalize_sex(cell(row, "SEX_CD")),
                    age_in_years=parse_age(cell(row, "AGE_IN_YEARS")),
                    birth_date=normalize_date(cell(row, "BIRTH_DATE")),
                    vital_status_cd=cell(row, "VITAL_STATUS_CD"),
                )
                visit = b.visit(
                    patient,
                    cell(row, "START_DATE"),
                    end=cell(row, "END_DATE"),
                    location=cell(row, "LOCATION_CD"),
                    inout=cell(row, "INOUT_CD"),
                    row=row.number,
                )
                for column in observation_columns:
                    raw = row.get(column)
                    if raw is None:
                        continue
                    if column.is_date:
                        parsed = normalize_date(raw)
                        raw = parsed.isoformat() if parsed else raw
                    value_type = column.value_type or infer_value_type(raw)
                    b.observation(
                        visit,
                        column.code,
                        self._resolve(value_type, raw, column.code, row.number),
                        category=infer_category(column.code),
                        unit=column.unit,
                    )

        meta = document.metadata
        return {
            "title": meta.get("title") or "CSV Import",
            "source": meta.get("source"),
            "author": meta.get("author"),
            "export_date": meta.get("export_date"),
            "version": meta.get("version"),
            "description": meta.get("description"),
        }

    # ----------------------------------------------------------------- JSON

    def _from_json(self, document: JsonDocument, b: _Builder) -> dict:
        by_num: dict[str, Patient] = {}
        by_code: dict[str, Patient] = {}
        patient_records = document.patients or []
        for index, record in enumerate(patient_records):
            b.checkpoint()
            code = record.get("PATIENT_CD")
            if is_blank(code):
                b.warn(
                    "MISSING_PATIENT_ID",
                    f"Patient {index + 1} has no patient code; skipped",
                    IssueKind.INVARIANT,
                    field="PATIENT_CD",
                    row=index + 1,
                )
                continue
            with b.record(f"Patient {index + 1}", row=index + 1):
                patient = b.patient(
                    str(code),
                    sex_cd=normalize_sex(record.get("SEX_CD")),
                    age_in_years=parse_age(record.get("AGE_IN_YEARS")),
                    birth_date=normalize_date(record.get("BIRTH_DATE")),
                    vital_status_cd=record.get("VITAL_STATUS_CD"),
                    patient_blob=None if record.get("PATIENT_BLOB") is None else stringify(record["PATIENT_BLOB"]),
                    sourcesystem_cd=record.get("SOURCESYSTEM_CD"),
                )
                by_code.setdefault(patient.patient_cd, patient)
                if not is_blank(record.get("PATIENT_NUM")):
                    by_num.setdefault(str(record["PATIENT_NUM"]).strip(), patient)

        sole_patient = b.patients[0] if len(b.patients) == 1 else None

        def owner(record: dict) -> Optional[Patient]:
            refs = [str(record[f]).strip() for f in ("PATIENT_NUM", "PATIENT_CD") if not is_blank(record.get(f))]
            if not refs:
                return sole_patient
            for ref in refs:
                found = by_num.get(ref) or by_code.get(ref)
                if found is not None:
                    return found
            return None

        visit_index: dict[str, Visit] = {}
        visits_by_patient: dict[int, list[Visit]] = defaultdict(list)
        for index, record in enumerate(document.visits or []):
            b.checkpoint()
            patient = owner(record)
            if patient is None:
                b.warn(
                    "UNRESOLVED_PATIENT",
                    f"Visit {index + 1} references no known patient; dropped",
                    IssueKind.INVARIANT,
                    field="PATIENT_NUM",
                    row=index + 1,
                )
                continue
            with b.record(f"Visit {index + 1}", row=index + 1):
                visit = b.visit(
                    patient,
                    record.get("START_DATE"),
                    end=record.get("END_DATE"),
                    location=record.get("LOCATION_CD"),
                    inout=record.get("INOUT_CD"),
                    row=index + 1,
                    visit_blob=None if record.get("VISIT_BLOB") is None else stringify(record["VISIT_BLOB"]),
                    active_status_cd=record.get("ACTIVE_STATUS_CD"),
                    sourcesystem_cd=record.get("SOURCESYSTEM_CD"),
                )
                visits_by_patient[patient.patient_num].append(visit)
                if not is_blank(record.get("ENCOUNTER_NUM")):
                    visit_index.setdefault(str(record["ENCOUNTER_NUM"]).strip(), visit)

        for index, record in enumerate(document.observations or []):
            b.checkpoint()
            visit = self._json_visit(record, index, b, visit_index, visits_by_patient, owner)
            if visit is not None:
                with b.record(f"Observation {index + 1}", row=index + 1):
                    self._json_observation(record, index, visit, b)

        meta = document.metadata if isinstance(document.metadata, dict) else {}
        return {
            "title": meta.get("title") or "JSON Import",
            "source": meta.get("source"),
            "author": meta.get("author"),
            "export_date": meta.get("exportDate") or meta.get("export_date"),
            "version": None if meta.get("version") is None else str(meta["version"]),
            "description": meta.get("description"),
        }

    @staticmethod
    def _json_visit(record, index, b, visit_index, visits_by_patient, owner) -> Optional[Visit]:
        encounter = record.get("ENCOUNTER_NUM")
        if not is_blank(encounter):
            visit = visit_index.get(str(encounter).strip())
            if visit is None:
                b.warn(
                    "UNRESOLVED_VISIT",
                    f"Observation {index + 1} references unknown visit {encounter!r}; dropped",
                    IssueKind.INVARIANT,
                    field="ENCOUNTER_NUM",
                    row=index + 1,
                )
            return visit
        patient = owner(record)
        if patient is None:
            b.warn(
                "UNRESOLVED_PATIENT",
                f"Observation {index + 1} references no known patient; dropped",
                IssueKind.INVARIANT,
                field="PATIENT_NUM",
                row=index + 1,
            )
            return None
        candidates = visits_by_patient.get(patient.patient_num, [])
        if len(candidates) != 1:
            b.warn(
                "UNRESOLVED_VISIT",
                f"Observation {index + 1} has no visit reference and patient "
                f"{patient.patient_cd} has {len(candidates)} visits; dropped",
                IssueKind.INVARIANT,
                field="ENCOUNTER_NUM",
                row=index + 1,
            )
            return None
        return candidates[0]

    def _json_observation(self, record: dict, index: int, visit: Visit, b: _Builder) -> None:
        row = index + 1
        declared = record.get("VALTYPE_CD")
        if is_blank(declared):
            declared = ValueType.NUMERIC if record.get("NVAL_NUM") is not None else ValueType.TEXT
        value_type = declared if isinstance(declared, ValueType) else ValueType.parse(declared)

        if value_type is ValueType.NUMERIC:
            order = ("NVAL_NUM", "TVAL_CHAR", "VALUE")
        elif value_type is not None and value_type.slot.value == "observation_blob":
            order = ("OBSERVATION_BLOB", "VALUE", "TVAL_CHAR")
        else:
            order = ("TVAL_CHAR", "VALUE", "NVAL_NUM")
        raw = next((record[key] for key in order if not is_blank(record.get(key))), None)

        concept = record.get("CONCEPT_CD")
        if is_blank(concept) and value_type is ValueType.QUESTIONNAIRE:
            concept = QUESTIONNAIRE_CONCEPT
        if is_blank(concept):
            b.warn(
                "MISSING_CONCEPT_CD",
                f"Observation {row} has no concept code; dropped",
                IssueKind.INVARIANT,
                field="CONCEPT_CD",
                row=row,
            )
            return
        concept = str(concept).strip()
        if raw is None:
            b.warn(
                "EMPTY_OBSERVATION_VALUE",
                f"Observation {row} ({concept}) has no value; dropped",
                IssueKind.VALUE_COERCION,
                field=concept,
                row=row,
            )
            return

        category = record.get("CATEGORY_CHAR")
        if is_blank(category):
            category = ObservationCategory.SURVEY if value_type is ValueType.QUESTIONNAIRE else infer_category(concept)
        instance_num = parse_age(record.get("INSTANCE_NUM"))
        b.observation(
            visit,
            concept,
            self._resolve(declared, raw, concept, row, parse_options(record.get("OPTIONS"))),
            category=category,
            unit=record.get("UNIT_CD"),
            start=record.get("START_DATE"),
            instance_num=instance_num if instance_num else None,
            provider_id=None if is_blank(record.get("PROVIDER_ID")) else str(record["PROVIDER_ID"]),
            sourcesystem_cd=record.get("SOURCESYSTEM_CD"),
        )

    # ------------------------------------------------------------------ HL7

    def _from_hl7(self, document: Hl7Document, b: _Builder) -> dict:
        patients: list[Patient] = []
        for source in document.patients:
            b.checkpoint()
            with b.record(f"Patient {source.code!r}"):
                patients.append(b.patient(
                    source.code,
                    sex_cd=normalize_sex(source.gender),
                    age_in_years=parse_age(source.age),
                    vital_status_cd=HL7_VITAL_STATUS_CD,
                ))

        visits: list[tuple[Hl7VisitSection, Visit]] = []
        for ordinal, section in enumerate(document.visits):
            b.checkpoint()
            patient = self.hl7_strategy.visit_owner(section, ordinal, patients)
            if patient is None:
                b.warn(
                    "UNRESOLVED_PATIENT",
                    f"Section {section.title!r} could not be assigned to a patient; dropped",
                    IssueKind.INVARIANT,
                    field=section.title,
                )
                continue
            with b.record(f"Section {section.title!r}"):
                visits.append((section, b.visit(
                    patient,
                    section.visit_date,
                    location=section.location or HL7_DEFAULT_LOCATION,
                    inout=inout_from_location(section.location),
                )))

        for section in document.observation_sections:
            b.checkpoint()
            visit = self.hl7_strategy.observation_visit(section, visits)
            if visit is None:
                if section.entries:
                    b.warn(
                        "UNRESOLVED_VISIT",
                        f"Section {section.title!r} could not be assigned to a visit; "
                        f"{len(section.entries)} entries dropped",
                        IssueKind.INVARIANT,
                        field=section.title,
                    )
                continue
            section_category = infer_category(section.title)
            for entry in section.entries:
                if not entry.title or is_blank(entry.value):
                    continue
                value = entry.value
                if parse_number(value) is not None and not isinstance(value, str):
                    value_type = ValueType.NUMERIC
                else:
                    value_type = ValueType.TEXT
                category = infer_category(entry.title)
                if category is ObservationCategory.CLINICAL:
                    category = section_category
                with b.record(f"Entry {entry.title!r}"):
                    b.observation(
                        visit,
                        entry.title,
                        self._resolve(value_type, value, entry.title, None),
                        category=category,
                    )

        return {
            "title": document.title,
            "author": document.author,
            "export_date": document.date,
            "source": document.identifier,
        }

    # ----------------------------------------------------------------- HTML

    @staticmethod
    def _survey_patient_code(patient: Optional[dict]) -> Optional[str]:
        if not patient:
            return None
        for key in ("patientId", "id", "patient_cd", "code", "identifier"):
            value = patient.get(key)
            if isinstance(value, list) and value:
                value = value[0]
            if isinstance(value, dict):
                value = value.get("value")
            if not is_blank(value) and not isinstance(value, (dict, list)):
                return str(value).strip()
        return None

    @staticmethod
    def _survey_concept(response: SurveyResponse) -> str:
        code = (response.code or "").strip()
        if not code:
            return f"SURVEY_Q_{response.index + 1}"
        if code.isdigit():
            return f"SCTID: {code}"
        return code

    def _survey_value(self, response: SurveyResponse) -> tuple[Any, Any, Optional[list[SelectionOption]]]:
        raw = response.value
        options = parse_options(response.options)
        if options:
            return ValueType.SELECTION, raw, options
        declared = ValueType.parse(response.value_type) if response.value_type else None
        if declared is not None:
            return declared, raw, None
        if isinstance(raw, bool):
            return ValueType.TEXT, "Yes" if raw else "No", None
        if isinstance(raw, (dict, list)):
            return ValueType.BLOB, raw, None
        if parse_number(raw) is not None:
            return ValueType.NUMERIC, raw, None
        if looks_like_date(raw):
            return ValueType.TEXT, normalize_date(raw).isoformat(), None
        return ValueType.TEXT, raw, None

    def _from_survey(self, document: SurveyDocument, b: _Builder) -> dict:
        info = document.patient or {}
        code = self._survey_patient_code(info) or self.patient_cd or UNKNOWN_PATIENT_CD
        patient = b.patient(
            code,
            sex_cd=normalize_sex(info.get("gender") or info.get("sex")),
            age_in_years=parse_age(info.get("age")),
            birth_date=normalize_date(info.get("birthDate") or info.get("birth_date")),
        )
        visit = b.visit(
            patient,
            document.completed_at,
            location=SURVEY_LOCATION,
            inout=InOutCode.OUTPATIENT,
        )

        for response in document.responses or []:
            b.checkpoint()
            concept = self._survey_concept(response)
            if is_blank(response.value):
                b.warn(
                    "EMPTY_OBSERVATION_VALUE",
                    f"Response {response.index + 1} ({concept}) has no value; skipped",
                    IssueKind.VALUE_COERCION,
                    field=concept,
                    row=response.index + 1,
                )
                continue
            value_type, raw, options = self._survey_value(response)
            b.observation(
                visit,
                concept,
                self._resolve(value_type, raw, concept, response.index + 1, options),
                category=ObservationCategory.SURVEY,
            )

        questionnaire = document.questionnaire
        if questionnaire is not None:
            b.observation(
                visit,
                QUESTIONNAIRE_CONCEPT,
                self.value_typer.resolve(ValueType.QUESTIONNAIRE, questionnaire, field=QUESTIONNAIRE_CONCEPT),
                category=ObservationCategory.SURVEY,
            )

        q = questionnaire or {}
        items = q.get("items") or q.get("item") or q.get("questions")
        described = [
            f"questionnaire {q['title']}" if q.get("title") else None,
            f"version {q['version']}" if q.get("version") else None,
            f"{len(items)} items" if isinstance(items, list) else None,
            f"{len(document.responses or [])} responses",
            f"completed {document.completed_at}" if document.completed_at else None,
        ]
        return {
            "title": q.get("title") or document.page_title or "Survey Import",
            "source": document.survey_type,
            "version": None if q.get("version") is None else str(q["version"]),
            "export_date": document.completed_at,
            "description": ", ".join(part for part in described if part),
        }
