"""Document Validators.

Validation runs in two passes over a parsed, format-native document:

    1. structural: shape problems that make transformation impossible
       (missing sections, no rows, no embedded document)
    2. business rules: domain checks on values that did parse (patient
       identity, date ranges, orphaned references)

The business pass only runs when the structural pass produced no fatal
error. Validators read documents and never modify them; every finding is an
``ImportIssue`` in the returned ``ValidationReport``.
"""

import logging
from collections import Counter
from typing import Any, Optional

from clinical_import.domain.documents import (
    CsvDocument,
    Hl7Document,
    ImportDocument,
    JsonDocument,
    SurveyDocument,
)
from clinical_import.domain.enums import IssueKind, ValueType
from clinical_import.domain.normalizers import is_blank, normalize_date
from clinical_import.domain.results import ImportIssue, ValidationReport

logger = logging.getLogger(__name__)

RECOMMENDED_CSV_FIELDS = ("PATIENT_CD", "START_DATE")
JSON_SECTIONS = (
    ("patients", "INVALID_PATIENTS_FORMAT"),
    ("visits", "INVALID_VISITS_FORMAT"),
    ("observations", "INVALID_OBSERVATIONS_FORMAT"),
)


def _date_range_warning(start: Any, end: Any, row: Optional[int]) -> Optional[ImportIssue]:
    start_date, end_date = normalize_date(start), normalize_date(end)
    if start_date is None or end_date is None or end_date >= start_date:
        return None
    return ImportIssue.warning(
        "INVALID_DATE_RANGE",
        f"Visit ends ({end_date.isoformat()}) before it starts ({start_date.isoformat()})",
        IssueKind.BUSINESS_RULE,
        field="END_DATE",
        row=row,
    )


def _reference_keys(record: dict, *fields: str) -> list[str]:
    return [str(record[f]) for f in fields if not is_blank(record.get(f))]


class DocumentValidator:
    """Validate any intermediate document.

    Parameters:
        patient_cd: Patient identity supplied out-of-band; suppresses the
            missing-patient warning for HTML surveys
    """

    def __init__(self, patient_cd: Optional[str] = None):
        self.patient_cd = patient_cd

    def validate(self, document: ImportDocument, business: bool = True) -> ValidationReport:
        """Run the structural pass and, when it is clean, the business pass.

        Parameters:
            document: Parsed intermediate document
            business: Run business-rule checks (``validate_data`` option)

        Returns:
            ValidationReport: errors and warnings found

        Raises:
            TypeError: For an object that is not an intermediate document
        """
        if isinstance(document, CsvDocument):
            structural, rules = self._csv_structure, self._csv_rules
        elif isinstance(document, JsonDocument):
            structural, rules = self._json_structure, self._json_rules
        elif isinstance(document, Hl7Document):
            structural, rules = self._hl7_structure, self._hl7_rules
        elif isinstance(document, SurveyDocument):
            structural, rules = self._survey_structure, self._survey_rules
        else:
            raise TypeError(f"Cannot validate {type(document).__name__}")

        report = structural(document)
        if business and report.is_valid:
            report = report.merge(rules(document))
        logger.debug(
            f"Validated {type(document).__name__}: "
            f"{len(report.errors)} errors, {len(report.warnings)} warnings"
        )
        return report

    # ------------------------------------------------------------------ CSV

    def _csv_structure(self, document: CsvDocument) -> ValidationReport:
        report = ValidationReport()
        for code in RECOMMENDED_CSV_FIELDS:
            if document.column(code) is None:
                report.warnings.append(ImportIssue.warning(
                    "MISSING_RECOMMENDED_FIELD",
                    f"CSV has no {code} column",
                    IssueKind.STRUCTURAL,
                    field=code,
                ))
        for column in document.columns:
            if column.raw_tag and ValueType.parse(column.raw_tag) is None:
                report.warnings.append(ImportIssue.warning(
                    "UNKNOWN_VALUE_TYPE_TAG",
                    f"Column {column.code} has unknown value type {column.raw_tag!r}; treated as text",
                    IssueKind.VALUE_COERCION,
                    field=column.code,
                ))
        report.errors.extend(document.row_errors)
        if document.total_rows == 0:
            report.errors.append(ImportIssue.error(
                "NO_DATA_ROWS", "CSV contains header rows but no data rows", IssueKind.STRUCTURAL,
            ))
        elif not document.rows:
            report.errors.append(ImportIssue.error(
                "NO_VALID_ROWS",
                f"All {document.total_rows} data rows are malformed",
                IssueKind.STRUCTURAL,
            ))
        return report

    def _csv_rules(self, document: CsvDocument) -> ValidationReport:
        report = ValidationReport()
        start_column = document.column("START_DATE")
        end_column = document.column("END_DATE")
        date_columns = [c for c in (start_column, end_column, document.column("BIRTH_DATE")) if c]
        for row in document.rows:
            for column in date_columns:
                value = row.get(column)
                if value is not None and normalize_date(value) is None:
                    report.warnings.append(ImportIssue.warning(
                        "INVALID_DATE",
                        f"Unrecognized date {value!r}",
                        IssueKind.BUSINESS_RULE,
                        field=column.code,
                        row=row.number,
                    ))
            if start_column and end_column:
                issue = _date_range_warning(row.get(start_column), row.get(end_column), row.number)
                if issue:
                    report.warnings.append(issue)
        return report

    # ----------------------------------------------------------------- JSON

    def _json_structure(self, document: JsonDocument) -> ValidationReport:
        report = ValidationReport()
        if all(getattr(document, name) is None for name, _ in JSON_SECTIONS):
            report.errors.append(ImportIssue.error(
                "MISSING_DATA",
                "JSON contains no patients, visits or observations",
                IssueKind.STRUCTURAL,
            ))
            return report
        for name, code in JSON_SECTIONS:
            section = getattr(document, name)
            if section is None:
                continue
            if not isinstance(section, list):
                report.errors.append(ImportIssue.error(
                    code, f"'{name}' must be an array", IssueKind.STRUCTURAL, field=name,
                ))
                continue
            for index, record in enumerate(section):
                if not isinstance(record, dict):
                    report.errors.append(ImportIssue.error(
                        "INVALID_RECORD",
                        f"'{name}' item {index + 1} is not an object",
                        IssueKind.STRUCTURAL,
                        field=name,
                        row=index + 1,
                    ))
        if not isinstance(document.metadata, dict):
            report.warnings.append(ImportIssue.warning(
                "MISSING_METADATA", "JSON has no metadata object", IssueKind.STRUCTURAL,
            ))
        return report

    def _json_rules(self, document: JsonDocument) -> ValidationReport:
        report = ValidationReport()
        patients = document.patients or []
        visits = document.visits or []
        observations = document.observations or []
        if not patients:
            report.errors.append(ImportIssue.error(
                "NO_PATIENTS", "JSON contains no patients", IssueKind.BUSINESS_RULE, fatal=True,
            ))
            return report

        for index, patient in enumerate(patients):
            if is_blank(patient.get("PATIENT_CD")):
                report.errors.append(ImportIssue.error(
                    "MISSING_PATIENT_ID",
                    f"Patient {index + 1} has no patient code",
                    IssueKind.BUSINESS_RULE,
                    fatal=True,
                    field="PATIENT_CD",
                    row=index + 1,
                ))
        codes = Counter(str(p["PATIENT_CD"]).strip() for p in patients if not is_blank(p.get("PATIENT_CD")))
        for code, count in codes.items():
            if count > 1:
                report.warnings.append(ImportIssue.warning(
                    "DUPLICATE_PATIENT_CD",
                    f"Patient code {code!r} appears {count} times; first occurrence kept",
                    IssueKind.BUSINESS_RULE,
                    field="PATIENT_CD",
                    code_value=code,
                ))

        patient_keys = set(codes)
        patient_keys.update(str(p["PATIENT_NUM"]) for p in patients if not is_blank(p.get("PATIENT_NUM")))
        orphan_visits = 0
        for visit in visits:
            refs = _reference_keys(visit, "PATIENT_NUM", "PATIENT_CD")
            if refs and not any(ref in patient_keys for ref in refs):
                orphan_visits += 1
            elif not refs and len(patients) != 1:
                orphan_visits += 1
        if orphan_visits:
            report.warnings.append(ImportIssue.warning(
                "VISITS_WITHOUT_PATIENTS",
                f"{orphan_visits} visits reference no known patient",
                IssueKind.BUSINESS_RULE,
                count=orphan_visits,
            ))

        visit_keys = {str(v["ENCOUNTER_NUM"]) for v in visits if not is_blank(v.get("ENCOUNTER_NUM"))}
        orphan_observations = sum(
            1 for obs in observations
            if (not is_blank(obs.get("ENCOUNTER_NUM")) and str(obs["ENCOUNTER_NUM"]) not in visit_keys)
            or not visits
        )
        if orphan_observations:
            report.warnings.append(ImportIssue.warning(
                "OBSERVATIONS_WITHOUT_VISITS",
                f"{orphan_observations} observations reference no known visit",
                IssueKind.BUSINESS_RULE,
                count=orphan_observations,
            ))

        for index, visit in enumerate(visits):
            issue = _date_range_warning(visit.get("START_DATE"), visit.get("END_DATE"), index + 1)
            if issue:
                report.warnings.append(issue)
        return report

    # ------------------------------------------------------------------ HL7

    def _hl7_structure(self, document: Hl7Document) -> ValidationReport:
        report = ValidationReport()
        if not document.has_sections:
            report.errors.append(ImportIssue.error(
                "MISSING_SECTIONS", "Composition has no section array", IssueKind.STRUCTURAL,
            ))
        return report

    def _hl7_rules(self, document: Hl7Document) -> ValidationReport:
        report = ValidationReport()
        if not document.patients:
            report.errors.append(ImportIssue.error(
                "MISSING_PATIENTS",
                "Composition has no 'Patient Information' entries",
                IssueKind.BUSINESS_RULE,
                fatal=True,
            ))
        if not document.visits:
            report.warnings.append(ImportIssue.warning(
                "NO_VISITS", "Composition has no visit sections", IssueKind.BUSINESS_RULE,
            ))
        return report

    # ----------------------------------------------------------------- HTML

    def _survey_structure(self, document: SurveyDocument) -> ValidationReport:
        report = ValidationReport()
        if document.html_length == 0:
            report.errors.append(ImportIssue.error(
                "EMPTY_HTML", "HTML content is empty", IssueKind.FORMAT,
            ))
            return report
        if not document.has_html_shell:
            report.warnings.append(ImportIssue.warning(
                "NO_HTML_STRUCTURE", "Content has no <html>/<body> structure", IssueKind.STRUCTURAL,
            ))
        if not document.has_script:
            report.warnings.append(ImportIssue.warning(
                "NO_SCRIPT_TAGS", "Content has no <script> tags", IssueKind.STRUCTURAL,
            ))
        if document.cda is None:
            report.errors.append(ImportIssue.error(
                "NO_CDA_FOUND", "No embedded clinical document found in HTML", IssueKind.STRUCTURAL,
            ))
        elif document.responses is None:
            report.errors.append(ImportIssue.error(
                "MISSING_RESPONSES", "Embedded document has no responses array", IssueKind.STRUCTURAL,
            ))
        return report

    def _survey_rules(self, document: SurveyDocument) -> ValidationReport:
        report = ValidationReport()
        if not document.responses:
            report.errors.append(ImportIssue.error(
                "NO_SURVEY_RESPONSES", "Survey contains no responses", IssueKind.BUSINESS_RULE, fatal=True,
            ))
        if document.patient is None and not self.patient_cd:
            report.warnings.append(ImportIssue.warning(
                "MISSING_PATIENT_INFO",
                "Survey carries no patient; an anonymous patient will be created",
                IssueKind.BUSINESS_RULE,
            ))
        if document.questionnaire is None:
            report.warnings.append(ImportIssue.warning(
                "NO_SURVEY_DATA_DETECTED", "Embedded document has no questionnaire", IssueKind.BUSINESS_RULE,
            ))
        return report
