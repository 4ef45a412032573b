"""JSON Parser for structured clinical exports.

Accepts either the top-level shape::

    {"metadata": {...}, "patients": [...], "visits": [...], "observations": [...]}

or the export wrapper ``{"metadata": {...}, "data": {"patients": [...], ...}}``.
Record field names are normalized to the persisted column names; values are
passed through untouched (typing happens in the transformer).
"""

import json
import logging
from typing import Any, Optional

from clinical_import.domain.documents import JsonDocument
from clinical_import.domain.enums import ImportFormat, IssueKind
from clinical_import.domain.ports import DocumentParser, Result

logger = logging.getLogger(__name__)

PATIENT_ALIASES = {
    "PATIENT_NUM": ("PATIENT_NUM", "patientNum", "patient_num", "id"),
    "PATIENT_CD": ("PATIENT_CD", "patientId", "patient_cd", "patientCode"),
    "SEX_CD": ("SEX_CD", "sex", "gender"),
    "AGE_IN_YEARS": ("AGE_IN_YEARS", "age", "ageInYears"),
    "BIRTH_DATE": ("BIRTH_DATE", "birthDate", "dob"),
    "VITAL_STATUS_CD": ("VITAL_STATUS_CD", "vitalStatus"),
    "PATIENT_BLOB": ("PATIENT_BLOB", "blob"),
    "SOURCESYSTEM_CD": ("SOURCESYSTEM_CD", "sourceSystem"),
    "UPLOAD_ID": ("UPLOAD_ID", "uploadId"),
}

VISIT_ALIASES = {
    "ENCOUNTER_NUM": ("ENCOUNTER_NUM", "encounterNum", "id", "visitId"),
    "PATIENT_NUM": ("PATIENT_NUM", "patientNum", "patientId"),
    "PATIENT_CD": ("PATIENT_CD", "patientCode", "patient_cd"),
    "START_DATE": ("START_DATE", "startDate", "visitDate", "date"),
    "END_DATE": ("END_DATE", "endDate"),
    "INOUT_CD": ("INOUT_CD", "inOut", "visitType"),
    "LOCATION_CD": ("LOCATION_CD", "location"),
    "VISIT_BLOB": ("VISIT_BLOB", "blob"),
    "ACTIVE_STATUS_CD": ("ACTIVE_STATUS_CD", "activeStatus"),
    "SOURCESYSTEM_CD": ("SOURCESYSTEM_CD", "sourceSystem"),
    "UPLOAD_ID": ("UPLOAD_ID", "uploadId"),
}

OBSERVATION_ALIASES = {
    "OBSERVATION_ID": ("OBSERVATION_ID", "observationId", "id"),
    "ENCOUNTER_NUM": ("ENCOUNTER_NUM", "encounterNum", "encounterId", "visitId"),
    "PATIENT_NUM": ("PATIENT_NUM", "patientNum", "patientId"),
    "PATIENT_CD": ("PATIENT_CD", "patientCode", "patient_cd"),
    "CONCEPT_CD": ("CONCEPT_CD", "conceptCode", "code"),
    "CATEGORY_CHAR": ("CATEGORY_CHAR", "category"),
    "VALTYPE_CD": ("VALTYPE_CD", "valueType", "valtype"),
    "NVAL_NUM": ("NVAL_NUM", "numericValue"),
    "TVAL_CHAR": ("TVAL_CHAR", "textValue"),
    "OBSERVATION_BLOB": ("OBSERVATION_BLOB", "BVAL_BLOB", "blob"),
    "VALUE": ("VALUE", "value"),
    "UNIT_CD": ("UNIT_CD", "unit"),
    "START_DATE": ("START_DATE", "startDate", "date"),
    "INSTANCE_NUM": ("INSTANCE_NUM", "instanceNum"),
    "PROVIDER_ID": ("PROVIDER_ID", "providerId"),
    "OPTIONS": ("OPTIONS", "options"),
    "SOURCESYSTEM_CD": ("SOURCESYSTEM_CD", "sourceSystem"),
    "UPLOAD_ID": ("UPLOAD_ID", "uploadId"),
}


def normalize_record(record: Any, aliases: dict[str, tuple[str, ...]]) -> Any:
    """Rename known aliases to canonical keys; non-dict items pass through."""
    if not isinstance(record, dict):
        return record
    normalized: dict[str, Any] = {}
    consumed: set[str] = set()
    for canonical, candidates in aliases.items():
        for candidate in candidates:
            if candidate in record and record[candidate] is not None:
                normalized[canonical] = record[candidate]
                consumed.add(candidate)
                break
    for key, value in record.items():
        if key not in consumed and key not in normalized:
            normalized[key] = value
    return normalized


def _normalize_section(section: Any, aliases: dict[str, tuple[str, ...]]) -> Any:
    if isinstance(section, list):
        return [normalize_record(item, aliases) for item in section]
    return section


class JsonParser(DocumentParser[JsonDocument]):
    """Parse a JSON export into a ``JsonDocument``."""

    format = ImportFormat.JSON

    def parse(self, text: str, filename: Optional[str] = None) -> Result[JsonDocument]:
        try:
            payload = json.loads(text.lstrip("\ufeff"))
        except ValueError as e:
            logger.warning(f"Invalid JSON in {filename or '<input>'}: {str(e)}")
            return Result.failure_result(
                f"Invalid JSON: {str(e)}",
                error_type="INVALID_JSON",
                error_details={"kind": IssueKind.FORMAT},
            )
        if not isinstance(payload, dict):
            return Result.failure_result(
                "JSON import expects an object at the top level",
                error_type="INVALID_JSON_STRUCTURE",
                error_details={"kind": IssueKind.STRUCTURAL},
            )

        wrapped = isinstance(payload.get("data"), dict)
        sections = payload["data"] if wrapped else payload
        document = JsonDocument(
            metadata=payload.get("metadata"),
            patients=_normalize_section(sections.get("patients"), PATIENT_ALIASES),
            visits=_normalize_section(sections.get("visits"), VISIT_ALIASES),
            observations=_normalize_section(sections.get("observations"), OBSERVATION_ALIASES),
            wrapped=wrapped,
        )
        logger.debug(f"Parsed JSON export (wrapped={wrapped}) from {filename or '<input>'}")
        return Result.success_result(document)
