"""HL7 FHIR Composition Parser.

Only the subset of the Composition shape produced by the clinical exporter is
interpreted:

    - "Patient Information" section: an entry titled "Patient: <code>" opens
      a patient; following "Gender" / "Age" entries fill it in
    - sections titled "Visit <n>": one visit each, from "Visit Date" and
      "Location" entries
    - any other section: observation entries

Linking visits and observations to patients is left to the transformer's
assignment strategy.
"""

import json
import logging
from typing import Any, Optional

from clinical_import.domain.documents import (
    Hl7Document,
    Hl7Entry,
    Hl7ObservationSection,
    Hl7Patient,
    Hl7VisitSection,
)
from clinical_import.domain.enums import ImportFormat, IssueKind
from clinical_import.domain.ports import DocumentParser, Result

logger = logging.getLogger(__name__)

PATIENT_SECTION_TITLE = "Patient Information"
PATIENT_ENTRY_PREFIX = "Patient: "
VISIT_SECTION_PREFIX = "Visit "
VISIT_METADATA_ENTRIES = frozenset({"Visit Date", "Location"})
DEFAULT_TITLE = "HL7 FHIR Composition Import"


def _reference(value: Any) -> Optional[str]:
    """Read a FHIR reference given as a string or ``{reference|display}``."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        for key in ("reference", "display"):
            text = value.get(key)
            if isinstance(text, str) and text.strip():
                return text.strip()
    return None


def _author(payload: dict) -> Optional[str]:
    authors = payload.get("author")
    if isinstance(authors, list) and authors and isinstance(authors[0], dict):
        display = authors[0].get("display")
        return str(display) if display else None
    return None


class Hl7CdaParser(DocumentParser[Hl7Document]):
    """Parse a FHIR ``Composition`` JSON document into an ``Hl7Document``."""

    format = ImportFormat.HL7

    def parse(self, text: str, filename: Optional[str] = None) -> Result[Hl7Document]:
        stripped = text.lstrip("\ufeff").strip()
        if not stripped.startswith("{"):
            return Result.failure_result(
                "HL7 import expects a FHIR JSON document",
                error_type="INVALID_JSON",
                error_details={"kind": IssueKind.FORMAT},
            )
        try:
            payload = json.loads(stripped)
        except ValueError as e:
            return Result.failure_result(
                f"Invalid HL7 JSON: {str(e)}",
                error_type="INVALID_JSON",
                error_details={"kind": IssueKind.FORMAT},
            )
        if not isinstance(payload, dict) or payload.get("resourceType") != "Composition":
            found = payload.get("resourceType") if isinstance(payload, dict) else type(payload).__name__
            return Result.failure_result(
                f"Expected resourceType 'Composition', found {found!r}",
                error_type="INVALID_RESOURCE_TYPE",
                error_details={"kind": IssueKind.STRUCTURAL},
            )

        identifier = payload.get("identifier")
        document = Hl7Document(
            title=str(payload.get("title") or DEFAULT_TITLE),
            author=_author(payload),
            date=str(payload["date"]) if payload.get("date") else None,
            identifier=_reference(identifier.get("value") if isinstance(identifier, dict) else identifier),
        )

        sections = payload.get("section")
        if not isinstance(sections, list):
            document.has_sections = False
            return Result.success_result(document)

        for index, section in enumerate(sections):
            if not isinstance(section, dict) or not isinstance(section.get("entry"), list):
                document.skipped_sections += 1
                continue
            title = str(section.get("title") or "").strip()
            entries = [
                Hl7Entry(title=str(entry.get("title") or "").strip(), value=entry.get("value"))
                for entry in section["entry"]
                if isinstance(entry, dict)
            ]
            if title == PATIENT_SECTION_TITLE:
                document.patients.extend(self._patients(entries))
            elif title.startswith(VISIT_SECTION_PREFIX):
                document.visits.append(self._visit(index, title, entries, section))
            else:
                document.observation_sections.append(Hl7ObservationSection(
                    index=index,
                    title=title,
                    entries=[e for e in entries if e.title not in VISIT_METADATA_ENTRIES],
                    encounter_ref=_reference(section.get("encounter")),
                ))

        logger.info(
            f"Parsed HL7 Composition: {len(document.patients)} patients, "
            f"{len(document.visits)} visits, {len(document.observation_sections)} observation sections"
        )
        return Result.success_result(document)

    @staticmethod
    def _patients(entries: list[Hl7Entry]) -> list[Hl7Patient]:
        patients: list[Hl7Patient] = []
        current: Optional[Hl7Patient] = None
        for entry in entries:
            if entry.title.startswith(PATIENT_ENTRY_PREFIX):
                if current is not None:
                    patients.append(current)
                code = entry.value if entry.value not in (None, "") else entry.title[len(PATIENT_ENTRY_PREFIX):]
                current = Hl7Patient(code=str(code).strip())
                continue
            if current is None:
                continue
            current.entries.append(entry)
            if entry.title == "Gender":
                current.gender = None if entry.value is None else str(entry.value)
            elif entry.title == "Age":
                current.age = entry.value
        if current is not None:
            patients.append(current)
        return [p for p in patients if p.code]

    @staticmethod
    def _visit(index: int, title: str, entries: list[Hl7Entry], section: dict) -> Hl7VisitSection:
        visit = Hl7VisitSection(index=index, title=title, subject_ref=_reference(section.get("subject")))
        for entry in entries:
            if entry.title == "Visit Date":
                visit.visit_date = entry.value
            elif entry.title == "Location":
                visit.location = None if entry.value is None else str(entry.value)
        return visit
