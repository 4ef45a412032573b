"""Tests for DocumentValidator.

Structural findings stop the import; business-rule findings only run on
structurally sound documents and are mostly warnings.
"""

import json

import pytest

from conftest import CONDENSED_CSV, FULL_EXPORT_CSV, HL7_COMPOSITION, survey_page

from clinical_import.adapters.parsers import CsvParser, Hl7CdaParser, HtmlSurveyExtractor, JsonParser
from clinical_import.domain.documents import JsonDocument, SurveyDocument
from clinical_import.domain.validators import DocumentValidator


def codes(issues):
    return [issue.code for issue in issues]


class TestCsvValidation:
    def test_clean_full_export(self):
        document = CsvParser().parse(FULL_EXPORT_CSV).value
        report = DocumentValidator().validate(document)
        assert report.is_valid
        assert report.errors == []

    def test_missing_recommended_fields(self):
        document = CsvParser().parse("Weight,Height\nWEIGHT,HEIGHT\n70,180\n").value
        report = DocumentValidator().validate(document)
        assert codes(report.warnings).count("MISSING_RECOMMENDED_FIELD") == 2

    def test_headers_only(self):
        document = CsvParser().parse("Patient,Date\nPATIENT_CD,START_DATE\n").value
        report = DocumentValidator().validate(document)
        assert not report.is_valid
        assert "NO_DATA_ROWS" in codes(report.errors)

    def test_all_rows_malformed(self):
        document = CsvParser().parse("Patient,Date\nPATIENT_CD,START_DATE\nP1\nP2,2024-01-01,x\n").value
        report = DocumentValidator().validate(document)
        assert "NO_VALID_ROWS" in codes(report.errors)
        assert codes(report.errors).count("ROW_LENGTH_MISMATCH") == 2

    def test_unknown_value_type_tag(self):
        text = CONDENSED_CSV.replace("VALTYPE_CD;text;date;numeric;answer", "VALTYPE_CD;text;date;numeric;weird")
        report = DocumentValidator().validate(CsvParser().parse(text).value)
        assert report.is_valid
        assert "UNKNOWN_VALUE_TYPE_TAG" in codes(report.warnings)

    def test_business_rules_dates(self):
        text = (
            "Patient,Start,End\nPATIENT_CD,START_DATE,END_DATE\n"
            "P1,2024-02-10,2024-02-01\nP2,someday,\n"
        )
        document = CsvParser().parse(text).value
        report = DocumentValidator().validate(document)
        assert "INVALID_DATE_RANGE" in codes(report.warnings)
        invalid = [w for w in report.warnings if w.code == "INVALID_DATE"]
        assert invalid[0].row == 2

    def test_business_pass_can_be_disabled(self):
        text = "Patient,Start,End\nPATIENT_CD,START_DATE,END_DATE\nP1,2024-02-10,2024-02-01\n"
        report = DocumentValidator().validate(CsvParser().parse(text).value, business=False)
        assert "INVALID_DATE_RANGE" not in codes(report.warnings)


class TestJsonValidation:
    def _validate(self, payload, **kwargs):
        return DocumentValidator().validate(JsonParser().parse(json.dumps(payload)).value, **kwargs)

    def test_missing_data(self):
        report = self._validate({"metadata": {}})
        assert codes(report.errors) == ["MISSING_DATA"]

    def test_section_must_be_array(self):
        report = self._validate({"patients": {"PATIENT_CD": "P1"}})
        assert "INVALID_PATIENTS_FORMAT" in codes(report.errors)
        assert not report.is_valid

    def test_non_object_record(self):
        report = self._validate({"patients": ["P1"]})
        assert "INVALID_RECORD" in codes(report.errors)

    def test_no_patients_is_fatal(self):
        report = self._validate({"metadata": {}, "patients": [], "visits": []})
        assert not report.is_valid
        assert "NO_PATIENTS" in codes(report.errors)

    def test_missing_patient_id_reports_row(self):
        report = self._validate({"metadata": {}, "patients": [{"PATIENT_CD": "P1"}, {"SEX_CD": "F"}]})
        missing = [e for e in report.errors if e.code == "MISSING_PATIENT_ID"]
        assert missing[0].row == 2
        assert not report.is_valid

    def test_reference_and_duplicate_warnings(self):
        report = self._validate({
            "metadata": {},
            "patients": [{"PATIENT_CD": "P1"}, {"PATIENT_CD": "P1"}],
            "visits": [{"ENCOUNTER_NUM": 1, "PATIENT_CD": "P9"}],
            "observations": [{"ENCOUNTER_NUM": 7, "CONCEPT_CD": "X", "VALUE": 1}],
        })
        assert report.is_valid
        assert {"DUPLICATE_PATIENT_CD", "VISITS_WITHOUT_PATIENTS", "OBSERVATIONS_WITHOUT_VISITS"} <= set(
            codes(report.warnings)
        )

    def test_missing_metadata_warning(self):
        report = self._validate({"patients": [{"PATIENT_CD": "P1"}]})
        assert "MISSING_METADATA" in codes(report.warnings)


class TestHl7Validation:
    def test_missing_sections(self):
        document = Hl7CdaParser().parse(json.dumps({"resourceType": "Composition"})).value
        report = DocumentValidator().validate(document)
        assert codes(report.errors) == ["MISSING_SECTIONS"]

    def test_missing_patients(self):
        payload = {"resourceType": "Composition", "section": [{"title": "Visit 1", "entry": []}]}
        report = DocumentValidator().validate(Hl7CdaParser().parse(json.dumps(payload)).value)
        assert "MISSING_PATIENTS" in codes(report.errors)
        assert not report.is_valid

    def test_no_visits_warning(self):
        payload = dict(HL7_COMPOSITION, section=HL7_COMPOSITION["section"][:1])
        report = DocumentValidator().validate(Hl7CdaParser().parse(json.dumps(payload)).value)
        assert report.is_valid
        assert "NO_VISITS" in codes(report.warnings)


class TestSurveyValidation:
    def test_empty_html(self):
        report = DocumentValidator().validate(SurveyDocument())
        assert codes(report.errors) == ["EMPTY_HTML"]

    def test_no_cda_found(self):
        document = HtmlSurveyExtractor().parse("<html><body><p>Nothing here</p></body></html>").value
        report = DocumentValidator().validate(document)
        assert "NO_CDA_FOUND" in codes(report.errors)
        assert "NO_SCRIPT_TAGS" in codes(report.warnings)

    def test_missing_responses(self):
        page = survey_page({"cda": {"patient": {"patientId": "P1"}}})
        report = DocumentValidator().validate(HtmlSurveyExtractor().parse(page).value)
        assert "MISSING_RESPONSES" in codes(report.errors)

    def test_empty_responses_and_missing_patient(self):
        page = survey_page({"cda": {"responses": []}})
        report = DocumentValidator().validate(HtmlSurveyExtractor().parse(page).value)
        assert "NO_SURVEY_RESPONSES" in codes(report.errors)
        assert "MISSING_PATIENT_INFO" in codes(report.warnings)
        assert "NO_SURVEY_DATA_DETECTED" in codes(report.warnings)

    def test_supplied_patient_suppresses_warning(self):
        page = survey_page({"cda": {"responses": [{"value": 1}]}})
        report = DocumentValidator(patient_cd="P7").validate(HtmlSurveyExtractor().parse(page).value)
        assert "MISSING_PATIENT_INFO" not in codes(report.warnings)


def test_unknown_document_type():
    with pytest.raises(TypeError):
        DocumentValidator().validate({"patients": []})


def test_validator_does_not_mutate():
    document = JsonDocument(metadata={}, patients=[{"PATIENT_CD": "P1"}])
    DocumentValidator().validate(document)
    assert document.patients == [{"PATIENT_CD": "P1"}]
