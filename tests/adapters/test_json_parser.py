"""Tests for the JSON export parser."""

import json

from conftest import JSON_EXPORT

from clinical_import.adapters.parsers import JsonParser
from clinical_import.adapters.parsers.json_parser import PATIENT_ALIASES, normalize_record
from clinical_import.domain.enums import IssueKind


class TestJsonParser:
    def test_wrapped_export(self):
        document = JsonParser().parse(json.dumps(JSON_EXPORT)).value
        assert document.wrapped
        assert len(document.patients) == 2
        assert document.metadata["title"] == "Cohort export"

    def test_top_level_sections_and_aliases(self):
        payload = {
            "patients": [{"patientId": "P1", "gender": "F", "age": 30}],
            "observations": [{"encounterId": 3, "conceptCode": "HR", "value": 72, "unit": "bpm"}],
        }
        document = JsonParser().parse(json.dumps(payload)).value
        assert not document.wrapped
        assert document.patients[0] == {"PATIENT_CD": "P1", "SEX_CD": "F", "AGE_IN_YEARS": 30}
        assert document.observations[0]["ENCOUNTER_NUM"] == 3
        assert document.observations[0]["UNIT_CD"] == "bpm"
        assert document.visits is None

    def test_invalid_json(self):
        result = JsonParser().parse('{"patients": [')
        assert result.is_failure()
        assert result.error_type == "INVALID_JSON"
        assert result.error_details["kind"] is IssueKind.FORMAT

    def test_top_level_array(self):
        result = JsonParser().parse("[1, 2]")
        assert result.error_type == "INVALID_JSON_STRUCTURE"

    def test_unknown_keys_preserved(self):
        record = normalize_record({"patientId": "P1", "extra": 1}, PATIENT_ALIASES)
        assert record == {"PATIENT_CD": "P1", "extra": 1}

    def test_non_dict_records_pass_through(self):
        assert normalize_record("P1", PATIENT_ALIASES) == "P1"
