"""Tests for HTML survey extraction.

These tests verify that the extractor:
- Finds documents assigned in script blocks, innermost span first
- Falls back to bare JSON in element content
- Treats malformed JSON as "no data" rather than an error
"""

import json

from conftest import SURVEY_DOCUMENT, survey_page

from clinical_import.adapters.parsers import HtmlSurveyExtractor
from clinical_import.adapters.parsers.html_extractor import (
    balanced_spans,
    extract_cda_from_html,
    parse_cda_data,
)
from clinical_import.domain.ports import Result


class TestExtractCda:
    def test_window_assignment(self):
        text = extract_cda_from_html(survey_page())
        assert json.loads(text) == SURVEY_DOCUMENT

    def test_var_assignment_with_domain_markers(self):
        page = survey_page(script='var data = {"patient": {"id": "P1"}, "responses": [{"value": 2}]};')
        assert json.loads(extract_cda_from_html(page))["patient"] == {"id": "P1"}

    def test_innermost_cda_object(self):
        script = 'const app = {config: {debug: true}, payload: {"cda": {"responses": []}}};'
        page = survey_page(script=script)
        assert json.loads(extract_cda_from_html(page)) == {"cda": {"responses": []}}

    def test_invalid_script_json(self):
        page = survey_page(script='var data = {"cda": {"responses": [1, 2,, }};')
        assert extract_cda_from_html(page) is None

    def test_element_content_fallback(self):
        page = (
            "<html><body><pre>{&quot;cda&quot;: {&quot;responses&quot;: [{&quot;value&quot;: 1}]}}</pre>"
            "</body></html>"
        )
        assert json.loads(extract_cda_from_html(page)) == {"cda": {"responses": [{"value": 1}]}}

    def test_empty_page(self):
        assert extract_cda_from_html("   ") is None

    def test_custom_strategy_order(self):
        page = survey_page()
        strategies = (
            ("never", lambda p: Result.failure_result("nothing", error_type="NONE")),
            ("fixed", lambda p: Result.success_result('{"cda": {"responses": []}}')),
        )
        assert extract_cda_from_html(page, strategies) == '{"cda": {"responses": []}}'


class TestHelpers:
    def test_balanced_spans_ignore_quoted_braces(self):
        text = '{"a": "}{", "b": {"c": 1}}'
        assert (0, len(text)) in balanced_spans(text)
        assert len(balanced_spans(text)) == 2

    def test_parse_cda_unwraps(self):
        assert parse_cda_data('{"cda": {"x": 1}}').value == {"x": 1}
        assert parse_cda_data('{"x": 1}').value == {"x": 1}
        assert parse_cda_data("[1]").error_type == "INVALID_CDA_DATA"


class TestHtmlSurveyExtractor:
    def test_survey_document(self):
        document = HtmlSurveyExtractor().parse(survey_page()).value
        assert document.page_title == "Sleep & Rest"
        assert document.has_html_shell and document.has_script
        assert document.extraction_strategy == "script_assignment"
        assert document.patient["patientId"] == "P900"
        assert document.survey_type == "PROMIS"
        assert document.completed_at == "2024-03-01T10:15:00Z"
        assert [r.code for r in document.responses] == ["271807003", "SLEEP_QUALITY", None]
        assert document.responses[1].options[0]["label"] == "Good"

    def test_fhir_style_responses(self):
        cda = {
            "subject": {"id": "P2"},
            "section": [{"entry": [
                {"code": {"coding": [{"code": "44250-9"}]}, "valueInteger": 2},
                {"linkId": "q2", "valueString": "often"},
            ]}],
        }
        document = HtmlSurveyExtractor().parse(survey_page({"cda": cda})).value
        assert document.patient == {"id": "P2"}
        assert [(r.code, r.value) for r in document.responses] == [("44250-9", 2), ("q2", "often")]

    def test_page_without_document_still_parses(self):
        result = HtmlSurveyExtractor().parse("<html><body>hello</body></html>")
        assert result.is_success()
        assert result.value.cda is None
