"""Tests for ValueTyper.

These tests verify that raw values resolve to the declared slot, and that
every value that cannot be typed degrades to text with a warning instead of
failing.
"""

import pytest

from clinical_import.domain.enums import ValueType
from clinical_import.domain.ports import TerminologyPort
from clinical_import.domain.value_typer import (
    AFFIRMATIVE_ANSWER_CODE,
    AnswerStrategy,
    BlobValue,
    NumericValue,
    Resolution,
    SelectionOption,
    SelectionValue,
    TextValue,
    ValueTyper,
    enrich_catalog,
    find_matching_option,
    observation_fields,
)


YES_NO = [SelectionOption(label="Yes", value="LA33-6"), SelectionOption(label="No", value="LA32-8")]


class TestNumeric:
    def test_numeric_string(self):
        resolution = ValueTyper().resolve("N", "13.5")
        assert resolution.value == NumericValue(13.5)
        assert resolution.warning is None

    def test_non_numeric_degrades_to_text(self):
        resolution = ValueTyper().resolve("N", "high", field="HB", row=4)
        assert isinstance(resolution.value, TextValue)
        assert resolution.value.value == "high"
        assert resolution.warning.code == "NUMERIC_COERCION_FAILED"
        assert resolution.warning.row == 4
        assert resolution.warning.field == "HB"

    def test_boolean_is_not_numeric(self):
        resolution = ValueTyper().resolve("numeric", True)
        assert isinstance(resolution.value, TextValue)
        assert resolution.degraded


class TestSelection:
    """Selection values match a catalog by label, exact first then by prefix."""

    def test_prefix_match(self):
        resolution = ValueTyper().resolve("S", "ye", YES_NO)
        assert isinstance(resolution.value, SelectionValue)
        assert resolution.value.option.label == "Yes"
        assert observation_fields(resolution.value)["tval_char"] == "LA33-6"
        assert resolution.warning is None

    def test_exact_match_is_case_insensitive(self):
        resolution = ValueTyper().resolve("S", " NO ", YES_NO)
        assert resolution.value.option.value == "LA32-8"

    def test_no_match_degrades_to_text(self):
        resolution = ValueTyper().resolve("S", "maybe", YES_NO)
        assert resolution.value == TextValue("maybe")
        assert resolution.warning.code == "SELECTION_NO_MATCH"

    def test_missing_catalog(self):
        resolution = ValueTyper().resolve("S", "Yes", None)
        assert resolution.value == TextValue("Yes")
        assert resolution.warning.code == "SELECTION_OPTIONS_MISSING"

    def test_find_matching_option_blank(self):
        assert find_matching_option(YES_NO, "  ") is None

    def test_option_value_defaults_to_label(self):
        option = SelectionOption.model_validate({"label": "Often"})
        assert option.value == "Often"


class TestAnswerAndBlob:
    def test_truthy_answer_becomes_affirmative_code(self):
        resolution = ValueTyper().resolve("A", "checked")
        assert resolution.value == TextValue(AFFIRMATIVE_ANSWER_CODE, ValueType.ANSWER)

    def test_empty_answer_kept_as_text(self):
        resolution = ValueTyper().resolve("A", "")
        assert resolution.value == TextValue("")
        assert resolution.warning.code == "ANSWER_NOT_AFFIRMATIVE"

    def test_custom_answer_strategy(self):
        class VerbatimAnswers(AnswerStrategy):
            def resolve(self, raw, field=None, row=None):
                return Resolution(TextValue(str(raw), ValueType.ANSWER))

        resolution = ValueTyper(VerbatimAnswers()).resolve("A", "no")
        assert resolution.value.value == "no"

    def test_dict_blob_serialized(self):
        resolution = ValueTyper().resolve("B", {"a": 1})
        assert resolution.value == BlobValue('{"a": 1}')

    def test_bytes_blob_base64(self):
        resolution = ValueTyper().resolve("R", b"\x00\x01")
        assert resolution.value.payload == "AAE="
        assert resolution.value.value_type is ValueType.RAW

    def test_nan_blob_degrades(self):
        resolution = ValueTyper().resolve("B", {"x": float("nan")})
        assert isinstance(resolution.value, TextValue)
        assert resolution.warning.code == "BLOB_NOT_SERIALIZABLE"

    @pytest.mark.parametrize("code", ["Z", "", None])
    def test_unknown_type_falls_back_to_text(self, code):
        resolution = ValueTyper().resolve(code, 12)
        assert resolution.value == TextValue("12")
        assert resolution.warning.code == "UNKNOWN_VALUE_TYPE"

    def test_date_tag_is_text(self):
        resolution = ValueTyper().resolve("date", "2024-01-10")
        assert resolution.value == TextValue("2024-01-10")


class TestEnrichCatalog:
    def test_paths_attached(self):
        class Terms(TerminologyPort):
            def resolve(self, code):
                return f"\\Answers\\{code}"

        enriched, issue = enrich_catalog(YES_NO, Terms())
        assert issue is None
        assert enriched[0].concept_path == "\\Answers\\LA33-6"

    def test_lookup_failure_keeps_raw_codes(self):
        class BrokenTerms(TerminologyPort):
            def resolve(self, code):
                raise ConnectionError("terminology offline")

        enriched, issue = enrich_catalog(YES_NO, BrokenTerms())
        assert [o.concept_path for o in enriched] == [None, None]
        assert issue.code == "TERMINOLOGY_UNAVAILABLE"

    def test_without_terminology(self):
        enriched, issue = enrich_catalog(YES_NO, None)
        assert enriched == YES_NO
        assert issue is None
