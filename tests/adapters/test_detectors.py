"""Tests for content-based format detection."""

import json

import pytest

from conftest import CONDENSED_CSV, FULL_EXPORT_CSV, HL7_COMPOSITION, JSON_EXPORT, survey_page

from clinical_import.adapters.detectors import decode_content, detect, sniff_delimiter
from clinical_import.domain.enums import CsvVariant, ImportFormat


class TestDetect:
    def test_full_export_csv(self):
        result = detect(FULL_EXPORT_CSV.encode("utf-8"), "export.csv")
        assert result.format is ImportFormat.CSV
        assert result.delimiter == ","
        assert result.csv_variant is CsvVariant.FULL_EXPORT

    def test_condensed_csv(self):
        result = detect(CONDENSED_CSV)
        assert result.delimiter == ";"
        assert result.csv_variant is CsvVariant.CONDENSED

    def test_json_export(self):
        assert detect(json.dumps(JSON_EXPORT)).format is ImportFormat.JSON

    def test_hl7_wins_over_extension(self):
        assert detect(json.dumps(HL7_COMPOSITION), "bundle.json").format is ImportFormat.HL7

    def test_html(self):
        assert detect(survey_page(), "survey.txt").format is ImportFormat.HTML

    def test_malformed_json_trusts_extension(self):
        assert detect('{"patients": [', "broken.json").format is ImportFormat.JSON

    def test_unknown_json_shape(self):
        assert detect('{"hello": "world"}').format is ImportFormat.UNKNOWN

    @pytest.mark.parametrize("content", [b"", b"   \n", b"just one line"])
    def test_undecidable(self, content):
        result = detect(content)
        assert result.format is ImportFormat.UNKNOWN
        assert not result.is_known

    def test_bom_is_tolerated(self):
        raw = b"\xef\xbb\xbf" + json.dumps(JSON_EXPORT).encode("utf-8")
        assert detect(raw).format is ImportFormat.JSON


class TestHelpers:
    def test_sniff_delimiter_ignores_quoted(self):
        assert sniff_delimiter('"a;b;c",d,e') == ","
        assert sniff_delimiter("a;b;c,d") == ";"

    def test_decode_cp1252_fallback(self):
        assert decode_content("Caf\xe9".encode("cp1252")) == "Caf\xe9"
