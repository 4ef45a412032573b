"""Format parsers for Clinical Import.

Each parser implements ``DocumentParser`` and turns decoded text into a
format-native intermediate document.
"""

from typing import Optional

from clinical_import.adapters.parsers.csv_parser import CsvParser
from clinical_import.adapters.parsers.hl7_parser import Hl7CdaParser
from clinical_import.adapters.parsers.html_extractor import HtmlSurveyExtractor
from clinical_import.adapters.parsers.json_parser import JsonParser
from clinical_import.domain.enums import CsvVariant, ImportFormat
from clinical_import.domain.ports import DocumentParser, UnsupportedFormatError

__all__ = ["CsvParser", "JsonParser", "Hl7CdaParser", "HtmlSurveyExtractor", "get_parser"]


def get_parser(
    format: ImportFormat,
    delimiter: Optional[str] = None,
    csv_variant: Optional[CsvVariant] = None,
) -> DocumentParser:
    """Factory returning the parser for a detected format.

    Parameters:
        format: Detected or requested format
        delimiter: CSV delimiter override (sniffed when None)
        csv_variant: CSV header variant override (sniffed when None)

    Returns:
        DocumentParser: Parser instance

    Raises:
        UnsupportedFormatError: If no parser handles the format
    """
    if format is ImportFormat.CSV:
        return CsvParser(delimiter=delimiter, variant=csv_variant)
    if format is ImportFormat.JSON:
        return JsonParser()
    if format is ImportFormat.HL7:
        return Hl7CdaParser()
    if format is ImportFormat.HTML:
        return HtmlSurveyExtractor()
    raise UnsupportedFormatError(f"No parser available for format '{format.value}'")
