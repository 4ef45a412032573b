"""Format detection for raw import content.

``detect`` picks a parser from the content itself, using the declared file
extension only as a tie-breaker. Detection never raises; undecidable input
yields ``ImportFormat.UNKNOWN``.

Order:
    1. JSON object with ``resourceType`` -> HL7 (Composition expected)
    2. JSON object with a ``data`` object or ``patients`` array -> JSON
    3. HTML shell (``<html`` / ``<script``) -> HTML survey
    4. Delimited text -> CSV, with delimiter and header-variant sniffing
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Optional, Union

from clinical_import.domain.enums import CsvVariant, ImportFormat

logger = logging.getLogger(__name__)

EXTENSION_FORMATS = {
    "csv": ImportFormat.CSV,
    "json": ImportFormat.JSON,
    "hl7": ImportFormat.HL7,
    "xml": ImportFormat.HL7,
    "html": ImportFormat.HTML,
    "htm": ImportFormat.HTML,
}

CONDENSED_HEADER_TOKENS = ("FIELD_NAME", "VALTYPE_CD")

_HTML_SHELL = re.compile(r"<\s*(html|script)\b", re.IGNORECASE)


@dataclass(frozen=True)
class DetectionResult:
    format: ImportFormat
    delimiter: Optional[str] = None
    csv_variant: Optional[CsvVariant] = None
    reason: str = ""

    @property
    def is_known(self) -> bool:
        return self.format is not ImportFormat.UNKNOWN


def extension_of(filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    suffix = PurePath(filename).suffix.lower().lstrip(".")
    return suffix or None


def decode_content(raw: Union[bytes, bytearray, str]) -> Optional[str]:
    """Decode bytes as UTF-8 (BOM tolerant), falling back to cp1252."""
    if isinstance(raw, str):
        return raw.lstrip("\ufeff")
    for encoding in ("utf-8-sig", "cp1252"):
        try:
            return bytes(raw).decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def count_unquoted(line: str, char: str) -> int:
    """Count ``char`` occurrences outside double-quoted fields."""
    count = 0
    in_quotes = False
    for symbol in line:
        if symbol == '"':
            in_quotes = not in_quotes
        elif symbol == char and not in_quotes:
            count += 1
    return count


def content_lines(text: str, limit: Optional[int] = None) -> list[str]:
    """Non-empty lines that are not ``#`` comments."""
    lines: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        lines.append(line)
        if limit is not None and len(lines) >= limit:
            break
    return lines


def sniff_delimiter(line: str) -> str:
    """Semicolon only when strictly more frequent than comma."""
    return ";" if count_unquoted(line, ";") > count_unquoted(line, ",") else ","


def sniff_csv_variant(lines: list[str]) -> CsvVariant:
    for line in lines[:2]:
        token = line.strip().lstrip('"')
        if token.upper().startswith(CONDENSED_HEADER_TOKENS):
            return CsvVariant.CONDENSED
    return CsvVariant.FULL_EXPORT


def _load_json(text: str) -> Optional[Any]:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return None
    try:
        return json.loads(stripped)
    except ValueError:
        return None


def _looks_like_json(text: str) -> bool:
    stripped = text.strip()
    return bool(stripped) and stripped[0] in "{["


def detect(raw: Union[bytes, bytearray, str], declared_extension: Optional[str] = None) -> DetectionResult:
    """Detect the format of ``raw``.

    Parameters:
        raw: File content as bytes or already-decoded text
        declared_extension: Extension or filename supplied by the caller

    Returns:
        DetectionResult: format plus CSV dialect when applicable
    """
    extension = None
    if declared_extension:
        extension = extension_of(declared_extension) or declared_extension.strip().lower().lstrip(".")
    hinted = EXTENSION_FORMATS.get(extension or "")

    text = decode_content(raw)
    if text is None:
        return DetectionResult(ImportFormat.UNKNOWN, reason="content could not be decoded")
    if not text.strip():
        return DetectionResult(ImportFormat.UNKNOWN, reason="content is empty")

    document = _load_json(text)
    if isinstance(document, dict):
        if "resourceType" in document:
            return DetectionResult(ImportFormat.HL7, reason=f"resourceType={document.get('resourceType')!r}")
        if isinstance(document.get("data"), dict) or isinstance(document.get("patients"), list):
            return DetectionResult(ImportFormat.JSON, reason="data/patients shape")
    if document is not None or _looks_like_json(text):
        # JSON-like text of unknown shape (or malformed JSON): trust the extension only.
        if hinted in (ImportFormat.JSON, ImportFormat.HL7):
            return DetectionResult(hinted, reason=f"JSON-like content with .{extension} extension")
        if document is not None:
            return DetectionResult(ImportFormat.UNKNOWN, reason="JSON of unrecognized shape")

    if _HTML_SHELL.search(text):
        return DetectionResult(ImportFormat.HTML, reason="HTML document shell")

    lines = content_lines(text, limit=2)
    if len(lines) < 2:
        if hinted is ImportFormat.HTML:
            return DetectionResult(ImportFormat.HTML, reason="declared HTML without document shell")
        return DetectionResult(ImportFormat.UNKNOWN, reason="too few lines for tabular data")
    delimiter = sniff_delimiter(lines[0])
    if count_unquoted(lines[0], delimiter) == 0:
        return DetectionResult(ImportFormat.UNKNOWN, reason="no delimiter found on header line")
    variant = sniff_csv_variant(lines)
    logger.debug(f"Detected CSV ({variant.value}) with delimiter {delimiter!r}")
    return DetectionResult(ImportFormat.CSV, delimiter=delimiter, csv_variant=variant, reason="delimited text")
