"""CSV Parser for the two clinical export dialects.

Full-export variant (comma delimited):
    # Export Date: 2024-01-15
    # Source: Clinic A
    Patient ID,Sex,Visit Date,Hemoglobin
    PATIENT_CD,SEX_CD,START_DATE,LID: 2947-0
    P001,M,2024-01-10,13.5

Condensed variant (semicolon delimited); the first column names each header
row and is a free row label in data rows:
    FIELD_NAME;PATIENT_CD;VISIT_DATE;HEIGHT
    VALTYPE_CD;text;date;numeric
    NAME_CHAR;Patient;Visit date;Height
    1;P001;2024-01-10;180

Rows are tokenized with pandas; each row keeps its own field count so that
row-level problems (column-count mismatch) can be recorded on the document
and the row excluded. Header problems fail the whole parse.
"""

import io
import logging
from typing import Any, Optional

import pandas as pd

from clinical_import.adapters.detectors import content_lines, sniff_csv_variant, sniff_delimiter
from clinical_import.domain.documents import ColumnRole, CsvColumn, CsvDocument, CsvRow
from clinical_import.domain.enums import DATE_VALUE_TAGS, CsvVariant, ImportFormat, IssueKind, ValueType
from clinical_import.domain.ports import DocumentParser, Result
from clinical_import.domain.results import ImportIssue

logger = logging.getLogger(__name__)

PATIENT_FIELDS = frozenset({
    "PATIENT_CD", "PATIENT_NUM", "SEX_CD", "AGE_IN_YEARS", "BIRTH_DATE", "VITAL_STATUS_CD",
})
VISIT_FIELDS = frozenset({"START_DATE", "END_DATE", "LOCATION_CD", "INOUT_CD", "ENCOUNTER_NUM"})
DATE_FIELDS = frozenset({"BIRTH_DATE", "START_DATE", "END_DATE"})
FIELD_ALIASES = {
    "GENDER": "SEX_CD",
    "AGE": "AGE_IN_YEARS",
    "DOB": "BIRTH_DATE",
    "VISIT_DATE": "START_DATE",
}
CONDENSED_ROW_TOKENS = ("FIELD_NAME", "VALTYPE_CD", "UNIT_CD", "NAME_CHAR")
REQUIRED_CONDENSED_ROWS = ("FIELD_NAME", "VALTYPE_CD", "NAME_CHAR")

_METADATA_KEYS = {
    "export date": "export_date",
    "exported": "export_date",
    "source": "source",
    "version": "version",
    "title": "title",
    "author": "author",
}

# Stands in for a row with too many fields until the row is restored.
_LONG_ROW = "\x00long-row"


def canonical_field(name: str) -> str:
    upper = name.strip().upper()
    return FIELD_ALIASES.get(upper, upper)


def role_for(code: str) -> ColumnRole:
    field_name = canonical_field(code)
    if field_name in PATIENT_FIELDS:
        return ColumnRole.PATIENT
    if field_name in VISIT_FIELDS:
        return ColumnRole.VISIT
    return ColumnRole.OBSERVATION


def read_grid(body: str, delimiter: str) -> list[list[str]]:
    """Tokenize delimited text into rows of strings, one list per line.

    The first row fixes the frame width. Shorter rows come back without the
    padding pandas adds, longer rows come back whole, so callers can compare
    each row's own length against the header.

    Raises:
        pandas.errors.ParserError: If the text cannot be tokenized
    """
    options: dict[str, Any] = {
        "header": None,
        "sep": delimiter,
        "dtype": str,
        "keep_default_na": False,
        "engine": "python",
    }
    width = pd.read_csv(io.StringIO(body), nrows=1, **options).shape[1]
    long_rows: list[list[str]] = []

    def hold_long_row(fields: list[str]) -> list[str]:
        long_rows.append(fields)
        return [_LONG_ROW] + [""] * (width - 1)

    frame = pd.read_csv(io.StringIO(body), names=list(range(width)), on_bad_lines=hold_long_row, **options)

    rows: list[list[str]] = []
    pending = iter(long_rows)
    for values in frame.itertuples(index=False, name=None):
        if values[0] == _LONG_ROW:
            rows.append(list(next(pending)))
            continue
        cells = list(values)
        while cells and pd.isna(cells[-1]):
            cells.pop()
        rows.append(cells)
    return rows


def _failure(message: str, code: str, kind: IssueKind = IssueKind.STRUCTURAL, **details) -> Result[CsvDocument]:
    return Result.failure_result(message, error_type=code, error_details={"kind": kind, **details})


class CsvParser(DocumentParser[CsvDocument]):
    """Parse delimited clinical exports into a ``CsvDocument``.

    Parameters:
        delimiter: Force a delimiter instead of sniffing it
        variant: Force a header variant instead of sniffing it
    """

    format = ImportFormat.CSV

    def __init__(self, delimiter: Optional[str] = None, variant: Optional[CsvVariant] = None):
        self.delimiter = delimiter
        self.variant = variant

    def parse(self, text: str, filename: Optional[str] = None) -> Result[CsvDocument]:
        metadata, body_lines = self._split_comments(text)
        sample = content_lines("\n".join(body_lines), limit=2)
        if not sample:
            return _failure("CSV file contains no header rows", "MISSING_HEADERS")

        delimiter = self.delimiter or sniff_delimiter(sample[0])
        variant = self.variant or sniff_csv_variant(sample)

        try:
            rows = [
                row for row in read_grid("\n".join(body_lines), delimiter)
                if row and any(cell.strip() for cell in row)
            ]
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            logger.warning(f"CSV tokenization failed for {filename or '<input>'}: {str(e)}")
            return _failure(f"CSV could not be tokenized: {str(e)}", "CSV_PARSE_ERROR", IssueKind.FORMAT)

        if variant is CsvVariant.CONDENSED:
            built = self._condensed_columns(rows)
        else:
            built = self._full_export_columns(rows)
        if built.is_failure():
            return built
        columns, header_count = built.value

        document = CsvDocument(
            variant=variant,
            delimiter=delimiter,
            columns=columns,
            metadata=metadata,
        )
        for offset, cells in enumerate(rows[header_count:]):
            number = offset + 1
            document.total_rows += 1
            if len(cells) != len(columns):
                document.row_errors.append(ImportIssue.error(
                    "ROW_LENGTH_MISMATCH",
                    f"Row {number} has {len(cells)} columns, expected {len(columns)}",
                    IssueKind.ROW_LEVEL,
                    fatal=False,
                    row=number,
                ))
                continue
            document.rows.append(CsvRow(number=number, cells=tuple(cell.strip() for cell in cells)))

        logger.info(
            f"Parsed CSV ({variant.value}, delimiter {delimiter!r}): "
            f"{len(document.rows)} valid rows, {len(document.row_errors)} rejected"
        )
        return Result.success_result(document)

    @staticmethod
    def _split_comments(text: str) -> tuple[dict[str, str], list[str]]:
        """Separate ``#`` metadata lines from the tabular body."""
        metadata: dict[str, str] = {}
        description: list[str] = []
        body: list[str] = []
        for line in text.lstrip("\ufeff").splitlines():
            stripped = line.strip()
            if not stripped.startswith("#"):
                body.append(line)
                continue
            comment = stripped.lstrip("#").strip()
            if not comment:
                continue
            key, sep, value = comment.partition(":")
            normalized = _METADATA_KEYS.get(key.strip().lower()) if sep else None
            if normalized:
                metadata[normalized] = value.strip()
            else:
                description.append(comment)
        if description:
            metadata["description"] = " ".join(description)
        return metadata, body

    @staticmethod
    def _full_export_columns(rows: list[list[str]]) -> Result[tuple[list[CsvColumn], int]]:
        if len(rows) < 2:
            return _failure(
                "Full-export CSV requires a label row and a concept-code row",
                "MISSING_HEADERS",
            )
        labels, codes = rows[0], rows[1]
        if len(labels) != len(codes):
            return _failure(
                f"Label row has {len(labels)} columns but concept-code row has {len(codes)}",
                "HEADER_MISMATCH",
            )
        columns: list[CsvColumn] = []
        for index, (label, code) in enumerate(zip(labels, codes)):
            code = code.strip()
            if not code:
                columns.append(CsvColumn(index=index, code="", label=label.strip(), role=ColumnRole.LABEL))
                continue
            role = role_for(code)
            field_code = canonical_field(code) if role is not ColumnRole.OBSERVATION else code
            columns.append(CsvColumn(
                index=index,
                code=field_code,
                label=label.strip() or None,
                role=role,
                is_date=field_code in DATE_FIELDS,
            ))
        return Result.success_result((columns, 2))

    @staticmethod
    def _condensed_columns(rows: list[list[str]]) -> Result[tuple[list[CsvColumn], int]]:
        headers: dict[str, list[str]] = {}
        for row in rows:
            token = row[0].strip().upper() if row else ""
            if token not in CONDENSED_ROW_TOKENS or token in headers:
                break
            headers[token] = row
        missing = [token for token in REQUIRED_CONDENSED_ROWS if token not in headers]
        if missing:
            return _failure(
                f"Condensed CSV is missing header rows: {', '.join(missing)}",
                "MISSING_HEADERS",
                missing=missing,
            )
        width = len(headers["FIELD_NAME"])
        for token, row in headers.items():
            if len(row) != width:
                return _failure(
                    f"Header row {token} has {len(row)} columns, expected {width}",
                    "HEADER_MISMATCH",
                )

        tags = headers["VALTYPE_CD"]
        labels = headers["NAME_CHAR"]
        units = headers.get("UNIT_CD")
        columns = [CsvColumn(index=0, code="", label=None, role=ColumnRole.LABEL)]
        for index in range(1, width):
            name = headers["FIELD_NAME"][index].strip()
            tag = tags[index].strip()
            if not name:
                columns.append(CsvColumn(index=index, code="", role=ColumnRole.LABEL))
                continue
            role = role_for(name)
            field_code = canonical_field(name) if role is not ColumnRole.OBSERVATION else name
            value_type = ValueType.parse(tag)
            if value_type is None and tag:
                # Unknown tag: column kept as text, validators report it once.
                value_type = ValueType.TEXT
            columns.append(CsvColumn(
                index=index,
                code=field_code,
                label=labels[index].strip() or None,
                role=role,
                value_type=value_type,
                is_date=tag.lower() in DATE_VALUE_TAGS or field_code in DATE_FIELDS,
                unit=(units[index].strip() or None) if units else None,
                raw_tag=tag or None,
            ))
        return Result.success_result((columns, len(headers)))
