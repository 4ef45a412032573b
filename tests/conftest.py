"""Shared fixtures: sample documents in every format and a storage fake.

``FakeStorage`` understands exactly the SQL the bulk importer generates
(``MAX`` queries, ``IN`` lookups, single-row INSERT/UPDATE) and keeps rows in
memory, so persistence behavior can be tested without a database. Faults are
injected per operation through ``fail_next`` (raised) or ``report_next``
(returned as results with ``success=False``).
"""

import json
import re
from collections import defaultdict
from datetime import date
from typing import Any, Optional, Sequence

import pytest

from clinical_import.domain.ports import (
    CommandResult,
    QueryResult,
    StorageCommand,
    StorageError,
    StoragePort,
    TransactionResult,
)

_MAX = re.compile(r"SELECT MAX\((\w+)\) AS max_key FROM (\w+)")
_SELECT_IN = re.compile(r"SELECT (.+) FROM (\w+) WHERE (\w+) IN \(")
_INSERT = re.compile(r"INSERT INTO (\w+) \((.+)\) VALUES")
_UPDATE = re.compile(r"UPDATE (\w+) SET (.+) WHERE (\w+) = \?")


class FakeStorage(StoragePort):
    """In-memory ``StoragePort`` with fault injection.

    Parameters:
        tables: Pre-existing rows per table name
    """

    def __init__(self, tables: Optional[dict[str, list[dict]]] = None):
        self.tables: dict[str, list[dict]] = defaultdict(list)
        for name, rows in (tables or {}).items():
            self.tables[name] = [dict(r) for r in rows]
        self.calls: list[str] = []
        self.transactions: list[list[StorageCommand]] = []
        self.commands: list[StorageCommand] = []
        self._faults: dict[str, list[Exception]] = defaultdict(list)
        self._reports: dict[str, list[Any]] = defaultdict(list)
        self.fail_on_sql: Optional[str] = None
        self.closed = False

    def fail_next(self, operation: str, *errors: Exception) -> None:
        """Raise ``errors`` (in order) on the next calls of ``operation``."""
        self._faults[operation].extend(errors)

    def report_next(self, operation: str, *results: Any) -> None:
        """Return ``results`` (in order) from the next calls of ``operation``."""
        self._reports[operation].extend(results)

    def _maybe_fail(self, operation: str) -> Optional[Any]:
        self.calls.append(operation)
        if self._faults[operation]:
            raise self._faults[operation].pop(0)
        if self._reports[operation]:
            return self._reports[operation].pop(0)
        return None

    async def execute_query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        reported = self._maybe_fail("query")
        if reported is not None:
            return reported
        match = _MAX.search(sql)
        if match:
            column, table = match.groups()
            values = [row[column] for row in self.tables[table] if row.get(column) is not None]
            return QueryResult(success=True, data=[{"max_key": max(values) if values else None}])
        match = _SELECT_IN.search(sql)
        if match:
            columns = [c.strip() for c in match.group(1).split(",")]
            table, column = match.group(2), match.group(3)
            wanted = set(params)
            rows = [
                {c: row.get(c) for c in columns}
                for row in self.tables[table]
                if row.get(column) in wanted
            ]
            return QueryResult(success=True, data=rows)
        raise StorageError(f"FakeStorage cannot answer: {sql}", operation="query")

    def _apply(self, command: StorageCommand) -> CommandResult:
        if self.fail_on_sql and self.fail_on_sql in command.sql:
            raise StorageError(f"constraint violated: {command.sql[:40]}", operation="command")
        match = _INSERT.search(command.sql)
        if match:
            table = match.group(1)
            columns = [c.strip() for c in match.group(2).split(",")]
            self.tables[table].append(dict(zip(columns, command.params)))
            return CommandResult(success=True, changes=1)
        match = _UPDATE.search(command.sql)
        if match:
            table, assignments, key = match.groups()
            columns = [a.split("=")[0].strip() for a in assignments.split(",")]
            values = dict(zip(columns, command.params[:-1]))
            changes = 0
            for row in self.tables[table]:
                if row.get(key) == command.params[-1]:
                    row.update(values)
                    changes += 1
            return CommandResult(success=True, changes=changes)
        raise StorageError(f"FakeStorage cannot run: {command.sql}", operation="command")

    async def execute_command(self, sql: str, params: Sequence[Any] = ()) -> CommandResult:
        reported = self._maybe_fail("command")
        if reported is not None:
            return reported
        command = StorageCommand(sql, tuple(params))
        result = self._apply(command)
        self.commands.append(command)
        return result

    async def execute_transaction(self, commands: Sequence[StorageCommand]) -> TransactionResult:
        reported = self._maybe_fail("transaction")
        if reported is not None:
            return reported
        snapshot = {name: [dict(r) for r in rows] for name, rows in self.tables.items()}
        try:
            results = [self._apply(command) for command in commands]
        except StorageError:
            self.tables = defaultdict(list, snapshot)
            raise
        self.transactions.append(list(commands))
        return TransactionResult(success=True, results=results)

    async def close(self) -> None:
        self.closed = True

    def count(self, table: str) -> int:
        return len(self.tables[table])


@pytest.fixture
def fake_storage():
    return FakeStorage()


# ============================================================================
# Sample documents
# ============================================================================

FULL_EXPORT_CSV = """# Export Date: 2024-01-15
# Source: Clinic A
Patient ID,Sex,Age,Visit Date,Location,In/Out,Hemoglobin,Comment
PATIENT_CD,SEX_CD,AGE_IN_YEARS,START_DATE,LOCATION_CD,INOUT_CD,LID: 2947-0,NOTE_TEXT
P001,male,54,2024-01-10,WARD_A,I,13.5,stable
P002,F,61,01/12/2024,CLINIC,O,12.1,
"""

CONDENSED_CSV = """FIELD_NAME;PATIENT_CD;VISIT_DATE;HEIGHT;SMOKER
VALTYPE_CD;text;date;numeric;answer
UNIT_CD;;;cm;
NAME_CHAR;Patient;Visit date;Height;Smoker
1;P001;2024-01-10;180;yes
2;P002;2024-02-11;165;
"""


def csv_with_rows(count: int, bad_row: Optional[int] = None) -> str:
    """Full-export CSV with ``count`` data rows; ``bad_row`` gets an extra cell."""
    lines = [
        "Patient ID,Visit Date,Weight",
        "PATIENT_CD,START_DATE,WEIGHT_KG",
    ]
    for number in range(1, count + 1):
        line = f"P{number:03d},2024-03-{number:02d},{60 + number}"
        if number == bad_row:
            line += ",extra"
        lines.append(line)
    return "\n".join(lines) + "\n"


JSON_EXPORT = {
    "metadata": {"title": "Cohort export", "source": "Registry", "exportDate": "2024-01-15", "version": 2},
    "data": {
        "patients": [
            {"PATIENT_NUM": 10, "PATIENT_CD": "P001", "SEX_CD": "male", "AGE_IN_YEARS": 54},
            {"PATIENT_NUM": 11, "PATIENT_CD": "P002", "SEX_CD": "F"},
        ],
        "visits": [
            {"ENCOUNTER_NUM": 100, "PATIENT_NUM": 10, "START_DATE": "2024-01-10", "INOUT_CD": "I",
             "LOCATION_CD": "WARD_A"},
            {"ENCOUNTER_NUM": 101, "PATIENT_NUM": 11, "START_DATE": "2024-01-12", "END_DATE": "2024-01-14"},
        ],
        "observations": [
            {"ENCOUNTER_NUM": 100, "CONCEPT_CD": "LID: 2947-0", "VALTYPE_CD": "N", "NVAL_NUM": 13.5,
             "UNIT_CD": "g/dL"},
            {"ENCOUNTER_NUM": 100, "CONCEPT_CD": "NOTE", "VALTYPE_CD": "T", "TVAL_CHAR": "stable"},
            {"ENCOUNTER_NUM": 101, "CONCEPT_CD": "PANEL", "VALTYPE_CD": "B",
             "OBSERVATION_BLOB": {"items": [1, 2]}},
        ],
    },
}

HL7_COMPOSITION = {
    "resourceType": "Composition",
    "title": "Discharge summary",
    "date": "2024-02-01",
    "author": [{"display": "Dr. Example"}],
    "section": [
        {
            "title": "Patient Information",
            "entry": [
                {"title": "Patient: P001", "value": "P001"},
                {"title": "Gender", "value": "female"},
                {"title": "Age", "value": 47},
                {"title": "Patient: P002", "value": "P002"},
                {"title": "Gender", "value": "M"},
            ],
        },
        {
            "title": "Visit 1",
            "subject": {"reference": "Patient/P001"},
            "entry": [
                {"title": "Visit Date", "value": "2024-01-05"},
                {"title": "Location", "value": "City Hospital"},
            ],
        },
        {
            "title": "Visit 2",
            "subject": {"reference": "Patient/P001"},
            "entry": [{"title": "Visit Date", "value": "2024-01-20"}],
        },
        {
            "title": "Visit 3",
            "subject": {"reference": "Patient/P002"},
            "entry": [
                {"title": "Visit Date", "value": "2024-01-25"},
                {"title": "Location", "value": "Emergency Room"},
            ],
        },
        {
            "title": "Vital Signs",
            "encounter": {"reference": "Encounter/Visit 3"},
            "entry": [
                {"title": "Heart Rate", "value": 72},
                {"title": "Remark", "value": "calm"},
            ],
        },
    ],
}

SURVEY_DOCUMENT = {
    "cda": {
        "patient": {"patientId": "P900", "gender": "female", "age": 33},
        "completedAt": "2024-03-01T10:15:00Z",
        "surveyType": "PROMIS",
        "questionnaire": {"title": "Sleep survey", "version": "1.2", "items": [{}, {}, {}]},
        "responses": [
            {"code": "271807003", "question": "Hours slept", "value": 7},
            {"code": "SLEEP_QUALITY", "value": "go", "options": [
                {"label": "Good", "value": "LA-GOOD"}, {"label": "Poor", "value": "LA-POOR"},
            ]},
            {"question": "Nightmares", "value": True},
        ],
    }
}


def survey_page(document: Any = None, script: Optional[str] = None) -> str:
    body = script if script is not None else f"window.surveyData = {json.dumps(document or SURVEY_DOCUMENT)};"
    return (
        "<!DOCTYPE html><html><head><title>Sleep &amp; Rest</title></head>"
        f"<body><h1>Survey</h1><script type=\"text/javascript\">{body}</script></body></html>"
    )


@pytest.fixture
def json_export_text() -> str:
    return json.dumps(JSON_EXPORT)


@pytest.fixture
def hl7_text() -> str:
    return json.dumps(HL7_COMPOSITION)


@pytest.fixture
def survey_html() -> str:
    return survey_page()


@pytest.fixture
def fixed_today() -> date:
    return date(2024, 6, 30)
