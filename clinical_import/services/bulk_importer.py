"""Bulk Importer - persist an ImportStructure through the storage port.

Persistence happens in two phases:

    1. planning: read current key maxima and the natural keys of rows that
       may collide, then decide per record whether to insert, update or skip.
       Under the ``error`` duplicate policy a collision raises here, before
       anything is written.
    2. execution: run the planned commands in dependency order (patients,
       visits, observations) as one transaction, one transaction per batch,
       or one command at a time, each call wrapped by the ``RetryPolicy``.

Surrogate keys from the transformer are local to one import; new rows are
renumbered above the stored maxima and references are rewritten to match.
Natural keys:
    patient:     PATIENT_CD
    visit:       (PATIENT_NUM, START_DATE, LOCATION_CD, INOUT_CD)
    observation: (ENCOUNTER_NUM, CONCEPT_CD, START_DATE, INSTANCE_NUM)
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from pydantic import BaseModel

from clinical_import.domain.enums import DuplicateHandling, IssueKind, TransactionMode
from clinical_import.domain.guardrails import CancellationToken, RetryPolicy, is_transient_error
from clinical_import.domain.import_structure import ImportStructure
from clinical_import.domain.ports import (
    DuplicateRecordError,
    ImportCancelledError,
    StorageCommand,
    StorageError,
    StoragePort,
    TransientStorageError,
)
from clinical_import.domain.results import BulkImportResult, ImportIssue

logger = logging.getLogger(__name__)

QUERY_CHUNK_SIZE = 500


@dataclass(frozen=True)
class TableSpec:
    name: str
    key: str
    protected: tuple[str, ...]


PATIENTS = TableSpec("PATIENT_DIMENSION", "PATIENT_NUM", ("PATIENT_NUM", "PATIENT_CD"))
VISITS = TableSpec("VISIT_DIMENSION", "ENCOUNTER_NUM", ("ENCOUNTER_NUM", "PATIENT_NUM"))
OBSERVATIONS = TableSpec("OBSERVATION_FACT", "OBSERVATION_ID", ("OBSERVATION_ID", "ENCOUNTER_NUM", "PATIENT_NUM"))


@dataclass(frozen=True)
class PlannedCommand:
    command: StorageCommand
    counter: str
    action: str


@dataclass
class ImportPlan:
    commands: list[PlannedCommand] = field(default_factory=list)
    duplicates: int = 0
    skipped: dict[str, int] = field(default_factory=lambda: defaultdict(int))


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


def _row(model: BaseModel, **overrides: Any) -> dict[str, Any]:
    """Table row from a canonical model, enum members replaced by codes."""
    row = model.model_dump(by_alias=True)
    row.update(overrides)
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in row.items()}


def insert_command(spec: TableSpec, row: dict[str, Any]) -> StorageCommand:
    columns = list(row)
    placeholders = ", ".join("?" for _ in columns)
    return StorageCommand(
        f"INSERT INTO {spec.name} ({', '.join(columns)}) VALUES ({placeholders})",
        tuple(row[c] for c in columns),
    )


def update_command(spec: TableSpec, row: dict[str, Any], key: int) -> StorageCommand:
    columns = [c for c in row if c not in spec.protected]
    assignments = ", ".join(f"{c} = ?" for c in columns)
    return StorageCommand(
        f"UPDATE {spec.name} SET {assignments} WHERE {spec.key} = ?",
        tuple(row[c] for c in columns) + (key,),
    )


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BulkImporter:
    """Write an ``ImportStructure`` through a ``StoragePort``.

    Parameters:
        storage: Storage collaborator
        retry_policy: Retry/timeout rules for every storage call
        duplicate_handling: skip | update | error
        transaction_mode: single | batch | none
        batch_size: Commands per transaction in ``batch`` mode

    Example Usage:
        ```python
        importer = BulkImporter(storage, duplicate_handling=DuplicateHandling.SKIP)
        result = await importer.import_structure(structure)
        ```
    """

    def __init__(
        self,
        storage: StoragePort,
        retry_policy: Optional[RetryPolicy] = None,
        duplicate_handling: DuplicateHandling = DuplicateHandling.SKIP,
        transaction_mode: TransactionMode = TransactionMode.SINGLE,
        batch_size: int = 1000,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.storage = storage
        self.retry_policy = retry_policy or RetryPolicy()
        self.duplicate_handling = DuplicateHandling(duplicate_handling)
        self.transaction_mode = TransactionMode(transaction_mode)
        self.batch_size = batch_size
        self._attempts = 0

    def _count_attempt(self, attempt: int) -> None:
        self._attempts += 1

    async def import_structure(
        self,
        structure: ImportStructure,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BulkImportResult:
        """Persist a structure; storage failures are reported, not raised.

        Returns:
            BulkImportResult: per-table counts, duplicates, attempts, issues
        """
        self._attempts = 0
        result = BulkImportResult(success=False)
        try:
            plan = await self._plan(structure)
            result.duplicates = plan.duplicates
            for counter, skipped in plan.skipped.items():
                getattr(result, counter).skipped += skipped
            await self._execute(plan.commands, result, cancel_token)
            result.success = True
        except DuplicateRecordError as e:
            logger.warning(f"Duplicate record in {e.table}: {e.key!r}")
            result.errors.append(ImportIssue.error(
                "DUPLICATE_RECORD", str(e), IssueKind.STORAGE, field=e.table, key=str(e.key),
            ))
        except ImportCancelledError as e:
            result.errors.append(ImportIssue.error("IMPORT_CANCELLED", str(e), IssueKind.STORAGE))
        except StorageError as e:
            logger.error(f"Storage failure during {e.operation or 'import'}: {str(e)}")
            result.errors.append(ImportIssue.error(
                "STORAGE_ERROR", str(e), IssueKind.STORAGE, operation=e.operation,
            ))
        result.attempts = self._attempts
        if result.duplicates and result.success:
            result.warnings.append(ImportIssue.warning(
                "DUPLICATES_ENCOUNTERED",
                f"{result.duplicates} records already existed ({self.duplicate_handling.value})",
                IssueKind.STORAGE,
                count=result.duplicates,
            ))
        logger.info(
            f"Bulk import {'succeeded' if result.success else 'failed'}: "
            f"patients={result.patients.inserted}+{result.patients.updated}u, "
            f"visits={result.visits.inserted}+{result.visits.updated}u, "
            f"observations={result.observations.inserted}+{result.observations.updated}u, "
            f"duplicates={result.duplicates}, attempts={result.attempts}"
        )
        return result

    # ------------------------------------------------------------- storage

    async def _checked(self, factory: Callable[[], Awaitable[Any]], operation: str) -> Any:
        """Await one storage call, raising when it reports ``success=False``.

        The reported error text decides whether the failure is transient.
        """
        outcome = await factory()
        if outcome.success:
            return outcome
        message = getattr(outcome, "error", None) or f"Storage reported {operation} failure"
        error = StorageError(message, operation=operation)
        if is_transient_error(error):
            raise TransientStorageError(message, operation=operation)
        raise error

    async def _call(self, factory: Callable[[], Awaitable[Any]], operation: str) -> Any:
        """Run one storage call under the retry policy.

        Raises:
            StorageError: When the call fails or reports ``success=False``,
                after retries for transient failures
        """
        try:
            return await self.retry_policy.run(
                lambda: self._checked(factory, operation),
                description=operation,
                on_attempt=self._count_attempt,
            )
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"{operation} failed: {str(e)}", operation=operation) from e

    async def _query(self, sql: str, params: Sequence[Any] = ()) -> list[dict]:
        outcome = await self._call(lambda: self.storage.execute_query(sql, params), "query")
        return outcome.data

    async def _max_key(self, spec: TableSpec) -> int:
        rows = await self._query(f"SELECT MAX({spec.key}) AS max_key FROM {spec.name}")
        value = rows[0].get("max_key") if rows else None
        return int(value or 0)

    async def _rows_where_in(self, spec: TableSpec, column: str, columns: str, values: list) -> list[dict]:
        rows: list[dict] = []
        for chunk in chunked(values, QUERY_CHUNK_SIZE):
            placeholders = ", ".join("?" for _ in chunk)
            rows.extend(await self._query(
                f"SELECT {columns} FROM {spec.name} WHERE {column} IN ({placeholders})",
                tuple(chunk),
            ))
        return rows

    # ------------------------------------------------------------ planning

    def _collision(self, plan: ImportPlan, spec: TableSpec, counter: str, key: Any,
                   existing: int, row: dict) -> None:
        plan.duplicates += 1
        if self.duplicate_handling is DuplicateHandling.ERROR:
            raise DuplicateRecordError(f"{spec.name} already contains {key!r}", table=spec.name, key=key)
        if self.duplicate_handling is DuplicateHandling.UPDATE:
            plan.commands.append(PlannedCommand(update_command(spec, row, existing), counter, "updated"))
        else:
            plan.skipped[counter] += 1

    async def _plan(self, structure: ImportStructure) -> ImportPlan:
        plan = ImportPlan()

        next_patient = await self._max_key(PATIENTS) + 1
        existing_patients: dict[str, int] = {}
        codes = [p.patient_cd for p in structure.patients]
        for row in await self._rows_where_in(PATIENTS, "PATIENT_CD", "PATIENT_NUM, PATIENT_CD", codes):
            existing_patients.setdefault(row["PATIENT_CD"], int(row["PATIENT_NUM"]))

        patient_map: dict[int, int] = {}
        for patient in structure.patients:
            stored = existing_patients.get(patient.patient_cd)
            if stored is not None:
                patient_map[patient.patient_num] = stored
                self._collision(plan, PATIENTS, "patients", patient.patient_cd, stored,
                                _row(patient, PATIENT_NUM=stored))
                continue
            patient_map[patient.patient_num] = next_patient
            plan.commands.append(PlannedCommand(
                insert_command(PATIENTS, _row(patient, PATIENT_NUM=next_patient)), "patients", "inserted",
            ))
            next_patient += 1

        next_visit = await self._max_key(VISITS) + 1
        existing_visits: dict[tuple, deque] = defaultdict(deque)
        for row in await self._rows_where_in(
            VISITS, "PATIENT_NUM", "ENCOUNTER_NUM, PATIENT_NUM, START_DATE, LOCATION_CD, INOUT_CD",
            sorted(set(existing_patients.values())),
        ):
            natural = (int(row["PATIENT_NUM"]), _iso(row["START_DATE"]), row["LOCATION_CD"] or None, row["INOUT_CD"])
            existing_visits[natural].append(int(row["ENCOUNTER_NUM"]))

        visit_map: dict[int, int] = {}
        matched_visits: set[int] = set()
        for visit in structure.visits:
            patient_num = patient_map[visit.patient_num]
            natural = (patient_num, _iso(visit.start_date), visit.location_cd or None, visit.inout_cd.value)
            if existing_visits[natural]:
                stored = existing_visits[natural].popleft()
                visit_map[visit.encounter_num] = stored
                matched_visits.add(stored)
                self._collision(plan, VISITS, "visits", natural, stored,
                                _row(visit, ENCOUNTER_NUM=stored, PATIENT_NUM=patient_num))
                continue
            visit_map[visit.encounter_num] = next_visit
            plan.commands.append(PlannedCommand(
                insert_command(VISITS, _row(visit, ENCOUNTER_NUM=next_visit, PATIENT_NUM=patient_num)),
                "visits",
                "inserted",
            ))
            next_visit += 1

        next_observation = await self._max_key(OBSERVATIONS) + 1
        existing_observations: dict[tuple, deque] = defaultdict(deque)
        for row in await self._rows_where_in(
            OBSERVATIONS, "ENCOUNTER_NUM",
            "OBSERVATION_ID, ENCOUNTER_NUM, CONCEPT_CD, START_DATE, INSTANCE_NUM",
            sorted(matched_visits),
        ):
            natural = (int(row["ENCOUNTER_NUM"]), row["CONCEPT_CD"], _iso(row["START_DATE"]), int(row["INSTANCE_NUM"] or 1))
            existing_observations[natural].append(int(row["OBSERVATION_ID"]))

        for observation in structure.observations:
            encounter_num = visit_map[observation.encounter_num]
            patient_num = patient_map[observation.patient_num]
            natural = (encounter_num, observation.concept_cd, _iso(observation.start_date), observation.instance_num)
            if existing_observations[natural]:
                stored = existing_observations[natural].popleft()
                self._collision(plan, OBSERVATIONS, "observations", natural, stored, _row(
                    observation, OBSERVATION_ID=stored, ENCOUNTER_NUM=encounter_num, PATIENT_NUM=patient_num,
                ))
                continue
            plan.commands.append(PlannedCommand(
                insert_command(OBSERVATIONS, _row(
                    observation,
                    OBSERVATION_ID=next_observation,
                    ENCOUNTER_NUM=encounter_num,
                    PATIENT_NUM=patient_num,
                )),
                "observations",
                "inserted",
            ))
            next_observation += 1

        logger.debug(
            f"Planned {len(plan.commands)} storage commands, {plan.duplicates} duplicates "
            f"({self.duplicate_handling.value})"
        )
        return plan

    # ----------------------------------------------------------- execution

    def _record(self, result: BulkImportResult, executed: Sequence[PlannedCommand]) -> None:
        for planned in executed:
            counts = getattr(result, planned.counter)
            setattr(counts, planned.action, getattr(counts, planned.action) + 1)

    async def _execute(
        self,
        commands: list[PlannedCommand],
        result: BulkImportResult,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        if not commands:
            return
        if self.transaction_mode is TransactionMode.NONE:
            for planned in commands:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                await self._call(
                    lambda planned=planned: self.storage.execute_command(
                        planned.command.sql, planned.command.params
                    ),
                    "command",
                )
                self._record(result, [planned])
            return

        size = len(commands) if self.transaction_mode is TransactionMode.SINGLE else self.batch_size
        for batch in chunked(commands, size):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            await self._call(
                lambda batch=batch: self.storage.execute_transaction([p.command for p in batch]),
                "transaction",
            )
            result.transactions += 1
            self._record(result, batch)
