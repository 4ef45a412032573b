"""Tests for BulkImporter.

These tests verify that persistence:
- Renumbers surrogate keys above the stored maxima
- Applies the duplicate policy per table (skip, update, error)
- Retries transient storage failures and gives up on permanent ones
- Leaves storage untouched when a transaction fails
- Honors the transaction mode and batch size
"""

import json

import pytest

from conftest import FakeStorage, JSON_EXPORT

from clinical_import.adapters.parsers import JsonParser
from clinical_import.adapters.storage import DuckDBStorageAdapter
from clinical_import.domain.enums import DuplicateHandling, TransactionMode
from clinical_import.domain.guardrails import CancellationToken, RetryPolicy
from clinical_import.domain.ports import QueryResult, StorageError, TransactionResult, TransientStorageError
from clinical_import.domain.transformer import CanonicalTransformer
from clinical_import.services.bulk_importer import BulkImporter

NO_WAIT = RetryPolicy(max_attempts=3, backoff_seconds=0)


@pytest.fixture
def structure():
    document = JsonParser().parse(json.dumps(JSON_EXPORT)).value
    return CanonicalTransformer().transform(document).structure


def importer(storage, **kwargs):
    kwargs.setdefault("retry_policy", NO_WAIT)
    return BulkImporter(storage, **kwargs)


class TestInsert:
    @pytest.mark.asyncio
    async def test_inserts_everything(self, fake_storage, structure):
        result = await importer(fake_storage).import_structure(structure)
        assert result.success
        assert (result.patients.inserted, result.visits.inserted, result.observations.inserted) == (2, 2, 3)
        assert result.transactions == 1
        assert fake_storage.count("OBSERVATION_FACT") == 3
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_keys_renumbered_above_existing(self, structure):
        storage = FakeStorage({
            "PATIENT_DIMENSION": [{"PATIENT_NUM": 40, "PATIENT_CD": "OTHER"}],
            "VISIT_DIMENSION": [{"ENCOUNTER_NUM": 7, "PATIENT_NUM": 40, "START_DATE": "2023-01-01",
                                 "LOCATION_CD": None, "INOUT_CD": "O"}],
        })
        await importer(storage).import_structure(structure)
        patients = {r["PATIENT_CD"]: r["PATIENT_NUM"] for r in storage.tables["PATIENT_DIMENSION"]}
        assert patients == {"OTHER": 40, "P001": 41, "P002": 42}
        visits = storage.tables["VISIT_DIMENSION"][1:]
        assert [(v["ENCOUNTER_NUM"], v["PATIENT_NUM"]) for v in visits] == [(8, 41), (9, 42)]
        observations = storage.tables["OBSERVATION_FACT"]
        assert [o["ENCOUNTER_NUM"] for o in observations] == [8, 8, 9]
        assert observations[0]["VALTYPE_CD"] == "N"


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_skip_is_idempotent(self, fake_storage, structure):
        await importer(fake_storage).import_structure(structure)
        second = await importer(fake_storage).import_structure(structure)
        assert second.success
        assert second.duplicates == 7
        assert (second.patients.skipped, second.visits.skipped, second.observations.skipped) == (2, 2, 3)
        assert second.transactions == 0
        assert fake_storage.count("PATIENT_DIMENSION") == 2
        assert [w.code for w in second.warnings] == ["DUPLICATES_ENCOUNTERED"]

    @pytest.mark.asyncio
    async def test_update_rewrites_existing_rows(self, fake_storage, structure):
        await importer(fake_storage).import_structure(structure)
        fake_storage.tables["OBSERVATION_FACT"][0]["NVAL_NUM"] = 1.0
        result = await importer(fake_storage, duplicate_handling=DuplicateHandling.UPDATE).import_structure(structure)
        assert result.success
        assert result.observations.updated == 3
        assert result.patients.updated == 2
        assert fake_storage.tables["OBSERVATION_FACT"][0]["NVAL_NUM"] == 13.5
        assert fake_storage.count("OBSERVATION_FACT") == 3

    @pytest.mark.asyncio
    async def test_error_policy_writes_nothing(self, structure):
        storage = FakeStorage({"PATIENT_DIMENSION": [{"PATIENT_NUM": 1, "PATIENT_CD": "P002"}]})
        result = await importer(storage, duplicate_handling=DuplicateHandling.ERROR).import_structure(structure)
        assert not result.success
        assert result.errors[0].code == "DUPLICATE_RECORD"
        assert result.errors[0].field == "PATIENT_DIMENSION"
        assert storage.transactions == []
        assert storage.count("PATIENT_DIMENSION") == 1

    @pytest.mark.asyncio
    async def test_new_patient_with_existing_code_gets_new_visits(self, structure):
        storage = FakeStorage({"PATIENT_DIMENSION": [{"PATIENT_NUM": 5, "PATIENT_CD": "P001"}]})
        result = await importer(storage).import_structure(structure)
        assert result.patients.skipped == 1
        assert result.visits.inserted == 2
        owners = [v["PATIENT_NUM"] for v in storage.tables["VISIT_DIMENSION"]]
        assert owners == [5, 6]


class TestResilience:
    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, fake_storage, structure):
        fake_storage.fail_next("transaction", TransientStorageError("Database not connected"))
        result = await importer(fake_storage).import_structure(structure)
        assert result.success
        assert fake_storage.calls.count("transaction") == 2
        assert result.attempts == fake_storage.calls.count("query") + 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, fake_storage, structure):
        fake_storage.fail_next("query", *[TransientStorageError("database is locked")] * 3)
        result = await importer(fake_storage).import_structure(structure)
        assert not result.success
        assert result.errors[0].code == "STORAGE_ERROR"
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_transient_failure_result_retried(self, fake_storage, structure):
        fake_storage.report_next("query", QueryResult(success=False, error="database is locked"))
        fake_storage.report_next("transaction", TransactionResult(success=False, error="Database not connected"))
        result = await importer(fake_storage).import_structure(structure)
        assert result.success
        assert fake_storage.calls.count("transaction") == 2
        assert fake_storage.count("OBSERVATION_FACT") == 3

    @pytest.mark.asyncio
    async def test_permanent_failure_result_not_retried(self, fake_storage, structure):
        fake_storage.report_next("transaction", TransactionResult(success=False, error="constraint violated"))
        result = await importer(fake_storage).import_structure(structure)
        assert not result.success
        assert fake_storage.calls.count("transaction") == 1
        assert result.errors[0].code == "STORAGE_ERROR"
        assert "constraint violated" in result.errors[0].message

    @pytest.mark.asyncio
    async def test_failure_result_without_message(self, fake_storage, structure):
        fake_storage.report_next("query", QueryResult(success=False))
        result = await importer(fake_storage).import_structure(structure)
        assert not result.success
        assert fake_storage.calls.count("query") == 1
        assert result.errors[0].message == "Storage reported query failure"

    @pytest.mark.asyncio
    async def test_non_transient_not_retried(self, fake_storage, structure):
        fake_storage.fail_next("transaction", StorageError("disk full"))
        result = await importer(fake_storage).import_structure(structure)
        assert not result.success
        assert fake_storage.calls.count("transaction") == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_reported(self, fake_storage, structure):
        fake_storage.fail_next("query", RuntimeError("driver exploded"))
        result = await importer(fake_storage).import_structure(structure)
        assert not result.success
        assert "driver exploded" in result.errors[0].message

    @pytest.mark.asyncio
    async def test_failed_transaction_rolls_back(self, fake_storage, structure):
        fake_storage.fail_on_sql = "INSERT INTO OBSERVATION_FACT"
        result = await importer(fake_storage).import_structure(structure)
        assert not result.success
        assert fake_storage.count("PATIENT_DIMENSION") == 0
        assert result.patients.inserted == 0

    @pytest.mark.asyncio
    async def test_cancellation_between_batches(self, fake_storage, structure):
        token = CancellationToken()
        token.cancel()
        result = await importer(fake_storage, transaction_mode=TransactionMode.BATCH, batch_size=2) \
            .import_structure(structure, token)
        assert not result.success
        assert result.errors[0].code == "IMPORT_CANCELLED"
        assert fake_storage.count("PATIENT_DIMENSION") == 0


class TestTransactionModes:
    @pytest.mark.asyncio
    async def test_batch_mode(self, fake_storage, structure):
        result = await importer(fake_storage, transaction_mode=TransactionMode.BATCH, batch_size=3) \
            .import_structure(structure)
        assert result.transactions == 3
        assert [len(t) for t in fake_storage.transactions] == [3, 3, 1]

    @pytest.mark.asyncio
    async def test_none_mode_keeps_partial_writes(self, fake_storage, structure):
        fake_storage.fail_on_sql = "INSERT INTO OBSERVATION_FACT"
        result = await importer(fake_storage, transaction_mode=TransactionMode.NONE).import_structure(structure)
        assert not result.success
        assert fake_storage.count("PATIENT_DIMENSION") == 2
        assert result.patients.inserted == 2
        assert result.transactions == 0

    def test_invalid_batch_size(self, fake_storage):
        with pytest.raises(ValueError):
            BulkImporter(fake_storage, batch_size=0)


class TestDuckDBPersistence:
    @pytest.mark.asyncio
    async def test_skip_twice_against_duckdb(self, structure):
        storage = DuckDBStorageAdapter(db_path=":memory:")
        await storage.initialize_schema()
        try:
            first = await importer(storage).import_structure(structure)
            second = await importer(storage).import_structure(structure)
            counts = await storage.execute_query(
                "SELECT (SELECT COUNT(*) FROM PATIENT_DIMENSION) AS p, "
                "(SELECT COUNT(*) FROM VISIT_DIMENSION) AS v, "
                "(SELECT COUNT(*) FROM OBSERVATION_FACT) AS o"
            )
        finally:
            await storage.close()
        assert first.success and second.success
        assert second.duplicates == 7
        assert counts.data[0] == {"p": 2, "v": 2, "o": 3}
