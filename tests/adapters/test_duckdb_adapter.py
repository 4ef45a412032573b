"""Tests for the DuckDB storage adapter (in-memory database)."""

import pytest

from clinical_import.adapters.storage import DuckDBStorageAdapter
from clinical_import.domain.ports import StorageCommand, StorageError
from clinical_import.infrastructure.config_manager import DatabaseConfig

INSERT_PATIENT = "INSERT INTO PATIENT_DIMENSION (PATIENT_NUM, PATIENT_CD) VALUES (?, ?)"


@pytest.fixture
async def adapter():
    storage = DuckDBStorageAdapter(db_path=":memory:")
    result = await storage.initialize_schema()
    assert result.is_success()
    yield storage
    await storage.close()


class TestDuckDBStorageAdapter:
    @pytest.mark.asyncio
    async def test_schema_is_idempotent(self, adapter):
        assert (await adapter.initialize_schema()).is_success()
        rows = await adapter.execute_query("SELECT COUNT(*) AS n FROM OBSERVATION_FACT")
        assert rows.data == [{"n": 0}]

    @pytest.mark.asyncio
    async def test_command_and_query(self, adapter):
        result = await adapter.execute_command(INSERT_PATIENT, (1, "P001"))
        assert result.success
        rows = await adapter.execute_query(
            "SELECT PATIENT_NUM, PATIENT_CD, IMPORT_DATE FROM PATIENT_DIMENSION WHERE PATIENT_CD = ?", ("P001",)
        )
        assert rows.data[0]["PATIENT_NUM"] == 1
        assert rows.data[0]["IMPORT_DATE"] is not None

    @pytest.mark.asyncio
    async def test_transaction_commits(self, adapter):
        result = await adapter.execute_transaction([
            StorageCommand(INSERT_PATIENT, (1, "P001")),
            StorageCommand(INSERT_PATIENT, (2, "P002")),
        ])
        assert result.success
        assert len(result.results) == 2
        rows = await adapter.execute_query("SELECT COUNT(*) AS n FROM PATIENT_DIMENSION")
        assert rows.data[0]["n"] == 2

    @pytest.mark.asyncio
    async def test_transaction_rolls_back(self, adapter):
        with pytest.raises(StorageError) as exc_info:
            await adapter.execute_transaction([
                StorageCommand(INSERT_PATIENT, (1, "P001")),
                StorageCommand(INSERT_PATIENT, (1, "P001-dup")),
            ])
        assert exc_info.value.operation == "transaction"
        rows = await adapter.execute_query("SELECT COUNT(*) AS n FROM PATIENT_DIMENSION")
        assert rows.data[0]["n"] == 0

    @pytest.mark.asyncio
    async def test_bad_sql_raises_storage_error(self, adapter):
        with pytest.raises(StorageError):
            await adapter.execute_query("SELECT * FROM MISSING_TABLE")

    @pytest.mark.asyncio
    async def test_reconnects_after_close(self, adapter):
        await adapter.execute_command(INSERT_PATIENT, (1, "P001"))
        await adapter.close()
        # A fresh in-memory database is opened on the next call.
        assert (await adapter.initialize_schema()).is_success()
        rows = await adapter.execute_query("SELECT COUNT(*) AS n FROM PATIENT_DIMENSION")
        assert rows.data[0]["n"] == 0


class TestAdapterConfiguration:
    def test_missing_directory(self, tmp_path):
        with pytest.raises(StorageError):
            DuckDBStorageAdapter(db_path=str(tmp_path / "nope" / "db.duckdb"))

    def test_from_database_config(self, tmp_path):
        config = DatabaseConfig(db_path=str(tmp_path / "import.duckdb"))
        assert DuckDBStorageAdapter(db_config=config).db_path == str(tmp_path / "import.duckdb")

    @pytest.mark.asyncio
    async def test_file_database_persists(self, tmp_path):
        path = str(tmp_path / "import.duckdb")
        first = DuckDBStorageAdapter(db_path=path)
        await first.initialize_schema()
        await first.execute_command(INSERT_PATIENT, (1, "P001"))
        await first.close()

        second = DuckDBStorageAdapter(db_path=path)
        rows = await second.execute_query("SELECT PATIENT_CD FROM PATIENT_DIMENSION")
        await second.close()
        assert rows.data == [{"PATIENT_CD": "P001"}]
