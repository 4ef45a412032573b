"""Storage adapters implementing ``StoragePort``."""

from clinical_import.adapters.storage.duckdb_adapter import DuckDBStorageAdapter

__all__ = ["DuckDBStorageAdapter"]
