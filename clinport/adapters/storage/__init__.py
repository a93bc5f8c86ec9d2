"""Storage adapters for Clinport."""

from clinport.adapters.storage.duckdb_adapter import DuckDBAdapter

__all__ = ["DuckDBAdapter"]
