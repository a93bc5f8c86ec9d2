"""DuckDB Storage Adapter.

This adapter implements the clinical store and concept dictionary ports on
DuckDB, an in-process database. Four tables hold the data:

- ``patient_dimension``: one row per patient (``PATIENT_NUM`` store id)
- ``visit_dimension``: one row per visit (``ENCOUNTER_NUM`` store id)
- ``observation_fact``: one row per observation (``OBSERVATION_ID`` store id)
- ``concept_dimension``: known concept codes

Store ids come from sequences and are returned with ``INSERT ... RETURNING``.

Architecture:
    - Implements ClinicalStorePort and ConceptDictionaryPort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - Port methods are coroutines; DuckDB runs in-process, so each call
      completes synchronously once awaited and calls from one import never
      interleave
"""

import logging
from pathlib import Path
from typing import Any, Optional

import duckdb
import pandas as pd

from clinport.domain.import_structure import ObservationRecord, PatientRecord, VisitRecord
from clinport.domain.ports import (
    ClinicalStorePort,
    ConceptDictionaryPort,
    Result,
    StorageError,
)
from clinport.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

PATIENT_COLUMNS = (
    "PATIENT_CD", "SEX_CD", "AGE_IN_YEARS", "BIRTH_DATE", "DEATH_DATE", "VITAL_STATUS_CD",
    "LANGUAGE_CD", "RACE_CD", "MARITAL_STATUS_CD", "RELIGION_CD", "STATECITYZIP_PATH",
    "PATIENT_BLOB", "SOURCESYSTEM_CD",
)
VISIT_COLUMNS = (
    "ACTIVE_STATUS_CD", "START_DATE", "END_DATE", "INOUT_CD", "LOCATION_CD",
    "VISIT_BLOB", "SOURCESYSTEM_CD",
)
OBSERVATION_COLUMNS = (
    "CONCEPT_CD", "VALTYPE_CD", "NVAL_NUM", "TVAL_CHAR", "OBSERVATION_BLOB", "START_DATE",
    "END_DATE", "UNIT_CD", "CATEGORY_CHAR", "PROVIDER_ID", "INSTANCE_NUM", "LOCATION_CD",
    "SOURCESYSTEM_CD",
)

TABLES = ("patient_dimension", "visit_dimension", "observation_fact", "concept_dimension")


class DuckDBAdapter(ClinicalStorePort, ConceptDictionaryPort):
    """DuckDB implementation of the clinical store.

    Parameters:
        db_config: DatabaseConfig from the configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        adapter = DuckDBAdapter(db_path=":memory:")
        result = adapter.initialize_schema()
        if result.is_success():
            adapter.register_concept("LID: 8302-2", "Body height")
            patient_num = await adapter.insert_patient(patient)
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None,
    ):
        """Initialize DuckDB adapter.

        Note:
            If both db_config and db_path are provided, db_config takes precedence.
            If neither is provided, defaults to in-memory database.
        """
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection (created lazily, then reused)."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except duckdb.Error as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def initialize_schema(self) -> Result[None]:
        """Create sequences and tables if they do not exist.

        Returns:
            Result[None]: Success or failure result
        """
        try:
            conn = self._get_connection()

            conn.execute("CREATE SEQUENCE IF NOT EXISTS seq_patient_num START 1")
            conn.execute("CREATE SEQUENCE IF NOT EXISTS seq_encounter_num START 1")
            conn.execute("CREATE SEQUENCE IF NOT EXISTS seq_observation_id START 1")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS patient_dimension (
                    PATIENT_NUM BIGINT PRIMARY KEY DEFAULT nextval('seq_patient_num'),
                    PATIENT_CD VARCHAR,
                    SEX_CD VARCHAR,
                    AGE_IN_YEARS DOUBLE,
                    BIRTH_DATE VARCHAR,
                    DEATH_DATE VARCHAR,
                    VITAL_STATUS_CD VARCHAR,
                    LANGUAGE_CD VARCHAR,
                    RACE_CD VARCHAR,
                    MARITAL_STATUS_CD VARCHAR,
                    RELIGION_CD VARCHAR,
                    STATECITYZIP_PATH VARCHAR,
                    PATIENT_BLOB VARCHAR,
                    SOURCESYSTEM_CD VARCHAR,
                    IMPORT_DATE TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UPDATE_DATE TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS visit_dimension (
                    ENCOUNTER_NUM BIGINT PRIMARY KEY DEFAULT nextval('seq_encounter_num'),
                    PATIENT_NUM BIGINT NOT NULL,
                    ACTIVE_STATUS_CD VARCHAR,
                    START_DATE VARCHAR,
                    END_DATE VARCHAR,
                    INOUT_CD VARCHAR,
                    LOCATION_CD VARCHAR,
                    VISIT_BLOB VARCHAR,
                    SOURCESYSTEM_CD VARCHAR,
                    IMPORT_DATE TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS observation_fact (
                    OBSERVATION_ID BIGINT PRIMARY KEY DEFAULT nextval('seq_observation_id'),
                    ENCOUNTER_NUM BIGINT NOT NULL,
                    PATIENT_NUM BIGINT NOT NULL,
                    CONCEPT_CD VARCHAR NOT NULL,
                    VALTYPE_CD VARCHAR NOT NULL,
                    NVAL_NUM DOUBLE,
                    TVAL_CHAR VARCHAR,
                    OBSERVATION_BLOB VARCHAR,
                    START_DATE VARCHAR,
                    END_DATE VARCHAR,
                    UNIT_CD VARCHAR,
                    CATEGORY_CHAR VARCHAR,
                    PROVIDER_ID VARCHAR,
                    INSTANCE_NUM INTEGER,
                    LOCATION_CD VARCHAR,
                    SOURCESYSTEM_CD VARCHAR,
                    IMPORT_DATE TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS concept_dimension (
                    CONCEPT_CD VARCHAR PRIMARY KEY,
                    NAME_CHAR VARCHAR,
                    CONCEPT_PATH VARCHAR,
                    VALTYPE_CD VARCHAR,
                    UNIT_CD VARCHAR,
                    IMPORT_DATE TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_patient_cd ON patient_dimension(PATIENT_CD)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_visit_patient ON visit_dimension(PATIENT_NUM)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_observation_patient ON observation_fact(PATIENT_NUM)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_observation_encounter ON observation_fact(ENCOUNTER_NUM)")

            self._initialized = True
            logger.info("Database schema initialized successfully")

            return Result.success_result(None)

        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    def _execute(self, operation: str, sql: str, params: Optional[list] = None):
        try:
            return self._get_connection().execute(sql, params or [])
        except duckdb.Error as e:
            logger.error(f"DuckDB {operation} failed: {str(e)}")
            raise StorageError(f"{operation} failed: {str(e)}", operation=operation)

    def _fetch_dicts(self, operation: str, sql: str, params: Optional[list] = None) -> list[dict]:
        cursor = self._execute(operation, sql, params)
        columns = [description[0] for description in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def _insert_returning(self, operation: str, table: str, columns: dict[str, Any], key: str) -> int:
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        row = self._execute(
            operation,
            f"INSERT INTO {table} ({names}) VALUES ({placeholders}) RETURNING {key}",
            list(columns.values()),
        ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # ClinicalStorePort
    # ------------------------------------------------------------------

    async def find_patient_by_code(self, patient_cd: str) -> Optional[dict]:
        rows = self._fetch_dicts(
            "find_patient_by_code",
            "SELECT * FROM patient_dimension WHERE PATIENT_CD = ? ORDER BY PATIENT_NUM LIMIT 1",
            [patient_cd],
        )
        return rows[0] if rows else None

    async def patient_exists(self, patient_num: int) -> bool:
        return self.get_patient(patient_num) is not None

    async def visit_exists(self, encounter_num: int, patient_num: Optional[int] = None) -> bool:
        visit = self.get_visit(encounter_num)
        if visit is None:
            return False
        return patient_num is None or visit["PATIENT_NUM"] == patient_num

    async def insert_patient(self, patient: PatientRecord) -> int:
        values = {column: getattr(patient, column.lower()) for column in PATIENT_COLUMNS}
        patient_num = self._insert_returning("insert_patient", "patient_dimension", values, "PATIENT_NUM")
        logger.debug(f"Inserted patient {patient.patient_cd} as PATIENT_NUM {patient_num}")
        return patient_num

    async def update_patient(self, patient_num: int, patient: PatientRecord) -> None:
        """Overwrite stored fields with every non-null source field.

        ``PATIENT_CD`` is the lookup key and is never rewritten.
        """
        values = {
            column: getattr(patient, column.lower())
            for column in PATIENT_COLUMNS
            if column != "PATIENT_CD" and getattr(patient, column.lower()) is not None
        }
        assignments = ", ".join(f"{column} = ?" for column in values)
        if assignments:
            assignments += ", "
        self._execute(
            "update_patient",
            f"UPDATE patient_dimension SET {assignments}UPDATE_DATE = CURRENT_TIMESTAMP WHERE PATIENT_NUM = ?",
            list(values.values()) + [patient_num],
        )
        logger.debug(f"Updated PATIENT_NUM {patient_num} from source patient {patient.patient_cd}")

    async def insert_visit(self, patient_num: int, visit: VisitRecord) -> int:
        values = {"PATIENT_NUM": patient_num}
        values.update({column: getattr(visit, column.lower()) for column in VISIT_COLUMNS})
        return self._insert_returning("insert_visit", "visit_dimension", values, "ENCOUNTER_NUM")

    async def insert_observation(
        self,
        patient_num: int,
        encounter_num: int,
        observation: ObservationRecord
    ) -> int:
        values: dict[str, Any] = {"PATIENT_NUM": patient_num, "ENCOUNTER_NUM": encounter_num}
        for column in OBSERVATION_COLUMNS:
            values[column] = getattr(observation, column.lower())
        values["VALTYPE_CD"] = observation.valtype_cd.value
        return self._insert_returning("insert_observation", "observation_fact", values, "OBSERVATION_ID")

    # ------------------------------------------------------------------
    # ConceptDictionaryPort
    # ------------------------------------------------------------------

    async def concept_exists(self, concept_cd: str) -> bool:
        row = self._execute(
            "concept_exists",
            "SELECT 1 FROM concept_dimension WHERE CONCEPT_CD = ?",
            [concept_cd],
        ).fetchone()
        return row is not None

    def register_concept(
        self,
        concept_cd: str,
        name_char: Optional[str] = None,
        concept_path: Optional[str] = None,
        valtype_cd: Optional[str] = None,
        unit_cd: Optional[str] = None,
    ) -> Result[None]:
        """Add or replace a concept in the dictionary."""
        try:
            self._execute(
                "register_concept",
                """
                INSERT OR REPLACE INTO concept_dimension
                    (CONCEPT_CD, NAME_CHAR, CONCEPT_PATH, VALTYPE_CD, UNIT_CD)
                VALUES (?, ?, ?, ?, ?)
                """,
                [concept_cd, name_char, concept_path, valtype_cd, unit_cd],
            )
            return Result.success_result(None)
        except StorageError as e:
            return Result.failure_result(e, error_type="StorageError", error_details={"concept_cd": concept_cd})

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    def get_patient(self, patient_num: int) -> Optional[dict]:
        rows = self._fetch_dicts(
            "get_patient", "SELECT * FROM patient_dimension WHERE PATIENT_NUM = ?", [patient_num]
        )
        return rows[0] if rows else None

    def get_visit(self, encounter_num: int) -> Optional[dict]:
        rows = self._fetch_dicts(
            "get_visit", "SELECT * FROM visit_dimension WHERE ENCOUNTER_NUM = ?", [encounter_num]
        )
        return rows[0] if rows else None

    def list_visits(self, patient_num: int) -> list[dict]:
        return self._fetch_dicts(
            "list_visits",
            "SELECT * FROM visit_dimension WHERE PATIENT_NUM = ? ORDER BY ENCOUNTER_NUM",
            [patient_num],
        )

    def list_observations(self, patient_num: Optional[int] = None) -> list[dict]:
        if patient_num is None:
            return self._fetch_dicts(
                "list_observations", "SELECT * FROM observation_fact ORDER BY OBSERVATION_ID"
            )
        return self._fetch_dicts(
            "list_observations",
            "SELECT * FROM observation_fact WHERE PATIENT_NUM = ? ORDER BY OBSERVATION_ID",
            [patient_num],
        )

    def count_rows(self, table: str) -> int:
        if table not in TABLES:
            raise StorageError(f"Unknown table: {table}", operation="count_rows")
        return int(self._execute("count_rows", f"SELECT COUNT(*) FROM {table}").fetchone()[0])

    def fetch_frame(self, table: str) -> pd.DataFrame:
        """Whole table as a pandas DataFrame."""
        if table not in TABLES:
            raise StorageError(f"Unknown table: {table}", operation="fetch_frame")
        return self._execute("fetch_frame", f"SELECT * FROM {table}").df()

    def close(self) -> None:
        """Close storage connection and release resources."""
        if self._connection is not None:
            try:
                self._connection.close()
                logger.info("Closed DuckDB connection")
            except duckdb.Error as e:
                logger.warning(f"Error closing connection: {str(e)}")
            finally:
                self._connection = None
