"""Unit tests for the DuckDB storage adapter."""

import pandas as pd
import pytest

from clinport.adapters.storage import DuckDBAdapter
from clinport.domain.enums import ValueType
from clinport.domain.import_structure import ObservationRecord, PatientRecord, VisitRecord
from clinport.domain.ports import StorageError
from clinport.infrastructure.config_manager import DatabaseConfig


@pytest.fixture
def adapter():
    """In-memory adapter with the schema created."""
    adapter = DuckDBAdapter(db_path=":memory:")
    result = adapter.initialize_schema()
    assert result.is_success()
    yield adapter
    adapter.close()


class TestSchema:
    """Test schema creation and connection handling."""

    def test_initialize_schema_is_idempotent(self, adapter):
        assert adapter.initialize_schema().is_success()
        for table in ("patient_dimension", "visit_dimension", "observation_fact", "concept_dimension"):
            assert adapter.count_rows(table) == 0

    def test_config_path_and_persistence(self, tmp_path):
        """Test rows survive closing and reopening a file database."""
        db_file = str(tmp_path / "store.duckdb")
        adapter = DuckDBAdapter(db_config=DatabaseConfig(db_type="duckdb", db_path=db_file))
        adapter.initialize_schema()
        adapter.register_concept("C1", "Concept one")
        adapter.close()

        reopened = DuckDBAdapter(db_path=db_file)
        reopened.initialize_schema()
        assert reopened.count_rows("concept_dimension") == 1
        reopened.close()

    def test_missing_directory(self, tmp_path):
        with pytest.raises(StorageError):
            DuckDBAdapter(db_path=str(tmp_path / "missing" / "store.duckdb"))

    def test_close_twice(self, adapter):
        adapter.close()
        adapter.close()
        assert adapter._connection is None


class TestPatients:
    """Test patient writes and lookups."""

    @pytest.mark.asyncio
    async def test_insert_and_find(self, adapter):
        patient_num = await adapter.insert_patient(PatientRecord(patient_num=99, patient_cd="P1", sex_cd="F"))

        row = await adapter.find_patient_by_code("P1")

        assert row["PATIENT_NUM"] == patient_num
        assert row["SEX_CD"] == "F"
        assert await adapter.patient_exists(patient_num)
        assert await adapter.find_patient_by_code("P2") is None

    @pytest.mark.asyncio
    async def test_store_assigns_ids(self, adapter):
        """Test the source-local patient_num is not used as the store id."""
        first = await adapter.insert_patient(PatientRecord(patient_num=1, patient_cd="A"))
        second = await adapter.insert_patient(PatientRecord(patient_num=1, patient_cd="B"))
        assert first != second

    @pytest.mark.asyncio
    async def test_update_overwrites_only_present_fields(self, adapter):
        patient_num = await adapter.insert_patient(
            PatientRecord(patient_num=1, patient_cd="P1", sex_cd="F", age_in_years=40)
        )

        await adapter.update_patient(patient_num, PatientRecord(patient_num=1, patient_cd="P1", age_in_years=41))

        row = adapter.get_patient(patient_num)
        assert row["SEX_CD"] == "F"
        assert row["AGE_IN_YEARS"] == 41.0
        assert row["UPDATE_DATE"] is not None


class TestVisitsAndObservations:
    """Test visit and observation writes."""

    @pytest.mark.asyncio
    async def test_visit_exists_checks_owner(self, adapter):
        patient_num = await adapter.insert_patient(PatientRecord(patient_num=1, patient_cd="P1"))
        encounter_num = await adapter.insert_visit(
            patient_num, VisitRecord(encounter_num=5, start_date="2024-01-01", inout_cd="I")
        )

        assert await adapter.visit_exists(encounter_num)
        assert await adapter.visit_exists(encounter_num, patient_num)
        assert not await adapter.visit_exists(encounter_num, patient_num + 1000)
        assert not await adapter.visit_exists(encounter_num + 1000)
        assert adapter.list_visits(patient_num)[0]["INOUT_CD"] == "I"

    @pytest.mark.asyncio
    async def test_insert_observation(self, adapter):
        patient_num = await adapter.insert_patient(PatientRecord(patient_num=1, patient_cd="P1"))
        encounter_num = await adapter.insert_visit(patient_num, VisitRecord(encounter_num=1))
        observation = ObservationRecord(
            observation_id=1, concept_cd="LID: 8302-2", valtype_cd=ValueType.NUMERIC,
            nval_num=180, unit_cd="cm", start_date="2024-01-01",
        )

        observation_id = await adapter.insert_observation(patient_num, encounter_num, observation)

        (row,) = adapter.list_observations(patient_num)
        assert row["OBSERVATION_ID"] == observation_id
        assert row["ENCOUNTER_NUM"] == encounter_num
        assert row["VALTYPE_CD"] == "N"
        assert row["NVAL_NUM"] == 180.0
        assert row["TVAL_CHAR"] is None
        assert len(adapter.list_observations()) == 1


class TestConcepts:
    """Test the concept dictionary."""

    @pytest.mark.asyncio
    async def test_register_and_lookup(self, adapter):
        assert not await adapter.concept_exists("LID: 8302-2")

        assert adapter.register_concept("LID: 8302-2", "Body height", valtype_cd="N", unit_cd="cm").is_success()
        assert adapter.register_concept("LID: 8302-2", "Height").is_success()

        assert await adapter.concept_exists("LID: 8302-2")
        assert adapter.count_rows("concept_dimension") == 1


class TestReadHelpers:
    """Test table-level read helpers."""

    def test_unknown_table_is_rejected(self, adapter):
        with pytest.raises(StorageError):
            adapter.count_rows("sqlite_master")
        with pytest.raises(StorageError):
            adapter.fetch_frame("users; DROP TABLE patient_dimension")

    @pytest.mark.asyncio
    async def test_fetch_frame(self, adapter):
        await adapter.insert_patient(PatientRecord(patient_num=1, patient_cd="P1"))

        frame = adapter.fetch_frame("patient_dimension")

        assert isinstance(frame, pd.DataFrame)
        assert list(frame["PATIENT_CD"]) == ["P1"]
