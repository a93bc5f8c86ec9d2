"""Unit tests for the versioned field alias table."""

from clinport.domain.field_mapping import (
    DEFAULT_FIELD_MAPPING,
    FIELD_MAPPING_VERSION,
    EntityKind,
    FieldMapper,
    FieldMapping,
)


class TestFieldMapper:
    """Test alias resolution."""

    def test_resolves_historical_names(self):
        mapper = FieldMapper()
        resolved = mapper.resolve(EntityKind.PATIENT, {"patientId": "P1", "gender": "f", "dob": "1980-01-01"})
        assert resolved == {"patient_cd": "P1", "sex_cd": "f", "birth_date": "1980-01-01"}

    def test_first_non_blank_alias_wins(self):
        """Test priority order and that blank aliases are skipped."""
        mapper = FieldMapper()
        resolved = mapper.resolve(EntityKind.PATIENT, {"SEX_CD": " ", "sex": "M", "gender": "F"})
        assert resolved["sex_cd"] == "M"

    def test_unknown_keys_are_ignored(self):
        assert FieldMapper().resolve(EntityKind.VISIT, {"foo": 1}) == {}

    def test_observation_generic_value(self):
        resolved = FieldMapper().resolve(EntityKind.OBSERVATION, {"conceptCode": "C1", "value": "5"})
        assert resolved == {"concept_cd": "C1", "value": "5"}

    def test_canonical_name_is_case_insensitive(self):
        mapper = FieldMapper()
        assert mapper.canonical_name(EntityKind.VISIT, "visit_date") == "start_date"
        assert mapper.canonical_name(EntityKind.PATIENT, "GENDER") == "sex_cd"
        assert mapper.canonical_name(EntityKind.PATIENT, "LID: 8302-2") is None

    def test_version(self):
        assert FieldMapper().version == FIELD_MAPPING_VERSION

    def test_custom_mapping(self):
        """Test a new table version can add aliases without touching the resolver."""
        aliases = dict(DEFAULT_FIELD_MAPPING.aliases)
        patient_aliases = dict(aliases[EntityKind.PATIENT])
        patient_aliases["patient_cd"] = patient_aliases["patient_cd"] + ("mrn",)
        aliases[EntityKind.PATIENT] = patient_aliases
        mapper = FieldMapper(FieldMapping(version="2025.1", aliases=aliases))

        assert mapper.resolve(EntityKind.PATIENT, {"mrn": "M-1"}) == {"patient_cd": "M-1"}
        assert mapper.version == "2025.1"
