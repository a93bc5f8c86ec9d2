"""Versioned field alias table.

Source formats name the same canonical field in several ways
(``PATIENT_CD``, ``patientId``, ``patient_cd``...). All alias knowledge lives
here, in one table per entity kind, and is applied by a single resolver so
normalizers never carry their own fallback chains.

Aliases are listed in priority order: when a record carries several aliases
of one field, the first non-blank one wins.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from clinport.domain.services.normalization import is_blank


class EntityKind(str, Enum):
    PATIENT = "patient"
    VISIT = "visit"
    OBSERVATION = "observation"


FIELD_MAPPING_VERSION = "2024.1"

_PATIENT_ALIASES = {
    "patient_num": ("PATIENT_NUM", "patientNum", "patient_num", "id"),
    "patient_cd": ("PATIENT_CD", "patientId", "patient_cd", "patientCode", "patient_id"),
    "sex_cd": ("SEX_CD", "sex", "gender", "sex_cd", "GENDER"),
    "age_in_years": ("AGE_IN_YEARS", "ageInYears", "age", "age_in_years", "AGE"),
    "birth_date": ("BIRTH_DATE", "birthDate", "dob", "birth_date", "DOB"),
    "death_date": ("DEATH_DATE", "deathDate", "death_date"),
    "vital_status_cd": ("VITAL_STATUS_CD", "vitalStatus", "vital_status_cd"),
    "language_cd": ("LANGUAGE_CD", "language", "language_cd"),
    "race_cd": ("RACE_CD", "race", "race_cd"),
    "marital_status_cd": ("MARITAL_STATUS_CD", "maritalStatus", "marital_status_cd"),
    "religion_cd": ("RELIGION_CD", "religion", "religion_cd"),
    "statecityzip_path": ("STATECITYZIP_PATH", "stateCityZipPath", "statecityzip_path"),
    "patient_blob": ("PATIENT_BLOB", "patientBlob", "patient_blob"),
    "sourcesystem_cd": ("SOURCESYSTEM_CD", "sourceSystem", "sourcesystem_cd"),
}

_VISIT_ALIASES = {
    "encounter_num": ("ENCOUNTER_NUM", "encounterId", "visitId", "encounter_num", "encounterNum", "id"),
    "patient_num": ("PATIENT_NUM", "patientNum", "patient_num"),
    "patient_cd": ("PATIENT_CD", "patientId", "patient_cd", "patientCode"),
    "start_date": ("START_DATE", "startDate", "visitDate", "start_date", "VISIT_DATE"),
    "end_date": ("END_DATE", "endDate", "end_date"),
    "location_cd": ("LOCATION_CD", "location", "locationCd", "location_cd"),
    "inout_cd": ("INOUT_CD", "inOut", "visitType", "inout_cd"),
    "active_status_cd": ("ACTIVE_STATUS_CD", "activeStatus", "active_status_cd"),
    "visit_blob": ("VISIT_BLOB", "visitBlob", "visit_blob"),
    "sourcesystem_cd": ("SOURCESYSTEM_CD", "sourceSystem", "sourcesystem_cd"),
}

_OBSERVATION_ALIASES = {
    "observation_id": ("OBSERVATION_ID", "observationId", "observation_id", "id"),
    "patient_num": ("PATIENT_NUM", "patientNum", "patient_num"),
    "patient_cd": ("PATIENT_CD", "patientId", "patient_cd", "patientCode"),
    "encounter_num": ("ENCOUNTER_NUM", "encounterId", "visitId", "encounter_num", "encounterNum"),
    "concept_cd": ("CONCEPT_CD", "conceptCode", "concept_cd", "conceptCd"),
    "valtype_cd": ("VALTYPE_CD", "valtypeCd", "valueType", "valtype_cd"),
    "nval_num": ("NVAL_NUM", "numericValue", "nval_num"),
    "tval_char": ("TVAL_CHAR", "textValue", "tval_char"),
    "value": ("value", "VALUE"),
    "observation_blob": ("OBSERVATION_BLOB", "blob", "observation_blob"),
    "start_date": ("START_DATE", "startDate", "start_date"),
    "end_date": ("END_DATE", "endDate", "end_date"),
    "unit_cd": ("UNIT_CD", "unit", "unitCd", "unit_cd"),
    "category_char": ("CATEGORY_CHAR", "category", "category_char"),
    "provider_id": ("PROVIDER_ID", "providerId", "provider_id"),
    "instance_num": ("INSTANCE_NUM", "instanceNum", "instance_num"),
    "location_cd": ("LOCATION_CD", "location", "location_cd"),
    "sourcesystem_cd": ("SOURCESYSTEM_CD", "sourceSystem", "sourcesystem_cd"),
}


@dataclass(frozen=True)
class FieldMapping:
    """One version of the alias table."""

    version: str
    aliases: Mapping[EntityKind, Mapping[str, tuple[str, ...]]]


DEFAULT_FIELD_MAPPING = FieldMapping(
    version=FIELD_MAPPING_VERSION,
    aliases={
        EntityKind.PATIENT: _PATIENT_ALIASES,
        EntityKind.VISIT: _VISIT_ALIASES,
        EntityKind.OBSERVATION: _OBSERVATION_ALIASES,
    },
)


class FieldMapper:
    """Resolves source records and column names against a FieldMapping.

    Example:
        ```python
        mapper = FieldMapper()
        mapper.resolve(EntityKind.PATIENT, {"patientId": "P1", "gender": "f"})
        # {"patient_cd": "P1", "sex_cd": "f"}
        mapper.canonical_name(EntityKind.VISIT, "VISIT_DATE")
        # "start_date"
        ```
    """

    def __init__(self, mapping: FieldMapping = DEFAULT_FIELD_MAPPING):
        self.mapping = mapping
        self._reverse: dict[EntityKind, dict[str, str]] = {}
        for kind, fields in mapping.aliases.items():
            reverse = {}
            for canonical, aliases in fields.items():
                for alias in aliases:
                    reverse.setdefault(alias.upper(), canonical)
            self._reverse[kind] = reverse

    @property
    def version(self) -> str:
        return self.mapping.version

    def resolve(self, kind: EntityKind, raw: Mapping[str, Any]) -> dict[str, Any]:
        """Map a raw source record onto canonical field names.

        Parameters:
            kind: Entity kind whose alias table applies
            raw: Source record

        Returns:
            dict of canonical field name to the first non-blank alias value;
            fields with no value are omitted
        """
        resolved = {}
        for canonical, aliases in self.mapping.aliases[kind].items():
            for alias in aliases:
                value = raw.get(alias)
                if not is_blank(value):
                    resolved[canonical] = value
                    break
        return resolved

    def canonical_name(self, kind: EntityKind, source_name: str) -> Optional[str]:
        """Canonical field for a column or key name, matched case-insensitively."""
        return self._reverse[kind].get(source_name.strip().upper())
