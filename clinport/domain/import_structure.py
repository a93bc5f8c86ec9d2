"""Canonical Import Structure.

This module defines the format-neutral record model every normalizer
produces and the persister consumes: patients, visits and observations plus
metadata and statistics about one import.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Models are immutable (frozen) and validated on construction
    - Entities accept snake_case names or the upper-case column aliases
      (``PATIENT_NUM``, ``CONCEPT_CD``...) used by the store and the wire shape
    - Identifiers on entities are source-local; store identifiers are
      assigned only by the persister
"""

from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from clinport.domain.enums import ImportFormat, ValueType
from clinport.domain.services.normalization import (
    coerce_number,
    is_blank,
    normalize_date,
    normalize_inout,
    normalize_sex,
)

_ENTITY_CONFIG = ConfigDict(
    frozen=True,
    populate_by_name=True,
    str_strip_whitespace=True,
    use_enum_values=False,
)


def _blank_to_none(v):
    if isinstance(v, str) and not v.strip():
        return None
    return v


class PatientRecord(BaseModel):
    """Patient demographics as found in the source.

    Parameters:
        patient_num: Source-local identifier (not a store id)
        patient_cd: Business key used for duplicate detection
        sex_cd: Normalized sex code (M/F/U, or the source value verbatim)
        age_in_years: Age at export time
        birth_date: Birth date (``YYYY-MM-DD`` when parseable)
    """

    patient_num: int = Field(..., alias="PATIENT_NUM", description="Source-local patient id")
    patient_cd: Optional[str] = Field(None, alias="PATIENT_CD", description="Patient business key")
    sex_cd: Optional[str] = Field(None, alias="SEX_CD")
    age_in_years: Optional[float] = Field(None, alias="AGE_IN_YEARS")
    birth_date: Optional[str] = Field(None, alias="BIRTH_DATE")
    death_date: Optional[str] = Field(None, alias="DEATH_DATE")
    vital_status_cd: Optional[str] = Field(None, alias="VITAL_STATUS_CD")
    language_cd: Optional[str] = Field(None, alias="LANGUAGE_CD")
    race_cd: Optional[str] = Field(None, alias="RACE_CD")
    marital_status_cd: Optional[str] = Field(None, alias="MARITAL_STATUS_CD")
    religion_cd: Optional[str] = Field(None, alias="RELIGION_CD")
    statecityzip_path: Optional[str] = Field(None, alias="STATECITYZIP_PATH")
    patient_blob: Optional[str] = Field(None, alias="PATIENT_BLOB")
    sourcesystem_cd: Optional[str] = Field(None, alias="SOURCESYSTEM_CD")

    model_config = _ENTITY_CONFIG

    @field_validator("patient_cd", mode="before")
    @classmethod
    def stringify_code(cls, v):
        v = _blank_to_none(v)
        return str(v) if v is not None else None

    @field_validator("sex_cd", mode="before")
    @classmethod
    def validate_sex(cls, v) -> Optional[str]:
        return normalize_sex(v)

    @field_validator("age_in_years", mode="before")
    @classmethod
    def validate_age(cls, v) -> Optional[float]:
        """Non-numeric ages are dropped rather than failing the patient."""
        return coerce_number(v)

    @field_validator("birth_date", "death_date", mode="before")
    @classmethod
    def validate_dates(cls, v) -> Optional[str]:
        return normalize_date(v)

    @property
    def business_key(self) -> Optional[str]:
        return self.patient_cd


class VisitRecord(BaseModel):
    """A visit (encounter) belonging to one source patient.

    ``patient_num`` is the owning patient's source-local id; ``patient_cd``
    is carried along when the source names it, so the persister can resolve
    the owner by business key first.
    """

    encounter_num: int = Field(..., alias="ENCOUNTER_NUM", description="Source-local visit id")
    patient_num: Optional[int] = Field(None, alias="PATIENT_NUM")
    patient_cd: Optional[str] = Field(None, alias="PATIENT_CD")
    start_date: Optional[str] = Field(None, alias="START_DATE")
    end_date: Optional[str] = Field(None, alias="END_DATE")
    location_cd: Optional[str] = Field(None, alias="LOCATION_CD")
    inout_cd: Optional[str] = Field(None, alias="INOUT_CD")
    active_status_cd: Optional[str] = Field(None, alias="ACTIVE_STATUS_CD")
    visit_blob: Optional[str] = Field(None, alias="VISIT_BLOB")
    sourcesystem_cd: Optional[str] = Field(None, alias="SOURCESYSTEM_CD")

    model_config = _ENTITY_CONFIG

    @field_validator("patient_cd", mode="before")
    @classmethod
    def stringify_code(cls, v):
        v = _blank_to_none(v)
        return str(v) if v is not None else None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def validate_dates(cls, v) -> Optional[str]:
        return normalize_date(v)

    @field_validator("inout_cd", mode="before")
    @classmethod
    def validate_inout(cls, v) -> Optional[str]:
        return normalize_inout(v)


class ObservationRecord(BaseModel):
    """A single clinical fact.

    Exactly one value slot is authoritative for each value type:

    ====  ==========================================
    N     ``nval_num``
    T     ``tval_char``
    D     ``tval_char`` (date text)
    B     ``observation_blob``
    Q     ``tval_char`` (title) + ``observation_blob``
    ====  ==========================================

    Construction fails when any other slot is populated.
    """

    observation_id: int = Field(..., alias="OBSERVATION_ID", description="Source-local observation id")
    patient_num: Optional[int] = Field(None, alias="PATIENT_NUM")
    patient_cd: Optional[str] = Field(None, alias="PATIENT_CD")
    encounter_num: Optional[int] = Field(None, alias="ENCOUNTER_NUM")
    concept_cd: str = Field(..., alias="CONCEPT_CD", min_length=1)
    valtype_cd: ValueType = Field(..., alias="VALTYPE_CD")
    nval_num: Optional[float] = Field(None, alias="NVAL_NUM")
    tval_char: Optional[str] = Field(None, alias="TVAL_CHAR")
    observation_blob: Optional[str] = Field(None, alias="OBSERVATION_BLOB")
    start_date: Optional[str] = Field(None, alias="START_DATE")
    end_date: Optional[str] = Field(None, alias="END_DATE")
    unit_cd: Optional[str] = Field(None, alias="UNIT_CD")
    category_char: Optional[str] = Field(None, alias="CATEGORY_CHAR")
    provider_id: Optional[str] = Field(None, alias="PROVIDER_ID")
    instance_num: Optional[int] = Field(None, alias="INSTANCE_NUM")
    location_cd: Optional[str] = Field(None, alias="LOCATION_CD")
    sourcesystem_cd: Optional[str] = Field(None, alias="SOURCESYSTEM_CD")

    model_config = _ENTITY_CONFIG

    @field_validator("patient_cd", mode="before")
    @classmethod
    def stringify_code(cls, v):
        v = _blank_to_none(v)
        return str(v) if v is not None else None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def validate_dates(cls, v) -> Optional[str]:
        return normalize_date(v)

    @field_validator("tval_char", "observation_blob", "unit_cd", mode="before")
    @classmethod
    def blank_strings(cls, v):
        return _blank_to_none(v)

    @model_validator(mode="after")
    def check_value_slots(self) -> "ObservationRecord":
        """Enforce the one-authoritative-slot rule for the value type."""
        populated = {
            name
            for name in ("nval_num", "tval_char", "observation_blob")
            if getattr(self, name) is not None
        }
        required = {
            ValueType.NUMERIC: {"nval_num"},
            ValueType.TEXT: {"tval_char"},
            ValueType.DATE: {"tval_char"},
            ValueType.BLOB: {"observation_blob"},
            ValueType.QUESTIONNAIRE: {"tval_char", "observation_blob"},
        }[self.valtype_cd]

        missing = required - populated
        if missing:
            raise ValueError(
                f"Value type {self.valtype_cd.value} requires {', '.join(sorted(missing))}"
            )
        extra = populated - required
        if extra:
            raise ValueError(
                f"Value type {self.valtype_cd.value} must not populate {', '.join(sorted(extra))}"
            )
        return self

    @property
    def value(self) -> Any:
        """The authoritative value of this observation."""
        if self.valtype_cd == ValueType.NUMERIC:
            return self.nval_num
        if self.valtype_cd == ValueType.BLOB:
            return self.observation_blob
        return self.tval_char


class ImportMetadata(BaseModel):
    """Facts about one import, independent of the individual records."""

    format: ImportFormat = Field(..., description="Detected input format")
    filename: Optional[str] = None
    export_date: Optional[str] = Field(None, alias="exportDate")
    title: Optional[str] = None
    source: Optional[str] = None
    version: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    patient_count: int = Field(0, alias="patientCount")
    visit_count: int = Field(0, alias="visitCount")
    observation_count: int = Field(0, alias="observationCount")
    patient_ids: tuple[str, ...] = Field(default_factory=tuple, alias="patientIds")
    extra: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class ImportStatistics(BaseModel):
    """Counts computed when the structure is built."""

    patient_count: int = Field(..., alias="patientCount")
    visit_count: int = Field(..., alias="visitCount")
    observation_count: int = Field(..., alias="observationCount")
    fetched_at: datetime = Field(..., alias="fetchedAt")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class ClinicalData(BaseModel):
    """The three entity collections, in source order."""

    patients: tuple[PatientRecord, ...] = ()
    visits: tuple[VisitRecord, ...] = ()
    observations: tuple[ObservationRecord, ...] = ()

    model_config = ConfigDict(frozen=True)


class ImportStructure(BaseModel):
    """Root of the canonical model: metadata, data and statistics."""

    metadata: ImportMetadata
    data: ClinicalData
    statistics: ImportStatistics

    model_config = ConfigDict(frozen=True)

    @property
    def patients(self) -> tuple[PatientRecord, ...]:
        return self.data.patients

    @property
    def visits(self) -> tuple[VisitRecord, ...]:
        return self.data.visits

    @property
    def observations(self) -> tuple[ObservationRecord, ...]:
        return self.data.observations

    def to_wire(self) -> dict:
        """Serialize to the external wire shape (camelCase metadata, upper-case columns)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def create_import_structure(
    patients: Sequence[PatientRecord],
    visits: Sequence[VisitRecord],
    observations: Sequence[ObservationRecord],
    format: ImportFormat,
    filename: Optional[str] = None,
    **metadata_fields: Any,
) -> ImportStructure:
    """Build an ImportStructure, computing counts and patient ids.

    Parameters:
        patients: Patient records in source order
        visits: Visit records in source order
        observations: Observation records in source order
        format: Format the records were read from
        filename: Original filename, if known
        **metadata_fields: Additional ImportMetadata fields (title, source,
            export_date, extra...)

    Returns:
        ImportStructure: Immutable structure with statistics filled in
    """
    patient_ids = tuple(
        p.patient_cd if p.patient_cd is not None else str(p.patient_num)
        for p in patients
    )
    metadata = ImportMetadata(
        format=format,
        filename=filename,
        patient_count=len(patients),
        visit_count=len(visits),
        observation_count=len(observations),
        patient_ids=patient_ids,
        **{k: v for k, v in metadata_fields.items() if not is_blank(v)},
    )
    statistics = ImportStatistics(
        patient_count=len(patients),
        visit_count=len(visits),
        observation_count=len(observations),
        fetched_at=datetime.now(timezone.utc),
    )
    return ImportStructure(
        metadata=metadata,
        data=ClinicalData(
            patients=tuple(patients),
            visits=tuple(visits),
            observations=tuple(observations),
        ),
        statistics=statistics,
    )
