"""JSON Normalizer.

Normalizes structured JSON exports of the form::

    {
        "metadata": {"exportDate": "...", "title": "..."},
        "data": {"patients": [...], "visits": [...], "observations": [...]}
    }

Every record is mapped through the versioned alias table, so ``PATIENT_CD``,
``patientId`` and ``patient_cd`` all land on the same canonical field. A
record that fails mapping or validation becomes a per-record error; only a
broken top-level layout aborts the import.
"""

import json
import logging
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from clinport.domain.enums import ImportFormat, ValueType
from clinport.domain.field_mapping import EntityKind, FieldMapper
from clinport.domain.import_structure import (
    ObservationRecord,
    PatientRecord,
    VisitRecord,
    create_import_structure,
)
from clinport.domain.ports import NormalizationResult, NormalizerPort, StructuralImportError
from clinport.domain.report import ImportIssue
from clinport.domain.services.normalization import (
    build_questionnaire_slots,
    build_value_slots,
    coerce_number,
    infer_value_type,
    is_blank,
    parse_value_type,
)

logger = logging.getLogger(__name__)

COLLECTIONS = ("patients", "visits", "observations")

QUESTIONNAIRE_CONCEPT = "CUSTOM: QUESTIONNAIRE"
QUESTIONNAIRE_CATEGORY = "SURVEY_BEST"
UNKNOWN_QUESTIONNAIRE = "Unknown Questionnaire"

_METADATA_ALIASES = {
    "export_date": ("exportDate", "export_date", "EXPORT_DATE"),
    "title": ("title",),
    "source": ("source",),
    "version": ("version",),
    "author": ("author", "exportedBy"),
    "description": ("description",),
}


def questionnaire_title(payload: Any) -> Optional[str]:
    """Recover a questionnaire's display title from its full response payload."""
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            return None
    if not isinstance(payload, dict):
        return None
    for key in ("title", "label"):
        if not is_blank(payload.get(key)):
            return str(payload[key]).strip()
    reference = payload.get("questionnaireReference")
    if isinstance(reference, dict) and not is_blank(reference.get("questionnaireCode")):
        return str(reference["questionnaireCode"]).strip()
    return None


def _assign_ids(resolved: list[Optional[dict]], key: str) -> None:
    """Fill missing source-local ids sequentially after the highest present id."""
    highest = 0
    for fields in resolved:
        if fields is None:
            continue
        number = coerce_number(fields.get(key))
        if number is not None:
            fields[key] = int(number)
            highest = max(highest, int(number))
        else:
            fields.pop(key, None)
    for fields in resolved:
        if fields is not None and key not in fields:
            highest += 1
            fields[key] = highest


class JSONNormalizer(NormalizerPort):
    """Normalizer for structured JSON exports.

    Parameters:
        field_mapper: Alias resolver (defaults to the current alias table)
    """

    format = ImportFormat.JSON

    def __init__(self, field_mapper: Optional[FieldMapper] = None):
        self.field_mapper = field_mapper or FieldMapper()
        self.adapter_name = "json_normalizer"

    def normalize(self, content: str, filename: Optional[str] = None) -> NormalizationResult:
        """Normalize a structured JSON document.

        Raises:
            StructuralImportError: INVALID_JSON, INVALID_STRUCTURE, MISSING_DATA,
                MISSING_CLINICAL_DATA or INVALID_<KIND>_FORMAT
        """
        errors: list[ImportIssue] = []
        warnings: list[ImportIssue] = []

        payload = self.parse(content)
        data = payload["data"]

        metadata_section = payload.get("metadata")
        if not isinstance(metadata_section, dict):
            warnings.append(ImportIssue.warning("MISSING_METADATA", "No metadata section found"))
            metadata_section = {}

        patients = self._map_patients(data.get("patients", []), errors)
        visits = self._map_visits(data.get("visits", []), errors)
        observations = self._map_observations(data.get("observations", []), errors)

        if visits and not patients:
            warnings.append(ImportIssue.warning(
                "VISITS_WITHOUT_PATIENTS",
                "Visits present without patients; they must resolve to stored patients",
            ))

        logger.info(
            f"Normalized JSON {filename or '<unnamed>'}: {len(patients)} patients, "
            f"{len(visits)} visits, {len(observations)} observations, {len(errors)} errors"
        )

        structure = create_import_structure(
            patients, visits, observations,
            format=ImportFormat.JSON,
            filename=filename,
            extra={"field_mapping_version": self.field_mapper.version},
            **self._metadata_fields(metadata_section),
        )
        return NormalizationResult(structure=structure, errors=errors, warnings=warnings)

    @staticmethod
    def parse(content: str) -> dict:
        """Parse and validate the top-level layout."""
        try:
            payload = json.loads(content.lstrip("\ufeff"))
        except ValueError as e:
            raise StructuralImportError("INVALID_JSON", f"Invalid JSON: {str(e)}")

        if not isinstance(payload, dict):
            raise StructuralImportError("INVALID_STRUCTURE", "Top-level JSON value must be an object")

        data = payload.get("data")
        if not isinstance(data, dict):
            raise StructuralImportError("MISSING_DATA", "JSON document has no data section")

        present = [name for name in COLLECTIONS if name in data]
        if not present:
            raise StructuralImportError(
                "MISSING_CLINICAL_DATA",
                "Data section has no patients, visits or observations",
            )
        for name in present:
            if not isinstance(data[name], list):
                raise StructuralImportError(
                    f"INVALID_{name.upper()}_FORMAT",
                    f"data.{name} must be an array",
                )
        return payload

    @staticmethod
    def _metadata_fields(section: dict) -> dict:
        fields = {}
        for name, aliases in _METADATA_ALIASES.items():
            for alias in aliases:
                if not is_blank(section.get(alias)):
                    fields[name] = str(section[alias])
                    break
        return fields

    def _resolve_all(self, kind: EntityKind, raw_records: list, id_key: str, errors) -> list[Optional[dict]]:
        resolved: list[Optional[dict]] = []
        for index, raw in enumerate(raw_records):
            if not isinstance(raw, dict):
                errors.append(ImportIssue.error(
                    "INVALID_RECORD",
                    f"{kind.value} #{index} is not an object",
                    kind=kind.value,
                    index=index,
                ))
                resolved.append(None)
                continue
            resolved.append(self.field_mapper.resolve(kind, raw))
        _assign_ids(resolved, id_key)
        return resolved

    def _map_patients(self, raw_records: list, errors) -> list[PatientRecord]:
        patients = []
        for index, fields in enumerate(self._resolve_all(EntityKind.PATIENT, raw_records, "patient_num", errors)):
            if fields is None:
                continue
            try:
                patients.append(PatientRecord(**fields))
            except PydanticValidationError as e:
                errors.append(self._record_error("patient", index, fields.get("patient_cd"), e))
        return patients

    def _map_visits(self, raw_records: list, errors) -> list[VisitRecord]:
        visits = []
        for index, fields in enumerate(self._resolve_all(EntityKind.VISIT, raw_records, "encounter_num", errors)):
            if fields is None:
                continue
            patient_num = coerce_number(fields.pop("patient_num", None))
            try:
                visits.append(VisitRecord(
                    patient_num=int(patient_num) if patient_num is not None else None,
                    **fields,
                ))
            except PydanticValidationError as e:
                errors.append(self._record_error("visit", index, fields.get("encounter_num"), e))
        return visits

    def _map_observations(self, raw_records: list, errors) -> list[ObservationRecord]:
        observations = []
        resolved = self._resolve_all(EntityKind.OBSERVATION, raw_records, "observation_id", errors)
        for index, fields in enumerate(resolved):
            if fields is None:
                continue
            try:
                observations.append(self._build_observation(fields))
            except (ValueError, PydanticValidationError) as e:
                errors.append(self._record_error("observation", index, fields.get("concept_cd"), e))
        return observations

    @staticmethod
    def _build_observation(fields: dict) -> ObservationRecord:
        """Choose the value type and fill the authoritative value slot."""
        declared = fields.pop("valtype_cd", None)
        generic = fields.pop("value", None)
        nval = fields.pop("nval_num", None)
        tval = fields.pop("tval_char", None)
        blob = fields.pop("observation_blob", None)

        valtype = parse_value_type(declared)
        if valtype is None:
            if nval is not None:
                valtype = ValueType.NUMERIC
            elif tval is None and generic is None and blob is not None:
                valtype = ValueType.BLOB
            else:
                valtype = infer_value_type(next(
                    (v for v in (tval, generic) if v is not None), None
                ))

        if valtype == ValueType.QUESTIONNAIRE:
            payload = blob if blob is not None else generic
            if payload is None:
                raise ValueError("Questionnaire observation has no response payload")
            title = tval if not is_blank(tval) else questionnaire_title(payload)
            slots = build_questionnaire_slots(title or UNKNOWN_QUESTIONNAIRE, payload)
            fields.setdefault("concept_cd", QUESTIONNAIRE_CONCEPT)
            fields.setdefault("category_char", QUESTIONNAIRE_CATEGORY)
        else:
            candidates = {
                ValueType.NUMERIC: (nval, generic, tval),
                ValueType.TEXT: (tval, generic),
                ValueType.DATE: (tval, generic),
                ValueType.BLOB: (blob, generic),
            }[valtype]
            raw = next((v for v in candidates if v is not None), None)
            slots = build_value_slots(raw, valtype)

        for key in ("patient_num", "encounter_num", "instance_num"):
            number = coerce_number(fields.get(key))
            fields[key] = int(number) if number is not None else None

        return ObservationRecord(valtype_cd=valtype, **slots, **fields)

    @staticmethod
    def _record_error(kind: str, index: int, identifier: Any, error: Exception) -> ImportIssue:
        if isinstance(error, PydanticValidationError):
            first = error.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            message = f"{location}: {first['msg']}" if location else first["msg"]
        else:
            message = str(error)
        return ImportIssue.error(
            f"INVALID_{kind.upper()}",
            f"{kind.capitalize()} #{index} rejected: {message}",
            index=index,
            identifier=identifier,
        )
