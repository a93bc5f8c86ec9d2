"""CSV Normalizer.

Turns delimited-text exports into the canonical import structure. Two header
layouts are supported:

Variant A (comma separated, two header rows)::

    Patient ID,Visit Date,Sex,Height
    PATIENT_CD,START_DATE,SEX_CD,LOINC:8302-2
    P1,2024-01-01,M,180

Variant B (semicolon separated, four header rows: field names, value types,
units, display names; a leading ``FIELD_NAME`` cell marks a row-label
column)::

    FIELD_NAME;PATIENT_CD;VISIT_DATE;LOINC:8302-2
    VALTYPE_CD;T;D;N
    UNIT_CD;;;cm
    NAME_CHAR;Patient;Visit date;Height
    1;P1;2024-01-01;180

Lines starting with ``#`` are comments; ``Export Date:``, ``Source:``,
``Version:`` and ``Title:`` comments populate the metadata.

Rows are grouped per patient with pandas; within a patient, rows sharing a
start date merge into one visit and rows without one carry patient-level
observations. A malformed row is reported and skipped, never fatal.
"""

import csv
import logging
import re
from itertools import count
from typing import Any, Optional

import pandas as pd
from pydantic import ValidationError as PydanticValidationError

from clinport.adapters.normalizers.format_detector import detect_delimiter
from clinport.domain.enums import CsvVariant, ImportFormat, ValueType
from clinport.domain.field_mapping import EntityKind, FieldMapper
from clinport.domain.import_structure import (
    ImportStructure,
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
    normalize_date,
    parse_value_type,
)

logger = logging.getLogger(__name__)

_LINE_SPLIT = re.compile(r"\r?\n")

VARIANT_A_PATIENT_COLUMNS = {
    "PATIENT_CD", "PATIENT_NUM", "SEX_CD", "AGE_IN_YEARS", "BIRTH_DATE", "DEATH_DATE",
    "VITAL_STATUS_CD", "LANGUAGE_CD", "RACE_CD", "MARITAL_STATUS_CD", "RELIGION_CD",
}
VARIANT_A_VISIT_COLUMNS = {"START_DATE", "END_DATE", "LOCATION_CD", "INOUT_CD"}

VARIANT_B_PATIENT_COLUMNS = {
    "PATIENT_CD", "PATIENT_NUM", "SEX_CD", "GENDER", "AGE_IN_YEARS", "AGE", "BIRTH_DATE", "DOB",
}
VARIANT_B_VISIT_COLUMNS = {
    "START_DATE", "VISIT_DATE", "END_DATE", "LOCATION_CD", "INOUT_CD", "ENCOUNTER_NUM",
}

VARIANT_B_ROW_LABELS = ("FIELD_NAME", "VALTYPE_CD", "UNIT_CD", "NAME_CHAR")

STANDARD_LABELS = {
    "PATIENT_CD": "Patient ID",
    "PATIENT_NUM": "Patient Number",
    "SEX_CD": "Sex",
    "AGE_IN_YEARS": "Age",
    "BIRTH_DATE": "Birth Date",
    "DEATH_DATE": "Death Date",
    "VITAL_STATUS_CD": "Vital Status",
    "LANGUAGE_CD": "Language",
    "RACE_CD": "Race",
    "MARITAL_STATUS_CD": "Marital Status",
    "RELIGION_CD": "Religion",
    "START_DATE": "Visit Date",
    "END_DATE": "End Date",
    "LOCATION_CD": "Location",
    "INOUT_CD": "Visit Type",
}

_COMMENT_KEYS = {
    "export date": "export_date",
    "source": "source",
    "version": "version",
    "title": "title",
    "author": "author",
}


def parse_csv_row(line: str, delimiter: str) -> list[str]:
    """Split one line into stripped fields.

    A delimiter inside double quotes is literal and a doubled quote inside a
    quoted field is a literal quote.
    """
    reader = csv.reader([line], delimiter=delimiter, quotechar='"', doublequote=True)
    return [field.strip() for field in next(reader, [])]


def detect_variant(lines: list[str]) -> CsvVariant:
    """Variant B needs a semicolon-dominant first line plus a field-name marker."""
    first = lines[0] if lines else ""
    second = lines[1] if len(lines) > 1 else ""
    semicolon_dominant = first.count(";") > first.count(",")
    has_marker = "FIELD_NAME" in first.upper() or "VALTYPE_CD" in second.upper()
    if semicolon_dominant and has_marker:
        return CsvVariant.VARIANT_B
    return CsvVariant.VARIANT_A


class _Column:
    """Classification of one header column."""

    __slots__ = ("index", "code", "role", "field", "valtype", "unit", "label")

    def __init__(self, index: int, code: str, role: str, field: Optional[str],
                 valtype: Optional[ValueType] = None, unit: Optional[str] = None,
                 label: Optional[str] = None):
        self.index = index
        self.code = code
        self.role = role
        self.field = field
        self.valtype = valtype
        self.unit = unit
        self.label = label


class CSVNormalizer(NormalizerPort):
    """Normalizer for delimited-text exports (Variant A and Variant B).

    Parameters:
        field_mapper: Alias resolver used to canonicalize Variant B column names
    """

    format = ImportFormat.CSV

    def __init__(self, field_mapper: Optional[FieldMapper] = None):
        self.field_mapper = field_mapper or FieldMapper()
        self.adapter_name = "csv_normalizer"

    def normalize(self, content: str, filename: Optional[str] = None) -> NormalizationResult:
        """Normalize delimited text.

        Parameters:
            content: Decoded file content
            filename: Original filename

        Returns:
            NormalizationResult: Structure plus per-row errors and warnings

        Raises:
            StructuralImportError: If the input has no data lines or too few
                header rows, or Variant B lacks a PATIENT_CD column
        """
        errors: list[ImportIssue] = []
        warnings: list[ImportIssue] = []

        comment_lines, lines = self._split_lines(content.lstrip("\ufeff"))
        metadata = self._parse_comments(comment_lines)
        if not lines:
            raise StructuralImportError("EMPTY_INPUT", "No data lines found in delimited input")

        variant = detect_variant(lines)
        default_delimiter = ";" if variant == CsvVariant.VARIANT_B else ","
        delimiter = detect_delimiter(lines[0]) or default_delimiter
        rows = [parse_csv_row(line, delimiter) for line in lines]

        if variant == CsvVariant.VARIANT_B:
            columns, header_count, rows = self._variant_b_columns(rows, errors)
        else:
            columns, header_count = self._variant_a_columns(rows, errors, warnings)

        logger.info(
            f"Parsing delimited input {filename or '<unnamed>'}: variant {variant.value}, "
            f"delimiter {delimiter!r}, {len(rows) - header_count} data rows"
        )

        width = len(columns)
        data_rows = []
        for offset, cells in enumerate(rows[header_count:]):
            row_number = header_count + offset + 1
            if len(cells) != width:
                errors.append(ImportIssue.error(
                    "ROW_LENGTH_MISMATCH",
                    f"Row {row_number} has {len(cells)} fields, expected {width}",
                    row=row_number,
                ))
                continue
            data_rows.append((row_number, cells))

        if not data_rows and len(rows) <= header_count:
            errors.append(ImportIssue.error("NO_DATA_ROWS", "No data rows found after the header rows"))

        patients, visits, observations = self._build_records(
            data_rows, columns, variant, errors
        )

        extra = {
            "variant": variant.value,
            "delimiter": delimiter,
            "column_labels": {c.code: c.label for c in columns if c.label},
        }
        structure = create_import_structure(
            patients, visits, observations,
            format=ImportFormat.CSV,
            filename=filename,
            extra=extra,
            **metadata,
        )
        return NormalizationResult(structure=structure, errors=errors, warnings=warnings)

    # ------------------------------------------------------------------
    # Header handling
    # ------------------------------------------------------------------

    @staticmethod
    def _split_lines(content: str) -> tuple[list[str], list[str]]:
        comments, lines = [], []
        for line in _LINE_SPLIT.split(content):
            stripped = line.strip()
            if not stripped:
                continue
            if stripped.startswith("#"):
                comments.append(stripped.lstrip("#").strip())
            else:
                lines.append(line)
        return comments, lines

    @staticmethod
    def _parse_comments(comments: list[str]) -> dict:
        metadata: dict[str, Any] = {}
        for text in comments:
            key, sep, value = text.partition(":")
            field = _COMMENT_KEYS.get(key.strip().lower()) if sep else None
            if field and value.strip():
                metadata.setdefault(field, value.strip())
            elif text and "description" not in metadata:
                metadata["description"] = text
        return metadata

    def _variant_a_columns(self, rows, errors, warnings) -> tuple[list[_Column], int]:
        if len(rows) < 2:
            raise StructuralImportError(
                "MISSING_HEADERS",
                "Variant A input needs a label row and a concept-code row",
            )
        labels, codes = rows[0], rows[1]
        if len(labels) != len(codes):
            errors.append(ImportIssue.error(
                "HEADER_MISMATCH",
                f"Label row has {len(labels)} fields but code row has {len(codes)}",
                row=2,
            ))

        columns = []
        for index, code in enumerate(codes):
            upper = code.upper()
            label = labels[index] if index < len(labels) else None
            if upper in VARIANT_A_PATIENT_COLUMNS:
                columns.append(_Column(index, upper, "patient", upper.lower(), label=label))
            elif upper in VARIANT_A_VISIT_COLUMNS:
                columns.append(_Column(index, upper, "visit", upper.lower(), label=label))
            else:
                columns.append(_Column(index, code, "observation", None, label=label))

        present = {c.code for c in columns}
        for recommended in ("PATIENT_CD", "START_DATE"):
            if recommended not in present:
                warnings.append(ImportIssue.warning(
                    "MISSING_RECOMMENDED_FIELD",
                    f"Recommended column {recommended} is missing",
                    field=recommended,
                ))
        return columns, 2

    def _variant_b_columns(self, rows, errors) -> tuple[list[_Column], int, list[list[str]]]:
        if len(rows) < 4:
            raise StructuralImportError(
                "MISSING_HEADERS",
                "Variant B input needs field-name, value-type, unit and display-name rows",
            )
        if rows[0] and rows[0][0].upper() == VARIANT_B_ROW_LABELS[0]:
            rows = [cells[1:] for cells in rows]

        names, valtypes, units, labels = rows[0], rows[1], rows[2], rows[3]
        for position, header in enumerate((valtypes, units, labels), start=2):
            if len(header) != len(names):
                errors.append(ImportIssue.error(
                    "HEADER_MISMATCH",
                    f"Header row {position} has {len(header)} fields, expected {len(names)}",
                    row=position,
                ))

        def cell(header, index):
            return header[index] if index < len(header) and header[index] else None

        columns = []
        for index, name in enumerate(names):
            upper = name.upper()
            label = cell(labels, index)
            if upper in VARIANT_B_PATIENT_COLUMNS:
                field = self.field_mapper.canonical_name(EntityKind.PATIENT, upper)
                columns.append(_Column(index, upper, "patient", field, label=label))
            elif upper in VARIANT_B_VISIT_COLUMNS:
                field = self.field_mapper.canonical_name(EntityKind.VISIT, upper)
                columns.append(_Column(index, upper, "visit", field, label=label))
            else:
                columns.append(_Column(
                    index, name, "observation", None,
                    valtype=parse_value_type(cell(valtypes, index)),
                    unit=cell(units, index),
                    label=label,
                ))

        if not any(c.field == "patient_cd" for c in columns):
            raise StructuralImportError(
                "MISSING_REQUIRED_HEADER",
                "Variant B input has no PATIENT_CD column",
                {"field": "PATIENT_CD"},
            )
        return columns, 4, rows

    # ------------------------------------------------------------------
    # Record building
    # ------------------------------------------------------------------

    def _build_records(self, data_rows, columns: list[_Column], variant: CsvVariant, errors):
        patients: list[PatientRecord] = []
        visits: list[VisitRecord] = []
        observations: list[ObservationRecord] = []
        if not data_rows:
            return patients, visits, observations

        code_column = next((c.index for c in columns if c.field == "patient_cd"), None)
        grouped_rows = []
        for row_number, cells in data_rows:
            values = [cell if cell != "" else None for cell in cells]
            patient_code = values[code_column] if code_column is not None else None
            if patient_code is None:
                if variant == CsvVariant.VARIANT_B:
                    errors.append(ImportIssue.error(
                        "MISSING_PATIENT_CODE",
                        f"Row {row_number} has no PATIENT_CD value",
                        row=row_number,
                    ))
                    continue
                group_key = f"PATIENT_{row_number}"
            else:
                group_key = patient_code
            grouped_rows.append([row_number, group_key] + values)

        frame = pd.DataFrame(
            grouped_rows,
            columns=["_row", "_patient_key"] + [c.index for c in columns],
            dtype=object,
        )

        patient_ids = count(1)
        used_patient_nums: set[int] = set()
        encounter_ids = count(1)
        observation_ids = count(1)

        for _, group in frame.groupby("_patient_key", sort=False):
            records = group.to_dict("records")
            first_row = records[0]["_row"]

            patient_fields = self._merge_fields(records, [c for c in columns if c.role == "patient"])
            explicit_num = coerce_number(patient_fields.pop("patient_num", None))
            if explicit_num is not None and int(explicit_num) not in used_patient_nums:
                patient_num = int(explicit_num)
            else:
                patient_num = next(n for n in patient_ids if n not in used_patient_nums)
            try:
                patient = PatientRecord(patient_num=patient_num, **patient_fields)
            except PydanticValidationError as e:
                errors.append(ImportIssue.error(
                    "INVALID_PATIENT",
                    f"Patient on row {first_row} failed validation: {e.errors()[0]['msg']}",
                    row=first_row,
                ))
                continue
            used_patient_nums.add(patient_num)
            patients.append(patient)

            visits_by_date: dict[str, VisitRecord] = {}
            visit_columns = [c for c in columns if c.role == "visit"]
            for record in records:
                start_date = None
                visit_fields = self._merge_fields([record], visit_columns)
                visit_fields.pop("encounter_num", None)
                if visit_fields.get("start_date"):
                    start_date = normalize_date(visit_fields["start_date"])
                    visit = visits_by_date.get(start_date)
                    if visit is None:
                        try:
                            visit = VisitRecord(
                                encounter_num=next(encounter_ids),
                                patient_num=patient.patient_num,
                                patient_cd=patient.patient_cd,
                                **visit_fields,
                            )
                        except PydanticValidationError as e:
                            errors.append(ImportIssue.error(
                                "INVALID_VISIT",
                                f"Visit on row {record['_row']} failed validation: {e.errors()[0]['msg']}",
                                row=record["_row"],
                            ))
                            continue
                        visits_by_date[start_date] = visit
                        visits.append(visit)
                    encounter_num = visit.encounter_num
                else:
                    encounter_num = None

                for column in columns:
                    if column.role != "observation" or record[column.index] is None:
                        continue
                    observation = self._build_observation(
                        next(observation_ids), record[column.index], column,
                        patient, encounter_num, start_date, record["_row"], errors,
                    )
                    if observation is not None:
                        observations.append(observation)

        return patients, visits, observations

    @staticmethod
    def _merge_fields(records: list[dict], columns: list[_Column]) -> dict:
        """First non-empty value per canonical field across the given rows."""
        merged: dict[str, Any] = {}
        for column in columns:
            if column.field is None or column.field in merged:
                continue
            for record in records:
                if record[column.index] is not None:
                    merged[column.field] = record[column.index]
                    break
        return merged

    @staticmethod
    def _build_observation(observation_id, raw_value, column: _Column, patient: PatientRecord,
                           encounter_num, start_date, row_number, errors) -> Optional[ObservationRecord]:
        valtype = column.valtype or infer_value_type(raw_value)
        try:
            if valtype == ValueType.QUESTIONNAIRE:
                slots = build_questionnaire_slots(column.label, raw_value)
            else:
                slots = build_value_slots(raw_value, valtype)
            return ObservationRecord(
                observation_id=observation_id,
                patient_num=patient.patient_num,
                patient_cd=patient.patient_cd,
                encounter_num=encounter_num,
                concept_cd=column.code,
                valtype_cd=valtype,
                start_date=start_date,
                unit_cd=column.unit,
                **slots,
            )
        except (ValueError, PydanticValidationError) as e:
            message = e.errors()[0]["msg"] if isinstance(e, PydanticValidationError) else str(e)
            errors.append(ImportIssue.error(
                "INVALID_VALUE",
                f"Row {row_number}, column {column.code}: {message}",
                row=row_number,
                column=column.code,
            ))
            return None

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_variant_a(self, structure: ImportStructure) -> str:
        """Flatten a structure back into the Variant A two-header layout.

        One row is written per visit; patient-level observations go on a row
        without a start date. Each visit holds at most one value per concept.

        Parameters:
            structure: Canonical structure

        Returns:
            Variant A text that normalizes back to the same field values
        """
        patient_fields = [
            name for name in STANDARD_LABELS
            if name in VARIANT_A_PATIENT_COLUMNS and name != "PATIENT_NUM"
            and (name == "PATIENT_CD" or any(
                getattr(p, name.lower()) is not None for p in structure.patients))
        ]
        visit_fields = [
            name for name in STANDARD_LABELS
            if name in VARIANT_A_VISIT_COLUMNS
            and (name == "START_DATE" or any(
                getattr(v, name.lower()) is not None for v in structure.visits))
        ]
        concepts = list(dict.fromkeys(o.concept_cd for o in structure.observations))
        header_codes = patient_fields + visit_fields + concepts

        labels = structure.metadata.extra.get("column_labels", {})
        label_row = [labels.get(code) or STANDARD_LABELS.get(code) or code for code in header_codes]

        rows = [label_row, header_codes]
        for patient in structure.patients:
            base = {name: _format_cell(getattr(patient, name.lower())) for name in patient_fields}
            patient_visits = [v for v in structure.visits if v.patient_num == patient.patient_num]
            patient_observations = [o for o in structure.observations if o.patient_num == patient.patient_num]

            for visit in patient_visits:
                row = dict(base)
                row.update({name: _format_cell(getattr(visit, name.lower())) for name in visit_fields})
                for observation in patient_observations:
                    if observation.encounter_num == visit.encounter_num:
                        row[observation.concept_cd] = _format_cell(observation.value)
                rows.append([row.get(code, "") for code in header_codes])

            unbound = [o for o in patient_observations if o.encounter_num is None]
            if unbound or not patient_visits:
                row = dict(base)
                for observation in unbound:
                    row[observation.concept_cd] = _format_cell(observation.value)
                rows.append([row.get(code, "") for code in header_codes])

        frame = pd.DataFrame(rows, dtype=object)
        return frame.to_csv(index=False, header=False, na_rep="", lineterminator="\n")


def _format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    return str(value)
