"""Clinical Document Normalizer.

Normalizes clinical documents organized as titled sections of entries:

- FHIR-style ``Composition`` JSON (``resourceType``, ``subject``, ``date``,
  ``section[].entry[]`` with ``title``, ``value`` and
  ``code[0].coding[0].{system,code,display}``)
- CDA ``ClinicalDocument`` XML, parsed with defusedxml and converted into the
  same section/entry tree

Section conventions:
    - ``Patient Information``: the first ``Patient: <code>`` entry names the
      patient; ``Gender``/``Sex``, ``Age`` and ``Birth Date`` fill demographics
    - Sections titled ``Visit...``: ``Visit Date``, ``Location`` and ``Type``
      describe one visit
    - Every other titled entry with a value is an observation candidate, but
      only coded entries (coding system and code both present) are kept

Security Impact:
    - XML is parsed with defusedxml (no entity expansion or external entities)
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from xml.etree.ElementTree import Element

from defusedxml import ElementTree as SafeET
from defusedxml.ElementTree import ParseError as SafeParseError
from defusedxml.common import DefusedXmlException
from pydantic import ValidationError as PydanticValidationError

from clinport.domain.enums import ImportFormat, InOutCode, ValueType
from clinport.domain.import_structure import (
    ObservationRecord,
    PatientRecord,
    VisitRecord,
    create_import_structure,
)
from clinport.domain.ports import NormalizationResult, NormalizerPort, StructuralImportError
from clinport.domain.report import ImportIssue
from clinport.domain.services.normalization import is_blank, is_numeric, normalize_date

logger = logging.getLogger(__name__)

PATIENT_SECTION_TITLE = "patient information"
VISIT_SECTION_PREFIX = "visit"
RESULTS_SECTION_TITLE = "results section"

PATIENT_FIELD_TITLES = {
    "gender": "sex_cd",
    "sex": "sex_cd",
    "age": "age_in_years",
    "birth date": "birth_date",
    "date of birth": "birth_date",
}
VISIT_FIELD_TITLES = {
    "visit date": "start_date",
    "date": "start_date",
    "location": "location_cd",
    "type": "inout_cd",
}

SYSTEM_PREFIXES = {
    "http://snomed.info/sct": "SCTID",
    "http://loinc.org": "LID",
}

CDA_CODE_SYSTEMS = {
    "2.16.840.1.113883.6.96": "http://snomed.info/sct",
    "2.16.840.1.113883.6.1": "http://loinc.org",
}


def concept_code(system: str, code: str) -> str:
    """Concept code for a coding: ``SCTID: 123`` / ``LID: 8302-2`` / ``<system>: <code>``."""
    prefix = SYSTEM_PREFIXES.get(system.strip().rstrip("/"), system.strip())
    return f"{prefix}: {code.strip()}"


def visit_type_from_location(location: Optional[str]) -> str:
    """Infer the visit type from a location name (hospital, clinic, emergency)."""
    lowered = (location or "").lower()
    if "emergency" in lowered:
        return InOutCode.EMERGENCY.value
    if "hospital" in lowered:
        return InOutCode.INPATIENT.value
    return InOutCode.OUTPATIENT.value


def first_coding(entry: dict) -> Optional[dict]:
    """``entry.code[0].coding[0]`` (``code`` may also be a single object)."""
    code = entry.get("code")
    if isinstance(code, list):
        code = code[0] if code else None
    if not isinstance(code, dict):
        return None
    codings = code.get("coding")
    if isinstance(codings, list) and codings and isinstance(codings[0], dict):
        return codings[0]
    return None


def entry_value(entry: dict) -> tuple[Any, Optional[str]]:
    """Raw entry value and unit; quantity objects ``{"value", "unit"}`` are unpacked."""
    value = entry.get("value")
    if isinstance(value, dict) and "value" in value:
        return value.get("value"), value.get("unit")
    return value, entry.get("unit")


def is_patient_label(title: str) -> bool:
    """``Patient: <code>`` style entry titles (matched lower-case)."""
    return title.startswith("patient:") or title in ("patient", "patient id", "patient identifier")


def _title(item: dict) -> str:
    title = item.get("title")
    return str(title).strip() if not is_blank(title) else ""


@dataclass
class DocumentRecords:
    """Records extracted from one section/entry document."""

    patient: PatientRecord
    visits: list[VisitRecord] = field(default_factory=list)
    observations: list[ObservationRecord] = field(default_factory=list)
    items: list[dict] = field(default_factory=list)
    results: list[dict] = field(default_factory=list)
    title: Optional[str] = None
    date: Optional[str] = None
    unidentified_visits: int = 0
    uncoded_entries: int = 0


class ClinicalDocumentNormalizer(NormalizerPort):
    """Normalizer for Composition JSON and CDA XML clinical documents."""

    format = ImportFormat.HL7

    def __init__(self):
        self.adapter_name = "clinical_document_normalizer"

    def normalize(self, content: str, filename: Optional[str] = None) -> NormalizationResult:
        """Normalize a clinical document.

        Raises:
            StructuralImportError: INVALID_JSON, INVALID_XML,
                INVALID_RESOURCE_TYPE, MISSING_SECTIONS or MISSING_PATIENT
        """
        text = content.lstrip("\ufeff").strip()
        if text.startswith("<"):
            document = self.parse_cda(text)
        else:
            try:
                document = json.loads(text)
            except ValueError as e:
                raise StructuralImportError("INVALID_JSON", f"Invalid JSON: {str(e)}")
            self.validate_composition(document)

        errors: list[ImportIssue] = []
        records = self.transform_document(document, errors)

        logger.info(
            f"Normalized clinical document {filename or '<unnamed>'}: patient "
            f"{records.patient.patient_cd}, {len(records.visits)} visits, "
            f"{len(records.observations)} observations, {records.uncoded_entries} uncoded entries dropped"
        )

        structure = create_import_structure(
            [records.patient], records.visits, records.observations,
            format=ImportFormat.HL7,
            filename=filename,
            title=records.title,
            export_date=records.date,
            extra={
                "unidentified_visits": records.unidentified_visits,
                "uncoded_entries": records.uncoded_entries,
            },
        )
        return NormalizationResult(structure=structure, errors=errors)

    @staticmethod
    def validate_composition(document: Any) -> None:
        if not isinstance(document, dict):
            raise StructuralImportError("INVALID_STRUCTURE", "Clinical document must be a JSON object")
        if document.get("resourceType") != "Composition":
            raise StructuralImportError(
                "INVALID_RESOURCE_TYPE",
                f"Expected resourceType 'Composition', got {document.get('resourceType')!r}",
            )
        if not isinstance(document.get("section"), list):
            raise StructuralImportError("MISSING_SECTIONS", "Composition has no section array")

    # ------------------------------------------------------------------
    # Transformation shared with the survey normalizer
    # ------------------------------------------------------------------

    def transform_document(
        self,
        document: dict,
        errors: list[ImportIssue],
        fallback_patient_cd: Optional[str] = None,
        first_observation_id: int = 1,
    ) -> DocumentRecords:
        """Extract patient, visits and coded observations from a section tree.

        Parameters:
            document: Composition-shaped dict
            errors: Collector for per-record errors
            fallback_patient_cd: Patient code used when neither the patient
                section nor the subject names one
            first_observation_id: First source-local observation id

        Returns:
            DocumentRecords

        Raises:
            StructuralImportError: MISSING_PATIENT if no patient can be found
        """
        sections = [s for s in document.get("section") or [] if isinstance(s, dict)]
        title = None if is_blank(document.get("title")) else str(document["title"]).strip()
        date = normalize_date(self._document_date(document))

        patient = self._extract_patient(document, sections, fallback_patient_cd)
        records = DocumentRecords(patient=patient, title=title, date=date)

        visit_sections: list[tuple[dict, VisitRecord]] = []
        for section in sections:
            if not _title(section).lower().startswith(VISIT_SECTION_PREFIX):
                continue
            visit_fields = {}
            for entry in self._entries(section):
                name = VISIT_FIELD_TITLES.get(_title(entry).lower())
                value, _ = entry_value(entry)
                if name and name not in visit_fields and not is_blank(value):
                    visit_fields[name] = value
            if not visit_fields.get("start_date") and not visit_fields.get("location_cd"):
                records.unidentified_visits += 1
            visit_fields.setdefault("inout_cd", visit_type_from_location(visit_fields.get("location_cd")))
            try:
                visit = VisitRecord(
                    encounter_num=len(records.visits) + 1,
                    patient_num=patient.patient_num,
                    patient_cd=patient.patient_cd,
                    **{k: str(v) for k, v in visit_fields.items()},
                )
            except PydanticValidationError as e:
                errors.append(ImportIssue.error(
                    "INVALID_VISIT",
                    f"Visit section '{_title(section)}' rejected: {e.errors()[0]['msg']}",
                    section=_title(section),
                ))
                continue
            records.visits.append(visit)
            visit_sections.append((section, visit))

        default_encounter = records.visits[0].encounter_num if len(records.visits) == 1 else None
        section_visits = {id(section): visit.encounter_num for section, visit in visit_sections}

        next_id = first_observation_id
        for section in sections:
            section_title = _title(section).lower()
            is_patient_section = section_title == PATIENT_SECTION_TITLE
            is_visit_section = section_title.startswith(VISIT_SECTION_PREFIX)
            is_results_section = section_title == RESULTS_SECTION_TITLE
            encounter_num = section_visits.get(id(section), default_encounter)

            for entry in self._entries(section):
                entry_title = _title(entry)
                item = self._item(entry)
                records.items.append(item)
                if is_results_section:
                    records.results.append(item)
                if not entry_title:
                    continue
                lowered = entry_title.lower()
                if is_patient_section and (is_patient_label(lowered) or lowered in PATIENT_FIELD_TITLES):
                    continue
                if is_visit_section and lowered in VISIT_FIELD_TITLES:
                    continue

                coding = first_coding(entry) or {}
                value, unit = entry_value(entry)
                display = coding.get("display")
                if is_blank(value) and is_blank(display):
                    continue
                if is_blank(coding.get("system")) or is_blank(coding.get("code")):
                    records.uncoded_entries += 1
                    continue

                observation = self._build_observation(
                    next_id, entry_title, value, unit, coding, patient, encounter_num, date, errors
                )
                if observation is not None:
                    records.observations.append(observation)
                    next_id += 1

        return records

    @staticmethod
    def _entries(section: dict) -> list[dict]:
        return [e for e in section.get("entry") or [] if isinstance(e, dict)]

    @staticmethod
    def _document_date(document: dict) -> Optional[str]:
        if not is_blank(document.get("date")):
            return document["date"]
        events = document.get("event")
        if isinstance(events, list) and events and isinstance(events[0], dict):
            period = events[0].get("period") or {}
            return period.get("start")
        return None

    def _extract_patient(self, document: dict, sections: list[dict],
                         fallback_patient_cd: Optional[str]) -> PatientRecord:
        patient_cd = None
        demographics: dict[str, Any] = {}

        for section in sections:
            if _title(section).lower() != PATIENT_SECTION_TITLE:
                continue
            for entry in self._entries(section):
                entry_title = _title(entry)
                value, _ = entry_value(entry)
                lowered = entry_title.lower()
                if patient_cd is None and is_patient_label(lowered):
                    _, sep, suffix = entry_title.partition(":")
                    if not is_blank(value):
                        patient_cd = str(value).strip()
                    elif sep and suffix.strip():
                        patient_cd = suffix.strip()
                elif lowered in PATIENT_FIELD_TITLES and not is_blank(value):
                    demographics.setdefault(PATIENT_FIELD_TITLES[lowered], value)
            break

        if patient_cd is None:
            patient_cd = self._subject_code(document.get("subject"))
        if patient_cd is None and not is_blank(fallback_patient_cd):
            patient_cd = str(fallback_patient_cd).strip()
        if patient_cd is None:
            raise StructuralImportError("MISSING_PATIENT", "Clinical document does not identify a patient")

        try:
            return PatientRecord(patient_num=1, patient_cd=patient_cd, **demographics)
        except PydanticValidationError as e:
            raise StructuralImportError(
                "INVALID_PATIENT",
                f"Patient {patient_cd} failed validation: {e.errors()[0]['msg']}",
                {"identifier": patient_cd},
            )

    @staticmethod
    def _subject_code(subject: Any) -> Optional[str]:
        if not isinstance(subject, dict):
            return None
        if not is_blank(subject.get("display")):
            return str(subject["display"]).strip()
        reference = subject.get("reference")
        if not is_blank(reference):
            return str(reference).strip().rsplit("/", 1)[-1]
        return None

    @staticmethod
    def _item(entry: dict) -> dict:
        value, _ = entry_value(entry)
        coding = first_coding(entry)
        if isinstance(value, bool):
            value_type = "boolean"
        elif isinstance(value, (int, float)):
            value_type = "number"
        elif isinstance(value, (dict, list)):
            value_type = "object"
        elif value is None:
            value_type = "null"
        else:
            value_type = "string"
        return {
            "label": _title(entry) or None,
            "type": value_type,
            "value": value,
            "coding": {
                "system": coding.get("system"),
                "code": coding.get("code"),
                "display": coding.get("display"),
            } if coding else None,
        }

    @staticmethod
    def _build_observation(observation_id, entry_title, value, unit, coding, patient,
                           encounter_num, date, errors) -> Optional[ObservationRecord]:
        fields: dict[str, Any] = {}
        if is_numeric(value):
            fields.update(valtype_cd=ValueType.NUMERIC, nval_num=float(value))
        elif not is_blank(value):
            text = json.dumps(value) if isinstance(value, (dict, list)) else str(value).strip()
            fields.update(valtype_cd=ValueType.TEXT, tval_char=text)
        else:
            fields.update(valtype_cd=ValueType.TEXT, tval_char=str(coding["display"]).strip())

        try:
            return ObservationRecord(
                observation_id=observation_id,
                patient_num=patient.patient_num,
                patient_cd=patient.patient_cd,
                encounter_num=encounter_num,
                concept_cd=concept_code(str(coding["system"]), str(coding["code"])),
                start_date=date,
                unit_cd=unit,
                **fields,
            )
        except PydanticValidationError as e:
            errors.append(ImportIssue.error(
                "INVALID_OBSERVATION",
                f"Entry '{entry_title}' rejected: {e.errors()[0]['msg']}",
                identifier=entry_title,
            ))
            return None

    # ------------------------------------------------------------------
    # CDA XML
    # ------------------------------------------------------------------

    def parse_cda(self, text: str) -> dict:
        """Convert a CDA ClinicalDocument into a Composition-shaped dict."""
        try:
            root = SafeET.fromstring(text)
        except (SafeParseError, DefusedXmlException) as e:
            raise StructuralImportError("INVALID_XML", f"Invalid clinical document XML: {str(e)}")

        if _local(root.tag) != "ClinicalDocument":
            raise StructuralImportError(
                "INVALID_RESOURCE_TYPE",
                f"Expected a ClinicalDocument root element, got {_local(root.tag)!r}",
            )

        document: dict[str, Any] = {"resourceType": "Composition", "section": []}
        title = _find(root, "title")
        if title is not None and title.text:
            document["title"] = title.text.strip()
        effective = _find(root, "effectiveTime")
        if effective is not None:
            document["date"] = _hl7_date(effective.get("value"))

        patient_role = _find(root, "recordTarget", "patientRole")
        if patient_role is not None:
            document["section"].append(self._cda_patient_section(patient_role))

        encounter = _find(root, "componentOf", "encompassingEncounter")
        if encounter is not None:
            document["section"].append(self._cda_visit_section(encounter))

        body = _find(root, "component", "structuredBody")
        if body is not None:
            for component in _children(body, "component"):
                section = _find(component, "section")
                if section is not None:
                    document["section"].append(self._cda_section(section))
        return document

    @staticmethod
    def _cda_patient_section(patient_role: Element) -> dict:
        entries = []
        identifier = _find(patient_role, "id")
        if identifier is not None and identifier.get("extension"):
            entries.append({"title": f"Patient: {identifier.get('extension')}"})
        gender = _find(patient_role, "patient", "administrativeGenderCode")
        if gender is not None and gender.get("code"):
            entries.append({"title": "Gender", "value": gender.get("code")})
        birth = _find(patient_role, "patient", "birthTime")
        if birth is not None and birth.get("value"):
            entries.append({"title": "Birth Date", "value": _hl7_date(birth.get("value"))})
        return {"title": "Patient Information", "entry": entries}

    @staticmethod
    def _cda_visit_section(encounter: Element) -> dict:
        entries = []
        low = _find(encounter, "effectiveTime", "low")
        if low is not None and low.get("value"):
            entries.append({"title": "Visit Date", "value": _hl7_date(low.get("value"))})
        name = _find(encounter, "location", "healthCareFacility", "location", "name")
        if name is not None and name.text:
            entries.append({"title": "Location", "value": name.text.strip()})
        return {"title": "Visit", "entry": entries}

    @staticmethod
    def _cda_section(section: Element) -> dict:
        title = _find(section, "title")
        entries = []
        for entry in _children(section, "entry"):
            observation = _find(entry, "observation")
            if observation is None:
                continue
            code = _find(observation, "code")
            value = _find(observation, "value")
            converted: dict[str, Any] = {}
            if code is not None:
                system = code.get("codeSystem")
                converted["title"] = code.get("displayName") or code.get("code")
                converted["code"] = [{"coding": [{
                    "system": CDA_CODE_SYSTEMS.get(system, system),
                    "code": code.get("code"),
                    "display": code.get("displayName"),
                }]}]
            if value is not None:
                if value.get("value") is not None:
                    converted["value"] = {"value": value.get("value"), "unit": value.get("unit")}
                elif value.text and value.text.strip():
                    converted["value"] = value.text.strip()
                elif value.get("displayName"):
                    converted["value"] = value.get("displayName")
            entries.append(converted)
        return {
            "title": title.text.strip() if title is not None and title.text else None,
            "entry": entries,
        }


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: Element, name: str) -> list[Element]:
    return [child for child in element if _local(child.tag) == name]


def _find(element: Element, *path: str) -> Optional[Element]:
    """Follow a path of local element names, ignoring namespaces."""
    current = element
    for name in path:
        matches = _children(current, name)
        if not matches:
            return None
        current = matches[0]
    return current


def _hl7_date(value: Optional[str]) -> Optional[str]:
    """``YYYYMMDD[hhmmss]`` to ``YYYY-MM-DD``; other values pass through."""
    if value and len(value) >= 8 and value[:8].isdigit():
        return f"{value[0:4]}-{value[4:6]}-{value[6:8]}"
    return value
