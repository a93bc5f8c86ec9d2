"""Unit tests for the clinical document normalizer (Composition JSON and CDA XML)."""

import json

import pytest

from clinport.adapters.normalizers.clinical_document_normalizer import (
    ClinicalDocumentNormalizer,
    concept_code,
    visit_type_from_location,
)
from clinport.domain.enums import ValueType
from clinport.domain.ports import StructuralImportError


@pytest.fixture
def normalizer():
    return ClinicalDocumentNormalizer()


@pytest.fixture
def composition():
    return {
        "resourceType": "Composition",
        "title": "Discharge summary",
        "date": "2024-03-01",
        "section": [
            {
                "title": "Patient Information",
                "entry": [
                    {"title": "Patient: P1"},
                    {"title": "Gender", "value": "male"},
                    {"title": "Age", "value": 40},
                ],
            },
            {
                "title": "Visit 1",
                "entry": [
                    {"title": "Visit Date", "value": "2024-03-01"},
                    {"title": "Location", "value": "City Hospital"},
                    {
                        "title": "Body height",
                        "value": {"value": 180, "unit": "cm"},
                        "code": [{"coding": [{"system": "http://loinc.org", "code": "8302-2",
                                              "display": "Body height"}]}],
                    },
                ],
            },
            {
                "title": "Findings",
                "entry": [
                    {"title": "Notes", "value": "free text"},
                    {
                        "title": "Smoker",
                        "code": [{"coding": [{"system": "http://snomed.info/sct", "code": "77176002",
                                              "display": "Smoker"}]}],
                    },
                ],
            },
        ],
    }


CDA_DOCUMENT = """<?xml version="1.0" encoding="UTF-8"?>
<ClinicalDocument xmlns="urn:hl7-org:v3">
  <title>Emergency note</title>
  <effectiveTime value="20240402103000"/>
  <recordTarget>
    <patientRole>
      <id extension="P5"/>
      <patient>
        <administrativeGenderCode code="F"/>
        <birthTime value="19800101"/>
      </patient>
    </patientRole>
  </recordTarget>
  <componentOf>
    <encompassingEncounter>
      <effectiveTime><low value="20240402"/></effectiveTime>
      <location><healthCareFacility><location><name>Emergency Unit</name></location></healthCareFacility></location>
    </encompassingEncounter>
  </componentOf>
  <component>
    <structuredBody>
      <component>
        <section>
          <title>Vital Signs</title>
          <entry>
            <observation>
              <code code="8867-4" codeSystem="2.16.840.1.113883.6.1" displayName="Heart rate"/>
              <value value="72" unit="/min"/>
            </observation>
          </entry>
        </section>
      </component>
    </structuredBody>
  </component>
</ClinicalDocument>
"""


class TestComposition:
    """Test Composition JSON documents."""

    def test_patient_and_visit(self, normalizer, composition):
        structure = normalizer.normalize(json.dumps(composition), "summary.json").structure

        patient = structure.patients[0]
        assert (patient.patient_cd, patient.sex_cd, patient.age_in_years) == ("P1", "M", 40.0)
        visit = structure.visits[0]
        assert visit.start_date == "2024-03-01"
        assert visit.location_cd == "City Hospital"
        assert visit.inout_cd == "I"
        assert structure.metadata.title == "Discharge summary"

    def test_only_coded_entries_become_observations(self, normalizer, composition):
        """Test uncoded entries are dropped and counted."""
        structure = normalizer.normalize(json.dumps(composition)).structure

        height, smoker = structure.observations
        assert height.concept_cd == "LID: 8302-2"
        assert height.valtype_cd == ValueType.NUMERIC
        assert height.nval_num == 180.0
        assert height.unit_cd == "cm"
        assert smoker.concept_cd == "SCTID: 77176002"
        assert smoker.valtype_cd == ValueType.TEXT
        assert smoker.tval_char == "Smoker"
        assert structure.metadata.extra["uncoded_entries"] == 1

    def test_single_visit_owns_all_observations(self, normalizer, composition):
        structure = normalizer.normalize(json.dumps(composition)).structure

        assert {o.encounter_num for o in structure.observations} == {1}
        assert {o.start_date for o in structure.observations} == {"2024-03-01"}

    def test_observations_outside_visits_with_several_visits(self, normalizer, composition):
        composition["section"].insert(2, {
            "title": "Visit 2",
            "entry": [{"title": "Visit Date", "value": "2024-03-05"}],
        })

        structure = normalizer.normalize(json.dumps(composition)).structure

        assert [v.inout_cd for v in structure.visits] == ["I", "O"]
        height, smoker = structure.observations
        assert height.encounter_num == 1
        assert smoker.encounter_num is None

    def test_subject_reference_names_patient(self, normalizer):
        document = {"resourceType": "Composition", "subject": {"reference": "Patient/P9"}, "section": []}

        structure = normalizer.normalize(json.dumps(document)).structure

        assert structure.patients[0].patient_cd == "P9"
        assert structure.visits == ()

    @pytest.mark.parametrize("document,code", [
        ({"resourceType": "Composition", "section": []}, "MISSING_PATIENT"),
        ({"resourceType": "Bundle", "section": []}, "INVALID_RESOURCE_TYPE"),
        ({"resourceType": "Composition"}, "MISSING_SECTIONS"),
        ([], "INVALID_STRUCTURE"),
    ])
    def test_structural_errors(self, normalizer, document, code):
        with pytest.raises(StructuralImportError) as excinfo:
            normalizer.normalize(json.dumps(document))
        assert excinfo.value.code == code

    def test_invalid_json(self, normalizer):
        with pytest.raises(StructuralImportError) as excinfo:
            normalizer.normalize('{"resourceType": ')
        assert excinfo.value.code == "INVALID_JSON"


class TestCDA:
    """Test CDA XML documents."""

    def test_converts_cda_document(self, normalizer):
        structure = normalizer.normalize(CDA_DOCUMENT, "note.xml").structure

        patient = structure.patients[0]
        assert (patient.patient_cd, patient.sex_cd, patient.birth_date) == ("P5", "F", "1980-01-01")
        visit = structure.visits[0]
        assert visit.start_date == "2024-04-02"
        assert visit.inout_cd == "E"
        observation = structure.observations[0]
        assert observation.concept_cd == "LID: 8867-4"
        assert observation.nval_num == 72.0
        assert observation.unit_cd == "/min"
        assert observation.encounter_num == visit.encounter_num
        assert structure.metadata.export_date == "2024-04-02"

    def test_invalid_xml(self, normalizer):
        with pytest.raises(StructuralImportError) as excinfo:
            normalizer.normalize("<ClinicalDocument><unclosed>")
        assert excinfo.value.code == "INVALID_XML"

    def test_wrong_root_element(self, normalizer):
        with pytest.raises(StructuralImportError) as excinfo:
            normalizer.normalize("<Report/>")
        assert excinfo.value.code == "INVALID_RESOURCE_TYPE"

    def test_entity_expansion_is_rejected(self, normalizer):
        """Test DTD entity declarations are refused by the safe parser."""
        content = (
            '<?xml version="1.0"?><!DOCTYPE d [<!ENTITY x "boom">]>'
            "<ClinicalDocument><title>&x;</title></ClinicalDocument>"
        )
        with pytest.raises(StructuralImportError) as excinfo:
            normalizer.normalize(content)
        assert excinfo.value.code == "INVALID_XML"


class TestHelpers:
    """Test concept code and visit type helpers."""

    def test_concept_code_prefixes(self):
        assert concept_code("http://snomed.info/sct", "123") == "SCTID: 123"
        assert concept_code("http://loinc.org/", "8302-2") == "LID: 8302-2"
        assert concept_code("urn:local", "X1") == "urn:local: X1"

    def test_visit_type_from_location(self):
        assert visit_type_from_location("General Hospital") == "I"
        assert visit_type_from_location("Emergency Dept") == "E"
        assert visit_type_from_location("Family practice") == "O"
        assert visit_type_from_location(None) == "O"
