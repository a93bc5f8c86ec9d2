"""Unit tests for the JSON normalizer."""

import json

import pytest

from clinport.adapters.normalizers.json_normalizer import JSONNormalizer, questionnaire_title
from clinport.domain.enums import ValueType
from clinport.domain.ports import StructuralImportError


@pytest.fixture
def normalizer():
    return JSONNormalizer()


@pytest.fixture
def export_document():
    """Export mixing upper-case, camelCase and snake_case field names."""
    return {
        "metadata": {"exportDate": "2024-05-01", "title": "Ward export", "exportedBy": "dr. x"},
        "data": {
            "patients": [
                {"patientId": "P1", "gender": "female", "age": "42"},
                {"PATIENT_NUM": 7, "PATIENT_CD": "P2"},
            ],
            "visits": [
                {"encounterId": 3, "patientId": "P1", "startDate": "2024-01-01", "visitType": "inpatient"},
            ],
            "observations": [
                {"patientId": "P1", "encounterId": 3, "conceptCode": "LID: 8302-2", "value": "172", "unit": "cm"},
                {"patientId": "P1", "CONCEPT_CD": "NOTE", "TVAL_CHAR": "ok", "VALTYPE_CD": "T"},
                {"patientId": "P1", "valueType": "Q", "blob": {"title": "PHQ-9", "items": []}},
            ],
        },
    }


class TestJSONNormalizer:
    """Test field mapping and value typing."""

    def test_maps_all_alias_spellings(self, normalizer, export_document):
        result = normalizer.normalize(json.dumps(export_document), "export.json")

        structure = result.structure
        assert result.errors == []
        assert result.warnings == []
        first, second = structure.patients
        assert (first.patient_cd, first.sex_cd, first.age_in_years) == ("P1", "F", 42.0)
        assert first.patient_num == 8
        assert second.patient_num == 7
        visit = structure.visits[0]
        assert visit.encounter_num == 3
        assert visit.patient_cd == "P1"
        assert visit.inout_cd == "I"

    def test_value_types(self, normalizer, export_document):
        observations = normalizer.normalize(json.dumps(export_document)).structure.observations

        height, note, survey = observations
        assert height.valtype_cd == ValueType.NUMERIC
        assert height.nval_num == 172.0
        assert height.unit_cd == "cm"
        assert height.encounter_num == 3
        assert note.valtype_cd == ValueType.TEXT
        assert note.tval_char == "ok"
        assert survey.valtype_cd == ValueType.QUESTIONNAIRE
        assert survey.tval_char == "PHQ-9"
        assert survey.concept_cd == "CUSTOM: QUESTIONNAIRE"
        assert survey.category_char == "SURVEY_BEST"
        assert json.loads(survey.observation_blob) == {"title": "PHQ-9", "items": []}
        assert [o.observation_id for o in observations] == [1, 2, 3]

    def test_metadata(self, normalizer, export_document):
        metadata = normalizer.normalize(json.dumps(export_document)).structure.metadata

        assert metadata.export_date == "2024-05-01"
        assert metadata.title == "Ward export"
        assert metadata.author == "dr. x"
        assert "field_mapping_version" in metadata.extra

    def test_bad_records_are_per_record_errors(self, normalizer):
        """Test invalid records are dropped while valid ones are kept."""
        document = {
            "metadata": {},
            "data": {
                "patients": ["oops", {"patientId": "P1"}],
                "observations": [{"conceptCode": " ", "value": 1}],
            },
        }

        result = normalizer.normalize(json.dumps(document))

        assert [e.code for e in result.errors] == ["INVALID_RECORD", "INVALID_OBSERVATION"]
        assert result.errors[0].context["index"] == 0
        assert [p.patient_cd for p in result.structure.patients] == ["P1"]
        assert result.structure.observations == ()

    def test_declared_numeric_with_text_is_rejected(self, normalizer):
        document = {"data": {"observations": [{"conceptCode": "C1", "valueType": "N", "value": "high"}]}}

        result = normalizer.normalize(json.dumps(document))

        assert result.errors[0].code == "INVALID_OBSERVATION"

    def test_warnings(self, normalizer):
        document = {"data": {"visits": [{"encounterId": 1, "patientId": "P1"}]}}

        result = normalizer.normalize(json.dumps(document))

        assert [w.code for w in result.warnings] == ["MISSING_METADATA", "VISITS_WITHOUT_PATIENTS"]
        assert len(result.structure.visits) == 1


class TestStructuralErrors:
    """Test top-level layout validation."""

    @pytest.mark.parametrize("content,code", [
        ("not json", "INVALID_JSON"),
        ("[1, 2]", "INVALID_STRUCTURE"),
        ('{"metadata": {}}', "MISSING_DATA"),
        ('{"data": {}}', "MISSING_CLINICAL_DATA"),
        ('{"data": {"patients": {}}}', "INVALID_PATIENTS_FORMAT"),
        ('{"data": {"patients": [], "observations": "x"}}', "INVALID_OBSERVATIONS_FORMAT"),
    ])
    def test_structural_codes(self, normalizer, content, code):
        with pytest.raises(StructuralImportError) as excinfo:
            normalizer.normalize(content)
        assert excinfo.value.code == code


class TestQuestionnaireTitle:
    """Test title recovery from response payloads."""

    def test_title_sources(self):
        assert questionnaire_title({"title": "GAD-7"}) == "GAD-7"
        assert questionnaire_title('{"label": "Intake"}') == "Intake"
        assert questionnaire_title({"questionnaireReference": {"questionnaireCode": "Q-12"}}) == "Q-12"

    def test_no_title(self):
        assert questionnaire_title({"items": []}) is None
        assert questionnaire_title("not json") is None
