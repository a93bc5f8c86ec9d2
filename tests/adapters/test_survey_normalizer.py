"""Unit tests for the survey normalizer and its payload scanner."""

import json

import pytest

from clinport.adapters.normalizers.survey_normalizer import (
    SurveyNormalizer,
    extract_braced_block,
    parse_payload,
)
from clinport.domain.enums import ValueType
from clinport.domain.ports import StructuralImportError


@pytest.fixture
def normalizer():
    return SurveyNormalizer()


SURVEY_PAGE = """<!DOCTYPE html>
<html>
<head><title>Survey page</title></head>
<body>
<script>
var cda = {"cda": {"title": "PHQ-2", "identifier": {"value": "PHQ2"}, "section": [
  {"title": "Answers", "entry": [
    {"title": "Interest", "value": 1,
     "code": [{"coding": [{"system": "http://loinc.org", "code": "44250-9", "display": "Interest"}]}]},
    {"title": "Comment {free}", "value": "tired"}
  ]}
]}, "info": {"PID": "P77", "date": "2024-04-02"}};
</script>
</body>
</html>
"""


class TestExtractBracedBlock:
    """Test the string-aware brace scanner."""

    def test_braces_inside_strings_are_ignored(self):
        text = 'x = {"a": "}", "b": {"c": 1}} tail'
        assert extract_braced_block(text) == '{"a": "}", "b": {"c": 1}}'

    def test_escaped_quote_stays_in_string(self):
        text = r'{"a": "say \"}\" ok"} rest'
        assert extract_braced_block(text) == r'{"a": "say \"}\" ok"}'

    def test_single_quotes_and_start_offset(self):
        text = "{skip} data = {a: '{'}"
        assert extract_braced_block(text, text.index("=")) == "{a: '{'}"

    def test_unbalanced_or_missing(self):
        assert extract_braced_block("{ {") is None
        assert extract_braced_block("no braces") is None


class TestParsePayload:
    """Test strict and permissive payload parsing."""

    def test_strict_json(self):
        assert parse_payload('{"a": 1}') == ({"a": 1}, "json")

    def test_object_literal(self):
        payload, parser = parse_payload("{info: {PID: 'P3', tags: ['x',],},}")
        assert parser == "object-literal"
        assert payload == {"info": {"PID": "P3", "tags": ["x"]}}

    def test_not_an_object(self):
        assert parse_payload("[1, 2]") == (None, None)

    def test_key_like_text_inside_strings_is_kept(self):
        payload, _ = parse_payload("{title: 'Pain,level:high', section: [],}")
        assert payload == {"title": "Pain,level:high", "section": []}

    def test_escaped_quotes(self):
        """Test backslash escapes in single- and double-quoted strings are decoded."""
        payload, parser = parse_payload(r"""{title: 'I don\'t know', note: "a \"b\"", sym: '\u00b0C'}""")
        assert parser == "object-literal"
        assert payload == {"title": "I don't know", "note": 'a "b"', "sym": "\u00b0C"}

    def test_yes_no_keys_stay_strings(self):
        payload, _ = parse_payload("{x: 1, y: 2, no: 3, on: 'a', 4: 'b'}")
        assert payload == {"x": 1, "y": 2, "no": 3, "on": "a", "4": "b"}

    def test_quoted_values_are_not_coerced(self):
        payload, _ = parse_payload("{date: '2024-03-01', answer: 'yes'}")
        assert payload == {"date": "2024-03-01", "answer": "yes"}


class TestSurveyNormalizer:
    """Test survey pages end to end."""

    def test_questionnaire_observation_comes_first(self, normalizer):
        structure = normalizer.normalize(SURVEY_PAGE, "survey.html").structure

        assert structure.patients[0].patient_cd == "P77"
        questionnaire, interest = structure.observations
        assert questionnaire.observation_id == 1
        assert questionnaire.valtype_cd == ValueType.QUESTIONNAIRE
        assert questionnaire.concept_cd == "CUSTOM: QUESTIONNAIRE"
        assert questionnaire.category_char == "SURVEY_BEST"
        assert questionnaire.tval_char == "PHQ-2"
        assert questionnaire.start_date == "2024-04-02"
        assert interest.observation_id == 2
        assert interest.concept_cd == "LID: 44250-9"
        assert interest.nval_num == 1.0

    def test_response_payload_holds_every_item(self, normalizer):
        """Test uncoded answers are kept in the blob but not as observations."""
        structure = normalizer.normalize(SURVEY_PAGE).structure

        response = json.loads(structure.observations[0].observation_blob)
        assert response["code"] == "PHQ2"
        assert [item["label"] for item in response["items"]] == ["Interest", "Comment {free}"]
        assert structure.metadata.extra["uncoded_entries"] == 1
        assert structure.metadata.extra["questionnaire_code"] == "PHQ2"
        assert structure.metadata.extra["payload_parser"] == "json"
        assert structure.metadata.title == "PHQ-2"
        assert response["results"] == []
        assert response["summary"] is None

    def test_results_section_becomes_summary(self, normalizer):
        content = (
            "<html><body><script>var cda = {\"cda\": {\"title\": \"PHQ-9\", \"section\": ["
            "{\"title\": \"Findings Section\", \"entry\": [{\"title\": \"Sleep\", \"value\": 2}]},"
            "{\"title\": \"Results Section\", \"entry\": [{\"title\": \"Total score\", \"value\": 11}]}"
            "]}, \"info\": {\"PID\": \"P9\"}};</script></body></html>"
        )

        structure = normalizer.normalize(content).structure

        response = json.loads(structure.observations[0].observation_blob)
        assert [item["label"] for item in response["items"]] == ["Sleep", "Total score"]
        assert [item["label"] for item in response["results"]] == ["Total score"]
        assert response["summary"] == {"label": "Total score", "value": 11}

    def test_object_literal_payload(self, normalizer):
        content = (
            "<html><body><script>"
            "window.surveyData = {cda: {title: 'Quick check', section: []}, info: {PID: 'P3',},};"
            "</script></body></html>"
        )

        structure = normalizer.normalize(content).structure

        assert structure.patients[0].patient_cd == "P3"
        assert len(structure.observations) == 1
        assert structure.observations[0].tval_char == "Quick check"
        assert structure.metadata.extra["payload_parser"] == "object-literal"

    def test_page_title_used_when_document_has_none(self, normalizer):
        content = (
            "<html><head><title>Intake form</title></head><body><script>"
            'var cda = {"cda": {"section": []}, "info": {"PID": "P4"}};'
            "</script></body></html>"
        )

        structure = normalizer.normalize(content).structure

        assert structure.observations[0].tval_char == "Intake form"

    def test_no_payload(self, normalizer):
        with pytest.raises(StructuralImportError) as excinfo:
            normalizer.normalize("<html><body><p>No data</p></body></html>")
        assert excinfo.value.code == "NO_PAYLOAD_FOUND"

    def test_payload_without_patient(self, normalizer):
        content = '<html><body><script>var cda = {"cda": {"section": []}};</script></body></html>'
        with pytest.raises(StructuralImportError) as excinfo:
            normalizer.normalize(content)
        assert excinfo.value.code == "MISSING_PATIENT"
