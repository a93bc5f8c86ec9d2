"""Unit tests for input format detection."""

import json

import pytest

from clinport.adapters.normalizers import FormatDetector, detect_delimiter, get_normalizer
from clinport.adapters.normalizers.csv_normalizer import CSVNormalizer
from clinport.domain.enums import ImportFormat
from clinport.domain.ports import UnsupportedSourceError


@pytest.fixture
def detector():
    return FormatDetector()


class TestDetectByExtension:
    """Test extension-first classification."""

    @pytest.mark.parametrize("filename,expected", [
        ("export.csv", ImportFormat.CSV),
        ("export.TSV", ImportFormat.CSV),
        ("document.xml", ImportFormat.HL7),
        ("survey.htm", ImportFormat.HTML),
        ("survey.html", ImportFormat.HTML),
    ])
    def test_unambiguous_extensions_win(self, detector, filename, expected):
        """Test the extension decides even when content disagrees."""
        assert detector.detect("hello world", filename) == expected

    def test_json_extension_with_clinical_marker(self, detector):
        """Test .json holding a clinical document is classified as hl7."""
        content = '{"resourceType": "Composition", "section": []}'
        assert detector.detect(content, "bundle.json") == ImportFormat.HL7

    def test_json_extension_plain(self, detector):
        assert detector.detect('{"patients": []}', "export.json") == ImportFormat.JSON

    def test_nested_resource_stays_json(self, detector):
        """Test a questionnaire response kept inside an observation does not make the export hl7."""
        content = json.dumps({
            "data": {
                "patients": [{"PATIENT_CD": "P1"}],
                "observations": [{
                    "PATIENT_CD": "P1",
                    "VALTYPE_CD": "Q",
                    "OBSERVATION_BLOB": {"resourceType": "QuestionnaireResponse", "item": []},
                }],
            },
        })

        assert detector.detect(content, "export.json") == ImportFormat.JSON
        assert detector.detect(content) == ImportFormat.JSON

    def test_blank_resource_type_stays_json(self, detector):
        assert detector.detect('{"resourceType": "", "data": {}}', "export.json") == ImportFormat.JSON


class TestDetectByContent:
    """Test content heuristics when the extension does not decide."""

    def test_delimited_text(self, detector):
        assert detector.detect("a,b,c\n1,2,3", "export.txt") == ImportFormat.CSV
        assert detector.detect("a;b;c\n1;2;3") == ImportFormat.CSV

    def test_single_line_is_not_delimited(self, detector):
        assert detector.detect("a,b,c") == ImportFormat.UNSUPPORTED

    def test_json_array_with_commas_is_not_delimited(self, detector):
        """Test JSON spread over lines is not mistaken for delimited text."""
        content = '[\n{"a": 1, "b": 2, "c": 3},\n{"a": 4}\n]'
        assert detector.detect(content) == ImportFormat.JSON

    def test_survey_markup(self, detector):
        assert detector.detect("<html><body>x</body></html>") == ImportFormat.HTML
        assert detector.detect("<!DOCTYPE html>\n<p>x</p>") == ImportFormat.HTML

    def test_clinical_document(self, detector):
        assert detector.detect('{"resourceType": "Composition"}') == ImportFormat.HL7
        assert detector.detect('<?xml version="1.0"?>\n<ClinicalDocument/>') == ImportFormat.HL7

    def test_unknown_content(self, detector):
        assert detector.detect("hello world") == ImportFormat.UNSUPPORTED
        assert detector.detect("") == ImportFormat.UNSUPPORTED
        assert detector.detect("{broken") == ImportFormat.UNSUPPORTED

    def test_detection_is_pure(self, detector):
        """Test identical input always yields the same format."""
        content = "x;y;z\n1;2;3"
        assert detector.detect(content, "a.dat") == detector.detect(content, "a.dat")


class TestDetectDelimiter:
    """Test separator selection."""

    def test_most_frequent_separator(self):
        assert detect_delimiter("a;b;c") == ";"
        assert detect_delimiter("a\tb\tc|d") == "\t"
        assert detect_delimiter("a|b|c") == "|"

    def test_requires_two_occurrences(self):
        assert detect_delimiter("a,b") is None
        assert detect_delimiter("plain") is None


class TestGetNormalizer:
    """Test the normalizer factory."""

    def test_returns_normalizer_for_format(self):
        assert isinstance(get_normalizer(ImportFormat.CSV), CSVNormalizer)

    def test_unsupported_raises(self):
        with pytest.raises(UnsupportedSourceError):
            get_normalizer(ImportFormat.UNSUPPORTED)
