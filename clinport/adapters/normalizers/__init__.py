"""Format normalizers for Clinport.

Each normalizer implements NormalizerPort and turns one input format into
the canonical ImportStructure.
"""

from typing import Optional

from clinport.adapters.normalizers.clinical_document_normalizer import ClinicalDocumentNormalizer
from clinport.adapters.normalizers.csv_normalizer import CSVNormalizer
from clinport.adapters.normalizers.format_detector import FormatDetector, detect_delimiter
from clinport.adapters.normalizers.json_normalizer import JSONNormalizer
from clinport.adapters.normalizers.survey_normalizer import SurveyNormalizer
from clinport.domain.enums import ImportFormat
from clinport.domain.field_mapping import FieldMapper
from clinport.domain.ports import NormalizerPort, UnsupportedSourceError

__all__ = [
    "CSVNormalizer",
    "JSONNormalizer",
    "ClinicalDocumentNormalizer",
    "SurveyNormalizer",
    "FormatDetector",
    "detect_delimiter",
    "get_normalizer",
]


def get_normalizer(format: ImportFormat, field_mapper: Optional[FieldMapper] = None) -> NormalizerPort:
    """Factory returning the normalizer for a detected format.

    Parameters:
        format: Detected input format
        field_mapper: Alias resolver for the formats that use one

    Returns:
        NormalizerPort: Normalizer instance

    Raises:
        UnsupportedSourceError: If no normalizer handles the format
    """
    if format == ImportFormat.CSV:
        return CSVNormalizer(field_mapper=field_mapper)
    if format == ImportFormat.JSON:
        return JSONNormalizer(field_mapper=field_mapper)
    if format == ImportFormat.HL7:
        return ClinicalDocumentNormalizer()
    if format == ImportFormat.HTML:
        return SurveyNormalizer()
    raise UnsupportedSourceError(
        f"No normalizer for format: {getattr(format, 'value', format)}",
        adapter="get_normalizer",
    )
