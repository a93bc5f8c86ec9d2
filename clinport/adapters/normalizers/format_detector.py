"""Input format detection.

Classifies raw input as delimited text, structured JSON, clinical document or
survey markup. Detection is a pure function of the content and the filename:
the extension is tried first, then content heuristics in a fixed order.
"""

import json
import logging
import re
from pathlib import PurePath
from typing import Any, Optional

from clinport.domain.enums import ImportFormat

logger = logging.getLogger(__name__)

EXTENSION_FORMATS = {
    ".csv": ImportFormat.CSV,
    ".tsv": ImportFormat.CSV,
    ".json": ImportFormat.JSON,
    ".xml": ImportFormat.HL7,
    ".hl7": ImportFormat.HL7,
    ".cda": ImportFormat.HL7,
    ".html": ImportFormat.HTML,
    ".htm": ImportFormat.HTML,
}

# Extensions shared by more than one format; content decides among them.
AMBIGUOUS_EXTENSIONS = {".json"}

FIELD_SEPARATORS = (",", ";", "|", "\t")

_CLINICAL_XML_MARKERS = ("<ClinicalDocument", "<hl7:")
_LINE_SPLIT = re.compile(r"\r?\n")


def detect_delimiter(line: str) -> Optional[str]:
    """Most frequent field separator on a line.

    Returns:
        The separator occurring most often, if it occurs at least twice;
        otherwise None
    """
    counts = {sep: line.count(sep) for sep in FIELD_SEPARATORS}
    best = max(FIELD_SEPARATORS, key=lambda sep: counts[sep])
    return best if counts[best] >= 2 else None


def _non_empty_lines(content: str, limit: int = 2) -> list[str]:
    lines = []
    for line in _LINE_SPLIT.split(content):
        if line.strip():
            lines.append(line)
            if len(lines) >= limit:
                break
    return lines


def looks_like_csv(content: str) -> bool:
    lines = _non_empty_lines(content)
    if len(lines) < 2:
        return False
    first = lines[0].lstrip()
    if first[:1] in ("{", "[", "<"):
        return False
    return detect_delimiter(first) is not None


def looks_like_survey(content: str) -> bool:
    lowered = content.lower()
    if "<html" in lowered or "<!doctype html" in lowered:
        return True
    if "<head>" in lowered and "<body>" in lowered:
        return True
    return "<script" in lowered and "cda" in lowered


def _load_json(content: str) -> Any:
    """Parsed JSON object or array, or None when the content is not one."""
    text = content.strip()
    if not text or text[0] not in "{[":
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def is_resource_document(payload: Any) -> bool:
    """Whether a parsed JSON value is itself a resource (top-level ``resourceType``).

    Resources nested deeper, such as a questionnaire response kept verbatim
    in an observation blob, do not make the document a clinical document.
    """
    if not isinstance(payload, dict):
        return False
    resource_type = payload.get("resourceType")
    return isinstance(resource_type, str) and bool(resource_type.strip())


def looks_like_clinical_document(content: str) -> bool:
    if any(marker in content for marker in _CLINICAL_XML_MARKERS):
        return True
    return is_resource_document(_load_json(content))


def looks_like_json(content: str) -> bool:
    return _load_json(content) is not None


class FormatDetector:
    """Pure format classifier.

    Never raises; ``ImportFormat.UNSUPPORTED`` is a normal outcome.

    Example:
        ```python
        FormatDetector().detect("a,b,c\\n1,2,3", "export.txt")
        # ImportFormat.CSV
        ```
    """

    def detect(self, content: str, filename: Optional[str] = None) -> ImportFormat:
        """Detect the format of decoded input.

        Parameters:
            content: Decoded input text
            filename: Original filename (may be None)

        Returns:
            ImportFormat: Detected format, or UNSUPPORTED
        """
        content = content or ""
        extension = PurePath(filename).suffix.lower() if filename else ""

        by_extension = EXTENSION_FORMATS.get(extension)
        if by_extension is not None and extension not in AMBIGUOUS_EXTENSIONS:
            return by_extension

        if extension == ".json":
            if is_resource_document(_load_json(content)):
                return ImportFormat.HL7
            return ImportFormat.JSON

        detected = self.detect_from_content(content)
        logger.debug(f"Detected format {detected.value} from content of {filename or '<unnamed>'}")
        return detected

    def detect_from_content(self, content: str) -> ImportFormat:
        """Content heuristics: delimited text, survey markup, clinical document, JSON."""
        if looks_like_csv(content):
            return ImportFormat.CSV
        if looks_like_survey(content):
            return ImportFormat.HTML
        if looks_like_clinical_document(content):
            return ImportFormat.HL7
        if looks_like_json(content):
            return ImportFormat.JSON
        return ImportFormat.UNSUPPORTED
