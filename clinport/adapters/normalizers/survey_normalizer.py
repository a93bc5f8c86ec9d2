"""Survey Normalizer.

Survey exports are HTML pages that embed a clinical-document payload in a
script assignment, e.g.::

    <script>
      window.CDA = {"cda": {"title": "PHQ-9", "subject": {...}, "section": [...]},
                    "info": {"PID": "P1", "date": "2024-03-01"}};
    </script>

The payload is located after an assignment marker and cut out with a
brace-depth scanner (payload text may itself contain braces, so a regular
expression alone cannot find its end). It is parsed as strict JSON first and
as a permissive object literal (unquoted keys, single quotes, trailing commas)
second. The resulting document goes through the clinical-document
transformation, preceded by one questionnaire observation holding the whole
response. Entries of a ``Results Section`` are also listed as ``results``
and the first of them is the response ``summary`` (e.g. a total score).

A survey naming no patient (no subject, no patient section, no ``info.PID``)
is rejected with MISSING_PATIENT rather than stored under a placeholder code.
"""

import json
import logging
import re
from enum import Enum
from typing import Any, Optional

import lxml.html
import yaml
from lxml import etree
from pydantic import ValidationError as PydanticValidationError

from clinport.adapters.normalizers.clinical_document_normalizer import ClinicalDocumentNormalizer
from clinport.adapters.normalizers.json_normalizer import (
    QUESTIONNAIRE_CATEGORY,
    QUESTIONNAIRE_CONCEPT,
)
from clinport.domain.enums import ImportFormat, ValueType
from clinport.domain.import_structure import ObservationRecord, create_import_structure
from clinport.domain.ports import NormalizationResult, NormalizerPort, StructuralImportError
from clinport.domain.report import ImportIssue
from clinport.domain.services.normalization import (
    build_questionnaire_slots,
    is_blank,
    normalize_date,
)

logger = logging.getLogger(__name__)

ASSIGNMENT_MARKER = re.compile(r"\b(?:cda|surveyData|questionnaireData)\s*=(?!=)", re.IGNORECASE)

DEFAULT_SURVEY_TITLE = "Imported Survey"

_BARE_KEY = re.compile(r"([A-Za-z_$][\w$]*)\s*:")
_UNICODE_ESCAPE = re.compile(r"[0-9A-Fa-f]{4}")
_STRING_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}


class _ScanState(Enum):
    CODE = "code"
    STRING = "string"
    ESCAPE = "escape"


def extract_braced_block(text: str, start: int = 0) -> Optional[str]:
    """Cut out the balanced ``{...}`` block beginning at the first ``{`` after ``start``.

    Depth is counted over every brace outside quoted strings (``"``, ``'``
    or backtick); a backslash escapes the next character inside a string.

    Returns:
        The block including its outer braces, or None if none is found or
        the braces never balance
    """
    begin = text.find("{", start)
    if begin < 0:
        return None

    state = _ScanState.CODE
    quote = ""
    depth = 0
    for index in range(begin, len(text)):
        char = text[index]
        if state is _ScanState.ESCAPE:
            state = _ScanState.STRING
        elif state is _ScanState.STRING:
            if char == "\\":
                state = _ScanState.ESCAPE
            elif char == quote:
                state = _ScanState.CODE
        elif char in "\"'`":
            state = _ScanState.STRING
            quote = char
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[begin:index + 1]
    return None


def object_literal_to_flow(block: str) -> str:
    """Rewrite an object literal as a YAML flow mapping.

    Every string literal (any quote style, backslash escapes decoded) is
    re-emitted as a double-quoted JSON string and every bare key is quoted.
    Text inside strings is copied, never rewritten.
    """
    out: list[str] = []
    chars: list[str] = []
    state = _ScanState.CODE
    quote = ""
    expecting_key = False
    index = 0
    while index < len(block):
        char = block[index]
        if state is _ScanState.ESCAPE:
            unicode_digits = _UNICODE_ESCAPE.match(block, index + 1) if char == "u" else None
            if unicode_digits:
                chars.append(chr(int(unicode_digits.group(), 16)))
                index = unicode_digits.end() - 1
            elif char != "\n":
                chars.append(_STRING_ESCAPES.get(char, char))
            state = _ScanState.STRING
        elif state is _ScanState.STRING:
            if char == "\\":
                state = _ScanState.ESCAPE
            elif char == quote:
                out.append(json.dumps("".join(chars), ensure_ascii=False))
                chars = []
                state = _ScanState.CODE
            else:
                chars.append(char)
        elif char in "\"'`":
            state = _ScanState.STRING
            quote = char
            expecting_key = False
        elif char in "{,":
            out.append(char)
            expecting_key = True
        elif expecting_key and not char.isspace():
            expecting_key = False
            key = _BARE_KEY.match(block, index)
            if key:
                out.append(f"{json.dumps(key.group(1))}: ")
                index = key.end()
                continue
            out.append(char)
        else:
            out.append(char)
        index += 1

    if state is not _ScanState.CODE:
        out.append(quote + "".join(chars))
    return "".join(out).expandtabs()


def _string_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _string_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_string_keys(v) for v in value]
    return value


def parse_payload(block: str) -> tuple[Optional[dict], Optional[str]]:
    """Parse an extracted block as JSON, then as a permissive object literal.

    Returns:
        (payload, parser name) or (None, None) when neither parser yields an object
    """
    try:
        payload = json.loads(block)
        if isinstance(payload, dict):
            return payload, "json"
    except ValueError:
        pass

    try:
        payload = yaml.safe_load(object_literal_to_flow(block))
    except yaml.YAMLError:
        return None, None
    if isinstance(payload, dict):
        return _string_keys(payload), "object-literal"
    return None, None


class SurveyNormalizer(NormalizerPort):
    """Normalizer for HTML survey exports with an embedded clinical document.

    Parameters:
        document_normalizer: Clinical-document transformation to delegate to
    """

    format = ImportFormat.HTML

    def __init__(self, document_normalizer: Optional[ClinicalDocumentNormalizer] = None):
        self.document_normalizer = document_normalizer or ClinicalDocumentNormalizer()
        self.adapter_name = "survey_normalizer"

    def normalize(self, content: str, filename: Optional[str] = None) -> NormalizationResult:
        """Normalize a survey page.

        Raises:
            StructuralImportError: NO_PAYLOAD_FOUND, or the clinical-document
                errors (e.g. MISSING_PATIENT)
        """
        scripts, page_title = self._read_html(content)
        payload, parser = self.find_payload(scripts + [content])
        if payload is None:
            raise StructuralImportError(
                "NO_PAYLOAD_FOUND",
                "No embedded clinical document found in survey markup",
            )

        if isinstance(payload.get("cda"), dict):
            document = dict(payload["cda"])
            info = payload.get("info") if isinstance(payload.get("info"), dict) else {}
        else:
            document, info = dict(payload), {}

        if is_blank(document.get("date")) and not is_blank(info.get("date")):
            document["date"] = info["date"]

        errors: list[ImportIssue] = []
        records = self.document_normalizer.transform_document(
            document,
            errors,
            fallback_patient_cd=info.get("PID"),
            first_observation_id=2,
        )

        title = (
            records.title
            or _first_text(info, "title", "label")
            or page_title
            or DEFAULT_SURVEY_TITLE
        )
        code = self._questionnaire_code(document, info)
        date = records.date or normalize_date(info.get("date"))

        summary = None
        if records.results:
            summary = {"label": records.results[0]["label"], "value": records.results[0]["value"]}
        response = {
            "title": title,
            "code": code,
            "date": date,
            "items": records.items,
            "results": records.results,
            "summary": summary,
        }
        encounter_num = records.visits[0].encounter_num if len(records.visits) == 1 else None
        observations = list(records.observations)
        try:
            observations.insert(0, ObservationRecord(
                observation_id=1,
                patient_num=records.patient.patient_num,
                patient_cd=records.patient.patient_cd,
                encounter_num=encounter_num,
                concept_cd=QUESTIONNAIRE_CONCEPT,
                valtype_cd=ValueType.QUESTIONNAIRE,
                category_char=QUESTIONNAIRE_CATEGORY,
                start_date=date,
                **build_questionnaire_slots(title, json.dumps(response, default=str)),
            ))
        except PydanticValidationError as e:
            errors.append(ImportIssue.error(
                "INVALID_OBSERVATION",
                f"Questionnaire observation rejected: {e.errors()[0]['msg']}",
                identifier=title,
            ))

        logger.info(
            f"Normalized survey {filename or '<unnamed>'} ({parser}): '{title}' for patient "
            f"{records.patient.patient_cd}, {len(observations)} observations"
        )

        structure = create_import_structure(
            [records.patient], records.visits, observations,
            format=ImportFormat.HTML,
            filename=filename,
            title=title,
            export_date=date,
            extra={
                "questionnaire_code": code,
                "payload_parser": parser,
                "unidentified_visits": records.unidentified_visits,
                "uncoded_entries": records.uncoded_entries,
            },
        )
        return NormalizationResult(structure=structure, errors=errors)

    @staticmethod
    def _read_html(content: str) -> tuple[list[str], Optional[str]]:
        """Script bodies and the page title; empty when the markup cannot be parsed."""
        try:
            root = lxml.html.fromstring(content)
        except (etree.ParserError, ValueError) as e:
            logger.debug(f"Survey markup not parseable as HTML, scanning raw text: {str(e)}")
            return [], None

        scripts = [script.text_content() for script in root.iter("script")]
        title_element = root.find(".//title")
        title = title_element.text_content().strip() if title_element is not None else None
        return [text for text in scripts if text], title or None

    @staticmethod
    def find_payload(candidates: list[str]) -> tuple[Optional[dict], Optional[str]]:
        """First parseable object after an assignment marker in any candidate text."""
        for text in candidates:
            for match in ASSIGNMENT_MARKER.finditer(text):
                block = extract_braced_block(text, match.end())
                if block is None:
                    continue
                payload, parser = parse_payload(block)
                if payload is not None:
                    return payload, parser
        return None, None

    @staticmethod
    def _questionnaire_code(document: dict, info: dict) -> Optional[str]:
        identifier = document.get("identifier")
        if isinstance(identifier, list):
            identifier = identifier[0] if identifier else None
        if isinstance(identifier, dict) and not is_blank(identifier.get("value")):
            return str(identifier["value"])
        return _first_text(info, "code", "label")


def _first_text(source: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value: Any = source.get(key)
        if not is_blank(value):
            return str(value).strip()
    return None
