"""Value normalization helpers.

Pure functions shared by every normalizer: sex and visit-type code
normalization, date normalization, value-type inference and the mapping of a
raw value onto the observation value slots.

Inference order is numeric, then date, then JSON literal, then text. A
compact date such as ``20240101`` therefore infers as numeric.
"""

import json
import re
from datetime import datetime
from typing import Any, Optional

from clinport.domain.enums import InOutCode, SexCode, ValueType

_NUMERIC_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

# (pattern, order of the captured year/month/day groups)
DATE_PATTERNS = (
    (re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"), ("y", "m", "d")),
    (re.compile(r"^(\d{2})/(\d{2})/(\d{4})$"), ("m", "d", "y")),
    (re.compile(r"^(\d{2})\.(\d{2})\.(\d{4})$"), ("d", "m", "y")),
    (re.compile(r"^(\d{4})/(\d{2})/(\d{2})$"), ("y", "m", "d")),
    (re.compile(r"^(\d{2})-(\d{2})-(\d{4})$"), ("m", "d", "y")),
)

SEX_CODES = {
    "m": SexCode.MALE, "male": SexCode.MALE, "man": SexCode.MALE, "1": SexCode.MALE,
    "f": SexCode.FEMALE, "female": SexCode.FEMALE, "woman": SexCode.FEMALE, "2": SexCode.FEMALE,
    "u": SexCode.UNKNOWN, "unknown": SexCode.UNKNOWN, "other": SexCode.UNKNOWN, "3": SexCode.UNKNOWN,
}

INOUT_CODES = {
    "i": InOutCode.INPATIENT, "inpatient": InOutCode.INPATIENT, "in": InOutCode.INPATIENT, "1": InOutCode.INPATIENT,
    "o": InOutCode.OUTPATIENT, "outpatient": InOutCode.OUTPATIENT, "out": InOutCode.OUTPATIENT, "2": InOutCode.OUTPATIENT,
    "e": InOutCode.EMERGENCY, "emergency": InOutCode.EMERGENCY, "er": InOutCode.EMERGENCY, "3": InOutCode.EMERGENCY,
}

VALUE_TYPE_WORDS = {
    "n": ValueType.NUMERIC, "numeric": ValueType.NUMERIC, "number": ValueType.NUMERIC,
    "t": ValueType.TEXT, "text": ValueType.TEXT, "string": ValueType.TEXT,
    "d": ValueType.DATE, "date": ValueType.DATE,
    "b": ValueType.BLOB, "blob": ValueType.BLOB,
    "q": ValueType.QUESTIONNAIRE, "questionnaire": ValueType.QUESTIONNAIRE,
}


def is_blank(value: Any) -> bool:
    """True for None and whitespace-only strings."""
    return value is None or (isinstance(value, str) and not value.strip())


def is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and bool(_NUMERIC_PATTERN.match(value.strip()))


def coerce_number(value: Any) -> Optional[float]:
    """Return ``value`` as float, or None when it is blank or not numeric."""
    if is_blank(value) or not is_numeric(value):
        return None
    return float(value)


def is_date_string(value: str) -> bool:
    text = value.strip()
    return any(pattern.match(text) for pattern, _ in DATE_PATTERNS)


def normalize_date(value: Any) -> Optional[str]:
    """Normalize a date to ``YYYY-MM-DD``.

    Parameters:
        value: Date text in one of the supported layouts, an ISO timestamp,
            or a ``date``/``datetime`` instance

    Returns:
        The ISO date, the stripped original text when it cannot be parsed,
        or None for blank input
    """
    if is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if hasattr(value, "isoformat"):
        return value.isoformat()

    text = str(value).strip()
    for pattern, order in DATE_PATTERNS:
        match = pattern.match(text)
        if match:
            parts = dict(zip(order, match.groups()))
            try:
                return datetime(int(parts["y"]), int(parts["m"]), int(parts["d"])).date().isoformat()
            except ValueError:
                return text

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return text


def normalize_sex(value: Any) -> Optional[str]:
    """Map free-form sex values onto M/F/U; unknown values are kept verbatim."""
    if is_blank(value):
        return None
    text = str(value).strip()
    code = SEX_CODES.get(text.lower())
    return code.value if code else text


def normalize_inout(value: Any) -> Optional[str]:
    """Map free-form visit types onto I/O/E; unknown values are kept verbatim."""
    if is_blank(value):
        return None
    text = str(value).strip()
    code = INOUT_CODES.get(text.lower())
    return code.value if code else text


def parse_value_type(value: Any) -> Optional[ValueType]:
    """Parse a declared value type (code letter or word); None if unrecognized."""
    if isinstance(value, ValueType):
        return value
    if is_blank(value):
        return None
    return VALUE_TYPE_WORDS.get(str(value).strip().lower())


def infer_value_type(value: Any) -> ValueType:
    """Infer the value type of a raw value.

    Order: numeric, one of the five date layouts, JSON object/array literal,
    text. Blank values infer as text.
    """
    if is_blank(value) or isinstance(value, bool):
        return ValueType.TEXT
    if isinstance(value, (int, float)):
        return ValueType.NUMERIC
    if isinstance(value, (dict, list)):
        return ValueType.BLOB

    text = str(value).strip()
    if is_numeric(text):
        return ValueType.NUMERIC
    if is_date_string(text):
        return ValueType.DATE
    if (text.startswith("{") and text.endswith("}")) or (text.startswith("[") and text.endswith("]")):
        try:
            json.loads(text)
            return ValueType.BLOB
        except ValueError:
            pass
    return ValueType.TEXT


def build_value_slots(value: Any, valtype: ValueType) -> dict:
    """Place a raw value in the slot its value type makes authoritative.

    Parameters:
        value: Raw source value
        valtype: Declared or inferred value type (not ``Q``)

    Returns:
        dict with ``nval_num``, ``tval_char`` and ``observation_blob`` keys,
        exactly one of which is populated

    Raises:
        ValueError: If the value cannot be represented in the required slot
    """
    slots = {"nval_num": None, "tval_char": None, "observation_blob": None}

    if valtype == ValueType.NUMERIC:
        number = coerce_number(value)
        if number is None:
            raise ValueError(f"Value {value!r} is not numeric")
        slots["nval_num"] = number
    elif valtype == ValueType.DATE:
        date_text = normalize_date(value)
        if date_text is None:
            raise ValueError("Date value is empty")
        slots["tval_char"] = date_text
    elif valtype == ValueType.BLOB:
        blob = value if isinstance(value, str) else json.dumps(value)
        if is_blank(blob):
            raise ValueError("Blob value is empty")
        slots["observation_blob"] = blob
    elif valtype == ValueType.TEXT:
        if is_blank(value):
            raise ValueError("Text value is empty")
        slots["tval_char"] = str(value).strip()
    else:
        raise ValueError(f"Value type {valtype.value} needs a title and a payload")

    return slots


def build_questionnaire_slots(title: Optional[str], payload: Any) -> dict:
    """Slots for a questionnaire observation: display title plus full payload."""
    blob = payload if isinstance(payload, str) else json.dumps(payload)
    return {
        "nval_num": None,
        "tval_char": (title or "").strip() or "Unknown Questionnaire",
        "observation_blob": blob,
    }
