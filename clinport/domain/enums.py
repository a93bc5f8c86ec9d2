"""Code tables shared by the domain models, normalizers and persister."""

from enum import Enum


class ImportFormat(str, Enum):
    """Input formats recognized by the format detector."""
    CSV = "csv"
    JSON = "json"
    HL7 = "hl7"
    HTML = "html"
    UNSUPPORTED = "unsupported"


class ValueType(str, Enum):
    """Observation value type codes (VALTYPE_CD)."""
    NUMERIC = "N"
    TEXT = "T"
    DATE = "D"
    BLOB = "B"
    QUESTIONNAIRE = "Q"


class DuplicateStrategy(str, Enum):
    """What the persister does when a patient code already exists."""
    SKIP = "skip"
    UPDATE = "update"
    ERROR = "error"


class Severity(str, Enum):
    """Severity of an import issue."""
    ERROR = "error"
    WARNING = "warning"


class SexCode(str, Enum):
    """Normalized SEX_CD values."""
    MALE = "M"
    FEMALE = "F"
    UNKNOWN = "U"


class InOutCode(str, Enum):
    """Normalized INOUT_CD values."""
    INPATIENT = "I"
    OUTPATIENT = "O"
    EMERGENCY = "E"


class ImportStrategy(str, Enum):
    """Strategy suggested by analysis for a given payload."""
    FULL = "full"
    TARGETED = "targeted"


class CsvVariant(str, Enum):
    """Supported delimited-text layouts."""
    VARIANT_A = "A"
    VARIANT_B = "B"
