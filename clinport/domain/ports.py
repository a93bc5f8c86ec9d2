"""Domain Ports - Abstract Contracts for Clinical Data Import.

This module defines the Port interfaces (abstract contracts) that Adapters must
implement. Following Hexagonal Architecture, the Domain Core defines what it
needs from normalizers and from the clinical store, not how they work.

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Normalizers (CSV, JSON, clinical document, survey) implement NormalizerPort
    - Storage adapters implement ClinicalStorePort and ConceptDictionaryPort
    - Store operations are coroutines: every store call is a suspension point
      and calls within one import are awaited strictly in sequence
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar, Union

from clinport.domain.import_structure import (
    ImportStructure,
    ObservationRecord,
    PatientRecord,
    VisitRecord,
)
from clinport.domain.report import ImportIssue

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Store Maintenance Calls
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a store maintenance call (schema setup, concept registration).

    Per-record store writes raise StorageError instead; the persister turns
    those into issues.

    Attributes:
        success: Whether the call succeeded
        value: Returned value on success
        error: Error message on failure
        error_type: Exception class name or an explicit category
        error_details: Extra context such as the failing operation

    Example:
        ```python
        result = store.register_concept("LID: 8302-2", "Body height")
        if not result.is_success():
            console.print(result.error)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        return cls(success=True, value=value)

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Build a failed result from a message or an exception.

        The exception's class name is used as ``error_type`` unless one is given.
        """
        if isinstance(error, Exception):
            message, kind = str(error), error_type or type(error).__name__
        else:
            message, kind = error, error_type or "UnknownError"
        return cls(success=False, error=message, error_type=kind, error_details=error_details or {})

    def is_success(self) -> bool:
        return self.success


# ============================================================================
# Exceptions
# ============================================================================

class IngestionError(Exception):
    """Base exception for all import-related errors."""
    pass


class UnsupportedSourceError(IngestionError):
    """Raised when no normalizer exists for a detected format.

    Attributes:
        source: Filename or format label of the rejected input
        adapter: Name of the normalizer factory that refused it
    """

    def __init__(self, message: str, source: Optional[str] = None, adapter: Optional[str] = None):
        super().__init__(message)
        self.source = source
        self.adapter = adapter


class StructuralImportError(IngestionError):
    """Raised when an input is unusable as a whole.

    Structural errors abort the import: malformed top-level syntax, missing
    required sections or headers, an unknown format, a missing relaxed-mode
    target, or a duplicate under the ``error`` policy.

    Attributes:
        code: Machine-readable error code (e.g. ``MISSING_DATA``)
        details: Additional context
    """

    def __init__(self, code: str, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}

    def to_issue(self) -> ImportIssue:
        return ImportIssue.error(self.code, str(self), **self.details)


class InputTooLargeError(StructuralImportError):
    """Raised before parsing when the input exceeds the configured size limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(
            "INPUT_TOO_LARGE",
            f"Input of {size} bytes exceeds the maximum of {limit} bytes",
            {"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


class DuplicateRecordError(StructuralImportError):
    """Raised under the ``error`` duplicate policy."""

    def __init__(self, patient_cd: str, reason: str = "exists in the store"):
        super().__init__(
            "DUPLICATE_PATIENT",
            f"Patient {patient_cd} {reason}",
            {"identifier": patient_cd},
        )
        self.patient_cd = patient_cd


class StorageError(Exception):
    """Raised when a store operation fails.

    Attributes:
        operation: Store operation that failed
        details: Additional context (never credentials)
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


# ============================================================================
# Normalizer Port
# ============================================================================

@dataclass
class NormalizationResult:
    """Output of one normalizer run.

    Attributes:
        structure: Canonical structure built from every record that survived
        errors: Per-record errors (the records are not in ``structure``)
        warnings: Non-fatal findings
    """

    structure: ImportStructure
    errors: list[ImportIssue] = field(default_factory=list)
    warnings: list[ImportIssue] = field(default_factory=list)


class NormalizerPort(ABC):
    """Abstract contract for format normalizers.

    A normalizer turns raw text of one format into an ImportStructure. A
    single bad record never stops the run; it becomes a per-record error.
    Only whole-input problems raise StructuralImportError.

    Example Usage:
        ```python
        normalizer = get_normalizer(ImportFormat.CSV)
        result = normalizer.normalize(text, "export.csv")
        for issue in result.errors:
            ...
        ```
    """

    format: Any = None

    @abstractmethod
    def normalize(self, content: str, filename: Optional[str] = None) -> NormalizationResult:
        """Normalize decoded input text.

        Parameters:
            content: Decoded input text
            filename: Original filename, recorded in the metadata

        Returns:
            NormalizationResult: Structure plus per-record errors and warnings

        Raises:
            StructuralImportError: If the input is unusable as a whole
        """
        pass


# ============================================================================
# Store Ports
# ============================================================================

class ClinicalStorePort(ABC):
    """Abstract contract for the relational clinical store.

    All identifiers returned are store identifiers. Implementations raise
    StorageError on failure.
    """

    @abstractmethod
    async def find_patient_by_code(self, patient_cd: str) -> Optional[dict]:
        """Return the stored patient row (keyed by column name, incl. ``PATIENT_NUM``) or None."""
        pass

    @abstractmethod
    async def patient_exists(self, patient_num: int) -> bool:
        pass

    @abstractmethod
    async def visit_exists(self, encounter_num: int, patient_num: Optional[int] = None) -> bool:
        """Check a visit exists (and, if given, belongs to the patient)."""
        pass

    @abstractmethod
    async def insert_patient(self, patient: PatientRecord) -> int:
        """Insert a patient and return its store id."""
        pass

    @abstractmethod
    async def update_patient(self, patient_num: int, patient: PatientRecord) -> None:
        """Overwrite the stored fields of an existing patient."""
        pass

    @abstractmethod
    async def insert_visit(self, patient_num: int, visit: VisitRecord) -> int:
        """Insert a visit for a store patient and return its store id."""
        pass

    @abstractmethod
    async def insert_observation(
        self,
        patient_num: int,
        encounter_num: int,
        observation: ObservationRecord
    ) -> int:
        """Insert an observation bound to store ids and return its store id."""
        pass


class ConceptDictionaryPort(ABC):
    """Abstract contract for the concept dictionary."""

    @abstractmethod
    async def concept_exists(self, concept_cd: str) -> bool:
        pass
