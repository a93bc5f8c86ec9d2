"""Import outcome types.

Issues, persistence summaries and the final ImportResult returned by the
import service. Issues are data, not exceptions: per-record problems are
collected here while the import keeps going.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from clinport.domain.enums import ImportFormat, ImportStrategy, Severity

if TYPE_CHECKING:
    from clinport.domain.import_structure import ImportStructure


class ImportIssue(BaseModel):
    """A structured error or warning.

    Parameters:
        code: Machine-readable code (``ROW_LENGTH_MISMATCH``, ``UNKNOWN_CONCEPT``...)
        message: Human-readable description
        severity: ``error`` or ``warning``
        context: Row number, record index, identifier or other locating data
    """

    code: str
    message: str
    severity: Severity = Severity.ERROR
    context: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def error(cls, code: str, message: str, **context: Any) -> "ImportIssue":
        return cls(code=code, message=message, severity=Severity.ERROR, context=context)

    @classmethod
    def warning(cls, code: str, message: str, **context: Any) -> "ImportIssue":
        return cls(code=code, message=message, severity=Severity.WARNING, context=context)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")


@dataclass
class EntityCounts:
    """Per-entity persistence counters."""

    created: int = 0
    updated: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass
class PersistenceSummary:
    """What the persister did with one ImportStructure.

    ``visits.created`` includes synthesized default visits; their number is
    also reported separately in ``default_visits_created``.
    """

    patients: EntityCounts = field(default_factory=EntityCounts)
    visits: EntityCounts = field(default_factory=EntityCounts)
    observations: EntityCounts = field(default_factory=EntityCounts)
    default_visits_created: int = 0
    patient_nums: list[int] = field(default_factory=list)
    encounter_nums: list[int] = field(default_factory=list)
    observation_ids: list[int] = field(default_factory=list)
    errors: list[ImportIssue] = field(default_factory=list)
    warnings: list[ImportIssue] = field(default_factory=list)
    aborted: bool = False
    relaxed: bool = False

    @property
    def success(self) -> bool:
        return not self.aborted and not self.errors

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "aborted": self.aborted,
            "relaxed": self.relaxed,
            "patients": self.patients.to_dict(),
            "visits": self.visits.to_dict(),
            "observations": self.observations.to_dict(),
            "defaultVisitsCreated": self.default_visits_created,
            "patientNums": list(self.patient_nums),
            "encounterNums": list(self.encounter_nums),
            "observationIds": list(self.observation_ids),
        }


@dataclass
class ImportResult:
    """Final result of ``import_content`` / ``import_for_target``.

    Attributes:
        success: True when no error was recorded and nothing aborted
        structure: Canonical structure (None when parsing failed structurally)
        persistence: Persistence summary (None when nothing was persisted)
        errors: Structural and per-record errors
        warnings: Non-fatal findings
        metadata: Format, filename, size and timing facts
    """

    success: bool
    structure: Optional["ImportStructure"] = None
    persistence: Optional[PersistenceSummary] = None
    errors: list[ImportIssue] = field(default_factory=list)
    warnings: list[ImportIssue] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def data(self) -> dict:
        return {"structure": self.structure, "persistence": self.persistence}

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "data": {
                "structure": self.structure.to_wire() if self.structure else None,
                "persistence": self.persistence.to_dict() if self.persistence else None,
            },
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
            "metadata": dict(self.metadata),
        }


@dataclass
class AnalysisResult:
    """Read-only analysis of an input: format, counts and a recommendation."""

    format: ImportFormat
    counts: dict[str, int] = field(default_factory=dict)
    recommended_strategy: Optional[ImportStrategy] = None
    warnings: list[ImportIssue] = field(default_factory=list)
    errors: list[ImportIssue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "format": self.format.value,
            "counts": dict(self.counts),
            "recommendedStrategy": self.recommended_strategy.value if self.recommended_strategy else None,
            "warnings": [issue.to_dict() for issue in self.warnings],
            "errors": [issue.to_dict() for issue in self.errors],
        }
