"""Domain layer for Clinport.

Canonical import structure, outcome types, ports and the reconciling
persister. Domain models depend only on Pydantic.
"""

from .import_structure import (
    PatientRecord,
    VisitRecord,
    ObservationRecord,
    ImportStructure,
    create_import_structure,
)

__all__ = [
    "PatientRecord",
    "VisitRecord",
    "ObservationRecord",
    "ImportStructure",
    "create_import_structure",
]
