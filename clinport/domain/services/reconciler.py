"""Reconciling Persister.

Writes an ImportStructure into the clinical store, converting every
source-local identifier into a store identifier on the way:

1. Patients (deduplicated by business key under the chosen duplicate policy)
2. Visits (owner resolved by business key, then by source-local patient id)
3. Observations (visit resolved by source-local id, else a default visit is
   synthesized for the observation's patient and date)

Architecture:
    - Pure domain service; talks to storage only through ClinicalStorePort
      and ConceptDictionaryPort
    - Identifier maps are created per ``persist`` call and never shared
    - Every store call is awaited in order; later records depend on ids
      assigned to earlier ones
    - Per-record failures are collected; only the ``error`` duplicate
      policy aborts an import
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Optional

from clinport.domain.enums import DuplicateStrategy
from clinport.domain.import_structure import (
    ImportStructure,
    ObservationRecord,
    PatientRecord,
    VisitRecord,
)
from clinport.domain.ports import (
    ClinicalStorePort,
    ConceptDictionaryPort,
    DuplicateRecordError,
    StorageError,
    StructuralImportError,
)
from clinport.domain.report import ImportIssue, PersistenceSummary

if TYPE_CHECKING:
    from clinport.infrastructure.logging_config import SampledLogger

logger = logging.getLogger(__name__)

DEFAULT_VISIT_LOCATION = "Data Import"
DEFAULT_VISIT_INOUT = "O"
DEFAULT_VISIT_STATUS = "A"


@dataclass(frozen=True)
class TargetContext:
    """Existing store patient/visit pair used by relaxed identifier mode."""

    patient_num: int
    encounter_num: int


@dataclass
class IdentifierMaps:
    """Source-local to store identifier maps for one import.

    Attributes:
        patients_by_code: Patient business key -> store PATIENT_NUM
        patients_by_source: Source-local patient_num -> store PATIENT_NUM
        visits_by_source: Source-local encounter_num -> store ENCOUNTER_NUM
        visit_owners: Store ENCOUNTER_NUM -> store PATIENT_NUM
        visit_dates: Store ENCOUNTER_NUM -> visit start date
        default_visits: (store PATIENT_NUM, date) -> synthesized ENCOUNTER_NUM
    """

    patients_by_code: dict[str, int] = field(default_factory=dict)
    patients_by_source: dict[int, int] = field(default_factory=dict)
    visits_by_source: dict[int, int] = field(default_factory=dict)
    visit_owners: dict[int, int] = field(default_factory=dict)
    visit_dates: dict[int, Optional[str]] = field(default_factory=dict)
    default_visits: dict[tuple[int, str], int] = field(default_factory=dict)

    def map_patient(self, patient: PatientRecord, store_num: int) -> None:
        if patient.patient_cd is not None:
            self.patients_by_code[patient.patient_cd] = store_num
        self.patients_by_source[patient.patient_num] = store_num

    def map_visit(self, source_num: int, store_num: int, owner: int, start_date: Optional[str]) -> None:
        self.visits_by_source[source_num] = store_num
        self.visit_owners[store_num] = owner
        self.visit_dates[store_num] = start_date


class ReconcilingPersister:
    """Persists canonical import structures with identifier reconciliation.

    Parameters:
        store: Clinical store port
        concepts: Concept dictionary port
        logger: Sampled logger for per-record messages
        default_location_cd: LOCATION_CD of synthesized default visits
        default_inout_cd: INOUT_CD of synthesized default visits

    Example Usage:
        ```python
        persister = ReconcilingPersister(adapter, adapter, SampledLogger())
        summary = await persister.persist(structure, DuplicateStrategy.SKIP)
        print(summary.patients.created, summary.default_visits_created)
        ```
    """

    def __init__(
        self,
        store: ClinicalStorePort,
        concepts: ConceptDictionaryPort,
        logger: "SampledLogger",
        default_location_cd: str = DEFAULT_VISIT_LOCATION,
        default_inout_cd: str = DEFAULT_VISIT_INOUT,
    ):
        self.store = store
        self.concepts = concepts
        self.sampled = logger
        self.default_location_cd = default_location_cd
        self.default_inout_cd = default_inout_cd

    async def persist(
        self,
        structure: ImportStructure,
        duplicate_strategy: DuplicateStrategy = DuplicateStrategy.SKIP,
        target: Optional[TargetContext] = None,
    ) -> PersistenceSummary:
        """Write patients, visits and observations in dependency order.

        Parameters:
            structure: Canonical structure from a normalizer
            duplicate_strategy: Policy for patients whose business key exists
            target: Existing patient/visit pair; enables relaxed identifier mode

        Returns:
            PersistenceSummary: Counts, store ids, errors and warnings

        Raises:
            StructuralImportError: TARGET_NOT_FOUND in relaxed mode
            StorageError: If a store call fails outside per-record handling
        """
        duplicate_strategy = DuplicateStrategy(duplicate_strategy)
        summary = PersistenceSummary(relaxed=target is not None)
        maps = IdentifierMaps()
        concept_cache: dict[str, bool] = {}

        try:
            if target is not None:
                await self._bind_target(structure, target, maps, summary)
            else:
                try:
                    if duplicate_strategy == DuplicateStrategy.ERROR:
                        await self._check_duplicates(structure.patients)
                    await self._persist_patients(structure.patients, duplicate_strategy, maps, summary)
                except DuplicateRecordError as e:
                    summary.aborted = True
                    summary.errors.append(e.to_issue())
                    logger.warning(f"Import aborted under 'error' duplicate policy: {str(e)}")
                    return summary
                await self._persist_visits(structure.visits, maps, summary)

            await self._persist_observations(structure.observations, maps, summary, concept_cache, target)
        finally:
            self.sampled.flush_summary()

        logger.info(
            f"Persisted import: {summary.patients.created} patients created, "
            f"{summary.visits.created} visits created ({summary.default_visits_created} default), "
            f"{summary.observations.created} observations created, "
            f"{len(summary.errors)} errors, {len(summary.warnings)} warnings"
        )
        return summary

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    async def _check_duplicates(self, patients: tuple[PatientRecord, ...]) -> None:
        """Fail before any write if a business key repeats or is already stored."""
        seen: set[str] = set()
        for patient in patients:
            if patient.patient_cd is None:
                continue
            if patient.patient_cd in seen:
                raise DuplicateRecordError(patient.patient_cd, "appears more than once in the import")
            seen.add(patient.patient_cd)
            if await self.store.find_patient_by_code(patient.patient_cd) is not None:
                raise DuplicateRecordError(patient.patient_cd)

    async def _persist_patients(self, patients, duplicate_strategy, maps: IdentifierMaps, summary) -> None:
        for index, patient in enumerate(patients):
            try:
                existing = await self._existing_patient(patient, maps)
                if existing is None:
                    store_num = await self.store.insert_patient(patient)
                    summary.patients.created += 1
                    summary.patient_nums.append(store_num)
                    maps.map_patient(patient, store_num)
                    continue

                if duplicate_strategy == DuplicateStrategy.ERROR:
                    raise DuplicateRecordError(patient.patient_cd)

                summary.patients.duplicates += 1
                if duplicate_strategy == DuplicateStrategy.UPDATE:
                    await self.store.update_patient(existing, patient)
                    summary.patients.updated += 1
                    action = "updated"
                else:
                    summary.patients.skipped += 1
                    action = "reused"
                maps.map_patient(patient, existing)
                summary.warnings.append(ImportIssue.warning(
                    "DUPLICATE_PATIENT",
                    f"Patient {patient.patient_cd} already exists; {action} PATIENT_NUM {existing}",
                    index=index,
                    identifier=patient.patient_cd,
                    patient_num=existing,
                ))
                self.sampled.info("duplicate_patient", f"Duplicate patient {patient.patient_cd} {action}")

            except StorageError as e:
                summary.patients.failed += 1
                summary.errors.append(ImportIssue.error(
                    "PATIENT_PERSIST_FAILED",
                    f"Patient #{index} could not be stored: {str(e)}",
                    index=index,
                    identifier=patient.patient_cd,
                ))
                self.sampled.error("patient_failed", f"Failed to store patient {patient.patient_cd}: {str(e)}")

    async def _existing_patient(self, patient: PatientRecord, maps: IdentifierMaps) -> Optional[int]:
        if patient.patient_cd is None:
            return None
        if patient.patient_cd in maps.patients_by_code:
            return maps.patients_by_code[patient.patient_cd]
        row = await self.store.find_patient_by_code(patient.patient_cd)
        return int(row["PATIENT_NUM"]) if row is not None else None

    async def _resolve_patient(
        self,
        patient_cd: Optional[str],
        patient_num: Optional[int],
        maps: IdentifierMaps,
    ) -> Optional[int]:
        """Business key first, then source-local id, then a stored patient with the key."""
        if patient_cd is not None and patient_cd in maps.patients_by_code:
            return maps.patients_by_code[patient_cd]
        if patient_num is not None and patient_num in maps.patients_by_source:
            return maps.patients_by_source[patient_num]
        if patient_cd is not None:
            row = await self.store.find_patient_by_code(patient_cd)
            if row is not None:
                maps.patients_by_code[patient_cd] = int(row["PATIENT_NUM"])
                return maps.patients_by_code[patient_cd]
        return None

    # ------------------------------------------------------------------
    # Visits
    # ------------------------------------------------------------------

    async def _persist_visits(self, visits, maps: IdentifierMaps, summary) -> None:
        for index, visit in enumerate(visits):
            try:
                owner = await self._resolve_patient(visit.patient_cd, visit.patient_num, maps)
                if owner is None:
                    summary.visits.failed += 1
                    summary.errors.append(ImportIssue.error(
                        "UNRESOLVED_PATIENT",
                        f"Visit {visit.encounter_num} references an unknown patient",
                        index=index,
                        identifier=visit.encounter_num,
                        patient_cd=visit.patient_cd,
                        patient_num=visit.patient_num,
                    ))
                    self.sampled.warning(
                        "unresolved_visit_patient",
                        f"Skipping visit {visit.encounter_num}: patient cannot be resolved"
                    )
                    continue

                store_num = await self.store.insert_visit(owner, visit)
                summary.visits.created += 1
                summary.encounter_nums.append(store_num)
                maps.map_visit(visit.encounter_num, store_num, owner, visit.start_date)

            except StorageError as e:
                summary.visits.failed += 1
                summary.errors.append(ImportIssue.error(
                    "VISIT_PERSIST_FAILED",
                    f"Visit #{index} could not be stored: {str(e)}",
                    index=index,
                    identifier=visit.encounter_num,
                ))
                self.sampled.error("visit_failed", f"Failed to store visit {visit.encounter_num}: {str(e)}")

    async def _default_visit(self, patient_num: int, start_date: str, maps: IdentifierMaps, summary) -> int:
        """Store id of the default visit for a patient and date, creating it once."""
        key = (patient_num, start_date)
        if key in maps.default_visits:
            return maps.default_visits[key]

        visit = VisitRecord(
            encounter_num=0,
            patient_num=patient_num,
            start_date=start_date,
            location_cd=self.default_location_cd,
            inout_cd=self.default_inout_cd,
            active_status_cd=DEFAULT_VISIT_STATUS,
        )
        store_num = await self.store.insert_visit(patient_num, visit)
        maps.default_visits[key] = store_num
        maps.visit_owners[store_num] = patient_num
        maps.visit_dates[store_num] = start_date
        summary.visits.created += 1
        summary.default_visits_created += 1
        summary.encounter_nums.append(store_num)
        self.sampled.info(
            "default_visit",
            f"Created default visit {store_num} for patient {patient_num} on {start_date}"
        )
        return store_num

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    async def _persist_observations(self, observations, maps: IdentifierMaps, summary,
                                    concept_cache: dict[str, bool], target: Optional[TargetContext]) -> None:
        for index, observation in enumerate(observations):
            try:
                if not await self._concept_known(observation.concept_cd, concept_cache):
                    summary.observations.skipped += 1
                    summary.warnings.append(ImportIssue.warning(
                        "UNKNOWN_CONCEPT",
                        f"Concept {observation.concept_cd} is not in the concept dictionary; observation skipped",
                        index=index,
                        identifier=observation.observation_id,
                        concept_cd=observation.concept_cd,
                    ))
                    self.sampled.info("unknown_concept", f"Skipping observation with unknown concept {observation.concept_cd}")
                    continue

                if target is not None:
                    patient_num, encounter_num = target.patient_num, target.encounter_num
                else:
                    resolved = await self._resolve_observation_owner(observation, index, maps, summary)
                    if resolved is None:
                        continue
                    patient_num, encounter_num = resolved

                start_date = (
                    observation.start_date
                    or maps.visit_dates.get(encounter_num)
                    or date.today().isoformat()
                )
                if observation.start_date is None:
                    observation = observation.model_copy(update={"start_date": start_date})

                store_id = await self.store.insert_observation(patient_num, encounter_num, observation)
                summary.observations.created += 1
                summary.observation_ids.append(store_id)

            except StorageError as e:
                summary.observations.failed += 1
                summary.errors.append(ImportIssue.error(
                    "OBSERVATION_PERSIST_FAILED",
                    f"Observation #{index} could not be stored: {str(e)}",
                    index=index,
                    identifier=observation.observation_id,
                    concept_cd=observation.concept_cd,
                ))
                self.sampled.error(
                    "observation_failed",
                    f"Failed to store observation {observation.observation_id}: {str(e)}"
                )

    async def _resolve_observation_owner(
        self,
        observation: ObservationRecord,
        index: int,
        maps: IdentifierMaps,
        summary: PersistenceSummary,
    ) -> Optional[tuple[int, int]]:
        """(patient, visit) store ids for an observation, or None after recording an error."""
        encounter_num = None
        if observation.encounter_num is not None:
            encounter_num = maps.visits_by_source.get(observation.encounter_num)

        if encounter_num is not None:
            owner = maps.visit_owners[encounter_num]
            patient_num = await self._resolve_patient(observation.patient_cd, observation.patient_num, maps)
            if patient_num is not None and patient_num != owner:
                summary.warnings.append(ImportIssue.warning(
                    "VISIT_PATIENT_MISMATCH",
                    f"Observation {observation.observation_id} names a different patient than its visit; "
                    f"using the visit's patient",
                    index=index,
                    identifier=observation.observation_id,
                ))
            return owner, encounter_num

        patient_num = await self._resolve_patient(observation.patient_cd, observation.patient_num, maps)
        if patient_num is None:
            summary.observations.failed += 1
            summary.errors.append(ImportIssue.error(
                "UNRESOLVED_PATIENT",
                f"Observation {observation.observation_id} references an unknown patient",
                index=index,
                identifier=observation.observation_id,
                patient_cd=observation.patient_cd,
                patient_num=observation.patient_num,
            ))
            self.sampled.warning(
                "unresolved_observation_patient",
                f"Skipping observation {observation.observation_id}: patient cannot be resolved"
            )
            return None

        start_date = observation.start_date or date.today().isoformat()
        encounter_num = await self._default_visit(patient_num, start_date, maps, summary)
        return patient_num, encounter_num

    async def _concept_known(self, concept_cd: str, cache: dict[str, bool]) -> bool:
        if concept_cd not in cache:
            cache[concept_cd] = await self.concepts.concept_exists(concept_cd)
        return cache[concept_cd]

    # ------------------------------------------------------------------
    # Relaxed identifier mode
    # ------------------------------------------------------------------

    async def _bind_target(self, structure: ImportStructure, target: TargetContext,
                           maps: IdentifierMaps, summary: PersistenceSummary) -> None:
        """Map every source patient and visit onto the existing target pair.

        No patient or visit is written. A payload naming several distinct
        patients is merged into the target patient, which is reported as a
        RELAXED_MODE_MERGE warning.
        """
        if not await self.store.patient_exists(target.patient_num):
            raise StructuralImportError(
                "TARGET_NOT_FOUND",
                f"Target patient {target.patient_num} does not exist",
                {"patient_num": target.patient_num},
            )
        if not await self.store.visit_exists(target.encounter_num, target.patient_num):
            raise StructuralImportError(
                "TARGET_NOT_FOUND",
                f"Target visit {target.encounter_num} does not exist for patient {target.patient_num}",
                {"patient_num": target.patient_num, "encounter_num": target.encounter_num},
            )

        for patient in structure.patients:
            maps.map_patient(patient, target.patient_num)
        for visit in structure.visits:
            maps.map_visit(visit.encounter_num, target.encounter_num, target.patient_num, visit.start_date)

        distinct = {p.patient_cd if p.patient_cd is not None else p.patient_num for p in structure.patients}
        if len(distinct) > 1:
            summary.warnings.append(ImportIssue.warning(
                "RELAXED_MODE_MERGE",
                f"{len(distinct)} distinct source patients were merged into target patient "
                f"{target.patient_num}",
                patient_num=target.patient_num,
                encounter_num=target.encounter_num,
                source_patients=sorted(str(key) for key in distinct),
            ))
            logger.warning(
                f"Relaxed import merged {len(distinct)} source patients into patient {target.patient_num}"
            )
