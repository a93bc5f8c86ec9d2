"""Import service for Clinport.

This module wires the pipeline together: size guard, decoding, format
detection, normalization and reconciling persistence. It exposes the four
caller entry points:

- ``detect_format``: classify an input (pure)
- ``analyze``: read-only preview with counts and a recommended strategy
- ``import_content``: full import under a duplicate policy
- ``import_for_target``: relaxed identifier import into an existing
  patient/visit pair

Architecture:
    - Follows Hexagonal Architecture principles
    - Normalizers are selected from the detected format
    - Storage is reached only through ClinicalStorePort/ConceptDictionaryPort
    - Structural failures become a failed ImportResult with exactly one error
"""

import logging
import time
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from clinport.adapters.normalizers import FormatDetector, get_normalizer
from clinport.adapters.storage import DuckDBAdapter
from clinport.domain.enums import DuplicateStrategy, ImportFormat, ImportStrategy
from clinport.domain.field_mapping import FieldMapper
from clinport.domain.import_structure import ImportStructure
from clinport.domain.ports import (
    ClinicalStorePort,
    ConceptDictionaryPort,
    InputTooLargeError,
    NormalizationResult,
    StorageError,
    StructuralImportError,
    UnsupportedSourceError,
)
from clinport.domain.report import AnalysisResult, ImportIssue, ImportResult
from clinport.domain.services.reconciler import ReconcilingPersister, TargetContext
from clinport.infrastructure.config_manager import DatabaseConfig, ImportConfig, get_database_config
from clinport.infrastructure.logging_config import SampledLogger

logger = logging.getLogger(__name__)

Content = Union[str, bytes]


class ImportOptions(BaseModel):
    """Per-import options.

    Relaxed identifier mode is enabled when both target ids are set: every
    source patient and visit is collapsed onto that pair, even when the
    payload names several distinct patients.
    """

    duplicate_strategy: DuplicateStrategy = Field(DuplicateStrategy.SKIP, alias="duplicateStrategy")
    target_patient_num: Optional[int] = Field(None, alias="targetPatientId")
    target_encounter_num: Optional[int] = Field(None, alias="targetVisitId")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @property
    def relaxed(self) -> bool:
        return self.target_patient_num is not None and self.target_encounter_num is not None


def create_storage_adapter(db_config: Optional[DatabaseConfig] = None) -> DuckDBAdapter:
    """Create and initialize the storage adapter from configuration.

    Returns:
        DuckDBAdapter: Adapter with its schema initialized

    Raises:
        StorageError: If the schema cannot be initialized
    """
    db_config = db_config or get_database_config()
    logger.info(f"Initializing DuckDB adapter with path: {db_config.db_path or ':memory:'}")
    adapter = DuckDBAdapter(db_config=db_config)

    schema_result = adapter.initialize_schema()
    if not schema_result.is_success():
        logger.error(f"Failed to initialize schema: {schema_result.error}")
        raise StorageError(f"Schema initialization failed: {schema_result.error}", operation="initialize_schema")
    return adapter


class ImportService:
    """Entry point for detecting, analyzing and importing clinical data.

    Parameters:
        store: Clinical store
        concepts: Concept dictionary (defaults to ``store`` when it implements one)
        config: Import settings (size limit, default policy, default visit, sampling)
        field_mapper: Alias resolver shared by the normalizers

    Example Usage:
        ```python
        service = ImportService(create_storage_adapter())
        result = await service.import_content(data, "export.csv")
        if not result.success:
            for issue in result.errors:
                print(issue.code, issue.message)
        ```
    """

    def __init__(
        self,
        store: ClinicalStorePort,
        concepts: Optional[ConceptDictionaryPort] = None,
        config: Optional[ImportConfig] = None,
        field_mapper: Optional[FieldMapper] = None,
    ):
        if concepts is None:
            if not isinstance(store, ConceptDictionaryPort):
                raise ValueError("A concept dictionary is required when the store does not provide one")
            concepts = store
        self.store = store
        self.concepts = concepts
        self.config = config or ImportConfig()
        self.field_mapper = field_mapper or FieldMapper()
        self.detector = FormatDetector()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def detect_format(self, content: Content, filename: Optional[str] = None) -> ImportFormat:
        """Classify an input; undecodable bytes are ``unsupported``."""
        try:
            text = self._decode(content)
        except StructuralImportError:
            return ImportFormat.UNSUPPORTED
        return self.detector.detect(text, filename)

    def analyze(self, content: Content, filename: Optional[str] = None) -> AnalysisResult:
        """Preview an input without writing anything.

        Returns:
            AnalysisResult: Detected format, entity counts, recommended
            strategy (``targeted`` for at most one patient, else ``full``)
            and any errors/warnings the normalizer reported
        """
        format = ImportFormat.UNSUPPORTED
        try:
            text = self._guarded_decode(content)
            format = self.detector.detect(text, filename)
            normalized = self._normalize(text, format, filename)
        except StructuralImportError as e:
            logger.info(f"Analysis of {filename or '<unnamed>'} failed: {e.code}")
            return AnalysisResult(format=format, errors=[e.to_issue()])

        structure = normalized.structure
        counts = {
            "patients": len(structure.patients),
            "visits": len(structure.visits),
            "observations": len(structure.observations),
        }
        strategy = ImportStrategy.TARGETED if counts["patients"] <= 1 else ImportStrategy.FULL
        return AnalysisResult(
            format=format,
            counts=counts,
            recommended_strategy=strategy,
            warnings=list(normalized.warnings),
            errors=list(normalized.errors),
        )

    async def import_content(
        self,
        content: Content,
        filename: Optional[str] = None,
        options: Optional[ImportOptions] = None,
    ) -> ImportResult:
        """Normalize and persist one input.

        Parameters:
            content: Raw input (``bytes`` are decoded as UTF-8, BOM tolerated)
            filename: Original filename, used for format detection
            options: Duplicate policy and optional target pair

        Returns:
            ImportResult: ``success`` is True only when no error was recorded
            and the import was not aborted
        """
        options = options or ImportOptions(duplicate_strategy=self.config.duplicate_strategy)
        started = time.perf_counter()
        metadata = {
            "filename": filename,
            "size": self._size(content),
            "duplicateStrategy": options.duplicate_strategy.value,
            "relaxed": options.relaxed,
        }

        structure: Optional[ImportStructure] = None
        try:
            text = self._guarded_decode(content)
            format = self.detector.detect(text, filename)
            metadata["format"] = format.value
            normalized = self._normalize(text, format, filename)
            structure = normalized.structure

            target = None
            if options.relaxed:
                target = TargetContext(options.target_patient_num, options.target_encounter_num)

            persister = ReconcilingPersister(
                self.store,
                self.concepts,
                SampledLogger(logger, self.config.log_sample_burst, self.config.log_sample_every),
                default_location_cd=self.config.default_location_cd,
                default_inout_cd=self.config.default_inout_cd,
            )
            summary = await persister.persist(structure, options.duplicate_strategy, target)

        except StructuralImportError as e:
            logger.warning(f"Import of {filename or '<unnamed>'} failed: {e.code}: {str(e)}")
            metadata["durationMs"] = self._elapsed_ms(started)
            return ImportResult(success=False, structure=structure, errors=[e.to_issue()], metadata=metadata)
        except StorageError as e:
            logger.error(f"Import of {filename or '<unnamed>'} failed in storage: {str(e)}", exc_info=True)
            metadata["durationMs"] = self._elapsed_ms(started)
            return ImportResult(
                success=False,
                structure=structure,
                errors=[ImportIssue.error("IMPORT_FAILED", str(e), operation=e.operation)],
                metadata=metadata,
            )

        structure = self._with_persisted_statistics(structure, summary.default_visits_created)
        errors = list(normalized.errors) + list(summary.errors)
        warnings = list(normalized.warnings) + list(summary.warnings)
        metadata["durationMs"] = self._elapsed_ms(started)

        success = summary.success and not errors
        logger.info(
            f"Import of {filename or '<unnamed>'} finished: success={success}, "
            f"{len(errors)} errors, {len(warnings)} warnings"
        )
        return ImportResult(
            success=success,
            structure=structure,
            persistence=summary,
            errors=errors,
            warnings=warnings,
            metadata=metadata,
        )

    async def import_for_target(
        self,
        content: Content,
        filename: Optional[str],
        target_patient_num: int,
        target_encounter_num: int,
        options: Optional[ImportOptions] = None,
    ) -> ImportResult:
        """Import into an existing patient/visit pair (relaxed identifier mode).

        Every source patient and visit id is mapped onto the target pair, so a
        payload with several patients is merged into one chart. The merge is
        reported as a ``RELAXED_MODE_MERGE`` warning.
        """
        options = options or ImportOptions(duplicate_strategy=self.config.duplicate_strategy)
        options = options.model_copy(update={
            "target_patient_num": target_patient_num,
            "target_encounter_num": target_encounter_num,
        })
        return await self.import_content(content, filename, options)

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    @staticmethod
    def _size(content: Content) -> int:
        if isinstance(content, bytes):
            return len(content)
        return len(content.encode("utf-8"))

    def _guarded_decode(self, content: Content) -> str:
        """Enforce the size limit before decoding anything."""
        size = self._size(content)
        limit = self.config.max_input_bytes
        if size > limit:
            raise InputTooLargeError(size, limit)
        return self._decode(content)

    @staticmethod
    def _decode(content: Content) -> str:
        if isinstance(content, bytes):
            try:
                return content.decode("utf-8-sig")
            except UnicodeDecodeError as e:
                raise StructuralImportError("DECODE_ERROR", f"Input is not valid UTF-8: {str(e)}")
        return content.lstrip("\ufeff")

    def _normalize(self, text: str, format: ImportFormat, filename: Optional[str]) -> NormalizationResult:
        try:
            normalizer = get_normalizer(format, self.field_mapper)
        except UnsupportedSourceError:
            raise StructuralImportError(
                "UNSUPPORTED_FORMAT",
                f"Unable to detect a supported format for {filename or 'input'}",
                {"filename": filename},
            )
        logger.debug(f"Selected normalizer: {normalizer.__class__.__name__}")
        return normalizer.normalize(text, filename)

    @staticmethod
    def _with_persisted_statistics(structure: ImportStructure, default_visits: int) -> ImportStructure:
        """Statistics counting synthesized default visits alongside source visits."""
        if not default_visits:
            return structure
        statistics = structure.statistics.model_copy(
            update={"visit_count": structure.statistics.visit_count + default_visits}
        )
        return structure.model_copy(update={"statistics": statistics})

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)
