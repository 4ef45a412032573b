"""Import Orchestrator.

Single entry point wiring detection, parsing, validation, value typing,
transformation and optional persistence:

    raw bytes -> detect -> decode -> parse -> validate -> transform
              -> (BulkImporter) -> ImportResult

Architecture:
    - Depends only on ports (storage, terminology) and domain services
    - Expected failures never raise: every problem becomes an ``ImportIssue``
      on the returned ``ImportResult``
    - Per-call ``ImportOptions`` override ``ImportConfig`` defaults
    - No state is kept between calls
"""

import logging
from datetime import date
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from clinical_import.adapters.detectors import DetectionResult, decode_content, detect
from clinical_import.adapters.parsers import get_parser
from clinical_import.domain.enums import DuplicateHandling, Hl7Assignment, ImportFormat, IssueKind, TransactionMode
from clinical_import.domain.guardrails import CancellationToken
from clinical_import.domain.ports import ImportCancelledError, StoragePort, TerminologyPort, TransformationError
from clinical_import.domain.results import ImportIssue, ImportResult
from clinical_import.domain.transformer import CanonicalTransformer, parse_options, strategy_for
from clinical_import.domain.validators import DocumentValidator
from clinical_import.domain.value_typer import SelectionOption, ValueTyper, enrich_catalog
from clinical_import.infrastructure.config_manager import ImportConfig
from clinical_import.infrastructure.logging_config import import_context
from clinical_import.services.bulk_importer import BulkImporter

logger = logging.getLogger(__name__)


class ImportOptions(BaseModel):
    """Per-call options; unset fields fall back to ``ImportConfig``.

    Accepts both snake_case and the camelCase keys used by callers
    (``validateData``, ``duplicateHandling``, ``batchSize``,
    ``transactionMode``).
    """

    validate_data: Optional[bool] = Field(None, alias="validateData")
    duplicate_handling: Optional[DuplicateHandling] = Field(None, alias="duplicateHandling")
    batch_size: Optional[int] = Field(None, alias="batchSize", ge=1)
    transaction_mode: Optional[TransactionMode] = Field(None, alias="transactionMode")
    hl7_assignment: Optional[Hl7Assignment] = Field(None, alias="hl7Assignment")
    patient_cd: Optional[str] = Field(None, alias="patientCd")
    selection_catalogs: dict[str, list[SelectionOption]] = Field(default_factory=dict, alias="selectionCatalogs")
    persist: bool = True

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("selection_catalogs", mode="before")
    @classmethod
    def coerce_catalogs(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): parse_options(options) if isinstance(options, list) else options for k, options in v.items()}
        return v

    def resolved(self, config: ImportConfig) -> "ImportOptions":
        """Fill unset fields from configuration defaults."""
        defaults = {
            "validate_data": config.validate_data,
            "duplicate_handling": config.duplicate_handling,
            "batch_size": config.batch_size,
            "transaction_mode": config.transaction_mode,
            "hl7_assignment": config.hl7_assignment,
        }
        return self.model_copy(update={
            key: value for key, value in defaults.items()
            if key not in self.model_fields_set or getattr(self, key) is None
        })


OptionsLike = Union[ImportOptions, Mapping[str, Any], None]


class ImportOrchestrator:
    """Run imports end to end.

    Parameters:
        config: Import defaults (file-size limit, retry, duplicate policy)
        storage: Optional storage collaborator; without it nothing is persisted
        terminology: Optional terminology collaborator for catalog enrichment
        value_typer: Value typer (default answer strategy when omitted)
        today: Fixed date for visits lacking a start date

    Example Usage:
        ```python
        orchestrator = ImportOrchestrator(storage=DuckDBStorageAdapter(db_path=":memory:"))
        result = await orchestrator.import_file(raw_bytes, "export.csv", {"duplicateHandling": "skip"})
        if not result.success:
            for issue in result.errors:
                print(issue.code, issue.message)
        ```
    """

    def __init__(
        self,
        config: Optional[ImportConfig] = None,
        storage: Optional[StoragePort] = None,
        terminology: Optional[TerminologyPort] = None,
        value_typer: Optional[ValueTyper] = None,
        today: Optional[date] = None,
    ):
        self.config = config or ImportConfig()
        self.storage = storage
        self.terminology = terminology
        self.value_typer = value_typer or ValueTyper()
        self.today = today

    @staticmethod
    def _options(options: OptionsLike) -> ImportOptions:
        if options is None:
            return ImportOptions()
        if isinstance(options, ImportOptions):
            return options
        return ImportOptions.model_validate(dict(options))

    async def import_file(
        self,
        raw: Union[bytes, str],
        filename: Optional[str] = None,
        options: OptionsLike = None,
        cancel_token: Optional[CancellationToken] = None,
        expected_format: Optional[ImportFormat] = None,
    ) -> ImportResult:
        """Import one file.

        Parameters:
            raw: File content as bytes or already-decoded text
            filename: Declared filename (extension is a detection hint)
            options: ``ImportOptions`` or a mapping of option keys
            cancel_token: Cooperative cancellation token
            expected_format: Reject content detected as another format

        Returns:
            ImportResult: success flag, canonical data, errors and warnings
        """
        with import_context(filename=filename or "<input>"):
            return await self._import(raw, filename, options, cancel_token, expected_format)

    async def _import(
        self,
        raw: Union[bytes, str],
        filename: Optional[str],
        options: OptionsLike,
        cancel_token: Optional[CancellationToken],
        expected_format: Optional[ImportFormat],
    ) -> ImportResult:
        try:
            opts = self._options(options).resolved(self.config)
        except ValidationError as e:
            return self._fail(ImportFormat.UNKNOWN, filename, "INVALID_OPTIONS", f"Invalid import options: {e}", IssueKind.FORMAT)

        size = len(raw.encode("utf-8")) if isinstance(raw, str) else len(raw)
        if size > self.config.max_file_size:
            return self._fail(
                ImportFormat.UNKNOWN,
                filename,
                "FILE_TOO_LARGE",
                f"File size {size} bytes exceeds limit of {self.config.max_file_size} bytes",
                IssueKind.FORMAT,
            )

        detection = detect(raw, filename)
        logger.info(f"Detected {detection.format.value} for {filename or '<input>'} ({detection.reason})")
        if not detection.is_known or detection.format not in self.config.supported_formats:
            return self._fail(
                detection.format,
                filename,
                "UNSUPPORTED_FORMAT",
                f"Unsupported or unrecognized format: {detection.reason}",
                IssueKind.FORMAT,
            )
        if expected_format is not None and detection.format is not expected_format:
            return self._fail(
                detection.format,
                filename,
                "UNSUPPORTED_FORMAT",
                f"Expected {expected_format.value} content, detected {detection.format.value}",
                IssueKind.FORMAT,
            )

        text = decode_content(raw)
        if text is None:
            return self._fail(detection.format, filename, "DECODE_ERROR", "Content could not be decoded", IssueKind.FORMAT)

        with import_context(format=detection.format.value):
            result = self._run(text, filename, detection, opts, cancel_token)
            if result.success and self.storage is not None and opts.persist:
                await self._persist(result, opts, cancel_token)
        return result

    def _run(
        self,
        text: str,
        filename: Optional[str],
        detection: DetectionResult,
        opts: ImportOptions,
        cancel_token: Optional[CancellationToken],
    ) -> ImportResult:
        fmt = detection.format
        errors: list[ImportIssue] = []
        warnings: list[ImportIssue] = []

        parsed = get_parser(fmt, delimiter=detection.delimiter, csv_variant=detection.csv_variant).parse(text, filename)
        if parsed.is_failure():
            kind = (parsed.error_details or {}).get("kind", IssueKind.FORMAT)
            errors.append(ImportIssue.error(parsed.error_type, parsed.error, kind))
            return ImportResult.from_issues(format=fmt, filename=filename, errors=errors, warnings=warnings)
        document = parsed.value

        report = DocumentValidator(patient_cd=opts.patient_cd).validate(document, business=opts.validate_data)
        errors.extend(report.errors)
        warnings.extend(report.warnings)
        if not report.is_valid:
            logger.info(f"Validation failed for {filename or '<input>'}: {[e.code for e in report.errors if e.fatal]}")
            return ImportResult.from_issues(format=fmt, filename=filename, errors=errors, warnings=warnings)

        catalogs: dict[str, list[SelectionOption]] = {}
        for concept, options in opts.selection_catalogs.items():
            enriched, issue = enrich_catalog(options, self.terminology)
            catalogs[concept] = enriched
            if issue is not None and not any(w.code == issue.code for w in warnings):
                warnings.append(issue)

        transformer = CanonicalTransformer(
            value_typer=self.value_typer,
            hl7_strategy=strategy_for(opts.hl7_assignment),
            selection_catalogs=catalogs,
            patient_cd=opts.patient_cd,
            today=self.today,
            cancel_token=cancel_token,
        )
        try:
            outcome = transformer.transform(document, filename)
        except ImportCancelledError as e:
            errors.append(ImportIssue.error("IMPORT_CANCELLED", str(e), IssueKind.FORMAT))
            return ImportResult.from_issues(format=fmt, filename=filename, errors=errors, warnings=warnings)
        except TransformationError as e:
            logger.error(f"Transformation failed for {filename or '<input>'}: {str(e)}", exc_info=True)
            errors.append(ImportIssue.error("IMPORT_FAILED", f"Transformation failed: {str(e)}", IssueKind.INVARIANT, fatal=True))
            return ImportResult.from_issues(format=fmt, filename=filename, errors=errors, warnings=warnings)

        errors.extend(outcome.errors)
        warnings.extend(outcome.warnings)
        return ImportResult.from_issues(
            format=fmt, filename=filename, errors=errors, warnings=warnings, data=outcome.structure,
        )

    async def _persist(
        self,
        result: ImportResult,
        opts: ImportOptions,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        importer = BulkImporter(
            self.storage,
            retry_policy=self.config.retry_policy(),
            duplicate_handling=opts.duplicate_handling,
            transaction_mode=opts.transaction_mode,
            batch_size=opts.batch_size,
        )
        persistence = await importer.import_structure(result.data, cancel_token)
        result.persistence = persistence
        result.errors.extend(persistence.errors)
        result.warnings.extend(persistence.warnings)
        result.statistics["errorCount"] = len(result.errors)
        result.statistics["warningCount"] = len(result.warnings)
        if not persistence.success:
            result.success = False

    @staticmethod
    def _fail(fmt: ImportFormat, filename: Optional[str], code: str, message: str, kind: IssueKind) -> ImportResult:
        logger.warning(f"Import of {filename or '<input>'} rejected: {code}", extra={"code": code})
        return ImportResult.from_issues(
            format=fmt,
            filename=filename,
            errors=[ImportIssue.error(code, message, kind)],
            warnings=[],
        )

    # ---------------------------------------------------------- entry points

    async def import_from_csv(self, raw, filename: Optional[str] = None, options: OptionsLike = None,
                              cancel_token: Optional[CancellationToken] = None) -> ImportResult:
        return await self.import_file(raw, filename or "import.csv", options, cancel_token, ImportFormat.CSV)

    async def import_from_json(self, raw, filename: Optional[str] = None, options: OptionsLike = None,
                               cancel_token: Optional[CancellationToken] = None) -> ImportResult:
        return await self.import_file(raw, filename or "import.json", options, cancel_token, ImportFormat.JSON)

    async def import_from_hl7(self, raw, filename: Optional[str] = None, options: OptionsLike = None,
                              cancel_token: Optional[CancellationToken] = None) -> ImportResult:
        return await self.import_file(raw, filename or "import.hl7", options, cancel_token, ImportFormat.HL7)

    async def import_from_html(self, raw, filename: Optional[str] = None, options: OptionsLike = None,
                               cancel_token: Optional[CancellationToken] = None) -> ImportResult:
        return await self.import_file(raw, filename or "import.html", options, cancel_token, ImportFormat.HTML)

    async def import_for_patient(
        self,
        raw: Union[bytes, str],
        filename: Optional[str],
        patient_cd: str,
        options: OptionsLike = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ImportResult:
        """Import a file whose patient identity is supplied out-of-band.

        The identity is used for HTML surveys that carry no patient block.
        """
        opts = self._options(options).model_copy(update={"patient_cd": patient_cd})
        return await self.import_file(raw, filename, opts, cancel_token)
