"""Issue envelope and result types returned to import callers.

Every error and warning is an ``ImportIssue`` with a machine-stable ``code``,
a human message and optional row/field locators, so callers can render
feedback without inspecting stack traces.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from clinical_import.domain.enums import ImportFormat, IssueKind
from clinical_import.domain.import_structure import ImportStructure

# Kinds that abort an import unless the issue is created explicitly non-fatal.
FATAL_KINDS = frozenset({IssueKind.FORMAT, IssueKind.STRUCTURAL, IssueKind.STORAGE})


class ImportIssue(BaseModel):
    """One error or warning produced while importing."""

    code: str
    message: str
    kind: IssueKind
    fatal: bool = False
    field: Optional[str] = None
    row: Optional[int] = None
    timestamp: datetime = Field(default_factory=datetime.now)
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def error(
        cls,
        code: str,
        message: str,
        kind: IssueKind,
        *,
        fatal: Optional[bool] = None,
        field: Optional[str] = None,
        row: Optional[int] = None,
        **details: Any,
    ) -> "ImportIssue":
        """Create an error; fatality defaults from the kind."""
        return cls(
            code=code,
            message=message,
            kind=kind,
            fatal=(kind in FATAL_KINDS) if fatal is None else fatal,
            field=field,
            row=row,
            details=details,
        )

    @classmethod
    def warning(
        cls,
        code: str,
        message: str,
        kind: IssueKind,
        *,
        field: Optional[str] = None,
        row: Optional[int] = None,
        **details: Any,
    ) -> "ImportIssue":
        return cls(
            code=code,
            message=message,
            kind=kind,
            fatal=False,
            field=field,
            row=row,
            details=details,
        )

    def to_envelope(self) -> dict[str, Any]:
        """Caller-facing shape: ``{code, message, field?, row?}``."""
        envelope: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.field is not None:
            envelope["field"] = self.field
        if self.row is not None:
            envelope["row"] = self.row
        return envelope


class ValidationReport(BaseModel):
    """Outcome of a validator pass. Validators never mutate documents."""

    errors: list[ImportIssue] = Field(default_factory=list)
    warnings: list[ImportIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not any(issue.fatal for issue in self.errors)

    def merge(self, other: "ValidationReport") -> "ValidationReport":
        return ValidationReport(
            errors=[*self.errors, *other.errors],
            warnings=[*self.warnings, *other.warnings],
        )


class TableCounts(BaseModel):
    inserted: int = 0
    updated: int = 0
    skipped: int = 0


class BulkImportResult(BaseModel):
    """Summary of one BulkImporter run."""

    success: bool
    patients: TableCounts = Field(default_factory=TableCounts)
    visits: TableCounts = Field(default_factory=TableCounts)
    observations: TableCounts = Field(default_factory=TableCounts)
    duplicates: int = 0
    attempts: int = 0
    transactions: int = 0
    errors: list[ImportIssue] = Field(default_factory=list)
    warnings: list[ImportIssue] = Field(default_factory=list)


class ImportResult(BaseModel):
    """Uniform result envelope for every import entry point."""

    success: bool
    format: ImportFormat = ImportFormat.UNKNOWN
    filename: Optional[str] = None
    data: Optional[ImportStructure] = None
    errors: list[ImportIssue] = Field(default_factory=list)
    warnings: list[ImportIssue] = Field(default_factory=list)
    statistics: dict[str, int] = Field(default_factory=dict)
    persistence: Optional[BulkImportResult] = None

    @classmethod
    def from_issues(
        cls,
        *,
        format: ImportFormat,
        filename: Optional[str],
        errors: list[ImportIssue],
        warnings: list[ImportIssue],
        data: Optional[ImportStructure] = None,
    ) -> "ImportResult":
        success = data is not None and not any(issue.fatal for issue in errors)
        statistics = {"patientCount": 0, "visitCount": 0, "observationCount": 0}
        if data is not None:
            statistics = {
                "patientCount": data.statistics.patient_count,
                "visitCount": data.statistics.visit_count,
                "observationCount": data.statistics.observation_count,
            }
        statistics["errorCount"] = len(errors)
        statistics["warningCount"] = len(warnings)
        return cls(
            success=success,
            format=format,
            filename=filename,
            data=data if success else None,
            errors=errors,
            warnings=warnings,
            statistics=statistics,
        )

    def has_error(self, code: str) -> bool:
        return any(issue.code == code for issue in self.errors)

    def has_warning(self, code: str) -> bool:
        return any(issue.code == code for issue in self.warnings)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the caller-facing envelope."""
        payload: dict[str, Any] = {
            "success": self.success,
            "format": self.format.value,
            "filename": self.filename,
            "data": self.data.to_dict() if self.data is not None else None,
            "errors": [issue.to_envelope() for issue in self.errors],
            "warnings": [issue.to_envelope() for issue in self.warnings],
            "statistics": self.statistics,
        }
        if self.persistence is not None:
            payload["persistence"] = self.persistence.model_dump(
                mode="json", exclude={"errors", "warnings"}
            )
        return payload
