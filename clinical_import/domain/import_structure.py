"""Canonical Import Structure.

This module defines the canonical, format-independent models produced by every
parser/transformer pair: patients, visits, observations and the
``ImportStructure`` envelope carrying metadata and statistics.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Models are immutable once constructed (surrogate keys never change)
    - Attribute names are snake_case; aliases mirror the persisted column
      names, so ``model_dump(by_alias=True)`` yields a table row
    - Structural invariants (counts, references, value slots) are enforced
      by model validators at construction time
"""

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from clinical_import.domain.enums import InOutCode, ValueSlot, ValueType
from clinical_import.domain.normalizers import scalar_text

DEFAULT_PROVIDER_ID = "@"
DEFAULT_UPLOAD_ID = 1


def _entity_config() -> ConfigDict:
    return ConfigDict(
        frozen=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        use_enum_values=False,
    )


class Patient(BaseModel):
    """Patient dimension row.

    Parameters:
        patient_num: Surrogate key assigned by the transformer
        patient_cd: Source identity code (required, non-empty)
        sex_cd: Normalized sex code (M/F/U or source value)
        age_in_years: Age, non-negative when present
        birth_date: Date of birth
        vital_status_cd: Vital status terminology code
        patient_blob: Free-form JSON text
        sourcesystem_cd: Source-system tag
        upload_id: Upload batch identifier
    """

    patient_num: int = Field(..., alias="PATIENT_NUM", ge=1)
    patient_cd: str = Field(..., alias="PATIENT_CD", min_length=1)
    sex_cd: Optional[str] = Field(None, alias="SEX_CD")
    age_in_years: Optional[int] = Field(None, alias="AGE_IN_YEARS", ge=0)
    birth_date: Optional[date] = Field(None, alias="BIRTH_DATE")
    vital_status_cd: Optional[str] = Field(None, alias="VITAL_STATUS_CD")
    patient_blob: Optional[str] = Field(None, alias="PATIENT_BLOB")
    sourcesystem_cd: Optional[str] = Field(None, alias="SOURCESYSTEM_CD")
    upload_id: Optional[int] = Field(DEFAULT_UPLOAD_ID, alias="UPLOAD_ID")

    model_config = _entity_config()

    @field_validator("sex_cd", "vital_status_cd", "sourcesystem_cd", mode="before")
    @classmethod
    def codes_as_text(cls, v: Any) -> Any:
        return scalar_text(v)


class Visit(BaseModel):
    """Visit dimension row.

    An end date earlier than the start date is tolerated here; validators
    report it as a business-rule warning.
    """

    encounter_num: int = Field(..., alias="ENCOUNTER_NUM", ge=1)
    patient_num: int = Field(..., alias="PATIENT_NUM", ge=1)
    start_date: date = Field(..., alias="START_DATE")
    end_date: Optional[date] = Field(None, alias="END_DATE")
    location_cd: Optional[str] = Field(None, alias="LOCATION_CD")
    inout_cd: InOutCode = Field(InOutCode.OUTPATIENT, alias="INOUT_CD")
    visit_blob: Optional[str] = Field(None, alias="VISIT_BLOB")
    active_status_cd: Optional[str] = Field(None, alias="ACTIVE_STATUS_CD")
    sourcesystem_cd: Optional[str] = Field(None, alias="SOURCESYSTEM_CD")
    upload_id: Optional[int] = Field(DEFAULT_UPLOAD_ID, alias="UPLOAD_ID")

    model_config = _entity_config()

    @field_validator("location_cd", "active_status_cd", "sourcesystem_cd", mode="before")
    @classmethod
    def codes_as_text(cls, v: Any) -> Any:
        return scalar_text(v)

    @property
    def has_inverted_dates(self) -> bool:
        return self.end_date is not None and self.end_date < self.start_date


class Observation(BaseModel):
    """Observation fact row.

    Exactly one of ``nval_num``, ``tval_char`` and ``observation_blob`` is
    populated, and it is the slot the value type maps to.
    """

    observation_id: int = Field(..., alias="OBSERVATION_ID", ge=1)
    encounter_num: int = Field(..., alias="ENCOUNTER_NUM", ge=1)
    patient_num: int = Field(..., alias="PATIENT_NUM", ge=1)
    concept_cd: str = Field(..., alias="CONCEPT_CD", min_length=1)
    category_char: Optional[str] = Field(None, alias="CATEGORY_CHAR")
    valtype_cd: ValueType = Field(..., alias="VALTYPE_CD")
    nval_num: Optional[float] = Field(None, alias="NVAL_NUM")
    tval_char: Optional[str] = Field(None, alias="TVAL_CHAR")
    observation_blob: Optional[str] = Field(None, alias="OBSERVATION_BLOB")
    unit_cd: Optional[str] = Field(None, alias="UNIT_CD")
    start_date: Optional[date] = Field(None, alias="START_DATE")
    instance_num: int = Field(1, alias="INSTANCE_NUM", ge=1)
    provider_id: str = Field(DEFAULT_PROVIDER_ID, alias="PROVIDER_ID")
    sourcesystem_cd: Optional[str] = Field(None, alias="SOURCESYSTEM_CD")
    upload_id: Optional[int] = Field(DEFAULT_UPLOAD_ID, alias="UPLOAD_ID")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @field_validator("concept_cd", "category_char", "unit_cd", "provider_id", "sourcesystem_cd", mode="before")
    @classmethod
    def codes_as_text(cls, v: Any) -> Any:
        return scalar_text(v)

    @field_validator("concept_cd")
    @classmethod
    def strip_concept(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("concept code must not be blank")
        return v

    @model_validator(mode="after")
    def check_value_slot(self) -> "Observation":
        populated = [
            slot for slot in ValueSlot
            if getattr(self, slot.value) is not None
        ]
        if len(populated) != 1:
            raise ValueError(
                f"observation {self.observation_id} must populate exactly one value slot, "
                f"found {[slot.value for slot in populated]}"
            )
        expected = ValueType(self.valtype_cd).slot
        if populated[0] is not expected:
            raise ValueError(
                f"observation {self.observation_id} of type {self.valtype_cd.value} "
                f"must use {expected.value}, not {populated[0].value}"
            )
        return self


class ImportMetadata(BaseModel):
    """Descriptive metadata; counts and patient ids are derived, not trusted."""

    title: str = "Clinical Data Import"
    source: Optional[str] = None
    author: Optional[str] = None
    format: str
    export_date: Optional[str] = Field(None, alias="exportDate")
    filename: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    patient_count: int = Field(0, alias="patientCount", ge=0)
    visit_count: int = Field(0, alias="visitCount", ge=0)
    observation_count: int = Field(0, alias="observationCount", ge=0)
    patient_ids: list[str] = Field(default_factory=list, alias="patientIds")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class ExportInfo(BaseModel):
    """Provenance only; never interpreted by the pipeline."""

    format: str
    version: str = "1.0"
    exported_at: datetime = Field(default_factory=datetime.now, alias="exportedAt")
    source: str = "Import Service"

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class ImportStatistics(BaseModel):
    patient_count: int = Field(0, alias="patientCount", ge=0)
    visit_count: int = Field(0, alias="visitCount", ge=0)
    observation_count: int = Field(0, alias="observationCount", ge=0)
    fetched_at: datetime = Field(default_factory=datetime.now, alias="fetchedAt")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class ImportStructure(BaseModel):
    """Canonical output of one import call.

    Construction validates that statistics mirror the data, patient codes and
    surrogate keys are unique, and every visit/observation reference
    resolves within the same structure. Use ``assemble`` to derive the
    counted fields instead of supplying them by hand.
    """

    metadata: ImportMetadata
    export_info: ExportInfo = Field(..., alias="exportInfo")
    patients: list[Patient] = Field(default_factory=list)
    visits: list[Visit] = Field(default_factory=list)
    observations: list[Observation] = Field(default_factory=list)
    statistics: ImportStatistics

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @model_validator(mode="after")
    def check_invariants(self) -> "ImportStructure":
        counts = (len(self.patients), len(self.visits), len(self.observations))
        stats = (
            self.statistics.patient_count,
            self.statistics.visit_count,
            self.statistics.observation_count,
        )
        meta = (
            self.metadata.patient_count,
            self.metadata.visit_count,
            self.metadata.observation_count,
        )
        if stats != counts:
            raise ValueError(f"statistics {stats} do not match data counts {counts}")
        if meta != counts:
            raise ValueError(f"metadata counts {meta} do not match data counts {counts}")

        codes = [p.patient_cd for p in self.patients]
        if len(set(codes)) != len(codes):
            raise ValueError("patient codes must be unique within one import")
        if list(self.metadata.patient_ids) != codes:
            raise ValueError("metadata patient ids must list patient codes in order")

        patient_keys = {p.patient_num for p in self.patients}
        if len(patient_keys) != len(self.patients):
            raise ValueError("patient surrogate keys must be unique")

        visit_owner: dict[int, int] = {}
        for visit in self.visits:
            if visit.encounter_num in visit_owner:
                raise ValueError(f"duplicate encounter key {visit.encounter_num}")
            if visit.patient_num not in patient_keys:
                raise ValueError(
                    f"visit {visit.encounter_num} references unknown patient {visit.patient_num}"
                )
            visit_owner[visit.encounter_num] = visit.patient_num

        seen_observations: set[int] = set()
        for obs in self.observations:
            if obs.observation_id in seen_observations:
                raise ValueError(f"duplicate observation id {obs.observation_id}")
            seen_observations.add(obs.observation_id)
            owner = visit_owner.get(obs.encounter_num)
            if owner is None:
                raise ValueError(
                    f"observation {obs.observation_id} references unknown visit {obs.encounter_num}"
                )
            if owner != obs.patient_num:
                raise ValueError(
                    f"observation {obs.observation_id} patient {obs.patient_num} "
                    f"does not own visit {obs.encounter_num}"
                )
        return self

    @classmethod
    def assemble(
        cls,
        *,
        format: str,
        patients: list[Patient],
        visits: list[Visit],
        observations: list[Observation],
        title: Optional[str] = None,
        source: Optional[str] = None,
        author: Optional[str] = None,
        export_date: Optional[str] = None,
        filename: Optional[str] = None,
        version: Optional[str] = None,
        description: Optional[str] = None,
        export_source: str = "Import Service",
    ) -> "ImportStructure":
        """Build a structure, deriving counts, patient ids and provenance."""
        now = datetime.now()
        metadata = ImportMetadata(
            title=title or "Clinical Data Import",
            source=source,
            author=author,
            format=format,
            export_date=export_date,
            filename=filename,
            version=version,
            description=description,
            patient_count=len(patients),
            visit_count=len(visits),
            observation_count=len(observations),
            patient_ids=[p.patient_cd for p in patients],
        )
        return cls(
            metadata=metadata,
            export_info=ExportInfo(format=format, exported_at=now, source=export_source),
            patients=patients,
            visits=visits,
            observations=observations,
            statistics=ImportStatistics(
                patient_count=len(patients),
                visit_count=len(visits),
                observation_count=len(observations),
                fetched_at=now,
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the nested export layout (``data.patients`` etc.)."""
        dumped = self.model_dump(mode="json", by_alias=True)
        return {
            "metadata": dumped["metadata"],
            "exportInfo": dumped["exportInfo"],
            "data": {
                "patients": dumped["patients"],
                "visits": dumped["visits"],
                "observations": dumped["observations"],
            },
            "statistics": dumped["statistics"],
        }
