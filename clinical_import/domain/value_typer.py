"""Value Typer - resolve raw answers into typed observation slots.

``ValueTyper.resolve`` maps a value-type code and a raw value to one variant of
the ``TypedValue`` tagged union. Every branch has a fallback: values that
cannot be typed as declared degrade to ``TextValue`` holding the original
input, and the degradation is reported through ``Resolution.warning``.

Dispatch:
    N           -> NumericValue (non-numeric input degrades to text)
    T, F        -> TextValue
    B, Q, R, M  -> BlobValue (non-serializable input degrades to text)
    A           -> AnswerStrategy (default: truthy input becomes "Yes")
    S           -> SelectionValue via catalog matching (no match degrades)
    other       -> TextValue with a warning
"""

import base64
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, model_validator

from clinical_import.domain.enums import IssueKind, ValueType
from clinical_import.domain.normalizers import parse_number, scalar_text
from clinical_import.domain.ports import TerminologyPort
from clinical_import.domain.results import ImportIssue

logger = logging.getLogger(__name__)

AFFIRMATIVE_ANSWER_CODE = "SCTID: 373066001"


class SelectionOption(BaseModel):
    """One permissible labeled value of a selection catalog."""

    label: str
    value: str
    concept_path: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def default_value_to_label(cls, data: Any) -> Any:
        if isinstance(data, dict) and "label" in data:
            value = data.get("value")
            data = {
                **data,
                "label": str(data["label"]),
                "value": str(data["label"]) if value in (None, "") else str(value),
            }
        return data


@dataclass(frozen=True)
class NumericValue:
    value: float
    value_type: ValueType = ValueType.NUMERIC


@dataclass(frozen=True)
class TextValue:
    value: str
    value_type: ValueType = ValueType.TEXT


@dataclass(frozen=True)
class BlobValue:
    payload: str
    value_type: ValueType = ValueType.BLOB


@dataclass(frozen=True)
class SelectionValue:
    option: SelectionOption
    value_type: ValueType = ValueType.SELECTION


TypedValue = Union[NumericValue, TextValue, BlobValue, SelectionValue]


def observation_fields(value: TypedValue) -> dict[str, Any]:
    """Project a typed value onto the observation columns."""
    fields: dict[str, Any] = {
        "valtype_cd": value.value_type,
        "nval_num": None,
        "tval_char": None,
        "observation_blob": None,
    }
    if isinstance(value, NumericValue):
        fields["nval_num"] = value.value
    elif isinstance(value, TextValue):
        fields["tval_char"] = value.value
    elif isinstance(value, BlobValue):
        fields["observation_blob"] = value.payload
    elif isinstance(value, SelectionValue):
        fields["tval_char"] = value.option.value
    else:
        raise TypeError(f"Unsupported typed value: {type(value).__name__}")
    return fields


@dataclass(frozen=True)
class Resolution:
    """A typed value plus the warning describing any degradation."""
    value: TypedValue
    warning: Optional[ImportIssue] = None

    @property
    def degraded(self) -> bool:
        return self.warning is not None


def stringify(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, bool):
        return scalar_text(raw)
    if isinstance(raw, (dict, list)):
        return json.dumps(raw, default=str)
    if raw is None:
        return ""
    return str(raw)


def _coercion_warning(code: str, message: str, field: Optional[str], row: Optional[int]) -> ImportIssue:
    return ImportIssue.warning(code, message, IssueKind.VALUE_COERCION, field=field, row=row)


class AnswerStrategy(ABC):
    """Strategy deciding how an ``A`` (answer) value is stored."""

    @abstractmethod
    def resolve(self, raw: Any, field: Optional[str] = None, row: Optional[int] = None) -> Resolution:
        pass


class AffirmativeAnswerStrategy(AnswerStrategy):
    """Any truthy answer is stored as the canonical "Yes" code.

    This conflates "an answer was given" with "the answer is yes". Falsy input
    is kept verbatim as text and reported.
    """

    def __init__(self, affirmative_code: str = AFFIRMATIVE_ANSWER_CODE):
        self.affirmative_code = affirmative_code

    def resolve(self, raw: Any, field: Optional[str] = None, row: Optional[int] = None) -> Resolution:
        truthy = bool(raw.strip()) if isinstance(raw, str) else bool(raw)
        if truthy:
            return Resolution(TextValue(self.affirmative_code, ValueType.ANSWER))
        return Resolution(
            TextValue(stringify(raw)),
            _coercion_warning(
                "ANSWER_NOT_AFFIRMATIVE",
                f"Answer value {raw!r} is empty or falsy; stored as text",
                field,
                row,
            ),
        )


def find_matching_option(
    options: Sequence[SelectionOption], raw: Any
) -> Optional[SelectionOption]:
    """Match a raw answer against a catalog.

    Exact case-insensitive label match first, then the first option whose
    label shares the first two (lowercased) characters with the input.
    """
    search = stringify(raw).strip().lower()
    if not search:
        return None
    for option in options:
        if option.label.strip().lower() == search:
            return option
    prefix = search[:2]
    for option in options:
        if option.label.lower()[:2] == prefix:
            return option
    return None


class ValueTyper:
    """Resolve raw values into typed observation values. Never raises."""

    def __init__(self, answer_strategy: Optional[AnswerStrategy] = None):
        self.answer_strategy = answer_strategy or AffirmativeAnswerStrategy()

    def resolve(
        self,
        code: Union[ValueType, str, None],
        raw: Any,
        options: Optional[Sequence[SelectionOption]] = None,
        field: Optional[str] = None,
        row: Optional[int] = None,
    ) -> Resolution:
        """Resolve ``raw`` according to ``code``.

        Parameters:
            code: Value-type code, member or alias (``numeric``, ``date`` ...)
            raw: Source value
            options: Selection catalog (required for ``S``)
            field: Locator for warnings
            row: Locator for warnings

        Returns:
            Resolution: typed value plus optional degradation warning
        """
        value_type = code if isinstance(code, ValueType) else ValueType.parse(code)
        if value_type is None:
            return Resolution(
                TextValue(stringify(raw)),
                _coercion_warning(
                    "UNKNOWN_VALUE_TYPE",
                    f"Unknown value type {code!r}; stored as text",
                    field,
                    row,
                ),
            )

        if value_type is ValueType.NUMERIC:
            return self._numeric(raw, field, row)
        if value_type in (ValueType.TEXT, ValueType.FINDING):
            return Resolution(TextValue(stringify(raw), value_type))
        if value_type is ValueType.ANSWER:
            return self.answer_strategy.resolve(raw, field, row)
        if value_type is ValueType.SELECTION:
            return self._selection(raw, options, field, row)
        return self._blob(value_type, raw, field, row)

    def _numeric(self, raw: Any, field: Optional[str], row: Optional[int]) -> Resolution:
        number = parse_number(raw)
        if number is not None:
            return Resolution(NumericValue(number))
        return Resolution(
            TextValue(stringify(raw)),
            _coercion_warning(
                "NUMERIC_COERCION_FAILED",
                f"Value {raw!r} is not numeric; stored as text",
                field,
                row,
            ),
        )

    def _blob(self, value_type: ValueType, raw: Any, field: Optional[str], row: Optional[int]) -> Resolution:
        if isinstance(raw, str):
            return Resolution(BlobValue(raw, value_type))
        if isinstance(raw, (bytes, bytearray)):
            return Resolution(BlobValue(base64.b64encode(bytes(raw)).decode("ascii"), value_type))
        try:
            payload = json.dumps(raw, allow_nan=False)
        except (TypeError, ValueError) as e:
            return Resolution(
                TextValue(str(raw)),
                _coercion_warning(
                    "BLOB_NOT_SERIALIZABLE",
                    f"Value could not be serialized to JSON ({str(e)}); stored as text",
                    field,
                    row,
                ),
            )
        return Resolution(BlobValue(payload, value_type))

    def _selection(
        self,
        raw: Any,
        options: Optional[Sequence[SelectionOption]],
        field: Optional[str],
        row: Optional[int],
    ) -> Resolution:
        if not options:
            return Resolution(
                TextValue(stringify(raw)),
                _coercion_warning(
                    "SELECTION_OPTIONS_MISSING",
                    "Selection value has no option catalog; stored as text",
                    field,
                    row,
                ),
            )
        option = find_matching_option(options, raw)
        if option is None:
            return Resolution(
                TextValue(stringify(raw)),
                _coercion_warning(
                    "SELECTION_NO_MATCH",
                    f"Value {raw!r} matches no selection option; stored as text",
                    field,
                    row,
                ),
            )
        if option.label.strip().lower() != stringify(raw).strip().lower():
            logger.debug(f"Selection value {raw!r} matched option {option.label!r} by prefix")
        return Resolution(SelectionValue(option))


def enrich_catalog(
    options: Sequence[SelectionOption],
    terminology: Optional[TerminologyPort],
) -> tuple[list[SelectionOption], Optional[ImportIssue]]:
    """Attach terminology paths to option values.

    Lookup failures degrade to the raw codes; a single warning is returned.
    """
    if terminology is None:
        return list(options), None
    enriched: list[SelectionOption] = []
    failure: Optional[ImportIssue] = None
    for option in options:
        if option.concept_path or failure is not None:
            enriched.append(option)
            continue
        try:
            path = terminology.resolve(option.value)
        except Exception as e:
            logger.warning(f"Terminology lookup failed for {option.value!r}: {str(e)}")
            failure = ImportIssue.warning(
                "TERMINOLOGY_UNAVAILABLE",
                f"Terminology lookup failed; raw codes kept ({str(e)})",
                IssueKind.VALUE_COERCION,
            )
            enriched.append(option)
            continue
        enriched.append(option.model_copy(update={"concept_path": path}) if path else option)
    return enriched, failure
