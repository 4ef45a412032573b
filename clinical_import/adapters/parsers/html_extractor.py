"""HTML Survey Extractor.

Recovers an embedded clinical document from an HTML page without a DOM
parser. Extraction strategies are tried in order and the first success wins:

    1. ``<script>`` bodies: object literals assigned to a variable or a
       ``window.*`` property, narrowed to the innermost balanced ``{...}``
       span enclosing a ``"cda"`` or domain-marker key
    2. any other element content (entities unescaped): the same search over
       bare JSON objects
    3. nothing parsed: ``None``

Malformed JSON at a location only means "no usable data there"; strategies
return ``Result`` failures instead of raising.
"""

import html
import json
import logging
import re
from typing import Any, Callable, Iterator, Optional, Sequence

from clinical_import.domain.documents import SurveyDocument, SurveyResponse
from clinical_import.domain.enums import ImportFormat
from clinical_import.domain.ports import DocumentParser, Result

logger = logging.getLogger(__name__)

CDA_KEY = "cda"
DOMAIN_MARKER_KEYS = ("questionnaire", "responses", "patient")

_SCRIPT_BLOCK = re.compile(r"<script\b[^>]*>(.*?)</script\s*>", re.IGNORECASE | re.DOTALL)
_STYLE_BLOCK = re.compile(r"<style\b[^>]*>.*?</style\s*>", re.IGNORECASE | re.DOTALL)
_TITLE = re.compile(r"<title\b[^>]*>(.*?)</title\s*>", re.IGNORECASE | re.DOTALL)
_HTML_SHELL = re.compile(r"<\s*(html|body|head)\b", re.IGNORECASE)
_ASSIGNMENT = re.compile(
    r"(?:\b(?:var|let|const)\s+[\w$]+|\bwindow(?:\.[\w$]+|\[\s*['\"][^'\"]+['\"]\s*\])+)\s*=\s*(?=\{)"
)
_MARKER = re.compile(r'"(%s)"\s*:' % "|".join((CDA_KEY,) + DOMAIN_MARKER_KEYS))

ExtractionStrategy = Callable[[str], Result[str]]


def balanced_spans(text: str) -> list[tuple[int, int]]:
    """Return ``(start, end)`` spans of every balanced ``{...}`` in ``text``.

    Braces inside single- or double-quoted strings are ignored; backslash
    escapes are honored. Unbalanced braces produce no span.
    """
    spans: list[tuple[int, int]] = []
    stack: list[int] = []
    quote: Optional[str] = None
    escaped = False
    for position, char in enumerate(text):
        if quote is not None:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
        elif char == "{":
            stack.append(position)
        elif char == "}" and stack:
            spans.append((stack.pop(), position + 1))
    return spans


def is_clinical_document(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    if isinstance(value.get(CDA_KEY), dict):
        return True
    return any(key in value for key in DOMAIN_MARKER_KEYS)


def candidate_objects(text: str) -> Iterator[str]:
    """Yield JSON object candidates around marker keys, ``"cda"`` first.

    For each marker the innermost enclosing balanced span is produced; spans
    of assignment right-hand sides follow as a fallback.
    """
    spans = balanced_spans(text)
    markers = sorted(
        _MARKER.finditer(text),
        key=lambda m: (m.group(1) != CDA_KEY, m.start()),
    )
    seen: set[tuple[int, int]] = set()
    for marker in markers:
        enclosing = [span for span in spans if span[0] < marker.start() < span[1]]
        if not enclosing:
            continue
        innermost = min(enclosing, key=lambda span: span[1] - span[0])
        if innermost not in seen:
            seen.add(innermost)
            yield text[innermost[0]:innermost[1]]
    by_start = {start: (start, end) for start, end in spans}
    for assignment in _ASSIGNMENT.finditer(text):
        span = by_start.get(assignment.end())
        if span is not None and span not in seen:
            seen.add(span)
            yield text[span[0]:span[1]]


def _first_document(text: str) -> Optional[str]:
    for candidate in candidate_objects(text):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if is_clinical_document(parsed):
            return candidate
    return None


def script_assignment_strategy(page: str) -> Result[str]:
    """Strategy 1: object literals inside ``<script>`` bodies."""
    for body in _SCRIPT_BLOCK.findall(page):
        found = _first_document(body)
        if found is not None:
            return Result.success_result(found)
    return Result.failure_result("No clinical document in script blocks", error_type="NO_SCRIPT_DOCUMENT")


def element_content_strategy(page: str) -> Result[str]:
    """Strategy 2: bare JSON objects anywhere outside scripts and styles."""
    remainder = _STYLE_BLOCK.sub(" ", _SCRIPT_BLOCK.sub(" ", page))
    found = _first_document(html.unescape(remainder))
    if found is not None:
        return Result.success_result(found)
    return Result.failure_result("No clinical document in element content", error_type="NO_ELEMENT_DOCUMENT")


DEFAULT_STRATEGIES: tuple[tuple[str, ExtractionStrategy], ...] = (
    ("script_assignment", script_assignment_strategy),
    ("element_content", element_content_strategy),
)


def first_success(
    strategies: Sequence[tuple[str, ExtractionStrategy]], page: str
) -> Result[tuple[str, str]]:
    """Evaluate strategies in order; return ``(name, text)`` of the first success."""
    failures: list[str] = []
    for name, strategy in strategies:
        outcome = strategy(page)
        if outcome.is_success():
            return Result.success_result((name, outcome.value))
        failures.append(f"{name}: {outcome.error}")
    return Result.failure_result(
        "No embedded clinical document found",
        error_type="NO_CDA_FOUND",
        error_details={"attempts": failures},
    )


def extract_cda_from_html(
    page: str,
    strategies: Sequence[tuple[str, ExtractionStrategy]] = DEFAULT_STRATEGIES,
) -> Optional[str]:
    """Return the embedded document's JSON text, or None. Never raises."""
    if not page or not page.strip():
        return None
    outcome = first_success(strategies, page)
    return outcome.value[1] if outcome.is_success() else None


def parse_cda_data(text: str) -> Result[dict]:
    """Parse extracted text, unwrapping ``{"cda": {...}}`` transparently."""
    try:
        payload = json.loads(text)
    except ValueError as e:
        return Result.failure_result(f"Invalid CDA JSON: {str(e)}", error_type="INVALID_CDA_DATA")
    if not isinstance(payload, dict):
        return Result.failure_result("CDA data must be a JSON object", error_type="INVALID_CDA_DATA")
    inner = payload.get(CDA_KEY)
    if isinstance(inner, dict):
        return Result.success_result(inner)
    return Result.success_result(payload)


def _first_dict(*values: Any) -> Optional[dict]:
    for value in values:
        if isinstance(value, dict):
            return value
    return None


def _raw_responses(cda: dict, questionnaire: Optional[dict]) -> Optional[list]:
    for candidate in (cda.get("responses"), cda.get("answers")):
        if isinstance(candidate, list):
            return candidate
    sections = cda.get("section")
    if isinstance(sections, list) and sections and isinstance(sections[0], dict):
        entries = sections[0].get("entry")
        if isinstance(entries, list):
            return entries
    if questionnaire is not None:
        for key in ("responses", "answers"):
            if isinstance(questionnaire.get(key), list):
                return questionnaire[key]
    return None


def _response_code(item: dict) -> Optional[str]:
    code = item.get("code")
    if isinstance(code, (str, int)) and not isinstance(code, bool):
        return str(code)
    for key in ("questionCode", "linkId", "conceptCode"):
        if item.get(key) not in (None, ""):
            return str(item[key])
    codings = code if isinstance(code, list) else [code] if isinstance(code, dict) else []
    for coding_holder in codings:
        if isinstance(coding_holder, dict):
            coding = coding_holder.get("coding")
            if isinstance(coding, list) and coding and isinstance(coding[0], dict) and coding[0].get("code"):
                return str(coding[0]["code"])
            if coding_holder.get("code"):
                return str(coding_holder["code"])
    return None


def _response_value(item: dict) -> Any:
    for key in ("value", "answer", "response", "valueString", "valueInteger", "valueDecimal", "valueBoolean"):
        if key in item:
            return item[key]
    return None


def to_response(index: int, item: Any) -> SurveyResponse:
    if not isinstance(item, dict):
        return SurveyResponse(index=index, value=item)
    options = item.get("options")
    return SurveyResponse(
        index=index,
        value=_response_value(item),
        code=_response_code(item),
        question=next(
            (str(item[k]) for k in ("question", "text", "title", "label") if item.get(k)),
            None,
        ),
        options=options if isinstance(options, list) else None,
        value_type=str(item["valueType"]) if item.get("valueType") else None,
    )


class HtmlSurveyExtractor(DocumentParser[SurveyDocument]):
    """Parse an HTML survey page into a ``SurveyDocument``.

    Parsing never fails: a page without a recoverable document yields a
    ``SurveyDocument`` whose ``cda`` is None, and validators decide.
    """

    format = ImportFormat.HTML

    def __init__(self, strategies: Sequence[tuple[str, ExtractionStrategy]] = DEFAULT_STRATEGIES):
        self.strategies = tuple(strategies)

    def parse(self, text: str, filename: Optional[str] = None) -> Result[SurveyDocument]:
        title_match = _TITLE.search(text or "")
        document = SurveyDocument(
            html_length=len((text or "").strip()),
            has_html_shell=bool(_HTML_SHELL.search(text or "")),
            has_script=bool(_SCRIPT_BLOCK.search(text or "")),
            page_title=html.unescape(title_match.group(1)).strip() or None if title_match else None,
        )
        if not document.html_length:
            return Result.success_result(document)

        extracted = first_success(self.strategies, text)
        if extracted.is_failure():
            logger.info(f"No embedded clinical document found in {filename or '<input>'}")
            return Result.success_result(document)
        strategy_name, payload = extracted.value
        parsed = parse_cda_data(payload)
        if parsed.is_failure():
            return Result.success_result(document)

        cda = parsed.value
        questionnaire = _first_dict(cda.get("questionnaire"))
        raw_responses = _raw_responses(cda, questionnaire)
        document.cda = cda
        document.extraction_strategy = strategy_name
        document.patient = _first_dict(cda.get("patient"), cda.get("subject"))
        document.questionnaire = questionnaire
        document.responses = (
            [to_response(i, item) for i, item in enumerate(raw_responses)]
            if raw_responses is not None else None
        )
        document.completed_at = next(
            (str(v) for v in (
                cda.get("completedAt"),
                cda.get("date"),
                questionnaire.get("completedAt") if questionnaire else None,
            ) if v),
            None,
        )
        survey_type = cda.get("surveyType") or (questionnaire.get("type") if questionnaire else None)
        document.survey_type = str(survey_type) if survey_type else None
        logger.info(
            f"Extracted clinical document via {strategy_name}: "
            f"{len(document.responses or [])} responses"
        )
        return Result.success_result(document)
