"""Structured logging configuration.

JSON lines for machine consumption, a human-readable format otherwise.

Every record emitted while an import runs carries that import's context
(``filename``, ``format`` and optionally ``import_id``) through a context
variable set with ``import_context``. Issue-level calls add ``code`` and
``row`` through ``extra``. Cell values stay out of log records above DEBUG.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

_import_context: ContextVar[Optional[dict[str, Any]]] = ContextVar("import_context", default=None)

# Non-reserved LogRecord attributes accepted through ``extra``.
RECORD_FIELDS = ("code", "row", "attempts", "operation")

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(import_tag)s] %(message)s"


def get_import_context() -> dict[str, Any]:
    """Context of the import running in this task, or an empty dict."""
    return dict(_import_context.get() or {})


@contextmanager
def import_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """Bind import fields to every log record emitted inside the block.

    Nested blocks add to the enclosing context; ``None`` values are ignored.
    The previous context is restored on exit.
    """
    merged = get_import_context()
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = _import_context.set(merged)
    try:
        yield merged
    finally:
        _import_context.reset(token)


class ImportContextFilter(logging.Filter):
    """Copy the active import context onto each record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_import_context()
        record.import_context = context
        record.import_tag = "/".join(
            str(context[k]) for k in ("filename", "format") if k in context
        ) or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """Format log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Parameters:
            record: Log record to format

        Returns:
            JSON string; import context and issue fields are top-level keys
        """
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
        }
        log_data.update(getattr(record, "import_context", None) or {})

        for name in RECORD_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_data[name] = value

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(use_json: bool = False, log_level: str = "INFO") -> None:
    """Setup application logging.

    Parameters:
        use_json: Use JSON formatting
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(ImportContextFilter())

    if use_json:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)
