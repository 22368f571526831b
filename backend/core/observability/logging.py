"""JSON structured logging with mandatory fields and PII redaction."""
import json
import logging
import sys
import threading
from datetime import UTC, datetime

from backend.core.config import settings
from backend.core.logging import PIIRedactionFilter

# Thread-local storage for context
_context = threading.local()

_RESERVED = frozenset(
    (
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
        'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
        'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
        'processName', 'process', 'message', 'taskName',
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and PII redaction."""

    def __init__(self):
        super().__init__()
        self._pii = PIIRedactionFilter()

    def format(self, record):
        """Format log record as JSON with mandatory fields and PII redaction."""
        trace_id = getattr(_context, 'trace_id', None) or 'unknown'

        log_entry = {
            'trace_id': trace_id,
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': self._pii.redact(record.getMessage()),
            'ts_utc': datetime.now(UTC).isoformat(),
        }

        if record.exc_info:
            log_entry['exc_info'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED:
                continue
            if isinstance(value, str):
                value = self._pii.redact(value)
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def set_trace_id(trace_id: str | None) -> None:
    """Set trace ID (the sync run id) for the current thread."""
    _context.trace_id = trace_id


def get_trace_id() -> str | None:
    return getattr(_context, 'trace_id', None)


def init_logging() -> None:
    """Initialize JSON logging on the root logger."""
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
