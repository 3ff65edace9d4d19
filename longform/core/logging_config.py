"""Structured logging configuration for longform.

JSON lines for services, plain text for the CLI. Every record emitted
while a job is running carries that job's document id, taken from
``document_id_var``.
"""

import contextvars
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Optional, TextIO


# Set by the job controller for the duration of a run.
document_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("document_id", default="")


class _DocumentContextFilter(logging.Filter):
    """Stamp ``record.document_id`` from the active job, if any."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "document_id", ""):
            record.document_id = document_id_var.get("")
        return True


class _JsonFormatter(logging.Formatter):
    """One JSON object per line.

    ``extra`` fields are merged into the top level, so
    ``logger.info("Unit done", extra={"unit_id": 3})`` yields
    ``{"unit_id": 3, ...}``.
    """

    _RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys())

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in self._RESERVED or key in payload:
                continue
            if key == "document_id" and not value:
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = record.exc_text or self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class _TextFormatter(logging.Formatter):
    """Human-readable lines, tagged with a short document id during a run."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s%(job)s: %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        doc_id = getattr(record, "document_id", "")
        record.job = f" [{doc_id[:8]}]" if doc_id else ""
        return super().format(record)


# Provider keys that may show up in exception text from LiteLLM.
_SECRET_PATTERNS = [
    re.compile(r'\bsk-[a-zA-Z0-9_\-]{20,}\b'),           # OpenAI / Anthropic
    re.compile(r'\bxai-[a-zA-Z0-9]{20,}\b'),             # xAI
    re.compile(r'\bpplx-[a-zA-Z0-9]{20,}\b'),            # Perplexity
    re.compile(r'\bAIza[a-zA-Z0-9_\-]{30,}\b'),          # Google
    re.compile(r'(?i)(bearer\s+)[a-zA-Z0-9._\-]{20,}'),
    re.compile(r'(?i)((?:api_key|x-api-key|authorization)["\']?\s*[=:]\s*["\']?)[^\s,\'"]{8,}'),
]

_REDACTED = "***REDACTED***"


def redact(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + _REDACTED if m.lastindex else _REDACTED, text)
    return text


class _SecretFilter(logging.Filter):
    """Redact provider keys from messages, arguments and tracebacks."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            record.msg = record.getMessage()
            record.args = None
        record.msg = redact(str(record.msg))
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = redact(record.exc_text)
        return True


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """Configure the root logger.

    Args:
        log_level: One of DEBUG, INFO, WARNING, ERROR, CRITICAL. Defaults to INFO.
        log_format: ``"json"`` (default) or ``"text"``.
        stream: Where to write; stdout by default. The CLI uses stderr so
                logs do not mix with progress output.
    """
    level = (log_level or "INFO").upper()
    fmt = (log_format or "json").lower()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(_DocumentContextFilter())
    handler.addFilter(_SecretFilter())
    handler.setFormatter(_JsonFormatter() if fmt == "json" else _TextFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # LiteLLM logs every request at INFO.
    for name in ("LiteLLM", "httpx", "uvicorn.access", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug("Logging configured", extra={"level": level, "format": fmt})
