from __future__ import annotations

import contextlib
import errno
import logging
import re
import sys
from typing import Any

import structlog


SECRET_ASSIGNMENT_RE = re.compile(
    r"(?i)\b([a-z0-9_]*(?:api[_-]?key|token|secret|password|passwd))(\s*[=:]\s*)(\S+)"
)
BEARER_RE = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]{8,}")


def redact_text(text: str) -> str:
    redacted = SECRET_ASSIGNMENT_RE.sub(r"\1\2[REDACTED]", text)
    return BEARER_RE.sub("Bearer [REDACTED]", redacted)


def redact_secrets_processor(_, __, event_dict):
    """Processor to redact secret-looking assignments from log messages.

    Commands and their output end up in log events, so anything that looks
    like ``API_KEY=...`` or a bearer token is masked.
    """
    for key in ("event", "command", "output"):
        value = event_dict.get(key)
        if not isinstance(value, str):
            continue
        redacted = redact_text(value)
        if redacted != value:
            event_dict[key] = redacted

    return event_dict


class SafeStreamHandler(logging.StreamHandler):
    """Stream handler that goes quiet once its reader hangs up.

    ``ralphmem run ... 2>&1 | head`` closes the pipe early; the stream is
    then closed instead of printing a traceback per record.
    """

    def handleError(self, record: logging.LogRecord) -> None:
        exc = sys.exc_info()[1]
        if isinstance(exc, OSError) and exc.errno == errno.EPIPE:
            with contextlib.suppress(OSError, ValueError):
                self.stream.close()
            return
        super().handleError(record)


def setup_logging(
    *,
    debug: bool = False,
    level: str = "info",
    cache_logger_on_first_use: bool = True,
) -> None:
    """Configure structlog with console or JSON output and secret redaction."""

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets_processor,
            structlog.dev.ConsoleRenderer(colors=True)
            if debug
            else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=cache_logger_on_first_use,
    )

    stdlib_level = logging.DEBUG if debug else _stdlib_level(level)
    handler = SafeStreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.basicConfig(
        handlers=[handler],
        level=stdlib_level,
        force=True,
    )


def _stdlib_level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    if isinstance(value, int):
        return value
    return logging.INFO


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def bind_run_context(**values: Any) -> None:
    structlog.contextvars.bind_contextvars(**values)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
