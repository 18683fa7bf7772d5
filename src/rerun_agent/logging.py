"""
Logging setup: structlog events rendered through the stdlib logging tree.

Console output goes to stderr; an optional JSON lines file receives the same
events. Values stored under sensitive keys are masked before either renderer
sees them, including inside nested dicts such as request headers.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

SENSITIVE_KEYS = ("token", "personal_access", "authorization", "secret", "password")
REDACTED = "[REDACTED]"

# These log every HTTP request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore")


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def _mask(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    return {
        k: REDACTED if isinstance(v, str) and _is_sensitive(k) else _mask(v)
        for k, v in value.items()
    }


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask string values under sensitive keys."""
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        if isinstance(value, str) and _is_sensitive(key):
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = _mask(value)
    return event_dict


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        redact_secrets,
    ]


def _handler(handler: logging.Handler, renderer: Processor, pre_chain: list[Processor]) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain)
    )
    return handler


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """
    Configure structlog and replace the root logger's handlers.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to a JSON lines log file

    Raises:
        ValueError: If level is not a known level name
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")

    processors = _shared_processors()
    structlog.configure(
        processors=processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers = [
        _handler(
            logging.StreamHandler(sys.stderr),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
            processors,
        )
    ]
    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            _handler(logging.FileHandler(log_file), structlog.processors.JSONRenderer(), processors)
        )

    root_logger = logging.getLogger()
    root_logger.handlers = handlers
    root_logger.setLevel(numeric)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))


def bind_run(run_id: str) -> None:
    """Attach the active run id to every log line from this context."""
    structlog.contextvars.bind_contextvars(run_id=run_id)


def unbind_run() -> None:
    """Drop the run id bound by bind_run()."""
    structlog.contextvars.unbind_contextvars("run_id")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)
