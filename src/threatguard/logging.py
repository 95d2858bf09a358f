"""Structured logging for threatguard.

Every record is a structlog event rendered through the stdlib root logger.
On top of the usual level, timestamp and renderer setup this module adds:

- :func:`request_context`, which binds a request id, the source address,
  path, method and user for the lifetime of one request. Events logged
  anywhere below it carry those fields, including detectors running in
  ``asyncio.to_thread`` workers (contextvars are copied into the thread).
- A ``channel="security"`` tag on the events a SOC pipeline routes apart
  from operational logs (blocks, denials, alerts, forensic records).
- Rounding of risk and confidence floats to four places.

A host application may skip :func:`setup_logging` and configure structlog
itself; the library only ever calls :func:`get_logger`.
"""

import logging
import uuid
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from threatguard.config import Settings, get_settings

SECURITY_EVENTS = frozenset(
    {
        "security_event",
        "security_alert",
        "ip_blocked",
        "ip_unblocked",
        "blocked_source_rejected",
        "request_denied",
        "security_bypass_active",
    }
)

_SCORE_FIELDS = ("risk", "overall_risk", "risk_score", "anomaly_score", "confidence")

# Noisy third-party loggers kept at WARNING
_QUIET_LOGGERS = ("aiohttp.access", "aiohttp.server")


def tag_security_events(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    if event_dict.get("event") in SECURITY_EVENTS:
        event_dict.setdefault("channel", "security")
    return event_dict


def round_scores(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in _SCORE_FIELDS:
        value = event_dict.get(key)
        if isinstance(value, float):
            event_dict[key] = round(value, 4)
    return event_dict


@contextmanager
def request_context(
    *,
    source_id: str,
    path: str,
    method: str,
    user_id: str | None = None,
    request_id: str | None = None,
) -> Iterator[str]:
    """Bind per-request fields to every event logged inside the block.

    Yields the request id, generated when not supplied.
    """
    rid = request_id or uuid.uuid4().hex[:12]
    fields: dict[str, Any] = {
        "request_id": rid,
        "source_id": source_id,
        "path": path,
        "method": method,
    }
    if user_id is not None:
        fields["user_id"] = user_id
    with structlog.contextvars.bound_contextvars(**fields):
        yield rid


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        tag_security_events,
        round_scores,
    ]


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def _file_handler(settings: Settings, level: int) -> RotatingFileHandler:
    Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=settings.log_file_path,
        maxBytes=settings.log_file_max_bytes,
        backupCount=settings.log_file_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    return handler


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog with a console handler and an optional rotating file.

    The console renders coloured key/value output in development and JSON
    elsewhere; the file is always JSON. A file that cannot be opened leaves
    console logging in place and logs ``file_logging_disabled``.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(
        _formatter(
            structlog.dev.ConsoleRenderer(colors=True)
            if settings.is_development
            else structlog.processors.JSONRenderer()
        )
    )
    root.addHandler(console)

    file_error: OSError | None = None
    if settings.log_to_file:
        try:
            root.addHandler(_file_handler(settings, level))
        except OSError as e:
            file_error = e

    structlog.configure(
        processors=[
            *_shared_processors(),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if file_error is not None:
        get_logger("threatguard.logging").warning(
            "file_logging_disabled", path=settings.log_file_path, error=str(file_error)
        )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
