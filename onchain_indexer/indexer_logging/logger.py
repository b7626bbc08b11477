"""
Structured logging for the indexer.

Every line is one JSON object (or a console line when LOG_FORMAT=console)
carrying `timestamp`, `level`, `logger` and `event_type`. Worker threads bind
`worker_id`, `job_id` and `address` through structlog.contextvars for the
length of a job, so pipeline lines are attributable without passing ids around.

Depends only on stdlib logging and structlog; importing it never pulls in
other onchain_indexer modules.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog

_MASK_KEEP = 5
# RPC error bodies can be large; keep log lines bounded
_MAX_ERROR_CHARS = 500


def _rename_event(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """structlog's positional `event` becomes `event_type`."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    return event_dict


def _truncate_error(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    error = event_dict.get("error")
    if isinstance(error, str) and len(error) > _MAX_ERROR_CHARS:
        event_dict["error"] = error[:_MAX_ERROR_CHARS] + "..."
    return event_dict


def configure_structlog(level: str | None = None, fmt: str | None = None) -> None:
    """
    Configure structlog process-wide.

    Args:
        level: Level name; defaults to LOG_LEVEL (INFO).
        fmt: "json" (default, from LOG_FORMAT) or "console".
    """
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    level_value = getattr(logging, level_name, logging.INFO)
    fmt = (fmt or os.getenv("LOG_FORMAT") or "json").strip().lower()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        structlog.processors.format_exc_info,
        _truncate_error,
        _rename_event,
    ]
    if fmt == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    else:
        processors.append(structlog.processors.JSONRenderer(sort_keys=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Module logger with `logger=name` bound.

        logger = get_logger(__name__)
        logger.info("signatures_page_stored", page=3, page_len=1000)
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_job_context(**fields: Any) -> None:
    """Tag every following line on this thread with fields (worker_id, job_id, address)."""
    structlog.contextvars.bind_contextvars(**fields)


def clear_job_context() -> None:
    structlog.contextvars.clear_contextvars()


def mask_addr(addr: str | None) -> str:
    """'9QCfNuQu...rka' style shortening for addresses and signatures: first 5 + '...' + last 5."""
    if not addr:
        return ""
    if len(addr) <= _MASK_KEEP * 2 + 3:
        return addr
    return f"{addr[:_MASK_KEEP]}...{addr[-_MASK_KEEP:]}"
