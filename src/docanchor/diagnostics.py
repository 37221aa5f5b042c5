"""
Internal diagnostics for the anchoring engine.

Components report noteworthy conditions (provider failures, suppressed
duplicates, corrupt state files) through ``warn``/``info``/``debug``. Each
call is routed to a ``docanchor.<component>`` stdlib logger with the
structured fields rendered as ``key=value`` pairs. Diagnostics never raise
into the caller.
"""

from __future__ import annotations

import logging
import os
from typing import Any

_internal_logging_enabled: bool | None = None

_TRUTHY = {"1", "true", "yes", "on"}


def _is_enabled() -> bool:
    global _internal_logging_enabled
    if _internal_logging_enabled is None:
        raw = os.getenv("DOCANCHOR_INTERNAL_LOGGING_ENABLED", "true")
        _internal_logging_enabled = raw.strip().lower() in _TRUTHY
    return _internal_logging_enabled


def configure(enabled: bool) -> None:
    """Override the environment-derived switch (used by the engine and tests)."""
    global _internal_logging_enabled
    _internal_logging_enabled = enabled


def _format(message: str, fields: dict[str, Any]) -> str:
    if not fields:
        return message
    rendered = " ".join(f"{k}={v!r}" for k, v in sorted(fields.items()))
    return f"{message} {rendered}"


def _emit(level: int, component: str, message: str, fields: dict[str, Any]) -> None:
    if not _is_enabled():
        return
    try:
        logger = logging.getLogger(f"docanchor.{component}")
        if logger.isEnabledFor(level):
            logger.log(
                level,
                _format(message, fields),
                extra={"component": component, "fields": dict(fields)},
            )
    except Exception:  # pragma: no cover - logging must never break callers
        pass


def warn(component: str, message: str, **fields: Any) -> None:
    _emit(logging.WARNING, component, message, fields)


def info(component: str, message: str, **fields: Any) -> None:
    _emit(logging.INFO, component, message, fields)


def debug(component: str, message: str, **fields: Any) -> None:
    _emit(logging.DEBUG, component, message, fields)


__all__ = ["configure", "debug", "info", "warn"]
