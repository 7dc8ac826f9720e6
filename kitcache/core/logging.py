"""Logging setup for kitcache: one stderr sink plus optional per-module debug sinks."""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping

from loguru import logger

PACKAGE_PREFIX = "kitcache."

DEFAULT_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} - {message}"
)


def normalize_scopes(debug_scopes: Iterable[str]) -> tuple[str, ...]:
    """Strip blanks and qualify bare scopes (``core.mutations``) with the package."""
    scopes: list[str] = []
    for scope in debug_scopes:
        scope = scope.strip()
        if not scope:
            continue
        if scope != "kitcache" and not scope.startswith(PACKAGE_PREFIX):
            scope = f"{PACKAGE_PREFIX}{scope}"
        scopes.append(scope)
    return tuple(scopes)


def scope_filter(scopes: tuple[str, ...]):
    """Loguru filter passing DEBUG records emitted by modules under ``scopes``."""

    def _debug_filter(record: object) -> bool:
        if not isinstance(record, Mapping):
            return False
        if getattr(record.get("level"), "name", None) != "DEBUG":
            return False
        name = record.get("name") or ""
        return any(name.startswith(scope) for scope in scopes)

    return _debug_filter


def configure_logging(
    level: str,
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
) -> tuple[int, ...]:
    """Replace loguru's sinks with the kitcache ones; returns the handler ids.

    With ``debug_scopes`` and a level above DEBUG, a second sink lets DEBUG
    records through for the named modules only.
    """
    logger.remove()

    handler_ids: list[int] = [
        logger.add(
            sys.stderr,
            level=level.upper(),
            format=DEFAULT_LOG_FORMAT,
            colorize=colorize,
        )
    ]

    scopes = normalize_scopes(debug_scopes)
    if scopes and level.upper() != "DEBUG":
        handler_ids.append(
            logger.add(
                sys.stderr,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=scope_filter(scopes),
            )
        )

    return tuple(handler_ids)
