"""Engine log level names and the startup severity filter.

The engine only announces readiness at info level. When the user asks for
something quieter, the supervisor runs the engine at info and drops records
below the requested severity itself until the real level has been pushed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sidecar.models import EngineLogLevel

# Case-insensitive spellings accepted for each level
LEVEL_SYNONYMS: dict[str, EngineLogLevel] = {
    "debug": EngineLogLevel.DEBUG,
    "info": EngineLogLevel.INFO,
    "warn": EngineLogLevel.WARN,
    "warning": EngineLogLevel.WARN,
    "error": EngineLogLevel.ERROR,
    "fatal": EngineLogLevel.FATAL,
}

# Levels that hide the readiness record and need the info-level workaround
THROTTLED_LEVELS = frozenset({EngineLogLevel.WARN, EngineLogLevel.ERROR, EngineLogLevel.FATAL})

_PYTHON_LEVELS: dict[EngineLogLevel, int] = {
    EngineLogLevel.DEBUG: logging.DEBUG,
    EngineLogLevel.INFO: logging.INFO,
    EngineLogLevel.WARN: logging.WARNING,
    EngineLogLevel.ERROR: logging.ERROR,
    EngineLogLevel.FATAL: logging.CRITICAL,
}


def normalize_level(value: Any) -> EngineLogLevel | None:
    """Map a level string to an EngineLogLevel, or None if unrecognised."""
    if not isinstance(value, str):
        return None
    return LEVEL_SYNONYMS.get(value.strip().lower())


def python_level(value: Any) -> int:
    """Map an engine level string to a stdlib logging level (INFO if unknown)."""
    level = normalize_level(value)
    if level is None:
        return logging.INFO
    return _PYTHON_LEVELS[level]


@dataclass(frozen=True)
class LevelFilter:
    """Passes records at or above ``minimum``.

    Records without a level always pass. Records with an unrecognised level
    are dropped.
    """

    minimum: EngineLogLevel

    def allows(self, record_level: Any) -> bool:
        if record_level is None:
            return True
        level = normalize_level(record_level)
        if level is None:
            return False
        return level in EngineLogLevel.at_least(self.minimum)


def startup_filter(requested: str | None) -> LevelFilter | None:
    """Return the filter needed while the engine runs at info, if any."""
    level = normalize_level(requested)
    if level not in THROTTLED_LEVELS:
        return None
    return LevelFilter(minimum=level)
