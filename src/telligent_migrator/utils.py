"""
Utility functions for the Telligent migration tool.
"""

from __future__ import annotations

import datetime as dt
import importlib
import logging
from typing import Any

from .exceptions import ConfigurationError

_CONSOLE_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG)

# Formats seen in Telligent profile values besides ISO 8601
_LEGACY_DATETIME_FORMATS = (
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y",
)


def setup_logging(*, verbosity: int = 0) -> None:
    """Configure logging for the migration process.

    The log file always receives DEBUG output; the console shows warnings by
    default, INFO with -v and DEBUG with -vv.
    """
    console = logging.StreamHandler()
    console.setLevel(_CONSOLE_LEVELS[min(max(verbosity, 0), len(_CONSOLE_LEVELS) - 1)])

    log_file = logging.FileHandler("migration.log", mode="a")
    log_file.setLevel(logging.DEBUG)

    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[console, log_file],
    )


def parse_datetime(value: str | dt.datetime | None) -> dt.datetime | None:
    """Parse a timestamp stored as text in the legacy profile tables.

    Returns None if the value is empty or in an unknown format.
    """
    if value is None or isinstance(value, dt.datetime):
        return value

    text = value.strip()
    if not text:
        return None

    try:
        return dt.datetime.fromisoformat(text)
    except ValueError:
        pass

    for fmt in _LEGACY_DATETIME_FORMATS:
        try:
            return dt.datetime.strptime(text, fmt)  # noqa: DTZ007 - source timestamps are naive
        except ValueError:
            continue
    return None


def is_in_future(value: dt.datetime | None, now: dt.datetime) -> bool:
    """Compare a possibly naive source timestamp against ``now``."""
    if value is None:
        return False
    if value.tzinfo is None and now.tzinfo is not None:
        now = now.replace(tzinfo=None)
    elif value.tzinfo is not None and now.tzinfo is None:
        value = value.replace(tzinfo=None)
    return value > now


def load_object(reference: str) -> Any:  # noqa: ANN401 - arbitrary user-supplied callable
    """Import ``module:attribute`` and return the attribute."""
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        msg = f"Invalid object reference '{reference}', expected 'module:attribute'"
        raise ConfigurationError(msg)

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        msg = f"Cannot import module '{module_name}': {e}"
        raise ConfigurationError(msg) from e

    try:
        return getattr(module, attribute)
    except AttributeError as e:
        msg = f"Module '{module_name}' has no attribute '{attribute}'"
        raise ConfigurationError(msg) from e
