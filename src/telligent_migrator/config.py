"""
Configuration of the migration from environment variables and the mapping file.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Final

from .exceptions import ConfigurationError
from .extractor import DEFAULT_BATCH_SIZE
from .models import CategoryMapping, CategoryMappingEntry, ForumBinding

logger: logging.Logger = logging.getLogger(__name__)

_REQUIRED_ENV_VARS: Final[tuple[str, ...]] = ("DB_HOST", "DB_USERNAME", "DB_PASSWORD", "DB_NAME")
_DEFAULT_STATE_DB_URL: Final[str] = "sqlite:///migration_state.db"
_DEFAULT_DB_PORT: Final[int] = 1433
_DEFAULT_DB_TIMEOUT: Final[int] = 60


def _int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError as e:
        msg = f"Environment variable {name} must be an integer, got '{value}'"
        raise ConfigurationError(msg) from e


@dataclass(frozen=True)
class Settings:
    """Everything a migration run needs to know about its surroundings."""

    db_host: str
    db_username: str
    db_password: str
    db_name: str
    db_port: int = _DEFAULT_DB_PORT
    db_timeout: int = _DEFAULT_DB_TIMEOUT
    file_base_dir: Path | None = None
    category_mapping_path: Path | None = None
    state_db_url: str = _DEFAULT_STATE_DB_URL
    batch_size: int = DEFAULT_BATCH_SIZE
    target_factory: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Read settings from the environment.

        Raises:
            ConfigurationError: If required variables are missing or malformed
        """
        environ = os.environ if environ is None else environ

        missing = [name for name in _REQUIRED_ENV_VARS if not environ.get(name)]
        if missing:
            msg = f"Missing required environment variables: {', '.join(missing)}"
            raise ConfigurationError(msg)

        file_base_dir = environ.get("FILE_BASE_DIR")
        category_mapping = environ.get("CATEGORY_MAPPING")

        return cls(
            db_host=environ["DB_HOST"],
            db_username=environ["DB_USERNAME"],
            db_password=environ["DB_PASSWORD"],
            db_name=environ["DB_NAME"],
            db_port=_int_env(environ, "DB_PORT", _DEFAULT_DB_PORT),
            db_timeout=_int_env(environ, "DB_TIMEOUT", _DEFAULT_DB_TIMEOUT),
            file_base_dir=Path(file_base_dir) if file_base_dir else None,
            category_mapping_path=Path(category_mapping) if category_mapping else None,
            state_db_url=environ.get("STATE_DB_URL") or _DEFAULT_STATE_DB_URL,
            batch_size=_int_env(environ, "BATCH_SIZE", DEFAULT_BATCH_SIZE),
            target_factory=environ.get("TARGET_FACTORY") or None,
        )

    def with_overrides(self, **overrides: Any) -> Settings:  # noqa: ANN401
        """Copy with the given values replaced; None values are ignored."""
        return replace(self, **{key: value for key, value in overrides.items() if value is not None})


def _expect(condition: bool, message: str) -> None:  # noqa: FBT001
    if not condition:
        raise ConfigurationError(message)


def _parse_forum(value: Any, entry_index: int) -> ForumBinding:  # noqa: ANN401
    _expect(isinstance(value, dict), f"mapping[{entry_index}]: forums must be objects")
    forum_id = value.get("id")
    _expect(
        isinstance(forum_id, int) and not isinstance(forum_id, bool),
        f"mapping[{entry_index}]: forum id must be an integer, got {forum_id!r}",
    )
    tag = value.get("tag")
    _expect(tag is None or isinstance(tag, str), f"mapping[{entry_index}]: tag of forum {forum_id} must be a string")
    return ForumBinding(id=forum_id, tag=tag or None)


def parse_category_mapping(document: Any) -> CategoryMapping:  # noqa: ANN401 - parsed JSON
    """Validate a parsed mapping document.

    Raises:
        ConfigurationError: If the document is malformed or binds a forum twice
    """
    _expect(isinstance(document, dict), "Category mapping must be a JSON object")

    ignored = document.get("ignored_forum_ids") or []
    _expect(
        isinstance(ignored, list) and all(isinstance(i, int) and not isinstance(i, bool) for i in ignored),
        "ignored_forum_ids must be a list of integers",
    )

    raw_entries = document.get("mapping") or []
    _expect(isinstance(raw_entries, list), "mapping must be a list")

    entries: list[CategoryMappingEntry] = []
    seen: dict[int, int] = {}
    for index, raw in enumerate(raw_entries):
        _expect(isinstance(raw, dict), f"mapping[{index}] must be an object")
        category = raw.get("category")
        _expect(
            isinstance(category, list) and bool(category) and all(isinstance(n, str) and n.strip() for n in category),
            f"mapping[{index}]: category must be a non-empty list of names",
        )
        forums_raw = raw.get("forums") or []
        _expect(isinstance(forums_raw, list), f"mapping[{index}]: forums must be a list")

        forums = tuple(_parse_forum(f, index) for f in forums_raw)
        for forum in forums:
            if forum.id in seen:
                msg = f"Forum {forum.id} is mapped by mapping[{seen[forum.id]}] and mapping[{index}]"
                raise ConfigurationError(msg)
            seen[forum.id] = index

        entries.append(CategoryMappingEntry(category=tuple(n.strip() for n in category), forums=forums))

    both = sorted(set(seen) & set(ignored))
    if both:
        logger.warning(f"Forums {both} are mapped and ignored; their topics will not be imported")

    return CategoryMapping(entries=tuple(entries), ignored_forum_ids=frozenset(ignored))


def load_category_mapping(path: Path) -> CategoryMapping:
    """Read and validate the category mapping file."""
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        msg = f"Cannot read category mapping {path}: {e}"
        raise ConfigurationError(msg) from e
    except json.JSONDecodeError as e:
        msg = f"Category mapping {path} is not valid JSON: {e}"
        raise ConfigurationError(msg) from e

    mapping = parse_category_mapping(document)
    logger.info(f"Loaded {len(mapping.entries)} category mappings, ignoring {len(mapping.ignored_forum_ids)} forums")
    return mapping
