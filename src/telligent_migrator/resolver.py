"""Fuzzy lookup of embedded attachment files on disk.

File names in the Telligent file store went through several generations of
transliteration, so the name in a post's HTML rarely equals the name on disk.
The resolver builds a glob pattern from the link and relaxes it in tiers:

1. ``cleaned``: the cleaned name with ``_``, ``-`` and space as wildcards.
2. ``hex2``: additionally every ``_XX00_`` escape group becomes one wildcard
   per escaped character.
3. ``hex4``: like ``hex2`` for ``_XXXX_`` escape groups.

A tier only counts if its pattern matches exactly one entry. Anything else
advances to the next tier, so two similar files never get mixed up.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Final

from .filenames import clean_filename

logger: logging.Logger = logging.getLogger(__name__)

_SEPARATORS: Final = re.compile(r"[_\- ]")
_BRACKETS: Final = re.compile(r"([\[\]])")
_PATH_ESCAPE: Final = re.compile(r"_[0-9a-fA-F]{4}_")
_PATH_SPLIT: Final = re.compile(r"[.\-]")

_HEX = "[0-9a-fA-F]"
_HEX2_GROUPS: Final = (
    (re.compile(rf"_{_HEX}{{2}}00_"), "?"),
    (re.compile(rf"_{_HEX}{{2}}00{_HEX}{{2}}00_"), "??"),
    (re.compile(rf"_{_HEX}{{2}}00{_HEX}{{2}}00{_HEX}{{2}}00_"), "???"),
)
_HEX4_GROUPS: Final = (
    (re.compile(rf"_{_HEX}{{4}}_"), "?"),
    (re.compile(rf"_{_HEX}{{4}}{_HEX}{{4}}_"), "??"),
    (re.compile(rf"_{_HEX}{{4}}{_HEX}{{4}}{_HEX}{{4}}_"), "???"),
)


class MatchKind(StrEnum):
    UNIQUE = "unique"
    NO_MATCH = "no_match"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class MatchResult:
    """Outcome of globbing one relaxation tier."""

    kind: MatchKind
    pattern: str
    candidates: tuple[Path, ...] = ()

    @property
    def path(self) -> Path | None:
        return self.candidates[0] if self.kind is MatchKind.UNIQUE else None


def _collapse(groups: tuple[tuple[re.Pattern[str], str], ...]) -> Callable[[str], str]:
    def transform(filename: str) -> str:
        for pattern, replacement in groups:
            filename = pattern.sub(replacement, filename)
        return filename

    return transform


def _escape_brackets(pattern: str) -> str:
    return _BRACKETS.sub(r"[\1]", pattern)


@dataclass(frozen=True)
class RelaxationTier:
    name: str
    transform: Callable[[str], str]

    def pattern_for(self, filename: str) -> str:
        return _escape_brackets(_SEPARATORS.sub("?", self.transform(filename)))

    def match(self, root: Path, directory: str, filename: str) -> MatchResult:
        """Glob this tier's pattern below ``root``, ignoring case."""
        pattern = f"{directory}/{self.pattern_for(filename)}" if directory else self.pattern_for(filename)
        candidates = tuple(sorted(root.glob(pattern, case_sensitive=False)))

        if len(candidates) == 1:
            kind = MatchKind.UNIQUE
        elif candidates:
            kind = MatchKind.AMBIGUOUS
        else:
            kind = MatchKind.NO_MATCH
        return MatchResult(kind=kind, pattern=pattern, candidates=candidates)


RELAXATION_TIERS: Final[tuple[RelaxationTier, ...]] = (
    RelaxationTier("cleaned", lambda filename: filename),
    RelaxationTier("hex2", _collapse(_HEX2_GROUPS)),
    RelaxationTier("hex4", _collapse(_HEX4_GROUPS)),
)


@dataclass(frozen=True)
class ResolvedAttachment:
    """Result of a lookup.

    ``tier`` is None if no tier found a unique file; ``path`` is then the
    literal path that was attempted and must not be opened.
    """

    filename: str
    path: Path
    tier: str | None = None

    @property
    def found(self) -> bool:
        return self.tier is not None


def base_directory(directory_key: str, path_key: str) -> str:
    """Relative glob pattern of the directory an embedded file lives in.

    ``/cfs-file/__key/communityserver-wikis-components-files/00-00-00-12-34/``
    lives in ``communityserver.wikis.components.files/00/00/00/12/34``.
    """
    directory = directory_key.replace("-", ".").lower()
    path = _PATH_ESCAPE.sub("?", path_key.replace("+", " "))
    segments = [directory, *(segment.strip() for segment in _PATH_SPLIT.split(path))]
    return "/".join(_escape_brackets(s) for s in segments if s and s not in (".", ".."))


class AttachmentResolver:
    """Finds the single file on disk an embedded attachment link points to."""

    _root: Path
    _tiers: tuple[RelaxationTier, ...]

    def __init__(self, root: Path, tiers: tuple[RelaxationTier, ...] = RELAXATION_TIERS) -> None:
        self._root = root
        self._tiers = tiers

    def resolve(self, directory_key: str, path_key: str, filename: str) -> ResolvedAttachment:
        cleaned = clean_filename(filename)
        directory = base_directory(directory_key, path_key)

        for tier in self._tiers:
            result = tier.match(self._root, directory, cleaned)
            if result.path is not None:
                logger.debug(f"Resolved '{filename}' with tier {tier.name}: {result.path}")
                return ResolvedAttachment(filename=result.path.name, path=result.path, tier=tier.name)
            if result.kind is MatchKind.AMBIGUOUS:
                logger.debug(f"Tier {tier.name} is ambiguous for '{filename}': {len(result.candidates)} candidates")

        return ResolvedAttachment(filename=cleaned, path=self._root / directory / cleaned)
