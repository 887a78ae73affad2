"""Filename cleaning shared by the attachment resolver and the content transformer."""

from __future__ import annotations

import html
import re
from typing import Final

_UNSAFE_CHARACTERS: Final = re.compile(r'[\x00/\\:*?"<>|]')

# Telligent stored these characters as "_{HEX}00_" (or doubled) in file names on disk
_ESCAPED_CHARACTERS: Final[str] = "()#%-_[]=,'~!+{}&@"


def escape_sequence(char: str) -> str:
    """The legacy escape code of a character, e.g. ``2800`` for ``(``."""
    return f"{ord(char):X}00"


def clean_filename(filename: str) -> str:
    """Turn a filename from the database into the name used on disk.

    HTML entities are unescaped, characters that are unsafe in file names become
    underscores, and the legacy escape sequences of common punctuation are
    reversed: ``_2800_`` becomes ``(`` and ``_28002800_`` becomes ``((``.
    """
    filename = html.unescape(filename)
    filename = _UNSAFE_CHARACTERS.sub("_", filename)

    for char in _ESCAPED_CHARACTERS:
        code = escape_sequence(char)
        filename = filename.replace(f"_{code}_", char)
        filename = filename.replace(f"_{code}{code}_", char * 2)

    return filename
