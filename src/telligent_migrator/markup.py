"""HTML to Markdown conversion for legacy bodies, bios and descriptions."""

from __future__ import annotations

import re
from typing import Final

from markdownify import markdownify

_QUOTE_START: Final = re.compile(r"\[quote.*?\]")
_QUOTE_END: Final = re.compile(r"(?<=.)\[/quote\]", re.DOTALL)


def normalize_quotes(markdown: str) -> str:
    """Put ``[quote]`` markers on their own lines.

    The converter keeps quote markers inline with the surrounding text, which
    breaks quote rendering in the target.
    """
    markdown = _QUOTE_START.sub(lambda m: f"\n{m.group(0)}\n", markdown)
    markdown = _QUOTE_END.sub("\n[/quote]\n", markdown)
    return markdown.strip()


def html_to_markdown(html: str | None) -> str | None:
    """Convert legacy HTML to Markdown; empty input is returned unchanged."""
    if not html or not html.strip():
        return html

    markdown = markdownify(
        html,
        heading_style="ATX",
        bullets="-",
        escape_asterisks=False,
        escape_underscores=False,
        escape_misc=False,
    )
    return normalize_quotes(markdown)
