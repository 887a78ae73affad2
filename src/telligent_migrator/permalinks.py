"""Permalinks keep old Telligent deep links working in the target."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from .protocols import TargetPlatform

logger: logging.Logger = logging.getLogger(__name__)

# Reduce any legacy URL to the permalink keys registered below
CATEGORY_LINK_NORMALIZATION: Final[str] = r"/.*?(f\/\d+)$/\1"
TOPIC_LINK_NORMALIZATION: Final[str] = r"/.*?(f\/\d+\/t\/\d+)$/\1"


def category_url(forum_id: int) -> str:
    return f"f/{forum_id}"


def topic_url(forum_id: int, thread_id: int) -> str:
    return f"f/{forum_id}/t/{thread_id}"


class PermalinkRegistrar:
    """Creates permalinks in the target, never twice for the same URL."""

    _target: TargetPlatform
    created_count: int

    def __init__(self, target: TargetPlatform) -> None:
        self._target = target
        self.created_count = 0

    def register(self, url: str, *, category_id: int | None = None, topic_id: int | None = None) -> bool:
        """Create a permalink unless the URL is taken. Returns True if created."""
        if self._target.permalink_exists(url):
            logger.debug(f"Permalink {url} already exists")
            return False

        self._target.create_permalink(url, category_id=category_id, topic_id=topic_id)
        self.created_count += 1
        return True

    def add_normalizations(self) -> None:
        """Make sure the target reduces legacy URLs to our permalink keys."""
        normalizations = list(self._target.permalink_normalizations())
        added = False

        for normalization in (CATEGORY_LINK_NORMALIZATION, TOPIC_LINK_NORMALIZATION):
            if normalization not in normalizations:
                normalizations.append(normalization)
                added = True

        if added:
            self._target.set_permalink_normalizations(normalizations)
            logger.info("Added permalink normalizations")
