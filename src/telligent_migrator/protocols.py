"""Protocols defining the contracts for the legacy database and the target platform.

The migration separates concerns into three parts:

1. SourceDatabase: read-only SQL access to the Telligent database
2. TargetPlatform: creates records in the discussion platform
3. TelligentMigrator: runs the phases, owns identity mapping, content
   transformation and permalinks

The target platform creates exactly what it is told to create and hands back
the new ids. Whether a record must be created at all is decided by the
migrator from the identity mapping.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

    from .models import CreatedCategory, CreatedPost, CreatedUser, Upload


class SourceDatabase(Protocol):
    """Protocol for running read-only queries against the legacy database."""

    def query(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        """Run a query and return all rows as column -> value dicts.

        Raises:
            SourceQueryError: If the query or the connection fails
        """
        ...


class TargetPlatform(Protocol):
    """Protocol for creating data in the target discussion platform.

    The migrator calls methods in phase order:
    1. permalink_normalizations() / set_permalink_normalizations()
    2. create_category() and create_permalink() for forums
    3. create_user(), create_avatar(), suspend_user()
    4. create_upload() / html_for_upload() while transforming bodies
    5. create_post() for topics (first posts) and replies
    6. accepted_answer_posts() / set_topic_accepted_answer()

    Methods creating a single record raise TargetError if the target rejects
    that record; the migrator then skips the record and carries on.
    """

    @property
    def system_user_id(self) -> int:
        """User id that owns content whose author was not imported."""
        ...

    def create_category(self, fields: Mapping[str, Any]) -> CreatedCategory:
        """Create a category from ``name``, ``description``, ``position`` and
        ``parent_category_id``."""
        ...

    def create_user(self, fields: Mapping[str, Any]) -> CreatedUser:
        """Create a user from ``email``, ``username``, ``name``, ``created_at``,
        ``bio_raw``, ``location`` and ``website``."""
        ...

    def create_post(self, fields: Mapping[str, Any]) -> CreatedPost:
        """Create a topic (``title`` present) or a reply (``topic_id`` present)."""
        ...

    def create_upload(self, user_id: int, path: Path, filename: str) -> Upload | None:
        """Store a local file as an upload owned by ``user_id``.

        Returns None if the target refuses the file (size, type, ...).
        """
        ...

    def html_for_upload(self, upload: Upload, filename: str) -> str:
        """HTML snippet that embeds or links the upload in a post."""
        ...

    def create_avatar(self, user: CreatedUser, path: Path) -> None:
        """Use a local image file as the user's avatar."""
        ...

    def suspend_user(self, user: CreatedUser, until: datetime, reason: str | None) -> None:
        """Suspend a user until the given time."""
        ...

    def schedule_unpin(self, topic_id: int, at: datetime) -> None:
        """Unpin a topic at the given time."""
        ...

    def permalink_exists(self, url: str) -> bool: ...

    def create_permalink(self, url: str, *, category_id: int | None = None, topic_id: int | None = None) -> None:
        ...

    def permalink_normalizations(self) -> list[str]:
        """Currently configured permalink normalization rules."""
        ...

    def set_permalink_normalizations(self, normalizations: list[str]) -> None: ...

    def accepted_answer_posts(self) -> Iterable[CreatedPost]:
        """Posts created with the ``is_accepted_answer`` custom field."""
        ...

    def set_topic_accepted_answer(self, topic_id: int, post_id: int) -> None: ...
