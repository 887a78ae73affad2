"""Data models for the Telligent migration.

Legacy records are read-only snapshots of the source rows. Target records are
what the target platform hands back after creating an entity; the migrator only
needs their ids to keep the identity mapping and permalinks up to date.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal


class EntityKind(StrEnum):
    """Identity namespaces in the persisted migration state."""

    CATEGORY = "category"
    USER = "user"
    POST = "post"


def topic_key(thread_id: int) -> str:
    """Identity key of a topic; topics share the post namespace with replies."""
    return f"T{thread_id}"


def group_key(group_id: int) -> str:
    """Identity key of a legacy group turned parent category."""
    return f"G{group_id}"


@dataclass(frozen=True)
class AttachmentDescriptor:
    """A dedicated attachment of a thread or reply.

    The numeric fields determine the directory the file lives in below the
    attachment root.
    """

    application_type_id: int
    application_id: int
    application_content_type_id: int
    content_id: int
    filename: str
    is_remote: bool = False

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AttachmentDescriptor | None:
        """Build the descriptor from the joined attachment columns, if any."""
        if not row.get("FileName"):
            return None
        return cls(
            application_type_id=int(row["ApplicationTypeId"]),
            application_id=int(row["ApplicationId"]),
            application_content_type_id=int(row["ApplicationContentTypeId"]),
            content_id=int(row["ContentId"]),
            filename=row["FileName"],
            is_remote=bool(row.get("IsRemote")),
        )


@dataclass(frozen=True)
class LegacyUser:
    id: int
    email: str | None
    username: str
    display_name: str | None = None
    created_at: datetime | None = None
    bio: str | None = None
    location: str | None = None
    website: str | None = None
    avatar_url: str | None = None
    banned_until: str | None = None
    ban_reason: str | None = None


@dataclass(frozen=True)
class LegacyGroup:
    id: int
    name: str
    description: str | None = None
    sort_order: int | None = None


@dataclass(frozen=True)
class LegacyForum:
    id: int
    group_id: int | None
    name: str
    description: str | None = None
    sort_order: int | None = None


@dataclass(frozen=True)
class LegacyTopic:
    id: int
    forum_id: int
    author_id: int | None
    subject: str
    body: str | None
    created_at: datetime | None = None
    is_locked: bool = False
    sticky_until: datetime | None = None
    views: int = 0
    attachment: AttachmentDescriptor | None = None


@dataclass(frozen=True)
class LegacyPost:
    id: int
    thread_id: int
    author_id: int | None
    body: str | None
    created_at: datetime | None = None
    parent_reply_id: int | None = None
    is_first_verified_answer: bool = False
    attachment: AttachmentDescriptor | None = None

    @property
    def valid_parent_id(self) -> int | None:
        """The parent reply id if it can be a parent at all.

        A reply can only answer an earlier reply, so parent ids that are not
        smaller than the reply's own id are ignored.
        """
        if self.parent_reply_id and 0 < self.parent_reply_id < self.id:
            return self.parent_reply_id
        return None


@dataclass(frozen=True)
class ForumBinding:
    """A legacy forum bound to a mapped category."""

    id: int
    tag: str | None = None


@dataclass(frozen=True)
class CategoryMappingEntry:
    category: tuple[str, ...]
    forums: tuple[ForumBinding, ...] = ()


@dataclass(frozen=True)
class CategoryMapping:
    """Explicit category layout read from the mapping file."""

    entries: tuple[CategoryMappingEntry, ...] = ()
    ignored_forum_ids: frozenset[int] = frozenset()

    @property
    def forum_tags(self) -> dict[int, str]:
        return {forum.id: forum.tag for entry in self.entries for forum in entry.forums if forum.tag}


@dataclass(frozen=True)
class Upload:
    """An uploaded file in the target platform."""

    id: int
    url: str
    original_filename: str = ""


@dataclass(frozen=True)
class CreatedCategory:
    id: int
    name: str = ""


@dataclass(frozen=True)
class CreatedUser:
    id: int
    username: str = ""


@dataclass(frozen=True)
class PostRef:
    """Location of an imported post (topics are their first post)."""

    post_id: int
    topic_id: int
    post_number: int


@dataclass(frozen=True)
class CreatedPost:
    id: int
    topic_id: int
    post_number: int

    @property
    def ref(self) -> PostRef:
        return PostRef(post_id=self.id, topic_id=self.topic_id, post_number=self.post_number)


ContentKind = Literal["topic", "post"]


@dataclass
class TransformedContent:
    """Markup produced from a legacy body plus what was consumed on the way."""

    raw: str
    embedded_paths: set[str] = field(default_factory=set)
    upload_ids: set[int] = field(default_factory=set)
