"""Building the target category tree.

Categories come either from an explicit mapping file or from the legacy
group/forum hierarchy. Either way every legacy forum ends up associated with
exactly one target category (or none if it is not mapped), which is what
topics use to find their category, and gets an ``f/{forum_id}`` permalink.
"""

from __future__ import annotations

import hashlib
import html
import logging
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .creation import CreatePayload, CreateResult
from .markup import html_to_markdown
from .models import EntityKind, group_key
from .permalinks import category_url

if TYPE_CHECKING:
    from .creation import RecordCreator
    from .models import CategoryMapping, CreatedCategory, LegacyForum, LegacyGroup
    from .permalinks import PermalinkRegistrar
    from .state import IdentityMapper

logger: logging.Logger = logging.getLogger(__name__)


def clean_category_name(name: str) -> str:
    return html.unescape(name).strip()


def prefix_key(path: Sequence[str]) -> str:
    """Stable identity key of a category path prefix.

    Entries sharing a prefix (``["Hardware", "Laptops"]`` and
    ``["Hardware", "Phones"]``) get the same key for ``["Hardware"]`` and thus
    the same parent category.
    """
    return hashlib.md5("/".join(path).encode("utf-8")).hexdigest()  # noqa: S324 - not used for security


@dataclass(frozen=True)
class CategoryNode:
    """One category to create, parents always listed before children."""

    key: str
    name: str
    parent_key: str | None = None
    forum_ids: tuple[int, ...] = ()


def mapped_category_nodes(mapping: CategoryMapping) -> list[CategoryNode]:
    """Flatten the mapping entries into category nodes.

    Shared prefixes are repeated; creating them is idempotent.
    """
    nodes: list[CategoryNode] = []
    for entry in mapping.entries:
        parent_key: str | None = None
        for depth, name in enumerate(entry.category, start=1):
            key = prefix_key(entry.category[:depth])
            is_leaf = depth == len(entry.category)
            nodes.append(
                CategoryNode(
                    key=key,
                    name=name,
                    parent_key=parent_key,
                    forum_ids=tuple(f.id for f in entry.forums) if is_leaf else (),
                )
            )
            parent_key = key
    return nodes


class CategoryResolver:
    """Creates categories and associates legacy forums with them."""

    _creator: RecordCreator
    _identity: IdentityMapper
    _permalinks: PermalinkRegistrar
    _convert: Callable[[str | None], str | None]

    def __init__(
        self,
        creator: RecordCreator,
        identity: IdentityMapper,
        permalinks: PermalinkRegistrar,
        *,
        converter: Callable[[str | None], str | None] = html_to_markdown,
    ) -> None:
        self._creator = creator
        self._identity = identity
        self._permalinks = permalinks
        self._convert = converter

    def bind_forums(self, category_id: int, forum_ids: Iterable[int]) -> None:
        """Point the forums' permalinks and topics at a category."""
        for forum_id in forum_ids:
            self._permalinks.register(category_url(forum_id), category_id=category_id)
            self._identity.record_mapping(EntityKind.CATEGORY, str(forum_id), category_id)

    def _bind_after_create(self, forum_ids: Sequence[int]) -> Callable[[CreatedCategory], None]:
        def bind(category: CreatedCategory) -> None:
            self.bind_forums(category.id, forum_ids)

        return bind

    def import_mapped(self, mapping: CategoryMapping) -> CreateResult:
        """Create the categories of the mapping file."""
        nodes = mapped_category_nodes(mapping)

        def map_node(node: CategoryNode) -> CreatePayload | None:
            category_id = self._identity.target_id_for(EntityKind.CATEGORY, node.key)
            if category_id is not None:
                self.bind_forums(category_id, node.forum_ids)
                return None

            return CreatePayload(
                legacy_id=node.key,
                fields={
                    "name": node.name,
                    "parent_category_id": self._identity.target_id_for(EntityKind.CATEGORY, node.parent_key),
                },
                post_create=self._bind_after_create(node.forum_ids),
            )

        return self._creator.create(EntityKind.CATEGORY, nodes, map_node, total=len(nodes))

    def import_inferred(self, groups: Sequence[LegacyGroup], forums: Sequence[LegacyForum]) -> CreateResult:
        """Create categories from groups and forums.

        A group with a single forum gets no category of its own; the forum
        becomes a top-level category instead.
        """
        forum_counts = Counter(forum.group_id for forum in forums if forum.group_id is not None)
        parents = [group for group in groups if forum_counts[group.id] > 1]

        print("Importing parent categories...")
        result = self._creator.create(
            EntityKind.CATEGORY,
            parents,
            lambda group: CreatePayload(
                legacy_id=group_key(group.id),
                fields={
                    "name": clean_category_name(group.name),
                    "description": self._convert(group.description),
                    "position": group.sort_order,
                },
            ),
            total=len(parents),
        )

        def map_forum(forum: LegacyForum) -> CreatePayload | None:
            category_id = self._identity.target_id_for(EntityKind.CATEGORY, str(forum.id))
            if category_id is not None:
                self.bind_forums(category_id, [forum.id])
                return None

            parent_category_id = None
            if forum.group_id is not None and forum_counts[forum.group_id] > 1:
                parent_category_id = self._identity.target_id_for(EntityKind.CATEGORY, group_key(forum.group_id))

            return CreatePayload(
                legacy_id=str(forum.id),
                fields={
                    "name": clean_category_name(forum.name),
                    "description": self._convert(forum.description),
                    "position": forum.sort_order,
                    "parent_category_id": parent_category_id,
                },
                post_create=self._bind_after_create([forum.id]),
            )

        print("Importing child categories...")
        result.add(self._creator.create(EntityKind.CATEGORY, forums, map_forum, total=len(forums)))
        return result
