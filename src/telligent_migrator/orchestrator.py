"""Migration orchestrator that runs the Telligent import phases.

The TelligentMigrator is the central coordinator of a run. It:
1. Pages through the legacy tables in id order
2. Creates every category, user, topic and reply exactly once
3. Coordinates content transformation (markup, attachments)
4. Keeps old deep links working through permalinks

Migration Flow
--------------
The phases run in a fixed order because later phases look up what earlier
phases created:

Phase 1: Permalink normalizations
    - Make the target reduce legacy URLs to ``f/{forum}`` and
      ``f/{forum}/t/{thread}``

Phase 2: Categories
    - From the category mapping file if one is configured, otherwise from the
      legacy groups and forums
    - Every forum gets an ``f/{forum}`` permalink to its category

Phase 3: Users
    - Only users that wrote at least one thread or reply
    - Avatars are imported and active bans become suspensions

Phase 4: Topics
    For each thread:
        a. Replace embedded attachment links with uploads
        b. Convert the body to Markdown and append a dedicated attachment
        c. Create the topic, schedule an unpin for sticky topics
        d. Register the ``f/{forum}/t/{thread}`` permalink

Phase 5: Replies
    - A reply answers its parent reply if that is an earlier reply of the
      same thread, otherwise it answers the topic
    - The first verified answer of a thread is flagged as accepted answer

Phase 6: Solved topics
    - Topics get their accepted answer from the flagged replies

Restarting
----------
Every created record is stored in the identity mapping before the next one is
created. Rerunning an aborted migration pages through the same rows again,
skips batches that were fully imported and creates only what is missing.
"""

from __future__ import annotations

import datetime as dt
import html
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .avatars import AvatarImporter, suspend_if_banned
from .categories import CategoryResolver
from .content import ContentTransformer
from .creation import CreatePayload, CreateResult, RecordCreator
from .exceptions import MigrationError, TargetError
from .extractor import DEFAULT_BATCH_SIZE, BatchExtractor, Phase
from .markup import html_to_markdown
from .models import EntityKind, topic_key
from .permalinks import PermalinkRegistrar, topic_url
from .utils import is_in_future

if TYPE_CHECKING:
    from pathlib import Path

    from .models import CategoryMapping, CreatedPost, CreatedUser, LegacyPost, LegacyTopic, LegacyUser
    from .protocols import TargetPlatform
    from .source import LegacySource
    from .state import IdentityMapper

logger: logging.Logger = logging.getLogger(__name__)


@dataclass
class MigrationStats:
    """Statistics collected during migration."""

    categories_created: int = 0
    users_created: int = 0
    users_suspended: int = 0
    topics_created: int = 0
    posts_created: int = 0
    records_skipped: int = 0
    orphaned_posts: int = 0
    uploads_created: int = 0
    missing_files: int = 0
    permalinks_created: int = 0
    topics_solved: int = 0
    errors: list[str] = field(default_factory=list)

    def add(self, result: CreateResult) -> None:
        self.records_skipped += result.skipped
        self.errors.extend(result.errors)


@dataclass
class MigrationResult:
    """Result of a migration run."""

    success: bool
    stats: MigrationStats


class TelligentMigrator:
    """Orchestrates the migration from a Telligent database to a target platform.

    Usage:
        source = LegacySource(SqlAlchemyDatabase(engine))
        identity = IdentityMapper.from_url("sqlite:///migration_state.db")
        migrator = TelligentMigrator(source, target, identity, file_base_dir=Path("/data/files"))
        result = migrator.migrate()

    All state that must survive a run lives in the identity mapper, so a
    failed run can simply be started again.
    """

    _source: LegacySource
    _target: TargetPlatform
    _identity: IdentityMapper
    _category_mapping: CategoryMapping | None
    _now: Callable[[], dt.datetime]
    _creator: RecordCreator
    _extractor: BatchExtractor
    _content: ContentTransformer
    _permalinks: PermalinkRegistrar
    _avatars: AvatarImporter
    _convert: Callable[[str | None], str | None]
    stats: MigrationStats

    def __init__(
        self,
        source: LegacySource,
        target: TargetPlatform,
        identity: IdentityMapper,
        *,
        file_base_dir: Path | None = None,
        category_mapping: CategoryMapping | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        now: Callable[[], dt.datetime] = dt.datetime.now,
        avatar_importer: AvatarImporter | None = None,
        converter: Callable[[str | None], str | None] = html_to_markdown,
    ) -> None:
        """Initialize the migrator.

        Args:
            source: Typed queries against the legacy database
            target: Target platform to create records in
            identity: Persisted legacy id -> target id mappings
            file_base_dir: Root of the Telligent file store; without it no
                attachments or local avatars are imported
            category_mapping: Explicit category layout; without it categories
                are inferred from groups and forums
            batch_size: Number of rows per source query
            now: Clock used to decide whether stickies and bans are still active
            avatar_importer: Importer for user avatars
            converter: HTML to Markdown conversion
        """
        self._source = source
        self._target = target
        self._identity = identity
        self._category_mapping = category_mapping
        self._now = now
        self._convert = converter
        self._creator = RecordCreator(target, identity)
        self._extractor = BatchExtractor(identity, batch_size)
        self._content = ContentTransformer(target, file_base_dir, converter=converter)
        self._permalinks = PermalinkRegistrar(target)
        self._avatars = avatar_importer or AvatarImporter(target, file_base_dir)
        self.stats = MigrationStats()

    def migrate(self) -> MigrationResult:
        """Execute the full migration.

        Returns:
            MigrationResult; ``success`` is False if any record was rejected

        Raises:
            MigrationError: If a phase cannot continue (source query failed,
                rows out of order, state database unavailable)
        """
        try:
            logger.info("Starting Telligent migration")

            self.add_permalink_normalizations()
            self.import_categories()
            self.import_users()
            self.import_topics()
            self.import_posts()
            self.mark_topics_as_solved()

        except MigrationError:
            logger.exception("Migration failed")
            raise
        except OSError as e:
            logger.exception("Migration failed")
            msg = f"Migration failed: {e}"
            raise MigrationError(msg) from e
        finally:
            self.stats.uploads_created = self._content.uploaded_files_count
            self.stats.missing_files = self._content.missing_files_count
            self.stats.permalinks_created = self._permalinks.created_count

        success = not self.stats.errors
        if success:
            logger.info("Migration completed successfully")
        else:
            logger.warning(f"Migration completed with {len(self.stats.errors)} errors")
        return MigrationResult(success=success, stats=self.stats)

    def add_permalink_normalizations(self) -> None:
        self._permalinks.add_normalizations()

    def import_categories(self) -> None:
        """Create the category tree and bind every forum to a category."""
        print("Importing categories...")
        resolver = CategoryResolver(self._creator, self._identity, self._permalinks, converter=self._convert)

        if self._category_mapping is not None:
            result = resolver.import_mapped(self._category_mapping)
        else:
            result = resolver.import_inferred(self._source.fetch_groups(), self._source.fetch_forums())

        self.stats.categories_created += result.created
        self.stats.add(result)

    def import_users(self) -> None:
        print("Importing users...")
        phase = Phase("users", EntityKind.USER, self._source.fetch_users)
        total = self._source.count_users()

        for batch in self._extractor.batches(phase):
            result = self._creator.create(EntityKind.USER, batch.rows, self._map_user, total=total, offset=batch.offset)
            self.stats.users_created += result.created
            self.stats.add(result)

    def _map_user(self, user: LegacyUser) -> CreatePayload:
        def after_create(created: CreatedUser) -> None:
            self._avatars.import_avatar(created, user.avatar_url)
            if suspend_if_banned(self._target, created, user.banned_until, user.ban_reason, now=self._now()):
                self.stats.users_suspended += 1

        return CreatePayload(
            legacy_id=str(user.id),
            fields={
                "email": user.email,
                "username": user.username,
                "name": user.display_name,
                "created_at": user.created_at,
                "bio_raw": self._convert(user.bio),
                "location": user.location,
                "website": user.website,
            },
            post_create=after_create,
        )

    def import_topics(self) -> None:
        print("Importing topics...")
        phase = Phase("topics", EntityKind.POST, self._source.fetch_topics, legacy_key=lambda row: topic_key(row.id))
        total = self._source.count_topics()

        for batch in self._extractor.batches(phase):
            result = self._creator.create(
                EntityKind.POST, batch.rows, self._map_topic, total=total, offset=batch.offset
            )
            self.stats.topics_created += result.created
            self.stats.add(result)

    def _author_id(self, legacy_user_id: int | None) -> int:
        user_id = self._identity.target_id_for(EntityKind.USER, str(legacy_user_id) if legacy_user_id else None)
        return user_id if user_id is not None else self._target.system_user_id

    def _map_topic(self, topic: LegacyTopic) -> CreatePayload | None:
        legacy_id = topic_key(topic.id)
        # Uploads are created while transforming, so never transform twice
        if self._identity.exists(EntityKind.POST, legacy_id):
            existing = self._identity.post_ref_for(legacy_id)
            if existing is not None:
                self._restore_topic_permalink(topic, existing.topic_id)
            return None

        user_id = self._author_id(topic.author_id)
        fields = {
            "title": html.unescape(topic.subject),
            "raw": self._content.transform(
                topic.body, user_id, "topic", topic.attachment, context=f"topic {topic.id}"
            ),
            "category": self._identity.target_id_for(EntityKind.CATEGORY, str(topic.forum_id)),
            "user_id": user_id,
            "created_at": topic.created_at,
            "closed": topic.is_locked,
            "views": topic.views,
        }

        if self._category_mapping is not None:
            tag = self._category_mapping.forum_tags.get(topic.forum_id)
            if tag:
                fields["tags"] = [tag]

        pinned_until = topic.sticky_until if is_in_future(topic.sticky_until, self._now()) else None
        if pinned_until is not None:
            fields["pinned_at"] = topic.created_at
            fields["pinned_until"] = pinned_until

        def after_create(created: CreatedPost) -> None:
            if pinned_until is not None:
                self._target.schedule_unpin(created.topic_id, pinned_until)
            self._permalinks.register(topic_url(topic.forum_id, topic.id), topic_id=created.topic_id)

        return CreatePayload(legacy_id=legacy_id, fields=fields, post_create=after_create)

    def _restore_topic_permalink(self, topic: LegacyTopic, topic_id: int) -> None:
        """Register the permalink of an imported topic if an earlier run could not."""
        url = topic_url(topic.forum_id, topic.id)
        try:
            self._permalinks.register(url, topic_id=topic_id)
        except TargetError as e:
            self.stats.errors.append(f"post {topic_key(topic.id)}: permalink {url}: {e}")
            logger.exception(f"Failed to register permalink {url}")

    def import_posts(self) -> None:
        print("Importing replies...")
        phase = Phase("replies", EntityKind.POST, self._source.fetch_posts)
        total = self._source.count_posts()

        for batch in self._extractor.batches(phase):
            result = self._creator.create(EntityKind.POST, batch.rows, self._map_post, total=total, offset=batch.offset)
            self.stats.posts_created += result.created
            self.stats.add(result)

    def _map_post(self, post: LegacyPost) -> CreatePayload | None:
        legacy_id = str(post.id)
        if self._identity.exists(EntityKind.POST, legacy_id):
            return None

        topic_ref = self._identity.post_ref_for(topic_key(post.thread_id))
        if topic_ref is None:
            self._report_orphan(post)
            return None

        reply_to_post_number = None
        parent_id = post.valid_parent_id
        if parent_id is not None:
            parent_ref = self._identity.post_ref_for(str(parent_id))
            if parent_ref is None:
                self._report_orphan(post)
                return None
            if parent_ref.topic_id == topic_ref.topic_id:
                reply_to_post_number = parent_ref.post_number

        user_id = self._author_id(post.author_id)
        fields = {
            "topic_id": topic_ref.topic_id,
            "raw": self._content.transform(post.body, user_id, "post", post.attachment, context=f"reply {post.id}"),
            "user_id": user_id,
            "created_at": post.created_at,
            "reply_to_post_number": reply_to_post_number,
        }
        if post.is_first_verified_answer:
            fields["custom_fields"] = {"is_accepted_answer": "true"}

        return CreatePayload(legacy_id=legacy_id, fields=fields)

    def _report_orphan(self, post: LegacyPost) -> None:
        self.stats.orphaned_posts += 1
        logger.warning(f"Failed to import post {post.id}. Parent was not found.")

    def mark_topics_as_solved(self) -> None:
        """Set the accepted answer of every topic with a flagged reply."""
        print("Marking topics as solved...")
        for post in self._target.accepted_answer_posts():
            self._target.set_topic_accepted_answer(post.topic_id, post.id)
            self.stats.topics_solved += 1
        logger.info(f"Marked {self.stats.topics_solved} topics as solved")
