"""Tests for the migration orchestrator."""

import datetime as dt
from dataclasses import replace
from pathlib import Path

import pytest
from conftest import SYSTEM_USER_ID, FakeSource, FakeTarget

from telligent_migrator.content import attachment_path
from telligent_migrator.exceptions import MigrationError, SourceQueryError
from telligent_migrator.models import (
    AttachmentDescriptor,
    CategoryMapping,
    CategoryMappingEntry,
    EntityKind,
    ForumBinding,
    LegacyForum,
    LegacyGroup,
    LegacyPost,
    LegacyTopic,
    LegacyUser,
)
from telligent_migrator.orchestrator import TelligentMigrator
from telligent_migrator.permalinks import CATEGORY_LINK_NORMALIZATION, TOPIC_LINK_NORMALIZATION
from telligent_migrator.state import IdentityMapper

NOW = dt.datetime(2024, 1, 1, 12, 0)


def _source() -> FakeSource:
    return FakeSource(
        users=[
            LegacyUser(id=1, email="alice@example.com", username="alice", display_name="Alice", bio="<p>Hi</p>"),
            LegacyUser(
                id=2,
                email="bob@example.com",
                username="bob",
                banned_until="2030-01-01T00:00:00",
                ban_reason="spam",
            ),
        ],
        groups=[LegacyGroup(id=1, name="General")],
        forums=[
            LegacyForum(id=10, group_id=1, name="Help"),
            LegacyForum(id=11, group_id=1, name="Chat"),
        ],
        topics=[
            LegacyTopic(
                id=100,
                forum_id=10,
                author_id=1,
                subject="Q &amp; A",
                body="<p>How?</p>",
                created_at=dt.datetime(2023, 1, 1),
                sticky_until=dt.datetime(2030, 1, 1),
            ),
            LegacyTopic(
                id=101,
                forum_id=11,
                author_id=99,
                subject="Old sticky",
                body="<p>Closed</p>",
                is_locked=True,
                sticky_until=dt.datetime(2020, 1, 1),
                views=5,
            ),
        ],
        posts=[
            LegacyPost(id=200, thread_id=100, author_id=2, body="<p>Answer</p>", is_first_verified_answer=True),
            LegacyPost(id=201, thread_id=100, author_id=1, body="<p>Thanks</p>", parent_reply_id=200),
            LegacyPost(id=202, thread_id=100, author_id=1, body="<p>Odd</p>", parent_reply_id=300),
            LegacyPost(id=203, thread_id=101, author_id=2, body="<p>Other</p>"),
        ],
    )


def _migrator(
    source: FakeSource,
    target: FakeTarget,
    identity: IdentityMapper,
    category_mapping: CategoryMapping | None = None,
) -> TelligentMigrator:
    return TelligentMigrator(
        source,  # type: ignore[arg-type]
        target,
        identity,
        category_mapping=category_mapping,
        batch_size=2,
        now=lambda: NOW,
    )


@pytest.mark.integration
class TestFullMigration:
    def test_clean_run(self, target: FakeTarget, identity: IdentityMapper) -> None:
        result = _migrator(_source(), target, identity).migrate()

        assert result.success
        stats = result.stats
        assert (stats.categories_created, stats.users_created, stats.topics_created, stats.posts_created) == (
            3,
            2,
            2,
            4,
        )
        assert stats.users_suspended == 1
        assert stats.topics_solved == 1
        assert stats.permalinks_created == 4
        assert stats.errors == []

    def test_rerun_creates_nothing(self, target: FakeTarget, identity: IdentityMapper) -> None:
        _migrator(_source(), target, identity).migrate()
        counts = (len(target.categories), len(target.users), len(target.posts), len(target.permalinks))

        result = _migrator(_source(), target, identity).migrate()

        assert result.success
        assert (len(target.categories), len(target.users), len(target.posts), len(target.permalinks)) == counts
        assert (result.stats.users_created, result.stats.topics_created, result.stats.posts_created) == (0, 0, 0)

    def test_resume_after_partial_run(self, target: FakeTarget, identity: IdentityMapper) -> None:
        source = _source()
        later_posts = source.posts[2:]
        source.posts = source.posts[:2]
        _migrator(source, target, identity).migrate()

        source.posts = [*source.posts, *later_posts]
        result = _migrator(source, target, identity).migrate()

        assert result.stats.posts_created == 2
        assert len(target.replies()) == 4


@pytest.mark.unit
class TestMigrationDetails:
    @pytest.fixture
    def migrated(self, target: FakeTarget, identity: IdentityMapper) -> FakeTarget:
        _migrator(_source(), target, identity).migrate()
        return target

    def test_permalink_normalizations(self, migrated: FakeTarget) -> None:
        assert migrated.normalizations == [CATEGORY_LINK_NORMALIZATION, TOPIC_LINK_NORMALIZATION]

    def test_user_fields(self, migrated: FakeTarget) -> None:
        alice = next(user for user in migrated.users.values() if user["username"] == "alice")

        assert alice["email"] == "alice@example.com"
        assert alice["name"] == "Alice"
        assert alice["bio_raw"] == "Hi"

    def test_active_ban_becomes_suspension(self, migrated: FakeTarget, identity: IdentityMapper) -> None:
        bob_id = identity.target_id_for(EntityKind.USER, "2")

        assert migrated.suspensions == [(bob_id, dt.datetime(2030, 1, 1), "spam")]

    def test_topic_fields(self, migrated: FakeTarget, identity: IdentityMapper) -> None:
        topic = migrated.topic_titled("Q & A")

        assert topic.fields["raw"] == "How?"
        assert topic.fields["category"] == identity.target_id_for(EntityKind.CATEGORY, "10")
        assert topic.fields["user_id"] == identity.target_id_for(EntityKind.USER, "1")
        assert topic.fields["closed"] is False
        assert "tags" not in topic.fields

    def test_future_sticky_is_pinned_and_unpinned_later(self, migrated: FakeTarget) -> None:
        topic = migrated.topic_titled("Q & A")

        assert topic.fields["pinned_until"] == dt.datetime(2030, 1, 1)
        assert topic.fields["pinned_at"] == dt.datetime(2023, 1, 1)
        assert migrated.unpins == [(topic.topic_id, dt.datetime(2030, 1, 1))]

    def test_past_sticky_is_not_pinned(self, migrated: FakeTarget) -> None:
        topic = migrated.topic_titled("Old sticky")

        assert "pinned_until" not in topic.fields
        assert topic.fields["closed"] is True
        assert topic.fields["views"] == 5

    def test_unknown_author_falls_back_to_system_user(self, migrated: FakeTarget) -> None:
        assert migrated.topic_titled("Old sticky").fields["user_id"] == SYSTEM_USER_ID

    def test_topic_permalinks(self, migrated: FakeTarget) -> None:
        topic = migrated.topic_titled("Q & A")

        assert migrated.permalinks["f/10/t/100"] == {"category_id": None, "topic_id": topic.topic_id}

    def test_reply_to_earlier_reply(self, migrated: FakeTarget, identity: IdentityMapper) -> None:
        answer = identity.post_ref_for("200")
        thanks = migrated.posts[identity.target_id_for(EntityKind.POST, "201")]

        assert thanks.topic_id == answer.topic_id
        assert thanks.fields["reply_to_post_number"] == answer.post_number

    def test_parent_id_after_own_id_falls_back_to_topic(self, migrated: FakeTarget, identity: IdentityMapper) -> None:
        odd = migrated.posts[identity.target_id_for(EntityKind.POST, "202")]

        assert odd.topic_id == migrated.topic_titled("Q & A").topic_id
        assert odd.fields["reply_to_post_number"] is None

    def test_first_verified_answer_solves_topic(self, migrated: FakeTarget, identity: IdentityMapper) -> None:
        answer = identity.post_ref_for("200")

        assert migrated.posts[answer.post_id].fields["custom_fields"] == {"is_accepted_answer": "true"}
        assert migrated.accepted_answers == {answer.topic_id: answer.post_id}


@pytest.mark.unit
class TestMigrationEdgeCases:
    def test_reply_with_missing_parent_is_skipped(
        self, target: FakeTarget, identity: IdentityMapper, caplog: pytest.LogCaptureFixture
    ) -> None:
        source = _source()
        source.posts.append(LegacyPost(id=204, thread_id=100, author_id=1, body="<p>?</p>", parent_reply_id=150))

        result = _migrator(source, target, identity).migrate()

        assert result.stats.orphaned_posts == 1
        assert not identity.exists(EntityKind.POST, "204")
        assert "Failed to import post 204. Parent was not found." in caplog.text

    def test_reply_without_topic_is_skipped(self, target: FakeTarget, identity: IdentityMapper) -> None:
        source = _source()
        source.posts.append(LegacyPost(id=204, thread_id=999, author_id=1, body="<p>?</p>"))

        result = _migrator(source, target, identity).migrate()

        assert result.stats.orphaned_posts == 1
        assert result.success

    def test_parent_in_other_topic_falls_back_to_topic(self, target: FakeTarget, identity: IdentityMapper) -> None:
        source = _source()
        source.posts.append(LegacyPost(id=205, thread_id=101, author_id=1, body="<p>x</p>", parent_reply_id=200))

        _migrator(source, target, identity).migrate()

        post = target.posts[identity.target_id_for(EntityKind.POST, "205")]
        assert post.topic_id == target.topic_titled("Old sticky").topic_id
        assert post.fields["reply_to_post_number"] is None

    def test_rejected_topic_is_reported(self, target: FakeTarget, identity: IdentityMapper) -> None:
        target.rejected_titles.add("Old sticky")

        result = _migrator(_source(), target, identity).migrate()

        assert not result.success
        assert result.stats.errors == ["post T101: Title 'Old sticky' is not allowed"]
        # Its reply has nothing to attach to
        assert result.stats.orphaned_posts == 1
        assert result.stats.topics_created == 1

    def test_rejected_topic_permalink_does_not_abort(self, target: FakeTarget, identity: IdentityMapper) -> None:
        target.rejected_permalinks.add("f/10/t/100")

        result = _migrator(_source(), target, identity).migrate()

        assert not result.success
        assert result.stats.errors == ["post T100: follow-up failed: rejected f/10/t/100"]
        assert (result.stats.topics_created, result.stats.posts_created) == (2, 4)
        assert "f/11/t/101" in target.permalinks

    def test_rejected_topic_permalink_is_registered_on_rerun(
        self, target: FakeTarget, identity: IdentityMapper
    ) -> None:
        target.rejected_permalinks.add("f/10/t/100")
        source = _source()
        _migrator(source, target, identity).migrate()

        target.rejected_permalinks.clear()
        source.topics.append(LegacyTopic(id=102, forum_id=11, author_id=1, subject="New", body="<p>New</p>"))
        TelligentMigrator(
            source,  # type: ignore[arg-type]
            target,
            identity,
            batch_size=10,
            now=lambda: NOW,
        ).migrate()

        topic = target.topic_titled("Q & A")
        assert target.permalinks["f/10/t/100"] == {"category_id": None, "topic_id": topic.topic_id}
        assert len(target.topics()) == 3

    def test_category_mapping_with_tags(self, target: FakeTarget, identity: IdentityMapper) -> None:
        mapping = CategoryMapping(
            entries=(CategoryMappingEntry(category=("Support",), forums=(ForumBinding(10, tag="help"),)),)
        )

        _migrator(_source(), target, identity, category_mapping=mapping).migrate()

        assert [fields["name"] for fields in target.categories.values()] == ["Support"]
        assert target.topic_titled("Q & A").fields["tags"] == ["help"]
        # Unmapped forum
        assert target.topic_titled("Old sticky").fields["category"] is None

    def test_dedicated_attachment_is_uploaded_once(
        self, tmp_path: Path, target: FakeTarget, identity: IdentityMapper
    ) -> None:
        source = _source()
        attachment = AttachmentDescriptor(0, 10, 0, 100, "faq.txt")
        source.topics[0] = replace(source.topics[0], attachment=attachment)
        attachment_file = attachment_path(tmp_path, attachment)
        attachment_file.parent.mkdir(parents=True)
        attachment_file.write_text("faq", encoding="utf-8")

        for _ in range(2):
            migrator = TelligentMigrator(
                source,  # type: ignore[arg-type]
                target,
                identity,
                file_base_dir=tmp_path,
                now=lambda: NOW,
            )
            migrator.migrate()

        assert len(target.uploads) == 1
        assert target.topic_titled("Q & A").fields["raw"].endswith("faq.txt</a>")

    def test_source_failure_aborts(self, target: FakeTarget, identity: IdentityMapper) -> None:
        source = _source()

        def fail(last_id: int, limit: int) -> list[LegacyUser]:
            msg = "connection reset"
            raise SourceQueryError(msg)

        source.fetch_users = fail  # type: ignore[method-assign]

        with pytest.raises(MigrationError, match="connection reset"):
            _migrator(source, target, identity).migrate()
