"""
Pytest configuration and fixtures.

This module configures pytest behavior for different test types:
- Integration tests: Fail on any warnings from the code under test
- Unit tests: Allow warnings (resolution misses are expected there)

It also provides in-memory stand-ins for the legacy database and the target
platform, plus an identity mapper on an in-memory SQLite database.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, override

import pytest
from sqlalchemy import create_engine

from telligent_migrator.exceptions import TargetError
from telligent_migrator.models import (
    CreatedCategory,
    CreatedPost,
    CreatedUser,
    LegacyForum,
    LegacyGroup,
    LegacyPost,
    LegacyTopic,
    LegacyUser,
    Upload,
)
from telligent_migrator.state import IdentityMapper

if TYPE_CHECKING:
    from collections.abc import Generator, Mapping, Sequence
    from pathlib import Path

# Store warning records during test execution
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class IntegrationTestWarningHandler(logging.Handler):
    """Custom logging handler to capture warnings during integration tests."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__()
        self.test_nodeid = test_nodeid
        self.setLevel(logging.WARNING)

    @override
    def emit(self, record: logging.LogRecord) -> None:
        """Capture WARNING and above level logs."""
        if self.test_nodeid not in _integration_test_warnings:
            _integration_test_warnings[self.test_nodeid] = []
        _integration_test_warnings[self.test_nodeid].append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(
    request: pytest.FixtureRequest,
) -> Generator[None]:
    """
    Automatically fail integration tests if any WARNING level logs are emitted from the code under test.

    An end-to-end run over clean data must not produce a single resolution miss,
    orphaned reply or unparseable value. Unit tests provoke those on purpose and
    are not checked.
    """
    is_integration_test = request.node.get_closest_marker("integration") is not None

    if not is_integration_test:
        yield
        return

    test_nodeid = request.node.nodeid
    _integration_test_warnings[test_nodeid] = []

    # Add handler to root logger to capture all warnings
    handler = IntegrationTestWarningHandler(test_nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo[None]
) -> Generator[None]:  # type: ignore[misc]
    """
    Hook to check for warnings after test execution and mark test as failed if warnings were detected.

    This runs after the test completes but before pytest generates the final report.
    """
    outcome = yield
    report = outcome.get_result()

    # Only check during the test call phase (not setup or teardown)
    if call.when == "call" and report.outcome == "passed":
        test_nodeid = item.nodeid
        warning_records = _integration_test_warnings.get(test_nodeid, [])

        if warning_records:
            warning_messages = [
                f"{record.levelname}: {record.getMessage()} (in {record.name}:{record.lineno})"
                for record in warning_records
            ]

            report.outcome = "failed"
            report.longrepr = f"Integration test failed: {len(warning_records)} warning(s) detected:\n" + "\n".join(
                f"  - {msg}" for msg in warning_messages
            )

        _integration_test_warnings.pop(test_nodeid, None)


SYSTEM_USER_ID = -1


@dataclass
class FakePost:
    id: int
    topic_id: int
    post_number: int
    fields: dict[str, Any]


class FakeTarget:
    """In-memory target platform recording everything it is asked to do."""

    def __init__(self) -> None:
        self.categories: dict[int, dict[str, Any]] = {}
        self.users: dict[int, dict[str, Any]] = {}
        self.posts: dict[int, FakePost] = {}
        self.uploads: list[tuple[int, Path, str]] = []
        self.avatars: list[tuple[int, str]] = []
        self.suspensions: list[tuple[int, dt.datetime, str | None]] = []
        self.unpins: list[tuple[int, dt.datetime]] = []
        self.permalinks: dict[str, dict[str, int | None]] = {}
        self.normalizations: list[str] = []
        self.accepted_answers: dict[int, int] = {}
        self.refuse_uploads = False
        self.rejected_titles: set[str] = set()
        self.rejected_permalinks: set[str] = set()
        self._next_id = 100
        self._post_counts: dict[int, int] = {}

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    @property
    def system_user_id(self) -> int:
        return SYSTEM_USER_ID

    def create_category(self, fields: Mapping[str, Any]) -> CreatedCategory:
        category_id = self._new_id()
        self.categories[category_id] = dict(fields)
        return CreatedCategory(id=category_id, name=fields["name"])

    def create_user(self, fields: Mapping[str, Any]) -> CreatedUser:
        user_id = self._new_id()
        self.users[user_id] = dict(fields)
        return CreatedUser(id=user_id, username=fields["username"])

    def create_post(self, fields: Mapping[str, Any]) -> CreatedPost:
        if fields.get("title") in self.rejected_titles:
            msg = f"Title '{fields['title']}' is not allowed"
            raise TargetError(msg)

        post_id = self._new_id()
        topic_id = fields["topic_id"] if "topic_id" in fields else self._new_id()
        post_number = self._post_counts.get(topic_id, 0) + 1
        self._post_counts[topic_id] = post_number

        self.posts[post_id] = FakePost(id=post_id, topic_id=topic_id, post_number=post_number, fields=dict(fields))
        return CreatedPost(id=post_id, topic_id=topic_id, post_number=post_number)

    def create_upload(self, user_id: int, path: Path, filename: str) -> Upload | None:
        if self.refuse_uploads:
            return None
        upload = Upload(id=self._new_id(), url=f"upload://{path.name}", original_filename=filename)
        self.uploads.append((user_id, path, filename))
        return upload

    def html_for_upload(self, upload: Upload, filename: str) -> str:
        return f'<a class="attachment" href="{upload.url}">{filename}</a>'

    def create_avatar(self, user: CreatedUser, path: Path) -> None:
        self.avatars.append((user.id, path.name))

    def suspend_user(self, user: CreatedUser, until: dt.datetime, reason: str | None) -> None:
        self.suspensions.append((user.id, until, reason))

    def schedule_unpin(self, topic_id: int, at: dt.datetime) -> None:
        self.unpins.append((topic_id, at))

    def permalink_exists(self, url: str) -> bool:
        return url in self.permalinks

    def create_permalink(self, url: str, *, category_id: int | None = None, topic_id: int | None = None) -> None:
        if url in self.rejected_permalinks:
            msg = f"rejected {url}"
            raise TargetError(msg)
        self.permalinks[url] = {"category_id": category_id, "topic_id": topic_id}

    def permalink_normalizations(self) -> list[str]:
        return list(self.normalizations)

    def set_permalink_normalizations(self, normalizations: list[str]) -> None:
        self.normalizations = list(normalizations)

    def accepted_answer_posts(self) -> list[CreatedPost]:
        return [
            CreatedPost(id=post.id, topic_id=post.topic_id, post_number=post.post_number)
            for post in self.posts.values()
            if post.fields.get("custom_fields", {}).get("is_accepted_answer") == "true"
        ]

    def set_topic_accepted_answer(self, topic_id: int, post_id: int) -> None:
        self.accepted_answers[topic_id] = post_id

    # Helpers for assertions

    def topics(self) -> list[FakePost]:
        return [post for post in self.posts.values() if post.post_number == 1]

    def topic_titled(self, title: str) -> FakePost:
        return next(post for post in self.topics() if post.fields["title"] == title)

    def replies(self) -> list[FakePost]:
        return [post for post in self.posts.values() if post.post_number > 1]


def _page(rows: Sequence[Any], last_id: int, limit: int) -> list[Any]:
    return sorted((row for row in rows if row.id > last_id), key=lambda row: row.id)[:limit]


@dataclass
class FakeSource:
    """In-memory legacy source with the paging contract of LegacySource."""

    users: list[LegacyUser] = field(default_factory=list)
    groups: list[LegacyGroup] = field(default_factory=list)
    forums: list[LegacyForum] = field(default_factory=list)
    topics: list[LegacyTopic] = field(default_factory=list)
    posts: list[LegacyPost] = field(default_factory=list)

    def count_users(self) -> int:
        return len(self.users)

    def fetch_users(self, last_id: int, limit: int) -> list[LegacyUser]:
        return _page(self.users, last_id, limit)

    def fetch_groups(self) -> list[LegacyGroup]:
        return list(self.groups)

    def fetch_forums(self) -> list[LegacyForum]:
        return list(self.forums)

    def count_topics(self) -> int:
        return len(self.topics)

    def fetch_topics(self, last_id: int, limit: int) -> list[LegacyTopic]:
        return _page(self.topics, last_id, limit)

    def count_posts(self) -> int:
        return len(self.posts)

    def fetch_posts(self, last_id: int, limit: int) -> list[LegacyPost]:
        return _page(self.posts, last_id, limit)


@pytest.fixture
def identity() -> IdentityMapper:
    return IdentityMapper(create_engine("sqlite://"))


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()
