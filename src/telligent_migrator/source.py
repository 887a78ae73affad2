"""Read access to the Telligent database.

All queries page by primary key: ``fetch_*(last_id, limit)`` returns up to
``limit`` rows with an id greater than ``last_id``, ordered by id.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Final

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError

from .exceptions import SourceQueryError
from .models import AttachmentDescriptor, LegacyForum, LegacyGroup, LegacyPost, LegacyTopic, LegacyUser

if TYPE_CHECKING:
    from .config import Settings
    from .protocols import SourceDatabase

logger: logging.Logger = logging.getLogger(__name__)

_USER_CONDITIONS: Final[str] = """
    (
      EXISTS(SELECT 1 FROM te_Forum_Threads t WHERE t.UserId = u.UserID) OR
      EXISTS(SELECT 1 FROM te_Forum_ThreadReplies r WHERE r.UserId = u.UserID)
    )
"""

# TOP limits users, not their profile property rows
_USERS_SQL: Final[str] = f"""
    SELECT *
    FROM (
        SELECT u.UserID, u.Email, u.UserName, u.CreateDate, p.PropertyName, p.PropertyValue
        FROM (
            SELECT TOP (:limit) u.UserID, u.MembershipID, u.Email, u.UserName, u.CreateDate
            FROM cs_Users u
            WHERE u.UserID > :last_id AND {_USER_CONDITIONS}
            ORDER BY u.UserID
          ) u
          LEFT OUTER JOIN (
            SELECT NULL AS UserID, ap.UserId AS MembershipID, x.PropertyName, x.PropertyValue
            FROM aspnet_Profile ap
              CROSS APPLY dbo.GetProperties(ap.PropertyNames, ap.PropertyValuesString) x
            WHERE ap.PropertyNames NOT LIKE '%:-1%' AND
                  x.PropertyName IN ('bio', 'commonName', 'location', 'webAddress')
            UNION
            SELECT up.UserID, NULL AS MembershipID, x.PropertyName,
                   CAST(x.PropertyValue AS NVARCHAR) AS PropertyValue
            FROM cs_UserProfile up
              CROSS APPLY dbo.GetProperties(up.PropertyNames, up.PropertyValues) x
            WHERE up.PropertyNames NOT LIKE '%:-1%' AND
                  x.PropertyName IN ('avatarUrl', 'BannedUntil', 'UserBanReason')
          ) p ON p.UserID = u.UserID OR p.MembershipID = u.MembershipID
    ) x
      PIVOT (
        MAX(PropertyValue)
        FOR PropertyName
        IN (bio, commonName, location, webAddress, avatarUrl, BannedUntil, UserBanReason)
      ) Y
    ORDER BY UserID
"""

_GROUPS_SQL: Final[str] = """
    SELECT GroupID, Name, HtmlDescription, DateCreated, SortOrder
    FROM cs_Groups g
    WHERE (SELECT COUNT(1) FROM te_Forum_Forums f WHERE f.GroupId = g.GroupID) > 1
    ORDER BY SortOrder, Name
"""

_FORUMS_SQL: Final[str] = """
    SELECT ForumId, GroupId, Name, Description, DateCreated, SortOrder
    FROM te_Forum_Forums
    ORDER BY GroupId, SortOrder, Name
"""

_TOPICS_SQL: Final[str] = """
    SELECT TOP (:limit)
      t.ThreadId, t.ForumId, t.UserId, t.TotalViews,
      t.Subject, t.Body, t.DateCreated, t.IsLocked, t.StickyDate,
      a.ApplicationTypeId, a.ApplicationId, a.ApplicationContentTypeId, a.ContentId, a.FileName, a.IsRemote
    FROM te_Forum_Threads t
      LEFT JOIN te_Attachments a
        ON (a.ApplicationId = t.ForumId AND a.ApplicationTypeId = 0 AND a.ContentId = t.ThreadId AND
            a.ApplicationContentTypeId = 0)
    WHERE t.ThreadId > :last_id AND {forum_condition}
    ORDER BY t.ThreadId
"""

# The first verified answer is the verified reply without an earlier verified
# reply in the same thread. Parents are only kept if they are earlier replies
# of the same thread.
_POSTS_SQL: Final[str] = """
    SELECT TOP (:limit)
      tr.ThreadReplyId, tr.ThreadId, tr.UserId, pr.ThreadReplyId AS ParentReplyId,
      tr.Body, tr.ThreadReplyDate,
      CONVERT(BIT,
              CASE WHEN tr.AnswerVerifiedUtcDate IS NOT NULL AND NOT EXISTS(
                  SELECT 1
                  FROM te_Forum_ThreadReplies x
                  WHERE x.ThreadId = tr.ThreadId AND x.ThreadReplyId < tr.ThreadReplyId AND
                        x.AnswerVerifiedUtcDate IS NOT NULL
              )
                THEN 1
              ELSE 0 END) AS IsFirstVerifiedAnswer,
      a.ApplicationTypeId, a.ApplicationId, a.ApplicationContentTypeId, a.ContentId, a.FileName, a.IsRemote
    FROM te_Forum_ThreadReplies tr
      JOIN te_Forum_Threads t ON (tr.ThreadId = t.ThreadId)
      LEFT JOIN te_Forum_ThreadReplies pr
        ON (tr.ParentReplyId = pr.ThreadReplyId AND tr.ParentReplyId < tr.ThreadReplyId AND
            tr.ThreadId = pr.ThreadId)
      LEFT JOIN te_Attachments a
        ON (a.ApplicationId = t.ForumId AND a.ApplicationTypeId = 0 AND a.ContentId = tr.ThreadReplyId AND
            a.ApplicationContentTypeId = 1)
    WHERE tr.ThreadReplyId > :last_id AND {forum_condition}
    ORDER BY tr.ThreadReplyId
"""


def build_url(settings: Settings) -> URL:
    """SQLAlchemy URL of the Telligent SQL Server database."""
    return URL.create(
        "mssql+pymssql",
        username=settings.db_username,
        password=settings.db_password,
        host=settings.db_host,
        port=settings.db_port,
        database=settings.db_name,
    )


def create_source_engine(settings: Settings) -> Engine:
    # The user query is very slow, hence the explicit read timeout
    return create_engine(build_url(settings), connect_args={"timeout": settings.db_timeout})


class SqlAlchemyDatabase:
    """SourceDatabase on top of a SQLAlchemy engine."""

    _engine: Engine

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def query(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        statement = text(sql)
        params = dict(params or {})
        expanding = [name for name, value in params.items() if isinstance(value, (list, tuple, set, frozenset))]
        if expanding:
            statement = statement.bindparams(*(bindparam(name, expanding=True) for name in expanding))
            params = {name: list(value) if name in expanding else value for name, value in params.items()}

        try:
            with self._engine.connect() as conn:
                return [dict(row._mapping) for row in conn.execute(statement, params)]
        except SQLAlchemyError as e:
            msg = f"Query against the legacy database failed: {e}"
            raise SourceQueryError(msg) from e


class LegacySource:
    """Typed queries against the fixed Telligent schema."""

    _db: SourceDatabase
    _ignored_forum_ids: frozenset[int]

    def __init__(self, db: SourceDatabase, *, ignored_forum_ids: frozenset[int] = frozenset()) -> None:
        self._db = db
        self._ignored_forum_ids = ignored_forum_ids

    def _forum_filter(self) -> tuple[str, dict[str, Any]]:
        if not self._ignored_forum_ids:
            return "1 = 1", {}
        return "t.ForumId NOT IN :ignored_forum_ids", {"ignored_forum_ids": sorted(self._ignored_forum_ids)}

    def _count(self, sql: str, params: Mapping[str, Any] | None = None) -> int:
        rows = self._db.query(sql, params)
        return int(rows[0]["count"]) if rows else 0

    def count_users(self) -> int:
        return self._count(f"SELECT COUNT(1) AS count FROM cs_Users u WHERE {_USER_CONDITIONS}")

    def fetch_users(self, last_id: int, limit: int) -> list[LegacyUser]:
        rows = self._db.query(_USERS_SQL, {"last_id": last_id, "limit": limit})
        return [
            LegacyUser(
                id=row["UserID"],
                email=row["Email"],
                username=row["UserName"],
                display_name=row.get("commonName"),
                created_at=row.get("CreateDate"),
                bio=row.get("bio"),
                location=row.get("location"),
                website=row.get("webAddress"),
                avatar_url=row.get("avatarUrl"),
                banned_until=row.get("BannedUntil"),
                ban_reason=row.get("UserBanReason"),
            )
            for row in rows
        ]

    def fetch_groups(self) -> list[LegacyGroup]:
        """Groups with more than one forum; lone forums need no parent."""
        return [
            LegacyGroup(
                id=row["GroupID"],
                name=row["Name"],
                description=row.get("HtmlDescription"),
                sort_order=row.get("SortOrder"),
            )
            for row in self._db.query(_GROUPS_SQL)
        ]

    def fetch_forums(self) -> list[LegacyForum]:
        return [
            LegacyForum(
                id=row["ForumId"],
                group_id=row.get("GroupId"),
                name=row["Name"],
                description=row.get("Description"),
                sort_order=row.get("SortOrder"),
            )
            for row in self._db.query(_FORUMS_SQL)
        ]

    def count_topics(self) -> int:
        condition, params = self._forum_filter()
        return self._count(f"SELECT COUNT(1) AS count FROM te_Forum_Threads t WHERE {condition}", params)

    def fetch_topics(self, last_id: int, limit: int) -> list[LegacyTopic]:
        condition, params = self._forum_filter()
        rows = self._db.query(
            _TOPICS_SQL.format(forum_condition=condition), {**params, "last_id": last_id, "limit": limit}
        )
        return [
            LegacyTopic(
                id=row["ThreadId"],
                forum_id=row["ForumId"],
                author_id=row.get("UserId"),
                subject=row["Subject"],
                body=row.get("Body"),
                created_at=row.get("DateCreated"),
                is_locked=bool(row.get("IsLocked")),
                sticky_until=row.get("StickyDate"),
                views=row.get("TotalViews") or 0,
                attachment=AttachmentDescriptor.from_row(row),
            )
            for row in rows
        ]

    def count_posts(self) -> int:
        condition, params = self._forum_filter()
        sql = f"""
            SELECT COUNT(1) AS count
            FROM te_Forum_ThreadReplies tr
              JOIN te_Forum_Threads t ON (tr.ThreadId = t.ThreadId)
            WHERE {condition}
        """
        return self._count(sql, params)

    def fetch_posts(self, last_id: int, limit: int) -> list[LegacyPost]:
        condition, params = self._forum_filter()
        rows = self._db.query(
            _POSTS_SQL.format(forum_condition=condition), {**params, "last_id": last_id, "limit": limit}
        )
        return [
            LegacyPost(
                id=row["ThreadReplyId"],
                thread_id=row["ThreadId"],
                author_id=row.get("UserId"),
                body=row.get("Body"),
                created_at=row.get("ThreadReplyDate"),
                parent_reply_id=row.get("ParentReplyId"),
                is_first_verified_answer=bool(row.get("IsFirstVerifiedAnswer")),
                attachment=AttachmentDescriptor.from_row(row),
            )
            for row in rows
        ]
