"""Persisted migration state: legacy id -> target id mappings.

The state lives in its own database (SQLite by default) so that an aborted run
can be restarted and skips everything that was already created.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    and_,
    create_engine,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .exceptions import MigrationError
from .models import EntityKind, PostRef

logger: logging.Logger = logging.getLogger(__name__)

metadata = MetaData()

id_mappings = Table(
    "id_mappings",
    metadata,
    Column("kind", String(16), primary_key=True),
    Column("legacy_id", String(64), primary_key=True),
    Column("target_id", Integer, nullable=False),
)

post_refs = Table(
    "post_refs",
    metadata,
    Column("legacy_id", String(64), primary_key=True),
    Column("post_id", Integer, nullable=False),
    Column("topic_id", Integer, nullable=False),
    Column("post_number", Integer, nullable=False),
)

# Parameter limit of SQLite is 999 on old builds
_LOOKUP_CHUNK_SIZE = 500


class IdentityMapper:
    """Append-only legacy id -> target id associations per entity kind.

    Mappings are never updated once set: recording an id a second time keeps
    the first target id.
    """

    _engine: Engine

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        try:
            metadata.create_all(engine)
        except SQLAlchemyError as e:
            msg = f"Failed to initialize migration state: {e}"
            raise MigrationError(msg) from e

    @classmethod
    def from_url(cls, url: str) -> IdentityMapper:
        return cls(create_engine(url))

    def record_mapping(self, kind: EntityKind, legacy_id: str, target_id: int) -> bool:
        """Store a mapping unless one exists. Returns True if it was stored."""
        with self._engine.begin() as conn:
            existing = conn.execute(
                select(id_mappings.c.target_id).where(self._key(kind, legacy_id))
            ).scalar_one_or_none()
            if existing is not None:
                if existing != target_id:
                    logger.debug(f"Keeping {kind} {legacy_id} -> {existing}, ignoring {target_id}")
                return False

            conn.execute(insert(id_mappings).values(kind=str(kind), legacy_id=str(legacy_id), target_id=target_id))
        return True

    def exists(self, kind: EntityKind, legacy_id: str) -> bool:
        return self.target_id_for(kind, legacy_id) is not None

    def target_id_for(self, kind: EntityKind, legacy_id: str | None) -> int | None:
        if legacy_id is None:
            return None
        with self._engine.connect() as conn:
            return conn.execute(
                select(id_mappings.c.target_id).where(self._key(kind, legacy_id))
            ).scalar_one_or_none()

    def all_exist(self, kind: EntityKind, legacy_ids: Iterable[str]) -> bool:
        """Check whether every given id already has a mapping."""
        wanted = {str(legacy_id) for legacy_id in legacy_ids}
        if not wanted:
            return True

        found: set[str] = set()
        ids = sorted(wanted)
        with self._engine.connect() as conn:
            for start in range(0, len(ids), _LOOKUP_CHUNK_SIZE):
                chunk = ids[start : start + _LOOKUP_CHUNK_SIZE]
                rows = conn.execute(
                    select(id_mappings.c.legacy_id).where(
                        and_(id_mappings.c.kind == str(kind), id_mappings.c.legacy_id.in_(chunk))
                    )
                )
                found.update(rows.scalars())
        return found == wanted

    def count(self, kind: EntityKind) -> int:
        with self._engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(id_mappings).where(id_mappings.c.kind == str(kind))
            ).scalar_one()

    def record_post(self, legacy_id: str, ref: PostRef) -> bool:
        """Store where an imported topic or reply ended up."""
        if not self.record_mapping(EntityKind.POST, legacy_id, ref.post_id):
            return False
        with self._engine.begin() as conn:
            conn.execute(
                insert(post_refs).values(
                    legacy_id=str(legacy_id),
                    post_id=ref.post_id,
                    topic_id=ref.topic_id,
                    post_number=ref.post_number,
                )
            )
        return True

    def post_ref_for(self, legacy_id: str) -> PostRef | None:
        with self._engine.connect() as conn:
            row = conn.execute(select(post_refs).where(post_refs.c.legacy_id == str(legacy_id))).first()
        if row is None:
            return None
        return PostRef(post_id=row.post_id, topic_id=row.topic_id, post_number=row.post_number)

    @staticmethod
    def _key(kind: EntityKind, legacy_id: str):  # noqa: ANN205 - SQLAlchemy expression
        return and_(id_mappings.c.kind == str(kind), id_mappings.c.legacy_id == str(legacy_id))
