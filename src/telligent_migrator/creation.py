"""Record creation in two steps: map a row to a payload, create, then run follow-ups."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from .exceptions import TargetError
from .models import CreatedPost, EntityKind

if TYPE_CHECKING:
    from .protocols import TargetPlatform
    from .state import IdentityMapper

logger: logging.Logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass
class CreatePayload:
    """What to create for one legacy row.

    ``post_create`` runs with the created entity once the target has
    materialized it and the identity mapping is stored. A TargetError from
    it is reported against the row; the record itself stays created.
    """

    legacy_id: str
    fields: dict[str, Any]
    post_create: Callable[[Any], None] | None = None


@dataclass
class CreateResult:
    created: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def add(self, other: CreateResult) -> None:
        self.created += other.created
        self.skipped += other.skipped
        self.failed += other.failed
        self.errors.extend(other.errors)


class RecordCreator:
    """Creates target records for legacy rows exactly once."""

    _target: TargetPlatform
    _identity: IdentityMapper

    def __init__(self, target: TargetPlatform, identity: IdentityMapper) -> None:
        self._target = target
        self._identity = identity

    def create(
        self,
        kind: EntityKind,
        rows: Iterable[R],
        mapper: Callable[[R], CreatePayload | None],
        *,
        total: int | None = None,
        offset: int = 0,
    ) -> CreateResult:
        """Create a record for every row the mapper returns a payload for.

        Args:
            kind: Identity namespace of the records
            rows: Legacy rows in source order
            mapper: Function from row to payload; None skips the row
            total: Total number of rows in the phase, for progress output
            offset: Number of rows of the phase handled before this batch

        Returns:
            CreateResult with counters for this batch
        """
        result = CreateResult()
        create = self._create_function(kind)
        handled = offset

        for row in rows:
            handled += 1
            payload = mapper(row)

            if payload is None or self._identity.exists(kind, payload.legacy_id):
                result.skipped += 1
                continue

            try:
                entity = create(payload.fields)
            except TargetError as e:
                result.failed += 1
                result.errors.append(f"{kind} {payload.legacy_id}: {e}")
                logger.exception(f"Failed to create {kind} {payload.legacy_id}")
                continue

            if isinstance(entity, CreatedPost):
                self._identity.record_post(payload.legacy_id, entity.ref)
            else:
                self._identity.record_mapping(kind, payload.legacy_id, entity.id)

            result.created += 1

            if payload.post_create is not None:
                try:
                    payload.post_create(entity)
                except TargetError as e:
                    result.failed += 1
                    result.errors.append(f"{kind} {payload.legacy_id}: follow-up failed: {e}")
                    logger.exception(f"Follow-up of {kind} {payload.legacy_id} failed")
                    continue

            logger.debug(f"Created {kind} {payload.legacy_id} -> {entity.id}")

        progress = f"{handled}/{total}" if total is not None else str(handled)
        logger.info(f"{kind}: {progress} processed ({result.created} created, {result.skipped} skipped)")
        return result

    def _create_function(self, kind: EntityKind) -> Callable[[dict[str, Any]], Any]:
        return {
            EntityKind.CATEGORY: self._target.create_category,
            EntityKind.USER: self._target.create_user,
            EntityKind.POST: self._target.create_post,
        }[kind]
