"""Incremental, resumable extraction of legacy rows in batches."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, Protocol, TypeVar

from .exceptions import OrderingError

if TYPE_CHECKING:
    from .models import EntityKind
    from .state import IdentityMapper

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


class HasId(Protocol):
    @property
    def id(self) -> int: ...


RowT = TypeVar("RowT", bound=HasId)


@dataclass(frozen=True)
class Phase(Generic[RowT]):
    """A paginated extraction over one legacy table.

    ``fetch(last_id, limit)`` returns rows with ids greater than ``last_id``
    in ascending id order; ``legacy_key`` maps a row to its identity key.
    """

    name: str
    kind: EntityKind
    fetch: Callable[[int, int], Sequence[RowT]]
    legacy_key: Callable[[RowT], str] = lambda row: str(row.id)


@dataclass(frozen=True)
class Batch(Generic[RowT]):
    rows: Sequence[RowT]
    offset: int
    """Number of rows of the phase before this batch."""

    @property
    def last_id(self) -> int:
        return self.rows[-1].id


class BatchExtractor:
    """Pages through a phase using the last seen id as watermark.

    Batches whose rows were all imported by an earlier run are consumed
    without being handed out, which makes restarting an aborted run cheap.
    """

    _identity: IdentityMapper
    batch_size: int

    def __init__(self, identity: IdentityMapper, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        if batch_size < 1:
            msg = f"Batch size must be positive, got {batch_size}"
            raise ValueError(msg)
        self._identity = identity
        self.batch_size = batch_size

    def extract(self, phase: Phase[RowT], watermark: int) -> Sequence[RowT]:
        """Fetch the next batch after ``watermark``.

        Raises:
            OrderingError: If the rows are not strictly increasing past the watermark
        """
        rows = phase.fetch(watermark, self.batch_size)
        if len(rows) > self.batch_size:
            msg = f"{phase.name}: got {len(rows)} rows for a batch size of {self.batch_size}"
            raise OrderingError(msg)

        previous = watermark
        for row in rows:
            if row.id <= previous:
                msg = f"{phase.name}: row {row.id} is not after {previous}"
                raise OrderingError(msg)
            previous = row.id
        return rows

    def batches(self, phase: Phase[RowT], *, start_after: int = -1) -> Iterator[Batch[RowT]]:
        """Yield batches until the source is exhausted."""
        watermark = start_after
        offset = 0

        while rows := self.extract(phase, watermark):
            watermark = rows[-1].id

            if self._identity.all_exist(phase.kind, (phase.legacy_key(row) for row in rows)):
                logger.debug(f"{phase.name}: all {len(rows)} rows up to {watermark} already imported")
            else:
                yield Batch(rows=rows, offset=offset)

            offset += len(rows)

        logger.debug(f"{phase.name}: finished after id {watermark}")
