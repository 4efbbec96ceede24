"""
Base protocol and types for the remote collection client.

The remote document database is an external service. This module defines
the contract the store relies on:
- listen(): live, filtered, limited subscription yielding full snapshots
- get() / query(): one-shot reads
- commit(): atomic multi-document write within ONE collection
- delete(): single document delete

Invariants:
    - Every snapshot carries the full result set, never a delta
    - Snapshot.sequence is monotonically increasing per client and is
      at least the sequence of every write it reflects
    - A commit is atomic only within a single collection; batches that span
      collections are rejected
    - Documents are plain JSON-compatible dicts in the stored schema

How to change safely:
    - Protocol changes require updating every implementation
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)
import logging

from ..access import Predicate
from ..errors import RemoteWriteError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentSnapshot:
    """A stored document and its id.

    Attributes:
        id: Document id within its collection
        data: Document fields
    """

    id: str
    data: Dict[str, Any]


@dataclass
class Snapshot:
    """Full result set of a live query at a point in time.

    Attributes:
        collection: Collection the query runs against
        documents: Matching documents, at most the query limit
        sequence: Write sequence the snapshot reflects
    """

    collection: str
    documents: List[DocumentSnapshot] = field(default_factory=list)
    sequence: int = 0

    def __len__(self) -> int:
        return len(self.documents)


class WriteKind(Enum):
    SET = "set"
    DELETE = "delete"


@dataclass(frozen=True)
class WriteOp:
    """One document write inside a batch.

    SET replaces the whole document (no field merge).
    """

    collection: str
    doc_id: str
    kind: WriteKind = WriteKind.SET
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def set(cls, collection: str, doc_id: str, data: Dict[str, Any]) -> WriteOp:
        return cls(collection=collection, doc_id=doc_id, kind=WriteKind.SET, data=data)

    @classmethod
    def delete(cls, collection: str, doc_id: str) -> WriteOp:
        return cls(collection=collection, doc_id=doc_id, kind=WriteKind.DELETE)


@dataclass(frozen=True)
class WriteResult:
    """Acknowledgement of a committed batch.

    Attributes:
        collection: Collection written to
        sequence: Sequence number assigned to the batch
        doc_ids: Documents touched by the batch
    """

    collection: str
    sequence: int
    doc_ids: tuple = ()


def batch_collection(writes: List[WriteOp]) -> str:
    """Return the single collection a batch targets.

    Raises:
        RemoteWriteError: If the batch is empty or spans collections
    """
    if not writes:
        raise RemoteWriteError("Empty batch")
    collections = {w.collection for w in writes}
    if len(collections) > 1:
        raise RemoteWriteError(
            f"Batch spans collections {sorted(collections)}; commits are atomic per collection only"
        )
    return writes[0].collection


@runtime_checkable
class Subscription(Protocol):
    """A live query. Iterate for snapshots; close() revokes it.

    Example:
        >>> sub = client.listen("events", access_filter, limit=50)
        >>> async for snapshot in sub:
        ...     apply(snapshot)
        >>> await sub.close()
    """

    def __aiter__(self) -> AsyncIterator[Snapshot]:
        ...

    async def close(self) -> None:
        ...

    @property
    def closed(self) -> bool:
        ...


@runtime_checkable
class RemoteCollectionClient(Protocol):
    """Protocol for remote document database clients."""

    @abstractmethod
    def listen(
        self,
        collection: str,
        predicate: Optional[Predicate],
        limit: Optional[int] = None,
    ) -> Subscription:
        """Open a live query.

        The first snapshot is delivered as soon as the query is evaluated,
        then a new full snapshot after every committed change to the
        collection. Listener failures surface as SubscriptionError raised
        from iteration.

        Args:
            collection: Collection name
            predicate: Filter (None means the whole collection)
            limit: Maximum documents per snapshot
        """
        ...

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one document, or None if it does not exist."""
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        predicate: Optional[Predicate],
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        """Run a one-shot query.

        Raises:
            RemoteReadError: If the query fails
        """
        ...

    @abstractmethod
    async def commit(self, writes: List[WriteOp]) -> WriteResult:
        """Atomically apply a batch of writes to ONE collection.

        Raises:
            RemoteWriteError: If the backend rejects the batch or it spans
                collections
        """
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> WriteResult:
        """Delete one document.

        Raises:
            RemoteWriteError: If the backend rejects the delete
        """
        ...
