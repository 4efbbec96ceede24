"""
In-memory remote collection client for testing.

This module provides a document database that lives in process memory for:
- Unit and integration tests of the store
- Local development without a backend

It follows the same contract as a production client: full snapshots,
per-collection atomic batches, whole-document set semantics.

Invariants:
    - All data is lost on process exit
    - Each commit gets the next sequence number; snapshots carry the
      sequence of the latest write they reflect
    - Subscribers receive deep copies; nothing they do changes stored data

How to change safely:
    - This is test-only code, changes don't affect production clients
    - Keep the interface compatible with the RemoteCollectionClient protocol
    - Add failure-injection helpers rather than special-casing callers
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from ..access import Predicate
from ..errors import RemoteReadError, RemoteWriteError, SubscriptionError
from .base import (
    DocumentSnapshot,
    Snapshot,
    WriteKind,
    WriteOp,
    WriteResult,
    batch_collection,
)

logger = logging.getLogger(__name__)

_CLOSED = object()


@dataclass
class _InjectedFailure:
    error: RemoteWriteError
    collection: Optional[str] = None


class InMemorySubscription:
    """Live query against an InMemoryCollectionClient.

    Snapshots are queued as they are produced; iteration drains the queue
    and stops once close() was called.
    """

    def __init__(
        self,
        client: InMemoryCollectionClient,
        collection: str,
        predicate: Optional[Predicate],
        limit: Optional[int],
    ) -> None:
        self._client = client
        self.collection = collection
        self.predicate = predicate
        self.limit = limit
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, item: Any) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    def __aiter__(self) -> AsyncIterator[Snapshot]:
        return self

    async def __anext__(self) -> Snapshot:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._client._unregister(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryCollectionClient:
    """In-memory implementation of RemoteCollectionClient.

    Attributes:
        commits: Every accepted batch in commit order (testing aid)

    Thread safety:
        Uses an asyncio lock around writes. Safe to use from multiple
        coroutines on one event loop.

    Example:
        >>> client = InMemoryCollectionClient()
        >>> await client.commit([WriteOp.set("events", "e1", {"title": "Offsite"})])
        >>> sub = client.listen("events", None)
        >>> snapshot = await sub.__anext__()
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._subscriptions: Dict[str, Set[InMemorySubscription]] = defaultdict(set)
        self._sequence = 0
        self._lock = asyncio.Lock()
        self._injected: List[_InjectedFailure] = []
        self._denied_collections: Set[str] = set()
        self._listen_failures: Dict[str, SubscriptionError] = {}
        self._query_failures: Dict[str, RemoteReadError] = {}
        self.commits: List[List[WriteOp]] = []

    @property
    def sequence(self) -> int:
        return self._sequence

    # Protocol

    def listen(
        self,
        collection: str,
        predicate: Optional[Predicate],
        limit: Optional[int] = None,
    ) -> InMemorySubscription:
        """Open a live query; the first snapshot is queued immediately."""
        subscription = InMemorySubscription(self, collection, predicate, limit)

        failure = self._listen_failures.get(collection)
        if failure is not None:
            subscription._push(failure)
            return subscription

        self._subscriptions[collection].add(subscription)
        subscription._push(self._snapshot(subscription))
        logger.debug(
            "In-memory listener attached",
            extra={"collection": collection, "limit": limit},
        )
        return subscription

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        failure = self._query_failures.get(collection)
        if failure is not None:
            raise failure
        data = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def query(
        self,
        collection: str,
        predicate: Optional[Predicate],
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        failure = self._query_failures.get(collection)
        if failure is not None:
            raise failure
        return self._evaluate(collection, predicate, limit)

    async def commit(self, writes: List[WriteOp]) -> WriteResult:
        collection = batch_collection(writes)

        async with self._lock:
            self._raise_injected(collection, writes)

            stored = self._collections[collection]
            for write in writes:
                if write.kind == WriteKind.DELETE:
                    stored.pop(write.doc_id, None)
                else:
                    stored[write.doc_id] = copy.deepcopy(write.data or {})

            self._sequence += 1
            sequence = self._sequence
            self.commits.append(list(writes))

        logger.debug(
            "In-memory batch committed",
            extra={"collection": collection, "writes": len(writes), "sequence": sequence},
        )
        self._notify(collection)
        return WriteResult(
            collection=collection,
            sequence=sequence,
            doc_ids=tuple(w.doc_id for w in writes),
        )

    async def delete(self, collection: str, doc_id: str) -> WriteResult:
        return await self.commit([WriteOp.delete(collection, doc_id)])

    # Internals

    def _raise_injected(self, collection: str, writes: List[WriteOp]) -> None:
        if collection in self._denied_collections:
            raise RemoteWriteError(
                f"Permission denied on '{collection}'",
                collection=collection,
                doc_id=writes[0].doc_id,
            )
        for index, failure in enumerate(self._injected):
            if failure.collection is None or failure.collection == collection:
                del self._injected[index]
                raise failure.error

    def _evaluate(
        self,
        collection: str,
        predicate: Optional[Predicate],
        limit: Optional[int],
    ) -> List[DocumentSnapshot]:
        results = []
        for doc_id, data in self._collections.get(collection, {}).items():
            if predicate is not None and not predicate.matches(data):
                continue
            results.append(DocumentSnapshot(id=doc_id, data=copy.deepcopy(data)))
            if limit is not None and len(results) >= limit:
                break
        return results

    def _snapshot(self, subscription: InMemorySubscription) -> Snapshot:
        return Snapshot(
            collection=subscription.collection,
            documents=self._evaluate(
                subscription.collection, subscription.predicate, subscription.limit
            ),
            sequence=self._sequence,
        )

    def _notify(self, collection: str) -> None:
        for subscription in list(self._subscriptions.get(collection, ())):
            subscription._push(self._snapshot(subscription))

    def _unregister(self, subscription: InMemorySubscription) -> None:
        self._subscriptions[subscription.collection].discard(subscription)

    # Testing helpers

    async def seed(self, collection: str, doc_id: str, data: Dict[str, Any]) -> WriteResult:
        """Store a document bypassing injected failures (testing helper)."""
        denied = self._denied_collections
        injected = self._injected
        self._denied_collections, self._injected = set(), []
        try:
            return await self.commit([WriteOp.set(collection, doc_id, data)])
        finally:
            self._denied_collections, self._injected = denied, injected

    def fail_next_commit(
        self,
        error: Optional[RemoteWriteError] = None,
        collection: Optional[str] = None,
    ) -> None:
        """Reject the next commit (to collection, if given) (testing helper)."""
        self._injected.append(
            _InjectedFailure(
                error=error or RemoteWriteError("Injected write failure", collection=collection),
                collection=collection,
            )
        )

    def deny_collection(self, collection: str) -> None:
        """Reject every write to collection until allowed again (testing helper)."""
        self._denied_collections.add(collection)

    def allow_collection(self, collection: str) -> None:
        self._denied_collections.discard(collection)

    def fail_listen(self, collection: str, error: Optional[SubscriptionError] = None) -> None:
        """Make new listeners on collection fail before any snapshot (testing helper)."""
        self._listen_failures[collection] = error or SubscriptionError(
            f"Injected listener failure on '{collection}'", collection=collection
        )

    def fail_queries(self, collection: str, error: Optional[RemoteReadError] = None) -> None:
        """Make get/query on collection raise (testing helper)."""
        self._query_failures[collection] = error or RemoteReadError(
            f"Injected read failure on '{collection}'", collection=collection
        )

    def documents(self, collection: str) -> Dict[str, Dict[str, Any]]:
        """Copy of everything stored in a collection (testing helper)."""
        return copy.deepcopy(dict(self._collections.get(collection, {})))

    def listener_count(self, collection: Optional[str] = None) -> int:
        """Number of open listeners (testing helper)."""
        if collection is not None:
            return len(self._subscriptions.get(collection, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    def commit_count(self, collection: Optional[str] = None) -> int:
        """Number of accepted batches (testing helper)."""
        if collection is None:
            return len(self.commits)
        return sum(1 for batch in self.commits if batch[0].collection == collection)
