"""
Remote collection client abstraction.

The document database is an external service; the store talks to it only
through the RemoteCollectionClient protocol. InMemoryCollectionClient is the
reference implementation used by tests and local development.
"""

from .base import (
    DocumentSnapshot,
    RemoteCollectionClient,
    Snapshot,
    Subscription,
    WriteKind,
    WriteOp,
    WriteResult,
    batch_collection,
)
from .memory import InMemoryCollectionClient, InMemorySubscription

__all__ = [
    "DocumentSnapshot",
    "RemoteCollectionClient",
    "Snapshot",
    "Subscription",
    "WriteKind",
    "WriteOp",
    "WriteResult",
    "batch_collection",
    "InMemoryCollectionClient",
    "InMemorySubscription",
]
