"""
Common fixtures: an in-memory backend, a signed-in user and a store.
"""

import pytest

from sdk.planner_sync.auth import StaticAuthProvider
from sdk.planner_sync.config import SyncSettings
from sdk.planner_sync.remote.memory import InMemoryCollectionClient
from sdk.planner_sync.store import EventStore

from tests.helpers import ADA


@pytest.fixture
def client():
    """Create a fresh in-memory backend."""
    return InMemoryCollectionClient()


@pytest.fixture
def auth():
    """Auth provider with Ada signed in."""
    return StaticAuthProvider(ADA)


@pytest.fixture
def settings():
    """Default settings, independent of the environment."""
    return SyncSettings(_env_file=None, log_format="text", log_level="INFO")


@pytest.fixture
def store(client, auth, settings):
    """Event store, not yet started."""
    return EventStore(client, auth, settings=settings)
