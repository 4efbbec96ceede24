"""
Shared helpers for SDK tests.

Snapshots are delivered by background consumer tasks, so tests poll for
the state they expect instead of sleeping a fixed time.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, List

from sdk.planner_sync.auth import CurrentUser
from sdk.planner_sync.store import EventStore

WHEN = datetime(2026, 5, 1, 18, 0, tzinfo=timezone.utc)

ADA = CurrentUser(uid="u-ada", display_name="Ada Lovelace", email="ada@example.com")
GRACE = CurrentUser(uid="u-grace", display_name="Grace Hopper", email="grace@example.com")


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate until it holds or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met within timeout")
        await asyncio.sleep(0.005)


async def settle(store: EventStore) -> None:
    """Wait for the initial snapshots and every pending echo."""
    await wait_until(lambda: not store.is_loading and store.pending_writes == 0)


class FixedGroups:
    """Group source with a fixed membership."""

    def __init__(self, group_ids: List[str]) -> None:
        self._ids = list(group_ids)

    def group_ids(self) -> List[str]:
        return list(self._ids)


class FakeClock:
    """Manually advanced clock for DerivedCache."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
