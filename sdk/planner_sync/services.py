"""
Service container for the Event Planner sync SDK.

Builds the store and its collaborators once and hands them out explicitly;
nothing in the SDK is a process-wide singleton.

Invariants:
    - Exactly one EventStore, GroupDirectory and SharingCoordinator per
      container, all sharing one client, auth provider and settings
    - The group subscription delivers before the store builds its access
      filter on start()
    - Auth changes restart both subscriptions
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .auth import AuthProvider, CurrentUser
from .cache import DerivedCache
from .config import SyncSettings
from .groups import GroupDirectory
from .remote.base import RemoteCollectionClient
from .sharing import SharingCoordinator
from .store import EventStore
from .users import UserDirectory

logger = logging.getLogger(__name__)


@dataclass
class PlannerServices:
    """Everything an application needs, wired together.

    Attributes:
        settings: SDK configuration
        client: Remote collection client
        auth: Authentication provider
        users: User directory (email lookup, sign-in records)
        groups: Live view of the current user's groups
        cache: Derived-value cache used by the store
        store: Event synchronization store
        sharing: Email and group sharing

    Example:
        >>> services = create_services(InMemoryCollectionClient(), auth)
        >>> await services.start()
        >>> services.store.events
        ()
        >>> await services.close()
    """

    settings: SyncSettings
    client: RemoteCollectionClient
    auth: AuthProvider
    users: UserDirectory
    groups: GroupDirectory
    cache: DerivedCache
    store: EventStore
    sharing: SharingCoordinator
    group_ready_timeout: Optional[float] = 10.0
    _restarts: List[asyncio.Task] = field(default_factory=list, repr=False)

    async def start(self) -> None:
        """Subscribe groups, wait for their first snapshot, then start the store."""
        await self.groups.start()
        if not await self.groups.wait_ready(self.group_ready_timeout):
            logger.warning(
                "Group snapshot not received; subscribing without group access",
                extra={"timeout": self.group_ready_timeout},
            )
        await self.store.start()

    async def close(self) -> None:
        for task in self._restarts:
            task.cancel()
        if self._restarts:
            await asyncio.gather(*self._restarts, return_exceptions=True)
        self._restarts.clear()

        await self.store.close()
        await self.groups.close()
        logger.info("Planner services closed")

    def on_auth_change(self, user: Optional[CurrentUser]) -> asyncio.Task:
        """AuthProvider listener. Must be called on the owning event loop."""
        logger.info(
            "Authentication changed, restarting subscriptions",
            extra={"user_id": user.uid if user else None},
        )
        self._restarts = [t for t in self._restarts if not t.done()]
        task = asyncio.get_running_loop().create_task(self._restart())
        self._restarts.append(task)
        return task

    async def _restart(self) -> None:
        self.cache.clear()
        await self.start()


def create_services(
    client: RemoteCollectionClient,
    auth: AuthProvider,
    settings: Optional[SyncSettings] = None,
    cache: Optional[DerivedCache] = None,
) -> PlannerServices:
    """Build the service container.

    When the auth provider supports add_listener (e.g. StaticAuthProvider),
    the container subscribes to it and restarts on sign-in/sign-out.

    Args:
        client: Remote collection client
        auth: Authentication provider
        settings: Optional settings (loaded from env if not provided)
        cache: Optional derived cache (e.g. with a test clock)

    Returns:
        Wired but not yet started PlannerServices
    """
    settings = settings or SyncSettings()
    cache = cache or DerivedCache()

    users = UserDirectory(client, collection=settings.users_collection)
    groups = GroupDirectory(client, auth, users=users, collection=settings.groups_collection)
    store = EventStore(client, auth, groups=groups, settings=settings, cache=cache)
    sharing = SharingCoordinator(store, users)

    services = PlannerServices(
        settings=settings,
        client=client,
        auth=auth,
        users=users,
        groups=groups,
        cache=cache,
        store=store,
        sharing=sharing,
    )

    add_listener = getattr(auth, "add_listener", None)
    if add_listener is not None:
        add_listener(services.on_auth_change)

    logger.debug(
        "Planner services created",
        extra={"collections": list(settings.synced_collections), "page_size": settings.page_size},
    )
    return services
