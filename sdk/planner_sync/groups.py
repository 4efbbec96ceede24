"""
Group directory: the groups the current user belongs to.

The event store reads group_ids() once when it sets up its listeners to
build the access filter. The directory keeps its own live subscription on
the groups collection (memberIds array-contains uid) and offers the group
management operations of the profile screen.

Invariants:
    - group_ids() is synchronous and reflects the latest snapshot
    - Group documents are stored under their own id
    - Results of a torn-down subscription generation are discarded
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

from pydantic import ValidationError as ModelValidationError

from .access import member_filter
from .auth import AuthProvider
from .errors import PlannerSyncError, RemoteReadError, RemoteWriteError
from .models import Group, GroupMember
from .remote.base import RemoteCollectionClient, Snapshot, Subscription, WriteOp
from .users import UserDirectory

logger = logging.getLogger(__name__)


def decode_groups(snapshot: Snapshot) -> List[Group]:
    groups = []
    for doc in snapshot.documents:
        try:
            groups.append(Group.from_document(doc.data))
        except (ModelValidationError, PlannerSyncError) as e:
            logger.warning("Skipping undecodable group", extra={"doc_id": doc.id, "error": str(e)})
    return groups


class GroupDirectory:
    """Live view of the current user's groups.

    Example:
        >>> directory = GroupDirectory(client, auth)
        >>> await directory.start()
        >>> await directory.wait_ready()
        >>> directory.group_ids()
        ['b3c1...']
    """

    def __init__(
        self,
        client: RemoteCollectionClient,
        auth: AuthProvider,
        users: Optional[UserDirectory] = None,
        collection: str = "groups",
    ) -> None:
        self._client = client
        self._auth = auth
        self._users = users or UserDirectory(client)
        self.collection = collection
        self._groups: Tuple[Group, ...] = ()
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._ready = asyncio.Event()
        self._listeners: List[Callable[[Tuple[Group, ...]], None]] = []

    @property
    def groups(self) -> Tuple[Group, ...]:
        return self._groups

    def group_ids(self) -> List[str]:
        return [group.id for group in self._groups]

    def find(self, group_id: str) -> Optional[Group]:
        return next((g for g in self._groups if g.id == group_id), None)

    def add_listener(self, callback: Callable[[Tuple[Group, ...]], None]) -> None:
        self._listeners.append(callback)

    async def start(self) -> None:
        """(Re)subscribe to the current user's groups."""
        await self.close()
        user = self._auth.current_user()
        if user is None:
            self._groups = ()
            self._ready.set()
            return

        self._ready.clear()
        generation = self._generation
        self._subscription = self._client.listen(self.collection, member_filter(user.uid))
        self._task = asyncio.create_task(self._consume(self._subscription, generation))

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait for the first snapshot. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        self._generation += 1
        subscription, task = self._subscription, self._task
        self._subscription, self._task = None, None
        if subscription is not None:
            await subscription.close()
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _consume(self, subscription: Subscription, generation: int) -> None:
        try:
            async for snapshot in subscription:
                groups = await asyncio.to_thread(decode_groups, snapshot)
                if generation != self._generation:
                    return
                self._groups = tuple(groups)
                self._ready.set()
                for callback in list(self._listeners):
                    try:
                        callback(self._groups)
                    except Exception:
                        logger.exception("Group listener raised")
        except PlannerSyncError as e:
            logger.error("Group listener failed", extra={"error": str(e)})

    async def get_group(self, group_id: str) -> Optional[Group]:
        """Fetch a group from the backend (it may not be in this user's view).

        Raises:
            RemoteReadError: If the read fails
        """
        data = await self._client.get(self.collection, group_id)
        if data is None:
            return None
        try:
            return Group.from_document(data)
        except (ModelValidationError, PlannerSyncError) as e:
            raise RemoteReadError(
                f"Group '{group_id}' could not be decoded: {e}", collection=self.collection
            ) from e

    async def create_group(self, name: str) -> Optional[Group]:
        """Create a group with the current user as its admin.

        Returns:
            The written group, or None when nobody is signed in or the
            write was rejected

        Raises:
            ValidationError: If the name is blank
        """
        user = self._auth.current_user()
        if user is None:
            logger.info("create_group skipped: not authenticated")
            return None

        member = GroupMember(
            uid=user.uid,
            name=user.display_name or "Unknown",
            email=user.email,
            role="admin",
        )
        group = Group(
            name=name,
            created_by=user.display_name or "Unknown",
            created_by_uid=user.uid,
            members=[member],
            member_ids=[user.uid],
        )
        try:
            await self._client.commit([WriteOp.set(self.collection, group.id, group.to_document())])
        except RemoteWriteError as e:
            logger.error("Error creating group", extra={"group": name, "error": str(e)})
            return None
        return group

    async def add_member_by_email(self, group: Group, email: str) -> bool:
        """Add the user registered under email to the group.

        Returns:
            True if the member was added or already present, False if nobody
            matched, the lookup failed or the write was rejected
        """
        if self._auth.current_user() is None:
            return False

        try:
            record = await self._users.find_by_email(email)
        except RemoteReadError as e:
            logger.error("Error finding user", extra={"email": email, "error": str(e)})
            return False
        if record is None:
            logger.info("No user found with email", extra={"email": email})
            return False

        if record.uid in group.member_ids:
            return True

        updated = group.with_member(
            GroupMember(uid=record.uid, name=record.name or "Unknown", email=email, role="member")
        )
        try:
            await self._client.commit(
                [WriteOp.set(self.collection, group.id, updated.to_document())]
            )
        except RemoteWriteError as e:
            logger.error(
                "Error adding member to group",
                extra={"group_id": group.id, "error": str(e)},
            )
            return False
        return True
