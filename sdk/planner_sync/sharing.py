"""
Sharing coordinator.

Resolves a free-text email to a user id through the users collection and
hands the share to the event store. The lookup is a one-shot query that
cannot be canceled; if the store was closed or re-subscribed while it ran,
the result is dropped.

Invariants:
    - No write is issued for an unknown email or a failed lookup
    - Sharing with a user who already has access does not write
    - Stale lookups (older store generation) never write
"""

from __future__ import annotations

import logging

from .errors import RemoteReadError
from .models import Event, Group
from .store import EventStore
from .users import UserDirectory

logger = logging.getLogger(__name__)


class SharingCoordinator:
    """Share events by email, with a group, or revoke a share.

    Example:
        >>> sharing = SharingCoordinator(store, users)
        >>> await sharing.share_by_email(event, "grace@example.com")
        True
    """

    def __init__(self, store: EventStore, users: UserDirectory) -> None:
        self._store = store
        self._users = users

    async def share_by_email(self, event: Event, email: str) -> bool:
        """Share the event with the user registered under email.

        Returns:
            True if the user has access afterwards, False when nobody
            matched, the lookup failed, the store moved on or the write
            was rejected
        """
        email = email.strip()
        if not email:
            return False

        generation = self._store.generation
        try:
            record = await self._users.find_by_email(email)
        except RemoteReadError as e:
            logger.error("Error finding user", extra={"email": email, "error": str(e)})
            return False

        if generation != self._store.generation or not self._store.is_active:
            logger.info(
                "Dropping stale share lookup",
                extra={"event_id": event.id, "generation": generation},
            )
            return False

        if record is None:
            logger.info("No user found with email", extra={"email": email})
            return False

        current = self._store.find_event(event.id) or event
        if record.uid in current.shared_with:
            logger.info(
                "User already has access",
                extra={"event_id": event.id, "user_id": record.uid},
            )
            return True

        return await self._store.share_event(current, record.uid)

    async def share_with_group(self, event: Event, group: Group) -> bool:
        return await self._store.share_event_with_group(event, group)

    async def unshare(self, event: Event, user_id: str) -> bool:
        return await self._store.unshare_event(event, user_id)
