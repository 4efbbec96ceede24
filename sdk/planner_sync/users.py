"""
User directory lookups.

Sign-up and sign-in write a UserRecord keyed by uid into the users
collection; sharing resolves a free-text email to a uid through it.

Invariants:
    - Email lookup is an exact match, no case folding
    - The first matching record wins when several share an email
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from .access import email_filter
from .auth import CurrentUser
from .models import UserRecord
from .remote.base import RemoteCollectionClient, WriteOp, WriteResult

logger = logging.getLogger(__name__)


class UserDirectory:
    """Reads and writes the users collection."""

    def __init__(self, client: RemoteCollectionClient, collection: str = "users") -> None:
        self._client = client
        self.collection = collection

    async def find_by_email(self, email: str) -> Optional[UserRecord]:
        """Resolve an email to a user record.

        Returns:
            The first matching record, or None when nobody uses the email

        Raises:
            RemoteReadError: If the query fails
        """
        documents = await self._client.query(self.collection, email_filter(email), limit=1)
        if not documents:
            return None

        doc = documents[0]
        data = dict(doc.data)
        # Older records were written without the uid field; the doc id is the uid.
        data.setdefault("uid", doc.id)
        data.setdefault("email", email)
        return UserRecord.from_document(data)

    async def record_sign_in(self, user: CurrentUser, *, created: bool = False) -> WriteResult:
        """Upsert the user's directory record and stamp the login time.

        Raises:
            RemoteWriteError: If the write is rejected
        """
        now = datetime.now(timezone.utc)
        existing = await self._client.get(self.collection, user.uid)

        record = UserRecord(
            uid=user.uid,
            email=user.email,
            name=user.display_name,
            created_at=now if created or existing is None else existing.get("createdAt"),
            last_login=now,
        )
        data = {**(existing or {}), **record.to_document()}
        result = await self._client.commit([WriteOp.set(self.collection, user.uid, data)])
        logger.info("User record written", extra={"user_id": user.uid, "new_user": created})
        return result
