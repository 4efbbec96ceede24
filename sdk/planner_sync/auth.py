"""
Authentication provider contract.

The store never signs users in; it only asks who the current user is.
"No current user" means every write is skipped and subscriptions are torn
down.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    """The signed-in user.

    Attributes:
        uid: Backend user id
        display_name: Name shown to collaborators
        email: Sign-in email
    """

    uid: str
    display_name: str = ""
    email: str = ""

    @property
    def initials(self) -> str:
        """First letter of each word of the display name ("Ada Lovelace" -> "AL")."""
        return "".join(part[0] for part in self.display_name.split() if part)


@runtime_checkable
class AuthProvider(Protocol):
    def current_user(self) -> Optional[CurrentUser]:
        ...


class StaticAuthProvider:
    """AuthProvider holding the user in memory.

    Listeners are called with the new user (or None) after every change.

    Example:
        >>> auth = StaticAuthProvider()
        >>> auth.sign_in(CurrentUser(uid="u1", display_name="Ada Lovelace"))
        >>> auth.current_user().initials
        'AL'
    """

    def __init__(self, user: Optional[CurrentUser] = None) -> None:
        self._user = user
        self._listeners: List[Callable[[Optional[CurrentUser]], None]] = []

    def current_user(self) -> Optional[CurrentUser]:
        return self._user

    def add_listener(self, callback: Callable[[Optional[CurrentUser]], None]) -> None:
        self._listeners.append(callback)

    def sign_in(self, user: CurrentUser) -> None:
        self._user = user
        logger.info("User signed in", extra={"user_id": user.uid})
        self._emit()

    def sign_out(self) -> None:
        previous = self._user
        self._user = None
        if previous is not None:
            logger.info("User signed out", extra={"user_id": previous.uid})
        self._emit()

    def _emit(self) -> None:
        for callback in list(self._listeners):
            callback(self._user)
