"""
Event Planner sync SDK - client-side synchronization for shared event plans.

This SDK keeps live, access-filtered mirrors of a user's events, task lists
and expense lists, and performs every mutation on them:
- EventStore for subscriptions, mirrors and event/task/expense mutations
- SharingCoordinator for sharing by email or with a group
- GroupDirectory and UserDirectory for groups and user lookup
- RemoteCollectionClient protocol, with an in-memory implementation

Example:
    >>> from sdk.planner_sync import (
    ...     CurrentUser, InMemoryCollectionClient, StaticAuthProvider, create_services,
    ... )
    >>>
    >>> auth = StaticAuthProvider(CurrentUser(uid="u1", display_name="Ada Lovelace"))
    >>> services = create_services(InMemoryCollectionClient(), auth)
    >>> await services.start()
    >>> await services.store.create_event(Event(title="Offsite", date=when))

Invariants:
    - Mirrors change only when a subscription echoes a committed write
    - Writes need a signed-in user; without one they are skipped
    - Multi-collection writes run as sagas with compensations

Version: 1.0.0
"""

__version__ = "1.0.0"

from .access import FieldFilter, Operator, OrFilter, build_access_filter
from .auth import AuthProvider, CurrentUser, StaticAuthProvider
from .cache import DerivedCache
from .config import SyncSettings
from .errors import (
    NotAuthenticatedError,
    PartialBatchError,
    PlannerSyncError,
    RemoteReadError,
    RemoteWriteError,
    SubscriptionError,
    ValidationError,
)
from .groups import GroupDirectory
from .logging_setup import setup_logging
from .models import (
    Event,
    Expense,
    ExpenseEvent,
    Group,
    GroupMember,
    Guest,
    Task,
    TaskEvent,
    UserRecord,
)
from .remote import InMemoryCollectionClient, RemoteCollectionClient
from .services import PlannerServices, create_services
from .sharing import SharingCoordinator
from .store import EventStore
from .users import UserDirectory

__all__ = [
    # Access
    "FieldFilter",
    "Operator",
    "OrFilter",
    "build_access_filter",
    # Auth
    "AuthProvider",
    "CurrentUser",
    "StaticAuthProvider",
    # Config
    "DerivedCache",
    "SyncSettings",
    "setup_logging",
    # Errors
    "NotAuthenticatedError",
    "PartialBatchError",
    "PlannerSyncError",
    "RemoteReadError",
    "RemoteWriteError",
    "SubscriptionError",
    "ValidationError",
    # Models
    "Event",
    "Expense",
    "ExpenseEvent",
    "Group",
    "GroupMember",
    "Guest",
    "Task",
    "TaskEvent",
    "UserRecord",
    # Services
    "EventStore",
    "GroupDirectory",
    "InMemoryCollectionClient",
    "PlannerServices",
    "RemoteCollectionClient",
    "SharingCoordinator",
    "UserDirectory",
    "create_services",
]
