"""
Event synchronization store.

EventStore is the single point of truth for the three mirrored collections
(events, taskEvents, expenseEvents) and for every mutation on them:
- Live subscriptions filtered by the access filter, 50 documents each
- Event lifecycle (create, update, delete, share, unshare, guests)
- Task and expense editing, with tasks mirrored into expenses by name
- Derived totals (budget cache, expense total, per-event task counters)

Mirrors change only when a subscription delivers a snapshot. A mutation
computes the new document from the latest committed state, writes it, and
the echo updates the mirror.

Invariants:
    - Mirrors are replaced wholesale from snapshots, never patched
    - is_loading clears only after all three initial snapshots arrived
    - A failed write leaves both the mirrors and the pending-write overlay
      untouched; nothing is retried
    - Mutations run one at a time (single mutation lock)
    - Snapshots and lookups from an older generation are discarded
    - ExpenseEvent.total_amount always equals the sum of its expenses
    - Every task upsert/delete is mirrored onto the name-matched expense

How to change safely:
    - Multi-collection writes must go through a Saga with compensations
    - Keep the overlay bookkeeping in _commit(); callers never touch it
    - New derived aggregates belong in the DerivedCache with explicit
      invalidation points
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
)

from pydantic import ValidationError as ModelValidationError

from .access import build_access_filter
from .auth import AuthProvider, CurrentUser
from .cache import DerivedCache
from .config import SyncSettings
from .errors import (
    NotAuthenticatedError,
    PartialBatchError,
    PlannerSyncError,
    RemoteReadError,
    RemoteWriteError,
    ValidationError,
)
from .models import (
    Document,
    Event,
    Expense,
    ExpenseEvent,
    Group,
    Guest,
    Task,
    TaskEvent,
)
from .remote.base import (
    RemoteCollectionClient,
    Snapshot,
    Subscription,
    WriteOp,
    WriteResult,
)
from .saga import Saga
from .validate import parse_amount, require_text

logger = logging.getLogger(__name__)

TOTAL_BUDGET_KEY = "total_budget"


class GroupSource(Protocol):
    """Anything that knows the current user's group ids (e.g. GroupDirectory)."""

    def group_ids(self) -> List[str]:
        ...


@dataclass
class _PendingWrite:
    """A committed write whose echo has not arrived yet.

    document is None for deletes.
    """

    sequence: int
    document: Optional[Document]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decode(model: type, key_field: str, snapshot: Snapshot) -> List[Any]:
    """Decode a snapshot into models, skipping documents that don't decode.

    Runs on a worker thread.
    """
    decoded = []
    for doc in snapshot.documents:
        data = dict(doc.data)
        data.setdefault(key_field, doc.id)
        try:
            decoded.append(model.from_document(data))
        except (ModelValidationError, PlannerSyncError) as e:
            logger.warning(
                "Skipping undecodable document",
                extra={"collection": snapshot.collection, "doc_id": doc.id, "error": str(e)},
            )
    return decoded


class EventStore:
    """Mirrors and mutates events, task lists and expense lists.

    Construct once per process and pass it to consumers; it is not a global.

    Attributes:
        settings: Collection names, page size and cache TTL

    Thread safety:
        Owned by one event loop. Snapshot decoding runs in worker threads;
        results are assigned back on the loop.

    Example:
        >>> store = EventStore(client, auth, groups=directory)
        >>> await store.start()
        >>> await store.create_event(Event(title="Offsite", date=when))
        >>> await store.close()
    """

    def __init__(
        self,
        client: RemoteCollectionClient,
        auth: AuthProvider,
        groups: Optional[GroupSource] = None,
        settings: Optional[SyncSettings] = None,
        cache: Optional[DerivedCache] = None,
    ) -> None:
        self._client = client
        self._auth = auth
        self._groups = groups
        self.settings = settings or SyncSettings()
        self._cache = cache or DerivedCache()

        self._events: Tuple[Event, ...] = ()
        self._task_events: Tuple[TaskEvent, ...] = ()
        self._expense_events: Tuple[ExpenseEvent, ...] = ()

        self._loading = False
        self._awaiting_initial: Set[str] = set()
        self._generation = 0
        self._active = False
        self._subscriptions: List[Subscription] = []
        self._consumers: List[asyncio.Task] = []
        self._pending: Dict[Tuple[str, str], _PendingWrite] = {}
        self._mutation_lock = asyncio.Lock()
        self._listeners: List[Callable[[str], None]] = []

    # Read-only views

    @property
    def events(self) -> Tuple[Event, ...]:
        return self._events

    @property
    def task_events(self) -> Tuple[TaskEvent, ...]:
        return self._task_events

    @property
    def expense_events(self) -> Tuple[ExpenseEvent, ...]:
        return self._expense_events

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def cache(self) -> DerivedCache:
        return self._cache

    @property
    def pending_writes(self) -> int:
        """Committed writes whose echo has not arrived yet."""
        return len(self._pending)

    def find_event(self, event_id: str) -> Optional[Event]:
        return next((e for e in self._events if e.id == event_id), None)

    def event_by_title(self, title: str) -> Optional[Event]:
        return next((e for e in self._events if e.title == title), None)

    def task_event(self, title: str) -> Optional[TaskEvent]:
        return next((t for t in self._task_events if t.title == title), None)

    def expense_event(self, title: str) -> Optional[ExpenseEvent]:
        return next((x for x in self._expense_events if x.title == title), None)

    def add_listener(self, callback: Callable[[str], None]) -> None:
        """Register a callback invoked with the collection name after each snapshot."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[str], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    # Derived values

    def total_budget(self) -> float:
        """Sum of task amounts across all task lists, cached for budget_cache_ttl."""
        return self._cache.get_or_compute(
            TOTAL_BUDGET_KEY,
            self.settings.budget_cache_ttl,
            lambda: math.fsum(te.total_budget for te in self._task_events),
        )

    def total_expenses(self) -> float:
        return math.fsum(ee.total_amount for ee in self._expense_events)

    # Subscription lifecycle

    async def start(self) -> None:
        """(Re)open the three live subscriptions for the current user.

        Held subscriptions are revoked first. With nobody signed in the
        mirrors are cleared and nothing is subscribed.
        """
        await self._revoke()

        user = self._auth.current_user()
        if user is None:
            self._clear_mirrors()
            self._loading = False
            logger.info("No authenticated user; subscriptions cleared")
            return

        # Group membership is read once per listener setup.
        group_ids = self._groups.group_ids() if self._groups is not None else []
        access_filter = build_access_filter(user.uid, group_ids)

        generation = self._generation
        self._active = True
        self._loading = True
        self._awaiting_initial = set(self.settings.synced_collections)

        decoders = {
            self.settings.events_collection: functools.partial(_decode, Event, "id"),
            self.settings.task_events_collection: functools.partial(_decode, TaskEvent, "title"),
            self.settings.expense_events_collection: functools.partial(
                _decode, ExpenseEvent, "title"
            ),
        }
        for collection, decoder in decoders.items():
            subscription = self._client.listen(
                collection, access_filter, limit=self.settings.page_size
            )
            self._subscriptions.append(subscription)
            self._consumers.append(
                asyncio.create_task(
                    self._consume(collection, subscription, decoder, generation),
                    name=f"planner-sync:{collection}",
                )
            )

        logger.info(
            "Listeners set up",
            extra={
                "user_id": user.uid,
                "group_count": len(group_ids),
                "generation": generation,
                "page_size": self.settings.page_size,
            },
        )

    async def refresh(self) -> None:
        """Drop cached aggregates and re-subscribe (rebuilds the access filter)."""
        self._cache.clear()
        await self.start()

    async def close(self) -> None:
        """Revoke all subscriptions. Late results of this generation are dropped."""
        await self._revoke()
        logger.info("Event store closed", extra={"generation": self._generation})

    async def _revoke(self) -> None:
        self._generation += 1
        self._active = False
        self._pending.clear()
        self._awaiting_initial = set()

        subscriptions, consumers = self._subscriptions, self._consumers
        self._subscriptions, self._consumers = [], []
        for subscription in subscriptions:
            await subscription.close()
        for consumer in consumers:
            consumer.cancel()
        for consumer in consumers:
            try:
                await consumer
            except asyncio.CancelledError:
                pass

    async def _consume(
        self,
        collection: str,
        subscription: Subscription,
        decoder: Callable[[Snapshot], List[Any]],
        generation: int,
    ) -> None:
        try:
            async for snapshot in subscription:
                documents = await asyncio.to_thread(decoder, snapshot)
                if generation != self._generation:
                    return
                self._apply_snapshot(collection, documents, snapshot.sequence)
        except PlannerSyncError as e:
            # The collection's initial completion is never signalled.
            logger.error(
                "Listener failed",
                extra={"collection": collection, "generation": generation, "error": str(e)},
            )

    def _apply_snapshot(self, collection: str, documents: List[Any], sequence: int) -> None:
        settings = self.settings
        if collection == settings.events_collection:
            self._events = tuple(documents)
        elif collection == settings.task_events_collection:
            self._task_events = tuple(documents)
            self._cache.invalidate(TOTAL_BUDGET_KEY)
        else:
            self._expense_events = tuple(documents)

        for key in [k for k, p in self._pending.items() if k[0] == collection and p.sequence <= sequence]:
            del self._pending[key]

        logger.debug(
            "Snapshot applied",
            extra={"collection": collection, "count": len(documents), "sequence": sequence},
        )

        if collection in self._awaiting_initial:
            self._awaiting_initial.discard(collection)
            if not self._awaiting_initial and self._loading:
                self._loading = False
                logger.info("Initial snapshots loaded")

        for callback in list(self._listeners):
            try:
                callback(collection)
            except Exception:
                logger.exception("Store listener raised", extra={"collection": collection})

    def _clear_mirrors(self) -> None:
        self._events, self._task_events, self._expense_events = (), (), ()
        self._cache.clear()

    # Latest committed state (mirror + pending writes)

    def _view(self, collection: str) -> Dict[str, Document]:
        settings = self.settings
        mirror: Dict[str, Document]
        if collection == settings.events_collection:
            mirror = {e.id: e for e in self._events}
        elif collection == settings.task_events_collection:
            mirror = {t.title: t for t in self._task_events}
        else:
            mirror = {x.title: x for x in self._expense_events}

        for (pending_collection, doc_id), pending in self._pending.items():
            if pending_collection != collection:
                continue
            if pending.document is None:
                mirror.pop(doc_id, None)
            else:
                mirror[doc_id] = pending.document
        return mirror

    def _latest_event(self, event_id: str) -> Optional[Event]:
        return self._view(self.settings.events_collection).get(event_id)

    def _latest_event_by_title(self, title: str) -> Optional[Event]:
        events = self._view(self.settings.events_collection).values()
        return next((e for e in events if e.title == title), None)

    def _latest_task_event(self, title: str) -> Optional[TaskEvent]:
        return self._view(self.settings.task_events_collection).get(title)

    def _latest_expense_event(self, title: str) -> Optional[ExpenseEvent]:
        return self._view(self.settings.expense_events_collection).get(title)

    # Writes

    async def _commit(
        self,
        collection: str,
        documents: Sequence[Tuple[str, Optional[Document]]],
    ) -> WriteResult:
        """Write (doc_id, document) pairs as one batch; None deletes.

        Raises:
            RemoteWriteError: If the backend rejects the batch
        """
        writes = [
            WriteOp.delete(collection, doc_id)
            if document is None
            else WriteOp.set(collection, doc_id, document.to_document())
            for doc_id, document in documents
        ]
        result = await self._client.commit(writes)
        if self._active and collection in self.settings.synced_collections:
            for doc_id, document in documents:
                self._pending[(collection, doc_id)] = _PendingWrite(result.sequence, document)
        return result

    async def _put(self, collection: str, doc_id: str, document: Optional[Document]) -> WriteResult:
        return await self._commit(collection, [(doc_id, document)])

    def _put_step(
        self,
        saga: Saga,
        collection: str,
        doc_id: str,
        document: Optional[Document],
        previous: Optional[Document],
    ) -> None:
        """Add a step writing document and restoring previous on compensation."""
        saga.step(
            collection,
            functools.partial(self._put, collection, doc_id, document),
            compensate=functools.partial(self._put, collection, doc_id, previous),
        )

    def _writer(self, operation: str) -> Optional[CurrentUser]:
        user = self._auth.current_user()
        if user is None:
            logger.info("Write skipped: not authenticated", extra={"operation": operation})
        return user

    # Events

    async def create_event(self, event: Event) -> bool:
        """Create an event together with its empty task and expense lists.

        The three documents are written as a saga; if a later write fails
        the earlier ones are undone. Afterwards the members of every shared
        group are added to shared_with (best-effort, not rolled back).

        Returns:
            True if the event and both lists were written

        Raises:
            ValidationError: If the title is blank or already used by one of
                the user's events
        """
        title = require_text(event.title, "title")
        settings = self.settings

        async with self._mutation_lock:
            user = self._writer("create_event")
            if user is None:
                return False

            clash = self._latest_event_by_title(title)
            if clash is not None and clash.id != event.id and clash.created_by_uid == user.uid:
                raise ValidationError(
                    f"An event titled '{title}' already exists", field_name="title"
                )

            new_event = event.model_copy(
                update={"title": title, "created_by": user.display_name, "created_by_uid": user.uid}
            )
            task_event = TaskEvent(
                title=title,
                tasks=[],
                shared_with=list(new_event.shared_with),
                shared_groups=list(new_event.shared_groups),
                created_by_uid=user.uid,
            )
            expense_event = ExpenseEvent(
                title=title,
                total_amount=0,
                expenses=[],
                shared_with=list(new_event.shared_with),
                shared_groups=list(new_event.shared_groups),
                created_by_uid=user.uid,
            )

            saga = Saga("create_event")
            self._put_step(
                saga, settings.events_collection, new_event.id, new_event,
                self._latest_event(new_event.id),
            )
            self._put_step(
                saga, settings.task_events_collection, title, task_event,
                self._latest_task_event(title),
            )
            self._put_step(
                saga, settings.expense_events_collection, title, expense_event,
                self._latest_expense_event(title),
            )
            try:
                await saga.run()
            except (RemoteWriteError, PartialBatchError) as e:
                logger.error("Error creating event", extra={"title": title, "error": str(e)})
                return False

            logger.info("Event created", extra={"event_id": new_event.id, "title": title})
            await self._add_group_members(new_event, user)
            return True

    async def _add_group_members(self, event: Event, user: CurrentUser) -> None:
        """Append the members of each shared group to the event's shared_with.

        Partial failure is logged and left as is.
        """
        current = event
        for group_id in event.shared_groups:
            try:
                data = await self._client.get(self.settings.groups_collection, group_id)
                group = Group.from_document(data) if data is not None else None
            except (RemoteReadError, ModelValidationError, ValidationError) as e:
                logger.warning(
                    "Could not resolve shared group",
                    extra={"event_id": event.id, "group_id": group_id, "error": str(e)},
                )
                continue
            if group is None:
                continue

            additions = [
                uid
                for uid in dict.fromkeys(group.member_uids())
                if uid != user.uid and uid not in current.shared_with
            ]
            if not additions:
                continue

            current = current.model_copy(update={"shared_with": [*current.shared_with, *additions]})
            try:
                await self._put(self.settings.events_collection, current.id, current)
            except RemoteWriteError as e:
                logger.error(
                    "Error sharing new event with group members",
                    extra={"event_id": event.id, "group_id": group_id, "error": str(e)},
                )
                return

    async def update_event(self, event: Event) -> bool:
        """Overwrite the whole event document."""
        async with self._mutation_lock:
            if self._writer("update_event") is None:
                return False

            stored = self._latest_event(event.id)
            if stored is not None and stored.title != event.title:
                # Task and expense lists stay under the old title.
                logger.warning(
                    "Event title changed; task and expense lists are keyed by the old title",
                    extra={"event_id": event.id, "old_title": stored.title, "new_title": event.title},
                )
            return await self._write_event(event, "update_event")

    async def _write_event(self, event: Event, operation: str) -> bool:
        try:
            await self._put(self.settings.events_collection, event.id, event)
        except RemoteWriteError as e:
            logger.error(
                "Error writing event",
                extra={"operation": operation, "event_id": event.id, "error": str(e)},
            )
            return False
        return True

    async def delete_event(self, event_id: str) -> bool:
        """Delete an event and the task and expense lists under its title."""
        settings = self.settings
        async with self._mutation_lock:
            if self._writer("delete_event") is None:
                return False

            event = self._latest_event(event_id)
            if event is None:
                logger.warning("delete_event: unknown event", extra={"event_id": event_id})
                return False

            saga = Saga("delete_event")
            self._put_step(saga, settings.events_collection, event.id, None, event)
            self._put_step(
                saga, settings.task_events_collection, event.title, None,
                self._latest_task_event(event.title),
            )
            self._put_step(
                saga, settings.expense_events_collection, event.title, None,
                self._latest_expense_event(event.title),
            )
            try:
                await saga.run()
            except (RemoteWriteError, PartialBatchError) as e:
                logger.error("Error deleting event", extra={"event_id": event_id, "error": str(e)})
                return False

            self._cache.invalidate(TOTAL_BUDGET_KEY)
            return True

    async def update_event_stats(self) -> int:
        """Write completed/total task counters onto events whose counters drifted.

        Returns:
            Number of events rewritten
        """
        async with self._mutation_lock:
            if self._writer("update_event_stats") is None:
                return 0
            return await self._sync_event_stats(None)

    async def _sync_event_stats(self, title: Optional[str]) -> int:
        changed = []
        for event in self._view(self.settings.events_collection).values():
            if title is not None and event.title != title:
                continue
            task_event = self._latest_task_event(event.title)
            if task_event is None:
                continue
            if (event.completed_tasks, event.total_tasks) == (
                task_event.completed_tasks,
                task_event.total_tasks,
            ):
                continue
            changed.append(
                (
                    event.id,
                    event.model_copy(
                        update={
                            "completed_tasks": task_event.completed_tasks,
                            "total_tasks": task_event.total_tasks,
                        }
                    ),
                )
            )

        if not changed:
            return 0
        try:
            await self._commit(self.settings.events_collection, changed)
        except RemoteWriteError as e:
            logger.error("Error updating event stats", extra={"error": str(e)})
            return 0
        return len(changed)

    # Sharing

    def _shared_lists(
        self,
        event: Event,
        user: CurrentUser,
    ) -> Tuple[Tuple[TaskEvent, Optional[TaskEvent]], Tuple[ExpenseEvent, Optional[ExpenseEvent]]]:
        """Task and expense lists rewritten with the event's sharing lists.

        Returned with their previous versions for compensation. The lists are
        rewritten from the latest committed copy (last write wins).
        """
        previous_tasks = self._latest_task_event(event.title)
        previous_expenses = self._latest_expense_event(event.title)
        sharing = {
            "shared_with": list(event.shared_with),
            "shared_groups": list(event.shared_groups),
        }
        task_event = (
            previous_tasks.model_copy(update=sharing)
            if previous_tasks is not None
            else TaskEvent(title=event.title, created_by_uid=user.uid, **sharing)
        )
        expense_event = (
            previous_expenses.model_copy(update=sharing)
            if previous_expenses is not None
            else ExpenseEvent(title=event.title, created_by_uid=user.uid, **sharing)
        )
        return (task_event, previous_tasks), (expense_event, previous_expenses)

    async def share_event(self, event: Event, user_id: str) -> bool:
        """Give user_id access to the event and its task and expense lists.

        Sharing with a user who already has access is a no-op.

        Returns:
            True if the user has access afterwards
        """
        user_id = require_text(user_id, "user_id")
        settings = self.settings

        async with self._mutation_lock:
            user = self._writer("share_event")
            if user is None:
                return False

            previous = self._latest_event(event.id) or event
            if user_id in previous.shared_with:
                logger.info(
                    "Event already shared with user",
                    extra={"event_id": event.id, "user_id": user_id},
                )
                return True

            updated = previous.model_copy(update={"shared_with": [*previous.shared_with, user_id]})
            (task_event, previous_tasks), (expense_event, previous_expenses) = self._shared_lists(
                updated, user
            )

            saga = Saga("share_event")
            self._put_step(saga, settings.events_collection, updated.id, updated, previous)
            self._put_step(
                saga, settings.task_events_collection, updated.title, task_event, previous_tasks
            )
            self._put_step(
                saga, settings.expense_events_collection, updated.title, expense_event,
                previous_expenses,
            )
            try:
                await saga.run()
            except (RemoteWriteError, PartialBatchError) as e:
                logger.error(
                    "Error sharing event",
                    extra={"event_id": event.id, "user_id": user_id, "error": str(e)},
                )
                return False

            logger.info("Event shared", extra={"event_id": event.id, "user_id": user_id})
            return True

    async def share_event_with_group(self, event: Event, group: Group) -> bool:
        """Replace the event's shared_with by the group's members.

        Individual shares not in the group are dropped. The group's events
        list gains the event id.
        """
        settings = self.settings
        async with self._mutation_lock:
            user = self._writer("share_event_with_group")
            if user is None:
                return False

            previous = self._latest_event(event.id) or event
            updated = previous.model_copy(
                update={"shared_with": list(dict.fromkeys(group.member_uids()))}
            )
            (task_event, previous_tasks), (expense_event, previous_expenses) = self._shared_lists(
                updated, user
            )

            saga = Saga("share_event_with_group")
            self._put_step(saga, settings.events_collection, updated.id, updated, previous)
            self._put_step(
                saga, settings.task_events_collection, updated.title, task_event, previous_tasks
            )
            self._put_step(
                saga, settings.expense_events_collection, updated.title, expense_event,
                previous_expenses,
            )
            if updated.id not in group.events:
                updated_group = group.model_copy(update={"events": [*group.events, updated.id]})
                self._put_step(saga, settings.groups_collection, group.id, updated_group, group)

            try:
                await saga.run()
            except (RemoteWriteError, PartialBatchError) as e:
                logger.error(
                    "Error sharing event with group",
                    extra={"event_id": event.id, "group_id": group.id, "error": str(e)},
                )
                return False

            logger.info(
                "Event shared with group",
                extra={"event_id": event.id, "group_id": group.id, "members": len(updated.shared_with)},
            )
            return True

    async def unshare_event(self, event: Event, user_id: str) -> bool:
        """Remove user_id from shared_with. Only the event document is rewritten."""
        async with self._mutation_lock:
            if self._writer("unshare_event") is None:
                return False

            previous = self._latest_event(event.id) or event
            if user_id not in previous.shared_with:
                return True
            updated = previous.model_copy(
                update={"shared_with": [uid for uid in previous.shared_with if uid != user_id]}
            )
            return await self._write_event(updated, "unshare_event")

    # Guests

    async def add_guest(self, event_title: str, guest: Guest) -> bool:
        require_text(guest.name, "name")
        async with self._mutation_lock:
            if self._writer("add_guest") is None:
                return False
            event = self._latest_event_by_title(event_title)
            if event is None:
                logger.warning("add_guest: unknown event", extra={"title": event_title})
                return False

            guest = guest.model_copy(update={"event": event_title})
            updated = event.model_copy(
                update={
                    "guests": [*event.guests, guest],
                    "guest_count": event.guest_count + guest.count,
                }
            )
            return await self._write_event(updated, "add_guest")

    async def update_guest(self, event_title: str, guest: Guest) -> bool:
        require_text(guest.name, "name")
        async with self._mutation_lock:
            if self._writer("update_guest") is None:
                return False
            event = self._latest_event_by_title(event_title)
            existing = next((g for g in event.guests if g.id == guest.id), None) if event else None
            if event is None or existing is None:
                logger.warning(
                    "update_guest: unknown guest",
                    extra={"title": event_title, "guest_id": guest.id},
                )
                return False

            updated = event.model_copy(
                update={
                    "guests": [guest if g.id == guest.id else g for g in event.guests],
                    "guest_count": event.guest_count - existing.count + guest.count,
                }
            )
            return await self._write_event(updated, "update_guest")

    async def remove_guest(self, event_title: str, guest_id: str) -> bool:
        async with self._mutation_lock:
            if self._writer("remove_guest") is None:
                return False
            event = self._latest_event_by_title(event_title)
            existing = next((g for g in event.guests if g.id == guest_id), None) if event else None
            if event is None or existing is None:
                return False

            updated = event.model_copy(
                update={
                    "guests": [g for g in event.guests if g.id != guest_id],
                    "guest_count": max(0, event.guest_count - existing.count),
                }
            )
            return await self._write_event(updated, "remove_guest")

    # Tasks

    def new_task(
        self,
        event_title: str,
        name: str,
        *,
        supplier: str = "",
        contact: str = "",
        amount: Any = "",
    ) -> Task:
        """Build a task from form input, stamped with the current user.

        Raises:
            NotAuthenticatedError: If no user is signed in
            ValidationError: If the name is blank or the amount is invalid
        """
        user = self._auth.current_user()
        if user is None:
            raise NotAuthenticatedError()
        initials, uid = user.initials, user.uid
        return Task(
            name=require_text(name, "name"),
            supplier=supplier,
            contact=contact,
            event=event_title,
            amount=amount,
            created_by=initials,
            created_by_uid=uid,
            last_modified_by=initials,
            last_modified_by_uid=uid,
        )

    @staticmethod
    def _check_task(task: Task) -> None:
        require_text(task.name, "name")
        parse_amount(task.amount, "amount", allow_empty=True)

    async def add_task(self, task: Task) -> bool:
        """Add a task to its event's list (same upsert path as update_task)."""
        return await self.update_task(task)

    async def update_task(self, task: Task) -> bool:
        """Insert or replace a task, then mirror it onto the sibling expense list.

        Returns:
            True if the task list was written (the expense mirror is
            best-effort and logged on failure)

        Raises:
            ValidationError: If the name is blank or the amount is invalid
        """
        self._check_task(task)
        async with self._mutation_lock:
            return await self._update_task_locked(task)

    async def toggle_task_completion(self, event_title: str, task_id: str) -> bool:
        """Flip a task's completion flag, reading the latest state under the mutation lock."""
        async with self._mutation_lock:
            task_event = self._latest_task_event(event_title)
            task = task_event.find_task(task_id) if task_event else None
            if task is None:
                return False
            return await self._update_task_locked(
                task.model_copy(update={"is_completed": not task.is_completed})
            )

    async def _update_task_locked(self, task: Task) -> bool:
        # Caller holds _mutation_lock.
        user = self._writer("update_task")
        if user is None:
            return False

        task_event = self._latest_task_event(task.event)
        if task_event is None:
            logger.warning("update_task: unknown task list", extra={"title": task.event})
            return False

        previous = task_event.find_task(task.id)
        stamped = task.model_copy(
            update={
                "amount": parse_amount(task.amount, "amount", allow_empty=True),
                "created_by": task.created_by or user.initials,
                "created_by_uid": task.created_by_uid or user.uid,
                "last_modified_by": user.initials,
                "last_modified_by_uid": user.uid,
                "last_modified_date": _utcnow(),
            }
        )
        try:
            await self._put(
                self.settings.task_events_collection,
                task_event.title,
                task_event.upsert_task(stamped),
            )
        except RemoteWriteError as e:
            logger.error(
                "Error updating task",
                extra={"title": task.event, "task_id": task.id, "error": str(e)},
            )
            return False

        self._cache.invalidate(TOTAL_BUDGET_KEY)
        await self._sync_task_expense(stamped, previous.name if previous else None)
        await self._sync_event_stats(task.event)
        return True

    async def delete_task(self, task: Task) -> bool:
        """Remove a task and the expense carrying its name."""
        async with self._mutation_lock:
            if self._writer("delete_task") is None:
                return False

            task_event = self._latest_task_event(task.event)
            if task_event is None:
                return False
            stored = task_event.find_task(task.id)
            name = stored.name if stored is not None else task.name

            try:
                await self._put(
                    self.settings.task_events_collection,
                    task_event.title,
                    task_event.remove_task(task.id),
                )
            except RemoteWriteError as e:
                logger.error(
                    "Error deleting task",
                    extra={"title": task.event, "task_id": task.id, "error": str(e)},
                )
                return False

            self._cache.invalidate(TOTAL_BUDGET_KEY)

            expense_event = self._latest_expense_event(task.event)
            if expense_event is not None and expense_event.find_by_name(name) is not None:
                try:
                    await self._put(
                        self.settings.expense_events_collection,
                        expense_event.title,
                        expense_event.remove_by_name(name),
                    )
                except RemoteWriteError as e:
                    logger.error(
                        "Error removing expense for deleted task",
                        extra={"title": task.event, "task_name": name, "error": str(e)},
                    )

            await self._sync_event_stats(task.event)
            return True

    async def _sync_task_expense(self, task: Task, previous_name: Optional[str]) -> None:
        """Create or update the expense named after the task.

        A renamed task carries its expense along when one exists under the
        old name.
        """
        expense_event = self._latest_expense_event(task.event)
        if expense_event is None:
            logger.warning("No expense list for task", extra={"title": task.event})
            return

        expense = Expense(
            name=task.name,
            amount=task.amount,
            supplier=task.supplier,
            contact=task.contact,
            event=task.event,
            created_by=task.created_by,
            created_by_uid=task.created_by_uid,
            last_modified_by=task.last_modified_by,
            last_modified_by_uid=task.last_modified_by_uid,
            last_modified_date=task.last_modified_date,
        )
        match_name = task.name
        if (
            previous_name
            and previous_name != task.name
            and expense_event.find_by_name(task.name) is None
            and expense_event.find_by_name(previous_name) is not None
        ):
            match_name = previous_name

        try:
            await self._put(
                self.settings.expense_events_collection,
                expense_event.title,
                expense_event.upsert_by_name(expense, match_name),
            )
        except RemoteWriteError as e:
            logger.error(
                "Error syncing task with expense",
                extra={"title": task.event, "task_name": task.name, "error": str(e)},
            )

    # Expenses

    def new_expense(
        self,
        event_title: str,
        name: str,
        amount: Any,
        *,
        supplier: str = "",
        contact: str = "",
    ) -> Expense:
        """Build an expense from form input, stamped with the current user.

        Raises:
            NotAuthenticatedError: If no user is signed in
            ValidationError: If the name is blank or the amount is invalid
        """
        user = self._auth.current_user()
        if user is None:
            raise NotAuthenticatedError()
        initials, uid = user.initials, user.uid
        return Expense(
            name=require_text(name, "name"),
            amount=amount,
            supplier=supplier,
            contact=contact,
            event=event_title,
            created_by=initials,
            created_by_uid=uid,
            last_modified_by=initials,
            last_modified_by_uid=uid,
        )

    @staticmethod
    def _check_expense(expense: Expense) -> float:
        require_text(expense.name, "name")
        return parse_amount(expense.amount, "amount")

    async def _write_expenses(
        self,
        event_title: str,
        operation: str,
        change: Callable[[ExpenseEvent], Optional[ExpenseEvent]],
    ) -> bool:
        async with self._mutation_lock:
            if self._writer(operation) is None:
                return False
            expense_event = self._latest_expense_event(event_title)
            if expense_event is None:
                logger.warning(f"{operation}: unknown expense list", extra={"title": event_title})
                return False
            updated = change(expense_event)
            if updated is None:
                return False
            try:
                await self._put(self.settings.expense_events_collection, event_title, updated)
            except RemoteWriteError as e:
                logger.error(
                    "Error writing expenses",
                    extra={"operation": operation, "title": event_title, "error": str(e)},
                )
                return False
            return True

    async def add_expense(self, event_title: str, expense: Expense) -> bool:
        """Append an expense; total_amount moves with it.

        Raises:
            ValidationError: If the name is blank or the amount is invalid
        """
        amount = self._check_expense(expense)
        expense = expense.model_copy(update={"amount": amount, "event": event_title})
        return await self._write_expenses(
            event_title, "add_expense", lambda ee: ee.add_expense(expense)
        )

    async def update_expense(self, event_title: str, expense: Expense) -> bool:
        """Replace the expense with the same id.

        Raises:
            ValidationError: If the name is blank or the amount is invalid
        """
        amount = self._check_expense(expense)
        user = self._auth.current_user()
        update: Dict[str, Any] = {"amount": amount, "last_modified_date": _utcnow()}
        if user is not None:
            update.update(last_modified_by=user.initials, last_modified_by_uid=user.uid)
        expense = expense.model_copy(update=update)

        def change(ee: ExpenseEvent) -> Optional[ExpenseEvent]:
            if ee.find_expense(expense.id) is None:
                logger.warning(
                    "update_expense: unknown expense",
                    extra={"title": event_title, "expense_id": expense.id},
                )
                return None
            return ee.update_expense(expense)

        return await self._write_expenses(event_title, "update_expense", change)

    async def delete_expense(self, event_title: str, expense_id: str) -> bool:
        def change(ee: ExpenseEvent) -> Optional[ExpenseEvent]:
            if ee.find_expense(expense_id) is None:
                return None
            return ee.remove_expense(expense_id)

        return await self._write_expenses(event_title, "delete_expense", change)
