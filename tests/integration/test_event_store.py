"""
Integration tests for EventStore against the in-memory backend.

Tests cover:
- Subscription lifecycle, loading flag and access filtering
- Event creation as a compensated saga
- Task/expense cross-sync and expense totals
- Guests, event stats and sharing
- Write failures and unauthenticated writes
"""

import asyncio
import math

import pytest

from sdk.planner_sync.auth import StaticAuthProvider
from sdk.planner_sync.cache import DerivedCache
from sdk.planner_sync.config import SyncSettings
from sdk.planner_sync.errors import NotAuthenticatedError, ValidationError
from sdk.planner_sync.models import Event, Expense, Group, GroupMember, Guest
from sdk.planner_sync.remote.memory import InMemoryCollectionClient
from sdk.planner_sync.store import TOTAL_BUDGET_KEY, EventStore

from tests.helpers import ADA, WHEN, FakeClock, FixedGroups, settle, wait_until


class YieldingClient(InMemoryCollectionClient):
    """Backend whose commits give other tasks a chance to run first."""

    async def commit(self, writes):
        await asyncio.sleep(0)
        return await super().commit(writes)


def stored_event(doc_id, owner, **fields):
    return {"id": doc_id, "title": doc_id, "date": WHEN.isoformat(), "createdByUID": owner, **fields}


async def offsite(store):
    """Start the store and create the "Offsite" event."""
    await store.start()
    await settle(store)
    assert await store.create_event(Event(title="Offsite", date=WHEN))
    await settle(store)
    return store.event_by_title("Offsite")


class TestSubscriptions:
    """Tests for start/close/refresh and mirror contents."""

    @pytest.mark.asyncio
    async def test_loading_clears_after_initial_snapshots(self, store, client):
        await store.start()

        assert store.is_loading
        assert store.is_active
        assert client.listener_count() == 3

        await settle(store)
        assert not store.is_loading
        await store.close()

    @pytest.mark.asyncio
    async def test_no_user_clears_and_does_not_subscribe(self, client, settings):
        store = EventStore(client, StaticAuthProvider(), settings=settings)

        await store.start()

        assert not store.is_loading
        assert not store.is_active
        assert store.events == ()
        assert client.listener_count() == 0

    @pytest.mark.asyncio
    async def test_subscription_failure_keeps_loading(self, store, client):
        client.fail_listen("expenseEvents")
        seen = []
        store.add_listener(seen.append)

        await store.start()
        await wait_until(lambda: {"events", "taskEvents"} <= set(seen))
        await asyncio.sleep(0.02)

        assert store.is_loading
        assert "expenseEvents" not in seen
        await store.close()

    @pytest.mark.asyncio
    async def test_raising_listener_does_not_stop_updates(self, store):
        seen = []

        def broken(collection):
            raise RuntimeError("listener bug")

        store.add_listener(broken)
        store.add_listener(seen.append)
        await offsite(store)

        assert await store.add_task(store.new_task("Offsite", "Venue", amount="10"))
        await settle(store)

        assert store.task_event("Offsite").total_tasks == 1
        assert seen.count("taskEvents") >= 2
        await store.close()

    @pytest.mark.asyncio
    async def test_access_filter_applied(self, client, auth, settings):
        await client.seed("events", "mine", stored_event("mine", ADA.uid))
        await client.seed("events", "shared", stored_event("shared", "u-x", sharedWith=[ADA.uid]))
        await client.seed("events", "group", stored_event("group", "u-x", sharedGroups=["g-1"]))
        await client.seed("events", "other", stored_event("other", "u-x", sharedWith=["u-y"]))
        store = EventStore(client, auth, groups=FixedGroups(["g-1"]), settings=settings)

        await store.start()
        await settle(store)

        assert sorted(e.id for e in store.events) == ["group", "mine", "shared"]
        await store.close()

    @pytest.mark.asyncio
    async def test_page_size_limits_snapshot(self, client, auth):
        for i in range(3):
            await client.seed("events", f"e{i}", stored_event(f"e{i}", ADA.uid))
        store = EventStore(client, auth, settings=SyncSettings(page_size=2))

        await store.start()
        await settle(store)

        assert len(store.events) == 2
        await store.close()

    @pytest.mark.asyncio
    async def test_undecodable_documents_skipped(self, store, client):
        await client.seed("events", "ok", stored_event("ok", ADA.uid))
        await client.seed("events", "broken", {"createdByUID": ADA.uid, "title": "No date"})

        await store.start()
        await settle(store)

        assert [e.id for e in store.events] == ["ok"]
        await store.close()

    @pytest.mark.asyncio
    async def test_close_discards_late_snapshots(self, store, client):
        await store.start()
        await settle(store)
        generation = store.generation

        await store.close()
        await client.seed("events", "late", stored_event("late", ADA.uid))
        await asyncio.sleep(0.02)

        assert store.generation == generation + 1
        assert not store.is_active
        assert client.listener_count() == 0
        assert store.events == ()

    @pytest.mark.asyncio
    async def test_refresh_resubscribes(self, store, client):
        await store.start()
        await settle(store)
        generation = store.generation
        await client.seed("events", "e1", stored_event("e1", ADA.uid))

        await store.refresh()
        await settle(store)

        assert store.generation > generation
        assert client.listener_count() == 3
        assert [e.id for e in store.events] == ["e1"]
        await store.close()

    @pytest.mark.asyncio
    async def test_listeners_notified_per_collection(self, store):
        seen = []
        store.add_listener(seen.append)

        await store.start()
        await settle(store)

        assert set(seen) == {"events", "taskEvents", "expenseEvents"}
        await store.close()


class TestCreateEvent:
    """Tests for create_event."""

    @pytest.mark.asyncio
    async def test_creates_event_and_empty_lists(self, store, client):
        event = await offsite(store)

        assert event.created_by == "Ada Lovelace"
        assert event.created_by_uid == ADA.uid
        assert [t.title for t in store.task_events] == ["Offsite"]
        assert [x.title for x in store.expense_events] == ["Offsite"]
        assert store.task_event("Offsite").tasks == []
        assert store.expense_event("Offsite").expenses == []
        assert store.expense_event("Offsite").total_amount == 0.0
        assert client.commit_count() == 3
        await store.close()

    @pytest.mark.asyncio
    async def test_mirror_changes_only_on_echo(self, store):
        await store.start()
        await settle(store)

        assert await store.create_event(Event(title="Offsite", date=WHEN))

        assert store.events == ()
        assert store.pending_writes == 3
        await settle(store)
        assert len(store.events) == 1
        await store.close()

    @pytest.mark.asyncio
    async def test_blank_title_rejected(self, store, client):
        await store.start()

        with pytest.raises(ValidationError):
            await store.create_event(Event(title="   ", date=WHEN))

        assert client.commit_count() == 0
        await store.close()

    @pytest.mark.asyncio
    async def test_duplicate_title_rejected(self, store, client):
        await offsite(store)

        with pytest.raises(ValidationError):
            await store.create_event(Event(title="Offsite", date=WHEN))

        assert client.commit_count() == 3
        await store.close()

    @pytest.mark.asyncio
    async def test_not_authenticated_is_noop(self, client, settings):
        store = EventStore(client, StaticAuthProvider(), settings=settings)

        assert not await store.create_event(Event(title="Offsite", date=WHEN))
        assert client.commit_count() == 0

    @pytest.mark.asyncio
    async def test_rejected_write_leaves_mirror(self, store, client):
        await store.start()
        await settle(store)
        client.deny_collection("events")

        assert not await store.create_event(Event(title="Offsite", date=WHEN))

        assert store.pending_writes == 0
        assert store.events == ()
        assert client.commit_count() == 0
        await store.close()

    @pytest.mark.asyncio
    async def test_partial_failure_is_compensated(self, store, client):
        await store.start()
        await settle(store)
        client.fail_next_commit(collection="expenseEvents")

        assert not await store.create_event(Event(title="Offsite", date=WHEN))
        await settle(store)

        assert client.documents("events") == {}
        assert client.documents("taskEvents") == {}
        assert client.documents("expenseEvents") == {}
        assert store.events == ()
        assert store.task_events == ()
        await store.close()

    @pytest.mark.asyncio
    async def test_shared_group_members_added(self, store, client):
        group = Group(
            id="g-1",
            name="Team",
            members=[GroupMember(uid=ADA.uid), GroupMember(uid="u-grace"), GroupMember(uid="u-alan")],
            member_ids=[ADA.uid, "u-grace", "u-alan"],
        )
        await client.seed("groups", "g-1", group.to_document())
        await store.start()
        await settle(store)

        assert await store.create_event(
            Event(title="Offsite", date=WHEN, shared_with=["u-grace"], shared_groups=["g-1"])
        )
        await settle(store)

        assert store.event_by_title("Offsite").shared_with == ["u-grace", "u-alan"]
        await store.close()

    @pytest.mark.asyncio
    async def test_missing_group_is_skipped(self, store, client):
        await store.start()
        await settle(store)

        assert await store.create_event(Event(title="Offsite", date=WHEN, shared_groups=["gone"]))
        await settle(store)

        assert store.event_by_title("Offsite").shared_with == []
        await store.close()


class TestEvents:
    """Tests for update_event, delete_event, guests and stats."""

    @pytest.mark.asyncio
    async def test_update_event(self, store):
        event = await offsite(store)

        assert await store.update_event(event.model_copy(update={"venue": "Hall"}))
        await settle(store)

        assert store.find_event(event.id).venue == "Hall"
        await store.close()

    @pytest.mark.asyncio
    async def test_delete_event_removes_lists(self, store, client):
        event = await offsite(store)

        assert await store.delete_event(event.id)
        await settle(store)

        assert store.events == ()
        assert store.task_events == ()
        assert store.expense_events == ()
        assert client.documents("taskEvents") == {}
        await store.close()

    @pytest.mark.asyncio
    async def test_delete_unknown_event(self, store):
        await offsite(store)

        assert not await store.delete_event("missing")
        await store.close()

    @pytest.mark.asyncio
    async def test_guest_count_follows_guests(self, store):
        await offsite(store)
        guest = Guest(name="Grace", count=2)

        assert await store.add_guest("Offsite", guest)
        await settle(store)
        assert store.event_by_title("Offsite").guest_count == 2
        assert store.event_by_title("Offsite").guests[0].event == "Offsite"

        assert await store.update_guest("Offsite", guest.model_copy(update={"count": 3}))
        await settle(store)
        assert store.event_by_title("Offsite").guest_count == 3

        assert await store.remove_guest("Offsite", guest.id)
        await settle(store)
        assert store.event_by_title("Offsite").guest_count == 0
        assert store.event_by_title("Offsite").guests == []
        await store.close()

    @pytest.mark.asyncio
    async def test_update_unknown_guest(self, store):
        await offsite(store)

        assert not await store.update_guest("Offsite", Guest(name="Nobody"))
        await store.close()

    @pytest.mark.asyncio
    async def test_update_event_stats_fixes_drift(self, store, client):
        event = await offsite(store)
        await client.seed("events", event.id, {**event.to_document(), "totalTasks": 5})
        await wait_until(lambda: store.find_event(event.id).total_tasks == 5)

        assert await store.update_event_stats() == 1
        await settle(store)

        assert store.find_event(event.id).total_tasks == 0
        assert await store.update_event_stats() == 0
        await store.close()


class TestTasksAndExpenses:
    """Tests for task/expense mutations and cross-sync."""

    @pytest.mark.asyncio
    async def test_task_creates_matching_expense(self, store):
        await offsite(store)

        assert await store.add_task(store.new_task("Offsite", "Catering", amount="1,250.50"))
        await settle(store)

        expenses = store.expense_event("Offsite").expenses
        assert [(e.name, e.amount) for e in expenses] == [("Catering", 1250.5)]
        assert expenses[0].created_by == "AL"
        assert store.expense_event("Offsite").total_amount == 1250.5
        assert store.event_by_title("Offsite").total_tasks == 1
        await store.close()

    @pytest.mark.asyncio
    async def test_task_update_keeps_single_expense(self, store):
        await offsite(store)
        task = store.new_task("Offsite", "Catering", amount="100")
        await store.add_task(task)

        assert await store.update_task(task.model_copy(update={"amount": 300.0}))
        await settle(store)

        expenses = store.expense_event("Offsite").expenses
        assert [(e.name, e.amount) for e in expenses] == [("Catering", 300.0)]
        assert store.task_event("Offsite").find_task(task.id).last_modified_by_uid == ADA.uid
        await store.close()

    @pytest.mark.asyncio
    async def test_task_rename_moves_expense(self, store):
        await offsite(store)
        task = store.new_task("Offsite", "Catering", amount="100")
        await store.add_task(task)

        await store.update_task(task.model_copy(update={"name": "Caterer", "amount": 120.0}))
        await settle(store)

        expenses = store.expense_event("Offsite").expenses
        assert [(e.name, e.amount) for e in expenses] == [("Caterer", 120.0)]
        await store.close()

    @pytest.mark.asyncio
    async def test_delete_task_removes_matching_expense_only(self, store):
        await offsite(store)
        task = store.new_task("Offsite", "Catering", amount="100")
        await store.add_task(task)
        await store.add_expense("Offsite", store.new_expense("Offsite", "Flowers", "40"))

        assert await store.delete_task(task)
        await settle(store)

        assert store.task_event("Offsite").tasks == []
        assert [e.name for e in store.expense_event("Offsite").expenses] == ["Flowers"]
        assert store.expense_event("Offsite").total_amount == 40.0
        assert store.event_by_title("Offsite").total_tasks == 0
        await store.close()

    @pytest.mark.asyncio
    async def test_toggle_completion_updates_stats(self, store):
        await offsite(store)
        task = store.new_task("Offsite", "Venue")
        await store.add_task(task)

        assert await store.toggle_task_completion("Offsite", task.id)
        await settle(store)

        assert store.task_event("Offsite").find_task(task.id).is_completed
        assert store.event_by_title("Offsite").completed_tasks == 1
        await store.close()

    @pytest.mark.asyncio
    async def test_task_for_unknown_event(self, store):
        await offsite(store)

        assert not await store.update_task(store.new_task("Nowhere", "Venue"))
        await store.close()

    @pytest.mark.asyncio
    async def test_rejected_task_write_leaves_mirror(self, store, client):
        await offsite(store)
        client.deny_collection("taskEvents")
        commits = client.commit_count()

        assert not await store.add_task(store.new_task("Offsite", "Venue", amount="10"))

        assert store.pending_writes == 0
        assert store.task_event("Offsite").tasks == []
        assert client.commit_count() == commits
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["-5", "abc"])
    async def test_invalid_expense_amount(self, store, client, amount):
        await offsite(store)
        commits = client.commit_count()

        with pytest.raises(ValidationError):
            store.new_expense("Offsite", "Venue", amount)
        with pytest.raises(ValidationError):
            await store.add_expense("Offsite", Expense.model_construct(name="Venue", amount=amount))

        assert client.commit_count() == commits
        assert store.pending_writes == 0
        assert store.expense_event("Offsite").expenses == []
        await store.close()

    @pytest.mark.asyncio
    async def test_total_consistent_across_unechoed_mutations(self, store):
        await offsite(store)
        venue = store.new_expense("Offsite", "Venue", "500")

        await store.add_expense("Offsite", venue)
        await store.add_expense("Offsite", store.new_expense("Offsite", "Cake", "49.99"))
        await store.add_expense("Offsite", store.new_expense("Offsite", "Tip", "0.01"))
        await store.update_expense("Offsite", venue.model_copy(update={"amount": 450.0}))
        await settle(store)

        expense_event = store.expense_event("Offsite")
        assert [e.name for e in expense_event.expenses] == ["Venue", "Cake", "Tip"]
        assert expense_event.total_amount == math.fsum(e.amount for e in expense_event.expenses)
        assert expense_event.total_amount == pytest.approx(500.0)

        assert await store.delete_expense("Offsite", venue.id)
        await settle(store)
        assert store.expense_event("Offsite").total_amount == pytest.approx(50.0)
        await store.close()

    @pytest.mark.asyncio
    async def test_update_unknown_expense(self, store):
        await offsite(store)

        assert not await store.update_expense("Offsite", Expense(name="Venue", amount=1))
        assert not await store.delete_expense("Offsite", "missing")
        await store.close()

    @pytest.mark.asyncio
    async def test_totals(self, client, auth, settings):
        store = EventStore(client, auth, settings=settings, cache=DerivedCache())
        await offsite(store)
        await store.add_task(store.new_task("Offsite", "Catering", amount="1,250.50"))
        await store.add_task(store.new_task("Offsite", "Music", amount=""))
        await settle(store)

        assert store.total_budget() == 1250.5
        assert store.total_expenses() == 1250.5
        await store.close()

    @pytest.mark.asyncio
    async def test_task_write_invalidates_budget(self, client, auth, settings):
        store = EventStore(client, auth, settings=settings, cache=DerivedCache(clock=FakeClock()))
        await offsite(store)
        assert store.total_budget() == 0.0

        await store.add_task(store.new_task("Offsite", "Venue", amount="500"))
        await settle(store)

        assert store.total_budget() == 500.0
        await store.close()

    @pytest.mark.asyncio
    async def test_budget_memo_holds_within_window(self, client, auth, settings):
        clock = FakeClock()
        store = EventStore(client, auth, settings=settings, cache=DerivedCache(clock=clock))
        await offsite(store)
        await store.add_task(store.new_task("Offsite", "Venue", amount="500"))
        await settle(store)
        assert store.total_budget() == 500.0
        entry = store.cache.peek(TOTAL_BUDGET_KEY)

        clock.advance(settings.budget_cache_ttl - 1)
        await store.add_expense("Offsite", store.new_expense("Offsite", "Flowers", "40"))
        await settle(store)

        assert store.total_budget() == 500.0
        assert store.cache.peek(TOTAL_BUDGET_KEY) is entry

        clock.advance(2)
        assert store.total_budget() == 500.0
        assert store.cache.peek(TOTAL_BUDGET_KEY) is not entry
        await store.close()

    @pytest.mark.asyncio
    async def test_tiny_task_amount_keeps_list_visible(self, store):
        await offsite(store)

        assert await store.add_task(store.new_task("Offsite", "Tip", amount="0.00001"))
        await settle(store)

        task_event = store.task_event("Offsite")
        assert task_event is not None
        assert task_event.tasks[0].amount == 0.00001
        assert await store.update_task(task_event.tasks[0].model_copy(update={"supplier": "Cafe"}))
        await store.close()

    @pytest.mark.asyncio
    async def test_concurrent_toggles_serialize(self, auth, settings):
        store = EventStore(YieldingClient(), auth, settings=settings)
        await offsite(store)
        task = store.new_task("Offsite", "Venue")
        assert await store.add_task(task)
        await settle(store)

        results = await asyncio.gather(
            store.toggle_task_completion("Offsite", task.id),
            store.toggle_task_completion("Offsite", task.id),
        )
        await settle(store)

        assert results == [True, True]
        assert store.task_event("Offsite").find_task(task.id).is_completed is False
        await store.close()

    def test_builders_require_user(self, client, settings):
        store = EventStore(client, StaticAuthProvider(), settings=settings)

        with pytest.raises(NotAuthenticatedError):
            store.new_task("Offsite", "Venue")
        with pytest.raises(NotAuthenticatedError):
            store.new_expense("Offsite", "Venue", "10")


class TestStoreSharing:
    """Tests for share_event, share_event_with_group and unshare_event."""

    @pytest.mark.asyncio
    async def test_share_appends_once(self, store, client):
        event = await offsite(store)

        assert await store.share_event(event, "u-grace")
        commits = client.commit_count()
        assert await store.share_event(event, "u-grace")
        await settle(store)

        assert client.commit_count() == commits
        assert store.find_event(event.id).shared_with == ["u-grace"]
        assert store.task_event("Offsite").shared_with == ["u-grace"]
        assert store.expense_event("Offsite").shared_with == ["u-grace"]
        await store.close()

    @pytest.mark.asyncio
    async def test_share_keeps_task_and_expense_content(self, store):
        event = await offsite(store)
        await store.add_task(store.new_task("Offsite", "Catering", amount="100"))

        await store.share_event(event, "u-grace")
        await settle(store)

        assert [t.name for t in store.task_event("Offsite").tasks] == ["Catering"]
        assert store.expense_event("Offsite").total_amount == 100.0
        await store.close()

    @pytest.mark.asyncio
    async def test_share_with_group_replaces_individual_shares(self, store, client):
        event = await offsite(store)
        await store.share_event(event, "u-bob")
        group = Group(
            id="g-1",
            name="Team",
            members=[GroupMember(uid="u-grace"), GroupMember(uid="u-alan")],
            member_ids=["u-grace", "u-alan"],
        )

        assert await store.share_event_with_group(event, group)
        await settle(store)

        assert store.find_event(event.id).shared_with == ["u-grace", "u-alan"]
        assert store.task_event("Offsite").shared_with == ["u-grace", "u-alan"]
        assert client.documents("groups")["g-1"]["events"] == [event.id]
        await store.close()

    @pytest.mark.asyncio
    async def test_unshare_rewrites_event_only(self, store, client):
        event = await offsite(store)
        await store.share_event(event, "u-grace")
        await settle(store)
        commits = client.commit_count("taskEvents")

        assert await store.unshare_event(event, "u-grace")
        await settle(store)

        assert store.find_event(event.id).shared_with == []
        assert client.commit_count("taskEvents") == commits
        await store.close()
