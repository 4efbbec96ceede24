"""
Integration tests for GroupDirectory and the services container.

Tests cover:
- Group subscription and management operations
- Group-based access through the wired services
- Restart on sign-in/sign-out
"""

import pytest

from sdk.planner_sync.auth import StaticAuthProvider
from sdk.planner_sync.errors import ValidationError
from sdk.planner_sync.groups import GroupDirectory
from sdk.planner_sync.models import Event
from sdk.planner_sync.services import create_services

from tests.helpers import ADA, GRACE, WHEN, settle, wait_until


class TestGroupDirectory:
    """Tests for GroupDirectory."""

    @pytest.fixture
    def directory(self, client, auth):
        return GroupDirectory(client, auth)

    @pytest.mark.asyncio
    async def test_create_group_appears_in_view(self, directory, client):
        await directory.start()
        assert await directory.wait_ready(timeout=1.0)
        assert directory.group_ids() == []

        group = await directory.create_group("Team")
        await wait_until(lambda: directory.group_ids() == [group.id])

        stored = client.documents("groups")[group.id]
        assert stored["memberIds"] == [ADA.uid]
        assert stored["members"][0]["role"] == "admin"
        assert stored["createdByUID"] == ADA.uid
        assert directory.find(group.id).name == "Team"
        await directory.close()

    @pytest.mark.asyncio
    async def test_raising_listener_does_not_stop_updates(self, directory):
        def broken(groups):
            raise RuntimeError("listener bug")

        directory.add_listener(broken)
        await directory.start()
        assert await directory.wait_ready(timeout=1.0)

        group = await directory.create_group("Team")

        await wait_until(lambda: directory.group_ids() == [group.id])
        await directory.close()

    @pytest.mark.asyncio
    async def test_create_group_blank_name(self, directory):
        with pytest.raises(ValidationError):
            await directory.create_group("  ")

    @pytest.mark.asyncio
    async def test_create_group_requires_user(self, client):
        directory = GroupDirectory(client, StaticAuthProvider())

        assert await directory.create_group("Team") is None
        assert client.commit_count() == 0

    @pytest.mark.asyncio
    async def test_create_group_write_rejected(self, directory, client):
        client.deny_collection("groups")

        assert await directory.create_group("Team") is None

    @pytest.mark.asyncio
    async def test_add_member_by_email(self, directory, client):
        await client.seed("users", GRACE.uid, {"uid": GRACE.uid, "email": GRACE.email, "name": "Grace Hopper"})
        group = await directory.create_group("Team")

        assert await directory.add_member_by_email(group, GRACE.email)

        fetched = await directory.get_group(group.id)
        assert fetched.member_ids == [ADA.uid, GRACE.uid]
        assert fetched.members[1].name == "Grace Hopper"
        assert fetched.members[1].role == "member"

    @pytest.mark.asyncio
    async def test_add_member_unknown_email(self, directory, client):
        group = await directory.create_group("Team")
        commits = client.commit_count()

        assert not await directory.add_member_by_email(group, "nobody@example.com")
        assert client.commit_count() == commits

    @pytest.mark.asyncio
    async def test_add_existing_member(self, directory, client):
        await client.seed("users", ADA.uid, {"uid": ADA.uid, "email": ADA.email})
        group = await directory.create_group("Team")
        commits = client.commit_count()

        assert await directory.add_member_by_email(group, ADA.email)
        assert client.commit_count() == commits

    @pytest.mark.asyncio
    async def test_get_missing_group(self, directory):
        assert await directory.get_group("missing") is None

    @pytest.mark.asyncio
    async def test_no_user_is_ready_and_empty(self, client):
        directory = GroupDirectory(client, StaticAuthProvider())

        await directory.start()

        assert await directory.wait_ready(timeout=0.1)
        assert directory.groups == ()
        assert client.listener_count() == 0


class TestServices:
    """Tests for create_services wiring."""

    @pytest.mark.asyncio
    async def test_group_shared_events_visible(self, client, auth, settings):
        services = create_services(client, auth, settings)
        group = await services.groups.create_group("Team")
        await client.seed(
            "events",
            "gala",
            {
                "id": "gala",
                "title": "Gala",
                "date": WHEN.isoformat(),
                "createdByUID": GRACE.uid,
                "sharedGroups": [group.id],
            },
        )

        await services.start()
        await settle(services.store)

        assert [e.id for e in services.store.events] == ["gala"]
        await services.close()
        assert client.listener_count() == 0

    @pytest.mark.asyncio
    async def test_restarts_on_auth_change(self, client, settings):
        auth = StaticAuthProvider(ADA)
        services = create_services(client, auth, settings)
        await services.start()
        await settle(services.store)
        assert await services.store.create_event(Event(title="Offsite", date=WHEN))
        await settle(services.store)

        auth.sign_out()
        await wait_until(lambda: not services.store.is_active and services.store.events == ())
        assert client.listener_count() == 0

        auth.sign_in(ADA)
        await wait_until(lambda: services.store.is_active and len(services.store.events) == 1)
        await services.close()

    @pytest.mark.asyncio
    async def test_shared_settings_and_cache(self, client, auth, settings):
        services = create_services(client, auth, settings)

        assert services.store.settings is settings
        assert services.store.cache is services.cache
        assert services.groups.collection == settings.groups_collection
        assert services.users.collection == settings.users_collection
