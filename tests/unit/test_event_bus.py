"""
Unit tests for the event bus and the activity log fed by it.
"""

import asyncio

import pytest

from core.database import SCHEMA_VERSION, Database
from core.event_bus import EventBus
from core.event_store import EventStore, describe_message
from models.event import BusMessage, EventFilters, Topic


class TestEventBus:
    """Publish/subscribe behaviour."""

    def test_topic_filtering(self):
        bus = EventBus()
        renewals = bus.subscribe({Topic.CERTIFICATE_RENEWED})
        everything = bus.subscribe()

        bus.publish(Topic.CERTIFICATE_RENEWED, {"name": "a"})
        bus.publish(Topic.SERVER_STATUS, {"status": "running"})

        assert [m.topic for m in renewals.drain()] == [Topic.CERTIFICATE_RENEWED]
        assert len(everything.drain()) == 2

    def test_full_queue_drops_oldest(self):
        bus = EventBus(queue_size=3)
        subscription = bus.subscribe()
        for n in range(5):
            bus.publish(Topic.RENEWAL_STATUS, {"n": n})

        messages = subscription.drain()
        assert [m.payload["n"] for m in messages] == [2, 3, 4]
        assert subscription.dropped == 2

    def test_listener_failure_is_contained(self):
        bus = EventBus()
        seen = []

        def broken(message):
            raise RuntimeError("boom")

        bus.add_listener(broken)
        bus.add_listener(seen.append)
        bus.publish(Topic.CERTIFICATE_UPDATED, {"name": "x"})

        assert len(seen) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        subscription = bus.subscribe()
        assert bus.client_count == 1
        bus.unsubscribe(subscription)
        assert bus.client_count == 0
        assert subscription.closed

    def test_server_status_reports_clients(self):
        bus = EventBus()
        bus.subscribe()
        message = bus.publish_server_status()
        assert message.payload == {"status": "running", "clients": 1}
        assert message.to_wire()["topic"] == "server-status"

    @pytest.mark.asyncio
    async def test_get_waits_for_publish(self):
        bus = EventBus()
        subscription = bus.subscribe()

        async def later():
            await asyncio.sleep(0.05)
            bus.publish(Topic.CERTIFICATE_DELETED, {"name": "gone"})

        asyncio.create_task(later())
        message = await subscription.get(timeout=2)
        assert message.topic == Topic.CERTIFICATE_DELETED

    @pytest.mark.asyncio
    async def test_get_timeout_and_close(self):
        bus = EventBus()
        subscription = bus.subscribe()
        assert await subscription.get(timeout=0.05) is None
        subscription.close()
        assert await subscription.get() is None


class TestActivityLog:
    """Bus messages recorded in SQLite."""

    @pytest.fixture
    def event_store(self, tmp_path):
        return EventStore(Database(tmp_path / "activity.db"))

    def test_describe_renewal(self):
        message = BusMessage(
            topic=Topic.CERTIFICATE_RENEWED,
            payload={"name": "web", "old_fingerprint": "a" * 64, "new_fingerprint": "b" * 64},
        )
        assert describe_message(message) == f"Certificate 'web' renewed ({'a' * 16} -> {'b' * 16})"

    @pytest.mark.asyncio
    async def test_listener_records_messages(self, event_store):
        await event_store.initialize()
        bus = EventBus()
        bus.add_listener(event_store.listener)

        bus.publish(Topic.RENEWAL_FAILED, {"fingerprint": "c" * 64, "name": "web", "error_kind": "CryptoError"})
        bus.publish_server_status()
        await event_store.flush()

        result = await event_store.list_events()
        assert result.total == 1
        event = result.events[0]
        assert event.category == "renewal"
        assert event.severity.value == "error"
        assert event.resource_id == "c" * 64

    @pytest.mark.asyncio
    async def test_filters_and_clear(self, event_store):
        await event_store.initialize()
        await event_store.record_event("config", "settings-updated", "Settings updated", principal="ops")
        await event_store.record_event("certificate", "certificate-updated", "Updated", resource_id="d" * 64)

        config_only = await event_store.list_events(EventFilters(category=["config"]))
        assert config_only.total == 1
        assert config_only.events[0].principal == "ops"

        by_resource = await event_store.list_events(EventFilters(resource_id="d" * 64))
        assert by_resource.total == 1

        assert await event_store.clear() == 2
        assert (await event_store.list_events()).total == 0

    @pytest.mark.asyncio
    async def test_migrations_are_idempotent(self, tmp_path):
        db = Database(tmp_path / "activity.db")
        assert await db.initialize() == SCHEMA_VERSION
        assert await db.initialize() == SCHEMA_VERSION
        columns = {row["name"] for row in await db.fetch_all("PRAGMA table_info(events)")}
        assert "principal" in columns

    @pytest.mark.asyncio
    async def test_retention_keeps_recent_events(self, event_store):
        await event_store.initialize()
        await event_store.record_event("system", "startup", "Started")
        await event_store.db.execute(
            "UPDATE events SET timestamp = ? WHERE action = 'startup'", ("2000-01-01T00:00:00+00:00",)
        )
        await event_store.record_event("system", "check", "Checked")

        assert await event_store.enforce_retention(30) == 1
        assert (await event_store.list_events()).events[0].action == "check"
