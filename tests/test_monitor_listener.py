"""
Tests for the inbound message listener.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from luffy_ota.monitor.listener import HEALTH_TOPIC, UPDATE_TOPIC, HealthListener, topic_matches
from luffy_ota.monitor.registry import HealthRegistry, ServiceStatus


def _manager() -> MagicMock:
    manager = MagicMock()
    manager.trigger_update = AsyncMock(return_value=None)
    return manager


class TestTopicMatches:
    """Tests for topic_matches function."""

    @pytest.mark.parametrize(
        ("pattern", "topic", "expected"),
        [
            (HEALTH_TOPIC, "luffy/gateway/health", True),
            (HEALTH_TOPIC, "luffy/media/health", True),
            (HEALTH_TOPIC, "luffy/gateway/status", False),
            (HEALTH_TOPIC, "luffy/gateway/health/extra", False),
            (HEALTH_TOPIC, "luffy/health", False),
            ("luffy/#", "luffy/a/b/c", True),
            ("luffy/#", "other/a", False),
            (UPDATE_TOPIC, UPDATE_TOPIC, True),
        ],
    )
    def test_matching(self, pattern: str, topic: str, expected: bool) -> None:
        """Test single and multi level wildcards."""
        assert topic_matches(pattern, topic) is expected


class TestHealthReports:
    """Tests for health report handling."""

    @pytest.mark.asyncio
    async def test_health_report_updates_registry(self) -> None:
        """Test a health report marks the service running."""
        registry = HealthRegistry()
        listener = HealthListener(registry)

        await listener.handle_message("luffy/gateway/health", '{"version": "1.2.0"}')

        record = await registry.get("gateway")
        assert record is not None
        assert record.status is ServiceStatus.RUNNING
        assert record.running_version == "1.2.0"

    @pytest.mark.asyncio
    async def test_package_name_topic_maps_to_role(self) -> None:
        """Test topics carrying the package name land on the role record."""
        registry = HealthRegistry()
        listener = HealthListener(registry)

        await listener.handle_message("luffy/luffy-media/health", '{"version": "0.3.1"}')

        record = await registry.get("media")
        assert record is not None
        assert record.running_version == "0.3.1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        ["not json", "{}", '{"version": 3}', "[]", ""],
    )
    async def test_malformed_payload_dropped(self, payload: str) -> None:
        """Test malformed reports leave the registry untouched."""
        registry = HealthRegistry()
        listener = HealthListener(registry)
        before = await registry.snapshot()

        await listener.handle_message("luffy/gateway/health", payload)

        assert await registry.snapshot() == before

    @pytest.mark.asyncio
    async def test_empty_service_segment_dropped(self) -> None:
        """Test a topic without service name is ignored."""
        registry = HealthRegistry()
        listener = HealthListener(registry)

        await listener.handle_message("luffy//health", '{"version": "1.0.0"}')

        assert "" not in await registry.snapshot()

    @pytest.mark.asyncio
    async def test_unknown_topic_ignored(self) -> None:
        """Test unrelated topics are ignored."""
        registry = HealthRegistry()
        manager = _manager()
        listener = HealthListener(registry, manager)

        await listener.handle_message("luffy/gateway/telemetry", '{"version": "1.0.0"}')

        record = await registry.get("gateway")
        assert record is not None
        assert record.running_version is None
        manager.trigger_update.assert_not_called()


class TestUpdateRequests:
    """Tests for update trigger handling."""

    @pytest.mark.asyncio
    async def test_trigger_without_service(self) -> None:
        """Test an empty payload triggers a full check."""
        manager = _manager()
        listener = HealthListener(HealthRegistry(), manager)

        listener.submit(UPDATE_TOPIC, b"")
        listener.close()
        await asyncio.wait_for(listener.run(), timeout=1.0)

        manager.trigger_update.assert_awaited_once_with(None)

    @pytest.mark.asyncio
    async def test_trigger_with_service(self) -> None:
        """Test the requested service is passed on."""
        manager = _manager()
        listener = HealthListener(HealthRegistry(), manager)

        listener.submit(UPDATE_TOPIC, '{"service": "launcher"}')
        listener.close()
        await asyncio.wait_for(listener.run(), timeout=1.0)

        manager.trigger_update.assert_awaited_once_with("launcher")

    @pytest.mark.asyncio
    async def test_invalid_trigger_dropped(self) -> None:
        """Test a malformed trigger payload is ignored."""
        manager = _manager()
        listener = HealthListener(HealthRegistry(), manager)

        await listener.handle_message(UPDATE_TOPIC, "{broken")

        manager.trigger_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_trigger_without_manager(self) -> None:
        """Test triggers are ignored when no manager is attached."""
        listener = HealthListener(HealthRegistry())

        await listener.handle_message(UPDATE_TOPIC, "")

    @pytest.mark.asyncio
    async def test_health_flows_during_update(self) -> None:
        """Test health reports are handled while a triggered update runs."""
        registry = HealthRegistry()
        release = asyncio.Event()

        async def slow_trigger(service: str | None) -> None:
            await release.wait()

        manager = MagicMock()
        manager.trigger_update = AsyncMock(side_effect=slow_trigger)
        listener = HealthListener(registry, manager)
        consumer = asyncio.create_task(listener.run())

        listener.submit(UPDATE_TOPIC, "")
        listener.submit("luffy/gateway/health", '{"version": "1.2.0"}')
        await asyncio.wait_for(listener.join(), timeout=1.0)

        assert await registry.status_of("gateway") is ServiceStatus.RUNNING
        assert not consumer.done()

        release.set()
        listener.close()
        await asyncio.wait_for(consumer, timeout=1.0)
        manager.trigger_update.assert_awaited_once()


class TestConsumer:
    """Tests for the queue consumer."""

    @pytest.mark.asyncio
    async def test_run_drains_queue_in_order(self) -> None:
        """Test queued messages are handled in order before exit."""
        registry = HealthRegistry()
        listener = HealthListener(registry)

        listener.submit("luffy/gateway/health", '{"version": "1.0.0"}')
        listener.submit("luffy/gateway/health", b'{"version": "1.1.0"}')
        listener.close()
        assert listener.pending == 3

        await asyncio.wait_for(listener.run(), timeout=1.0)

        record = await registry.get("gateway")
        assert record is not None
        assert record.running_version == "1.1.0"
        assert listener.pending == 0

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_consumer(self) -> None:
        """Test an exception while handling is logged and skipped."""
        registry = MagicMock()
        registry.record_health = AsyncMock(side_effect=[RuntimeError("boom"), None])
        listener = HealthListener(registry)

        listener.submit("luffy/gateway/health", '{"version": "1.0.0"}')
        listener.submit("luffy/media/health", '{"version": "1.0.0"}')
        listener.close()
        await asyncio.wait_for(listener.run(), timeout=1.0)

        assert registry.record_health.await_count == 2

    @pytest.mark.asyncio
    async def test_bounded_queue(self) -> None:
        """Test a full bounded queue rejects new messages."""
        listener = HealthListener(HealthRegistry(), max_queue_size=1)

        listener.submit("luffy/gateway/health", '{"version": "1.0.0"}')
        with pytest.raises(asyncio.QueueFull):
            listener.submit("luffy/gateway/health", '{"version": "1.0.1"}')
