"""
Inbound message listener.

The message bus transport hands every inbound message to submit(), which
only enqueues it. A single consumer task drains the queue and is the only
writer of health reports into the registry.

Topics:
- luffy/<service>/health  payload {"version": "<semver>"}
- luffy/ota/update        optional payload {"service": "<name>"}
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import BaseModel, ValidationError

from luffy_ota.logging import get_logger
from luffy_ota.monitor.registry import HealthRegistry
from luffy_ota.ota.identity import classify_package

if TYPE_CHECKING:
    from luffy_ota.ota.manager import VersionManager

logger = get_logger(__name__)

HEALTH_TOPIC = "luffy/+/health"
UPDATE_TOPIC = "luffy/ota/update"


class HealthReport(BaseModel):
    """Periodic health report published by a service."""

    version: str


class UpdateRequest(BaseModel):
    """Payload of an update trigger; without a service every service is checked."""

    service: str | None = None


@dataclass(frozen=True)
class InboundMessage:
    topic: str
    payload: str


def topic_matches(pattern: str, topic: str) -> bool:
    """
    Match a topic against an MQTT subscription pattern.

    `+` matches exactly one level and `#` matches all remaining levels.
    """
    pattern_levels = pattern.split("/")
    topic_levels = topic.split("/")

    for index, level in enumerate(pattern_levels):
        if level == "#":
            return True
        if index >= len(topic_levels):
            return False
        if level != "+" and level != topic_levels[index]:
            return False
    return len(pattern_levels) == len(topic_levels)


class HealthListener:
    """
    Queue-backed consumer of health reports and update triggers.

    Attributes:
        registry: Registry receiving health reports.
        manager: Version manager receiving update triggers, if any.

    Example:
        >>> listener = HealthListener(registry, manager)
        >>> task = asyncio.create_task(listener.run())
        >>> listener.submit("luffy/gateway/health", '{"version": "1.2.0"}')
    """

    def __init__(
        self,
        registry: HealthRegistry,
        manager: VersionManager | None = None,
        *,
        max_queue_size: int = 0,
    ) -> None:
        self.registry = registry
        self.manager = manager
        self._queue: asyncio.Queue[InboundMessage | None] = asyncio.Queue(max_queue_size)
        self._trigger_tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of messages waiting in the queue."""
        return self._queue.qsize()

    def submit(self, topic: str, payload: str | bytes) -> None:
        """
        Enqueue an inbound message.

        Safe to call from any callback running on the event loop.

        Raises:
            asyncio.QueueFull: If a bounded queue is full.
        """
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8", errors="replace")
        self._queue.put_nowait(InboundMessage(topic, payload))

    def close(self) -> None:
        """Ask the consumer to exit once the queued messages are handled."""
        self._queue.put_nowait(None)

    async def run(self) -> None:
        """Drain the queue until close() is called."""
        logger.info(
            "Health listener started",
            extra={"topics": [HEALTH_TOPIC, UPDATE_TOPIC]},
        )
        while True:
            message = await self._queue.get()
            try:
                if message is None:
                    break
                await self.handle_message(message.topic, message.payload)
            except Exception:
                logger.exception("Failed to handle inbound message")
            finally:
                self._queue.task_done()

        if self._trigger_tasks:
            await asyncio.gather(*self._trigger_tasks, return_exceptions=True)
        logger.info("Health listener stopped")

    async def join(self) -> None:
        """Wait until every queued message has been handled."""
        await self._queue.join()

    async def handle_message(self, topic: str, payload: str) -> None:
        """Route one message by topic; malformed payloads are dropped."""
        logger.debug(
            "Monitor received message",
            extra={"topic": topic, "payload": payload},
        )

        if topic_matches(HEALTH_TOPIC, topic):
            await self._handle_health(topic, payload)
        elif topic == UPDATE_TOPIC:
            self._handle_update_request(payload)
        else:
            logger.debug("Ignoring message on unknown topic", extra={"topic": topic})

    async def _handle_health(self, topic: str, payload: str) -> None:
        service = topic.split("/")[1]
        if not service:
            logger.debug("Health report without service name", extra={"topic": topic})
            return

        try:
            report = HealthReport.model_validate_json(payload)
        except ValidationError:
            logger.debug(
                f"Failed to parse health report: {payload}",
                extra={"topic": topic},
            )
            return

        await self.registry.record_health(classify_package(service), report.version)

    def _handle_update_request(self, payload: str) -> None:
        if self.manager is None:
            logger.warning("Update requested but no version manager is attached")
            return

        request = UpdateRequest()
        if payload.strip():
            try:
                request = UpdateRequest.model_validate(json.loads(payload))
            except (ValueError, ValidationError):
                logger.debug(f"Failed to parse update request: {payload}")
                return

        # Run the trigger off the consumer task so health reports keep flowing
        # while an update transaction is in progress.
        task = asyncio.create_task(self.manager.trigger_update(request.service))
        self._trigger_tasks.add(task)
        task.add_done_callback(self._trigger_tasks.discard)
