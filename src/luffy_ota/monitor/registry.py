"""
Health registry.

In-memory table of per-service state shared by the update loop, the inbound
message listener and status surfaces. Records are upserted by partial merge
and never deleted. A record whose last health report is older than the
staleness window reads as UNKNOWN; staleness is evaluated on read, nothing
expires records eagerly.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from luffy_ota.logging import get_logger
from luffy_ota.ota.identity import KNOWN_SERVICES, ServiceIdentity
from luffy_ota.ota.version import compare_versions, is_semantic_version

logger = get_logger(__name__)

STALENESS_WINDOW = timedelta(seconds=60)


class ServiceStatus(str, Enum):
    """Reported state of a service."""

    UNKNOWN = "unknown"
    RUNNING = "running"
    STOPPED = "stopped"


class ServiceRecord(BaseModel):
    """
    Last known state of one service.

    Attributes:
        name: Registry key of the service.
        status: Stored status, before staleness is applied.
        running_version: Version from the last health report.
        latest_known_version: Newest version seen in a release.
        last_report_time: Time of the last health report.
    """

    name: str = Field(..., description="Registry key of the service")
    status: ServiceStatus = Field(
        default=ServiceStatus.UNKNOWN,
        description="Stored status; reads apply the staleness window",
    )
    running_version: str | None = Field(
        default=None,
        description="Version reported by the service",
    )
    latest_known_version: str | None = Field(
        default=None,
        description="Newest version available in the release index",
    )
    last_report_time: datetime | None = Field(
        default=None,
        description="When the last health report arrived",
    )

    def is_stale(self, now: datetime, window: timedelta = STALENESS_WINDOW) -> bool:
        """Return True if no health report arrived within the window."""
        if self.last_report_time is None:
            return True
        return now - self.last_report_time > window

    def effective_status(
        self, now: datetime, window: timedelta = STALENESS_WINDOW
    ) -> ServiceStatus:
        """Stored status, or UNKNOWN once the record is stale."""
        if self.is_stale(now, window):
            return ServiceStatus.UNKNOWN
        return self.status

    @property
    def update_available(self) -> bool:
        """True when the latest known version is newer than the running one."""
        if not self.running_version or not self.latest_known_version:
            return False
        if not (
            is_semantic_version(self.running_version)
            and is_semantic_version(self.latest_known_version)
        ):
            return False
        return compare_versions(self.latest_known_version, self.running_version) > 0


class ReadWriteLock:
    """
    asyncio reader/writer lock.

    Any number of readers may hold the lock together; a writer holds it
    alone. Waiting writers block new readers so a steady stream of reads
    cannot starve a write.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writer_active(self) -> bool:
        return self._writer

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._writer and self._waiting_writers == 0
            )
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0
                )
            finally:
                self._waiting_writers -= 1
                # Readers blocked behind a cancelled writer must re-check
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _key(service: ServiceIdentity | str) -> str:
    if isinstance(service, ServiceIdentity):
        return service.registry_key
    return service


class HealthRegistry:
    """
    Concurrently accessed per-service state table.

    Every known service role is seeded as UNKNOWN at construction. Services
    outside the known roles get a record on their first report.

    Example:
        >>> registry = HealthRegistry()
        >>> await registry.record_health("gateway", "1.2.0")
        >>> await registry.status_of("gateway")
        <ServiceStatus.RUNNING: 'running'>
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        staleness_window: timedelta = STALENESS_WINDOW,
    ) -> None:
        """
        Initialize the registry.

        Args:
            clock: Returns the current time (timezone-aware UTC).
            staleness_window: Age after which a record reads as UNKNOWN.
        """
        self._clock = clock
        self.staleness_window = staleness_window
        self._lock = ReadWriteLock()
        self._records: dict[str, ServiceRecord] = {
            service.registry_key: ServiceRecord(name=service.registry_key)
            for service in KNOWN_SERVICES
        }

    def _upsert(self, key: str, **changes: Any) -> ServiceRecord:
        current = self._records.get(key) or ServiceRecord(name=key)
        record = current.model_copy(update=changes)
        self._records[key] = record
        return record

    async def record_health(self, service: ServiceIdentity | str, version: str) -> None:
        """
        Record a health report: the service is running the given version.

        Only status, running_version and last_report_time change.
        """
        key = _key(service)
        async with self._lock.write():
            self._upsert(
                key,
                status=ServiceStatus.RUNNING,
                running_version=version,
                last_report_time=self._clock(),
            )
        logger.debug(
            f"Service {key} is running with version {version}",
            extra={"service": key, "version": version},
        )

    async def record_latest_available(
        self, service: ServiceIdentity | str, version: str
    ) -> None:
        """Record the newest release version of a service, touching nothing else."""
        key = _key(service)
        async with self._lock.write():
            self._upsert(key, latest_known_version=version)
        logger.debug(
            f"Latest available version for {key}: {version}",
            extra={"service": key, "version": version},
        )

    async def status_of(self, service: ServiceIdentity | str) -> ServiceStatus:
        """
        Get the effective status of a service.

        Returns:
            UNKNOWN if the service has no record or its record is stale,
            otherwise the stored status.
        """
        async with self._lock.read():
            record = self._records.get(_key(service))
            if record is None:
                return ServiceStatus.UNKNOWN
            return record.effective_status(self._clock(), self.staleness_window)

    async def get(self, service: ServiceIdentity | str) -> ServiceRecord | None:
        """Return a copy of one record, or None."""
        async with self._lock.read():
            record = self._records.get(_key(service))
            return record.model_copy() if record is not None else None

    async def snapshot(self) -> dict[str, ServiceRecord]:
        """Return a consistent point-in-time copy of all records."""
        async with self._lock.read():
            return {key: record.model_copy() for key, record in self._records.items()}

    async def to_dict(self) -> dict[str, dict[str, Any]]:
        """
        Render the registry for status surfaces.

        Statuses are staleness-adjusted and timestamps are ISO 8601 strings.
        """
        async with self._lock.read():
            now = self._clock()
            return {
                key: {
                    "name": record.name,
                    "status": record.effective_status(now, self.staleness_window).value,
                    "running_version": record.running_version,
                    "latest_known_version": record.latest_known_version,
                    "last_report_time": (
                        record.last_report_time.isoformat()
                        if record.last_report_time
                        else None
                    ),
                    "update_available": record.update_available,
                }
                for key, record in sorted(self._records.items())
            }
