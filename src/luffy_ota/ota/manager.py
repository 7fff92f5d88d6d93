"""
Version manager: the update orchestrator.

Each cycle runs these steps strictly in order:

1. Resolve  - fetch the latest release from the release index
2. Filter   - keep artifacts whose service is enabled and whose version is
              newer than the installed one (the launcher never passes on
              the automatic path)
3. Group    - bucket candidates by owning ServiceIdentity
4. Transact - per group: download all, stop service, install in order,
              roll back on failure, start service
5. Report   - record the release versions in the health registry

Cycles transact only under the auto strategy; the manual strategy stops
after logging availability. Timer ticks under the disabled strategy make
no network calls at all, while a bare "update requested" trigger still runs
a report-only cycle. A per-service manual update always transacts.

Cycles never overlap: a tick or trigger that arrives while a cycle is in
flight is skipped, and the next tick recomputes eligibility from scratch.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from luffy_ota.config import ServicesConfig, UpdateStrategy
from luffy_ota.errors import (
    DownloadError,
    InstallFailure,
    InvalidArgumentError,
    OtaError,
)
from luffy_ota.logging import get_logger
from luffy_ota.monitor.registry import HealthRegistry
from luffy_ota.ota.identity import ServiceIdentity, ServiceKind, classify_package
from luffy_ota.ota.installer import PackageInstaller
from luffy_ota.ota.release import Release, ReleaseResolver, filter_enabled
from luffy_ota.ota.version import BACKUP_SUFFIX, PackageArtifact, compare_versions

logger = get_logger(__name__)


@dataclass
class CycleResult:
    """
    Outcome of one update cycle.

    Attributes:
        tag: Tag of the resolved release.
        candidates: Artifacts that passed the filter step.
        results: Per-service transaction outcome (True = updated), empty
            when nothing was transacted.
    """

    tag: str
    candidates: list[PackageArtifact] = field(default_factory=list)
    results: dict[str, bool] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return all(self.results.values())


def group_by_service(
    artifacts: list[PackageArtifact],
) -> dict[ServiceIdentity, list[PackageArtifact]]:
    """Bucket artifacts by owning service, keeping their relative order."""
    groups: dict[ServiceIdentity, list[PackageArtifact]] = {}
    for artifact in artifacts:
        groups.setdefault(classify_package(artifact.package_name), []).append(artifact)
    return groups


class VersionManager:
    """
    Drives update cycles on a timer and on explicit triggers.

    Attributes:
        installer: Package installer owning the working directory.
        resolver: Release index client.
        registry: Health registry receiving availability reports.
        strategy: Update strategy, fixed for the process lifetime.
        check_interval: Seconds between timer ticks.
        services: Per-service update flags.
        backup_count: Backups kept per package after each transaction.

    Example:
        >>> manager = VersionManager(installer, resolver, registry,
        ...                          strategy=UpdateStrategy.AUTO)
        >>> await manager.check_and_apply_updates()
    """

    def __init__(
        self,
        installer: PackageInstaller,
        resolver: ReleaseResolver,
        registry: HealthRegistry,
        *,
        strategy: UpdateStrategy = UpdateStrategy.MANUAL,
        check_interval: float = 3600,
        services: ServicesConfig | None = None,
        backup_count: int = 2,
    ) -> None:
        self.installer = installer
        self.resolver = resolver
        self.registry = registry
        self.strategy = strategy
        self.check_interval = check_interval
        self.services = services or ServicesConfig()
        self.backup_count = backup_count

        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        """True while the control loop is active."""
        return self._running

    @property
    def cycle_in_progress(self) -> bool:
        """True while a cycle holds the in-flight guard."""
        return self._cycle_lock.locked()

    # -------------------------------------------------------------------------
    # Filter / Group
    # -------------------------------------------------------------------------

    async def select_candidates(
        self,
        artifacts: list[PackageArtifact],
        *,
        allow_launcher: bool = False,
        respect_flags: bool = True,
    ) -> list[PackageArtifact]:
        """
        Keep the artifacts that should be installed.

        Args:
            artifacts: Artifacts of the resolved release.
            allow_launcher: Let launcher artifacts through.
            respect_flags: Apply the per-service enable flags.

        Returns:
            Artifacts with a valid version newer than the installed one.
        """
        if respect_flags:
            artifacts = filter_enabled(
                artifacts, self.services, allow_launcher=allow_launcher
            )
        elif not allow_launcher:
            artifacts = [
                a
                for a in artifacts
                if classify_package(a.package_name).kind is not ServiceKind.LAUNCHER
            ]

        candidates = []
        for artifact in artifacts:
            version = artifact.version
            if version is None:
                logger.debug(
                    f"Skipping {artifact.filename}: no valid version",
                    extra={"package": artifact.package_name},
                )
                continue
            if await self.installer.needs_update(artifact.package_name, version):
                candidates.append(artifact)
        return candidates

    async def check_updates(self) -> tuple[Release, list[PackageArtifact]]:
        """
        Resolve the latest release and select eligible candidates.

        Returns:
            The release and its candidate artifacts.

        Raises:
            TransportError: If the release index cannot be fetched.
        """
        release = await self.resolver.get_latest_release()
        candidates = await self.select_candidates(release.artifacts)
        logger.info(
            f"Found {len(candidates)} updates in {release.tag}",
            extra={
                "tag": release.tag,
                "version": release.version,
                "packages": [c.filename for c in candidates],
            },
        )
        return release, candidates

    # -------------------------------------------------------------------------
    # Transact
    # -------------------------------------------------------------------------

    def _discard_downloads(self, artifacts: list[PackageArtifact]) -> None:
        for artifact in artifacts:
            (self.installer.work_dir / artifact.filename).unlink(missing_ok=True)

    async def _rollback_group(
        self, service: ServiceIdentity, artifacts: list[PackageArtifact]
    ) -> bool:
        rolled_back = True
        for artifact in artifacts:
            try:
                ok = await self.installer.install_from_last_installed(artifact.package_name)
            except OtaError as e:
                logger.warning(
                    f"Rollback of {artifact.package_name} failed: {e.message}",
                    extra={"service": str(service), "package": artifact.package_name},
                )
                ok = False
            except Exception:
                logger.exception(
                    f"Unexpected error rolling back {artifact.package_name}",
                    extra={"service": str(service), "package": artifact.package_name},
                )
                ok = False
            if not ok:
                logger.warning(
                    f"Could not roll back {artifact.package_name}",
                    extra={"service": str(service), "package": artifact.package_name},
                )
                rolled_back = False
        return rolled_back

    async def update_service_group(
        self, service: ServiceIdentity, artifacts: list[PackageArtifact]
    ) -> None:
        """
        Update all packages of one service as a single transaction.

        Downloads are all-or-nothing: if any download fails, every artifact
        of the group is removed again. Installs run in order with the service
        stopped; if one fails, every package of the group is reinstalled from
        its last installed artifact.

        Args:
            service: Owning service of the group.
            artifacts: Artifacts to install, in install order.

        Raises:
            DownloadError: If any download failed.
            InstallFailure: If any install failed (after rollback).
        """
        logger.info(
            f"Updating {service} with {len(artifacts)} packages",
            extra={"service": str(service), "packages": [a.filename for a in artifacts]},
        )

        downloaded = []
        try:
            for artifact in artifacts:
                downloaded.append(
                    await self.installer.download(artifact.source_url, artifact.filename)
                )
        except (OtaError, OSError) as e:
            self._discard_downloads(artifacts)
            logger.warning(
                f"Download failed for {service}, discarded group downloads",
                extra={"service": str(service), "error": str(e)},
            )
            if isinstance(e, OtaError):
                raise
            raise DownloadError(
                f"Failed to store artifacts for {service}: {e}",
                details={"service": str(service)},
            ) from e

        try:
            if not await self.installer.stop_service(service):
                logger.warning(
                    f"Failed to stop {service}, installing anyway",
                    extra={"service": str(service)},
                )

            for artifact, path in zip(artifacts, downloaded, strict=True):
                try:
                    installed = await self.installer.install(path)
                except OtaError as e:
                    logger.error(
                        f"Install of {path.name} failed: {e.message}",
                        extra={"service": str(service), "path": str(path)},
                    )
                    installed = False
                except Exception:
                    logger.exception(
                        f"Unexpected error installing {path.name}",
                        extra={"service": str(service), "path": str(path)},
                    )
                    installed = False

                if not installed:
                    rolled_back = await self._rollback_group(service, artifacts)
                    if rolled_back:
                        await self.installer.start_service(service)
                    raise InstallFailure(
                        f"Failed to install {artifact.filename}",
                        details={
                            "service": str(service),
                            "package": artifact.package_name,
                            "rolled_back": rolled_back,
                        },
                    )

            if not await self.installer.start_service(service):
                logger.error(
                    f"Failed to start {service} after update",
                    extra={"service": str(service)},
                )
        finally:
            for artifact in artifacts:
                self.installer.cleanup_old_files(
                    artifact.package_name, self.backup_count, BACKUP_SUFFIX
                )

        logger.info(f"Updated {service}", extra={"service": str(service)})

    async def update_packages(self, artifacts: list[PackageArtifact]) -> dict[str, bool]:
        """
        Group artifacts by service and transact each group.

        A failing group never affects the others.

        Returns:
            Mapping of service registry key to success.
        """
        results: dict[str, bool] = {}
        for service, group in group_by_service(artifacts).items():
            try:
                await self.update_service_group(service, group)
                results[service.registry_key] = True
            except OtaError as e:
                logger.warning(
                    f"Failed to update {service}: {e.message}",
                    extra={"service": str(service), "error": e.to_dict()},
                )
                results[service.registry_key] = False
            except Exception:
                logger.exception(
                    f"Unexpected error while updating {service}",
                    extra={"service": str(service)},
                )
                results[service.registry_key] = False
        return results

    # -------------------------------------------------------------------------
    # Report
    # -------------------------------------------------------------------------

    async def report_latest_versions(self, artifacts: list[PackageArtifact]) -> None:
        """Record the newest release version of every service in the registry."""
        latest: dict[ServiceIdentity, str] = {}
        for artifact in artifacts:
            version = artifact.version
            if version is None:
                continue
            service = classify_package(artifact.package_name)
            current = latest.get(service)
            if current is None or compare_versions(version, current) > 0:
                latest[service] = version

        for service, version in latest.items():
            await self.registry.record_latest_available(service, version)

    async def _log_availability(self, candidates: list[PackageArtifact]) -> None:
        for artifact in candidates:
            try:
                current = await self.installer.get_installed_version(artifact.package_name)
            except OtaError:
                current = "unknown"
            logger.info(
                f"{artifact.package_name}: {current} -> {artifact.version}",
                extra={"package": artifact.package_name, "version": artifact.version},
            )

    # -------------------------------------------------------------------------
    # Cycles
    # -------------------------------------------------------------------------

    async def _run_cycle(self, *, install: bool) -> CycleResult:
        release, candidates = await self.check_updates()
        result = CycleResult(tag=release.tag, candidates=candidates)
        try:
            if not candidates:
                logger.info("No service updates to process")
            elif install:
                result.results = await self.update_packages(candidates)
            else:
                logger.info("Updates available", extra={"tag": release.tag})
                await self._log_availability(candidates)
        finally:
            await self.report_latest_versions(release.artifacts)
        return result

    async def run_cycle(self, *, install: bool) -> CycleResult | None:
        """
        Run one cycle unless another one is in flight.

        Args:
            install: Transact the candidates instead of only reporting them.

        Returns:
            The cycle outcome, or None if the cycle was skipped.

        Raises:
            TransportError: If the release index cannot be fetched.
        """
        if self._cycle_lock.locked():
            logger.info("Update cycle already in progress, skipping")
            return None
        async with self._cycle_lock:
            return await self._run_cycle(install=install)

    async def check_and_apply_updates(self) -> CycleResult | None:
        """
        Run the cycle a timer tick asks for under the configured strategy.

        Returns:
            The cycle outcome, or None when the strategy is disabled or a
            cycle was already in flight.
        """
        if self.strategy is UpdateStrategy.DISABLED:
            return None
        return await self.run_cycle(install=self.strategy is UpdateStrategy.AUTO)

    async def manual_update(self, service: str) -> CycleResult | None:
        """
        Update one service on explicit request.

        Artifacts are matched by the service name appearing in the
        filename. This is the only path that can update the launcher; the
        per-service enable flags do not apply to an explicit request.

        Args:
            service: Service or package name, e.g. "gateway" or "luffy-launcher".

        Returns:
            The cycle outcome, or None if a cycle was already in flight.

        Raises:
            InvalidArgumentError: If the release has no artifact for the service.
            TransportError: If the release index cannot be fetched.
        """
        if not service:
            raise InvalidArgumentError("Service name must not be empty")

        if self._cycle_lock.locked():
            logger.info(
                f"Update cycle already in progress, skipping manual update of {service}",
                extra={"service": service},
            )
            return None

        async with self._cycle_lock:
            release = await self.resolver.get_latest_release()
            matching = [a for a in release.artifacts if service in a.filename]
            if not matching:
                raise InvalidArgumentError(
                    f"No updates found for {service}",
                    details={"service": service, "tag": release.tag},
                )

            candidates = await self.select_candidates(
                matching, allow_launcher=True, respect_flags=False
            )
            result = CycleResult(tag=release.tag, candidates=candidates)
            try:
                if candidates:
                    result.results = await self.update_packages(candidates)
                else:
                    logger.info(
                        f"{service} is already up to date",
                        extra={"service": service, "tag": release.tag},
                    )
            finally:
                await self.report_latest_versions(release.artifacts)
            return result

    async def trigger_update(self, service: str | None = None) -> CycleResult | None:
        """
        Handle an external "update requested" trigger.

        Without a service this runs one immediate cycle gated by the
        strategy: only auto installs, manual and disabled report availability.
        With a service it runs manual_update(). Errors are logged, never raised.
        """
        logger.info(
            "Update requested",
            extra={"service": service or "all", "strategy": self.strategy.value},
        )
        try:
            if service:
                return await self.manual_update(service)
            return await self.run_cycle(install=self.strategy is UpdateStrategy.AUTO)
        except OtaError as e:
            logger.warning(f"Requested update failed: {e.message}", extra={"error": e.to_dict()})
        except Exception:
            logger.exception("Unexpected error during requested update")
        return None

    # -------------------------------------------------------------------------
    # Control loop
    # -------------------------------------------------------------------------

    async def tick(self) -> CycleResult | None:
        """Run one timer tick; errors are logged and never escape."""
        try:
            return await self.check_and_apply_updates()
        except OtaError as e:
            logger.warning(f"Update check failed: {e.message}", extra={"error": e.to_dict()})
        except Exception:
            logger.exception("Unexpected error during update check")
        return None

    async def start(self) -> None:
        """
        Run the control loop until stop() is called.

        The first tick runs immediately. The stop flag is only checked
        between ticks, so a running transaction always completes.
        """
        self._running = True
        self._stop_event.clear()

        if self.strategy is UpdateStrategy.DISABLED:
            logger.info("Periodic update checks disabled")
        else:
            logger.info(
                f"Starting {self.strategy.value} update task with interval: {self.check_interval}s",
                extra={"strategy": self.strategy.value, "interval": self.check_interval},
            )

        while self._running:
            await self.tick()
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=float(self.check_interval)
                )
            except TimeoutError:
                pass

        logger.info("Update task stopped")

    def stop(self) -> None:
        """Ask the control loop to exit after the current tick."""
        self._running = False
        self._stop_event.set()
