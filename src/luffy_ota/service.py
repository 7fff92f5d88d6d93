"""
OTA engine process.

Wires the registry, installer, resolver, version manager and message
listener together from an AppConfig and runs the update loop and the
listener side by side until SIGINT/SIGTERM.

Example:
    $ luffy-ota --config /etc/luffy/ota.yml --strategy auto
    $ luffy-ota --once
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any

from luffy_ota.config import AppConfig, load_config
from luffy_ota.errors import ConfigurationError
from luffy_ota.logging import get_logger, setup_logging
from luffy_ota.monitor.listener import HealthListener
from luffy_ota.monitor.registry import HealthRegistry
from luffy_ota.ota.artifacts import ArtifactFetcher
from luffy_ota.ota.installer import PackageInstaller
from luffy_ota.ota.manager import CycleResult, VersionManager
from luffy_ota.ota.release import ReleaseResolver

logger = get_logger(__name__)


class OtaService:
    """
    One OTA engine per process.

    Attributes:
        config: Application configuration.
        registry: Health registry shared by the manager and the listener.
        installer: Package installer owning the working directory.
        resolver: Release index client.
        manager: Update orchestrator.
        listener: Inbound message consumer.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        registry: HealthRegistry | None = None,
        installer: PackageInstaller | None = None,
        resolver: ReleaseResolver | None = None,
    ) -> None:
        ota = config.ota
        self.config = config
        self.registry = registry or HealthRegistry()
        self.installer = installer or PackageInstaller(
            Path(ota.download_dir),
            fetcher=ArtifactFetcher(timeout=ota.request_timeout),
        )
        self.resolver = resolver or ReleaseResolver(
            ota.github_repo,
            api_base_url=ota.api_base_url,
            token_env=ota.token_env,
            timeout=ota.request_timeout,
        )
        self.manager = VersionManager(
            self.installer,
            self.resolver,
            self.registry,
            strategy=ota.strategy,
            check_interval=ota.check_interval,
            services=config.services,
            backup_count=ota.backup_count,
        )
        self.listener = HealthListener(self.registry, self.manager)

    def submit(self, topic: str, payload: str | bytes) -> None:
        """Hand an inbound bus message to the listener."""
        self.listener.submit(topic, payload)

    async def status(self) -> dict[str, Any]:
        """Status document for the external presentation layer."""
        return {
            "strategy": self.config.ota.strategy.value,
            "cycle_in_progress": self.manager.cycle_in_progress,
            "services": await self.registry.to_dict(),
        }

    def request_shutdown(self) -> None:
        """Stop after the current tick; a running transaction completes first."""
        logger.info("Received shutdown signal")
        self.manager.stop()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self.request_shutdown)
        except (ValueError, NotImplementedError):
            # Signal handling not supported on this platform
            pass

    async def run_once(self) -> CycleResult | None:
        """Run a single update cycle under the configured strategy."""
        logger.info(
            "Running a single update cycle",
            extra={"strategy": self.config.ota.strategy.value},
        )
        return await self.manager.tick()

    async def run(self) -> None:
        """Run the update loop and the listener until shutdown."""
        ota = self.config.ota
        logger.info(
            "OTA engine starting",
            extra={
                "strategy": ota.strategy.value,
                "interval": ota.check_interval,
                "repo": ota.github_repo,
                "download_dir": ota.download_dir,
            },
        )
        if ota.allow_downgrade:
            logger.warning("allow_downgrade is set; downgrades are never applied automatically")

        self._install_signal_handlers()
        if ota.run_once:
            await self.run_once()
            return

        listener_task = asyncio.create_task(self.listener.run())
        try:
            await self.manager.start()
        finally:
            self.listener.close()
            await listener_task
        logger.info("OTA engine stopped")


def main(argv: list[str] | None = None) -> int:
    """
    Console entry point.

    Returns:
        0 on a clean exit, 2 if the configuration is invalid.
    """
    try:
        config = load_config(cli_args=argv)
    except ConfigurationError as e:
        print(json.dumps(e.to_dict(), default=str), file=sys.stderr)
        return 2

    setup_logging(config.logging)

    try:
        asyncio.run(OtaService(config).run())
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
