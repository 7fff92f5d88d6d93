"""
systemd service control for OTA transactions.

The installer stops a service before replacing its package and starts it
again afterwards, so a service is never running while mid-upgrade. Service
control only exists on Linux hosts; elsewhere (development sandboxes) every
operation is a logged no-op.
"""

from __future__ import annotations

import sys

from luffy_ota.errors import UnavailableError
from luffy_ota.logging import get_logger
from luffy_ota.ota.identity import ServiceIdentity
from luffy_ota.ota.package_manager import run_command

logger = get_logger(__name__)


def is_service_control_supported() -> bool:
    """Return True when the host can run systemctl."""
    return sys.platform.startswith("linux")


class ServiceController:
    """
    Starts and stops the systemd unit that belongs to a ServiceIdentity.

    Attributes:
        use_sudo: Prefix systemctl with sudo.
        timeout: Timeout for each systemctl call.
    """

    def __init__(self, *, use_sudo: bool = True, timeout: float = 30.0) -> None:
        self.use_sudo = use_sudo
        self.timeout = timeout

    async def _systemctl(self, action: str, unit: str) -> tuple[int, str, str]:
        command = ["systemctl", action, unit]
        if self.use_sudo:
            command.insert(0, "sudo")
        return await run_command(*command, timeout=self.timeout)

    async def _control(self, action: str, service: ServiceIdentity) -> bool:
        unit = service.unit_name

        if not is_service_control_supported():
            logger.warning(
                "Service control is only supported on Linux systems",
                extra={"service": str(service), "action": action},
            )
            return True

        try:
            returncode, stdout, stderr = await self._systemctl(action, unit)
        except UnavailableError as e:
            logger.warning(
                f"Cannot {action} {unit}: {e.message}",
                extra={"service": str(service), "unit": unit},
            )
            return False

        if returncode != 0:
            logger.error(
                f"Service {action} failed: {stderr or stdout}",
                extra={"unit": unit, "returncode": returncode},
            )
            return False

        logger.info(f"Service {unit} {action} completed", extra={"unit": unit})
        return True

    async def stop(self, service: ServiceIdentity) -> bool:
        """
        Stop the unit of a service.

        Returns:
            True if the unit was stopped (or service control is a no-op on
            this host), False otherwise.
        """
        return await self._control("stop", service)

    async def start(self, service: ServiceIdentity) -> bool:
        """
        Start the unit of a service.

        Returns:
            True if the unit was started (or service control is a no-op on
            this host), False otherwise.
        """
        return await self._control("start", service)

