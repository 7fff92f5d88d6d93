"""
Debian package manager integration.

Thin async wrapper around dpkg-query and dpkg. Every call blocks the
calling task until the subprocess exits; callers never run two package
manager invocations concurrently.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from luffy_ota.errors import InvalidArgumentError, UnavailableError
from luffy_ota.logging import get_logger

logger = get_logger(__name__)

DEFAULT_QUERY_TIMEOUT = 30.0
DEFAULT_INSTALL_TIMEOUT = 600.0


async def run_command(
    *args: str,
    timeout: float = DEFAULT_QUERY_TIMEOUT,
) -> tuple[int, str, str]:
    """
    Run a subprocess command.

    Args:
        *args: Command and arguments.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        UnavailableError: If the command is not installed or times out.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise UnavailableError(
            f"{args[0]} not available",
            details={"command": list(args), "hint": "System might not be Debian-based"},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(),
            timeout=timeout,
        )
    except TimeoutError as exc:
        # dpkg holds its lock until the child exits
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        raise UnavailableError(
            f"{args[0]} timed out after {timeout}s",
            details={"command": list(args)},
        ) from exc

    return (
        proc.returncode or 0,
        stdout.decode("utf-8", errors="replace") if stdout else "",
        stderr.decode("utf-8", errors="replace") if stderr else "",
    )


class PackageManager:
    """
    Queries and installs Debian packages.

    Attributes:
        use_sudo: Prefix install commands with sudo.
        install_timeout: Timeout for a single dpkg -i run.
    """

    def __init__(
        self,
        *,
        use_sudo: bool = True,
        install_timeout: float = DEFAULT_INSTALL_TIMEOUT,
    ) -> None:
        self.use_sudo = use_sudo
        self.install_timeout = install_timeout

    async def get_installed_version(self, package_name: str) -> str:
        """
        Get the installed version of a package.

        Args:
            package_name: Debian package name.

        Returns:
            The version string reported by dpkg-query.

        Raises:
            InvalidArgumentError: If the package is not installed.
            UnavailableError: If dpkg-query is missing or times out.
        """
        returncode, stdout, stderr = await run_command(
            "dpkg-query", "-W", "-f=${Version}", package_name
        )

        version = stdout.strip()
        if returncode != 0 or not version:
            raise InvalidArgumentError(
                f"Package {package_name} not found",
                details={"package": package_name, "stderr": stderr.strip()},
            )
        return version

    async def is_installed(self, package_name: str) -> bool:
        """
        Check whether dpkg knows the package.

        A missing dpkg binary is reported as "not installed".
        """
        try:
            returncode, _, _ = await run_command("dpkg", "-l", package_name)
        except UnavailableError as e:
            logger.warning(
                "dpkg not available, system might not be Debian-based",
                extra={"package": package_name, "error": e.message},
            )
            return False
        return returncode == 0

    async def install(self, deb_path: Path) -> bool:
        """
        Install a package file with dpkg -i.

        Args:
            deb_path: Path of the .deb file.

        Returns:
            True if dpkg exited successfully, False otherwise.

        Raises:
            UnavailableError: If dpkg is missing or times out.
        """
        command = ["dpkg", "-i", str(deb_path)]
        if self.use_sudo:
            command.insert(0, "sudo")

        returncode, stdout, stderr = await run_command(
            *command, timeout=self.install_timeout
        )

        if returncode != 0:
            logger.warning(
                f"dpkg failed to install {deb_path.name}",
                extra={
                    "path": str(deb_path),
                    "returncode": returncode,
                    "stderr": (stderr or stdout).strip()[-2000:],
                },
            )
            return False
        return True
