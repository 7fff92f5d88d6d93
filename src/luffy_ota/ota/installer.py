"""
Package installer with backup and rollback.

The PackageInstaller exclusively owns the working directory. The state of
every package is encoded in the names of the files it keeps there:

- `<pkg>_<version>_<arch>.deb`   downloaded, not yet installed
- `<pkg>_<version>_backup.deb`   copy of the previously installed artifact,
                                 taken before a new download
- `<pkg>_<version>_installed.deb` the artifact dpkg last installed successfully

For one package the steps backup, download, install, mark-installed and
cleanup always run strictly in that order. Nothing here locks the directory;
callers must not interleave transactions for the same package.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from luffy_ota.errors import InvalidArgumentError, OtaError, RollbackFailure
from luffy_ota.logging import get_logger
from luffy_ota.ota.artifacts import ArtifactFetcher
from luffy_ota.ota.identity import ServiceIdentity
from luffy_ota.ota.package_manager import PackageManager
from luffy_ota.ota.systemd import ServiceController
from luffy_ota.ota.version import (
    BACKUP_SUFFIX,
    INSTALLED_SUFFIX,
    PACKAGE_EXTENSION,
    backup_filename,
    compare_versions,
    extract_package_version,
    installed_filename,
    package_name_of,
)

logger = get_logger(__name__)

DEFAULT_WORK_DIR = Path("/home/luffy/.deb")


class PackageInstaller:
    """
    Downloads, installs and rolls back Debian packages.

    Attributes:
        work_dir: Directory holding all package artifacts.
        package_manager: dpkg wrapper used for queries and installs.
        fetcher: Artifact store client used for downloads.
        services: Service controller used to stop/start units.
    """

    def __init__(
        self,
        work_dir: Path | str | None = None,
        *,
        package_manager: PackageManager | None = None,
        fetcher: ArtifactFetcher | None = None,
        services: ServiceController | None = None,
    ) -> None:
        """
        Initialize the PackageInstaller.

        Args:
            work_dir: Working directory. Defaults to /home/luffy/.deb.
            package_manager: dpkg wrapper. A default one is created if omitted.
            fetcher: Artifact downloader. A default one is created if omitted.
            services: Service controller. A default one is created if omitted.
        """
        self.work_dir = Path(work_dir) if work_dir else DEFAULT_WORK_DIR
        self.package_manager = package_manager or PackageManager()
        self.fetcher = fetcher or ArtifactFetcher()
        self.services = services or ServiceController()

    # -------------------------------------------------------------------------
    # Working directory bookkeeping
    # -------------------------------------------------------------------------

    def package_files(self, package_name: str, suffix: str = PACKAGE_EXTENSION) -> list[Path]:
        """
        List the artifacts of a package, most recently modified first.

        Args:
            package_name: Package whose files to list. Matching is on the
                exact package-name field, so "pkg" never matches "pkg-extra".
            suffix: Only include files whose name ends with this suffix.

        Returns:
            Matching file paths sorted newest first.
        """
        if not self.work_dir.is_dir():
            return []

        files = [
            entry
            for entry in self.work_dir.iterdir()
            if entry.is_file()
            and package_name_of(entry.name) == package_name
            and entry.name.endswith(suffix)
        ]
        files.sort(key=lambda p: (p.stat().st_mtime_ns, p.name), reverse=True)
        return files

    def find_last_installed(self, package_name: str) -> Path | None:
        """Return the most recently modified installed marker of a package."""
        installed = self.package_files(package_name, INSTALLED_SUFFIX)
        return installed[0] if installed else None

    def _find_current_artifact(self, package_name: str) -> Path | None:
        # The installed marker is the artifact dpkg last installed; fall back
        # to the newest backup when the marker is gone.
        current = self.find_last_installed(package_name)
        if current is not None:
            return current
        backups = self.package_files(package_name, BACKUP_SUFFIX)
        return backups[0] if backups else None

    def _remove_other_package_files(self, package_name: str, keep: Path) -> None:
        for entry in self.package_files(package_name, suffix=""):
            if entry != keep:
                entry.unlink(missing_ok=True)
        logger.info(
            f"Cleaned up package files for {package_name}",
            extra={"package": package_name, "kept": keep.name},
        )

    def cleanup_old_files(
        self,
        package_name: str,
        keep_count: int,
        suffix: str = PACKAGE_EXTENSION,
    ) -> list[Path]:
        """
        Delete all but the `keep_count` most recently modified files of a package.

        Args:
            package_name: Package whose files to prune.
            keep_count: Number of newest files to keep.
            suffix: Only consider files ending with this suffix.

        Returns:
            The deleted paths.
        """
        if keep_count < 0:
            raise InvalidArgumentError(
                "keep_count must not be negative",
                details={"keep_count": keep_count},
            )

        removed = []
        for entry in self.package_files(package_name, suffix)[keep_count:]:
            entry.unlink(missing_ok=True)
            removed.append(entry)

        if removed:
            logger.info(
                f"Removed {len(removed)} old files for {package_name}",
                extra={"package": package_name, "files": [p.name for p in removed]},
            )
        return removed

    # -------------------------------------------------------------------------
    # Package manager queries
    # -------------------------------------------------------------------------

    async def get_installed_version(self, package_name: str) -> str:
        """
        Get the version of a package as reported by dpkg.

        Raises:
            InvalidArgumentError: If the package is not installed.
            UnavailableError: If dpkg-query is missing.
        """
        return await self.package_manager.get_installed_version(package_name)

    async def is_package_installed(self, package_name: str) -> bool:
        """Check whether dpkg knows the package."""
        return await self.package_manager.is_installed(package_name)

    async def needs_update(self, package_name: str, candidate_version: str) -> bool:
        """
        Check whether a candidate version is newer than the installed one.

        Any lookup or parse failure yields False: the engine never upgrades
        on uncertain information.

        Args:
            package_name: Installed package name.
            candidate_version: Version offered by the release.

        Returns:
            True only if both versions parse and the candidate is newer.
        """
        try:
            current_version = await self.get_installed_version(package_name)
            newer = compare_versions(candidate_version, current_version) > 0
        except OtaError as e:
            logger.debug(
                f"Cannot compare versions for {package_name}: {e.message}",
                extra={"package": package_name, "candidate": candidate_version},
            )
            return False

        logger.info(
            f"Current version: {current_version}, new version: {candidate_version}",
            extra={"package": package_name, "needs_update": newer},
        )
        return newer

    # -------------------------------------------------------------------------
    # Transaction steps
    # -------------------------------------------------------------------------

    async def backup_current(self, package_name: str) -> Path | None:
        """
        Copy the currently installed artifact of a package to its backup name.

        The installed marker matching the version dpkg reports is preferred.
        Without one, the newest local artifact of the package is backed up
        under its own version.

        Returns:
            The backup path, or None if the package is not installed or no
            local artifact of it exists.
        """
        try:
            current_version = await self.get_installed_version(package_name)
        except OtaError:
            return None

        backup_path = self.work_dir / backup_filename(package_name, current_version)
        source = self.work_dir / installed_filename(package_name, current_version)
        if not source.exists():
            source = backup_path
        if not source.exists():
            fallback = self._find_current_artifact(package_name)
            if fallback is None:
                logger.warning(
                    f"No local artifact to back up for {package_name} {current_version}",
                    extra={"package": package_name, "version": current_version},
                )
                return None
            fallback_version = extract_package_version(fallback.name) or current_version
            logger.warning(
                f"No artifact of installed {package_name} {current_version}, "
                f"backing up {fallback.name}",
                extra={
                    "package": package_name,
                    "version": current_version,
                    "path": str(fallback),
                },
            )
            source = fallback
            backup_path = self.work_dir / backup_filename(package_name, fallback_version)

        if source != backup_path:
            shutil.copyfile(source, backup_path)
        logger.info(
            f"Backed up {package_name} {current_version}",
            extra={"package": package_name, "path": str(backup_path)},
        )
        return backup_path

    async def download(self, url: str, filename: str) -> Path:
        """
        Download an artifact into the working directory.

        If the package is currently installed, its artifact is copied to a
        backup file before the download starts, so a pre-update snapshot
        exists even if the download fails.

        Args:
            url: Artifact URL.
            filename: Artifact filename (`<pkg>_<version>_<arch>.deb`).

        Returns:
            Path of the downloaded artifact.

        Raises:
            InvalidArgumentError: If the filename is not a plain file name.
            DownloadError: If the transfer fails.
        """
        if not filename or Path(filename).name != filename:
            raise InvalidArgumentError(
                f"Invalid artifact filename: {filename!r}",
                details={"filename": filename},
            )

        self.work_dir.mkdir(parents=True, exist_ok=True)

        await self.backup_current(package_name_of(filename))

        return await self.fetcher.fetch(url, self.work_dir / filename)

    async def install(self, deb_path: Path) -> bool:
        """
        Install an artifact and record it as the installed one.

        On success the artifact is renamed to `<pkg>_<version>_installed.deb`
        and every other file of the package is removed.

        Args:
            deb_path: Path of the artifact to install.

        Returns:
            True if installed, False if the package manager rejected it.

        Raises:
            InvalidArgumentError: If the filename carries no version.
            UnavailableError: If dpkg is missing.
        """
        package_name = package_name_of(deb_path.name)
        version = extract_package_version(deb_path.name)
        if not package_name or version is None:
            raise InvalidArgumentError(
                f"Invalid package filename: {deb_path.name}",
                details={"path": str(deb_path)},
            )

        logger.info(f"Installing package {deb_path.name}", extra={"path": str(deb_path)})

        if not await self.package_manager.install(deb_path):
            logger.warning(
                f"Failed to install package {deb_path.name}",
                extra={"package": package_name, "version": version},
            )
            return False

        installed_path = self._mark_as_installed(deb_path, package_name, version)
        self._remove_other_package_files(package_name, keep=installed_path)

        logger.info(
            f"Installed package {package_name} {version}",
            extra={"package": package_name, "version": version},
        )
        return True

    def _mark_as_installed(self, deb_path: Path, package_name: str, version: str) -> Path:
        installed_path = self.work_dir / installed_filename(package_name, version)
        if deb_path != installed_path:
            deb_path.replace(installed_path)
        # Recency of the marker decides rollback target selection
        installed_path.touch()
        logger.info(
            f"Marked as installed: {installed_path.name}",
            extra={"path": str(installed_path)},
        )
        return installed_path

    async def install_from_last_installed(self, package_name: str) -> bool:
        """
        Reinstall the last known good artifact of a package.

        Returns:
            True if reinstalled, False if no installed marker exists or the
            reinstall failed.
        """
        last_installed = self.find_last_installed(package_name)
        if last_installed is None:
            logger.warning(
                f"No previous installed version found for {package_name}",
                extra={"package": package_name},
            )
            return False

        logger.warning(
            f"Installing from last known good version: {last_installed.name}",
            extra={"package": package_name, "path": str(last_installed)},
        )
        return await self.install(last_installed)

    async def rollback_package(self, package_name: str, version: str) -> None:
        """
        Reinstall a specific backed-up version of a package.

        Raises:
            RollbackFailure: If no backup exists for the version or the
                reinstall fails.
        """
        logger.info(
            f"Rolling back {package_name} to version {version}",
            extra={"package": package_name, "version": version},
        )

        backup_path = self.work_dir / backup_filename(package_name, version)
        if not backup_path.exists():
            raise RollbackFailure(
                f"Backup file not found for {package_name} {version}",
                details={"package": package_name, "path": str(backup_path)},
            )

        if not await self.install(backup_path):
            raise RollbackFailure(
                f"Failed to roll back {package_name} to {version}",
                details={"package": package_name, "version": version},
            )

        logger.info(
            f"Rolled back {package_name} to version {version}",
            extra={"package": package_name, "version": version},
        )

    # -------------------------------------------------------------------------
    # Service control
    # -------------------------------------------------------------------------

    async def stop_service(self, service: ServiceIdentity) -> bool:
        """Stop the unit of a service before its packages are replaced."""
        return await self.services.stop(service)

    async def start_service(self, service: ServiceIdentity) -> bool:
        """Start the unit of a service after its packages were installed."""
        return await self.services.start(service)
