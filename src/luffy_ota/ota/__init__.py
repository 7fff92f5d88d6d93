"""
Package-level update machinery.

This package implements:
- Service identities and package classification
- Semantic version handling and artifact filenames
- dpkg and systemctl integration
- Artifact downloads and release index resolution
- The PackageInstaller with backup and rollback

The update orchestrator lives in luffy_ota.ota.manager and is imported
from there, since it depends on the health registry.
"""

from luffy_ota.ota.artifacts import ArtifactFetcher
from luffy_ota.ota.identity import (
    GATEWAY,
    KNOWN_SERVICES,
    LAUNCHER,
    MEDIA,
    ServiceIdentity,
    ServiceKind,
    classify_package,
)
from luffy_ota.ota.installer import PackageInstaller
from luffy_ota.ota.package_manager import PackageManager
from luffy_ota.ota.release import Release, ReleaseResolver, filter_enabled
from luffy_ota.ota.systemd import ServiceController
from luffy_ota.ota.version import (
    PackageArtifact,
    compare_versions,
    extract_package_version,
    parse_semantic_version,
)

__all__ = [
    # Identities
    "ServiceIdentity",
    "ServiceKind",
    "GATEWAY",
    "MEDIA",
    "LAUNCHER",
    "KNOWN_SERVICES",
    "classify_package",
    # Versions
    "PackageArtifact",
    "compare_versions",
    "extract_package_version",
    "parse_semantic_version",
    # System integration
    "PackageManager",
    "ServiceController",
    "ArtifactFetcher",
    # Release index
    "Release",
    "ReleaseResolver",
    "filter_enabled",
    # Installer
    "PackageInstaller",
]
