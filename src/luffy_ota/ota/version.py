"""
Semantic versions and package artifact names.

This module implements:
- Semantic version parsing, validation and ordering
- Release tag handling ("v1.2.0" -> "1.2.0")
- The PackageArtifact model and the `<package>_<version>_<arch>.<ext>`
  filename scheme shared by downloaded, backup and installed artifacts
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field

from luffy_ota.errors import InvalidArgumentError

# Semantic versioning regex pattern
# Accepts: 1.0.0, 1.2.3, 2.0.0-beta.1, 1.0.0-alpha+build.123
SEMVER_PATTERN = re.compile(
    r"^(?P<major>0|[1-9]\d*)"
    r"\.(?P<minor>0|[1-9]\d*)"
    r"\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+(?P<buildmetadata>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

PACKAGE_EXTENSION = ".deb"
BACKUP_SUFFIX = "_backup.deb"
INSTALLED_SUFFIX = "_installed.deb"


def parse_semantic_version(version: str) -> dict[str, Any]:
    """
    Parse and validate a semantic version string.

    Args:
        version: Version string (e.g., "1.0.0", "1.2.3-beta.1").

    Returns:
        Dictionary with major, minor, patch, prerelease and buildmetadata.

    Raises:
        InvalidArgumentError: If the version string is invalid.
    """
    if not version:
        raise InvalidArgumentError(
            "Version string cannot be empty",
            details={"version": version},
        )

    match = SEMVER_PATTERN.match(version)
    if not match:
        raise InvalidArgumentError(
            f"Invalid semantic version: {version}",
            details={
                "version": version,
                "format": "MAJOR.MINOR.PATCH[-PRERELEASE][+BUILDMETADATA]",
            },
        )

    return {
        "major": int(match.group("major")),
        "minor": int(match.group("minor")),
        "patch": int(match.group("patch")),
        "prerelease": match.group("prerelease"),
        "buildmetadata": match.group("buildmetadata"),
    }


def is_semantic_version(version: str) -> bool:
    """Return True if the string parses as a semantic version."""
    return bool(version) and SEMVER_PATTERN.match(version) is not None


def _compare_prerelease(pre1: str, pre2: str) -> int:
    # Identifiers compare left to right: numeric ones numerically and below
    # alphanumeric ones; a shorter list of equal identifiers sorts first.
    for a, b in zip(pre1.split("."), pre2.split("."), strict=False):
        if a == b:
            continue
        a_num, b_num = a.isdigit(), b.isdigit()
        if a_num and b_num:
            return -1 if int(a) < int(b) else 1
        if a_num != b_num:
            return -1 if a_num else 1
        return -1 if a < b else 1

    len1, len2 = len(pre1.split(".")), len(pre2.split("."))
    if len1 == len2:
        return 0
    return -1 if len1 < len2 else 1


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two semantic versions.

    Build metadata is ignored, as semantic versioning requires.

    Args:
        v1: First version string.
        v2: Second version string.

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2

    Raises:
        InvalidArgumentError: If either version is invalid.
    """
    p1 = parse_semantic_version(v1)
    p2 = parse_semantic_version(v2)

    for key in ("major", "minor", "patch"):
        if p1[key] < p2[key]:
            return -1
        elif p1[key] > p2[key]:
            return 1

    # A release ranks above any of its prereleases
    pre1 = p1["prerelease"]
    pre2 = p2["prerelease"]

    if pre1 is None and pre2 is not None:
        return 1
    if pre1 is not None and pre2 is None:
        return -1
    if pre1 is not None and pre2 is not None:
        return _compare_prerelease(pre1, pre2)

    return 0


def parse_release_tag(tag: str) -> str:
    """
    Convert a release tag to a semantic version.

    Args:
        tag: Release tag, usually "v"-prefixed (e.g. "v1.2.0").

    Returns:
        The version without prefix (e.g. "1.2.0").

    Raises:
        InvalidArgumentError: If the tag does not carry a semantic version.
    """
    version = tag.strip()
    if version[:1] in ("v", "V"):
        version = version[1:]
    parse_semantic_version(version)
    return version


# =============================================================================
# Package Artifacts
# =============================================================================


def package_name_of(filename: str) -> str:
    """Return the package name part of an artifact filename."""
    return filename.split("_", 1)[0]


def extract_package_version(filename: str) -> str | None:
    """
    Extract the version field of an artifact filename.

    Filenames follow `<package>_<version>_<arch>.<ext>`; the version is the
    second underscore-separated field. No validation is performed.

    Args:
        filename: Artifact filename.

    Returns:
        The raw version field, or None if the filename has no such field.
    """
    parts = filename.split("_")
    if len(parts) < 2 or not parts[1]:
        return None
    # "pkg_1.0.0.deb" has no arch field; drop the extension from the version
    if len(parts) == 2 and parts[1].endswith(PACKAGE_EXTENSION):
        return parts[1][: -len(PACKAGE_EXTENSION)] or None
    return parts[1]


def backup_filename(package_name: str, version: str) -> str:
    """Name of the backup artifact for a package version."""
    return f"{package_name}_{version}{BACKUP_SUFFIX}"


def installed_filename(package_name: str, version: str) -> str:
    """Name of the installed-marker artifact for a package version."""
    return f"{package_name}_{version}{INSTALLED_SUFFIX}"


class PackageArtifact(BaseModel):
    """
    A downloadable package file for one version of one service.

    Attributes:
        filename: Asset filename (`<package>_<version>_<arch>.<ext>`).
        source_url: URL the artifact is downloaded from.
    """

    filename: str = Field(
        ...,
        min_length=1,
        description="Asset filename: <package>_<version>_<arch>.<ext>",
    )
    source_url: str = Field(
        ...,
        description="Download URL of the artifact",
    )

    @property
    def package_name(self) -> str:
        """Package name, the first filename field."""
        return package_name_of(self.filename)

    @property
    def version(self) -> str | None:
        """
        Semantic version encoded in the filename.

        Returns None when the version field is missing or does not parse,
        which makes the artifact ineligible for update.
        """
        version = extract_package_version(self.filename)
        if version is None or not is_semantic_version(version):
            return None
        return version

