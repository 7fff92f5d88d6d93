"""
Release resolver.

Queries the release index for the latest release of the Luffy repository,
keeps the Debian package assets, and decides which of them the configured
per-service flags allow to be updated.
"""

from __future__ import annotations

import os
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from luffy_ota.config import ServicesConfig
from luffy_ota.errors import InvalidArgumentError, TransportError
from luffy_ota.logging import get_logger
from luffy_ota.ota.artifacts import USER_AGENT
from luffy_ota.ota.identity import ServiceIdentity, ServiceKind, classify_package
from luffy_ota.ota.version import PACKAGE_EXTENSION, PackageArtifact, parse_release_tag

logger = get_logger(__name__)

GITHUB_ACCEPT = "application/vnd.github.v3+json"


class GithubAsset(BaseModel):
    """A single asset attached to a release."""

    name: str
    browser_download_url: str


class GithubRelease(BaseModel):
    """The subset of the release index response the engine uses."""

    tag_name: str
    assets: list[GithubAsset] = Field(default_factory=list)


class Release(BaseModel):
    """
    A resolved release.

    Attributes:
        tag: Release tag as published (e.g. "v1.2.0").
        artifacts: Package artifacts attached to the release.
    """

    tag: str
    artifacts: list[PackageArtifact] = Field(default_factory=list)

    @property
    def version(self) -> str | None:
        """Semantic version carried by the tag, or None if it has none."""
        try:
            return parse_release_tag(self.tag)
        except InvalidArgumentError:
            return None


def is_update_enabled(services: ServicesConfig, service: ServiceIdentity) -> bool:
    """
    Check the per-service flag for automatic updates.

    The launcher is never enabled here; it can only be updated through an
    explicit trigger.
    """
    if service.kind is ServiceKind.GATEWAY:
        return services.gateway.enabled
    if service.kind is ServiceKind.MEDIA:
        return services.media.enabled
    if service.kind is ServiceKind.OTHER:
        return services.other.enabled
    return False


def filter_enabled(
    artifacts: list[PackageArtifact],
    services: ServicesConfig,
    *,
    allow_launcher: bool = False,
) -> list[PackageArtifact]:
    """
    Keep the artifacts whose owning service may be updated.

    Args:
        artifacts: Candidate artifacts.
        services: Per-service update flags.
        allow_launcher: Let launcher artifacts through. Only explicit
            triggers set this.

    Returns:
        Enabled artifacts, in input order.
    """
    enabled = []
    for artifact in artifacts:
        service = classify_package(artifact.package_name)
        if service.kind is ServiceKind.LAUNCHER:
            if allow_launcher:
                enabled.append(artifact)
            continue
        if is_update_enabled(services, service):
            enabled.append(artifact)
        else:
            logger.debug(
                f"Updates disabled for {service}, skipping {artifact.filename}",
                extra={"service": str(service), "package": artifact.package_name},
            )
    return enabled


class ReleaseResolver:
    """
    Client for the release index.

    Attributes:
        repo: Repository in "owner/repo" form.
        api_base_url: Base URL of the release index API.
        token_env: Environment variable holding an optional bearer token.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        repo: str,
        *,
        api_base_url: str = "https://api.github.com",
        token_env: str = "LUFFY_GITHUB_TOKEN",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.repo = repo
        self.api_base_url = api_base_url.rstrip("/")
        self.token_env = token_env
        self.timeout = timeout
        self._client = client

    @property
    def latest_release_url(self) -> str:
        return f"{self.api_base_url}/repos/{self.repo}/releases/latest"

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": USER_AGENT, "Accept": GITHUB_ACCEPT}
        token = os.environ.get(self.token_env)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _fetch_json(self) -> Any:
        if self._client is not None:
            response = await self._client.get(self.latest_release_url, headers=self._headers())
            response.raise_for_status()
            return response.json()

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(self.latest_release_url, headers=self._headers())
            response.raise_for_status()
            return response.json()

    async def get_latest_release(self) -> Release:
        """
        Fetch the latest release and its package artifacts.

        Only assets whose name ends with the package extension are kept.

        Returns:
            The resolved Release.

        Raises:
            TransportError: If the request fails or the response is not a
                release document.
        """
        url = self.latest_release_url
        logger.debug(f"Fetching latest release from {url}", extra={"url": url})

        try:
            data = await self._fetch_json()
            release = GithubRelease.model_validate(data)
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch latest release: {e}", extra={"url": url})
            raise TransportError(
                f"Failed to fetch latest release: {e}",
                details={"url": url},
            ) from e
        except (ValueError, ValidationError) as e:
            logger.error(f"Invalid release response: {e}", extra={"url": url})
            raise TransportError(
                "Invalid release response",
                details={"url": url, "error": str(e)},
            ) from e

        artifacts = [
            PackageArtifact(filename=asset.name, source_url=asset.browser_download_url)
            for asset in release.assets
            if asset.name.endswith(PACKAGE_EXTENSION)
        ]

        logger.info(
            f"Latest release {release.tag_name} with {len(artifacts)} packages",
            extra={"tag": release.tag_name, "packages": [a.filename for a in artifacts]},
        )
        return Release(tag=release.tag_name, artifacts=artifacts)
