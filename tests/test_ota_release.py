"""
Tests for the release resolver and service filtering.
"""

from __future__ import annotations

import os
from unittest.mock import patch

import httpx
import pytest

from luffy_ota.config import ServicesConfig, ServiceUpdateConfig
from luffy_ota.errors import TransportError
from luffy_ota.ota.identity import GATEWAY, LAUNCHER, MEDIA, ServiceIdentity
from luffy_ota.ota.release import (
    GITHUB_ACCEPT,
    Release,
    ReleaseResolver,
    filter_enabled,
    is_update_enabled,
)
from luffy_ota.ota.version import PackageArtifact

RELEASE_JSON = {
    "tag_name": "v1.2.0",
    "name": "Luffy 1.2.0",
    "assets": [
        {
            "name": "luffy-gateway_1.2.0_arm64.deb",
            "browser_download_url": "https://dl.example/luffy-gateway_1.2.0_arm64.deb",
            "size": 1024,
        },
        {
            "name": "luffy-media_1.2.0_arm64.deb",
            "browser_download_url": "https://dl.example/luffy-media_1.2.0_arm64.deb",
        },
        {
            "name": "checksums.txt",
            "browser_download_url": "https://dl.example/checksums.txt",
        },
    ],
}


def _artifact(filename: str) -> PackageArtifact:
    return PackageArtifact(filename=filename, source_url=f"https://dl.example/{filename}")


def _resolver(handler, **kwargs) -> ReleaseResolver:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ReleaseResolver("acme/luffy", client=client, **kwargs)


# =============================================================================
# ReleaseResolver Tests
# =============================================================================


class TestReleaseResolver:
    """Tests for ReleaseResolver class."""

    def test_latest_release_url(self) -> None:
        """Test the latest release endpoint is built from base URL and repo."""
        resolver = ReleaseResolver("acme/luffy", api_base_url="https://ghe.example/api/v3/")
        assert resolver.latest_release_url == (
            "https://ghe.example/api/v3/repos/acme/luffy/releases/latest"
        )

    @pytest.mark.asyncio
    async def test_get_latest_release(self) -> None:
        """Test only package assets are kept."""
        seen: dict[str, httpx.Request] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, json=RELEASE_JSON)

        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("LUFFY_GITHUB_TOKEN", None)
            release = await _resolver(handler).get_latest_release()

        assert release.tag == "v1.2.0"
        assert release.version == "1.2.0"
        assert [a.filename for a in release.artifacts] == [
            "luffy-gateway_1.2.0_arm64.deb",
            "luffy-media_1.2.0_arm64.deb",
        ]
        assert release.artifacts[0].source_url.endswith("luffy-gateway_1.2.0_arm64.deb")

        request = seen["request"]
        assert request.url.path == "/repos/acme/luffy/releases/latest"
        assert request.headers["Accept"] == GITHUB_ACCEPT
        assert request.headers["User-Agent"] == "luffy-updater"
        assert "Authorization" not in request.headers

    @pytest.mark.asyncio
    async def test_bearer_token_from_environment(self) -> None:
        """Test a token in the configured variable is sent as bearer."""
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization", "")
            return httpx.Response(200, json=RELEASE_JSON)

        with patch.dict(os.environ, {"MY_TOKEN": "s3cret"}):
            await _resolver(handler, token_env="MY_TOKEN").get_latest_release()

        assert seen["auth"] == "Bearer s3cret"

    @pytest.mark.asyncio
    async def test_release_without_assets(self) -> None:
        """Test a release with no assets yields no artifacts."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"tag_name": "v2.0.0"})

        release = await _resolver(handler).get_latest_release()
        assert release.artifacts == []

    @pytest.mark.asyncio
    async def test_http_error(self) -> None:
        """Test error statuses raise TransportError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        with pytest.raises(TransportError) as exc_info:
            await _resolver(handler).get_latest_release()

        assert exc_info.value.details["url"].endswith("/releases/latest")

    @pytest.mark.asyncio
    async def test_connection_error(self) -> None:
        """Test transport failures raise TransportError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(TransportError):
            await _resolver(handler).get_latest_release()

    @pytest.mark.asyncio
    async def test_invalid_json(self) -> None:
        """Test a body that is not JSON raises TransportError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>rate limited</html>")

        with pytest.raises(TransportError):
            await _resolver(handler).get_latest_release()

    @pytest.mark.asyncio
    async def test_unexpected_document(self) -> None:
        """Test a JSON document without tag raises TransportError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"message": "Not Found"})

        with pytest.raises(TransportError):
            await _resolver(handler).get_latest_release()


class TestRelease:
    """Tests for the Release model."""

    def test_version_from_tag(self) -> None:
        """Test the tag version drops the prefix."""
        assert Release(tag="v0.3.1").version == "0.3.1"

    def test_invalid_tag_version(self) -> None:
        """Test tags without a version have none."""
        assert Release(tag="nightly").version is None


# =============================================================================
# Filtering Tests
# =============================================================================


class TestFilterEnabled:
    """Tests for is_update_enabled and filter_enabled."""

    ARTIFACTS = [
        _artifact("luffy-gateway_1.2.0_arm64.deb"),
        _artifact("luffy-media_1.2.0_arm64.deb"),
        _artifact("luffy-launcher_1.2.0_arm64.deb"),
        _artifact("mavlink-router_2.0.0_arm64.deb"),
    ]

    def test_defaults_exclude_only_launcher(self) -> None:
        """Test every non-launcher service is enabled by default."""
        result = filter_enabled(self.ARTIFACTS, ServicesConfig())
        assert [a.package_name for a in result] == [
            "luffy-gateway",
            "luffy-media",
            "mavlink-router",
        ]

    def test_disabled_service_is_skipped(self) -> None:
        """Test a disabled flag removes that service's artifacts."""
        services = ServicesConfig(media=ServiceUpdateConfig(enabled=False))
        result = filter_enabled(self.ARTIFACTS, services)
        assert "luffy-media" not in [a.package_name for a in result]

    def test_other_flag(self) -> None:
        """Test the other flag governs unknown packages."""
        services = ServicesConfig(other=ServiceUpdateConfig(enabled=False))
        result = filter_enabled(self.ARTIFACTS, services)
        assert "mavlink-router" not in [a.package_name for a in result]

    def test_allow_launcher(self) -> None:
        """Test explicit triggers can let the launcher through."""
        result = filter_enabled(self.ARTIFACTS, ServicesConfig(), allow_launcher=True)
        assert "luffy-launcher" in [a.package_name for a in result]

    def test_is_update_enabled(self) -> None:
        """Test the per-identity flag lookup."""
        services = ServicesConfig(gateway=ServiceUpdateConfig(enabled=False))
        assert is_update_enabled(services, GATEWAY) is False
        assert is_update_enabled(services, MEDIA) is True
        assert is_update_enabled(services, LAUNCHER) is False
        assert is_update_enabled(services, ServiceIdentity.other("x")) is True
