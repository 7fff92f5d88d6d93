"""
Service identities for the packages managed by the OTA engine.

Every package name maps to exactly one ServiceIdentity through
classify_package(). The identity is the grouping key for update
transactions, the routing key for health reports, and determines the
systemd unit that is stopped and started around an install.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ServiceKind(str, Enum):
    """Closed set of known service roles, plus OTHER for anything else."""

    GATEWAY = "gateway"
    MEDIA = "media"
    LAUNCHER = "launcher"
    OTHER = "other"


# Package-name prefix for each known role
PACKAGE_PREFIXES: dict[ServiceKind, str] = {
    ServiceKind.GATEWAY: "luffy-gateway",
    ServiceKind.MEDIA: "luffy-media",
    ServiceKind.LAUNCHER: "luffy-launcher",
}


@dataclass(frozen=True)
class ServiceIdentity:
    """
    Identity of a service that owns one or more packages.

    Attributes:
        kind: The service role.
        name: Raw package name for OTHER identities, empty for known roles.
    """

    kind: ServiceKind
    name: str = ""

    def __post_init__(self) -> None:
        if self.kind is ServiceKind.OTHER and not self.name:
            raise ValueError("OTHER service identities require a name")
        if self.kind is not ServiceKind.OTHER and self.name:
            raise ValueError(f"{self.kind.value} identities do not carry a name")

    @classmethod
    def other(cls, name: str) -> ServiceIdentity:
        """Create an identity for a package outside the known roles."""
        return cls(ServiceKind.OTHER, name)

    @property
    def unit_name(self) -> str:
        """systemd unit that runs this service."""
        if self.kind is ServiceKind.OTHER:
            return self.name
        return PACKAGE_PREFIXES[self.kind]

    @property
    def registry_key(self) -> str:
        """Key under which the health registry tracks this service."""
        if self.kind is ServiceKind.OTHER:
            return self.name
        return self.kind.value

    def __str__(self) -> str:
        return self.registry_key


GATEWAY = ServiceIdentity(ServiceKind.GATEWAY)
MEDIA = ServiceIdentity(ServiceKind.MEDIA)
LAUNCHER = ServiceIdentity(ServiceKind.LAUNCHER)

KNOWN_SERVICES: tuple[ServiceIdentity, ...] = (GATEWAY, MEDIA, LAUNCHER)


def classify_package(package_name: str) -> ServiceIdentity:
    """
    Map a package name (or artifact filename) to its owning service.

    Both the full package prefix ("luffy-gateway") and the bare role name
    ("gateway") are recognized.

    Args:
        package_name: Package name such as "luffy-gateway", or a full
            artifact filename starting with one.

    Returns:
        The matching known identity, or an OTHER identity carrying the
        package name.
    """
    package_name = package_name.split("_", 1)[0]
    for identity in KNOWN_SERVICES:
        if package_name.startswith(
            (PACKAGE_PREFIXES[identity.kind], identity.kind.value)
        ):
            return identity
    return ServiceIdentity.other(package_name)

