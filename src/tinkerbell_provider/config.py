"""Configuration management with validation.

All settings come from environment variables and are validated at load time
so that a misconfigured provider fails before touching any hardware.
"""

from __future__ import annotations

import ipaddress
import os
import re
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Metadata service the provisioned OS reads its cloud-init datasource from
DEFAULT_TINKERBELL_IP = "192.168.1.1"
METADATA_SERVICE_PORT = 50061

DEFAULT_RECONCILE_TIMEOUT_SECONDS = 30
MIN_RECONCILE_TIMEOUT_SECONDS = 1
MAX_RECONCILE_TIMEOUT_SECONDS = 600

# Cluster-level image lookup defaults; machines may override each field
DEFAULT_IMAGE_LOOKUP_FORMAT = (
    "{{.BaseRegistry}}/{{.OSDistro}}-{{.OSVersion}}-kube-{{.KubernetesVersion}}.raw.gz"
)
DEFAULT_IMAGE_LOOKUP_BASE_REGISTRY = "ghcr.io/tinkerbell/cluster-api-provider-tinkerbell"
DEFAULT_IMAGE_LOOKUP_OS_DISTRO = "ubuntu"
DEFAULT_IMAGE_LOOKUP_OS_VERSION = "20.04"

# Size limit for manifest files read by the CLI
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB

VALID_HOSTNAME_PATTERN = r"^[A-Za-z0-9]([-A-Za-z0-9]{0,61}[A-Za-z0-9])?(\.[A-Za-z0-9]([-A-Za-z0-9]{0,61}[A-Za-z0-9])?)*$"


@dataclass(frozen=True)
class ImageLookup:
    """Fields that resolve to an OS image URL."""

    format: str = DEFAULT_IMAGE_LOOKUP_FORMAT
    base_registry: str = DEFAULT_IMAGE_LOOKUP_BASE_REGISTRY
    os_distro: str = DEFAULT_IMAGE_LOOKUP_OS_DISTRO
    os_version: str = DEFAULT_IMAGE_LOOKUP_OS_VERSION


def _is_host(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return bool(re.match(VALID_HOSTNAME_PATTERN, value))


@dataclass(frozen=True)
class Config:
    """Provider configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-reconcile.
    """

    tinkerbell_ip: str = DEFAULT_TINKERBELL_IP
    image_lookup: ImageLookup = field(default_factory=ImageLookup)
    reconcile_timeout_seconds: int = DEFAULT_RECONCILE_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.tinkerbell_ip:
            errors.append("TINKERBELL_IP must not be empty")
        elif not _is_host(self.tinkerbell_ip):
            errors.append(f"TINKERBELL_IP must be an IP address or hostname: {self.tinkerbell_ip}")

        if not (
            MIN_RECONCILE_TIMEOUT_SECONDS
            <= self.reconcile_timeout_seconds
            <= MAX_RECONCILE_TIMEOUT_SECONDS
        ):
            errors.append(
                f"RECONCILE_TIMEOUT_SECONDS must be between {MIN_RECONCILE_TIMEOUT_SECONDS} "
                f"and {MAX_RECONCILE_TIMEOUT_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def metadata_url(self) -> str:
        host = self.tinkerbell_ip
        # IPv6 literals need brackets before the port
        if ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{METADATA_SERVICE_PORT}"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            TINKERBELL_IP: Host of the metadata service (default: 192.168.1.1)
            IMAGE_LOOKUP_FORMAT: Go-style image URL format, e.g.
                "{{.BaseRegistry}}/{{.OSDistro}}-{{.OSVersion}}.raw.gz"
            IMAGE_LOOKUP_BASE_REGISTRY: Registry substituted for {{.BaseRegistry}}
            IMAGE_LOOKUP_OS_DISTRO: Distro substituted for {{.OSDistro}}
            IMAGE_LOOKUP_OS_VERSION: Version substituted for {{.OSVersion}}
            RECONCILE_TIMEOUT_SECONDS: Deadline for one reconcile pass (default: 30)

        An empty variable counts as unset.
        """

        def get_str(key: str, default: str) -> str:
            return os.environ.get(key) or default

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        return cls(
            tinkerbell_ip=get_str("TINKERBELL_IP", DEFAULT_TINKERBELL_IP),
            image_lookup=ImageLookup(
                format=get_str("IMAGE_LOOKUP_FORMAT", DEFAULT_IMAGE_LOOKUP_FORMAT),
                base_registry=get_str(
                    "IMAGE_LOOKUP_BASE_REGISTRY", DEFAULT_IMAGE_LOOKUP_BASE_REGISTRY
                ),
                os_distro=get_str("IMAGE_LOOKUP_OS_DISTRO", DEFAULT_IMAGE_LOOKUP_OS_DISTRO),
                os_version=get_str("IMAGE_LOOKUP_OS_VERSION", DEFAULT_IMAGE_LOOKUP_OS_VERSION),
            ),
            reconcile_timeout_seconds=get_int(
                "RECONCILE_TIMEOUT_SECONDS", DEFAULT_RECONCILE_TIMEOUT_SECONDS
            ),
        )
