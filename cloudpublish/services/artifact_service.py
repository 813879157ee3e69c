"""Locate the packaged service and its cloud configuration on disk."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from ..core.config import DEFAULT_SERVICE_ROOT_SETTINGS_FILE
from ..core.service_configuration import ServiceConfiguration
from ..core.service_settings import ServiceSettings

logger = logging.getLogger(__name__)

CLOUD_PACKAGE_FILE = "cloud_package.cspkg"
CLOUD_CONFIGURATION_FILE = "ServiceConfiguration.Cloud.cscfg"


class ArtifactError(FileNotFoundError):
    """Raised when the package or configuration cannot be found."""


def is_remote_location(location: str) -> bool:
    return location.lower().startswith(("http://", "https://"))


@dataclass(frozen=True)
class ServicePaths:
    root: Path

    @property
    def settings(self) -> Path:
        return self.root / DEFAULT_SERVICE_ROOT_SETTINGS_FILE

    @property
    def cloud_package(self) -> Path:
        return self.root / CLOUD_PACKAGE_FILE

    @property
    def cloud_configuration(self) -> Path:
        return self.root / CLOUD_CONFIGURATION_FILE


@dataclass(frozen=True)
class ServicePackage:
    """Package location plus the configuration deployed alongside it."""

    package_location: str
    configuration: ServiceConfiguration

    @property
    def is_remote(self) -> bool:
        return is_remote_location(self.package_location)

    @property
    def configuration_text(self) -> str:
        return self.configuration.text


class ArtifactProvider(Protocol):
    def prepare(self, service_settings: ServiceSettings) -> Optional[ServicePackage]:
        """Return the package to publish, or None when the caller declines."""


class LocalArtifactProvider:
    """Serve a prebuilt package from a service root directory.

    ``package_location`` overrides the default ``cloud_package.cspkg`` and may
    be an http(s) URL for a package that is already uploaded. ``confirm`` is
    asked before publishing and can decline by returning False.
    """

    def __init__(
        self,
        service_root: Path,
        *,
        package_location: Optional[str] = None,
        configuration_path: Optional[Path] = None,
        confirm: Optional[Callable[[ServiceSettings], bool]] = None,
    ):
        self.paths = ServicePaths(Path(service_root))
        self._package_location = package_location
        self._configuration_path = Path(configuration_path) if configuration_path else None
        self._confirm = confirm

    def default_service_name(self) -> Optional[str]:
        """Service name from the configuration document, falling back to the directory."""

        path = self._configuration_path or self.paths.cloud_configuration
        if path.is_file():
            name = ServiceConfiguration.parse(path.read_text(encoding="utf-8-sig")).service_name
            if name:
                return name
        return self.paths.root.resolve().name or None

    def prepare(self, service_settings: ServiceSettings) -> Optional[ServicePackage]:
        if self._confirm is not None and not self._confirm(service_settings):
            logger.info("Publishing of %s declined", service_settings.service_name)
            return None

        package_location = self._package_location or str(self.paths.cloud_package)
        if not is_remote_location(package_location) and not Path(package_location).is_file():
            raise ArtifactError(f"Package not found at {package_location}")

        configuration_path = self._configuration_path or self.paths.cloud_configuration
        if not configuration_path.is_file():
            raise ArtifactError(f"Service configuration not found at {configuration_path}")

        configuration = ServiceConfiguration.parse(
            configuration_path.read_text(encoding="utf-8-sig")
        )
        logger.debug(
            "Prepared package %s with roles %s",
            package_location,
            ", ".join(configuration.role_names) or "<none>",
        )
        return ServicePackage(package_location=package_location, configuration=configuration)
