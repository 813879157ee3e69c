"""Enable or disable remote desktop access on a running deployment."""
from __future__ import annotations

import logging
import time
from datetime import date, timedelta
from typing import Callable, Iterable, List, Optional, Sequence
from xml.sax.saxutils import escape

from ..core.config import settings
from ..core.models import (
    ChangeConfigurationInput,
    Deployment,
    DeploymentSlot,
    DeploymentTarget,
    ExtensionRoleConfiguration,
    HostedServiceExtension,
    UpgradeMode,
)
from .management_client import ManagementChannel, ResourceNotFoundError
from .notification_service import NotificationService
from .publish_service import wait_for_operation
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

EXTENSION_NAMESPACE = "Microsoft.Windows.Azure.Extensions"
EXTENSION_TYPE = "RDP"

PUBLIC_CONFIGURATION_TEMPLATE = (
    "<PublicConfig><UserName>{username}</UserName><Expiration>{expiration}</Expiration></PublicConfig>"
)
PRIVATE_CONFIGURATION_TEMPLATE = "<PrivateConfig><Password>{password}</Password></PrivateConfig>"

# Roughly six months; the access expires at the start of that day.
DEFAULT_EXPIRATION = timedelta(days=182)


class RemoteDesktopError(ValueError):
    """Raised when remote desktop cannot be configured for a deployment."""


def extension_id_for(slot: DeploymentSlot, index: int) -> str:
    return f"{EXTENSION_TYPE}-{slot.value.capitalize()}-Ext-{index}"


def _is_remote_desktop_id(extension_id: str) -> bool:
    return extension_id.startswith(f"{EXTENSION_TYPE}-")


def _without_remote_desktop(
    entries: Iterable[ExtensionRoleConfiguration],
) -> List[ExtensionRoleConfiguration]:
    return [
        ExtensionRoleConfiguration(
            role_name=entry.role_name,
            extension_ids=[value for value in entry.extension_ids if not _is_remote_desktop_id(value)],
        )
        for entry in entries
    ]


def _reference(
    entries: List[ExtensionRoleConfiguration], role_name: Optional[str], extension_id: str
) -> None:
    for entry in entries:
        if entry.role_name == role_name:
            entry.extension_ids.append(extension_id)
            return
    entries.append(ExtensionRoleConfiguration(role_name=role_name, extension_ids=[extension_id]))


class RemoteDesktopService:
    """Install the remote desktop extension and reference it from a deployment."""

    def __init__(
        self,
        channel: ManagementChannel,
        *,
        retry: Optional[RetryPolicy] = None,
        notifications: Optional[NotificationService] = None,
        sleep: Callable[[float], None] = time.sleep,
        today: Callable[[], date] = date.today,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._channel = channel
        self._sleep = sleep
        self._retry = retry or RetryPolicy(
            refresh=getattr(channel, "refresh_connection", None), sleep=sleep
        )
        self.notifications = notifications or NotificationService()
        self._today = today
        self._clock = clock

    def _deployment(self, target: DeploymentTarget) -> Deployment:
        try:
            self._retry.call(
                f"get hosted service {target.service_name}",
                self._channel.get_hosted_service,
                target.service_name,
            )
        except ResourceNotFoundError as exc:
            raise RemoteDesktopError(f"Hosted service {target.service_name} does not exist") from exc

        try:
            return self._retry.call(
                f"get {target.slot.value} deployment of {target.service_name}",
                self._channel.get_deployment_by_slot,
                target.service_name,
                target.slot,
            )
        except ResourceNotFoundError as exc:
            raise RemoteDesktopError(
                f"No deployment found in the {target.slot.value} slot of {target.service_name}"
            ) from exc

    def _change_extensions(
        self,
        target: DeploymentTarget,
        deployment: Deployment,
        entries: List[ExtensionRoleConfiguration],
        description: str,
    ) -> None:
        if deployment.configuration is None:
            raise RemoteDesktopError(f"Deployment {deployment.name} returned no configuration")

        request = ChangeConfigurationInput(
            configuration=deployment.configuration,
            mode=UpgradeMode.AUTO,
            extension_configuration=[entry for entry in entries if entry.extension_ids],
        )
        request_id = self._retry.call(
            f"change configuration of {target.describe()}",
            self._channel.change_deployment_configuration,
            target.service_name,
            target.slot,
            request,
        )
        self._wait(request_id, description)

    def _wait(self, request_id: Optional[str], description: str) -> None:
        wait_for_operation(
            self._channel,
            self._retry,
            request_id,
            description,
            timeout=settings.operation_timeout_seconds,
            sleep=self._sleep,
            clock=self._clock,
        )

    def enable(
        self,
        service_name: str,
        slot: DeploymentSlot,
        username: str,
        password: str,
        *,
        subscription_id: str,
        thumbprint: str,
        thumbprint_algorithm: str = "sha1",
        expiration: Optional[date] = None,
        roles: Sequence[str] = (),
    ) -> str:
        """Install the extension for all roles (or ``roles``) and return its id."""

        if not username or not password:
            raise RemoteDesktopError("A remote desktop user name and password are required")

        target = DeploymentTarget(service_name=service_name, slot=slot, subscription_id=subscription_id)
        deployment = self._deployment(target)

        known_roles = {instance.role_name for instance in deployment.role_instances}
        unknown = [role for role in roles if role not in known_roles]
        if unknown:
            raise RemoteDesktopError(
                f"Role(s) {', '.join(unknown)} not found in {target.describe()}"
            )

        certificates = self._retry.call(
            f"list certificates for {service_name}", self._channel.list_certificates, service_name
        )
        if not any((c.thumbprint or "").lower() == thumbprint.lower() for c in certificates):
            raise RemoteDesktopError(
                f"Certificate {thumbprint} is not registered on {service_name}; upload it first"
            )

        existing = self._retry.call(
            f"list extensions for {service_name}", self._channel.list_extensions, service_name
        )
        extension_id = self._next_extension_id(slot, (extension.id for extension in existing))
        expires = expiration or (self._today() + DEFAULT_EXPIRATION)

        extension = HostedServiceExtension(
            provider_namespace=EXTENSION_NAMESPACE,
            type=EXTENSION_TYPE,
            id=extension_id,
            thumbprint=thumbprint,
            thumbprint_algorithm=thumbprint_algorithm,
            public_configuration=PUBLIC_CONFIGURATION_TEMPLATE.format(
                username=escape(username), expiration=expires.strftime("%Y-%m-%d")
            ),
            private_configuration=PRIVATE_CONFIGURATION_TEMPLATE.format(password=escape(password)),
        )
        request_id = self._retry.call(
            f"add extension {extension_id} to {service_name}",
            self._channel.add_extension,
            service_name,
            extension,
        )
        self._wait(request_id, f"installation of {extension_id}")

        # Earlier remote desktop references are replaced; everything else is kept.
        entries = _without_remote_desktop(deployment.extension_configuration)
        for role in roles or [None]:
            _reference(entries, role, extension_id)

        self._change_extensions(target, deployment, entries, f"enabling remote desktop on {target.describe()}")
        self.notifications.notify(
            f"Remote desktop enabled on {target.describe()} for {username} until {expires:%Y-%m-%d}."
        )
        return extension_id

    def disable(self, service_name: str, slot: DeploymentSlot, *, subscription_id: str) -> bool:
        """Drop remote desktop references from the deployment; False when none were present."""

        target = DeploymentTarget(service_name=service_name, slot=slot, subscription_id=subscription_id)
        deployment = self._deployment(target)

        if not any(_is_remote_desktop_id(value) for value in deployment.extension_ids):
            logger.info("Remote desktop is not enabled on %s", target.describe())
            return False

        self._change_extensions(
            target,
            deployment,
            _without_remote_desktop(deployment.extension_configuration),
            f"disabling remote desktop on {target.describe()}",
        )
        self.notifications.notify(f"Remote desktop disabled on {target.describe()}.")
        return True

    @staticmethod
    def _next_extension_id(slot: DeploymentSlot, existing: Iterable[str]) -> str:
        taken = set(existing)
        index = 0
        while extension_id_for(slot, index) in taken:
            index += 1
        return extension_id_for(slot, index)
