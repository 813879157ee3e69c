"""Publish workflow: ensure the hosted service, submit the deployment and wait for its roles."""
from __future__ import annotations

import logging
import time
import webbrowser
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..core.config import settings
from ..core.models import (
    CreateHostedServiceInput,
    CreateStorageServiceInput,
    Deployment,
    DeploymentRequest,
    DeploymentSlot,
    DeploymentStatus,
    DeploymentTarget,
    NotificationLevel,
    OperationState,
    PublishResult,
    PublishState,
    RoleInstance,
    RoleInstanceStatus,
    StorageAccountStatus,
)
from ..core.service_settings import ServiceSettings, ServiceSettingsError
from .artifact_service import ArtifactProvider, ServicePackage
from .blob_service import BlobPackageStore
from .certificate_service import (
    CertificateStore,
    CertificateSynchronizer,
    FileCertificateStore,
)
from .management_client import (
    ManagementChannel,
    ManagementOperationError,
    ResourceNotFoundError,
)
from .notification_service import NotificationService
from .polling import poll_until
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

_STARTED_STATUSES = {DeploymentStatus.STARTING.value, DeploymentStatus.RUNNING.value}

_INSTANCE_STATUS_TEXT = {
    RoleInstanceStatus.BUSY.value: "busy",
    RoleInstanceStatus.READY.value: "ready",
    RoleInstanceStatus.INITIALIZING.value: "creating the virtual machine",
}


class PublishError(RuntimeError):
    """Raised when publishing stops before the deployment is verified."""

    def __init__(
        self,
        message: str,
        *,
        target: Optional[DeploymentTarget] = None,
        result: Optional[PublishResult] = None,
    ):
        super().__init__(message)
        self.target = target
        self.result = result


class DeploymentNotFoundError(PublishError):
    """Raised when the deployment disappears while its roles are being verified."""


class PublishTimeoutError(PublishError):
    """Raised when a configured wait bound is exceeded."""


class ExistenceResolver:
    """Answer whether remote resources exist; "not found" is a normal negative answer."""

    def __init__(self, channel: ManagementChannel, retry: RetryPolicy):
        self._channel = channel
        self._retry = retry

    def service_exists(self, target: DeploymentTarget) -> bool:
        try:
            self._retry.call(
                f"get hosted service {target.service_name}",
                self._channel.get_hosted_service,
                target.service_name,
            )
        except ResourceNotFoundError:
            return False
        return True

    def deployment_exists(self, target: DeploymentTarget) -> bool:
        try:
            self._retry.call(
                f"get {target.slot.value} deployment of {target.service_name}",
                self._channel.get_deployment_by_slot,
                target.service_name,
                target.slot,
            )
        except ResourceNotFoundError:
            return False
        return True

    def storage_account_exists(self, account_name: str) -> bool:
        try:
            storage = self._retry.call(
                f"get storage account {account_name}",
                self._channel.get_storage_service,
                account_name,
            )
        except ResourceNotFoundError:
            return False
        return storage is not None


class RoleInstanceSnapshot:
    """Last seen status per role instance, used to report only status changes."""

    TRACKED_STATUSES = frozenset(_INSTANCE_STATUS_TEXT)

    def __init__(self):
        self._statuses: Dict[str, str] = {}

    def observe(self, instances: List[RoleInstance]) -> List[RoleInstance]:
        """Record ``instances`` and return those first seen or whose status changed.

        Statuses outside busy/ready/initializing are not recorded or reported.
        """
        changed: List[RoleInstance] = []
        for instance in instances:
            if instance.instance_status not in self.TRACKED_STATUSES:
                continue
            previous = self._statuses.get(instance.instance_name)
            if previous == instance.instance_status:
                continue
            self._statuses[instance.instance_name] = instance.instance_status
            changed.append(instance)
        return changed

    def status_of(self, instance_name: str) -> Optional[str]:
        return self._statuses.get(instance_name)


def all_instances_ready(deployment: Deployment) -> bool:
    return all(
        instance.instance_status == RoleInstanceStatus.READY.value
        for instance in deployment.role_instances
    )


def wait_for_operation(
    channel: ManagementChannel,
    retry: RetryPolicy,
    request_id: Optional[str],
    description: str,
    *,
    interval: Optional[float] = None,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Block until an asynchronous management request leaves InProgress."""

    if not request_id:
        return

    outcome = poll_until(
        lambda: retry.call(
            f"get status of {description}", channel.get_operation_status, request_id
        ),
        lambda status: status.status != OperationState.IN_PROGRESS,
        interval=interval if interval is not None else settings.operation_poll_interval_seconds,
        timeout=timeout,
        description=description,
        sleep=sleep,
        clock=clock,
    )
    if not outcome.satisfied:
        raise PublishTimeoutError(
            f"Timed out after {outcome.elapsed:.0f}s waiting for {description} ({request_id})"
        )

    status = outcome.value
    if status.status == OperationState.FAILED:
        detail = " ".join(part for part in (status.error_code, status.error_message) if part)
        raise ManagementOperationError(
            f"{description} failed: {detail or 'no error detail returned'}",
            status_code=status.http_status_code,
            error_code=status.error_code,
        )
    logger.debug("%s succeeded (%s)", description, request_id)


class PublishService:
    """Drive a packaged service to a verified deployment in one slot.

    The management channel is passed in explicitly so a test double can stand
    in for the remote API. Every remote call goes through ``retry``.
    """

    def __init__(
        self,
        channel: ManagementChannel,
        artifacts: ArtifactProvider,
        *,
        certificate_store: Optional[CertificateStore] = None,
        blob_store: Optional[BlobPackageStore] = None,
        notifications: Optional[NotificationService] = None,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        launcher: Callable[[str], object] = webbrowser.open,
    ):
        self._channel = channel
        self._artifacts = artifacts
        self._sleep = sleep
        self._clock = clock
        self._retry = retry or RetryPolicy(
            refresh=getattr(channel, "refresh_connection", None), sleep=sleep
        )
        self._resolver = ExistenceResolver(channel, self._retry)
        self._certificates = CertificateSynchronizer(
            channel,
            certificate_store or FileCertificateStore(),
            self._retry,
            sleep=sleep,
        )
        self._blob_store = blob_store or BlobPackageStore()
        self.notifications = notifications or NotificationService()
        self._launcher = launcher

    def _notify(self, message: str, level: NotificationLevel = NotificationLevel.INFO, **kwargs) -> None:
        self.notifications.notify(message, level=level, **kwargs)

    def _transition(self, result: PublishResult, state: PublishState) -> None:
        logger.debug("Publish of %s: %s -> %s", result.target.describe(), result.state.value, state.value)
        result.state = state

    def _target_for(self, service_settings: ServiceSettings) -> DeploymentTarget:
        if not service_settings.subscription:
            raise ServiceSettingsError(
                f"No subscription configured for service {service_settings.service_name}"
            )
        return DeploymentTarget(
            service_name=service_settings.service_name,
            slot=service_settings.slot,
            subscription_id=service_settings.subscription,
        )

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    def publish(self, service_settings: ServiceSettings, *, launch: bool = False) -> PublishResult:
        """Publish the service described by ``service_settings``.

        Flow:
        * Service exists: upgrade the deployment in the slot when one is
          there, otherwise create a new deployment.
        * Service missing: create the hosted service, then the deployment.
        * Wait for the deployment to start and for every role instance to
          report ready.

        Returns a result with ``declined`` set when the artifact provider
        declines to hand over a package. Nothing created remotely is rolled
        back on failure.
        """
        target = self._target_for(service_settings)
        result = PublishResult(state=PublishState.NOT_STARTED, target=target)

        self._notify(
            f"Publishing {target.service_name} to the {target.slot.value} slot. "
            "This may take several minutes...",
            related_entity=target.service_name,
        )

        try:
            package = self._artifacts.prepare(service_settings)
            if package is None:
                result.declined = True
                self._notify("Service not published at user request")
                return result

            self._notify(
                f"Preparing deployment for {target.service_name} with subscription ID: "
                f"{target.subscription_id}..."
            )
            self._transition(result, PublishState.PACKAGED)

            label = target.service_name
            self._notify("Connecting...")
            if self._resolver.service_exists(target):
                deployment_exists = self._resolver.deployment_exists(target)
            else:
                self._create_hosted_service(target, service_settings, label)
                result.service_created = True
                deployment_exists = False
            self._transition(result, PublishState.SERVICE_ENSURED)

            package_uri, staged = self._upload_package(package, service_settings, label)
            result.package_uri = package_uri
            request = DeploymentRequest(
                package_uri=package_uri,
                configuration=package.configuration_text,
                label=label,
                deployment_name=settings.deployment_name_template.format(slot=target.slot.value),
                start_deployment=True,
            )

            uploaded = self._certificates.synchronize(
                target.service_name, package.configuration.certificate_references()
            )
            result.uploaded_certificates = [reference.thumbprint for reference in uploaded]

            if deployment_exists:
                self._upgrade_deployment(target, request)
                result.upgraded = True
            else:
                self._create_deployment(target, request)
            self._transition(result, PublishState.DEPLOYMENT_SUBMITTED)

            deployment = self._wait_for_deployment_to_start(target)
            result.deployment_private_id = deployment.private_id
            self._notify(f"Created Deployment ID: {deployment.private_id}.")

            self._transition(result, PublishState.VERIFYING)
            self._verify_deployment(target)
            self._transition(result, PublishState.COMPLETE)

            if target.slot == DeploymentSlot.PRODUCTION:
                result.service_url = settings.build_service_url(target.service_name)
                self._notify(
                    f"Created Website URL: {result.service_url}.",
                    level=NotificationLevel.SUCCESS,
                    related_entity=target.service_name,
                )
                if launch:
                    self._launcher(result.service_url)
            else:
                self._notify(
                    "The service URL can only be generated for the production slot; "
                    "look up the staging address in the management portal."
                )

            if staged and settings.remove_package_after_publish:
                self._remove_package(service_settings)

            self._notify("Complete.", level=NotificationLevel.SUCCESS)
            return result
        except PublishError as exc:
            result.state = PublishState.FAILED
            exc.target = exc.target or target
            exc.result = result
            self._notify(str(exc), level=NotificationLevel.ERROR, related_entity=target.service_name)
            raise
        except Exception as exc:
            result.state = PublishState.FAILED
            message = f"Publishing {target.describe()} failed: {exc}"
            self._notify(message, level=NotificationLevel.ERROR, related_entity=target.service_name)
            raise PublishError(message, target=target, result=result) from exc

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

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

    def _create_hosted_service(
        self, target: DeploymentTarget, service_settings: ServiceSettings, label: str
    ) -> None:
        self._notify("Creating...")
        request = CreateHostedServiceInput(
            service_name=target.service_name,
            label=label,
            location=service_settings.location,
        )
        request_id = self._retry.call(
            f"create hosted service {target.service_name}",
            self._channel.create_hosted_service,
            request,
        )
        self._wait(request_id, f"creation of hosted service {target.service_name}")
        self._notify(f"Created hosted service '{target.service_name}'.")

    def _upload_package(
        self, package: ServicePackage, service_settings: ServiceSettings, label: str
    ) -> Tuple[str, bool]:
        """Return the package URI and whether it was staged in blob storage."""

        if package.is_remote:
            return package.package_location, False

        account = service_settings.storage_account_name
        self._notify(f"Verifying storage account '{account}'...")
        if not self._resolver.storage_account_exists(account):
            self._create_storage_account(service_settings, label)

        self._notify("Uploading Package...")
        keys = self._retry.call(
            f"get keys of storage account {account}", self._channel.get_storage_keys, account
        )
        uri = self._retry.call(
            f"upload package to {account}",
            self._blob_store.upload,
            account,
            keys.primary,
            Path(package.package_location),
        )
        return uri, True

    def _create_storage_account(self, service_settings: ServiceSettings, label: str) -> None:
        account = service_settings.storage_account_name
        request = CreateStorageServiceInput(
            service_name=account,
            label=label,
            location=service_settings.location,
        )
        request_id = self._retry.call(
            f"create storage account {account}", self._channel.create_storage_account, request
        )
        self._wait(request_id, f"creation of storage account {account}")

        outcome = poll_until(
            lambda: self._retry.call(
                f"get storage account {account}", self._channel.get_storage_service, account
            ),
            lambda storage: storage.status == StorageAccountStatus.CREATED.value,
            interval=settings.operation_poll_interval_seconds,
            timeout=settings.storage_account_timeout_seconds,
            description=f"storage account {account}",
            sleep=self._sleep,
            clock=self._clock,
        )
        if not outcome.satisfied:
            raise PublishTimeoutError(
                f"Storage account {account} was not created within "
                f"{settings.storage_account_timeout_seconds:.0f}s"
            )
        logger.info("Created storage account %s", account)

    def _remove_package(self, service_settings: ServiceSettings) -> None:
        account = service_settings.storage_account_name
        keys = self._retry.call(
            f"get keys of storage account {account}", self._channel.get_storage_keys, account
        )
        self._retry.call(
            f"remove staged packages from {account}",
            self._blob_store.remove_container,
            account,
            keys.primary,
        )

    def _create_deployment(self, target: DeploymentTarget, request: DeploymentRequest) -> None:
        request_id = self._retry.call(
            f"create {target.slot.value} deployment of {target.service_name}",
            self._channel.create_deployment,
            target.service_name,
            target.slot,
            request.as_create_input(),
        )
        self._wait(request_id, f"deployment of {target.describe()}")

    def _upgrade_deployment(self, target: DeploymentTarget, request: DeploymentRequest) -> None:
        self._notify("Upgrading...")
        request_id = self._retry.call(
            f"upgrade {target.slot.value} deployment of {target.service_name}",
            self._channel.upgrade_deployment,
            target.service_name,
            target.slot,
            request.as_upgrade_input(),
        )
        self._wait(request_id, f"upgrade of {target.describe()}")

    def _get_deployment(self, target: DeploymentTarget) -> Deployment:
        return self._retry.call(
            f"get {target.slot.value} deployment of {target.service_name}",
            self._channel.get_deployment_by_slot,
            target.service_name,
            target.slot,
        )

    def _wait_for_deployment_to_start(self, target: DeploymentTarget) -> Deployment:
        outcome = poll_until(
            lambda: self._get_deployment(target),
            lambda deployment: deployment.status in _STARTED_STATUSES,
            interval=settings.status_poll_interval_seconds,
            timeout=settings.deployment_start_timeout_seconds,
            description=f"start of {target.describe()}",
            sleep=self._sleep,
            clock=self._clock,
        )
        if not outcome.satisfied:
            raise PublishTimeoutError(
                f"Deployment of {target.describe()} did not start within "
                f"{settings.deployment_start_timeout_seconds:.0f}s",
                target=target,
            )
        return outcome.value

    def _verify_deployment(self, target: DeploymentTarget) -> Deployment:
        """Poll until every role instance is ready, reporting each status change once."""

        self._notify("Starting...")
        self._notify("Initializing...")
        snapshot = RoleInstanceSnapshot()

        def fetch() -> Deployment:
            deployment = self._get_deployment(target)
            for instance in snapshot.observe(deployment.role_instances):
                status_text = _INSTANCE_STATUS_TEXT[instance.instance_status]
                self._notify(
                    f"Instance {instance.instance_name} of role {instance.role_name} is {status_text}.",
                    related_entity=instance.instance_name,
                    metadata={"role": instance.role_name, "status": instance.instance_status},
                )
            return deployment

        try:
            outcome = poll_until(
                fetch,
                all_instances_ready,
                interval=settings.status_poll_interval_seconds,
                timeout=settings.verify_timeout_seconds,
                description=f"role instances of {target.describe()}",
                sleep=self._sleep,
                clock=self._clock,
            )
        except ResourceNotFoundError as exc:
            raise DeploymentNotFoundError(
                f"Cannot find the {target.slot.value} deployment of service {target.service_name}",
                target=target,
            ) from exc

        if not outcome.satisfied:
            raise PublishTimeoutError(
                f"Role instances of {target.describe()} were not ready within "
                f"{settings.verify_timeout_seconds:.0f}s",
                target=target,
            )
        return outcome.value
