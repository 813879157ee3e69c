"""Tests for the publish workflow."""

from pathlib import Path

import pytest

from cloudpublish.core.models import (
    Certificate,
    DeploymentSlot,
    DeploymentTarget,
    HostedService,
    OperationState,
    OperationStatus,
    PublishState,
)
from cloudpublish.services.management_client import (
    ManagementOperationError,
    ManagementTransportError,
    ResourceNotFoundError,
)
from cloudpublish.services.publish_service import (
    DeploymentNotFoundError,
    ExistenceResolver,
    PublishError,
    PublishService,
    PublishTimeoutError,
    RoleInstanceSnapshot,
)
from cloudpublish.services.retry import RetryPolicy

from conftest import FakeChannel, StaticArtifacts, deployment, instance

READY = "ReadyRole"
BUSY = "BusyRole"
INIT = "Initializing"


class FakeClock:
    """Fake monotonic clock advanced by sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeBlobStore:
    """Records staged uploads and removals."""

    def __init__(self):
        self.uploads = []
        self.removed = []

    def upload(self, account, key, package_path):
        self.uploads.append((account, key, Path(package_path).name))
        return f"https://{account}.blob.example/mydeployments/{Path(package_path).name}"

    def remove_container(self, account, key):
        self.removed.append(account)


def make_service(channel, certificate_store, artifacts=None, clock=None, **kwargs):
    clock = clock or FakeClock()
    return PublishService(
        channel,
        artifacts or StaticArtifacts(),
        certificate_store=certificate_store,
        blob_store=kwargs.pop("blob_store", FakeBlobStore()),
        retry=RetryPolicy(max_attempts=3, delay=0, refresh=channel.refresh_connection, sleep=clock.sleep),
        sleep=clock.sleep,
        clock=clock,
        launcher=kwargs.pop("launcher", lambda url: None),
        **kwargs,
    )


def rollout_script():
    return [
        deployment("Deploying"),
        deployment("Running", instance("WebRole_IN_0", INIT), instance("WebRole_IN_1", BUSY)),
        deployment("Running", instance("WebRole_IN_0", BUSY), instance("WebRole_IN_1", BUSY)),
        deployment("Running", instance("WebRole_IN_0", READY), instance("WebRole_IN_1", BUSY)),
        deployment("Running", instance("WebRole_IN_0", READY), instance("WebRole_IN_1", READY)),
    ]


@pytest.mark.unit
class TestExistenceResolver:
    """Tests for answering whether remote resources exist."""

    def test_not_found_is_a_negative_answer(self, channel):
        """Not-found faults answer False."""
        resolver = ExistenceResolver(channel, RetryPolicy(max_attempts=1))
        target = DeploymentTarget(service_name="webapp", subscription_id="sub-1")

        assert resolver.service_exists(target) is False
        assert resolver.deployment_exists(target) is False
        assert resolver.storage_account_exists("webappstore") is False

    def test_existing_resources(self, channel):
        """Found resources answer True."""
        channel.services["webapp"] = HostedService(service_name="webapp")
        channel.deployments[("webapp", DeploymentSlot.STAGING)] = [deployment("Running", slot="staging")]
        resolver = ExistenceResolver(channel, RetryPolicy(max_attempts=1))
        target = DeploymentTarget(service_name="webapp", slot=DeploymentSlot.STAGING, subscription_id="sub-1")

        assert resolver.service_exists(target) is True
        assert resolver.deployment_exists(target) is True

    def test_other_faults_propagate(self, channel, monkeypatch):
        """Faults other than not-found are raised."""
        def broken(service_name):
            raise ManagementOperationError("forbidden", status_code=403)

        monkeypatch.setattr(channel, "get_hosted_service", broken)
        resolver = ExistenceResolver(channel, RetryPolicy(max_attempts=1))

        with pytest.raises(ManagementOperationError):
            resolver.service_exists(DeploymentTarget(service_name="webapp", subscription_id="sub-1"))


@pytest.mark.unit
class TestRoleInstanceSnapshot:
    """Tests for tracking role instance status changes."""

    def test_reports_only_changes(self):
        """Only instances whose tracked status changed are reported."""
        snapshot = RoleInstanceSnapshot()

        first = snapshot.observe([instance("a", BUSY), instance("b", INIT)])
        repeat = snapshot.observe([instance("a", BUSY), instance("b", INIT)])
        changed = snapshot.observe([instance("a", READY), instance("b", INIT)])

        assert [i.instance_name for i in first] == ["a", "b"]
        assert repeat == []
        assert [(i.instance_name, i.instance_status) for i in changed] == [("a", READY)]

    def test_untracked_statuses_are_ignored(self):
        """Statuses outside ready, busy and initializing are not tracked."""
        snapshot = RoleInstanceSnapshot()

        assert snapshot.observe([instance("a", "StoppedVM")]) == []
        assert snapshot.status_of("a") is None

        snapshot.observe([instance("a", BUSY)])
        assert snapshot.observe([instance("a", "RoleStateUnknown")]) == []
        assert snapshot.status_of("a") == BUSY


@pytest.mark.unit
class TestPublishWorkflow:
    """Tests for the publish state machine against an in-memory channel."""

    def test_production_scenario_for_new_service(
        self, channel, certificate_store, production_settings, fast_settings
    ):
        """A new service is created, deployed and verified in order."""
        channel.deployment_script = rollout_script()
        launched = []
        service = make_service(channel, certificate_store, launcher=launched.append)

        result = service.publish(production_settings, launch=True)

        assert channel.names() == [
            "get_hosted_service",
            "create_hosted_service",
            "list_certificates",
            "add_certificate",
            "list_certificates",
            "create_deployment",
            "get_deployment_by_slot",
            "get_deployment_by_slot",
            "get_deployment_by_slot",
            "get_deployment_by_slot",
            "get_deployment_by_slot",
        ]
        assert result.state == PublishState.COMPLETE
        assert result.service_created is True
        assert result.upgraded is False
        assert result.deployment_private_id == "private-42"
        assert result.service_url == "http://webapp.cloudapp.net/"
        assert launched == ["http://webapp.cloudapp.net/"]
        assert result.uploaded_certificates == ["ABCDEF0123"]

    def test_service_is_created_before_any_deployment(
        self, channel, certificate_store, production_settings, fast_settings
    ):
        """The hosted service exists before a deployment is submitted."""
        channel.deployment_script = rollout_script()

        make_service(channel, certificate_store).publish(production_settings)

        names = channel.names()
        assert names.index("create_hosted_service") < names.index("create_deployment")
        assert "upgrade_deployment" not in names

    def test_submitted_request_carries_package_and_configuration(
        self, channel, certificate_store, production_settings, fast_settings
    ):
        """The create request names the slot deployment and carries the artifacts."""
        channel.deployment_script = rollout_script()
        make_service(channel, certificate_store).publish(production_settings)

        _, args = next(call for call in channel.calls if call[0] == "create_deployment")
        request = args[2]
        assert request.name == "productionDeployment"
        assert request.label == "webapp"
        assert request.package_url == "https://store.example/packages/webapp.cspkg"
        assert request.start_deployment is True
        assert 'serviceName="webapp"' in request.configuration

    def test_staging_scenario_with_existing_deployment(
        self, channel, certificate_store, staging_settings, fast_settings
    ):
        """An existing staging deployment is upgraded without a URL."""
        channel.services["webapp"] = HostedService(service_name="webapp")
        channel.certificates["webapp"] = [Certificate(thumbprint="abcdef0123")]
        channel.deployments[("webapp", DeploymentSlot.STAGING)] = [
            deployment("Running", instance("WebRole_IN_0", READY), slot="staging")
        ]
        channel.deployment_script = [
            deployment("RunningTransitioning", instance("WebRole_IN_0", BUSY), slot="staging"),
            deployment("Running", instance("WebRole_IN_0", BUSY), slot="staging"),
            deployment("Running", instance("WebRole_IN_0", READY), slot="staging"),
        ]
        service = make_service(channel, certificate_store)

        result = service.publish(staging_settings, launch=True)

        names = channel.names()
        assert names[:4] == [
            "get_hosted_service",
            "get_deployment_by_slot",
            "list_certificates",
            "upgrade_deployment",
        ]
        assert names[4] == "get_deployment_by_slot"
        assert "create_deployment" not in names
        assert "create_hosted_service" not in names
        assert "add_certificate" not in names
        assert certificate_store.exported == []
        assert result.upgraded is True
        assert result.service_url is None
        assert any("production slot" in message for message in service.notifications.messages())

    def test_upgrade_in_production_never_creates(
        self, channel, certificate_store, production_settings, fast_settings
    ):
        """An occupied production slot is upgraded."""
        channel.services["webapp"] = HostedService(service_name="webapp")
        channel.deployments[("webapp", DeploymentSlot.PRODUCTION)] = [deployment("Running")]
        channel.deployment_script = [deployment("Running", instance("WebRole_IN_0", READY))]

        result = make_service(channel, certificate_store).publish(production_settings)

        assert "upgrade_deployment" in channel.names()
        assert "create_deployment" not in channel.names()
        assert result.upgraded is True

    def test_status_notices_fire_once_per_transition(
        self, channel, certificate_store, production_settings, fast_settings
    ):
        """Each instance notice is emitted once per status change."""
        channel.deployment_script = [
            deployment("Running", instance("WebRole_IN_0", BUSY)),
            deployment("Running", instance("WebRole_IN_0", BUSY)),
            deployment("Running", instance("WebRole_IN_0", BUSY)),
            deployment("Running", instance("WebRole_IN_0", READY)),
        ]
        service = make_service(channel, certificate_store)

        service.publish(production_settings)

        instance_notices = [
            message for message in service.notifications.messages() if message.startswith("Instance ")
        ]
        assert instance_notices == [
            "Instance WebRole_IN_0 of role WebRole is busy.",
            "Instance WebRole_IN_0 of role WebRole is ready.",
        ]

    def test_verification_waits_for_every_instance(
        self, channel, certificate_store, production_settings, fast_settings
    ):
        """Verification polls until every instance is ready."""
        channel.deployment_script = [
            deployment("Running", instance("a", READY), instance("b", "StoppedVM")),
            deployment("Running", instance("a", READY), instance("b", "StoppedVM")),
            deployment("Running", instance("a", READY), instance("b", BUSY)),
            deployment("Running", instance("a", READY), instance("b", READY)),
        ]
        clock = FakeClock()
        service = make_service(channel, certificate_store, clock=clock)

        result = service.publish(production_settings)

        assert result.state == PublishState.COMPLETE
        # One read to see it started, three more until both instances are ready.
        assert channel.names().count("get_deployment_by_slot") == 4
        assert clock.sleeps.count(1.0) == 2
        assert not any("StoppedVM" in message for message in service.notifications.messages())

    def test_declined_package_stops_cleanly(self, channel, certificate_store, production_settings):
        """A declined publish makes no remote calls."""
        service = make_service(channel, certificate_store, artifacts=StaticArtifacts(accept=False))

        result = service.publish(production_settings)

        assert result.declined is True
        assert result.state == PublishState.NOT_STARTED
        assert channel.calls == []

    def test_missing_deployment_during_verification(
        self, certificate_store, production_settings, fast_settings
    ):
        """A vanished deployment fails with its service and slot."""
        class VanishingChannel(FakeChannel):
            reads_left = 1

            def get_deployment_by_slot(self, service_name, slot):
                if (service_name, slot) in self.deployments:
                    if self.reads_left == 0:
                        raise ResourceNotFoundError("gone", status_code=404)
                    self.reads_left -= 1
                return super().get_deployment_by_slot(service_name, slot)

        channel = VanishingChannel()
        channel.deployment_script = [deployment("Running", instance("WebRole_IN_0", BUSY))]
        service = make_service(channel, certificate_store)

        with pytest.raises(DeploymentNotFoundError) as excinfo:
            service.publish(production_settings)

        assert "webapp" in str(excinfo.value)
        assert "production" in str(excinfo.value)
        assert excinfo.value.result.state == PublishState.FAILED
        assert isinstance(excinfo.value.__cause__, ResourceNotFoundError)

    def test_verification_timeout_when_bounded(
        self, channel, certificate_store, production_settings, fast_settings, monkeypatch
    ):
        """A bounded verification wait times out."""
        monkeypatch.setattr(fast_settings, "verify_timeout_seconds", 3.0)
        channel.deployment_script = [deployment("Running", instance("WebRole_IN_0", BUSY))]

        with pytest.raises(PublishTimeoutError) as excinfo:
            make_service(channel, certificate_store).publish(production_settings)

        assert excinfo.value.result.state == PublishState.FAILED
        assert excinfo.value.target.service_name == "webapp"

    def test_failed_operation_is_reported(
        self, channel, certificate_store, production_settings, fast_settings
    ):
        """A failed asynchronous operation fails the publish."""
        channel.deployment_script = rollout_script()
        channel.request_ids["create_deployment"] = "req-1"
        channel.operations["req-1"] = OperationStatus(
            id="req-1",
            status=OperationState.FAILED,
            http_status_code=400,
            error_code="BadRequest",
            error_message="The package is invalid.",
        )

        with pytest.raises(PublishError) as excinfo:
            make_service(channel, certificate_store).publish(production_settings)

        assert isinstance(excinfo.value.__cause__, ManagementOperationError)
        assert "The package is invalid." in str(excinfo.value)
        assert excinfo.value.result.state == PublishState.FAILED

    def test_transient_lookup_failure_is_retried(
        self, channel, certificate_store, production_settings, fast_settings, monkeypatch
    ):
        """Transient lookup faults are retried on a fresh connection."""
        channel.deployment_script = rollout_script()
        original = channel.get_hosted_service
        failures = [ManagementTransportError("connection reset")]

        def flaky(service_name):
            if failures:
                raise failures.pop()
            return original(service_name)

        monkeypatch.setattr(channel, "get_hosted_service", flaky)

        result = make_service(channel, certificate_store).publish(production_settings)

        assert result.state == PublishState.COMPLETE
        assert channel.refreshes == 1

    def test_local_package_is_staged_in_new_storage_account(
        self, channel, certificate_store, production_settings, fast_settings, tmp_path, monkeypatch
    ):
        """Local packages are uploaded after creating the storage account."""
        monkeypatch.setattr(fast_settings, "remove_package_after_publish", True)
        package = tmp_path / "cloud_package.cspkg"
        package.write_bytes(b"PK")
        channel.deployment_script = rollout_script()
        blob_store = FakeBlobStore()
        service = make_service(
            channel,
            certificate_store,
            artifacts=StaticArtifacts(package_location=str(package)),
            blob_store=blob_store,
        )

        result = service.publish(production_settings)

        names = channel.names()
        storage_calls = [name for name in names if "storage" in name]
        assert storage_calls[:4] == [
            "get_storage_service",
            "create_storage_account",
            "get_storage_service",
            "get_storage_keys",
        ]
        assert blob_store.uploads[0][0] == "webappstore"
        assert result.package_uri == "https://webappstore.blob.example/mydeployments/cloud_package.cspkg"
        assert blob_store.removed == ["webappstore"]
        _, args = next(call for call in channel.calls if call[0] == "create_deployment")
        assert args[2].package_url == result.package_uri

    def test_subscription_is_required(self, channel, certificate_store, production_settings):
        """Publishing without a subscription is refused."""
        settings_without_subscription = production_settings.model_copy(update={"subscription": None})

        with pytest.raises(ValueError):
            make_service(channel, certificate_store).publish(settings_without_subscription)
