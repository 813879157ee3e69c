"""Shared fixtures: an in-memory management channel and local artifacts."""

import base64
from typing import Dict, List, Optional, Tuple

import pytest

from cloudpublish.core.config import settings, set_config_validation_result
from cloudpublish.core.models import (
    Certificate,
    CertificateReference,
    Deployment,
    DeploymentSlot,
    HostedService,
    OperationState,
    OperationStatus,
    RoleInstance,
    StorageKeys,
    StorageService,
)
from cloudpublish.core.service_configuration import ServiceConfiguration
from cloudpublish.core.service_settings import ServiceSettings
from cloudpublish.services.artifact_service import ServicePackage
from cloudpublish.services.management_client import ResourceNotFoundError


CONFIGURATION_XML = """<?xml version="1.0" encoding="utf-8"?>
<ServiceConfiguration serviceName="webapp" xmlns="http://schemas.microsoft.com/ServiceHosting/2008/10/ServiceConfiguration">
  <Role name="WebRole">
    <Instances count="2" />
    <ConfigurationSettings>
      <Setting name="Greeting" value="hello" />
    </ConfigurationSettings>
    <Certificates>
      <Certificate name="ssl" thumbprint="ABCDEF0123" thumbprintAlgorithm="sha1" />
    </Certificates>
  </Role>
  <Role name="WorkerRole">
    <Instances count="1" />
    <Certificates>
      <Certificate name="ssl-again" thumbprint="abcdef0123" thumbprintAlgorithm="sha1" />
    </Certificates>
  </Role>
</ServiceConfiguration>
"""


def instance(name: str, status: str, role: str = "WebRole") -> RoleInstance:
    return RoleInstance(role_name=role, instance_name=name, instance_status=status)


def deployment(status: str, *instances: RoleInstance, slot: str = "production", **extra) -> Deployment:
    return Deployment(
        name=f"{slot}Deployment",
        slot=slot,
        private_id="private-42",
        status=status,
        configuration=extra.pop("configuration", CONFIGURATION_XML),
        role_instances=list(instances),
        **extra,
    )


class FakeChannel:
    """Management channel double that records every call in order.

    ``deployment_script`` lists the deployments returned after a create or
    upgrade; each read advances one step and the last one repeats.
    """

    def __init__(self):
        self.calls: List[Tuple[str, tuple]] = []
        self.services: Dict[str, HostedService] = {}
        self.storage: Dict[str, StorageService] = {}
        self.certificates: Dict[str, List[Certificate]] = {}
        self.extensions: Dict[str, list] = {}
        self.deployments: Dict[Tuple[str, DeploymentSlot], List[Deployment]] = {}
        self.deployment_script: List[Deployment] = []
        self.operations: Dict[str, OperationStatus] = {}
        self.request_ids: Dict[str, str] = {}
        self.refreshes = 0

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def _request_id(self, name: str) -> Optional[str]:
        return self.request_ids.get(name)

    def get_hosted_service(self, service_name):
        self._record("get_hosted_service", service_name)
        if service_name not in self.services:
            raise ResourceNotFoundError(f"{service_name} not found", status_code=404)
        return self.services[service_name]

    def create_hosted_service(self, request):
        self._record("create_hosted_service", request.service_name)
        self.services[request.service_name] = HostedService(
            service_name=request.service_name, location=request.location
        )
        return self._request_id("create_hosted_service")

    def get_storage_service(self, account_name):
        self._record("get_storage_service", account_name)
        if account_name not in self.storage:
            raise ResourceNotFoundError(f"{account_name} not found", status_code=404)
        return self.storage[account_name]

    def create_storage_account(self, request):
        self._record("create_storage_account", request.service_name)
        self.storage[request.service_name] = StorageService(
            service_name=request.service_name, status="Created"
        )
        return self._request_id("create_storage_account")

    def get_storage_keys(self, account_name):
        self._record("get_storage_keys", account_name)
        return StorageKeys(primary=base64.b64encode(b"secret-key").decode("ascii"))

    def list_certificates(self, service_name):
        self._record("list_certificates", service_name)
        return list(self.certificates.get(service_name, []))

    def add_certificate(self, service_name, certificate):
        self._record("add_certificate", service_name)
        thumbprint = base64.b64decode(certificate.data).decode("ascii")
        self.certificates.setdefault(service_name, []).append(Certificate(thumbprint=thumbprint))
        return self._request_id("add_certificate")

    def create_deployment(self, service_name, slot, request):
        self._record("create_deployment", service_name, slot, request)
        self.deployments[(service_name, slot)] = list(self.deployment_script)
        return self._request_id("create_deployment")

    def upgrade_deployment(self, service_name, slot, request):
        self._record("upgrade_deployment", service_name, slot, request)
        self.deployments[(service_name, slot)] = list(self.deployment_script)
        return self._request_id("upgrade_deployment")

    def get_deployment_by_slot(self, service_name, slot):
        self._record("get_deployment_by_slot", service_name, slot)
        states = self.deployments.get((service_name, slot))
        if not states:
            raise ResourceNotFoundError(f"No {slot.value} deployment", status_code=404)
        if len(states) > 1:
            return states.pop(0)
        return states[0]

    def change_deployment_configuration(self, service_name, slot, request):
        self._record("change_deployment_configuration", service_name, slot, request)
        return self._request_id("change_deployment_configuration")

    def list_extensions(self, service_name):
        self._record("list_extensions", service_name)
        return list(self.extensions.get(service_name, []))

    def add_extension(self, service_name, extension):
        self._record("add_extension", service_name, extension)
        self.extensions.setdefault(service_name, []).append(extension)
        return self._request_id("add_extension")

    def get_operation_status(self, request_id):
        self._record("get_operation_status", request_id)
        return self.operations.get(
            request_id, OperationStatus(id=request_id, status=OperationState.SUCCEEDED)
        )

    def refresh_connection(self):
        self.refreshes += 1


class FakeCertificateStore:
    """Exports the thumbprint itself as the PFX payload."""

    def __init__(self):
        self.exported: List[str] = []

    def export_pfx(self, reference: CertificateReference) -> bytes:
        self.exported.append(reference.thumbprint)
        return reference.thumbprint.encode("ascii")


class StaticArtifacts:
    def __init__(self, package_location: str = "https://store.example/packages/webapp.cspkg",
                 configuration: str = CONFIGURATION_XML, accept: bool = True):
        self.package_location = package_location
        self.configuration = configuration
        self.accept = accept
        self.prepared = 0

    def prepare(self, service_settings):
        self.prepared += 1
        if not self.accept:
            return None
        return ServicePackage(
            package_location=self.package_location,
            configuration=ServiceConfiguration.parse(self.configuration),
        )


@pytest.fixture(autouse=True)
def reset_validation_cache():
    set_config_validation_result(None)
    yield
    set_config_validation_result(None)


@pytest.fixture
def fast_settings(monkeypatch):
    """Keep polling loops instant and unbounded."""

    monkeypatch.setattr(settings, "status_poll_interval_seconds", 1.0)
    monkeypatch.setattr(settings, "certificate_poll_interval_seconds", 1.0)
    monkeypatch.setattr(settings, "operation_poll_interval_seconds", 1.0)
    monkeypatch.setattr(settings, "verify_timeout_seconds", None)
    monkeypatch.setattr(settings, "deployment_start_timeout_seconds", None)
    monkeypatch.setattr(settings, "remove_package_after_publish", False)
    return settings


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def certificate_store():
    return FakeCertificateStore()


@pytest.fixture
def production_settings():
    return ServiceSettings(
        service_name="webapp",
        slot=DeploymentSlot.PRODUCTION,
        location="North Europe",
        subscription="sub-1",
        storage_account_name="webappstore",
    )


@pytest.fixture
def staging_settings():
    return ServiceSettings(
        service_name="webapp",
        slot=DeploymentSlot.STAGING,
        location="North Europe",
        subscription="sub-1",
        storage_account_name="webappstore",
    )
