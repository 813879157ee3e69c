"""Data models for the application."""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum


class NotificationLevel(str, Enum):
    """Notification severity level."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class DeploymentSlot(str, Enum):
    """Deployment destination within a hosted service."""
    PRODUCTION = "production"
    STAGING = "staging"

    @classmethod
    def parse(cls, value: Any) -> "DeploymentSlot":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        for slot in cls:
            if slot.value == normalized:
                return slot
        raise ValueError(f"Unknown deployment slot '{value}'")


class DeploymentStatus(str, Enum):
    """Deployment status reported by the management API."""
    RUNNING = "Running"
    SUSPENDED = "Suspended"
    RUNNING_TRANSITIONING = "RunningTransitioning"
    SUSPENDED_TRANSITIONING = "SuspendedTransitioning"
    STARTING = "Starting"
    SUSPENDING = "Suspending"
    DEPLOYING = "Deploying"
    DELETING = "Deleting"


class RoleInstanceStatus(str, Enum):
    """Role instance statuses that publishing reports on."""
    READY = "ReadyRole"
    BUSY = "BusyRole"
    INITIALIZING = "Initializing"


class StorageAccountStatus(str, Enum):
    """Storage account provisioning status."""
    CREATING = "Creating"
    CREATED = "Created"
    DELETING = "Deleting"
    RESOLVING_DNS = "ResolvingDns"


class OperationState(str, Enum):
    """State of an asynchronous management operation."""
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class UpgradeMode(str, Enum):
    """How an upgrade walks the update domains."""
    AUTO = "Auto"
    MANUAL = "Manual"


class PublishState(str, Enum):
    """Progress of a single publish invocation."""
    NOT_STARTED = "NotStarted"
    PACKAGED = "Packaged"
    SERVICE_ENSURED = "ServiceEnsured"
    DEPLOYMENT_SUBMITTED = "DeploymentSubmitted"
    VERIFYING = "Verifying"
    COMPLETE = "Complete"
    FAILED = "Failed"


# ============================================================================
# Remote resources
# ============================================================================


class HostedService(BaseModel):
    """Hosted service returned by the management API."""
    service_name: str
    url: Optional[str] = None
    label: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = None


class StorageService(BaseModel):
    """Storage account returned by the management API."""
    service_name: str
    url: Optional[str] = None
    status: Optional[str] = None
    location: Optional[str] = None
    endpoints: List[str] = Field(default_factory=list)


class StorageKeys(BaseModel):
    primary: str
    secondary: Optional[str] = None


class Certificate(BaseModel):
    """Service certificate registered on a hosted service."""
    thumbprint: str
    thumbprint_algorithm: Optional[str] = None
    certificate_url: Optional[str] = None
    data: Optional[str] = None


class CertificateFile(BaseModel):
    """Certificate payload uploaded to a hosted service."""
    data: str = Field(..., description="Base64-encoded certificate content")
    certificate_format: str = "pfx"
    password: str = ""


class RoleInstance(BaseModel):
    """A running unit of a deployment."""
    role_name: str
    instance_name: str
    instance_status: str
    instance_size: Optional[str] = None
    ip_address: Optional[str] = None


class ExtensionRoleConfiguration(BaseModel):
    """Extension references for one role, or the default for every role."""
    role_name: Optional[str] = None
    extension_ids: List[str] = Field(default_factory=list)


class Deployment(BaseModel):
    """Deployment occupying a slot of a hosted service."""
    name: str
    slot: Optional[str] = None
    private_id: Optional[str] = None
    status: str
    label: Optional[str] = None
    url: Optional[str] = None
    configuration: Optional[str] = None
    role_instances: List[RoleInstance] = Field(default_factory=list)
    extension_configuration: List[ExtensionRoleConfiguration] = Field(default_factory=list)

    @property
    def extension_ids(self) -> List[str]:
        """Every referenced extension id, across all roles."""
        ids: List[str] = []
        for entry in self.extension_configuration:
            for value in entry.extension_ids:
                if value not in ids:
                    ids.append(value)
        return ids


class HostedServiceExtension(BaseModel):
    """Extension registered on a hosted service."""
    provider_namespace: str
    type: str
    id: str
    version: Optional[str] = None
    thumbprint: Optional[str] = None
    thumbprint_algorithm: Optional[str] = None
    public_configuration: Optional[str] = None
    private_configuration: Optional[str] = None


class OperationStatus(BaseModel):
    """Status of an asynchronous management request."""
    id: str
    status: OperationState
    http_status_code: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


# ============================================================================
# Request payloads
# ============================================================================


class CreateHostedServiceInput(BaseModel):
    service_name: str
    label: str
    location: str
    description: Optional[str] = None


class CreateStorageServiceInput(BaseModel):
    service_name: str
    label: str
    location: str
    description: Optional[str] = None


class CreateDeploymentInput(BaseModel):
    name: str
    package_url: str
    label: str
    configuration: str
    start_deployment: bool = True
    treat_warnings_as_error: bool = False


class UpgradeDeploymentInput(BaseModel):
    mode: UpgradeMode = UpgradeMode.AUTO
    package_url: str
    label: str
    configuration: str
    role_to_upgrade: Optional[str] = None
    force: bool = False


class ChangeConfigurationInput(BaseModel):
    configuration: str
    mode: UpgradeMode = UpgradeMode.AUTO
    treat_warnings_as_error: bool = False
    # None leaves the extension references untouched; an empty list clears them.
    extension_configuration: Optional[List[ExtensionRoleConfiguration]] = None


# ============================================================================
# Publish values
# ============================================================================


class DeploymentTarget(BaseModel):
    """Hosted service, slot and subscription a publish is aimed at."""
    model_config = ConfigDict(frozen=True)

    service_name: str = Field(..., min_length=1)
    slot: DeploymentSlot = DeploymentSlot.PRODUCTION
    subscription_id: str = Field(..., min_length=1)

    def describe(self) -> str:
        return f"{self.service_name} ({self.slot.value})"


class DeploymentRequest(BaseModel):
    """Package, configuration and label submitted for one publish attempt."""
    model_config = ConfigDict(frozen=True)

    package_uri: str
    configuration: str
    label: str
    deployment_name: str
    start_deployment: bool = True

    def as_create_input(self) -> CreateDeploymentInput:
        return CreateDeploymentInput(
            name=self.deployment_name,
            package_url=self.package_uri,
            label=self.label,
            configuration=self.configuration,
            start_deployment=self.start_deployment,
        )

    def as_upgrade_input(self) -> UpgradeDeploymentInput:
        return UpgradeDeploymentInput(
            mode=UpgradeMode.AUTO,
            package_url=self.package_uri,
            label=self.label,
            configuration=self.configuration,
        )


class CertificateReference(BaseModel):
    """Certificate named by a role in the service configuration."""
    model_config = ConfigDict(frozen=True)

    name: str
    thumbprint: str
    thumbprint_algorithm: str = "sha1"

    def matches(self, thumbprint: Optional[str]) -> bool:
        return bool(thumbprint) and self.thumbprint.lower() == thumbprint.lower()


class Notification(BaseModel):
    """Timestamped notice emitted while publishing."""
    id: str
    message: str
    level: NotificationLevel
    created_at: datetime
    related_entity: Optional[str] = None  # Service name, instance name, etc.
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PublishResult(BaseModel):
    """Outcome of one publish invocation."""
    state: PublishState
    target: Optional[DeploymentTarget] = None
    declined: bool = False
    upgraded: bool = False
    service_created: bool = False
    deployment_private_id: Optional[str] = None
    service_url: Optional[str] = None
    package_uri: Optional[str] = None
    uploaded_certificates: List[str] = Field(default_factory=list)
