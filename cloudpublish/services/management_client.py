"""Service management API client for hosted services, storage and certificates."""
from __future__ import annotations

import base64
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple
from xml.etree.ElementTree import Element, SubElement, tostring

import httpx
from defusedxml import DefusedXmlException
from defusedxml.ElementTree import ParseError, fromstring

from ..core.config import settings
from ..core.models import (
    Certificate,
    CertificateFile,
    ChangeConfigurationInput,
    CreateDeploymentInput,
    CreateHostedServiceInput,
    CreateStorageServiceInput,
    Deployment,
    DeploymentSlot,
    ExtensionRoleConfiguration,
    HostedService,
    HostedServiceExtension,
    OperationState,
    OperationStatus,
    RoleInstance,
    StorageKeys,
    StorageService,
    UpgradeDeploymentInput,
)

logger = logging.getLogger(__name__)

XML_NAMESPACE = "http://schemas.microsoft.com/windowsazure"
USER_AGENT = "cloudpublish"

# Responses worth retrying against a fresh connection.
_TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class ManagementError(RuntimeError):
    """Base exception for management API failures."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class ResourceNotFoundError(ManagementError):
    """Raised when the requested resource does not exist."""


class ConflictError(ManagementError):
    """Raised when the resource exists or another operation is in progress."""


class ManagementTransportError(ManagementError):
    """Raised for connection failures, timeouts and throttled or failed servers."""


class ManagementOperationError(ManagementError):
    """Raised when an asynchronous operation finishes in the Failed state."""


class ManagementChannel(Protocol):
    """Remote operations the publish workflow consumes."""

    def get_hosted_service(self, service_name: str) -> HostedService:
        ...

    def create_hosted_service(self, request: CreateHostedServiceInput) -> Optional[str]:
        ...

    def get_storage_service(self, account_name: str) -> StorageService:
        ...

    def create_storage_account(self, request: CreateStorageServiceInput) -> Optional[str]:
        ...

    def get_storage_keys(self, account_name: str) -> StorageKeys:
        ...

    def list_certificates(self, service_name: str) -> List[Certificate]:
        ...

    def add_certificate(self, service_name: str, certificate: CertificateFile) -> Optional[str]:
        ...

    def create_deployment(
        self, service_name: str, slot: DeploymentSlot, request: CreateDeploymentInput
    ) -> Optional[str]:
        ...

    def upgrade_deployment(
        self, service_name: str, slot: DeploymentSlot, request: UpgradeDeploymentInput
    ) -> Optional[str]:
        ...

    def get_deployment_by_slot(self, service_name: str, slot: DeploymentSlot) -> Deployment:
        ...

    def change_deployment_configuration(
        self, service_name: str, slot: DeploymentSlot, request: ChangeConfigurationInput
    ) -> Optional[str]:
        ...

    def list_extensions(self, service_name: str) -> List[HostedServiceExtension]:
        ...

    def add_extension(self, service_name: str, extension: HostedServiceExtension) -> Optional[str]:
        ...

    def get_operation_status(self, request_id: str) -> OperationStatus:
        ...

    def refresh_connection(self) -> None:
        ...


def encode_base64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def decode_base64(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    try:
        return base64.b64decode(value).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return value


def create_http_client(
    endpoint: str,
    *,
    cert: Any = None,
    timeout: float = 60.0,
    api_version: str,
    transport: Optional[httpx.BaseTransport] = None,
) -> httpx.Client:
    """Create an HTTP client bound to the management endpoint."""

    if not endpoint:
        raise ValueError("endpoint is required")

    return httpx.Client(
        base_url=endpoint.rstrip("/"),
        cert=cert,
        timeout=timeout,
        transport=transport,
        headers={
            "x-ms-version": api_version,
            "User-Agent": USER_AGENT,
            "Content-Type": "application/xml",
        },
    )


# ============================================================================
# XML helpers
# ============================================================================


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find(element: Optional[Element], *path: str) -> Optional[Element]:
    current = element
    for name in path:
        if current is None:
            return None
        current = next((child for child in current if _local_name(child.tag) == name), None)
    return current


def _find_all(element: Optional[Element], name: str) -> List[Element]:
    if element is None:
        return []
    return [child for child in element if _local_name(child.tag) == name]


def _text(element: Optional[Element], *path: str) -> Optional[str]:
    found = _find(element, *path)
    if found is None or found.text is None:
        return None
    return found.text.strip()


def _build_document(root_name: str, fields: Iterable[Tuple[str, Any]]) -> Element:
    root = Element(root_name, xmlns=XML_NAMESPACE)
    _append_fields(root, fields)
    return root


def _append_fields(parent: Element, fields: Iterable[Tuple[str, Any]]) -> None:
    for name, value in fields:
        if value is None:
            continue
        child = SubElement(parent, name)
        if isinstance(value, bool):
            child.text = "true" if value else "false"
        else:
            child.text = str(value)


def _serialize(root: Element) -> bytes:
    return tostring(root, encoding="utf-8", xml_declaration=True)


def _parse(content: bytes) -> Element:
    try:
        return fromstring(content)
    except (ParseError, DefusedXmlException) as exc:
        raise ManagementError(f"Management API returned malformed XML: {exc}") from exc


def _parse_error_body(content: bytes) -> Tuple[Optional[str], Optional[str]]:
    if not content:
        return None, None
    try:
        root = fromstring(content)
    except (ParseError, DefusedXmlException):
        return None, content.decode("utf-8", errors="ignore").strip() or None
    return _text(root, "Code"), _text(root, "Message")


def _extension_ids(container: Optional[Element]) -> List[str]:
    ids = (_text(extension, "Id") for extension in _find_all(container, "Extension"))
    return [value for value in ids if value]


def _parse_deployment(root: Element) -> Deployment:
    instances = [
        RoleInstance(
            role_name=_text(item, "RoleName") or "",
            instance_name=_text(item, "InstanceName") or "",
            instance_status=_text(item, "InstanceStatus") or "",
            instance_size=_text(item, "InstanceSize"),
            ip_address=_text(item, "IpAddress"),
        )
        for item in _find_all(_find(root, "RoleInstanceList"), "RoleInstance")
    ]
    extensions = _find(root, "ExtensionConfiguration")
    extension_configuration = []
    all_roles = _extension_ids(_find(extensions, "AllRoles"))
    if all_roles:
        extension_configuration.append(ExtensionRoleConfiguration(extension_ids=all_roles))
    for role in _find_all(_find(extensions, "NamedRoles"), "Role"):
        role_name = _text(role, "RoleName")
        if role_name:
            extension_configuration.append(
                ExtensionRoleConfiguration(
                    role_name=role_name, extension_ids=_extension_ids(_find(role, "Extensions"))
                )
            )
    return Deployment(
        name=_text(root, "Name") or "",
        slot=_text(root, "DeploymentSlot"),
        private_id=_text(root, "PrivateID"),
        status=_text(root, "Status") or "",
        label=decode_base64(_text(root, "Label")),
        url=_text(root, "Url"),
        configuration=decode_base64(_text(root, "Configuration")),
        role_instances=instances,
        extension_configuration=extension_configuration,
    )


def _extension_configuration_element(
    parent: Element, request: ChangeConfigurationInput
) -> None:
    if request.extension_configuration is None:
        return

    # An empty element clears every extension reference.
    container = SubElement(parent, "ExtensionConfiguration")
    entries = [entry for entry in request.extension_configuration if entry.extension_ids]
    all_roles = [entry for entry in entries if not entry.role_name]
    named_roles = [entry for entry in entries if entry.role_name]

    if all_roles:
        all_element = SubElement(container, "AllRoles")
        for entry in all_roles:
            for extension_id in entry.extension_ids:
                _append_fields(SubElement(all_element, "Extension"), [("Id", extension_id)])

    if named_roles:
        named_element = SubElement(container, "NamedRoles")
        for entry in named_roles:
            role_element = SubElement(named_element, "Role")
            _append_fields(role_element, [("RoleName", entry.role_name)])
            extensions_element = SubElement(role_element, "Extensions")
            for extension_id in entry.extension_ids:
                _append_fields(SubElement(extensions_element, "Extension"), [("Id", extension_id)])


# ============================================================================
# Client
# ============================================================================


class ServiceManagementClient:
    """Synchronous client for the hosted-service management REST API."""

    def __init__(
        self,
        subscription_id: str,
        *,
        endpoint: Optional[str] = None,
        api_version: Optional[str] = None,
        cert: Any = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not subscription_id:
            raise ValueError("subscription_id is required")
        self.subscription_id = subscription_id
        self._endpoint = endpoint or settings.get_management_endpoint()
        self._api_version = api_version or settings.management_api_version
        self._cert = cert if cert is not None else settings.get_client_certificate()
        self._timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def __enter__(self) -> "ServiceManagementClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = create_http_client(
                self._endpoint,
                cert=self._cert,
                timeout=self._timeout,
                api_version=self._api_version,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def refresh_connection(self) -> None:
        """Drop the pooled connection so the next call reconnects."""
        logger.debug("Refreshing management connection to %s", self._endpoint)
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _path(self, *segments: str) -> str:
        return "/" + "/".join([self.subscription_id, *segments])

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: Optional[Element] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        content = _serialize(body) if body is not None else None
        logger.debug("%s %s", method, path)
        try:
            response = self.client.request(method, path, content=content, params=params)
        except httpx.TransportError as exc:
            raise ManagementTransportError(
                f"{method} {path} failed: {exc}"
            ) from exc

        if response.status_code < 400:
            return response

        error_code, error_message = _parse_error_body(response.content)
        message = f"{method} {path} returned {response.status_code}"
        if error_code or error_message:
            message = f"{message}: {error_code or ''} {error_message or ''}".rstrip()

        if response.status_code == 404:
            raise ResourceNotFoundError(message, status_code=404, error_code=error_code)
        if response.status_code == 409:
            raise ConflictError(message, status_code=409, error_code=error_code)
        if response.status_code in _TRANSIENT_STATUS_CODES:
            raise ManagementTransportError(
                message, status_code=response.status_code, error_code=error_code
            )
        raise ManagementError(message, status_code=response.status_code, error_code=error_code)

    def _get(self, *segments: str) -> Element:
        return _parse(self._request("GET", self._path(*segments)).content)

    def _submit(
        self,
        method: str,
        segments: Sequence[str],
        body: Optional[Element],
        params: Optional[Dict[str, str]] = None,
    ) -> Optional[str]:
        response = self._request(method, self._path(*segments), body=body, params=params)
        request_id = response.headers.get("x-ms-request-id")
        logger.debug("Submitted %s %s (request id %s)", method, "/".join(segments), request_id)
        return request_id

    # ------------------------------------------------------------------
    # Hosted services
    # ------------------------------------------------------------------

    def get_hosted_service(self, service_name: str) -> HostedService:
        root = self._get("services", "hostedservices", service_name)
        return HostedService(
            service_name=_text(root, "ServiceName") or service_name,
            url=_text(root, "Url"),
            label=decode_base64(_text(root, "HostedServiceProperties", "Label")),
            description=_text(root, "HostedServiceProperties", "Description"),
            location=_text(root, "HostedServiceProperties", "Location"),
            status=_text(root, "HostedServiceProperties", "Status"),
        )

    def create_hosted_service(self, request: CreateHostedServiceInput) -> Optional[str]:
        body = _build_document(
            "CreateHostedService",
            [
                ("ServiceName", request.service_name),
                ("Label", encode_base64(request.label)),
                ("Description", request.description),
                ("Location", request.location),
            ],
        )
        return self._submit("POST", ("services", "hostedservices"), body)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def get_storage_service(self, account_name: str) -> StorageService:
        root = self._get("services", "storageservices", account_name)
        return StorageService(
            service_name=_text(root, "ServiceName") or account_name,
            url=_text(root, "Url"),
            status=_text(root, "StorageServiceProperties", "Status"),
            location=_text(root, "StorageServiceProperties", "Location"),
            endpoints=[
                (endpoint.text or "").strip()
                for endpoint in _find_all(_find(root, "StorageServiceProperties", "Endpoints"), "Endpoint")
            ],
        )

    def create_storage_account(self, request: CreateStorageServiceInput) -> Optional[str]:
        body = _build_document(
            "CreateStorageServiceInput",
            [
                ("ServiceName", request.service_name),
                ("Description", request.description),
                ("Label", encode_base64(request.label)),
                ("Location", request.location),
            ],
        )
        return self._submit("POST", ("services", "storageservices"), body)

    def get_storage_keys(self, account_name: str) -> StorageKeys:
        root = self._get("services", "storageservices", account_name, "keys")
        primary = _text(root, "StorageServiceKeys", "Primary")
        if not primary:
            raise ManagementError(f"Storage account {account_name} returned no primary key")
        return StorageKeys(primary=primary, secondary=_text(root, "StorageServiceKeys", "Secondary"))

    # ------------------------------------------------------------------
    # Certificates
    # ------------------------------------------------------------------

    def list_certificates(self, service_name: str) -> List[Certificate]:
        root = self._get("services", "hostedservices", service_name, "certificates")
        return [
            Certificate(
                thumbprint=_text(item, "Thumbprint") or "",
                thumbprint_algorithm=_text(item, "ThumbprintAlgorithm"),
                certificate_url=_text(item, "CertificateUrl"),
                data=_text(item, "Data"),
            )
            for item in _find_all(root, "Certificate")
        ]

    def add_certificate(self, service_name: str, certificate: CertificateFile) -> Optional[str]:
        body = _build_document(
            "CertificateFile",
            [
                ("Data", certificate.data),
                ("CertificateFormat", certificate.certificate_format),
                ("Password", certificate.password),
            ],
        )
        return self._submit("POST", ("services", "hostedservices", service_name, "certificates"), body)

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    def create_deployment(
        self, service_name: str, slot: DeploymentSlot, request: CreateDeploymentInput
    ) -> Optional[str]:
        body = _build_document(
            "CreateDeployment",
            [
                ("Name", request.name),
                ("PackageUrl", request.package_url),
                ("Label", encode_base64(request.label)),
                ("Configuration", encode_base64(request.configuration)),
                ("StartDeployment", request.start_deployment),
                ("TreatWarningsAsError", request.treat_warnings_as_error),
            ],
        )
        segments = ("services", "hostedservices", service_name, "deploymentslots", slot.value)
        return self._submit("POST", segments, body)

    def upgrade_deployment(
        self, service_name: str, slot: DeploymentSlot, request: UpgradeDeploymentInput
    ) -> Optional[str]:
        body = _build_document(
            "UpgradeDeployment",
            [
                ("Mode", request.mode.value),
                ("PackageUrl", request.package_url),
                ("Configuration", encode_base64(request.configuration)),
                ("Label", encode_base64(request.label)),
                ("RoleToUpgrade", request.role_to_upgrade),
                ("Force", request.force),
            ],
        )
        segments = ("services", "hostedservices", service_name, "deploymentslots", slot.value)
        return self._submit("POST", segments, body, params={"comp": "upgrade"})

    def get_deployment_by_slot(self, service_name: str, slot: DeploymentSlot) -> Deployment:
        root = self._get("services", "hostedservices", service_name, "deploymentslots", slot.value)
        return _parse_deployment(root)

    def change_deployment_configuration(
        self, service_name: str, slot: DeploymentSlot, request: ChangeConfigurationInput
    ) -> Optional[str]:
        body = _build_document(
            "ChangeConfiguration",
            [
                ("Configuration", encode_base64(request.configuration)),
                ("TreatWarningsAsError", request.treat_warnings_as_error),
                ("Mode", request.mode.value),
            ],
        )
        _extension_configuration_element(body, request)
        segments = ("services", "hostedservices", service_name, "deploymentslots", slot.value)
        return self._submit("POST", segments, body, params={"comp": "config"})

    # ------------------------------------------------------------------
    # Extensions
    # ------------------------------------------------------------------

    def list_extensions(self, service_name: str) -> List[HostedServiceExtension]:
        root = self._get("services", "hostedservices", service_name, "extensions")
        return [
            HostedServiceExtension(
                provider_namespace=_text(item, "ProviderNameSpace") or "",
                type=_text(item, "Type") or "",
                id=_text(item, "Id") or "",
                version=_text(item, "Version"),
                thumbprint=_text(item, "Thumbprint"),
                thumbprint_algorithm=_text(item, "ThumbprintAlgorithm"),
                public_configuration=decode_base64(_text(item, "PublicConfiguration")),
            )
            for item in _find_all(root, "Extension")
        ]

    def add_extension(self, service_name: str, extension: HostedServiceExtension) -> Optional[str]:
        body = _build_document(
            "Extension",
            [
                ("ProviderNameSpace", extension.provider_namespace),
                ("Type", extension.type),
                ("Id", extension.id),
                ("Thumbprint", extension.thumbprint),
                ("ThumbprintAlgorithm", extension.thumbprint_algorithm),
                (
                    "PublicConfiguration",
                    encode_base64(extension.public_configuration)
                    if extension.public_configuration
                    else None,
                ),
                (
                    "PrivateConfiguration",
                    encode_base64(extension.private_configuration)
                    if extension.private_configuration
                    else None,
                ),
                ("Version", extension.version),
            ],
        )
        return self._submit("POST", ("services", "hostedservices", service_name, "extensions"), body)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get_operation_status(self, request_id: str) -> OperationStatus:
        root = self._get("operations", request_id)
        raw_code = _text(root, "HttpStatusCode")
        try:
            http_status = int(raw_code) if raw_code else None
        except ValueError:
            # Older API versions report the reason phrase instead of the code.
            http_status = None
        return OperationStatus(
            id=_text(root, "ID") or request_id,
            status=OperationState(_text(root, "Status") or OperationState.IN_PROGRESS.value),
            http_status_code=http_status,
            error_code=_text(root, "Error", "Code"),
            error_message=_text(root, "Error", "Message"),
        )
