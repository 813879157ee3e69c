"""Stage service packages in blob storage before deploying them."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional

from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.storage.blob import BlobServiceClient, ContainerClient, ContentSettings

from ..core.config import settings
from .management_client import ManagementError, ManagementTransportError

logger = logging.getLogger(__name__)

PACKAGE_CONTENT_TYPE = "application/octet-stream"

_TRANSIENT_STATUS_CODES = frozenset({408, 429})

ServiceClientFactory = Callable[..., BlobServiceClient]


class BlobStorageError(ManagementError):
    """Raised when the blob service rejects a package operation."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_service_client(
    account_url: str, credential: Dict[str, str], *, timeout: float
) -> BlobServiceClient:
    """Build a blob service client authenticated with the account key."""

    # retry_total=0 leaves retries to RetryPolicy, which also refreshes connections.
    return BlobServiceClient(
        account_url,
        credential=credential,
        retry_total=0,
        connection_timeout=timeout,
        read_timeout=timeout,
    )


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (ServiceRequestError, ServiceResponseError) as exc:
        raise ManagementTransportError(f"{action} failed: {exc}") from exc
    except HttpResponseError as exc:
        status = exc.status_code
        error_code = getattr(exc, "error_code", None)
        message = f"{action} returned {status}: {exc.message}"
        if status is not None and (status >= 500 or status in _TRANSIENT_STATUS_CODES):
            raise ManagementTransportError(message, status_code=status, error_code=error_code) from exc
        raise BlobStorageError(message, status_code=status, error_code=error_code) from exc


class BlobPackageStore:
    """Upload and remove staged packages in a storage account container."""

    def __init__(
        self,
        *,
        container: Optional[str] = None,
        endpoint_template: Optional[str] = None,
        timeout: Optional[float] = None,
        client_factory: Optional[ServiceClientFactory] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.container = container or settings.package_container
        self._endpoint_template = endpoint_template or settings.blob_endpoint_template
        self._timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self._client_factory = client_factory or create_service_client
        self._clock = clock

    def _endpoint(self, account: str) -> str:
        return self._endpoint_template.format(account=account).rstrip("/")

    def _service(self, account: str, key: str) -> BlobServiceClient:
        return self._client_factory(
            self._endpoint(account),
            {"account_name": account, "account_key": key},
            timeout=self._timeout,
        )

    def _ensure_container(self, container: ContainerClient, account: str) -> None:
        with _storage_errors(f"Creating container {self.container} in {account}"):
            try:
                container.create_container()
            except ResourceExistsError:
                logger.debug("Container %s already exists in %s", self.container, account)

    def upload(self, account: str, key: str, package_path: Path) -> str:
        """Upload ``package_path`` as a block blob and return its URI."""

        package_path = Path(package_path)
        if not package_path.is_file():
            raise FileNotFoundError(f"Package not found at {package_path}")

        blob_name = f"{self._clock().strftime('%Y%m%d_%H%M%S')}_{package_path.name}"
        size = package_path.stat().st_size
        with self._service(account, key) as service:
            container = service.get_container_client(self.container)
            self._ensure_container(container, account)

            logger.info("Uploading %s (%d bytes) to %s/%s", package_path.name, size, account, self.container)
            with _storage_errors(f"Uploading {blob_name}"), package_path.open("rb") as stream:
                blob = container.upload_blob(
                    blob_name,
                    stream,
                    length=size,
                    overwrite=True,
                    content_settings=ContentSettings(content_type=PACKAGE_CONTENT_TYPE),
                )
        return blob.url

    def remove_container(self, account: str, key: str) -> None:
        with self._service(account, key) as service:
            container = service.get_container_client(self.container)
            with _storage_errors(f"Removing container {self.container} from {account}"):
                try:
                    container.delete_container()
                except ResourceNotFoundError:
                    return
        logger.info("Removed staged packages from %s/%s", account, self.container)
