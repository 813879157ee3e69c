"""Configuration management using Pydantic settings."""

from typing import Optional, TYPE_CHECKING

from pydantic_settings import BaseSettings


# Default container used to stage packages before they are deployed. The
# container is removed again once publishing finishes when cleanup is enabled.
PACKAGE_CONTAINER_NAME = "mydeployments"
DEFAULT_SERVICE_ROOT_SETTINGS_FILE = "ServiceSettings.json"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application settings
    app_name: str = "cloudpublish"
    debug: bool = False

    # Management API settings
    subscription_id: Optional[str] = None
    management_endpoint: str = "https://management.core.windows.net"
    management_api_version: str = "2013-03-01"
    management_certificate_path: Optional[str] = None  # PEM with certificate and key
    management_key_path: Optional[str] = None  # Optional separate PEM key file
    request_timeout_seconds: float = 60.0

    # Retry settings for transient transport failures
    retry_max_attempts: int = 3
    retry_delay_seconds: float = 2.0
    retry_backoff: float = 2.0

    # Polling settings
    status_poll_interval_seconds: float = 10.0  # throttles role status reads
    certificate_poll_interval_seconds: float = 0.5
    operation_poll_interval_seconds: float = 2.0
    deployment_start_timeout_seconds: Optional[float] = None
    verify_timeout_seconds: Optional[float] = None  # None waits until every role is ready
    storage_account_timeout_seconds: Optional[float] = None
    operation_timeout_seconds: Optional[float] = 600.0

    # Storage settings
    blob_endpoint_template: str = "https://{account}.blob.core.windows.net"
    package_container: str = PACKAGE_CONTAINER_NAME
    remove_package_after_publish: bool = False

    # Publish settings
    default_location: Optional[str] = None
    service_url_template: str = "http://{service}.cloudapp.net/"
    deployment_name_template: str = "{slot}Deployment"
    certificate_store_path: Optional[str] = None  # directory of <thumbprint>.pfx files

    class Config:
        env_prefix = "CLOUDPUBLISH_"
        env_file = ".env"
        case_sensitive = False

    def get_management_endpoint(self) -> str:
        """Return the management endpoint without a trailing slash."""
        return self.management_endpoint.rstrip("/")

    def get_client_certificate(self):
        """Return the httpx ``cert`` argument for the management certificate."""
        if not self.management_certificate_path:
            return None
        if self.management_key_path:
            return (self.management_certificate_path, self.management_key_path)
        return self.management_certificate_path

    def build_service_url(self, service_name: str) -> str:
        return self.service_url_template.format(service=service_name)


settings = Settings()


if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .config_validation import ConfigValidationResult

# Cache of the configuration validation result so it can be reused across modules
_config_validation_result: Optional["ConfigValidationResult"] = None


def set_config_validation_result(result: "ConfigValidationResult") -> None:
    """Persist the configuration validation result for reuse."""

    global _config_validation_result
    _config_validation_result = result


def get_config_validation_result() -> Optional["ConfigValidationResult"]:
    """Return the cached configuration validation result, if available."""

    return _config_validation_result
