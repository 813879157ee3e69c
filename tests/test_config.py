"""
Tests for configuration module.
"""
import os
from unittest.mock import patch

import pytest

from cloudpublish.core.config import PACKAGE_CONTAINER_NAME, Settings


@pytest.mark.unit
class TestSettings:
    """Test configuration settings."""

    def test_default_settings(self):
        """Test that default settings are loaded correctly."""
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.app_name == "cloudpublish"
        assert settings.debug is False
        assert settings.management_endpoint == "https://management.core.windows.net"
        assert settings.retry_max_attempts == 3
        assert settings.verify_timeout_seconds is None
        assert settings.package_container == PACKAGE_CONTAINER_NAME

    def test_settings_from_env(self):
        """Test that settings can be loaded from prefixed environment variables."""
        env_vars = {
            "CLOUDPUBLISH_SUBSCRIPTION_ID": "sub-123",
            "CLOUDPUBLISH_DEBUG": "true",
            "CLOUDPUBLISH_VERIFY_TIMEOUT_SECONDS": "900",
            "CLOUDPUBLISH_RETRY_MAX_ATTEMPTS": "5",
        }

        with patch.dict(os.environ, env_vars):
            settings = Settings(_env_file=None)

            assert settings.subscription_id == "sub-123"
            assert settings.debug is True
            assert settings.verify_timeout_seconds == 900.0
            assert settings.retry_max_attempts == 5

    def test_management_endpoint_trailing_slash(self):
        """Test that a trailing slash is dropped from the endpoint."""
        settings = Settings(_env_file=None, management_endpoint="https://mgmt.example/")
        assert settings.get_management_endpoint() == "https://mgmt.example"

    def test_client_certificate_forms(self):
        """Test the none, bundled and split certificate forms."""
        assert Settings(_env_file=None, management_certificate_path=None).get_client_certificate() is None

        bundled = Settings(_env_file=None, management_certificate_path="/certs/mgmt.pem")
        assert bundled.get_client_certificate() == "/certs/mgmt.pem"

        split = Settings(
            _env_file=None,
            management_certificate_path="/certs/mgmt.pem",
            management_key_path="/certs/mgmt.key",
        )
        assert split.get_client_certificate() == ("/certs/mgmt.pem", "/certs/mgmt.key")

    def test_build_service_url(self):
        """Test service URL rendering from the template."""
        settings = Settings(_env_file=None)
        assert settings.build_service_url("webapp") == "http://webapp.cloudapp.net/"

        custom = Settings(_env_file=None, service_url_template="https://{service}.example.net")
        assert custom.build_service_url("webapp") == "https://webapp.example.net"
