"""Configuration validation utilities."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .config import (
    settings,
    set_config_validation_result,
    get_config_validation_result,
)


@dataclass
class ConfigIssue:
    """Represents a single configuration issue."""

    message: str
    hint: Optional[str] = None


@dataclass
class ConfigValidationResult:
    """Outcome of running configuration checks."""

    checked_at: datetime
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


def _warn(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.warnings.append(ConfigIssue(message=message, hint=hint))


def _error(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.errors.append(ConfigIssue(message=message, hint=hint))


def run_config_checks(force: bool = False) -> ConfigValidationResult:
    """Validate configuration combinations and cache the result."""

    if not force:
        cached = get_config_validation_result()
        if cached is not None:
            return cached

    result = ConfigValidationResult(checked_at=datetime.now(timezone.utc))

    if not settings.subscription_id:
        _warn(
            result,
            "CLOUDPUBLISH_SUBSCRIPTION_ID is not set.",
            "Pass --subscription or set CLOUDPUBLISH_SUBSCRIPTION_ID to the target subscription.",
        )

    if not settings.management_certificate_path:
        _error(
            result,
            "CLOUDPUBLISH_MANAGEMENT_CERTIFICATE_PATH is required.",
            "Point CLOUDPUBLISH_MANAGEMENT_CERTIFICATE_PATH at the PEM management certificate.",
        )
    elif not Path(settings.management_certificate_path).is_file():
        _error(
            result,
            f"Management certificate not found at {settings.management_certificate_path}.",
            "Check CLOUDPUBLISH_MANAGEMENT_CERTIFICATE_PATH.",
        )

    if settings.management_key_path and not Path(settings.management_key_path).is_file():
        _error(
            result,
            f"Management key not found at {settings.management_key_path}.",
            "Check CLOUDPUBLISH_MANAGEMENT_KEY_PATH or remove it when the key is bundled.",
        )

    if not settings.get_management_endpoint().lower().startswith("https://"):
        _warn(
            result,
            "CLOUDPUBLISH_MANAGEMENT_ENDPOINT does not use HTTPS.",
            "Only use plain HTTP endpoints against local emulators.",
        )

    if settings.retry_max_attempts < 1:
        _error(
            result,
            "CLOUDPUBLISH_RETRY_MAX_ATTEMPTS must be at least 1.",
        )

    for name in (
        "status_poll_interval_seconds",
        "certificate_poll_interval_seconds",
        "operation_poll_interval_seconds",
    ):
        if getattr(settings, name) <= 0:
            _error(
                result,
                f"CLOUDPUBLISH_{name.upper()} must be greater than zero.",
                "Polling without a delay floods the management endpoint with requests.",
            )

    if settings.verify_timeout_seconds is None:
        _warn(
            result,
            "CLOUDPUBLISH_VERIFY_TIMEOUT_SECONDS is not set; publishing waits until every role instance is ready.",
            "Set CLOUDPUBLISH_VERIFY_TIMEOUT_SECONDS to bound the wait.",
        )

    if settings.certificate_store_path and not Path(settings.certificate_store_path).is_dir():
        _warn(
            result,
            f"Certificate store directory {settings.certificate_store_path} does not exist.",
            "Service certificates referenced by the configuration cannot be uploaded.",
        )

    set_config_validation_result(result)
    return result
