"""Per-service publish settings resolved from the local settings file."""
from __future__ import annotations

import logging
import random
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .models import DeploymentSlot

logger = logging.getLogger(__name__)

KNOWN_LOCATIONS = (
    "Anywhere US",
    "Anywhere Europe",
    "Anywhere Asia",
    "North Central US",
    "South Central US",
    "North Europe",
    "West Europe",
    "East Asia",
    "Southeast Asia",
)

# Regions picked from when neither the caller nor the settings file names one.
DEFAULT_LOCATIONS = ("North Central US", "South Central US")

_FILE_KEYS = {
    "slot": ("Slot", "slot"),
    "location": ("Location", "location"),
    "subscription": ("Subscription", "subscription"),
    "storage_account_name": ("StorageAccountName", "storage_account_name", "storageAccountName"),
}

_STORAGE_NAME_MAX_LENGTH = 24


class ServiceSettingsError(ValueError):
    """Raised when publish settings are missing or invalid."""


def resolve_location(value: str) -> str:
    """Return the canonical spelling of a known location."""

    normalized = (value or "").strip().lower()
    for location in KNOWN_LOCATIONS:
        if location.lower() == normalized:
            return location
    raise ServiceSettingsError(f"Unable to resolve location '{value}'")


def default_storage_account_name(service_name: str) -> str:
    """Derive a storage account name (3-24 lowercase letters and digits)."""

    cleaned = re.sub(r"[^a-z0-9]", "", (service_name or "").lower())
    if len(cleaned) < 3:
        raise ServiceSettingsError(
            f"Cannot derive a storage account name from service name '{service_name}'"
        )
    return cleaned[:_STORAGE_NAME_MAX_LENGTH]


def _read_settings_file(path: Optional[Path]) -> Dict[str, Any]:
    if path is None or not path.exists():
        return {}

    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            raw = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ServiceSettingsError(f"Settings file {path} is malformed: {exc}") from exc

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ServiceSettingsError(f"Settings file {path} must contain a mapping")

    values: Dict[str, Any] = {}
    for field_name, keys in _FILE_KEYS.items():
        for key in keys:
            value = raw.get(key)
            if value not in (None, ""):
                values[field_name] = value
                break
    return values


class ServiceSettings(BaseModel):
    """Resolved settings for publishing one service."""
    model_config = ConfigDict(frozen=True)

    service_name: str = Field(..., min_length=1)
    slot: DeploymentSlot = DeploymentSlot.PRODUCTION
    location: str
    subscription: Optional[str] = None
    storage_account_name: str

    @classmethod
    def load(
        cls,
        path: Optional[Path] = None,
        *,
        slot: Optional[str] = None,
        location: Optional[str] = None,
        subscription: Optional[str] = None,
        storage_account_name: Optional[str] = None,
        name: Optional[str] = None,
        default_name: Optional[str] = None,
        default_location: Optional[str] = None,
        default_subscription: Optional[str] = None,
    ) -> "ServiceSettings":
        """Merge explicit arguments over the settings file and fill defaults.

        Explicit arguments always win over values read from ``path``. When no
        location is available a default region is chosen at random.
        """
        file_values = _read_settings_file(Path(path) if path else None)

        service_name = (name or default_name or "").strip()
        if not service_name:
            raise ServiceSettingsError("A hosted service name is required")

        raw_slot = slot or file_values.get("slot") or DeploymentSlot.PRODUCTION.value
        try:
            resolved_slot = DeploymentSlot.parse(raw_slot)
        except ValueError as exc:
            raise ServiceSettingsError(str(exc)) from exc

        raw_location = location or file_values.get("location") or default_location
        if raw_location:
            resolved_location = resolve_location(str(raw_location))
        else:
            resolved_location = random.choice(DEFAULT_LOCATIONS)
            logger.info("No location configured; using %s", resolved_location)

        storage = storage_account_name or file_values.get("storage_account_name")
        if storage:
            storage = str(storage).strip().lower()
        else:
            storage = default_storage_account_name(service_name)

        file_subscription = file_values.get("subscription")
        return cls(
            service_name=service_name,
            slot=resolved_slot,
            location=resolved_location,
            subscription=subscription or (str(file_subscription) if file_subscription else None) or default_subscription,
            storage_account_name=storage,
        )
