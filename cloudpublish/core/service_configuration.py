"""Read-only view of a service configuration (.cscfg) document."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional
from xml.etree.ElementTree import Element

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import ParseError, fromstring

from .models import CertificateReference


class ServiceConfigurationError(ValueError):
    """Raised when a service configuration document cannot be read."""


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: Element, name: str) -> List[Element]:
    return [child for child in element if _local_name(child.tag) == name]


def _first(element: Element, name: str) -> Optional[Element]:
    for child in element:
        if _local_name(child.tag) == name:
            return child
    return None


@dataclass
class RoleConfiguration:
    name: str
    instance_count: int = 1
    settings: Dict[str, str] = field(default_factory=dict)
    certificates: List[CertificateReference] = field(default_factory=list)


@dataclass
class ServiceConfiguration:
    """Roles, settings and certificates declared by a service configuration."""

    service_name: Optional[str]
    roles: List[RoleConfiguration]
    text: str

    @classmethod
    def parse(cls, text: str) -> "ServiceConfiguration":
        try:
            root = fromstring(text.lstrip("﻿"))
        except (ParseError, DefusedXmlException) as exc:
            raise ServiceConfigurationError(f"Service configuration is not valid XML: {exc}") from exc

        if _local_name(root.tag) != "ServiceConfiguration":
            raise ServiceConfigurationError(
                f"Unexpected root element '{_local_name(root.tag)}' in service configuration"
            )

        roles: List[RoleConfiguration] = []
        for role_element in _children(root, "Role"):
            role = RoleConfiguration(name=role_element.get("name", ""))

            instances = _first(role_element, "Instances")
            if instances is not None:
                try:
                    role.instance_count = int(instances.get("count", "1"))
                except ValueError as exc:
                    raise ServiceConfigurationError(
                        f"Role '{role.name}' has a non-numeric instance count"
                    ) from exc

            settings_element = _first(role_element, "ConfigurationSettings")
            if settings_element is not None:
                for setting in _children(settings_element, "Setting"):
                    role.settings[setting.get("name", "")] = setting.get("value", "")

            certificates_element = _first(role_element, "Certificates")
            if certificates_element is not None:
                for certificate in _children(certificates_element, "Certificate"):
                    thumbprint = (certificate.get("thumbprint") or "").strip()
                    if not thumbprint:
                        continue
                    role.certificates.append(
                        CertificateReference(
                            name=certificate.get("name", thumbprint),
                            thumbprint=thumbprint,
                            thumbprint_algorithm=certificate.get("thumbprintAlgorithm", "sha1"),
                        )
                    )

            roles.append(role)

        return cls(service_name=root.get("serviceName"), roles=roles, text=text)

    @property
    def role_names(self) -> List[str]:
        return [role.name for role in self.roles]

    def certificate_references(self) -> List[CertificateReference]:
        """Distinct certificates across all roles, first occurrence wins."""

        seen = set()
        references: List[CertificateReference] = []
        for role in self.roles:
            for reference in role.certificates:
                key = reference.thumbprint.lower()
                if key in seen:
                    continue
                seen.add(key)
                references.append(reference)
        return references
