"""Keep the certificates registered on a hosted service in line with its configuration."""
from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Protocol

from ..core.config import settings
from ..core.models import Certificate, CertificateFile, CertificateReference
from .management_client import ManagementChannel
from .polling import poll_until
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class CertificateAccessError(ValueError):
    """Raised when a referenced certificate or its private key cannot be exported."""

    def __init__(self, reference: CertificateReference, reason: str):
        super().__init__(
            f"Unable to access the private key of certificate '{reference.name}' "
            f"({reference.thumbprint}): {reason}"
        )
        self.reference = reference


class CertificateTimeoutError(TimeoutError):
    """Raised when an uploaded certificate never shows up on the hosted service."""


class CertificateStore(Protocol):
    def export_pfx(self, reference: CertificateReference) -> bytes:
        """Return PFX bytes (certificate and private key) for ``reference``."""


class FileCertificateStore:
    """Certificate store backed by ``<thumbprint>.pfx`` files in one directory."""

    def __init__(self, directory: Optional[Path] = None):
        configured = directory or settings.certificate_store_path
        self.directory = Path(configured) if configured else None

    def export_pfx(self, reference: CertificateReference) -> bytes:
        if self.directory is None:
            raise CertificateAccessError(reference, "no certificate store is configured")

        wanted = reference.thumbprint.lower()
        if self.directory.is_dir():
            for candidate in self.directory.iterdir():
                if candidate.suffix.lower() == ".pfx" and candidate.stem.lower() == wanted:
                    try:
                        data = candidate.read_bytes()
                    except OSError as exc:
                        raise CertificateAccessError(reference, str(exc)) from exc
                    if not data:
                        raise CertificateAccessError(reference, f"{candidate} is empty")
                    return data

        raise CertificateAccessError(reference, f"not found in {self.directory}")


def _registered(certificates: Optional[Iterable[Certificate]], reference: CertificateReference) -> bool:
    return any(reference.matches(certificate.thumbprint) for certificate in certificates or ())


class CertificateSynchronizer:
    """Upload certificates referenced by a service configuration that are not yet registered."""

    def __init__(
        self,
        channel: ManagementChannel,
        store: CertificateStore,
        retry: RetryPolicy,
        *,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._channel = channel
        self._store = store
        self._retry = retry
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.certificate_poll_interval_seconds
        )
        self._timeout = timeout
        self._sleep = sleep

    def synchronize(
        self, service_name: str, references: Iterable[CertificateReference]
    ) -> List[CertificateReference]:
        """Upload missing certificates and return the ones that were uploaded."""

        registered = self._retry.call(
            f"list certificates for {service_name}",
            self._channel.list_certificates,
            service_name,
        )

        uploaded: List[CertificateReference] = []
        seen = set()
        for reference in references:
            key = reference.thumbprint.lower()
            if key in seen:
                continue
            seen.add(key)

            if _registered(registered, reference):
                logger.debug("Certificate %s already registered on %s", reference.thumbprint, service_name)
                continue

            try:
                pfx = self._store.export_pfx(reference)
            except CertificateAccessError:
                raise
            except Exception as exc:
                raise CertificateAccessError(reference, str(exc)) from exc

            certificate = CertificateFile(
                data=base64.b64encode(pfx).decode("ascii"),
                certificate_format="pfx",
                password="",
            )
            logger.info("Uploading certificate %s to %s", reference.name, service_name)
            self._retry.call(
                f"add certificate {reference.thumbprint} to {service_name}",
                self._channel.add_certificate,
                service_name,
                certificate,
            )
            self._wait_for_certificate(service_name, reference)
            uploaded.append(reference)

        return uploaded

    def _wait_for_certificate(self, service_name: str, reference: CertificateReference) -> None:
        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep

        outcome = poll_until(
            lambda: self._retry.call(
                f"list certificates for {service_name}",
                self._channel.list_certificates,
                service_name,
            ),
            lambda certificates: _registered(certificates, reference),
            interval=self._poll_interval,
            timeout=self._timeout,
            description=f"certificate {reference.thumbprint} on {service_name}",
            **kwargs,
        )
        if not outcome.satisfied:
            raise CertificateTimeoutError(
                f"Certificate {reference.thumbprint} was not registered on {service_name} "
                f"within {self._timeout:.0f}s"
            )
