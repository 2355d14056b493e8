"""Client certificate checks and kubeconfig construction for the hub connection."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from cryptography import x509
from cryptography.x509.oid import NameOID

log = logging.getLogger(__name__)

KUBECONFIG_FILE = "kubeconfig"
TLS_KEY_FILE = "tls.key"
TLS_CERT_FILE = "tls.crt"

CERTIFICATE_APPROVED = "Approved"
CERTIFICATE_DENIED = "Denied"
CERTIFICATE_FAILED = "Failed"

_CERTIFICATE_BLOCK_TYPE = b"CERTIFICATE"
_PEM_BLOCK = re.compile(
    rb"-----BEGIN ([A-Z0-9 ]+)-----\r?\n(.*?)-----END \1-----", re.DOTALL
)


class CertificateError(Exception):
    """Raised when certificate data cannot be read or holds no certificate."""


@dataclass
class Secret:
    """A named bag of binary data, as stored by the cluster."""

    namespace: str = ""
    name: str = ""
    data: dict[str, bytes] | None = None
    resource_version: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class CSRCondition:
    type: str
    status: str = "True"
    reason: str = ""
    message: str = ""


@dataclass
class CertificateSigningRequestStatus:
    conditions: list[CSRCondition] = field(default_factory=list)
    certificate: bytes | None = None


@dataclass
class CertificateSigningRequest:
    name: str = ""
    status: CertificateSigningRequestStatus = field(
        default_factory=CertificateSigningRequestStatus
    )


@dataclass
class RestConfig:
    """Connection settings used as a template for a kubeconfig."""

    host: str
    ca_data: bytes | None = None


def _parse_certs_pem(data: bytes) -> list[x509.Certificate]:
    certs = []
    for match in _PEM_BLOCK.finditer(data or b""):
        block_type, body = match.group(1), match.group(2)
        if block_type != _CERTIFICATE_BLOCK_TYPE or b":" in body:
            continue
        try:
            der = base64.b64decode(b"".join(body.split()), validate=True)
            certs.append(x509.load_der_x509_certificate(der))
        except (binascii.Error, ValueError) as exc:
            raise CertificateError(str(exc)) from exc
    if not certs:
        raise CertificateError(
            "data does not contain any valid RSA or ECDSA certificates"
        )
    return certs


def _not_before(cert: x509.Certificate) -> datetime:
    if hasattr(cert, "not_valid_before_utc"):
        return cert.not_valid_before_utc
    return cert.not_valid_before.replace(tzinfo=timezone.utc)


def _not_after(cert: x509.Certificate) -> datetime:
    if hasattr(cert, "not_valid_after_utc"):
        return cert.not_valid_after_utc
    return cert.not_valid_after.replace(tzinfo=timezone.utc)


def _common_name(name: Any) -> str:
    if isinstance(name, x509.Name):
        attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
        return str(attrs[0].value) if attrs else ""
    return str(name)


def has_valid_hub_kubeconfig(secret: Secret, subject: Any = None) -> bool:
    """Return True if the secret holds a kubeconfig, a key and a valid certificate.

    ``subject`` is a common name (or an ``x509.Name``); when given, at least one
    certificate must carry it.
    """
    if not secret.data:
        log.debug("No data found in secret %r", secret.key)
        return False
    for required in (KUBECONFIG_FILE, TLS_KEY_FILE):
        if required not in secret.data:
            log.debug("No %r found in secret %r", required, secret.key)
            return False
    cert_data = secret.data.get(TLS_CERT_FILE)
    if cert_data is None:
        log.debug("No %r found in secret %r", TLS_CERT_FILE, secret.key)
        return False
    try:
        return is_certificate_valid(cert_data, subject)
    except CertificateError as exc:
        log.debug("Unable to validate certificate in secret %s: %s", secret.key, exc)
        return False


def is_certificate_valid(cert_data: bytes, subject: Any = None) -> bool:
    """Return True if no certificate has expired and one matches ``subject``.

    Raises CertificateError if the data holds no parsable certificate.
    """
    try:
        certs = _parse_certs_pem(cert_data)
    except CertificateError as exc:
        raise CertificateError("unable to parse certificate") from exc

    now = datetime.now(timezone.utc)
    for cert in certs:
        if now > _not_after(cert):
            log.debug("Part of the certificate is expired: %s", _not_after(cert))
            return False

    if subject is None:
        return True

    wanted = _common_name(subject)
    if any(_common_name(cert.subject) == wanted for cert in certs):
        return True
    log.debug("Certificate is not issued for subject (cn=%s)", wanted)
    return False


def get_cert_validity_period(secret: Secret) -> tuple[datetime, datetime]:
    """Return the (not_before, not_after) window shared by every certificate in the secret."""
    missing = f'no client certificate found in secret "{secret.key}"'
    if secret.data is None or TLS_CERT_FILE not in secret.data:
        raise CertificateError(missing)
    try:
        certs = _parse_certs_pem(secret.data[TLS_CERT_FILE])
    except CertificateError as exc:
        raise CertificateError(f"unable to parse TLS certificates: {exc}") from exc

    not_before = max(_not_before(cert) for cert in certs)
    not_after = min(_not_after(cert) for cert in certs)
    return not_before, not_after


def build_kubeconfig(client_config: RestConfig, cert_path: str, key_path: str) -> dict:
    """Build a kubeconfig that reaches the configured server with a cert/key pair."""
    cluster: dict[str, Any] = {"server": client_config.host}
    if client_config.ca_data:
        cluster["certificate-authority-data"] = base64.b64encode(
            client_config.ca_data
        ).decode("ascii")
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": "default-cluster", "cluster": cluster}],
        "users": [
            {
                "name": "default-auth",
                "user": {"client-certificate": cert_path, "client-key": key_path},
            }
        ],
        "contexts": [
            {
                "name": "default-context",
                "context": {
                    "cluster": "default-cluster",
                    "user": "default-auth",
                    "namespace": "configuration",
                },
            }
        ],
        "current-context": "default-context",
    }


def is_csr_approved(csr: CertificateSigningRequest) -> bool:
    """Return True if the CSR was approved and never denied."""
    approved = False
    for condition in csr.status.conditions:
        if condition.type == CERTIFICATE_DENIED:
            return False
        if condition.type == CERTIFICATE_APPROVED:
            approved = True
    return approved