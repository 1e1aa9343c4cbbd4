"""Self-signed TLS certificate provisioning.

The provisioner guarantees that a usable certificate/key pair exists on disk
before the secure listener starts. An existing pair is reused as long as it
parses, the key matches the certificate, and it is not close to expiry;
otherwise a fresh RSA-2048 self-signed pair is generated.

Example:
    >>> provisioner = CertificateProvisioner(config)
    >>> bundle = provisioner.ensure()
    >>> print(bundle.cert_path, bundle.expires_at)
"""

import ipaddress
import os
import socket
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from pydantic import BaseModel, ConfigDict, Field

from labguard.common.clock import Clock, SystemClock
from labguard.common.config import Config
from labguard.core.exceptions import CertificateGenerationError

logger = structlog.get_logger(__name__)


class CertificateSubject(BaseModel):
    """Identity written into a generated certificate."""

    common_name: str = Field(default="localhost", description="Host name the server answers on")
    organization: str = Field(default="Lab Data Manager")
    country: str = Field(default="US", min_length=2, max_length=2)
    alt_names: list[str] = Field(
        default_factory=list,
        description="Subject alternative names (DNS names or IP addresses)",
    )

    @classmethod
    def for_host(
        cls,
        common_name: str | None = None,
        organization: str = "Lab Data Manager",
        country: str = "US",
    ) -> "CertificateSubject":
        """Build a subject for this host, covering localhost and 127.0.0.1."""
        host = common_name or socket.gethostname() or "localhost"
        alt_names = [host]
        for extra in ("localhost", "127.0.0.1"):
            if extra not in alt_names:
                alt_names.append(extra)
        return cls(
            common_name=host,
            organization=organization,
            country=country,
            alt_names=alt_names,
        )


class CertificateMaterial(BaseModel):
    """PEM-encoded certificate and private key."""

    cert_pem: bytes
    key_pem: bytes


class CertificateBundle(BaseModel):
    """A certificate/key pair on disk and its validity window."""

    model_config = ConfigDict(frozen=True)

    cert_path: Path
    key_path: Path
    created_at: datetime = Field(description="Certificate notBefore (UTC)")
    expires_at: datetime = Field(description="Certificate notAfter (UTC)")
    generated: bool = Field(default=False, description="True if produced by this call")

    def days_until_expiry(self, now: datetime) -> int:
        return (self.expires_at - now).days


class CertificateInfo(BaseModel):
    """Read-only view of the certificate on disk."""

    exists: bool
    cert_path: Path
    key_path: Path
    created_at: datetime | None = None
    expires_at: datetime | None = None
    is_expired: bool = False
    days_until_expiry: int | None = None
    needs_renewal: bool = True
    error: str | None = None


class CertificateAuthority(Protocol):
    """Produces and parses certificate material."""

    def generate(
        self, subject: CertificateSubject, validity_days: int, now: datetime
    ) -> CertificateMaterial:
        ...

    def inspect(self, cert_pem: bytes, key_pem: bytes) -> tuple[datetime, datetime]:
        """Return (not_before, not_after); raise if unparsable or mismatched."""
        ...


class CryptographyAuthority:
    """Self-signed RSA certificates built with ``cryptography``."""

    KEY_SIZE = 2048
    PUBLIC_EXPONENT = 65537

    def generate(
        self, subject: CertificateSubject, validity_days: int, now: datetime
    ) -> CertificateMaterial:
        private_key = rsa.generate_private_key(
            public_exponent=self.PUBLIC_EXPONENT, key_size=self.KEY_SIZE
        )

        name = x509.Name(
            [
                x509.NameAttribute(NameOID.COMMON_NAME, subject.common_name),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, subject.organization),
                x509.NameAttribute(NameOID.COUNTRY_NAME, subject.country),
            ]
        )

        san_entries: list[x509.GeneralName] = []
        for alt_name in subject.alt_names:
            try:
                san_entries.append(x509.IPAddress(ipaddress.ip_address(alt_name)))
            except ValueError:
                san_entries.append(x509.DNSName(alt_name))

        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=validity_days))
            .add_extension(x509.SubjectAlternativeName(san_entries), critical=False)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(private_key, hashes.SHA256())
        )

        return CertificateMaterial(
            cert_pem=certificate.public_bytes(serialization.Encoding.PEM),
            key_pem=private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            ),
        )

    def inspect(self, cert_pem: bytes, key_pem: bytes) -> tuple[datetime, datetime]:
        certificate = x509.load_pem_x509_certificate(cert_pem)
        private_key = serialization.load_pem_private_key(key_pem, password=None)

        spki = serialization.PublicFormat.SubjectPublicKeyInfo
        cert_public = certificate.public_key().public_bytes(serialization.Encoding.DER, spki)
        key_public = private_key.public_key().public_bytes(serialization.Encoding.DER, spki)
        if cert_public != key_public:
            raise ValueError("Private key does not match certificate")

        return certificate.not_valid_before_utc, certificate.not_valid_after_utc


class CertificateProvisioner:
    """Ensures a valid certificate/key pair exists in the certificate directory.

    Attributes:
        cert_path: Certificate file (PEM)
        key_path: Private key file (PEM, mode 0600)
        validity_days: Lifetime of generated certificates
        renew_before_days: Regenerate when expiry is closer than this
    """

    def __init__(
        self,
        config: Config,
        authority: CertificateAuthority | None = None,
        clock: Clock | None = None,
    ) -> None:
        cert_config = config.certificates
        self.cert_path = config.get_cert_path()
        self.key_path = config.get_key_path()
        self.validity_days = cert_config.validity_days
        self.renew_before_days = cert_config.renew_before_days
        self.subject = CertificateSubject.for_host(
            common_name=cert_config.common_name,
            organization=cert_config.organization,
            country=cert_config.country,
        )
        self.authority: CertificateAuthority = authority or CryptographyAuthority()
        self.clock = clock or SystemClock()

    def _read_existing(self) -> tuple[datetime, datetime]:
        cert_pem = self.cert_path.read_bytes()
        key_pem = self.key_path.read_bytes()
        return self.authority.inspect(cert_pem, key_pem)

    def inspect(self) -> CertificateInfo:
        """Describe the certificate on disk without modifying anything."""
        info = CertificateInfo(
            exists=self.cert_path.is_file() and self.key_path.is_file(),
            cert_path=self.cert_path,
            key_path=self.key_path,
        )
        if not info.exists:
            return info

        try:
            not_before, not_after = self._read_existing()
        except Exception as e:
            return info.model_copy(update={"error": str(e)})

        now = self.clock.now()
        days_left = (not_after - now).days
        return info.model_copy(
            update={
                "created_at": not_before,
                "expires_at": not_after,
                "is_expired": not_after <= now,
                "days_until_expiry": days_left,
                "needs_renewal": not_after - now < timedelta(days=self.renew_before_days),
            }
        )

    def ensure(self) -> CertificateBundle:
        """
        Return a valid certificate bundle, generating one only when needed.

        A pair that parses, matches, and does not expire within
        ``renew_before_days`` is returned as-is with no disk writes.

        Raises:
            CertificateGenerationError: If a new pair cannot be generated or written
        """
        info = self.inspect()
        if info.exists and info.error is None and not info.needs_renewal:
            logger.info(
                "certificate_reused",
                cert_path=str(self.cert_path),
                expires_at=info.expires_at.isoformat() if info.expires_at else None,
                days_until_expiry=info.days_until_expiry,
            )
            return CertificateBundle(
                cert_path=self.cert_path,
                key_path=self.key_path,
                created_at=info.created_at,
                expires_at=info.expires_at,
            )

        reason = (
            "missing"
            if not info.exists
            else "unreadable"
            if info.error
            else "expired"
            if info.is_expired
            else "expiring_soon"
        )
        logger.info(
            "certificate_generation_starting",
            cert_path=str(self.cert_path),
            reason=reason,
            detail=info.error,
            common_name=self.subject.common_name,
        )

        now = self.clock.now()
        try:
            material = self.authority.generate(self.subject, self.validity_days, now)
            not_before, not_after = self.authority.inspect(material.cert_pem, material.key_pem)
            self.cert_path.parent.mkdir(parents=True, exist_ok=True)
            # Key first: a crash between the two writes leaves a mismatched pair,
            # which the next call detects and regenerates.
            self._atomic_write(self.key_path, material.key_pem, mode=0o600)
            self._atomic_write(self.cert_path, material.cert_pem, mode=0o644)
        except Exception as e:
            logger.error(
                "certificate_generation_failed",
                cert_path=str(self.cert_path),
                error=str(e),
            )
            raise CertificateGenerationError(
                f"Failed to generate certificate: {e}",
                cert_path=self.cert_path,
            ) from e

        logger.info(
            "certificate_generated",
            cert_path=str(self.cert_path),
            key_path=str(self.key_path),
            expires_at=not_after.isoformat(),
            validity_days=self.validity_days,
        )
        return CertificateBundle(
            cert_path=self.cert_path,
            key_path=self.key_path,
            created_at=not_before,
            expires_at=not_after,
            generated=True,
        )

    @staticmethod
    def _atomic_write(path: Path, data: bytes, mode: int) -> None:
        temp_path = path.with_name(f".{path.name}.tmp")
        fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_path, mode)
            os.replace(temp_path, path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    def load_ssl_files(self) -> tuple[Path, Path]:
        """Paths to hand to the TLS listener, ensuring they are valid first."""
        bundle = self.ensure()
        return bundle.cert_path, bundle.key_path
