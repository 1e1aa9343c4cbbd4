"""Tests for CertificateProvisioner."""

import ipaddress
import stat
from datetime import datetime

import pytest
from cryptography import x509

from labguard.common.clock import ManualClock
from labguard.common.config import Config
from labguard.core.exceptions import CertificateGenerationError
from labguard.services.certificate_service import (
    CertificateMaterial,
    CertificateProvisioner,
    CertificateSubject,
    CryptographyAuthority,
)


class CountingAuthority(CryptographyAuthority):
    """Real authority that counts how often it generates."""

    def __init__(self):
        self.generated = 0

    def generate(
        self, subject: CertificateSubject, validity_days: int, now: datetime
    ) -> CertificateMaterial:
        self.generated += 1
        return super().generate(subject, validity_days, now)


class BrokenAuthority(CryptographyAuthority):
    def generate(self, subject, validity_days, now):
        raise RuntimeError("entropy pool empty")


@pytest.fixture
def authority() -> CountingAuthority:
    return CountingAuthority()


@pytest.fixture
def provisioner(
    test_config: Config, authority: CountingAuthority, manual_clock: ManualClock
) -> CertificateProvisioner:
    test_config.certificates.common_name = "lab-server"
    return CertificateProvisioner(test_config, authority=authority, clock=manual_clock)


class TestCertificateProvisioner:
    """Tests for generating and reusing the certificate pair."""

    def test_generates_when_missing(self, provisioner: CertificateProvisioner):
        bundle = provisioner.ensure()

        assert bundle.generated
        assert bundle.cert_path.is_file()
        assert bundle.key_path.is_file()
        assert bundle.days_until_expiry(provisioner.clock.now()) == 365

    def test_second_ensure_reuses_pair(
        self, provisioner: CertificateProvisioner, authority: CountingAuthority
    ):
        first = provisioner.ensure()
        cert_bytes = first.cert_path.read_bytes()

        second = provisioner.ensure()

        assert authority.generated == 1
        assert not second.generated
        assert second.cert_path.read_bytes() == cert_bytes
        assert second.expires_at == first.expires_at

    def test_key_is_owner_only(self, provisioner: CertificateProvisioner):
        bundle = provisioner.ensure()

        mode = stat.S_IMODE(bundle.key_path.stat().st_mode)
        assert mode == 0o600
        assert not list(bundle.key_path.parent.glob(".*.tmp"))

    def test_subject_alternative_names(self, provisioner: CertificateProvisioner):
        bundle = provisioner.ensure()

        cert = x509.load_pem_x509_certificate(bundle.cert_path.read_bytes())
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value

        assert "lab-server" in san.get_values_for_type(x509.DNSName)
        assert "localhost" in san.get_values_for_type(x509.DNSName)
        assert ipaddress.ip_address("127.0.0.1") in san.get_values_for_type(x509.IPAddress)
        cn = cert.subject.get_attributes_for_oid(x509.oid.NameOID.COMMON_NAME)[0].value
        assert cn == "lab-server"

    def test_regenerates_near_expiry(
        self,
        provisioner: CertificateProvisioner,
        authority: CountingAuthority,
        manual_clock: ManualClock,
    ):
        first = provisioner.ensure()

        manual_clock.advance(340 * 86400)
        assert provisioner.inspect().needs_renewal
        second = provisioner.ensure()

        assert authority.generated == 2
        assert second.generated
        assert second.expires_at > first.expires_at

    def test_regenerates_mismatched_pair(
        self,
        provisioner: CertificateProvisioner,
        authority: CountingAuthority,
        manual_clock: ManualClock,
    ):
        provisioner.ensure()
        other = CryptographyAuthority().generate(provisioner.subject, 365, manual_clock.now())
        provisioner.key_path.write_bytes(other.key_pem)

        info = provisioner.inspect()
        assert info.error is not None

        bundle = provisioner.ensure()
        assert bundle.generated
        assert authority.generated == 2
        assert provisioner.inspect().error is None

    def test_regenerates_garbage_files(
        self, provisioner: CertificateProvisioner, authority: CountingAuthority
    ):
        provisioner.cert_path.parent.mkdir(parents=True, exist_ok=True)
        provisioner.cert_path.write_text("not a certificate")
        provisioner.key_path.write_text("not a key")

        bundle = provisioner.ensure()

        assert bundle.generated
        assert authority.generated == 1

    def test_generation_failure_raises(self, test_config: Config, manual_clock: ManualClock):
        provisioner = CertificateProvisioner(
            test_config, authority=BrokenAuthority(), clock=manual_clock
        )

        with pytest.raises(CertificateGenerationError) as exc_info:
            provisioner.ensure()

        assert "entropy pool empty" in str(exc_info.value)
        assert not provisioner.cert_path.exists()
        assert not provisioner.key_path.exists()

    def test_inspect_missing(self, provisioner: CertificateProvisioner):
        info = provisioner.inspect()

        assert not info.exists
        assert info.needs_renewal
        assert info.expires_at is None


class TestCertificateSubject:
    def test_for_host_adds_loopback_names(self):
        subject = CertificateSubject.for_host("localhost")

        assert subject.alt_names == ["localhost", "127.0.0.1"]
