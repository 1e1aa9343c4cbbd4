"""Service layer for the persistence-safety subsystem.

Example:
    >>> from labguard.services import build_services
    >>>
    >>> services = build_services(config.resolve_paths())
    >>> await services.start()
    >>> record = await services.backup_scheduler.trigger()
    >>> await services.shutdown()
"""

from .backup_service import BackupOverview, BackupScheduler
from .certificate_service import (
    CertificateAuthority,
    CertificateBundle,
    CertificateInfo,
    CertificateMaterial,
    CertificateProvisioner,
    CertificateSubject,
    CryptographyAuthority,
)
from .container import SafetyServices, build_services
from .integrity_service import IntegrityChecker, IntegrityOverview

__all__ = [
    # Scheduling
    "BackupOverview",
    "BackupScheduler",
    "IntegrityChecker",
    "IntegrityOverview",
    # Certificates
    "CertificateAuthority",
    "CertificateBundle",
    "CertificateInfo",
    "CertificateMaterial",
    "CertificateProvisioner",
    "CertificateSubject",
    "CryptographyAuthority",
    # Wiring
    "SafetyServices",
    "build_services",
]
