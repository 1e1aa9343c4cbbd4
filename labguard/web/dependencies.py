"""FastAPI dependency injection for the safety services."""

import structlog
from fastapi import Request

from labguard.services import BackupScheduler, IntegrityChecker, SafetyServices

from .settings import APISettings, get_settings

logger = structlog.get_logger(__name__)


def get_services(request: Request) -> SafetyServices:
    """
    Dependency that provides the services attached by ``create_app``.

    Example:
        @router.get("/status")
        async def status(services: SafetyServices = Depends(get_services)):
            ...
    """
    return request.app.state.services


def get_backup_scheduler(request: Request) -> BackupScheduler:
    return get_services(request).backup_scheduler


def get_integrity_checker(request: Request) -> IntegrityChecker:
    return get_services(request).integrity_checker


def get_api_settings(request: Request) -> APISettings:
    """
    Dependency that provides API settings.

    Returns:
        Settings the app was created with, or the cached environment settings
    """
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else get_settings()
