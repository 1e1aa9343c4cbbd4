"""FastAPI web API and transport bootstrap for LabGuard."""

from .main import create_app
from .settings import APISettings

__all__ = [
    "create_app",
    "APISettings",
]
