"""Pydantic schemas for the HTTP API."""

from .backup import HealthResponse, SafetyStatusResponse
from .common import ApiResponse

__all__ = [
    "ApiResponse",
    "HealthResponse",
    "SafetyStatusResponse",
]
