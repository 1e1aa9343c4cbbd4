"""Response envelope shared by every JSON endpoint."""

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """
    Standard response wrapper.

    Example:
        {"success": true, "data": {...}}
        {"success": false, "error": "Backup failed: ...", "data": {...}}
    """

    success: bool = Field(description="Whether the operation succeeded")
    data: Optional[T] = Field(default=None, description="Operation result")
    error: Optional[str] = Field(default=None, description="Error message when success is false")

    @classmethod
    def ok(cls, data: T) -> "ApiResponse[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, data: Optional[T] = None) -> "ApiResponse[T]":
        return cls(success=False, error=error, data=data)
