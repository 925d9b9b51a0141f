"""Common response envelopes shared by every CopyStream endpoint."""

from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel


T = TypeVar("T")


class ApiResponse[T](BaseModel):
    """Standard API response wrapper.

    Attributes:
        success: Whether the request was successful.
        data: The payload (parsed response, checkpoint, stream outcome...).
        message: A human-readable message about the response.
        error: Error details (when success is False).
    """

    success: bool = True
    data: T | None = None
    message: str = "Operation completed successfully"
    error: dict[str, Any] | None = None


class ErrorResponse(ApiResponse[None]):
    """Error envelope produced by ``core.error_handler.global_exception_handler``.

    ``error`` always carries ``correlation_id`` and ``type``; development
    environments may add diagnostic fields.
    """

    success: bool = False
    message: str = "An error occurred"
    error: dict[str, Any] | None = None
