"""
Base service error and FastAPI handler registration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from fastapi import FastAPI, Request
    from fastapi.responses import JSONResponse
    from starlette.types import ExceptionHandler


class ServiceError(Exception):
    """
    Error that maps directly onto an HTTP error response.

    Attributes:
        error: Machine-readable error code (e.g. "JOB_NOT_FOUND")
        message: Human-readable description
        status_code: HTTP status code for the response
        details: Extra structured context for the caller
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, Any] = details if details is not None else {}

    def to_dict(self) -> dict[str, Any]:
        """Response body for this error."""
        return {"error": self.error, "message": self.message, "details": self.details}


def register_exception_handlers(
    app: FastAPI,
    error_class: type[ServiceError],
    service_error_handler: Callable[[Request, Any], Awaitable[JSONResponse]],
    unhandled_exception_handler: Callable[[Request, Exception], Awaitable[JSONResponse]],
) -> None:
    """Attach the service error and catch-all handlers to an app."""
    app.add_exception_handler(error_class, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(Exception, cast("ExceptionHandler", unhandled_exception_handler))
