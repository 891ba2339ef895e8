"""Error taxonomy shared by services and the HTTP layer."""

from __future__ import annotations

from typing import Any


class CatalogError(Exception):
    """Base class for catalog errors that includes an HTTP status code."""

    status_code: int = 500
    message: str = "An unexpected error occurred."

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload or {}

    def to_dict(self) -> dict[str, Any]:
        data = {"error": self.message}
        data.update(self.payload)
        return data


class ValidationError(CatalogError):
    status_code = 400
    message = "Invalid request."


class NotFoundError(CatalogError):
    status_code = 404
    message = "Resource not found."


class ConflictError(CatalogError):
    status_code = 409
    message = "Conflict detected."

    def __init__(
        self,
        message: str | None = None,
        *,
        progress: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(payload or {})
        if progress is not None:
            merged["progress"] = progress
        super().__init__(message, payload=merged)
        self.progress = progress


class ExhaustedOptionsError(CatalogError):
    """Every candidate for a game has already been tried."""

    status_code = 409
    message = "No more options available."


class ProviderError(CatalogError):
    """An external service failed after retries or returned an unusable reply."""

    status_code = 502
    message = "Upstream service unavailable."

    def __init__(
        self,
        message: str | None = None,
        *,
        provider: str = "",
        status: int | None = None,
        url: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {}
        if provider:
            payload["provider"] = provider
        if status is not None:
            payload["status"] = status
        super().__init__(message, payload=payload)
        self.provider = provider
        self.status = status
        self.url = url


__all__ = [
    "CatalogError",
    "ConflictError",
    "ExhaustedOptionsError",
    "NotFoundError",
    "ProviderError",
    "ValidationError",
]
