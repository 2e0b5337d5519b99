"""
Error taxonomy shared by the job service.

Every error the coordinator raises deliberately is a ``ServiceError``. Each
subclass fixes the HTTP status it maps to, and ``main.py`` converts them into
the ``{"detail": ...}`` JSON body FastAPI uses for ``HTTPException``.
"""

from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ServiceError):
    """Malformed or missing input."""

    status_code = 400


class DuplicateAssetError(ValidationError):
    """A job already references the same source asset (or handle)."""


class Unauthorized(ServiceError):
    status_code = 401


class Forbidden(ServiceError):
    status_code = 403


class NotFound(ServiceError):
    status_code = 404


class ConfigurationError(ServiceError):
    """Credentials or settings required for the operation are missing."""

    status_code = 500


class UpstreamError(ServiceError):
    """The generation service rejected or failed a request.

    ``status_code`` is the upstream HTTP status when one was received so it
    can be passed through to the caller.
    """

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        if status_code is None or status_code < 400:
            status_code = 500
        super().__init__(detail, status_code)


class PersistenceError(ServiceError):
    """The job store could not be read or written."""

    status_code = 500


class RelocationError(ServiceError):
    """The generated asset could not be copied to durable storage."""

    status_code = 502
