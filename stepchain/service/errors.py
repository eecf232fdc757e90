from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Callers only ever see ``{"message": ...}`` and the HTTP status, so each
    subclass pins the status code its failure class is reported with:
    - ConfigurationError (400): missing credential, unknown provider, malformed request
    - NotFoundError (404)
    - StepConflictError / IllegalTransitionError (409)
    - PersistenceError (500): execution context could not be written
    - UpstreamError / TransportError (502): provider failed or was unreachable
    """

    status_code: int = 400

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400


class ConfigurationError(ServiceError):
    """Missing credential, unknown provider or malformed request (400). Never retried."""
    status_code = 400


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404


class StepConflictError(ServiceError):
    """A step is not in the state the operation requires (409)."""
    status_code = 409


class IllegalTransitionError(StepConflictError):
    """A status or mode change is not in the transition table (409)."""
    pass


class UpstreamError(ServiceError):
    """Provider answered with a non-2xx status (502)."""
    status_code = 502


class TransportError(ServiceError):
    """Connection-level failure talking to the provider (502)."""
    status_code = 502


class PersistenceError(ServiceError):
    """A store write failed (500)."""
    status_code = 500


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConfigurationError",
    "NotFoundError",
    "StepConflictError",
    "IllegalTransitionError",
    "UpstreamError",
    "TransportError",
    "PersistenceError",
]
