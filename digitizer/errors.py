"""
Error taxonomy for the digitizer.

Every failure the core raises on purpose is one of the kinds below. Tables
keyed by ErrorKind (retry decisions, HTTP codes) must cover every member.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    EXTERNAL_SERVICE = "EXTERNAL_SERVICE"
    INFRA_CONNECT = "INFRA_CONNECT"


class DigitizerError(Exception):
    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DigitizerError):
    kind = ErrorKind.VALIDATION


class NotFoundError(DigitizerError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} with ID '{identifier}' not found.")
        self.resource = resource
        self.identifier = identifier


class ConflictError(DigitizerError):
    kind = ErrorKind.CONFLICT


class LeaseLostError(ConflictError):
    """The caller no longer holds the lease on an active job."""

    def __init__(self, job_id: str):
        super().__init__(f"Lease on job '{job_id}' is no longer held by this worker.")
        self.job_id = job_id


class ExternalServiceError(DigitizerError):
    kind = ErrorKind.EXTERNAL_SERVICE

    def __init__(self, service_name: str, message: str = "An error occurred"):
        super().__init__(f"[{service_name}]: {message}")
        self.service_name = service_name


class InfraConnectError(DigitizerError):
    kind = ErrorKind.INFRA_CONNECT


# HTTP status for each kind, used by whatever transport sits in front.
HTTP_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.EXTERNAL_SERVICE: 502,
    ErrorKind.INFRA_CONNECT: 503,
}


def http_status_for(kind: ErrorKind) -> int:
    return HTTP_STATUS_BY_KIND[kind]
