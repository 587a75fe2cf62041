"""Error taxonomy shared by the registry client, the sync engine and the API."""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classification of a failure, derived once from the transport outcome."""

    AUTHENTICATION = "authentication"
    ACCESS_DENIED = "access_denied"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    BAD_REQUEST = "bad_request"
    SERVER = "server"
    NETWORK = "network"
    TIMEOUT = "timeout"
    INTERNAL = "internal"

    @classmethod
    def from_status(cls, status_code: int) -> "ErrorKind":
        """Map an HTTP status code from the registry to an error kind."""
        if status_code == 401:
            return cls.AUTHENTICATION
        if status_code == 403:
            return cls.ACCESS_DENIED
        if status_code == 404:
            return cls.NOT_FOUND
        if status_code == 429:
            return cls.RATE_LIMITED
        if status_code >= 500:
            return cls.SERVER
        return cls.BAD_REQUEST


class RegistryError(Exception):
    """Base class for every error raised by the sync subsystem."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(RegistryError):
    """Credentials were rejected, missing, or could not be refreshed."""

    kind = ErrorKind.AUTHENTICATION


class NotFoundError(RegistryError):
    """A remote entity or a local configuration does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, identifier: Any, resource: str = "Group"):
        super().__init__(f"{resource} not found: {identifier}")
        self.identifier = identifier
        self.resource = resource


class AccessDeniedError(RegistryError):
    """The registry refused access to the requested organization (HTTP 403)."""

    kind = ErrorKind.ACCESS_DENIED

    def __init__(self, organization_ids: list | None = None, message: str | None = None):
        self.organization_ids = list(organization_ids or [])
        if message is None:
            if self.organization_ids:
                orgs = ", ".join(str(o) for o in self.organization_ids)
                message = f"Access denied for organization(s): {orgs}"
            else:
                message = "Access denied by the remote registry"
        super().__init__(message)


class ValidationError(RegistryError):
    """A request to this subsystem was malformed."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(message)
        self.errors = errors or []


class ConflictError(RegistryError):
    """A sync is already running for the organization."""

    kind = ErrorKind.CONFLICT


class NetworkError(RegistryError):
    """The registry could not be reached."""

    kind = ErrorKind.NETWORK


class RateLimitError(RegistryError):
    """The registry's API call quota was exhausted (HTTP 429)."""

    kind = ErrorKind.RATE_LIMITED


class RemoteRequestError(RegistryError):
    """The registry answered with a non-success status not covered above."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code
        self.kind = ErrorKind.from_status(status_code)


class ConfigurationError(RegistryError):
    """Server-side configuration needed for the operation is missing."""

    kind = ErrorKind.INTERNAL
