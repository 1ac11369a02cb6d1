"""
Error taxonomy for publishing operations.

Every error carries an ErrorKind discriminant and a context dict so callers
can branch on the kind instead of matching message text.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Discriminant for publish errors."""
    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    TRANSIENT_NETWORK = "transient_network"
    THROTTLING = "throttling"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    REMOTE = "remote"
    UPLOAD_INCOMPLETE = "upload_incomplete"
    INVALID_PATH = "invalid_path"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class FieldError:
    """A single configuration violation."""
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class PublishError(Exception):
    """Base class for all publishing errors."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.context: Dict[str, Any] = dict(context or {})


class ConfigurationError(PublishError):
    """Invalid configuration. Lists every violation at once."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, errors: List[FieldError], message: Optional[str] = None):
        self.errors = list(errors)
        if message is None:
            details = "; ".join(str(error) for error in self.errors)
            message = f"Invalid configuration ({len(self.errors)} error(s)): {details}"
        super().__init__(message, context={"fields": [e.field for e in self.errors]})


class RepositoryResolutionError(ConfigurationError):
    """Site or drive could not be resolved; fatal before any document work."""

    def __init__(self, address: str, reason: str):
        self.address = address
        super().__init__(
            [FieldError("repositoryAddress", reason)],
            message=f"Cannot resolve repository {address}: {reason}",
        )


class AuthenticationError(PublishError):
    """Authentication failed; the current flow must be restarted."""
    kind = ErrorKind.AUTHENTICATION


class TransientNetworkError(PublishError):
    """Timeout, connection failure or 5xx response."""
    kind = ErrorKind.TRANSIENT_NETWORK


class ThrottlingError(PublishError):
    """429/503 response from the remote service."""

    kind = ErrorKind.THROTTLING

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class NotFoundError(PublishError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(PublishError):
    kind = ErrorKind.CONFLICT


class RemoteApiError(PublishError):
    """Any other 4xx answer from the remote API."""
    kind = ErrorKind.REMOTE


class UploadIncompleteError(PublishError):
    """Chunked upload ended without the final byte range being acknowledged."""
    kind = ErrorKind.UPLOAD_INCOMPLETE


class InvalidPathError(PublishError):
    kind = ErrorKind.INVALID_PATH


def describe_exception(exc: BaseException) -> str:
    message = str(exc).strip()
    if message:
        return message
    return f"{type(exc).__name__}: {repr(exc)}"


def error_kind_of(exc: BaseException) -> ErrorKind:
    if isinstance(exc, PublishError):
        return exc.kind
    return ErrorKind.UNEXPECTED
