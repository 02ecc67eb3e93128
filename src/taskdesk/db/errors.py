"""
Taskdesk - Backend error types and result shape.

Every expected failure is returned as a BackendResult with `error` set,
never raised. Only programming misuse (QueryStateError) raises.
"""

from dataclasses import dataclass
from typing import Any


class BackendError(Exception):
    """Uniform error shape: message, status, optional store type and code."""

    default_status: int | None = None

    def __init__(
        self,
        message: str,
        status: int | None = None,
        type: str | None = None,
        code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status if status is not None else self.default_status
        self.type = type
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "status": self.status,
            "type": self.type,
            "code": self.code,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status={self.status})"


class ConfigurationError(BackendError):
    """Missing endpoint, project, database or collection mapping."""

    default_status = 500


class AuthorizationError(BackendError):
    """Rejected by the access guard."""

    default_status = 403


class CardinalityError(BackendError):
    """single()/maybe_single() saw the wrong number of rows."""

    default_status = 406


class TransportError(BackendError):
    """Non-2xx response from the store, or status 0 for network failure."""


class QueryStateError(RuntimeError):
    """A query builder was modified after execution started."""


@dataclass
class BackendResult:
    """Result of any backend call: `data` on success, `error` otherwise."""

    data: Any = None
    error: BackendError | None = None
    count: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def error_from_response(payload: Any, status: int) -> TransportError:
    """Normalize an Appwrite error body into a TransportError."""
    fallback = f"Backend request failed with status {status}."
    if isinstance(payload, dict):
        message = payload.get("message")
        code = payload.get("code")
        return TransportError(
            message if isinstance(message, str) else fallback,
            status=status,
            type=payload.get("type"),
            code=code if isinstance(code, int) and not isinstance(code, bool) else status,
        )
    return TransportError(fallback, status=status)


def auth_config_error() -> ConfigurationError:
    return ConfigurationError(
        "Appwrite auth is not configured. Set APPWRITE_ENDPOINT and APPWRITE_PROJECT_ID."
    )


def database_config_error() -> ConfigurationError:
    return ConfigurationError(
        "Appwrite database is not configured. Set APPWRITE_DATABASE_ID and collection settings."
    )


def missing_collection_error(table: str) -> ConfigurationError:
    return ConfigurationError(f'No Appwrite collection configured for table "{table}".')
