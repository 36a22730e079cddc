"""
Error taxonomy.

TransportError and RateLimited are absorbed by the client up to its retry
budget, AuthError triggers one token refresh before surfacing, CacheError wraps
whatever the fetch raised, ValidationError is fatal.
"""

from __future__ import annotations
from typing import Any, Optional

from .constants import RETRYABLE_STATUSES


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUSES


class MonitorError(Exception):
    """Base class for everything raised by saving_monitor."""


class APIError(MonitorError):
    def __init__(
        self,
        status: int,
        endpoint: str,
        message: str,
        *,
        retryable: Optional[bool] = None,
    ):
        self.status = status
        self.endpoint = endpoint
        self.message = message
        self.retryable = is_retryable_status(status) if retryable is None else retryable
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"API error ({self.status}) at {self.endpoint}: {self.message}"
        if self.__cause__ is not None:
            return f"{base} (caused by: {self.__cause__})"
        return base


class TransportError(APIError):
    """Connection failure or timeout after the retry budget was spent."""

    def __init__(self, endpoint: str, message: str):
        super().__init__(0, endpoint, message, retryable=True)


class RateLimited(APIError):
    """429/5xx still returned after the retry budget was spent."""

    def __init__(self, status: int, endpoint: str, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(status, endpoint, message, retryable=True)


class AuthError(MonitorError):
    def __init__(self, message: str, code: str = ""):
        self.code = code
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.code:
            return f"authentication error [{self.code}]: {self.message}"
        return f"authentication error: {self.message}"


class CacheError(MonitorError):
    def __init__(self, kind: str, operation: str, cause: BaseException):
        self.kind = kind
        self.operation = operation
        self.cause = cause
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"cache error for {self.kind} during {self.operation}: {self.cause}"


class ValidationError(MonitorError):
    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.value = value
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.value is not None:
            return f"validation error for {self.field} (value: {self.value}): {self.message}"
        return f"validation error for {self.field}: {self.message}"


class SessionError(MonitorError):
    def __init__(self, session_id: Any, operation: str, cause: BaseException | str):
        self.session_id = session_id
        self.operation = operation
        self.cause = cause
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.session_id not in (None, ""):
            return f"session error [{self.session_id}] during {self.operation}: {self.cause}"
        return f"session error during {self.operation}: {self.cause}"


class StateError(MonitorError):
    """State file exists but could not be read or parsed."""
