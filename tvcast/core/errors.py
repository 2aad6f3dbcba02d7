"""
Error taxonomy and result container for outbound cast operations.

Operations that talk to remote devices (connect, send_command,
get_playback_state, discover) never raise across the component boundary;
they return a Result holding either a value or one of the errors below.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class CastError(Exception):
    """Base exception for cast control failures."""

    pass


class DeviceNotFoundError(CastError):
    """No open session (or no registry entry) for the requested device."""

    def __init__(self, device_id: str = "") -> None:
        super().__init__(f"Device not found: {device_id}" if device_id else "Device not found")
        self.device_id = device_id


class ConnectionFailedError(CastError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Connection failed: {reason}")
        self.reason = reason


class CommandFailedError(CastError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Command failed: {reason}")
        self.reason = reason


class OperationTimeoutError(CastError):
    def __init__(self, operation: str = "operation") -> None:
        super().__init__(f"{operation} timed out")
        self.operation = operation


class InvalidResponseError(CastError):
    pass


class UnsupportedFormatError(CastError):
    pass


class AuthenticationRequiredError(CastError):
    pass


class NetworkError(CastError):
    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Network error: {cause}")
        self.cause = cause


@dataclass(frozen=True)
class Result(Generic[T]):
    """Explicit success/failure outcome of an outbound operation."""

    value: T | None = None
    error: CastError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: CastError) -> Result[T]:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T | None:
        """Return the value, raising the stored error on failure."""
        if self.error is not None:
            raise self.error
        return self.value

    def __bool__(self) -> bool:
        return self.ok
