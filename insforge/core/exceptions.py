"""Exception classes raised by the SDK."""

from __future__ import annotations

from typing import Any


class InsforgeException(Exception):
    """Base SDK exception.

    All custom exceptions inherit from this class so callers can catch
    every SDK failure with a single ``except`` clause.

    Attributes:
        message: Human-readable error message.
        extra: Additional context-specific information about the error.
    """

    def __init__(self, message: str, extra: dict[str, Any] | None = None) -> None:
        """Initialize SDK exception.

        Args:
            message: Human-readable error message.
            extra: Additional context about the error.
        """
        self.message = message
        self.extra = extra or {}
        super().__init__(message)


class InsforgeHttpException(InsforgeException):
    """Exception raised when the backend answers with a non-2xx status.

    Example:
        raise InsforgeHttpException(
            status_code=404,
            error="CHANNEL_NOT_FOUND",
            message="Channel abc123 not found",
        )
    """

    def __init__(
        self,
        status_code: int,
        error: str | None,
        message: str,
        next_actions: str | None = None,
    ) -> None:
        """Initialize HTTP exception.

        Args:
            status_code: HTTP status code returned by the backend.
            error: Machine-readable error code from the response body.
            message: Human-readable error message.
            next_actions: Optional remediation hint from the backend.
        """
        self.status_code = status_code
        self.error = error
        self.next_actions = next_actions
        super().__init__(
            message,
            extra={"status_code": status_code, "error": error},
        )


class InsforgeNetworkException(InsforgeException):
    """Exception raised when an HTTP request could not be completed."""


class RealtimeException(InsforgeException):
    """Base class for realtime errors."""


class RealtimeConnectionError(RealtimeException):
    """Exception raised when the realtime socket cannot be opened or is lost."""


class NotConnectedError(RealtimeException):
    """Exception raised when an operation needs an open socket and there is none."""


class ChannelStateError(RealtimeException):
    """Exception raised when a channel operation is invalid in its current status."""


class ChannelJoinError(RealtimeException):
    """Exception raised when the server rejects a channel join.

    Example:
        raise ChannelJoinError(
            code="UNAUTHORIZED",
            message="Not allowed to join room-1",
            topic="room-1",
        )
    """

    def __init__(self, code: str, message: str, topic: str | None = None) -> None:
        """Initialize join error.

        Args:
            code: Error code reported by the server.
            message: Error message reported by the server.
            topic: Topic of the channel that failed to join.
        """
        self.code = code
        self.topic = topic
        super().__init__(message, extra={"code": code, "topic": topic})
