"""Error taxonomy for the indexing and query paths."""

from __future__ import annotations


class MessageSearchError(Exception):
    """Base exception for all message search errors."""

    def __init__(self, message: str, code: str | None = None) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        super().__init__(self.message)


class InvalidInputError(MessageSearchError):
    """Bad query or text; never retried."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="invalid_input")


class EmptyInputError(InvalidInputError):
    """Text is empty after trimming."""


class PermissionDeniedError(MessageSearchError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="permission_denied")


class MessageNotFoundError(MessageSearchError):
    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(f"message not found: {message_id}", code="not_found")


class DependencyError(MessageSearchError):
    """An external dependency call failed."""

    def __init__(self, message: str, *, dependency: str, code: str) -> None:
        self.dependency = dependency
        super().__init__(message, code=code)


class TransientError(DependencyError):
    """Timeout, rate-limit or 5xx-class failure; retried per policy."""

    def __init__(self, message: str, *, dependency: str, reason: str) -> None:
        self.reason = reason
        super().__init__(message, dependency=dependency, code="transient")


class PermanentDependencyError(DependencyError):
    """Malformed request or auth failure; fails without retry."""

    def __init__(self, message: str, *, dependency: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message, dependency=dependency, code="dependency_error")


class DependencyUnavailableError(MessageSearchError):
    """The circuit for a dependency is open; no call was attempted."""

    def __init__(self, dependency: str) -> None:
        self.dependency = dependency
        super().__init__(f"{dependency} temporarily unavailable", code="unavailable")


class DeadlineExceededError(MessageSearchError):
    """The operation ran out of time (or was cancelled) mid-flight."""

    def __init__(self, message: str = "deadline exceeded", *, cancelled: bool = False) -> None:
        self.cancelled = cancelled
        super().__init__(message, code="deadline_exceeded")


class OverloadedError(MessageSearchError):
    """The indexing queue is full; the caller must redeliver."""

    def __init__(self, message: str = "indexing queue is full") -> None:
        super().__init__(message, code="overloaded")


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransientError)
