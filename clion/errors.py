"""
Exception hierarchy for clion.

Per-inclusion problems (sandbox, exclusion, read failures) are rendered
inline by the context builder and only surface as exceptions inside it.
Everything else propagates to the caller, which decides how to present
it.  Nothing in the library terminates the process.
"""

from __future__ import annotations

from typing import Any, Optional


class ClionError(Exception):
    """Base class for all clion errors."""


class SandboxViolationError(ClionError):
    """A file reference escapes the project root or does not exist."""


class ExcludedByPolicyError(ClionError):
    """A file reference matched an exclude pattern."""


class ReadFailureError(ClionError):
    """A referenced file could not be read."""


class SessionNotFoundError(ClionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionHierarchyError(ClionError, ValueError):
    """Raised when a parent/child change would create a cycle."""


class SessionConflictError(ClionError):
    """The stored session changed since it was loaded (lost update)."""


class RequestError(ClionError):
    """Base class for terminal request failures.  Never retried."""


class TransportError(RequestError):
    """Network failure or timeout before a response was received."""


class HTTPStatusError(RequestError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code


class ProviderAPIError(RequestError):
    def __init__(self, message: str, code: Optional[Any] = None) -> None:
        super().__init__(f"API error: {message}")
        self.code = code


class ResponseParseError(RequestError):
    """The provider answered with JSON we could not interpret."""


class UserDeclinedError(ClionError):
    """The user rejected an over-limit request at the confirmation prompt.

    Kept outside `RequestError` so callers can tell a refusal from a
    transport problem and skip any retry prompt.
    """
