"""
Forge client protocol and error taxonomy.

Defines the ForgeClient Protocol that the GitHub, GitLab and Codeberg
clients conform to. The orchestrator works against this interface, not
specific providers.
"""

from enum import StrEnum
from typing import Protocol, runtime_checkable

from forgestatus.models import PullRequestStatus

# --- Exceptions ---


class ForgeError(Exception):
    """Base exception for forge client operations."""


class ForgeConnectionError(ForgeError):
    """Raised when a forge's base URL or credentials are unusable.

    Surfaced at configuration time. Fatal to that forge's setup, never to
    the process.
    """


class ConfigParseError(ForgeError):
    """Raised when a configured repository URL or id cannot be parsed."""

    def __init__(self, value: str, segment: str, reason: str) -> None:
        self.value = value
        self.segment = segment
        super().__init__(f"Cannot parse '{value}': {reason} (at '{segment}')")


class FetchErrorKind(StrEnum):
    AUTH = "auth"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    PARSE = "parse"
    UNKNOWN = "unknown"


class FetchError(ForgeError):
    """Raised when one branch's status could not be fetched.

    Always recoverable: the orchestrator keeps the branch's previous value.
    """

    kind = FetchErrorKind.UNKNOWN

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class AuthError(FetchError):
    kind = FetchErrorKind.AUTH


class NotFoundError(FetchError):
    kind = FetchErrorKind.NOT_FOUND


class RateLimitedError(FetchError):
    """The forge asked us to back off. `retry_after` is in seconds, if sent."""

    kind = FetchErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, status_code)


class TransientError(FetchError):
    kind = FetchErrorKind.TRANSIENT


class ParseError(FetchError):
    kind = FetchErrorKind.PARSE


# --- Protocol ---


@runtime_checkable
class ForgeClient(Protocol):
    """Interface for one repository on one forge.

    Clients are built once per repository configuration and reused across
    poll cycles, so they own their HTTP connection pool and rate-limit
    state.
    """

    name: str

    @property
    def in_cooldown(self) -> bool:
        """True while the forge's rate-limit window is open."""
        ...

    async def test_connection(self) -> None:
        """Verify base URL and credentials. Raises ForgeConnectionError."""
        ...

    async def fetch_pull_request_status(self, branch: str) -> PullRequestStatus:
        """Resolve the request and pipeline state for a branch.

        Returns a 'none' status when no request exists. Raises FetchError.
        """
        ...

    async def aclose(self) -> None:
        """Release the HTTP connection pool."""
        ...
