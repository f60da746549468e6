"""Shared HTTP and parsing helpers for forge clients.

Every provider client sends its requests through ForgeHttpClient, so the
error taxonomy and the rate-limit cool-down behave the same on every forge.
"""

import threading
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import StrEnum
from typing import Any

import httpx

from forgestatus.forges.protocol import (
    AuthError,
    ConfigParseError,
    FetchError,
    NotFoundError,
    ParseError,
    RateLimitedError,
    TransientError,
)
from forgestatus.logging_config import get_logger

logger = get_logger(__name__)

USER_AGENT = "forgestatus"


class ForgeAuthType(StrEnum):
    """How a client presents its token."""

    PRIVATE_TOKEN = "private_token"  # GitLab
    BEARER = "bearer"  # GitHub, Woodpecker
    TOKEN = "token"  # Forgejo / Gitea
    DISABLED = "disabled"


def auth_headers(auth_type: ForgeAuthType, token: str) -> dict[str, str]:
    """Build the authentication header for a token."""
    match auth_type:
        case ForgeAuthType.PRIVATE_TOKEN:
            return {"PRIVATE-TOKEN": token}
        case ForgeAuthType.BEARER:
            return {"Authorization": f"Bearer {token}"}
        case ForgeAuthType.TOKEN:
            return {"Authorization": f"token {token}"}
    return {}


# --- Response classification ---


class ResponseClass(StrEnum):
    SUCCESS = "success"
    AUTH_ERROR = "auth_error"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


def classify_response(response: httpx.Response) -> ResponseClass:
    """Classify a forge response into the shared error taxonomy."""
    code = response.status_code
    if response.is_success:
        return ResponseClass.SUCCESS
    if code in (429, 503):
        return ResponseClass.RATE_LIMITED
    # GitHub reports exhausted primary rate limits as 403
    if code == 403 and response.headers.get("x-ratelimit-remaining") == "0":
        return ResponseClass.RATE_LIMITED
    if code in (401, 403):
        return ResponseClass.AUTH_ERROR
    if code == 404:
        return ResponseClass.NOT_FOUND
    if code == 408 or code >= 500:
        return ResponseClass.SERVER_ERROR
    return ResponseClass.UNKNOWN


def parse_retry_after(response: httpx.Response) -> float | None:
    """Seconds the forge asked us to wait, from Retry-After or X-RateLimit-Reset."""
    retry_after = response.headers.get("retry-after")
    if retry_after:
        try:
            return max(float(retry_after), 0.0)
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(retry_after)
        except (TypeError, ValueError):
            when = None
        if when is not None:
            return max((when - datetime.now(UTC)).total_seconds(), 0.0)

    reset = response.headers.get("x-ratelimit-reset")
    if reset:
        try:
            return max(float(reset) - time.time(), 0.0)
        except ValueError:
            pass
    return None


def check_forge_response(response: httpx.Response, forge_name: str) -> httpx.Response:
    """Return the response if successful, otherwise raise the matching FetchError."""
    kind = classify_response(response)
    if kind is ResponseClass.SUCCESS:
        return response

    code = response.status_code
    message = f"{forge_name} API error: {code} - {response.text[:200]}"
    match kind:
        case ResponseClass.AUTH_ERROR:
            raise AuthError(message, code)
        case ResponseClass.NOT_FOUND:
            raise NotFoundError(message, code)
        case ResponseClass.RATE_LIMITED:
            raise RateLimitedError(message, code, retry_after=parse_retry_after(response))
        case ResponseClass.SERVER_ERROR:
            raise TransientError(message, code)
    raise FetchError(message, code)


# --- Rate-limit cool-down ---


class Cooldown:
    """Rate-limit window owned by one forge client.

    While active, the client refuses to send requests. The lock covers
    only the read-modify-write of the window end.
    """

    def __init__(
        self, default_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._default_seconds = default_seconds
        self._clock = clock
        self._until = 0.0
        self._lock = threading.Lock()

    def record(self, seconds: float | None = None) -> float:
        """Open (or extend) the window. Returns its length in seconds."""
        window = self._default_seconds if seconds is None else seconds
        with self._lock:
            self._until = max(self._until, self._clock() + window)
        return window

    def reset(self) -> None:
        with self._lock:
            self._until = 0.0

    @property
    def remaining(self) -> float:
        return max(self._until - self._clock(), 0.0)

    @property
    def active(self) -> bool:
        return self.remaining > 0


class ForgeHttpClient:
    """Pooled HTTP client for one forge, with auth, cool-down and error mapping."""

    def __init__(
        self,
        forge_name: str,
        base_url: str,
        auth_type: ForgeAuthType,
        token: str,
        *,
        extra_headers: Mapping[str, str] | None = None,
        timeout: float = 10.0,
        cooldown_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.forge_name = forge_name
        self.cooldown = Cooldown(cooldown_seconds)

        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        headers.update(auth_headers(auth_type, token))
        if extra_headers:
            headers.update(extra_headers)

        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def get(self, path: str, params: Mapping[str, Any] | None = None) -> httpx.Response:
        """GET a path relative to the base URL, raising FetchError on failure."""
        remaining = self.cooldown.remaining
        if remaining > 0:
            raise RateLimitedError(
                f"{self.forge_name} rate limit cool-down active", retry_after=remaining
            )

        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise TransientError(f"{self.forge_name} request timed out: {path}") from e
        except httpx.HTTPError as e:
            raise TransientError(f"Failed to reach {self.forge_name}: {e}") from e

        try:
            return check_forge_response(response, self.forge_name)
        except RateLimitedError as e:
            window = self.cooldown.record(e.retry_after)
            logger.warning(
                "Forge rate limited, cooling down",
                forge=self.forge_name,
                status_code=e.status_code,
                cooldown_seconds=round(window, 1),
            )
            raise

    async def get_json(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        response = await self.get(path, params)
        try:
            return response.json()
        except ValueError as e:
            raise ParseError(f"Failed to parse {self.forge_name} response from {path}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


def require_field(
    data: Any, *path: str, forge_name: str, expected: type | None = None
) -> Any:
    """Read a required nested field from a JSON payload.

    Raises ParseError naming the missing field rather than KeyError/TypeError,
    and when `expected` is given, naming a field of the wrong JSON type.
    """
    name = ".".join(path)
    current = data
    for key in path:
        if not isinstance(current, dict) or key not in current:
            raise ParseError(f"{forge_name} response missing field '{name}'")
        current = current[key]
    if expected is not None:
        # JSON booleans are Python ints
        if not isinstance(current, expected) or (expected is int and isinstance(current, bool)):
            raise ParseError(
                f"{forge_name} response field '{name}' is not {expected.__name__}: {current!r:.50}"
            )
    return current


# --- URL / id parsing ---


def strip_path_from_url(url: str) -> str:
    """Reduce a URL to scheme://host. Values without a scheme come back trimmed."""
    trimmed = url.strip().rstrip("/")
    scheme, sep, rest = trimmed.partition("://")
    if not sep:
        return trimmed
    host = rest.split("/", 1)[0]
    if not host:
        raise ConfigParseError(url, trimmed, "URL has no host")
    return f"{scheme}://{host}"


def _split_remote(repo_url: str) -> tuple[str, str]:
    """Split a clone/web URL into (host, path)."""
    url = repo_url.strip()
    if not url:
        raise ConfigParseError(repo_url, "", "repository URL is empty")

    # SSH format: git@host:owner/repo.git
    if "://" not in url and url.startswith("git@"):
        host, sep, path = url.removeprefix("git@").partition(":")
        if not sep:
            raise ConfigParseError(repo_url, url, "SSH URL has no ':' before the path")
        return host, path

    scheme, sep, rest = url.partition("://")
    if not sep:
        raise ConfigParseError(repo_url, url, "URL has no scheme")
    if scheme not in ("http", "https", "ssh"):
        raise ConfigParseError(repo_url, scheme, "unsupported URL scheme")
    host, _, path = rest.partition("/")
    host = host.rsplit("@", 1)[-1]
    if not host:
        raise ConfigParseError(repo_url, rest, "URL has no host")
    return host, path


def parse_repo_path(repo_url: str) -> tuple[str, str]:
    """Parse a repository URL into (owner/namespace, repo).

    Supports:
      - https://github.com/owner/repo
      - https://gitlab.com/group/subgroup/project.git
      - git@codeberg.org:owner/repo.git
      - ssh://git@gitlab.example.com/group/project.git

    For nested groups returns ("group/subgroup", "project"). GitLab's
    "/-/" route suffix (e.g. .../project/-/merge_requests) is ignored.
    """
    _, path = _split_remote(repo_url)
    path = path.split("/-/", 1)[0].strip("/").removesuffix(".git")
    namespace, sep, name = path.rpartition("/")
    if not sep or not namespace:
        raise ConfigParseError(repo_url, path or "/", "expected '<owner>/<repo>' in the path")
    if not name:
        raise ConfigParseError(repo_url, path, "repository name is empty")
    if any(not segment for segment in namespace.split("/")):
        raise ConfigParseError(repo_url, namespace, "empty path segment")
    return namespace, name


def remote_web_base(repo_url: str) -> str:
    """scheme://host for a repository URL; SSH remotes map to https."""
    url = repo_url.strip()
    if url.startswith(("http://", "https://")):
        return strip_path_from_url(url)
    host, _ = _split_remote(url)
    return f"https://{host.split(':', 1)[0]}"


def parse_service_id(value: str, domain: str) -> str:
    """Extract a provider-native id from a configured value.

    A URL on `domain` yields its last path segment
    (https://ci.codeberg.org/repos/1234 -> "1234"); anything else is
    returned trimmed.
    """
    trimmed = value.strip()
    if domain and domain in trimmed:
        segment = trimmed.rstrip("/").rsplit("/", 1)[-1]
        if not segment or segment == domain:
            raise ConfigParseError(value, trimmed, f"no id after '{domain}'")
        return segment
    if not trimmed:
        raise ConfigParseError(value, "", "id is empty")
    return trimmed
