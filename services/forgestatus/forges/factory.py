"""Forge client factory.

Builds the client for a repository from its configuration. Missing
configuration is a valid steady state and yields a no-op client; malformed
configuration yields a client that fails its connection test, so neither
ever aborts startup.
"""

from collections.abc import Iterable
from urllib.parse import urlsplit

import httpx

from forgestatus.config import CIBackendKind, ForgeProvider, PollerConfig, RepositoryConfig
from forgestatus.forges.codeberg import CodebergClient
from forgestatus.forges.github import GitHubClient
from forgestatus.forges.gitlab import GitLabClient
from forgestatus.forges.helpers import (
    ForgeAuthType,
    parse_repo_path,
    parse_service_id,
    remote_web_base,
)
from forgestatus.forges.optional import OptionalForgeClient
from forgestatus.forges.protocol import (
    ConfigParseError,
    ForgeClient,
    ForgeConnectionError,
    ParseError,
)
from forgestatus.logging_config import get_logger
from forgestatus.models import PullRequestStatus

logger = get_logger(__name__)

PROVIDER_NAMES = {
    ForgeProvider.GITHUB: "GitHub",
    ForgeProvider.GITLAB: "GitLab",
    ForgeProvider.CODEBERG: "Codeberg",
}

PROVIDER_AUTH = {
    ForgeProvider.GITHUB: ForgeAuthType.BEARER,
    ForgeProvider.GITLAB: ForgeAuthType.PRIVATE_TOKEN,
    ForgeProvider.CODEBERG: ForgeAuthType.TOKEN,
}


class MisconfiguredForgeClient:
    """Stand-in for a forge whose configuration could not be parsed.

    The connection test reports the parse error; fetches fail softly.
    """

    in_cooldown = False

    def __init__(self, name: str, error: ConfigParseError) -> None:
        self.name = name
        self.error = error

    async def test_connection(self) -> None:
        raise ForgeConnectionError(f"{self.name} is misconfigured: {self.error}")

    async def fetch_pull_request_status(self, branch: str) -> PullRequestStatus:
        raise ParseError(f"{self.name} is misconfigured: {self.error}")

    async def aclose(self) -> None:
        return None


def auth_type_for(config: RepositoryConfig) -> ForgeAuthType:
    """The auth scheme a repository's client will use; DISABLED without a token."""
    if not config.auth_token.strip():
        return ForgeAuthType.DISABLED
    return PROVIDER_AUTH[config.provider]


def _numeric_id(value: int | str, domain: str) -> int:
    if isinstance(value, int):
        return value
    segment = parse_service_id(value, domain)
    if not segment.isdigit():
        raise ConfigParseError(value, segment, "expected a numeric id")
    return int(segment)


def _http_url(value: str) -> httpx.URL:
    """Parse an http(s) URL the way the HTTP client will, or raise ConfigParseError."""
    try:
        url = httpx.URL(value)
        urlsplit(value).port
    except (httpx.InvalidURL, ValueError) as e:
        raise ConfigParseError(value, value, f"invalid URL: {e}") from e
    if url.scheme not in ("http", "https"):
        raise ConfigParseError(value, value.split("://", 1)[0], "URL must be http(s)")
    if not url.host:
        raise ConfigParseError(value, value, "URL has no host")
    return url


def _base_url(config: RepositoryConfig) -> str:
    base = config.base_url.strip() or remote_web_base(config.repo_url)
    # A path prefix (self-hosted under a subpath) is kept
    _http_url(base)
    return base.rstrip("/")


def _build_client(
    config: RepositoryConfig,
    *,
    timeout: float,
    cooldown_seconds: float,
    transport: httpx.AsyncBaseTransport | None,
) -> ForgeClient:
    namespace, repo = parse_repo_path(config.repo_url)
    base_url = _base_url(config)
    token = config.auth_token.strip()

    match config.provider:
        case ForgeProvider.GITHUB:
            if "/" in namespace:
                raise ConfigParseError(config.repo_url, namespace, "GitHub owners cannot be nested")
            return GitHubClient(
                namespace,
                repo,
                token,
                base_url,
                timeout=timeout,
                cooldown_seconds=cooldown_seconds,
                transport=transport,
            )

        case ForgeProvider.GITLAB:
            project: int | str = f"{namespace}/{repo}"
            if config.project_id is not None and str(config.project_id).strip():
                project = _numeric_id(config.project_id, _http_url(base_url).netloc.decode())
            return GitLabClient(
                project,
                token,
                base_url,
                timeout=timeout,
                cooldown_seconds=cooldown_seconds,
                transport=transport,
            )

        case ForgeProvider.CODEBERG:
            ci_backend = config.ci_backend or CIBackendKind.FORGEJO_ACTIONS
            woodpecker_repo_id = None
            if ci_backend is CIBackendKind.WOODPECKER:
                _http_url(config.woodpecker_url)
            if config.woodpecker_repo_id is not None and str(config.woodpecker_repo_id).strip():
                woodpecker_repo_id = _numeric_id(
                    config.woodpecker_repo_id, _http_url(config.woodpecker_url).netloc.decode()
                )
            if ci_backend is CIBackendKind.WOODPECKER and not config.woodpecker_token:
                logger.info(
                    "Woodpecker token not configured, pipelines will show as none",
                    repository=config.name,
                )
            return CodebergClient(
                namespace,
                repo,
                token,
                base_url,
                ci_backend,
                woodpecker_token=config.woodpecker_token.strip(),
                woodpecker_url=config.woodpecker_url,
                woodpecker_repo_id=woodpecker_repo_id,
                timeout=timeout,
                cooldown_seconds=cooldown_seconds,
                transport=transport,
            )

    raise ConfigParseError(str(config.provider), str(config.provider), "unknown provider")


def create_forge_client(
    config: RepositoryConfig,
    poller: PollerConfig | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> OptionalForgeClient:
    """Build the (optional) forge client for one repository.

    Never raises: missing token or repository URL gives a disabled client,
    an unparseable URL gives a client whose connection test fails.
    """
    poller = poller or PollerConfig()

    if auth_type_for(config) is ForgeAuthType.DISABLED or not config.repo_url.strip():
        logger.debug(
            "Forge client disabled",
            repository=config.name,
            provider=config.provider.value,
            has_token=bool(config.auth_token.strip()),
            has_repo_url=bool(config.repo_url.strip()),
        )
        return OptionalForgeClient.disabled(config.name)

    try:
        client = _build_client(
            config,
            timeout=poller.request_timeout_seconds,
            cooldown_seconds=poller.cooldown_seconds,
            transport=transport,
        )
    except ConfigParseError as e:
        logger.warning(
            "Repository forge configuration is malformed",
            repository=config.name,
            provider=config.provider.value,
            segment=e.segment,
            error=str(e),
        )
        client = MisconfiguredForgeClient(PROVIDER_NAMES[config.provider], e)
    else:
        logger.info(
            "Forge client created",
            repository=config.name,
            forge=client.name,
            ci_backend=(config.ci_backend or CIBackendKind.FORGEJO_ACTIONS).display_name
            if config.provider is ForgeProvider.CODEBERG
            else None,
        )

    return OptionalForgeClient(client, config.name)


def create_forge_clients(
    repositories: Iterable[RepositoryConfig],
    poller: PollerConfig | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, OptionalForgeClient]:
    """Build one client per repository, keyed by repository name."""
    return {
        repo.name: create_forge_client(repo, poller, transport=transport) for repo in repositories
    }


async def test_forge_connection(client: OptionalForgeClient | ForgeClient) -> None:
    """Run a client's connection test for configuration-time validation.

    Logs the outcome and re-raises ForgeConnectionError; independent of
    the poll loop.
    """
    repository = getattr(client, "repository", "")
    try:
        await client.test_connection()
    except ForgeConnectionError as e:
        logger.warning(
            "Forge connection test failed",
            repository=repository,
            forge=client.name,
            error=str(e),
        )
        raise
    logger.info("Forge connection ok", repository=repository, forge=client.name)
