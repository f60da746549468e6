"""CI backends for Codeberg repositories.

Codeberg projects run CI either on Forgejo Actions (built into the forge)
or on Woodpecker CI (ci.codeberg.org). The Codeberg client holds exactly
one backend for its lifetime and asks it for the pipeline state of a
pull request's head commit.
"""

import asyncio
from typing import Protocol

import httpx

from forgestatus.config import CIBackendKind
from forgestatus.forges.helpers import ForgeAuthType, ForgeHttpClient
from forgestatus.forges.protocol import ForgeConnectionError, FetchError, NotFoundError
from forgestatus.logging_config import get_logger
from forgestatus.models import PipelineStatus

logger = get_logger(__name__)

DEFAULT_WOODPECKER_URL = "https://ci.codeberg.org/api"

RUN_PAGE_SIZE = 50


class CIBackend(Protocol):
    """Resolves pipeline state for a commit on one CI surface."""

    name: str

    @property
    def in_cooldown(self) -> bool:
        ...

    async def pipeline_status_for_commit(self, sha: str) -> PipelineStatus:
        """Status of the newest run for `sha`; NONE when nothing ran. Raises FetchError."""
        ...

    async def test_connection(self) -> None:
        ...

    async def aclose(self) -> None:
        ...


class ForgejoActionsBackend:
    """Workflow runs from the forge's own Actions API.

    Shares the Codeberg client's HTTP client (same host, same token).
    """

    name = "Forgejo Actions"

    def __init__(self, http: ForgeHttpClient, owner: str, repo: str) -> None:
        self._http = http
        self._runs_path = f"/api/v1/repos/{owner}/{repo}/actions/runs"

    @property
    def in_cooldown(self) -> bool:
        return self._http.cooldown.active

    async def pipeline_status_for_commit(self, sha: str) -> PipelineStatus:
        try:
            data = await self._http.get_json(self._runs_path, params={"limit": RUN_PAGE_SIZE})
        except NotFoundError:
            # Actions disabled on the repository
            return PipelineStatus.NONE

        runs = data.get("workflow_runs") if isinstance(data, dict) else None
        if not isinstance(runs, list):
            return PipelineStatus.NONE
        for run in runs:
            if not isinstance(run, dict):
                continue
            if run.get("head_sha") != sha or run.get("event") == "schedule":
                continue
            logger.debug(
                "Forgejo Actions run found",
                run_id=run.get("id"),
                status=run.get("status"),
                conclusion=run.get("conclusion"),
            )
            return PipelineStatus.from_forgejo_status(
                run.get("status") or "", run.get("conclusion")
            )
        return PipelineStatus.NONE

    async def test_connection(self) -> None:
        try:
            await self._http.get(self._runs_path, params={"limit": 1})
        except FetchError as e:
            raise ForgeConnectionError(f"Forgejo Actions connection failed: {e}") from e

    async def aclose(self) -> None:
        # The HTTP client belongs to the Codeberg client
        return None


class WoodpeckerBackend:
    """Pipelines from a Woodpecker CI server."""

    name = "Woodpecker CI"

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        base_url: str = DEFAULT_WOODPECKER_URL,
        repo_id: int | None = None,
        *,
        timeout: float = 10.0,
        cooldown_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.full_name = f"{owner}/{repo}"
        self._repo_id = repo_id
        self._lookup_lock = asyncio.Lock()
        self._http = ForgeHttpClient(
            self.name,
            base_url or DEFAULT_WOODPECKER_URL,
            ForgeAuthType.BEARER,
            token,
            timeout=timeout,
            cooldown_seconds=cooldown_seconds,
            transport=transport,
        )

    @property
    def in_cooldown(self) -> bool:
        return self._http.cooldown.active

    @property
    def repo_id(self) -> int | None:
        return self._repo_id

    async def _resolve_repo_id(self) -> int | None:
        """Look up the Woodpecker repository id once and cache it."""
        if self._repo_id is not None:
            return self._repo_id
        async with self._lookup_lock:
            if self._repo_id is not None:
                return self._repo_id
            try:
                repo = await self._http.get_json(f"/repos/lookup/{self.full_name}")
            except NotFoundError:
                logger.info("Woodpecker repo not found", repo=self.full_name)
                return None
            repo_id = repo.get("id") if isinstance(repo, dict) else None
            if isinstance(repo_id, int):
                self._repo_id = repo_id
                logger.info("Woodpecker repo resolved", repo=self.full_name, repo_id=repo_id)
            return self._repo_id

    async def pipeline_status_for_commit(self, sha: str) -> PipelineStatus:
        repo_id = await self._resolve_repo_id()
        if repo_id is None:
            return PipelineStatus.NONE

        pipelines = await self._http.get_json(
            f"/repos/{repo_id}/pipelines", params={"perPage": RUN_PAGE_SIZE}
        )
        if not isinstance(pipelines, list):
            return PipelineStatus.NONE

        for pipeline in pipelines:
            if not isinstance(pipeline, dict):
                continue
            if pipeline.get("commit") != sha or pipeline.get("event") == "cron":
                continue
            logger.debug(
                "Woodpecker pipeline found",
                number=pipeline.get("number"),
                status=pipeline.get("status"),
            )
            return PipelineStatus.from_woodpecker_status(pipeline.get("status") or "")
        return PipelineStatus.NONE

    async def test_connection(self) -> None:
        try:
            await self._http.get("/user")
        except FetchError as e:
            raise ForgeConnectionError(f"Woodpecker connection failed: {e}") from e

    async def aclose(self) -> None:
        await self._http.aclose()


class UnconfiguredWoodpeckerBackend:
    """Woodpecker selected but no Woodpecker token configured.

    Requests stay visible on the dashboard; only their pipeline is unknown.
    """

    name = "Woodpecker CI"
    in_cooldown = False

    async def pipeline_status_for_commit(self, sha: str) -> PipelineStatus:
        return PipelineStatus.NONE

    async def test_connection(self) -> None:
        logger.debug("Woodpecker token not configured, skipping CI connection test")

    async def aclose(self) -> None:
        return None


def create_ci_backend(
    kind: CIBackendKind | None,
    http: ForgeHttpClient,
    owner: str,
    repo: str,
    *,
    woodpecker_token: str = "",
    woodpecker_url: str = DEFAULT_WOODPECKER_URL,
    woodpecker_repo_id: int | None = None,
    timeout: float = 10.0,
    cooldown_seconds: float = 60.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CIBackend:
    """Select the backend for a Codeberg client. Forgejo Actions is the default."""
    match kind:
        case CIBackendKind.WOODPECKER:
            if not woodpecker_token:
                return UnconfiguredWoodpeckerBackend()
            return WoodpeckerBackend(
                owner,
                repo,
                woodpecker_token,
                woodpecker_url,
                woodpecker_repo_id,
                timeout=timeout,
                cooldown_seconds=cooldown_seconds,
                transport=transport,
            )
    return ForgejoActionsBackend(http, owner, repo)
