"""Codeberg (Forgejo) forge client.

Pull requests come from the Forgejo REST API; pipeline state comes from
whichever CI backend the repository is configured with.
"""

import httpx

from forgestatus.config import CIBackendKind
from forgestatus.forges.ci_backends import DEFAULT_WOODPECKER_URL, CIBackend, create_ci_backend
from forgestatus.forges.helpers import ForgeAuthType, ForgeHttpClient, require_field
from forgestatus.forges.protocol import ForgeConnectionError, FetchError
from forgestatus.logging_config import get_logger
from forgestatus.models import PullRequestStatus

logger = get_logger(__name__)

DEFAULT_CODEBERG_URL = "https://codeberg.org"

PULL_PAGE_SIZE = 50

# Forgejo marks work-in-progress pull requests by title prefix
WIP_PREFIXES = ("WIP:", "[WIP]", "Draft:", "[Draft]")


def _is_draft(pr: dict) -> bool:
    return bool(pr.get("draft")) or str(pr.get("title") or "").startswith(WIP_PREFIXES)


class CodebergClient:
    """Pull request status for one Codeberg/Forgejo repository."""

    name = "Codeberg"

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        base_url: str = DEFAULT_CODEBERG_URL,
        ci_backend: CIBackendKind | None = CIBackendKind.FORGEJO_ACTIONS,
        *,
        woodpecker_token: str = "",
        woodpecker_url: str = DEFAULT_WOODPECKER_URL,
        woodpecker_repo_id: int | None = None,
        timeout: float = 10.0,
        cooldown_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self._http = ForgeHttpClient(
            self.name,
            base_url or DEFAULT_CODEBERG_URL,
            ForgeAuthType.TOKEN,
            token,
            timeout=timeout,
            cooldown_seconds=cooldown_seconds,
            transport=transport,
        )
        self.ci: CIBackend = create_ci_backend(
            ci_backend,
            self._http,
            owner,
            repo,
            woodpecker_token=woodpecker_token,
            woodpecker_url=woodpecker_url,
            woodpecker_repo_id=woodpecker_repo_id,
            timeout=timeout,
            cooldown_seconds=cooldown_seconds,
            transport=transport,
        )

    @property
    def in_cooldown(self) -> bool:
        return self._http.cooldown.active or self.ci.in_cooldown

    async def test_connection(self) -> None:
        try:
            await self._http.get(f"/api/v1/repos/{self.owner}/{self.repo}")
        except FetchError as e:
            raise ForgeConnectionError(f"Codeberg connection failed: {e}") from e
        await self.ci.test_connection()

    async def fetch_pull_request_status(self, branch: str) -> PullRequestStatus:
        prs = await self._http.get_json(
            f"/api/v1/repos/{self.owner}/{self.repo}/pulls",
            params={"state": "all", "sort": "recentupdate", "limit": PULL_PAGE_SIZE},
        )
        if not isinstance(prs, list):
            prs = []

        pr = next(
            (
                p
                for p in prs
                if isinstance(p, dict)
                and isinstance(p.get("head"), dict)
                and p["head"].get("ref") == branch
            ),
            None,
        )
        if pr is None:
            logger.debug(
                "No Codeberg PR for branch", repo=f"{self.owner}/{self.repo}", branch=branch
            )
            return PullRequestStatus()

        number = require_field(pr, "number", forge_name=self.name, expected=int)
        if pr.get("merged") or pr.get("merged_at"):
            return PullRequestStatus.merged(number)
        if require_field(pr, "state", forge_name=self.name) == "closed":
            return PullRequestStatus.closed(number)

        url = require_field(pr, "html_url", forge_name=self.name, expected=str)
        sha = require_field(pr, "head", "sha", forge_name=self.name, expected=str)
        pipeline = await self.ci.pipeline_status_for_commit(sha)

        if _is_draft(pr):
            return PullRequestStatus.draft(number, url, pipeline)
        return PullRequestStatus.open(number, url, pipeline)

    async def aclose(self) -> None:
        await self.ci.aclose()
        await self._http.aclose()
