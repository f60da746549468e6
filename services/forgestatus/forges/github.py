"""GitHub forge client.

Authenticates with a personal access (or fine-grained) token. Supports
github.com and GitHub Enterprise Server (REST API under /api/v3).
"""


import httpx

from forgestatus.forges.helpers import ForgeAuthType, ForgeHttpClient, require_field
from forgestatus.forges.protocol import ForgeConnectionError, FetchError, NotFoundError
from forgestatus.logging_config import get_logger
from forgestatus.models import PipelineStatus, PullRequestStatus

logger = get_logger(__name__)

DEFAULT_GITHUB_API_URL = "https://api.github.com"

GITHUB_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
}


def api_url_for(base_url: str) -> str:
    """Resolve the REST API root for a github.com or Enterprise base URL."""
    base = (base_url or DEFAULT_GITHUB_API_URL).rstrip("/")
    if base in ("https://github.com", "http://github.com"):
        return DEFAULT_GITHUB_API_URL
    if base == DEFAULT_GITHUB_API_URL or base.endswith("/api/v3"):
        return base
    return f"{base}/api/v3"


class GitHubClient:
    """Pull request and check-run status for one GitHub repository."""

    name = "GitHub"

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        base_url: str = DEFAULT_GITHUB_API_URL,
        *,
        timeout: float = 10.0,
        cooldown_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self._http = ForgeHttpClient(
            self.name,
            api_url_for(base_url),
            ForgeAuthType.BEARER,
            token,
            extra_headers=GITHUB_HEADERS,
            timeout=timeout,
            cooldown_seconds=cooldown_seconds,
            transport=transport,
        )

    @property
    def in_cooldown(self) -> bool:
        return self._http.cooldown.active

    async def test_connection(self) -> None:
        try:
            await self._http.get(f"/repos/{self.owner}/{self.repo}")
        except FetchError as e:
            raise ForgeConnectionError(f"GitHub connection failed: {e}") from e

    async def fetch_pull_request_status(self, branch: str) -> PullRequestStatus:
        """Find the most recently updated PR whose head is `branch`."""
        prs = await self._http.get_json(
            f"/repos/{self.owner}/{self.repo}/pulls",
            params={
                "state": "all",
                "head": f"{self.owner}:{branch}",
                "sort": "updated",
                "direction": "desc",
                "per_page": 10,
            },
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
            logger.debug("No GitHub PR for branch", repo=f"{self.owner}/{self.repo}", branch=branch)
            return PullRequestStatus()

        number = require_field(pr, "number", forge_name=self.name, expected=int)
        if pr.get("merged_at") or pr.get("merged"):
            return PullRequestStatus.merged(number)
        if require_field(pr, "state", forge_name=self.name) == "closed":
            return PullRequestStatus.closed(number)

        url = require_field(pr, "html_url", forge_name=self.name, expected=str)
        sha = require_field(pr, "head", "sha", forge_name=self.name, expected=str)
        pipeline = await self._checks_status(sha)

        if pr.get("draft"):
            return PullRequestStatus.draft(number, url, pipeline)
        return PullRequestStatus.open(number, url, pipeline)

    async def _checks_status(self, sha: str) -> PipelineStatus:
        """Aggregate every check run on the head commit."""
        try:
            data = await self._http.get_json(
                f"/repos/{self.owner}/{self.repo}/commits/{sha}/check-runs",
                params={"per_page": 100},
            )
        except NotFoundError:
            return PipelineStatus.NONE

        runs = data.get("check_runs") if isinstance(data, dict) else None
        if not isinstance(runs, list):
            return PipelineStatus.NONE
        return PipelineStatus.aggregate(
            PipelineStatus.from_github_check(run.get("status") or "", run.get("conclusion"))
            for run in runs
            if isinstance(run, dict)
        )

    async def aclose(self) -> None:
        await self._http.aclose()
