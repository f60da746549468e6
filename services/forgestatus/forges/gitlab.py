"""GitLab forge client.

Authenticates via personal/project access token. Supports GitLab.com and
self-hosted GitLab instances.
"""

from urllib.parse import quote as url_quote

import httpx

from forgestatus.forges.helpers import ForgeAuthType, ForgeHttpClient, require_field
from forgestatus.forges.protocol import ForgeConnectionError, FetchError, NotFoundError
from forgestatus.logging_config import get_logger
from forgestatus.models import PipelineStatus, PullRequestStatus

logger = get_logger(__name__)

DEFAULT_GITLAB_URL = "https://gitlab.com"


def project_ref(project: int | str) -> str:
    """Numeric ids pass through; 'group/project' paths are URL-encoded."""
    if isinstance(project, int) or str(project).isdigit():
        return str(project)
    return url_quote(str(project), safe="")


class GitLabClient:
    """Merge request and pipeline status for one GitLab project."""

    name = "GitLab"

    def __init__(
        self,
        project: int | str,
        token: str,
        base_url: str = DEFAULT_GITLAB_URL,
        *,
        timeout: float = 10.0,
        cooldown_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.project = project
        self._project_path = f"/projects/{project_ref(project)}"
        base = (base_url or DEFAULT_GITLAB_URL).rstrip("/")
        self._http = ForgeHttpClient(
            self.name,
            f"{base}/api/v4",
            ForgeAuthType.PRIVATE_TOKEN,
            token,
            timeout=timeout,
            cooldown_seconds=cooldown_seconds,
            transport=transport,
        )

    @property
    def in_cooldown(self) -> bool:
        return self._http.cooldown.active

    async def test_connection(self) -> None:
        try:
            await self._http.get(self._project_path)
        except FetchError as e:
            raise ForgeConnectionError(f"GitLab connection failed: {e}") from e

    async def fetch_pull_request_status(self, branch: str) -> PullRequestStatus:
        """Two-step: list MRs to find the iid, then fetch the MR for its head pipeline."""
        mrs = await self._http.get_json(
            f"{self._project_path}/merge_requests",
            params={
                "source_branch": branch,
                "state": "all",
                "order_by": "updated_at",
                "sort": "desc",
                "per_page": 1,
            },
        )
        if not isinstance(mrs, list) or not mrs:
            logger.debug("No GitLab MR for branch", project=str(self.project), branch=branch)
            return PullRequestStatus()

        item = mrs[0]
        iid = require_field(item, "iid", forge_name=self.name, expected=int)
        state = require_field(item, "state", forge_name=self.name)

        if state == "merged" or item.get("merged_at"):
            return PullRequestStatus.merged(iid)
        if state != "opened":
            # closed, locked
            return PullRequestStatus.closed(iid)

        try:
            mr = await self._http.get_json(f"{self._project_path}/merge_requests/{iid}")
        except NotFoundError:
            logger.debug("MR detail not found, using list data", iid=iid)
            mr = item
            mr.pop("head_pipeline", None)

        url = require_field(mr, "web_url", forge_name=self.name, expected=str)
        head_pipeline = mr.get("head_pipeline")
        if isinstance(head_pipeline, dict) and head_pipeline.get("status"):
            pipeline = PipelineStatus.from_gitlab_status(head_pipeline["status"])
        else:
            pipeline = PipelineStatus.NONE

        if mr.get("draft") or mr.get("work_in_progress"):
            return PullRequestStatus.draft(iid, url, pipeline)
        return PullRequestStatus.open(iid, url, pipeline)

    async def aclose(self) -> None:
        await self._http.aclose()
