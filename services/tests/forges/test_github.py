"""Tests for the GitHub forge client."""

import pytest

from forgestatus.forges.github import GitHubClient, api_url_for
from forgestatus.forges.protocol import AuthError, ForgeConnectionError, ParseError
from forgestatus.models import PipelineStatus, PullRequestState, PullRequestStatus

PULLS = "/repos/acme/api/pulls"


def _pr(number: int = 7, branch: str = "feature", **overrides) -> dict:
    pr = {
        "number": number,
        "state": "open",
        "draft": False,
        "merged_at": None,
        "html_url": f"https://github.com/acme/api/pull/{number}",
        "head": {"ref": branch, "sha": f"sha{number}"},
    }
    pr.update(overrides)
    return pr


def _check(status: str, conclusion: str | None = None) -> dict:
    return {"status": status, "conclusion": conclusion}


@pytest.fixture
async def client(fake_forge):
    client = GitHubClient("acme", "api", "ghp_test", transport=fake_forge.transport)
    yield client
    await client.aclose()


class TestApiUrl:
    def test_github_com(self):
        assert api_url_for("https://github.com") == "https://api.github.com"
        assert api_url_for("") == "https://api.github.com"
        assert api_url_for("https://api.github.com/") == "https://api.github.com"

    def test_enterprise(self):
        assert api_url_for("https://ghe.example.com") == "https://ghe.example.com/api/v3"
        assert api_url_for("https://ghe.example.com/api/v3") == "https://ghe.example.com/api/v3"


class TestFetchPullRequestStatus:
    async def test_no_pull_request(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[])

        assert await client.fetch_pull_request_status("feature") == PullRequestStatus()
        assert fake_forge.paths == [PULLS]

    async def test_open_with_passing_checks(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[_pr()])
        fake_forge.add(
            "/repos/acme/api/commits/sha7/check-runs",
            json={"check_runs": [_check("completed", "success"), _check("completed", "skipped")]},
        )

        status = await client.fetch_pull_request_status("feature")

        assert status == PullRequestStatus.open(
            7, "https://github.com/acme/api/pull/7", PipelineStatus.SUCCESS
        )

    async def test_query_filters_by_owner_and_branch(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[])

        await client.fetch_pull_request_status("feature/login")

        params = fake_forge.requests[0].url.params
        assert params["head"] == "acme:feature/login"
        assert params["state"] == "all"

    async def test_draft_with_running_checks(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[_pr(draft=True)])
        fake_forge.add(
            "/repos/acme/api/commits/sha7/check-runs",
            json={"check_runs": [_check("completed", "success"), _check("in_progress")]},
        )

        status = await client.fetch_pull_request_status("feature")

        assert status.state is PullRequestState.DRAFT
        assert status.pipeline is PipelineStatus.RUNNING

    async def test_no_check_runs_is_none(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[_pr()])
        fake_forge.add("/repos/acme/api/commits/sha7/check-runs", json={"check_runs": []})

        status = await client.fetch_pull_request_status("feature")

        assert status.pipeline is PipelineStatus.NONE

    async def test_missing_check_runs_endpoint_is_none(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[_pr()])

        status = await client.fetch_pull_request_status("feature")

        assert status.state is PullRequestState.OPEN
        assert status.pipeline is PipelineStatus.NONE

    async def test_merged_wins_over_closed_state(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[_pr(state="closed", merged_at="2024-05-01T10:00:00Z")])

        assert await client.fetch_pull_request_status("feature") == PullRequestStatus.merged(7)
        # Terminal states never look up checks
        assert fake_forge.paths == [PULLS]

    async def test_closed_without_merge(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[_pr(state="closed")])

        assert await client.fetch_pull_request_status("feature") == PullRequestStatus.closed(7)

    async def test_ignores_pulls_from_other_branches(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[_pr(3, branch="other"), _pr(9, state="closed")])

        assert await client.fetch_pull_request_status("feature") == PullRequestStatus.closed(9)

    async def test_missing_field_is_parse_error(self, client, fake_forge) -> None:
        pr = _pr()
        del pr["html_url"]
        fake_forge.add(PULLS, json=[pr])

        with pytest.raises(ParseError):
            await client.fetch_pull_request_status("feature")

    async def test_non_integer_number_is_parse_error(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[_pr(number="seven")])

        with pytest.raises(ParseError, match="'number'"):
            await client.fetch_pull_request_status("feature")

    async def test_malformed_check_runs_are_skipped(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[_pr()])
        fake_forge.add(
            "/repos/acme/api/commits/sha7/check-runs",
            json={"check_runs": ["queued", None, _check("completed", "success")]},
        )

        status = await client.fetch_pull_request_status("feature")

        assert status.pipeline is PipelineStatus.SUCCESS

    async def test_check_runs_not_a_list_is_none(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[_pr()])
        fake_forge.add("/repos/acme/api/commits/sha7/check-runs", json={"check_runs": "oops"})

        status = await client.fetch_pull_request_status("feature")

        assert status.pipeline is PipelineStatus.NONE

    async def test_bad_credentials(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, status=401, json={"message": "Bad credentials"})

        with pytest.raises(AuthError):
            await client.fetch_pull_request_status("feature")

    async def test_sends_api_version_header(self, client, fake_forge) -> None:
        fake_forge.add(PULLS, json=[])

        await client.fetch_pull_request_status("feature")

        request = fake_forge.requests[0]
        assert request.url.host == "api.github.com"
        assert request.headers["X-GitHub-Api-Version"] == "2022-11-28"
        assert request.headers["Authorization"] == "Bearer ghp_test"


class TestConnection:
    async def test_ok(self, client, fake_forge) -> None:
        fake_forge.add("/repos/acme/api", json={"full_name": "acme/api"})
        await client.test_connection()

    async def test_unknown_repository(self, client) -> None:
        with pytest.raises(ForgeConnectionError, match="GitHub connection failed"):
            await client.test_connection()
