"""Tests for the forgestatus-check command."""

import json
from unittest.mock import patch

import pytest

from forgestatus.cli.check import check, format_snapshot, main, parse_branch_args
from forgestatus.config import (
    CIBackendKind,
    ForgeProvider,
    ForgeTokens,
    RepositoryConfig,
    Settings,
)
from forgestatus.models import PipelineStatus, PullRequestStatus, Snapshot

REPOS = {
    "api": RepositoryConfig(name="api", repo_url="https://github.com/acme/api"),
    "site": RepositoryConfig(
        name="site",
        provider=ForgeProvider.CODEBERG,
        repo_url="https://codeberg.org/acme/site",
        ci_backend=CIBackendKind.WOODPECKER,
    ),
}


def _settings(repositories: list[RepositoryConfig]) -> Settings:
    # Explicit empty tokens so a developer environment never enables real clients
    return Settings(repositories=repositories, tokens=ForgeTokens())


class TestParseBranchArgs:
    def test_builds_queries(self):
        queries = parse_branch_args(["api:feature/login", "site:main"], REPOS)

        assert [q.key for q in queries] == ["api:feature/login", "site:main"]
        assert queries[1].provider is ForgeProvider.CODEBERG
        assert queries[1].ci_backend is CIBackendKind.WOODPECKER

    @pytest.mark.parametrize("value", ["api", "api:", ":main"])
    def test_malformed(self, value: str) -> None:
        with pytest.raises(ValueError, match="Expected"):
            parse_branch_args([value], REPOS)

    def test_unknown_repository(self):
        with pytest.raises(ValueError, match="not configured"):
            parse_branch_args(["web:main"], REPOS)


class TestFormatSnapshot:
    def test_one_line_per_branch(self):
        snapshot = Snapshot(
            statuses={
                "api:feature": PullRequestStatus.open(
                    7, "https://github.com/acme/api/pull/7", PipelineStatus.FAILED
                ),
                "api:old": PullRequestStatus.merged(3),
                "site:main": PullRequestStatus(),
            },
            stale=("api:old",),
        )

        assert format_snapshot(snapshot).splitlines() == [
            "api:feature\t#7\t✗ Failed",
            "api:old\t#3 Merged\t(stale)",
            "site:main\tNone",
        ]


class TestCheck:
    async def test_no_repositories(self) -> None:
        with patch("forgestatus.cli.check.settings", _settings([])):
            assert await check([]) == 1

    async def test_prints_snapshot(self, capsys) -> None:
        configured = _settings(list(REPOS.values()))
        with patch("forgestatus.cli.check.settings", configured):
            exit_code = await check(["api:main", "site:main"])

        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["statuses"]["api:main"]["state"] == "none"
        assert output["statuses"]["site:main"]["state"] == "none"

    async def test_prints_text(self, capsys) -> None:
        configured = _settings(list(REPOS.values()))
        with patch("forgestatus.cli.check.settings", configured):
            exit_code = await check(["api:main"], text=True)

        assert exit_code == 0
        assert capsys.readouterr().out == "api:main\tNone\n"

    async def test_misconfigured_repository_fails(self, capsys) -> None:
        broken = RepositoryConfig(name="api", repo_url="not a url", auth_token="t")
        with patch("forgestatus.cli.check.settings", _settings([broken])):
            assert await check([]) == 2


class TestMain:
    @patch("forgestatus.cli.check.configure_logging")
    def test_bad_branch_argument_exits(self, _configure_logging):
        with patch("forgestatus.cli.check.settings", _settings(list(REPOS.values()))):
            with pytest.raises(SystemExit) as exc_info:
                main(["--branch", "nonsense"])
        assert exc_info.value.code == 2
