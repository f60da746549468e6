"""
Check forge configuration and print one status snapshot.

Run via: python -m forgestatus.cli.check --branch api:feature/login

Builds a client for every configured repository, runs each connection
test, then runs a single poll cycle over the given branches and prints
the snapshot on stdout, as JSON or (with --text) one line per branch.
Exits non-zero when a connection test fails.

Reads configuration from the YAML file at FORGESTATUS_CONFIG_FILE
(default ~/.config/forgestatus/config.yaml) and FORGESTATUS_* env vars.
"""

import argparse
import asyncio
import sys
from collections.abc import Mapping, Sequence

from forgestatus.aggregator import StatusAggregator
from forgestatus.config import RepositoryConfig, settings
from forgestatus.logging_config import configure_logging, get_logger
from forgestatus.models import BranchQuery, Snapshot

logger = get_logger("forgestatus.cli.check")


def parse_branch_args(
    values: Sequence[str], repositories: Mapping[str, RepositoryConfig]
) -> list[BranchQuery]:
    """Turn 'repository:branch' arguments into queries."""
    queries = []
    for value in values:
        repository, sep, branch = value.partition(":")
        if not sep or not repository or not branch:
            raise ValueError(f"Expected <repository>:<branch>, got '{value}'")
        repo = repositories.get(repository)
        if repo is None:
            raise ValueError(f"Repository '{repository}' is not configured")
        queries.append(
            BranchQuery(
                repository=repository,
                branch=branch,
                provider=repo.provider,
                ci_backend=repo.ci_backend,
            )
        )
    return queries


def format_snapshot(snapshot: Snapshot) -> str:
    """One line per branch: key, request, pipeline; stale values are marked."""
    lines = []
    for key, status in snapshot.statuses.items():
        line = f"{key}\t{status.format_short()}"
        if status.is_active:
            line += f"\t{status.pipeline.symbol} {status.pipeline.label}"
        if key in snapshot.stale:
            line += "\t(stale)"
        lines.append(line)
    return "\n".join(lines)


async def check(
    branches: Sequence[str], skip_connection_test: bool = False, text: bool = False
) -> int:
    repositories = settings.resolved_repositories()
    if not repositories:
        logger.error("No repositories configured")
        return 1

    aggregator = StatusAggregator.from_config(repositories, settings.poller)
    try:
        queries = parse_branch_args(branches, {repo.name: repo for repo in repositories})

        exit_code = 0
        if not skip_connection_test:
            outcomes = await aggregator.test_connections()
            if any(error is not None for error in outcomes.values()):
                exit_code = 2

        if queries:
            snapshot = await aggregator.refresh(queries)
            output = format_snapshot(snapshot) if text else snapshot.model_dump_json(indent=2)
            sys.stdout.write(output + "\n")
        return exit_code
    finally:
        await aggregator.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="forgestatus-check",
        description="Test forge connections and print branch request/pipeline status.",
    )
    parser.add_argument(
        "--branch",
        "-b",
        action="append",
        default=[],
        metavar="REPOSITORY:BRANCH",
        help="Branch to poll (repeatable)",
    )
    parser.add_argument(
        "--skip-connection-test",
        action="store_true",
        help="Go straight to the poll cycle",
    )
    parser.add_argument(
        "--text",
        action="store_true",
        help="Print one line per branch instead of JSON",
    )
    args = parser.parse_args(argv)

    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)

    try:
        return asyncio.run(check(args.branch, args.skip_connection_test, args.text))
    except ValueError as e:
        parser.error(str(e))
    return 1


if __name__ == "__main__":
    sys.exit(main())
