"""Batch status fetch: the poll cycle behind the dashboard.

Each cycle fans out one fetch per branch across the repositories' forge
clients, bounded by a concurrency limit and a per-cycle deadline, and fans
the results back into a single Snapshot. A branch whose fetch fails keeps
its previous value, so one flaky forge never blanks the dashboard.

Provider-agnostic: every client is an OptionalForgeClient, so repositories
without forge configuration simply report no request.
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping, Sequence

from forgestatus.config import PollerConfig, RepositoryConfig, settings
from forgestatus.forges.factory import create_forge_clients, test_forge_connection
from forgestatus.forges.optional import OptionalForgeClient
from forgestatus.forges.protocol import FetchError, ForgeConnectionError
from forgestatus.logging_config import get_logger
from forgestatus.models import BranchQuery, PullRequestStatus, Snapshot

logger = get_logger(__name__)


class _SoftFailure(Exception):
    """A branch that yields its previous value this cycle."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


async def _fetch_one(
    query: BranchQuery,
    client: OptionalForgeClient,
    semaphore: asyncio.Semaphore,
) -> PullRequestStatus:
    async with semaphore:
        # The client may have entered a cool-down while this fetch was queued
        if client.in_cooldown:
            raise _SoftFailure("rate limit cool-down")
        return await client.fetch_pull_request_status(query.branch)


def _previous_value(
    key: str, previous: Snapshot | Mapping[str, PullRequestStatus] | None
) -> PullRequestStatus:
    if previous is None:
        return PullRequestStatus()
    if isinstance(previous, Snapshot):
        previous = previous.statuses
    return previous.get(key, PullRequestStatus())


async def fetch_statuses_for_branches(
    queries: Sequence[BranchQuery],
    clients: Mapping[str, OptionalForgeClient],
    previous: Snapshot | Mapping[str, PullRequestStatus] | None = None,
    *,
    max_concurrency: int | None = None,
    cycle_timeout: float | None = None,
) -> Snapshot:
    """Fetch every branch's status concurrently and merge into one snapshot.

    Never raises for a branch failure: the branch keeps its value from
    `previous` (or 'none' if it had none) and is listed in `Snapshot.stale`.
    Queries for repositories in a rate-limit cool-down are skipped without
    a network call.
    """
    poller = settings.poller
    max_concurrency = max_concurrency or poller.max_concurrency
    cycle_timeout = cycle_timeout if cycle_timeout is not None else poller.cycle_timeout_seconds

    results: dict[str, PullRequestStatus] = {}
    failures: dict[str, str] = {}

    # Partition by target client so a client's cool-down applies to all its branches
    by_repository: dict[str, list[BranchQuery]] = defaultdict(list)
    for query in queries:
        by_repository[query.repository].append(query)

    semaphore = asyncio.Semaphore(max_concurrency)
    tasks: dict[asyncio.Task[PullRequestStatus], BranchQuery] = {}

    for repository, repo_queries in by_repository.items():
        client = clients.get(repository)
        if client is None:
            logger.warning("No forge client for repository", repository=repository)
            for query in repo_queries:
                failures[query.key] = "unknown repository"
            continue
        if client.in_cooldown:
            logger.debug(
                "Skipping repository in rate limit cool-down",
                repository=repository,
                branches=len(repo_queries),
            )
            for query in repo_queries:
                failures[query.key] = "rate limit cool-down"
            continue
        for query in repo_queries:
            task = asyncio.create_task(_fetch_one(query, client, semaphore))
            tasks[task] = query

    try:
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=cycle_timeout)
        else:
            done, pending = set(), set()
    except asyncio.CancelledError:
        # Superseded or shut down: discard everything still in flight
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    for task in pending:
        task.cancel()
        failures[tasks[task].key] = "cycle deadline exceeded"
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
        logger.warning(
            "Poll cycle deadline exceeded",
            timeout_seconds=cycle_timeout,
            pending=len(pending),
        )

    for task in done:
        query = tasks[task]
        error = task.exception()
        if error is None:
            results[query.key] = task.result()
        elif isinstance(error, _SoftFailure):
            failures[query.key] = error.reason
        elif isinstance(error, FetchError):
            failures[query.key] = error.kind.value
            logger.warning(
                "Branch status fetch failed",
                repository=query.repository,
                branch=query.branch,
                kind=error.kind.value,
                error=str(error),
            )
        else:
            failures[query.key] = "unexpected error"
            logger.error(
                "Unexpected error fetching branch status",
                repository=query.repository,
                branch=query.branch,
                error=str(error),
                exc_info=error,
            )

    statuses: dict[str, PullRequestStatus] = {}
    for query in queries:
        key = query.key
        if key in results:
            statuses[key] = results[key]
        else:
            statuses[key] = _previous_value(key, previous)

    disabled = sorted(
        repository
        for repository in by_repository
        if (client := clients.get(repository)) is not None and client.auth_failed
    )

    if failures:
        logger.info(
            "Poll cycle completed with stale branches",
            branches=len(statuses),
            stale=len(failures),
        )
    else:
        logger.debug("Poll cycle completed", branches=len(statuses))

    return Snapshot(
        statuses=statuses,
        stale=tuple(sorted(failures)),
        disabled=tuple(disabled),
    )


class StatusAggregator:
    """Owns the forge clients and the last published snapshot.

    `refresh()` runs one cycle. Starting a cycle while another is in flight
    cancels the older one; only the newest cycle's result is published, so
    snapshots never go backwards.
    """

    def __init__(
        self,
        clients: Mapping[str, OptionalForgeClient],
        poller: PollerConfig | None = None,
    ) -> None:
        self.clients = dict(clients)
        self.poller = poller or settings.poller
        self._snapshot = Snapshot()
        # Fallback values for the next cycle, private to the aggregator
        self._previous: dict[str, PullRequestStatus] = {}
        self._cycle: asyncio.Task[Snapshot] | None = None

    @classmethod
    def from_config(
        cls,
        repositories: Sequence[RepositoryConfig],
        poller: PollerConfig | None = None,
    ) -> "StatusAggregator":
        poller = poller or settings.poller
        return cls(create_forge_clients(repositories, poller), poller)

    @property
    def snapshot(self) -> Snapshot:
        """The last published snapshot (read interface for the render layer)."""
        return self._snapshot

    async def refresh(self, queries: Sequence[BranchQuery]) -> Snapshot:
        """Run one poll cycle and publish its snapshot.

        If this cycle is superseded by a newer refresh before it finishes,
        its result is discarded and the currently published snapshot is
        returned.
        """
        stale = self._cycle
        if stale is not None and not stale.done():
            logger.info("Cancelling stale poll cycle")
            stale.cancel()

        cycle = asyncio.create_task(
            fetch_statuses_for_branches(
                queries,
                self.clients,
                self._previous,
                max_concurrency=self.poller.max_concurrency,
                cycle_timeout=self.poller.cycle_timeout_seconds,
            )
        )
        self._cycle = cycle

        try:
            snapshot = await cycle
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if cycle is not self._cycle and not (current and current.cancelling()):
                return self._snapshot
            raise

        if cycle is not self._cycle:
            return self._snapshot

        self._snapshot = snapshot
        self._previous = dict(snapshot.statuses)
        return snapshot

    async def test_connections(self) -> dict[str, ForgeConnectionError | None]:
        """Run every client's connection test. Maps repository to its error, if any."""
        outcomes: dict[str, ForgeConnectionError | None] = {}
        for repository, client in self.clients.items():
            try:
                await test_forge_connection(client)
            except ForgeConnectionError as e:
                outcomes[repository] = e
            else:
                outcomes[repository] = None
        return outcomes

    async def run_poller(
        self,
        queries_provider: Callable[[], Sequence[BranchQuery] | Awaitable[Sequence[BranchQuery]]],
        on_snapshot: Callable[[Snapshot], Awaitable[None] | None] | None = None,
    ) -> None:
        """Main poller loop. Runs until cancelled.

        `queries_provider` returns the branches to poll (the worktree list
        can change between cycles); `on_snapshot` receives each published
        snapshot.
        """
        interval = self.poller.poll_interval_seconds
        logger.info("Forge status poller started", interval_seconds=interval)

        while True:
            try:
                queries = queries_provider()
                if isinstance(queries, Awaitable):
                    queries = await queries
                snapshot = await self.refresh(queries)
                if on_snapshot is not None:
                    handled = on_snapshot(snapshot)
                    if isinstance(handled, Awaitable):
                        await handled
            except Exception as e:
                logger.error("Poll cycle failed", error=str(e), exc_info=e)

            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                logger.info("Forge status poller stopping")
                return

    async def aclose(self) -> None:
        if self._cycle is not None and not self._cycle.done():
            self._cycle.cancel()
            await asyncio.gather(self._cycle, return_exceptions=True)
        for client in self.clients.values():
            await client.aclose()
