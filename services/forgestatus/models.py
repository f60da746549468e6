"""
Provider-agnostic status model.

Every forge's pull/merge-request and CI vocabulary is normalized into
PullRequestStatus and PipelineStatus before it leaves a forge client.
The render layer and automation only ever see these types.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from forgestatus.config import CIBackendKind, ForgeProvider


class PipelineStatus(StrEnum):
    """Outcome of the CI run attached to a request's head commit."""

    NONE = "none"
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"
    SKIPPED = "skipped"
    MANUAL = "manual"

    @classmethod
    def from_github_check(cls, status: str, conclusion: str | None) -> PipelineStatus:
        """Map a GitHub check run (status + conclusion)."""
        match status:
            case "queued" | "requested" | "pending":
                return cls.PENDING
            case "in_progress" | "waiting":
                return cls.RUNNING
            case "completed":
                match conclusion or "":
                    case "success" | "neutral":
                        return cls.SUCCESS
                    case "failure" | "timed_out" | "startup_failure":
                        return cls.FAILED
                    case "cancelled":
                        return cls.CANCELED
                    case "skipped":
                        return cls.SKIPPED
                    case "action_required":
                        return cls.MANUAL
        return cls.PENDING

    @classmethod
    def from_gitlab_status(cls, status: str) -> PipelineStatus:
        match status:
            case "running":
                return cls.RUNNING
            case "pending" | "waiting_for_resource" | "preparing" | "created":
                return cls.PENDING
            case "success":
                return cls.SUCCESS
            case "failed":
                return cls.FAILED
            case "canceled" | "canceling":
                return cls.CANCELED
            case "skipped":
                return cls.SKIPPED
            case "manual" | "scheduled":
                return cls.MANUAL
        return cls.PENDING

    @classmethod
    def from_woodpecker_status(cls, status: str) -> PipelineStatus:
        match status:
            case "running":
                return cls.RUNNING
            case "pending" | "created" | "blocked":
                return cls.PENDING
            case "success":
                return cls.SUCCESS
            case "failure" | "error":
                return cls.FAILED
            case "killed" | "declined":
                return cls.CANCELED
            case "skipped":
                return cls.SKIPPED
        return cls.PENDING

    @classmethod
    def from_forgejo_status(cls, status: str, conclusion: str | None) -> PipelineStatus:
        """Map a Forgejo Actions workflow run (status + conclusion)."""
        match status:
            case "running" | "in_progress" | "waiting":
                return cls.RUNNING
            case "pending" | "queued" | "blocked":
                return cls.PENDING
            case "success":
                return cls.SUCCESS
            case "failure":
                return cls.FAILED
            case "cancelled" | "canceled":
                return cls.CANCELED
            case "skipped":
                return cls.SKIPPED
            case "completed":
                match conclusion or "":
                    case "success":
                        return cls.SUCCESS
                    case "failure" | "timed_out":
                        return cls.FAILED
                    case "cancelled" | "canceled":
                        return cls.CANCELED
                    case "skipped":
                        return cls.SKIPPED
        return cls.PENDING

    @classmethod
    def aggregate(cls, statuses: Iterable[PipelineStatus]) -> PipelineStatus:
        """Fold several check results into one pipeline outcome.

        Any failure wins, then anything still in flight. Skipped checks
        don't count against an otherwise green run.
        """
        seen = set(statuses)
        if not seen:
            return cls.NONE
        for status in (cls.FAILED, cls.RUNNING, cls.PENDING, cls.MANUAL, cls.CANCELED):
            if status in seen:
                return status
        if seen <= {cls.SKIPPED, cls.NONE}:
            return cls.SKIPPED
        return cls.SUCCESS

    @property
    def symbol(self) -> str:
        return _PIPELINE_SYMBOLS[self]

    @property
    def label(self) -> str:
        return _PIPELINE_LABELS[self]


_PIPELINE_SYMBOLS = {
    PipelineStatus.NONE: "─",
    PipelineStatus.RUNNING: "●",
    PipelineStatus.PENDING: "◐",
    PipelineStatus.SUCCESS: "✓",
    PipelineStatus.FAILED: "✗",
    PipelineStatus.CANCELED: "⊘",
    PipelineStatus.SKIPPED: "⊘",
    PipelineStatus.MANUAL: "▶",
}

_PIPELINE_LABELS = {
    PipelineStatus.NONE: "None",
    PipelineStatus.RUNNING: "Running",
    PipelineStatus.PENDING: "Pending",
    PipelineStatus.SUCCESS: "Passed",
    PipelineStatus.FAILED: "Failed",
    PipelineStatus.CANCELED: "Canceled",
    PipelineStatus.SKIPPED: "Skipped",
    PipelineStatus.MANUAL: "Manual",
}


class PullRequestState(StrEnum):
    """Variant tag of PullRequestStatus."""

    NONE = "none"
    OPEN = "open"
    DRAFT = "draft"
    MERGED = "merged"
    CLOSED = "closed"


_ACTIVE_STATES = frozenset({PullRequestState.OPEN, PullRequestState.DRAFT})


class PullRequestStatus(BaseModel):
    """State of the pull/merge request for one branch.

    A tagged union over PullRequestState. Only OPEN and DRAFT carry a url
    and a pipeline; MERGED and CLOSED carry just the number; NONE carries
    nothing. Instances are immutable and validated on construction.
    """

    model_config = ConfigDict(frozen=True)

    state: PullRequestState = PullRequestState.NONE
    number: int | None = None
    url: str | None = None
    pipeline: PipelineStatus = PipelineStatus.NONE

    @model_validator(mode="after")
    def _check_variant(self) -> PullRequestStatus:
        if self.state is PullRequestState.NONE:
            if self.number is not None or self.url is not None:
                raise ValueError("a 'none' status carries no request")
        elif self.number is None:
            raise ValueError(f"a '{self.state}' status requires a request number")

        if self.state not in _ACTIVE_STATES:
            if self.url is not None:
                raise ValueError(f"a '{self.state}' status carries no url")
            if self.pipeline is not PipelineStatus.NONE:
                raise ValueError(f"a '{self.state}' status carries no pipeline")
        elif self.url is None:
            raise ValueError(f"a '{self.state}' status requires a url")
        return self

    @classmethod
    def open(
        cls, number: int, url: str, pipeline: PipelineStatus = PipelineStatus.NONE
    ) -> PullRequestStatus:
        return cls(state=PullRequestState.OPEN, number=number, url=url, pipeline=pipeline)

    @classmethod
    def draft(
        cls, number: int, url: str, pipeline: PipelineStatus = PipelineStatus.NONE
    ) -> PullRequestStatus:
        return cls(state=PullRequestState.DRAFT, number=number, url=url, pipeline=pipeline)

    @classmethod
    def merged(cls, number: int) -> PullRequestStatus:
        return cls(state=PullRequestState.MERGED, number=number)

    @classmethod
    def closed(cls, number: int) -> PullRequestStatus:
        return cls(state=PullRequestState.CLOSED, number=number)

    @property
    def is_active(self) -> bool:
        return self.state in _ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in (PullRequestState.MERGED, PullRequestState.CLOSED)

    def format_short(self) -> str:
        match self.state:
            case PullRequestState.NONE:
                return "None"
            case PullRequestState.OPEN:
                return f"#{self.number}"
            case PullRequestState.DRAFT:
                return f"#{self.number} Draft"
            case PullRequestState.MERGED:
                return f"#{self.number} Merged"
        return f"#{self.number} Closed"


@dataclass(frozen=True)
class BranchQuery:
    """One branch to resolve in a poll cycle."""

    repository: str
    branch: str
    provider: ForgeProvider = ForgeProvider.GITHUB
    ci_backend: CIBackendKind | None = None

    @property
    def key(self) -> str:
        """Stable identity under which the branch's status is published."""
        return f"{self.repository}:{self.branch}"


@dataclass(frozen=True)
class StatusTransition:
    """A branch whose status changed between two snapshots."""

    key: str
    before: PullRequestStatus
    after: PullRequestStatus

    @property
    def merged(self) -> bool:
        return (
            self.after.state is PullRequestState.MERGED
            and self.before.state is not PullRequestState.MERGED
        )


class Snapshot(BaseModel):
    """Complete per-branch result of one poll cycle.

    `stale` lists keys whose value was carried over from the previous
    snapshot because this cycle's fetch failed. `disabled` lists
    repositories whose forge rejected the configured credentials.
    """

    model_config = ConfigDict(frozen=True)

    statuses: dict[str, PullRequestStatus] = Field(default_factory=dict)
    stale: tuple[str, ...] = ()
    disabled: tuple[str, ...] = ()

    def get(self, key: str) -> PullRequestStatus | None:
        return self.statuses.get(key)

    def status_for(self, query: BranchQuery) -> PullRequestStatus:
        return self.statuses.get(query.key, PullRequestStatus())

    def __len__(self) -> int:
        return len(self.statuses)

    def __contains__(self, key: object) -> bool:
        return key in self.statuses

    def transitions_from(
        self, previous: Snapshot | Mapping[str, PullRequestStatus]
    ) -> list[StatusTransition]:
        """List branches whose status differs from `previous`.

        Keys new to this snapshot are compared against a 'none' status.
        """
        before = previous.statuses if isinstance(previous, Snapshot) else previous
        transitions = []
        for key, status in self.statuses.items():
            old = before.get(key, PullRequestStatus())
            if old != status:
                transitions.append(StatusTransition(key=key, before=old, after=status))
        return transitions

    def to_json(self) -> str:
        return self.model_dump_json()
