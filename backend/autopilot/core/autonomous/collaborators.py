"""
Collaborator Interfaces
=======================

Abstract code-hosting and worktree layers consumed by the controller.
The controller only reads PR status/mergeability and CI results, and only
writes PR create/merge/comment. Worktrees are referenced by opaque id.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from autopilot.core.models import CiConclusion


@dataclass(frozen=True)
class CiCheck:
    """Latest conclusion reported for one CI check."""
    name: str
    conclusion: CiConclusion
    updated_at: Optional[datetime] = None
    details_url: Optional[str] = None
    summary: Optional[str] = None


@dataclass(frozen=True)
class PullRequestInfo:
    number: int
    state: str = "open"                     # open, merged, closed
    mergeable: Optional[bool] = None        # None while the host is still computing
    conflicting_files: tuple[str, ...] = ()
    head_ref: Optional[str] = None
    url: Optional[str] = None
    pushed_at: Optional[datetime] = None

    @property
    def is_merged(self) -> bool:
        return self.state == "merged"


@dataclass(frozen=True)
class ReviewComment:
    author: str
    body: str
    path: Optional[str] = None
    line: Optional[int] = None
    state: Optional[str] = None             # approved, changes_requested, commented
    submitted_at: Optional[datetime] = None


@dataclass
class PullRequestRequest:
    title: str
    head: str
    body: str = ""
    base: str = "main"
    labels: list[str] = field(default_factory=list)


class CodeHostClient(ABC):
    """Pull request and CI access on the code-hosting platform."""

    @abstractmethod
    async def create_pull_request(self, request: PullRequestRequest) -> PullRequestInfo:
        """Open a pull request and return its initial state."""
        pass

    @abstractmethod
    async def get_pull_request(self, number: int) -> PullRequestInfo:
        pass

    @abstractmethod
    async def list_ci_checks(self, ref: str) -> list[CiCheck]:
        """Latest check runs for a branch or commit."""
        pass

    @abstractmethod
    async def list_reviews(self, number: int) -> list[ReviewComment]:
        pass

    @abstractmethod
    async def merge_pull_request(self, number: int, method: str = "squash") -> bool:
        """Merge; False when the host refuses."""
        pass

    @abstractmethod
    async def comment(self, number: int, body: str) -> None:
        pass


class WorktreeManager(ABC):
    """Isolated working copies, one per story."""

    @abstractmethod
    async def create(self, story_key: str, branch: Optional[str] = None) -> str:
        """Create a worktree and return its opaque reference."""
        pass

    @abstractmethod
    async def remove(self, ref: str) -> None:
        pass
