"""
GitHub Code Host
================

CodeHostClient backed by the GitHub REST API.

Handles:
- Pull request creation, lookup and merge
- Check runs for a branch or commit
- Pull request reviews and comments
"""

from datetime import datetime
from typing import Any, Optional

import httpx
import structlog

from autopilot.core.autonomous.collaborators import (
    CiCheck,
    CodeHostClient,
    PullRequestInfo,
    PullRequestRequest,
    ReviewComment,
)
from autopilot.core.config import settings
from autopilot.core.exceptions import CodeHostError
from autopilot.core.models import CiConclusion

logger = structlog.get_logger()


# GitHub check-run conclusion -> CiConclusion
CONCLUSIONS = {
    "success": CiConclusion.SUCCESS,
    "neutral": CiConclusion.SUCCESS,
    "failure": CiConclusion.FAILURE,
    "timed_out": CiConclusion.FAILURE,
    "action_required": CiConclusion.FAILURE,
    "startup_failure": CiConclusion.FAILURE,
    "cancelled": CiConclusion.CANCELLED,
    "skipped": CiConclusion.SKIPPED,
    "stale": CiConclusion.PENDING,
}


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _pull_request(data: dict[str, Any]) -> PullRequestInfo:
    if data.get("merged") or data.get("merged_at"):
        state = "merged"
    else:
        state = data.get("state", "open")
    head = data.get("head") or {}
    return PullRequestInfo(
        number=data["number"],
        state=state,
        mergeable=data.get("mergeable"),
        head_ref=head.get("ref"),
        url=data.get("html_url"),
        pushed_at=_parse_time(data.get("updated_at")),
    )


def _check(data: dict[str, Any]) -> CiCheck:
    if data.get("status") != "completed":
        conclusion = CiConclusion.PENDING
    else:
        conclusion = CONCLUSIONS.get(data.get("conclusion") or "", CiConclusion.PENDING)
    output = data.get("output") or {}
    return CiCheck(
        name=data["name"],
        conclusion=conclusion,
        updated_at=_parse_time(data.get("completed_at") or data.get("started_at")),
        details_url=data.get("details_url"),
        summary=output.get("summary"),
    )


class GitHubCodeHost(CodeHostClient):
    """
    GitHub REST client for one repository.

    Usage:
        host = GitHubCodeHost(repository="acme/shop", token="ghp_...")
        pr = await host.create_pull_request(PullRequestRequest(title="...", head="story-1"))
        await host.close()
    """

    def __init__(
        self,
        repository: Optional[str] = None,
        token: Optional[str] = None,
        api_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.repository = repository or settings.GITHUB_REPOSITORY
        if not self.repository:
            raise CodeHostError("GitHub repository is not configured")

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        token = token or settings.GITHUB_TOKEN
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = client or httpx.AsyncClient(
            base_url=api_url or settings.GITHUB_API_URL,
            headers=headers,
            timeout=30.0,
        )
        logger.info("github_code_host_initialized", repository=self.repository, authenticated=bool(token))

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"/repos/{self.repository}{path}"
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("github_request_failed", method=method, path=path, error=str(e))
            raise CodeHostError(f"GitHub {method} {path} failed: {e}") from e
        return response

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        if response.is_error:
            logger.warning(
                "github_request_rejected",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise CodeHostError(f"GitHub {method} {path} returned {response.status_code}: {response.text}")
        return response.json() if response.content else None

    # ==========================================================================
    # Pull Requests
    # ==========================================================================

    async def create_pull_request(self, request: PullRequestRequest) -> PullRequestInfo:
        data = await self._json(
            "POST",
            "/pulls",
            json={"title": request.title, "head": request.head, "base": request.base, "body": request.body},
        )
        if request.labels:
            await self._json("POST", f"/issues/{data['number']}/labels", json={"labels": request.labels})

        logger.info("github_pull_request_created", number=data["number"], head=request.head)
        return _pull_request(data)

    async def get_pull_request(self, number: int) -> PullRequestInfo:
        return _pull_request(await self._json("GET", f"/pulls/{number}"))

    async def merge_pull_request(self, number: int, method: str = "squash") -> bool:
        """Merge; GitHub answers 405 or 409 when the PR is not mergeable."""
        response = await self._request("PUT", f"/pulls/{number}/merge", json={"merge_method": method})
        if response.status_code in (405, 409):
            logger.info("github_merge_refused", number=number, status_code=response.status_code)
            return False
        if response.is_error:
            raise CodeHostError(f"GitHub merge of #{number} returned {response.status_code}: {response.text}")
        return bool(response.json().get("merged"))

    async def comment(self, number: int, body: str) -> None:
        await self._json("POST", f"/issues/{number}/comments", json={"body": body})

    # ==========================================================================
    # Checks & Reviews
    # ==========================================================================

    async def list_ci_checks(self, ref: str) -> list[CiCheck]:
        data = await self._json("GET", f"/commits/{ref}/check-runs", params={"filter": "latest"})
        return [_check(run) for run in data.get("check_runs", [])]

    async def list_reviews(self, number: int) -> list[ReviewComment]:
        data = await self._json("GET", f"/pulls/{number}/reviews")
        return [
            ReviewComment(
                author=(review.get("user") or {}).get("login", "unknown"),
                body=review.get("body") or "",
                state=(review.get("state") or "").lower() or None,
                submitted_at=_parse_time(review.get("submitted_at")),
            )
            for review in data
        ]
