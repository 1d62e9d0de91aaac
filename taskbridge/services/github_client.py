"""GitHub REST API client wrapper"""
import logging
import time
from typing import Iterator, List, Optional

import requests

from taskbridge.schemas import Issue, Milestone, Repository, parse_list, parse_model
from taskbridge.services.http import ApiError, JsonApi, RateLimiter, RetryPolicy

logger = logging.getLogger(__name__)


class GitHubClient(JsonApi):
    """Wrapper for the GitHub issue/milestone endpoints used by the sync"""

    service = "GitHub"

    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://api.github.com",
        per_page: int = 100,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        super().__init__(
            base_url,
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": "TaskBridge-Sync",
            },
            session=session,
            rate_limiter=rate_limiter,
            retry_policy=retry_policy,
        )
        self.per_page = per_page

    def _error_from_response(self, response: requests.Response) -> ApiError:
        # GitHub signals an exhausted primary limit as 403 + remaining=0; treat it as a 429.
        if response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0":
            retry_after = None
            reset = response.headers.get("x-ratelimit-reset")
            if reset:
                try:
                    retry_after = max(0.0, float(reset) - time.time())
                except ValueError:
                    retry_after = None
            return ApiError(self.service, 429, "rate limit exceeded", retry_after=retry_after)
        return super()._error_from_response(response)

    def list_issues_updated_since(self, owner: str, repo: str, since: Optional[str]) -> List[Issue]:
        """All issues (open + closed) updated since `since`; pull requests are dropped."""
        issues: List[Issue] = []
        page = 1
        while True:
            params = {
                "state": "all",
                "per_page": self.per_page,
                "page": page,
                "sort": "updated",
                "direction": "desc",
            }
            if since:
                params["since"] = since
            data = self.request("GET", f"/repos/{owner}/{repo}/issues", params=params)
            items = parse_list(Issue, data, "github issue")
            issues.extend(i for i in items if not i.is_pull_request)
            if len(items) < self.per_page:
                break
            page += 1
        return issues

    def iter_issues(self, owner: str, repo: str, state: str = "open", max_pages: int = 100) -> Iterator[Issue]:
        """Stream issues oldest-first, page by page."""
        page = 1
        while page <= max_pages:
            params = {
                "state": state,
                "per_page": self.per_page,
                "page": page,
                "sort": "created",
                "direction": "asc",
            }
            data = self.request("GET", f"/repos/{owner}/{repo}/issues", params=params)
            items = parse_list(Issue, data, "github issue")
            for item in items:
                if not item.is_pull_request:
                    yield item
            if len(items) < self.per_page:
                return
            page += 1
        logger.warning(f"Hit max pages ({max_pages}) while listing issues for {owner}/{repo}")

    def iter_org_repos(self, org: str) -> Iterator[Repository]:
        """Active (not archived, not disabled) repositories of an organization."""
        page = 1
        while True:
            params = {"per_page": self.per_page, "page": page, "sort": "full_name"}
            data = self.request("GET", f"/orgs/{org}/repos", params=params)
            repos = parse_list(Repository, data, "github repository")
            for repo in repos:
                if not (repo.archived or repo.disabled):
                    yield repo
            if len(repos) < self.per_page:
                return
            page += 1

    def get_issue(self, owner: str, repo: str, number: int) -> Optional[Issue]:
        """Get a single issue, returning None on 404."""
        data = self.request("GET", f"/repos/{owner}/{repo}/issues/{int(number)}", allow_404=True)
        if data is None:
            return None
        return parse_model(Issue, data, "github issue")

    def create_issue(
        self, owner: str, repo: str, title: str, body: Optional[str] = None, milestone: Optional[int] = None
    ) -> Issue:
        payload = {"title": title}
        if body:
            payload["body"] = body
        if milestone is not None:
            payload["milestone"] = milestone
        data = self.request("POST", f"/repos/{owner}/{repo}/issues", json=payload)
        issue = parse_model(Issue, data, "github issue")
        logger.info(f"Created issue {owner}/{repo}#{issue.number}")
        return issue

    def close_issue(self, owner: str, repo: str, number: int) -> Issue:
        data = self.request(
            "PATCH",
            f"/repos/{owner}/{repo}/issues/{int(number)}",
            json={"state": "closed", "state_reason": "completed"},
        )
        logger.info(f"Closed issue {owner}/{repo}#{number}")
        return parse_model(Issue, data, "github issue")

    def reopen_issue(self, owner: str, repo: str, number: int) -> Issue:
        data = self.request("PATCH", f"/repos/{owner}/{repo}/issues/{int(number)}", json={"state": "open"})
        logger.info(f"Reopened issue {owner}/{repo}#{number}")
        return parse_model(Issue, data, "github issue")

    def set_issue_milestone(self, owner: str, repo: str, number: int, milestone: Optional[int]) -> None:
        """Set (or clear, with None) the milestone of an issue."""
        self.request("PATCH", f"/repos/{owner}/{repo}/issues/{int(number)}", json={"milestone": milestone})

    def list_milestones(self, owner: str, repo: str) -> List[Milestone]:
        data = self.request(
            "GET", f"/repos/{owner}/{repo}/milestones", params={"state": "all", "per_page": self.per_page}
        )
        return parse_list(Milestone, data, "github milestone")
