"""Change pollers: what moved on either side since the last cycle"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from taskbridge.schemas import CompletedTask, Issue, Task
from taskbridge.services.github_client import GitHubClient
from taskbridge.services.hierarchy import GroupHierarchy
from taskbridge.services.todoist_client import TodoistClient

logger = logging.getLogger(__name__)


@dataclass
class RepoPollError:
    repo: str
    error: Exception

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass
class IssuePollResult:
    issues: List[Issue] = field(default_factory=list)
    repo_errors: List[RepoPollError] = field(default_factory=list)
    successful_repos: int = 0
    failed_repos: int = 0


@dataclass
class TaskPollResult:
    tasks: List[Task]
    new_token: str
    full_sync: bool = False


def poll_issue_changes(github: GitHubClient, since: Optional[str], hierarchy: GroupHierarchy) -> IssuePollResult:
    """Issues updated since `since` (None = everything) in every tracked repo.

    A repo that fails is recorded and skipped; the others still contribute.
    """
    result = IssuePollResult()
    logger.info(f"Polling {len(hierarchy.sub_groups)} repo(s) for issues since {since or 'beginning'}")

    for group in hierarchy.sub_groups.values():
        repo = group.full_repo_name
        try:
            issues = github.list_issues_updated_since(group.org_name, group.repo_name, since)
        except Exception as e:
            logger.error(f"Failed to fetch issues for {repo}: {e}")
            result.repo_errors.append(RepoPollError(repo=repo, error=e))
            result.failed_repos += 1
            continue

        routing = group.routing()
        result.issues.extend(issue.model_copy(update={"routing": routing}) for issue in issues)
        result.successful_repos += 1
        if issues:
            logger.debug(f"Found {len(issues)} issue(s) in {repo}")

    if result.repo_errors:
        logger.warning(
            f"Issue polling completed with {result.failed_repos} repo error(s), {result.successful_repos} ok"
        )
    return result


def poll_task_changes(todoist: TodoistClient, sync_token: str, hierarchy: GroupHierarchy) -> TaskPollResult:
    """Task delta since `sync_token`, limited to tracked sub-groups."""
    delta = todoist.sync_delta(sync_token)
    tasks: List[Task] = []
    for task in delta.items:
        group = hierarchy.sub_groups.get(task.project_id)
        if group is None or task.is_deleted:
            continue
        tasks.append(task.model_copy(update={"routing": group.routing()}))
    return TaskPollResult(tasks=tasks, new_token=delta.sync_token, full_sync=delta.full_sync)


def poll_completed_tasks(
    todoist: TodoistClient, since: Optional[datetime], hierarchy: GroupHierarchy
) -> List[CompletedTask]:
    """Completed tasks in tracked sub-groups, oldest completion first."""
    completed: List[CompletedTask] = []
    for item in todoist.completed_since(since):
        group = hierarchy.sub_groups.get(item.project_id)
        if group is None:
            continue
        completed.append(item.model_copy(update={"routing": group.routing()}))
    completed.sort(key=lambda t: t.completed_at_dt)
    return completed
