"""Find the issue behind a completed task.

Completed tasks come from a feed that sometimes omits the description, so the
link is looked up in layers, cheapest first:

1. the durable task -> issue URL mapping
2. the description in the feed item
3. the `[#N]` content prefix combined with the group's repo
4. a point fetch of the task (writes the mapping back on success)
"""
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from taskbridge.schemas import CompletedTask
from taskbridge.services.kv_store import TaskLinkStore
from taskbridge.services.links import extract_issue_number, issue_url, parse_issue_url
from taskbridge.services.todoist_client import TodoistClient

logger = logging.getLogger(__name__)


class ResolutionStatus(str, enum.Enum):
    RESOLVED = "resolved"
    # Native task that never had an issue; safe to move past
    UNLINKED = "unlinked"
    # Could not tell; the completed cursor must not move past it
    UNRESOLVED = "unresolved"


class ResolutionSource(str, enum.Enum):
    KV = "kv"
    DESCRIPTION = "description"
    CONTENT_PARSE = "content_parse"
    REST_API = "rest_api"


@dataclass(frozen=True)
class MappingResolution:
    status: ResolutionStatus
    url: Optional[str] = None
    source: Optional[ResolutionSource] = None

    @property
    def resolved(self) -> bool:
        return self.status is ResolutionStatus.RESOLVED


class MappingResolver:
    def __init__(self, links: TaskLinkStore, todoist: TodoistClient):
        self.links = links
        self.todoist = todoist

    def resolve(self, task: CompletedTask) -> MappingResolution:
        try:
            url = self.links.get(task.id)
            if url:
                logger.debug(f"Task {task.id} resolved via KV mapping")
                return MappingResolution(ResolutionStatus.RESOLVED, url, ResolutionSource.KV)
        except Exception as e:
            logger.warning(f"KV lookup failed for task {task.id}: {e}")

        parsed = parse_issue_url(task.description)
        if parsed.found:
            logger.debug(f"Task {task.id} resolved via description")
            return MappingResolution(ResolutionStatus.RESOLVED, parsed.link.url, ResolutionSource.DESCRIPTION)

        number = extract_issue_number(task.content)
        if number is not None and task.routing is not None:
            url = issue_url(task.routing.full_repo_name, number)
            logger.debug(f"Task {task.id} resolved from content prefix + repo")
            return MappingResolution(ResolutionStatus.RESOLVED, url, ResolutionSource.CONTENT_PARSE)

        try:
            fetched = self.todoist.get_task(task.id)
            if fetched is not None:
                fetched_link = parse_issue_url(fetched.description)
                if fetched_link.found:
                    logger.debug(f"Task {task.id} resolved via REST fetch")
                    self.links.store(task.id, fetched_link.link.url)
                    return MappingResolution(
                        ResolutionStatus.RESOLVED, fetched_link.link.url, ResolutionSource.REST_API
                    )
        except Exception as e:
            logger.warning(f"REST fetch failed for task {task.id}: {e}")

        if number is None and task.description is not None:
            logger.debug(f"Task {task.id} has no issue link (native task)")
            return MappingResolution(ResolutionStatus.UNLINKED)

        logger.warning(
            f"Could not resolve issue URL for task {task.id}: "
            f"content={task.content[:100]!r} "
            f"has_description={task.description is not None} "
            f"description_preview={(task.description or '')[:100]!r} "
            f"repo={task.routing.full_repo_name if task.routing else None} "
            f"has_issue_prefix={number is not None}"
        )
        return MappingResolution(ResolutionStatus.UNRESOLVED)
