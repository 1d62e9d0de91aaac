"""Todoist API client wrapper (REST v2 + Sync v9)"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests

from taskbridge.schemas import (
    CompletedTask,
    Project,
    Section,
    SyncDelta,
    Task,
    parse_list,
    parse_model,
)
from taskbridge.services.http import JsonApi, RateLimiter, RetryPolicy
from taskbridge.services.links import format_task_content, parse_issue_url

logger = logging.getLogger(__name__)


@dataclass
class NewTask:
    """A task to be created for an issue."""

    title: str
    issue_number: int
    issue_url: str
    project_id: str
    section_id: Optional[str] = None
    milestone_name: Optional[str] = None
    full_repo_name: str = ""

    def args(self) -> Dict[str, Any]:
        data = {
            "content": format_task_content(self.issue_number, self.title),
            "description": self.issue_url,
            "project_id": self.project_id,
        }
        if self.section_id:
            data["section_id"] = self.section_id
        return data


@dataclass
class BatchCreateResult:
    success: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    # (draft, real task id) for every command Todoist acknowledged
    created: List[Tuple[NewTask, str]] = field(default_factory=list)
    failed_tasks: List[NewTask] = field(default_factory=list)


@dataclass(frozen=True)
class LinkedTaskRef:
    task_id: str
    project_id: str


class TodoistClient(JsonApi):
    """Wrapper for the Todoist endpoints used by the sync"""

    service = "Todoist"

    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://api.todoist.com",
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        super().__init__(
            base_url,
            {"Authorization": f"Bearer {token}"},
            session=session,
            rate_limiter=rate_limiter,
            retry_policy=retry_policy,
        )

    # --- Sync API ---

    def _sync_read(self, sync_token: str, resource_types: List[str]) -> Dict[str, Any]:
        data = self.request(
            "POST",
            "/sync/v9/sync",
            data={"sync_token": sync_token, "resource_types": json.dumps(resource_types)},
        )
        if not isinstance(data, dict):
            return {}
        return data

    def _sync_commands(self, commands: List[Dict[str, Any]]) -> Dict[str, Any]:
        data = self.request("POST", "/sync/v9/sync", json={"commands": commands})
        return data if isinstance(data, dict) else {}

    def list_projects(self) -> List[Project]:
        data = self._sync_read("*", ["projects"])
        return parse_list(Project, data.get("projects"), "todoist project")

    def sync_delta(self, sync_token: str) -> SyncDelta:
        """Incremental item changes since `sync_token` ('*' = full snapshot)."""
        data = self._sync_read(sync_token, ["items"])
        return parse_model(SyncDelta, data, "todoist sync response")

    def completed_since(
        self, since: Optional[datetime], limit: int = 200, max_pages: int = 50
    ) -> List[CompletedTask]:
        """Completed tasks (the Sync delta does not report completions), `limit` per page."""
        params: Dict[str, Any] = {"annotate_items": "true", "limit": limit}
        if since is not None:
            if since.tzinfo is not None:
                since = since.astimezone(timezone.utc).replace(tzinfo=None)
            params["since"] = since.strftime("%Y-%m-%dT%H:%M:%S")
        completed: List[CompletedTask] = []
        for page in range(max_pages):
            params["offset"] = page * limit
            data = self.request("GET", "/sync/v9/completed/get_all", params=dict(params))
            items = (data or {}).get("items") or []
            completed.extend(CompletedTask.from_feed_item(item) for item in items)
            if len(items) < limit:
                return completed
        logger.warning(f"Hit max pages ({max_pages}) while listing completed tasks")
        return completed

    def fetch_issue_links(self, project_ids: List[str]) -> Dict[str, LinkedTaskRef]:
        """Map issue URL -> task for every task in `project_ids` whose description links an issue."""
        wanted = {str(p) for p in project_ids}
        data = self._sync_read("*", ["items"])
        links: Dict[str, LinkedTaskRef] = {}
        for task in parse_list(Task, data.get("items"), "todoist task"):
            if task.project_id not in wanted:
                continue
            parsed = parse_issue_url(task.description)
            if parsed.found:
                links[parsed.link.url] = LinkedTaskRef(task_id=task.id, project_id=task.project_id)
        logger.info(f"Found {len(links)} existing linked task(s) across {len(wanted)} project(s)")
        return links

    def move_task(self, task_id: str, section_id: Optional[str], project_id: str) -> None:
        """Move a task into a section, or back to the project root when section_id is None."""
        args: Dict[str, Any] = {"id": task_id}
        if section_id:
            args["section_id"] = section_id
        else:
            args["project_id"] = project_id
        data = self._sync_commands([{"type": "item_move", "uuid": str(uuid.uuid4()), "args": args}])
        self._raise_on_command_failure(data, "item_move")

    def _raise_on_command_failure(self, data: Dict[str, Any], command: str) -> None:
        for status in (data.get("sync_status") or {}).values():
            if status != "ok":
                raise RuntimeError(f"Todoist {command} failed: {status}")

    def batch_create_sections(self, sections: List[Tuple[str, str]]) -> Dict[Tuple[str, str], str]:
        """Create (project_id, name) sections in one call; returns (project_id, name) -> section id."""
        created: Dict[Tuple[str, str], str] = {}
        if not sections:
            return created

        temp_ids: Dict[str, Tuple[str, str]] = {}
        commands = []
        for project_id, name in sections:
            temp_id = f"section_{uuid.uuid4().hex}"
            temp_ids[temp_id] = (project_id, name)
            commands.append(
                {
                    "type": "section_add",
                    "temp_id": temp_id,
                    "uuid": str(uuid.uuid4()),
                    "args": {"name": name, "project_id": project_id},
                }
            )

        data = self._sync_commands(commands)
        for temp_id, real_id in (data.get("temp_id_mapping") or {}).items():
            key = temp_ids.get(temp_id)
            if key is not None and real_id:
                created[key] = str(real_id)
        logger.info(f"Batch created {len(created)}/{len(sections)} section(s)")
        return created

    def batch_create_tasks(self, tasks: List[NewTask], batch_size: int = 50) -> BatchCreateResult:
        """Create tasks via Sync API `item_add` commands, `batch_size` per request."""
        result = BatchCreateResult()
        for start in range(0, len(tasks), batch_size):
            batch = tasks[start : start + batch_size]
            by_uuid: Dict[str, NewTask] = {}
            temp_for_uuid: Dict[str, str] = {}
            commands = []
            for task in batch:
                cmd_uuid = str(uuid.uuid4())
                temp_id = f"task_{uuid.uuid4().hex}"
                by_uuid[cmd_uuid] = task
                temp_for_uuid[cmd_uuid] = temp_id
                commands.append({"type": "item_add", "temp_id": temp_id, "uuid": cmd_uuid, "args": task.args()})

            try:
                data = self._sync_commands(commands)
            except Exception as e:
                logger.error(f"Batch task creation failed (batch starting at {start}, size {len(batch)}): {e}")
                result.failed += len(batch)
                result.failed_tasks.extend(batch)
                result.errors.append({"batch": start, "error": str(e)})
                continue

            statuses = data.get("sync_status") or {}
            mapping = data.get("temp_id_mapping") or {}
            for cmd_uuid, task in by_uuid.items():
                # No sync_status at all: Todoist accepted the whole batch
                status = statuses.get(cmd_uuid, "ok") if statuses else "ok"
                if status == "ok":
                    result.success += 1
                    real_id = mapping.get(temp_for_uuid[cmd_uuid])
                    if real_id:
                        result.created.append((task, str(real_id)))
                else:
                    result.failed += 1
                    result.failed_tasks.append(task)
                    result.errors.append({"uuid": cmd_uuid, "status": status, "issue_url": task.issue_url})
        return result

    # --- REST API ---

    def find_task_by_issue_url(self, issue_url: str) -> Optional[Task]:
        """Find the active task linked to exactly `issue_url`, or None."""
        data = self.request("GET", "/rest/v2/tasks", params={"filter": f"search: {issue_url}"})
        # The search filter is fuzzy (#1 also matches #10); confirm the exact link.
        for task in parse_list(Task, data, "todoist task"):
            parsed = parse_issue_url(task.description)
            if parsed.found and parsed.link.url == issue_url:
                return task
        return None

    def get_task(self, task_id: str) -> Optional[Task]:
        data = self.request("GET", f"/rest/v2/tasks/{task_id}", allow_404=True)
        if data is None:
            return None
        return parse_model(Task, data, "todoist task")

    def create_task(
        self, content: str, description: str, project_id: str, section_id: Optional[str] = None
    ) -> Task:
        payload: Dict[str, Any] = {"content": content, "description": description, "project_id": project_id}
        if section_id:
            payload["section_id"] = section_id
        data = self.request("POST", "/rest/v2/tasks", json=payload)
        task = parse_model(Task, data, "todoist task")
        logger.info(f"Created task {task.id} in project {project_id}")
        return task

    def update_task(self, task_id: str, *, content: Optional[str] = None, description: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {}
        if content is not None:
            payload["content"] = content
        if description is not None:
            payload["description"] = description
        if payload:
            self.request("POST", f"/rest/v2/tasks/{task_id}", json=payload)

    def close_task(self, task_id: str) -> None:
        self.request("POST", f"/rest/v2/tasks/{task_id}/close")

    def reopen_task(self, task_id: str) -> None:
        self.request("POST", f"/rest/v2/tasks/{task_id}/reopen")

    def list_sections(self, project_id: str) -> List[Section]:
        data = self.request("GET", "/rest/v2/sections", params={"project_id": project_id})
        return parse_list(Section, data, "todoist section")

    def create_section(self, project_id: str, name: str) -> Section:
        data = self.request("POST", "/rest/v2/sections", json={"project_id": project_id, "name": name})
        return parse_model(Section, data, "todoist section")
