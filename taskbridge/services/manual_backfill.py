"""Operator-triggered backfill.

Modes:
    single-repo      one repository (owner + repo)
    org              every active repository of a GitHub organization (owner)
    projects         every repository mapped through ORG_MAPPINGS
    create-mappings  store task:<id> links for tasks that already point at an issue

Unlike the per-cycle catch-up this walks every matching issue (up to `limit`
per repo) and reports each one.
"""
import logging
from dataclasses import dataclass
from itertools import islice
from typing import Any, Callable, Dict, List, Optional, Tuple

from taskbridge.schemas import Issue
from taskbridge.services.caches import SyncContext
from taskbridge.services.hierarchy import ConfigurationError, GroupHierarchy, SubGroup
from taskbridge.services.kv_store import TaskLinkStore
from taskbridge.services.links import format_task_content
from taskbridge.services.todoist_client import LinkedTaskRef

logger = logging.getLogger(__name__)

MODES = ("single-repo", "org", "projects", "create-mappings")
MAPPED_MODES = ("projects", "create-mappings")
ISSUE_STATES = ("open", "closed", "all")

_SUMMARY_KEYS = {"created": "created", "would_create": "created", "skipped": "skipped", "failed": "failed"}


@dataclass(frozen=True)
class BackfillRequest:
    mode: str
    owner: Optional[str] = None
    repo: Optional[str] = None
    state: str = "open"
    dry_run: bool = False
    limit: Optional[int] = None

    def validate(self, org_mappings_configured: bool) -> None:
        if self.mode not in MODES:
            raise ValueError('mode must be "single-repo", "org", "projects", or "create-mappings"')
        if self.mode == "single-repo" and not self.repo:
            raise ValueError("repo is required for single-repo mode")
        if self.mode not in MAPPED_MODES and not self.owner:
            raise ValueError("owner is required for single-repo and org modes")
        if self.mode in MAPPED_MODES and not org_mappings_configured:
            raise ConfigurationError("ORG_MAPPINGS is required for this mode")
        if self.state not in ISSUE_STATES:
            raise ValueError('state must be "open", "closed", or "all"')
        if self.limit is not None and self.limit < 1:
            raise ValueError("limit must be a positive number")


@dataclass(frozen=True)
class RepoTarget:
    owner: str
    name: str
    group: Optional[SubGroup] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class ManualBackfill:
    def __init__(self, ctx: SyncContext, links: TaskLinkStore, load_hierarchy: Callable[[], GroupHierarchy]):
        self.ctx = ctx
        self.links = links
        self.load_hierarchy = load_hierarchy

    def run(self, request: BackfillRequest) -> Dict[str, Any]:
        if request.mode == "create-mappings":
            return self.create_mappings(request.dry_run)

        targets = self._targets(request)
        group_ids = [t.group.id for t in targets if t.group]
        existing = self.ctx.todoist.fetch_issue_links(group_ids) if group_ids else {}
        if group_ids and not request.dry_run:
            self.ctx.sections.prime(group_ids)

        logger.info(
            f"Manual backfill ({request.mode}, state={request.state}, dry_run={request.dry_run}) "
            f"over {len(targets)} repo(s)"
        )
        summary = {"total": 0, "created": 0, "skipped": 0, "failed": 0}
        repos = [self._backfill_repo(target, request, existing, summary) for target in targets]
        logger.info(f"Manual backfill finished: {summary}")
        return {"mode": request.mode, "dry_run": request.dry_run, "summary": summary, "repos": repos}

    def _targets(self, request: BackfillRequest) -> List[RepoTarget]:
        if request.mode == "projects":
            hierarchy = self.load_hierarchy()
            return [RepoTarget(g.org_name, g.repo_name, g) for g in hierarchy.sub_groups.values()]

        if request.mode == "single-repo":
            names: List[Tuple[str, str]] = [(request.owner, request.repo)]
        else:
            names = [(r.owner, r.name) for r in self.ctx.github.iter_org_repos(request.owner)]

        # Repos outside ORG_MAPPINGS can still be listed, just not given tasks
        try:
            hierarchy: Optional[GroupHierarchy] = self.load_hierarchy()
        except ConfigurationError as e:
            logger.warning(f"No project routing available ({e}), tasks can only be previewed")
            hierarchy = None
        return [
            RepoTarget(owner, name, hierarchy.group_for_repo(f"{owner}/{name}") if hierarchy else None)
            for owner, name in names
        ]

    def _backfill_repo(
        self,
        target: RepoTarget,
        request: BackfillRequest,
        existing: Dict[str, LinkedTaskRef],
        summary: Dict[str, int],
    ) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "repo": target.full_name,
            "project_id": target.group.id if target.group else None,
            "issues": [],
        }
        try:
            issues = self.ctx.github.iter_issues(target.owner, target.name, state=request.state)
            for issue in islice(issues, request.limit):
                result = self._backfill_issue(issue, target, request.dry_run, existing)
                summary["total"] += 1
                summary[_SUMMARY_KEYS[result["status"]]] += 1
                entry["issues"].append({"issue": issue.number, "title": issue.title, **result})
        except Exception as e:
            logger.error(f"Failed to process repo {target.full_name}: {e}")
            entry["error"] = str(e)
        return entry

    def _backfill_issue(
        self, issue: Issue, target: RepoTarget, dry_run: bool, existing: Dict[str, LinkedTaskRef]
    ) -> Dict[str, Any]:
        ref = f"{target.full_name}#{issue.number}"
        try:
            if target.group is not None:
                exists = issue.html_url in existing
            else:
                exists = self.ctx.todoist.find_task_by_issue_url(issue.html_url) is not None
            if exists:
                return {"status": "skipped", "reason": "already_exists"}
            if dry_run:
                return {"status": "would_create", "milestone": issue.milestone_title}
            if target.group is None:
                return {"status": "failed", "error": f"No Todoist project is mapped to {target.full_name}"}

            group = target.group
            milestone = issue.milestone_title
            section_id = None
            if milestone:
                try:
                    section_id = self.ctx.sections.get_or_create(group.id, milestone)
                except Exception as e:
                    logger.error(f"Failed to get/create section '{milestone}' for {ref}: {e}")

            task = self.ctx.todoist.create_task(
                format_task_content(issue.number, issue.title), issue.html_url, group.id, section_id
            )
            self.links.store(task.id, issue.html_url)
            existing[issue.html_url] = LinkedTaskRef(task_id=task.id, project_id=group.id)
            logger.info(f"Created task {task.id} for {ref}")
            return {"status": "created", "task_id": task.id, "section": milestone if section_id else None}
        except Exception as e:
            logger.error(f"Failed to backfill {ref}: {e}")
            return {"status": "failed", "error": str(e)}

    def create_mappings(self, dry_run: bool) -> Dict[str, Any]:
        """Seed the task -> issue link store from tasks that already carry an issue URL."""
        hierarchy = self.load_hierarchy()
        linked = self.ctx.todoist.fetch_issue_links(hierarchy.sub_group_ids)
        logger.info(f"Creating mappings for {len(linked)} linked task(s) (dry_run={dry_run})")

        summary = {"total": len(linked), "created": 0, "failed": 0}
        mappings = []
        for issue_url, ref in linked.items():
            if dry_run:
                status = "would_create"
            elif self.links.store(ref.task_id, issue_url):
                status = "created"
            else:
                status = "failed"
            summary["failed" if status == "failed" else "created"] += 1
            mappings.append({"task_id": ref.task_id, "issue_url": issue_url, "status": status})
        return {"mode": "create-mappings", "dry_run": dry_run, "summary": summary, "mappings": mappings}
