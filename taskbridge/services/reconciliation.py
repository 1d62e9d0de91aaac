"""Per-entity reconciliation between GitHub issues and Todoist tasks.

Issue -> Task:
    open issue without task      -> create task (in the milestone's section),
                                    unless its task was completed this cycle
    closed issue, task open      -> complete task
    open issue, task completed   -> reopen task
    title / milestone changed    -> update content / move task

Task -> Issue:
    linked task completed / reopened -> close / reopen issue
    linked task moved to a section   -> set the matching milestone
    native task (no issue URL)       -> create issue, link it, then rewrite the task

Every call returns a `SyncOutcome`; nothing is raised to the caller.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Set

from taskbridge.schemas import CompletedTask, Issue, Task
from taskbridge.services.caches import SyncContext
from taskbridge.services.http import ApiError
from taskbridge.services.kv_store import TaskLinkStore
from taskbridge.services.links import IssueLink, format_task_content, parse_issue_url, strip_task_prefix
from taskbridge.services.mapping_resolver import MappingResolver, ResolutionStatus

logger = logging.getLogger(__name__)


class SyncAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    COMPLETED = "completed"
    REOPENED = "reopened"
    SECTION_UPDATED = "section_updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    ERROR = "error"


# Skip reasons that must keep the completed-task cursor from moving past the task
HOLD_BACK_REASONS = frozenset({"unresolved", "invalid_url"})


@dataclass(frozen=True)
class SyncOutcome:
    action: SyncAction
    ref: str
    reason: Optional[str] = None
    section: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def skipped(cls, ref: str, reason: str, **kwargs) -> "SyncOutcome":
        return cls(SyncAction.SKIPPED, ref, reason=reason, **kwargs)

    @property
    def is_error(self) -> bool:
        return self.action is SyncAction.ERROR

    @property
    def has_error(self) -> bool:
        """True when there is an error worth recording (including permanent 4xx skips)."""
        return self.error is not None

    @property
    def holds_cursor(self) -> bool:
        return self.is_error or (self.action is SyncAction.SKIPPED and self.reason in HOLD_BACK_REASONS)

    def to_dict(self):
        data = {"action": self.action.value, "ref": self.ref}
        for key in ("reason", "section", "error", "code"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


class ReconciliationEngine:
    def __init__(self, ctx: SyncContext, links: TaskLinkStore, resolver: MappingResolver):
        self.ctx = ctx
        self.links = links
        self.resolver = resolver
        self.completed_issue_urls: Set[str] = set()

    def remember_completed(self, tasks: Iterable[CompletedTask]) -> None:
        """Note issues whose task shows up in the completed feed of this cycle."""
        for task in tasks:
            parsed = parse_issue_url(task.description)
            url = parsed.link.url if parsed.found else self.links.get(task.id)
            if url:
                self.completed_issue_urls.add(url)

    def _guard(self, ref: str, what: str, fn: Callable[[], SyncOutcome]) -> SyncOutcome:
        try:
            return fn()
        except ApiError as e:
            if e.is_client_error:
                logger.warning(f"Skipping {ref} ({what}): {e}")
                return SyncOutcome.skipped(ref, "client_error", error=str(e), code=e.code)
            logger.error(f"Failed to {what} {ref}: {e}")
            return SyncOutcome(SyncAction.ERROR, ref, error=str(e), code=e.code)
        except Exception as e:
            logger.error(f"Failed to {what} {ref}: {e}")
            code = type(e).__name__ if type(e) is not Exception else None
            return SyncOutcome(SyncAction.ERROR, ref, error=str(e), code=code)

    # --- GitHub -> Todoist ---

    def sync_issue_to_task(self, issue: Issue) -> SyncOutcome:
        return self._guard(issue.ref, "sync issue", lambda: self._sync_issue_to_task(issue))

    def _sync_issue_to_task(self, issue: Issue) -> SyncOutcome:
        ref = issue.ref
        if issue.routing is None:
            return SyncOutcome.skipped(ref, "no_project_id")
        project_id = issue.routing.group_id

        milestone = issue.milestone_title
        target_section_id: Optional[str] = None
        section_failed = False
        if milestone:
            try:
                target_section_id = self.ctx.sections.get_or_create(project_id, milestone)
            except Exception as e:
                logger.error(f"Failed to get/create section '{milestone}' for {ref}: {e}")
                section_failed = True

        task = self.ctx.todoist.find_task_by_issue_url(issue.html_url)

        if task is None:
            if issue.state != "open":
                return SyncOutcome.skipped(ref, "closed_no_task")
            # The active-task search cannot see it; the completed pass closes the issue instead
            if issue.html_url in self.completed_issue_urls:
                logger.info(f"Task for {ref} was completed this cycle, not creating another")
                return SyncOutcome.skipped(ref, "task_completed")
            section_name = milestone if target_section_id else None
            where = f" in section '{section_name}'" if section_name else ""
            logger.info(f"Creating task for open issue {ref}{where}")
            created = self.ctx.todoist.create_task(
                format_task_content(issue.number, issue.title),
                issue.html_url,
                project_id,
                target_section_id,
            )
            self.links.store(created.id, issue.html_url)
            return SyncOutcome(SyncAction.CREATED, ref, section=section_name)

        if issue.state == "closed" and not task.completed:
            logger.info(f"Completing task {task.id} for closed issue {ref}")
            self.ctx.todoist.close_task(task.id)
            return SyncOutcome(SyncAction.COMPLETED, ref)

        if issue.state == "open" and task.completed:
            logger.info(f"Reopening task {task.id} for reopened issue {ref}")
            self.ctx.todoist.reopen_task(task.id)
            return SyncOutcome(SyncAction.REOPENED, ref)

        updated = False
        expected = format_task_content(issue.number, issue.title)
        if task.content != expected:
            logger.debug(f"Updating title of task {task.id}: {task.content!r} -> {expected!r}")
            self.ctx.todoist.update_task(task.id, content=expected)
            updated = True

        # A failed section lookup says nothing about where the task belongs
        if not section_failed and (task.section_id or None) != target_section_id:
            where = f"to section '{milestone}'" if target_section_id else "out of its section"
            logger.info(f"Moving task {task.id} {where} ({ref})")
            self.ctx.todoist.move_task(task.id, target_section_id, project_id)
            return SyncOutcome(SyncAction.SECTION_UPDATED, ref, section=milestone if target_section_id else None)

        if updated:
            return SyncOutcome(SyncAction.UPDATED, ref)
        return SyncOutcome(SyncAction.UNCHANGED, ref)

    # --- Todoist -> GitHub ---

    def sync_task_to_issue(self, task: Task) -> SyncOutcome:
        return self._guard(f"task {task.id}", "sync task", lambda: self._sync_task_to_issue(task))

    def _sync_task_to_issue(self, task: Task) -> SyncOutcome:
        parsed = parse_issue_url(task.description)
        if parsed.found:
            return self._sync_linked_task(task, parsed.link)
        return self._create_issue_for_task(task)

    def _sync_linked_task(self, task: Task, link: IssueLink) -> SyncOutcome:
        ref = link.ref
        issue = self.ctx.github.get_issue(link.owner, link.repo, link.number)
        if issue is None:
            logger.warning(f"Issue {ref} linked from task {task.id} not found")
            return SyncOutcome.skipped(f"task {task.id}", "issue_not_found")

        if task.completed and issue.state == "open":
            logger.info(f"Closing issue {ref} for completed task {task.id}")
            self.ctx.github.close_issue(link.owner, link.repo, link.number)
            return SyncOutcome(SyncAction.COMPLETED, ref)

        if not task.completed and issue.state == "closed":
            logger.info(f"Reopening issue {ref} for uncompleted task {task.id}")
            self.ctx.github.reopen_issue(link.owner, link.repo, link.number)
            return SyncOutcome(SyncAction.REOPENED, ref)

        section_name: Optional[str] = None
        if task.section_id:
            section_name = self.ctx.sections.name_for(task.project_id, task.section_id)
            if section_name is None:
                logger.warning(f"Unknown section {task.section_id} for task {task.id}, leaving milestone of {ref}")
                return SyncOutcome(SyncAction.UNCHANGED, ref)

        current = issue.milestone_title
        if section_name == current:
            return SyncOutcome(SyncAction.UNCHANGED, ref)

        number: Optional[int] = None
        if section_name is not None:
            number = self.ctx.milestones.number_for(link.owner, link.repo, section_name)
            if number is None:
                logger.warning(f"Milestone '{section_name}' not found in {link.full_repo_name}, skipping update")
                return SyncOutcome(SyncAction.UNCHANGED, ref)

        logger.info(f"Updating milestone of {ref}: {current!r} -> {section_name!r}")
        self.ctx.github.set_issue_milestone(link.owner, link.repo, link.number, number)
        return SyncOutcome(SyncAction.SECTION_UPDATED, ref, section=section_name)

    def _create_issue_for_task(self, task: Task) -> SyncOutcome:
        ref = f"task {task.id}"
        # An earlier attempt created the issue but never rewrote the task
        stored = parse_issue_url(self.links.get(task.id))
        if stored.found:
            return self._relink_task(task, stored.link)

        routing = task.routing
        if routing is None:
            return SyncOutcome.skipped(ref, "no_repo_info")
        # Never create issues for work that is already done
        if task.completed:
            return SyncOutcome.skipped(ref, "completed_no_issue")

        milestone_name: Optional[str] = None
        milestone_number: Optional[int] = None
        if task.section_id:
            milestone_name = self.ctx.sections.name_for(task.project_id, task.section_id)
            if milestone_name:
                try:
                    milestone_number = self.ctx.milestones.number_for(
                        routing.org_name, routing.repo_name, milestone_name
                    )
                except Exception as e:
                    logger.error(f"Failed to look up milestone '{milestone_name}' in {routing.full_repo_name}: {e}")
                if milestone_number is None:
                    logger.warning(
                        f"Milestone '{milestone_name}' not found in {routing.full_repo_name}, creating issue without it"
                    )

        title = strip_task_prefix(task.content)
        logger.info(f"Creating issue in {routing.full_repo_name} for {ref}: {title}")
        issue = self.ctx.github.create_issue(
            routing.org_name,
            routing.repo_name,
            title,
            task.description or f"Created from Todoist task: {task.id}",
            milestone_number,
        )
        # Stored before the task rewrite so a failed rewrite is retried, not re-created
        self.links.store(task.id, issue.html_url)
        self.ctx.todoist.update_task(
            task.id,
            content=format_task_content(issue.number, title),
            description=issue.html_url,
        )
        logger.info(f"Created issue {issue.html_url} for {ref}")
        return SyncOutcome(SyncAction.CREATED, issue.html_url)

    def _relink_task(self, task: Task, link: IssueLink) -> SyncOutcome:
        logger.info(f"Task {task.id} already has issue {link.ref}, rewriting its link")
        self.ctx.todoist.update_task(
            task.id,
            content=format_task_content(link.number, strip_task_prefix(task.content)),
            description=link.url,
        )
        return SyncOutcome(SyncAction.UPDATED, link.ref)

    # --- Completed tasks ---

    def sync_completed_task(self, task: CompletedTask) -> SyncOutcome:
        return self._guard(f"task {task.id}", "process completed task", lambda: self._sync_completed_task(task))

    def _sync_completed_task(self, task: CompletedTask) -> SyncOutcome:
        ref = f"task {task.id}"
        resolution = self.resolver.resolve(task)
        if resolution.status is ResolutionStatus.UNRESOLVED:
            return SyncOutcome.skipped(ref, "unresolved")
        if resolution.status is ResolutionStatus.UNLINKED:
            return SyncOutcome.skipped(ref, "no_linked_issue")

        parsed = parse_issue_url(resolution.url)
        if not parsed.found:
            logger.warning(f"Invalid issue URL {resolution.url!r} for {ref}")
            return SyncOutcome.skipped(ref, "invalid_url")
        link = parsed.link

        issue = self.ctx.github.get_issue(link.owner, link.repo, link.number)
        if issue is None:
            logger.warning(f"Issue {link.ref} for completed {ref} not found")
            return SyncOutcome.skipped(ref, "issue_not_found")

        if issue.state == "open":
            logger.info(f"Closing issue {link.ref} (resolved via {resolution.source.value}) for completed {ref}")
            self.ctx.github.close_issue(link.owner, link.repo, link.number)
            self.links.delete(task.id)
            return SyncOutcome(SyncAction.COMPLETED, link.ref)
        return SyncOutcome(SyncAction.UNCHANGED, link.ref)
