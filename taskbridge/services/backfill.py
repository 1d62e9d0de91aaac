"""Bounded catch-up for newly tracked groups.

Open issues of new repos are mirrored as tasks in batches: one bulk link
prefetch, one bulk section create and chunked bulk task creates per cycle.
Groups that could not be finished are reported back so the next cycle resumes.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from taskbridge.config import settings
from taskbridge.services.caches import SyncContext
from taskbridge.services.hierarchy import GroupHierarchy
from taskbridge.services.kv_store import TaskLinkStore
from taskbridge.services.todoist_client import NewTask

logger = logging.getLogger(__name__)


@dataclass
class BackfillStats:
    new_groups: int = 0
    issues: int = 0
    created: int = 0
    skipped: int = 0
    errors: int = 0
    repo_errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "new_groups": self.new_groups,
            "issues": self.issues,
            "created": self.created,
            "skipped": self.skipped,
            "errors": self.errors,
            "repo_errors": list(self.repo_errors),
        }


@dataclass
class BackfillReport:
    incomplete_group_ids: List[str] = field(default_factory=list)
    stats: BackfillStats = field(default_factory=BackfillStats)


class BackfillEngine:
    def __init__(
        self,
        ctx: SyncContext,
        links: TaskLinkStore,
        *,
        max_tasks_per_sync: Optional[int] = None,
        max_sections_per_sync: Optional[int] = None,
        batch_task_limit: Optional[int] = None,
    ):
        self.ctx = ctx
        self.links = links
        self.max_tasks_per_sync = max_tasks_per_sync or settings.max_tasks_per_sync
        self.max_sections_per_sync = max_sections_per_sync or settings.max_sections_per_sync
        self.batch_task_limit = batch_task_limit or settings.batch_task_limit

    def run(self, group_ids: List[str], hierarchy: GroupHierarchy) -> BackfillReport:
        report = BackfillReport()
        report.stats.new_groups = len(group_ids)
        groups = [hierarchy.sub_groups[g] for g in group_ids if g in hierarchy.sub_groups]
        if not groups:
            logger.info("No repos to backfill")
            return report

        logger.info(f"Backfilling {len(groups)} repo(s): {', '.join(g.full_repo_name for g in groups)}")

        existing = self.ctx.todoist.fetch_issue_links([g.id for g in groups])

        queued: List[NewTask] = []
        sections_needed: Dict[Tuple[str, str], None] = {}
        incomplete: List[str] = []
        hit_limit = False

        for index, group in enumerate(groups):
            try:
                for issue in self.ctx.github.iter_issues(group.org_name, group.repo_name, state="open"):
                    report.stats.issues += 1
                    if issue.html_url in existing:
                        report.stats.skipped += 1
                        continue
                    if len(queued) >= self.max_tasks_per_sync:
                        logger.info(
                            f"Reached per-sync limit of {self.max_tasks_per_sync} task(s), "
                            f"will continue on next sync"
                        )
                        hit_limit = True
                        break

                    milestone = issue.milestone_title
                    section_id = None
                    if milestone:
                        section_id = self.ctx.sections.lookup(group.id, milestone)
                        if section_id is None:
                            sections_needed.setdefault((group.id, milestone), None)
                    queued.append(
                        NewTask(
                            title=issue.title,
                            issue_number=issue.number,
                            issue_url=issue.html_url,
                            project_id=group.id,
                            section_id=section_id,
                            milestone_name=milestone,
                            full_repo_name=group.full_repo_name,
                        )
                    )
            except Exception as e:
                logger.error(f"Failed to fetch issues for repo {group.full_repo_name}: {e}")
                report.stats.errors += 1
                report.stats.repo_errors.append({"repo": group.full_repo_name, "error": str(e)})
                incomplete.append(group.id)
                continue

            if hit_limit:
                incomplete.extend(g.id for g in groups[index:] if g.id not in incomplete)
                break

        if not queued:
            logger.info("No new tasks to create")
            report.incomplete_group_ids = incomplete
            return report

        logger.info(f"Collected {len(queued)} task(s) to create, {len(sections_needed)} section(s) to create")

        if sections_needed:
            self._create_sections(list(sections_needed)[: self.max_sections_per_sync], queued)

        batch = self.ctx.todoist.batch_create_tasks(queued, batch_size=self.batch_task_limit)
        report.stats.created = batch.success
        report.stats.errors += batch.failed

        for task, task_id in batch.created:
            self.links.store(task_id, task.issue_url)
            where = f" (section: {task.milestone_name})" if task.milestone_name else ""
            logger.debug(f"Created task {task_id} for {task.full_repo_name}#{task.issue_number}{where}")

        if batch.errors:
            logger.warning(f"Batch creation had {len(batch.errors)} error(s): {batch.errors}")
        # Failed creates are retried next cycle; the link prefetch keeps that idempotent
        failed_groups: Set[str] = {t.project_id for t in batch.failed_tasks}
        incomplete.extend(g for g in failed_groups if g not in incomplete)

        if incomplete:
            logger.info(f"Backfill incomplete, {len(incomplete)} project(s) continue on next sync")
        logger.info(f"Backfill completed: {report.stats.to_dict()}")
        report.incomplete_group_ids = incomplete
        return report

    def _create_sections(self, needed: List[Tuple[str, str]], queued: List[NewTask]) -> None:
        logger.info(f"Batch creating {len(needed)} section(s)")
        try:
            created = self.ctx.todoist.batch_create_sections(needed)
        except Exception as e:
            # Tasks still get created, just outside a section
            logger.error(f"Batch section creation failed: {e}")
            created = {}
        for (project_id, name), section_id in created.items():
            self.ctx.sections.register(project_id, name, section_id)
        for task in queued:
            if task.milestone_name and not task.section_id:
                task.section_id = self.ctx.sections.lookup(task.project_id, task.milestone_name)
