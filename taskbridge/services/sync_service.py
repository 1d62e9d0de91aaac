"""Bidirectional GitHub <-> Todoist sync cycle"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from taskbridge.config import Settings, settings
from taskbridge.services.backfill import BackfillEngine
from taskbridge.services.caches import SyncContext
from taskbridge.services.github_client import GitHubClient
from taskbridge.services.hierarchy import (
    ConfigurationError,
    GroupHierarchy,
    build_group_hierarchy,
    parse_org_mappings,
)
from taskbridge.services.http import RetryPolicy, shared_rate_limiter
from taskbridge.services.kv_store import KVStore, TaskLinkStore
from taskbridge.services.manual_backfill import BackfillRequest, ManualBackfill
from taskbridge.services.mapping_resolver import MappingResolver
from taskbridge.services.pollers import poll_completed_tasks, poll_issue_changes, poll_task_changes
from taskbridge.services.reconciliation import ReconciliationEngine, SyncAction, SyncOutcome
from taskbridge.services.sync_state import (
    FULL_SYNC_TOKEN,
    ForceBackfill,
    SyncState,
    clear_errors,
    get_sync_health_status,
    load_sync_state,
    parse_iso,
    record_error,
    save_sync_state,
    utc_iso,
)
from taskbridge.services.todoist_client import TodoistClient

logger = logging.getLogger(__name__)

# Two cycles must never interleave their reads/writes of the state record
_cycle_lock = threading.Lock()


class SyncInProgressError(Exception):
    """Raised when an operation needs the cycle lock while a cycle is running."""


def _retry_policy(cfg: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=cfg.max_retries,
        base_delay=cfg.base_retry_delay_seconds,
        max_delay=cfg.max_retry_delay_seconds,
    )


def build_github_client(cfg: Settings) -> GitHubClient:
    return GitHubClient(
        cfg.github_token,
        base_url=cfg.github_api_base,
        per_page=cfg.per_page,
        rate_limiter=shared_rate_limiter("github", cfg.github_rate_limit),
        retry_policy=_retry_policy(cfg),
    )


def build_todoist_client(cfg: Settings) -> TodoistClient:
    return TodoistClient(
        cfg.todoist_api_token,
        base_url=cfg.todoist_api_base,
        rate_limiter=shared_rate_limiter("todoist", cfg.todoist_rate_limit),
        retry_policy=_retry_policy(cfg),
    )


def _empty_results() -> Dict[str, Dict[str, Any]]:
    return {
        "github": {
            "processed": 0,
            "created": 0,
            "updated": 0,
            "completed": 0,
            "reopened": 0,
            "section_updated": 0,
            "skipped": 0,
            "errors": 0,
        },
        "todoist": {
            "processed": 0,
            "closed": 0,
            "reopened": 0,
            "created_issues": 0,
            "milestone_updated": 0,
            "skipped": 0,
            "errors": 0,
        },
        "backfill": {"new_groups": 0, "issues": 0, "created": 0, "skipped": 0, "errors": 0, "repo_errors": []},
    }


_GITHUB_TALLY = {
    SyncAction.CREATED: "created",
    SyncAction.UPDATED: "updated",
    SyncAction.COMPLETED: "completed",
    SyncAction.REOPENED: "reopened",
    SyncAction.SECTION_UPDATED: "section_updated",
    SyncAction.SKIPPED: "skipped",
    SyncAction.ERROR: "errors",
}

_TODOIST_TALLY = {
    SyncAction.CREATED: "created_issues",
    SyncAction.COMPLETED: "closed",
    SyncAction.REOPENED: "reopened",
    SyncAction.SECTION_UPDATED: "milestone_updated",
    SyncAction.SKIPPED: "skipped",
    SyncAction.ERROR: "errors",
}


@dataclass
class SyncResult:
    success: bool
    duration_ms: int
    results: Dict[str, Dict[str, Any]] = field(default_factory=_empty_results)
    error: Optional[str] = None
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "duration_ms": self.duration_ms,
            "results": self.results,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.warning is not None:
            data["warning"] = self.warning
        return data


class SyncService:
    """Runs sync cycles against the state stored in the database"""

    def __init__(
        self,
        db: Session,
        cfg: Optional[Settings] = None,
        github: Optional[GitHubClient] = None,
        todoist: Optional[TodoistClient] = None,
    ):
        self.db = db
        self.cfg = cfg or settings
        self.kv = KVStore(db)
        self.links = TaskLinkStore(self.kv, ttl_days=self.cfg.task_mapping_ttl_days)
        self.github = github or build_github_client(self.cfg)
        self.todoist = todoist or build_todoist_client(self.cfg)
        self._errors_this_cycle = 0

    @staticmethod
    def _utcnow() -> datetime:
        return datetime.now(timezone.utc)

    def _record(self, state: SyncState, operation: str, error: Union[Exception, str], code: Optional[str] = None):
        record_error(state, operation, error, code=code, max_recent=self.cfg.max_recent_errors)
        self._errors_this_cycle += 1

    def _build_hierarchy(self) -> GroupHierarchy:
        org_mappings = parse_org_mappings(self.cfg.org_mappings)
        if not org_mappings:
            raise ConfigurationError("No ORG_MAPPINGS configured")
        projects = self.todoist.list_projects()
        return build_group_hierarchy(projects, org_mappings)

    # --- cycle ---

    def run_cycle(self) -> SyncResult:
        """Run one full cycle; returns immediately if another cycle holds the lock."""
        if not _cycle_lock.acquire(blocking=False):
            logger.warning("Sync cycle requested while another is running, skipping")
            return SyncResult(success=False, duration_ms=0, error="Sync already in progress")
        try:
            return self._run_cycle()
        finally:
            _cycle_lock.release()

    def _run_cycle(self) -> SyncResult:
        logger.info("Starting bidirectional sync")
        started = time.monotonic()
        cycle_start = self._utcnow()
        self._errors_this_cycle = 0
        results = _empty_results()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        state = load_sync_state(self.kv)
        logger.info(f"Last sync: {state.last_poll_time or 'never'}, poll count: {state.poll_count}")

        try:
            hierarchy = self._build_hierarchy()
            return self._sync(state, hierarchy, cycle_start, results, elapsed_ms)
        except ConfigurationError as e:
            logger.error(f"Sync aborted: {e}")
            self._record(state, "configuration", e)
            self._save(state)
            return SyncResult(success=False, duration_ms=elapsed_ms(), results=results, error=str(e))
        except Exception as e:
            logger.error(f"Sync failed: {e}")
            self.db.rollback()
            # Cursors are only assigned at the very end, so the old ones are still in place
            self._record(state, "bidirectional-sync", e)
            self._save(state)
            return SyncResult(success=False, duration_ms=elapsed_ms(), results=results, error=str(e))

    def _sync(self, state: SyncState, hierarchy: GroupHierarchy, cycle_start: datetime, results, elapsed_ms):
        if not hierarchy.sub_groups:
            logger.warning("No sub-projects found under mapped parent projects")
            return SyncResult(success=True, duration_ms=elapsed_ms(), results=results, warning="No repos configured")

        current_ids = hierarchy.sub_group_ids
        ctx = SyncContext.create(self.github, self.todoist)
        ctx.sections.prime(current_ids)

        known_ids, incomplete = self._backfill(state, hierarchy, ctx, current_ids, results)

        engine = ReconciliationEngine(ctx, self.links, MappingResolver(self.links, self.todoist))

        # Read before the issue pass so issues of just-completed tasks are not given a new task
        logger.info(f"Polling Todoist for completed tasks since: {state.last_completed_cursor or 'beginning'}")
        completed = poll_completed_tasks(self.todoist, parse_iso(state.last_completed_cursor), hierarchy)
        engine.remember_completed(completed)

        # GitHub -> Todoist
        logger.info(f"Polling GitHub for issues updated since: {state.source_cursor or 'beginning'}")
        issue_poll = poll_issue_changes(self.github, state.source_cursor, hierarchy)
        logger.info(
            f"Found {len(issue_poll.issues)} issue(s) to process "
            f"({issue_poll.successful_repos} repo(s) ok, {issue_poll.failed_repos} failed)"
        )
        for repo_error in issue_poll.repo_errors:
            self._record(state, f"github-polling:{repo_error.repo}", repo_error.error)

        issue_errors = False
        for issue in issue_poll.issues:
            outcome = engine.sync_issue_to_task(issue)
            self._tally(results["github"], _GITHUB_TALLY, outcome)
            if outcome.has_error:
                self._record(state, "sync-issue-to-todoist", outcome.error, code=outcome.code)
            issue_errors = issue_errors or outcome.is_error

        # Todoist -> GitHub
        token_mode = "full sync" if state.target_sync_token == FULL_SYNC_TOKEN else "incremental"
        logger.info(f"Polling Todoist with sync token ({token_mode})")
        task_poll = poll_task_changes(self.todoist, state.target_sync_token, hierarchy)
        logger.info(f"Found {len(task_poll.tasks)} task(s) to process (full_sync: {task_poll.full_sync})")

        tasks_ok = True
        for task in task_poll.tasks:
            outcome = engine.sync_task_to_issue(task)
            self._tally(results["todoist"], _TODOIST_TALLY, outcome)
            if outcome.has_error:
                self._record(state, "sync-task-to-github", outcome.error, code=outcome.code)
            tasks_ok = tasks_ok and not outcome.is_error

        # Completed tasks
        logger.info(f"Found {len(completed)} completed task(s) to process")

        completed_cursor = state.last_completed_cursor
        held_back = 0
        for item in completed:
            outcome = engine.sync_completed_task(item)
            self._tally(results["todoist"], _TODOIST_TALLY, outcome)
            if outcome.has_error:
                self._record(state, "process-completed-task", outcome.error, code=outcome.code)
            tasks_ok = tasks_ok and not outcome.is_error
            if outcome.holds_cursor:
                held_back += 1
            elif held_back == 0:
                # Never move past a task that still has to be retried
                completed_cursor = item.completed_at
        if held_back:
            logger.warning(f"{held_back} completed task(s) held back, will retry on next sync")

        # Cursors
        next_source_cursor = utc_iso(cycle_start - timedelta(minutes=self.cfg.issue_cursor_overlap_minutes))
        if self.cfg.strict_issue_cursor and (issue_poll.failed_repos or issue_errors):
            logger.warning("Issue polling or reconciliation had errors, keeping previous issue cursor")
            next_source_cursor = state.source_cursor

        if not tasks_ok:
            logger.warning("Some tasks failed to process, keeping previous sync token to retry on next sync")

        state.source_cursor = next_source_cursor
        state.target_sync_token = task_poll.new_token if tasks_ok else state.target_sync_token
        state.last_completed_cursor = completed_cursor
        state.last_poll_time = utc_iso(self._utcnow())
        state.poll_count += 1
        state.known_group_ids = known_ids
        state.force_backfill = ForceBackfill(enabled=bool(incomplete), group_ids=incomplete)

        if self._errors_this_cycle == 0:
            clear_errors(state)
        self._save(state)

        if incomplete:
            logger.info(f"{len(incomplete)} project(s) will continue backfilling on next sync")

        duration = elapsed_ms()
        logger.info(f"Sync completed in {duration}ms: {results}")
        return SyncResult(success=True, duration_ms=duration, results=results)

    def _backfill(self, state: SyncState, hierarchy: GroupHierarchy, ctx: SyncContext, current_ids, results):
        """Backfill new or reset groups; returns (known group ids, incomplete group ids)."""
        known = list(state.known_group_ids)
        new_ids = [g for g in current_ids if g not in known]
        forced = list(state.force_backfill.group_ids) if state.force_backfill.enabled else []

        targets: List[str] = []
        for group_id in forced + (new_ids if known else []):
            if group_id not in targets:
                targets.append(group_id)

        if not targets:
            if not known:
                if state.poll_count > 0:
                    logger.info(f"Recording {len(current_ids)} existing project(s) as baseline")
                else:
                    logger.info(f"First sync: recording {len(current_ids)} project(s) as baseline")
                return list(current_ids), []
            logger.debug(f"No new projects detected (tracking {len(known)} project(s))")
            return known, []

        if forced:
            logger.info(f"Forced backfill for {len(forced)} project(s): {forced}")
        if known and new_ids:
            logger.info(f"Detected {len(new_ids)} new project(s) for backfill: {new_ids}")

        report = BackfillEngine(
            ctx,
            self.links,
            max_tasks_per_sync=self.cfg.max_tasks_per_sync,
            max_sections_per_sync=self.cfg.max_sections_per_sync,
            batch_task_limit=self.cfg.batch_task_limit,
        ).run(targets, hierarchy)
        results["backfill"] = report.stats.to_dict()

        for repo_error in report.stats.repo_errors:
            self._record(state, f"auto-backfill:{repo_error['repo']}", repo_error["error"])
        batch_failures = report.stats.errors - len(report.stats.repo_errors)
        if batch_failures > 0:
            self._record(state, "auto-backfill", f"{batch_failures} task(s) failed to create")

        incomplete = report.incomplete_group_ids
        for group_id in targets:
            if group_id not in incomplete and group_id not in known:
                known.append(group_id)
        return known, incomplete

    @staticmethod
    def _tally(bucket: Dict[str, Any], mapping: Dict[SyncAction, str], outcome: SyncOutcome) -> None:
        bucket["processed"] += 1
        key = mapping.get(outcome.action)
        if key:
            bucket[key] += 1

    def _save(self, state: SyncState) -> None:
        try:
            save_sync_state(self.kv, state)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to save sync state: {e}")

    # --- operator actions ---

    def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Health and cursor summary for the status endpoint."""
        state = load_sync_state(self.kv)
        now = now or self._utcnow()
        last_poll = parse_iso(state.last_poll_time)
        minutes_since = round((now - last_poll).total_seconds() / 60) if last_poll else None

        health = get_sync_health_status(state, self.cfg.consecutive_failure_threshold)
        if health == "healthy" and minutes_since is not None and minutes_since > self.cfg.degraded_threshold_minutes:
            health = "degraded"

        tracking = state.error_tracking
        response: Dict[str, Any] = {
            "status": health,
            "last_sync": state.last_poll_time or "never",
            "last_issue_sync": state.source_cursor or "never",
            "last_completed_sync": state.last_completed_cursor or "never",
            "sync_token_age": "full sync pending" if state.target_sync_token == FULL_SYNC_TOKEN else "incremental",
            "poll_count": state.poll_count,
            "time_since_last_poll_minutes": minutes_since,
            "polling_enabled": self.cfg.scheduler_enabled,
            "polling_interval_minutes": self.cfg.polling_interval_minutes,
            "known_group_count": len(state.known_group_ids),
            "pending_backfill_group_ids": state.force_backfill.group_ids if state.force_backfill.enabled else [],
            "last_error": tracking.last_error.model_dump() if tracking.last_error else None,
            "recent_error_count": len(tracking.recent_errors),
            "consecutive_failures": tracking.consecutive_failures,
            "error_count_since_last_success": tracking.error_count,
            "last_successful_sync": tracking.last_successful_sync or "never",
        }
        if health == "error":
            response["warning"] = f"{tracking.consecutive_failures} consecutive sync failures"
        elif health == "degraded":
            if tracking.consecutive_failures > 0:
                response["warning"] = f"{tracking.consecutive_failures} consecutive sync failure(s)"
            else:
                response["warning"] = (
                    f"Last sync was more than {self.cfg.degraded_threshold_minutes} minutes ago"
                )
        return response

    def reset_groups(self, mode: str = "all", group_ids: Optional[List[str]] = None, dry_run: bool = False):
        """Forget groups so the next cycle backfills them again."""
        if mode not in ("all", "specific"):
            raise ValueError('mode must be "all" or "specific"')
        wanted = {str(g) for g in (group_ids or [])}
        if mode == "specific" and not wanted:
            raise ValueError('group_ids is required for "specific" mode')

        if not _cycle_lock.acquire(blocking=False):
            raise SyncInProgressError("Sync already in progress")
        try:
            state = load_sync_state(self.kv)
            hierarchy = self._build_hierarchy()
            current = hierarchy.sub_group_ids

            if mode == "all":
                reset_ids = current
                remaining: List[str] = []
            else:
                reset_ids = [g for g in current if g in wanted]
                remaining = [g for g in state.known_group_ids if g not in wanted]

            details = []
            for group_id in reset_ids:
                group = hierarchy.sub_groups[group_id]
                details.append({"id": group_id, "name": group.name, "repo": group.full_repo_name})

            if dry_run:
                return {
                    "success": True,
                    "dry_run": True,
                    "message": f"Would reset {len(reset_ids)} project(s) for backfill on next sync",
                    "reset_groups": details,
                    "remaining_known_groups": remaining,
                    "current_known_groups": len(state.known_group_ids),
                }

            state.known_group_ids = remaining
            state.force_backfill = ForceBackfill(enabled=bool(reset_ids), group_ids=reset_ids)
            save_sync_state(self.kv, state)
            logger.info(f"Reset {len(reset_ids)} project(s) for backfill, {len(remaining)} remain known")
            return {
                "success": True,
                "message": f"Reset {len(reset_ids)} project(s). They will be backfilled on the next sync.",
                "reset_groups": details,
                "remaining_known_groups": remaining,
                "next_sync_will_backfill": len(reset_ids),
            }
        finally:
            _cycle_lock.release()

    def backfill(self, request: BackfillRequest) -> Dict[str, Any]:
        """Run an operator-requested backfill; see `ManualBackfill` for the modes."""
        request.validate(org_mappings_configured=bool(self.cfg.org_mappings))
        if not _cycle_lock.acquire(blocking=False):
            raise SyncInProgressError("Sync already in progress")
        try:
            ctx = SyncContext.create(self.github, self.todoist)
            return ManualBackfill(ctx, self.links, self._build_hierarchy).run(request)
        finally:
            _cycle_lock.release()
