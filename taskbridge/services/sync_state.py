"""Persisted sync state: cursors, known groups, error tracking"""
import json
import logging
from datetime import datetime, timezone
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from taskbridge.config import settings
from taskbridge.services.http import ApiError
from taskbridge.services.kv_store import KVStore

logger = logging.getLogger(__name__)

SYNC_STATE_KEY = "sync:state"
FULL_SYNC_TOKEN = "*"


def utc_iso(dt: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with a trailing Z (what GitHub's `since` expects)."""
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class _StateModel(BaseModel):
    # Fields written by older versions are ignored; missing ones take defaults.
    model_config = ConfigDict(extra="ignore")


class ErrorInfo(_StateModel):
    timestamp: str
    operation: str
    message: str
    code: Optional[str] = None


class ErrorTracking(_StateModel):
    last_error: Optional[ErrorInfo] = None
    recent_errors: List[ErrorInfo] = Field(default_factory=list)
    error_count: int = 0
    consecutive_failures: int = 0
    last_successful_sync: Optional[str] = None


class ForceBackfill(_StateModel):
    enabled: bool = False
    group_ids: List[str] = Field(default_factory=list)


class SyncState(_StateModel):
    source_cursor: Optional[str] = None
    target_sync_token: str = FULL_SYNC_TOKEN
    last_poll_time: Optional[str] = None
    last_completed_cursor: Optional[str] = None
    poll_count: int = 0
    known_group_ids: List[str] = Field(default_factory=list)
    force_backfill: ForceBackfill = Field(default_factory=ForceBackfill)
    error_tracking: ErrorTracking = Field(default_factory=ErrorTracking)


def load_sync_state(kv: KVStore) -> SyncState:
    """Load the state record, falling back to defaults when missing or unreadable."""
    raw = kv.get(SYNC_STATE_KEY)
    if not raw:
        logger.debug("No stored sync state found, using defaults")
        return SyncState()
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        return SyncState.model_validate(data)
    except (ValueError, ValidationError) as e:
        logger.error(f"Failed to load sync state, using defaults: {e}")
        return SyncState()


def save_sync_state(kv: KVStore, state: SyncState) -> None:
    kv.put(SYNC_STATE_KEY, state.model_dump_json())
    logger.debug("Sync state saved")


def _error_code(error: Union[Exception, str]) -> Optional[str]:
    if isinstance(error, ApiError):
        return error.code
    if isinstance(error, Exception) and type(error) is not Exception:
        return type(error).__name__
    return None


def record_error(
    state: SyncState,
    operation: str,
    error: Union[Exception, str],
    code: Optional[str] = None,
    max_recent: Optional[int] = None,
) -> SyncState:
    """Add an error to the rolling window and bump the counters."""
    max_recent = max_recent or settings.max_recent_errors
    info = ErrorInfo(
        timestamp=utc_iso(),
        operation=operation,
        message=str(error),
        code=code or _error_code(error),
    )
    tracking = state.error_tracking
    tracking.last_error = info
    tracking.recent_errors = [info] + tracking.recent_errors[: max_recent - 1]
    tracking.error_count += 1
    tracking.consecutive_failures += 1
    return state


def clear_errors(state: SyncState) -> SyncState:
    """Reset after an error-free cycle; recent_errors are kept for debugging."""
    tracking = state.error_tracking
    tracking.last_error = None
    tracking.error_count = 0
    tracking.consecutive_failures = 0
    tracking.last_successful_sync = utc_iso()
    return state


def get_sync_health_status(state: SyncState, threshold: Optional[int] = None) -> str:
    threshold = threshold or settings.consecutive_failure_threshold
    failures = state.error_tracking.consecutive_failures
    if failures >= threshold:
        return "error"
    if failures > 0:
        return "degraded"
    return "healthy"
