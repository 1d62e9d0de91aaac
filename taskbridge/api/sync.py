"""Sync management endpoints"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from taskbridge.models.base import get_db
from taskbridge.services.hierarchy import ConfigurationError
from taskbridge.services.manual_backfill import BackfillRequest
from taskbridge.services.sync_service import SyncInProgressError, SyncService

router = APIRouter(prefix="/api/sync", tags=["sync"])


class ResetGroupsRequest(BaseModel):
    mode: str = "all"
    group_ids: List[str] = []
    dry_run: bool = False


class BackfillRequestBody(BaseModel):
    mode: str
    owner: Optional[str] = None
    repo: Optional[str] = None
    state: str = "open"
    dry_run: bool = False
    limit: Optional[int] = None


class ErrorInfoResponse(BaseModel):
    timestamp: str
    operation: str
    message: str
    code: Optional[str] = None


class SyncStatusResponse(BaseModel):
    status: str
    last_sync: str
    last_issue_sync: str
    last_completed_sync: str
    sync_token_age: str
    poll_count: int
    time_since_last_poll_minutes: Optional[int] = None
    polling_enabled: bool
    polling_interval_minutes: int
    known_group_count: int
    pending_backfill_group_ids: List[str]
    last_error: Optional[ErrorInfoResponse] = None
    recent_error_count: int
    consecutive_failures: int
    error_count_since_last_success: int
    last_successful_sync: str
    warning: Optional[str] = None


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(db: Session = Depends(get_db)):
    """Current sync health, cursors and error tracking"""
    try:
        return SyncService(db).status()
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/trigger")
def trigger_sync(db: Session = Depends(get_db)):
    """Run one sync cycle now"""
    return SyncService(db).run_cycle().to_dict()


@router.post("/reset-groups")
def reset_groups(payload: ResetGroupsRequest, db: Session = Depends(get_db)):
    """Forget tracked groups so the next cycle backfills them"""
    try:
        return SyncService(db).reset_groups(payload.mode, payload.group_ids, payload.dry_run)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/backfill")
def backfill(payload: BackfillRequestBody, db: Session = Depends(get_db)):
    """Backfill one repo, an org, all mapped projects, or seed task links"""
    request = BackfillRequest(**payload.model_dump())
    try:
        return SyncService(db).backfill(request)
    except (ValueError, ConfigurationError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
