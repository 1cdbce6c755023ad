"""Bridge endpoints: trigger passes, browse logs and local bugs"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from bugbridge.config import settings
from bugbridge.models import SyncLog
from bugbridge.models.base import get_db
from bugbridge.models.sync_log import SyncDirection, SyncStatus
from bugbridge.services.bridge_service import BridgeService
from bugbridge.services.bug_store import BugStore
from bugbridge.services.errors import BugNotFoundError, PassInProgressError
from bugbridge.services.metadata import METAKEY_GITLAB_ID, METAKEY_GITLAB_URL
from bugbridge.services.operations import Snapshot

router = APIRouter(prefix="/api/bridge", tags=["bridge"])


class PassRequest(BaseModel):
    # Only issues updated (import) or bugs created (export) after this date
    since: Optional[datetime] = None


class SyncLogResponse(BaseModel):
    id: int
    base_url: str
    project: str
    status: SyncStatus
    direction: SyncDirection
    message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CommentResponse(BaseModel):
    id: str
    author_id: str
    message: str
    unix_time: int
    edited_unix_time: Optional[int] = None


class BugResponse(BaseModel):
    id: str
    title: str
    status: str
    labels: List[str]
    author_id: str
    create_time: datetime
    comment_count: int
    gitlab_id: Optional[str] = None
    gitlab_url: Optional[str] = None


class BugDetailResponse(BugResponse):
    comments: List[CommentResponse]


def get_bridge_service(db: Session = Depends(get_db)) -> BridgeService:
    return BridgeService(db, settings)


def _bug_response(snapshot: Snapshot, cls=BugResponse, **extra):
    return cls(
        id=snapshot.id,
        title=snapshot.title,
        status=snapshot.status.value,
        labels=list(snapshot.labels),
        author_id=snapshot.author_id,
        create_time=snapshot.create_time,
        comment_count=len(snapshot.comments),
        gitlab_id=snapshot.get_create_metadata(METAKEY_GITLAB_ID),
        gitlab_url=snapshot.get_create_metadata(METAKEY_GITLAB_URL),
        **extra,
    )


def _run_exclusive(run, since: Optional[datetime]) -> Dict[str, Any]:
    try:
        return run(since=since)
    except PassInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/import")
def trigger_import(
    request: Optional[PassRequest] = Body(default=None),
    service: BridgeService = Depends(get_bridge_service),
) -> Dict[str, Any]:
    """Import issues from the configured GitLab project"""
    return _run_exclusive(service.run_import, request.since if request else None)


@router.post("/export")
def trigger_export(
    request: Optional[PassRequest] = Body(default=None),
    service: BridgeService = Depends(get_bridge_service),
) -> Dict[str, Any]:
    """Export local changes to the configured GitLab project"""
    return _run_exclusive(service.run_export, request.since if request else None)


@router.post("/sync")
def trigger_sync(
    request: Optional[PassRequest] = Body(default=None),
    service: BridgeService = Depends(get_bridge_service),
) -> Dict[str, Any]:
    """Import then export"""
    return _run_exclusive(service.sync, request.since if request else None)


@router.get("/logs", response_model=List[SyncLogResponse])
def list_sync_logs(limit: int = 100, direction: Optional[SyncDirection] = None, db: Session = Depends(get_db)):
    """List pass logs, newest first"""
    query = db.query(SyncLog).order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
    if direction:
        query = query.filter(SyncLog.direction == direction)
    return query.limit(limit).all()


@router.get("/bugs", response_model=List[BugResponse])
def list_bugs(db: Session = Depends(get_db)):
    """List local bugs with their current state"""
    store = BugStore(db)
    return [_bug_response(store.resolve_bug(bug_id).snapshot()) for bug_id in store.all_bug_ids()]


@router.get("/bugs/{bug_id}", response_model=BugDetailResponse)
def get_bug(bug_id: str, db: Session = Depends(get_db)):
    """Get a local bug with its comments"""
    try:
        snapshot = BugStore(db).resolve_bug(bug_id).snapshot()
    except BugNotFoundError:
        raise HTTPException(status_code=404, detail="Bug not found")
    comments = [
        CommentResponse(
            id=c.id,
            author_id=c.author_id,
            message=c.message,
            unix_time=c.unix_time,
            edited_unix_time=c.edited_unix_time,
        )
        for c in snapshot.comments
    ]
    return _bug_response(snapshot, BugDetailResponse, comments=comments)
