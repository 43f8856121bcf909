"""Sync trigger and status routes."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlmodel import Session, select

from ghfolio.config import get_settings
from ghfolio.db.engine import get_engine, get_session
from ghfolio.github.client import GithubAppClient
from ghfolio.github.sync_service import RepoSyncService
from ghfolio.models.sync import SyncLog, SyncRun
from ghfolio.models.user import User

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncTriggerRequest(BaseModel):
    user_id: int
    installation_id: Optional[str] = None  # If None, uses the user's stored installation


class SyncRunResponse(BaseModel):
    id: str
    user_id: int
    state: str
    error_message: Optional[str]
    created_at: datetime
    updated_at: datetime


async def _do_sync(run_id: str) -> None:
    """Background task: execute a recorded sync run."""
    settings = get_settings()
    engine = get_engine()
    try:
        async with GithubAppClient.from_settings(settings) as client:
            service = RepoSyncService(
                client=client,
                engine=engine,
                record_hard_failures=settings.sync_log_hard_failures,
            )
            result = await service.execute_run(run_id)
        logger.info("Run %s finished: %s", run_id, result.status)
    except Exception:
        logger.exception("Run %s failed", run_id)


@router.post("/trigger")
def trigger_sync(
    request: SyncTriggerRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
):
    """
    Start a repository sync for a user.
    Returns immediately; the sync runs in the background.
    """
    user = session.get(User, request.user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    installation_id = request.installation_id or user.github_installation_id
    if not installation_id:
        raise HTTPException(
            status_code=400,
            detail="GitHub App not installed. Please install the GitHub App first.",
        )

    run = SyncRun(
        id=uuid.uuid4().hex,
        user_id=user.id,
        installation_id=str(installation_id),
    )
    session.add(run)
    session.commit()
    session.refresh(run)
    background_tasks.add_task(_do_sync, run.id)
    return {
        "message": "Sync started in background. This may take a few moments.",
        "status": "processing",
        "run_id": run.id,
    }


@router.get("/status")
def sync_status(
    user_id: int,
    since: datetime = Query(..., description="Only consider syncs logged after this time"),
    session: Session = Depends(get_session),
):
    """
    Result of the newest sync logged for the user after `since`, or
    "processing" if none has been logged yet.
    """
    if since.tzinfo is not None:
        since = since.astimezone(timezone.utc).replace(tzinfo=None)

    log = session.exec(
        select(SyncLog)
        .where(SyncLog.user_id == user_id, SyncLog.created_at > since)
        .order_by(SyncLog.created_at.desc())
    ).first()
    if not log:
        return {"status": "processing"}
    return {
        "status": "completed",
        "result": log.status,
        "message": log.message,
        "details": {"synced": log.repos_synced, "errors": log.errors},
    }


@router.get("/runs/{run_id}", response_model=SyncRunResponse)
def get_run(run_id: str, session: Session = Depends(get_session)):
    """State of one sync run."""
    run = session.get(SyncRun, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Sync run not found")
    return SyncRunResponse(
        id=run.id,
        user_id=run.user_id,
        state=run.state,
        error_message=run.error_message,
        created_at=run.created_at,
        updated_at=run.updated_at,
    )
