"""Sync management endpoints"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adosync.api.deps import authorize_connection, get_authorizer, get_sync_service, to_http_exception
from adosync.errors import AdoSyncError
from adosync.models import JobStatus, JobType, SyncDirection, SyncJob
from adosync.models.base import get_db
from adosync.security import TenantAuthorizer, get_actor_id
from adosync.services.sync_service import SyncService

router = APIRouter(prefix="/api/ado/sync", tags=["sync"])


class SyncRequest(BaseModel):
    connection_id: int
    sync_type: JobType = JobType.MANUAL_SYNC
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL


class SyncStartResponse(BaseModel):
    ok: bool
    job_id: int


class SyncJobResponse(BaseModel):
    id: int
    connection_id: int
    job_type: JobType
    direction: SyncDirection
    status: JobStatus
    created_by: Optional[str] = None
    items_synced: int
    errors: List[Dict[str, Any]] = []
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


@router.post("", response_model=SyncStartResponse)
async def trigger_sync(
    body: SyncRequest,
    background_tasks: BackgroundTasks,
    actor_id: Optional[str] = Depends(get_actor_id),
    authorizer: TenantAuthorizer = Depends(get_authorizer),
    sync_service: SyncService = Depends(get_sync_service),
    db: AsyncSession = Depends(get_db),
):
    """Queue a sync job for a connection; poll /status for the outcome"""
    connection = await authorize_connection(db, authorizer, actor_id, body.connection_id)
    try:
        job_id = await sync_service.start_sync(
            body.connection_id, body.sync_type, actor_id=actor_id, direction=body.direction
        )
    except AdoSyncError as e:
        raise to_http_exception(e)

    background_tasks.add_task(sync_service.run_job_in_background, job_id, connection.tenant_id)
    return {"ok": True, "job_id": job_id}


@router.get("/status", response_model=SyncJobResponse)
async def sync_status(
    job_id: int,
    actor_id: Optional[str] = Depends(get_actor_id),
    authorizer: TenantAuthorizer = Depends(get_authorizer),
    db: AsyncSession = Depends(get_db),
):
    """Get a sync job"""
    job = await db.get(SyncJob, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Sync job not found")
    await authorize_connection(db, authorizer, actor_id, job.connection_id)
    return job


@router.get("/history", response_model=List[SyncJobResponse])
async def sync_history(
    connection_id: int,
    limit: int = Query(50, ge=1, le=500),
    actor_id: Optional[str] = Depends(get_actor_id),
    authorizer: TenantAuthorizer = Depends(get_authorizer),
    db: AsyncSession = Depends(get_db),
):
    """List recent sync jobs for a connection, newest first"""
    await authorize_connection(db, authorizer, actor_id, connection_id)
    result = await db.execute(
        select(SyncJob)
        .where(SyncJob.connection_id == connection_id)
        .order_by(SyncJob.created_at.desc(), SyncJob.id.desc())
        .limit(limit)
    )
    return result.scalars().all()
