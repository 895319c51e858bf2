"""Shared dependencies for the Azure DevOps routes"""

import logging

from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from adosync.errors import (
    AdoSyncError,
    ConfigurationError,
    ConnectionNotFoundError,
    CredentialError,
    InvalidJobTransitionError,
    JobNotFoundError,
    RemoteError,
    ValidationError,
)
from adosync.models import AdoConnection
from adosync.security import TenantAuthorizer
from adosync.services.ado_client import AdoClient
from adosync.services.credential_vault import CredentialVault
from adosync.services.sync_service import SyncService

logger = logging.getLogger(__name__)


def get_vault(request: Request) -> CredentialVault:
    return request.app.state.vault


def get_ado_client(request: Request) -> AdoClient:
    return request.app.state.ado_client


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync_service


def get_authorizer(request: Request) -> TenantAuthorizer:
    return request.app.state.authorizer


def to_http_exception(error: AdoSyncError) -> HTTPException:
    """Map a sync engine error onto the HTTP status the API reports."""
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, (ConnectionNotFoundError, JobNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, CredentialError):
        return HTTPException(
            status_code=409, detail=f"{error}. Reconnect the Azure DevOps connection."
        )
    if isinstance(error, InvalidJobTransitionError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, RemoteError):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, ConfigurationError):
        logger.error(f"Configuration error: {error}")
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


async def require_tenant(authorizer: TenantAuthorizer, actor_id, tenant_id: str):
    if not await authorizer.can_manage_connections(actor_id, tenant_id):
        raise HTTPException(status_code=403, detail="Not allowed to manage this tenant's connections")


async def authorize_connection(
    db: AsyncSession, authorizer: TenantAuthorizer, actor_id, connection_id: int
) -> AdoConnection:
    """Load a connection the actor may manage (404 if missing, 403 if not allowed)."""
    connection = await db.get(AdoConnection, connection_id)
    if connection is None:
        raise HTTPException(status_code=404, detail=f"Connection not found: {connection_id}")
    await require_tenant(authorizer, actor_id, connection.tenant_id)
    return connection
