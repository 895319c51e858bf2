"""Azure DevOps connection endpoints (OAuth connect/callback, list, delete)"""
import logging
from datetime import datetime
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adosync.api.deps import (
    authorize_connection,
    get_ado_client,
    get_authorizer,
    get_vault,
    require_tenant,
    to_http_exception,
)
from adosync.config import settings
from adosync.errors import AdoSyncError, ValidationError
from adosync.models import AdoConnection
from adosync.models.base import get_db
from adosync.security import TenantAuthorizer, get_actor_id
from adosync.services.ado_client import AdoClient
from adosync.services.credential_vault import CredentialVault

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ado", tags=["connections"])


class ConnectRequest(BaseModel):
    tenant_id: str
    organization_url: str
    project_name: str


class ConnectResponse(BaseModel):
    ok: bool
    auth_url: str


class ConnectionResponse(BaseModel):
    id: int
    tenant_id: str
    organization_url: str
    project_name: str
    token_expires_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


def _validate_connect(body: ConnectRequest) -> ConnectRequest:
    tenant_id = body.tenant_id.strip()
    organization_url = body.organization_url.strip().rstrip("/")
    project_name = body.project_name.strip()
    if not tenant_id or not organization_url or not project_name:
        raise ValidationError("tenant_id, organization_url and project_name are required")
    if not organization_url.startswith("https://"):
        raise ValidationError("organization_url must be an https:// URL, e.g. https://dev.azure.com/<org>")
    return ConnectRequest(tenant_id=tenant_id, organization_url=organization_url, project_name=project_name)


def _integrations_redirect(**params) -> RedirectResponse:
    base = settings.integrations_page_url
    sep = "&" if "?" in base else "?"
    return RedirectResponse(url=f"{base}{sep}{urlencode(params)}", status_code=302)


@router.post("/connect", response_model=ConnectResponse)
async def connect(
    body: ConnectRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    vault: CredentialVault = Depends(get_vault),
    authorizer: TenantAuthorizer = Depends(get_authorizer),
):
    """Start the OAuth flow; returns the URL to send the user's browser to"""
    try:
        body = _validate_connect(body)
        await require_tenant(authorizer, actor_id, body.tenant_id)
        auth_url = vault.build_authorization_url(
            body.organization_url, body.project_name, body.tenant_id, actor_id=actor_id
        )
    except AdoSyncError as e:
        raise to_http_exception(e)
    return {"ok": True, "auth_url": auth_url}


@router.get("/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    vault: CredentialVault = Depends(get_vault),
    authorizer: TenantAuthorizer = Depends(get_authorizer),
):
    """OAuth redirect target: exchanges the code and stores the connection"""
    if error:
        logger.warning(f"Azure DevOps authorization failed: {error}")
        return _integrations_redirect(error=error)
    if not code or not state:
        return _integrations_redirect(error="missing_code_or_state")

    try:
        oauth_state = vault.decode_state(state)
    except ValidationError as e:
        logger.warning(f"Rejected OAuth callback: {e}")
        return _integrations_redirect(error="invalid_state")

    if not await authorizer.can_manage_connections(oauth_state.actor_id, oauth_state.tenant_id):
        return _integrations_redirect(error="forbidden")

    try:
        grant = await vault.exchange_code_for_token(code, state)
        connection = await vault.store_connection(
            oauth_state.tenant_id,
            oauth_state.organization_url,
            oauth_state.project_name,
            grant,
            created_by=oauth_state.actor_id,
        )
    except AdoSyncError as e:
        logger.error(f"Failed to complete Azure DevOps connection for {oauth_state.tenant_id}: {e}")
        return _integrations_redirect(error="token_exchange_failed")

    return _integrations_redirect(success="true", connection_id=connection.id)


@router.get("/connections", response_model=List[ConnectionResponse])
async def list_connections(
    tenant_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    authorizer: TenantAuthorizer = Depends(get_authorizer),
    db: AsyncSession = Depends(get_db),
):
    """List a tenant's connections (token material is never returned)"""
    await require_tenant(authorizer, actor_id, tenant_id)
    result = await db.execute(
        select(AdoConnection)
        .where(AdoConnection.tenant_id == tenant_id)
        .order_by(AdoConnection.created_at.desc())
    )
    return result.scalars().all()


@router.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: int,
    tenant_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    authorizer: TenantAuthorizer = Depends(get_authorizer),
    client: AdoClient = Depends(get_ado_client),
    db: AsyncSession = Depends(get_db),
):
    """Delete a connection along with its mappings and job history"""
    connection = await authorize_connection(db, authorizer, actor_id, connection_id)
    if connection.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail=f"Connection not found: {connection_id}")

    await db.delete(connection)
    await db.commit()
    client.forget(connection_id)
    logger.info(f"Deleted Azure DevOps connection {connection_id} (tenant {tenant_id}, by {actor_id})")
    return {"ok": True}
