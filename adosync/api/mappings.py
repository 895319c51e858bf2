"""Field mapping endpoints"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from adosync.api.deps import authorize_connection, get_authorizer, to_http_exception
from adosync.errors import AdoSyncError
from adosync.models import EntityType, FieldMapping, MappingDirection, MappingType
from adosync.models.base import get_db
from adosync.security import TenantAuthorizer, get_actor_id
from adosync.services.field_mapper import FieldMappingEngine

router = APIRouter(prefix="/api/ado", tags=["mappings"])


class FieldMappingUpsert(BaseModel):
    connection_id: int
    entity_type: EntityType
    external_field_name: str
    internal_field_name: str
    mapping_type: MappingType = MappingType.DIRECT
    # Either the stored JSON string or the object itself, e.g. {"type": "severity_mapping"}
    transform_spec: Optional[Union[str, Dict[str, Any]]] = None
    direction: MappingDirection = MappingDirection.BIDIRECTIONAL


class FieldMappingResponse(BaseModel):
    id: int
    connection_id: int
    entity_type: EntityType
    external_field_name: str
    internal_field_name: str
    mapping_type: MappingType
    transform_spec: Optional[str] = None
    direction: MappingDirection
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


@router.get("/mappings", response_model=List[FieldMappingResponse])
async def list_mappings(
    connection_id: int,
    actor_id: Optional[str] = Depends(get_actor_id),
    authorizer: TenantAuthorizer = Depends(get_authorizer),
    db: AsyncSession = Depends(get_db),
):
    """List a connection's field mappings"""
    await authorize_connection(db, authorizer, actor_id, connection_id)
    return await FieldMappingEngine(db).get_mappings(connection_id)


@router.post("/mappings", response_model=FieldMappingResponse)
async def upsert_mapping(
    body: FieldMappingUpsert,
    actor_id: Optional[str] = Depends(get_actor_id),
    authorizer: TenantAuthorizer = Depends(get_authorizer),
    db: AsyncSession = Depends(get_db),
):
    """Create or replace the mapping for (connection, entity type, external field)"""
    await authorize_connection(db, authorizer, actor_id, body.connection_id)
    transform_spec = body.transform_spec
    if isinstance(transform_spec, dict):
        transform_spec = json.dumps(transform_spec)
    try:
        return await FieldMappingEngine(db).upsert_mapping(
            body.connection_id,
            body.entity_type,
            body.external_field_name,
            body.internal_field_name,
            mapping_type=body.mapping_type,
            transform_spec=transform_spec,
            direction=body.direction,
        )
    except AdoSyncError as e:
        raise to_http_exception(e)


@router.delete("/mappings/{mapping_id}")
async def delete_mapping(
    mapping_id: int,
    actor_id: Optional[str] = Depends(get_actor_id),
    authorizer: TenantAuthorizer = Depends(get_authorizer),
    db: AsyncSession = Depends(get_db),
):
    """Delete a field mapping"""
    mapping = await db.get(FieldMapping, mapping_id)
    if not mapping:
        raise HTTPException(status_code=404, detail="Field mapping not found")
    await authorize_connection(db, authorizer, actor_id, mapping.connection_id)

    await FieldMappingEngine(db).delete_mapping(mapping_id)
    return {"ok": True}
