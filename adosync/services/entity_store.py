"""Tenant-scoped access to the tracked entities (workstreams, risks, actions)"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Set, Type

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adosync.errors import ValidationError
from adosync.models import ActionItem, EntityType, Risk, Workstream
from adosync.models.base import Base, utcnow

logger = logging.getLogger(__name__)

ENTITY_MODELS: Dict[EntityType, Type[Base]] = {
    EntityType.WORKSTREAM: Workstream,
    EntityType.RISK: Risk,
    EntityType.ACTION: ActionItem,
}

# Columns a field mapping may never write.
PROTECTED_FIELDS = {"id", "tenant_id", "updated_at", "deleted_at"}


def writable_fields(entity_type: EntityType) -> Set[str]:
    model = ENTITY_MODELS[EntityType(entity_type)]
    return {c.name for c in model.__table__.columns} - PROTECTED_FIELDS


def _parse_date(value: str) -> date:
    # Work item dates arrive as full timestamps, e.g. 2024-05-01T00:00:00Z.
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError as e:
        raise ValidationError(f"Invalid date value: {value!r}") from e


def coerce_value(model: Type[Base], field: str, value: Any) -> Any:
    """Convert a mapped value into what the column stores."""
    if value is None:
        return None
    column = model.__table__.columns.get(field)
    if column is None:
        raise ValidationError(f"{model.__name__} has no field '{field}'")

    python_type = column.type.python_type
    if python_type is date:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        return _parse_date(str(value))
    if python_type is int:
        try:
            return int(round(float(value)))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid number for {field}: {value!r}") from e
    if python_type is str and not isinstance(value, str):
        return str(value)
    return value


def snapshot(entity: Base) -> Dict[str, Any]:
    """Plain column values of an entity, safe to read after the session expires it."""
    return {c.name: getattr(entity, c.name) for c in entity.__table__.columns}


def _fallbacks(entity_type: EntityType, external_item_id: int) -> Dict[str, Any]:
    if entity_type == EntityType.WORKSTREAM:
        return {
            "name": f"Workstream {external_item_id}",
            "status": "GREEN",
            "percent_complete": 0,
            "summary": "",
        }
    if entity_type == EntityType.RISK:
        return {"title": f"Risk {external_item_id}", "severity": "MEDIUM", "status": "OPEN"}
    return {"title": f"Action {external_item_id}", "status": "OPEN"}


class EntityStore:
    """Reads and writes tracked entities for one tenant"""

    def __init__(self, db: AsyncSession, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id

    def _clean(self, entity_type: EntityType, values: Dict[str, Any]) -> Dict[str, Any]:
        model = ENTITY_MODELS[entity_type]
        allowed = writable_fields(entity_type)
        cleaned = {}
        for field, value in values.items():
            if field not in allowed:
                logger.debug(f"Ignoring unknown/protected {entity_type.value} field '{field}'")
                continue
            cleaned[field] = coerce_value(model, field, value)
        return cleaned

    async def get(self, entity_type: EntityType, entity_id: int) -> Optional[Base]:
        model = ENTITY_MODELS[entity_type]
        result = await self.db.execute(
            select(model).where(model.id == entity_id, model.tenant_id == self.tenant_id)
        )
        return result.scalar_one_or_none()

    async def list_for_push(self, entity_type: EntityType) -> List[Base]:
        model = ENTITY_MODELS[entity_type]
        query = select(model).where(model.tenant_id == self.tenant_id)
        if entity_type == EntityType.WORKSTREAM:
            query = query.where(model.deleted_at.is_(None))
        result = await self.db.execute(query.order_by(model.id))
        return list(result.scalars().all())

    async def create(
        self, entity_type: EntityType, values: Dict[str, Any], external_item_id: int
    ) -> Base:
        """Insert (flush, no commit) a new entity, filling required fields with fallbacks."""
        model = ENTITY_MODELS[entity_type]
        data = _fallbacks(entity_type, external_item_id)
        # Empty strings and zeros from the tracker don't override fallbacks.
        data.update({k: v for k, v in self._clean(entity_type, values).items() if v or k not in data})
        entity = model(tenant_id=self.tenant_id, **data)
        self.db.add(entity)
        await self.db.flush()
        return entity

    async def update(
        self, entity_type: EntityType, entity_id: int, values: Dict[str, Any]
    ) -> Optional[Base]:
        """Merge `values` into an existing entity (no commit); untouched fields are kept.

        `updated_at` only moves when a value actually changed, so re-pulling an
        unchanged work item doesn't queue the entity for the next incremental push.
        """
        entity = await self.get(entity_type, entity_id)
        if entity is None:
            return None
        changed = False
        for field, value in self._clean(entity_type, values).items():
            if getattr(entity, field) != value:
                setattr(entity, field, value)
                changed = True
        if changed:
            entity.updated_at = utcnow()
            await self.db.flush()
        return entity
