"""Field mapping engine: configured rules between work item fields and entity attributes"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from adosync.errors import ConnectionNotFoundError, ValidationError
from adosync.models import AdoConnection, EntityType, FieldMapping, MappingDirection, MappingType
from adosync.models.base import dialect_insert, utcnow
from adosync.services.entity_store import writable_fields
from adosync.services.mapping_defaults import DEFAULT_FIELD_MAPPINGS
from adosync.services.transforms import parse_transform_spec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MappingRule:
    """Detached copy of a FieldMapping row"""

    entity_type: EntityType
    external_field_name: str
    internal_field_name: str
    mapping_type: MappingType = MappingType.DIRECT
    transform_spec: Optional[str] = None
    direction: MappingDirection = MappingDirection.BIDIRECTIONAL

    @classmethod
    def from_model(cls, mapping: FieldMapping) -> "MappingRule":
        return cls(
            entity_type=EntityType(mapping.entity_type),
            external_field_name=mapping.external_field_name,
            internal_field_name=mapping.internal_field_name,
            mapping_type=MappingType(mapping.mapping_type),
            transform_spec=mapping.transform_spec,
            direction=MappingDirection(mapping.direction or MappingDirection.BIDIRECTIONAL),
        )


def _read(entity: Any, name: str) -> Any:
    if isinstance(entity, dict):
        return entity.get(name)
    return getattr(entity, name, None)


def _to_wire(value: Any) -> Any:
    # Work item fields are JSON; dates go over as ISO strings.
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


class FieldMappingEngine:
    """Reads/writes a connection's field mappings and applies them to items and entities"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_mappings(self, connection_id: int) -> List[FieldMapping]:
        result = await self.db.execute(
            select(FieldMapping)
            .where(FieldMapping.connection_id == connection_id)
            .order_by(FieldMapping.entity_type, FieldMapping.id)
        )
        return list(result.scalars().all())

    async def ensure_default_mappings(self, connection_id: int) -> int:
        """Seed the default mapping set if the connection has none; returns rows inserted."""
        existing = await self.db.scalar(
            select(func.count(FieldMapping.id)).where(FieldMapping.connection_id == connection_id)
        )
        if existing:
            return 0

        now = utcnow()
        inserted = 0
        for default in DEFAULT_FIELD_MAPPINGS:
            stmt = (
                dialect_insert(self.db, FieldMapping)
                .values(
                    connection_id=connection_id,
                    entity_type=default.entity_type,
                    external_field_name=default.external_field_name,
                    internal_field_name=default.internal_field_name,
                    mapping_type=default.mapping_type,
                    transform_spec=default.transform_spec,
                    direction=default.direction,
                    created_at=now,
                    updated_at=now,
                )
                # Another run may be seeding the same connection.
                .on_conflict_do_nothing(
                    index_elements=["connection_id", "entity_type", "external_field_name"]
                )
                .returning(FieldMapping.id)
            )
            result = await self.db.execute(stmt)
            if result.scalar_one_or_none() is not None:
                inserted += 1
        await self.db.commit()

        if inserted:
            logger.info(f"Created {inserted} default field mappings for connection {connection_id}")
        return inserted

    @staticmethod
    def validate(
        entity_type: EntityType,
        internal_field_name: str,
        mapping_type: MappingType,
        transform_spec: Optional[str],
        direction: MappingDirection,
    ) -> tuple:
        """Check a mapping definition; returns the (transform_spec, direction) to store."""
        if internal_field_name not in writable_fields(entity_type):
            allowed = ", ".join(sorted(writable_fields(entity_type)))
            raise ValidationError(
                f"'{internal_field_name}' is not a {entity_type.value} field; expected one of: {allowed}"
            )
        if mapping_type != MappingType.TRANSFORM:
            return None, direction

        transform = parse_transform_spec(transform_spec)
        if not transform.reversible:
            direction = MappingDirection.FORWARD_ONLY
        return transform.to_spec(), direction

    async def upsert_mapping(
        self,
        connection_id: int,
        entity_type: EntityType,
        external_field_name: str,
        internal_field_name: str,
        mapping_type: MappingType = MappingType.DIRECT,
        transform_spec: Optional[str] = None,
        direction: MappingDirection = MappingDirection.BIDIRECTIONAL,
    ) -> FieldMapping:
        """Create or replace the mapping for (connection, entity type, external field)."""
        entity_type = EntityType(entity_type)
        mapping_type = MappingType(mapping_type)
        direction = MappingDirection(direction)
        external_field_name = (external_field_name or "").strip()
        if not external_field_name:
            raise ValidationError("external_field_name is required")
        transform_spec, direction = self.validate(
            entity_type, internal_field_name, mapping_type, transform_spec, direction
        )

        if await self.db.get(AdoConnection, connection_id) is None:
            raise ConnectionNotFoundError(connection_id)

        now = utcnow()
        stmt = dialect_insert(self.db, FieldMapping).values(
            connection_id=connection_id,
            entity_type=entity_type,
            external_field_name=external_field_name,
            internal_field_name=internal_field_name,
            mapping_type=mapping_type,
            transform_spec=transform_spec,
            direction=direction,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["connection_id", "entity_type", "external_field_name"],
            set_={
                "internal_field_name": stmt.excluded.internal_field_name,
                "mapping_type": stmt.excluded.mapping_type,
                "transform_spec": stmt.excluded.transform_spec,
                "direction": stmt.excluded.direction,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(FieldMapping.id)
        mapping_id = (await self.db.execute(stmt)).scalar_one()
        await self.db.commit()

        mapping = await self.db.get(FieldMapping, mapping_id, populate_existing=True)
        logger.info(
            f"Saved field mapping {mapping_id} for connection {connection_id}: "
            f"{entity_type.value} {external_field_name} -> {internal_field_name}"
        )
        return mapping

    async def delete_mapping(self, mapping_id: int) -> bool:
        result = await self.db.execute(delete(FieldMapping).where(FieldMapping.id == mapping_id))
        await self.db.commit()
        return bool(result.rowcount)

    @staticmethod
    def map_external_to_internal(
        item: Dict[str, Any], entity_type: EntityType, mappings: Iterable[Any]
    ) -> Dict[str, Any]:
        """Work item -> partial entity attributes, per the entity type's mappings."""
        fields = item.get("fields") or {}
        mapped: Dict[str, Any] = {}
        for mapping in mappings:
            if mapping.entity_type != entity_type:
                continue
            value = fields.get(mapping.external_field_name)
            if value is None:
                continue
            if mapping.mapping_type == MappingType.TRANSFORM:
                value = parse_transform_spec(mapping.transform_spec).forward(value)
            mapped[mapping.internal_field_name] = value
        return mapped

    @staticmethod
    def map_internal_to_external(
        entity: Any, entity_type: EntityType, mappings: Iterable[Any]
    ) -> List[Dict[str, Any]]:
        """Entity -> JSON patch `replace` operations for the work item."""
        ops: List[Dict[str, Any]] = []
        for mapping in mappings:
            if mapping.entity_type != entity_type:
                continue
            if mapping.direction == MappingDirection.FORWARD_ONLY:
                continue
            value = _read(entity, mapping.internal_field_name)
            if value is None:
                continue
            if mapping.mapping_type == MappingType.TRANSFORM:
                transform = parse_transform_spec(mapping.transform_spec)
                if not transform.reversible:
                    continue
                value = transform.reverse(value)
            ops.append(
                {"op": "replace", "path": f"/fields/{mapping.external_field_name}", "value": _to_wire(value)}
            )
        return ops
