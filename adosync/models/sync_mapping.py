"""Sync mapping (cross-reference) model"""

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint

from adosync.models.base import Base, utcnow
from adosync.models.field_mapping import EntityType, _values


class SyncMapping(Base):
    """Pairing of one internal entity with one Azure DevOps work item"""

    __tablename__ = "ado_sync_mappings"
    __table_args__ = (
        # Either side of a pairing may only appear once per connection and entity type.
        UniqueConstraint(
            "connection_id", "entity_type", "external_item_id", name="uq_ado_sync_mappings_external"
        ),
        UniqueConstraint(
            "connection_id", "entity_type", "internal_entity_id", name="uq_ado_sync_mappings_internal"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(
        Integer, ForeignKey("ado_connections.id", ondelete="CASCADE"), nullable=False
    )
    entity_type = Column(Enum(EntityType, values_callable=_values, native_enum=False), nullable=False)

    internal_entity_id = Column(Integer, nullable=False)
    external_item_id = Column(Integer, nullable=False)  # Work item ID
    external_item_type = Column(String, nullable=True)  # e.g. Epic, Risk, Task

    last_synced_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return (
            f"<SyncMapping({self.entity_type} {self.internal_entity_id} <-> "
            f"work item {self.external_item_id})>"
        )
