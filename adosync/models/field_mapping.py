"""Field mapping model"""

import enum

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint

from adosync.models.base import Base, utcnow


def _values(enum_cls):
    return [member.value for member in enum_cls]


class EntityType(str, enum.Enum):
    """Tracked entity types mirrored to/from Azure DevOps"""
    WORKSTREAM = "workstream"
    RISK = "risk"
    ACTION = "action"


class MappingType(str, enum.Enum):
    DIRECT = "direct"
    TRANSFORM = "transform"
    # Reserved for hand-written converters; values pass through unchanged.
    CUSTOM = "custom"


class MappingDirection(str, enum.Enum):
    BIDIRECTIONAL = "bidirectional"
    FORWARD_ONLY = "forward_only"


class FieldMapping(Base):
    """One external field <-> internal field rule for a connection and entity type"""

    __tablename__ = "ado_field_mappings"
    __table_args__ = (
        UniqueConstraint(
            "connection_id",
            "entity_type",
            "external_field_name",
            name="uq_ado_field_mappings_external_field",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(
        Integer, ForeignKey("ado_connections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    entity_type = Column(Enum(EntityType, values_callable=_values, native_enum=False), nullable=False)
    external_field_name = Column(String, nullable=False)  # e.g. System.State
    internal_field_name = Column(String, nullable=False)  # e.g. status
    mapping_type = Column(
        Enum(MappingType, values_callable=_values, native_enum=False),
        nullable=False,
        default=MappingType.DIRECT,
    )
    transform_spec = Column(Text, nullable=True)  # JSON, e.g. {"type": "severity_mapping"}
    direction = Column(
        Enum(MappingDirection, values_callable=_values, native_enum=False),
        nullable=False,
        default=MappingDirection.BIDIRECTIONAL,
    )

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return (
            f"<FieldMapping({self.entity_type}: {self.external_field_name} -> "
            f"{self.internal_field_name}, {self.mapping_type})>"
        )
