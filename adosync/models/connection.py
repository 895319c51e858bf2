"""Azure DevOps connection model"""

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship

from adosync.models.base import Base, utcnow


class AdoConnection(Base):
    """A tenant's authorized link to one Azure DevOps project"""

    __tablename__ = "ado_connections"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    organization_url = Column(String, nullable=False)
    project_name = Column(String, nullable=False)

    # Token material is only ever stored encrypted (nonce:tag:ciphertext).
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Deleting a connection removes everything that hangs off it.
    field_mappings = relationship(
        "FieldMapping", cascade="all, delete-orphan", passive_deletes=True
    )
    sync_mappings = relationship(
        "SyncMapping", cascade="all, delete-orphan", passive_deletes=True
    )
    sync_jobs = relationship("SyncJob", cascade="all, delete-orphan", passive_deletes=True)

    @property
    def base_url(self) -> str:
        return f"{self.organization_url.rstrip('/')}/{self.project_name}"

    def __repr__(self):
        return f"<AdoConnection(org='{self.organization_url}', project='{self.project_name}')>"
