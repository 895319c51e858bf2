"""Workstream model"""

from sqlalchemy import Column, Date, DateTime, Integer, String, Text

from adosync.models.base import Base, utcnow


class Workstream(Base):
    """A tracked workstream (mirrored to Epics/Features)"""

    __tablename__ = "workstreams"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    lead = Column(String, nullable=True)
    status = Column(String, nullable=False, default="GREEN")  # GREEN | YELLOW | RED
    percent_complete = Column(Integer, nullable=False, default=0)
    summary = Column(Text, nullable=False, default="")
    next_milestone = Column(String, nullable=True)
    next_milestone_due = Column(Date, nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    # Soft delete; deleted workstreams are never pushed to Azure DevOps.
    deleted_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Workstream(name='{self.name}', status={self.status})>"
