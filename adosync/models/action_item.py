"""Action item model"""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Text

from adosync.models.base import Base, utcnow


class ActionItem(Base):
    """A tracked action (mirrored to Tasks)"""

    __tablename__ = "actions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    workstream_id = Column(Integer, ForeignKey("workstreams.id"), nullable=True)
    title = Column(String, nullable=False)
    owner = Column(String, nullable=True)
    due_date = Column(Date, nullable=True)
    status = Column(String, nullable=False, default="OPEN")  # OPEN | IN_PROGRESS | DONE
    notes = Column(Text, nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<ActionItem(title='{self.title}', status={self.status})>"
