"""Risk model"""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Text

from adosync.models.base import Base, utcnow


class Risk(Base):
    """A tracked risk (mirrored to Risks/Bugs)"""

    __tablename__ = "risks"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    workstream_id = Column(Integer, ForeignKey("workstreams.id"), nullable=True)
    title = Column(String, nullable=False)
    severity = Column(String, nullable=False, default="MEDIUM")  # LOW | MEDIUM | HIGH
    status = Column(String, nullable=False, default="OPEN")  # OPEN | MITIGATED | CLOSED
    owner = Column(String, nullable=True)
    due_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Risk(title='{self.title}', severity={self.severity})>"
