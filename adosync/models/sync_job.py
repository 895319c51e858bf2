"""Sync job model"""

import enum

from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Integer, String

from adosync.models.base import Base, utcnow
from adosync.models.field_mapping import _values


class JobType(str, enum.Enum):
    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"
    MANUAL_SYNC = "manual_sync"


class JobStatus(str, enum.Enum):
    """Sync job status enumeration"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SyncDirection(str, enum.Enum):
    """Sync direction enumeration"""
    EXTERNAL_TO_INTERNAL = "external_to_internal"
    INTERNAL_TO_EXTERNAL = "internal_to_external"
    BIDIRECTIONAL = "bidirectional"

    @property
    def pulls(self) -> bool:
        return self in (SyncDirection.EXTERNAL_TO_INTERNAL, SyncDirection.BIDIRECTIONAL)

    @property
    def pushes(self) -> bool:
        return self in (SyncDirection.INTERNAL_TO_EXTERNAL, SyncDirection.BIDIRECTIONAL)


class SyncJob(Base):
    """One execution of the reconciliation process"""

    __tablename__ = "ado_sync_jobs"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(
        Integer, ForeignKey("ado_connections.id", ondelete="CASCADE"), nullable=False, index=True
    )

    job_type = Column(Enum(JobType, values_callable=_values, native_enum=False), nullable=False)
    direction = Column(
        Enum(SyncDirection, values_callable=_values, native_enum=False),
        nullable=False,
        default=SyncDirection.BIDIRECTIONAL,
    )
    status = Column(
        Enum(JobStatus, values_callable=_values, native_enum=False),
        nullable=False,
        default=JobStatus.PENDING,
    )
    created_by = Column(String, nullable=True)

    items_synced = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=False, default=list)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<SyncJob(type={self.job_type}, status={self.status})>"
