"""Database models"""

from adosync.models.action_item import ActionItem
from adosync.models.base import Base
from adosync.models.connection import AdoConnection
from adosync.models.field_mapping import EntityType, FieldMapping, MappingDirection, MappingType
from adosync.models.risk import Risk
from adosync.models.sync_job import JobStatus, JobType, SyncDirection, SyncJob
from adosync.models.sync_mapping import SyncMapping
from adosync.models.workstream import Workstream

__all__ = [
    "Base",
    "AdoConnection",
    "FieldMapping",
    "SyncMapping",
    "SyncJob",
    "Workstream",
    "Risk",
    "ActionItem",
    "EntityType",
    "MappingType",
    "MappingDirection",
    "JobType",
    "JobStatus",
    "SyncDirection",
]
