"""Work item synchronization service"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adosync.errors import (
    AdoSyncError,
    ConnectionNotFoundError,
    CredentialError,
    InvalidJobTransitionError,
    JobNotFoundError,
    RemoteError,
)
from adosync.models import (
    AdoConnection,
    EntityType,
    JobStatus,
    JobType,
    SyncDirection,
    SyncJob,
    SyncMapping,
)
from adosync.models.base import dialect_insert, utcnow
from adosync.services.ado_client import AdoClient
from adosync.services.entity_store import EntityStore, snapshot
from adosync.services.field_mapper import FieldMappingEngine, MappingRule
from adosync.services.mapping_defaults import CREATE_ITEM_TYPES, QUERY_ITEM_TYPES, TITLE_FIELDS, build_wiql

logger = logging.getLogger(__name__)

# Errors that make every further call for the connection pointless.
FATAL_ERRORS = (CredentialError, ConnectionNotFoundError)

_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
}

# Overlap for incremental runs to cover clock skew between us and the tracker.
INCREMENTAL_OVERLAP = timedelta(minutes=2)


@dataclass
class SyncResult:
    items_synced: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def add_error(
        self,
        entity_type: Optional[EntityType],
        error: Any,
        *,
        entity_id: Optional[int] = None,
        external_item_id: Optional[int] = None,
    ):
        entry: Dict[str, Any] = {
            "entity_type": entity_type.value if entity_type else None,
            "error": str(error),
        }
        if entity_id is not None:
            entry["entity_id"] = entity_id
        if external_item_id is not None:
            entry["external_item_id"] = external_item_id
        self.errors.append(entry)

    def merge(self, other: "SyncResult"):
        self.items_synced += other.items_synced
        self.errors.extend(other.errors)


@dataclass(frozen=True)
class _Pairing:
    id: int
    internal_entity_id: int
    external_item_id: int


async def upsert_sync_mapping(
    db: AsyncSession,
    *,
    connection_id: int,
    entity_type: EntityType,
    internal_entity_id: int,
    external_item_id: int,
    external_item_type: Optional[str],
    conflict_on: str,
) -> _Pairing:
    """
    Insert a pairing, or refresh the existing one for the same external item
    (`conflict_on="external"`) or internal entity (`conflict_on="internal"`).

    Returns the row that ends up stored; when another run paired the item
    first, its ids differ from the ones passed in. Does not commit.
    """
    if conflict_on == "external":
        key = ["connection_id", "entity_type", "external_item_id"]
    elif conflict_on == "internal":
        key = ["connection_id", "entity_type", "internal_entity_id"]
    else:
        raise ValueError(f"Unknown conflict target: {conflict_on}")

    now = utcnow()
    stmt = dialect_insert(db, SyncMapping).values(
        connection_id=connection_id,
        entity_type=entity_type,
        internal_entity_id=internal_entity_id,
        external_item_id=external_item_id,
        external_item_type=external_item_type,
        last_synced_at=now,
        created_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=key,
        set_={"last_synced_at": stmt.excluded.last_synced_at},
    ).returning(SyncMapping.id, SyncMapping.internal_entity_id, SyncMapping.external_item_id)
    row = (await db.execute(stmt)).one()
    return _Pairing(id=row.id, internal_entity_id=row.internal_entity_id, external_item_id=row.external_item_id)


class SyncService:
    """Service for synchronizing tracked entities with Azure DevOps work items"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], client: AdoClient):
        self._session_factory = session_factory
        self.client = client

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @staticmethod
    async def _load_connection(db: AsyncSession, connection_id: int) -> AdoConnection:
        connection = await db.get(AdoConnection, connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    @staticmethod
    async def _load_job(db: AsyncSession, job_id: int) -> SyncJob:
        job = await db.get(SyncJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def create_job(
        self,
        connection_id: int,
        job_type: JobType,
        actor_id: Optional[str] = None,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
    ) -> int:
        async with self._session_factory() as db:
            await self._load_connection(db, connection_id)
            job = SyncJob(
                connection_id=connection_id,
                job_type=JobType(job_type),
                direction=SyncDirection(direction),
                status=JobStatus.PENDING,
                created_by=actor_id,
                items_synced=0,
                errors=[],
            )
            db.add(job)
            await db.commit()
            logger.info(f"Created {job.job_type.value} job {job.id} for connection {connection_id}")
            return job.id

    async def update_job(self, job_id: int, status: JobStatus, result: Optional[SyncResult] = None):
        """Move a job to `status`, stamping times and storing the result when given."""
        status = JobStatus(status)
        async with self._session_factory() as db:
            job = await self._load_job(db, job_id)
            current = JobStatus(job.status)
            if status not in _TRANSITIONS.get(current, set()):
                raise InvalidJobTransitionError(
                    f"Sync job {job_id} cannot move from {current.value} to {status.value}"
                )

            job.status = status
            if status == JobStatus.RUNNING:
                job.started_at = utcnow()
            if status.is_terminal:
                job.completed_at = utcnow()
            if result is not None:
                job.items_synced = result.items_synced
                job.errors = list(result.errors)
            await db.commit()

    async def _changed_since(self, db: AsyncSession, connection_id: int, job_id: int) -> Optional[datetime]:
        """Start of the last completed run (minus overlap), or None if there isn't one."""
        last_started = await db.scalar(
            select(SyncJob.started_at)
            .where(
                SyncJob.connection_id == connection_id,
                SyncJob.status == JobStatus.COMPLETED,
                SyncJob.id != job_id,
                SyncJob.started_at.is_not(None),
            )
            .order_by(SyncJob.started_at.desc())
            .limit(1)
        )
        if last_started is None:
            return None
        return last_started - INCREMENTAL_OVERLAP

    async def start_sync(
        self,
        connection_id: int,
        job_type: JobType = JobType.MANUAL_SYNC,
        actor_id: Optional[str] = None,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
    ) -> int:
        """Record a pending job; the caller schedules `run_job` for it."""
        return await self.create_job(connection_id, job_type, actor_id, direction)

    async def sync_connection(
        self,
        connection_id: int,
        job_type: JobType = JobType.INCREMENTAL_SYNC,
        actor_id: Optional[str] = None,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
    ) -> SyncResult:
        """Create a job for the connection and run it to completion."""
        job_id = await self.start_sync(connection_id, job_type, actor_id, direction)
        return await self.run_job(job_id)

    async def run_job_in_background(self, job_id: int, tenant_id: Optional[str] = None):
        """`run_job` for fire-and-forget callers; failures are already on the job row."""
        try:
            await self.run_job(job_id, tenant_id)
        except AdoSyncError as e:
            logger.error(f"Sync job {job_id} failed: {e}")

    async def run_job(self, job_id: int, tenant_id: Optional[str] = None) -> SyncResult:
        """Run a pending job across all entity types and record the outcome."""
        async with self._session_factory() as db:
            job = await self._load_job(db, job_id)
            connection_id = job.connection_id
            job_type = JobType(job.job_type)
            direction = SyncDirection(job.direction)
            # Claim the job: only one caller moves it out of pending.
            claimed = await db.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == JobStatus.PENDING)
                .values(status=JobStatus.RUNNING, started_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if claimed.rowcount == 0:
                raise InvalidJobTransitionError(f"Sync job {job_id} is no longer pending")

        try:
            async with self._session_factory() as db:
                connection = await self._load_connection(db, connection_id)
                connection_tenant = connection.tenant_id
                changed_since = None
                if job_type == JobType.INCREMENTAL_SYNC:
                    changed_since = await self._changed_since(db, connection_id, job_id)
            if tenant_id is not None and tenant_id != connection_tenant:
                raise ConnectionNotFoundError(connection_id)
            tenant_id = connection_tenant

            logger.info(
                f"Running sync job {job_id} ({job_type.value}, {direction.value}) for connection "
                f"{connection_id}" + (f", changes since {changed_since}" if changed_since else "")
            )

            async with self._session_factory() as db:
                await FieldMappingEngine(db).ensure_default_mappings(connection_id)

            outcomes = await asyncio.gather(
                *(
                    self.sync_entity_type(connection_id, entity_type, direction, tenant_id, changed_since)
                    for entity_type in EntityType
                ),
                return_exceptions=True,
            )
            total = SyncResult()
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
                total.merge(outcome)
        except Exception as e:
            logger.error(f"Sync job {job_id} failed: {e}")
            failure = SyncResult()
            failure.add_error(None, e)
            try:
                await self.update_job(job_id, JobStatus.FAILED, failure)
            except AdoSyncError as update_error:
                logger.error(f"Could not mark sync job {job_id} failed: {update_error}")
            raise

        await self.update_job(job_id, JobStatus.COMPLETED, total)
        logger.info(
            f"Sync job {job_id} completed: {total.items_synced} items synced, {len(total.errors)} errors"
        )
        return total

    # ------------------------------------------------------------------
    # Per entity type
    # ------------------------------------------------------------------

    async def sync_entity_type(
        self,
        connection_id: int,
        entity_type: EntityType,
        direction: SyncDirection,
        tenant_id: str,
        changed_since: Optional[datetime] = None,
    ) -> SyncResult:
        """Reconcile one entity type in the requested direction(s)."""
        entity_type = EntityType(entity_type)
        direction = SyncDirection(direction)
        result = SyncResult()

        async with self._session_factory() as db:
            connection = await self._load_connection(db, connection_id)
            project_name = connection.project_name
            rules = [
                MappingRule.from_model(m)
                for m in await FieldMappingEngine(db).get_mappings(connection_id)
                if m.entity_type == entity_type
            ]
            store = EntityStore(db, tenant_id)

            if direction.pulls:
                await self._pull(db, store, connection_id, project_name, entity_type, rules, changed_since, result)
            if direction.pushes:
                await self._push(db, store, connection_id, entity_type, rules, changed_since, result)

        logger.info(
            f"{entity_type.value}: {result.items_synced} synced, {len(result.errors)} errors "
            f"(connection {connection_id})"
        )
        return result

    async def _pull(
        self,
        db: AsyncSession,
        store: EntityStore,
        connection_id: int,
        project_name: str,
        entity_type: EntityType,
        rules: List[MappingRule],
        changed_since: Optional[datetime],
        result: SyncResult,
    ):
        # WIQL compares dates at day precision unless asked otherwise.
        query = build_wiql(
            entity_type, project_name, changed_since.date().isoformat() if changed_since else None
        )
        try:
            items = await self.client.query_work_items(connection_id, query)
        except RemoteError as e:
            types = "/".join(QUERY_ITEM_TYPES[entity_type])
            logger.error(f"Failed to load {types} work items for connection {connection_id}: {e}")
            result.add_error(entity_type, e)
            return

        for item in items:
            external_id = int(item["id"])
            try:
                await self._pull_item(db, store, connection_id, entity_type, item, rules)
                result.items_synced += 1
            except FATAL_ERRORS:
                raise
            except Exception as e:
                await db.rollback()
                logger.warning(f"Failed to sync work item #{external_id} into {entity_type.value}: {e}")
                result.add_error(entity_type, e, external_item_id=external_id)

    async def _pull_item(
        self,
        db: AsyncSession,
        store: EntityStore,
        connection_id: int,
        entity_type: EntityType,
        item: Dict[str, Any],
        rules: List[MappingRule],
    ):
        external_id = int(item["id"])
        values = FieldMappingEngine.map_external_to_internal(item, entity_type, rules)

        existing = await db.scalar(
            select(SyncMapping).where(
                SyncMapping.connection_id == connection_id,
                SyncMapping.entity_type == entity_type,
                SyncMapping.external_item_id == external_id,
            )
        )
        if existing is not None:
            await self._update_paired(db, store, entity_type, existing.id, existing.internal_entity_id, values)
            await db.commit()
            return

        entity = await store.create(entity_type, values, external_id)
        item_type = (item.get("fields") or {}).get("System.WorkItemType") or CREATE_ITEM_TYPES[entity_type]
        pairing = await upsert_sync_mapping(
            db,
            connection_id=connection_id,
            entity_type=entity_type,
            internal_entity_id=entity.id,
            external_item_id=external_id,
            external_item_type=item_type,
            conflict_on="external",
        )
        if pairing.internal_entity_id != entity.id:
            # Another run paired this work item first: drop our copy, update theirs.
            await db.rollback()
            logger.info(
                f"Work item #{external_id} already paired with {entity_type.value} "
                f"{pairing.internal_entity_id}; updating it instead"
            )
            await self._update_paired(db, store, entity_type, pairing.id, pairing.internal_entity_id, values)
        else:
            logger.info(f"Created {entity_type.value} {entity.id} from work item #{external_id}")
        await db.commit()

    @staticmethod
    async def _update_paired(
        db: AsyncSession,
        store: EntityStore,
        entity_type: EntityType,
        pairing_id: int,
        entity_id: int,
        values: Dict[str, Any],
    ):
        entity = await store.update(entity_type, entity_id, values)
        if entity is None:
            raise AdoSyncError(f"{entity_type.value} {entity_id} paired with this work item no longer exists")
        await db.execute(
            update(SyncMapping).where(SyncMapping.id == pairing_id).values(last_synced_at=utcnow())
        )

    async def _push(
        self,
        db: AsyncSession,
        store: EntityStore,
        connection_id: int,
        entity_type: EntityType,
        rules: List[MappingRule],
        changed_since: Optional[datetime],
        result: SyncResult,
    ):
        try:
            # Snapshots stay readable after a per-item rollback expires the ORM objects.
            rows = [snapshot(e) for e in await store.list_for_push(entity_type)]
            pairings = {
                p.internal_entity_id: _Pairing(p.id, p.internal_entity_id, p.external_item_id)
                for p in (
                    await db.scalars(
                        select(SyncMapping).where(
                            SyncMapping.connection_id == connection_id,
                            SyncMapping.entity_type == entity_type,
                        )
                    )
                ).all()
            }
        except Exception as e:
            logger.error(f"Failed to load {entity_type.value} entities for connection {connection_id}: {e}")
            result.add_error(entity_type, e)
            return

        skipped: Set[int] = set()
        for row in rows:
            pairing = pairings.get(row["id"])
            if (
                changed_since is not None
                and pairing is not None
                and row.get("updated_at") is not None
                and row["updated_at"] < changed_since
            ):
                skipped.add(row["id"])
                continue
            try:
                await self._push_item(db, connection_id, entity_type, row, pairing, rules)
                result.items_synced += 1
            except FATAL_ERRORS:
                raise
            except Exception as e:
                await db.rollback()
                logger.warning(f"Failed to push {entity_type.value} {row['id']}: {e}")
                result.add_error(
                    entity_type,
                    e,
                    entity_id=row["id"],
                    external_item_id=pairing.external_item_id if pairing else None,
                )
        if skipped:
            logger.debug(f"Skipped {len(skipped)} unchanged {entity_type.value} entities")

    async def _push_item(
        self,
        db: AsyncSession,
        connection_id: int,
        entity_type: EntityType,
        row: Dict[str, Any],
        pairing: Optional[_Pairing],
        rules: List[MappingRule],
    ):
        patch = FieldMappingEngine.map_internal_to_external(row, entity_type, rules)

        if pairing is not None:
            await self.client.update(connection_id, pairing.external_item_id, patch)
            await db.execute(
                update(SyncMapping).where(SyncMapping.id == pairing.id).values(last_synced_at=utcnow())
            )
            await db.commit()
            return

        item_type = CREATE_ITEM_TYPES[entity_type]
        created = await self.client.create(
            connection_id, item_type, {"System.Title": row.get(TITLE_FIELDS[entity_type])}
        )
        new_id = int(created["id"])
        stored = await upsert_sync_mapping(
            db,
            connection_id=connection_id,
            entity_type=entity_type,
            internal_entity_id=row["id"],
            external_item_id=new_id,
            external_item_type=item_type,
            conflict_on="internal",
        )
        await db.commit()
        if stored.external_item_id != new_id:
            logger.warning(
                f"{entity_type.value} {row['id']} was paired with work item #{stored.external_item_id} "
                f"by another run; work item #{new_id} is an unpaired duplicate"
            )
            raise AdoSyncError(
                f"Created duplicate work item #{new_id}; entity is already paired with "
                f"#{stored.external_item_id}"
            )

        if patch:
            await self.client.update(connection_id, new_id, patch)
        logger.info(f"Created {item_type} #{new_id} for {entity_type.value} {row['id']}")
