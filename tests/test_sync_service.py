import asyncio
import logging
import unittest
from datetime import date, timedelta
from unittest.mock import patch

from ado_test_support import TempDatabase, add_connection, make_cipher
from sqlalchemy import func, select

from adosync.errors import (
    ConcurrencyConflictError,
    ConnectionNotFoundError,
    InvalidJobTransitionError,
    JobNotFoundError,
    OAuthRefreshError,
    QueryError,
)
from adosync.models import (
    ActionItem,
    EntityType,
    JobStatus,
    JobType,
    Risk,
    SyncDirection,
    SyncJob,
    SyncMapping,
    Workstream,
)
from adosync.models.base import utcnow
from adosync.services.entity_store import EntityStore
from adosync.services.sync_service import SyncResult, SyncService, upsert_sync_mapping

logging.disable(logging.CRITICAL)


class _FakeAdoClient:
    """Records calls; serves work items keyed by the work item types in the WIQL."""

    def __init__(self, items_by_type=None):
        self.items_by_type = items_by_type or {}
        self.queries = []
        self.created = []
        self.updated = []
        self.fail_update_on_call = None
        self.query_error = None
        self._next_id = 900

    async def query_work_items(self, connection_id, query):
        self.queries.append(query)
        if self.query_error is not None:
            raise self.query_error
        for types, items in self.items_by_type.items():
            if types in query:
                return [dict(item) for item in items]
        return []

    async def create(self, connection_id, item_type, fields):
        self._next_id += 1
        self.created.append((item_type, fields, self._next_id))
        return {"id": self._next_id, "rev": 1, "fields": dict(fields)}

    async def update(self, connection_id, item_id, patch_ops):
        self.updated.append((item_id, patch_ops))
        if self.fail_update_on_call == len(self.updated):
            raise ConcurrencyConflictError(f"Work item {item_id} changed since revision 3", 412)
        return {"id": item_id, "rev": 4}


def _epic(item_id, title, state="Active", **extra):
    fields = {"System.Title": title, "System.State": state, "System.WorkItemType": "Epic"}
    fields.update(extra)
    return {"id": item_id, "rev": 3, "fields": fields}


class _SyncTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = await TempDatabase().start()
        self.connection_id = await add_connection(self.db.session_factory, make_cipher())
        self.client = _FakeAdoClient()
        self.service = SyncService(self.db.session_factory, self.client)

    async def asyncTearDown(self):
        await self.db.stop()

    async def _count(self, model, *where):
        async with self.db.session_factory() as db:
            return await db.scalar(select(func.count()).select_from(model).where(*where))

    async def _all(self, model):
        async with self.db.session_factory() as db:
            return list((await db.scalars(select(model).order_by(model.id))).all())

    async def _job(self, job_id):
        async with self.db.session_factory() as db:
            return await db.get(SyncJob, job_id)

    async def _seed_defaults(self):
        from adosync.services.field_mapper import FieldMappingEngine

        async with self.db.session_factory() as db:
            await FieldMappingEngine(db).ensure_default_mappings(self.connection_id)

    async def _pair_from_other_run(self, external_item_id, internal_entity_id=None):
        """Store a pairing the way a concurrent run would, in its own session."""
        async with self.db.session_factory() as db:
            if internal_entity_id is None:
                ws = Workstream(tenant_id="program-1", name="Paired elsewhere", status="GREEN", summary="")
                db.add(ws)
                await db.flush()
                internal_entity_id = ws.id
            db.add(
                SyncMapping(
                    connection_id=self.connection_id,
                    entity_type=EntityType.WORKSTREAM,
                    internal_entity_id=internal_entity_id,
                    external_item_id=external_item_id,
                    external_item_type="Epic",
                )
            )
            await db.commit()
        return internal_entity_id


class PullTests(_SyncTestCase):
    async def test_resync_is_idempotent(self):
        await self._seed_defaults()
        self.client.items_by_type["'Epic', 'Feature'"] = [_epic(42, "Payments revamp")]

        first = await self.service.sync_entity_type(
            self.connection_id, EntityType.WORKSTREAM, SyncDirection.EXTERNAL_TO_INTERNAL, "program-1"
        )
        second = await self.service.sync_entity_type(
            self.connection_id, EntityType.WORKSTREAM, SyncDirection.EXTERNAL_TO_INTERNAL, "program-1"
        )

        self.assertEqual((first.items_synced, first.errors), (1, []))
        self.assertEqual((second.items_synced, second.errors), (1, []))
        self.assertEqual(await self._count(SyncMapping), 1)
        self.assertEqual(await self._count(Workstream), 1)

        mapping = (await self._all(SyncMapping))[0]
        self.assertEqual(mapping.external_item_id, 42)
        self.assertEqual(mapping.external_item_type, "Epic")

    async def test_new_item_gets_fallbacks_and_update_merges(self):
        await self._seed_defaults()
        self.client.items_by_type["'Epic', 'Feature'"] = [
            {"id": 42, "rev": 1, "fields": {"System.State": "Resolved", "Microsoft.VSTS.Scheduling.PercentComplete": 40.0}}
        ]

        await self.service.sync_entity_type(
            self.connection_id, EntityType.WORKSTREAM, SyncDirection.EXTERNAL_TO_INTERNAL, "program-1"
        )
        ws = (await self._all(Workstream))[0]
        self.assertEqual(ws.name, "Workstream 42")
        self.assertEqual(ws.status, "RED")
        self.assertEqual(ws.percent_complete, 40)
        self.assertEqual(ws.summary, "")
        self.assertEqual(ws.tenant_id, "program-1")

        # The second pull only carries a title; other fields stay untouched.
        async with self.db.session_factory() as db:
            stored = await db.get(Workstream, ws.id)
            stored.next_milestone = "Beta"
            await db.commit()
        self.client.items_by_type["'Epic', 'Feature'"] = [_epic(42, "Renamed", state=None)]

        await self.service.sync_entity_type(
            self.connection_id, EntityType.WORKSTREAM, SyncDirection.EXTERNAL_TO_INTERNAL, "program-1"
        )
        ws = (await self._all(Workstream))[0]
        self.assertEqual(ws.name, "Renamed")
        self.assertEqual(ws.status, "RED")
        self.assertEqual(ws.percent_complete, 40)
        self.assertEqual(ws.next_milestone, "Beta")

    async def test_action_due_date_stored_as_date(self):
        await self._seed_defaults()
        self.client.items_by_type["('Task')"] = [
            {
                "id": 7,
                "rev": 1,
                "fields": {
                    "System.Title": "Book venue",
                    "System.State": "New",
                    "System.AssignedTo": {"displayName": "Ada Lovelace"},
                    "Microsoft.VSTS.Scheduling.DueDate": "2024-05-01T00:00:00Z",
                },
            }
        ]

        result = await self.service.sync_entity_type(
            self.connection_id, EntityType.ACTION, SyncDirection.EXTERNAL_TO_INTERNAL, "program-1"
        )

        self.assertEqual(result.errors, [])
        action = (await self._all(ActionItem))[0]
        self.assertEqual(action.due_date, date(2024, 5, 1))
        self.assertEqual(action.owner, "Ada Lovelace")
        self.assertEqual(action.status, "OPEN")

    async def test_bad_item_recorded_and_loop_continues(self):
        await self._seed_defaults()
        self.client.items_by_type["('Task')"] = [
            {"id": 1, "fields": {"System.Title": "Bad", "Microsoft.VSTS.Scheduling.DueDate": "someday"}},
            {"id": 2, "fields": {"System.Title": "Good"}},
        ]

        result = await self.service.sync_entity_type(
            self.connection_id, EntityType.ACTION, SyncDirection.EXTERNAL_TO_INTERNAL, "program-1"
        )

        self.assertEqual(result.items_synced, 1)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.errors[0]["entity_type"], "action")
        self.assertEqual(result.errors[0]["external_item_id"], 1)
        self.assertEqual([a.title for a in await self._all(ActionItem)], ["Good"])
        self.assertEqual(await self._count(SyncMapping), 1)

    async def test_query_failure_recorded_as_error(self):
        await self._seed_defaults()
        self.client.query_error = QueryError("WIQL query failed", 400, "TF51005")

        result = await self.service.sync_entity_type(
            self.connection_id, EntityType.RISK, SyncDirection.EXTERNAL_TO_INTERNAL, "program-1"
        )

        self.assertEqual(result.items_synced, 0)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.errors[0]["entity_type"], "risk")

    async def test_item_paired_by_another_run_updates_that_entity(self):
        await self._seed_defaults()
        self.client.items_by_type["'Epic', 'Feature'"] = [_epic(42, "Payments revamp")]
        paired = {}
        create = EntityStore.create

        async def create_after_other_run_pairs(store, entity_type, values, external_item_id):
            # The other run pairs the item after our lookup missed it.
            paired["id"] = await self._pair_from_other_run(external_item_id)
            return await create(store, entity_type, values, external_item_id)

        with patch.object(EntityStore, "create", create_after_other_run_pairs):
            result = await self.service.sync_entity_type(
                self.connection_id, EntityType.WORKSTREAM, SyncDirection.EXTERNAL_TO_INTERNAL, "program-1"
            )

        self.assertEqual((result.items_synced, result.errors), (1, []))
        workstreams = await self._all(Workstream)
        self.assertEqual([(ws.id, ws.name) for ws in workstreams], [(paired["id"], "Payments revamp")])
        mappings = await self._all(SyncMapping)
        self.assertEqual([(m.internal_entity_id, m.external_item_id) for m in mappings], [(paired["id"], 42)])

    async def test_unchanged_item_does_not_touch_updated_at(self):
        await self._seed_defaults()
        self.client.items_by_type["'Epic', 'Feature'"] = [_epic(42, "Payments revamp")]
        await self.service.sync_entity_type(
            self.connection_id, EntityType.WORKSTREAM, SyncDirection.EXTERNAL_TO_INTERNAL, "program-1"
        )
        long_ago = utcnow() - timedelta(days=3)
        async with self.db.session_factory() as db:
            ws = (await db.scalars(select(Workstream))).one()
            ws.updated_at = long_ago
            await db.commit()

        await self.service.sync_entity_type(
            self.connection_id, EntityType.WORKSTREAM, SyncDirection.EXTERNAL_TO_INTERNAL, "program-1"
        )
        self.assertEqual((await self._all(Workstream))[0].updated_at, long_ago)

        self.client.items_by_type["'Epic', 'Feature'"] = [_epic(42, "Payments v2")]
        await self.service.sync_entity_type(
            self.connection_id, EntityType.WORKSTREAM, SyncDirection.EXTERNAL_TO_INTERNAL, "program-1"
        )
        ws = (await self._all(Workstream))[0]
        self.assertEqual(ws.name, "Payments v2")
        self.assertGreater(ws.updated_at, long_ago)


class PushTests(_SyncTestCase):
    async def _add_workstreams(self, count, mapped=True):
        ids = []
        async with self.db.session_factory() as db:
            for i in range(count):
                ws = Workstream(tenant_id="program-1", name=f"WS {i}", status="GREEN", summary="s")
                db.add(ws)
                await db.flush()
                ids.append(ws.id)
                if mapped:
                    db.add(
                        SyncMapping(
                            connection_id=self.connection_id,
                            entity_type=EntityType.WORKSTREAM,
                            internal_entity_id=ws.id,
                            external_item_id=500 + i,
                            external_item_type="Epic",
                        )
                    )
            await db.commit()
        return ids

    async def test_conflict_on_one_item_does_not_fail_job(self):
        await self._add_workstreams(5)
        self.client.fail_update_on_call = 3

        job_id = await self.service.create_job(
            self.connection_id, JobType.MANUAL_SYNC, "alice", SyncDirection.INTERNAL_TO_EXTERNAL
        )
        result = await self.service.run_job(job_id)

        self.assertEqual(result.items_synced, 4)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.errors[0]["external_item_id"], 502)

        job = await self._job(job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.items_synced, 4)
        self.assertEqual(len(job.errors), 1)
        self.assertIsNotNone(job.started_at)
        self.assertIsNotNone(job.completed_at)
        self.assertEqual(job.created_by, "alice")

    async def test_unmapped_entity_creates_work_item_and_pairing(self):
        await self._seed_defaults()
        (ws_id,) = await self._add_workstreams(1, mapped=False)

        result = await self.service.sync_entity_type(
            self.connection_id, EntityType.WORKSTREAM, SyncDirection.INTERNAL_TO_EXTERNAL, "program-1"
        )

        self.assertEqual((result.items_synced, result.errors), (1, []))
        self.assertEqual(self.client.created, [("Epic", {"System.Title": "WS 0"}, 901)])
        patched_id, ops = self.client.updated[0]
        self.assertEqual(patched_id, 901)
        self.assertIn({"op": "replace", "path": "/fields/System.State", "value": "Active"}, ops)

        mapping = (await self._all(SyncMapping))[0]
        self.assertEqual((mapping.internal_entity_id, mapping.external_item_id), (ws_id, 901))

        # Second push updates the paired item instead of creating another.
        await self.service.sync_entity_type(
            self.connection_id, EntityType.WORKSTREAM, SyncDirection.INTERNAL_TO_EXTERNAL, "program-1"
        )
        self.assertEqual(len(self.client.created), 1)
        self.assertEqual(self.client.updated[-1][0], 901)
        self.assertEqual(await self._count(SyncMapping), 1)

    async def test_entity_paired_by_another_run_during_create_recorded_as_error(self):
        await self._seed_defaults()
        (ws_id,) = await self._add_workstreams(1, mapped=False)
        create = self.client.create

        async def create_while_other_run_pairs(connection_id, item_type, fields):
            await self._pair_from_other_run(777, internal_entity_id=ws_id)
            return await create(connection_id, item_type, fields)

        self.client.create = create_while_other_run_pairs
        result = await self.service.sync_entity_type(
            self.connection_id, EntityType.WORKSTREAM, SyncDirection.INTERNAL_TO_EXTERNAL, "program-1"
        )

        self.assertEqual(result.items_synced, 0)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.errors[0]["entity_id"], ws_id)
        self.assertIn("#901", result.errors[0]["error"])
        # The duplicate work item is never patched or paired.
        self.assertEqual(self.client.updated, [])
        mappings = await self._all(SyncMapping)
        self.assertEqual([(m.internal_entity_id, m.external_item_id) for m in mappings], [(ws_id, 777)])

    async def test_deleted_workstreams_and_other_tenants_not_pushed(self):
        await self._seed_defaults()
        async with self.db.session_factory() as db:
            db.add(Workstream(tenant_id="program-1", name="Gone", deleted_at=utcnow()))
            db.add(Workstream(tenant_id="program-2", name="Not ours"))
            db.add(Risk(tenant_id="program-1", title="Vendor delay", severity="HIGH"))
            await db.commit()

        ws = await self.service.sync_entity_type(
            self.connection_id, EntityType.WORKSTREAM, SyncDirection.INTERNAL_TO_EXTERNAL, "program-1"
        )
        risk = await self.service.sync_entity_type(
            self.connection_id, EntityType.RISK, SyncDirection.INTERNAL_TO_EXTERNAL, "program-1"
        )

        self.assertEqual(ws.items_synced, 0)
        self.assertEqual(risk.items_synced, 1)
        self.assertEqual([c[0] for c in self.client.created], ["Risk"])
        ops = self.client.updated[0][1]
        self.assertIn({"op": "replace", "path": "/fields/Microsoft.VSTS.Common.Severity", "value": 3}, ops)
        self.assertNotIn("/fields/System.AssignedTo", [op["path"] for op in ops])

    async def test_incremental_push_skips_unchanged_mapped_entities(self):
        await self._seed_defaults()
        await self._add_workstreams(2)
        async with self.db.session_factory() as db:
            old = (await db.scalars(select(Workstream).order_by(Workstream.id))).first()
            old.updated_at = utcnow() - timedelta(days=2)
            await db.commit()

        result = await self.service.sync_entity_type(
            self.connection_id,
            EntityType.WORKSTREAM,
            SyncDirection.INTERNAL_TO_EXTERNAL,
            "program-1",
            changed_since=utcnow() - timedelta(hours=1),
        )

        self.assertEqual(result.items_synced, 1)
        self.assertEqual([item_id for item_id, _ in self.client.updated], [501])


class JobTests(_SyncTestCase):
    async def test_job_lifecycle_and_terminal_states(self):
        job_id = await self.service.create_job(self.connection_id, JobType.FULL_SYNC, "alice")
        job = await self._job(job_id)
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual(job.direction, SyncDirection.BIDIRECTIONAL)

        with self.assertRaises(InvalidJobTransitionError):
            await self.service.update_job(job_id, JobStatus.COMPLETED)

        await self.service.update_job(job_id, JobStatus.RUNNING)
        await self.service.update_job(job_id, JobStatus.COMPLETED, SyncResult(3, [{"entity_type": "risk", "error": "x"}]))

        job = await self._job(job_id)
        self.assertEqual((job.status, job.items_synced), (JobStatus.COMPLETED, 3))
        self.assertIsNotNone(job.completed_at)

        for status in (JobStatus.RUNNING, JobStatus.FAILED, JobStatus.COMPLETED):
            with self.assertRaises(InvalidJobTransitionError):
                await self.service.update_job(job_id, status)

    async def test_pending_job_may_fail_directly(self):
        job_id = await self.service.create_job(self.connection_id, JobType.MANUAL_SYNC)
        await self.service.update_job(job_id, JobStatus.FAILED)
        self.assertEqual((await self._job(job_id)).status, JobStatus.FAILED)

    async def test_unknown_job(self):
        with self.assertRaises(JobNotFoundError):
            await self.service.update_job(12345, JobStatus.RUNNING)

    async def test_credential_failure_fails_job_and_propagates(self):
        async def _refresh_rejected(*_args, **_kwargs):
            raise OAuthRefreshError("Failed to refresh token", 401, "expired")

        self.client.query_work_items = _refresh_rejected
        job_id = await self.service.create_job(self.connection_id, JobType.MANUAL_SYNC)

        with self.assertRaises(OAuthRefreshError):
            await self.service.run_job(job_id)

        job = await self._job(job_id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(len(job.errors), 1)
        self.assertIn("Failed to refresh token", job.errors[0]["error"])

    async def test_run_job_seeds_mappings_and_syncs_all_types(self):
        self.client.items_by_type["'Epic', 'Feature'"] = [_epic(42, "Payments")]
        self.client.items_by_type["'Risk', 'Bug'"] = [
            {"id": 43, "fields": {"System.Title": "Vendor delay", "System.WorkItemType": "Risk"}}
        ]

        result = await self.service.sync_connection(
            self.connection_id, JobType.FULL_SYNC, direction=SyncDirection.EXTERNAL_TO_INTERNAL
        )

        self.assertEqual((result.items_synced, result.errors), (2, []))
        self.assertEqual(len(self.client.queries), 3)
        self.assertEqual(await self._count(Workstream), 1)
        self.assertEqual(await self._count(Risk), 1)

    async def test_incremental_uses_last_completed_run(self):
        first = await self.service.sync_connection(
            self.connection_id, JobType.INCREMENTAL_SYNC, direction=SyncDirection.EXTERNAL_TO_INTERNAL
        )
        self.assertEqual(first.items_synced, 0)
        self.assertFalse(any("ChangedDate" in q for q in self.client.queries))

        self.client.queries.clear()
        await self.service.sync_connection(
            self.connection_id, JobType.INCREMENTAL_SYNC, direction=SyncDirection.EXTERNAL_TO_INTERNAL
        )
        self.assertEqual(len(self.client.queries), 3)
        self.assertTrue(all("[System.ChangedDate] >= " in q for q in self.client.queries))

    async def test_concurrent_runs_of_one_job_complete_it_once(self):
        self.client.items_by_type["'Epic', 'Feature'"] = [_epic(42, "Payments")]
        job_id = await self.service.create_job(
            self.connection_id, JobType.MANUAL_SYNC, direction=SyncDirection.EXTERNAL_TO_INTERNAL
        )

        outcomes = await asyncio.gather(
            self.service.run_job(job_id), self.service.run_job(job_id), return_exceptions=True
        )

        results = [o for o in outcomes if isinstance(o, SyncResult)]
        refused = [o for o in outcomes if isinstance(o, InvalidJobTransitionError)]
        self.assertEqual((len(results), len(refused)), (1, 1))
        self.assertEqual(results[0].items_synced, 1)

        job = await self._job(job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual((job.items_synced, job.errors), (1, []))
        self.assertEqual(await self._count(Workstream), 1)

    async def test_rerunning_finished_job_leaves_it_untouched(self):
        job_id = await self.service.create_job(self.connection_id, JobType.MANUAL_SYNC)
        await self.service.run_job(job_id)
        completed_at = (await self._job(job_id)).completed_at

        with self.assertRaises(InvalidJobTransitionError):
            await self.service.run_job(job_id)

        job = await self._job(job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual((job.completed_at, job.errors), (completed_at, []))

    async def test_job_for_other_tenant_refused(self):
        job_id = await self.service.create_job(self.connection_id, JobType.MANUAL_SYNC)
        with self.assertRaises(ConnectionNotFoundError):
            await self.service.run_job(job_id, tenant_id="program-2")
        self.assertEqual((await self._job(job_id)).status, JobStatus.FAILED)
        self.assertEqual(self.client.queries, [])


class PairingUpsertTests(_SyncTestCase):
    async def test_upsert_returns_existing_pairing_winner(self):
        async with self.db.session_factory() as db:
            first = await upsert_sync_mapping(
                db,
                connection_id=self.connection_id,
                entity_type=EntityType.RISK,
                internal_entity_id=1,
                external_item_id=42,
                external_item_type="Risk",
                conflict_on="external",
            )
            second = await upsert_sync_mapping(
                db,
                connection_id=self.connection_id,
                entity_type=EntityType.RISK,
                internal_entity_id=2,
                external_item_id=42,
                external_item_type="Risk",
                conflict_on="external",
            )
            await db.commit()

        self.assertEqual(first.id, second.id)
        self.assertEqual(second.internal_entity_id, 1)
        self.assertEqual(await self._count(SyncMapping), 1)
