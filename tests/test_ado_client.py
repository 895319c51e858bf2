import json
import logging
import unittest
from datetime import datetime
from unittest.mock import AsyncMock, Mock

import aiohttp

from adosync.errors import ConcurrencyConflictError, FetchError, QueryError
from adosync.services.ado_client import AdoClient, AdoResponse

logging.disable(logging.CRITICAL)

BASE = "https://dev.azure.com/contoso/Apollo"


def _ok(payload, status=200):
    return AdoResponse(status=status, text=json.dumps(payload))


def _client(responses):
    vault = Mock()
    vault.get_access_token = AsyncMock(return_value="tok")
    client = AdoClient(vault, session_factory=None, api_version="7.1", batch_size=200, base_delay_s=0)
    client._base_urls[1] = BASE
    client._send = AsyncMock(side_effect=responses)
    return client


class AdoClientQueryTests(unittest.IsolatedAsyncioTestCase):
    async def test_query_by_wiql_returns_ids(self):
        client = _client([_ok({"workItems": [{"id": 5, "url": "x"}, {"id": 9, "url": "y"}]})])

        ids = await client.query_by_wiql(1, "SELECT [System.Id] FROM WorkItems")

        self.assertEqual(ids, [5, 9])
        args, kwargs = client._send.await_args
        self.assertEqual(args, ("POST", f"{BASE}/_apis/wit/wiql"))
        self.assertEqual(kwargs["token"], "tok")
        self.assertEqual(kwargs["params"], {"api-version": "7.1"})
        self.assertEqual(kwargs["json_body"], {"query": "SELECT [System.Id] FROM WorkItems"})

    async def test_query_failure_raises_query_error(self):
        client = _client([AdoResponse(400, '{"message": "TF51005: bad query"}')])

        with self.assertRaises(QueryError) as ctx:
            await client.query_by_wiql(1, "SELECT nonsense")
        self.assertEqual(ctx.exception.status, 400)
        self.assertIn("TF51005", ctx.exception.body)

    async def test_fetch_by_ids_batches_requests(self):
        ids = list(range(1, 451))
        batches = [ids[0:200], ids[200:400], ids[400:450]]
        client = _client([_ok({"value": [{"id": i, "fields": {}} for i in batch]}) for batch in batches])

        items = await client.fetch_by_ids(1, ids)

        self.assertEqual([item["id"] for item in items], ids)
        self.assertEqual(client._send.await_count, 3)
        sent = [call.kwargs["params"]["ids"] for call in client._send.await_args_list]
        self.assertEqual(sent, [",".join(str(i) for i in batch) for batch in batches])
        for call in client._send.await_args_list:
            self.assertEqual(call.kwargs["params"]["$expand"], "all")
            self.assertEqual(call.args, ("GET", f"{BASE}/_apis/wit/workitems"))

    async def test_fetch_by_ids_empty_makes_no_calls(self):
        client = _client([])
        self.assertEqual(await client.fetch_by_ids(1, []), [])
        client._send.assert_not_awaited()

    async def test_fetch_by_ids_missing_item_raises(self):
        client = _client([_ok({"value": [{"id": 1}, {"id": 3}]})])

        with self.assertRaises(FetchError) as ctx:
            await client.fetch_by_ids(1, [1, 2, 3])
        self.assertIn("[2]", str(ctx.exception))

    async def test_query_work_items_queries_then_fetches(self):
        client = _client(
            [
                _ok({"workItems": [{"id": 4}]}),
                _ok({"value": [{"id": 4, "fields": {"System.Title": "T"}}]}),
            ]
        )
        items = await client.query_work_items(1, "SELECT [System.Id] FROM WorkItems")
        self.assertEqual(items, [{"id": 4, "fields": {"System.Title": "T"}}])

    async def test_fetch_revisions_since_filters_client_side(self):
        revisions = {
            "value": [
                {"rev": 1, "fields": {"System.ChangedDate": "2024-04-01T10:00:00Z"}},
                {"rev": 2, "fields": {"System.ChangedDate": "2024-05-02T10:00:00.123Z"}},
                {"rev": 3, "fields": {"System.ChangedDate": "2024-05-03T09:00:00+00:00"}},
            ]
        }
        client = _client([_ok(revisions)])

        kept = await client.fetch_revisions_since(1, 77, since=datetime(2024, 5, 1))

        self.assertEqual([r["rev"] for r in kept], [2, 3])
        params = client._send.await_args.kwargs["params"]
        self.assertEqual(params["$filter"], "System.ChangedDate ge 2024-05-01T00:00:00+00:00")
        self.assertEqual(client._send.await_args.args[1], f"{BASE}/_apis/wit/workitems/77/revisions")

    async def test_fetch_revisions_without_since_returns_all(self):
        client = _client([_ok({"value": [{"rev": 1}, {"rev": 2}]})])
        self.assertEqual(len(await client.fetch_revisions_since(1, 77)), 2)
        self.assertNotIn("$filter", client._send.await_args.kwargs["params"])


class AdoClientRetryTests(unittest.IsolatedAsyncioTestCase):
    async def test_transient_status_retried(self):
        client = _client([AdoResponse(503, "busy"), AdoResponse(429, "slow down"), _ok({"id": 8, "rev": 1})])

        item = await client.fetch_one(1, 8)

        self.assertEqual(item["id"], 8)
        self.assertEqual(client._send.await_count, 3)

    async def test_gives_up_after_max_attempts(self):
        client = _client([AdoResponse(503, "busy")] * 3)

        with self.assertRaises(FetchError) as ctx:
            await client.fetch_one(1, 8)
        self.assertEqual(ctx.exception.status, 503)
        self.assertEqual(client._send.await_count, 3)

    async def test_client_errors_retried_then_wrapped(self):
        client = _client([aiohttp.ClientConnectionError("reset")] * 3)

        with self.assertRaises(FetchError):
            await client.fetch_one(1, 8)
        self.assertEqual(client._send.await_count, 3)

    async def test_non_transient_status_not_retried(self):
        client = _client([AdoResponse(404, "nope")])

        with self.assertRaises(FetchError):
            await client.fetch_one(1, 8)
        self.assertEqual(client._send.await_count, 1)


class AdoClientWriteTests(unittest.IsolatedAsyncioTestCase):
    async def test_create_puts_title_first_and_skips_nulls(self):
        client = _client([_ok({"id": 321, "rev": 1})])

        item = await client.create(
            1,
            "Epic",
            {"System.Description": "Summary", "System.Title": "Payments", "Custom.Empty": None},
        )

        self.assertEqual(item["id"], 321)
        args, kwargs = client._send.await_args
        self.assertEqual(args, ("POST", f"{BASE}/_apis/wit/workitems/$Epic"))
        self.assertEqual(kwargs["headers"], {"Content-Type": "application/json-patch+json"})
        self.assertEqual(
            kwargs["json_body"],
            [
                {"op": "add", "path": "/fields/System.Title", "value": "Payments"},
                {"op": "add", "path": "/fields/System.Description", "value": "Summary"},
            ],
        )

    def test_create_operations_default_title(self):
        ops = AdoClient.build_create_operations({"System.Title": None})
        self.assertEqual(ops, [{"op": "add", "path": "/fields/System.Title", "value": "Untitled"}])

    async def test_create_encodes_item_type(self):
        client = _client([_ok({"id": 1})])
        await client.create(1, "User Story", {"System.Title": "x"})
        self.assertEqual(client._send.await_args.args[1], f"{BASE}/_apis/wit/workitems/$User%20Story")

    async def test_update_sends_if_match_with_current_rev(self):
        client = _client([_ok({"id": 44, "rev": 7}), _ok({"id": 44, "rev": 8})])
        ops = [{"op": "replace", "path": "/fields/System.State", "value": "Active"}]

        item = await client.update(1, 44, ops)

        self.assertEqual(item["rev"], 8)
        args, kwargs = client._send.await_args
        self.assertEqual(args, ("PATCH", f"{BASE}/_apis/wit/workitems/44"))
        self.assertEqual(kwargs["headers"]["If-Match"], '"7"')
        self.assertEqual(kwargs["headers"]["Content-Type"], "application/json-patch+json")
        self.assertEqual(kwargs["json_body"], ops)

    async def test_update_precondition_failed_raises_conflict(self):
        client = _client([_ok({"id": 44, "rev": 7}), AdoResponse(412, "rev mismatch")])

        with self.assertRaises(ConcurrencyConflictError) as ctx:
            await client.update(1, 44, [{"op": "replace", "path": "/fields/System.Title", "value": "x"}])
        self.assertEqual(ctx.exception.status, 412)

    async def test_update_with_no_ops_skips_patch(self):
        client = _client([_ok({"id": 44, "rev": 7})])
        await client.update(1, 44, [])
        self.assertEqual(client._send.await_count, 1)
