"""Azure DevOps work item REST client"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type
from urllib.parse import quote

import aiohttp
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adosync.config import settings
from adosync.errors import (
    ConcurrencyConflictError,
    ConnectionNotFoundError,
    FetchError,
    QueryError,
    RemoteError,
)
from adosync.models import AdoConnection
from adosync.services.credential_vault import CredentialVault

logger = logging.getLogger(__name__)

JSON_PATCH = "application/json-patch+json"


@dataclass
class AdoResponse:
    status: int
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.text) if self.text else {}


def _parse_ado_datetime(value: Any) -> Optional[datetime]:
    """Parse an Azure DevOps ISO8601 timestamp into UTC tz-naive."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


class AdoClient:
    """Thin async wrapper over the work item tracking endpoints.

    Every call resolves the connection's organization/project and a valid
    bearer token through the credential vault.
    """

    RETRY_STATUSES = (429, 500, 502, 503, 504)

    def __init__(
        self,
        vault: CredentialVault,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        api_version: Optional[str] = None,
        batch_size: Optional[int] = None,
        max_attempts: int = 3,
        base_delay_s: float = 0.5,
    ):
        self._vault = vault
        self._session_factory = session_factory
        self.api_version = api_version or settings.ado_api_version
        self.batch_size = batch_size or settings.ado_batch_size
        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_s
        self._http: Optional[aiohttp.ClientSession] = None
        self._base_urls: Dict[int, str] = {}

    async def _ensure_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=60))
        return self._http

    async def close(self):
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def _base_url(self, connection_id: int) -> str:
        if connection_id not in self._base_urls:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(AdoConnection).where(AdoConnection.id == connection_id)
                )
                connection = result.scalar_one_or_none()
            if connection is None:
                raise ConnectionNotFoundError(connection_id)
            self._base_urls[connection_id] = connection.base_url
        return self._base_urls[connection_id]

    def forget(self, connection_id: int):
        """Drop cached connection details (after a connection is deleted)."""
        self._base_urls.pop(connection_id, None)

    @classmethod
    def _should_retry(cls, response: Optional[AdoResponse]) -> bool:
        # None means the request never got a response (connection error/timeout).
        return response is None or response.status in cls.RETRY_STATUSES

    async def _with_retries(self, fn: Callable[[], Awaitable[AdoResponse]]) -> AdoResponse:
        """Run request with small exponential backoff on transient errors."""
        attempt = 1
        while True:
            try:
                response = await fn()
            except (aiohttp.ClientError, asyncio.TimeoutError):
                if attempt >= self.max_attempts:
                    raise
                response = None
            if response is not None and (attempt >= self.max_attempts or not self._should_retry(response)):
                return response
            await asyncio.sleep(self.base_delay_s * (2 ** (attempt - 1)))
            attempt += 1

    async def _send(
        self,
        method: str,
        url: str,
        *,
        token: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> AdoResponse:
        http = await self._ensure_http()
        request_headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        data = None
        if json_body is not None:
            request_headers["Content-Type"] = "application/json"
            data = json.dumps(json_body)
        request_headers.update(headers or {})
        async with http.request(
            method, url, params=params, data=data, headers=request_headers
        ) as response:
            return AdoResponse(status=response.status, text=await response.text())

    async def _request(
        self,
        connection_id: int,
        method: str,
        path: str,
        *,
        error_cls: Type[RemoteError] = FetchError,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> AdoResponse:
        base_url = await self._base_url(connection_id)
        token = await self._vault.get_access_token(connection_id)
        url = f"{base_url}/_apis/wit/{path}"
        query = {"api-version": self.api_version, **(params or {})}
        try:
            return await self._with_retries(
                lambda: self._send(
                    method, url, token=token, params=query, json_body=json_body, headers=headers
                )
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"{method} {url} failed: {e}")
            raise error_cls(f"Request to Azure DevOps failed: {e}") from e

    # ------------------------------------------------------------------
    # Queries and reads
    # ------------------------------------------------------------------

    async def query_by_wiql(self, connection_id: int, query: str) -> List[int]:
        """Run a WIQL query and return the matching work item ids."""
        response = await self._request(
            connection_id, "POST", "wiql", error_cls=QueryError, json_body={"query": query}
        )
        if not response.ok:
            logger.error(f"WIQL query failed for connection {connection_id}: HTTP {response.status}")
            raise QueryError("WIQL query failed", response.status, response.text)
        refs = response.json().get("workItems") or []
        return [int(ref["id"]) for ref in refs]

    async def fetch_by_ids(self, connection_id: int, ids: Iterable[int]) -> List[Dict[str, Any]]:
        """Fetch work items in batches of `batch_size` ids per call."""
        wanted = list(dict.fromkeys(int(i) for i in ids))
        if not wanted:
            return []

        items: List[Dict[str, Any]] = []
        for start in range(0, len(wanted), self.batch_size):
            batch = wanted[start:start + self.batch_size]
            response = await self._request(
                connection_id,
                "GET",
                "workitems",
                params={"ids": ",".join(str(i) for i in batch), "$expand": "all"},
            )
            if not response.ok:
                raise FetchError("Failed to fetch work items", response.status, response.text)
            items.extend(response.json().get("value") or [])

        missing = set(wanted) - {int(item.get("id", -1)) for item in items}
        if missing:
            raise FetchError(f"Work items missing from response: {sorted(missing)}")
        return items

    async def query_work_items(self, connection_id: int, query: str) -> List[Dict[str, Any]]:
        """Run a WIQL query and fetch the full work items it matches."""
        ids = await self.query_by_wiql(connection_id, query)
        return await self.fetch_by_ids(connection_id, ids)

    async def fetch_one(self, connection_id: int, item_id: int) -> Dict[str, Any]:
        response = await self._request(
            connection_id, "GET", f"workitems/{int(item_id)}", params={"$expand": "all"}
        )
        if not response.ok:
            raise FetchError(f"Failed to fetch work item {item_id}", response.status, response.text)
        return response.json()

    async def fetch_revisions_since(
        self, connection_id: int, item_id: int, since: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Revision history of a work item, optionally only revisions changed at/after `since`."""
        params: Dict[str, Any] = {"$expand": "all"}
        since_naive = None
        if since is not None:
            # Stored timestamps are UTC tz-naive; assume UTC if tzinfo is missing.
            aware = since if since.tzinfo else since.replace(tzinfo=timezone.utc)
            since_naive = aware.astimezone(timezone.utc).replace(tzinfo=None)
            params["$filter"] = f"System.ChangedDate ge {aware.isoformat()}"

        response = await self._request(
            connection_id, "GET", f"workitems/{int(item_id)}/revisions", params=params
        )
        if not response.ok:
            raise FetchError(
                f"Failed to fetch revisions for work item {item_id}", response.status, response.text
            )
        revisions = response.json().get("value") or []
        if since_naive is None:
            return revisions

        # The revisions endpoint may ignore $filter; apply it here as well.
        kept = []
        for rev in revisions:
            changed = _parse_ado_datetime((rev.get("fields") or {}).get("System.ChangedDate"))
            if changed is None or changed >= since_naive:
                kept.append(rev)
        return kept

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def build_create_operations(fields: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Add-operations for a new work item: title first, then the other non-null fields."""
        ops = [
            {
                "op": "add",
                "path": "/fields/System.Title",
                "value": fields.get("System.Title") or "Untitled",
            }
        ]
        for name, value in fields.items():
            if name == "System.Title" or value is None:
                continue
            ops.append({"op": "add", "path": f"/fields/{name}", "value": value})
        return ops

    async def create(self, connection_id: int, item_type: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Create a work item of `item_type` (e.g. Epic, Risk, Task)."""
        response = await self._request(
            connection_id,
            "POST",
            f"workitems/${quote(item_type)}",
            json_body=self.build_create_operations(fields),
            headers={"Content-Type": JSON_PATCH},
        )
        if not response.ok:
            raise FetchError(f"Failed to create {item_type} work item", response.status, response.text)
        item = response.json()
        logger.info(f"Created {item_type} work item #{item.get('id')} (connection {connection_id})")
        return item

    async def update(
        self, connection_id: int, item_id: int, patch_ops: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Patch a work item, conditional on the revision we just read."""
        current = await self.fetch_one(connection_id, item_id)
        if not patch_ops:
            return current

        response = await self._request(
            connection_id,
            "PATCH",
            f"workitems/{int(item_id)}",
            json_body=patch_ops,
            headers={"Content-Type": JSON_PATCH, "If-Match": f'"{current.get("rev")}"'},
        )
        if response.status == 412:
            raise ConcurrencyConflictError(
                f"Work item {item_id} changed since revision {current.get('rev')}",
                response.status,
                response.text,
            )
        if not response.ok:
            raise FetchError(f"Failed to update work item {item_id}", response.status, response.text)
        logger.info(f"Updated work item #{item_id} (connection {connection_id})")
        return response.json()
