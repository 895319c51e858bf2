"""Security-related helpers (built-in auth and tenant authorization).

Provides optional HTTP Basic auth protection for the API, resolution of the
acting user, and the tenant authorizer consulted before connections are
created, listed, synced or deleted.
"""

from __future__ import annotations

import base64
import binascii
import secrets
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Set

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from adosync.config import settings

ACTOR_HEADER = "X-Actor-Id"


@dataclass(frozen=True)
class BasicAuthCredentials:
    username: str
    password: str


def _parse_basic_auth_header(header_value: str) -> BasicAuthCredentials | None:
    """Parse an Authorization header containing HTTP Basic auth."""
    if not header_value:
        return None

    scheme, _, param = header_value.partition(" ")
    if scheme.lower() != "basic" or not param:
        return None

    try:
        decoded = base64.b64decode(param, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None

    username, sep, password = decoded.partition(":")
    if sep != ":":
        return None

    return BasicAuthCredentials(username=username, password=password)


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """Protect routes via HTTP Basic auth.

    If enabled, we protect all paths except an allowlist (/health and the
    OAuth callback, which the tracker redirects the browser to). The
    authenticated username becomes the request's actor.
    """

    def __init__(
        self,
        app,
        *,
        username: str,
        password: str,
        allow_paths: set[str] | None = None,
        realm: str = "AdoSync",
    ):
        super().__init__(app)
        self._username = username
        self._password = password
        self._allow_paths = allow_paths or {"/health"}
        self._realm = realm

    def _unauthorized(self) -> Response:
        return Response(
            content="Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": f'Basic realm="{self._realm}", charset="UTF-8"'},
        )

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self._allow_paths:
            return await call_next(request)

        creds = _parse_basic_auth_header(request.headers.get("Authorization", ""))
        if creds is None:
            return self._unauthorized()

        ok_user = secrets.compare_digest(creds.username.encode("utf-8"), self._username.encode("utf-8"))
        ok_pass = secrets.compare_digest(creds.password.encode("utf-8"), self._password.encode("utf-8"))
        if not (ok_user and ok_pass):
            return self._unauthorized()

        request.state.actor_id = creds.username
        return await call_next(request)


def get_actor_id(request: Request) -> Optional[str]:
    """Acting user: the Basic auth user if authenticated, else the X-Actor-Id header."""
    actor = getattr(request.state, "actor_id", None)
    if actor:
        return actor
    return (request.headers.get(ACTOR_HEADER) or "").strip() or None


class TenantAuthorizer(Protocol):
    async def can_manage_connections(self, actor_id: Optional[str], tenant_id: str) -> bool:
        ...


def parse_tenant_owners(value: str | None) -> Dict[str, Set[str]]:
    """Parse "tenant:actor,tenant:actor" into {tenant: {actors}}."""
    owners: Dict[str, Set[str]] = {}
    for entry in (value or "").split(","):
        tenant, sep, actor = entry.strip().partition(":")
        if not sep or not tenant.strip() or not actor.strip():
            continue
        owners.setdefault(tenant.strip(), set()).add(actor.strip())
    return owners


class StaticTenantAuthorizer:
    """Allowlist-backed authorizer.

    With an empty allowlist every actor the auth layer let through may manage
    any tenant's connections.
    """

    def __init__(self, owners: Dict[str, Set[str]] | None = None):
        self._owners = owners or {}

    @classmethod
    def from_settings(cls) -> "StaticTenantAuthorizer":
        return cls(parse_tenant_owners(settings.tenant_owners))

    async def can_manage_connections(self, actor_id: Optional[str], tenant_id: str) -> bool:
        if not self._owners:
            return True
        if not actor_id:
            return False
        return actor_id in self._owners.get(tenant_id, set())
