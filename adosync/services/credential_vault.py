"""OAuth credential lifecycle for Azure DevOps connections.

Builds the authorization URL, exchanges the callback assertion for tokens,
stores them encrypted, and hands out access tokens that are guaranteed to be
valid for at least the refresh margin.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import secrets
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import aiohttp
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adosync.config import settings
from adosync.errors import (
    ConfigurationError,
    ConnectionNotFoundError,
    OAuthExchangeError,
    OAuthRefreshError,
    RefreshUnavailableError,
    ValidationError,
)
from adosync.models import AdoConnection
from adosync.models.base import utcnow
from adosync.services.token_cipher import TokenCipher

logger = logging.getLogger(__name__)

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
REFRESH_GRANT = "refresh_token"


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


@dataclass(frozen=True)
class OAuthState:
    """Context carried through the OAuth round trip in the `state` parameter."""
    tenant_id: str
    organization_url: str
    project_name: str
    actor_id: Optional[str] = None


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii")


class CredentialVault:
    """Encrypted token storage plus the OAuth code/refresh grants"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: TokenCipher,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        authorize_url: Optional[str] = None,
        token_url: Optional[str] = None,
        scope: Optional[str] = None,
        refresh_margin_seconds: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self.client_id = client_id if client_id is not None else settings.ado_client_id
        self.client_secret = client_secret if client_secret is not None else settings.ado_client_secret
        self.redirect_uri = redirect_uri or settings.redirect_uri
        self.authorize_url = authorize_url or settings.ado_authorize_url
        self.token_url = token_url or settings.ado_token_url
        self.scope = scope or settings.ado_scope
        margin = (
            refresh_margin_seconds
            if refresh_margin_seconds is not None
            else settings.token_refresh_margin_seconds
        )
        self.refresh_margin = timedelta(seconds=margin)

        self._http: Optional[aiohttp.ClientSession] = None
        # One refresh in flight per connection.
        self._refresh_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def cipher(self) -> TokenCipher:
        return self._cipher

    # ------------------------------------------------------------------
    # Authorization URL / state
    # ------------------------------------------------------------------

    def encode_state(self, state: OAuthState) -> str:
        payload = {
            "tenant_id": state.tenant_id,
            "organization_url": state.organization_url,
            "project_name": state.project_name,
            "actor_id": state.actor_id,
            "nonce": secrets.token_hex(8),
        }
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return f"{_b64(raw)}.{self._cipher.sign(raw)}"

    def decode_state(self, value: str) -> OAuthState:
        """Verify and decode a `state` value produced by `encode_state`."""
        encoded, sep, signature = (value or "").partition(".")
        if not sep:
            raise ValidationError("Invalid OAuth state")
        try:
            raw = base64.urlsafe_b64decode(encoded.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError) as e:
            raise ValidationError("Invalid OAuth state") from e
        if not self._cipher.verify(raw, signature):
            raise ValidationError("OAuth state signature mismatch")
        try:
            data = json.loads(raw.decode("utf-8"))
            return OAuthState(
                tenant_id=str(data["tenant_id"]),
                organization_url=str(data["organization_url"]),
                project_name=str(data["project_name"]),
                actor_id=data.get("actor_id"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ValidationError("Invalid OAuth state payload") from e

    def build_authorization_url(
        self,
        organization_url: str,
        project_name: str,
        tenant_id: str,
        actor_id: Optional[str] = None,
    ) -> str:
        if not self.client_id:
            raise ConfigurationError("ADO_CLIENT_ID is not set")
        state = self.encode_state(
            OAuthState(
                tenant_id=tenant_id,
                organization_url=organization_url,
                project_name=project_name,
                actor_id=actor_id,
            )
        )
        params = {
            "client_id": self.client_id,
            "response_type": "Assertion",
            "scope": self.scope,
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def _ensure_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))
        return self._http

    async def close(self):
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def _post_token_form(self, form: Dict[str, str]) -> Tuple[int, str]:
        """POST a form-encoded grant to the token endpoint; returns (status, body)."""
        http = await self._ensure_http()
        async with http.post(
            self.token_url,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        ) as response:
            return response.status, await response.text()

    def _require_client_credentials(self):
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("Azure DevOps OAuth credentials not configured")

    @staticmethod
    def _parse_grant(body: str) -> Optional[TokenGrant]:
        try:
            data: Dict[str, Any] = json.loads(body)
        except ValueError:
            return None
        if not isinstance(data, dict) or not data.get("access_token"):
            return None
        expires_in = data.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in not in (None, "") else None
        except (TypeError, ValueError):
            expires_in = None
        return TokenGrant(
            access_token=str(data["access_token"]),
            refresh_token=data.get("refresh_token") or None,
            expires_in=expires_in,
        )

    async def exchange_code_for_token(self, code: str, state: Optional[str] = None) -> TokenGrant:
        """Exchange the callback assertion for tokens (JWT-bearer grant)."""
        self._require_client_credentials()
        status, body = await self._post_token_form(
            {
                "client_assertion_type": CLIENT_ASSERTION_TYPE,
                "client_assertion": self.client_secret,
                "grant_type": JWT_BEARER_GRANT,
                "assertion": code,
                "redirect_uri": self.redirect_uri,
            }
        )
        if not 200 <= status < 300:
            raise OAuthExchangeError("Failed to exchange code for token", status, body)
        grant = self._parse_grant(body)
        if grant is None:
            raise OAuthExchangeError("Token response did not include an access token", status, "")
        return grant

    # ------------------------------------------------------------------
    # Stored connections
    # ------------------------------------------------------------------

    @staticmethod
    def _expires_at(grant: TokenGrant) -> Optional[datetime]:
        if grant.expires_in is None:
            return None
        return utcnow() + timedelta(seconds=grant.expires_in)

    async def store_connection(
        self,
        tenant_id: str,
        organization_url: str,
        project_name: str,
        grant: TokenGrant,
        created_by: Optional[str] = None,
    ) -> AdoConnection:
        """Persist a freshly authorized connection with its tokens encrypted."""
        connection = AdoConnection(
            tenant_id=tenant_id,
            organization_url=organization_url.rstrip("/"),
            project_name=project_name,
            access_token_encrypted=self._cipher.encrypt(grant.access_token),
            refresh_token_encrypted=(
                self._cipher.encrypt(grant.refresh_token) if grant.refresh_token else None
            ),
            token_expires_at=self._expires_at(grant),
            created_by=created_by,
        )
        async with self._session_factory() as db:
            db.add(connection)
            await db.commit()
            await db.refresh(connection)
        logger.info(
            f"Stored Azure DevOps connection {connection.id} for tenant {tenant_id} "
            f"({connection.organization_url}/{project_name})"
        )
        return connection

    @staticmethod
    async def _load_connection(db: AsyncSession, connection_id: int) -> AdoConnection:
        result = await db.execute(select(AdoConnection).where(AdoConnection.id == connection_id))
        connection = result.scalar_one_or_none()
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    def _needs_refresh(self, expires_at: Optional[datetime]) -> bool:
        # No recorded expiry: the token is treated as long-lived.
        if expires_at is None:
            return False
        return expires_at < utcnow() + self.refresh_margin

    async def get_access_token(self, connection_id: int) -> str:
        """Return a decrypted access token, refreshing it first if it is about to expire."""
        async with self._session_factory() as db:
            connection = await self._load_connection(db, connection_id)
            if not self._needs_refresh(connection.token_expires_at):
                return self._cipher.decrypt(connection.access_token_encrypted)

        async with self._refresh_locks[connection_id]:
            # Another caller may have refreshed while we waited for the lock.
            async with self._session_factory() as db:
                connection = await self._load_connection(db, connection_id)
                if not self._needs_refresh(connection.token_expires_at):
                    return self._cipher.decrypt(connection.access_token_encrypted)
            logger.info(f"Access token for connection {connection_id} expires soon; refreshing")
            return await self._refresh_locked(connection_id)

    async def refresh_access_token(self, connection_id: int) -> str:
        """Exchange the stored refresh token for a new access token and persist it."""
        async with self._refresh_locks[connection_id]:
            return await self._refresh_locked(connection_id)

    async def _refresh_locked(self, connection_id: int) -> str:
        async with self._session_factory() as db:
            connection = await self._load_connection(db, connection_id)
            if not connection.refresh_token_encrypted:
                raise RefreshUnavailableError(
                    f"No refresh token available for connection {connection_id}; reconnect required"
                )
            refresh_token = self._cipher.decrypt(connection.refresh_token_encrypted)
            self._require_client_credentials()

            status, body = await self._post_token_form(
                {
                    "client_assertion_type": CLIENT_ASSERTION_TYPE,
                    "client_assertion": self.client_secret,
                    "grant_type": REFRESH_GRANT,
                    "assertion": refresh_token,
                    "redirect_uri": self.redirect_uri,
                }
            )
            if not 200 <= status < 300:
                logger.error(f"Token refresh rejected for connection {connection_id} (HTTP {status})")
                raise OAuthRefreshError("Failed to refresh token", status, body)
            grant = self._parse_grant(body)
            if grant is None:
                raise OAuthRefreshError("Refresh response did not include an access token", status, "")

            connection.access_token_encrypted = self._cipher.encrypt(grant.access_token)
            # Azure DevOps rotates refresh tokens; the old one stops working.
            if grant.refresh_token:
                connection.refresh_token_encrypted = self._cipher.encrypt(grant.refresh_token)
            connection.token_expires_at = self._expires_at(grant)
            connection.updated_at = utcnow()
            await db.commit()

        logger.info(f"Refreshed access token for connection {connection_id}")
        return grant.access_token
