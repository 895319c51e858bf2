"""Application configuration"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite+aiosqlite:///./adosync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Azure DevOps OAuth app registration
    ado_client_id: str | None = None
    ado_client_secret: str | None = None
    # Defaults to <base_url>/api/ado/callback when unset.
    ado_redirect_uri: str | None = None
    base_url: str = "http://localhost:8000"
    ado_authorize_url: str = "https://app.vssps.visualstudio.com/oauth2/authorize"
    ado_token_url: str = "https://app.vssps.visualstudio.com/oauth2/token"
    ado_scope: str = "vso.work_write vso.work_read"
    ado_api_version: str = "7.1"
    # The work items endpoint accepts at most 200 ids per call.
    ado_batch_size: int = 200

    # 32-byte key as 64 hex chars. Required: tokens at rest are unreadable without it.
    ado_token_encryption_key: str | None = None
    # Refresh access tokens that expire within this many seconds.
    token_refresh_margin_seconds: int = 300

    # Sync
    # Interval for scheduled incremental syncs of every connection. 0 disables the scheduler.
    sync_interval_minutes: int = 0

    # Where the OAuth callback sends the browser once a connection is stored.
    integrations_page_url: str = "/admin/integrations"

    # Comma-separated "tenant_id:actor_id" pairs allowed to manage connections.
    # If empty/omitted, any authenticated actor may manage any tenant's connections.
    #
    # Example: "program-1:alice,program-1:bob,program-2:carol"
    tenant_owners: str | None = None

    # Logging
    log_level: str = "INFO"

    # Auth (optional)
    # When enabled, all routes are protected by HTTP Basic auth, except for /health
    # and the OAuth callback (the tracker redirects the browser there).
    auth_enabled: bool = False
    auth_username: str | None = None
    auth_password: str | None = None

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def redirect_uri(self) -> str:
        return self.ado_redirect_uri or f"{self.base_url.rstrip('/')}/api/ado/callback"


settings = Settings()
