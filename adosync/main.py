"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from adosync.api import connections, mappings, sync
from adosync.config import settings
from adosync.models.base import SessionLocal, init_db
from adosync.scheduler import scheduler
from adosync.security import BasicAuthMiddleware, StaticTenantAuthorizer
from adosync.services.ado_client import AdoClient
from adosync.services.credential_vault import CredentialVault
from adosync.services.sync_service import SyncService
from adosync.services.token_cipher import TokenCipher

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup; a missing or malformed key stops the service here.
    logger.info("Starting Azure DevOps Sync Service")
    cipher = TokenCipher.from_settings()
    await init_db()

    vault = CredentialVault(SessionLocal, cipher)
    client = AdoClient(vault, SessionLocal)
    sync_service = SyncService(SessionLocal, client)
    app.state.vault = vault
    app.state.ado_client = client
    app.state.sync_service = sync_service
    app.state.authorizer = StaticTenantAuthorizer.from_settings()

    scheduler.start(sync_service)
    yield
    # Shutdown
    logger.info("Stopping Azure DevOps Sync Service")
    scheduler.stop()
    await client.close()
    await vault.close()


app = FastAPI(
    title="Azure DevOps Sync Service",
    description="Synchronize workstreams, risks and actions with Azure DevOps work items",
    version="1.0.0",
    lifespan=lifespan,
)

# Optional built-in auth (recommended if exposed beyond localhost/private networks)
if settings.auth_enabled:
    if not settings.auth_username or not settings.auth_password:
        raise RuntimeError("AUTH_ENABLED=true requires AUTH_USERNAME and AUTH_PASSWORD to be set")
    app.add_middleware(
        BasicAuthMiddleware,
        username=settings.auth_username,
        password=settings.auth_password,
        allow_paths={"/health", "/api/ado/callback"},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies/params are client errors (400)"""
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# Include API routers
app.include_router(connections.router)
app.include_router(mappings.router)
app.include_router(sync.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "Azure DevOps Sync"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "adosync.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
