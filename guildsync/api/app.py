"""
guildsync API — FastAPI endpoints for the web frontend.

Exposes the synchronization service for:
- Reading and patching a guild's configuration
- Full replacement and tombstone deletion
- Guild discovery and language listing (compatible with the existing frontend)
- Schema inspection and bulk migration
- Notification delivery status
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from guildsync.errors import (
    ConfigDeletedError,
    ConfigNotFoundError,
    ConfigValidationError,
    ConflictError,
    InvalidKeyError,
    LockTimeoutError,
    MigrationError,
    StoreIOError,
)
from guildsync.models.settings import ServiceSettings
from guildsync.service.sync_service import SynchronizationService
from guildsync.util.logger import configure_logging


# --- Request Models ---

class ConfigPatchRequest(BaseModel):
    expected_version: Optional[int] = Field(default=None, ge=0)
    patch: Dict[str, Any] = {}


class ConfigReplaceRequest(BaseModel):
    expected_version: Optional[int] = Field(default=None, ge=0)
    payload: Dict[str, Any]


# --- Error Translation ---

def _register_error_handlers(app: FastAPI) -> None:
    """Map service errors to responses without losing their detail."""

    @app.exception_handler(InvalidKeyError)
    async def invalid_key(request: Request, exc: InvalidKeyError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ConfigNotFoundError)
    async def not_found(request: Request, exc: ConfigNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc), "key": exc.key})

    @app.exception_handler(ConfigValidationError)
    async def invalid_payload(request: Request, exc: ConfigValidationError):
        return JSONResponse(
            status_code=422,
            content={"detail": {"field": exc.field, "reason": exc.reason}},
        )

    @app.exception_handler(ConflictError)
    async def conflict(request: Request, exc: ConflictError):
        return JSONResponse(
            status_code=409,
            content={
                "detail": {
                    "key": exc.key,
                    "expected_version": exc.expected,
                    "actual_version": exc.actual,
                }
            },
        )

    @app.exception_handler(ConfigDeletedError)
    async def deleted(request: Request, exc: ConfigDeletedError):
        return JSONResponse(
            status_code=410,
            content={"detail": {"key": exc.key, "deleted_at_version": exc.version}},
        )

    @app.exception_handler(MigrationError)
    async def migration_failed(request: Request, exc: MigrationError):
        return JSONResponse(
            status_code=500,
            content={
                "detail": {
                    "from_version": exc.from_version,
                    "to_version": exc.to_version,
                    "missing_field": exc.missing_field,
                }
            },
        )

    @app.exception_handler(StoreIOError)
    async def storage_unavailable(request: Request, exc: StoreIOError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(LockTimeoutError)
    async def lock_timeout(request: Request, exc: LockTimeoutError):
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc)},
            headers={"Retry-After": "1"},
        )


# --- Application Factory ---

def create_app(
    service: Optional[SynchronizationService] = None,
    settings: Optional[ServiceSettings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or (service.settings if service else ServiceSettings.from_env())
    configure_logging(settings.log_level)
    svc = service or SynchronizationService(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc.start()
        try:
            yield
        finally:
            svc.stop()

    app = FastAPI(
        title="guildsync API",
        description="Guild configuration synchronization between the web frontend and the bot",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = svc
    _register_error_handlers(app)

    # === CONFIGURATION ===

    @app.get("/config/{key}")
    def get_config(key: str):
        """Current configuration document."""
        return svc.get_config(key).model_dump(mode="json")

    @app.patch("/config/{key}")
    def patch_config(key: str, req: ConfigPatchRequest):
        """Merge a partial update; creates the document on first write."""
        document = svc.update_config(key, req.patch, expected_version=req.expected_version)
        return document.model_dump(mode="json")

    @app.put("/config/{key}")
    def replace_config(key: str, req: ConfigReplaceRequest):
        """Replace the whole payload of an existing configuration."""
        document = svc.replace_config(key, req.payload, expected_version=req.expected_version)
        return document.model_dump(mode="json")

    @app.delete("/config/{key}")
    def delete_config(key: str, expected_version: Optional[int] = None):
        """Tombstone a configuration. Version history is kept."""
        document = svc.delete_config(key, expected_version=expected_version)
        return document.model_dump(mode="json")

    # === GUILDS ===

    @app.get("/servers")
    def list_servers():
        """IDs of guilds with a configuration."""
        return svc.list_keys()

    @app.get("/servers/{key}")
    def server_exists(key: str):
        """Whether this guild has a configuration."""
        return svc.exists(key)

    # === SCHEMA ===

    @app.get("/langs")
    def available_langs():
        """Languages the bot accepts."""
        return svc.available_languages()

    @app.get("/reload")
    def reload_langs():
        """Kept for older frontends; languages are read from the schema."""
        return True

    @app.get("/schema")
    def schema_info():
        """Current schema version and defaults for new guilds."""
        return svc.schema_info()

    @app.post("/admin/migrate")
    def migrate_all():
        """Rewrite every stored configuration at the current schema version."""
        return svc.migrate_all()

    # === NOTIFICATIONS ===

    @app.get("/notifications/status")
    def notification_status():
        """Queue depth, delivery counts and recent failures."""
        return svc.notification_status()

    return app


# Default application instance
app = create_app()
