# app.py - builds the authorization service, wires store, cache and routers

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import get_debug_config, load_config
from adapters.grant_store import (
    CrossServerAssignmentError,
    GrantStoreError,
    InMemoryGrantStore,
    MemberNotFoundError,
    RoleNotFoundError,
)
from api.admin.roles import router as roles_router
from api.middleware.member import MemberContextMiddleware
from api.permissions import catalog_router, router as permissions_router
from core.authz import EffectiveCapabilityCache, InvalidPermissionRequest, PresetLoader
from core.metrics import get_all_metrics, get_authz_metrics

logger = logging.getLogger(__name__)


# ============================================================================
# Error Handlers
# ============================================================================

async def _invalid_request_handler(request: Request, exc: InvalidPermissionRequest):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": {"error": "invalid_request", "field": exc.field, "message": str(exc)}},
    )


async def _not_found_handler(request: Request, exc: GrantStoreError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": {"error": "not_found", "message": str(exc)}},
    )


async def _conflict_handler(request: Request, exc: GrantStoreError):
    error = "cross_server" if isinstance(exc, CrossServerAssignmentError) else "conflict"
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": {"error": error, "message": str(exc)}},
    )


# ============================================================================
# Application Factory
# ============================================================================

def create_app(
    store: Optional[InMemoryGrantStore] = None,
    cfg: Optional[Dict[str, Any]] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        store: Grant store to serve from; a fresh in-memory store by default
        cfg: Configuration dict as returned by load_config()

    Returns:
        Configured FastAPI app
    """
    cfg = cfg if cfg is not None else load_config()
    logging.basicConfig(level=cfg["LOG_LEVEL"])

    app = FastAPI(
        title="Server Authorization",
        version="1.0.0",
        description="Decides what a member may do inside a server, and why."
    )

    app.state.cfg = cfg
    app.state.store = store if store is not None else InMemoryGrantStore()
    app.state.presets = PresetLoader(cfg.get("AUTHZ_ROLE_PRESETS_PATH"))

    if cfg["AUTHZ_CACHE_ENABLED"]:
        cache = EffectiveCapabilityCache(
            ttl_seconds=cfg["AUTHZ_CACHE_TTL_SECONDS"],
            cleanup_interval=cfg["AUTHZ_CACHE_CLEANUP_INTERVAL_SECONDS"],
        )
        app.state.store.add_listener(cache.on_grant_change)
        app.state.cache = cache
    else:
        app.state.cache = None

    # CORS is permissive; restrict origins per deployment.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(MemberContextMiddleware, header_name=cfg["AUTHZ_MEMBER_HEADER"])

    app.add_exception_handler(InvalidPermissionRequest, _invalid_request_handler)
    app.add_exception_handler(MemberNotFoundError, _not_found_handler)
    app.add_exception_handler(RoleNotFoundError, _not_found_handler)
    app.add_exception_handler(GrantStoreError, _conflict_handler)

    app.include_router(permissions_router)
    app.include_router(catalog_router)
    app.include_router(roles_router)

    @app.get("/health")
    async def health():
        """Minimal liveness probe."""
        return {"status": "ok"}

    @app.get("/debug/metrics")
    async def debug_metrics():
        """Authorization counters, the cache state and the active config."""
        cache = app.state.cache
        return {
            "authz": get_authz_metrics(),
            "cache": cache.get_stats() if cache is not None else None,
            "config": get_debug_config(app.state.cfg),
            "uptime_seconds": get_all_metrics()["uptime_seconds"],
        }

    logger.info(
        f"Authorization service ready (cache={'on' if app.state.cache else 'off'}, "
        f"member header={cfg['AUTHZ_MEMBER_HEADER']})"
    )
    return app


app = create_app()
