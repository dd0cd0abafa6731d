#!/usr/bin/env python3
"""
Coherence Sync API Server - FastAPI implementation.

Provides REST endpoints for:
- Access code assignment and recovery (the recovery channel)
- Progress document inspection
- Identity erasure
- Health

Usage:
    python3 -m coherence_sync serve --port 3850
    uvicorn api.server:app --port 3850
"""

import logging
import time
from typing import Iterable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from coherence_sync import __version__
from coherence_sync import config as cfg
from coherence_sync.auth import TokenMinter
from coherence_sync.errors import RecoveryCodeInvalid, RecoveryError, TransientStoreError
from coherence_sync.recovery import AccessCodeService
from storage import RemoteProgressStore, open_store

from .routes import admin, recovery

log = logging.getLogger("api.server")


def create_app(
    store: Optional[RemoteProgressStore] = None,
    minter: Optional[TokenMinter] = None,
    admin_uids: Optional[Iterable[str]] = None,
) -> FastAPI:
    """Build the app. Without a store, the configured backend opens on startup.

    `minter` signs recovery grants and verifies callers' bearer tokens.
    """
    app = FastAPI(
        title="Coherence Sync API",
        description="Recovery channel and progress administration",
        version=__version__,
    )
    app.state.store = store
    app.state.owns_store = store is None
    app.state.minter = minter or TokenMinter()
    app.state.admin_uids = frozenset(cfg.API_ADMIN_UIDS if admin_uids is None else admin_uids)
    app.state.codes = AccessCodeService(store, app.state.minter) if store is not None else None
    app.state.started_at = time.time()

    app.include_router(recovery.router)
    app.include_router(admin.router)

    @app.on_event("startup")
    async def startup():
        if app.state.store is None:
            app.state.store = open_store()
            await app.state.store.initialize()
            app.state.codes = AccessCodeService(app.state.store, app.state.minter)
        log.info(f"Coherence Sync API started with {type(app.state.store).__name__}")

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.owns_store and app.state.store is not None:
            await app.state.store.close()
        log.info("Coherence Sync API shutdown")

    @app.exception_handler(RecoveryCodeInvalid)
    async def invalid_code(request: Request, exc: RecoveryCodeInvalid):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(RecoveryError)
    async def recovery_failed(request: Request, exc: RecoveryError):
        log.error(f"Recovery failure on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(TransientStoreError)
    async def store_unavailable(request: Request, exc: TransientStoreError):
        log.error(f"Store failure on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Progress store unavailable"})

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "version": __version__,
            "store": type(app.state.store).__name__ if app.state.store else None,
            "uptime_s": round(time.time() - app.state.started_at, 1),
            "codes": app.state.codes.stats if app.state.codes else {},
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=cfg.API_HOST, port=cfg.API_PORT)
