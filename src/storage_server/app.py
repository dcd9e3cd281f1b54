"""FastAPI application for storage-server."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

import httpx
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from storage_server import __version__
from storage_server.clock import Clock, now_ms
from storage_server.config import Settings
from storage_server.config import settings as default_settings
from storage_server.db import create_engine, create_session_factory, init_db
from storage_server.errors import StorageError, UnauthorizedError
from storage_server.locks import KeyedLocks
from storage_server.logging_setup import configure_logging
from storage_server.models import CompressionAlgorithm
from storage_server.ratelimit import FixedWindowRateLimiter, resolve_client_id
from storage_server.schemas import IngestRequest
from storage_server.services import IngestService, RetentionSweeper, RetrievalService
from storage_server.store import ContentStore

logger = logging.getLogger(__name__)

# Never rate limited
EXEMPT_PATHS = frozenset({"/ping", "/health"})

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Surrogate-Control": "no-store",
}


def create_app(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    clock: Clock = now_ms,
    configure_logs: bool = True,
) -> FastAPI:
    """Build the app and its services.

    Services are wired eagerly so they are usable before startup; the
    lifespan only does I/O (schema, storage directory, background sweeps).
    """
    settings = settings or default_settings
    engine = engine or create_engine(settings.database_url, echo=settings.database_echo)
    session_factory = create_session_factory(engine)
    store = ContentStore(settings.storage_path)
    locks = KeyedLocks()
    rate_limiter = (
        FixedWindowRateLimiter(settings.rate_limit, settings.rate_limit_window_seconds)
        if settings.rate_limit
        else None
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan handler."""
        if configure_logs:
            configure_logging(settings.log_level, settings.log_file)
        if not settings.token:
            logger.warning(
                "The server is running without a token. "
                "Set TOKEN to keep strangers from reading and writing files"
            )
        store.ensure_root()
        await init_db(engine)
        async with httpx.AsyncClient(
            follow_redirects=True, timeout=settings.fetch_timeout_seconds
        ) as http_client:
            app.state.ingest = IngestService(
                session_factory, store, settings,
                clock=clock, locks=locks, http_client=http_client,
            )
            if settings.sweeper_enabled:
                app.state.sweeper.start()
            logger.info("Server is now running on %s:%d", settings.host, settings.port)
            try:
                yield
            finally:
                await app.state.sweeper.stop()
        await engine.dispose()

    app = FastAPI(
        title="storage-server",
        description="Single-tenant blob storage with dedup, compression and retention",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.rate_limiter = rate_limiter
    app.state.ingest = IngestService(session_factory, store, settings, clock=clock, locks=locks)
    app.state.retrieval = RetrievalService(
        session_factory, store, settings, clock=clock, locks=locks
    )
    app.state.sweeper = RetentionSweeper(
        session_factory, store, settings,
        clock=clock, locks=locks, rate_limiter=rate_limiter,
    )

    _install_error_handlers(app)
    if rate_limiter is not None:
        _install_rate_limit(app, rate_limiter)
    _install_routes(app)
    return app


# ── Cross-cutting ────────────────────────────────────────────────────────────


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError) -> JSONResponse:
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if errors:
            field = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
            cause = f"{field}: {errors[0].get('msg')}" if field else str(errors[0].get("msg"))
        else:
            cause = "Invalid request"
        return JSONResponse(
            {"success": False, "kind": "validation", "cause": cause}, status_code=400
        )

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            {"success": False, "kind": "internal", "cause": "Internal Server Error"},
            status_code=500,
        )


def _install_rate_limit(app: FastAPI, limiter: FixedWindowRateLimiter) -> None:
    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)
        peer = request.client.host if request.client else None
        if not limiter.hit(resolve_client_id(request.headers, peer)):
            return JSONResponse(
                {
                    "success": False,
                    "kind": "rate_limited",
                    "cause": "Temporarily rate limited, please try again later.",
                },
                status_code=429,
            )
        return await call_next(request)


async def require_token(request: Request) -> None:
    """Bearer token check; a no-op when no token is configured."""
    token = request.app.state.settings.token
    if not token:
        return
    supplied = request.headers.get("authorization", "")
    if not hmac.compare_digest(supplied.encode(), f"Bearer {token}".encode()):
        raise UnauthorizedError()


def get_ingest(request: Request) -> IngestService:
    return request.app.state.ingest


def get_retrieval(request: Request) -> RetrievalService:
    return request.app.state.retrieval


Ingest = Annotated[IngestService, Depends(get_ingest)]
Retrieval = Annotated[RetrievalService, Depends(get_retrieval)]
Key = Annotated[str | None, Query(description="Decryption key for encrypted files")]


# ── Routes ───────────────────────────────────────────────────────────────────


def _install_routes(app: FastAPI) -> None:
    authed = [Depends(require_token)]

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "version": __version__}

    @app.get("/ping", dependencies=authed)
    async def ping() -> JSONResponse:
        return JSONResponse({"success": True, "timestamp": now_ms()}, headers=NO_CACHE_HEADERS)

    @app.post("/upload", dependencies=authed)
    async def upload(body: IngestRequest, ingest: Ingest) -> dict[str, Any]:
        result = await ingest.ingest(body)
        response: dict[str, Any] = {
            "success": True,
            "uuid": result.id,
            "hash": result.content_hash,
            "size": result.size,
            "expires": result.expires_at,
            "timestamp": result.created_at,
        }
        if result.encryption_key:
            response["key"] = result.encryption_key
        if result.deduplicated:
            response["message"] = "This file already exists!"
        return response

    @app.get("/file/{object_id}", dependencies=authed)
    async def download(object_id: str, retrieval: Retrieval, key: Key = None) -> StreamingResponse:
        blob = await retrieval.open_read(object_id, key)
        headers = {"Cache-Control": blob.cache_control}
        return StreamingResponse(
            blob.chunks(), media_type="application/octet-stream", headers=headers
        )

    @app.delete("/file/{object_id}", dependencies=authed)
    async def delete(object_id: str, retrieval: Retrieval) -> dict[str, Any]:
        return {"success": True, "uuid": await retrieval.delete(object_id)}

    @app.get("/info", dependencies=authed)
    async def server_info(retrieval: Retrieval) -> dict[str, Any]:
        info = await retrieval.aggregate()
        return {
            "success": True,
            "name": info.name,
            "version": info.version,
            "start": info.started_at,
            "count": info.object_count,
            "size": info.total_size_bytes,
            "maxUploadSize": info.max_upload_bytes,
            "maxSize": info.max_storage_bytes,
        }

    @app.get("/info/{object_id}", dependencies=authed)
    async def file_info(object_id: str, retrieval: Retrieval, key: Key = None) -> dict[str, Any]:
        info = await retrieval.inspect(object_id, key)
        return {
            "success": True,
            "uuid": info.id,
            "hash": info.content_hash,
            "compressedHash": info.stored_hash,
            "compression": (
                None
                if info.compression_algorithm is CompressionAlgorithm.NONE
                else info.compression_algorithm.value
            ),
            "encrypted": info.encrypted,
            "size": info.size,
            "expires": info.expires_at,
            "accessed": info.last_accessed_at,
            "timestamp": info.created_at,
        }


app = create_app()
