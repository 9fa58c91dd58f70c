"""Entry point for the chunk server."""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, Union

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apps.chunks.routers import router as chunks_router
from apps.context import open_context
from apps.exceptions import ChunkServerError, PartialDelete
from apps.manifest.routers import router as manifest_router
from config import settings
from config.logging_config import setup_logging
from config.middleware import RequestContextMiddleware

logger = setup_logging('chunk_server', settings.LOG_LEVEL)


async def chunk_server_error_handler(request: Request, exc: ChunkServerError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    content = {'detail': str(exc), 'code': exc.code}
    orphan_path = getattr(exc, 'orphan_path', None)
    if orphan_path:
        content['orphan_path'] = orphan_path
    if isinstance(exc, PartialDelete):
        content['cause'] = {'detail': str(exc.cause), 'code': exc.cause.code}

    log = logger.error if exc.status_code >= 500 else logger.warning
    log("%s: %s [request_id=%s] path=%s", type(exc).__name__, exc, request_id, request.url.path)
    return JSONResponse(status_code=exc.status_code, content=content)


def create_app(storage_root: Union[str, Path, None] = None,
               manifest_path: Union[str, Path, None] = None,
               manifest_root: Union[str, Path, None] = None,
               database_url: Optional[str] = None) -> FastAPI:
    """Build the application; arguments left as None fall back to config.settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with open_context(
            app,
            storage_root=storage_root or settings.CHUNK_STORAGE_ROOT,
            manifest_path=manifest_path or settings.MANIFEST_PATH,
            manifest_root=manifest_root or settings.MANIFEST_ROOT,
            database_url=database_url or settings.DATABASE_URL,
        ) as context:
            app.state.context = context
            logger.info("Chunk server ready")
            yield
        logger.info("Chunk server shut down")

    app = FastAPI(
        title="Chunk Server",
        description="Named chunk uploads with a durable registry, plus manifest-resolved immutable chunks",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(ChunkServerError, chunk_server_error_handler)
    app.include_router(manifest_router)
    app.include_router(chunks_router)
    return app


app = create_app()


if __name__ == "__main__":
    logger.info("Chunk server running on http://localhost:%s", settings.PORT)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
