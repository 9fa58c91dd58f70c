"""Per-application delivery context.

Opened once in the application lifespan and stored on ``app.state.context``;
views reach the store and resolver through it rather than module globals.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Union

from fastapi import FastAPI, Request

from apps.chunks.registry import ChunkRegistry
from apps.chunks.services import ChunkStore, LocalStorage
from apps.exceptions import RegistryUnavailable
from apps.manifest.services import ManifestResolver
from config.db import register_db
from config.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class DeliveryContext:
    resolver: ManifestResolver
    store: Optional[ChunkStore] = None

    def require_store(self) -> ChunkStore:
        if self.store is None:
            raise RegistryUnavailable('No registry database is configured')
        return self.store


@asynccontextmanager
async def open_context(app: FastAPI,
                       storage_root: Union[str, Path],
                       manifest_path: Union[str, Path],
                       manifest_root: Union[str, Path],
                       database_url: Optional[str]) -> AsyncIterator[DeliveryContext]:
    """Load the manifest and, when a database is configured, open the registry for the app's lifetime."""
    resolver = await ManifestResolver.load(manifest_path, manifest_root)

    if not database_url:
        logger.info("DATABASE_URL not set; serving manifest chunks only")
        yield DeliveryContext(resolver=resolver)
        return

    async with register_db(app, database_url):
        store = ChunkStore(ChunkRegistry(), LocalStorage(storage_root))
        yield DeliveryContext(resolver=resolver, store=store)
    logger.info("Registry database connections closed")


def get_context(request: Request) -> DeliveryContext:
    return request.app.state.context
