"""Durable metadata registry for chunks, backed by Tortoise ORM.

Uniqueness of ``name`` is enforced by the table's unique constraint, never by
a prior existence check: two concurrent inserts of the same name race inside
the database and exactly one wins.
"""
from typing import List, Optional, Protocol

from tortoise.exceptions import BaseORMException, IntegrityError

from apps.chunks.models import ChunkRecord
from apps.exceptions import DuplicateName, RegistryReadFailed, RegistryWriteFailed
from config.logging_config import get_logger

logger = get_logger(__name__)


class RegistryInterface(Protocol):
    async def insert(self, name: str, storage_path: str, size: int,
                     content_type: Optional[str]) -> ChunkRecord:
        ...

    async def find_by_name(self, name: str) -> Optional[ChunkRecord]:
        ...

    async def list_all(self) -> List[ChunkRecord]:
        ...

    async def delete_by_name(self, name: str) -> bool:
        ...


class ChunkRegistry:
    """Registry over the ``chunks`` table.

    Each call borrows a pooled connection for the duration of one statement;
    nothing here is held across filesystem work.
    """

    async def insert(self, name: str, storage_path: str, size: int,
                     content_type: Optional[str] = None) -> ChunkRecord:
        try:
            record = await ChunkRecord.create(
                name=name,
                storage_path=storage_path,
                size=size,
                content_type=content_type,
            )
        except IntegrityError as e:
            logger.info("Registry rejected duplicate name [name=%s]", name)
            raise DuplicateName(f"Chunk '{name}' already exists") from e
        except (BaseORMException, OSError) as e:
            logger.error("Registry insert failed [name=%s]: %s", name, e)
            raise RegistryWriteFailed(f"Could not record chunk '{name}': {e}") from e
        logger.debug("Registered chunk [id=%s name=%s size=%s]", record.id, name, size)
        return record

    async def find_by_name(self, name: str) -> Optional[ChunkRecord]:
        try:
            return await ChunkRecord.filter(name=name).first()
        except (BaseORMException, OSError) as e:
            logger.error("Registry lookup failed [name=%s]: %s", name, e)
            raise RegistryReadFailed(f"Could not look up chunk '{name}': {e}") from e

    async def list_all(self) -> List[ChunkRecord]:
        """All live records, newest first; equal timestamps fall back to ascending id."""
        try:
            return await ChunkRecord.all().order_by('-created_at', 'id')
        except (BaseORMException, OSError) as e:
            logger.error("Registry listing failed: %s", e)
            raise RegistryReadFailed(f"Could not list chunks: {e}") from e

    async def delete_by_name(self, name: str) -> bool:
        try:
            deleted = await ChunkRecord.filter(name=name).delete()
        except (BaseORMException, OSError) as e:
            logger.error("Registry delete failed [name=%s]: %s", name, e)
            raise RegistryWriteFailed(f"Could not remove chunk '{name}': {e}") from e
        return deleted > 0
