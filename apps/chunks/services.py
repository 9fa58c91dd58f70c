import os
import stat
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Dict, List, Optional, Protocol, Tuple, Union

import aiofiles
import aiofiles.os

from apps.chunks.models import ChunkRecord
from apps.chunks.registry import RegistryInterface
from apps.chunks.validators import storage_path_for, validate_name
from apps.exceptions import (
    ChunkNotFound,
    CorruptedRecord,
    DuplicateName,
    NameAlreadyExists,
    OrphanedFile,
    PartialDelete,
    RegistryWriteFailed,
    StorageDeleteFailed,
    StorageReadFailed,
    StorageWriteFailed,
)
from config.logging_config import get_logger
from config.settings import STREAM_BLOCK_SIZE

logger = get_logger(__name__)

IN_FLIGHT_PREFIX = '.upload-'
IN_FLIGHT_SUFFIX = '.part'


class StorageInterface(Protocol):
    async def write_stream(self, relative: str, stream: AsyncIterable[bytes]) -> None:
        ...

    async def size(self, relative: str) -> int:
        ...

    async def open(self, relative: str):
        ...

    async def remove(self, relative: str) -> None:
        ...

    async def discard(self, path: Union[str, Path]) -> None:
        ...

    async def scan(self) -> Tuple[Dict[str, int], List[str]]:
        ...

    def path(self, relative: str) -> Path:
        ...


class LocalStorage:
    """Filesystem side of the chunk store.

    Uploads land in a hidden in-flight file and are published to their final
    path with a hard link, which fails instead of overwriting. A reader can
    only ever open a fully written file.
    """

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)
        os.makedirs(self.base_path, exist_ok=True)

    def path(self, relative: str) -> Path:
        return self.base_path / relative

    def _in_flight_path(self) -> Path:
        return self.base_path / f'{IN_FLIGHT_PREFIX}{uuid.uuid4().hex}{IN_FLIGHT_SUFFIX}'

    async def write_stream(self, relative: str, stream: AsyncIterable[bytes]) -> None:
        """Write ``stream`` to ``relative``.

        Raises FileExistsError if the path is already occupied. Whatever
        happens, the in-flight file is gone when this returns or raises.
        """
        temp = self._in_flight_path()
        try:
            async with aiofiles.open(temp, 'wb') as f:
                async for block in stream:
                    if block:
                        await f.write(block)
            await aiofiles.os.link(temp, self.path(relative))
        finally:
            await self.discard(temp)

    async def size(self, relative: str) -> int:
        return (await aiofiles.os.stat(self.path(relative))).st_size

    async def open(self, relative: str):
        return await aiofiles.open(self.path(relative), 'rb')

    async def remove(self, relative: str) -> None:
        await aiofiles.os.remove(self.path(relative))

    async def discard(self, path: Union[str, Path]) -> None:
        """Remove a file during rollback; failures are logged, not raised."""
        target = path if isinstance(path, Path) else self.path(path)
        try:
            await aiofiles.os.remove(target)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Could not remove %s during rollback: %s", target, e)

    async def scan(self) -> Tuple[Dict[str, int], List[str]]:
        """Regular files under the root: (published name -> size, in-flight names)."""
        published: Dict[str, int] = {}
        in_flight: List[str] = []
        for entry in await aiofiles.os.listdir(self.base_path):
            try:
                st = await aiofiles.os.stat(self.base_path / entry)
            except FileNotFoundError:
                continue
            if not stat.S_ISREG(st.st_mode):
                continue
            if entry.startswith(IN_FLIGHT_PREFIX) and entry.endswith(IN_FLIGHT_SUFFIX):
                in_flight.append(entry)
            else:
                published[entry] = st.st_size
        return published, sorted(in_flight)


class ChunkStream:
    """An open chunk: the registry record plus a handle on its bytes.

    The file is already open, so a concurrent delete cannot truncate what
    this stream yields.
    """

    def __init__(self, record: ChunkRecord, handle, block_size: int = STREAM_BLOCK_SIZE):
        self.record = record
        self._handle = handle
        self._block_size = block_size

    @property
    def closed(self) -> bool:
        return self._handle.closed

    @property
    def media_type(self) -> str:
        return self.record.content_type or 'application/octet-stream'

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            while True:
                block = await self._handle.read(self._block_size)
                if not block:
                    break
                yield block
        finally:
            await self.aclose()

    async def read(self) -> bytes:
        return b''.join([block async for block in self.iter_bytes()])

    async def aclose(self) -> None:
        if not self.closed:
            await self._handle.close()


@dataclass
class CorruptedEntry:
    name: str
    storage_path: str
    reason: str


@dataclass
class AuditReport:
    orphans: List[str] = field(default_factory=list)
    corrupted: List[CorruptedEntry] = field(default_factory=list)
    in_flight: List[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.orphans and not self.corrupted


async def _single_block(data: bytes) -> AsyncIterator[bytes]:
    yield data


class ChunkStore:
    """Keeps the registry and the filesystem in agreement.

    Upload: bytes first, then the registry row. Delete: registry row first,
    then the bytes. Either way the only inconsistency a failure can leave is
    an orphan file, never a live record without its bytes.
    """

    def __init__(self, registry: RegistryInterface, storage: StorageInterface,
                 block_size: int = STREAM_BLOCK_SIZE):
        self.registry = registry
        self.storage = storage
        self.block_size = block_size
        # uploads of each name currently in progress in this process
        self._pending: Dict[str, int] = {}

    async def put(self, name: str, stream: Union[bytes, AsyncIterable[bytes]],
                  content_type: Optional[str] = None) -> ChunkRecord:
        validate_name(name)
        storage_path = storage_path_for(name)
        if isinstance(stream, (bytes, bytearray)):
            stream = _single_block(bytes(stream))

        self._pending[name] = self._pending.get(name, 0) + 1
        try:
            return await self._put(name, storage_path, stream, content_type)
        finally:
            self._pending[name] -= 1
            if not self._pending[name]:
                del self._pending[name]

    async def _put(self, name: str, storage_path: str, stream: AsyncIterable[bytes],
                   content_type: Optional[str]) -> ChunkRecord:
        try:
            await self.storage.write_stream(storage_path, stream)
        except FileExistsError as e:
            await self._raise_occupied(name, storage_path, e)
        except OSError as e:
            logger.error("Write failed [name=%s]: %s", name, e)
            raise StorageWriteFailed(f"Could not write chunk '{name}': {e}") from e

        try:
            size = await self.storage.size(storage_path)
        except OSError as e:
            await self.storage.discard(storage_path)
            raise StorageWriteFailed(f"Could not measure chunk '{name}': {e}") from e

        try:
            record = await self.registry.insert(name, storage_path, size, content_type)
        except DuplicateName as e:
            # a live record exists whose file had vanished; keep no bytes of ours
            await self.storage.discard(storage_path)
            raise NameAlreadyExists(f"Chunk '{name}' already exists") from e
        except RegistryWriteFailed as e:
            logger.error(
                "Orphaned file left for reconciliation [name=%s path=%s]: %s",
                name, self.storage.path(storage_path), e,
            )
            raise RegistryWriteFailed(str(e), orphan_path=storage_path) from e

        logger.info("Stored chunk [id=%s name=%s size=%s]", record.id, name, size)
        return record

    async def _raise_occupied(self, name: str, storage_path: str, exc: FileExistsError) -> None:
        """The storage path is taken: by a live chunk, a concurrent upload, or an orphan."""
        if self._pending.get(name, 0) > 1 or await self.registry.find_by_name(name) is not None:
            raise NameAlreadyExists(f"Chunk '{name}' already exists") from exc
        logger.error(
            "Upload blocked by orphaned file [name=%s path=%s]",
            name, self.storage.path(storage_path),
        )
        raise OrphanedFile(
            f"Chunk '{name}' is not registered but its storage path holds an orphaned file",
            orphan_path=storage_path,
        ) from exc

    async def get(self, name: str) -> ChunkStream:
        validate_name(name)
        record = await self.registry.find_by_name(name)
        if record is None:
            raise ChunkNotFound(f"Chunk '{name}' not found")

        try:
            handle = await self.storage.open(record.storage_path)
        except FileNotFoundError as e:
            # a concurrent delete removes the row before the file
            if await self.registry.find_by_name(name) is None:
                raise ChunkNotFound(f"Chunk '{name}' not found") from e
            logger.error("Corrupted record, file missing [name=%s path=%s]", name, record.storage_path)
            raise CorruptedRecord(f"Chunk '{name}' is registered but its bytes are missing") from e
        except OSError as e:
            raise StorageReadFailed(f"Could not open chunk '{name}': {e}") from e

        actual = os.fstat(handle.fileno()).st_size
        if actual != record.size:
            await handle.close()
            logger.error(
                "Corrupted record, size mismatch [name=%s recorded=%s actual=%s]",
                name, record.size, actual,
            )
            raise CorruptedRecord(
                f"Chunk '{name}' is registered with {record.size} bytes but {actual} are stored"
            )
        return ChunkStream(record, handle, self.block_size)

    async def list(self) -> List[ChunkRecord]:
        return await self.registry.list_all()

    async def delete(self, name: str) -> None:
        validate_name(name)
        storage_path = storage_path_for(name)

        if not await self.registry.delete_by_name(name):
            raise ChunkNotFound(f"Chunk '{name}' not found")

        try:
            await self.storage.remove(storage_path)
        except OSError as e:
            cause = StorageDeleteFailed(f"Could not remove {storage_path}: {e}")
            logger.warning("Partial delete [name=%s]: %s", name, e)
            raise PartialDelete(
                f"Chunk '{name}' was unregistered but its file could not be removed: {e}", cause
            ) from e
        logger.info("Deleted chunk [name=%s]", name)

    async def audit(self) -> AuditReport:
        """Compare registry and filesystem without changing either."""
        records = await self.registry.list_all()
        published, in_flight = await self.storage.scan()

        registered = {record.storage_path for record in records}
        report = AuditReport(
            orphans=sorted(path for path in published if path not in registered),
            in_flight=in_flight,
        )
        for record in records:
            actual = published.get(record.storage_path)
            if actual is None:
                report.corrupted.append(CorruptedEntry(record.name, record.storage_path, 'missing'))
            elif actual != record.size:
                report.corrupted.append(CorruptedEntry(
                    record.name, record.storage_path,
                    f'size mismatch: recorded {record.size}, stored {actual}',
                ))
        if not report.consistent:
            logger.warning(
                "Audit found %d orphan(s) and %d corrupted record(s)",
                len(report.orphans), len(report.corrupted),
            )
        return report
