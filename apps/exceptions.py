"""Error types shared by the chunk store, registry and manifest resolver.

Each error carries the HTTP status and machine-readable code it is rendered
with at the boundary (see main.chunk_server_error_handler).
"""
from typing import Optional


class ChunkServerError(Exception):
    """Base class for every error the service reports to callers."""
    status_code = 500
    code = 'INTERNAL_ERROR'


class InvalidName(ChunkServerError):
    """Name is empty, reserved, or would escape the store root."""
    status_code = 400
    code = 'INVALID_NAME'


class NameAlreadyExists(ChunkServerError):
    status_code = 409
    code = 'NAME_ALREADY_EXISTS'


class ChunkNotFound(ChunkServerError):
    status_code = 404
    code = 'NOT_FOUND'


class CorruptedRecord(ChunkServerError):
    """A live registry record whose bytes are missing or have the wrong length."""
    status_code = 500
    code = 'CORRUPTED_RECORD'


class StorageWriteFailed(ChunkServerError):
    code = 'STORAGE_WRITE_FAILED'


class StorageReadFailed(ChunkServerError):
    code = 'STORAGE_READ_FAILED'


class StorageDeleteFailed(ChunkServerError):
    code = 'STORAGE_DELETE_FAILED'


class DuplicateName(ChunkServerError):
    """
    Raised by the registry when the unique constraint on name rejects an insert.

    The chunk store translates it to NameAlreadyExists after cleaning up.
    """
    status_code = 409
    code = 'NAME_ALREADY_EXISTS'


class RegistryWriteFailed(ChunkServerError):
    """
    The registry could not persist a change.

    When raised by an upload after the bytes were written, ``orphan_path``
    names the file left behind for operator reconciliation.
    """
    code = 'REGISTRY_WRITE_FAILED'

    def __init__(self, message: str, orphan_path: Optional[str] = None):
        super().__init__(message)
        self.orphan_path = orphan_path


class OrphanedFile(ChunkServerError):
    """
    The storage path of a name with no live record is occupied by a file.

    Left by an earlier upload whose registry write failed, or a delete that
    could not remove its file. Needs operator reconciliation before the name
    can be uploaded again.
    """
    code = 'ORPHANED_FILE'

    def __init__(self, message: str, orphan_path: str):
        super().__init__(message)
        self.orphan_path = orphan_path


class RegistryReadFailed(ChunkServerError):
    status_code = 503
    code = 'REGISTRY_READ_FAILED'


class RegistryUnavailable(ChunkServerError):
    """No registry is configured (manifest-only mode)."""
    status_code = 503
    code = 'REGISTRY_UNAVAILABLE'


class PartialDelete(ChunkServerError):
    """The registry row was removed but the file could not be."""
    code = 'PARTIAL_DELETE'

    def __init__(self, message: str, cause: StorageDeleteFailed):
        super().__init__(message)
        self.cause = cause


class ManifestEntryNotFound(ChunkServerError):
    status_code = 404
    code = 'NOT_FOUND'


class ManifestFileMissing(ChunkServerError):
    """A manifest entry points at a file that is absent or outside the manifest root."""
    code = 'MANIFEST_FILE_MISSING'
