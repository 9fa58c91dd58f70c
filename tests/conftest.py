import json
import os

import pytest
import pytest_asyncio

# Keep the import-time settings away from any developer environment
os.environ.pop('DATABASE_URL', None)
os.environ.setdefault('LOG_LEVEL', 'DEBUG')

from fastapi.testclient import TestClient  # noqa: E402

from apps.chunks.registry import ChunkRegistry  # noqa: E402
from apps.chunks.services import ChunkStore, LocalStorage  # noqa: E402
from config.db import close_db, init_db  # noqa: E402
from main import create_app  # noqa: E402


@pytest_asyncio.fixture
async def registry_db():
    """Fresh in-memory registry database per test."""
    await init_db('sqlite://:memory:')
    yield
    await close_db()


@pytest.fixture
def storage_root(tmp_path):
    return tmp_path / 'storage'


@pytest_asyncio.fixture
async def store(registry_db, storage_root):
    return ChunkStore(ChunkRegistry(), LocalStorage(storage_root))


@pytest.fixture
def manifest_setup(tmp_path):
    """A manifest with one live entry and one entry whose file was never deployed."""
    chunks_dir = tmp_path / 'chunks'
    chunks_dir.mkdir()
    (chunks_dir / 'app.3f9a1c.js').write_bytes(b'console.log("app");')
    manifest_path = tmp_path / 'manifest.json'
    manifest_path.write_text(json.dumps({
        'app': 'app.3f9a1c.js',
        'vendor': 'vendor.77aa01.js',
    }))
    return manifest_path, chunks_dir


@pytest.fixture
def client(tmp_path, storage_root, manifest_setup):
    manifest_path, chunks_dir = manifest_setup
    app = create_app(
        storage_root=storage_root,
        manifest_path=manifest_path,
        manifest_root=chunks_dir,
        database_url=f"sqlite://{tmp_path / 'registry.sqlite3'}",
    )
    with TestClient(app) as test_client:
        yield test_client
