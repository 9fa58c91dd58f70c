"""Configuration settings for the chunk server."""

import os


CHUNK_STORAGE_ROOT = os.environ.get("CHUNK_STORAGE_ROOT", "storage")

MANIFEST_PATH = os.environ.get("MANIFEST_PATH", "manifest.json")

MANIFEST_ROOT = os.environ.get("MANIFEST_ROOT", "chunks")

# Unset means the manifest-only variant: registry endpoints answer 503.
DATABASE_URL = os.environ.get("DATABASE_URL") or None

HOST = os.environ.get("HOST", "0.0.0.0")

PORT = int(os.environ.get("PORT", "3000"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

STREAM_BLOCK_SIZE = int(os.environ.get("STREAM_BLOCK_SIZE", str(64 * 1024)))

CACHE_CONTROL = "public, max-age=86400, immutable"
