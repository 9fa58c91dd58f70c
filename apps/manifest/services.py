"""Manifest resolution for immutable, content-hashed static chunks.

The manifest maps an opaque script id to the hashed filename a build step
produced, e.g. ``{"app": "app.3f9a1c.js"}``. It is read once at startup and
never changes afterwards.
"""
import json
import os
import stat
from pathlib import Path
from typing import Dict, List, Union

import aiofiles
import aiofiles.os

from apps.exceptions import ManifestEntryNotFound, ManifestFileMissing
from config.logging_config import get_logger

logger = get_logger(__name__)


async def load_manifest(path: Union[str, Path]) -> Dict[str, str]:
    """Read the manifest. Any problem yields an empty mapping instead of an error."""
    try:
        async with aiofiles.open(path, 'r', encoding='utf-8') as f:
            content = await f.read()
    except OSError:
        logger.warning("No manifest found at %s; every chunk id will be not found", path)
        return {}

    try:
        manifest = json.loads(content)
    except ValueError as e:
        logger.error("Could not parse manifest %s: %s; falling back to empty", path, e)
        return {}

    if not isinstance(manifest, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in manifest.items()
    ):
        logger.error("Manifest %s is not an object of string to string; falling back to empty", path)
        return {}

    logger.info("Manifest loaded from %s with %d entries", path, len(manifest))
    return manifest


class ManifestResolver:
    def __init__(self, entries: Dict[str, str], root: Union[str, Path]):
        self._entries = dict(entries)
        self.root = Path(root)

    @classmethod
    async def load(cls, manifest_path: Union[str, Path], root: Union[str, Path]) -> 'ManifestResolver':
        return cls(await load_manifest(manifest_path), root)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, script_id: str) -> bool:
        return script_id in self._entries

    async def resolve(self, script_id: str) -> Path:
        """Path of the file backing ``script_id``.

        An unknown id is ManifestEntryNotFound. A known id whose file is gone
        is ManifestFileMissing: that is a broken deployment, not a bad request.
        """
        filename = self._entries.get(script_id)
        if filename is None:
            raise ManifestEntryNotFound(f"Chunk with scriptId '{script_id}' was not found.")

        root = os.path.abspath(self.root)
        path = os.path.normpath(os.path.join(root, filename))
        if os.path.commonpath([root, path]) != root:
            logger.error("Manifest entry %s escapes the manifest root: %s", script_id, filename)
            raise ManifestFileMissing('Internal error while sending the chunk.')
        if not await aiofiles.os.path.isfile(path):
            logger.error("Manifest entry %s points at missing file %s", script_id, path)
            raise ManifestFileMissing('Internal error while sending the chunk.')
        return Path(path)

    async def list_static_files(self) -> List[str]:
        """Names of the regular files in the manifest root, sorted."""
        try:
            names = await aiofiles.os.listdir(self.root)
        except FileNotFoundError:
            return []
        files = []
        for name in names:
            try:
                st = await aiofiles.os.stat(self.root / name)
            except FileNotFoundError:
                continue
            if stat.S_ISREG(st.st_mode):
                files.append(name)
        return sorted(files)
