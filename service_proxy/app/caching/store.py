"""
Durable on-disk storage for cache records.
"""

import asyncio
import hashlib
import os
import re
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import List, Optional, Union

from shared.logging import get_logger


KEY_PATTERN = re.compile(r"^[0-9a-f]{64}$")
TEMP_SUFFIX = ".tmp"


def cache_key(url: str) -> str:
    """Derive the storage key for a fully resolved upstream URL."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


class FileCacheStore:
    """One file per cache key under a fixed root directory.

    Every call goes to disk; nothing is kept in memory between requests.
    Blocking file operations run in a worker thread.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.logger = get_logger("proxy.cache_store")

    def path_for(self, key: str) -> Path:
        if not KEY_PATTERN.match(key):
            raise ValueError(f"Invalid cache key: {key!r}")
        return self.root / key

    async def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when nothing is stored for key."""
        return await asyncio.to_thread(self._read, self.path_for(key))

    async def put(self, key: str, data: bytes) -> bool:
        """Atomically replace the value for key."""
        path = self.path_for(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as exc:
            self.logger.error("Cache write failed", key=key, path=str(path), error=str(exc))
            return False
        return True

    async def delete(self, key: str) -> bool:
        """Remove the value for key; an absent key counts as success."""
        path = self.path_for(key)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            self.logger.warning("Cache delete failed", key=key, path=str(path), error=str(exc))
            return False
        return True

    async def keys(self) -> List[str]:
        return await asyncio.to_thread(self._list_keys)

    def is_writable(self) -> bool:
        if self.root.exists():
            return self.root.is_dir() and os.access(self.root, os.W_OK)
        # Created lazily on first write
        parent = self._nearest_existing_parent()
        return parent.is_dir() and os.access(parent, os.W_OK)

    @staticmethod
    def _read(path: Path) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, path: Path, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{path.name}.", suffix=TEMP_SUFFIX)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            with suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise

    def _list_keys(self) -> List[str]:
        try:
            names = os.listdir(self.root)
        except FileNotFoundError:
            return []
        return sorted(name for name in names if KEY_PATTERN.match(name))

    def _nearest_existing_parent(self) -> Path:
        candidate = self.root.resolve()
        while not candidate.exists() and candidate != candidate.parent:
            candidate = candidate.parent
        return candidate
