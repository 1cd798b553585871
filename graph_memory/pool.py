"""Per-user storage pool.

Each user (tenant) gets its own SQLite database file:
    {base_dir}/memory-{user_id}.sqlite

The pool lazily creates MemoryStorage instances on first access.
Schema is auto-created by MemoryStorage.__init__.
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .storage import MemoryStorage

logger = logging.getLogger(__name__)

# Valid user ID: lowercase alphanumeric, hyphens, underscores, 1-64 chars.
_USER_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


class StoragePool:
    """Manages per-user MemoryStorage instances."""

    def __init__(
        self,
        base_dir: str,
        dimensions: int,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.dimensions = dimensions
        self.clock = clock
        self._storages: Dict[str, MemoryStorage] = {}
        self._lock = threading.Lock()

    @staticmethod
    def normalize_key(user_id: Optional[str]) -> str:
        """Normalize and validate a user id.

        Raises ValueError for empty or unsafe ids (path traversal, reserved words).
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required")
        key = user_id.strip().lower()
        if key == "all":
            raise ValueError("'all' is a reserved user ID")
        if not _USER_ID_RE.match(key):
            raise ValueError(
                f"Invalid user ID '{key}': must match [a-z0-9][a-z0-9_-]{{0,63}}"
            )
        return key

    def _db_path(self, key: str) -> str:
        return str(self.base_dir / f"memory-{key}.sqlite")

    def get(self, user_id: str) -> MemoryStorage:
        """Get or create the MemoryStorage for *user_id*."""
        key = self.normalize_key(user_id)
        with self._lock:
            if key not in self._storages:
                db_path = self._db_path(key)
                self._storages[key] = MemoryStorage(
                    db_path=db_path,
                    dimensions=self.dimensions,
                    clock=self.clock,
                )
                logger.info("StoragePool: opened %s -> %s", key, db_path)
            return self._storages[key]

    def get_all_users(self) -> List[str]:
        """Discover all user IDs from existing database files."""
        users: List[str] = []
        for f in sorted(self.base_dir.glob("memory-*.sqlite")):
            if ".bak" in f.name:
                continue
            user_id = f.stem.replace("memory-", "", 1)
            if user_id:
                users.append(user_id)
        return users

    def close_all(self) -> None:
        """Close all open database connections."""
        with self._lock:
            for storage in self._storages.values():
                storage.close()
            self._storages.clear()
