"""JSON document store with per-key serialization.

Storage: one JSON file per key under the data directory (``users`` ->
``users.json``, ``conversations/42`` -> ``conversations/42.json``).

Every read-modify-write goes through :meth:`DocumentStore.mutate`, which holds an
``asyncio.Lock`` dedicated to that key for the whole load/modify/save cycle. Two
ingests for the same user therefore never interleave and silently drop a record,
while documents for different users are written concurrently. Blocking file I/O
runs in worker threads so one slow disk write never stalls other users.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List

from relay_orchestrator.services.errors import PersistenceFailure
from relay_orchestrator.utils.atomic import atomic_write_json, read_json

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9_\-]+(/[A-Za-z0-9_\-]+)*$")


class DocumentStore:
    """Process-wide key/value store of JSON documents."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        key = str(key)
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid document key: {key!r}")
        return self._root / f"{key}.json"

    def lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ------------------------------------------------------------------
    # Sync API (worker threads, operator console)
    # ------------------------------------------------------------------

    def read(self, key: str, default: Any, *, quarantine: bool = True) -> Any:
        """Load a document; a missing or unreadable file yields a copy of *default*.

        Corrupt files are moved aside (``*.corrupt-<epoch>``) rather than silently
        overwritten by the next save. Readers that must not touch the store pass
        ``quarantine=False`` and get the default without the move.
        """
        path = self.path_for(key)
        if not path.exists():
            return copy.deepcopy(default)
        try:
            return read_json(path)
        except ValueError as exc:
            if not quarantine:
                logger.warning("[STORE] Corrupt document %s (%s); left in place", key, exc)
                return copy.deepcopy(default)
            moved_to = path.with_suffix(f".corrupt-{int(time.time())}")
            logger.error("[STORE] Corrupt document %s (%s); moved to %s", key, exc, moved_to.name)
            try:
                path.replace(moved_to)
            except OSError as move_exc:
                logger.error("[STORE] Could not quarantine %s: %s", key, move_exc)
            return copy.deepcopy(default)
        except OSError as exc:
            logger.error("[STORE] Failed to read %s: %s", key, exc)
            return copy.deepcopy(default)

    def write(self, key: str, document: Any) -> None:
        try:
            atomic_write_json(self.path_for(key), document)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceFailure(key, str(exc)) from exc

    def keys(self, prefix: str = "") -> List[str]:
        """Keys stored under ``prefix/`` (or top-level keys when prefix is empty)."""
        base = self._root / prefix if prefix else self._root
        if not base.exists():
            return []
        found = []
        for p in sorted(base.glob("*.json")):
            if p.name.startswith("."):
                continue
            found.append(f"{prefix}/{p.stem}" if prefix else p.stem)
        return found

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------

    async def load(self, key: str, default: Any) -> Any:
        return await asyncio.to_thread(self.read, key, default)

    async def save(self, key: str, document: Any) -> None:
        async with self.lock_for(key):
            await asyncio.to_thread(self.write, key, document)

    @asynccontextmanager
    async def mutate(self, key: str, default: Any) -> AsyncIterator[Any]:
        """Load, yield for in-place modification, then save, all under the key lock.

        If the body raises, nothing is written.
        """
        async with self.lock_for(key):
            document = await asyncio.to_thread(self.read, key, default)
            yield document
            await asyncio.to_thread(self.write, key, document)
