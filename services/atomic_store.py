"""
Atomic Store Service
Durable, crash-safe JSON collections on disk with per-collection mutual exclusion.

Writes go to a temporary sibling file which is fsynced and renamed over the target,
so a crash mid-write never leaves a half-written collection behind.
"""

import asyncio
import copy
import json
import logging
import os
import shutil
import tempfile
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

from config import Config
from models import Collection
from utils.exceptions import StorageCorruptError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _write_json_atomically(path: str, value: Any) -> None:
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        prefix=os.path.basename(path) + ".", suffix=".tmp", dir=directory
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(value, handle, ensure_ascii=False, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def _read_text(path: str) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read()
    except FileNotFoundError:
        return None


class AtomicStore:
    """
    Named JSON collections with serialized access.

    ``read`` and ``replace`` are each atomic. A caller doing read, mutate and replace as
    separate calls can lose an update to another caller that interleaves between them;
    ``update`` performs the whole cycle while holding the collection lock.
    """

    def __init__(self, data_dir: Optional[str] = None, backup_dir: Optional[str] = None,
                 max_backups: Optional[int] = None):
        self.data_dir = data_dir or Config.DATA_DIR
        self.backup_dir = backup_dir or os.path.join(self.data_dir, "backups")
        self.max_backups = max_backups if max_backups is not None else Config.MAX_BACKUPS
        self._locks: Dict[str, asyncio.Lock] = {}

        self.metrics = {
            'reads': 0,
            'replaces': 0,
            'updates': 0,
            'corrupt_reads': 0,
        }

    def path_for(self, collection: str) -> str:
        return os.path.join(self.data_dir, f"{collection}.json")

    def _lock_for(self, collection: str) -> asyncio.Lock:
        lock = self._locks.get(collection)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[collection] = lock
        return lock

    async def _load(self, collection: str, default: Any) -> Any:
        path = self.path_for(collection)
        raw = await asyncio.to_thread(_read_text, path)
        if raw is None:
            return copy.deepcopy(default)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            self.metrics['corrupt_reads'] += 1
            logger.error(f"❌ STORE_CORRUPT: {collection} at {path}: {e}")
            raise StorageCorruptError(collection, path, str(e)) from e

    async def read(self, collection: str, default: Any = None) -> Any:
        """
        Read a whole collection.

        Args:
            collection: Collection name
            default: Returned (as a copy) when the file does not exist

        Returns:
            Parsed JSON value or the default

        Raises:
            StorageCorruptError: the file exists but is not valid JSON
        """
        async with self._lock_for(collection):
            self.metrics['reads'] += 1
            return await self._load(collection, default)

    async def replace(self, collection: str, value: Any) -> None:
        async with self._lock_for(collection):
            await asyncio.to_thread(_write_json_atomically, self.path_for(collection), value)
            self.metrics['replaces'] += 1

    async def update(self, collection: str, mutator: Callable[[Any], T], default: Any = None) -> T:
        """
        Read, mutate in place and replace a collection under one lock hold.

        The mutator receives the loaded value and must mutate it in place. Its return
        value is passed back to the caller. If the mutator raises, nothing is written.
        """
        async with self._lock_for(collection):
            value = await self._load(collection, default)
            result = mutator(value)
            await asyncio.to_thread(_write_json_atomically, self.path_for(collection), value)
            self.metrics['updates'] += 1
            return result

    async def initialize(self, collections: Optional[Dict[str, Any]] = None) -> None:
        """Create the data directory and seed any missing collection with its default"""
        collections = collections if collections is not None else Collection.DEFAULTS
        await asyncio.to_thread(os.makedirs, self.data_dir, exist_ok=True)
        for name, default in collections.items():
            async with self._lock_for(name):
                if not os.path.exists(self.path_for(name)):
                    await asyncio.to_thread(_write_json_atomically, self.path_for(name), default)
                    logger.info(f"📁 STORE_SEEDED: {name}")

    async def verify_integrity(self, collections: Optional[List[str]] = None) -> Dict[str, Any]:
        """Try to parse every collection; report the corrupt ones without raising"""
        names = collections if collections is not None else list(Collection.DEFAULTS)
        results = {'checked': 0, 'corrupt': []}
        for name in names:
            results['checked'] += 1
            try:
                await self.read(name, Collection.DEFAULTS.get(name))
            except StorageCorruptError:
                results['corrupt'].append(name)
        if results['corrupt']:
            logger.critical(f"🚨 STORE_INTEGRITY_FAILED: corrupt collections {results['corrupt']}")
        else:
            logger.info(f"✅ STORE_INTEGRITY_OK: {results['checked']} collections verified")
        return results

    async def backup(self, collection: str) -> Optional[str]:
        """Copy a collection into the backup dir, keeping the newest ``max_backups`` copies"""
        source = self.path_for(collection)
        async with self._lock_for(collection):
            if not os.path.exists(source):
                return None
            target = os.path.join(
                self.backup_dir, f"{collection}-{time.strftime('%Y%m%d-%H%M%S')}-{time.time_ns()}.json"
            )
            await asyncio.to_thread(os.makedirs, self.backup_dir, exist_ok=True)
            await asyncio.to_thread(shutil.copy2, source, target)

        await asyncio.to_thread(self._prune_backups, collection)
        logger.info(f"💾 STORE_BACKUP: {collection} -> {target}")
        return target

    def _prune_backups(self, collection: str) -> None:
        prefix = f"{collection}-"
        backups = sorted(
            name for name in os.listdir(self.backup_dir)
            if name.startswith(prefix) and name.endswith(".json")
        )
        for stale in backups[:-self.max_backups] if self.max_backups > 0 else backups:
            os.remove(os.path.join(self.backup_dir, stale))
