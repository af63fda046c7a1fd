"""
Persistent key-value store for coordinator state.

All keys live in one namespaced JSON document. Writes replace the whole
document atomically (temp file + rename), so a crash mid-write leaves
the previous state intact. File I/O runs in a worker thread to keep the
event loop free.
"""

import asyncio
import copy
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """The persisted store could not be read or written."""


class KeyValueStore(ABC):
    """Durable async key-value store."""

    @abstractmethod
    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        """
        Read a set of keys.

        Returns:
            Mapping of the keys that exist to their values.

        Raises:
            StoreError: If the store cannot be read.
        """

    @abstractmethod
    async def set(self, items: Dict[str, Any]) -> None:
        """
        Write a set of keys, keeping keys not mentioned.

        Raises:
            StoreError: If the store cannot be written.
        """


class MemoryStore(KeyValueStore):
    """In-memory store for tests and dry runs."""

    def __init__(self, initial: Dict[str, Any] = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})
        self.writes = 0

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {k: copy.deepcopy(self._data[k]) for k in keys if k in self._data}

    async def set(self, items: Dict[str, Any]) -> None:
        self._data.update(copy.deepcopy(items))
        self.writes += 1

    def dump(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)


class JsonFileStore(KeyValueStore):
    """
    Store backed by a single JSON file.

    Writes are serialized with an asyncio.Lock so that sequential events
    hit the disk in the order they happened.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StoreError(f"Corrupt state file {self.path}: {e}") from e
        except (IOError, OSError) as e:
            raise StoreError(f"Failed to read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"State file {self.path} does not hold an object")
        return data

    def _write_all(self, data: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)

            temp_fd, temp_path = tempfile.mkstemp(
                suffix='.tmp',
                prefix='state_',
                dir=self.path.parent
            )
            try:
                with os.fdopen(temp_fd, 'w', encoding='utf-8') as f:
                    json.dump(data, f, indent=2)
                os.replace(temp_path, self.path)
            except Exception:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
                raise
        except (IOError, OSError, TypeError, ValueError) as e:
            raise StoreError(f"Failed to write {self.path}: {e}") from e

    def _merge_and_write(self, items: Dict[str, Any]) -> None:
        try:
            data = self._read_all()
        except StoreError as e:
            # Unreadable file gets overwritten by the new full state
            logger.warning(f"{e}; rewriting")
            data = {}
        data.update(items)
        self._write_all(data)

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
        return {k: data[k] for k in keys if k in data}

    async def set(self, items: Dict[str, Any]) -> None:
        # Serialize in the caller's context so later mutations can't leak in
        snapshot = json.loads(json.dumps(items))
        async with self._lock:
            await asyncio.to_thread(self._merge_and_write, snapshot)
        logger.debug(f"Saved {len(snapshot)} keys to {self.path}")
