"""
Durable Store - key/value persistence that survives restarts

Interface used by the core:
- get(key) -> str or None
- set(key, value)
- remove(key)
- keys() -> list of stored keys
- is_available() -> write/remove probe

Adapters:
- InMemoryStore: dict-backed, optional byte capacity (tests, ephemeral hosts)
- JsonFileStore: single JSON document on disk, rewritten atomically on
  every mutation

Sizes are estimated the same way everywhere: (len(key) + len(value)) * 2
bytes, i.e. two bytes per character.

File Structure (JsonFileStore):
data/
└── store.json     # {"<key>": "<value>", ...}
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

BYTES_PER_CHAR = 2
PROBE_KEY = "__store_probe__"


class StoreError(Exception):
    """Raised when the durable store cannot be read or written."""


class StoreFullError(StoreError):
    """Raised when a write would exceed the store's capacity."""

    def __init__(self, key: str, required: int, capacity: int):
        self.key = key
        self.required = required
        self.capacity = capacity
        super().__init__(
            f"Store capacity exceeded writing {key!r}: "
            f"{required} bytes required, capacity {capacity}"
        )


def entry_size(key: str, value: str) -> int:
    """Estimated footprint of a single entry in bytes"""
    return (len(key) + len(value)) * BYTES_PER_CHAR


class DurableStore:
    """Interface for durable key/value storage"""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str):
        raise NotImplementedError

    def remove(self, key: str):
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError

    def is_available(self) -> bool:
        """Probe the store with a write/remove round trip"""
        try:
            self.set(PROBE_KEY, PROBE_KEY)
            self.remove(PROBE_KEY)
            return True
        except StoreError:
            return False


class InMemoryStore(DurableStore):
    """
    Dict-backed store.

    Args:
        capacity_bytes: Optional limit; writes beyond it raise StoreFullError
        available: When False every operation raises StoreError
    """

    def __init__(self, capacity_bytes: Optional[int] = None, available: bool = True):
        self.capacity_bytes = capacity_bytes
        self.available = available
        self._data: Dict[str, str] = {}

    def _check(self):
        if not self.available:
            raise StoreError("Store unavailable")

    def get(self, key: str) -> Optional[str]:
        self._check()
        return self._data.get(key)

    def set(self, key: str, value: str):
        self._check()
        if self.capacity_bytes is not None:
            current = sum(entry_size(k, v) for k, v in self._data.items() if k != key)
            required = current + entry_size(key, value)
            if required > self.capacity_bytes:
                raise StoreFullError(key, required, self.capacity_bytes)
        self._data[key] = value

    def remove(self, key: str):
        self._check()
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        self._check()
        return list(self._data.keys())

    def __len__(self):
        return len(self._data)


class JsonFileStore(DurableStore):
    """
    Store persisted as one JSON document.

    Args:
        path: File path (parent directories are created)
        capacity_bytes: Optional limit, same semantics as InMemoryStore
    """

    def __init__(self, path: str = './data/store.json', capacity_bytes: Optional[int] = None):
        self.path = Path(path)
        self.capacity_bytes = capacity_bytes
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._data: Dict[str, str] = self._load()

        logger.info(f"JsonFileStore initialized ({self.path}, {len(self._data)} keys)")

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"Cannot read store file {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise StoreError(f"Store file {self.path} does not contain an object")
        return {str(k): str(v) for k, v in data.items()}

    def _flush(self):
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(self._data, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StoreError(f"Cannot write store file {self.path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str):
        if self.capacity_bytes is not None:
            current = sum(entry_size(k, v) for k, v in self._data.items() if k != key)
            required = current + entry_size(key, value)
            if required > self.capacity_bytes:
                raise StoreFullError(key, required, self.capacity_bytes)

        previous = self._data.get(key)
        self._data[key] = value
        try:
            self._flush()
        except StoreError:
            # Keep memory consistent with disk
            if previous is None:
                self._data.pop(key, None)
            else:
                self._data[key] = previous
            raise

    def remove(self, key: str):
        if key not in self._data:
            return
        previous = self._data.pop(key)
        try:
            self._flush()
        except StoreError:
            self._data[key] = previous
            raise

    def keys(self) -> List[str]:
        return list(self._data.keys())
