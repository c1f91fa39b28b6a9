"""
Persisted key-value mirror for the cache store.

The cache keeps its authoritative copy in memory; a KeyValueStore only lets a
restarted process start warm.  Two implementations are provided: an in-memory
dict (tests, embedders without a disk) and a JSON file.
"""
import abc
import json
import logging
import os
import threading
from typing import Dict, Iterator, Optional

log = logging.getLogger(__name__)


class KeyValueStore(abc.ABC):

    @abc.abstractmethod
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def keys(self) -> Iterator[str]:
        raise NotImplementedError

    def clear_prefix(self, prefix: str) -> int:
        doomed = [k for k in self.keys() if k.startswith(prefix)]
        for key in doomed:
            self.delete(key)
        return len(doomed)


class MemoryKeyValueStore(KeyValueStore):

    def __init__(self):
        self.data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)

    def keys(self) -> Iterator[str]:
        return iter(list(self.data.keys()))


class JsonFileStore(MemoryKeyValueStore):
    """Dict mirrored to a JSON file on every write."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self._lock = threading.Lock()
        try:
            with open(self.path, "r") as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                self.data = {str(k): str(v) for k, v in loaded.items()}
            log.debug(f"loaded {len(self.data)} cache entries from {self.path}")
        except FileNotFoundError:
            log.debug(f"no cache file at {self.path}")
        except (OSError, ValueError) as exc:
            log.warning(f"unable to read cache file {self.path} - starting empty: {exc}")

    def _save(self):
        with self._lock:
            tmp = f"{self.path}.tmp"
            try:
                with open(tmp, "w") as f:
                    json.dump(self.data, f)
                os.replace(tmp, self.path)
            except OSError as exc:
                log.warning(f"unable to write cache file {self.path}: {exc}")

    def set(self, key: str, value: str) -> None:
        super().set(key, value)
        self._save()

    def delete(self, key: str) -> None:
        if key in self.data:
            super().delete(key)
            self._save()
