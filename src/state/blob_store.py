"""
Blob store contract used by the state engine, plus an in-memory implementation.

The engine only needs a flat key space with prefix listing. No compare-and-swap
is assumed; stores that can do a native "create only if absent" advertise it
through `supports_put_if_absent`.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Callable, Dict, List, Optional, Protocol, Tuple


class BlobStoreError(RuntimeError):
    """Underlying store failed to complete an operation."""


@dataclass(frozen=True)
class BlobInfo:
    key: str
    size: int
    uploaded: datetime


class BlobStore(Protocol):
    supports_put_if_absent: bool

    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, data: bytes) -> None: ...

    def put_if_absent(self, key: str, data: bytes) -> bool: ...

    def delete(self, key: str) -> None: ...

    def list(self, prefix: str) -> List[BlobInfo]: ...


class InMemoryBlobStore:
    """
    Dict-backed store for tests and local runs.

    - `conditional_put=False` makes the store behave like one without a
      conditional write primitive (`put_if_absent` raises BlobStoreError).
    - `clock` is injectable so listings have predictable timestamps.
    """

    def __init__(
        self,
        *,
        conditional_put: bool = True,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._objects: Dict[str, Tuple[bytes, datetime]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.supports_put_if_absent = conditional_put

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            item = self._objects.get(key)
        return item[0] if item is not None else None

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._objects[key] = (bytes(data), self._clock())

    def put_if_absent(self, key: str, data: bytes) -> bool:
        if not self.supports_put_if_absent:
            raise BlobStoreError("conditional put is not supported by this store")
        with self._lock:
            if key in self._objects:
                return False
            self._objects[key] = (bytes(data), self._clock())
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def list(self, prefix: str) -> List[BlobInfo]:
        with self._lock:
            items = [
                BlobInfo(key=k, size=len(v[0]), uploaded=v[1])
                for k, v in self._objects.items()
                if k.startswith(prefix)
            ]
        items.sort(key=lambda b: b.key)
        return items

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._objects)


__all__ = ["BlobInfo", "BlobStore", "BlobStoreError", "InMemoryBlobStore"]
