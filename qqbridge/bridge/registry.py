"""Key-partitioned registries for live portals, puppets and users."""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DEFAULT_SHARDS = 16


class ShardedRegistry(Generic[K, V]):
    """Dict split into shards, each behind its own lock.

    Locks are held only for the map operation itself, never across awaits,
    so QQ client threads and the event loop can share one registry.
    """

    def __init__(self, shards: int = DEFAULT_SHARDS) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._locks = [threading.Lock() for _ in range(shards)]
        self._maps: list[dict[K, V]] = [{} for _ in range(shards)]

    def _shard(self, key: K) -> int:
        return hash(key) % len(self._maps)

    def get(self, key: K) -> V | None:
        idx = self._shard(key)
        with self._locks[idx]:
            return self._maps[idx].get(key)

    def get_or_create(self, key: K, factory: Callable[[], V]) -> V:
        """Return the value for ``key``, calling ``factory`` under the shard lock when absent."""
        idx = self._shard(key)
        with self._locks[idx]:
            value = self._maps[idx].get(key)
            if value is None:
                value = factory()
                self._maps[idx][key] = value
            return value

    def put(self, key: K, value: V) -> None:
        idx = self._shard(key)
        with self._locks[idx]:
            self._maps[idx][key] = value

    def pop(self, key: K, expected: V | None = None) -> V | None:
        """Remove ``key``; with ``expected``, only when it still maps to that object."""
        idx = self._shard(key)
        with self._locks[idx]:
            current = self._maps[idx].get(key)
            if current is None or (expected is not None and current is not expected):
                return None
            return self._maps[idx].pop(key)

    def values(self) -> list[V]:
        result: list[V] = []
        for lock, shard in zip(self._locks, self._maps, strict=True):
            with lock:
                result.extend(shard.values())
        return result

    def __len__(self) -> int:
        total = 0
        for lock, shard in zip(self._locks, self._maps, strict=True):
            with lock:
                total += len(shard)
        return total

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]
