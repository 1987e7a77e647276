"""Sharded, lock-per-shard tables for per-key state (rate buckets, sessions)."""

from __future__ import annotations

import threading
import zlib
from typing import Dict, Generic, Hashable, Iterator, List, Tuple, TypeVar

V = TypeVar("V")

_DEFAULT_SHARDS = 16


class Shard(Generic[V]):
    __slots__ = ("lock", "items")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.items: Dict[Hashable, V] = {}


class ShardedTable(Generic[V]):
    """A dict split across independently locked shards.

    Keys that land in different shards never contend.  Callers take
    ``shard.lock`` themselves around short, non-suspending critical sections.
    """

    def __init__(self, shards: int = _DEFAULT_SHARDS):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards: List[Shard[V]] = [Shard() for _ in range(shards)]

    def shard(self, key: Hashable) -> Shard[V]:
        # crc32 of repr keeps shard choice stable across processes (hash() is salted).
        index = zlib.crc32(repr(key).encode("utf-8")) % len(self._shards)
        return self._shards[index]

    def shards(self) -> Iterator[Shard[V]]:
        return iter(self._shards)

    def items(self) -> List[Tuple[Hashable, V]]:
        """Point-in-time copy of every entry (locks one shard at a time)."""
        result: List[Tuple[Hashable, V]] = []
        for shard in self._shards:
            with shard.lock:
                result.extend(shard.items.items())
        return result

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.items)
        return total
