from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator
from typing import Generic, TypeVar

T = TypeVar("T")


class BoundedLog(Generic[T]):
    """Insertion-ordered ring that keeps only the newest ``capacity`` items."""

    def __init__(self, capacity: int, items: Iterable[T] = ()):
        self._capacity = max(1, int(capacity))
        self._items: deque[T] = deque(maxlen=self._capacity)
        # Oldest entries fall off the left as newer ones are loaded.
        self._items.extend(items)

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, item: T) -> T:
        self._items.append(item)
        return item

    def tail(self, limit: int) -> list[T]:
        if limit <= 0:
            return []
        if limit >= len(self._items):
            return list(self._items)
        return list(self._items)[-limit:]

    def clear(self) -> None:
        self._items.clear()

    def to_list(self) -> list[T]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)
