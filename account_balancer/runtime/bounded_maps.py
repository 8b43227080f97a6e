from __future__ import annotations

from collections import OrderedDict
from collections.abc import ItemsView
from typing import Generic, TypeVar

K = TypeVar("K")


class BoundedCounterMap(Generic[K]):
    """Counters keyed by label, evicting the least recently written key."""

    def __init__(self, max_keys: int):
        self._max_keys = max(1, int(max_keys))
        self._data: OrderedDict[K, int] = OrderedDict()

    def increment(self, key: K, amount: int = 1) -> int:
        next_value = int(self._data.get(key, 0)) + int(amount)
        is_new = key not in self._data
        self._data[key] = next_value
        self._data.move_to_end(key)
        if is_new and len(self._data) > self._max_keys:
            self._data.popitem(last=False)
        return next_value

    def get(self, key: K, default: int = 0) -> int:
        return int(self._data.get(key, default) or 0)

    def items(self) -> ItemsView[K, int]:
        return self._data.items()

    def to_dict(self) -> dict[K, int]:
        return dict(self._data)
