# workers.py
"""
Runtime-label worker slots.

A pool advertises labels ("self-hosted", "docker", ...) with a number of
slots each. A job may only be dispatched to a slot advertising its
runtime label. Without explicit capacities, the pool accepts every label
and the executor's concurrency limit is the only bound.
"""
from __future__ import annotations

import threading
from collections import Counter
from typing import Dict, Mapping, Optional

from .errors import RuntimeUnavailable


class WorkerPool:
    def __init__(self, capacity: Optional[Mapping[str, int]] = None):
        self._capacity: Optional[Dict[str, int]] = dict(capacity) if capacity is not None else None
        self._in_use: Counter = Counter()
        self._lock = threading.Lock()

    @property
    def labels(self) -> list[str] | None:
        """Advertised labels, or None when any label is accepted."""
        if self._capacity is None:
            return None
        return sorted(self._capacity)

    def advertises(self, label: str) -> bool:
        if self._capacity is None:
            return True
        return self._capacity.get(label, 0) > 0

    def acquire(self, label: str) -> None:
        """
        Take one slot for `label`.

        Raises:
          RuntimeUnavailable: every slot advertising the label is busy (or none exists)
        """
        with self._lock:
            if self._capacity is not None and self._in_use[label] >= self._capacity.get(label, 0):
                raise RuntimeUnavailable(label)
            self._in_use[label] += 1

    def release(self, label: str) -> None:
        with self._lock:
            if self._in_use[label] > 0:
                self._in_use[label] -= 1

    def in_use(self, label: str) -> int:
        with self._lock:
            return self._in_use[label]
