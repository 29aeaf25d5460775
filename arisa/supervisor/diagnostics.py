"""Bounded tail capture of the core's error stream."""

from __future__ import annotations

DEFAULT_CAPACITY = 2000


class DiagnosticBuffer:
    """Keeps only the most recent ``capacity`` characters written to it."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._data = ""

    @property
    def capacity(self) -> int:
        return self._capacity

    def write(self, chunk: str) -> None:
        if not chunk:
            return
        self._data += chunk
        if len(self._data) > self._capacity:
            self._data = self._data[-self._capacity:]

    def snapshot(self) -> str:
        return self._data

    def clear(self) -> None:
        self._data = ""

    def __len__(self) -> int:
        return len(self._data)
