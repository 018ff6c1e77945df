"""A writable sink that only counts the bytes written to it."""

from __future__ import annotations

import threading


class ByteCountWriter:
    """Counts written bytes; safe to use from several threads."""

    def __init__(self) -> None:
        self._written = 0
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        """Count ``data`` and report it as fully written."""
        size = memoryview(data).nbytes
        with self._lock:
            self._written += size
        return size

    @property
    def written(self) -> int:
        """The number of bytes written so far."""
        with self._lock:
            return self._written