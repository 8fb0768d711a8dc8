from __future__ import annotations

import threading
from typing import BinaryIO, List


class StreamCollector(threading.Thread):
    """
    Drains one pipe of the child on its own thread.
    Keeps the first ``limit`` bytes and counts the rest as dropped, so a
    submission printing forever cannot grow the parent's memory.
    """

    CHUNK = 4096

    def __init__(self, stream: BinaryIO, limit: int, name: str = "collector"):
        super().__init__(name=name, daemon=True)
        self.stream = stream
        self.limit = limit
        self.dropped = 0
        self._chunks: List[bytes] = []
        self._size = 0
        self._lock = threading.Lock()

    def run(self) -> None:
        try:
            while True:
                chunk = self.stream.read1(self.CHUNK)
                if not chunk:
                    break
                self._add(chunk)
        except (OSError, ValueError):
            # pipe closed under us by the kill path
            pass
        finally:
            self.stream.close()

    def _add(self, chunk: bytes) -> None:
        with self._lock:
            room = self.limit - self._size
            if room > 0:
                kept = chunk[:room]
                self._chunks.append(kept)
                self._size += len(kept)
            self.dropped += max(0, len(chunk) - max(room, 0))

    @property
    def data(self) -> bytes:
        with self._lock:
            return b"".join(self._chunks)

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")
