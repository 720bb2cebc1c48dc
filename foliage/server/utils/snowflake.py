"""Time ordered unique id generation.

Ids are 63-bit integers: 41 bits of milliseconds since a custom epoch, 10 bits
of worker id and a 12 bit sequence number within the millisecond. Ids issued by
one process are strictly increasing.
"""

import os
import threading
import time

__all__ = ["SnowflakeGenerator", "next_id"]

EPOCH_MS = 1704067200000  # 2024-01-01T00:00:00Z

WORKER_BITS = 10
SEQUENCE_BITS = 12
MAX_WORKER_ID = (1 << WORKER_BITS) - 1
MAX_SEQUENCE = (1 << SEQUENCE_BITS) - 1


class SnowflakeGenerator:
    """Thread safe snowflake id generator."""

    def __init__(self, worker_id: int = 0) -> None:
        if not 0 <= worker_id <= MAX_WORKER_ID:
            raise ValueError(f"Worker id must be between 0 and {MAX_WORKER_ID}")
        self._worker_id = worker_id
        self._lock = threading.Lock()
        self._last_ms = -1
        self._sequence = 0

    def next_id(self) -> int:
        """Return the next id."""
        with self._lock:
            now = int(time.time() * 1000)
            if now < self._last_ms:
                # Clock moved backwards, keep issuing from the last timestamp.
                now = self._last_ms
            if now == self._last_ms:
                self._sequence = (self._sequence + 1) & MAX_SEQUENCE
                if self._sequence == 0:
                    while now <= self._last_ms:
                        now = int(time.time() * 1000)
            else:
                self._sequence = 0
            self._last_ms = now
            return (
                ((now - EPOCH_MS) << (WORKER_BITS + SEQUENCE_BITS))
                | (self._worker_id << SEQUENCE_BITS)
                | self._sequence
            )


_generator = SnowflakeGenerator(int(os.environ.get("FOLIAGE_WORKER_ID", "0")))


def next_id() -> int:
    """Return the next id from the process wide generator."""
    return _generator.next_id()
