"""Bounded output buffer replayed to viewers on (re)attach."""

# Trim once the buffer grows past MAX_BYTES, keeping the newest TRIM_TO bytes
MAX_BYTES = 100_000
TRIM_TO = 80_000


class ScrollbackBuffer:
    """Append-only byte log with a hard cap.

    Appending past ``max_bytes`` drops the oldest data so that only the
    most recent ``trim_to`` bytes remain. Trimming happens in one step
    rather than per byte, so the buffer oscillates between ``trim_to``
    and ``max_bytes`` under sustained output.
    """

    def __init__(self, max_bytes: int = MAX_BYTES, trim_to: int = TRIM_TO):
        if trim_to > max_bytes:
            raise ValueError(f"trim_to ({trim_to}) must not exceed max_bytes ({max_bytes})")
        self.max_bytes = max_bytes
        self.trim_to = trim_to
        self._data = bytearray()

    def append(self, data: bytes) -> None:
        self._data += data
        if len(self._data) > self.max_bytes:
            del self._data[:len(self._data) - self.trim_to]

    def snapshot(self) -> bytes:
        """Return the current contents."""
        return bytes(self._data)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return bool(self._data)
