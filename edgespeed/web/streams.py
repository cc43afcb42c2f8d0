"""Byte source and sink used by the throughput endpoints."""

from __future__ import annotations

import threading
from typing import BinaryIO, Dict, Iterator

DEFAULT_DRAIN_READ_SIZE = 64 * 1024


class ByteSource:
    """Endless supply of one pre-built chunk.

    The chunk is a byte ramp rather than zeros so that intermediaries cannot
    compress it away. It is built once and handed out on every pull.
    """

    def __init__(self, chunk_size: int):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self._chunk = (bytes(range(256)) * (chunk_size // 256 + 1))[:chunk_size]

    def pull(self) -> bytes:
        return self._chunk

    def stream(self) -> Iterator[bytes]:
        while True:
            yield self._chunk


_sources: Dict[int, ByteSource] = {}
_sources_lock = threading.Lock()


def get_byte_source(chunk_size: int) -> ByteSource:
    """Return the process-wide source for ``chunk_size``, building it on first use."""
    with _sources_lock:
        source = _sources.get(chunk_size)
        if source is None:
            source = _sources[chunk_size] = ByteSource(chunk_size)
        return source


def drain(stream: BinaryIO, read_size: int = DEFAULT_DRAIN_READ_SIZE) -> int:
    """Read ``stream`` to EOF in bounded reads and return the byte count discarded."""
    total = 0
    while True:
        chunk = stream.read(read_size)
        if not chunk:
            return total
        total += len(chunk)
