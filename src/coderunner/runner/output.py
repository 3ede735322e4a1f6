from __future__ import annotations

import queue
import threading
from typing import IO, Callable, Dict, List, Optional, Tuple

import structlog

log = structlog.get_logger(__name__)

CHUNK_BYTES = 64 * 1024

# (stream name, retained bytes) -> None
ChunkCallback = Callable[[str, bytes], None]


class BoundedBuffer:
    """Keeps the first `ceiling` bytes of a stream and counts the rest."""

    def __init__(self, ceiling: int):
        self.ceiling = ceiling
        self._data = bytearray()
        self.total = 0

    def feed(self, chunk: bytes) -> bytes:
        self.total += len(chunk)
        room = self.ceiling - len(self._data)
        if room <= 0:
            return b""
        kept = chunk[:room]
        self._data += kept
        return kept

    @property
    def truncated(self) -> bool:
        return self.total > self.ceiling

    def getvalue(self) -> bytes:
        return bytes(self._data)


class OutputSubscription:
    """Bounded fan-out queue for streaming consumers; drops when full."""

    def __init__(self, maxsize: int = 256):
        self.queue: "queue.Queue[Optional[Tuple[str, bytes]]]" = queue.Queue(maxsize)
        self.dropped = 0
        self._closed = False

    def __call__(self, stream: str, chunk: bytes) -> None:
        self._offer((stream, chunk))

    def _offer(self, item: Optional[Tuple[str, bytes]]) -> None:
        try:
            self.queue.put_nowait(item)
        except queue.Full:
            self.dropped += 1

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # end-of-stream marker must get through even when the queue is full
        while True:
            try:
                self.queue.put_nowait(None)
                return
            except queue.Full:
                try:
                    self.queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def drain(self) -> List[Tuple[str, bytes]]:
        items: List[Tuple[str, bytes]] = []
        while True:
            try:
                item = self.queue.get_nowait()
            except queue.Empty:
                return items
            if item is None:
                return items
            items.append(item)


class OutputCollector:
    """
    One reader thread per pipe. The reader never stops draining, so a
    chatty process is never blocked on a full pipe; bytes past the ceiling
    are read and thrown away.
    """

    def __init__(self, ceiling: int, on_chunk: Optional[ChunkCallback] = None, chunk_size: int = CHUNK_BYTES):
        self.buffers: Dict[str, BoundedBuffer] = {
            "stdout": BoundedBuffer(ceiling),
            "stderr": BoundedBuffer(ceiling),
        }
        self.on_chunk = on_chunk
        self.chunk_size = chunk_size
        self._threads: List[threading.Thread] = []
        self._pipes: List[IO[bytes]] = []

    def attach(self, stdout: Optional[IO[bytes]], stderr: Optional[IO[bytes]]) -> None:
        for name, pipe in (("stdout", stdout), ("stderr", stderr)):
            if pipe is None:
                continue
            self._pipes.append(pipe)
            t = threading.Thread(target=self._pump, args=(name, pipe), name=f"collector-{name}", daemon=True)
            t.start()
            self._threads.append(t)

    def _pump(self, name: str, pipe: IO[bytes]) -> None:
        buf = self.buffers[name]
        try:
            while True:
                chunk = pipe.read1(self.chunk_size) if hasattr(pipe, "read1") else pipe.read(self.chunk_size)
                if not chunk:
                    break
                kept = buf.feed(chunk)
                if kept and self.on_chunk is not None:
                    try:
                        self.on_chunk(name, kept)
                    except Exception:
                        log.exception("collector.subscriber_failed", stream=name)
                        self.on_chunk = None
        except (OSError, ValueError):
            # pipe torn down with the process
            pass

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for both readers to hit EOF. False if one is still blocked
        (some process outside our reach still holds the write end)."""
        for t in self._threads:
            t.join(timeout)
        return not any(t.is_alive() for t in self._threads)

    def close(self) -> None:
        # a reader still blocked holds the buffer lock; closing would block too,
        # so its pipe is left to the daemon thread until the writer goes away
        for pipe, t in zip(self._pipes, self._threads):
            if t.is_alive():
                log.warning("collector.reader_stuck", thread=t.name)
                continue
            try:
                pipe.close()
            except OSError:
                pass

    def result(self, name: str) -> Tuple[bytes, bool]:
        buf = self.buffers[name]
        return buf.getvalue(), buf.truncated
