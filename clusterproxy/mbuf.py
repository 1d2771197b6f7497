"""Fixed-size read buffers, a recycling pool, and ranges spanning buffer queues."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Optional, Sequence

RECYCLE_LENGTH = 8192
BUF_TIME_LIMIT = 512


class MBuf:
    """A fixed-size byte buffer with a read cursor (pos) and a write cursor (last)."""

    __slots__ = ("data", "pos", "last", "queue", "refcount")

    def __init__(self, size):
        self.data = bytearray(size)
        self.pos = 0
        self.last = 0
        self.queue: Optional[list] = None
        self.refcount = 0

    @property
    def end(self) -> int:
        return len(self.data)

    def read_size(self) -> int:
        """Bytes written but not yet consumed."""
        return self.last - self.pos

    def write_size(self) -> int:
        """Free space left after the write cursor."""
        return self.end - self.last

    def write(self, data) -> int:
        """Append as much of data as fits; return the number of bytes copied."""
        n = min(len(data), self.write_size())
        self.data[self.last:self.last + n] = data[:n]
        self.last += n
        return n

    def __repr__(self):
        return (f"MBuf(size={self.end}, pos={self.pos}, last={self.last}, "
                f"refcount={self.refcount})")


@dataclass(eq=False)
class BufPtr:
    """A position inside a buffer."""

    buf: Optional[MBuf] = None
    pos: int = 0

    def clear(self):
        self.buf = None
        self.pos = 0


@dataclass(eq=False)
class BufTime:
    """When data up to pos in buf was read from a client socket."""

    buf: Optional[MBuf] = None
    pos: int = 0
    read_time: int = 0


def _range_bufs(ptr: Sequence[BufPtr]) -> list:
    first, last = ptr[0].buf, ptr[1].buf
    if first is last or first.queue is None:
        return [first]
    queue = first.queue
    start = next(i for i, b in enumerate(queue) if b is first)
    bufs = []
    for b in queue[start:]:
        bufs.append(b)
        if b is last:
            break
    return bufs


def _span(b: MBuf, ptr: Sequence[BufPtr]):
    start = ptr[0].pos if b is ptr[0].buf else 0
    end = ptr[1].pos if b is ptr[1].buf else b.end
    return start, end


def range_len(ptr) -> int:
    """Length in bytes of the range from ptr[0] to ptr[1]."""
    total = 0
    for b in _range_bufs(ptr):
        start, end = _span(b, ptr)
        total += end - start
    return total


def range_copy(ptr, max_len) -> bytes:
    """Copy at most max_len bytes of the range from ptr[0] to ptr[1]."""
    out = bytearray()
    for b in _range_bufs(ptr):
        if len(out) >= max_len:
            break
        start, end = _span(b, ptr)
        end = min(end, start + max_len - len(out))
        out += b.data[start:end]
    return bytes(out)


class MBufPool:
    """Hands out buffers of one size and keeps released ones for reuse."""

    def __init__(self, bufsize):
        self.bufsize = bufsize
        self.buffers = 0
        self.free_buffers = 0
        self.buf_times = 0
        self.free_buf_times = 0
        self._free = deque()
        self._free_times = deque()

    def get(self) -> MBuf:
        """Return an empty buffer, reusing a recycled one if available."""
        if self._free:
            buf = self._free.popleft()
            self.free_buffers -= 1
        else:
            buf = MBuf(self.bufsize)
        buf.pos = 0
        buf.last = 0
        buf.queue = None
        buf.refcount = 0
        self.buffers += 1
        return buf

    def recycle(self, buf: MBuf):
        """Give a buffer back; it is dropped once the free list is full."""
        self.buffers -= 1
        if self.free_buffers > RECYCLE_LENGTH:
            return
        self._free.appendleft(buf)
        self.free_buffers += 1

    def destroy(self):
        """Drop every buffer held on the free list."""
        while self._free:
            self._free.popleft()
            self.free_buffers -= 1

    def _release(self, buf: MBuf):
        if buf.queue is not None:
            buf.queue.remove(buf)
        self.recycle(buf)

    def range_clear(self, ptr):
        """Drop one reference from each buffer in the range and reset both ends.

        Buffers left unreferenced and fully consumed leave their queue and are recycled.
        """
        if ptr[0].buf is not None:
            for b in _range_bufs(ptr):
                b.refcount -= 1
                if b.refcount <= 0 and b.pos >= b.last:
                    self._release(b)
        ptr[0].clear()
        ptr[1].clear()

    def decref(self, bufs):
        """Drop one reference from each buffer; return bufs with released ones as None."""
        kept = []
        for b in bufs:
            if b is None:
                kept.append(None)
                continue
            b.refcount -= 1
            if b.refcount <= 0:
                self._release(b)
                kept.append(None)
            else:
                kept.append(b)
        return kept

    def buf_time_append(self, queue, buf, read_time) -> BufTime:
        """Record that buf was filled up to its write cursor at read_time."""
        if self._free_times:
            t = self._free_times.popleft()
            self.free_buf_times -= 1
        else:
            t = BufTime()
        t.buf = buf
        t.pos = buf.last
        t.read_time = read_time
        queue.append(t)
        self.buf_times += 1
        return t

    def buf_time_free(self, t: BufTime):
        """Give a time record back for reuse."""
        self.buf_times -= 1
        if self.free_buf_times > BUF_TIME_LIMIT:
            return
        t.buf = None
        self._free_times.appendleft(t)
        self.free_buf_times += 1