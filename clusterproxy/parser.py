"""Incremental parser for the Redis serialization protocol over MBuf buffers.

A Reader is fed one buffer at a time and resumes where it stopped when a
value spans several buffers.  In request mode the parsed value is kept as a
tree of RedisData whose strings point back into the buffers they came from.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional

from .mbuf import BufPtr, MBuf

MAX_DEPTH = 9

_CR = 0x0D
_LF = 0x0A
_MINUS = 0x2D


class ProtocolError(ValueError):
    """The input is not valid protocol data."""


class ParseState(enum.IntEnum):
    BEGIN = 0
    TYPE = 1
    ARRAY = 2
    ARRAY_BEGIN = 3
    ARRAY_LENGTH = 4
    ARRAY_END = 5
    STRING = 6
    STRING_BEGIN = 7
    STRING_LENGTH = 8
    STRING_ENTITY = 9
    STRING_END = 10
    INTEGER = 11
    INTEGER_BEGIN = 12
    INTEGER_LENGTH = 13
    INTEGER_END = 14
    SIMPLE_STRING = 15
    SIMPLE_STRING_BEGIN = 16
    SIMPLE_STRING_TYPE = 17
    SIMPLE_STRING_LENGTH = 18
    SIMPLE_STRING_END = 19
    ERROR = 20
    END = 21


class DataType(enum.IntEnum):
    UNKNOWN = 0
    ARRAY = 1
    STRING = 2
    INTEGER = 3
    SIMPLE_STRING = 4
    ERROR = 5


class Mode(enum.IntEnum):
    REP = 6
    REQ = 7


_TYPE_BYTES = {
    ord("*"): (ParseState.ARRAY_BEGIN, ParseState.ARRAY, DataType.ARRAY),
    ord("$"): (ParseState.STRING_BEGIN, ParseState.STRING, DataType.STRING),
    ord(":"): (ParseState.INTEGER_BEGIN, ParseState.INTEGER, DataType.INTEGER),
    ord("+"): (ParseState.SIMPLE_STRING_BEGIN, ParseState.SIMPLE_STRING,
               DataType.SIMPLE_STRING),
    ord("-"): (ParseState.SIMPLE_STRING_BEGIN, ParseState.ERROR, DataType.ERROR),
}


def _to_number(value: int, c: int) -> int:
    if not 0x30 <= c <= 0x39:
        raise ProtocolError(f"protocol error, {chr(c)!r} not between 0-9")
    return value * 10 + (c - 0x30)


@dataclass(eq=False)
class Pos:
    """A run of length bytes starting at start inside source."""

    source: Optional[bytearray] = None
    start: int = 0
    length: int = 0

    @property
    def value(self) -> bytes:
        if self.source is None:
            return b""
        return bytes(self.source[self.start:self.start + self.length])

    def __bytes__(self):
        return self.value


@dataclass(eq=False)
class PosArray:
    """The pieces of one string value, possibly split across buffers."""

    items: List[Pos] = field(default_factory=list)
    str_len: int = 0

    @property
    def pos_len(self) -> int:
        return len(self.items)

    def append(self, data: Pos) -> Pos:
        """Add a piece and count its length; return the piece."""
        self.items.append(data)
        self.str_len += data.length
        return data

    def to_bytes(self, limit=None) -> bytes:
        """Join the pieces, at most limit bytes; with no limit the string must be non-empty."""
        if limit is None:
            if self.str_len <= 0:
                raise ValueError(f"string length {self.str_len} <= 0")
            limit = self.str_len
        out = bytearray()
        for item in self.items:
            if len(out) >= limit:
                break
            out += item.value[:limit - len(out)]
        return bytes(out)

    def is_zero(self) -> bool:
        """True when the string is non-empty and made only of '0' characters."""
        if self.str_len <= 0:
            return False
        return all(ch == 0x30 for item in self.items for ch in item.value)


@dataclass(eq=False)
class RedisData:
    """One parsed protocol value."""

    type: DataType = DataType.UNKNOWN
    buf: List[BufPtr] = field(default_factory=lambda: [BufPtr(), BufPtr()])
    pos: PosArray = field(default_factory=PosArray)
    integer: int = 0
    element: Optional[List["RedisData"]] = None
    elements: int = 0

    def _reset(self):
        self.type = DataType.UNKNOWN
        self.buf = [BufPtr(), BufPtr()]
        self.pos = PosArray()
        self.integer = 0
        self.element = None
        self.elements = 0

    def move_from(self, other: "RedisData"):
        """Take over everything other holds and leave other empty."""
        self.type = other.type
        self.buf = other.buf
        self.pos = other.pos
        self.integer = other.integer
        self.element = other.element
        self.elements = other.elements
        other._reset()

    def clear(self):
        """Drop the value and any nested elements."""
        if self.element is not None:
            for child in self.element:
                child.clear()
        self._reset()


@dataclass(eq=False)
class ReaderTask:
    """Parsing state of one level of array nesting."""

    type: DataType = DataType.UNKNOWN
    elements: int = 0
    idx: int = 0
    prev_buf: Optional[MBuf] = None
    cur_data: Optional[RedisData] = None
    data: RedisData = field(default_factory=RedisData)


class Reader:
    """Resumable protocol parser; feed it buffers and call parse."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Return to the initial state, dropping any partial value."""
        self.buf: Optional[MBuf] = None
        self.type = ParseState.BEGIN
        self.item_type = ParseState.BEGIN
        self.redis_data_type = DataType.UNKNOWN
        self.sign = 1
        self.rstack = [ReaderTask() for _ in range(MAX_DEPTH)]
        self.sidx = -1
        self.data = RedisData()
        self.item_size = 0
        self.ready = False
        self.mode: Optional[Mode] = None
        self.start = BufPtr()
        self.end = BufPtr()
        self.stack_push(DataType.UNKNOWN)

    def feed(self, buf):
        """Make buf the buffer that parsing reads from."""
        self.buf = buf

    def stack_push(self, data_type):
        """Open a new nesting level of the given type."""
        if self.sidx + 1 >= MAX_DEPTH:
            raise ProtocolError(f"invalid array recursive depth {self.sidx}")
        self.sidx += 1
        self.rstack[self.sidx] = ReaderTask(
            type=data_type, elements=-1, data=RedisData(type=data_type)
        )

    def stack_pop(self) -> bool:
        """Close the current level; True when the top-level value is complete."""
        if self.sidx == 0:
            self.data.move_from(self.rstack[0].data)
            return True

        cur = self.rstack[self.sidx]
        self.sidx -= 1
        top = self.rstack[self.sidx]
        if top.type == DataType.UNKNOWN:
            self.data.move_from(cur.data)
            return True
        if top.type == DataType.ARRAY:
            if top.data.element is not None:
                top.data.element[top.idx].move_from(cur.data)
                top.idx += 1
            top.elements -= 1
            if top.elements <= 0:
                return self.stack_pop()
        return False

    @staticmethod
    def _data_get(task: ReaderTask, data_type) -> Optional[RedisData]:
        if task.type == DataType.UNKNOWN:
            task.data.type = data_type
            return task.data
        if task.type == DataType.ARRAY:
            if task.cur_data is not None:
                return task.cur_data
            if task.idx >= task.data.elements or task.data.element is None:
                return None
            task.cur_data = task.data.element[task.idx]
            task.idx += 1
            task.cur_data.type = data_type
            return task.cur_data
        raise ProtocolError(f"invalid task type {task.type}")

    def _end(self, elements: int):
        buf = self.buf
        c = buf.data[buf.pos]
        if c != _LF:
            buf.pos += 1
            raise ProtocolError(f"unexpected character {chr(c)!r}")
        if elements <= 0 and self.stack_pop():
            # the final '\n' is consumed by parse
            self.type = ParseState.END
        else:
            self.type = ParseState.TYPE
            buf.pos += 1

    def process_type(self):
        """Read the type byte of the next value."""
        c = self.buf.data[self.buf.pos]
        try:
            item_type, state, data_type = _TYPE_BYTES[c]
        except KeyError:
            raise ProtocolError(f"unknown command type {chr(c)!r}") from None
        if data_type in (DataType.ARRAY, DataType.STRING, DataType.INTEGER):
            self.item_size = 0
        self.item_type = item_type
        self.type = state
        self.redis_data_type = data_type
        if data_type == DataType.ARRAY:
            self.stack_push(DataType.ARRAY)

    def process_array(self):
        """Read an array header."""
        task = self.rstack[self.sidx]
        if task.type != DataType.ARRAY:
            raise ProtocolError(f"task type {task.type} is not array")

        buf = self.buf
        while buf.pos < buf.last:
            c = buf.data[buf.pos]
            if self.item_type == ParseState.ARRAY_BEGIN:
                self.item_type = ParseState.ARRAY_LENGTH
            elif self.item_type == ParseState.ARRAY_LENGTH:
                if c == _MINUS:
                    self.sign = -1
                elif c == _CR:
                    self.item_size *= self.sign
                    self.sign = 1
                    self.item_type = ParseState.ARRAY_END
                else:
                    v = _to_number(self.item_size, c)
                    self.item_size = v
                    if self.sign != -1:
                        task.elements = task.data.elements = v
            elif self.item_type == ParseState.ARRAY_END:
                task.data.element = None
                if c == _LF and task.data.elements > 0 and self.mode == Mode.REQ:
                    task.data.element = [RedisData() for _ in range(task.data.elements)]
                self._end(task.data.elements)
                return
            buf.pos += 1

    def process_string(self):
        """Read a bulk string, possibly continuing from an earlier buffer."""
        task = self.rstack[self.sidx]
        data = None
        arr = None
        if self.mode == Mode.REQ:
            data = self._data_get(task, DataType.STRING)
            if data is None:
                raise ProtocolError("fail to get data for string")
            arr = data.pos

        buf = self.buf
        while buf.pos < buf.last:
            p = buf.pos
            if self.item_type == ParseState.STRING_BEGIN:
                if data is not None:
                    data.buf[0].buf = buf
                    data.buf[0].pos = p
                self.item_type = ParseState.STRING_LENGTH
            elif self.item_type == ParseState.STRING_LENGTH:
                c = buf.data[p]
                if c == _MINUS:
                    self.sign = -1
                elif c == _CR:
                    self.item_size *= self.sign
                    self.sign = 1
                    if task.elements > 0:
                        task.elements -= 1
                    if self.item_size == -1:
                        self.item_type = ParseState.STRING_END
                elif c == _LF:
                    self.item_type = ParseState.STRING_ENTITY
                else:
                    self.item_size = _to_number(self.item_size, c)
            elif self.item_type == ParseState.STRING_ENTITY:
                remain = buf.last - p
                if self.item_size < remain:
                    self.item_type = ParseState.STRING_END
                    if self.item_size != 0:
                        buf.pos += self.item_size
                        if arr is not None:
                            arr.append(Pos(buf.data, p, self.item_size))
                        self.item_size = 0
                else:
                    self.item_size -= remain
                    buf.pos += remain - 1
                    if arr is not None:
                        arr.append(Pos(buf.data, p, remain))
            elif self.item_type == ParseState.STRING_END:
                task.cur_data = None
                if data is not None:
                    data.buf[1].buf = buf
                    data.buf[1].pos = buf.pos + 1
                self._end(task.elements)
                return
            buf.pos += 1

    def process_integer(self):
        """Read an integer value."""
        task = self.rstack[self.sidx]
        data = None
        if self.mode == Mode.REQ:
            data = self._data_get(task, DataType.INTEGER)
            if data is None:
                raise ProtocolError("fail to get data for integer")

        buf = self.buf
        while buf.pos < buf.last:
            c = buf.data[buf.pos]
            if self.item_type == ParseState.INTEGER_BEGIN:
                self.item_type = ParseState.INTEGER_LENGTH
            elif self.item_type == ParseState.INTEGER_LENGTH:
                if c == _MINUS:
                    self.sign = -1
                elif c == _CR:
                    self.item_size *= self.sign
                    self.sign = 1
                    if data is not None:
                        data.integer = self.item_size
                    if task.elements > 0:
                        task.elements -= 1
                    self.item_type = ParseState.INTEGER_END
                else:
                    self.item_size = _to_number(self.item_size, c)
            elif self.item_type == ParseState.INTEGER_END:
                task.cur_data = None
                self._end(task.elements)
                return
            buf.pos += 1

    def process_simple_string(self, data_type):
        """Read a simple string or error line of the given data type."""
        task = self.rstack[self.sidx]
        buf = self.buf
        data = None
        arr = None
        pos = None
        if self.mode == Mode.REQ:
            data = self._data_get(task, data_type)
            if data is None:
                raise ProtocolError("fail to get data for simple string")
            arr = data.pos
            if task.prev_buf is not buf:
                pos = arr.append(Pos())
                if task.prev_buf is not None:
                    pos.source = buf.data
                    pos.start = buf.pos
                    pos.length = 0
                task.prev_buf = buf
            else:
                pos = arr.items[-1]

        while buf.pos < buf.last:
            p = buf.pos
            c = buf.data[p]
            if self.item_type == ParseState.SIMPLE_STRING_BEGIN:
                self.item_type = ParseState.SIMPLE_STRING_TYPE
            elif self.item_type in (ParseState.SIMPLE_STRING_TYPE,
                                    ParseState.SIMPLE_STRING_LENGTH):
                if self.item_type == ParseState.SIMPLE_STRING_TYPE:
                    if pos is not None:
                        pos.source = buf.data
                        pos.start = p
                        pos.length = 0
                    self.item_type = ParseState.SIMPLE_STRING_LENGTH
                if c == _CR:
                    if task.elements > 0:
                        task.elements -= 1
                    self.item_type = ParseState.SIMPLE_STRING_END
                elif pos is not None and arr is not None:
                    pos.length += 1
                    arr.str_len += 1
            elif self.item_type == ParseState.SIMPLE_STRING_END:
                task.cur_data = None
                task.prev_buf = None
                self._end(task.elements)
                return
            buf.pos += 1

    def parse(self, mode) -> bool:
        """Parse from the current buffer; return True once a whole value is read.

        Raises ProtocolError on malformed input.
        """
        while self.buf.pos < self.buf.last:
            state = self.type
            if state == ParseState.BEGIN:
                buf = self.buf
                buf.refcount += 1
                self.reset()
                self.buf = buf
                self.mode = Mode(mode)
                self.type = ParseState.TYPE
                self.start = BufPtr(buf, buf.pos)
            elif state == ParseState.TYPE:
                self.process_type()
            elif state == ParseState.ARRAY:
                self.process_array()
            elif state == ParseState.STRING:
                self.process_string()
            elif state == ParseState.INTEGER:
                self.process_integer()
            elif state == ParseState.SIMPLE_STRING:
                self.process_simple_string(DataType.SIMPLE_STRING)
            elif state == ParseState.ERROR:
                self.process_simple_string(DataType.ERROR)
            elif state == ParseState.END:
                buf = self.buf
                c = buf.data[buf.pos]
                if c != _LF:
                    raise ProtocolError(f"unexpected character {chr(c)!r}")
                buf.pos += 1
                self.type = ParseState.BEGIN
                self.ready = True
                self.end = BufPtr(buf, buf.pos)
                if buf is not self.start.buf:
                    buf.refcount += 1
                return True
            else:
                raise ProtocolError("unknown parse type")
        return self.ready

    def free(self):
        """Release the parsed value and every partial level."""
        self.data.clear()
        for task in self.rstack[:self.sidx + 1]:
            task.data.clear()
        self.sidx = -1