"""Slow command log: entries in the server's slowlog format, a ring of them, and statsd counts."""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .mbuf import range_copy, range_len
from .parser import DataType, RedisData

SLOWLOG_ENTRY_MAX_ARGC = 32
SLOWLOG_ENTRY_MAX_STRING = 128
SLOWLOG_MAX_ARG_LEN = 120  # SLOWLOG_ENTRY_MAX_STRING minus room for "$120\r\n" and "\r\n"

MULTI_KEY_COMMANDS = frozenset({"MGET", "MSET", "DEL", "EXISTS"})

_ID_MASK = 0xFFFFFFFF
_id_lock = threading.Lock()
_last_id = 0


def _next_id() -> int:
    global _last_id
    with _id_lock:
        _last_id = (_last_id + 1) & _ID_MASK
        return _last_id


class RequestType(enum.Enum):
    """How a command is served; extra and unimplemented ones are never logged."""

    BASIC = "basic"
    COMPLEX = "complex"
    EXTRA = "extra"
    UNIMPL = "unimpl"


@dataclass(eq=False)
class SlowlogEntry:
    """One slow command, shared by the ring and any readers holding it."""

    id: int = 0
    log_time: int = 0
    remote_latency: int = 0
    total_latency: int = 0
    refcount: int = 1
    argv: List[bytes] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def argc(self) -> int:
        return len(self.argv)

    def _inc_ref(self):
        with self._lock:
            self.refcount += 1

    def dec_ref(self) -> int:
        """Drop one reference; the arguments are released with the last one."""
        with self._lock:
            self.refcount -= 1
            refcount = self.refcount
        if refcount < 0:
            raise RuntimeError("slowlog entry released too many times")
        if refcount == 0:
            self.argv = []
        return refcount


def _extract_prefix(prefix) -> bytes:
    if isinstance(prefix, str):
        prefix = prefix.encode("latin-1")
    header_end = prefix.find(b"\r\n")
    if header_end < 0:
        raise ValueError(f"invalid command prefix {prefix!r}")
    name = prefix[header_end + 2:]
    if not name:
        raise ValueError(f"invalid command prefix {prefix!r}")
    return bytes(name)


def _shorten(arg: RedisData) -> bytes:
    head = b"$%d\r\n" % SLOWLOG_MAX_ARG_LEN + arg.pos.to_bytes(SLOWLOG_MAX_ARG_LEN)
    postfix = b"(%d bytes)" % arg.pos.str_len
    keep = SLOWLOG_ENTRY_MAX_STRING - 2 - len(postfix)
    return head[:keep] + postfix + b"\r\n"


def create_entry(data, remote_latency, total_latency, prefix=None) -> SlowlogEntry:
    """Build an entry from a parsed request array.

    At most SLOWLOG_ENTRY_MAX_ARGC arguments are kept, each in protocol form;
    an argument longer than SLOWLOG_ENTRY_MAX_STRING is cut down and marked
    with its full size, and when arguments are dropped the last slot says how
    many there were.  A sub-command prefix contributes its command name first.
    """
    elements = data.elements
    if elements <= 0:
        raise ValueError("cannot log a command without arguments")

    argc = min(elements, SLOWLOG_ENTRY_MAX_ARGC)
    argv: List[bytes] = []

    if prefix:
        argv.append(_extract_prefix(prefix))
        argc = min(argc, SLOWLOG_ENTRY_MAX_ARGC - 1)

    tail = None
    if elements > argc:
        argc -= 1
        text = b"(%d arguments in total)" % elements
        tail = b"$%d\r\n%s\r\n" % (len(text), text)

    for arg in data.element[:argc]:
        if arg.type != DataType.STRING:
            raise ValueError(f"expect string argument, got {arg.type!r}")
        real_len = range_len(arg.buf)
        if real_len > SLOWLOG_ENTRY_MAX_STRING:
            argv.append(_shorten(arg))
        else:
            argv.append(range_copy(arg.buf, real_len))

    if tail is not None:
        argv.append(tail)

    return SlowlogEntry(
        id=_next_id(),
        log_time=int(time.time()),
        remote_latency=remote_latency,
        total_latency=total_latency,
        refcount=1,
        argv=argv,
    )


@dataclass(eq=False)
class SubCommand:
    """One part of a split multi-key command, with its reply start and end times in microseconds."""

    data: RedisData
    rep_time: Tuple[int, int] = (0, 0)
    prefix: Optional[bytes] = None


def create_sub_entry(cmd_type, sub_cmds, total_latency) -> Optional[SlowlogEntry]:
    """Entry for the slowest part of a multi-key command named cmd_type.

    Returns None for other commands, when there are no parts, or when no part
    has a positive remote latency (as happens when forwarding failed).
    """
    if str(cmd_type).upper() not in MULTI_KEY_COMMANDS:
        return None
    slowest = None
    max_remote_latency = 0
    for sub in sub_cmds:
        remote_latency = sub.rep_time[1] - sub.rep_time[0]
        if remote_latency > max_remote_latency:
            max_remote_latency = remote_latency
            slowest = sub
    if slowest is None:
        return None
    return create_entry(slowest.data, max_remote_latency // 1000, total_latency,
                        slowest.prefix)


class SlowlogQueue:
    """A fixed ring of entries, one per worker thread's share of max_len."""

    def __init__(self, max_len, threads):
        if max_len <= 0 or threads <= 0:
            raise ValueError("slowlog length and thread count must be positive")
        self.capacity = 1 + (max_len - 1) // threads
        self.entries: List[Optional[SlowlogEntry]] = [None] * self.capacity
        self._locks = [threading.Lock() for _ in range(self.capacity)]
        self.curr = 0

    def set(self, entry):
        """Store entry at the cursor, releasing whatever it replaces."""
        curr = self.curr
        with self._locks[curr]:
            old = self.entries[curr]
            self.entries[curr] = entry
        self.curr = (curr + 1) % self.capacity
        if old is not None:
            old.dec_ref()

    def get(self, index) -> Optional[SlowlogEntry]:
        """The entry at index with a new reference taken, or None if empty."""
        with self._locks[index]:
            entry = self.entries[index]
            if entry is None:
                return None
            entry._inc_ref()
            return entry

    def free(self):
        """Release every stored entry."""
        for i, entry in enumerate(self.entries):
            if entry is not None:
                entry.dec_ref()
            self.entries[i] = None


def cmd_enabled(max_len, log_slower_than) -> bool:
    return max_len > 0 and log_slower_than >= 0


def statsd_enabled(log_slower_than, statsd_enabled, stats) -> bool:
    return log_slower_than >= 0 and bool(statsd_enabled) and bool(stats)


def type_need_log(request_type, reply_type) -> bool:
    return (request_type not in (RequestType.EXTRA, RequestType.UNIMPL)
            and reply_type != DataType.ERROR)


def need_log(request_type, reply_type, elements, latency, log_slower_than) -> bool:
    """Whether a command taking latency microseconds belongs in the slow log."""
    return (log_slower_than >= 0
            and type_need_log(request_type, reply_type)
            and elements > 0
            and latency > log_slower_than * 1000)


class SlowlogStats:
    """Per-node and total counts of slow commands, indexed by command type."""

    def __init__(self, cmd_num):
        self.cmd_num = cmd_num
        self.slow_counts: Dict[str, List[int]] = {}
        self.counts_sum: List[int] = [0] * cmd_num
        self.multi_key_counts: Dict[int, int] = {}
        self._lock = threading.Lock()

    def add_count(self, cmd_type, server_counts):
        """Count one slow command.

        Multi-key commands have no single server; pass server_counts as None
        and only their total is kept.
        """
        with self._lock:
            if server_counts is None:
                self.multi_key_counts[cmd_type] = self.multi_key_counts.get(cmd_type, 0) + 1
            else:
                server_counts[cmd_type] += 1

    def prepare(self, servers: Iterable[Tuple[str, Sequence[int]]]):
        """Collect and reset counts from (dsn, counts) pairs into slow_counts and counts_sum."""
        with self._lock:
            for counts in self.slow_counts.values():
                counts[:] = [0] * self.cmd_num
            self.counts_sum = [0] * self.cmd_num

            for dsn, server_counts in servers:
                node_counts = None
                for j, count in enumerate(server_counts):
                    if count == 0:
                        continue
                    server_counts[j] = 0
                    if node_counts is None:
                        node_counts = self.slow_counts.setdefault(dsn, [0] * self.cmd_num)
                    node_counts[j] += count
                    self.counts_sum[j] += count

            for cmd_type, count in self.multi_key_counts.items():
                self.counts_sum[cmd_type] = count
                self.multi_key_counts[cmd_type] = 0