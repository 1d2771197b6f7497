# clusterproxy

Components for a proxy that sits in front of a Redis Cluster. The package uses
only the Python standard library.

## Modules

### `clusterproxy.mbuf`

- `MBuf(size)` is a fixed-size byte buffer. It has a read cursor (`pos`), a
  write cursor (`last`), a `refcount`, and the `queue` list it belongs to.
  `write(data)` copies as much of `data` as fits and returns the number of bytes
  copied. `read_size()` and `write_size()` report the unread bytes and the free
  space.
- `BufPtr(buf, pos)` marks a position inside a buffer.
- `range_len(ptr)` and `range_copy(ptr, max_len)` measure and copy the bytes
  between `ptr[0]` and `ptr[1]`. The range may span several buffers that sit in
  the same queue. `range_copy` returns `bytes`.
- `MBufPool(bufsize)` hands out empty buffers with `get()` and takes them back
  with `recycle(buf)`. It keeps at most 8192 free buffers.
  - `range_clear(ptr)` drops one reference from each buffer in a range and
    resets both pointers. A buffer that ends up unreferenced and fully read is
    taken out of its queue and recycled.
  - `decref(bufs)` drops one reference from each buffer. It returns the list
    with released buffers replaced by `None`.
  - `buf_time_append` and `buf_time_free` record when a buffer was filled.

### `clusterproxy.parser`

`Reader` is a resumable RESP parser. Hand it a buffer with `feed(buf)` and call
`parse(mode)`. The call returns `True` once a whole value has been read. If the
value continues in the next buffer, feed that buffer and call `parse` again.
Malformed input raises `ProtocolError`.

In `Mode.REQ` the result is kept in `reader.data` as a tree of `RedisData`:

- `type` is a `DataType`.
- `element` and `elements` hold arrays.
- `integer` holds integers.
- `pos` is a `PosArray` of `Pos` pieces pointing into the buffers.

`PosArray.to_bytes(limit)` joins the pieces. `PosArray.is_zero()` tells whether
a non-empty string is made only of `'0'` characters. In `Mode.REP` the reader
only checks the reply and records where it starts and ends (`reader.start`,
`reader.end`). Nesting is limited to 9 levels.

### `clusterproxy.slowlog`

- `create_entry(data, remote_latency, total_latency, prefix=None)` builds a
  `SlowlogEntry` from a parsed request array. The arguments are kept in protocol
  form, up to 32 of them. An argument longer than 128 bytes is cut short and
  tagged with its full size. When arguments are dropped, the last slot records
  how many there were in total.
- `create_sub_entry(cmd_type, sub_cmds, total_latency)` logs the slowest
  `SubCommand` of a multi-key command (`MGET`, `MSET`, `DEL`, `EXISTS`).
- `SlowlogQueue(max_len, threads)` is a ring of entries. It shares its size
  among worker threads and counts references on its entries. Its methods are
  `set`, `get` and `free`. `SlowlogEntry.dec_ref()` releases a reference.
- `cmd_enabled`, `statsd_enabled`, `type_need_log` and `need_log` decide whether
  a command should be logged. `RequestType` is the request kind they use for
  that decision.
- `SlowlogStats(cmd_num)` counts slow commands per node and in total
  (`add_count`, `prepare`). The totals end up in `slow_counts` and `counts_sum`.

### `clusterproxy.logging`

`Logger(cluster, bind, level, use_syslog)` has a `log(level, fmt, *args)` method.
It drops messages below `level`. Other messages are written to `stream` (stderr
when `stream` is unset) in the form
`timestamp LEVEL [cluster bind pid tid]: message (file:line)`. When `use_syslog`
is set, the message goes to syslog instead. `log` returns the text it emitted.
`LogLevel`, `level_str` and `format_timestamp` are helpers.

## Example

```python
from clusterproxy.mbuf import MBufPool
from clusterproxy.parser import Reader, Mode
from clusterproxy.slowlog import create_entry

pool = MBufPool(16384)
buf = pool.get()
buf.write(b"*2\r\n$3\r\nGET\r\n$9\r\nuser{42}x\r\n")

reader = Reader()
reader.feed(buf)
if reader.parse(Mode.REQ):
    command = reader.data
    print(command.element[1].pos.to_bytes())   # b'user{42}x'
    entry = create_entry(command, 1200, 1500)
    print(entry.argv)   # [b'$3\r\nGET\r\n', b'$9\r\nuser{42}x\r\n']
```

## What it does not do

This package is a set of parts, not a running proxy. It has no command to start.
It does not:

- listen on or connect to sockets;
- compute which cluster slot a key belongs to, or map slots to nodes;
- send metrics to statsd.

Those pieces have to be supplied by the program that uses these modules.

## Installing and testing

```
pip install .
pip install ".[test]"
pytest
```