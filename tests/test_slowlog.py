import pytest

from clusterproxy.mbuf import MBuf
from clusterproxy.parser import DataType, Mode, Reader
from clusterproxy.slowlog import (
    RequestType,
    SlowlogEntry,
    SlowlogQueue,
    SlowlogStats,
    SubCommand,
    cmd_enabled,
    create_entry,
    create_sub_entry,
    need_log,
    statsd_enabled,
    type_need_log,
)


def parse_request(raw: bytes):
    buf = MBuf(len(raw))
    buf.write(raw)
    reader = Reader()
    reader.feed(buf)
    assert reader.parse(Mode.REQ)
    return reader.data


def test_create_entry():
    data = parse_request(b"*3\r\n$3\r\nSET\r\n$4\r\nkey1\r\n$6\r\nvalue1\r\n")
    entry = create_entry(data, 233666, 666233, None)
    assert entry.remote_latency == 233666
    assert entry.total_latency == 666233
    assert entry.refcount == 1
    assert entry.argc == 3
    assert entry.argv == [b"$3\r\nSET\r\n", b"$4\r\nkey1\r\n", b"$6\r\nvalue1\r\n"]
    assert entry.dec_ref() == 0
    assert entry.argv == []


def test_create_entry_with_prefix():
    data = parse_request(b"*2\r\n$4\r\nkey2\r\n$6\r\nvalue2\r\n")
    entry = create_entry(data, 9394, 9493, b"*3\r\n$3\r\nSET\r\n")
    assert entry.remote_latency == 9394
    assert entry.total_latency == 9493
    assert entry.refcount == 1
    assert entry.argc == 3
    assert entry.argv == [b"$3\r\nSET\r\n", b"$4\r\nkey2\r\n", b"$6\r\nvalue2\r\n"]


LONG = b"1234567890qwertyuiopasdfghjklzxcvbnm" * 4


def test_create_entry_with_long_arg():
    raw = b"*37\r\n$4\r\nMGET\r\n$144\r\n" + LONG + b"\r\n" + b"$1\r\na\r\n" * 35
    data = parse_request(raw)
    entry = create_entry(data, 233666, 666233, None)
    long_value = (b"$120\r\n" + b"1234567890qwertyuiopasdfghjklzxcvbnm" * 3
                  + b"1(144 bytes)\r\n")
    assert len(long_value) == 128
    assert entry.argc == 32
    assert entry.argv[1] == long_value
    assert entry.argv[30] == b"$1\r\na\r\n"
    assert entry.argv[31] == b"$23\r\n(37 arguments in total)\r\n"


def test_create_entry_with_prefix_and_many_args():
    raw = b"*33\r\n" + b"$1\r\nb\r\n" * 33
    entry = create_entry(parse_request(raw), 1, 2, "*3\r\n$3\r\nSET\r\n")
    assert entry.argc == 32
    assert entry.argv[0] == b"$3\r\nSET\r\n"
    assert entry.argv[1] == b"$1\r\nb\r\n"
    assert entry.argv[31] == b"$23\r\n(33 arguments in total)\r\n"


def test_entry_ids_increase():
    data = parse_request(b"*1\r\n$4\r\nPING\r\n")
    first = create_entry(data, 0, 0, None)
    second = create_entry(data, 0, 0, None)
    assert second.id == first.id + 1


def test_create_entry_rejects_empty_command():
    data = parse_request(b"*0\r\n")
    with pytest.raises(ValueError):
        create_entry(data, 0, 0, None)


def test_entry_get_set():
    q = SlowlogQueue(2, 1)
    e1 = SlowlogEntry(refcount=2)
    e2 = SlowlogEntry(refcount=2)
    e3 = SlowlogEntry(refcount=2)

    assert q.curr == 0
    q.set(e1)
    assert q.curr == 1
    q.set(e2)
    assert q.curr == 0
    assert e1.refcount == 2
    assert e2.refcount == 2
    assert q.entries[0] is e1
    assert q.entries[1] is e2
    e4 = q.get(0)
    assert e1.refcount == 3
    assert e4 is e1
    q.set(e3)
    assert q.curr == 1
    assert q.entries[0] is e3
    assert e1.refcount == 2
    e4.dec_ref()
    assert e1.refcount == 1

    q.free()
    assert q.entries == [None, None]
    assert e3.refcount == 1


def test_queue_capacity_and_empty_get():
    q = SlowlogQueue(5, 2)
    assert q.capacity == 3
    assert q.get(2) is None
    with pytest.raises(ValueError):
        SlowlogQueue(0, 1)


def test_dec_ref_below_zero_raises():
    entry = SlowlogEntry(refcount=1)
    assert entry.dec_ref() == 0
    with pytest.raises(RuntimeError):
        entry.dec_ref()


def test_slowlog_statsd():
    get_type, mset_type = 3, 5
    stats = SlowlogStats(10)
    server_counts = [0] * 10

    stats.add_count(get_type, server_counts)
    stats.add_count(mset_type, None)
    stats.add_count(mset_type, None)
    assert server_counts[get_type] == 1

    stats.prepare([("localhost", server_counts)])
    assert stats.slow_counts["localhost"][get_type] == 1
    assert stats.counts_sum[get_type] == 1
    assert server_counts[get_type] == 0
    assert stats.counts_sum[mset_type] == 2

    stats.prepare([("localhost", server_counts)])
    assert stats.slow_counts["localhost"][get_type] == 0
    assert stats.counts_sum[mset_type] == 0


def test_failed_command_slowlog():
    data = parse_request(b"*2\r\n$4\r\nMGET\r\n$4\r\nkey1\r\n")
    entry = create_entry(data, 0, 666233, None)
    assert entry.remote_latency == 0
    assert entry.total_latency == 666233
    sub = SubCommand(data=data, rep_time=(0, 0))
    assert create_sub_entry("MGET", [sub], 666233) is None


def test_sub_entry_picks_slowest():
    fast = SubCommand(parse_request(b"*2\r\n$3\r\nGET\r\n$1\r\nx\r\n"), (1000, 3000))
    slow = SubCommand(parse_request(b"*2\r\n$3\r\nGET\r\n$1\r\ny\r\n"), (1000, 5000))
    entry = create_sub_entry("MGET", [fast, slow], 777)
    assert entry.remote_latency == 4
    assert entry.total_latency == 777
    assert entry.argv[1] == b"$1\r\ny\r\n"
    assert create_sub_entry("GET", [fast, slow], 777) is None
    assert create_sub_entry("MGET", [], 777) is None


def test_enable_checks():
    assert cmd_enabled(128, 0) is True
    assert cmd_enabled(0, 10) is False
    assert cmd_enabled(128, -1) is False
    assert statsd_enabled(0, True, True) is True
    assert statsd_enabled(0, True, False) is False
    assert statsd_enabled(-1, True, True) is False


def test_need_log():
    assert type_need_log(RequestType.BASIC, DataType.STRING) is True
    assert type_need_log(RequestType.EXTRA, DataType.STRING) is False
    assert type_need_log(RequestType.UNIMPL, DataType.STRING) is False
    assert type_need_log(RequestType.BASIC, DataType.ERROR) is False
    assert need_log(RequestType.BASIC, DataType.STRING, 2, 10001, 10) is True
    assert need_log(RequestType.BASIC, DataType.STRING, 2, 10000, 10) is False
    assert need_log(RequestType.BASIC, DataType.STRING, 0, 99999, 10) is False
    assert need_log(RequestType.BASIC, DataType.STRING, 2, 99999, -1) is False