import os
import threading

import pytest

from coderunner.runner.output import BoundedBuffer, OutputCollector, OutputSubscription

pytestmark = pytest.mark.unit


def test_buffer_keeps_exactly_the_ceiling():
    buf = BoundedBuffer(10)
    assert buf.feed(b"12345678") == b"12345678"
    assert buf.feed(b"abcdef") == b"ab"
    assert buf.feed(b"zzz") == b""
    assert buf.getvalue() == b"12345678ab"
    assert buf.total == 17
    assert buf.truncated


def test_buffer_at_ceiling_is_not_truncated():
    buf = BoundedBuffer(4)
    buf.feed(b"abcd")
    assert buf.getvalue() == b"abcd"
    assert not buf.truncated


def _pipe_writer(data: bytes):
    r, w = os.pipe()

    def _write():
        with os.fdopen(w, "wb") as f:
            f.write(data)

    t = threading.Thread(target=_write, daemon=True)
    t.start()
    return os.fdopen(r, "rb"), t


def test_collector_drains_past_ceiling():
    # far more than a pipe buffer: the writer only finishes if the reader keeps draining
    out, writer = _pipe_writer(b"x" * 1_000_000)
    err, err_writer = _pipe_writer(b"oops\n")
    seen = []

    col = OutputCollector(1000, on_chunk=lambda name, chunk: seen.append((name, chunk)), chunk_size=4096)
    col.attach(out, err)
    assert col.join(10)
    writer.join(5)
    err_writer.join(5)
    col.close()

    data, truncated = col.result("stdout")
    assert data == b"x" * 1000
    assert truncated
    assert col.result("stderr") == (b"oops\n", False)
    # subscribers only ever see retained bytes
    assert sum(len(c) for n, c in seen if n == "stdout") == 1000


def test_failing_subscriber_does_not_stop_collection():
    out, _ = _pipe_writer(b"a" * 5000)

    def boom(name, chunk):
        raise RuntimeError("subscriber went away")

    col = OutputCollector(100, on_chunk=boom, chunk_size=512)
    col.attach(out, None)
    assert col.join(5)
    col.close()
    assert col.result("stdout") == (b"a" * 100, True)


def test_subscription_drops_on_overflow_and_always_ends():
    sub = OutputSubscription(maxsize=2)
    for i in range(5):
        sub("stdout", str(i).encode())
    assert sub.dropped == 3

    sub.close()
    sub.close()
    items = sub.drain()
    # one queued chunk made room for the end marker
    assert items == [("stdout", b"1")]
    assert sub.dropped == 4
