"""
Tests for the per-node output buffer and the pipe readers feeding it.
"""

import io

from node_manager.local.models import StreamKind
from node_manager.local.supervisor.output import OutputBuffer, capture_process_output


def test_append_assigns_increasing_sequence_numbers():
    """Every appended line gets a sequence number one higher than the last"""
    buffer = OutputBuffer()
    first = buffer.append(StreamKind.STDOUT, "one")
    second = buffer.append(StreamKind.STDERR, "two")

    assert second.seq == first.seq + 1
    assert buffer.last_seq == second.seq
    assert [entry.text for entry in buffer.lines()] == ["one", "two"]


def test_buffer_keeps_most_recent_lines_in_order():
    """A full stream evicts its oldest lines and keeps exactly the newest 5000"""
    buffer = OutputBuffer(max_lines=5000)
    for i in range(5003):
        buffer.append(StreamKind.STDOUT, f"line {i}")

    lines = buffer.lines(StreamKind.STDOUT)
    assert len(lines) == 5000
    assert lines[0].text == "line 3"
    assert lines[-1].text == "line 5002"
    assert [entry.seq for entry in lines] == sorted(entry.seq for entry in lines)


def test_streams_are_bounded_independently():
    """A noisy stdout never pushes stderr lines out"""
    buffer = OutputBuffer(max_lines=3)
    buffer.append(StreamKind.STDERR, "error: disk full")
    for i in range(10):
        buffer.append(StreamKind.STDOUT, f"progress {i}")

    assert [entry.text for entry in buffer.lines(StreamKind.STDERR)] == ["error: disk full"]
    assert len(buffer.lines(StreamKind.STDOUT)) == 3
    assert len(buffer) == 4


def test_since_tail_and_drain():
    """Readers can page through new lines, look at the tail or take everything"""
    buffer = OutputBuffer()
    for i in range(5):
        buffer.append(StreamKind.STDOUT, str(i))
    marker = buffer.last_seq
    buffer.append(StreamKind.SUPERVISOR, "$ bitcoind")

    assert [entry.text for entry in buffer.since(marker)] == ["$ bitcoind"]
    assert [entry.text for entry in buffer.tail(2)] == ["4", "$ bitcoind"]
    assert buffer.tail(0) == []

    drained = buffer.drain()
    assert len(drained) == 6
    assert len(buffer) == 0
    assert buffer.last_seq == marker + 1


def test_capture_process_output_reads_both_pipes():
    """Reader threads decode lines, keep empty ones and stop at end of stream"""
    buffer = OutputBuffer()
    stdout = io.BytesIO(b"Bitcoin Core starting\r\n\nw\xc3\xb6rld\n")
    stderr = io.BytesIO(b"bad \xff byte\n")

    threads = capture_process_output(stdout, stderr, buffer, "bitcoind")
    for thread in threads:
        thread.join(timeout=5)

    assert [thread.name for thread in threads] == ["bitcoind-stdout-reader", "bitcoind-stderr-reader"]
    assert [entry.text for entry in buffer.lines(StreamKind.STDOUT)] == ["Bitcoin Core starting", "", "wörld"]
    assert buffer.lines(StreamKind.STDERR)[0].text == "bad � byte"
    assert stdout.closed and stderr.closed


def test_capture_process_output_skips_missing_pipes():
    buffer = OutputBuffer()
    threads = capture_process_output(None, io.BytesIO(b"only stderr\n"), buffer, "electrs")
    for thread in threads:
        thread.join(timeout=5)

    assert len(threads) == 1
    assert buffer.lines()[0].stream is StreamKind.STDERR
