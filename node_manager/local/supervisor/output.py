import time
import logging
import threading
from collections import deque
from typing import IO, Deque, Dict, List, Optional

from node_manager.local.models import OutputLine, StreamKind

log = logging.getLogger(__name__)


class OutputBuffer:
    """
    Bounded, thread-safe store of the lines a node printed.

    Each stream category keeps its own FIFO ring of at most `max_lines` entries;
    once full, every new line evicts the oldest one of that stream. All writers
    go through `append`. Readers take snapshots and never hold the lock
    while doing anything else.
    """

    def __init__(self, max_lines: int = 5000):
        self.max_lines = max_lines
        self._lock = threading.Lock()
        self._streams: Dict[StreamKind, Deque[OutputLine]] = {
            kind: deque(maxlen=max_lines) for kind in StreamKind
        }
        self._seq = 0

    def append(self, stream: StreamKind, text: str) -> OutputLine:
        """
        Appends one line to the tail of a stream.

        :param stream: The stream category the line came from.
        :param text: The decoded line without its trailing newline.
        :return: The stored entry, carrying its sequence number and timestamp.
        """
        with self._lock:
            self._seq += 1
            entry = OutputLine(self._seq, time.time(), stream, text)
            self._streams[stream].append(entry)
        return entry

    def lines(self, stream: Optional[StreamKind] = None) -> List[OutputLine]:
        """Returns a snapshot of one stream, or of all streams merged in arrival order."""
        with self._lock:
            if stream is not None:
                return list(self._streams[stream])
            merged = [entry for entries in self._streams.values() for entry in entries]
        merged.sort(key=lambda entry: entry.seq)
        return merged

    def since(self, seq: int) -> List[OutputLine]:
        """Returns all retained lines appended after sequence number `seq`."""
        return [entry for entry in self.lines() if entry.seq > seq]

    def tail(self, count: int, stream: Optional[StreamKind] = None) -> List[OutputLine]:
        """Returns the `count` most recent lines."""
        if count <= 0:
            return []
        return self.lines(stream)[-count:]

    def drain(self) -> List[OutputLine]:
        """Removes and returns every retained line in arrival order."""
        with self._lock:
            merged = [entry for entries in self._streams.values() for entry in entries]
            for entries in self._streams.values():
                entries.clear()
        merged.sort(key=lambda entry: entry.seq)
        return merged

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._seq

    def __len__(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._streams.values())


def _read_pipe(pipe: IO[bytes], buffer: OutputBuffer, stream: StreamKind, process_name: str) -> None:
    """Target function for reader threads. Appends every line of a pipe to the buffer until EOF."""
    proc_logger = logging.getLogger(f"proc.{process_name}.{stream.value}")
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip("\r\n")
            buffer.append(stream, line)
            proc_logger.debug(line)
    except (OSError, ValueError) as e:
        log.debug(f"Pipe reader for {process_name} {stream.value} exited: {e}")
    finally:
        pipe.close()
    log.debug(f"{process_name} {stream.value} reached end of stream.")


def capture_process_output(stdout: Optional[IO[bytes]], stderr: Optional[IO[bytes]],
                           buffer: OutputBuffer, process_name: str) -> List[threading.Thread]:
    """
    Starts one background reader per pipe of a spawned process.

    The readers never apply backpressure on the child: a slow consumer only
    loses the oldest lines of the buffer. They end on their own when the pipe
    closes and are never restarted.

    :param stdout: The child's standard output pipe.
    :param stderr: The child's standard error pipe.
    :param buffer: The node's output buffer.
    :param process_name: Logical name used for thread names and loggers.
    :return: The started reader threads.
    """
    threads = []
    for pipe, stream in ((stdout, StreamKind.STDOUT), (stderr, StreamKind.STDERR)):
        if pipe is None:
            continue
        thread = threading.Thread(
            target=_read_pipe,
            args=(pipe, buffer, stream, process_name),
            daemon=True,
            name=f"{process_name}-{stream.value}-reader",
        )
        thread.start()
        threads.append(thread)
    return threads
