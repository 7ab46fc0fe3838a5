"""
Health and sync classification for the two nodes.

The full node is judged from `getblockchaininfo` responses, the indexer from
the phrases it prints once caught up. In both cases `Synced` is sticky until the
process is relaunched.
"""
import logging
import threading
from typing import Iterable, Optional, Sequence, Tuple

from node_manager.local.errors import RpcError
from node_manager.local.models import (
    SYNC_DONE,
    SYNC_UNKNOWN,
    BlockchainInfo,
    Phase,
    Readiness,
    Role,
    StreamKind,
    SyncState,
    SyncStatus,
)
from .output import OutputBuffer

log = logging.getLogger(__name__)

_NODE_STREAMS = (StreamKind.STDOUT, StreamKind.STDERR)


def is_indexer_synced_line(line: str, phrases: Iterable[str]) -> bool:
    """Checks whether an electrs log line contains one of the caught-up phrases."""
    lowered = line.lower()
    return any(phrase in lowered for phrase in phrases)


def classify_full_node(info: BlockchainInfo, threshold: float) -> SyncStatus:
    """Maps a `getblockchaininfo` result to a sync status."""
    synced = (
        info.headers > 0
        and info.blocks >= info.headers - 1
        and info.verification_progress > threshold
    )
    if synced:
        return SYNC_DONE
    return SyncStatus(SyncState.SYNCING, max(0.0, min(1.0, info.verification_progress)))


def readiness(phase: Phase, sync: SyncStatus) -> Readiness:
    """Ready iff the process is running and the node reports synced."""
    return Readiness(running=phase is Phase.RUNNING, synced=sync.is_synced)


class NodeHealth:
    """Thread-safe health view of one node for the current process run."""

    def __init__(self, role: Role, sync_phrases: Sequence[str] = (), sync_threshold: float = 0.9999):
        self.role = role
        self.sync_phrases = tuple(phrase.lower() for phrase in sync_phrases)
        self.sync_threshold = sync_threshold
        self._lock = threading.Lock()
        self._sync = SYNC_UNKNOWN
        self._block_height: Optional[int] = None
        self._last_error: Optional[RpcError] = None
        self._scanned_seq = 0

    def reset(self, scanned_seq: int = 0) -> None:
        """
        Forgets everything learned about the previous process run.

        :param scanned_seq: Buffer sequence number up to which lines belong to older runs.
        """
        with self._lock:
            self._sync = SYNC_UNKNOWN
            self._block_height = None
            self._last_error = None
            self._scanned_seq = scanned_seq

    #* --- RPC evidence ---
    def observe_blockchain_info(self, info: BlockchainInfo) -> SyncStatus:
        status = classify_full_node(info, self.sync_threshold)
        with self._lock:
            self._block_height = info.blocks
            self._last_error = None
            if not self._sync.is_synced:
                if status.is_synced:
                    log.info(f"{self.role.binary_name} is synced at height {info.blocks}.")
                self._sync = status
            return self._sync

    def observe_rpc_error(self, error: RpcError) -> None:
        """Records a failed poll; the last known sync status and height are kept."""
        with self._lock:
            self._last_error = error

    #* --- Log evidence ---
    def scan_output(self, buffer: OutputBuffer) -> SyncStatus:
        """
        Checks lines appended since the last scan for a caught-up phrase.

        :param buffer: The node's output buffer.
        :return: The resulting sync status.
        """
        with self._lock:
            if self._sync.is_synced:
                return self._sync
            start = self._scanned_seq

        new_lines = buffer.since(start)
        if not new_lines:
            with self._lock:
                return self._sync

        # Supervisor notes are not electrs output.
        node_lines = [entry for entry in new_lines if entry.stream in _NODE_STREAMS]
        matched = next(
            (entry for entry in node_lines if is_indexer_synced_line(entry.text, self.sync_phrases)),
            None,
        )
        with self._lock:
            self._scanned_seq = max(self._scanned_seq, new_lines[-1].seq)
            if self._sync.is_synced or not node_lines:
                return self._sync
            if matched is not None:
                log.info(f"{self.role.binary_name} reports fully indexed: '{matched.text}'")
                self._sync = SYNC_DONE
            else:
                self._sync = SyncStatus(SyncState.SYNCING, None)
            return self._sync

    def snapshot(self) -> Tuple[SyncStatus, Optional[int], Optional[RpcError]]:
        with self._lock:
            return self._sync, self._block_height, self._last_error

    @property
    def sync(self) -> SyncStatus:
        with self._lock:
            return self._sync
