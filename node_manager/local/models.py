"""
Value types shared by the supervisor, health classifier and updater.
"""
from enum import Enum
from pathlib import Path
from collections import namedtuple
from typing import Tuple


class Role(str, Enum):
    """The two node roles managed by the supervisor."""
    FULL_NODE = "bitcoin"
    INDEXER = "electrs"

    @property
    def binary_name(self) -> str:
        return "bitcoind" if self is Role.FULL_NODE else "electrs"

    @classmethod
    def parse(cls, text: str) -> "Role":
        """Accepts a role name ('bitcoin', 'electrs') or its binary name ('bitcoind')."""
        lowered = text.strip().lower()
        for role in cls:
            if lowered in (role.value, role.binary_name):
                return role
        raise ValueError(f"Unknown node '{text}'. Expected one of: bitcoin, electrs")


class Phase(str, Enum):
    """Lifecycle phase of one node's OS process."""
    NOT_STARTED = "not started"
    LAUNCHING = "launching"
    RUNNING = "running"
    SHUTDOWN_PHASE1 = "shutting down"
    SHUTDOWN_PHASE2 = "force killing"
    STOPPED = "stopped"

    @property
    def is_shutting_down(self) -> bool:
        return self in (Phase.SHUTDOWN_PHASE1, Phase.SHUTDOWN_PHASE2)

    @property
    def is_idle(self) -> bool:
        return self in (Phase.NOT_STARTED, Phase.STOPPED)


class SyncState(str, Enum):
    UNKNOWN = "unknown"
    SYNCING = "syncing"
    SYNCED = "synced"


class SyncStatus(namedtuple("SyncStatus", ["state", "progress"])):
    """Sync classification of a node; `progress` is a 0..1 fraction when known."""
    __slots__ = ()

    @property
    def is_synced(self) -> bool:
        return self.state is SyncState.SYNCED

    def __str__(self) -> str:
        if self.state is SyncState.SYNCING and self.progress is not None:
            return f"syncing ({self.progress * 100:.2f}%)"
        return self.state.value


SYNC_UNKNOWN = SyncStatus(SyncState.UNKNOWN, None)
SYNC_DONE = SyncStatus(SyncState.SYNCED, 1.0)


class StreamKind(str, Enum):
    """Category of a captured output line."""
    STDOUT = "stdout"
    STDERR = "stderr"
    SUPERVISOR = "supervisor"


OutputLine = namedtuple("OutputLine", ["seq", "timestamp", "stream", "text"])

BlockchainInfo = namedtuple(
    "BlockchainInfo",
    ["blocks", "headers", "verification_progress", "chain", "initial_block_download"],
)


class ShutdownTarget(str, Enum):
    INDEXER_ONLY = "electrs"
    BOTH = "both"

    @property
    def roles(self) -> Tuple[Role, ...]:
        if self is ShutdownTarget.INDEXER_ONLY:
            return (Role.INDEXER,)
        return (Role.INDEXER, Role.FULL_NODE)


class Readiness(namedtuple("Readiness", ["running", "synced"])):
    __slots__ = ()

    @property
    def ready(self) -> bool:
        return self.running and self.synced


NodeStatus = namedtuple(
    "NodeStatus",
    ["role", "phase", "pid", "exit_code", "sync", "block_height", "last_error", "readiness"],
)


class BinaryCandidate(namedtuple("BinaryCandidate", ["role", "version", "path"])):
    """A versioned build folder found in the staging directory."""
    __slots__ = ()

    @property
    def folder_name(self) -> str:
        return Path(self.path).name

    @property
    def version_string(self) -> str:
        return ".".join(str(part) for part in self.version)


Version = Tuple[int, int, int]
