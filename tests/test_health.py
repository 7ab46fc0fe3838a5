"""
Tests for sync classification and the sticky health view of each node.
"""

import pytest

from node_manager.local.errors import RpcUnreachable
from node_manager.local.models import (
    BlockchainInfo,
    Phase,
    Role,
    ShutdownTarget,
    StreamKind,
    SyncState,
)
from node_manager.local.supervisor.health import (
    NodeHealth,
    classify_full_node,
    is_indexer_synced_line,
    readiness,
)
from node_manager.local.supervisor.output import OutputBuffer
from node_manager.settings import INDEXER_SYNC_PHRASES


def info(blocks, headers, progress):
    return BlockchainInfo(blocks, headers, progress, "main", progress < 0.9999)


@pytest.mark.parametrize(
    "blocks, headers, progress, synced",
    [
        (850000, 850000, 0.99999, True),
        (849999, 850000, 0.99995, True),   # one block behind the header tip is fine
        (849998, 850000, 0.99999, False),
        (850000, 850000, 0.9999, False),   # threshold is exclusive
        (0, 0, 1.0, False),                # no headers yet
    ],
)
def test_classify_full_node(blocks, headers, progress, synced):
    status = classify_full_node(info(blocks, headers, progress), 0.9999)
    assert status.is_synced is synced


def test_classify_full_node_reports_progress_while_syncing():
    status = classify_full_node(info(100, 850000, 0.25), 0.9999)
    assert status.state is SyncState.SYNCING
    assert status.progress == pytest.approx(0.25)
    assert str(status) == "syncing (25.00%)"


def test_full_node_synced_is_sticky():
    """Once synced, a later lagging response does not downgrade the status"""
    health = NodeHealth(Role.FULL_NODE)
    health.observe_blockchain_info(info(850000, 850000, 0.99999))
    status = health.observe_blockchain_info(info(850000, 850010, 0.9990))

    assert status.is_synced
    sync, height, last_error = health.snapshot()
    assert sync.is_synced
    assert height == 850000
    assert last_error is None


def test_rpc_error_keeps_last_known_values():
    health = NodeHealth(Role.FULL_NODE)
    health.observe_blockchain_info(info(1000, 850000, 0.1))
    error = RpcUnreachable("connection refused")
    health.observe_rpc_error(error)

    sync, height, last_error = health.snapshot()
    assert sync.state is SyncState.SYNCING
    assert height == 1000
    assert last_error is error


def test_reset_forgets_previous_run():
    health = NodeHealth(Role.FULL_NODE)
    health.observe_blockchain_info(info(850000, 850000, 0.99999))
    health.reset()

    sync, height, last_error = health.snapshot()
    assert sync.state is SyncState.UNKNOWN
    assert height is None


def test_indexer_phrase_matching_is_case_insensitive():
    assert is_indexer_synced_line("[INFO] Finished Full Compaction", INDEXER_SYNC_PHRASES)
    assert is_indexer_synced_line("electrs::index: chain best block 0000abc at 850000", INDEXER_SYNC_PHRASES)
    assert not is_indexer_synced_line("indexing 2000 blocks", INDEXER_SYNC_PHRASES)


def test_indexer_becomes_synced_permanently():
    """A recognized phrase flips the indexer to synced; later lines never undo it"""
    buffer = OutputBuffer()
    health = NodeHealth(Role.INDEXER, sync_phrases=INDEXER_SYNC_PHRASES)

    buffer.append(StreamKind.STDERR, "indexing 2000 blocks: [1..2000]")
    assert health.scan_output(buffer).state is SyncState.SYNCING

    buffer.append(StreamKind.STDERR, "INFO electrs::index - waiting for new block")
    assert health.scan_output(buffer).is_synced

    buffer.append(StreamKind.STDERR, "indexing 1 blocks: [850001..850001]")
    assert health.scan_output(buffer).is_synced


def test_indexer_scan_ignores_lines_from_previous_run():
    buffer = OutputBuffer()
    health = NodeHealth(Role.INDEXER, sync_phrases=INDEXER_SYNC_PHRASES)
    buffer.append(StreamKind.STDERR, "electrs running")
    health.reset(scanned_seq=buffer.last_seq)

    assert health.scan_output(buffer).state is SyncState.UNKNOWN
    buffer.append(StreamKind.STDERR, "starting electrs")
    assert health.scan_output(buffer).state is SyncState.SYNCING


def test_indexer_scan_skips_supervisor_notes():
    """Only electrs output counts, even when a supervisor note quotes a phrase"""
    buffer = OutputBuffer()
    health = NodeHealth(Role.INDEXER, sync_phrases=INDEXER_SYNC_PHRASES)
    buffer.append(StreamKind.SUPERVISOR, "$ /Volumes/electrs running/electrs --db-dir=/tmp")

    assert health.scan_output(buffer).state is SyncState.UNKNOWN

    buffer.append(StreamKind.STDOUT, "electrs running on 127.0.0.1:50001")
    assert health.scan_output(buffer).is_synced


def test_readiness_requires_running_and_synced():
    synced = classify_full_node(info(10, 10, 1.0), 0.9999)
    assert readiness(Phase.RUNNING, synced).ready
    assert not readiness(Phase.SHUTDOWN_PHASE1, synced).ready
    assert not readiness(Phase.RUNNING, classify_full_node(info(1, 10, 0.1), 0.9999)).ready


def test_role_and_target_parsing():
    assert Role.parse("bitcoind") is Role.FULL_NODE
    assert Role.parse(" Electrs ") is Role.INDEXER
    with pytest.raises(ValueError):
        Role.parse("lnd")
    assert ShutdownTarget.INDEXER_ONLY.roles == (Role.INDEXER,)
    assert set(ShutdownTarget.BOTH.roles) == {Role.INDEXER, Role.FULL_NODE}
