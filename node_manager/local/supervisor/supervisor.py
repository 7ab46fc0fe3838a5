import time
import logging
import threading
from typing import Any, Dict, Optional

from node_manager.local.errors import RpcError, SpawnError
from node_manager.local.rpc_client import RpcClient
from node_manager.local.supervisor import background_tasks, config_utils, process_utils, shutdown
from .health import NodeHealth, readiness
from node_manager.local.models import SYNC_UNKNOWN, NodeStatus, Phase, Role, ShutdownTarget, StreamKind, SyncStatus
from .output import OutputBuffer
from .process_utils import ProcessHandle

log = logging.getLogger(__name__)


class NodeSlot:
    """Everything the supervisor tracks for one node role."""

    def __init__(self, role: Role, config: Any):
        self.role = role
        self.lock = threading.Lock()
        self.phase = Phase.NOT_STARTED
        self.handle: Optional[ProcessHandle] = None
        self.exit_code: Optional[int] = None
        self.forced = False
        self.run_id = 0
        self.stopped = threading.Event()
        self.stopped.set()
        self.pending_shutdown: Optional[shutdown.ShutdownRequest] = None
        self.output = OutputBuffer(config.OUTPUT_BUFFER_MAX_LINES)
        self.health = NodeHealth(
            role,
            sync_phrases=config.INDEXER_SYNC_PHRASES if role is Role.INDEXER else (),
            sync_threshold=config.FULL_NODE_SYNC_THRESHOLD,
        )


class ProcessManager:
    """
    Owns the bitcoind and electrs processes and their derived health.

    Commands (launch, shutdown) return immediately; blocking work such as pipe
    reads, RPC calls and process waits runs on background threads. The
    presentation layer drives `tick()` periodically and reads `status()`.
    """

    def __init__(self, config: Any = None, rpc_client: Optional[RpcClient] = None) -> None:
        """
        Initializes the ProcessManager state.

        :param config: Settings object; defaults to the effective settings.
        :param rpc_client: Client for the full node; built from the config if omitted.
        """
        if config is None:
            from node_manager.local.config import effective_settings
            config = effective_settings
        self.config = config
        self.rpc = rpc_client or RpcClient.from_config(config)
        self.nodes: Dict[Role, NodeSlot] = {role: NodeSlot(role, config) for role in Role}

        self._poll_lock = threading.Lock()
        self._poll_in_flight = False
        self._next_poll_at = 0.0
        self.stop_signal_received = threading.Event()

    #* --- Accessors ---
    def output(self, role: Role) -> OutputBuffer:
        return self.nodes[role].output

    def phase(self, role: Role) -> Phase:
        slot = self.nodes[role]
        with slot.lock:
            return slot.phase

    def is_alive(self, role: Role) -> bool:
        """Non-blocking check whether the node's process is still running."""
        slot = self.nodes[role]
        with slot.lock:
            handle = slot.handle
        return handle is not None and handle.is_alive()

    def status(self, role: Role) -> NodeStatus:
        """Builds the current status view of one node."""
        slot = self.nodes[role]
        with slot.lock:
            phase, handle, exit_code = slot.phase, slot.handle, slot.exit_code
        sync, height, last_error = slot.health.snapshot()
        if phase.is_idle:
            sync = SYNC_UNKNOWN
        return NodeStatus(
            role=role,
            phase=phase,
            pid=handle.pid if handle else None,
            exit_code=exit_code,
            sync=sync,
            block_height=height,
            last_error=last_error,
            readiness=readiness(phase, sync),
        )

    #* --- Launch ---
    def launch(self, role: Role) -> NodeStatus:
        """
        Spawns a node and starts capturing its output.

        :param role: The node to launch.
        :return: The node status once the OS confirmed the process started.
        :raises SpawnError: If the node is not idle, a precondition fails or the spawn fails.
        """
        slot = self.nodes[role]
        if role is Role.INDEXER and self.phase(Role.FULL_NODE) is not Phase.RUNNING:
            raise SpawnError("Bitcoin must be running before starting Electrs. Launch Bitcoin first.")

        with slot.lock:
            if not slot.phase.is_idle:
                raise SpawnError(f"{role.binary_name} is already {slot.phase.value}.")
            previous_phase = slot.phase
            slot.phase = Phase.LAUNCHING
            slot.stopped.clear()

        try:
            config_utils.ensure_data_dirs(self.config)
            if role is Role.FULL_NODE:
                config_utils.ensure_bitcoin_conf(self.config)
            slot.health.reset(slot.output.last_seq)
            handle = process_utils.spawn_node(role, self.config, slot.output)
        except SpawnError as e:
            self._abort_launch(role, previous_phase, e)
            raise
        except OSError as e:
            error = SpawnError(f"Failed to prepare {role.binary_name}: {e}")
            self._abort_launch(role, previous_phase, error)
            raise error from e

        with slot.lock:
            slot.handle = handle
            slot.phase = Phase.RUNNING
            slot.exit_code = None
            slot.forced = False
            slot.run_id += 1
            pending, slot.pending_shutdown = slot.pending_shutdown, None
            if pending is not None:
                slot.phase = Phase.SHUTDOWN_PHASE1
        if role is Role.FULL_NODE:
            self._next_poll_at = 0.0
        status = self.status(role)
        if pending is not None:
            log.info(f"Shutdown was requested while {role.binary_name} was launching. Stopping it now.")
            shutdown.start_shutdown_thread(self, role, handle, pending)
        return status

    def _abort_launch(self, role: Role, previous_phase: Phase, error: SpawnError) -> None:
        slot = self.nodes[role]
        with slot.lock:
            slot.phase = previous_phase
            slot.pending_shutdown = None
            slot.stopped.set()
        slot.output.append(StreamKind.SUPERVISOR, f"Launch error: {error}")
        log.error(f"Failed to launch {role.binary_name}: {error}")

    #* --- Periodic Supervision ---
    def tick(self) -> None:
        """
        One non-blocking supervision step: reap exited nodes, scan the indexer
        output for sync phrases and dispatch a status poll when one is due.
        """
        for role in Role:
            self._check_exited(role)

        indexer = self.nodes[Role.INDEXER]
        if self.phase(Role.INDEXER) is Phase.RUNNING:
            indexer.health.scan_output(indexer.output)

        if time.monotonic() >= self._next_poll_at:
            self._dispatch_poll()

    def _check_exited(self, role: Role) -> None:
        """Detects a node that exited on its own and records it as stopped."""
        slot = self.nodes[role]
        with slot.lock:
            handle = slot.handle
            if slot.phase is not Phase.RUNNING or handle is None or handle.is_alive():
                return
            exit_code = handle.returncode
            self._record_stopped(slot, exit_code, forced=False)
        log.warning(f"{role.binary_name} exited unexpectedly with code {exit_code}.")
        slot.output.append(StreamKind.SUPERVISOR, f"{role.binary_name} has stopped.")
        self._announce_stopped(role, exit_code, forced=False)

    def _dispatch_poll(self) -> None:
        """Starts a status poll unless one is still in flight or the node is not running."""
        slot = self.nodes[Role.FULL_NODE]
        with slot.lock:
            if slot.phase is not Phase.RUNNING:
                return
            run_id = slot.run_id
        with self._poll_lock:
            if self._poll_in_flight:
                return
            self._poll_in_flight = True
            self._next_poll_at = time.monotonic() + self.config.RPC_POLL_INTERVAL
        background_tasks.start_status_poll(self, run_id)

    def _finish_poll(self) -> None:
        with self._poll_lock:
            self._poll_in_flight = False

    def poll_status(self, run_id: Optional[int] = None) -> SyncStatus:
        """
        Queries bitcoind for chain state and updates its health view. Blocks for
        at most the RPC timeout; failures only leave the last known values in place.

        :param run_id: Launch generation the poll was issued for; stale results are dropped.
        :return: The full node's sync status after the poll.
        """
        slot = self.nodes[Role.FULL_NODE]
        try:
            info = self.rpc.get_blockchain_info()
        except RpcError as e:
            if self._is_stale_poll(run_id):
                return slot.health.sync
            log.debug(f"Status poll failed ({type(e).__name__}): {e}")
            slot.health.observe_rpc_error(e)
            return slot.health.sync

        if self._is_stale_poll(run_id):
            return slot.health.sync
        return slot.health.observe_blockchain_info(info)

    def _is_stale_poll(self, run_id: Optional[int]) -> bool:
        slot = self.nodes[Role.FULL_NODE]
        with slot.lock:
            stale = run_id is not None and run_id != slot.run_id
        if stale:
            log.debug("Dropping status poll result from a previous bitcoind run.")
        return stale

    def supervision_loop(self) -> None:
        """Control loop calling `tick()` until `stop_signal_received` is set."""
        log.info("Supervisor started. Monitoring node processes.")
        while not self.stop_signal_received.is_set():
            try:
                self.tick()
            except Exception as e:
                log.critical(f"Critical error in supervisor loop: {e}", exc_info=True)
            self.stop_signal_received.wait(self.config.OUTPUT_TICK_INTERVAL)
        log.info("Supervisor loop stopped.")

    def start_supervision(self) -> threading.Thread:
        return background_tasks.start_supervision_thread(self)

    #* --- Shutdown ---
    def request_shutdown(self, target: ShutdownTarget) -> shutdown.ShutdownTicket:
        """
        Starts the escalating shutdown of the targeted nodes and returns at once.

        Nodes already shutting down are not escalated again; the ticket simply
        waits for their in-flight sequence. A node still launching is stopped as
        soon as its spawn completes. Idle nodes count as stopped immediately.

        :param target: IndexerOnly or Both.
        :return: A ticket to observe completion.
        """
        request = shutdown.ShutdownRequest.from_config(target, self.config)
        events: Dict[Role, threading.Event] = {}
        started = []
        for role in request.roles:
            slot = self.nodes[role]
            with slot.lock:
                events[role] = slot.stopped
                if slot.phase.is_shutting_down:
                    log.info(f"{role.binary_name} is already shutting down. Ignoring repeated request.")
                    continue
                if slot.phase is Phase.LAUNCHING:
                    log.info(f"{role.binary_name} is launching. It will be stopped once it has started.")
                    slot.pending_shutdown = slot.pending_shutdown or request
                    continue
                if slot.phase is not Phase.RUNNING or slot.handle is None:
                    continue
                slot.phase = Phase.SHUTDOWN_PHASE1
                handle = slot.handle
            log.info(f"Initiating shutdown of {role.binary_name} (PID {handle.pid}).")
            shutdown.start_shutdown_thread(self, role, handle, request)
            started.append(role)
        return shutdown.ShutdownTicket(request, events, tuple(started))

    def stop_all(self, timeout: Optional[float] = None) -> bool:
        """Shuts down both nodes and blocks until they are stopped. Used on console exit."""
        ticket = self.request_shutdown(ShutdownTarget.BOTH)
        return ticket.wait(timeout)

    def _set_phase(self, role: Role, handle: ProcessHandle, phase: Phase) -> bool:
        """Changes the phase only while `handle` is still the node's current process."""
        slot = self.nodes[role]
        with slot.lock:
            if slot.handle is not handle:
                return False
            slot.phase = phase
            return True

    def _mark_stopped(self, role: Role, handle: ProcessHandle, exit_code: Optional[int], forced: bool) -> bool:
        """
        Records a reaped process and releases its handle.

        A shutdown sequence finishing after the node was relaunched owns an old
        handle; it must not touch the new run, so nothing changes in that case.

        :return: True if the node was marked stopped.
        """
        slot = self.nodes[role]
        with slot.lock:
            if slot.handle is not handle:
                log.debug(f"Ignoring stop of a previous {role.binary_name} process (PID {handle.pid}).")
                return False
            self._record_stopped(slot, exit_code, forced)
        self._announce_stopped(role, exit_code, forced)
        return True

    @staticmethod
    def _record_stopped(slot: NodeSlot, exit_code: Optional[int], forced: bool) -> None:
        # caller holds slot.lock
        slot.phase = Phase.STOPPED
        slot.handle = None
        slot.exit_code = exit_code
        slot.forced = forced
        slot.stopped.set()

    def _announce_stopped(self, role: Role, exit_code: Optional[int], forced: bool) -> None:
        how = "killed" if forced else "stopped"
        self.output(role).append(StreamKind.SUPERVISOR, f"{role.binary_name} {how}.")
        log.info(f"{role.binary_name} {how} (exit code {exit_code}).")
