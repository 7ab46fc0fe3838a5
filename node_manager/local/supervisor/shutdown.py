import time
import logging
import threading
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple

from node_manager.local.errors import ShutdownTimeout
from node_manager.local.models import Phase, Role, ShutdownTarget, StreamKind
from .process_utils import ProcessHandle

if TYPE_CHECKING:
    from .supervisor import ProcessManager

log = logging.getLogger(__name__)


class ShutdownRequest:
    """Which nodes one shutdown operation targets, and the timers of each phase."""

    def __init__(
        self,
        target: ShutdownTarget,
        indexer_timeout: float = 10,
        indexer_poll_interval: float = 0.2,
        full_node_timeout: float = 60,
        full_node_poll_interval: float = 0.5,
    ):
        self.target = target
        self.indexer_timeout = indexer_timeout
        self.indexer_poll_interval = indexer_poll_interval
        self.full_node_timeout = full_node_timeout
        self.full_node_poll_interval = full_node_poll_interval

    @classmethod
    def from_config(cls, target: ShutdownTarget, config: Any) -> "ShutdownRequest":
        return cls(
            target,
            indexer_timeout=config.INDEXER_SHUTDOWN_TIMEOUT,
            indexer_poll_interval=config.INDEXER_SHUTDOWN_POLL_INTERVAL,
            full_node_timeout=config.FULL_NODE_SHUTDOWN_TIMEOUT,
            full_node_poll_interval=config.FULL_NODE_SHUTDOWN_POLL_INTERVAL,
        )

    @property
    def roles(self) -> Tuple[Role, ...]:
        return self.target.roles

    def timers_for(self, role: Role) -> Tuple[float, float]:
        if role is Role.FULL_NODE:
            return self.full_node_timeout, self.full_node_poll_interval
        return self.indexer_timeout, self.indexer_poll_interval


class ShutdownTicket:
    """
    Acknowledgment handed back by `ProcessManager.request_shutdown`.

    Completion is observed through the per-node stop events; nodes that were
    already stopping when the request arrived are waited on, not re-escalated.
    """

    def __init__(self, request: ShutdownRequest, events: Dict[Role, threading.Event], started: Tuple[Role, ...]):
        self.request = request
        self.events = events
        self.started = started

    @property
    def done(self) -> bool:
        return all(event.is_set() for event in self.events.values())

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until every targeted node is stopped.

        :param timeout: Overall seconds to wait, or None to wait indefinitely.
        :return: True if all targeted nodes reported stopped.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        for event in self.events.values():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not event.wait(remaining):
                return False
        return True


def wait_for_exit(handle: ProcessHandle, role: Role, timeout: float, poll_interval: float) -> Optional[int]:
    """
    Polls a process until it exits or the deadline passes.

    :return: The exit code of the reaped process.
    :raises ShutdownTimeout: If the process is still alive at the deadline.
    """
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            if not handle.is_alive():
                return handle.returncode
            raise ShutdownTimeout(role.binary_name, timeout)
        code = handle.wait_with_timeout(min(poll_interval, remaining))
        if code is not None:
            return code


def _phase_one_full_node(manager: "ProcessManager", handle: ProcessHandle) -> None:
    """Asks bitcoind to stop over RPC, falling back to SIGTERM if the call fails."""
    manager.output(Role.FULL_NODE).append(StreamKind.SUPERVISOR, "Sending stop via RPC…")
    if not manager.rpc.stop():
        log.warning("RPC stop failed. Sending SIGTERM to bitcoind instead.")
        handle.send_terminate()


def _phase_one_indexer(manager: "ProcessManager", handle: ProcessHandle) -> None:
    manager.output(Role.INDEXER).append(StreamKind.SUPERVISOR, "Terminating electrs…")
    handle.send_terminate()


PHASE_ONE: Dict[Role, Callable[["ProcessManager", ProcessHandle], None]] = {
    Role.FULL_NODE: _phase_one_full_node,
    Role.INDEXER: _phase_one_indexer,
}


def _forceful_kill(manager: "ProcessManager", role: Role, handle: ProcessHandle) -> Optional[int]:
    """Moves the node to phase two, sends SIGKILL and reaps the process."""
    manager._set_phase(role, handle, Phase.SHUTDOWN_PHASE2)
    log.warning(f"Killing stubborn process {role.binary_name} (PID {handle.pid}).")
    manager.output(role).append(StreamKind.SUPERVISOR, f"{role.binary_name} did not exit in time, sending SIGKILL.")
    handle.send_kill()
    return handle.wait_with_timeout(None)


def graceful_shutdown_sequence(manager: "ProcessManager", role: Role, handle: ProcessHandle,
                               request: ShutdownRequest) -> None:
    """
    Runs the full escalating shutdown for one node. Blocks; call it off the control thread.

    Phase one is role specific (RPC stop for bitcoind, SIGTERM for electrs),
    followed by a bounded liveness poll. Phase two is SIGKILL. The node is
    marked stopped only after its process has been reaped.

    :param manager: The ProcessManager instance.
    :param role: The node being stopped.
    :param handle: The process handle taken from the node.
    :param request: The shutdown request carrying the phase timers.
    """
    timeout, poll_interval = request.timers_for(role)
    forced = False
    try:
        PHASE_ONE[role](manager, handle)
        try:
            exit_code = wait_for_exit(handle, role, timeout, poll_interval)
        except ShutdownTimeout as e:
            log.warning(f"{e}. Escalating to SIGKILL.")
            forced = True
            exit_code = _forceful_kill(manager, role, handle)
    except Exception as e:
        log.error(f"Shutdown of {role.binary_name} failed: {e}", exc_info=True)
        forced = True
        handle.send_kill()
        exit_code = handle.wait_with_timeout(None)
    manager._mark_stopped(role, handle, exit_code, forced=forced)


def start_shutdown_thread(manager: "ProcessManager", role: Role, handle: ProcessHandle,
                          request: ShutdownRequest) -> threading.Thread:
    """Dispatches one node's shutdown sequence to a background thread."""
    thread = threading.Thread(
        target=graceful_shutdown_sequence,
        args=(manager, role, handle, request),
        daemon=True,
        name=f"{role.binary_name}-shutdown",
    )
    thread.start()
    return thread
