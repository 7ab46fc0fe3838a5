import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .supervisor import ProcessManager

log = logging.getLogger(__name__)


def _poll_worker(manager: "ProcessManager", run_id: int) -> None:
    """Runs one RPC status poll and releases the in-flight slot, whatever the outcome."""
    try:
        manager.poll_status(run_id=run_id)
    except Exception as e:
        log.error(f"Unexpected error while polling bitcoind status: {e}", exc_info=True)
    finally:
        manager._finish_poll()


def start_status_poll(manager: "ProcessManager", run_id: int) -> threading.Thread:
    """
    Starts a thread for a single full node status poll.

    :param manager: The ProcessManager instance.
    :param run_id: The launch generation the result belongs to.
    """
    poll_thread = threading.Thread(
        target=_poll_worker,
        args=(manager, run_id),
        daemon=True,
        name="RpcPollThread",
    )
    poll_thread.start()
    return poll_thread


def start_supervision_thread(manager: "ProcessManager") -> threading.Thread:
    """
    Starts the control thread driving the periodic supervisor tick.

    :param manager: The ProcessManager instance.
    """
    manager.stop_signal_received.clear()
    supervision_thread = threading.Thread(
        target=manager.supervision_loop,
        daemon=True,
        name="SupervisorTickThread",
    )
    supervision_thread.start()
    return supervision_thread
