import os
import sys
import psutil
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from node_manager.local.errors import SpawnError
from node_manager.local.models import Role, StreamKind
from .output import OutputBuffer, capture_process_output

log = logging.getLogger(__name__)


class ProcessHandle:
    """
    Sole owner of one spawned node process.

    Wraps the `subprocess.Popen` object (used for reaping and exit codes) and a
    `psutil.Process` for signal delivery. Once `wait_with_timeout` returns an
    exit code the process has been reaped.
    """

    def __init__(self, popen: subprocess.Popen, name: str):
        self.popen = popen
        self.name = name
        self.pid = popen.pid
        try:
            self.proc: Optional[psutil.Process] = psutil.Process(popen.pid)
        except psutil.NoSuchProcess:
            # Already gone; Popen still holds the exit status to reap.
            self.proc = None

    def is_alive(self) -> bool:
        """Non-blocking liveness check; reaps the child if it has exited."""
        return self.popen.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        return self.popen.returncode

    def send_terminate(self) -> None:
        """Sends SIGTERM (TerminateProcess on Windows)."""
        self._signal("terminate")

    def send_kill(self) -> None:
        """Sends SIGKILL."""
        self._signal("kill")

    def _signal(self, method: str) -> None:
        if not self.is_alive() or self.proc is None:
            return
        try:
            log.debug(f"Sending {method} to {self.name} (PID {self.pid})")
            getattr(self.proc, method)()
        except psutil.NoSuchProcess:
            log.debug(f"{self.name} (PID {self.pid}) exited before {method} was delivered.")
        except psutil.AccessDenied as e:
            log.error(f"Not permitted to {method} {self.name} (PID {self.pid}): {e}")

    def wait_with_timeout(self, timeout: Optional[float]) -> Optional[int]:
        """
        Blocks until the process exits or the timeout expires.

        :param timeout: Seconds to wait, or None to wait indefinitely.
        :return: The exit code once reaped, or None if still running.
        """
        try:
            return self.popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None


#* --- Process Creation ---
def get_executable_path(base_path: Path) -> Path:
    """Returns the platform-specific full path for an executable."""
    return base_path.with_suffix(".exe") if sys.platform == "win32" else base_path


def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific keyword arguments for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    # Own session so a Ctrl+C in the console does not reach the nodes directly.
    return {"start_new_session": True}


def get_process_args(role: Role, config: Any) -> Tuple[List[str], Path]:
    """
    Returns the command-line arguments and working directory for a node.

    :param role: The node role to launch.
    :param config: The effective settings object.
    :return: A tuple of (argv, cwd).
    """
    binaries_dir = Path(config.BINARIES_DIR)
    bitcoin_data = Path(config.BITCOIN_DATA_DIR)
    electrs_data = Path(config.ELECTRS_DATA_DIR)

    if role is Role.FULL_NODE:
        return (
            [
                str(get_executable_path(binaries_dir / "bitcoind")),
                f"-datadir={bitcoin_data}",
                "-printtoconsole",
            ],
            bitcoin_data,
        )
    if role is Role.INDEXER:
        return (
            [
                str(get_executable_path(binaries_dir / "electrs")),
                "--network", config.ELECTRS_NETWORK,
                "--daemon-dir", str(bitcoin_data),
                "--db-dir", str(electrs_data),
                "--electrum-rpc-addr", config.ELECTRUM_RPC_ADDR,
            ],
            electrs_data,
        )
    raise ValueError(f"Unknown node role '{role}'. No arguments defined.")


def spawn_node(role: Role, config: Any, buffer: OutputBuffer) -> ProcessHandle:
    """
    Launches a node binary and wires its pipes into the node's output buffer.

    :param role: The node role to launch.
    :param config: The effective settings object.
    :param buffer: The node's output buffer.
    :return: A handle owning the started process.
    :raises SpawnError: If the binary is missing, not executable or fails to start.
    """
    args, cwd = get_process_args(role, config)
    binary = Path(args[0])
    if not binary.is_file():
        raise SpawnError(f"{role.binary_name} not found at {binary}")
    if not os.access(binary, os.X_OK):
        raise SpawnError(f"{role.binary_name} at {binary} is not executable")

    try:
        cwd.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise SpawnError(f"Could not create data directory {cwd}: {e}") from e

    buffer.append(StreamKind.SUPERVISOR, f"$ {' '.join(args)}")
    log.info(f"Starting {role.binary_name}: {' '.join(args)}")
    try:
        popen = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            cwd=str(cwd),
            **_get_popen_creation_flags(),
        )
    except OSError as e:
        raise SpawnError(f"Failed to spawn {role.binary_name} ({binary}): {e}") from e

    capture_process_output(popen.stdout, popen.stderr, buffer, role.binary_name)
    log.info(f"{role.binary_name} started with PID: {popen.pid}")
    return ProcessHandle(popen, role.binary_name)
