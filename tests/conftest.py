"""
Shared fixtures: an isolated settings object, stub node binaries and a local
JSON-RPC endpoint standing in for bitcoind.
"""

import json
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from node_manager.local.config import MergedSettings
from node_manager.local.models import BlockchainInfo
from node_manager.local.errors import RpcUnreachable
from node_manager.local.supervisor import ProcessManager


def free_port() -> int:
    """Returns a local TCP port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def config(tmp_path):
    """Settings pointing every directory into tmp_path, with short timers."""
    cfg = MergedSettings(overrides_path=tmp_path / "config" / "config.json")
    cfg.BINARIES_DIR = tmp_path / "Binaries"
    cfg.BITCOIN_DATA_DIR = tmp_path / "BitcoinChain"
    cfg.ELECTRS_DATA_DIR = tmp_path / "ElectrsDB"
    cfg.STAGING_PARENT = tmp_path / "bitcoin_builds"
    cfg.STAGING_ROOT = cfg.STAGING_PARENT / "binaries"
    cfg.HELPER_APP_PATH = tmp_path / "Applications" / "BitForge.app"
    cfg.LOG_FILE_PATH = tmp_path / "logs" / "node_manager.log"
    cfg.RPC_DEFAULT_PORT = free_port()
    cfg.RPC_TIMEOUT = 0.5
    cfg.RPC_POLL_INTERVAL = 0.05
    cfg.OUTPUT_TICK_INTERVAL = 0.02
    cfg.INDEXER_SHUTDOWN_TIMEOUT = 0.5
    cfg.INDEXER_SHUTDOWN_POLL_INTERVAL = 0.05
    cfg.FULL_NODE_SHUTDOWN_TIMEOUT = 0.5
    cfg.FULL_NODE_SHUTDOWN_POLL_INTERVAL = 0.05
    return cfg


@pytest.fixture
def write_stub(config):
    """Factory writing an executable /bin/sh script into the binaries directory."""
    def _write(name: str, body: str, directory: Path = None) -> Path:
        directory = Path(directory or config.BINARIES_DIR)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
        path.chmod(0o755)
        return path
    return _write


@pytest.fixture
def manager(config):
    """A ProcessManager on the isolated settings; stops anything still running afterwards."""
    pm = ProcessManager(config)
    yield pm
    pm.stop_signal_received.set()
    pm.stop_all(timeout=10)


#* --- Fake process handle and RPC client ---
class FakeHandle:
    """In-memory stand-in for ProcessHandle recording the signals it receives."""

    def __init__(self, pid: int, exits_on_terminate: bool = True):
        self.pid = pid
        self.name = f"fake-{pid}"
        self.exits_on_terminate = exits_on_terminate
        self.signals = []
        self._exited = threading.Event()
        self._code = None

    def exit(self, code: int) -> None:
        self._code = code
        self._exited.set()

    def is_alive(self) -> bool:
        return not self._exited.is_set()

    @property
    def returncode(self):
        return self._code

    def send_terminate(self) -> None:
        self.signals.append("terminate")
        if self.exits_on_terminate:
            self.exit(-15)

    def send_kill(self) -> None:
        self.signals.append("kill")
        self.exit(-9)

    def wait_with_timeout(self, timeout):
        if self._exited.wait(timeout):
            return self._code
        return None


class FakeRpc:
    """RPC client double: `stop` runs a callback, status polls return canned info."""

    def __init__(self, stop_result: bool = True, on_stop=None, info: BlockchainInfo = None):
        self.stop_result = stop_result
        self.on_stop = on_stop
        self.info = info
        self.stop_calls = 0

    def stop(self) -> bool:
        self.stop_calls += 1
        if self.on_stop:
            self.on_stop()
        return self.stop_result

    def get_blockchain_info(self) -> BlockchainInfo:
        if self.info is None:
            raise RpcUnreachable("fake node is offline")
        return self.info


@pytest.fixture
def fake_rpc():
    return FakeRpc()


#* --- Local JSON-RPC endpoint ---
class _RpcHandler(BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        request = json.loads(self.rfile.read(length))
        self.server.requests.append((request, self.headers.get("Authorization")))

        default = (200, {"result": None, "error": None, "id": request.get("id")})
        status, body = self.server.replies.get(request.get("method"), default)
        payload = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def rpc_server():
    """
    Serves JSON-RPC on a random local port.

    Set `server.replies[method] = (http_status, body)` to script answers; every
    request is recorded in `server.requests` with its Authorization header.
    """
    server = ThreadingHTTPServer(("127.0.0.1", 0), _RpcHandler)
    server.requests = []
    server.replies = {}
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
