"""
This module contains the configuration settings for the Node Manager.
It defines the data directory layout on the external disk, RPC defaults,
supervisor timers, updater locations and logging paths.
"""

import os
import sys
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Root Directory Resolution ---
ROOT_ENV_VAR = "BITCOIN_NODE_MANAGER_ROOT"


def _resolve_root_dir() -> pathlib.Path:
    """
    Determines the disk root that holds the binaries and data directories.

    Priority: the BITCOIN_NODE_MANAGER_ROOT environment variable (if it names an
    existing directory), then the parent of a macOS .app bundle, then the
    directory containing the running executable.
    """
    env_root = os.getenv(ROOT_ENV_VAR)
    if env_root and pathlib.Path(env_root).is_dir():
        return pathlib.Path(env_root)

    if getattr(sys, "frozen", False):
        exe_dir = pathlib.Path(sys.executable).resolve().parent
    else:
        exe_dir = pathlib.Path(sys.argv[0] or ".").resolve().parent

    # <Name>.app/Contents/MacOS -> walk up to the directory holding the bundle
    if ".app/Contents/MacOS" in exe_dir.as_posix():
        return exe_dir.parent.parent.parent
    return exe_dir


ROOT_DIR = _resolve_root_dir()

#* --- Node Directories ---
BINARIES_DIR = ROOT_DIR / "Binaries"
BITCOIN_DATA_DIR = ROOT_DIR / "BitcoinChain"
ELECTRS_DATA_DIR = ROOT_DIR / "ElectrsDB"

#* --- Application File Paths ---
CONFIG_DIR = pathlib.Path(os.getenv("XDG_CONFIG_HOME", pathlib.Path.home() / ".config")) / "BitcoinNodeManager"
OVERRIDES_JSON_PATH = CONFIG_DIR / "config.json"
LOGS_DIR = CONFIG_DIR / "logs"
LOG_FILE_PATH = LOGS_DIR / "node_manager.log"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 3

#* --- Full Node RPC Settings ---
RPC_HOST = "127.0.0.1"
RPC_DEFAULT_PORT = 8332
RPC_TIMEOUT = 5  # seconds per call
RPC_REQUEST_ID = "bnm"
RPC_FALLBACK_USER = "bitcoin"
RPC_FALLBACK_PASSWORD = "bitcoinrpc"
BITCOIN_CONF_TEMPLATE = """# Bitcoin Core - auto-generated by Bitcoin Node Manager
server=1
txindex=1
rpcport={rpc_port}
rpcallowip=127.0.0.1
# Cookie-based authentication is active by default.
"""

#* --- Indexer Settings ---
ELECTRS_NETWORK = "bitcoin"
ELECTRUM_RPC_ADDR = "127.0.0.1:50001"

# Log phrases electrs prints once its index has caught up with the chain tip.
# Tied to the wording of the electrs releases in use; keep in sync with its log format.
INDEXER_SYNC_PHRASES = (
    "finished full compaction",
    "electrs running",
    "waiting for new block",
    "index update completed",
    "chain best block",
)

#* --- Supervisor Settings ---
OUTPUT_BUFFER_MAX_LINES = 5000
OUTPUT_TICK_INTERVAL = 0.1     # seconds between supervision ticks
RPC_POLL_INTERVAL = 5          # seconds between full node status polls
FULL_NODE_SYNC_THRESHOLD = 0.9999
INDEXER_SHUTDOWN_TIMEOUT = 10  # seconds between SIGTERM and SIGKILL
INDEXER_SHUTDOWN_POLL_INTERVAL = 0.2
FULL_NODE_SHUTDOWN_TIMEOUT = 60  # seconds after RPC stop before SIGKILL
FULL_NODE_SHUTDOWN_POLL_INTERVAL = 0.5

#* --- Binary Updater Settings ---
STAGING_PARENT = pathlib.Path.home() / "Downloads" / "bitcoin_builds"
STAGING_ROOT = STAGING_PARENT / "binaries"
ROLE_BINARIES = {
    "bitcoin": ("bitcoind", "bitcoin-cli", "bitcoin-tx", "bitcoin-util"),
    "electrs": ("electrs",),
}
HELPER_APP_PATH = pathlib.Path("/Applications/BitForge.app")
HELPER_APP_URL = "https://github.com/csd113/BitForge-Python"

#* --- Application variables ---
VERBOSE_LOGGING = False
PROCESS_TITLE = "Bitcoin Node Manager - Console"

#* --- MODIFIABLE SETTINGS (Changeable at runtime via the 'paths' command) ---
MODIFIABLE_SETTINGS = {
    "BINARIES_DIR",
    "BITCOIN_DATA_DIR",
    "ELECTRS_DATA_DIR",
}
