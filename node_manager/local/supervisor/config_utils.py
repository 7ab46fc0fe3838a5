import logging
from pathlib import Path
from typing import Any

from node_manager.local.models import Role
from .process_utils import get_executable_path

log = logging.getLogger(__name__)


def check_configuration(config: Any) -> bool:
    """
    Validates that the node binaries exist in the configured binaries directory.

    :param config: The effective settings object.
    :return: True if all required executables are found, otherwise False.
    """
    log.info("Performing configuration and path validation...")
    all_ok = True
    for role in Role:
        path_exe = get_executable_path(Path(config.BINARIES_DIR) / role.binary_name)
        if not path_exe.exists():
            log.error(f"CONFIG CHECK FAILED: {role.binary_name} not found at '{path_exe}'")
            all_ok = False
        else:
            log.info(f"Config Check OK: Found {role.binary_name} at '{path_exe}'")
    return all_ok


def ensure_data_dirs(config: Any) -> None:
    """Creates the full node and indexer data directories if missing."""
    for path in (config.BITCOIN_DATA_DIR, config.ELECTRS_DATA_DIR):
        Path(path).mkdir(parents=True, exist_ok=True)


def ensure_bitcoin_conf(config: Any) -> bool:
    """
    Writes a minimal bitcoin.conf with server/RPC defaults if none exists yet.

    :param config: The effective settings object.
    :return: True if a new file was written.
    """
    conf_path = Path(config.BITCOIN_DATA_DIR) / "bitcoin.conf"
    if conf_path.exists():
        return False
    conf_path.parent.mkdir(parents=True, exist_ok=True)
    conf_path.write_text(config.BITCOIN_CONF_TEMPLATE.format(rpc_port=config.RPC_DEFAULT_PORT), encoding="utf-8")
    log.info(f"Wrote default bitcoin.conf to '{conf_path}'")
    return True
