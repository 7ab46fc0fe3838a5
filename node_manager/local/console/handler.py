import psutil
import logging
from typing import List, Optional

from node_manager.local.config import effective_settings as config
from node_manager.local.errors import NoStagingSource, SpawnError, StagingSubfolderMissing
from node_manager.local.external import BinaryUpdater
from node_manager.local.external.updater import find_helper_app
from node_manager.local.models import Role, ShutdownTarget
from node_manager.local.supervisor import ProcessManager
from node_manager.log.setup import get_console_handler

log = logging.getLogger(__name__)

DEFAULT_LOG_LINES = 50


def _parse_role(args: List[str], usage: str) -> Optional[Role]:
    if not args:
        print(usage)
        return None
    try:
        return Role.parse(args[0])
    except ValueError as e:
        print(f"Error: {e}")
        return None


def handle_launch_command(manager: ProcessManager, args: List[str]) -> None:
    """Handles 'launch <bitcoin|electrs>'."""
    role = _parse_role(args, "Usage: launch <bitcoin|electrs>")
    if role is None:
        return
    try:
        status = manager.launch(role)
    except SpawnError as e:
        print(f"\nERROR: {e}\n")
        return
    print(f"{role.binary_name} launched (PID {status.pid}).")


def handle_shutdown_command(manager: ProcessManager, args: List[str]) -> None:
    """Handles 'shutdown [both|electrs]'. Returns as soon as the shutdown is dispatched."""
    target_name = args[0].lower() if args else ShutdownTarget.BOTH.value
    try:
        target = ShutdownTarget(target_name)
    except ValueError:
        print("Usage: shutdown [both|electrs]")
        return

    ticket = manager.request_shutdown(target)
    if ticket.started:
        names = ", ".join(role.binary_name for role in ticket.started)
        print(f"Shutdown started for: {names}. Use 'status' to follow progress.")
    elif ticket.done:
        print("Nothing to shut down.")
    else:
        print("Shutdown already in progress.")


def _format_resources(pid: Optional[int]) -> str:
    if pid is None:
        return ""
    try:
        p = psutil.Process(pid)
        cpu = p.cpu_percent(interval=0.1)
        mem = p.memory_info().rss
        return f" | CPU: {cpu:.1f}% | MEM: {mem/1024/1024:.1f} MB"
    except psutil.NoSuchProcess:
        return " | (exited)"
    except psutil.AccessDenied:
        return " | (access denied)"


def display_status(manager: ProcessManager) -> None:
    """Displays the state, sync progress and resource usage of both nodes."""
    print("\n--- Node Status ---")
    for role in Role:
        status = manager.status(role)
        pid = f"PID {status.pid}" if status.pid else "no process"
        print(f"  - {role.binary_name:<10} : {status.phase.value.upper():<14} | {pid:<12}{_format_resources(status.pid)}")
        details = f"      sync: {status.sync}"
        if status.block_height is not None:
            details += f" | height: {status.block_height}"
        details += f" | ready: {'yes' if status.readiness.ready else 'no'}"
        if status.exit_code is not None and status.pid is None:
            details += f" | last exit code: {status.exit_code}"
        print(details)
        if status.last_error is not None and status.pid is not None:
            print(f"      last RPC error: {status.last_error}")
    print("-" * 19 + "\n")


def handle_logs_command(manager: ProcessManager, args: List[str]) -> None:
    """Handles 'logs <bitcoin|electrs> [N]'; prints the most recent captured lines."""
    role = _parse_role(args, "Usage: logs <bitcoin|electrs> [N]")
    if role is None:
        return
    count = DEFAULT_LOG_LINES
    if len(args) > 1:
        try:
            count = int(args[1])
        except ValueError:
            print(f"Error: '{args[1]}' is not a number.")
            return

    lines = manager.output(role).tail(count)
    if not lines:
        print(f"No output captured for {role.binary_name} yet.")
        return
    print(f"\n--- Last {len(lines)} lines of {role.binary_name} ---")
    for entry in lines:
        print(entry.text)
    print()


def handle_update_command(manager: ProcessManager) -> None:
    """Handles 'update'; installs the newest staged builds into the binaries directory."""
    running = [role.binary_name for role in Role if not manager.phase(role).is_idle]
    if running:
        print(f"Note: {', '.join(running)} still running. New binaries take effect on the next launch.")

    updater = BinaryUpdater(config)
    try:
        report = updater.run()
    except StagingSubfolderMissing as e:
        print(f"\nFound '{updater.staging_parent}', but it has no 'binaries' sub-folder ({e}).\n")
        return
    except NoStagingSource:
        print(f"\nNo build folder found at '{updater.staging_parent}'.")
        helper = find_helper_app(config)
        if helper is not None:
            print(f"Build new binaries with the helper app at '{helper}'.\n")
        else:
            print(f"Get the build helper app from {config.HELPER_APP_URL}\n")
        return

    if report.nothing_to_update:
        print("Nothing to update.")
        return
    print("\n--- Update Result ---")
    for line in report.summary_lines():
        print(f"  {line}")
    print()


def _paths_show() -> None:
    print("\n--- Node Directories ---")
    for key in sorted(config.MODIFIABLE_SETTINGS):
        marker = " (custom)" if key in config.overrides else ""
        print(f"  {key} = {getattr(config, key, 'N/A')}{marker}")
    print("---")
    print("Use 'paths set <KEY> <PATH>' to change a directory, 'paths reset <KEY>' to restore it.")
    print("Changes apply the next time a node is launched.")
    print("----------------------\n")


def _paths_set(manager: ProcessManager, args: List[str]) -> None:
    if len(args) < 2:
        print("Usage: paths set <KEY> <PATH>")
        return
    key, value = args[0].upper(), " ".join(args[1:])
    if key not in config.MODIFIABLE_SETTINGS:
        print(f"Error: '{key}' is not a modifiable setting.")
        return
    try:
        path = config.update_setting(key, value)
    except (OSError, ValueError) as e:
        print(f"Failed to save '{key}': {e}")
        return
    _sync_rpc_data_dir(manager, key)
    print(f"{key} set to '{path}'.")


def _paths_reset(manager: ProcessManager, args: List[str]) -> None:
    if len(args) != 1:
        print("Usage: paths reset <KEY>")
        return
    key = args[0].upper()
    if key not in config.MODIFIABLE_SETTINGS:
        print(f"Error: '{key}' is not a modifiable setting.")
        return
    try:
        path = config.reset_setting(key)
    except OSError as e:
        print(f"Failed to save '{key}': {e}")
        return
    _sync_rpc_data_dir(manager, key)
    print(f"{key} reset to '{path}'.")


def _sync_rpc_data_dir(manager: ProcessManager, key: str) -> None:
    if key == "BITCOIN_DATA_DIR":
        manager.rpc.data_dir = config.BITCOIN_DATA_DIR


def handle_paths_command(manager: ProcessManager, args: List[str]) -> None:
    """
    Handles all sub-commands for the 'paths' command-line interface.

    :param args: A list of string arguments following the 'paths' command.
    """
    sub_command = args[0].lower() if args else "show"
    if sub_command == "show":
        _paths_show()
    elif sub_command == "set":
        _paths_set(manager, args[1:])
    elif sub_command == "reset":
        _paths_reset(manager, args[1:])
    else:
        print(f"Unknown paths sub-command: '{sub_command}'. Use 'paths', 'paths set <KEY> <PATH>' or 'paths reset <KEY>'.")


def toggle_verbose_logging() -> None:
    """Toggles verbose (DEBUG level) logging for the console handler."""
    config.VERBOSE_LOGGING = not config.VERBOSE_LOGGING
    new_level = logging.DEBUG if config.VERBOSE_LOGGING else logging.INFO

    handler = get_console_handler()
    status = "ON" if config.VERBOSE_LOGGING else "OFF"
    if handler is not None:
        handler.setLevel(new_level)
        print(f"Verbose console logging is now {status}.")
        log.debug("Debug logging test: This message should only appear when verbose is ON.")
    else:
        print("Could not find console handler to modify level.")


def print_help():
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  launch <bitcoin|electrs>  - Launch a node (electrs needs a running bitcoind).")
    print("  shutdown [both|electrs]   - Gracefully stop both nodes, or only electrs.")
    print("  status                    - Show state, sync progress and resource usage.")
    print("  logs <bitcoin|electrs> [N]- Show the last N captured output lines.")
    print("  update                    - Install the newest builds from the staging folder.")
    print("  paths [set KEY PATH]      - Show or change the node directories.")
    print("  paths reset KEY           - Restore a node directory to its default.")
    print("  check-config              - Validate that the node binaries are present.")
    print("  verbose                   - Toggle detailed DEBUG log output in the console.")
    print("  exit                      - Stop running nodes and exit the console.")
    print()
