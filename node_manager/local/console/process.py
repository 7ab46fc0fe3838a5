import logging
from typing import List, Optional

from node_manager.local.config import effective_settings as config
from node_manager.local.supervisor import ProcessManager
from node_manager.local.supervisor.config_utils import check_configuration
from node_manager.local.console.handler import (
    display_status,
    handle_launch_command,
    handle_logs_command,
    handle_paths_command,
    handle_shutdown_command,
    handle_update_command,
    print_help,
    toggle_verbose_logging,
)

log = logging.getLogger(__name__)
process_manager = ProcessManager(config)


def _exit_console(manager: ProcessManager) -> bool:
    """Stops any running node and waits for it before the console exits."""
    if any(not manager.phase(role).is_idle for role in manager.nodes):
        print("Stopping nodes before exit. This can take up to a minute...")
        manager.stop_all()
    return True


def execute_command(command: str, args: List[str], manager: Optional[ProcessManager] = None) -> bool:
    """
    Executes a single command from the user.

    :param command: The main command string (e.g., 'launch', 'paths').
    :param args: A list of arguments for the command.
    :param manager: The ProcessManager to act on; defaults to the console's instance.
    :return bool: True if the console should exit, False otherwise.
    """
    manager = manager or process_manager
    log.debug(f"Executing command: {command}, args: {args}")
    command_map = {
        "launch": lambda: handle_launch_command(manager, args),
        "start": lambda: handle_launch_command(manager, args),
        "shutdown": lambda: handle_shutdown_command(manager, args),
        "stop": lambda: handle_shutdown_command(manager, args),
        "status": lambda: display_status(manager),
        "logs": lambda: handle_logs_command(manager, args),
        "update": lambda: handle_update_command(manager),
        "paths": lambda: handle_paths_command(manager, args),
        "check-config": lambda: check_configuration(config),
        "verbose": toggle_verbose_logging,
        "help": print_help,
        "exit": lambda: _exit_console(manager),
    }

    should_exit = False
    if command in command_map:
        result = command_map[command]()
        if command == "exit" and result is True:
            should_exit = True
    else:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")

    return should_exit
