import sys
import time
import logging
import threading

import setproctitle

# Basic console logger for messages BEFORE full setup is complete.
# This logger will be replaced by the full setup later.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

import node_manager.local.console as console
from node_manager.local.config import effective_settings as config
from node_manager.local.models import Role
from node_manager.log.setup import setup_logging

# --- Global State ---
CONSOLE_LOCK = threading.Lock()
process_manager = console.process_manager


def _any_node_active() -> bool:
    return any(not process_manager.phase(role).is_idle for role in Role)


def _wait_for_nodes() -> None:
    """Keeps a one-off invocation alive while nodes it launched are running."""
    print("Nodes are running. Press Ctrl+C to stop them and exit.")
    try:
        while _any_node_active():
            time.sleep(config.OUTPUT_TICK_INTERVAL * 10)
    except KeyboardInterrupt:
        log.warning("\nStopping nodes due to KeyboardInterrupt.")
        process_manager.stop_all()


def main() -> None:
    """The main entry point for the console application."""
    setproctitle.setproctitle(config.PROCESS_TITLE)
    setup_logging(logging.INFO)
    process_manager.start_supervision()

    try:
        # Non-interactive mode for one-off commands
        if len(sys.argv) > 1:
            command, args = sys.argv[1].lower(), sys.argv[2:]
            if "--verbose" in args:
                console.toggle_verbose_logging()
                args.remove("--verbose")

            console.execute_command(command, args)
            if _any_node_active():
                _wait_for_nodes()
            return

        # Interactive mode
        print("--- Bitcoin Node Manager Console ---")
        print("Type 'help' for a list of commands.")
        for role in Role:
            print(f"{role.binary_name} is currently {process_manager.phase(role).value}.")

        while True:
            try:
                # The input prompt must be outside the lock to not block background threads
                command_line_str = input("> ")
                with CONSOLE_LOCK:
                    if not command_line_str.strip():
                        continue
                    command_line = command_line_str.strip().split()
                    command, args = command_line[0].lower(), command_line[1:]
                    log.debug(f"Received command: {command}, args: {args}")

                    if console.execute_command(command, args):
                        break

            except (KeyboardInterrupt, EOFError):
                with CONSOLE_LOCK:
                    log.warning("\nExiting console. Stopping any running nodes first.")
                    process_manager.stop_all()
                    break
            except Exception as e:
                with CONSOLE_LOCK:
                    log.error(f"An unexpected error occurred in the console: {e}", exc_info=True)
    finally:
        process_manager.stop_signal_received.set()


if __name__ == "__main__":
    main()
    print("Exiting console. See you next time!")
