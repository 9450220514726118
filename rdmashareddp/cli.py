"""Command line entry point of the shared RDMA device plugin."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import Optional, Sequence

from .resources_manager import DEFAULT_CONFIG_FILE_PATH, ResourceManager
from .watcher import SignalNotifier

log = logging.getLogger(__name__)

PROGRAM = "rdma-shared-dev-plugin"
VERSION = "master@git"
COMMIT = "unknown commit"
DATE = "unknown date"

_TERM_SIGNALS = (signal.SIGHUP, signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)


def version_string() -> str:
    """Return the version line printed by --version."""
    return f"{PROGRAM} version:{VERSION}, commit:{COMMIT}, date:{DATE}"


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=PROGRAM, allow_abbrev=False)
    parser.add_argument(
        "-v", "-version", "--version", dest="version", action="store_true",
        help="Show application version",
    )
    parser.add_argument(
        "-config-file", "--config-file", dest="config_file", default=DEFAULT_CONFIG_FILE_PATH,
        help="path to device plugin config file",
    )
    parser.add_argument(
        "-use-cdi", "--use-cdi", dest="use_cdi", action="store_true",
        help="Use Container Device Interface to expose devices in containers",
    )
    return parser


def _run(manager, notifier) -> int:
    """Bring the servers up, wait for a signal and act on it; return the exit status."""
    log.info("resource manager reading configs")
    steps = (
        (manager.read_config, "%s", None),
        (manager.validate_configs, "Exiting.. one or more invalid configuration(s) given: %s", None),
        (manager.validate_rdma_system_mode, "Exiting.. can not change : %s", None),
        (manager.discover_host_devices, "Error: error discovering host devices %s",
         "Discovering host devices"),
        (manager.init_servers, "Error: initializing resource servers %s",
         "Initializing resource servers"),
        (manager.start_all_servers, "Error: starting resource servers %s",
         "Starting all servers..."),
    )
    for step, failure, announce in steps:
        if announce:
            log.info(announce)
        try:
            step()
        except Exception as err:
            log.critical(failure, err)
            return 1

    stop_periodic_update = manager.periodic_update()
    log.info("All servers started.")

    log.info("Listening for term signals")
    log.info("Starting OS watcher.")
    received = notifier.notify().get()

    if received == signal.SIGHUP:
        log.info("Received SIGHUP, restarting.")
        try:
            manager.restart_all_servers()
        except Exception as err:
            log.critical("unable to restart server %s", err)
            return 1
        return 0

    log.info('Received signal "%s", shutting down.', received)
    stop_periodic_update()
    try:
        manager.stop_all_servers()
    except Exception as err:
        log.debug("stopping servers failed: %s", err)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the device plugin; return the process exit status."""
    args = _parser().parse_args(argv)
    if args.version:
        print(version_string())
        return 0

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    if args.use_cdi:
        log.info("CDI enabled")
    log.info("Starting RDMA Shared Device Plugin version= %s", VERSION)

    manager = ResourceManager(args.config_file, args.use_cdi)
    return _run(manager, SignalNotifier(*_TERM_SIGNALS))


if __name__ == "__main__":
    sys.exit(main())