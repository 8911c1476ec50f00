import argparse
import logging
import signal
import threading

from vm_orchestrator import models  # noqa: F401
from vm_orchestrator.db import init_schema
from vm_orchestrator.logging_config import configure_logging
from vm_orchestrator.loops import run_sweeper
from vm_orchestrator.providers import build_compute_client, build_network_client
from vm_orchestrator.services.sweeper import sweep_once


logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Delete expired VMs, once or on a fixed interval."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single sweep and exit (for cron or timer triggers)",
    )
    args = parser.parse_args(argv)

    configure_logging()
    init_schema()

    if args.once:
        deleted = sweep_once(build_compute_client(), build_network_client())
        logger.info("sweep finished deleted=%d", len(deleted))
        return 0

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
    signal.signal(signal.SIGINT, lambda *_: stop_event.set())
    logger.info("sweeper started")
    run_sweeper(stop_event)
    logger.info("sweeper stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
