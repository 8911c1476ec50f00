import logging
import threading

from vm_orchestrator.config import get_settings
from vm_orchestrator.providers import build_compute_client, build_network_client
from vm_orchestrator.services.sweeper import sweep_once


logger = logging.getLogger(__name__)


def run_sweeper(stop_event: threading.Event) -> None:
    settings = get_settings()
    compute = build_compute_client()
    network = build_network_client()
    while not stop_event.is_set():
        try:
            sweep_once(compute, network)
        except Exception as exc:  # noqa: BLE001
            logger.exception("sweep tick failed: %s", exc)
        stop_event.wait(settings.sweep_interval_sec)


def start_sweeper(stop_event: threading.Event) -> threading.Thread:
    thread = threading.Thread(
        target=run_sweeper, args=(stop_event,), name="expiry-sweeper", daemon=True
    )
    thread.start()
    return thread
