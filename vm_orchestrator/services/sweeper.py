import logging
from datetime import datetime

from vm_orchestrator.clients.compute import ComputeClient
from vm_orchestrator.clients.network import NetworkClient
from vm_orchestrator.db import session_scope
from vm_orchestrator.metrics import metrics
from vm_orchestrator.repositories import list_records, now_utc
from vm_orchestrator.services.lifecycle import delete_vm


logger = logging.getLogger(__name__)


def expired_vm_names(now: datetime | None = None) -> list[str]:
    now = now or now_utc()
    with session_scope() as session:
        records = list_records(session, exclude_deleted=True)
        return [record.name for record in records if record.expires_at < now]


def sweep_once(
    compute: ComputeClient, network: NetworkClient, now: datetime | None = None
) -> list[str]:
    """Delete every non-deleted VM whose lifetime has run out.

    One VM failing does not stop the others. Returns the names that reached
    ``deleted`` during this run.
    """
    metrics.inc("sweeps_total")
    deleted: list[str] = []
    for name in expired_vm_names(now):
        try:
            delete_vm(name, compute, network, reason="expired")
        except Exception as exc:  # noqa: BLE001
            logger.exception("sweep delete failed vm=%s: %s", name, exc)
            metrics.inc("sweep_failures_total")
            continue
        deleted.append(name)
    metrics.mark("sweep_last_run_ts")
    metrics.set("sweep_last_deleted", len(deleted))
    if deleted:
        logger.info("sweep deleted %d expired vm(s): %s", len(deleted), ", ".join(deleted))
        metrics.inc("vms_expired_total", len(deleted))
    return deleted
