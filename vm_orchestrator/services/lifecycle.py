import logging
from datetime import timedelta

from vm_orchestrator.clients.arm import PROVIDER_ERRORS, ResourceNotFound
from vm_orchestrator.clients.compute import ComputeClient
from vm_orchestrator.clients.network import NetworkClient
from vm_orchestrator.config import get_settings
from vm_orchestrator.db import session_scope
from vm_orchestrator.errors import InvalidRequest, NotFound, ProviderUnavailable
from vm_orchestrator.metrics import metrics
from vm_orchestrator.models import VMStatus
from vm_orchestrator.repositories import (
    extend_expiry,
    get_record,
    now_utc,
    transition_status,
    write_event,
)
from vm_orchestrator.schemas import VMExtended, VMState, VMStatusRead
from vm_orchestrator.services.network import bundle_names


logger = logging.getLogger(__name__)


def resolve_duration(duration_sec: int | None) -> int:
    settings = get_settings()
    duration = duration_sec or settings.default_lifetime_sec
    if duration < 1 or duration > settings.max_lifetime_sec:
        raise InvalidRequest(
            f"duration must be between 1 and {settings.max_lifetime_sec} seconds"
        )
    return duration


def teardown_resources(
    vm_name: str, compute: ComputeClient, network: NetworkClient
) -> list[str]:
    """Best-effort removal of every resource in the VM's bundle.

    Each step runs regardless of the others. Missing resources count as
    removed. Returns one entry per step that failed.
    """
    names = bundle_names(vm_name)
    steps = [
        ("vm", lambda: compute.delete_vm(vm_name)),
        ("nic", lambda: network.delete_nic(names.nic)),
        ("nsg", lambda: network.delete_security_group(names.nsg)),
        ("public_ip", lambda: network.delete_public_ip(names.public_ip)),
    ]
    failures: list[str] = []
    for step, action in steps:
        try:
            action()
        except ResourceNotFound:
            logger.debug("delete step found nothing vm=%s step=%s", vm_name, step)
        except Exception as exc:  # noqa: BLE001
            logger.warning("delete step failed vm=%s step=%s: %s", vm_name, step, exc)
            failures.append(f"{step}: {exc}")
    return failures


def delete_vm(
    name: str,
    compute: ComputeClient,
    network: NetworkClient,
    reason: str = "requested",
) -> VMState:
    with session_scope() as session:
        record = get_record(session, name)
        tracked = record is not None
        if record is not None and record.status == VMStatus.DELETED.value:
            return VMState(name=name, status=VMStatus.DELETED.value)

    logger.info("deleting vm=%s reason=%s tracked=%s", name, reason, tracked)
    failures = teardown_resources(name, compute, network)

    with session_scope() as session:
        if tracked:
            transition_status(
                session,
                name,
                VMStatus.DELETED.value,
                last_error="; ".join(failures) or None,
            )
        for failure in failures:
            write_event(session, "vm.delete_step_failed", {"error": failure}, name)
        write_event(
            session,
            "vm.deleted",
            {"reason": reason, "tracked": tracked, "failed_steps": len(failures)},
            name,
        )
    metrics.inc("vms_deleted_total")
    if failures:
        metrics.inc("vm_delete_step_failures_total", len(failures))
    return VMState(name=name, status=VMStatus.DELETED.value)


def stop_vm(name: str, compute: ComputeClient) -> VMState:
    with session_scope() as session:
        record = get_record(session, name)
        if record is None or record.status == VMStatus.DELETED.value:
            raise NotFound(f"vm {name} not found", vm_name=name)
        if record.status == VMStatus.PROVISIONING.value:
            raise InvalidRequest(f"vm {name} is still provisioning", vm_name=name)

    logger.info("powering off vm=%s", name)
    try:
        compute.power_off(name)
    except ResourceNotFound:
        logger.info("vm missing at provider during stop vm=%s", name)
        return VMState(name=name, status=VMStatus.DELETED.value)
    except PROVIDER_ERRORS as exc:
        raise ProviderUnavailable(
            f"power-off failed for vm {name}: {exc}", vm_name=name
        ) from exc

    with session_scope() as session:
        stopped = transition_status(session, name, VMStatus.STOPPED.value)
        if stopped:
            write_event(session, "vm.stopped", {}, name)
    if not stopped:
        logger.info("vm deleted while stopping vm=%s", name)
        return VMState(name=name, status=VMStatus.DELETED.value)
    metrics.inc("vms_stopped_total")
    return VMState(name=name, status=VMStatus.STOPPED.value)


def _live_public_address(network: NetworkClient, name: str) -> str | None:
    try:
        public_ip = network.get_public_ip(bundle_names(name).public_ip)
    except ResourceNotFound:
        return None
    except PROVIDER_ERRORS as exc:
        logger.warning("public address lookup failed vm=%s: %s", name, exc)
        return None
    return public_ip.ip_address


def vm_status(
    name: str, compute: ComputeClient, network: NetworkClient
) -> VMStatusRead:
    with session_scope() as session:
        record = get_record(session, name)
        os_variant = record.os_variant if record else None
        stored_address = record.public_address if record else None
        stored_status = record.status if record else None

    if stored_status in (VMStatus.DELETED.value, VMStatus.PROVISIONING.value):
        return VMStatusRead(
            name=name,
            public_address=stored_address,
            status=stored_status,
            os_variant=os_variant,
        )

    try:
        state = compute.instance_state(name)
    except ResourceNotFound:
        # Drift: reported, never written back.
        logger.info("vm missing at provider vm=%s recorded_status=%s", name, stored_status)
        return VMStatusRead(
            name=name,
            public_address=None,
            status=VMStatus.DELETED.value,
            os_variant=os_variant,
        )
    except PROVIDER_ERRORS as exc:
        raise ProviderUnavailable(
            f"status lookup failed for vm {name}: {exc}", vm_name=name
        ) from exc

    if "running" in state.power_state.lower():
        status = VMStatus.RUNNING.value
    else:
        status = VMStatus.STOPPED.value
    return VMStatusRead(
        name=name,
        public_address=_live_public_address(network, name) or stored_address,
        status=status,
        os_variant=os_variant,
    )


def extend_vm(name: str, duration_sec: int | None = None) -> VMExtended:
    duration = resolve_duration(duration_sec)
    expires_at = now_utc() + timedelta(seconds=duration)
    with session_scope() as session:
        record = get_record(session, name)
        if record is not None and record.status == VMStatus.PROVISIONING.value:
            raise InvalidRequest(f"vm {name} is still provisioning", vm_name=name)
        if record is None or not extend_expiry(session, name, expires_at):
            raise NotFound(f"vm {name} not found", vm_name=name)
        status = record.status
        write_event(
            session,
            "vm.extended",
            {"expires_at": expires_at.isoformat(), "duration_sec": duration},
            name,
        )
    logger.info("extended vm=%s expires_at=%s", name, expires_at.isoformat())
    metrics.inc("vms_extended_total")
    return VMExtended(name=name, status=status, expires_at=expires_at)
