from vm_orchestrator.models import VMStatus


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    VMStatus.PROVISIONING.value: {VMStatus.RUNNING.value, VMStatus.DELETED.value},
    VMStatus.RUNNING.value: {VMStatus.STOPPED.value, VMStatus.DELETED.value},
    VMStatus.STOPPED.value: {VMStatus.DELETED.value},
    # A deleted name may only come back through a fresh reservation.
    VMStatus.DELETED.value: {VMStatus.PROVISIONING.value},
}

ACTIVE_STATUSES: frozenset[str] = frozenset(
    {
        VMStatus.PROVISIONING.value,
        VMStatus.RUNNING.value,
        VMStatus.STOPPED.value,
    }
)


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())


def sources_for(target: str) -> set[str]:
    """Statuses from which ``target`` may be reached, including itself."""
    return {
        source
        for source, targets in ALLOWED_TRANSITIONS.items()
        if target in targets or source == target
    }
