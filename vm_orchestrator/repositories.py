import json
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from vm_orchestrator.models import Event, VMRecord, VMStatus
from vm_orchestrator.state_machine import ACTIVE_STATUSES, sources_for


EXTENDABLE_STATUSES = (VMStatus.RUNNING.value, VMStatus.STOPPED.value)


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def write_event(
    session: Session, event_type: str, payload: dict, vm_name: str | None = None
) -> None:
    session.add(
        Event(
            vm_name=vm_name,
            event_type=event_type,
            payload_json=json.dumps(payload, sort_keys=True, default=str),
        )
    )


def get_record(session: Session, name: str) -> VMRecord | None:
    return session.get(VMRecord, name)


def list_records(
    session: Session,
    status: str | None = None,
    exclude_deleted: bool = False,
) -> list[VMRecord]:
    query = select(VMRecord)
    if status:
        query = query.where(VMRecord.status == status)
    if exclude_deleted:
        query = query.where(VMRecord.status != VMStatus.DELETED.value)
    return list(session.scalars(query.order_by(VMRecord.created_at.desc())))


def upsert_record(session: Session, record: VMRecord) -> VMRecord:
    record.updated_at = now_utc()
    return session.merge(record)


def count_active(session: Session) -> int:
    query = select(func.count()).select_from(VMRecord)
    query = query.where(VMRecord.status.in_(ACTIVE_STATUSES))
    return int(session.scalar(query) or 0)


def reserve_name(
    session: Session,
    name: str,
    os_variant: str,
    requester_address: str,
    expires_at: datetime,
) -> bool:
    """Claim ``name`` for a new VM.

    Inserts a ``provisioning`` row, or re-reserves a ``deleted`` one. Returns
    False when an active record already owns the name. A concurrent insert of
    the same name surfaces as ``IntegrityError`` on commit.
    """
    now = now_utc()
    existing = get_record(session, name)
    if existing is None:
        session.add(
            VMRecord(
                name=name,
                os_variant=os_variant,
                status=VMStatus.PROVISIONING.value,
                requester_address=requester_address,
                created_at=now,
                updated_at=now,
                expires_at=expires_at,
            )
        )
        session.flush()
        return True

    result = session.execute(
        update(VMRecord)
        .where(VMRecord.name == name)
        .where(VMRecord.status == VMStatus.DELETED.value)
        .values(
            os_variant=os_variant,
            status=VMStatus.PROVISIONING.value,
            requester_address=requester_address,
            public_address=None,
            username=None,
            password=None,
            last_error=None,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def transition_status(
    session: Session, name: str, target: str, **values: Any
) -> bool:
    """Conditionally move ``name`` to ``target``.

    The update only applies when the stored status may legally reach
    ``target``, so concurrent writers converge instead of resurrecting a
    deleted record.
    """
    result = session.execute(
        update(VMRecord)
        .where(VMRecord.name == name)
        .where(VMRecord.status.in_(sources_for(target)))
        .values(status=target, updated_at=now_utc(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def extend_expiry(session: Session, name: str, expires_at: datetime) -> bool:
    result = session.execute(
        update(VMRecord)
        .where(VMRecord.name == name)
        .where(VMRecord.status.in_(EXTENDABLE_STATUSES))
        .values(expires_at=expires_at, updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def mark_for_cleanup(session: Session, name: str, last_error: str) -> bool:
    """Leave a failed reservation expired so the next sweep retries teardown."""
    now = now_utc()
    result = session.execute(
        update(VMRecord)
        .where(VMRecord.name == name)
        .where(VMRecord.status == VMStatus.PROVISIONING.value)
        .values(expires_at=now, updated_at=now, last_error=last_error)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
