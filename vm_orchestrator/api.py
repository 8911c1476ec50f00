import logging
from typing import Annotated

from fastapi import APIRouter, Body, Depends, Header, Query, Request
from sqlalchemy.orm import Session

from vm_orchestrator.auth import api_key_valid
from vm_orchestrator.clients.compute import ComputeClient
from vm_orchestrator.clients.network import NetworkClient
from vm_orchestrator.config import get_settings
from vm_orchestrator.db import SessionLocal
from vm_orchestrator.errors import ProviderUnavailable, Unauthorized
from vm_orchestrator.metrics import metrics
from vm_orchestrator.providers import build_compute_client, build_network_client
from vm_orchestrator.repositories import list_records
from vm_orchestrator.schemas import (
    DeleteCommand,
    ExtendCommand,
    StartCommand,
    StatusCommand,
    StopCommand,
    VMCommand,
    VMRecordRead,
)
from vm_orchestrator.services.lifecycle import delete_vm, extend_vm, stop_vm, vm_status
from vm_orchestrator.services.provisioning import create_vm


router = APIRouter()
logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
    if not api_key_valid(x_api_key, get_settings().api_key):
        metrics.inc("requests_unauthorized_total")
        raise Unauthorized("missing or invalid api key")


def get_compute() -> ComputeClient:
    try:
        return build_compute_client()
    except ValueError as exc:
        raise ProviderUnavailable(str(exc)) from exc


def get_network() -> NetworkClient:
    try:
        return build_network_client()
    except ValueError as exc:
        raise ProviderUnavailable(str(exc)) from exc


def requester_address(request: Request) -> str:
    if get_settings().trust_forwarded_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
        real_ip = request.headers.get("x-real-ip", "").strip()
        if real_ip:
            return real_ip
    return request.client.host if request.client else ""


def dispatch_command(
    command: VMCommand,
    requester: str,
    compute: ComputeClient,
    network: NetworkClient,
):
    if isinstance(command, StartCommand):
        return create_vm(
            os_variant=command.os_variant,
            requester_address=requester,
            compute=compute,
            network=network,
            name=command.name,
            duration_sec=command.duration,
        )
    if isinstance(command, StopCommand):
        return stop_vm(command.name, compute)
    if isinstance(command, DeleteCommand):
        return delete_vm(command.name, compute, network, reason="requested")
    if isinstance(command, StatusCommand):
        return vm_status(command.name, compute, network)
    if isinstance(command, ExtendCommand):
        return extend_vm(command.name, command.duration)
    raise TypeError(f"unhandled command {type(command).__name__}")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@router.post("/api/vm", dependencies=[Depends(require_api_key)])
def vm_action(
    command: Annotated[VMCommand, Body(discriminator="action")],
    request: Request,
    compute: ComputeClient = Depends(get_compute),
    network: NetworkClient = Depends(get_network),
):
    requester = requester_address(request)
    logger.info(
        "vm action=%s name=%s requester=%s",
        command.action,
        getattr(command, "name", None),
        requester,
    )
    metrics.inc(f"action_{command.action}_total")
    return dispatch_command(command, requester, compute, network)


@router.get(
    "/api/vms",
    response_model=list[VMRecordRead],
    dependencies=[Depends(require_api_key)],
)
def get_vms(
    status: str | None = Query(default=None),
    include_deleted: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> list[VMRecordRead]:
    records = list_records(db, status=status, exclude_deleted=not include_deleted)
    return [
        VMRecordRead(
            name=r.name,
            os_variant=r.os_variant,
            status=r.status,
            public_address=r.public_address,
            requester_address=r.requester_address,
            created_at=r.created_at,
            updated_at=r.updated_at,
            expires_at=r.expires_at,
            last_error=r.last_error,
        )
        for r in records
    ]
