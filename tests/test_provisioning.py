import base64
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Any, cast

import pytest
from sqlalchemy import select

from fakes import FakeCompute, FakeNetwork
from vm_orchestrator.config import get_settings
from vm_orchestrator.db import Base, SessionLocal, engine
from vm_orchestrator.errors import (
    AlreadyExists,
    InvalidRequest,
    ProvisioningFailed,
    QuotaExceeded,
    UnsupportedOS,
)
from vm_orchestrator.models import Event, VMRecord, VMStatus
from vm_orchestrator.repositories import now_utc
from vm_orchestrator.services.lifecycle import delete_vm
from vm_orchestrator.services.provisioning import (
    PASSWORD_SYMBOLS,
    build_boot_customization,
    computer_name,
    create_vm,
    generate_password,
)
from vm_orchestrator.services.sweeper import sweep_once


REQUESTER = "203.0.113.7"


def setup_function() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _create(compute, network, **kwargs):
    kwargs.setdefault("os_variant", "ubuntu")
    kwargs.setdefault("requester_address", REQUESTER)
    return create_vm(compute=cast(Any, compute), network=cast(Any, network), **kwargs)


def _record(name: str) -> VMRecord | None:
    db = SessionLocal()
    record = db.get(VMRecord, name)
    db.close()
    return record


def _events() -> list[Event]:
    db = SessionLocal()
    rows = list(db.scalars(select(Event)))
    db.close()
    return rows


@pytest.mark.parametrize("os_variant", ["ubuntu", "kali", "windows10"])
def test_create_returns_running_vm_with_credentials(os_variant):
    compute = FakeCompute()
    network = FakeNetwork()
    started = _create(compute, network, os_variant=os_variant, name="lab-1")

    assert started.status == VMStatus.RUNNING.value
    assert started.public_address == "198.51.100.7"
    assert started.credentials.username
    assert started.credentials.password
    assert started.os_variant == os_variant

    record = _record("lab-1")
    assert record is not None
    assert record.status == VMStatus.RUNNING.value
    assert record.requester_address == REQUESTER
    assert record.expires_at > record.created_at

    _, kwargs = compute.created[0]
    assert kwargs["nic_id"] == "/networkInterfaces/lab-1-nic"
    assert kwargs["admin_password"] == started.credentials.password


def test_boot_payload_embeds_each_credential_once():
    for family in ("unix", "windows"):
        password = generate_password()
        payload = base64.b64decode(
            build_boot_customization(family, "labuser", password)
        ).decode("utf-8")
        assert payload.count("labuser") == 1
        assert payload.count(password) == 1


def test_unix_payload_enables_remote_desktop():
    payload = base64.b64decode(
        build_boot_customization("unix", "labuser", "Secret-123abc")
    ).decode("utf-8")
    assert payload.startswith("#cloud-config")
    assert "xrdp" in payload
    assert "ssh_pwauth: true" in payload


def test_windows_payload_adds_administrator():
    payload = base64.b64decode(
        build_boot_customization("windows", "labuser", "Secret-123abc")
    ).decode("utf-8")
    assert "New-LocalUser" in payload
    assert "Add-LocalGroupMember -Group 'Administrators'" in payload
    assert "fDenyTSConnections" in payload


def test_generated_password_covers_every_class():
    password = generate_password()
    assert len(password) == 20
    assert any(c.islower() for c in password)
    assert any(c.isupper() for c in password)
    assert any(c.isdigit() for c in password)
    assert any(c in PASSWORD_SYMBOLS for c in password)


def test_windows_computer_name_is_truncated():
    assert computer_name("a-very-long-windows-name", "windows") == "a-very-long-win"
    assert computer_name("a-very-long-windows-name", "unix") == "a-very-long-windows-name"


def test_unsupported_os_creates_nothing():
    compute = FakeCompute()
    network = FakeNetwork()
    with pytest.raises(UnsupportedOS):
        _create(compute, network, os_variant="templeos", name="lab-1")
    assert _record("lab-1") is None
    assert not network.public_ips
    assert not compute.created


@pytest.mark.parametrize("requester", ["testclient", "0.0.0.0", ""])
def test_unusable_requester_is_rejected(requester):
    network = FakeNetwork()
    with pytest.raises(InvalidRequest):
        _create(FakeCompute(), network, requester_address=requester, name="lab-1")
    assert _record("lab-1") is None
    assert not network.security_groups


def test_invalid_name_is_rejected():
    with pytest.raises(InvalidRequest):
        _create(FakeCompute(), FakeNetwork(), name="Bad_Name")


def test_duration_above_maximum_is_rejected():
    limit = get_settings().max_lifetime_sec
    with pytest.raises(InvalidRequest):
        _create(FakeCompute(), FakeNetwork(), name="lab-1", duration_sec=limit + 1)


def test_active_name_conflicts_and_deleted_name_is_reusable():
    compute = FakeCompute()
    network = FakeNetwork()
    _create(compute, network, name="lab-1")
    with pytest.raises(AlreadyExists):
        _create(compute, network, name="lab-1")

    delete_vm("lab-1", cast(Any, compute), cast(Any, network))
    again = _create(compute, network, name="lab-1", os_variant="kali")
    assert again.status == VMStatus.RUNNING.value
    record = _record("lab-1")
    assert record is not None
    assert record.os_variant == "kali"
    assert record.status == VMStatus.RUNNING.value


def test_quota_limits_active_vms(monkeypatch):
    monkeypatch.setattr(get_settings(), "max_active_vms", 1)
    compute = FakeCompute()
    network = FakeNetwork()
    _create(compute, network, name="lab-1")
    with pytest.raises(QuotaExceeded):
        _create(compute, network, name="lab-2")
    assert _record("lab-2") is None


def test_failed_vm_create_rolls_back_network_bundle():
    compute = FakeCompute(fail_create=True)
    network = FakeNetwork()
    with pytest.raises(ProvisioningFailed) as excinfo:
        _create(compute, network, name="lab-1")

    assert excinfo.value.stage == "vm"
    assert "password ***" in excinfo.value.message
    assert not network.public_ips
    assert not network.security_groups
    assert not network.nics
    assert {"lab-1-nic", "lab-1-nsg", "lab-1-ip"} <= set(network.deleted)

    record = _record("lab-1")
    assert record is not None
    assert record.status == VMStatus.DELETED.value
    assert record.password is None
    assert record.last_error and record.last_error.startswith("vm:")


def test_failed_nic_create_reports_network_stage():
    compute = FakeCompute()
    network = FakeNetwork(fail_nic=True)
    with pytest.raises(ProvisioningFailed) as excinfo:
        _create(compute, network, name="lab-1")
    assert excinfo.value.stage == "network"
    assert "SubnetIsFull" in excinfo.value.message
    assert not network.public_ips
    assert not compute.created
    record = _record("lab-1")
    assert record is not None
    assert record.status == VMStatus.DELETED.value


def test_events_never_carry_password():
    started = _create(FakeCompute(), FakeNetwork(), name="lab-1")
    events = _events()
    assert {event.event_type for event in events} >= {"vm.reserved", "vm.created"}
    for event in events:
        assert started.credentials.password not in event.payload_json



class SweepDuringCreate(FakeCompute):
    """Runs a sweep while the provider is still building the VM."""

    def __init__(self, network: FakeNetwork, sweep_at):
        super().__init__()
        self.network = network
        self.sweep_at = sweep_at
        self.swept: list[str] | None = None

    def create_or_update_vm(self, vm_name: str, **kwargs) -> str:
        self.swept = sweep_once(cast(Any, self), cast(Any, self.network), now=self.sweep_at)
        return super().create_or_update_vm(vm_name, **kwargs)


def test_sweeper_leaves_in_flight_create_alone():
    network = FakeNetwork()
    compute = SweepDuringCreate(network, now_utc() + timedelta(seconds=120))

    started = _create(compute, network, name="lab-1", duration_sec=60)

    assert compute.swept == []
    assert "lab-1" not in compute.deleted
    assert started.status == VMStatus.RUNNING.value
    assert network.public_ips
    record = _record("lab-1")
    assert record is not None
    assert record.status == VMStatus.RUNNING.value
    assert record.expires_at <= now_utc() + timedelta(seconds=60)


def test_reservation_outlives_requested_duration_by_grace_period():
    grace = get_settings().provisioning_grace_sec
    seen = {}

    class CapturingCompute(FakeCompute):
        def create_or_update_vm(self, vm_name: str, **kwargs) -> str:
            record = _record(vm_name)
            assert record is not None
            seen["status"] = record.status
            seen["expires_at"] = record.expires_at
            return super().create_or_update_vm(vm_name, **kwargs)

    before = now_utc()
    _create(CapturingCompute(), FakeNetwork(), name="lab-1", duration_sec=60)

    assert seen["status"] == VMStatus.PROVISIONING.value
    assert seen["expires_at"] >= before + timedelta(seconds=grace + 60)


def test_incomplete_rollback_is_finished_by_next_sweep():
    compute = FakeCompute(fail_create=True)
    network = FakeNetwork(failing_deletes=1)
    with pytest.raises(ProvisioningFailed):
        _create(compute, network, name="lab-1")

    assert "lab-1-ip" in network.public_ips
    record = _record("lab-1")
    assert record is not None
    assert record.status == VMStatus.PROVISIONING.value
    assert record.last_error and record.last_error.startswith("vm:")
    assert record.password is None
    assert "vm.provision_failed" in {event.event_type for event in _events()}

    swept = sweep_once(
        cast(Any, compute), cast(Any, network), now=now_utc() + timedelta(seconds=1)
    )

    assert swept == ["lab-1"]
    assert not network.public_ips
    assert not network.security_groups
    assert not network.nics
    record = _record("lab-1")
    assert record is not None
    assert record.status == VMStatus.DELETED.value


def test_parallel_creates_respect_quota(monkeypatch):
    monkeypatch.setattr(get_settings(), "max_active_vms", 1)
    compute = FakeCompute()
    network = FakeNetwork()

    def attempt(name: str):
        try:
            return _create(compute, network, name=name)
        except QuotaExceeded as exc:
            return exc

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(attempt, ["lab-1", "lab-2", "lab-3", "lab-4"]))

    refused = [result for result in results if isinstance(result, QuotaExceeded)]
    assert len(refused) == 3
    db = SessionLocal()
    active = [
        record
        for record in db.scalars(select(VMRecord))
        if record.status != VMStatus.DELETED.value
    ]
    db.close()
    assert len(active) == 1
