from datetime import timedelta
from typing import Any, cast

from fakes import FakeCompute, FakeNetwork
from vm_orchestrator.db import Base, SessionLocal, engine
from vm_orchestrator.metrics import metrics
from vm_orchestrator.models import VMRecord, VMStatus
from vm_orchestrator.repositories import now_utc
from vm_orchestrator.scripts import run_sweeper
from vm_orchestrator.services.sweeper import expired_vm_names, sweep_once


def setup_function() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _seed(
    compute: FakeCompute,
    network: FakeNetwork,
    name: str,
    expires_in: timedelta,
    status: str = VMStatus.RUNNING.value,
) -> None:
    now = now_utc()
    db = SessionLocal()
    db.add(
        VMRecord(
            name=name,
            os_variant="ubuntu",
            status=status,
            public_address="198.51.100.7",
            requester_address="203.0.113.7",
            created_at=now - timedelta(hours=2),
            updated_at=now,
            expires_at=now + expires_in,
        )
    )
    db.commit()
    db.close()
    compute.vms[name] = {}
    network.seed(name)


def _status(name: str) -> str | None:
    db = SessionLocal()
    record = db.get(VMRecord, name)
    db.close()
    return record.status if record else None


def test_sweep_deletes_only_expired_vms():
    compute = FakeCompute()
    network = FakeNetwork()
    for name in ("old-1", "old-2", "old-3"):
        _seed(compute, network, name, timedelta(minutes=-5))
    for name in ("fresh-1", "fresh-2"):
        _seed(compute, network, name, timedelta(minutes=30))

    deleted = sweep_once(cast(Any, compute), cast(Any, network))

    assert sorted(deleted) == ["old-1", "old-2", "old-3"]
    assert sorted(compute.deleted) == ["old-1", "old-2", "old-3"]
    assert set(compute.vms) == {"fresh-1", "fresh-2"}
    assert _status("old-1") == VMStatus.DELETED.value
    assert _status("fresh-1") == VMStatus.RUNNING.value


def test_second_sweep_is_a_no_op():
    compute = FakeCompute()
    network = FakeNetwork()
    _seed(compute, network, "old-1", timedelta(minutes=-5))

    assert sweep_once(cast(Any, compute), cast(Any, network)) == ["old-1"]
    calls = len(compute.deleted) + len(network.deleted)
    assert sweep_once(cast(Any, compute), cast(Any, network)) == []
    assert len(compute.deleted) + len(network.deleted) == calls


def test_stopped_vms_expire_too():
    compute = FakeCompute()
    network = FakeNetwork()
    _seed(compute, network, "old-1", timedelta(minutes=-1), VMStatus.STOPPED.value)
    assert expired_vm_names() == ["old-1"]
    assert sweep_once(cast(Any, compute), cast(Any, network)) == ["old-1"]


def test_one_failing_vm_does_not_abort_the_sweep(monkeypatch):
    from vm_orchestrator.services import sweeper

    compute = FakeCompute()
    network = FakeNetwork()
    for name in ("old-1", "old-2", "old-3"):
        _seed(compute, network, name, timedelta(minutes=-5))

    real_delete = sweeper.delete_vm

    def flaky_delete(name, *args, **kwargs):
        if name == "old-2":
            raise RuntimeError("database hiccup")
        return real_delete(name, *args, **kwargs)

    monkeypatch.setattr(sweeper, "delete_vm", flaky_delete)

    deleted = sweep_once(cast(Any, compute), cast(Any, network))

    assert sorted(deleted) == ["old-1", "old-3"]
    assert _status("old-2") == VMStatus.RUNNING.value


def test_sweeper_script_runs_once(monkeypatch):
    compute = FakeCompute()
    network = FakeNetwork()
    _seed(compute, network, "old-1", timedelta(minutes=-5))
    monkeypatch.setattr(run_sweeper, "build_compute_client", lambda: compute)
    monkeypatch.setattr(run_sweeper, "build_network_client", lambda: network)

    assert run_sweeper.main(["--once"]) == 0
    assert _status("old-1") == VMStatus.DELETED.value


def test_sweep_updates_metrics():
    compute = FakeCompute()
    network = FakeNetwork()
    _seed(compute, network, "old-1", timedelta(minutes=-5))
    sweep_once(cast(Any, compute), cast(Any, network))
    snapshot = metrics.snapshot()
    assert snapshot["sweep_last_deleted"] == 1
    assert snapshot["sweep_last_run_ts"] > 0
