"""Tests for the refcounted volume registry."""

import threading
import time
from datetime import datetime

import pytest

from hostvol.domain import BackendRegistration, VolumeSpec
from hostvol.errors import (
    BackendUnavailableError,
    BlockingCallTimeoutError,
    ConflictingBindingError,
    MissingAndNotCreatableError,
    PathPermissionDeniedError,
    PropagationNotPermittedError,
    TypeMismatchError,
)
from hostvol.models import MountState, PathKind, PathType, PropagationMode, WorkloadKind
from hostvol.services.volume_registry import VolumeRegistry
from hostvol.services.worker_pool import BlockingCallPool

from conftest import NODE, FakeReconciler


def _backend(backend_id="ssd-1", capabilities=("fast-ssd",)) -> BackendRegistration:
    return BackendRegistration(
        backend_id=backend_id,
        socket_path=f"/var/lib/hostvol/plugins_registry/{backend_id}.sock",
        last_heartbeat=datetime.utcnow(),
        capabilities=frozenset(capabilities),
    )


def test_first_acquire_creates_and_counts_one(registry, reconciler) -> None:
    mount = registry.acquire("w1", NODE, VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE))

    assert reconciler.created == ["/data/a"]
    assert mount.ref_count == 1
    assert mount.resolved_kind == PathKind.DIRECTORY
    assert registry.descriptors_for("w1")[0].source == "/data/a"


def test_concurrent_acquires_create_once(registry, reconciler) -> None:
    spec = VolumeSpec("/data/shared", PathType.DIRECTORY_OR_CREATE)
    errors = []
    start = threading.Barrier(8)

    def acquire(workload_id):
        start.wait()
        try:
            registry.acquire(workload_id, NODE, spec)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=acquire, args=(f"w{i}",)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert errors == []
    assert reconciler.created == ["/data/shared"]
    mount = registry.get(NODE, "/data/shared")
    assert mount.ref_count == 8
    assert sorted(mount.workload_ids) == sorted(f"w{i}" for i in range(8))


def test_concurrent_conflicting_declarations(registry) -> None:
    results = []
    start = threading.Barrier(2)

    def acquire(workload_id, read_only):
        start.wait()
        try:
            registry.acquire(workload_id, NODE, VolumeSpec("/data/x", PathType.DIRECTORY_OR_CREATE, read_only))
            results.append("ok")
        except ConflictingBindingError:
            results.append("conflict")

    threads = [
        threading.Thread(target=acquire, args=("rw", False)),
        threading.Thread(target=acquire, args=("ro", True)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert sorted(results) == ["conflict", "ok"]
    assert registry.get(NODE, "/data/x").ref_count == 1


def test_reacquire_by_same_workload_is_idempotent(registry) -> None:
    spec = VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE)

    registry.acquire("w1", NODE, spec)
    mount = registry.acquire("w1", NODE, spec)

    assert mount.ref_count == 1
    assert len(registry.descriptors_for("w1")) == 1


def test_each_workload_gets_its_own_mount_target(registry) -> None:
    registry.acquire("w1", NODE, VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE, mount_target="/srv/one"))
    registry.acquire("w2", NODE, VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE, mount_target="/srv/two"))

    assert [d.target for d in registry.descriptors_for("w1")] == ["/srv/one"]
    assert [d.target for d in registry.descriptors_for("w2")] == ["/srv/two"]


def test_same_path_on_different_nodes_is_independent(registry) -> None:
    registry.acquire("w1", "node-1", VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE))
    registry.acquire("w2", "node-2", VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE, read_only=True))

    assert registry.get("node-1", "/data/a").ref_count == 1
    assert registry.get("node-2", "/data/a").read_only is True


@pytest.mark.parametrize(
    "second",
    [
        VolumeSpec("/data/a", PathType.DIRECTORY),
        VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE, read_only=True),
        VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE, propagation=PropagationMode.HOST_TO_CONTAINER),
    ],
)
def test_different_declaration_conflicts(registry, second) -> None:
    registry.acquire("w1", NODE, VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE))

    with pytest.raises(ConflictingBindingError):
        registry.acquire("w2", NODE, second)

    assert registry.get(NODE, "/data/a").ref_count == 1
    assert registry.holds("w2") is False


def test_kind_changed_underneath_binding_conflicts(registry, file_status) -> None:
    file_status.entries["/data/u"] = PathKind.DIRECTORY
    registry.acquire("w1", NODE, VolumeSpec("/data/u", PathType.UNSET))
    file_status.entries["/data/u"] = PathKind.FILE

    with pytest.raises(ConflictingBindingError):
        registry.acquire("w2", NODE, VolumeSpec("/data/u", PathType.UNSET))


def test_bidirectional_reserved_for_storage_backends(registry) -> None:
    spec = VolumeSpec("/data/plugin", PathType.DIRECTORY_OR_CREATE, propagation=PropagationMode.BIDIRECTIONAL)

    with pytest.raises(PropagationNotPermittedError):
        registry.acquire("app", NODE, spec)
    mount = registry.acquire("csi", NODE, spec, WorkloadKind.STORAGE_BACKEND)

    assert mount.propagation == PropagationMode.BIDIRECTIONAL
    assert mount.descriptor.options[-1] == "rshared"


@pytest.mark.parametrize(
    "entry,spec,error",
    [
        (PathKind.FILE, VolumeSpec("/data/b", PathType.DIRECTORY_OR_CREATE), TypeMismatchError),
        (None, VolumeSpec("/data/b", PathType.DIRECTORY), MissingAndNotCreatableError),
        (PermissionError("denied"), VolumeSpec("/data/b", PathType.DIRECTORY), PathPermissionDeniedError),
    ],
)
def test_verdict_errors_leave_no_record(registry, file_status, reconciler, entry, spec, error) -> None:
    if entry is not None:
        file_status.entries["/data/b"] = entry

    with pytest.raises(error):
        registry.acquire("w1", NODE, spec)

    assert registry.snapshot() == ()
    assert reconciler.created == []


def test_release_deletes_record_but_not_host_path(registry, file_status) -> None:
    registry.acquire("w1", NODE, VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE))

    registry.release("w1")

    assert registry.snapshot() == ()
    assert file_status.entries["/data/a"] == PathKind.DIRECTORY


def test_release_decrements_once_and_duplicates_are_noops(registry) -> None:
    spec = VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE)
    registry.acquire("w1", NODE, spec)
    registry.acquire("w2", NODE, spec)

    registry.release("w1")
    registry.release("w1")

    mount = registry.get(NODE, "/data/a")
    assert mount.ref_count == 1
    assert mount.workload_ids == ("w2",)


def test_reacquire_after_release_revalidates(registry, file_status) -> None:
    spec = VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE)
    registry.acquire("w1", NODE, spec)
    registry.release("w1")
    file_status.entries["/data/a"] = PathKind.FILE
    calls_before = len(file_status.calls)

    with pytest.raises(TypeMismatchError):
        registry.acquire("w1", NODE, spec)

    assert len(file_status.calls) == calls_before + 1


def test_snapshot_is_immutable_and_republished(registry) -> None:
    before = registry.snapshot()
    registry.acquire("w1", NODE, VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE))
    after = registry.snapshot()

    assert before == ()
    assert isinstance(after, tuple)
    assert len(after) == 1


def test_backend_capability_requires_registered_backend(registry) -> None:
    spec = VolumeSpec("/data/vol", PathType.DIRECTORY_OR_CREATE, backend_capability="fast-ssd")

    with pytest.raises(BackendUnavailableError):
        registry.acquire("w1", NODE, spec)

    registry.register_backend(_backend())
    mount = registry.acquire("w1", NODE, spec)

    assert mount.backend_id == "ssd-1"


def test_deregistered_backend_degrades_and_blocks_new_acquires(registry) -> None:
    registry.register_backend(_backend())
    spec = VolumeSpec("/data/vol", PathType.DIRECTORY_OR_CREATE, backend_capability="fast-ssd")
    registry.acquire("w1", NODE, spec)
    registry.acquire("plain", NODE, VolumeSpec("/data/plain", PathType.DIRECTORY_OR_CREATE))

    degraded = registry.deregister_backend("ssd-1")

    assert [m.host_path for m in degraded] == ["/data/vol"]
    assert registry.get(NODE, "/data/vol").state == MountState.DEGRADED
    assert registry.get(NODE, "/data/plain").state == MountState.ACTIVE
    with pytest.raises(BackendUnavailableError):
        registry.acquire("w2", NODE, spec)

    restored = registry.register_backend(_backend())

    assert [m.host_path for m in restored] == ["/data/vol"]
    assert registry.acquire("w2", NODE, spec).ref_count == 2


def test_backend_for_capability_is_case_insensitive(registry) -> None:
    registry.register_backend(_backend("b-2", ("Fast-SSD",)))
    registry.register_backend(_backend("b-1", ("fast-ssd", "snapshots")))

    assert registry.backend_for_capability("FAST-ssd").backend_id == "b-1"
    assert registry.backend_for_capability("nfs") is None


def test_record_heartbeat_updates_registration(registry) -> None:
    registry.register_backend(_backend())
    later = datetime(2030, 1, 1)

    registry.record_heartbeat("ssd-1", later)
    registry.record_heartbeat("unknown", later)

    assert registry.backends()[0].last_heartbeat == later


def test_store_round_trip_and_restore(validator, reconciler, store) -> None:
    first = VolumeRegistry(validator=validator, reconciler=reconciler, store=store)
    spec = VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE, mount_target="/srv/a")
    first.acquire("w1", NODE, spec)
    first.acquire("w2", NODE, spec)
    first.register_backend(_backend())
    first.acquire("w3", NODE, VolumeSpec("/data/vol", PathType.DIRECTORY_OR_CREATE, backend_capability="fast-ssd"))

    second = VolumeRegistry(validator=validator, reconciler=reconciler, store=store)
    restored = second.restore()

    assert restored == 2
    assert second.get(NODE, "/data/a").ref_count == 2
    assert second.get(NODE, "/data/vol").state == MountState.DEGRADED
    assert second.backends() == ()
    assert second.holds("w1")

    second.release("w1")
    second.release("w2")

    third = VolumeRegistry(validator=validator, reconciler=reconciler, store=store)
    third.restore()
    assert third.get(NODE, "/data/a") is None
    assert third.get(NODE, "/data/vol") is not None


def test_restore_keeps_each_workloads_own_target(validator, reconciler, store) -> None:
    first = VolumeRegistry(validator=validator, reconciler=reconciler, store=store)
    first.acquire("w1", NODE, VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE, mount_target="/srv/one"))
    first.acquire("w2", NODE, VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE, mount_target="/srv/two"))

    second = VolumeRegistry(validator=validator, reconciler=reconciler, store=store)
    second.restore()

    assert [d.target for d in second.descriptors_for("w1")] == ["/srv/one"]
    assert [d.target for d in second.descriptors_for("w2")] == ["/srv/two"]

    second.acquire("w2", NODE, VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE, mount_target="/srv/two"))
    assert [d.target for d in second.descriptors_for("w2")] == ["/srv/two"]
    assert second.get(NODE, "/data/a").ref_count == 2


def test_restore_keeps_extra_target_added_by_same_workload(validator, reconciler, store) -> None:
    first = VolumeRegistry(validator=validator, reconciler=reconciler, store=store)
    first.acquire("w1", NODE, VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE, mount_target="/srv/one"))
    first.acquire("w1", NODE, VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE, mount_target="/srv/logs"))

    second = VolumeRegistry(validator=validator, reconciler=reconciler, store=store)
    second.restore()

    assert [d.target for d in second.descriptors_for("w1")] == ["/srv/one", "/srv/logs"]
    assert second.get(NODE, "/data/a").ref_count == 1


def test_workload_id_with_comma_survives_restore(validator, reconciler, store) -> None:
    first = VolumeRegistry(validator=validator, reconciler=reconciler, store=store)
    first.acquire("team,web-1", NODE, VolumeSpec("/data/a", PathType.DIRECTORY_OR_CREATE))

    second = VolumeRegistry(validator=validator, reconciler=reconciler, store=store)
    second.restore()
    mount = second.get(NODE, "/data/a")

    assert mount.ref_count == 1
    assert mount.workload_ids == ("team,web-1",)

    second.release("team,web-1")

    assert second.get(NODE, "/data/a") is None
    third = VolumeRegistry(validator=validator, reconciler=reconciler, store=store)
    assert third.restore() == 0


class GatedReconciler(FakeReconciler):
    """Blocks inside reconcile until the gate opens."""

    def __init__(self, file_status):
        super().__init__(file_status)
        self.gate = threading.Event()
        self.calls = 0

    def reconcile(self, path, create_action):
        self.calls += 1
        self.gate.wait(5)
        return super().reconcile(path, create_action)


def test_timed_out_reconcile_keeps_path_busy_until_it_returns(validator, file_status) -> None:
    reconciler = GatedReconciler(file_status)
    pool = BlockingCallPool(max_workers=2, call_timeout_seconds=0.1)
    registry = VolumeRegistry(validator=validator, reconciler=reconciler, pool=pool)
    spec = VolumeSpec("/data/slow", PathType.DIRECTORY_OR_CREATE)
    try:
        with pytest.raises(BlockingCallTimeoutError):
            registry.acquire("w1", NODE, spec)

        with pytest.raises(BlockingCallTimeoutError) as excinfo:
            registry.acquire("w2", NODE, spec)
        assert excinfo.value.retryable is True
        assert reconciler.calls == 1
        assert registry.busy_paths() == [(NODE, "/data/slow")]

        reconciler.gate.set()
        deadline = time.monotonic() + 5
        while registry.busy_paths() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert registry.busy_paths() == []

        mount = registry.acquire("w2", NODE, spec)
    finally:
        reconciler.gate.set()
        pool.stop()

    assert reconciler.calls == 1
    assert reconciler.created == ["/data/slow"]
    assert mount.workload_ids == ("w2",)
