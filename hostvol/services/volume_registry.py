"""
Volume Registry

Process-wide record of every active (workload, node path, mount) binding on
this node. The registry is the only state shared between the reconciliation
loop, the plugin registrar and the HTTP surface.

Locking:
- acquire/release for one (node, host_path) serialize on a per-path lock, so
  validate -> reconcile -> bind -> register never interleaves for that path.
- Different paths proceed in parallel.
- A filesystem call that times out keeps its path busy until the call
  returns; acquires of that path fail retryably in the meantime.
- Readers use snapshot(), an immutable tuple republished on every change.

Releasing the last reference deletes the record only. Host data on the path
outlives the workload and is never touched here.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from hostvol.domain import BackendRegistration, BoundMount, MountDescriptor, MountKey, ValidationVerdict, VolumeSpec
from hostvol.errors import (
    BackendUnavailableError,
    BlockingCallTimeoutError,
    ConflictingBindingError,
    InvalidVolumeSpecError,
    MissingAndNotCreatableError,
    PathPermissionDeniedError,
    PropagationNotPermittedError,
    TypeMismatchError,
)
from hostvol.models import MountState, PropagationMode, VerdictOutcome, WorkloadKind
from hostvol.services.mount_binder import MountBinder
from hostvol.services.path_reconciler import PathReconciler
from hostvol.services.path_validator import PathTypeValidator

logger = logging.getLogger(__name__)


class VolumeRegistry:
    """
    Refcounted registry of bound host-path mounts and registered backends.
    """

    def __init__(
        self,
        validator: Optional[PathTypeValidator] = None,
        reconciler: Optional[PathReconciler] = None,
        binder: Optional[MountBinder] = None,
        pool=None,
        store=None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize volume registry.

        Args:
            validator: PathTypeValidator (default: real filesystem)
            reconciler: PathReconciler (default: real filesystem)
            binder: MountBinder
            pool: BlockingCallPool for filesystem calls (default: run inline)
            store: MountStore for write-through persistence (default: none)
            clock: Timestamp source for created_at
        """
        self.validator = validator or PathTypeValidator()
        self.reconciler = reconciler or PathReconciler(self.validator.file_status)
        self.binder = binder or MountBinder()
        self.pool = pool
        self.store = store
        self.clock = clock

        self._mounts: Dict[MountKey, BoundMount] = {}
        self._workload_mounts: Dict[str, Dict[MountKey, List[MountDescriptor]]] = {}
        self._backends: Dict[str, BackendRegistration] = {}

        self._path_locks: Dict[MountKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._busy_paths: Dict[MountKey, int] = {}  # abandoned calls still running per path
        self._index_lock = threading.Lock()

        self._snapshot: Tuple[BoundMount, ...] = ()
        self._backend_snapshot: Tuple[BackendRegistration, ...] = ()

    # ========================================================================
    # ACQUIRE / RELEASE
    # ========================================================================

    def acquire(
        self,
        workload_id: str,
        node: str,
        spec: VolumeSpec,
        workload_kind: WorkloadKind = WorkloadKind.APPLICATION,
    ) -> BoundMount:
        """
        Validate, create if allowed, and record a binding for workload_id.

        Steps (under the per-path lock):
        1. Compare against an existing binding for the same path
        2. Resolve the backend, if the volume names a capability
        3. Validate the path (never cached)
        4. Reconcile when the verdict carries a create action
        5. Build the mount descriptor
        6. Record or refcount the binding

        Returns:
            The BoundMount as recorded after this acquisition

        Raises:
            ConflictingBindingError, PropagationNotPermittedError,
            TypeMismatchError, MissingAndNotCreatableError,
            PathPermissionDeniedError, BackendUnavailableError, ReconcileError
        """
        if not str(workload_id or "").strip():
            raise InvalidVolumeSpecError("workload_id is required")
        if not str(node or "").strip():
            raise InvalidVolumeSpecError("node is required")

        if spec.propagation == PropagationMode.BIDIRECTIONAL and workload_kind != WorkloadKind.STORAGE_BACKEND:
            raise PropagationNotPermittedError(
                f"Bidirectional propagation on {spec.path} is reserved for storage backend workloads",
                workload_id=workload_id,
                path=spec.path,
            )

        key = (node, spec.path)
        with self._lock_for(key):
            if self._is_busy(key):
                raise BlockingCallTimeoutError(
                    f"A timed-out filesystem call on {spec.path} is still running",
                    path=spec.path,
                    node=node,
                )

            existing = self._mounts.get(key)
            if existing is not None:
                self._check_compatible(existing, spec)
                if existing.state == MountState.DEGRADED:
                    raise BackendUnavailableError(
                        f"Mount {spec.path} is degraded: backend {existing.backend_id} is not registered",
                        backend_id=existing.backend_id,
                    )

            backend_id = self._resolve_backend(spec, existing)

            verdict = self._run(
                self.validator.validate,
                spec.path,
                spec.type,
                mode=spec.mode,
                uid=spec.owner_uid,
                gid=spec.owner_gid,
                description=f"validate {spec.path}",
                busy_key=key,
            )
            self._raise_for_verdict(spec.path, verdict)

            resolved_kind = verdict.resolved_kind
            if verdict.create_action is not None:
                self._run(
                    self.reconciler.reconcile,
                    spec.path,
                    verdict.create_action,
                    description=f"reconcile {spec.path}",
                    busy_key=key,
                )
                resolved_kind = verdict.create_action.kind

            if existing is not None and existing.resolved_kind != resolved_kind:
                raise ConflictingBindingError(
                    f"{spec.path} is bound as {existing.resolved_kind.value} but is now a {resolved_kind.value}",
                    path=spec.path,
                    bound_kind=existing.resolved_kind.value,
                    actual_kind=resolved_kind.value,
                )

            descriptor = self.binder.bind(spec.path, spec.mount_target, spec.propagation, spec.read_only)

            if existing is None:
                mount = BoundMount(
                    workload_id=workload_id,
                    node=node,
                    host_path=spec.path,
                    mount_target=spec.mount_target,
                    declared_type=spec.type,
                    resolved_kind=resolved_kind,
                    propagation=spec.propagation,
                    read_only=spec.read_only,
                    ref_count=1,
                    created_at=self.clock(),
                    workload_ids=(workload_id,),
                    backend_id=backend_id,
                )
            elif workload_id in existing.workload_ids:
                mount = existing
            else:
                ids = existing.workload_ids + (workload_id,)
                mount = replace(existing, workload_ids=ids, ref_count=len(ids))

            with self._index_lock:
                current = self._mounts.get(key)
                if current is not None and current.state != mount.state:
                    # deregister_backend may have flipped state while we held the path lock
                    mount = replace(mount, state=current.state)
                self._mounts[key] = mount
                descriptors = self._workload_mounts.setdefault(workload_id, {}).setdefault(key, [])
                new_target = descriptor not in descriptors
                if new_target:
                    descriptors.append(descriptor)
                targets = self._targets_locked(key, mount.workload_ids)
                self._publish_locked()

            if mount is not existing or new_target:
                self._persist(mount, targets)
                logger.info(
                    f"Bound {spec.path} on {node} for {workload_id} "
                    f"({mount.resolved_kind.value}, ref_count={mount.ref_count})"
                )
            else:
                logger.debug(f"{workload_id} already holds {spec.path} on {node}")
            return mount

    def release(self, workload_id: str) -> None:
        """
        Drop every reference workload_id holds. Duplicate calls are no-ops.
        """
        with self._index_lock:
            held = self._workload_mounts.pop(workload_id, None)

        if not held:
            logger.debug(f"Release for {workload_id}: nothing held")
            return

        for key in held:
            with self._lock_for(key):
                mount = self._mounts.get(key)
                if mount is None or workload_id not in mount.workload_ids:
                    continue

                remaining = tuple(w for w in mount.workload_ids if w != workload_id)
                if not remaining:
                    with self._index_lock:
                        self._mounts.pop(key, None)
                        self._publish_locked()
                    self._unpersist(key)
                    logger.info(f"Released last reference to {key[1]} on {key[0]}; record deleted, host path left in place")
                    continue

                updated = replace(mount, workload_id=remaining[0], workload_ids=remaining, ref_count=len(remaining))
                with self._index_lock:
                    current = self._mounts.get(key)
                    if current is not None:
                        updated = replace(updated, state=current.state)
                    self._mounts[key] = updated
                    targets = self._targets_locked(key, remaining)
                    self._publish_locked()
                self._persist(updated, targets)
                logger.info(f"Released {key[1]} on {key[0]} for {workload_id} (ref_count={updated.ref_count})")

    # ========================================================================
    # READS
    # ========================================================================

    def snapshot(self) -> Tuple[BoundMount, ...]:
        return self._snapshot

    def get(self, node: str, host_path: str) -> Optional[BoundMount]:
        for mount in self._snapshot:
            if mount.node == node and mount.host_path == host_path:
                return mount
        return None

    def descriptors_for(self, workload_id: str) -> List[MountDescriptor]:
        with self._index_lock:
            held = self._workload_mounts.get(workload_id, {})
            return [d for descriptors in held.values() for d in descriptors]

    def mounts_for(self, workload_id: str) -> List[BoundMount]:
        return [m for m in self._snapshot if workload_id in m.workload_ids]

    def busy_paths(self) -> List[MountKey]:
        """(node, host_path) keys with a timed-out filesystem call still running."""
        with self._locks_guard:
            return sorted(self._busy_paths)

    def holds(self, workload_id: str) -> bool:
        with self._index_lock:
            return bool(self._workload_mounts.get(workload_id))

    def revalidate(self, mount: BoundMount) -> ValidationVerdict:
        """Re-run validation for a bound mount. Read-only: nothing is created or recorded."""
        return self._run(
            self.validator.validate,
            mount.host_path,
            mount.declared_type,
            description=f"verify {mount.host_path}",
        )

    # ========================================================================
    # BACKENDS
    # ========================================================================

    def register_backend(self, registration: BackendRegistration) -> List[BoundMount]:
        """
        Add a backend to the active set. Mounts degraded by an earlier loss of
        the same backend become active again.

        Returns:
            Mounts restored to ACTIVE
        """
        restored = []
        with self._index_lock:
            self._backends[registration.backend_id] = registration
            for key, mount in list(self._mounts.items()):
                if mount.backend_id == registration.backend_id and mount.state == MountState.DEGRADED:
                    self._mounts[key] = replace(mount, state=MountState.ACTIVE)
                    restored.append((self._mounts[key], self._targets_locked(key, mount.workload_ids)))
            self._publish_locked()

        if self.store is not None:
            self.store.save_backend(registration)
        for mount, targets in restored:
            self._persist(mount, targets)
            logger.info(f"Mount {mount.host_path} active again: backend {registration.backend_id} registered")
        logger.info(
            f"Backend {registration.backend_id} registered at {registration.socket_path} "
            f"capabilities={sorted(registration.capabilities)}"
        )
        return [mount for mount, _ in restored]

    def deregister_backend(self, backend_id: str) -> List[BoundMount]:
        """
        Remove a backend from the active set and mark dependent mounts DEGRADED.
        Degraded records stay in place; the underlying mounts may still be live.

        Returns:
            Mounts marked DEGRADED
        """
        degraded = []
        with self._index_lock:
            removed = self._backends.pop(backend_id, None)
            for key, mount in list(self._mounts.items()):
                if mount.backend_id == backend_id and mount.state != MountState.DEGRADED:
                    self._mounts[key] = replace(mount, state=MountState.DEGRADED)
                    degraded.append((self._mounts[key], self._targets_locked(key, mount.workload_ids)))
            self._publish_locked()

        if removed is None and not degraded:
            return []

        if self.store is not None:
            self.store.delete_backend(backend_id)
        for mount, targets in degraded:
            self._persist(mount, targets)
            logger.warning(f"Mount {mount.host_path} on {mount.node} DEGRADED: backend {backend_id} deregistered")
        logger.info(f"Backend {backend_id} deregistered")
        return [mount for mount, _ in degraded]

    def record_heartbeat(self, backend_id: str, when: Optional[datetime] = None) -> None:
        with self._index_lock:
            registration = self._backends.get(backend_id)
            if registration is None:
                return
            self._backends[backend_id] = replace(registration, last_heartbeat=when or self.clock())
            self._publish_locked()

    def backends(self) -> Tuple[BackendRegistration, ...]:
        return self._backend_snapshot

    def backend_for_capability(self, capability: str) -> Optional[BackendRegistration]:
        wanted = capability.strip().lower()
        for registration in sorted(self._backend_snapshot, key=lambda r: r.backend_id):
            if wanted in {c.lower() for c in registration.capabilities}:
                return registration
        return None

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    def restore(self) -> int:
        """
        Reload bound mounts persisted by a previous agent run.

        Backend-dependent mounts come back DEGRADED until their backend
        completes a new handshake.

        Returns:
            Number of records restored
        """
        if self.store is None:
            return 0

        self.store.clear_backends()
        mounts = self.store.load_mounts()
        with self._index_lock:
            for mount, targets in mounts:
                if not mount.workload_ids:
                    continue
                if mount.backend_id and mount.backend_id not in self._backends:
                    mount = replace(mount, state=MountState.DEGRADED)
                self._mounts[mount.key] = mount
                for workload_id in mount.workload_ids:
                    self._workload_mounts.setdefault(workload_id, {})[mount.key] = [
                        self.binder.bind(mount.host_path, target, mount.propagation, mount.read_only)
                        for target in targets[workload_id]
                    ]
            self._publish_locked()
        logger.info(f"Restored {len(self._snapshot)} bound mounts from store")
        return len(self._snapshot)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _lock_for(self, key: MountKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._path_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._path_locks[key] = lock
            return lock

    def _run(self, fn, *args, description: str = "", busy_key: Optional[MountKey] = None, **kwargs):
        if self.pool is None:
            return fn(*args, **kwargs)
        on_timeout = None
        if busy_key is not None:
            on_timeout = lambda future: self._hold_busy(busy_key, future)
        return self.pool.run(fn, *args, description=description, on_timeout=on_timeout, **kwargs)

    def _hold_busy(self, key: MountKey, future) -> None:
        # The path stays off-limits until the abandoned call returns
        with self._locks_guard:
            self._busy_paths[key] = self._busy_paths.get(key, 0) + 1
        logger.warning(f"Filesystem call on {key[1]} timed out; path held busy until it returns")
        future.add_done_callback(lambda _: self._clear_busy(key))

    def _clear_busy(self, key: MountKey) -> None:
        with self._locks_guard:
            remaining = self._busy_paths.get(key, 0) - 1
            if remaining > 0:
                self._busy_paths[key] = remaining
            else:
                self._busy_paths.pop(key, None)
        if remaining <= 0:
            logger.info(f"Abandoned filesystem call on {key[1]} finished; path available again")

    def _is_busy(self, key: MountKey) -> bool:
        with self._locks_guard:
            return key in self._busy_paths

    def _publish_locked(self) -> None:
        self._snapshot = tuple(sorted(self._mounts.values(), key=lambda m: m.key))
        self._backend_snapshot = tuple(sorted(self._backends.values(), key=lambda b: b.backend_id))

    def _targets_locked(self, key: MountKey, workload_ids) -> Dict[str, List[str]]:
        return {
            w: [d.target for d in self._workload_mounts.get(w, {}).get(key, [])]
            for w in workload_ids
        }

    def _persist(self, mount: BoundMount, targets: Dict[str, List[str]]) -> None:
        if self.store is not None:
            self.store.save_mount(mount, targets)

    def _unpersist(self, key: MountKey) -> None:
        if self.store is not None:
            self.store.delete_mount(*key)

    def _resolve_backend(self, spec: VolumeSpec, existing: Optional[BoundMount]) -> Optional[str]:
        if not spec.backend_capability:
            return None
        if existing is not None and existing.backend_id:
            return existing.backend_id
        backend = self.backend_for_capability(spec.backend_capability)
        if backend is None:
            raise BackendUnavailableError(
                f"No registered backend provides capability '{spec.backend_capability}'",
                capability=spec.backend_capability,
            )
        return backend.backend_id

    @staticmethod
    def _check_compatible(existing: BoundMount, spec: VolumeSpec) -> None:
        differences = []
        if existing.declared_type != spec.type:
            differences.append(f"type {existing.declared_type.value} != {spec.type.value}")
        if existing.read_only != spec.read_only:
            differences.append(f"read_only {existing.read_only} != {spec.read_only}")
        if existing.propagation != spec.propagation:
            differences.append(f"propagation {existing.propagation.value} != {spec.propagation.value}")
        if differences:
            raise ConflictingBindingError(
                f"{spec.path} on {existing.node} already bound with a different declaration: " + ", ".join(differences),
                path=spec.path,
                node=existing.node,
                bound_by=existing.workload_id,
            )

    @staticmethod
    def _raise_for_verdict(path: str, verdict: ValidationVerdict) -> None:
        if verdict.outcome == VerdictOutcome.OK:
            return
        if verdict.outcome == VerdictOutcome.TYPE_MISMATCH:
            raise TypeMismatchError(path, verdict.required_kind, verdict.resolved_kind)
        if verdict.outcome == VerdictOutcome.MISSING_AND_NOT_CREATABLE:
            raise MissingAndNotCreatableError(verdict.message, path=path, required_kind=verdict.required_kind.value)
        if verdict.outcome == VerdictOutcome.PERMISSION_DENIED:
            raise PathPermissionDeniedError(verdict.message, path=path)
        raise InvalidVolumeSpecError(f"Unexpected verdict {verdict.outcome} for {path}")
