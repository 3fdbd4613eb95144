"""
Reconciliation Loop

Single coordinating loop per node. Drains bind, verify, teardown and cancel
requests derived from the scheduler's binding decisions and drives them
through the VolumeRegistry.

Retry policy lives here and nowhere else:
- retryable errors (host state may still be fixed out-of-band) keep the
  workload in WaitingForVolume and retry with exponential backoff, no limit
- terminal errors fail the bind immediately and roll back anything the
  request had already acquired
"""

import heapq
import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from hostvol.domain import VolumeSpec, WorkloadStatus
from hostvol.errors import ConflictingBindingError, InvalidVolumeSpecError, ReconcileError, VolumeEngineError
from hostvol.models import BindPhase, VerdictOutcome, WorkloadKind
from hostvol.services.retry_policy import ExponentialBackoff

logger = logging.getLogger(__name__)

BIND = "bind"
VERIFY = "verify"
TEARDOWN = "teardown"
CANCEL = "cancel"

FINISHED_PHASES = (BindPhase.FAILED, BindPhase.CANCELLED, BindPhase.RELEASED)


@dataclass
class LoopItem:
    action: str
    workload_id: str
    node: str = ""
    volumes: Tuple[VolumeSpec, ...] = ()
    workload_kind: WorkloadKind = WorkloadKind.APPLICATION
    generation: int = 0
    attempt: int = 0


class ReconciliationLoop:
    """
    Queue-driven coordinator for volume bind requests on one node.
    """

    def __init__(
        self,
        registry,
        backoff: Optional[ExponentialBackoff] = None,
        clock: Callable[[], float] = time.monotonic,
        status_retention_seconds: float = 3600.0,
        max_finished_statuses: int = 1000,
    ):
        """
        Initialize reconciliation loop.

        Args:
            registry: VolumeRegistry
            backoff: Retry delays (default: 1s doubling, capped at 30s)
            clock: Monotonic clock used for retry scheduling
            status_retention_seconds: How long Failed, Cancelled and Released statuses stay queryable
            max_finished_statuses: Upper bound on retained finished statuses; oldest go first
        """
        self.registry = registry
        self.backoff = backoff or ExponentialBackoff()
        self.clock = clock
        self.status_retention = status_retention_seconds
        self.max_finished = max_finished_statuses

        self._queue: "queue.Queue[LoopItem]" = queue.Queue()
        self._retries: List[Tuple[float, int, LoopItem]] = []
        self._seq = itertools.count(1)
        self._lock = threading.Lock()
        self._statuses: Dict[str, WorkloadStatus] = {}
        self._pending: Dict[str, int] = {}  # workload_id -> generation of its live bind request
        self._finished: Dict[str, float] = {}  # workload_id -> clock() when it reached a finished phase

        self.running = False
        self.thread: Optional[threading.Thread] = None

    # ========================================================================
    # REQUESTS
    # ========================================================================

    def submit_bind(
        self,
        workload_id: str,
        node: str,
        volumes: Sequence[VolumeSpec],
        workload_kind: WorkloadKind = WorkloadKind.APPLICATION,
    ) -> WorkloadStatus:
        """
        Queue a binding decision from the scheduler. Node placement is trusted as given.
        """
        if not str(workload_id or "").strip():
            raise InvalidVolumeSpecError("workload_id is required")
        if not str(node or "").strip():
            raise InvalidVolumeSpecError("node is required")
        for spec in volumes:
            if not isinstance(spec, VolumeSpec):
                raise InvalidVolumeSpecError(f"expected VolumeSpec, got {type(spec).__name__}")

        with self._lock:
            current = self._statuses.get(workload_id)
            if workload_id in self._pending or (current is not None and current.phase == BindPhase.BOUND):
                raise ConflictingBindingError(
                    f"Workload {workload_id} already has volumes bound or pending; tear it down before re-declaring",
                    workload_id=workload_id,
                )
            generation = next(self._seq)
            self._pending[workload_id] = generation
            status = WorkloadStatus(workload_id=workload_id, node=node, phase=BindPhase.PENDING)
            self._statuses[workload_id] = status
            self._finished.pop(workload_id, None)
            snapshot = self._copy(status)

        self._queue.put(LoopItem(
            action=BIND,
            workload_id=workload_id,
            node=node,
            volumes=tuple(volumes),
            workload_kind=WorkloadKind(workload_kind),
            generation=generation,
        ))
        logger.info(f"Queued bind for {workload_id} on {node}: {len(volumes)} volume(s)")
        return snapshot

    def submit_verify(self, workload_id: str) -> bool:
        with self._lock:
            if workload_id not in self._statuses:
                return False
        self._queue.put(LoopItem(action=VERIFY, workload_id=workload_id))
        return True

    def submit_teardown(self, workload_id: str) -> None:
        with self._lock:
            self._pending.pop(workload_id, None)
        self._queue.put(LoopItem(action=TEARDOWN, workload_id=workload_id))

    def cancel(self, workload_id: str) -> bool:
        """
        Abort a queued or retrying bind.

        Returns:
            False if the workload has no pending bind
        """
        with self._lock:
            if self._pending.pop(workload_id, None) is None:
                return False
            status = self._statuses.get(workload_id)
            if status is not None:
                self._update(status, BindPhase.CANCELLED, reason=None, message="bind cancelled")
        self._queue.put(LoopItem(action=CANCEL, workload_id=workload_id))
        logger.info(f"Cancelled pending bind for {workload_id}")
        return True

    def status(self, workload_id: str) -> Optional[WorkloadStatus]:
        with self._lock:
            status = self._statuses.get(workload_id)
            return self._copy(status) if status else None

    def statuses(self) -> List[WorkloadStatus]:
        with self._lock:
            return [self._copy(s) for s in sorted(self._statuses.values(), key=lambda s: s.workload_id)]

    # ========================================================================
    # LOOP
    # ========================================================================

    def start(self):
        if self.running:
            logger.warning("Reconciliation loop already running")
            return
        self.running = True
        self.thread = threading.Thread(target=self._run, daemon=True, name="hostvol-reconcile")
        self.thread.start()
        logger.info("Reconciliation loop started")

    def stop(self):
        self.running = False
        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5)
        logger.info("Reconciliation loop stopped")

    def _run(self):
        while self.running:
            try:
                self.run_once(timeout=0.2)
            except Exception as e:
                logger.error(f"Reconciliation loop error: {e}", exc_info=True)

    def run_once(self, timeout: float = 0.0) -> int:
        """
        Process every due retry and every queued request.

        Args:
            timeout: How long to wait for a request when nothing is due

        Returns:
            Number of items processed
        """
        items: List[LoopItem] = []
        now = self.clock()
        with self._lock:
            self._evict_finished_locked(now)
            while self._retries and self._retries[0][0] <= now:
                items.append(heapq.heappop(self._retries)[2])

        try:
            if items or timeout <= 0:
                items.append(self._queue.get_nowait())
            else:
                items.append(self._queue.get(timeout=timeout))
            while True:
                items.append(self._queue.get_nowait())
        except queue.Empty:
            pass

        for item in items:
            self._process(item)
        return len(items)

    def pending_retries(self) -> int:
        with self._lock:
            return len(self._retries)

    def _process(self, item: LoopItem) -> None:
        if item.action == BIND:
            self._process_bind(item)
        elif item.action == VERIFY:
            self._process_verify(item)
        elif item.action == TEARDOWN:
            self._process_teardown(item)
        elif item.action == CANCEL:
            self._process_cancel(item)
        else:
            logger.error(f"Unknown loop action {item.action!r} for {item.workload_id}")

    # ========================================================================
    # HANDLERS
    # ========================================================================

    def _process_bind(self, item: LoopItem) -> None:
        if not self._is_live(item):
            logger.debug(f"Dropping stale bind for {item.workload_id} (generation {item.generation})")
            return

        item.attempt += 1
        try:
            for spec in item.volumes:
                if not self._is_live(item):
                    self._rollback(item.workload_id, "cancelled mid-attempt")
                    return
                self.registry.acquire(item.workload_id, item.node, spec, item.workload_kind)
        except VolumeEngineError as e:
            self._handle_bind_error(item, e)
            return
        except Exception as e:
            logger.error(f"Unexpected error binding {item.workload_id}: {e}", exc_info=True)
            self._handle_bind_error(item, ReconcileError(f"unexpected error: {e}"))
            return

        descriptors = self.registry.descriptors_for(item.workload_id)
        with self._lock:
            live = self._pending.get(item.workload_id) == item.generation
            if live:
                self._pending.pop(item.workload_id, None)
                status = self._statuses[item.workload_id]
                status.attempts = item.attempt
                status.next_retry_in = None
                status.descriptors = descriptors
                self._update(status, BindPhase.BOUND, reason=None, message=f"{len(descriptors)} mount(s) ready")
        if not live:
            self._rollback(item.workload_id, "cancelled mid-attempt")
            return
        logger.info(f"Workload {item.workload_id} bound: {len(descriptors)} mount(s) after {item.attempt} attempt(s)")

    def _handle_bind_error(self, item: LoopItem, error: VolumeEngineError) -> None:
        if error.retryable:
            delay = self.backoff.delay(item.attempt)
            with self._lock:
                if self._pending.get(item.workload_id) != item.generation:
                    live = False
                else:
                    live = True
                    heapq.heappush(self._retries, (self.clock() + delay, next(self._seq), item))
                    status = self._statuses[item.workload_id]
                    status.attempts = item.attempt
                    status.next_retry_in = delay
                    self._update(status, BindPhase.WAITING_FOR_VOLUME, reason=error.reason, message=error.message)
            if not live:
                self._rollback(item.workload_id, "cancelled while failing")
                return
            logger.warning(
                f"Waiting for volume for {item.workload_id}: {error.reason}: {error.message} "
                f"(attempt {item.attempt}, retry in {delay:.0f}s)"
            )
            return

        with self._lock:
            live = self._pending.get(item.workload_id) == item.generation
            if live:
                self._pending.pop(item.workload_id, None)
                status = self._statuses[item.workload_id]
                status.attempts = item.attempt
                status.next_retry_in = None
                self._update(status, BindPhase.FAILED, reason=error.reason, message=error.message)
        self._rollback(item.workload_id, f"terminal error {error.reason}")
        if live:
            logger.error(f"Bind failed for {item.workload_id}: {error.reason}: {error.message}")

    def _process_verify(self, item: LoopItem) -> None:
        drift = []
        for mount in self.registry.mounts_for(item.workload_id):
            try:
                verdict = self.registry.revalidate(mount)
            except VolumeEngineError as e:
                drift.append(f"{mount.host_path}: {e.reason}: {e.message}")
                continue
            if verdict.outcome != VerdictOutcome.OK:
                drift.append(f"{mount.host_path}: {verdict.outcome.value}: {verdict.message}")
            elif verdict.resolved_kind != mount.resolved_kind:
                drift.append(
                    f"{mount.host_path}: bound as {mount.resolved_kind.value}, now {verdict.resolved_kind.value}"
                )

        with self._lock:
            status = self._statuses.get(item.workload_id)
            if status is not None:
                status.drift = drift
                status.updated_at = datetime.utcnow()
        for line in drift:
            logger.warning(f"Volume drift for {item.workload_id}: {line}")

    def _process_teardown(self, item: LoopItem) -> None:
        self.registry.release(item.workload_id)
        with self._lock:
            status = self._statuses.get(item.workload_id)
            if status is not None:
                status.descriptors = []
                status.next_retry_in = None
                self._update(status, BindPhase.RELEASED, reason=None, message="volumes released")
        logger.info(f"Workload {item.workload_id} torn down")

    def _process_cancel(self, item: LoopItem) -> None:
        with self._lock:
            if item.workload_id in self._pending:
                # A new bind was submitted after the cancel
                return
        self._rollback(item.workload_id, "bind cancelled")

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _is_live(self, item: LoopItem) -> bool:
        with self._lock:
            return self._pending.get(item.workload_id) == item.generation

    def _rollback(self, workload_id: str, why: str) -> None:
        # Only volumes acquired by an unfinished request are held here; a
        # request that acquired nothing leaves nothing to release.
        if self.registry.holds(workload_id):
            logger.info(f"Rolling back partially bound volumes for {workload_id}: {why}")
            self.registry.release(workload_id)

    def _update(self, status: WorkloadStatus, phase: BindPhase, reason: Optional[str], message: str) -> None:
        status.phase = phase
        status.reason = reason
        status.message = message
        status.updated_at = datetime.utcnow()
        if phase in FINISHED_PHASES:
            self._finished[status.workload_id] = self.clock()
        else:
            self._finished.pop(status.workload_id, None)

    def _evict_finished_locked(self, now: float) -> None:
        expired = {w for w, since in self._finished.items() if now - since >= self.status_retention}
        overflow = len(self._finished) - len(expired) - self.max_finished
        if overflow > 0:
            survivors = sorted((since, w) for w, since in self._finished.items() if w not in expired)
            expired.update(w for _, w in survivors[:overflow])
        for workload_id in expired:
            self._finished.pop(workload_id, None)
            self._statuses.pop(workload_id, None)
        if expired:
            logger.debug(f"Evicted {len(expired)} finished workload status(es)")

    @staticmethod
    def _copy(status: WorkloadStatus) -> WorkloadStatus:
        return replace(status, descriptors=list(status.descriptors), drift=list(status.drift))
