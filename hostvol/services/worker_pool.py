"""
Blocking Call Pool

Runs filesystem calls (validate, reconcile) on a bounded thread pool so one
hung mount point cannot starve unrelated bindings. A watchdog thread flags any
call running longer than the configured threshold; each call is additionally
bounded by a per-call timeout that surfaces as a retryable error.
"""

import itertools
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from hostvol.errors import BlockingCallTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class InFlightCall:
    call_id: int
    description: str
    started_at: float
    flagged: bool = False


@dataclass
class Anomaly:
    description: str
    elapsed_seconds: float
    detected_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "detected_at": self.detected_at.isoformat(),
        }


class BlockingCallPool:

    def __init__(
        self,
        max_workers: int = 16,
        slow_threshold_seconds: float = 5.0,
        call_timeout_seconds: Optional[float] = 30.0,
        watchdog_interval_seconds: float = 0.5,
        max_anomalies: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_workers = max_workers
        self.slow_threshold = slow_threshold_seconds
        self.call_timeout = call_timeout_seconds
        self.watchdog_interval = watchdog_interval_seconds
        self.max_anomalies = max_anomalies
        self.clock = clock

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="hostvol-fs")
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._in_flight: Dict[int, InFlightCall] = {}
        self._anomalies: List[Anomaly] = []

        self.running = False
        self.watchdog_thread: Optional[threading.Thread] = None

        logger.info(
            f"Blocking call pool initialized: workers={max_workers}, "
            f"slow_threshold={slow_threshold_seconds}s, call_timeout={call_timeout_seconds}s"
        )

    def start(self):
        if self.running:
            return
        self.running = True
        self.watchdog_thread = threading.Thread(target=self._watchdog_loop, daemon=True, name="hostvol-watchdog")
        self.watchdog_thread.start()

    def stop(self):
        self.running = False
        if self.watchdog_thread and self.watchdog_thread.is_alive():
            self.watchdog_thread.join(timeout=5)
        self._executor.shutdown(wait=False)
        logger.info("Blocking call pool stopped")

    def run(
        self,
        fn: Callable[..., Any],
        *args: Any,
        description: str = "",
        on_timeout: Optional[Callable[[Future], None]] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Run fn on the pool and wait for its result.

        Exceptions raised by fn propagate unchanged. on_timeout receives the
        abandoned future before the timeout error is raised.

        Raises:
            BlockingCallTimeoutError: fn did not finish within call_timeout
        """
        call = InFlightCall(next(self._ids), description or getattr(fn, "__name__", "call"), self.clock())
        with self._lock:
            self._in_flight[call.call_id] = call

        future = self._executor.submit(self._tracked, call, fn, args, kwargs)
        try:
            return future.result(timeout=self.call_timeout)
        except FutureTimeoutError as e:
            # The worker stays busy until the syscall returns; the watchdog keeps reporting it
            if on_timeout is not None:
                on_timeout(future)
            raise BlockingCallTimeoutError(
                f"{call.description} exceeded {self.call_timeout}s",
                description=call.description,
            ) from e

    def _tracked(self, call: InFlightCall, fn, args, kwargs):
        try:
            return fn(*args, **kwargs)
        finally:
            with self._lock:
                self._in_flight.pop(call.call_id, None)
            elapsed = self.clock() - call.started_at
            if elapsed > self.slow_threshold and not call.flagged:
                self._flag(call, elapsed)

    def _watchdog_loop(self):
        while self.running:
            try:
                self.check_slow_calls()
            except Exception as e:
                logger.error(f"Watchdog check error: {e}", exc_info=True)
            time.sleep(self.watchdog_interval)

    def check_slow_calls(self) -> List[InFlightCall]:
        """Flag in-flight calls running past the threshold. Returns newly flagged calls."""
        now = self.clock()
        with self._lock:
            slow = [c for c in self._in_flight.values() if not c.flagged and now - c.started_at > self.slow_threshold]
        for call in slow:
            self._flag(call, now - call.started_at)
        return slow

    def _flag(self, call: InFlightCall, elapsed: float):
        with self._lock:
            if call.flagged:
                return
            call.flagged = True
            self._anomalies.append(Anomaly(call.description, elapsed))
            del self._anomalies[:-self.max_anomalies]
        logger.warning(f"Slow filesystem call: {call.description} running for {elapsed:.1f}s")

    def in_flight(self) -> List[InFlightCall]:
        with self._lock:
            return list(self._in_flight.values())

    def anomalies(self) -> List[Anomaly]:
        with self._lock:
            return list(self._anomalies)
