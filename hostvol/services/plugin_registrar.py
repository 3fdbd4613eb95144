"""
Plugin Registrar

Watches the registration directory for backend sockets and walks each one
through an explicit state machine:

    Discovered -> Handshaking -> Registered -> Heartbeating
                       |              |             |
                       +--------------+-------------+--> Deregistered

- Handshake: identify request, bounded response, fixed timeout (10s default).
  Timeout or malformed response discards the candidate; the socket is tried
  again only after the retry interval or once the socket file is replaced.
- Heartbeat: periodic liveness request; consecutive misses past the limit
  (3 default) deregister the backend.
- Socket removal deregisters immediately.

Registered backends are pushed into the VolumeRegistry, which marks
dependent mounts DEGRADED on deregistration. The transport and directory
scanner are injectable so tests drive every transition without sockets.
"""

import logging
import os
import stat
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ValidationError, field_validator

from hostvol.domain import BackendCandidate, BackendRegistration
from hostvol.errors import HandshakeError, HandshakeTimeoutError, HeartbeatMissedError, InvalidTransitionError
from hostvol.models import BackendState
from shared.plugin_socket_client import PROTOCOL_VERSION, PluginSocketClient
from shared.socket_protocol import DEFAULT_MAX_FRAME_BYTES

logger = logging.getLogger(__name__)

SocketIdentity = Tuple[int, int]

_TRANSITIONS = {
    BackendState.DISCOVERED: {BackendState.HANDSHAKING, BackendState.DEREGISTERED},
    BackendState.HANDSHAKING: {BackendState.REGISTERED, BackendState.DEREGISTERED},
    BackendState.REGISTERED: {BackendState.HEARTBEATING, BackendState.DEREGISTERED},
    BackendState.HEARTBEATING: {BackendState.HEARTBEATING, BackendState.DEREGISTERED},
    BackendState.DEREGISTERED: set(),
}


class IdentityResponse(BaseModel):
    """Backend answer to the identify request"""
    backend_id: str
    capabilities: List[str]
    protocol_version: int = PROTOCOL_VERSION

    @field_validator("backend_id")
    @classmethod
    def _backend_id_token(cls, value: str) -> str:
        value = value.strip()
        if not value or any(c.isspace() or c == "," for c in value):
            raise ValueError("backend_id must be a non-empty token")
        return value

    @field_validator("capabilities")
    @classmethod
    def _capability_tokens(cls, value: List[str]) -> List[str]:
        cleaned = [c.strip() for c in value]
        if any(not c or "," in c for c in cleaned):
            raise ValueError("capabilities must be non-empty tokens")
        return cleaned


class HeartbeatResponse(BaseModel):
    status: str


class PluginTransport(ABC):
    @abstractmethod
    def request(self, socket_path: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """Send one request and return the decoded response. Raises on timeout or I/O failure."""


class UnixSocketTransport(PluginTransport):
    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES):
        self.max_frame_bytes = max_frame_bytes

    def request(self, socket_path: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        client = PluginSocketClient(socket_path, timeout_seconds=timeout, max_frame_bytes=self.max_frame_bytes)
        return client.request(payload)


def scan_registration_dir(registration_dir: str) -> Dict[str, SocketIdentity]:
    """Socket files directly under registration_dir, keyed by path, with (inode, mtime_ns)."""
    sockets: Dict[str, SocketIdentity] = {}
    try:
        entries = list(os.scandir(registration_dir))
    except FileNotFoundError:
        logger.debug(f"Registration directory {registration_dir} does not exist yet")
        return sockets

    for entry in entries:
        try:
            st = entry.stat(follow_symlinks=False)
        except FileNotFoundError:
            continue
        if stat.S_ISSOCK(st.st_mode):
            sockets[entry.path] = (st.st_ino, st.st_mtime_ns)
    return sockets


class PluginRegistrar:
    """
    Discovery server for plugin backends on this node.
    Runs in a background thread; poll_once() drives one full cycle.
    """

    def __init__(
        self,
        registry,
        registration_dir: str,
        transport: Optional[PluginTransport] = None,
        scanner: Optional[Callable[[str], Dict[str, SocketIdentity]]] = None,
        clock: Callable[[], float] = time.monotonic,
        handshake_timeout_seconds: float = 10.0,
        handshake_retry_seconds: float = 30.0,
        heartbeat_interval_seconds: float = 5.0,
        heartbeat_timeout_seconds: float = 2.0,
        missed_heartbeat_limit: int = 3,
        scan_interval_seconds: float = 2.0,
    ):
        """
        Initialize plugin registrar.

        Args:
            registry: VolumeRegistry notified of backend arrival and loss
            registration_dir: Directory backends create their sockets in
            transport: Request transport (default: AF_UNIX sockets)
            scanner: Directory scanner (default: scan_registration_dir)
            clock: Monotonic clock
            handshake_timeout_seconds: Identify request deadline (default 10s)
            handshake_retry_seconds: Wait before re-trying a rejected socket (default 30s)
            heartbeat_interval_seconds: Time between heartbeats (default 5s)
            heartbeat_timeout_seconds: Heartbeat request deadline (default 2s)
            missed_heartbeat_limit: Consecutive misses before deregistration (default 3)
            scan_interval_seconds: Background loop period (default 2s)
        """
        self.registry = registry
        self.registration_dir = registration_dir
        self.transport = transport or UnixSocketTransport()
        self.scanner = scanner or scan_registration_dir
        self.clock = clock
        self.handshake_timeout = handshake_timeout_seconds
        self.handshake_retry = handshake_retry_seconds
        self.heartbeat_interval = heartbeat_interval_seconds
        self.heartbeat_timeout = heartbeat_timeout_seconds
        self.missed_heartbeat_limit = missed_heartbeat_limit
        self.scan_interval = scan_interval_seconds

        self._lock = threading.Lock()
        self._candidates: Dict[str, BackendCandidate] = {}
        self._identities: Dict[str, SocketIdentity] = {}
        self._rejected: Dict[str, Tuple[SocketIdentity, float, str]] = {}

        self.running = False
        self.thread: Optional[threading.Thread] = None

        logger.info(
            f"Plugin registrar initialized: dir={registration_dir}, handshake_timeout={handshake_timeout_seconds}s, "
            f"heartbeat={heartbeat_interval_seconds}s x{missed_heartbeat_limit}"
        )

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self):
        if self.running:
            logger.warning("Plugin registrar already running")
            return
        self.running = True
        self.thread = threading.Thread(target=self._run, daemon=True, name="hostvol-registrar")
        self.thread.start()
        logger.info("Plugin registrar started")

    def stop(self):
        self.running = False
        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=self.handshake_timeout + 5)
        logger.info("Plugin registrar stopped")

    def _run(self):
        while self.running:
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Registrar poll error: {e}", exc_info=True)

            # Sleep in small increments for responsive shutdown
            for _ in range(max(1, int(self.scan_interval * 10))):
                if not self.running:
                    break
                time.sleep(0.1)

    def poll_once(self) -> None:
        """Discover, handshake new candidates, then heartbeat registered backends."""
        for candidate in self.discover():
            self.handshake(candidate)
        self.heartbeat_due()

    # ========================================================================
    # DISCOVERY
    # ========================================================================

    def discover(self) -> List[BackendCandidate]:
        """
        Scan the registration directory.

        Returns:
            Newly discovered candidates (state Discovered)
        """
        present = self.scanner(self.registration_dir)
        now = self.clock()

        for socket_path in list(self._candidates):
            identity = present.get(socket_path)
            if identity is None:
                self._deregister(socket_path, "socket removed")
            elif identity != self._identities.get(socket_path):
                self._deregister(socket_path, "socket replaced")

        for socket_path in list(self._rejected):
            if socket_path not in present:
                del self._rejected[socket_path]

        discovered = []
        for socket_path, identity in sorted(present.items()):
            if socket_path in self._candidates:
                continue
            rejected = self._rejected.get(socket_path)
            if rejected is not None:
                rejected_identity, rejected_at, _ = rejected
                if rejected_identity == identity and now - rejected_at < self.handshake_retry:
                    continue
                del self._rejected[socket_path]

            candidate = BackendCandidate(socket_path=socket_path, discovered_at=now)
            with self._lock:
                self._candidates[socket_path] = candidate
                self._identities[socket_path] = identity
            logger.info(f"Discovered backend socket {socket_path}")
            discovered.append(candidate)
        return discovered

    # ========================================================================
    # HANDSHAKE
    # ========================================================================

    def handshake(self, candidate: BackendCandidate) -> bool:
        """
        Identify the backend behind candidate.socket_path.

        Returns:
            True if the backend is now Registered
        """
        self._transition(candidate, BackendState.HANDSHAKING)
        started = self.clock()
        try:
            response = self.transport.request(
                candidate.socket_path,
                {"action": "identify", "protocol_version": PROTOCOL_VERSION},
                self.handshake_timeout,
            )
            if self.clock() - started > self.handshake_timeout:
                raise HandshakeTimeoutError(
                    f"{candidate.socket_path} answered after the {self.handshake_timeout}s handshake timeout"
                )
            identity = IdentityResponse.model_validate(response)
            if identity.protocol_version != PROTOCOL_VERSION:
                raise HandshakeError(f"unsupported protocol version {identity.protocol_version}")
            owner = self._socket_for_backend(identity.backend_id)
            if owner is not None and owner != candidate.socket_path:
                raise HandshakeError(f"backend id {identity.backend_id} already registered at {owner}")
        except TimeoutError as e:
            self._reject(candidate, HandshakeTimeoutError(f"no identify response within {self.handshake_timeout}s: {e}"))
            return False
        except HandshakeError as e:
            self._reject(candidate, e)
            return False
        except ValidationError as e:
            self._reject(candidate, HandshakeError(f"malformed identify response: {e.error_count()} error(s)"))
            return False
        except (OSError, ValueError) as e:
            self._reject(candidate, HandshakeError(f"identify request failed: {e}"))
            return False

        candidate.backend_id = identity.backend_id
        candidate.capabilities = frozenset(identity.capabilities)
        candidate.last_heartbeat_attempt = self.clock()
        candidate.last_heartbeat_ok = datetime.utcnow()
        candidate.missed_heartbeats = 0
        self._transition(candidate, BackendState.REGISTERED)

        self.registry.register_backend(BackendRegistration(
            backend_id=identity.backend_id,
            socket_path=candidate.socket_path,
            last_heartbeat=candidate.last_heartbeat_ok,
            capabilities=candidate.capabilities,
        ))
        return True

    # ========================================================================
    # HEARTBEAT
    # ========================================================================

    def heartbeat_due(self) -> None:
        now = self.clock()
        with self._lock:
            due = [
                c for c in self._candidates.values()
                if c.state in (BackendState.REGISTERED, BackendState.HEARTBEATING)
                and now - c.last_heartbeat_attempt >= self.heartbeat_interval
            ]
        for candidate in due:
            self.heartbeat(candidate)

    def heartbeat(self, candidate: BackendCandidate) -> bool:
        """
        Send one heartbeat.

        Returns:
            True if the backend answered
        """
        candidate.last_heartbeat_attempt = self.clock()
        try:
            response = self.transport.request(candidate.socket_path, {"action": "heartbeat"}, self.heartbeat_timeout)
            answer = HeartbeatResponse.model_validate(response)
            if answer.status.lower() != "ok":
                raise HeartbeatMissedError(f"backend reported status {answer.status}")
        except (OSError, ValueError, ValidationError, HeartbeatMissedError) as e:
            candidate.missed_heartbeats += 1
            logger.warning(
                f"Backend {candidate.backend_id} missed heartbeat "
                f"{candidate.missed_heartbeats}/{self.missed_heartbeat_limit}: {e}"
            )
            if candidate.missed_heartbeats >= self.missed_heartbeat_limit:
                self._deregister(candidate.socket_path, f"{candidate.missed_heartbeats} consecutive heartbeats missed")
            return False

        candidate.missed_heartbeats = 0
        candidate.last_heartbeat_ok = datetime.utcnow()
        if candidate.state == BackendState.REGISTERED:
            self._transition(candidate, BackendState.HEARTBEATING)
        self.registry.record_heartbeat(candidate.backend_id, candidate.last_heartbeat_ok)
        return True

    # ========================================================================
    # QUERIES
    # ========================================================================

    def candidates(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [c.to_dict() for c in sorted(self._candidates.values(), key=lambda c: c.socket_path)]

    def rejected(self) -> List[Dict[str, Any]]:
        return [
            {"socket_path": path, "reason": reason}
            for path, (_, _, reason) in sorted(self._rejected.items())
        ]

    def state_of(self, socket_path: str) -> Optional[BackendState]:
        with self._lock:
            candidate = self._candidates.get(socket_path)
        return candidate.state if candidate else None

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _transition(self, candidate: BackendCandidate, target: BackendState) -> None:
        if target not in _TRANSITIONS[candidate.state]:
            raise InvalidTransitionError(candidate.socket_path, candidate.state, target)
        if candidate.state != target:
            logger.info(f"Backend {candidate.backend_id or candidate.socket_path}: {candidate.state.value} -> {target.value}")
        candidate.state = target

    def _socket_for_backend(self, backend_id: str) -> Optional[str]:
        with self._lock:
            for candidate in self._candidates.values():
                if candidate.backend_id == backend_id and candidate.state in (
                    BackendState.REGISTERED, BackendState.HEARTBEATING
                ):
                    return candidate.socket_path
        return None

    def _reject(self, candidate: BackendCandidate, error: HandshakeError) -> None:
        candidate.failure_reason = f"{error.reason}: {error.message}"
        self._transition(candidate, BackendState.DEREGISTERED)
        with self._lock:
            self._candidates.pop(candidate.socket_path, None)
            identity = self._identities.pop(candidate.socket_path, (0, 0))
        self._rejected[candidate.socket_path] = (identity, self.clock(), candidate.failure_reason)
        logger.warning(f"Discarded backend candidate {candidate.socket_path}: {candidate.failure_reason}")

    def _deregister(self, socket_path: str, reason: str) -> None:
        with self._lock:
            candidate = self._candidates.pop(socket_path, None)
            self._identities.pop(socket_path, None)
        if candidate is None:
            return

        was_active = candidate.state in (BackendState.REGISTERED, BackendState.HEARTBEATING)
        candidate.failure_reason = reason
        self._transition(candidate, BackendState.DEREGISTERED)
        if was_active and candidate.backend_id:
            self.registry.deregister_backend(candidate.backend_id)
        logger.warning(f"Backend {candidate.backend_id or socket_path} deregistered: {reason}")
