"""Pytest configuration and shared fakes for the hostvol test suite."""

import threading
from typing import Any, Dict, Optional, Tuple

import pytest

from hostvol.database import get_session_factory
from hostvol.domain import CreateAction
from hostvol.errors import TypeMismatchError
from hostvol.models import PathKind
from hostvol.services.file_status import FileStatusProbe
from hostvol.services.mount_store import MountStore
from hostvol.services.path_validator import PathTypeValidator
from hostvol.services.plugin_registrar import PluginRegistrar, PluginTransport
from hostvol.services.reconciliation_loop import ReconciliationLoop
from hostvol.services.volume_registry import VolumeRegistry

NODE = "node-1"


class FakeFileStatus(FileStatusProbe):
    """In-memory filesystem: path -> PathKind, or an exception to raise."""

    def __init__(self, entries: Optional[Dict[str, Any]] = None):
        self.entries: Dict[str, Any] = dict(entries or {})
        self.calls = []
        self._lock = threading.Lock()

    def kind_of(self, path: str) -> PathKind:
        with self._lock:
            self.calls.append(path)
            value = self.entries.get(path)
        if value is None:
            raise FileNotFoundError(path)
        if isinstance(value, BaseException):
            raise value
        return value


class FakeReconciler:
    """Creates entries in a FakeFileStatus instead of the real filesystem."""

    def __init__(self, file_status: FakeFileStatus):
        self.file_status = file_status
        self.created = []
        self.actions = []
        self._lock = threading.Lock()

    def reconcile(self, path: str, create_action: CreateAction) -> bool:
        with self._lock:
            self.actions.append(create_action)
            existing = self.file_status.entries.get(path)
            if existing is not None:
                if existing != create_action.kind:
                    raise TypeMismatchError(path, create_action.kind, existing)
                return False
            self.file_status.entries[path] = create_action.kind
            self.created.append(path)
            return True

    def adjust_ownership(self, path, uid, gid, mode=None):
        pass


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """Scripted plugin backend answering identify/heartbeat requests."""

    def __init__(self, backend_id: str, capabilities=("local",), clock: Optional[FakeClock] = None):
        self.backend_id = backend_id
        self.capabilities = list(capabilities)
        self.clock = clock
        self.identify_response: Optional[Dict[str, Any]] = None
        self.identify_error: Optional[BaseException] = None
        self.identify_delay = 0.0
        self.heartbeat_error: Optional[BaseException] = None
        self.heartbeat_status = "ok"

    def handle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if payload["action"] == "identify":
            if self.clock is not None and self.identify_delay:
                self.clock.advance(self.identify_delay)
            if self.identify_error is not None:
                raise self.identify_error
            if self.identify_response is not None:
                return self.identify_response
            return {"backend_id": self.backend_id, "capabilities": self.capabilities, "protocol_version": 1}
        if payload["action"] == "heartbeat":
            if self.heartbeat_error is not None:
                raise self.heartbeat_error
            return {"status": self.heartbeat_status}
        return {"ok": False}


class FakeTransport(PluginTransport):
    def __init__(self):
        self.backends: Dict[str, FakeBackend] = {}
        self.calls = []

    def add(self, socket_path: str, backend: FakeBackend) -> FakeBackend:
        self.backends[socket_path] = backend
        return backend

    def request(self, socket_path: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        self.calls.append((socket_path, payload["action"], timeout))
        backend = self.backends.get(socket_path)
        if backend is None:
            raise ConnectionRefusedError(socket_path)
        return backend.handle(payload)

    def actions(self, socket_path: str):
        return [action for path, action, _ in self.calls if path == socket_path]


class FakeScanner:
    def __init__(self):
        self.sockets: Dict[str, Tuple[int, int]] = {}

    def __call__(self, registration_dir: str) -> Dict[str, Tuple[int, int]]:
        return dict(self.sockets)


@pytest.fixture
def file_status() -> FakeFileStatus:
    return FakeFileStatus()


@pytest.fixture
def reconciler(file_status) -> FakeReconciler:
    return FakeReconciler(file_status)


@pytest.fixture
def validator(file_status) -> PathTypeValidator:
    return PathTypeValidator(file_status, default_uid=1000, default_gid=1000)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory(tmp_path):
    return get_session_factory(str(tmp_path), f"sqlite:///{tmp_path / 'test.db'}")


@pytest.fixture
def store(session_factory) -> MountStore:
    return MountStore(session_factory)


@pytest.fixture
def registry(validator, reconciler) -> VolumeRegistry:
    return VolumeRegistry(validator=validator, reconciler=reconciler)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def scanner() -> FakeScanner:
    return FakeScanner()


@pytest.fixture
def registrar(registry, transport, scanner, clock) -> PluginRegistrar:
    return PluginRegistrar(
        registry,
        "/var/lib/hostvol/plugins_registry",
        transport=transport,
        scanner=scanner,
        clock=clock,
    )


@pytest.fixture
def loop(registry, clock) -> ReconciliationLoop:
    return ReconciliationLoop(registry, clock=clock)
