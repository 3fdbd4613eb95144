from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, List, Optional, Tuple

from hostvol.errors import InvalidVolumeSpecError
from hostvol.models import (
    BackendState,
    BindPhase,
    MountState,
    PathKind,
    PathType,
    PropagationMode,
    VerdictOutcome,
)

DEFAULT_DIRECTORY_MODE = 0o755
DEFAULT_FILE_MODE = 0o644


def normalize_host_path(path: str) -> str:
    """Absolute, lexically normalized path. Relative input is rejected."""
    raw = str(path or "").strip()
    if not raw:
        raise InvalidVolumeSpecError("path is required")
    if not os.path.isabs(raw):
        raise InvalidVolumeSpecError(f"path must be absolute: {raw}", path=raw)
    return os.path.normpath(raw)


@dataclass(frozen=True)
class VolumeSpec:
    """Volume declared by a workload manifest. Immutable once admitted."""

    path: str
    type: PathType = PathType.UNSET
    read_only: bool = False
    mount_target: str = ""
    propagation: PropagationMode = PropagationMode.NONE
    backend_capability: Optional[str] = None
    owner_uid: Optional[int] = None
    owner_gid: Optional[int] = None
    mode: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "path", normalize_host_path(self.path))
        target = self.mount_target or self.path
        if not os.path.isabs(target):
            raise InvalidVolumeSpecError(f"mount_target must be absolute: {target}", mount_target=target)
        object.__setattr__(self, "mount_target", os.path.normpath(target))
        try:
            object.__setattr__(self, "type", PathType(self.type))
            object.__setattr__(self, "propagation", PropagationMode(self.propagation))
        except ValueError as exc:
            raise InvalidVolumeSpecError(str(exc)) from exc
        if not isinstance(self.read_only, bool):
            raise InvalidVolumeSpecError("read_only must be a boolean")
        if self.mode is not None and not (0 <= int(self.mode) <= 0o7777):
            raise InvalidVolumeSpecError(f"mode out of range: {self.mode!r}")


@dataclass(frozen=True)
class CreateAction:
    path: str
    kind: PathKind
    mode: int
    uid: int
    gid: int
    owner_overridden: bool = False


@dataclass(frozen=True)
class ValidationVerdict:
    outcome: VerdictOutcome
    resolved_kind: PathKind
    required_kind: PathKind
    create_action: Optional[CreateAction] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == VerdictOutcome.OK


@dataclass(frozen=True)
class MountDescriptor:
    """Consumed by the workload lifecycle manager to perform the bind mount."""

    source: str
    target: str
    propagation: PropagationMode
    read_only: bool

    @property
    def options(self) -> List[str]:
        propagation_flag = {
            PropagationMode.NONE: "rprivate",
            PropagationMode.HOST_TO_CONTAINER: "rslave",
            PropagationMode.BIDIRECTIONAL: "rshared",
        }[self.propagation]
        return ["rbind", "ro" if self.read_only else "rw", propagation_flag]

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "target": self.target,
            "propagation": self.propagation.value,
            "read_only": self.read_only,
            "options": self.options,
        }


MountKey = Tuple[str, str]


@dataclass(frozen=True)
class BoundMount:
    workload_id: str
    node: str
    host_path: str
    mount_target: str
    declared_type: PathType
    resolved_kind: PathKind
    propagation: PropagationMode
    read_only: bool
    ref_count: int
    created_at: datetime
    workload_ids: Tuple[str, ...] = ()
    state: MountState = MountState.ACTIVE
    backend_id: Optional[str] = None

    @property
    def key(self) -> MountKey:
        return (self.node, self.host_path)

    @property
    def descriptor(self) -> MountDescriptor:
        return MountDescriptor(self.host_path, self.mount_target, self.propagation, self.read_only)

    def to_dict(self) -> dict:
        return {
            "workload_id": self.workload_id,
            "workload_ids": list(self.workload_ids),
            "node": self.node,
            "host_path": self.host_path,
            "mount_target": self.mount_target,
            "declared_type": self.declared_type.value,
            "resolved_kind": self.resolved_kind.value,
            "propagation": self.propagation.value,
            "read_only": self.read_only,
            "ref_count": self.ref_count,
            "state": self.state.value,
            "backend_id": self.backend_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class BackendRegistration:
    backend_id: str
    socket_path: str
    last_heartbeat: datetime
    capabilities: FrozenSet[str] = frozenset()

    def to_dict(self) -> dict:
        return {
            "backend_id": self.backend_id,
            "socket_path": self.socket_path,
            "last_heartbeat": self.last_heartbeat.isoformat(),
            "capabilities": sorted(self.capabilities),
        }


@dataclass
class BackendCandidate:
    """Registrar-side view of one socket moving through the state machine."""

    socket_path: str
    state: BackendState = BackendState.DISCOVERED
    backend_id: Optional[str] = None
    capabilities: FrozenSet[str] = frozenset()
    discovered_at: float = 0.0
    last_heartbeat_attempt: float = 0.0
    last_heartbeat_ok: Optional[datetime] = None
    missed_heartbeats: int = 0
    failure_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "socket_path": self.socket_path,
            "state": self.state.value,
            "backend_id": self.backend_id,
            "capabilities": sorted(self.capabilities),
            "missed_heartbeats": self.missed_heartbeats,
            "last_heartbeat_ok": self.last_heartbeat_ok.isoformat() if self.last_heartbeat_ok else None,
            "failure_reason": self.failure_reason,
        }


@dataclass
class WorkloadStatus:
    workload_id: str
    node: str
    phase: BindPhase = BindPhase.PENDING
    reason: Optional[str] = None
    message: str = ""
    attempts: int = 0
    next_retry_in: Optional[float] = None
    descriptors: List[MountDescriptor] = field(default_factory=list)
    drift: List[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "workload_id": self.workload_id,
            "node": self.node,
            "phase": self.phase.value,
            "reason": self.reason,
            "message": self.message,
            "attempts": self.attempts,
            "next_retry_in": self.next_retry_in,
            "descriptors": [d.to_dict() for d in self.descriptors],
            "drift": list(self.drift),
            "updated_at": self.updated_at.isoformat(),
        }
