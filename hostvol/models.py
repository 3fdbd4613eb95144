from sqlalchemy import Column, Integer, String, Enum, Boolean, DateTime, Text, Index, UniqueConstraint, ForeignKey
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
import enum

Base = declarative_base()

# ============================================================================
# ENUM DEFINITIONS
# ============================================================================

class PathKind(str, enum.Enum):
    """Filesystem category of a host path"""
    DIRECTORY = "Directory"
    FILE = "File"
    SOCKET = "Socket"
    CHAR_DEVICE = "CharDevice"
    BLOCK_DEVICE = "BlockDevice"
    OTHER = "Other"
    # Verdict-only values
    MISSING = "Missing"
    UNKNOWN = "Unknown"
    ANY = "Any"


class PathType(str, enum.Enum):
    """Declared type of a host path volume"""
    DIRECTORY_OR_CREATE = "DirectoryOrCreate"
    DIRECTORY = "Directory"
    FILE_OR_CREATE = "FileOrCreate"
    FILE = "File"
    SOCKET = "Socket"
    CHAR_DEVICE = "CharDevice"
    BLOCK_DEVICE = "BlockDevice"
    UNSET = "Unset"

    @property
    def required_kind(self) -> PathKind:
        return _REQUIRED_KIND[self]

    @property
    def may_create(self) -> bool:
        return self in (PathType.DIRECTORY_OR_CREATE, PathType.FILE_OR_CREATE)


_REQUIRED_KIND = {
    PathType.DIRECTORY_OR_CREATE: PathKind.DIRECTORY,
    PathType.DIRECTORY: PathKind.DIRECTORY,
    PathType.FILE_OR_CREATE: PathKind.FILE,
    PathType.FILE: PathKind.FILE,
    PathType.SOCKET: PathKind.SOCKET,
    PathType.CHAR_DEVICE: PathKind.CHAR_DEVICE,
    PathType.BLOCK_DEVICE: PathKind.BLOCK_DEVICE,
    PathType.UNSET: PathKind.ANY,
}


class VerdictOutcome(str, enum.Enum):
    """Result of validating a host path against its declared type"""
    OK = "OK"
    TYPE_MISMATCH = "TypeMismatch"
    MISSING_AND_NOT_CREATABLE = "MissingAndNotCreatable"
    PERMISSION_DENIED = "PermissionDenied"


class PropagationMode(str, enum.Enum):
    """Mount propagation between host and workload"""
    NONE = "None"
    HOST_TO_CONTAINER = "HostToContainer"
    BIDIRECTIONAL = "Bidirectional"


class WorkloadKind(str, enum.Enum):
    """Only storage backends may request bidirectional propagation"""
    APPLICATION = "Application"
    STORAGE_BACKEND = "StorageBackend"


class MountState(str, enum.Enum):
    """Bound mount operational state"""
    ACTIVE = "ACTIVE"
    DEGRADED = "DEGRADED"


class BackendState(str, enum.Enum):
    """Plugin backend registration state"""
    DISCOVERED = "Discovered"
    HANDSHAKING = "Handshaking"
    REGISTERED = "Registered"
    HEARTBEATING = "Heartbeating"
    DEREGISTERED = "Deregistered"


class BindPhase(str, enum.Enum):
    """Workload bind request phase as reported to the lifecycle manager"""
    PENDING = "Pending"
    WAITING_FOR_VOLUME = "WaitingForVolume"
    BOUND = "Bound"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    RELEASED = "Released"


# ============================================================================
# PERSISTED RECORDS
# ============================================================================

class BoundMountRecord(Base):
    """
    Durable copy of a registry BoundMount.
    Written through by MountStore so refcounts survive an agent restart.
    Deleting a row never touches the host path.
    """
    __tablename__ = "bound_mounts"

    id = Column(Integer, primary_key=True, autoincrement=True)

    node = Column(String, nullable=False)
    host_path = Column(String, nullable=False)
    mount_target = Column(String, nullable=False)

    declared_type = Column(Enum(PathType), nullable=False)
    resolved_kind = Column(Enum(PathKind), nullable=False)
    propagation = Column(Enum(PropagationMode), nullable=False)
    read_only = Column(Boolean, default=False)

    workload_id = Column(String, nullable=False)  # first acquirer
    ref_count = Column(Integer, default=0)

    state = Column(Enum(MountState), default=MountState.ACTIVE)
    backend_id = Column(String)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("node", "host_path", name="uq_bound_mounts_node_path"),
        Index("idx_bound_mounts_backend", "backend_id"),
    )

    # Relationships
    holders = relationship(
        "MountHolderRecord",
        back_populates="mount",
        cascade="all, delete-orphan",
        order_by="MountHolderRecord.position",
    )


class MountHolderRecord(Base):
    """One workload reference to a bound mount, with the target it mounts at"""
    __tablename__ = "mount_holders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    mount_id = Column(Integer, ForeignKey("bound_mounts.id"), nullable=False)
    workload_id = Column(String, nullable=False)
    mount_target = Column(String, nullable=False)
    position = Column(Integer, nullable=False)  # acquisition order

    # Relationships
    mount = relationship("BoundMountRecord", back_populates="holders")

    __table_args__ = (
        Index("idx_mount_holders_workload", "workload_id"),
    )


class BackendRecord(Base):
    """Plugin backend that completed the handshake on this node"""
    __tablename__ = "backend_registrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    backend_id = Column(String, nullable=False, unique=True, index=True)
    socket_path = Column(String, nullable=False)
    capabilities = Column(Text, default="")  # comma separated
    last_heartbeat_at = Column(DateTime)
    registered_at = Column(DateTime, default=datetime.utcnow)
