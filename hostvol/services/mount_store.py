"""
Mount Store

Write-through persistence for registry records. The registry stays the
source of truth while running; the store lets a restarted agent recover
refcounts for workloads that kept running across the restart.

Each workload holding a mount is stored as its own holder row, one per
mount target it declared, so per-workload descriptors survive as well.
"""

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, select

from hostvol.domain import BackendRegistration, BoundMount
from hostvol.models import BackendRecord, BoundMountRecord, MountHolderRecord

logger = logging.getLogger(__name__)


class MountStore:

    def __init__(self, session_factory):
        """
        Args:
            session_factory: SQLAlchemy session factory
        """
        self.session_factory = session_factory

    def save_mount(self, mount: BoundMount, targets: Optional[Dict[str, List[str]]] = None) -> None:
        """
        Insert or update the record for mount.

        Args:
            mount: BoundMount as held by the registry
            targets: workload_id -> mount targets it declared (default: the mount's own target)
        """
        targets = targets or {}
        db = self.session_factory()
        try:
            record = db.scalars(select(BoundMountRecord).where(
                BoundMountRecord.node == mount.node,
                BoundMountRecord.host_path == mount.host_path,
            )).first()
            if record is None:
                record = BoundMountRecord(node=mount.node, host_path=mount.host_path, created_at=mount.created_at)
                db.add(record)

            record.mount_target = mount.mount_target
            record.declared_type = mount.declared_type
            record.resolved_kind = mount.resolved_kind
            record.propagation = mount.propagation
            record.read_only = mount.read_only
            record.workload_id = mount.workload_id
            record.ref_count = mount.ref_count
            record.state = mount.state
            record.backend_id = mount.backend_id
            rows = [(w, t) for w in mount.workload_ids for t in (targets.get(w) or [mount.mount_target])]
            record.holders = [
                MountHolderRecord(workload_id=workload_id, mount_target=target, position=position)
                for position, (workload_id, target) in enumerate(rows)
            ]
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete_mount(self, node: str, host_path: str) -> None:
        db = self.session_factory()
        try:
            record = db.scalars(select(BoundMountRecord).where(
                BoundMountRecord.node == node,
                BoundMountRecord.host_path == host_path,
            )).first()
            if record is not None:
                # ORM delete so holder rows cascade with it
                db.delete(record)
                db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def load_mounts(self) -> List[Tuple[BoundMount, Dict[str, List[str]]]]:
        """
        Returns:
            (BoundMount, workload_id -> mount targets) per persisted record
        """
        db = self.session_factory()
        try:
            records = db.scalars(select(BoundMountRecord)).all()
            mounts = []
            for record in records:
                targets: Dict[str, List[str]] = {}
                for holder in record.holders:
                    targets.setdefault(holder.workload_id, []).append(holder.mount_target)
                workload_ids = tuple(targets)
                mounts.append((BoundMount(
                    workload_id=record.workload_id,
                    node=record.node,
                    host_path=record.host_path,
                    mount_target=record.mount_target,
                    declared_type=record.declared_type,
                    resolved_kind=record.resolved_kind,
                    propagation=record.propagation,
                    read_only=bool(record.read_only),
                    ref_count=len(workload_ids),
                    created_at=record.created_at,
                    workload_ids=workload_ids,
                    state=record.state,
                    backend_id=record.backend_id,
                ), targets))
            return mounts
        finally:
            db.close()

    def save_backend(self, registration: BackendRegistration) -> None:
        db = self.session_factory()
        try:
            record = db.scalars(select(BackendRecord).where(
                BackendRecord.backend_id == registration.backend_id
            )).first()
            if record is None:
                record = BackendRecord(backend_id=registration.backend_id)
                db.add(record)
            record.socket_path = registration.socket_path
            record.capabilities = ",".join(sorted(registration.capabilities))
            record.last_heartbeat_at = registration.last_heartbeat
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete_backend(self, backend_id: str) -> None:
        db = self.session_factory()
        try:
            db.execute(delete(BackendRecord).where(BackendRecord.backend_id == backend_id))
            db.commit()
        finally:
            db.close()

    def clear_backends(self) -> int:
        """Backend registrations do not survive a restart; they are re-learned by handshake."""
        db = self.session_factory()
        try:
            result = db.execute(delete(BackendRecord))
            db.commit()
            return result.rowcount or 0
        finally:
            db.close()
