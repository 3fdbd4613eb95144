"""
Path Reconciler

Owns every filesystem mutation the engine performs. Only called with an OK
verdict that carries a CreateAction. Creation is "create if not exists":
losing a race to another creator is fine as long as the winner produced the
right kind.

Pre-existing paths are never chmod-ed or chown-ed here. Changing ownership of
an existing host path is the separate, explicit adjust_ownership operation.

A path whose mode or owner cannot be applied right after creation is
removed again, so the next attempt creates it from scratch.
"""

from __future__ import annotations

import errno
import logging
import os
from typing import Optional

from hostvol.domain import DEFAULT_DIRECTORY_MODE, CreateAction
from hostvol.errors import ReconcileError, TypeMismatchError
from hostvol.models import PathKind
from hostvol.services.file_status import FileStatusProbe, OsFileStatus

logger = logging.getLogger(__name__)


class PathReconciler:

    def __init__(self, file_status: Optional[FileStatusProbe] = None):
        self.file_status = file_status or OsFileStatus()

    def reconcile(self, path: str, create_action: CreateAction) -> bool:
        """
        Create path as described by create_action.

        Returns:
            True if this call created the path, False if it already existed
            with the correct kind.

        Raises:
            TypeMismatchError: path appeared concurrently with the wrong kind
            ReconcileError: any other filesystem failure (retryable)
        """
        if create_action.kind not in (PathKind.DIRECTORY, PathKind.FILE):
            raise ReconcileError(
                f"Cannot create {create_action.kind.value} at {path}", path=path
            )

        # A dangling symlink is created through: the link target gets the new object
        target = os.path.realpath(path)
        if target != path:
            logger.info(f"Resolved {path} -> {target} for creation")

        try:
            if create_action.kind == PathKind.DIRECTORY:
                created = self._create_directory(target, create_action.mode)
            else:
                created = self._create_file(target, create_action.mode)
        except FileExistsError:
            created = False
        except OSError as e:
            raise ReconcileError(
                f"Failed to create {create_action.kind.value} at {target}: {e}",
                path=target,
                errno=errno.errorcode.get(e.errno, e.errno),
            ) from e

        if not created:
            self._verify_existing(path, create_action.kind)
            logger.debug(f"{path} already exists as {create_action.kind.value}")
            return False

        self._apply_ownership(target, create_action)
        logger.info(
            f"Created {create_action.kind.value} {target} (mode={create_action.mode:o}, "
            f"uid={create_action.uid}, gid={create_action.gid})"
        )
        return True

    def adjust_ownership(self, path: str, uid: int, gid: int, mode: Optional[int] = None) -> None:
        """
        Explicit, opt-in ownership change of an existing path.

        Never called by the bind path. Operators invoke it deliberately.
        """
        try:
            os.chown(path, uid, gid)
            if mode is not None:
                os.chmod(path, mode)
        except OSError as e:
            raise ReconcileError(f"Failed to adjust ownership of {path}: {e}", path=path) from e
        logger.warning(f"Ownership of {path} changed on request: uid={uid} gid={gid} mode={mode}")

    def _ensure_parent(self, target: str) -> None:
        parent = os.path.dirname(target)
        if parent and not os.path.isdir(parent):
            os.makedirs(parent, mode=DEFAULT_DIRECTORY_MODE, exist_ok=True)

    def _create_directory(self, target: str, mode: int) -> bool:
        self._ensure_parent(target)
        os.mkdir(target, mode)
        try:
            # mkdir is subject to the umask
            os.chmod(target, mode)
        except OSError:
            self._discard_created(target, PathKind.DIRECTORY)
            raise
        return True

    def _create_file(self, target: str, mode: int) -> bool:
        self._ensure_parent(target)
        fd = os.open(target, os.O_CREAT | os.O_EXCL | os.O_WRONLY, mode)
        try:
            os.fchmod(fd, mode)
        except OSError:
            self._discard_created(target, PathKind.FILE)
            raise
        finally:
            os.close(fd)
        return True

    def _verify_existing(self, path: str, kind: PathKind) -> None:
        try:
            actual = self.file_status.kind_of(path)
        except OSError as e:
            raise ReconcileError(f"Re-validation of {path} failed: {e}", path=path) from e
        if actual != kind:
            raise TypeMismatchError(path, kind, actual)

    def _apply_ownership(self, target: str, create_action: CreateAction) -> None:
        if not create_action.owner_overridden:
            return
        try:
            os.chown(target, create_action.uid, create_action.gid)
        except OSError as e:
            self._discard_created(target, create_action.kind)
            raise ReconcileError(
                f"Created {target} but could not set owner {create_action.uid}:{create_action.gid}: {e}",
                path=target,
            ) from e

    def _discard_created(self, target: str, kind: PathKind) -> None:
        # Leaves nothing behind for the retry to mistake for a pre-existing path
        try:
            if kind == PathKind.DIRECTORY:
                os.rmdir(target)
            else:
                os.unlink(target)
        except OSError as e:
            logger.error(f"Could not remove {target} after a failed create: {e}")
        else:
            logger.warning(f"Removed {target}: mode or owner could not be applied")
