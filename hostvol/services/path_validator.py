"""
Path Type Validator

Decides whether a host path satisfies a declared PathType. Performs a single
status query through the injected FileStatusProbe and never mutates the
filesystem or any engine state. Verdicts are returned fresh on every call.

Decision table:
    exists, kind matches          -> OK
    exists, kind differs          -> TypeMismatch (also for *OrCreate types)
    exists, type Unset            -> OK, resolved kind = actual kind
    missing, *OrCreate            -> OK + CreateAction
    missing, anything else        -> MissingAndNotCreatable
    status query refused          -> PermissionDenied
"""

import logging
import os
from typing import Optional

from hostvol.domain import (
    DEFAULT_DIRECTORY_MODE,
    DEFAULT_FILE_MODE,
    CreateAction,
    ValidationVerdict,
    normalize_host_path,
)
from hostvol.errors import ReconcileError
from hostvol.models import PathKind, PathType, VerdictOutcome
from hostvol.services.file_status import FileStatusProbe, OsFileStatus

logger = logging.getLogger(__name__)


class PathTypeValidator:
    """
    Validate host paths against declared path types.
    """

    def __init__(self, file_status: Optional[FileStatusProbe] = None,
                 default_uid: Optional[int] = None, default_gid: Optional[int] = None):
        """
        Initialize validator.

        Args:
            file_status: Status probe (default: real os.stat)
            default_uid: Owner for created paths (default: effective uid)
            default_gid: Group for created paths (default: effective gid)
        """
        self.file_status = file_status or OsFileStatus()
        self.default_uid = os.geteuid() if default_uid is None else default_uid
        self.default_gid = os.getegid() if default_gid is None else default_gid

    def validate(
        self,
        path: str,
        declared_type: PathType,
        *,
        mode: Optional[int] = None,
        uid: Optional[int] = None,
        gid: Optional[int] = None,
    ) -> ValidationVerdict:
        """
        Validate path against declared_type.

        Args:
            path: Absolute host path
            declared_type: Declared PathType
            mode: Mode override for a path that would be created
            uid: Owner override for a path that would be created
            gid: Group override for a path that would be created

        Returns:
            ValidationVerdict
        """
        path = normalize_host_path(path)
        declared_type = PathType(declared_type)
        required = declared_type.required_kind

        if declared_type == PathType.UNSET:
            logger.warning(
                f"Path type Unset used for {path}: kind checks disabled, any existing object is accepted"
            )

        try:
            actual = self.file_status.kind_of(path)
        except PermissionError as e:
            return ValidationVerdict(
                outcome=VerdictOutcome.PERMISSION_DENIED,
                resolved_kind=PathKind.UNKNOWN,
                required_kind=required,
                message=f"Status query on {path} refused: {e}",
            )
        except (FileNotFoundError, NotADirectoryError):
            return self._missing_verdict(path, declared_type, mode, uid, gid)
        except OSError as e:
            raise ReconcileError(f"Status query on {path} failed: {e}", path=path, errno=e.errno) from e

        if declared_type == PathType.UNSET:
            return ValidationVerdict(
                outcome=VerdictOutcome.OK,
                resolved_kind=actual,
                required_kind=required,
                message=f"{path} accepted as {actual.value} (type Unset)",
            )

        if actual != required:
            return ValidationVerdict(
                outcome=VerdictOutcome.TYPE_MISMATCH,
                resolved_kind=actual,
                required_kind=required,
                message=f"{path} is a {actual.value}, expected {required.value}",
            )

        return ValidationVerdict(
            outcome=VerdictOutcome.OK,
            resolved_kind=actual,
            required_kind=required,
            message=f"{path} is a {actual.value}",
        )

    def _missing_verdict(self, path, declared_type, mode, uid, gid) -> ValidationVerdict:
        required = declared_type.required_kind

        if not declared_type.may_create:
            return ValidationVerdict(
                outcome=VerdictOutcome.MISSING_AND_NOT_CREATABLE,
                resolved_kind=PathKind.MISSING,
                required_kind=required,
                message=f"{path} does not exist and type {declared_type.value} does not allow creation",
            )

        default_mode = DEFAULT_DIRECTORY_MODE if required == PathKind.DIRECTORY else DEFAULT_FILE_MODE
        action = CreateAction(
            path=path,
            kind=required,
            mode=default_mode if mode is None else int(mode),
            uid=self.default_uid if uid is None else int(uid),
            gid=self.default_gid if gid is None else int(gid),
            owner_overridden=uid is not None or gid is not None,
        )
        return ValidationVerdict(
            outcome=VerdictOutcome.OK,
            resolved_kind=PathKind.MISSING,
            required_kind=required,
            create_action=action,
            message=f"{path} does not exist, will create {required.value} mode {action.mode:o}",
        )
