"""
Paths API

Operator tools for host paths outside the bind lifecycle.

Endpoints:
- GET /paths/validate?path=&type=: Dry-run validation, never creates anything
- POST /paths/ownership: Explicit, opt-in ownership/mode change of an existing path
"""

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, field_validator
from typing import Dict, Any, Optional, Union
import logging

from hostvol.errors import VolumeEngineError, http_status_for
from hostvol.models import PathType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/paths", tags=["paths"])


# Will be injected by service.py
_validator = None
_reconciler = None
_pool = None

def set_path_services(validator, reconciler, pool=None):
    """Set validator/reconciler references (called by service.py)"""
    global _validator, _reconciler, _pool
    _validator = validator
    _reconciler = reconciler
    _pool = pool


def _call(fn, *args, description: str = "", **kwargs):
    if _pool is None:
        return fn(*args, **kwargs)
    return _pool.run(fn, *args, description=description, **kwargs)


class OwnershipRequest(BaseModel):
    path: str
    uid: int
    gid: int
    mode: Optional[Union[int, str]] = None

    @field_validator("path")
    @classmethod
    def _absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("path must be absolute")
        return value

    @field_validator("mode")
    @classmethod
    def _parse_mode(cls, value):
        if isinstance(value, str):
            try:
                return int(value, 8)
            except ValueError:
                raise ValueError(f"mode must be an octal string, got {value!r}")
        return value


@router.get("/validate")
def validate_path(path: str, type: PathType = Query(PathType.UNSET)) -> Dict[str, Any]:
    """
    Validate path against a declared type without creating it.
    """
    if _validator is None:
        raise HTTPException(status_code=503, detail="Path validator not initialized")
    try:
        verdict = _call(_validator.validate, path, type, description=f"dry-run validate {path}")
    except VolumeEngineError as e:
        raise HTTPException(status_code=http_status_for(e), detail=e.to_dict())

    action = verdict.create_action
    return {
        "path": path,
        "declared_type": type.value,
        "outcome": verdict.outcome.value,
        "ok": verdict.ok,
        "resolved_kind": verdict.resolved_kind.value,
        "required_kind": verdict.required_kind.value,
        "message": verdict.message,
        "would_create": None if action is None else {
            "path": action.path,
            "kind": action.kind.value,
            "mode": f"{action.mode:04o}",
            "uid": action.uid,
            "gid": action.gid,
        },
    }


@router.post("/ownership")
def adjust_ownership(request: OwnershipRequest) -> Dict[str, Any]:
    """
    Change owner (and optionally mode) of an existing path.
    The bind path never does this on its own.
    """
    if _reconciler is None:
        raise HTTPException(status_code=503, detail="Path reconciler not initialized")
    try:
        _call(
            _reconciler.adjust_ownership,
            request.path,
            request.uid,
            request.gid,
            request.mode,
            description=f"adjust ownership {request.path}",
        )
    except VolumeEngineError as e:
        raise HTTPException(status_code=http_status_for(e), detail=e.to_dict())

    logger.info(f"Ownership adjusted via API: {request.path} -> {request.uid}:{request.gid}")
    return {
        "path": request.path,
        "uid": request.uid,
        "gid": request.gid,
        "mode": None if request.mode is None else f"{request.mode:04o}",
    }
