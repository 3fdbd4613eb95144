"""
Bindings API

Entry point for the scheduler's binding decisions. Requests are queued on the
reconciliation loop; callers poll the workload status for the result.

Endpoints:
- POST /bindings: Submit a binding decision (202)
- GET /bindings/{workload_id}: Workload status, descriptors or waiting reason
- POST /bindings/{workload_id}/verify: Re-validate bound paths and report drift
- POST /bindings/{workload_id}/cancel: Abort a pending bind
- DELETE /bindings/{workload_id}: Teardown, releases every held path
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, field_validator
from typing import List, Dict, Any, Optional, Union
import logging

from hostvol.domain import VolumeSpec
from hostvol.errors import VolumeEngineError, http_status_for
from hostvol.models import PathType, PropagationMode, WorkloadKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bindings", tags=["bindings"])


# Will be injected by service.py
_loop = None

def set_reconciliation_loop(loop):
    """Set reconciliation loop reference (called by service.py)"""
    global _loop
    _loop = loop


def _require_loop():
    if _loop is None:
        raise HTTPException(status_code=503, detail="Reconciliation loop not initialized")
    return _loop


class VolumeRequest(BaseModel):
    """One volume declaration"""
    path: str
    type: PathType = PathType.UNSET
    read_only: bool = False
    mount_target: Optional[str] = None
    propagation: PropagationMode = PropagationMode.NONE
    backend_capability: Optional[str] = None
    owner_uid: Optional[int] = None
    owner_gid: Optional[int] = None
    mode: Optional[Union[int, str]] = None  # int, or octal string such as "0750"

    @field_validator("mode")
    @classmethod
    def _parse_mode(cls, value):
        if isinstance(value, str):
            try:
                return int(value, 8)
            except ValueError:
                raise ValueError(f"mode must be an octal string, got {value!r}")
        return value

    def to_spec(self) -> VolumeSpec:
        return VolumeSpec(
            path=self.path,
            type=self.type,
            read_only=self.read_only,
            mount_target=self.mount_target or "",
            propagation=self.propagation,
            backend_capability=self.backend_capability,
            owner_uid=self.owner_uid,
            owner_gid=self.owner_gid,
            mode=self.mode,
        )


class BindingRequest(BaseModel):
    """Scheduler binding decision: workload placed on node"""
    workload_id: str
    node: str
    workload_kind: WorkloadKind = WorkloadKind.APPLICATION
    volumes: List[VolumeRequest] = []


def _engine_error(e: VolumeEngineError) -> HTTPException:
    return HTTPException(status_code=http_status_for(e), detail=e.to_dict())


@router.post("", status_code=202)
def submit_binding(request: BindingRequest) -> Dict[str, Any]:
    """
    Queue a binding decision.
    Volume declarations are checked here; path validation happens on the loop.
    """
    loop = _require_loop()
    try:
        specs = [v.to_spec() for v in request.volumes]
        status = loop.submit_bind(request.workload_id, request.node, specs, request.workload_kind)
    except VolumeEngineError as e:
        logger.warning(f"Rejected binding for {request.workload_id}: {e.reason}: {e.message}")
        raise _engine_error(e)
    return status.to_dict()


@router.get("/{workload_id}")
def get_binding(workload_id: str) -> Dict[str, Any]:
    loop = _require_loop()
    status = loop.status(workload_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Workload {workload_id} not known")
    return status.to_dict()


@router.post("/{workload_id}/verify", status_code=202)
def verify_binding(workload_id: str) -> Dict[str, Any]:
    """
    Queue a read-only re-validation. Drift shows up in the workload status.
    """
    loop = _require_loop()
    if not loop.submit_verify(workload_id):
        raise HTTPException(status_code=404, detail=f"Workload {workload_id} not known")
    return {"workload_id": workload_id, "queued": "verify"}


@router.post("/{workload_id}/cancel")
def cancel_binding(workload_id: str) -> Dict[str, Any]:
    loop = _require_loop()
    if loop.status(workload_id) is None:
        raise HTTPException(status_code=404, detail=f"Workload {workload_id} not known")
    if not loop.cancel(workload_id):
        raise HTTPException(status_code=409, detail=f"Workload {workload_id} has no pending bind")
    return loop.status(workload_id).to_dict()


@router.delete("/{workload_id}", status_code=202)
def teardown_binding(workload_id: str) -> Dict[str, Any]:
    """
    Workload teardown. Duplicate notifications are accepted and are no-ops.
    """
    loop = _require_loop()
    loop.submit_teardown(workload_id)
    return {"workload_id": workload_id, "queued": "teardown"}
