"""
Status API

Read-only observability surface for operators and the status CLI.

Endpoints:
- GET /status: Agent summary
- GET /status/mounts: Bound mount records
- GET /status/backends: Registered backends, candidates and rejected sockets
- GET /status/anomalies: Slow filesystem calls flagged by the watchdog and paths held busy by timed-out calls
"""

from fastapi import APIRouter
from typing import List, Dict, Any, Optional
from datetime import datetime
import logging

from hostvol.models import MountState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/status", tags=["status"])


# Will be injected by service.py
_registry = None
_registrar = None
_pool = None
_loop = None
_node_name = ""

def set_components(registry, registrar=None, pool=None, loop=None, node_name: str = ""):
    """Set component references (called by service.py)"""
    global _registry, _registrar, _pool, _loop, _node_name
    _registry = registry
    _registrar = registrar
    _pool = pool
    _loop = loop
    _node_name = node_name


@router.get("")
def get_status() -> Dict[str, Any]:
    """
    Agent summary: mount, backend and workload counts.
    """
    if _registry is None:
        return {
            "status": "unknown",
            "node": _node_name,
            "timestamp": datetime.utcnow().isoformat(),
        }

    mounts = _registry.snapshot()
    degraded = sum(1 for m in mounts if m.state == MountState.DEGRADED)

    phases: Dict[str, int] = {}
    if _loop is not None:
        for status in _loop.statuses():
            phases[status.phase.value] = phases.get(status.phase.value, 0) + 1

    return {
        "status": "degraded" if degraded else "healthy",
        "node": _node_name,
        "mounts": len(mounts),
        "degraded_mounts": degraded,
        "backends": len(_registry.backends()),
        "workloads": phases,
        "in_flight_calls": len(_pool.in_flight()) if _pool is not None else 0,
        "anomalies": len(_pool.anomalies()) if _pool is not None else 0,
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/mounts")
def get_mounts(node: Optional[str] = None) -> List[Dict[str, Any]]:
    if _registry is None:
        return []
    return [m.to_dict() for m in _registry.snapshot() if node is None or m.node == node]


@router.get("/backends")
def get_backends() -> Dict[str, Any]:
    """
    Registered backends plus every socket the registrar is tracking or has rejected.
    """
    if _registry is None:
        return {"registered": [], "candidates": [], "rejected": []}
    return {
        "registered": [b.to_dict() for b in _registry.backends()],
        "candidates": _registrar.candidates() if _registrar is not None else [],
        "rejected": _registrar.rejected() if _registrar is not None else [],
    }


@router.get("/anomalies")
def get_anomalies() -> Dict[str, Any]:
    busy = [{"node": node, "host_path": path} for node, path in _registry.busy_paths()] if _registry is not None else []
    if _pool is None:
        return {"in_flight": [], "anomalies": [], "busy_paths": busy}
    return {
        "in_flight": [
            {"description": c.description, "flagged": c.flagged} for c in _pool.in_flight()
        ],
        "anomalies": [a.to_dict() for a in _pool.anomalies()],
        "busy_paths": busy,
    }
