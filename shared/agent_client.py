"""
Agent Client

HTTP client for a node agent's bindings and status surface.
Used by the status CLI and by anything standing in for the scheduler.
"""

import requests
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AgentClient:
    """
    Client for the hostvol node agent API.

    Usage:
        client = AgentClient("http://127.0.0.1:8010")

        client.submit_binding(
            workload_id="web-1",
            node="worker-1",
            volumes=[{"path": "/data/a", "type": "DirectoryOrCreate"}]
        )
        status = client.get_binding("web-1")
        mounts = client.get_mounts()
    """

    def __init__(self, agent_url: str, timeout: int = 10):
        """
        Initialize agent client.

        Args:
            agent_url: Agent base URL (e.g., 'http://127.0.0.1:8010')
            timeout: Request timeout in seconds
        """
        self.agent_url = agent_url.rstrip("/")
        self.timeout = timeout

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.agent_url}{path}"
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            logger.error(f"GET {url} failed: {e}")
            raise

    def _send(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.agent_url}{path}"
        try:
            response = requests.request(method, url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as e:
            logger.error(f"{method} {url} failed: HTTP {e.response.status_code}: {e.response.text}")
            raise
        except requests.RequestException as e:
            logger.error(f"{method} {url} failed: {e}")
            raise

    # Bindings

    def submit_binding(
        self,
        workload_id: str,
        node: str,
        volumes: List[Dict[str, Any]],
        workload_kind: str = "Application"
    ) -> Dict[str, Any]:
        return self._send("POST", "/bindings", {
            "workload_id": workload_id,
            "node": node,
            "workload_kind": workload_kind,
            "volumes": volumes,
        })

    def get_binding(self, workload_id: str) -> Dict[str, Any]:
        return self._get(f"/bindings/{workload_id}")

    def verify_binding(self, workload_id: str) -> Dict[str, Any]:
        return self._send("POST", f"/bindings/{workload_id}/verify")

    def cancel_binding(self, workload_id: str) -> Dict[str, Any]:
        return self._send("POST", f"/bindings/{workload_id}/cancel")

    def teardown(self, workload_id: str) -> Dict[str, Any]:
        return self._send("DELETE", f"/bindings/{workload_id}")

    # Status

    def get_status(self) -> Dict[str, Any]:
        return self._get("/status")

    def get_mounts(self, node: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._get("/status/mounts", params={"node": node} if node else None)

    def get_backends(self) -> Dict[str, Any]:
        return self._get("/status/backends")

    def get_anomalies(self) -> Dict[str, Any]:
        return self._get("/status/anomalies")

    # Paths

    def validate_path(self, path: str, path_type: str = "Unset") -> Dict[str, Any]:
        return self._get("/paths/validate", params={"path": path, "type": path_type})
