import os
import socket
from dataclasses import dataclass
from typing import Optional


def _int_env(name: str, default: int) -> int:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return int(raw)
    except Exception:
        return default


def _float_env(name: str, default: float) -> float:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return float(raw)
    except Exception:
        return default


def _str_env(name: str, default: str) -> str:
    raw = str(os.getenv(name, default) or "").strip()
    return raw or default


API_PORT = _int_env("HOSTVOL_API_PORT", 8010)
BIND_HOST = _str_env("HOSTVOL_BIND_HOST", "127.0.0.1")
NODE_NAME = _str_env("HOSTVOL_NODE_NAME", socket.gethostname())
STATE_DIR = _str_env("HOSTVOL_STATE_DIR", "/var/lib/hostvol")
REGISTRATION_DIR = _str_env("HOSTVOL_REGISTRATION_DIR", "/var/lib/hostvol/plugins_registry")

HANDSHAKE_TIMEOUT_SECONDS = _float_env("HOSTVOL_HANDSHAKE_TIMEOUT", 10.0)
HANDSHAKE_RETRY_SECONDS = _float_env("HOSTVOL_HANDSHAKE_RETRY", 30.0)
HEARTBEAT_INTERVAL_SECONDS = _float_env("HOSTVOL_HEARTBEAT_INTERVAL", 5.0)
HEARTBEAT_TIMEOUT_SECONDS = _float_env("HOSTVOL_HEARTBEAT_TIMEOUT", 2.0)
MISSED_HEARTBEAT_LIMIT = _int_env("HOSTVOL_MISSED_HEARTBEATS", 3)
SCAN_INTERVAL_SECONDS = _float_env("HOSTVOL_SCAN_INTERVAL", 2.0)

WORKER_POOL_SIZE = _int_env("HOSTVOL_WORKER_POOL_SIZE", 16)
WATCHDOG_THRESHOLD_SECONDS = _float_env("HOSTVOL_WATCHDOG_THRESHOLD", 5.0)
BLOCKING_CALL_TIMEOUT_SECONDS = _float_env("HOSTVOL_CALL_TIMEOUT", 30.0)

BACKOFF_INITIAL_SECONDS = _float_env("HOSTVOL_BACKOFF_INITIAL", 1.0)
BACKOFF_CAP_SECONDS = _float_env("HOSTVOL_BACKOFF_CAP", 30.0)

STATUS_RETENTION_SECONDS = _float_env("HOSTVOL_STATUS_RETENTION", 3600.0)
MAX_FINISHED_STATUSES = _int_env("HOSTVOL_MAX_FINISHED_STATUSES", 1000)

MAX_FRAME_BYTES = _int_env("HOSTVOL_MAX_FRAME_BYTES", 64 * 1024)

LOG_LEVEL = _str_env("HOSTVOL_LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("HOSTVOL_LOG_FILE") or None


@dataclass
class AgentSettings:
    """Runtime settings for one node agent. Defaults come from the environment."""

    node_name: str = NODE_NAME
    host: str = BIND_HOST
    port: int = API_PORT
    state_dir: str = STATE_DIR
    registration_dir: str = REGISTRATION_DIR
    database_url: Optional[str] = None

    handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS
    handshake_retry: float = HANDSHAKE_RETRY_SECONDS
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS
    heartbeat_timeout: float = HEARTBEAT_TIMEOUT_SECONDS
    missed_heartbeat_limit: int = MISSED_HEARTBEAT_LIMIT
    scan_interval: float = SCAN_INTERVAL_SECONDS

    worker_pool_size: int = WORKER_POOL_SIZE
    watchdog_threshold: float = WATCHDOG_THRESHOLD_SECONDS
    call_timeout: float = BLOCKING_CALL_TIMEOUT_SECONDS

    backoff_initial: float = BACKOFF_INITIAL_SECONDS
    backoff_cap: float = BACKOFF_CAP_SECONDS

    status_retention: float = STATUS_RETENTION_SECONDS
    max_finished_statuses: int = MAX_FINISHED_STATUSES

    max_frame_bytes: int = MAX_FRAME_BYTES

    @classmethod
    def from_env(cls) -> "AgentSettings":
        # Module constants are read at import time; re-read so launchers that
        # export variables after import still take effect.
        return cls(
            node_name=_str_env("HOSTVOL_NODE_NAME", socket.gethostname()),
            host=_str_env("HOSTVOL_BIND_HOST", "127.0.0.1"),
            port=_int_env("HOSTVOL_API_PORT", 8010),
            state_dir=_str_env("HOSTVOL_STATE_DIR", "/var/lib/hostvol"),
            registration_dir=_str_env("HOSTVOL_REGISTRATION_DIR", "/var/lib/hostvol/plugins_registry"),
            database_url=os.getenv("HOSTVOL_DATABASE_URL") or None,
            handshake_timeout=_float_env("HOSTVOL_HANDSHAKE_TIMEOUT", 10.0),
            handshake_retry=_float_env("HOSTVOL_HANDSHAKE_RETRY", 30.0),
            heartbeat_interval=_float_env("HOSTVOL_HEARTBEAT_INTERVAL", 5.0),
            heartbeat_timeout=_float_env("HOSTVOL_HEARTBEAT_TIMEOUT", 2.0),
            missed_heartbeat_limit=_int_env("HOSTVOL_MISSED_HEARTBEATS", 3),
            scan_interval=_float_env("HOSTVOL_SCAN_INTERVAL", 2.0),
            worker_pool_size=_int_env("HOSTVOL_WORKER_POOL_SIZE", 16),
            watchdog_threshold=_float_env("HOSTVOL_WATCHDOG_THRESHOLD", 5.0),
            call_timeout=_float_env("HOSTVOL_CALL_TIMEOUT", 30.0),
            backoff_initial=_float_env("HOSTVOL_BACKOFF_INITIAL", 1.0),
            backoff_cap=_float_env("HOSTVOL_BACKOFF_CAP", 30.0),
            status_retention=_float_env("HOSTVOL_STATUS_RETENTION", 3600.0),
            max_finished_statuses=_int_env("HOSTVOL_MAX_FINISHED_STATUSES", 1000),
            max_frame_bytes=_int_env("HOSTVOL_MAX_FRAME_BYTES", 64 * 1024),
        )


def _require_valid_port(port: int, field_name: str = "port") -> None:
    if int(port) < 1 or int(port) > 65535:
        raise ValueError(f"{field_name} must be in range 1..65535")


def _require_non_empty(value: str, field_name: str) -> None:
    if not str(value or "").strip():
        raise ValueError(f"{field_name} is required")


def _require_positive(value: float, field_name: str) -> None:
    if float(value) <= 0:
        raise ValueError(f"{field_name} must be positive")


def validate_agent_settings(settings: AgentSettings) -> None:
    _require_non_empty(settings.host, "host")
    _require_non_empty(settings.node_name, "node_name")
    _require_valid_port(settings.port)
    _require_non_empty(settings.state_dir, "state_dir")
    _require_non_empty(settings.registration_dir, "registration_dir")
    if not os.path.isabs(settings.registration_dir):
        raise ValueError("registration_dir must be an absolute path")

    for field_name in (
        "handshake_timeout",
        "heartbeat_interval",
        "heartbeat_timeout",
        "scan_interval",
        "watchdog_threshold",
        "call_timeout",
        "backoff_initial",
        "backoff_cap",
        "status_retention",
    ):
        _require_positive(getattr(settings, field_name), field_name)

    if int(settings.missed_heartbeat_limit) < 1:
        raise ValueError("missed_heartbeat_limit must be at least 1")
    if int(settings.max_finished_statuses) < 0:
        raise ValueError("max_finished_statuses must not be negative")
    if int(settings.worker_pool_size) < 1:
        raise ValueError("worker_pool_size must be at least 1")
    if float(settings.backoff_cap) < float(settings.backoff_initial):
        raise ValueError("backoff_cap must not be lower than backoff_initial")
    if int(settings.max_frame_bytes) < 256:
        raise ValueError("max_frame_bytes must be at least 256")
