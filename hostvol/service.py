"""
Node Agent Service Launcher

Multi-threaded node agent that runs:
1. Blocking-call pool watchdog - flags hung filesystem calls
2. Plugin registrar - discovers and heartbeats storage backends
3. Reconciliation loop - drives bind/verify/teardown requests
4. HTTP API (FastAPI + uvicorn) - bindings, status and path tools

Usage:
    from hostvol.config import AgentSettings
    from hostvol.service import NodeAgentService

    service = NodeAgentService(AgentSettings.from_env())
    service.start()
    # ... service runs in background threads ...
    service.stop()
"""

import threading
import time
import logging
from typing import Optional
from datetime import datetime
from fastapi import FastAPI
import uvicorn

from hostvol import __version__
from hostvol.api import bindings, paths, status
from hostvol.config import AgentSettings, validate_agent_settings
from hostvol.database import get_session_factory
from hostvol.services.file_status import FileStatusProbe
from hostvol.services.mount_binder import MountBinder
from hostvol.services.mount_store import MountStore
from hostvol.services.path_reconciler import PathReconciler
from hostvol.services.path_validator import PathTypeValidator
from hostvol.services.plugin_registrar import PluginRegistrar, PluginTransport, UnixSocketTransport
from hostvol.services.reconciliation_loop import ReconciliationLoop
from hostvol.services.retry_policy import ExponentialBackoff
from hostvol.services.volume_registry import VolumeRegistry
from hostvol.services.worker_pool import BlockingCallPool

logger = logging.getLogger(__name__)


class NodeAgentService:
    """
    Node agent orchestrator.
    Owns every engine component and their lifecycles; nothing is module-global.
    """

    def __init__(
        self,
        settings: Optional[AgentSettings] = None,
        file_status: Optional[FileStatusProbe] = None,
        transport: Optional[PluginTransport] = None,
        session_factory=None,
    ):
        """
        Initialize node agent.

        Args:
            settings: Agent settings (default: from environment)
            file_status: Filesystem probe (default: os.stat)
            transport: Plugin transport (default: AF_UNIX sockets)
            session_factory: SQLAlchemy session factory (default: SQLite under state_dir)
        """
        self.settings = settings or AgentSettings.from_env()
        validate_agent_settings(self.settings)

        # Initialize database
        self.SessionLocal = session_factory or get_session_factory(
            self.settings.state_dir, self.settings.database_url
        )
        self.store = MountStore(self.SessionLocal)

        self.pool = BlockingCallPool(
            max_workers=self.settings.worker_pool_size,
            slow_threshold_seconds=self.settings.watchdog_threshold,
            call_timeout_seconds=self.settings.call_timeout,
        )
        self.validator = PathTypeValidator(file_status)
        self.reconciler = PathReconciler(self.validator.file_status)
        self.registry = VolumeRegistry(
            validator=self.validator,
            reconciler=self.reconciler,
            binder=MountBinder(),
            pool=self.pool,
            store=self.store,
        )
        self.registry.restore()

        self.registrar = PluginRegistrar(
            self.registry,
            self.settings.registration_dir,
            transport=transport or UnixSocketTransport(self.settings.max_frame_bytes),
            handshake_timeout_seconds=self.settings.handshake_timeout,
            handshake_retry_seconds=self.settings.handshake_retry,
            heartbeat_interval_seconds=self.settings.heartbeat_interval,
            heartbeat_timeout_seconds=self.settings.heartbeat_timeout,
            missed_heartbeat_limit=self.settings.missed_heartbeat_limit,
            scan_interval_seconds=self.settings.scan_interval,
        )
        self.loop = ReconciliationLoop(
            self.registry,
            backoff=ExponentialBackoff(self.settings.backoff_initial, self.settings.backoff_cap),
            status_retention_seconds=self.settings.status_retention,
            max_finished_statuses=self.settings.max_finished_statuses,
        )

        # Inject components into API modules
        bindings.set_reconciliation_loop(self.loop)
        status.set_components(
            self.registry,
            registrar=self.registrar,
            pool=self.pool,
            loop=self.loop,
            node_name=self.settings.node_name,
        )
        paths.set_path_services(self.validator, self.reconciler, pool=self.pool)

        self.app = self.create_app()

        # Service state
        self.running = False
        self.api_thread: Optional[threading.Thread] = None
        self.start_time = datetime.utcnow()

        logger.info(
            f"Node agent initialized: node={self.settings.node_name}, "
            f"registration_dir={self.settings.registration_dir}, restored_mounts={len(self.registry.snapshot())}"
        )

    def create_app(self) -> FastAPI:
        """Create the agent FastAPI app"""
        app = FastAPI(title="hostvol Node Agent", version=__version__)
        app.include_router(bindings.router)
        app.include_router(status.router)
        app.include_router(paths.router)

        @app.get("/")
        def root():
            return {
                "service": "hostvol_agent",
                "node": self.settings.node_name,
                "port": self.settings.port,
                "uptime_seconds": (datetime.utcnow() - self.start_time).total_seconds(),
                "timestamp": datetime.utcnow().isoformat()
            }

        return app

    def start(self, serve_api: bool = True):
        """Start all agent components"""
        if self.running:
            logger.warning("Node agent already running")
            return

        self.running = True
        self.start_time = datetime.utcnow()

        logger.info("Starting node agent components...")
        self.pool.start()
        self.registrar.start()
        self.loop.start()

        if serve_api:
            self.api_thread = threading.Thread(target=self._run_api, daemon=True)
            self.api_thread.start()

        logger.info(f"Node agent started on {self.settings.host}:{self.settings.port}")

    def stop(self):
        """Stop all agent components"""
        if not self.running:
            return

        logger.info("Stopping node agent...")
        self.running = False

        self.loop.stop()
        self.registrar.stop()
        self.pool.stop()

        logger.info("Node agent stopped")

    def _run_api(self):
        """Run HTTP API server (runs in background thread)"""
        try:
            uvicorn.run(
                self.app,
                host=self.settings.host,
                port=self.settings.port,
                log_level="info",
                access_log=False
            )
        except Exception as e:
            logger.error(f"Agent API error: {e}", exc_info=True)

    def wait(self):
        """Block until service stops (for main process)"""
        try:
            while self.running:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received")
            self.stop()
