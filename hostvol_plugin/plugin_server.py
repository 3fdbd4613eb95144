"""
Plugin Socket Server

AF_UNIX socket server answering the node agent's registration protocol.

Protocol: Newline-delimited JSON (from shared/socket_protocol.py)
- {"action": "identify", "protocol_version": 1}
    -> {"backend_id": ..., "capabilities": [...], "protocol_version": 1}
- {"action": "heartbeat"}
    -> {"status": "ok"}
"""

import os
import socket
import threading
import logging
from typing import Dict, Iterable, Optional

from shared.plugin_socket_client import PROTOCOL_VERSION
from shared.socket_protocol import DEFAULT_MAX_FRAME_BYTES, FrameTooLargeError, SocketProtocol

logger = logging.getLogger(__name__)


class PluginSocketServer:
    """
    Reference plugin backend.
    Accept loop runs in a background thread; each client gets its own thread.
    """

    def __init__(
        self,
        registration_dir: str,
        backend_id: str,
        capabilities: Iterable[str] = (),
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ):
        """
        Initialize plugin socket server.

        Args:
            registration_dir: Directory the node agent watches
            backend_id: Identifier reported in the identify response
            capabilities: Capability tokens reported in the identify response
            max_frame_bytes: Upper bound for one request frame
        """
        self.registration_dir = registration_dir
        self.backend_id = backend_id
        self.capabilities = list(capabilities)
        self.socket_path = os.path.join(registration_dir, f"{backend_id}.sock")

        self.healthy = True
        self.requests_served = 0

        self.server_socket: Optional[socket.socket] = None
        self.running = False
        self.accept_thread: Optional[threading.Thread] = None
        self.protocol = SocketProtocol(max_frame_bytes)
        self._lock = threading.Lock()

        logger.info(f"Plugin server initialized: {backend_id} at {self.socket_path}")

    def start(self):
        """Bind the registration socket and start accepting"""
        os.makedirs(self.registration_dir, exist_ok=True)
        if os.path.exists(self.socket_path):
            # Stale socket from a previous run
            os.unlink(self.socket_path)

        self.server_socket = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.server_socket.bind(self.socket_path)
        self.server_socket.listen(5)
        self.server_socket.settimeout(0.5)
        self.running = True

        self.accept_thread = threading.Thread(target=self._accept_loop, daemon=True, name=f"plugin-{self.backend_id}")
        self.accept_thread.start()
        logger.info(f"Plugin server {self.backend_id} listening on {self.socket_path}")

    def stop(self):
        """Stop serving and remove the socket so the agent deregisters immediately"""
        self.running = False
        if self.server_socket:
            self.server_socket.close()
            self.server_socket = None
        if self.accept_thread and self.accept_thread.is_alive():
            self.accept_thread.join(timeout=2)
        try:
            os.unlink(self.socket_path)
        except FileNotFoundError:
            pass
        logger.info(f"Plugin server {self.backend_id} stopped")

    def set_healthy(self, healthy: bool):
        """Toggle heartbeat answers; an unhealthy backend reports status 'unhealthy'"""
        self.healthy = healthy

    def _accept_loop(self):
        server = self.server_socket
        while self.running:
            try:
                client_socket, _ = server.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error(f"Error accepting connection: {e}")
                break

            client_thread = threading.Thread(target=self._handle_client, args=(client_socket,), daemon=True)
            client_thread.start()

    def _handle_client(self, client_socket: socket.socket):
        """Handle a single agent connection"""
        try:
            client_socket.settimeout(5.0)
            while True:
                try:
                    frame = self.protocol.receive_frame(client_socket)
                except FrameTooLargeError as e:
                    logger.warning(f"Dropping oversized request: {e}")
                    break
                if frame is None:
                    break  # Connection closed

                self.protocol.send_frame(client_socket, self._process_request(frame))
        except (OSError, ValueError) as e:
            logger.error(f"Error handling agent connection: {e}")
        finally:
            client_socket.close()

    def _process_request(self, request: Dict) -> Dict:
        with self._lock:
            self.requests_served += 1

        action = request.get("action")
        if action == "identify":
            logger.info(f"Identify request (protocol_version={request.get('protocol_version')})")
            return {
                "backend_id": self.backend_id,
                "capabilities": self.capabilities,
                "protocol_version": PROTOCOL_VERSION,
            }
        elif action == "heartbeat":
            return {"status": "ok" if self.healthy else "unhealthy"}
        else:
            return {"ok": False, "error": f"Unknown action: {action}"}
