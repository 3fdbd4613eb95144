from __future__ import annotations

from dataclasses import dataclass
from typing import Any
import socket

from shared.socket_protocol import DEFAULT_MAX_FRAME_BYTES, read_json_line, send_json_line

PROTOCOL_VERSION = 1


@dataclass
class PluginSocketClient:
    socket_path: str
    timeout_seconds: float = 10.0
    max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES

    def request(self, payload: dict[str, Any]) -> dict[str, Any]:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout_seconds)
        try:
            sock.connect(self.socket_path)
            send_json_line(sock, payload)
            return read_json_line(sock, self.max_frame_bytes)
        finally:
            sock.close()

    def identify(self) -> dict[str, Any]:
        return self.request({"action": "identify", "protocol_version": PROTOCOL_VERSION})

    def heartbeat(self) -> dict[str, Any]:
        return self.request({"action": "heartbeat"})
