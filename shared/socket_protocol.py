from __future__ import annotations

import json
import socket
from typing import Any

DEFAULT_MAX_FRAME_BYTES = 64 * 1024


class FrameTooLargeError(ValueError):
    pass


def send_json_line(sock: socket.socket, payload: dict[str, Any]) -> None:
    body = (json.dumps(payload) + "\n").encode("utf-8")
    sock.sendall(body)


def read_json_line(sock: socket.socket, max_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> dict[str, Any]:
    data = bytearray()
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            break
        data.extend(chunk)
        if b"\n" in chunk:
            break
        if len(data) > max_bytes:
            raise FrameTooLargeError(f"Frame exceeds {max_bytes} bytes")

    if not data:
        raise ConnectionError("No data received")

    line = data.split(b"\n", 1)[0]
    if len(line) > max_bytes:
        raise FrameTooLargeError(f"Frame exceeds {max_bytes} bytes")
    payload = json.loads(line.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Frame is not a JSON object")
    return payload


class SocketProtocol:
    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES):
        self.max_frame_bytes = max_frame_bytes

    def send_frame(self, sock: socket.socket, payload: dict[str, Any]) -> None:
        send_json_line(sock, payload)

    def receive_frame(self, sock: socket.socket) -> dict[str, Any] | None:
        try:
            return read_json_line(sock, self.max_frame_bytes)
        except ConnectionError:
            return None
