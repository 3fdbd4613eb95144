"""Tests for the newline-delimited JSON framing used on plugin sockets."""

import socket

import pytest

from shared.socket_protocol import FrameTooLargeError, SocketProtocol, read_json_line, send_json_line


@pytest.fixture
def pair():
    left, right = socket.socketpair()
    yield left, right
    left.close()
    right.close()


def test_frame_round_trip(pair):
    left, right = pair

    send_json_line(left, {"action": "identify", "protocol_version": 1})

    assert read_json_line(right) == {"action": "identify", "protocol_version": 1}


def test_oversized_frame_rejected(pair):
    left, right = pair
    left.sendall(b'{"pad": "' + b"x" * 2048 + b'"}\n')

    with pytest.raises(FrameTooLargeError):
        read_json_line(right, max_bytes=256)


def test_non_object_frame_rejected(pair):
    left, right = pair
    left.sendall(b"[1, 2, 3]\n")

    with pytest.raises(ValueError):
        read_json_line(right)


def test_closed_peer_raises_connection_error(pair):
    left, right = pair
    left.close()

    with pytest.raises(ConnectionError):
        read_json_line(right)


def test_protocol_receive_returns_none_on_close(pair):
    left, right = pair
    left.close()

    assert SocketProtocol().receive_frame(right) is None
