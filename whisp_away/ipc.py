"""
Control protocol framing

Every message is a 4-byte big-endian length followed by that many bytes
of UTF-8 JSON holding one object. A connection carries one request and
one reply. The daemon's inference workers speak the same framing over a
socketpair.
"""

import json
import logging
import os
import socket
import struct
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

LENGTH_PREFIX = struct.Struct(">I")
MAX_MESSAGE_SIZE = 1024 * 1024

COMMANDS = ("start", "stop", "toggle", "status", "shutdown")


def create_server_socket(socket_path: Path) -> socket.socket:
    """
    Bind the daemon's control socket

    A leftover socket file from an earlier daemon is replaced. The caller
    decides the backlog and accept timeout.

    Args:
        socket_path: Filesystem path of the socket

    Returns:
        Bound, not yet listening socket (mode 0600)
    """
    socket_path.parent.mkdir(parents=True, exist_ok=True)
    if socket_path.exists() or socket_path.is_symlink():
        logger.debug(f"Replacing stale socket file {socket_path}")
        socket_path.unlink()

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(str(socket_path))
        os.chmod(socket_path, 0o600)
    except OSError:
        sock.close()
        raise
    return sock


def create_client_socket(socket_path: Path, timeout: Optional[float] = None) -> socket.socket:
    """
    Connect to a running daemon

    Args:
        socket_path: Filesystem path of the socket
        timeout: Per-operation timeout in seconds; None blocks

    Raises:
        ConnectionError: If no daemon is listening on socket_path
    """
    if not socket_path.exists():
        raise ConnectionError(f"no daemon socket at {socket_path}")

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(str(socket_path))
    except OSError as e:
        sock.close()
        raise ConnectionError(f"daemon not listening on {socket_path}: {e}") from e
    return sock


def encode_message(message: Mapping[str, Any]) -> bytes:
    """Serialize one message including its length prefix"""
    body = json.dumps(message, separators=(",", ":")).encode("utf-8")
    if len(body) > MAX_MESSAGE_SIZE:
        raise ValueError(f"message of {len(body)} bytes exceeds {MAX_MESSAGE_SIZE}")
    return LENGTH_PREFIX.pack(len(body)) + body


def decode_message(body: bytes) -> Dict[str, Any]:
    """
    Parse a message body (without prefix)

    Raises:
        ValueError: If the body is not a UTF-8 JSON object
    """
    message = json.loads(body.decode("utf-8"))
    if not isinstance(message, dict):
        raise ValueError(f"expected a JSON object, got {type(message).__name__}")
    return message


def send_message(sock: socket.socket, message: Mapping[str, Any]) -> None:
    sock.sendall(encode_message(message))


def recv_message(sock: socket.socket) -> Optional[Dict[str, Any]]:
    """
    Read one message

    Returns:
        The message, or None if the peer closed the connection first

    Raises:
        ValueError: On an oversized or malformed message
    """
    prefix = _read_exactly(sock, LENGTH_PREFIX.size)
    if prefix is None:
        return None

    (length,) = LENGTH_PREFIX.unpack(prefix)
    if length > MAX_MESSAGE_SIZE:
        raise ValueError(f"announced message of {length} bytes exceeds {MAX_MESSAGE_SIZE}")

    body = _read_exactly(sock, length)
    if body is None:
        return None
    return decode_message(body)


def _read_exactly(sock: socket.socket, size: int) -> Optional[bytes]:
    buffer = bytearray()
    while len(buffer) < size:
        chunk = sock.recv(size - len(buffer))
        if not chunk:
            return None
        buffer.extend(chunk)
    return bytes(buffer)


# Request/Response helpers

def make_request(command: str, overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    request: Dict[str, Any] = {"command": command}
    if overrides:
        request["overrides"] = dict(overrides)
    return request


def make_ok_response(**payload: Any) -> Dict[str, Any]:
    return {"status": "ok", **payload}


def make_error_response(code: str, message: str) -> Dict[str, Any]:
    return {"status": "error", "code": code, "message": message}


def is_ok(response: Mapping[str, Any]) -> bool:
    return response.get("status") == "ok"
