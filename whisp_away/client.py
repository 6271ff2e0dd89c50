"""
whisp-away client

Sends one command to the daemon and maps the reply to an exit code.
Without a reachable daemon the command runs standalone.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, TextIO

from whisp_away.config import Config
from whisp_away.errors import (
    EXIT_ERROR,
    EXIT_SUCCESS,
    AlreadyRecordingError,
    NotRecordingError,
    exit_code_for,
)
from whisp_away.ipc import (
    create_client_socket,
    is_ok,
    make_request,
    recv_message,
    send_message,
)
from whisp_away.locks import InstanceLock, RecordingMarker
from whisp_away.output import DELIVERED_NONE
from whisp_away.standalone import run_standalone

logger = logging.getLogger(__name__)

STATUS_TIMEOUT = 2.0


def send_command(
    socket_path: Path,
    command: str,
    overrides: Optional[Mapping[str, Any]] = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Send one command and wait for its reply

    Args:
        socket_path: Daemon control socket
        command: start, stop, toggle, status or shutdown
        overrides: Per-call BackendConfig and output overrides
        timeout: Socket timeout in seconds (None waits for inference)

    Returns:
        The reply dictionary

    Raises:
        ConnectionError: If no daemon is listening, or it hung up without replying
    """
    sock = create_client_socket(socket_path, timeout=timeout)
    try:
        send_message(sock, make_request(command, overrides))
        response = recv_message(sock)
    finally:
        sock.close()

    if response is None:
        raise ConnectionError("daemon closed the connection without replying")
    return response


def run_command(
    config: Config,
    command: str,
    overrides: Optional[Mapping[str, Any]] = None,
    out: TextIO = sys.stdout,
) -> int:
    """
    Execute a client command

    Args:
        config: Configuration
        command: start, stop, toggle, status or shutdown
        overrides: Explicit CLI flags only
        out: Where transcripts and status go

    Returns:
        Exit code
    """
    socket_path = config.get_socket_path()
    timeout = STATUS_TIMEOUT if command == "status" else None

    try:
        response = send_command(socket_path, command, overrides, timeout=timeout)
    except ConnectionError as e:
        if command == "shutdown":
            logger.error(f"Cannot connect to daemon: {e}")
            return EXIT_ERROR
        logger.info(f"Daemon not reachable ({e}), running standalone")
        response = run_standalone(config, command, overrides)
    except (OSError, ValueError) as e:
        logger.error(f"Communication error: {e}")
        return EXIT_ERROR
    else:
        if _standalone_capture_pending(config, command, response):
            logger.info("Finishing a recording started without the daemon")
            response = run_standalone(config, "stop", overrides)

    return report(command, response, out)


def report(command: str, response: Mapping[str, Any], out: TextIO = sys.stdout) -> int:
    """Print what the user needs from a reply and return its exit code"""
    if not is_ok(response):
        code = response.get("code", "failure")
        logger.error(f"Error: {response.get('message', code)}")
        return exit_code_for(code)

    if command == "status":
        _print_status(response, out)
        return EXIT_SUCCESS

    if response.get("action") == "stop":
        text = response.get("text", "")
        if response.get("error"):
            logger.warning(response["error"])
        if text and response.get("delivered") == DELIVERED_NONE:
            # Neither sink took the text
            print(text, file=out)
        elif not text:
            logger.info("No speech detected")
    return EXIT_SUCCESS


def _print_status(status: Mapping[str, Any], out: TextIO) -> None:
    if status.get("daemon", True):
        print(f"daemon: running (pid {status.get('pid')})", file=out)
    else:
        print("daemon: not running", file=out)
    print(f"state: {status.get('state')}", file=out)
    print(f"backend: {status.get('backend')}", file=out)
    print(f"model: {status.get('model')}", file=out)
    print(f"acceleration: {status.get('acceleration')}", file=out)
    for entry in status.get("resident") or []:
        print(f"resident: {entry['backend']}:{entry['model']} ({entry['acceleration']})", file=out)


def _standalone_capture_pending(config: Config, command: str, response: Mapping[str, Any]) -> bool:
    """
    True when the daemon refused stop/toggle because the live capture
    belongs to a standalone ``start``, not to the daemon
    """
    if command not in ("stop", "toggle") or is_ok(response):
        return False
    if response.get("code") not in (NotRecordingError.code, AlreadyRecordingError.code):
        return False

    record = RecordingMarker(config.get_marker_path()).read()
    if record is None:
        return False
    daemon = InstanceLock(config.get_pid_path()).read()
    if daemon is not None and daemon.owner_pid == record.pid:
        return False
    return record.alive or record.audio_path.exists()
