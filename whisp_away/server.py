"""
whisp-away daemon

Long-lived background process that:
- Holds the single Session and its controller
- Keeps loaded models resident between recordings
- Handles client commands via Unix socket (one request per connection)
"""

import logging
import signal
import socket
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from whisp_away.backends import BackendDispatcher
from whisp_away.config import Config, write_daemon_state
from whisp_away.errors import WhispAwayError
from whisp_away.ipc import (
    COMMANDS,
    create_server_socket,
    make_error_response,
    make_ok_response,
    recv_message,
    send_message,
)
from whisp_away.locks import InstanceLock, RecordingMarker, purge_orphaned_recordings
from whisp_away.notify import Notifier
from whisp_away.output import OutputDispatcher
from whisp_away.recorder import RecordingPipeline
from whisp_away.session import SessionController

logger = logging.getLogger(__name__)


def create_controller(config: Config) -> SessionController:
    """Wire the daemon's Session Controller to the real collaborators"""
    return SessionController(
        config,
        pipeline=RecordingPipeline(config.audio, max_duration=config.server.max_recording_seconds),
        dispatcher=BackendDispatcher(config),
        output=OutputDispatcher(),
        marker=RecordingMarker(config.get_marker_path()),
        notifier=Notifier(enabled=config.output.notifications),
    )


class Server:
    """
    whisp-away daemon

    Manages:
    - The instance lock and the control socket
    - The Session Controller
    - Client connections via Unix socket
    """

    def __init__(
        self,
        config: Config,
        verbose: bool = False,
        controller: Optional[SessionController] = None,
    ):
        """
        Initialize server

        Args:
            config: Daemon configuration
            verbose: Enable verbose logging
            controller: Session Controller (default: wired to the real devices)
        """
        self.config = config
        self.verbose = verbose
        self.controller = controller or create_controller(config)
        self._instance_lock = InstanceLock(config.get_pid_path())
        self._running = False
        self._server_socket: Optional[socket.socket] = None
        self._stopped = threading.Event()

    @property
    def running(self) -> bool:
        return self._running

    def run(self) -> None:
        """Run the server (blocking)"""
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        self.start()
        threading.Thread(target=self._preload, name="preload", daemon=True).start()
        self.serve_forever()

    def start(self) -> None:
        """
        Acquire the instance lock and bind the control socket

        Raises:
            LockHeldError: If another daemon is alive
            OSError: If the socket cannot be bound
        """
        self._instance_lock.acquire()
        try:
            kept = self._purge_stale_recording()
            purge_orphaned_recordings(
                self.config.get_runtime_dir(),
                self.config.server.orphan_max_age_seconds,
                keep=kept,
            )

            socket_path = self.config.get_socket_path()
            self._server_socket = create_server_socket(socket_path)
            self._server_socket.listen(5)
            self._server_socket.settimeout(1.0)  # Allow periodic shutdown check
            write_daemon_state(self.config)
        except Exception:
            self._close_socket()
            self._instance_lock.release()
            raise

        self._running = True
        self._stopped.clear()
        backend = self.config.backend_config()
        logger.info(f"Server listening on {socket_path} (default {backend.describe()}, {backend.acceleration_hint})")

    def serve_forever(self) -> None:
        """Accept connections until stopped, then clean up"""
        try:
            self._accept_connections()
        finally:
            self._cleanup()

    def stop(self) -> None:
        """Ask the accept loop to exit"""
        self._running = False

    def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)

    def _signal_handler(self, signum: int, frame) -> None:
        """Handle termination signals"""
        logger.info(f"Received signal {signum}, shutting down...")
        self._running = False

    def _preload(self) -> None:
        backend = self.config.backend_config()
        try:
            self.controller.preload()
            logger.info(f"Preloaded {backend.describe()}")
        except WhispAwayError as e:
            logger.error(f"Could not preload {backend.describe()}: {e}")

    def _purge_stale_recording(self) -> Optional[Path]:
        """
        Remove a recording marker left by a dead process, with its audio

        A recent capture is kept so the next ``stop`` can still transcribe it.

        Returns:
            Audio path of a kept capture, None otherwise
        """
        marker = RecordingMarker(self.config.get_marker_path())
        record = marker.read()
        if record is None or record.alive:
            return None

        try:
            age = time.time() - record.audio_path.stat().st_mtime
        except FileNotFoundError:
            age = None
        if age is not None and age <= self.config.server.orphan_max_age_seconds:
            logger.info(f"Keeping recent capture of dead process {record.pid}: {record.audio_path.name}")
            return record.audio_path

        logger.warning(f"Removing recording marker of dead process {record.pid}")
        try:
            record.audio_path.unlink()
        except FileNotFoundError:
            pass
        marker.clear()
        return None

    def _accept_connections(self) -> None:
        """Accept and handle client connections"""
        while self._running:
            try:
                client_sock, _ = self._server_socket.accept()
                # Handle client in separate thread
                threading.Thread(
                    target=self._handle_client,
                    args=(client_sock,),
                    daemon=True,
                ).start()
            except socket.timeout:
                continue
            except OSError as e:
                if self._running:
                    logger.error(f"Accept error: {e}")
                break

    def _handle_client(self, client_sock: socket.socket) -> None:
        """Handle a single client connection"""
        command = None
        try:
            request = recv_message(client_sock)
            if not request:
                return

            command = request.get("command")
            response = self._process_request(request)
            send_message(client_sock, response)

        except (OSError, ValueError) as e:
            logger.error(f"Client handler error: {e}")
            try:
                send_message(client_sock, make_error_response("bad-request", str(e)))
            except OSError:
                pass
        finally:
            client_sock.close()
            if command == "shutdown" and self.controller.shutting_down:
                self._running = False

    def _process_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Execute one command against the Session Controller"""
        command = request.get("command")
        if not command:
            return make_error_response("bad-request", "missing 'command' field")
        if command not in COMMANDS:
            return make_error_response("bad-request", f"unknown command: {command}")

        overrides = request.get("overrides") or {}
        logger.debug(f"Command {command} {overrides}")

        try:
            return make_ok_response(**self.controller.dispatch(command, overrides))
        except WhispAwayError as e:
            logger.info(f"{command} rejected: {e.code}: {e}")
            return make_error_response(e.code, str(e))
        except Exception as e:
            logger.exception(f"{command} failed")
            return make_error_response("failure", str(e))

    def _close_socket(self) -> None:
        if self._server_socket is not None:
            try:
                self._server_socket.close()
            except OSError:
                pass
            self._server_socket = None

    def _cleanup(self) -> None:
        """Cleanup resources"""
        logger.info("Cleaning up...")
        self._running = False

        self._close_socket()

        # Drain before unloading models
        self.controller.shutdown(timeout=self.config.transcription.inference_timeout)
        self.controller.close()

        for path in (self.config.get_socket_path(), self.config.get_state_path()):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

        self._instance_lock.release()
        self._stopped.set()
        logger.info("Server stopped")


def run_server(config: Config, verbose: bool = False) -> None:
    """
    Run the whisp-away daemon

    Args:
        config: Daemon configuration
        verbose: Enable verbose logging
    """
    server = Server(config, verbose=verbose)
    server.run()
