"""
Standalone runs

When no daemon answers, a client invocation runs the Session Controller
itself for the lifetime of one command. Because the invocation exits right
after ``start``, the microphone is held by a detached
``whisp-away capture`` process; the recording marker points the later
``stop`` invocation at that process and its WAV file.
"""

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from whisp_away.backends import BackendDispatcher
from whisp_away.config import AudioConfig, Config
from whisp_away.errors import CaptureError, WhispAwayError
from whisp_away.ipc import make_error_response, make_ok_response
from whisp_away.locks import InstanceLock, RecordingMarker, pid_alive, purge_orphaned_recordings
from whisp_away.notify import Notifier
from whisp_away.output import OutputDispatcher
from whisp_away.recorder import AudioClip, RecordingPipeline
from whisp_away.session import SessionController

logger = logging.getLogger(__name__)

WAV_HEADER_SIZE = 44

CaptureCommand = Callable[[Path], List[str]]


def default_capture_command(config: Config) -> CaptureCommand:
    def build(audio_path: Path) -> List[str]:
        command = [
            sys.executable, "-m", "whisp_away", "capture",
            "--output", str(audio_path),
            "--max-duration", str(config.server.max_recording_seconds),
            "--sample-rate", str(config.audio.sample_rate),
        ]
        if config.audio.mic_device is not None:
            command += ["--device", str(config.audio.mic_device)]
        return command
    return build


class DetachedCapture:
    """
    Capture pipeline backed by a separate process

    Stop escalates SIGINT -> SIGTERM -> SIGKILL and then reads the WAV the
    process left behind.
    """

    def __init__(
        self,
        config: Config,
        command: Optional[CaptureCommand] = None,
        stop_timeout: float = 3.0,
        startup_grace: float = 0.2,
    ):
        self.config = config
        self._command = command or default_capture_command(config)
        self.stop_timeout = stop_timeout
        self.startup_grace = startup_grace
        self._process: Optional[subprocess.Popen] = None
        self._pid: Optional[int] = None
        self._audio_path: Optional[Path] = None

    @property
    def pid(self) -> Optional[int]:
        return self._pid

    def start(self, audio_path: Path, on_timeout: Optional[Callable[[], None]] = None) -> int:
        """
        Spawn the capture process

        The process enforces the maximum duration itself, so on_timeout is
        never called.

        Raises:
            CaptureError: If the process cannot be started or exits at once
        """
        command = self._command(audio_path)
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise CaptureError(f"cannot start capture process: {e}") from e

        # Device errors make the process exit almost immediately
        try:
            code = process.wait(timeout=self.startup_grace)
        except subprocess.TimeoutExpired:
            code = None
        if code is not None and code != 0:
            _unlink(audio_path)
            raise CaptureError(f"capture process exited with code {code}")

        self._process = process
        self._pid = process.pid
        self._audio_path = audio_path
        logger.info(f"Capture process started (pid {process.pid}) -> {audio_path}")
        return process.pid

    def resume(self, pid: int, audio_path: Path) -> None:
        """Take over a capture started by an earlier invocation"""
        self._process = None
        self._pid = pid
        self._audio_path = audio_path

    def stop(self) -> AudioClip:
        if self._audio_path is None:
            raise CaptureError("no capture running")
        pid, audio_path = self._pid, self._audio_path
        self._reset()

        if pid and pid != os.getpid():
            self._signal_until_exit(pid)

        if not audio_path.exists() or audio_path.stat().st_size <= WAV_HEADER_SIZE:
            logger.warning(f"Capture process left no audio at {audio_path}")
            cfg = self.config.audio
            return AudioClip(path=audio_path, sample_rate=cfg.sample_rate, channels=cfg.channels)
        return AudioClip.from_wav(audio_path)

    def abort(self) -> None:
        if self._audio_path is None:
            return
        pid, audio_path = self._pid, self._audio_path
        self._reset()
        if pid and pid != os.getpid():
            self._signal_until_exit(pid)
        _unlink(audio_path)
        _unlink(audio_path.with_suffix(".part"))

    def _reset(self) -> None:
        self._pid = None
        self._audio_path = None

    def _signal_until_exit(self, pid: int) -> None:
        escalation = (
            (signal.SIGINT, self.stop_timeout),
            (signal.SIGTERM, 2.0),
            (signal.SIGKILL, 2.0),
        )
        for signum, wait in escalation:
            if self._exited(pid):
                break
            try:
                os.kill(pid, signum)
            except ProcessLookupError:
                break
            deadline = time.monotonic() + wait
            while time.monotonic() < deadline:
                if self._exited(pid):
                    break
                time.sleep(0.05)
            else:
                logger.warning(f"Capture process {pid} ignored {signal.Signals(signum).name}")
                continue
            break
        self._process = None

    def _exited(self, pid: int) -> bool:
        if self._process is not None and self._process.pid == pid:
            return self._process.poll() is not None
        try:
            reaped, _ = os.waitpid(pid, os.WNOHANG)
            if reaped == pid:
                return True
        except ChildProcessError:
            pass
        return not pid_alive(pid)


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def create_standalone_controller(
    config: Config,
    pipeline: Optional[DetachedCapture] = None,
    dispatcher: Optional[BackendDispatcher] = None,
    output: Optional[OutputDispatcher] = None,
) -> SessionController:
    """Session Controller for a single invocation; one model at most"""
    return SessionController(
        config,
        pipeline=pipeline or DetachedCapture(config),
        dispatcher=dispatcher or BackendDispatcher(config, capacity=1),
        output=output or OutputDispatcher(),
        marker=RecordingMarker(config.get_marker_path()),
        notifier=Notifier(enabled=config.output.notifications),
    )


def run_standalone(
    config: Config,
    command: str,
    overrides: Optional[Mapping[str, Any]] = None,
    controller: Optional[SessionController] = None,
) -> Dict[str, Any]:
    """
    Execute one command without a daemon

    Returns:
        A reply in the same shape the daemon sends
    """
    active = RecordingMarker(config.get_marker_path()).read()
    daemon = InstanceLock(config.get_pid_path()).read()
    if active is not None and daemon is not None and daemon.owner_pid == active.pid and daemon.alive:
        return make_error_response(
            WhispAwayError.code,
            f"daemon (pid {daemon.owner_pid}) owns the recording but is not answering",
        )

    controller = controller or create_standalone_controller(config)
    try:
        purge_orphaned_recordings(
            config.get_runtime_dir(),
            config.server.orphan_max_age_seconds,
            keep=active.audio_path if active else None,
        )
        controller.resume()
        payload = controller.dispatch(command, overrides)
    except WhispAwayError as e:
        return make_error_response(e.code, str(e))
    finally:
        controller.close()
    return make_ok_response(daemon=False, **payload)


def run_capture(
    output: Path,
    audio_config: AudioConfig,
    max_duration: float,
    pipeline: Optional[RecordingPipeline] = None,
) -> int:
    """
    Record to a WAV file until SIGINT/SIGTERM or the maximum duration

    Returns:
        Exit code
    """
    finished = threading.Event()

    def handle_signal(signum: int, frame) -> None:
        logger.debug(f"Capture received signal {signum}")
        finished.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    pipeline = pipeline or RecordingPipeline(audio_config, max_duration=max_duration)
    try:
        pipeline.start(output, on_timeout=finished.set)
    except CaptureError as e:
        logger.error(f"Cannot record: {e}")
        return 1

    while not finished.wait(0.1):
        pass

    clip = pipeline.stop()
    logger.info(f"Captured {clip.duration:.2f}s to {output}")
    return 0
