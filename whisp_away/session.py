"""
Session controller

The one recording/transcription state machine of a daemon (or of a
standalone invocation):

    idle --start--> recording --stop--> transcribing --success--> idle
                                                    --failure--> error --> idle

All state changes happen under a single lock. Inference runs outside it,
so ``status`` stays answerable while transcribing.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple

from whisp_away.backends import BackendDispatcher, TranscriptionResult
from whisp_away.config import BackendConfig, Config, validate_overrides
from whisp_away.errors import (
    AlreadyRecordingError,
    BackendError,
    BusyError,
    CaptureError,
    NotRecordingError,
    ShuttingDownError,
    UserError,
    WhispAwayError,
)
from whisp_away.locks import RecordingMarker, new_audio_path
from whisp_away.notify import Notifier
from whisp_away.output import DELIVERED_CLIPBOARD, DELIVERED_NONE, OutputDispatcher
from whisp_away.recorder import AudioClip

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    ERROR = "error"


# recording -> idle only when finishing a capture fails
TRANSITIONS = {
    SessionState.IDLE: {SessionState.RECORDING},
    SessionState.RECORDING: {SessionState.TRANSCRIBING, SessionState.IDLE},
    SessionState.TRANSCRIBING: {SessionState.IDLE, SessionState.ERROR},
    SessionState.ERROR: {SessionState.IDLE},
}

StateCallback = Callable[[SessionState, SessionState], None]


class CapturePipeline(Protocol):
    def start(self, audio_path: Path, on_timeout: Optional[Callable[[], None]] = None) -> int: ...

    def stop(self) -> AudioClip: ...

    def abort(self) -> None: ...


@dataclass
class Session:
    """The sole mutable state of a daemon"""
    state: SessionState = SessionState.IDLE
    started_at: Optional[float] = None
    audio_handle: Optional[Path] = None
    backend_config: Optional[BackendConfig] = None
    overrides: Dict[str, Any] = field(default_factory=dict)

    def reset(self) -> None:
        self.started_at = None
        self.audio_handle = None
        self.backend_config = None
        self.overrides = {}


@dataclass
class _Job:
    clip: AudioClip
    backend_config: BackendConfig
    use_clipboard: bool


class SessionController:
    """Drives recording, inference and output for one Session"""

    def __init__(
        self,
        config: Config,
        pipeline: CapturePipeline,
        dispatcher: BackendDispatcher,
        output: OutputDispatcher,
        marker: RecordingMarker,
        notifier: Optional[Notifier] = None,
        on_state_change: Optional[StateCallback] = None,
    ):
        self.config = config
        self._pipeline = pipeline
        self._dispatcher = dispatcher
        self._output = output
        self._marker = marker
        self._notifier = notifier or Notifier(enabled=False)
        self._on_state_change = on_state_change

        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self.session = Session()
        self._shutting_down = False
        self.last_result: Optional[TranscriptionResult] = None

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    # Commands

    def start(self, overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        idle -> recording

        Raises:
            AlreadyRecordingError: If not idle, or another process is recording
            ShuttingDownError: After shutdown was requested
            CaptureError: If the audio source cannot be opened
        """
        overrides = validate_overrides(overrides)
        with self._lock:
            status = self._start_locked(overrides)
        self._notify_recording(status)
        return status

    def stop(self, overrides: Optional[Mapping[str, Any]] = None) -> TranscriptionResult:
        """
        recording -> transcribing -> idle

        Blocks until the text has been delivered.

        Raises:
            NotRecordingError: If not recording
            BackendError: If inference failed (the session is idle again)
        """
        overrides = validate_overrides(overrides)
        with self._lock:
            job = self._begin_transcription(overrides)
        return self._finish_transcription(job)

    def toggle(self, overrides: Optional[Mapping[str, Any]] = None) -> Tuple[str, Any]:
        """
        start when idle, stop when recording

        Returns:
            ("start", status) or ("stop", TranscriptionResult)

        Raises:
            BusyError: While transcribing
        """
        overrides = validate_overrides(overrides)
        with self._lock:
            state = self.session.state
            if state is SessionState.TRANSCRIBING:
                raise BusyError()
            if state is SessionState.IDLE:
                status = self._start_locked(overrides)
            else:
                job = self._begin_transcription(overrides)

        if state is SessionState.IDLE:
            self._notify_recording(status)
            return "start", status
        return "stop", self._finish_transcription(job)

    def transcribe_file(
        self,
        audio_file: Path,
        overrides: Optional[Mapping[str, Any]] = None,
        replace_capture: bool = True,
    ) -> TranscriptionResult:
        """
        Feed an existing WAV file to the backend instead of the microphone

        When idle the session passes through recording without capturing;
        when recording, the capture is discarded in favour of the file.

        Args:
            audio_file: WAV file to transcribe, never deleted
            overrides: Per-request overrides
            replace_capture: False to refuse unless idle, as ``start`` does

        Raises:
            AlreadyRecordingError: If not idle and replace_capture is False
            BusyError: While transcribing
        """
        overrides = validate_overrides(overrides)
        overrides["audio_file"] = str(audio_file)
        if not Path(audio_file).is_file():
            raise UserError(f"audio file not found: {audio_file}")

        with self._lock:
            if self.session.state is SessionState.IDLE:
                self._check_can_start()
                self._marker.create(os.getpid(), new_audio_path(self.config.get_runtime_dir()), overrides=overrides)
                self.session.started_at = time.time()
                self.session.audio_handle = Path(audio_file)
                self.session.backend_config = self._default_backend().with_overrides(overrides)
                self._transition(SessionState.RECORDING)
            elif not replace_capture:
                raise AlreadyRecordingError()
            elif self.session.state is SessionState.TRANSCRIBING:
                raise BusyError()
            job = self._begin_transcription(overrides)
        return self._finish_transcription(job)

    def status(self) -> Dict[str, Any]:
        """Read-only snapshot of the session"""
        with self._lock:
            return self._status_locked()

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Refuse further starts and wait for an in-flight transcription

        A capture still recording is stopped and transcribed first, as if
        ``stop`` had been sent.

        Returns:
            False if the timeout expired before the session drained
        """
        job = None
        with self._lock:
            self._shutting_down = True
            if self.session.state is SessionState.RECORDING:
                logger.info("Shutdown while recording, transcribing the capture")
                try:
                    job = self._begin_transcription({})
                except WhispAwayError as e:
                    logger.error(f"Could not stop recording on shutdown: {e}")

        if job is not None:
            try:
                self._finish_transcription(job)
            except WhispAwayError as e:
                logger.error(f"Transcription on shutdown failed: {e}")

        with self._lock:
            drained = self._changed.wait_for(
                lambda: self.session.state is not SessionState.TRANSCRIBING,
                timeout,
            )
        if not drained:
            logger.warning("Shutdown timed out waiting for transcription")
        return drained

    def resume(self) -> bool:
        """
        Adopt a capture recorded by another process (standalone runs)

        Returns:
            True if the session is now recording
        """
        record = self._marker.read()
        if record is None:
            return False

        if not record.alive and not record.audio_path.exists():
            logger.info(f"Discarding stale recording marker (pid {record.pid})")
            self._marker.clear()
            return False

        with self._lock:
            if self.session.state is not SessionState.IDLE:
                return False
            self._pipeline.resume(record.pid, record.audio_path)
            self.session.started_at = record.started_at
            self.session.audio_handle = record.audio_path
            self.session.overrides = dict(record.overrides)
            self.session.backend_config = self._default_backend().with_overrides(record.overrides)
            self._transition(SessionState.RECORDING)
        return True

    def dispatch(self, command: str, overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute a control command and return its reply payload

        An ``audio_file`` override turns start, stop and toggle into a
        transcription of that file.
        """
        overrides = validate_overrides(overrides)

        if command == "status":
            return self.status()

        if command == "shutdown":
            return {"drained": self.shutdown(timeout=self.config.transcription.inference_timeout)}

        if overrides.get("audio_file"):
            result = self.transcribe_file(
                Path(overrides["audio_file"]), overrides, replace_capture=command != "start"
            )
            return {"action": "stop", **result.to_payload()}

        if command == "start":
            return {"action": "start", **self.start(overrides)}

        if command == "stop":
            return {"action": "stop", **self.stop(overrides).to_payload()}

        if command == "toggle":
            action, outcome = self.toggle(overrides)
            payload = outcome if action == "start" else outcome.to_payload()
            return {"action": action, **payload}

        raise UserError(f"unknown command: {command}")

    def preload(self) -> BackendConfig:
        """Make the default model resident ahead of the first recording"""
        backend = self._default_backend()
        self._dispatcher.preload(backend)
        return backend

    def close(self) -> None:
        self._dispatcher.close()

    # Internals

    def _default_backend(self) -> BackendConfig:
        return self.config.backend_config()

    def _check_can_start(self) -> None:
        if self._shutting_down:
            raise ShuttingDownError()
        if self.session.state is not SessionState.IDLE:
            raise AlreadyRecordingError()

    def _start_locked(self, overrides: Dict[str, Any]) -> Dict[str, Any]:
        """idle -> recording; called with the lock held, returns the new status"""
        overrides.pop("audio_file", None)
        self._check_can_start()
        backend_config = self._default_backend().with_overrides(overrides)
        audio_path = new_audio_path(self.config.get_runtime_dir())
        self._marker.create(os.getpid(), audio_path, overrides=overrides)

        try:
            capture_pid = self._pipeline.start(audio_path, on_timeout=self._on_capture_timeout)
        except WhispAwayError:
            self._marker.clear()
            raise
        except Exception as e:
            self._marker.clear()
            raise CaptureError(f"cannot start recording: {e}") from e

        if capture_pid != os.getpid():
            self._marker.update_pid(capture_pid)

        self.session.started_at = time.time()
        self.session.audio_handle = audio_path
        self.session.backend_config = backend_config
        self.session.overrides = overrides
        self._transition(SessionState.RECORDING)
        return self._status_locked()

    def _notify_recording(self, status: Mapping[str, Any]) -> None:
        self._notifier.send(
            f"🎙️ Recording...\nBackend: {status['backend']} "
            f"({status['acceleration']}) | Model: {status['model']}",
            timeout_ms=30000,
        )

    def _begin_transcription(self, overrides: Dict[str, Any]) -> _Job:
        """recording -> transcribing; called with the lock held"""
        if self.session.state is not SessionState.RECORDING:
            raise NotRecordingError()

        merged = {**self.session.overrides, **overrides}
        backend_config = self._default_backend().with_overrides(merged)
        use_clipboard = bool(merged.get("clipboard", self.config.output.clipboard))

        try:
            audio_file = merged.get("audio_file")
            if audio_file:
                self._pipeline.abort()
                clip = AudioClip.from_wav(Path(audio_file), owned=False)
            else:
                clip = self._pipeline.stop()
        except Exception as e:
            logger.error(f"Could not finish recording: {e}")
            self._marker.clear()
            self.session.reset()
            self._transition(SessionState.IDLE)
            if isinstance(e, WhispAwayError):
                raise
            raise CaptureError(f"could not finish recording: {e}") from e

        clip = replace(clip, vad_enabled=backend_config.vad_enabled)
        self.session.audio_handle = clip.path
        self.session.backend_config = backend_config
        self._transition(SessionState.TRANSCRIBING)
        return _Job(clip=clip, backend_config=backend_config, use_clipboard=use_clipboard)

    def _finish_transcription(self, job: _Job) -> TranscriptionResult:
        """Run inference and output outside the lock, then return to idle"""
        cfg = job.backend_config
        self._notifier.send(
            f"⏳ Transcribing...\nBackend: {cfg.backend_kind.value} ({cfg.acceleration_hint}) | Model: {cfg.model_name}"
        )

        try:
            result = self._dispatcher.infer(job.clip, cfg)
        except Exception as e:
            logger.error(f"Transcription failed ({cfg.describe()}): {e}")
            self._notifier.send(f"❌ Transcription failed\n{e}", timeout_ms=3000)
            with self._lock:
                self._transition(SessionState.ERROR)
                self._cleanup(job)
                self.last_result = TranscriptionResult(
                    text="", duration=job.clip.duration, backend_used=cfg.describe(), error=str(e)
                )
                self._transition(SessionState.IDLE)
            if isinstance(e, WhispAwayError):
                raise
            raise BackendError(f"inference failed: {e}") from e

        result.delivered = self._output.deliver(result.text, job.use_clipboard)
        if not result.text:
            self._notifier.send("⚠️ No speech detected")
        elif result.delivered == DELIVERED_CLIPBOARD:
            self._notifier.send("✅ Copied to clipboard", timeout_ms=1000)
        elif result.delivered != DELIVERED_NONE:
            self._notifier.send("✅ Transcribed", timeout_ms=1000)

        with self._lock:
            self._cleanup(job)
            self.last_result = result
            self._transition(SessionState.IDLE)
        return result

    def _cleanup(self, job: _Job) -> None:
        job.clip.discard()
        self._marker.clear()
        self.session.reset()

    def _on_capture_timeout(self) -> None:
        # Runs on the capture thread, which stop() joins
        threading.Thread(target=self._stop_after_timeout, name="implicit-stop", daemon=True).start()

    def _stop_after_timeout(self) -> None:
        try:
            self.stop()
        except NotRecordingError:
            pass
        except WhispAwayError as e:
            logger.error(f"Implicit stop failed: {e}")

    def _status_locked(self) -> Dict[str, Any]:
        session = self.session
        cfg = session.backend_config or self._default_backend()
        return {
            "state": session.state.value,
            "started_at": session.started_at,
            "backend": cfg.backend_kind.value,
            "model": cfg.model_name,
            "acceleration": cfg.acceleration_hint,
            "vad": cfg.vad_enabled,
            "clipboard": bool(session.overrides.get("clipboard", self.config.output.clipboard)),
            "resident": self._dispatcher.resident(),
            "shutting_down": self._shutting_down,
            "pid": os.getpid(),
        }

    def _transition(self, to_state: SessionState) -> None:
        from_state = self.session.state
        if to_state not in TRANSITIONS[from_state]:
            raise RuntimeError(f"illegal session transition {from_state.value} -> {to_state.value}")
        self.session.state = to_state
        logger.debug(f"Session {from_state.value} -> {to_state.value}")
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
        self._changed.notify_all()
