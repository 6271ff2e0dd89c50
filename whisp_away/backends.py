"""
Backend dispatcher

Routes a finished recording to one of two inference variants:

- in-process: the engine lives in the daemon; one inference at a time per
  loaded model
- external-process: a supervised worker process owns the engine and is
  reached over a socketpair using the control-protocol framing

Loaded models (in-process engines and live workers alike) stay resident in
a fixed-capacity LRU cache keyed by (backend, model, acceleration).
"""

import json
import logging
import socket
import subprocess
import sys
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import numpy as np

from whisp_away.config import BackendConfig, BackendKind, Config
from whisp_away.errors import (
    BackendError,
    FatalConfigError,
    TransientBackendError,
    WhispAwayError,
)
from whisp_away.ipc import recv_message, send_message
from whisp_away.recorder import AudioClip
from whisp_away.transcriber import WhisperTranscriber

logger = logging.getLogger(__name__)

CacheKey = Tuple[BackendKind, str, str]


class Engine(Protocol):
    """Capability contract for a speech inference engine"""

    def load(self) -> None: ...

    def infer(self, audio: np.ndarray) -> str: ...

    def unload(self) -> None: ...


class ResidentHandle(Protocol):
    def load(self) -> None: ...

    def infer(self, clip: AudioClip) -> str: ...

    def unload(self) -> None: ...


EngineFactory = Callable[[BackendConfig], Engine]
WorkerCommandFactory = Callable[[BackendConfig], List[str]]
AudioPreparer = Callable[[AudioClip], np.ndarray]


@dataclass
class TranscriptionResult:
    """Outcome of one transcription"""
    text: str
    duration: float
    backend_used: str
    error: Optional[str] = None
    delivered: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        if payload["error"] is None:
            del payload["error"]
        return payload


@dataclass
class ResidentModel:
    key: CacheKey
    handle: ResidentHandle
    last_used_at: float


class ResidentModelCache:
    """
    Fixed-capacity LRU of loaded models

    A hit reuses the resident handle; a miss at capacity unloads the
    least-recently-used entry before loading the new one.
    """

    def __init__(self, capacity: int = 2):
        if capacity < 1:
            raise ValueError("resident model capacity must be at least 1")
        self.capacity = capacity
        self._entries: "OrderedDict[CacheKey, ResidentModel]" = OrderedDict()
        self._lock = threading.RLock()
        self._snapshot: Tuple[CacheKey, ...] = ()
        self.loads = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> List[CacheKey]:
        """Resident keys, least recently used first; never waits on a load"""
        return list(self._snapshot)

    def get_or_load(self, key: CacheKey, loader: Callable[[], ResidentHandle]) -> ResidentHandle:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
                entry.last_used_at = time.time()
                self._snapshot = tuple(self._entries)
                logger.debug(f"Resident model hit: {key[1]} ({key[0].value})")
                return entry.handle

            while len(self._entries) >= self.capacity:
                self._evict_oldest()

            handle = loader()
            self._entries[key] = ResidentModel(key=key, handle=handle, last_used_at=time.time())
            self.loads += 1
            self._snapshot = tuple(self._entries)
            return handle

    def discard(self, key: CacheKey) -> None:
        with self._lock:
            entry = self._entries.pop(key, None)
            self._snapshot = tuple(self._entries)
        if entry is not None:
            _unload_quietly(entry)

    def clear(self) -> None:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            self._snapshot = ()
        for entry in entries:
            _unload_quietly(entry)

    def _evict_oldest(self) -> None:
        key, entry = self._entries.popitem(last=False)
        self._snapshot = tuple(self._entries)
        self.evictions += 1
        logger.info(f"Evicting resident model {key[1]} ({key[0].value}, {key[2]})")
        _unload_quietly(entry)


def _unload_quietly(entry: ResidentModel) -> None:
    try:
        entry.handle.unload()
    except Exception as e:
        logger.warning(f"Error unloading {entry.key[1]}: {e}")


class InProcessModel:
    """An engine loaded inside the daemon; inference calls are serialized"""

    def __init__(self, engine: Engine, prepare: AudioPreparer):
        self.engine = engine
        self._prepare = prepare
        self._lock = threading.Lock()

    def load(self) -> None:
        self.engine.load()

    def infer(self, clip: AudioClip) -> str:
        with self._lock:
            try:
                samples = self._prepare(clip)
                if len(samples) == 0:
                    return ""
                return self.engine.infer(samples)
            except WhispAwayError:
                raise
            except Exception as e:
                raise BackendError(f"inference failed: {e}") from e

    def unload(self) -> None:
        with self._lock:
            self.engine.unload()


class WorkerSupervisor:
    """
    Supervised inference worker process

    Owns the child's lifecycle: spawn, health-check (``ping``), a bounded
    wait per call, one restart on crash or timeout, and termination on
    unload.
    """

    def __init__(
        self,
        command: List[str],
        startup_timeout: float = 300.0,
        call_timeout: float = 120.0,
    ):
        self.command = list(command)
        self.startup_timeout = startup_timeout
        self.call_timeout = call_timeout
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._sock: Optional[socket.socket] = None
        self.spawn_count = 0

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def load(self) -> None:
        with self._lock:
            self._ensure_running()

    def infer(self, clip: AudioClip) -> str:
        request = {
            "command": "transcribe",
            "audio_path": str(clip.path),
            "vad": clip.vad_enabled,
        }
        with self._lock:
            last_error: Optional[TransientBackendError] = None
            for attempt in (1, 2):
                try:
                    self._ensure_running()
                    response = self._call(request, self.call_timeout)
                except TransientBackendError as e:
                    last_error = e
                    logger.warning(f"Worker call failed (attempt {attempt}/2): {e}")
                    self._terminate()
                    continue
                return str(self._unwrap(response).get("text", ""))

        raise TransientBackendError(f"worker failed after restart: {last_error}")

    def unload(self) -> None:
        with self._lock:
            self._terminate(graceful=True)

    def _ensure_running(self) -> None:
        if self.alive and self._sock is not None:
            return
        self._terminate()
        self._spawn()
        try:
            self._unwrap(self._call({"command": "ping"}, self.startup_timeout))
        except WhispAwayError:
            self._terminate()
            raise

    def _spawn(self) -> None:
        parent_sock, child_sock = socket.socketpair()
        fd = child_sock.fileno()
        command = self.command + ["--fd", str(fd)]
        try:
            self._process = subprocess.Popen(command, pass_fds=(fd,))
        except OSError as e:
            parent_sock.close()
            raise FatalConfigError(f"cannot start worker {command[0]}: {e}") from e
        finally:
            child_sock.close()
        self._sock = parent_sock
        self.spawn_count += 1
        logger.info(f"Worker started (pid {self._process.pid})")

    def _call(self, message: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        if self._sock is None:
            raise TransientBackendError("inference worker is not running")
        self._sock.settimeout(timeout)
        try:
            send_message(self._sock, message)
            response = recv_message(self._sock)
        except socket.timeout:
            raise TransientBackendError(f"worker did not answer within {timeout:.0f}s")
        except (OSError, ValueError) as e:
            raise TransientBackendError(f"worker connection failed: {e}") from e

        if response is None:
            code = self._process.poll() if self._process is not None else None
            raise TransientBackendError(f"worker exited (code {code})")
        return response

    @staticmethod
    def _unwrap(response: Dict[str, Any]) -> Dict[str, Any]:
        if response.get("status") == "ok":
            return response
        message = response.get("message", "unknown worker error")
        if response.get("code") == FatalConfigError.code:
            raise FatalConfigError(message)
        raise BackendError(message)

    def _terminate(self, graceful: bool = False) -> None:
        sock, process = self._sock, self._process
        self._sock, self._process = None, None

        if sock is not None:
            if graceful and process is not None and process.poll() is None:
                try:
                    sock.settimeout(1.0)
                    send_message(sock, {"command": "shutdown"})
                except OSError:
                    pass
            sock.close()

        if process is None:
            return
        if graceful:
            try:
                process.wait(timeout=2.0)
            except subprocess.TimeoutExpired:
                pass
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=2.0)
            except subprocess.TimeoutExpired:
                logger.warning(f"Worker {process.pid} ignored SIGTERM, killing")
                process.kill()
                process.wait()
        logger.info(f"Worker stopped (pid {process.pid})")


def default_engine_factory(config: Config) -> EngineFactory:
    def create(backend_config: BackendConfig) -> Engine:
        return WhisperTranscriber(
            backend_config.model_name,
            acceleration=backend_config.acceleration_hint,
            language=config.transcription.language,
            beam_size=config.transcription.beam_size,
        )
    return create


def default_worker_command(config: Config) -> WorkerCommandFactory:
    def build(backend_config: BackendConfig) -> List[str]:
        command = [
            sys.executable, "-m", "whisp_away.worker",
            "--model", backend_config.model_name,
            "--acceleration", backend_config.acceleration_hint,
            "--beam-size", str(config.transcription.beam_size),
            "--vad-config", json.dumps(asdict(config.vad)),
            "--log-level", config.log_level,
        ]
        if config.transcription.language:
            command += ["--language", config.transcription.language]
        return command
    return build


def make_audio_preparer(vad_factory: Callable[[], Any]) -> AudioPreparer:
    """Load a clip's samples, trimming silence when the clip asks for it"""
    detector = []

    def prepare(clip: AudioClip) -> np.ndarray:
        samples = clip.samples()
        if not clip.vad_enabled:
            return samples
        if not detector:
            detector.append(vad_factory())
        return detector[0].trim(samples)

    return prepare


class BackendDispatcher:
    """
    infer(audio, BackendConfig) -> TranscriptionResult

    The only owner of resident models; nothing else touches them.
    """

    def __init__(
        self,
        config: Config,
        engine_factory: Optional[EngineFactory] = None,
        worker_command: Optional[WorkerCommandFactory] = None,
        vad_factory: Optional[Callable[[], Any]] = None,
        capacity: Optional[int] = None,
    ):
        self.config = config
        self._engine_factory = engine_factory or default_engine_factory(config)
        self._worker_command = worker_command or default_worker_command(config)
        self._prepare = make_audio_preparer(vad_factory or (lambda: _default_vad(config)))
        self.cache = ResidentModelCache(capacity or config.server.resident_models)

    def infer(self, clip: AudioClip, backend_config: BackendConfig) -> TranscriptionResult:
        """
        Transcribe a clip with the model backend_config names

        Raises:
            BackendError: TransientBackendError or FatalConfigError on failure
        """
        backend_used = backend_config.describe()
        if clip.is_empty:
            logger.info("Empty recording, skipping inference")
            return TranscriptionResult(text="", duration=0.0, backend_used=backend_used)

        model = self.cache.get_or_load(backend_config.key, lambda: self._load(backend_config))

        started = time.monotonic()
        text = model.infer(clip).strip()
        elapsed = time.monotonic() - started
        logger.info(f"Transcribed {clip.duration:.1f}s of audio in {elapsed:.2f}s ({backend_used})")
        return TranscriptionResult(text=text, duration=clip.duration, backend_used=backend_used)

    def preload(self, backend_config: BackendConfig) -> None:
        """Make a model resident ahead of the first recording"""
        self.cache.get_or_load(backend_config.key, lambda: self._load(backend_config))

    def resident(self) -> List[Dict[str, str]]:
        return [
            {"backend": kind.value, "model": model, "acceleration": accel}
            for kind, model, accel in self.cache.keys()
        ]

    def close(self) -> None:
        """Unload every resident model and stop every worker"""
        self.cache.clear()

    def _load(self, backend_config: BackendConfig) -> ResidentHandle:
        handle: ResidentHandle
        if backend_config.backend_kind is BackendKind.IN_PROCESS:
            handle = InProcessModel(self._engine_factory(backend_config), self._prepare)
        elif backend_config.backend_kind is BackendKind.EXTERNAL_PROCESS:
            handle = WorkerSupervisor(
                self._worker_command(backend_config),
                startup_timeout=self.config.transcription.worker_startup_timeout,
                call_timeout=self.config.transcription.inference_timeout,
            )
        else:
            raise FatalConfigError(f"unsupported backend: {backend_config.backend_kind}")

        logger.info(f"Loading {backend_config.describe()} ({backend_config.acceleration_hint})")
        handle.load()
        return handle


def _default_vad(config: Config) -> Any:
    # torch is only imported when trimming is actually requested
    from whisp_away.vad import VoiceActivityDetector

    return VoiceActivityDetector.from_config(config.vad, config.audio.sample_rate)
