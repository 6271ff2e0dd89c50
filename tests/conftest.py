"""Shared fixtures: fake devices, engines and sinks, and a live daemon"""

import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
import pytest

from whisp_away.backends import BackendDispatcher
from whisp_away.config import BackendConfig, Config
from whisp_away.errors import CaptureError, InjectionError
from whisp_away.locks import RecordingMarker
from whisp_away.output import OutputDispatcher
from whisp_away.recorder import RecordingPipeline, write_wav
from whisp_away.server import Server
from whisp_away.session import SessionController

FRAME_BYTES = 2048


class FakeSource:
    """Audio source producing a constant signal"""

    def __init__(self, delay: float = 0.005, silent: bool = False, fail_open: bool = False):
        self.delay = delay
        self.silent = silent
        self.fail_open = fail_open
        self.opened = False
        self.closed = False

    def open(self, sample_rate: int, channels: int, block_size: int) -> None:
        if self.fail_open:
            raise CaptureError("no microphone")
        self.opened = True

    def read_frame(self) -> bytes:
        time.sleep(self.delay)
        if self.silent:
            return b""
        return b"\x10\x00" * (FRAME_BYTES // 2)

    def close(self) -> None:
        self.closed = True


class FakeEngine:
    """Inference engine with a canned answer"""

    def __init__(self, text: str = "hello world", delay: float = 0.0, error: Optional[Exception] = None):
        self.text = text
        self.delay = delay
        self.error = error
        self.loads = 0
        self.unloads = 0
        self.calls = 0

    def load(self) -> None:
        self.loads += 1

    def infer(self, audio: np.ndarray) -> str:
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.text

    def unload(self) -> None:
        self.unloads += 1


class PassthroughTrimmer:
    def trim(self, audio: np.ndarray) -> np.ndarray:
        return audio


class RecordingKeyboard:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.typed: List[str] = []

    def inject(self, text: str) -> None:
        if self.fail:
            raise InjectionError("no display")
        self.typed.append(text)


class RecordingClipboard:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.copied: List[str] = []

    def set_clipboard(self, text: str) -> None:
        if self.fail:
            raise InjectionError("no clipboard")
        self.copied.append(text)


class Harness:
    """A Session Controller wired to fakes, plus handles on the fakes"""

    def __init__(
        self,
        config: Config,
        engine: Optional[FakeEngine] = None,
        source: Optional[FakeSource] = None,
        keyboard: Optional[RecordingKeyboard] = None,
        clipboard: Optional[RecordingClipboard] = None,
        max_duration: float = 30.0,
        notifier=None,
    ):
        self.config = config
        self.engine = engine or FakeEngine()
        self.source = source or FakeSource()
        self.keyboard = keyboard or RecordingKeyboard()
        self.clipboard = clipboard or RecordingClipboard()
        self.transitions: List[tuple] = []
        self.engine_requests: List[BackendConfig] = []

        def engine_factory(backend_config: BackendConfig) -> FakeEngine:
            self.engine_requests.append(backend_config)
            return self.engine

        self.pipeline = RecordingPipeline(
            config.audio,
            source_factory=lambda: self.source,
            max_duration=max_duration,
        )
        self.dispatcher = BackendDispatcher(
            config,
            engine_factory=engine_factory,
            vad_factory=PassthroughTrimmer,
        )
        self.marker = RecordingMarker(config.get_marker_path())
        self.controller = SessionController(
            config,
            pipeline=self.pipeline,
            dispatcher=self.dispatcher,
            output=OutputDispatcher(keyboard=self.keyboard, clipboard=self.clipboard),
            marker=self.marker,
            notifier=notifier,
            on_state_change=lambda before, after: self.transitions.append((before, after)),
        )

    def record(self, overrides=None) -> dict:
        """Start and wait until some audio has been captured"""
        status = self.controller.start(overrides)
        wait_for(lambda: self.pipeline._frame_count > 0)
        return status


def make_config(runtime_dir: Path) -> Config:
    config = Config()
    config.server.runtime_dir = str(runtime_dir)
    config.output.notifications = False
    return config


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def runtime_dir():
    # Unix socket paths must stay short
    path = Path(tempfile.mkdtemp(prefix="wa-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def config(runtime_dir) -> Config:
    return make_config(runtime_dir)


@pytest.fixture
def harness(config) -> Harness:
    return Harness(config)


@pytest.fixture
def make_harness(config) -> Callable[..., Harness]:
    def build(**kwargs) -> Harness:
        return Harness(config, **kwargs)
    return build


@pytest.fixture
def wav_file(tmp_path) -> Path:
    """Half a second of 16 kHz mono audio"""
    path = tmp_path / "fixed.wav"
    samples = (np.sin(np.linspace(0, 440 * 2 * np.pi, 8000)) * 8000).astype(np.int16)
    write_wav(path, samples.tobytes(), 16000, 1)
    return path


def start_server(harness: Harness) -> Server:
    server = Server(harness.config, controller=harness.controller)
    server.start()
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


@pytest.fixture
def running_server(harness):
    server = start_server(harness)
    yield server
    server.stop()
    server.wait_stopped(10.0)
