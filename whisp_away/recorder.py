"""
Recording pipeline

Captures mono 16 kHz 16-bit PCM from an audio source into an owned
buffer between Start and Stop, then hands the finished recording over as
an AudioClip backed by a WAV file.
"""

import logging
import os
import threading
import time
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Protocol

import numpy as np

from whisp_away.config import AudioConfig
from whisp_away.errors import CaptureError

logger = logging.getLogger(__name__)

SAMPLE_WIDTH = 2  # 16-bit PCM
INT16_SCALE = 32768.0
# Whisper models expect 16 kHz input
MODEL_SAMPLE_RATE = 16000


class AudioSource(Protocol):
    """Capability contract for raw audio input"""

    def open(self, sample_rate: int, channels: int, block_size: int) -> None: ...

    def read_frame(self) -> bytes: ...

    def close(self) -> None: ...


class SoundDeviceSource:
    """Microphone input through PortAudio (sounddevice)"""

    def __init__(self, device: Optional[int] = None):
        self.device = device
        self._stream = None
        self._block_size = 0

    def open(self, sample_rate: int, channels: int, block_size: int) -> None:
        # PortAudio is loaded on import; keep it out of processes that never record
        import sounddevice as sd

        try:
            self._stream = sd.RawInputStream(
                device=self.device,
                samplerate=sample_rate,
                channels=channels,
                dtype="int16",
                blocksize=block_size,
            )
            self._stream.start()
        except Exception as e:
            self._stream = None
            raise CaptureError(f"cannot open microphone: {e}") from e
        self._block_size = block_size
        logger.info(f"Audio stream started (device: {self.device}, {sample_rate} Hz)")

    def read_frame(self) -> bytes:
        data, overflowed = self._stream.read(self._block_size)
        if overflowed:
            logger.warning("Audio input overflow, frames dropped")
        return bytes(data)

    def close(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.stop()
        finally:
            self._stream.close()
            self._stream = None


@dataclass
class AudioClip:
    """A finished recording; whoever holds it owns the file"""
    path: Path
    sample_rate: int = 16000
    channels: int = 1
    frame_count: int = 0
    vad_enabled: bool = False
    owned: bool = True

    @property
    def duration(self) -> float:
        if not self.sample_rate:
            return 0.0
        return self.frame_count / float(self.sample_rate)

    @property
    def is_empty(self) -> bool:
        return self.frame_count == 0

    @classmethod
    def from_wav(cls, path: Path, owned: bool = True) -> "AudioClip":
        """Describe an existing WAV file without loading its samples"""
        try:
            with wave.open(str(path), "rb") as wf:
                return cls(
                    path=path,
                    sample_rate=wf.getframerate(),
                    channels=wf.getnchannels(),
                    frame_count=wf.getnframes(),
                    owned=owned,
                )
        except (wave.Error, EOFError) as e:
            raise CaptureError(f"not a PCM WAV file: {path}: {e}") from e

    def samples(self, target_rate: int = MODEL_SAMPLE_RATE) -> np.ndarray:
        """Mono float32 samples in [-1.0, 1.0] at target_rate"""
        with wave.open(str(self.path), "rb") as wf:
            if wf.getsampwidth() != SAMPLE_WIDTH:
                raise CaptureError(f"expected 16-bit PCM, got {wf.getsampwidth() * 8}-bit: {self.path}")
            raw = wf.readframes(wf.getnframes())
            channels = wf.getnchannels()
            rate = wf.getframerate()

        audio = np.frombuffer(raw, dtype=np.int16).astype(np.float32) / INT16_SCALE
        if channels > 1:
            audio = audio.reshape(-1, channels).mean(axis=1)
        if rate != target_rate and len(audio) > 0:
            # Linear resampling to the model rate
            count = int(round(len(audio) * target_rate / rate))
            positions = np.linspace(0, len(audio) - 1, count)
            audio = np.interp(positions, np.arange(len(audio)), audio).astype(np.float32)
        return audio

    def discard(self) -> None:
        """Delete the backing file if this clip owns it"""
        if not self.owned:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


def write_wav(path: Path, pcm: bytes, sample_rate: int, channels: int) -> None:
    """Write 16-bit PCM to path, atomically replacing any previous file"""
    path.parent.mkdir(parents=True, exist_ok=True)
    part_path = path.with_suffix(".part")
    with wave.open(str(part_path), "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    os.replace(part_path, path)


SourceFactory = Callable[[], AudioSource]


class RecordingPipeline:
    """
    Start/Stop audio capture into an in-memory buffer

    A capture thread reads frames from the source until Stop or until the
    maximum duration is reached. Hitting the maximum ends the capture and
    calls ``on_timeout``; it is an implicit Stop, not an error.
    """

    def __init__(
        self,
        audio_config: AudioConfig,
        source_factory: Optional[SourceFactory] = None,
        max_duration: float = 300.0,
    ):
        self.audio_config = audio_config
        self.max_duration = max_duration
        self._source_factory = source_factory or (lambda: SoundDeviceSource(audio_config.mic_device))

        self._lock = threading.Lock()
        self._source: Optional[AudioSource] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._chunks: List[bytes] = []
        self._frame_count = 0
        self._audio_path: Optional[Path] = None
        self._on_timeout: Optional[Callable[[], None]] = None
        self._error: Optional[BaseException] = None
        self.timed_out = False

    @property
    def owner_pid(self) -> int:
        return os.getpid()

    @property
    def is_capturing(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def has_capture(self) -> bool:
        return self._audio_path is not None

    def start(self, audio_path: Path, on_timeout: Optional[Callable[[], None]] = None) -> int:
        """
        Open the source and begin capturing

        Returns:
            Pid of the process that performs the capture

        Raises:
            CaptureError: If the audio source cannot be opened
        """
        with self._lock:
            if self._audio_path is not None:
                raise CaptureError("capture already running")

            source = self._source_factory()
            cfg = self.audio_config
            source.open(cfg.sample_rate, cfg.channels, cfg.block_size)

            self._source = source
            self._chunks = []
            self._frame_count = 0
            self._error = None
            self.timed_out = False
            self._audio_path = audio_path
            self._on_timeout = on_timeout
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._capture_worker,
                name="capture",
                daemon=True,
            )
            self._thread.start()

        logger.info(f"Recording started -> {audio_path}")
        return self.owner_pid

    def stop(self) -> AudioClip:
        """
        Flush and close the stream and hand the recording over

        After this call the pipeline holds no reference to the audio.
        """
        with self._lock:
            if self._audio_path is None:
                raise CaptureError("no capture running")
            self._finish_capture()

            audio_path = self._audio_path
            pcm = b"".join(self._chunks)
            frame_count = self._frame_count
            self._reset()

        cfg = self.audio_config
        write_wav(audio_path, pcm, cfg.sample_rate, cfg.channels)
        clip = AudioClip(
            path=audio_path,
            sample_rate=cfg.sample_rate,
            channels=cfg.channels,
            frame_count=frame_count,
        )
        logger.info(f"Recording stopped ({clip.duration:.2f}s)")
        return clip

    def abort(self) -> None:
        """Stop capturing and drop the buffer"""
        with self._lock:
            if self._audio_path is None:
                return
            self._finish_capture()
            self._reset()
        logger.info("Recording discarded")

    def _finish_capture(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
        if self._source is not None:
            try:
                self._source.close()
            except Exception as e:
                logger.warning(f"Error closing audio source: {e}")
        if self._error is not None:
            logger.error(f"Capture ended early: {self._error}")

    def _reset(self) -> None:
        self._source = None
        self._thread = None
        self._chunks = []
        self._frame_count = 0
        self._audio_path = None
        self._on_timeout = None

    def _capture_worker(self) -> None:
        """Capture thread - reads frames until stopped or the limit is reached"""
        bytes_per_frame = SAMPLE_WIDTH * self.audio_config.channels
        max_frames = int(self.max_duration * self.audio_config.sample_rate)
        source = self._source
        started = time.monotonic()

        try:
            while not self._stop_event.is_set():
                data = source.read_frame()
                if not data:
                    continue
                self._chunks.append(data)
                self._frame_count += len(data) // bytes_per_frame

                if max_frames and self._frame_count >= max_frames:
                    self.timed_out = True
                    break
        except Exception as e:
            self._error = e
            return

        if self.timed_out:
            elapsed = time.monotonic() - started
            logger.warning(f"Maximum recording duration reached ({elapsed:.1f}s), stopping")
            callback = self._on_timeout
            if callback is not None:
                callback()
