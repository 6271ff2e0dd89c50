"""
Speech inference using faster-whisper

The engine behind both backend variants: loaded once, then called for
every recording until it is unloaded.
"""

import logging
from typing import Optional, Tuple

import numpy as np
from faster_whisper import WhisperModel

from whisp_away.errors import FatalConfigError

logger = logging.getLogger(__name__)

# acceleration hint -> (device, compute_type)
ACCELERATION_PROFILES = {
    "auto": ("auto", "default"),
    "unknown": ("auto", "default"),
    "cpu": ("cpu", "int8"),
    "cuda": ("cuda", "float16"),
}


def resolve_acceleration(hint: str) -> Tuple[str, str]:
    """
    Map an acceleration hint to a faster-whisper device and compute type

    Raises:
        FatalConfigError: If faster-whisper cannot run with this acceleration
    """
    profile = ACCELERATION_PROFILES.get(hint.lower())
    if profile is None:
        supported = ", ".join(sorted(ACCELERATION_PROFILES))
        raise FatalConfigError(
            f"acceleration '{hint}' is not supported by faster-whisper (supported: {supported})"
        )
    return profile


class WhisperTranscriber:
    """
    faster-whisper engine

    Implements the engine contract used by the backend dispatcher:
    ``load()``, ``infer(samples) -> str``, ``unload()``.
    """

    def __init__(
        self,
        model_name: str,
        acceleration: str = "auto",
        language: Optional[str] = None,
        beam_size: int = 5,
    ):
        self.model_name = model_name
        self.acceleration = acceleration
        self.language = language
        self.beam_size = beam_size
        self.device, self.compute_type = resolve_acceleration(acceleration)
        self._model: Optional[WhisperModel] = None

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def load(self) -> None:
        """Load the Whisper model (downloads it on first use)"""
        if self._model is not None:
            return
        logger.info(f"Loading Whisper model: {self.model_name} ({self.device}/{self.compute_type})")
        try:
            self._model = WhisperModel(
                self.model_name,
                device=self.device,
                compute_type=self.compute_type,
            )
        except Exception as e:
            raise FatalConfigError(f"cannot load model '{self.model_name}': {e}") from e
        logger.info(f"Whisper model loaded: {self.model_name}")

    def infer(self, audio: np.ndarray) -> str:
        """Transcribe mono 16 kHz float32 samples"""
        if self._model is None:
            self.load()

        segments, info = self._model.transcribe(
            audio,
            language=self.language,
            beam_size=self.beam_size,
        )

        text_parts = []
        for segment in segments:
            text_parts.append(segment.text.strip())

        full_text = " ".join(text_parts).strip()
        logger.debug(f"Transcribed {len(audio)} samples: {len(full_text.split())} words")
        return full_text

    def unload(self) -> None:
        if self._model is None:
            return
        self._model = None
        logger.info(f"Whisper model unloaded: {self.model_name}")
