"""
Silence trimming for finished recordings

Two detectors run per chunk: WebRTC VAD rejects obvious silence cheaply,
and only the chunks it lets through are scored by Silero. Leading and
trailing chunks without speech are cut before inference.
"""

import logging
from typing import List

import numpy as np
import torch
import webrtcvad

from whisp_away.config import VADConfig

logger = logging.getLogger(__name__)

# Silero scores exactly 512 samples per call at 16 kHz
CHUNK_SIZE = 512
# 30 ms at 16 kHz, one of the frame lengths WebRTC accepts
WEBRTC_FRAME_SIZE = 480


def _fit(samples: np.ndarray, size: int) -> np.ndarray:
    if len(samples) >= size:
        return samples[:size]
    return np.pad(samples, (0, size - len(samples)))


class VoiceActivityDetector:
    """
    WebRTC pre-filter plus Silero verification

    Silero is loaded through torch.hub on construction, which downloads the
    model the first time.
    """

    def __init__(
        self,
        webrtc_sensitivity: int = 3,
        silero_sensitivity: float = 0.5,
        silero_use_onnx: bool = True,
        sample_rate: int = 16000,
    ):
        """
        Args:
            webrtc_sensitivity: WebRTC aggressiveness, 0-3
            silero_sensitivity: Minimum Silero speech probability, 0.0-1.0
            silero_use_onnx: Run Silero through ONNX runtime
            sample_rate: Sample rate of the audio to be trimmed
        """
        self.silero_sensitivity = silero_sensitivity
        self.sample_rate = sample_rate

        self._webrtc = webrtcvad.Vad(webrtc_sensitivity)
        logger.info(f"Loading Silero VAD (threshold={silero_sensitivity}, onnx={silero_use_onnx})")
        self._silero, _ = torch.hub.load(
            repo_or_dir="snakers4/silero-vad",
            model="silero_vad",
            force_reload=False,
            verbose=False,
            onnx=silero_use_onnx,
            trust_repo=True,
        )

    @classmethod
    def from_config(cls, config: VADConfig, sample_rate: int = 16000) -> "VoiceActivityDetector":
        return cls(
            webrtc_sensitivity=config.webrtc_sensitivity,
            silero_sensitivity=config.silero_sensitivity,
            silero_use_onnx=config.silero_use_onnx,
            sample_rate=sample_rate,
        )

    def _webrtc_hears_speech(self, chunk: np.ndarray) -> bool:
        pcm = (np.clip(chunk, -1.0, 1.0) * 32767).astype(np.int16)
        try:
            return self._webrtc.is_speech(_fit(pcm, WEBRTC_FRAME_SIZE).tobytes(), self.sample_rate)
        except Exception as e:
            # Unsupported rate or frame: let Silero decide
            logger.debug(f"WebRTC VAD rejected frame: {e}")
            return True

    def _silero_probability(self, chunk: np.ndarray) -> float:
        tensor = torch.from_numpy(np.ascontiguousarray(_fit(chunk, CHUNK_SIZE))).float()
        with torch.no_grad():
            return float(self._silero(tensor, self.sample_rate).item())

    def is_speech(self, chunk: np.ndarray) -> bool:
        """True if a chunk of float32 samples contains speech"""
        if not self._webrtc_hears_speech(chunk):
            return False
        return self._silero_probability(chunk) > self.silero_sensitivity

    def speech_chunks(self, audio: np.ndarray) -> List[int]:
        """Indexes of the CHUNK_SIZE chunks of audio that contain speech"""
        found = [
            index
            for index, offset in enumerate(range(0, len(audio), CHUNK_SIZE))
            if self.is_speech(audio[offset:offset + CHUNK_SIZE])
        ]
        if hasattr(self._silero, "reset_states"):
            self._silero.reset_states()
        return found

    def trim(self, audio: np.ndarray, padding_chunks: int = 4) -> np.ndarray:
        """
        Cut leading and trailing silence

        Args:
            audio: Mono float32 samples
            padding_chunks: Chunks of context kept on each side of the speech

        Returns:
            The trimmed samples, empty when nothing sounded like speech
        """
        if len(audio) == 0:
            return audio

        found = self.speech_chunks(audio)
        if not found:
            logger.info("VAD found no speech in the recording")
            return audio[:0]

        start = max(found[0] - padding_chunks, 0) * CHUNK_SIZE
        end = (found[-1] + padding_chunks + 1) * CHUNK_SIZE
        logger.debug(f"VAD kept samples {start}:{min(end, len(audio))} of {len(audio)}")
        return audio[start:end]
