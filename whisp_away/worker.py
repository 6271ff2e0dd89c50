"""
Inference worker process

Run by the daemon for the external-process backend:

    python -m whisp_away.worker --fd N --model base.en --acceleration auto

Serves framed JSON requests on the inherited socket:
``ping`` (answered once the model is loaded), ``transcribe``
(``audio_path``, ``vad``) and ``shutdown``.
"""

import argparse
import json
import logging
import socket
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from whisp_away.config import VADConfig
from whisp_away.errors import FatalConfigError, WhispAwayError
from whisp_away.ipc import make_error_response, make_ok_response, recv_message, send_message
from whisp_away.recorder import AudioClip

logger = logging.getLogger(__name__)


def serve(
    sock: socket.socket,
    engine: Any,
    vad_factory: Optional[Callable[[], Any]] = None,
    load_error: Optional[str] = None,
) -> None:
    """
    Answer requests until shutdown or until the daemon closes the socket

    Args:
        sock: Socket inherited from the daemon
        engine: Object with load/infer/unload
        vad_factory: Builds the silence trimmer on first use
        load_error: Reason the engine could not even be constructed
    """
    if load_error is None:
        try:
            engine.load()
        except Exception as e:
            load_error = str(e)
            logger.error(f"Model load failed: {e}")

    detector: List[Any] = []

    try:
        while True:
            request = recv_message(sock)
            if request is None:
                break

            command = request.get("command")
            if command == "shutdown":
                break

            if load_error is not None:
                send_message(sock, make_error_response(FatalConfigError.code, load_error))
                continue

            if command == "ping":
                send_message(sock, make_ok_response())
            elif command == "transcribe":
                send_message(sock, _transcribe(engine, request, vad_factory, detector))
            else:
                send_message(sock, make_error_response("bad-request", f"unknown command: {command}"))
    finally:
        if engine is not None and load_error is None:
            engine.unload()
        sock.close()


def _transcribe(
    engine: Any,
    request: Dict[str, Any],
    vad_factory: Optional[Callable[[], Any]],
    detector: List[Any],
) -> Dict[str, Any]:
    audio_path = request.get("audio_path")
    if not audio_path:
        return make_error_response("bad-request", "missing 'audio_path' field")

    try:
        clip = AudioClip.from_wav(Path(audio_path), owned=False)
        samples = clip.samples()
        if request.get("vad") and vad_factory is not None:
            if not detector:
                detector.append(vad_factory())
            samples = detector[0].trim(samples)
        text = engine.infer(samples) if len(samples) else ""
    except WhispAwayError as e:
        return make_error_response(e.code, str(e))
    except Exception as e:
        logger.error(f"Transcription error: {e}")
        return make_error_response("backend-failure", str(e))

    return make_ok_response(text=text)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="whisp-away-worker")
    parser.add_argument("--fd", type=int, required=True, help="Inherited socket file descriptor")
    parser.add_argument("--model", required=True)
    parser.add_argument("--acceleration", default="auto")
    parser.add_argument("--language")
    parser.add_argument("--beam-size", type=int, default=5)
    parser.add_argument("--vad-config", default="{}", help="VAD settings as JSON")
    parser.add_argument("--log-level", default="WARNING")
    return parser


def main(args: Optional[List[str]] = None) -> int:
    parsed = create_parser().parse_args(args)

    logging.basicConfig(
        level=getattr(logging, parsed.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s worker %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("faster_whisper").setLevel(logging.WARNING)

    from whisp_away.transcriber import WhisperTranscriber

    sock = socket.socket(fileno=parsed.fd)
    vad_config = VADConfig(**json.loads(parsed.vad_config))

    def vad_factory() -> Any:
        from whisp_away.vad import VoiceActivityDetector
        return VoiceActivityDetector.from_config(vad_config)

    engine = None
    load_error = None
    try:
        engine = WhisperTranscriber(
            parsed.model,
            acceleration=parsed.acceleration,
            language=parsed.language,
            beam_size=parsed.beam_size,
        )
    except FatalConfigError as e:
        load_error = str(e)

    serve(sock, engine, vad_factory=vad_factory, load_error=load_error)
    return 0


if __name__ == "__main__":
    sys.exit(main())
