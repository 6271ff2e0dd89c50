"""
whisp-away CLI

Entry point for the whisp-away command.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from whisp_away import __version__
from whisp_away.client import run_command
from whisp_away.config import AudioConfig, Config, config_as_dict, parse_bool
from whisp_away.errors import EXIT_ERROR, LockHeldError, WhispAwayError

logger = logging.getLogger(__name__)

CLIENT_COMMANDS = ("start", "stop", "toggle", "status", "shutdown")


def setup_logging(level: str = "INFO", verbose: bool = False) -> None:
    """Configure logging for long-running commands"""
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    format_str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    logging.basicConfig(
        level=resolved,
        format=format_str,
        stream=sys.stdout,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("faster_whisper").setLevel(logging.WARNING)
    logging.getLogger("torch").setLevel(logging.WARNING)


def setup_client_logging(level: str = "WARNING", verbose: bool = False) -> None:
    """Minimal logging for one-shot client commands"""
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.WARNING)
    logging.basicConfig(
        level=resolved,
        format="%(message)s",
        stream=sys.stderr,
    )


def bool_flag(value: str) -> bool:
    try:
        return parse_bool(value)
    except WhispAwayError as e:
        raise argparse.ArgumentTypeError(str(e))


def _add_override_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--model", help="Model name (e.g. base.en, small, medium.en)")
    parser.add_argument(
        "--backend",
        help="Inference backend: in-process or external-process",
    )
    parser.add_argument("--acceleration", help="Acceleration hint: auto, cpu or cuda")
    parser.add_argument(
        "--clipboard",
        type=bool_flag,
        metavar="{true|false}",
        help="Copy the text to the clipboard instead of typing it",
    )
    parser.add_argument(
        "--vad",
        type=bool_flag,
        metavar="{true|false}",
        help="Trim silence before transcription",
    )
    parser.add_argument(
        "--audio-file",
        type=Path,
        help="Transcribe this WAV file instead of recording",
    )


def _add_common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--socket-path",
        help="Control socket path (default: $XDG_RUNTIME_DIR/whisp-away/daemon.sock)",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        prog="whisp-away",
        description="Push-to-talk speech-to-text for the desktop",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"whisp-away {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to config file (default: $XDG_CONFIG_HOME/whisp-away/config.yml)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # daemon command
    daemon_parser = subparsers.add_parser(
        "daemon",
        help="Run the background daemon that keeps models loaded",
    )
    _add_common_flags(daemon_parser)
    daemon_parser.add_argument("--model", help="Default model")
    daemon_parser.add_argument("--backend", help="Default backend")
    daemon_parser.add_argument("--acceleration", help="Default acceleration hint")
    daemon_parser.add_argument("--clipboard", type=bool_flag, metavar="{true|false}")
    daemon_parser.add_argument("--vad", type=bool_flag, metavar="{true|false}")

    # tray command
    tray_parser = subparsers.add_parser(
        "tray",
        help="Show the status indicator in the system tray",
    )
    _add_common_flags(tray_parser)

    # client commands
    helps = {
        "start": "Start recording",
        "stop": "Stop recording and transcribe",
        "toggle": "Start or stop recording",
        "status": "Show the session state",
        "shutdown": "Finish any recording or transcription in progress, then stop the daemon",
    }
    for name in CLIENT_COMMANDS:
        command_parser = subparsers.add_parser(name, help=helps[name])
        _add_common_flags(command_parser)
        if name in ("start", "stop", "toggle"):
            _add_override_flags(command_parser)

    # capture command (used by standalone start)
    capture_parser = subparsers.add_parser(
        "capture",
        help=argparse.SUPPRESS,
    )
    _add_common_flags(capture_parser)
    capture_parser.add_argument("--output", type=Path, required=True)
    capture_parser.add_argument("--max-duration", type=float, default=300.0)
    capture_parser.add_argument("--sample-rate", type=int, default=16000)
    capture_parser.add_argument("--device", type=int)

    return parser


def collect_overrides(parsed: argparse.Namespace) -> Dict[str, Any]:
    """Explicitly given flags only; everything else is the daemon's choice"""
    overrides: Dict[str, Any] = {}
    for key in ("model", "backend", "acceleration", "clipboard", "vad"):
        value = getattr(parsed, key, None)
        if value is not None:
            overrides[key] = value
    audio_file = getattr(parsed, "audio_file", None)
    if audio_file is not None:
        overrides["audio_file"] = str(audio_file.resolve())
    return overrides


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = create_parser()
    try:
        parsed = parser.parse_args(args)
    except SystemExit as e:
        # Usage errors exit 1; 2 means already-recording
        return EXIT_ERROR if e.code else 0

    if not parsed.command:
        parser.print_help()
        return EXIT_ERROR

    # Load config
    config = Config.load(parsed.config, use_daemon_state=parsed.command != "daemon")
    if parsed.socket_path:
        config = config.with_overrides(socket_path=parsed.socket_path)

    try:
        if parsed.command == "daemon":
            config = config.with_overrides(
                model=parsed.model,
                backend=parsed.backend,
                acceleration=parsed.acceleration,
                clipboard=parsed.clipboard,
                vad=parsed.vad,
            )
            setup_logging(config.log_level, verbose=parsed.verbose)
            logger.debug(f"Configuration: {config_as_dict(config)}")
            return run_daemon(config, verbose=parsed.verbose)

        elif parsed.command == "tray":
            setup_logging(config.log_level, verbose=parsed.verbose)
            from whisp_away.tray import run_tray
            return run_tray(config)

        elif parsed.command == "capture":
            setup_client_logging(config.log_level, verbose=parsed.verbose)
            from whisp_away.standalone import run_capture
            audio_config = AudioConfig(
                sample_rate=parsed.sample_rate,
                channels=config.audio.channels,
                block_size=config.audio.block_size,
                mic_device=parsed.device,
            )
            return run_capture(parsed.output, audio_config, parsed.max_duration)

        else:
            setup_client_logging(config.log_level, verbose=parsed.verbose)
            return run_command(config, parsed.command, collect_overrides(parsed))

    except WhispAwayError as e:
        logger.error(f"Error: {e}")
        return e.exit_code


def run_daemon(config: Config, verbose: bool = False) -> int:
    from whisp_away.server import run_server

    try:
        run_server(config, verbose=verbose)
    except LockHeldError as e:
        logger.error(f"{e}")
        return EXIT_ERROR
    except OSError as e:
        logger.error(f"Cannot bind control socket {config.get_socket_path()}: {e}")
        return EXIT_ERROR
    return 0


if __name__ == "__main__":
    sys.exit(main())
