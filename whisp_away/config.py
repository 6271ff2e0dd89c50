"""
Configuration management for whisp-away

Values are resolved with the precedence
CLI flag > environment > daemon state file > config file > built-in default.
"""

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from whisp_away.errors import UserError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "base.en"
DEFAULT_ACCELERATION = "auto"
CONFIG_FILENAME = "config.yml"
DAEMON_STATE_FILENAME = "daemon.json"

# Environment variables
ENV_MODEL = "WA_WHISPER_MODEL"
ENV_BACKEND = "WA_WHISPER_BACKEND"
ENV_CLIPBOARD = "WA_USE_CLIPBOARD"
ENV_SOCKET = "WA_WHISPER_SOCKET"
ENV_ACCELERATION = "WA_ACCELERATION_TYPE"
ENV_VAD = "WA_VAD"
ENV_LOG_LEVEL = "WA_LOG_LEVEL"

OVERRIDE_KEYS = ("model", "backend", "acceleration", "vad", "clipboard", "audio_file")


class BackendKind(str, Enum):
    """Inference engine variant"""
    IN_PROCESS = "in-process"
    EXTERNAL_PROCESS = "external-process"

    @classmethod
    def parse(cls, value: str) -> "BackendKind":
        if not isinstance(value, str):
            raise UserError(f"backend must be a string, got {value!r}")
        normalized = value.strip().lower().replace("_", "-")
        aliases = {
            "in-process": cls.IN_PROCESS,
            "inprocess": cls.IN_PROCESS,
            "faster-whisper": cls.IN_PROCESS,
            "external-process": cls.EXTERNAL_PROCESS,
            "external": cls.EXTERNAL_PROCESS,
            "process": cls.EXTERNAL_PROCESS,
            "worker": cls.EXTERNAL_PROCESS,
        }
        if normalized not in aliases:
            raise UserError(f"unknown backend: {value}")
        return aliases[normalized]


def parse_bool(value: Any) -> bool:
    """Parse true/false style values from flags, env and overrides"""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise UserError(f"expected true or false, got {value!r}")


@dataclass(frozen=True)
class BackendConfig:
    """Which engine and model a single transcription runs on"""
    backend_kind: BackendKind
    model_name: str
    acceleration_hint: str = DEFAULT_ACCELERATION
    vad_enabled: bool = False

    @property
    def key(self) -> Tuple[BackendKind, str, str]:
        """Resident-model cache key"""
        return (self.backend_kind, self.model_name, self.acceleration_hint)

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "BackendConfig":
        """Apply per-call overrides (unknown keys are ignored here)"""
        if not overrides:
            return self
        changes: Dict[str, Any] = {}
        if overrides.get("backend") is not None:
            changes["backend_kind"] = BackendKind.parse(overrides["backend"])
        if overrides.get("model"):
            changes["model_name"] = str(overrides["model"])
        if overrides.get("acceleration"):
            changes["acceleration_hint"] = str(overrides["acceleration"]).lower()
        if overrides.get("vad") is not None:
            changes["vad_enabled"] = parse_bool(overrides["vad"])
        return replace(self, **changes) if changes else self

    def describe(self) -> str:
        return f"{self.backend_kind.value}:{self.model_name}"


def validate_overrides(overrides: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Check a control message's override mapping

    Raises:
        UserError: on unknown keys or unparsable values
    """
    if not overrides:
        return {}
    if not isinstance(overrides, Mapping):
        raise UserError("overrides must be a mapping")
    unknown = set(overrides) - set(OVERRIDE_KEYS)
    if unknown:
        raise UserError(f"unknown override: {', '.join(sorted(unknown))}")
    cleaned = {key: value for key, value in overrides.items() if value is not None}
    if "backend" in cleaned:
        BackendKind.parse(cleaned["backend"])
    if "audio_file" in cleaned and not isinstance(cleaned["audio_file"], str):
        raise UserError("audio_file must be a path string")
    for key in ("vad", "clipboard"):
        if key in cleaned:
            cleaned[key] = parse_bool(cleaned[key])
    return cleaned


@dataclass
class ServerConfig:
    """Daemon configuration"""
    socket_path: Optional[str] = None
    runtime_dir: Optional[str] = None
    resident_models: int = 2
    max_recording_seconds: float = 300.0
    orphan_max_age_seconds: int = 600


@dataclass
class AudioConfig:
    """Audio configuration"""
    sample_rate: int = 16000
    channels: int = 1
    block_size: int = 1024
    mic_device: Optional[int] = None


@dataclass
class TranscriptionConfig:
    """Transcription configuration"""
    backend: str = BackendKind.IN_PROCESS.value
    model: str = DEFAULT_MODEL
    acceleration: str = DEFAULT_ACCELERATION
    language: Optional[str] = None
    beam_size: int = 5
    inference_timeout: float = 120.0
    worker_startup_timeout: float = 300.0


@dataclass
class VADConfig:
    """Voice Activity Detection configuration"""
    enabled: bool = False
    webrtc_sensitivity: int = 3
    silero_sensitivity: float = 0.5
    silero_use_onnx: bool = True


@dataclass
class OutputConfig:
    """Where finished text goes"""
    clipboard: bool = False
    notifications: bool = True


@dataclass
class Config:
    """Main configuration container"""
    server: ServerConfig = field(default_factory=ServerConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    vad: VADConfig = field(default_factory=VADConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    log_level: str = "WARNING"
    config_path: Optional[Path] = None

    @classmethod
    def load(
        cls,
        config_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        use_daemon_state: bool = True,
    ) -> "Config":
        """
        Load configuration from YAML, the daemon state file and the environment

        Args:
            config_path: Path to config file. If None, uses
                        $XDG_CONFIG_HOME/whisp-away/config.yml when it exists.
            environ: Environment mapping (default: os.environ)
            use_daemon_state: Read the running daemon's settings (off for the daemon itself)

        Returns:
            Config object

        Raises:
            SystemExit: If an explicitly given config file is not found
        """
        env = os.environ if environ is None else environ

        if config_path is not None:
            if not config_path.exists():
                logger.error(f"Config file not found: {config_path}")
                sys.exit(1)
            resolved_path: Optional[Path] = config_path
        else:
            candidate = _default_config_dir(env) / CONFIG_FILENAME
            resolved_path = candidate if candidate.exists() else None

        config_data: Dict[str, Any] = {}
        if resolved_path is not None:
            config_data = _load_yaml(resolved_path)
            logger.info(f"Loaded config from {resolved_path}")

        config = cls(
            server=ServerConfig(**config_data.get("server", {})),
            audio=AudioConfig(**config_data.get("audio", {})),
            transcription=TranscriptionConfig(**config_data.get("transcription", {})),
            vad=VADConfig(**config_data.get("vad", {})),
            output=OutputConfig(**config_data.get("output", {})),
            log_level=str(config_data.get("log_level", "WARNING")),
            config_path=resolved_path.parent if resolved_path else None,
        )

        # Runtime dir from env decides where the daemon state lives
        if not config.server.runtime_dir:
            config.server.runtime_dir = str(default_runtime_dir(env))

        state = read_daemon_state(config.get_state_path()) if use_daemon_state else None
        if state:
            config = config.with_overrides(
                model=state.get("model"),
                backend=state.get("backend"),
                socket_path=state.get("socket_path"),
                clipboard=state.get("clipboard"),
            )

        return config.with_overrides(
            model=env.get(ENV_MODEL),
            backend=env.get(ENV_BACKEND),
            socket_path=env.get(ENV_SOCKET),
            acceleration=env.get(ENV_ACCELERATION),
            clipboard=env.get(ENV_CLIPBOARD),
            vad=env.get(ENV_VAD),
            log_level=env.get(ENV_LOG_LEVEL),
        )

    def with_overrides(
        self,
        model: Optional[str] = None,
        backend: Optional[str] = None,
        socket_path: Optional[str] = None,
        acceleration: Optional[str] = None,
        clipboard: Optional[Any] = None,
        vad: Optional[Any] = None,
        log_level: Optional[str] = None,
    ) -> "Config":
        """Return a copy with the given (non-None) values replaced"""
        transcription = self.transcription
        if model:
            transcription = replace(transcription, model=model)
        if backend:
            transcription = replace(transcription, backend=BackendKind.parse(backend).value)
        if acceleration:
            transcription = replace(transcription, acceleration=acceleration.lower())

        server = self.server
        if socket_path:
            server = replace(server, socket_path=socket_path)

        output = self.output
        if clipboard is not None and clipboard != "":
            output = replace(output, clipboard=parse_bool(clipboard))

        vad_config = self.vad
        if vad is not None and vad != "":
            vad_config = replace(vad_config, enabled=parse_bool(vad))

        return replace(
            self,
            transcription=transcription,
            server=server,
            output=output,
            vad=vad_config,
            log_level=log_level or self.log_level,
        )

    def backend_config(self) -> BackendConfig:
        """Default BackendConfig for commands that carry no overrides"""
        return BackendConfig(
            backend_kind=BackendKind.parse(self.transcription.backend),
            model_name=self.transcription.model,
            acceleration_hint=self.transcription.acceleration,
            vad_enabled=self.vad.enabled,
        )

    def get_runtime_dir(self) -> Path:
        """Directory for the socket, markers and audio artifacts"""
        if self.server.runtime_dir:
            return Path(self.server.runtime_dir)
        return default_runtime_dir(os.environ)

    def get_socket_path(self) -> Path:
        """Get the absolute path to the socket file"""
        if not self.server.socket_path:
            return self.get_runtime_dir() / "daemon.sock"
        socket_path = Path(self.server.socket_path)
        if socket_path.is_absolute() or self.config_path is None:
            return socket_path
        return self.config_path / socket_path

    def get_pid_path(self) -> Path:
        return self.get_runtime_dir() / "daemon.pid"

    def get_marker_path(self) -> Path:
        return self.get_runtime_dir() / "recording.json"

    def get_state_path(self) -> Path:
        return self.get_runtime_dir() / DAEMON_STATE_FILENAME


def default_runtime_dir(environ: Mapping[str, str]) -> Path:
    """$XDG_RUNTIME_DIR/whisp-away, or a per-user directory under /tmp"""
    xdg = environ.get("XDG_RUNTIME_DIR")
    if xdg:
        return Path(xdg) / "whisp-away"
    return Path(f"/tmp/whisp-away-{os.getuid()}")


def _default_config_dir(environ: Mapping[str, str]) -> Path:
    xdg = environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "whisp-away"


def write_daemon_state(config: Config) -> Path:
    """Record the daemon's resolved settings so client invocations can match them"""
    path = config.get_state_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    state = {
        "backend": config.transcription.backend,
        "model": config.transcription.model,
        "socket_path": str(config.get_socket_path()),
        "clipboard": config.output.clipboard,
    }
    path.write_text(json.dumps(state, indent=2))
    logger.debug(f"Wrote daemon state to {path}")
    return path


def read_daemon_state(path: Path) -> Optional[Dict[str, Any]]:
    """Read the daemon state file, or None if absent or unreadable"""
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.debug(f"Ignoring unreadable daemon state {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def config_as_dict(config: Config) -> Dict[str, Any]:
    """Plain-dict view, used for debug logging"""
    data = asdict(config)
    data["config_path"] = str(config.config_path) if config.config_path else None
    return data


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return as dict"""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
            return data if data else {}
    except Exception as e:
        logger.error(f"Error loading config file {path}: {e}")
        sys.exit(1)
