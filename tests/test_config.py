"""Tests for configuration loading and BackendConfig overrides"""

import pytest

from whisp_away.config import (
    BackendConfig,
    BackendKind,
    Config,
    parse_bool,
    read_daemon_state,
    validate_overrides,
    write_daemon_state,
)
from whisp_away.errors import UserError


@pytest.fixture
def environ(tmp_path):
    return {
        "XDG_RUNTIME_DIR": str(tmp_path / "run"),
        "XDG_CONFIG_HOME": str(tmp_path / "cfg"),
    }


def test_defaults(environ, tmp_path):
    config = Config.load(environ=environ)

    assert config.transcription.model == "base.en"
    assert config.transcription.backend == "in-process"
    assert config.output.clipboard is False
    assert config.vad.enabled is False
    assert config.server.resident_models == 2
    assert config.get_runtime_dir() == tmp_path / "run" / "whisp-away"
    assert config.get_socket_path() == tmp_path / "run" / "whisp-away" / "daemon.sock"


def test_yaml_file_is_loaded(environ, tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        "transcription:\n"
        "  model: small.en\n"
        "  backend: external-process\n"
        "output:\n"
        "  clipboard: true\n"
        "server:\n"
        "  socket_path: ctl.sock\n"
    )
    config = Config.load(path, environ=environ)

    assert config.transcription.model == "small.en"
    assert config.backend_config().backend_kind is BackendKind.EXTERNAL_PROCESS
    assert config.output.clipboard is True
    # Relative socket paths are relative to the config file
    assert config.get_socket_path() == tmp_path / "ctl.sock"


def test_default_config_location(environ, tmp_path):
    config_dir = tmp_path / "cfg" / "whisp-away"
    config_dir.mkdir(parents=True)
    (config_dir / "config.yml").write_text("transcription:\n  model: tiny\n")

    assert Config.load(environ=environ).transcription.model == "tiny"


def test_missing_explicit_config_exits(environ, tmp_path):
    with pytest.raises(SystemExit):
        Config.load(tmp_path / "missing.yml", environ=environ)


def test_environment_beats_file(environ, tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("transcription:\n  model: small.en\n")
    environ.update({
        "WA_WHISPER_MODEL": "medium.en",
        "WA_WHISPER_BACKEND": "external",
        "WA_USE_CLIPBOARD": "true",
        "WA_ACCELERATION_TYPE": "CPU",
        "WA_VAD": "1",
        "WA_WHISPER_SOCKET": "/tmp/other.sock",
    })
    config = Config.load(path, environ=environ)

    assert config.transcription.model == "medium.en"
    assert config.transcription.backend == "external-process"
    assert config.transcription.acceleration == "cpu"
    assert config.output.clipboard is True
    assert config.vad.enabled is True
    assert str(config.get_socket_path()) == "/tmp/other.sock"


def test_daemon_state_sits_between_environment_and_file(environ):
    daemon = Config.load(environ=environ).with_overrides(model="large-v3", clipboard=True)
    write_daemon_state(daemon)

    client = Config.load(environ=environ)
    assert client.transcription.model == "large-v3"
    assert client.output.clipboard is True

    environ["WA_WHISPER_MODEL"] = "tiny"
    assert Config.load(environ=environ).transcription.model == "tiny"

    # The daemon itself ignores a previous daemon's state
    assert Config.load(environ=environ, use_daemon_state=False).output.clipboard is False


def test_read_daemon_state_tolerates_garbage(tmp_path):
    path = tmp_path / "daemon.json"
    assert read_daemon_state(path) is None
    path.write_text("[1, 2")
    assert read_daemon_state(path) is None


@pytest.mark.parametrize("value", ["in-process", "faster-whisper", "IN_PROCESS"])
def test_backend_aliases_in_process(value):
    assert BackendKind.parse(value) is BackendKind.IN_PROCESS


def test_unknown_backend():
    with pytest.raises(UserError):
        BackendKind.parse("cloud")


@pytest.mark.parametrize("value", [3, ["in-process"], {"kind": "worker"}, True])
def test_non_string_backend_is_a_user_error(value):
    with pytest.raises(UserError):
        BackendKind.parse(value)
    with pytest.raises(UserError):
        validate_overrides({"backend": value})


def test_parse_bool():
    assert parse_bool("yes") is True
    assert parse_bool("0") is False
    with pytest.raises(UserError):
        parse_bool("maybe")


def test_backend_config_overrides():
    base = BackendConfig(BackendKind.IN_PROCESS, "base.en")
    changed = base.with_overrides({"model": "tiny", "backend": "external-process", "vad": "true"})

    assert changed == BackendConfig(BackendKind.EXTERNAL_PROCESS, "tiny", "auto", True)
    assert base.with_overrides({}) is base
    assert changed.key == (BackendKind.EXTERNAL_PROCESS, "tiny", "auto")


def test_validate_overrides():
    assert validate_overrides(None) == {}
    assert validate_overrides({"clipboard": "false", "model": None}) == {"clipboard": False}
    with pytest.raises(UserError):
        validate_overrides({"colour": "blue"})
    with pytest.raises(UserError):
        validate_overrides({"backend": "cloud"})
    with pytest.raises(UserError):
        validate_overrides(["model"])


def test_non_string_audio_file_is_a_user_error():
    with pytest.raises(UserError):
        validate_overrides({"audio_file": 42})
