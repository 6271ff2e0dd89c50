"""Tests for the daemon's control protocol"""

import os
import subprocess
import sys
import threading
import time

import pytest

from conftest import FakeEngine, Harness, start_server, wait_for
from whisp_away.client import send_command
from whisp_away.config import read_daemon_state
from whisp_away.ipc import create_client_socket, recv_message, send_message


def call(server, command, overrides=None, timeout=10.0):
    return send_command(server.config.get_socket_path(), command, overrides, timeout=timeout)


def test_start_then_stop_scenario(running_server, harness):
    reply = call(running_server, "start")
    assert reply["status"] == "ok"
    assert reply["action"] == "start"
    assert reply["state"] == "recording"
    wait_for(lambda: harness.pipeline._frame_count > 0)

    reply = call(running_server, "stop")

    assert reply["status"] == "ok"
    assert reply["text"] == "hello world"
    assert reply["delivered"] == "keyboard"
    assert harness.keyboard.typed == ["hello world"]
    assert not harness.config.get_marker_path().exists()


def test_stop_while_idle(running_server):
    reply = call(running_server, "stop")
    assert reply == {"status": "error", "code": "not-recording", "message": "no recording in progress"}


def test_concurrent_starts_one_wins(running_server):
    replies = []
    barrier = threading.Barrier(6)

    def attempt():
        barrier.wait()
        replies.append(call(running_server, "start"))

    threads = [threading.Thread(target=attempt) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10.0)

    assert sum(1 for r in replies if r["status"] == "ok") == 1
    assert sum(1 for r in replies if r.get("code") == "already-recording") == 5


def test_toggle_twice(running_server, harness):
    assert call(running_server, "toggle")["action"] == "start"
    wait_for(lambda: harness.pipeline._frame_count > 0)
    reply = call(running_server, "toggle")

    assert reply["action"] == "stop"
    assert reply["text"] == "hello world"
    assert call(running_server, "status")["state"] == "idle"


def test_status_answers_while_transcribing(make_harness):
    harness = make_harness(engine=FakeEngine(delay=0.6))
    server = start_server(harness)
    try:
        harness.record()
        stopper = threading.Thread(target=call, args=(server, "stop"))
        stopper.start()
        assert wait_for(lambda: harness.controller.state.value == "transcribing")

        status = call(server, "status", timeout=0.5)
        assert status["state"] == "transcribing"
        assert call(server, "toggle")["code"] == "busy"
        stopper.join(5.0)
    finally:
        server.stop()
        server.wait_stopped(10.0)


def test_audio_file_override(running_server, wav_file):
    reply = call(running_server, "start", {"audio_file": str(wav_file)})

    assert reply["action"] == "stop"
    assert reply["duration"] == pytest.approx(0.5)
    assert wav_file.exists()


def test_start_with_audio_file_while_recording_is_refused(running_server, harness, wav_file):
    call(running_server, "start")
    wait_for(lambda: harness.pipeline._frame_count > 0)

    reply = call(running_server, "start", {"audio_file": str(wav_file)})

    assert reply["code"] == "already-recording"
    assert harness.pipeline.has_capture
    assert call(running_server, "stop")["text"] == "hello world"

def test_bad_requests(running_server):
    assert call(running_server, "dance")["code"] == "bad-request"
    assert call(running_server, "start", {"model": "tiny", "colour": "red"})["code"] == "bad-request"
    assert call(running_server, "start", {"backend": 3})["code"] == "bad-request"

    sock = create_client_socket(running_server.config.get_socket_path(), timeout=5.0)
    try:
        send_message(sock, {"overrides": {}})
        assert recv_message(sock)["code"] == "bad-request"
    finally:
        sock.close()


def test_startup_writes_state_and_takes_lock(running_server, config):
    state = read_daemon_state(config.get_state_path())

    assert state["model"] == "base.en"
    assert state["socket_path"] == str(config.get_socket_path())
    assert config.get_pid_path().read_text().strip() == str(os.getpid())


def test_shutdown_cleans_up(harness):
    server = start_server(harness)
    config = harness.config

    reply = call(server, "shutdown")

    assert reply == {"status": "ok", "drained": True}
    assert server.wait_stopped(10.0)
    assert not config.get_socket_path().exists()
    assert not config.get_pid_path().exists()
    assert not config.get_state_path().exists()
    with pytest.raises(ConnectionError):
        call(server, "status")


def test_shutdown_transcribes_recording(harness):
    server = start_server(harness)
    call(server, "start")
    wait_for(lambda: harness.pipeline._frame_count > 0)

    assert call(server, "shutdown") == {"status": "ok", "drained": True}

    assert server.wait_stopped(10.0)
    assert harness.engine.calls == 1
    assert harness.keyboard.typed == ["hello world"]
    assert not harness.config.get_marker_path().exists()


def write_dead_marker(config, audio_name):
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    audio = config.get_runtime_dir() / audio_name
    config.get_marker_path().write_text(
        '{"pid": %d, "audio_path": "%s", "started_at": 0}' % (process.pid, audio)
    )
    return process.pid, audio


def test_dead_daemon_leftovers_are_purged(config):
    pid, audio = write_dead_marker(config, "voice-recording-1.wav")
    config.get_pid_path().write_text(f"{pid}\n")
    config.get_socket_path().write_text("")
    audio.write_bytes(b"RIFF")
    old = time.time() - config.server.orphan_max_age_seconds - 60
    os.utime(audio, (old, old))

    server = start_server(Harness(config))
    try:
        assert call(server, "status")["state"] == "idle"
        assert config.get_pid_path().read_text().strip() == str(os.getpid())
        assert not config.get_marker_path().exists()
        assert not audio.exists()
    finally:
        server.stop()
        server.wait_stopped(10.0)


def test_dead_marker_without_audio_is_purged(config):
    write_dead_marker(config, "voice-recording-2.wav")

    server = start_server(Harness(config))
    try:
        assert not config.get_marker_path().exists()
    finally:
        server.stop()
        server.wait_stopped(10.0)


def test_recent_capture_of_dead_process_survives_startup(config):
    _, audio = write_dead_marker(config, "voice-recording-3.wav")
    audio.write_bytes(b"RIFF")

    server = start_server(Harness(config))
    try:
        assert config.get_marker_path().exists()
        assert audio.exists()
    finally:
        server.stop()
        server.wait_stopped(10.0)
