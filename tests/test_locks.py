"""Tests for the instance lock, the recording marker and orphan cleanup"""

import os
import subprocess
import sys
import time
from pathlib import Path

import pytest

from whisp_away.errors import AlreadyRecordingError, LockHeldError
from whisp_away.locks import (
    InstanceLock,
    RecordingMarker,
    new_audio_path,
    pid_alive,
    purge_orphaned_recordings,
)


@pytest.fixture
def dead_pid():
    """Pid of a process that has exited and been reaped"""
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return process.pid


def test_pid_alive(dead_pid):
    assert pid_alive(os.getpid())
    assert not pid_alive(dead_pid)
    assert not pid_alive(0)


class TestInstanceLock:
    def test_acquire_and_release(self, runtime_dir):
        lock = InstanceLock(runtime_dir / "daemon.pid")
        record = lock.acquire()

        assert record.owner_pid == os.getpid()
        assert lock.held
        assert lock.read().owner_pid == os.getpid()

        lock.release()
        assert not (runtime_dir / "daemon.pid").exists()

    def test_live_owner_blocks_second_instance(self, runtime_dir, dead_pid):
        InstanceLock(runtime_dir / "daemon.pid").acquire()

        with pytest.raises(LockHeldError):
            InstanceLock(runtime_dir / "daemon.pid", pid=dead_pid).acquire()

    def test_dead_owner_is_purged(self, runtime_dir, dead_pid):
        path = runtime_dir / "daemon.pid"
        path.write_text(f"{dead_pid}\n")

        record = InstanceLock(path).acquire()

        assert record.owner_pid == os.getpid()
        assert path.read_text().strip() == str(os.getpid())

    def test_garbage_lock_is_purged(self, runtime_dir):
        path = runtime_dir / "daemon.pid"
        path.write_text("not a pid")

        assert InstanceLock(path).acquire().owner_pid == os.getpid()

    def test_lock_appears_with_its_pid_already_written(self, runtime_dir, monkeypatch):
        path = runtime_dir / "daemon.pid"
        published = []
        real_link = os.link

        def link(src, dst):
            published.append((os.path.exists(dst), Path(src).read_text()))
            real_link(src, dst)

        monkeypatch.setattr(os, "link", link)
        InstanceLock(path, pid=4242).acquire()

        assert published == [(False, "4242\n")]
        assert path.read_text() == "4242\n"
        assert sorted(p.name for p in runtime_dir.iterdir()) == ["daemon.pid"]

    def test_losing_the_race_leaves_no_scratch_files(self, runtime_dir):
        InstanceLock(runtime_dir / "daemon.pid").acquire()

        with pytest.raises(LockHeldError):
            InstanceLock(runtime_dir / "daemon.pid", pid=4242).acquire()

        assert sorted(p.name for p in runtime_dir.iterdir()) == ["daemon.pid"]
        assert (runtime_dir / "daemon.pid").read_text() == f"{os.getpid()}\n"

    def test_release_keeps_foreign_lock(self, runtime_dir, dead_pid):
        path = runtime_dir / "daemon.pid"
        lock = InstanceLock(path)
        lock.acquire()
        path.write_text(f"{dead_pid}\n")

        lock.release()
        assert path.exists()


class TestRecordingMarker:
    def test_create_and_clear(self, runtime_dir):
        marker = RecordingMarker(runtime_dir / "recording.json")
        audio = runtime_dir / "voice-recording-1.wav"

        marker.create(os.getpid(), audio, overrides={"model": "small"})
        record = marker.active()

        assert record.pid == os.getpid()
        assert record.audio_path == audio
        assert record.overrides == {"model": "small"}

        marker.clear()
        assert marker.read() is None

    def test_live_marker_rejects_competing_start(self, runtime_dir):
        marker = RecordingMarker(runtime_dir / "recording.json")
        marker.create(os.getpid(), runtime_dir / "a.wav")

        with pytest.raises(AlreadyRecordingError):
            marker.create(os.getpid(), runtime_dir / "b.wav")

    def test_stale_marker_is_replaced_and_its_audio_removed(self, runtime_dir, dead_pid):
        marker = RecordingMarker(runtime_dir / "recording.json")
        stale_audio = runtime_dir / "voice-recording-1.wav"
        stale_audio.write_bytes(b"RIFF")
        marker.create(dead_pid, stale_audio)

        assert marker.active() is None
        record = marker.create(os.getpid(), runtime_dir / "voice-recording-2.wav")

        assert record.pid == os.getpid()
        assert not stale_audio.exists()

    def test_corrupt_marker_is_removed(self, runtime_dir):
        path = runtime_dir / "recording.json"
        path.write_text("{not json")

        assert RecordingMarker(path).read() is None
        assert not path.exists()

    def test_update_pid_hands_over_ownership(self, runtime_dir, dead_pid):
        marker = RecordingMarker(runtime_dir / "recording.json")
        marker.create(os.getpid(), runtime_dir / "a.wav")

        marker.update_pid(dead_pid)

        assert marker.read().pid == dead_pid
        assert marker.active() is None


def test_new_audio_path_naming(runtime_dir):
    path = new_audio_path(runtime_dir)
    assert path.parent == runtime_dir
    assert path.name.startswith("voice-recording-")
    assert path.suffix == ".wav"


def test_purge_removes_only_old_artifacts(runtime_dir):
    now = time.time()
    old = runtime_dir / "voice-recording-100.wav"
    old_part = runtime_dir / "voice-recording-101.part"
    fresh = runtime_dir / "voice-recording-200.wav"
    kept = runtime_dir / "voice-recording-300.wav"
    unrelated = runtime_dir / "notes.wav"
    for path in (old, old_part, fresh, kept, unrelated):
        path.write_bytes(b"")
    for path in (old, old_part, kept, unrelated):
        os.utime(path, (now - 3600, now - 3600))

    removed = purge_orphaned_recordings(runtime_dir, 600, keep=kept, now=now)

    assert removed == 2
    assert not old.exists()
    assert not old_part.exists()
    assert fresh.exists()
    assert kept.exists()
    assert unrelated.exists()


def test_purge_missing_directory(tmp_path):
    assert purge_orphaned_recordings(tmp_path / "missing", 600) == 0
