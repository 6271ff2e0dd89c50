"""
Lock management

Two filesystem markers enforce the single-recording guarantee:

- the instance lock (``daemon.pid``) makes the daemon a single instance
- the recording marker (``recording.json``) records an in-progress capture,
  so a ``stop`` from another invocation can find the audio to finalize and a
  competing ``start`` is rejected even without a daemon

Both are created exclusively and are only trusted while their owner pid is
alive; a marker whose owner died is purged and replaced.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from whisp_away.errors import AlreadyRecordingError, LockHeldError

logger = logging.getLogger(__name__)

AUDIO_PREFIX = "voice-recording-"
AUDIO_SUFFIX = ".wav"


def pid_alive(pid: int) -> bool:
    """Check whether a process exists (signal 0 probe)"""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


@dataclass
class LockRecord:
    """Instance lock contents"""
    path: Path
    owner_pid: int

    @property
    def alive(self) -> bool:
        return pid_alive(self.owner_pid)


@dataclass
class RecordingRecord:
    """Recording marker contents"""
    pid: int
    audio_path: Path
    started_at: float
    overrides: Dict[str, Any] = field(default_factory=dict)

    @property
    def alive(self) -> bool:
        return pid_alive(self.pid)

    def to_json(self) -> str:
        return json.dumps({
            "pid": self.pid,
            "audio_path": str(self.audio_path),
            "started_at": self.started_at,
            "overrides": self.overrides,
        })

    @classmethod
    def from_json(cls, text: str) -> "RecordingRecord":
        data = json.loads(text)
        return cls(
            pid=int(data["pid"]),
            audio_path=Path(data["audio_path"]),
            started_at=float(data.get("started_at", 0.0)),
            overrides=dict(data.get("overrides") or {}),
        )


def _create_exclusive(path: Path, content: str) -> bool:
    """
    Create path with content; False if it already exists

    The content is written to a private file first and hard-linked into
    place, so readers never see the path empty.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}")
    fd = os.open(tmp_path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o600)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.link(tmp_path, path)
    except FileExistsError:
        return False
    finally:
        _unlink(tmp_path)
    return True


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class InstanceLock:
    """Single-instance lock for the daemon process"""

    def __init__(self, path: Path, pid: Optional[int] = None):
        self.path = path
        self.pid = pid if pid is not None else os.getpid()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def read(self) -> Optional[LockRecord]:
        """Current lock record, or None if absent or unreadable"""
        try:
            text = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        try:
            return LockRecord(path=self.path, owner_pid=int(text))
        except ValueError:
            return LockRecord(path=self.path, owner_pid=0)

    def acquire(self) -> LockRecord:
        """
        Take the lock, purging it first if its owner is dead

        Raises:
            LockHeldError: If a live process owns the lock
        """
        for _ in range(2):
            if _create_exclusive(self.path, f"{self.pid}\n"):
                self._held = True
                logger.debug(f"Acquired instance lock {self.path} (pid {self.pid})")
                return LockRecord(path=self.path, owner_pid=self.pid)

            record = self.read()
            if record is not None and record.owner_pid != self.pid and record.alive:
                raise LockHeldError(f"daemon already running (pid {record.owner_pid})")

            owner = record.owner_pid if record else "unknown"
            logger.warning(f"Purging stale instance lock {self.path} (owner {owner} is gone)")
            _unlink(self.path)

        raise LockHeldError(f"could not acquire instance lock {self.path}")

    def release(self) -> None:
        if not self._held:
            return
        record = self.read()
        if record is not None and record.owner_pid == self.pid:
            _unlink(self.path)
        self._held = False
        logger.debug(f"Released instance lock {self.path}")


class RecordingMarker:
    """Marker for the one capture in progress on this machine"""

    def __init__(self, path: Path):
        self.path = path

    def read(self) -> Optional[RecordingRecord]:
        """Current marker, or None if absent; a corrupt marker is purged"""
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return None
        try:
            return RecordingRecord.from_json(text)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Removing corrupt recording marker {self.path}: {e}")
            _unlink(self.path)
            return None

    def active(self) -> Optional[RecordingRecord]:
        """The marker if its owner process is still alive"""
        record = self.read()
        if record is not None and record.alive:
            return record
        return None

    def create(
        self,
        pid: int,
        audio_path: Path,
        overrides: Optional[Dict[str, Any]] = None,
        started_at: Optional[float] = None,
    ) -> RecordingRecord:
        """
        Claim the marker for a new capture

        Raises:
            AlreadyRecordingError: If a live process holds the marker
        """
        record = RecordingRecord(
            pid=pid,
            audio_path=audio_path,
            started_at=time.time() if started_at is None else started_at,
            overrides=dict(overrides or {}),
        )
        for _ in range(2):
            if _create_exclusive(self.path, record.to_json()):
                logger.debug(f"Recording marker created: {self.path} -> {audio_path}")
                return record

            existing = self.read()
            if existing is not None and existing.alive:
                raise AlreadyRecordingError(
                    f"a recording is already in progress (pid {existing.pid})"
                )
            if existing is not None:
                logger.warning(f"Purging stale recording marker (pid {existing.pid} is gone)")
                _unlink(existing.audio_path)
            _unlink(self.path)

        raise AlreadyRecordingError("could not claim the recording marker")

    def update_pid(self, pid: int) -> RecordingRecord:
        """Hand the marker over to the process that actually captures"""
        record = self.read()
        if record is None:
            raise FileNotFoundError(str(self.path))
        record.pid = pid
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(record.to_json())
        os.replace(tmp_path, self.path)
        return record

    def clear(self) -> None:
        _unlink(self.path)
        logger.debug(f"Recording marker cleared: {self.path}")


def new_audio_path(runtime_dir: Path) -> Path:
    """Unique temporary audio artifact path"""
    return runtime_dir / f"{AUDIO_PREFIX}{int(time.time() * 1000)}{AUDIO_SUFFIX}"


def purge_orphaned_recordings(
    runtime_dir: Path,
    max_age_seconds: float,
    keep: Optional[Path] = None,
    now: Optional[float] = None,
) -> int:
    """
    Delete capture artifacts older than max_age_seconds

    Args:
        runtime_dir: Directory holding the artifacts
        max_age_seconds: Minimum age (by mtime) for removal
        keep: Artifact that must survive (the current capture)
        now: Reference time (default: time.time())

    Returns:
        Number of files removed
    """
    if not runtime_dir.is_dir():
        return 0

    now = time.time() if now is None else now
    removed = 0
    for path in runtime_dir.iterdir():
        name = path.name
        if not (name.startswith(AUDIO_PREFIX) and (name.endswith(AUDIO_SUFFIX) or name.endswith(".part"))):
            continue
        if keep is not None and path == keep:
            continue
        try:
            age = now - path.stat().st_mtime
        except FileNotFoundError:
            continue
        if age > max_age_seconds:
            logger.debug(f"Removing old recording: {name} (age: {age:.0f}s)")
            _unlink(path)
            removed += 1

    if removed:
        logger.info(f"Cleaned up {removed} old recording file(s)")
    return removed
