"""
Error taxonomy for whisp-away

Every error carries a protocol code (sent in daemon replies) and the
process exit code a client invocation terminates with.
"""

from typing import Dict, Type

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_ALREADY_RECORDING = 2
EXIT_NOT_RECORDING = 3
EXIT_BACKEND_FAILURE = 4
EXIT_BUSY = 5


class WhispAwayError(Exception):
    """Base class for all whisp-away errors"""
    code = "failure"
    exit_code = EXIT_ERROR


class UserError(WhispAwayError):
    """Bad command, flag or override"""
    code = "bad-request"


class AlreadyRecordingError(UserError):
    code = "already-recording"
    exit_code = EXIT_ALREADY_RECORDING

    def __init__(self, message: str = "a recording is already in progress"):
        super().__init__(message)


class NotRecordingError(UserError):
    code = "not-recording"
    exit_code = EXIT_NOT_RECORDING

    def __init__(self, message: str = "no recording in progress"):
        super().__init__(message)


class BusyError(UserError):
    code = "busy"
    exit_code = EXIT_BUSY

    def __init__(self, message: str = "transcription in progress"):
        super().__init__(message)


class ShuttingDownError(UserError):
    code = "shutting-down"

    def __init__(self, message: str = "daemon is shutting down"):
        super().__init__(message)


class CaptureError(WhispAwayError):
    """Audio device could not be opened or read"""
    code = "capture-failed"


class BackendError(WhispAwayError):
    """Inference failed"""
    code = "backend-failure"
    exit_code = EXIT_BACKEND_FAILURE


class TransientBackendError(BackendError):
    """Worker crash or inference timeout; worth one retry"""


class FatalConfigError(BackendError):
    """Model unavailable or unsupported backend/acceleration combination"""
    code = "config-error"


class InjectionError(WhispAwayError):
    """Text could not be typed or copied; never escalated past the output layer"""
    code = "injection-failed"


class LockHeldError(WhispAwayError):
    """Another daemon owns the instance lock"""
    code = "daemon-running"


_BY_CODE: Dict[str, Type[WhispAwayError]] = {
    cls.code: cls
    for cls in (
        WhispAwayError,
        UserError,
        AlreadyRecordingError,
        NotRecordingError,
        BusyError,
        ShuttingDownError,
        CaptureError,
        BackendError,
        FatalConfigError,
        InjectionError,
        LockHeldError,
    )
}


def error_for_code(code: str, message: str) -> WhispAwayError:
    """Rebuild the exception a daemon reply describes"""
    return _BY_CODE.get(code, WhispAwayError)(message)


def exit_code_for(code: str) -> int:
    """Map a protocol error code to a process exit code"""
    return _BY_CODE.get(code, WhispAwayError).exit_code
