"""Tests for the Output Dispatcher and notifications"""

from unittest import mock

import pyperclip

from conftest import RecordingClipboard, RecordingKeyboard
from whisp_away.errors import InjectionError
from whisp_away.notify import Notifier
from whisp_away.output import ClipboardSink, OutputDispatcher


def test_types_text_by_default():
    keyboard, clipboard = RecordingKeyboard(), RecordingClipboard()
    delivered = OutputDispatcher(keyboard, clipboard).deliver(" hello world ")

    assert delivered == "keyboard"
    assert keyboard.typed == ["hello world"]
    assert clipboard.copied == []


def test_clipboard_mode_skips_keyboard():
    keyboard, clipboard = RecordingKeyboard(), RecordingClipboard()
    delivered = OutputDispatcher(keyboard, clipboard).deliver("hello", use_clipboard=True)

    assert delivered == "clipboard"
    assert keyboard.typed == []
    assert clipboard.copied == ["hello"]


def test_injection_failure_falls_back_to_clipboard():
    clipboard = RecordingClipboard()
    delivered = OutputDispatcher(RecordingKeyboard(fail=True), clipboard).deliver("hello")

    assert delivered == "clipboard"
    assert clipboard.copied == ["hello"]


def test_total_failure_is_reported_not_raised():
    dispatcher = OutputDispatcher(RecordingKeyboard(fail=True), RecordingClipboard(fail=True))
    assert dispatcher.deliver("hello") == "none"


def test_empty_text_goes_nowhere():
    keyboard, clipboard = RecordingKeyboard(), RecordingClipboard()
    assert OutputDispatcher(keyboard, clipboard).deliver("   ") == "none"
    assert keyboard.typed == [] and clipboard.copied == []


def test_clipboard_sink_wraps_pyperclip_errors():
    with mock.patch.object(pyperclip, "copy", side_effect=pyperclip.PyperclipException("no xclip")):
        try:
            ClipboardSink().set_clipboard("hello")
        except InjectionError as e:
            assert "no xclip" in str(e)
        else:
            raise AssertionError("InjectionError not raised")


def test_notifier_calls_notify_send():
    with mock.patch("whisp_away.notify.subprocess.run") as run:
        run.return_value.returncode = 0
        Notifier().send("Recording...", timeout_ms=500)

    command = run.call_args[0][0]
    assert command[:3] == ["notify-send", "Voice Input", "Recording..."]
    assert "500" in command


def test_notifier_survives_missing_binary():
    with mock.patch("whisp_away.notify.subprocess.run", side_effect=FileNotFoundError("notify-send")):
        Notifier().send("Recording...")


def test_disabled_notifier_is_silent():
    with mock.patch("whisp_away.notify.subprocess.run") as run:
        Notifier(enabled=False).send("Recording...")
    run.assert_not_called()
