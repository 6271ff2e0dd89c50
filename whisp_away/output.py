"""
Text output

Delivers finished text by typing it at the cursor (pynput) or copying it
to the clipboard (pyperclip). A failed injection falls back to the
clipboard so the text is never silently lost.
"""

import logging
import time
from typing import Any, Optional, Protocol

import pyperclip

from whisp_away.errors import InjectionError

logger = logging.getLogger(__name__)

DELIVERED_KEYBOARD = "keyboard"
DELIVERED_CLIPBOARD = "clipboard"
DELIVERED_NONE = "none"


class KeyboardTarget(Protocol):
    def inject(self, text: str) -> None: ...


class ClipboardTarget(Protocol):
    def set_clipboard(self, text: str) -> None: ...


class KeyboardSink:
    """Types text at the cursor through pynput"""

    def __init__(self, delay: float = 0.03):
        self.delay = delay
        self._controller: Any = None

    def inject(self, text: str) -> None:
        try:
            if self._controller is None:
                # pynput binds to the display server on import
                from pynput.keyboard import Controller
                self._controller = Controller()
            time.sleep(self.delay)
            self._controller.type(text)
        except Exception as e:
            raise InjectionError(f"keyboard injection failed: {e}") from e


class ClipboardSink:
    """Copies text to the system clipboard through pyperclip"""

    def set_clipboard(self, text: str) -> None:
        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as e:
            raise InjectionError(f"clipboard unavailable: {e}") from e


class OutputDispatcher:
    """Routes text to the keyboard or the clipboard"""

    def __init__(
        self,
        keyboard: Optional[KeyboardTarget] = None,
        clipboard: Optional[ClipboardTarget] = None,
    ):
        self.keyboard = keyboard or KeyboardSink()
        self.clipboard = clipboard or ClipboardSink()

    def deliver(self, text: str, use_clipboard: bool = False) -> str:
        """
        Deliver text; never raises

        Returns:
            Where the text went: "keyboard", "clipboard" or "none"
        """
        text = text.strip()
        if not text:
            return DELIVERED_NONE

        if not use_clipboard:
            try:
                self.keyboard.inject(text)
                logger.debug(f"Typed {len(text)} chars")
                return DELIVERED_KEYBOARD
            except InjectionError as e:
                logger.warning(f"{e}; copying to clipboard instead")

        try:
            self.clipboard.set_clipboard(text)
            logger.debug(f"Copied {len(text)} chars to clipboard")
            return DELIVERED_CLIPBOARD
        except InjectionError as e:
            logger.error(f"Could not deliver text ({e}): {text}")
            return DELIVERED_NONE
