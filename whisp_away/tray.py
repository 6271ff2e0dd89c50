"""
Tray indicator

Read-only view of the session: polls ``status`` and reflects it in a
system tray icon. It never sends start, stop or toggle.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from whisp_away.client import send_command
from whisp_away.config import Config
from whisp_away.ipc import is_ok
from whisp_away.locks import RecordingMarker

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2
ICON_SIZE = 64

COLORS = {
    "recording": (220, 50, 47, 255),
    "transcribing": (230, 160, 20, 255),
    "idle": (60, 170, 90, 255),
    "offline": (128, 128, 128, 255),
}


@dataclass(frozen=True)
class TrayStatus:
    """What the indicator shows"""
    daemon: bool
    state: str
    backend: str = ""
    model: str = ""
    acceleration: str = ""

    @property
    def color(self) -> Tuple[int, int, int, int]:
        if self.state in ("recording", "transcribing"):
            return COLORS[self.state]
        return COLORS["idle"] if self.daemon else COLORS["offline"]

    @property
    def tooltip(self) -> str:
        if not self.daemon:
            heading = "Voice Input: recording (standalone)" if self.state == "recording" else "Voice Input: daemon not running"
        else:
            heading = f"Voice Input: {self.state}"
        if not self.model:
            return heading
        return f"{heading}\nBackend: {self.backend} ({self.acceleration})\nModel: {self.model}"


def poll_status(config: Config, timeout: float = 1.0) -> TrayStatus:
    """Ask the daemon; without one, look for a standalone capture"""
    try:
        reply = send_command(config.get_socket_path(), "status", timeout=timeout)
    except (ConnectionError, OSError, ValueError):
        reply = None

    if reply is not None and is_ok(reply):
        return TrayStatus(
            daemon=True,
            state=str(reply.get("state", "idle")),
            backend=str(reply.get("backend", "")),
            model=str(reply.get("model", "")),
            acceleration=str(reply.get("acceleration", "")),
        )

    defaults = config.backend_config()
    record = RecordingMarker(config.get_marker_path()).active()
    return TrayStatus(
        daemon=False,
        state="recording" if record is not None else "idle",
        backend=defaults.backend_kind.value,
        model=defaults.model_name,
        acceleration=defaults.acceleration_hint,
    )


class StatusPoller:
    """Background thread that reports status changes"""

    def __init__(
        self,
        poll: Callable[[], TrayStatus],
        on_change: Callable[[TrayStatus], None],
        interval: float = POLL_INTERVAL,
    ):
        self._poll = poll
        self._on_change = on_change
        self.interval = interval
        self.current: Optional[TrayStatus] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self) -> bool:
        """Poll and notify; True if the status changed"""
        status = self._poll()
        if status == self.current:
            return False
        logger.debug(f"Tray status: {status}")
        self.current = status
        self._on_change(status)
        return True

    def start(self) -> None:
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="tray-poller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.warning(f"Status poll failed: {e}")
            self._stop_event.wait(self.interval)


def create_icon_image(status: TrayStatus) -> Any:
    """Filled circle in the status color"""
    from PIL import Image, ImageDraw

    image = Image.new("RGBA", (ICON_SIZE, ICON_SIZE), (0, 0, 0, 0))
    draw = ImageDraw.Draw(image)
    draw.ellipse([6, 6, ICON_SIZE - 6, ICON_SIZE - 6], fill=status.color)
    return image


def run_tray(config: Config) -> int:
    """Show the indicator until "Quit Indicator" is chosen"""
    # pystray picks its display backend on import
    import pystray

    status = poll_status(config)

    def on_quit(icon, item) -> None:
        poller.stop()
        icon.stop()

    icon = pystray.Icon(
        "whisp-away",
        create_icon_image(status),
        status.tooltip,
        menu=pystray.Menu(
            pystray.MenuItem(lambda item: f"State: {_current().state}", None, enabled=False),
            pystray.MenuItem(lambda item: f"Backend: {_current().backend}", None, enabled=False),
            pystray.MenuItem(lambda item: f"Model: {_current().model}", None, enabled=False),
            pystray.MenuItem(lambda item: f"Acceleration: {_current().acceleration}", None, enabled=False),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem("Quit Indicator", on_quit),
        ),
    )

    def update(new_status: TrayStatus) -> None:
        icon.icon = create_icon_image(new_status)
        icon.title = new_status.tooltip
        icon.update_menu()

    poller = StatusPoller(lambda: poll_status(config), update)
    poller.current = status

    def _current() -> TrayStatus:
        return poller.current or status

    poller.start()
    logger.info("Tray indicator running")
    icon.run()
    poller.stop()
    return 0
