import logging
import webbrowser

import pystray
from PIL import Image, ImageDraw

import config

logger = logging.getLogger(__name__)

ICON_SIZE = 64

# idle / recording / processing
STATE_COLORS = {
    "idle": "#888888",
    "recording": "#e94560",
    "processing": "#f5a623",
}


def create_icon_image(state: str) -> Image.Image:
    img = Image.new("RGBA", (ICON_SIZE, ICON_SIZE), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)
    margin = 8
    draw.ellipse(
        [margin, margin, ICON_SIZE - margin, ICON_SIZE - margin],
        fill=STATE_COLORS.get(state, STATE_COLORS["idle"]),
    )
    if state == "processing":
        inner = ICON_SIZE // 3
        draw.ellipse([inner, inner, ICON_SIZE - inner, ICON_SIZE - inner], fill="#ffffff")
    return img


class TrayIcon:
    """System tray front end; menu labels follow the session state."""

    def __init__(self, on_toggle_recording, on_cancel, on_quit):
        self._actions = {
            "toggle": on_toggle_recording,
            "cancel": on_cancel,
            "quit": on_quit,
        }
        self._state = "idle"
        self._tooltip = "MeetScribe"
        self._icon: pystray.Icon | None = None

    @property
    def state(self) -> str:
        return self._state

    def _invoke(self, name: str):
        try:
            self._actions[name]()
        except Exception as e:
            logger.error("Tray action %s failed: %s", name, e)

    def _menu(self) -> pystray.Menu:
        return pystray.Menu(
            pystray.MenuItem(
                lambda item: "Stop recording" if self._state == "recording" else "Start recording",
                lambda: self._invoke("toggle"),
                default=True,
                enabled=lambda item: self._state != "processing",
            ),
            pystray.MenuItem(
                "Cancel processing",
                lambda: self._invoke("cancel"),
                enabled=lambda item: self._state == "processing",
            ),
            pystray.MenuItem(
                "Open API docs",
                lambda: webbrowser.open(f"http://{config.HOST}:{config.PORT}/docs"),
            ),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem("Quit", self._quit),
        )

    def _quit(self):
        self._invoke("quit")
        self.stop()

    def update_state(self, state: str, message: str | None = None):
        if message:
            self._tooltip = f"MeetScribe - {message}"[:63]
        if state == self._state and not message:
            return
        self._state = state
        if self._icon:
            self._icon.icon = create_icon_image(state)
            self._icon.title = self._tooltip
            self._icon.update_menu()

    def run(self):
        self._icon = pystray.Icon(
            "MeetScribe",
            icon=create_icon_image(self._state),
            title=self._tooltip,
            menu=self._menu(),
        )
        self._icon.run()

    def stop(self):
        if self._icon:
            self._icon.stop()
