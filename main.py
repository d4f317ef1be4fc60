import logging
import socket
import sys
import threading

import requests
import uvicorn

import config
from events import EventChannel
from processing.session import SessionOrchestrator
from processing.summarizer import Summarizer
from processing.transcriber import Transcriber
from recorder.audio_capture import AudioRecorder
from server.app import create_app
from storage.history import HistoryStore
from storage.settings import SettingsStore
from tray.tray_icon import TrayIcon

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("meetscribe")


def find_available_port(start: int, end: int) -> int:
    for port in range(start, end + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((config.HOST, port))
                return port
            except OSError:
                continue
    raise RuntimeError(f"No free port found between {start} and {end}")


def follow_events(events: EventChannel, tray: TrayIcon, recorder: AudioRecorder,
                  orchestrator: SessionOrchestrator, stop: threading.Event):
    """Keep the tray icon in step with the status event log."""
    cursor = events.cursor
    while not stop.is_set():
        pending = events.wait(cursor, timeout=1.0)
        message = None
        for event in pending:
            cursor = event.seq
            if event.source == "session" and event.message:
                message = event.message
        if recorder.is_recording():
            state = "recording"
        elif orchestrator.is_busy():
            state = "processing"
        else:
            state = "idle"
        tray.update_state(state, message)


def main():
    config.RECORDINGS_DIR.mkdir(parents=True, exist_ok=True)

    try:
        config.PORT = find_available_port(config.PORT, config.PORT + 20)
    except RuntimeError as e:
        logger.error(str(e))
        sys.exit(1)

    events = EventChannel()
    history = HistoryStore(config.HISTORY_PATH)
    settings = SettingsStore(config.SETTINGS_PATH)
    recorder = AudioRecorder(config.RECORDINGS_DIR, events=events)
    orchestrator = SessionOrchestrator(
        recorder,
        Transcriber(events=events),
        Summarizer(events=events),
        history,
        settings,
        events,
    )
    orchestrator.recover_interrupted()
    app = create_app(orchestrator, recorder, history, settings, events)
    server = uvicorn.Server(uvicorn.Config(app, host=config.HOST, port=config.PORT, log_level="warning"))

    api = f"http://{config.HOST}:{config.PORT}/api"
    logger.info("MeetScribe API on %s (docs at /docs)", api)

    if not config.SHOW_TRAY:
        try:
            server.run()
        finally:
            orchestrator.shutdown()
            recorder.terminate()
        return

    stopping = threading.Event()

    # Tray actions go through the API so the orchestrator sees every transition
    def toggle_recording():
        action = "stop" if recorder.is_recording() else "start"
        response = requests.post(f"{api}/recording/{action}", json={}, timeout=30)
        if not response.ok:
            logger.warning("Could not %s recording: %s", action, response.json().get("detail"))

    def cancel_processing():
        requests.post(f"{api}/session/cancel", timeout=10)

    def shutdown():
        if stopping.is_set():
            return
        stopping.set()
        logger.info("Shutting down MeetScribe...")
        orchestrator.shutdown()
        recorder.terminate()
        server.should_exit = True

    tray = TrayIcon(on_toggle_recording=toggle_recording, on_cancel=cancel_processing, on_quit=shutdown)

    threading.Thread(target=server.run, daemon=True).start()
    threading.Thread(target=follow_events, args=(events, tray, recorder, orchestrator, stopping),
                     daemon=True).start()

    # Tray runs on the main thread until Quit
    try:
        tray.run()
    except KeyboardInterrupt:
        pass
    finally:
        shutdown()


if __name__ == "__main__":
    main()
