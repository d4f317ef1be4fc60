from fastapi import FastAPI

from events import EventChannel
from processing.session import SessionOrchestrator
from recorder.audio_capture import AudioRecorder
from server.routes import create_router
from storage.history import HistoryStore
from storage.settings import SettingsStore


def create_app(orchestrator: SessionOrchestrator, recorder: AudioRecorder, history: HistoryStore,
               settings: SettingsStore, events: EventChannel) -> FastAPI:
    app = FastAPI(title="MeetScribe", version="0.1.0")

    router = create_router(orchestrator, recorder, history, settings, events)
    app.include_router(router, prefix="/api")

    return app
