import json
import logging
import shutil
from pathlib import Path

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel

import config
from errors import (
    AlreadyRecordingError,
    DeviceError,
    PersistenceError,
    SessionNotFoundError,
    ValidationError,
)
from events import EventChannel
from processing.session import SessionOrchestrator
from recorder.audio_capture import AudioRecorder
from storage.history import HistoryStore
from storage.models import RecordingSource, SessionRecord
from storage.settings import SettingsStore

logger = logging.getLogger(__name__)


class StartRecordingRequest(BaseModel):
    source: RecordingSource | None = None


class UpdateSettingsRequest(BaseModel):
    transcription_api_key: str | None = None
    summarization_api_key: str | None = None
    save_directory: str | None = None
    recording_source: RecordingSource | None = None


def _session_summary(rec: SessionRecord) -> dict:
    return {
        "id": rec.id,
        "meeting_name": rec.meeting_name,
        "recording_date": rec.recording_date.isoformat(),
        "duration_secs": rec.duration_secs,
        "stage": rec.stage.value,
    }


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, SessionNotFoundError):
        return HTTPException(404, str(e))
    if isinstance(e, (ValidationError, AlreadyRecordingError)):
        return HTTPException(400, str(e))
    return HTTPException(500, str(e))


def _mask(key: str) -> str:
    if not key:
        return ""
    return "*" * max(0, len(key) - 4) + key[-4:]


def create_router(orchestrator: SessionOrchestrator, recorder: AudioRecorder, history: HistoryStore,
                  settings: SettingsStore, events: EventChannel) -> APIRouter:
    router = APIRouter()

    # -- Status --

    @router.get("/status")
    def get_status():
        active = orchestrator.active
        latest = {}
        for source in ("recording", "transcription", "summarization", "session"):
            event = events.latest(source)
            latest[source] = event.to_dict() if event else None
        return {
            "is_recording": recorder.is_recording(),
            "audio_level": recorder.level,
            "active_session_id": active.id if active else None,
            "active_stage": active.stage.value if active else None,
            "latest": latest,
        }

    # -- Devices --

    @router.get("/devices")
    def list_devices():
        try:
            devices = recorder.list_devices()
        except Exception as e:
            raise HTTPException(500, f"Could not list audio devices: {e}")
        loopback = [d for d in devices if d.get("isLoopback")]
        inputs = [d for d in devices if d["maxInputChannels"] > 0 and not d.get("isLoopback")]
        return {"loopback": loopback, "input": inputs}

    # -- Recording control --

    @router.post("/recording/start")
    async def start_recording(body: StartRecordingRequest = StartRecordingRequest()):
        if orchestrator.is_busy():
            raise HTTPException(400, "A session is already in progress")

        # Check disk space
        free = shutil.disk_usage(recorder.output_dir).free
        if free < config.MIN_FREE_DISK_BYTES:
            raise HTTPException(507, "Not enough disk space (less than 500MB)")

        try:
            rec = await orchestrator.start_recording(body.source)
        except (AlreadyRecordingError, DeviceError, PersistenceError) as e:
            raise _http_error(e)
        return {"id": rec.id, "stage": rec.stage.value, "recording_location": rec.recording_location}

    @router.post("/recording/stop")
    async def stop_recording():
        try:
            rec = await orchestrator.stop_recording()
        except (ValidationError, DeviceError, PersistenceError) as e:
            raise _http_error(e)
        return {"id": rec.id, "stage": rec.stage.value, "duration_secs": rec.duration_secs}

    @router.post("/session/cancel")
    async def cancel_session():
        return {"cancelled": orchestrator.cancel()}

    # -- Sessions --

    @router.get("/sessions")
    def list_sessions():
        return [_session_summary(r) for r in history.list(newest_first=True)]

    @router.get("/sessions/{session_id}")
    def get_session(session_id: str):
        rec = history.get(session_id)
        if not rec:
            raise HTTPException(404, "Session not found")
        result = rec.model_dump(mode="json")
        result["audio_url"] = f"/api/sessions/{rec.id}/audio" if rec.recording_location else None
        return result

    @router.get("/sessions/{session_id}/audio")
    def get_audio(session_id: str):
        rec = history.get(session_id)
        if not rec or not rec.recording_location:
            raise HTTPException(404, "Audio not found")
        audio_path = Path(rec.recording_location)
        if not audio_path.exists():
            raise HTTPException(404, "Audio file not found")
        return FileResponse(str(audio_path), media_type="audio/wav")

    @router.delete("/sessions/{session_id}")
    def delete_session(session_id: str):
        rec = history.get(session_id)
        if not rec:
            raise HTTPException(404, "Session not found")
        active = orchestrator.active
        if active and active.id == session_id:
            raise HTTPException(400, "Cannot delete the session in progress")

        # Only scratch audio is ours to remove; exported summaries stay
        if rec.recording_location:
            audio_path = Path(rec.recording_location)
            if audio_path.parent == recorder.output_dir and audio_path.exists():
                audio_path.unlink()

        try:
            history.delete(session_id)
        except PersistenceError as e:
            raise _http_error(e)
        return {"deleted": True}

    # -- Processing --

    @router.post("/sessions/{session_id}/transcribe")
    async def transcribe_session(session_id: str):
        try:
            rec = await orchestrator.retry_transcription(session_id)
        except (ValidationError, AlreadyRecordingError) as e:
            raise _http_error(e)
        return {"id": rec.id, "status": "transcribing"}

    @router.post("/sessions/{session_id}/summarize")
    async def summarize_session(session_id: str):
        try:
            rec = await orchestrator.retry_summary(session_id)
        except (ValidationError, AlreadyRecordingError) as e:
            raise _http_error(e)
        return {"id": rec.id, "status": "summarizing"}

    # -- Settings --

    @router.get("/settings")
    def get_settings():
        current = settings.load()
        return {
            "transcription_api_key": _mask(current.transcription_api_key),
            "summarization_api_key": _mask(current.summarization_api_key),
            "save_directory": current.save_directory,
            "recording_source": current.recording_source.value,
        }

    @router.put("/settings")
    def update_settings(body: UpdateSettingsRequest):
        # null clears the save directory; other fields keep their value
        changes = {
            key: value for key, value in body.model_dump(exclude_unset=True).items()
            if value is not None or key == "save_directory"
        }
        try:
            settings.update(**changes)
        except PersistenceError as e:
            raise _http_error(e)
        return get_settings()

    # -- Events --

    @router.get("/events")
    def list_events(since: int = 0):
        return {"cursor": events.cursor, "events": [e.to_dict() for e in events.since(since)]}

    @router.get("/events/stream")
    def stream_events(since: int = 0) -> StreamingResponse:
        def event_stream():
            cursor = since
            while True:
                pending = events.wait(cursor, timeout=15.0)
                for event in pending:
                    cursor = event.seq
                    yield f"data: {json.dumps(event.to_dict())}\n\n"
                if not pending:
                    yield ": keepalive\n\n"

        return StreamingResponse(event_stream(), media_type="text/event-stream")

    return router
