import asyncio
import logging

from errors import (
    AlreadyRecordingError,
    DeviceError,
    MeetScribeError,
    MixError,
    OperationCancelledError,
    PersistenceError,
    SessionNotFoundError,
    ValidationError,
)
from events import EventChannel
from processing.exporter import save_markdown
from processing.summarizer import Summarizer, derive_meeting_name
from processing.transcriber import Transcriber
from recorder.audio_capture import AudioRecorder
from storage.history import HistoryStore
from storage.models import AppSettings, RecordingSource, SessionRecord, Stage
from storage.settings import SettingsStore

logger = logging.getLogger(__name__)

FAILURE_PREFIX = {
    Stage.RECORDING: "Recording failed",
    Stage.PROCESSING: "Processing failed",
    Stage.TRANSCRIBING: "Transcription failed",
    Stage.SUMMARIZING: "Summary generation failed",
}


class SessionOrchestrator:
    """Drives one session from recording to an exported summary.

    Stopping a recording starts transcription, a transcript starts
    summarization, and every stage change is written to the history before
    the next stage begins. Only one session may be active at a time.
    """

    def __init__(self, recorder: AudioRecorder, transcriber: Transcriber, summarizer: Summarizer,
                 history: HistoryStore, settings: SettingsStore, events: EventChannel,
                 exporter=save_markdown):
        self._recorder = recorder
        self._transcriber = transcriber
        self._summarizer = summarizer
        self._history = history
        self._settings = settings
        self._events = events
        self._exporter = exporter
        self._active: SessionRecord | None = None
        self._task: asyncio.Task | None = None
        self._task_record_id: str | None = None
        self._cancel: asyncio.Event | None = None

    @property
    def active(self) -> SessionRecord | None:
        return self._active.model_copy() if self._active else None

    def is_busy(self) -> bool:
        return self._active is not None

    # -- Slot --

    def _claim(self, record: SessionRecord):
        if self._active is not None:
            raise AlreadyRecordingError(
                f"Session {self._active.id} is still {self._active.stage.value}"
            )
        self._active = record

    def _release(self, record: SessionRecord):
        if self._active is not None and self._active.id == record.id:
            self._active = None
            self._cancel = None

    # -- Persistence and notification --

    def _publish(self, record: SessionRecord, message: str):
        self._events.publish("session", record.stage.value, message,
                             path=record.recording_location, session_id=record.id)

    def _persist(self, record: SessionRecord):
        if not self._history.update(record):
            logger.warning("Session %s is no longer in the history, update ignored", record.id)

    def _advance(self, record: SessionRecord, stage: Stage, message: str):
        record.advance(stage)
        self._persist(record)
        logger.info("Session %s -> %s: %s", record.id, stage.value, message)
        self._publish(record, message)

    def _fail(self, record: SessionRecord, error: BaseException):
        prefix = FAILURE_PREFIX.get(record.stage, "Session failed")
        message = f"{prefix}: {error}"
        record.advance(Stage.ERROR)
        record.error_message = message
        logger.error("Session %s: %s", record.id, message)
        try:
            self._persist(record)
        except PersistenceError as e:
            logger.error("Could not persist error state of session %s: %s", record.id, e)
        self._publish(record, message)

    # -- Recording --

    async def start_recording(self, source: RecordingSource | str | None = None) -> SessionRecord:
        if source is None:
            source = self._settings.load().recording_source
        record = SessionRecord(source=RecordingSource(source))
        self._claim(record)
        try:
            path = await asyncio.to_thread(self._recorder.start, record.source)
        except BaseException:
            self._release(record)
            raise

        record.recording_location = str(path)
        try:
            self._history.add(record)
        except PersistenceError:
            await self._abort_capture()
            self._release(record)
            raise
        self._publish(record, f"Recording to {path.name}...")
        return record.model_copy()

    async def _abort_capture(self):
        try:
            await asyncio.to_thread(self._recorder.stop)
        except DeviceError as e:
            logger.error("Error stopping capture of an aborted session: %s", e)

    async def stop_recording(self) -> SessionRecord:
        record = self._active
        if record is None or record.stage is not Stage.RECORDING:
            raise ValidationError("No recording in progress")

        try:
            result = await asyncio.to_thread(self._recorder.stop)
            if result is None:
                raise DeviceError("Recorder was not running")
        except Exception as e:
            if isinstance(e, MixError) and e.fallback_path:
                record.recording_location = str(e.fallback_path)
            self._fail(record, e)
            self._release(record)
            raise

        record.recording_location = str(result.path)
        record.duration_secs = round(result.duration_secs, 2)
        try:
            self._advance(record, Stage.PROCESSING, f"Recording saved: {result.path.name}")
        except PersistenceError as e:
            self._fail(record, e)
            self._release(record)
            raise
        self._launch(record, transcribe=True)
        return record.model_copy()

    # -- Pipeline --

    def _launch(self, record: SessionRecord, transcribe: bool):
        settings = self._settings.load()
        self._cancel = asyncio.Event()
        self._task = asyncio.create_task(self._run(record, settings, transcribe, self._cancel))
        self._task_record_id = record.id
        self._task.add_done_callback(lambda task: self._on_task_done(record, task))

    def _on_task_done(self, record: SessionRecord, task: asyncio.Task):
        # A task cancelled before its first step never enters _run
        if task.cancelled() and record.stage is not Stage.ERROR:
            self._fail(record, OperationCancelledError("Processing cancelled"))
        self._release(record)

    async def _run(self, record: SessionRecord, settings: AppSettings, transcribe: bool,
                   cancel: asyncio.Event) -> SessionRecord:
        try:
            if transcribe:
                await self._transcribe_stage(record, settings, cancel)
            await self._summarize_stage(record, settings, cancel)
        except MeetScribeError as e:
            self._fail(record, e)
        except asyncio.CancelledError:
            self._fail(record, OperationCancelledError("Processing cancelled"))
            raise
        except Exception as e:
            logger.exception("Unexpected error processing session %s", record.id)
            self._fail(record, e)
        finally:
            self._release(record)
        return record

    async def _transcribe_stage(self, record: SessionRecord, settings: AppSettings, cancel: asyncio.Event):
        self._advance(record, Stage.TRANSCRIBING, "Transcribing recording...")
        transcript = await self._transcriber.transcribe(
            record.recording_location, settings.transcription_api_key, cancel=cancel
        )
        record.transcript = transcript
        self._persist(record)
        self._publish(record, "Transcription completed! Generating AI summary...")

    async def _summarize_stage(self, record: SessionRecord, settings: AppSettings, cancel: asyncio.Event):
        self._advance(record, Stage.SUMMARIZING, "Generating AI summary...")
        summary = await self._summarizer.summarize(
            record.transcript, settings.summarization_api_key, cancel=cancel
        )
        record.ai_summary = summary
        record.meeting_name = derive_meeting_name(summary, record.recording_date)

        message = "AI summary generated successfully!"
        if settings.save_directory:
            try:
                saved = self._exporter(summary, record.meeting_name, settings.save_directory,
                                       record.recording_date)
            except MeetScribeError as e:
                logger.warning("Export of session %s failed: %s", record.id, e)
                message = f"Failed to save summary: {e}"
            else:
                record.saved_file_path = str(saved)
                message = f"Summary saved to {saved.name}"
        self._advance(record, Stage.COMPLETE, message)

    # -- Manual retries --

    def _load_for_retry(self, record_id: str) -> SessionRecord:
        record = self._history.get(record_id)
        if record is None:
            raise SessionNotFoundError(f"Session {record_id} not found")
        if self._active is not None and self._active.id == record_id:
            raise AlreadyRecordingError(f"Session {record_id} is already being processed")
        if record.stage in (Stage.RECORDING, Stage.COMPLETE):
            raise ValidationError(f"Session {record_id} is {record.stage.value}, nothing to retry")
        return record

    async def retry_transcription(self, record_id: str) -> SessionRecord:
        record = self._load_for_retry(record_id)
        if not record.recording_location:
            raise ValidationError(f"Session {record_id} has no recording")
        if not record.stage.can_advance(Stage.TRANSCRIBING):
            raise ValidationError(f"Session {record_id} is already past transcription")
        self._claim(record)
        self._launch(record, transcribe=True)
        return record.model_copy()

    async def retry_summary(self, record_id: str) -> SessionRecord:
        record = self._load_for_retry(record_id)
        if not record.transcript:
            raise ValidationError(f"Session {record_id} has no transcript")
        self._claim(record)
        self._launch(record, transcribe=False)
        return record.model_copy()

    # -- Control --

    def cancel(self) -> bool:
        task = self._task
        if task is None or task.done():
            return False
        if self._cancel is not None:
            self._cancel.set()
        task.cancel()
        return True

    async def wait(self) -> SessionRecord | None:
        task = self._task
        if task is None:
            return None
        await asyncio.wait({task})
        return self._history.get(self._task_record_id)

    def shutdown(self):
        """Finalize an in-flight recording before the process exits.

        Called from outside the event loop. The record is kept as ``error`` so
        that transcription can be retried on the next start.
        """
        record = self._active
        if record is None or record.stage is not Stage.RECORDING:
            return
        try:
            result = self._recorder.stop()
        except MixError as e:
            result = None
            if e.fallback_path:
                record.recording_location = str(e.fallback_path)
        except DeviceError as e:
            result = None
            logger.error("Error stopping capture on shutdown: %s", e)
        if result is not None:
            record.recording_location = str(result.path)
            record.duration_secs = round(result.duration_secs, 2)
        self._fail(record, OperationCancelledError("Application closed"))
        self._release(record)

    def recover_interrupted(self) -> int:
        """Mark records left mid-pipeline by a previous run as failed."""
        recovered = 0
        for record in self._history.list():
            if record.stage in (Stage.COMPLETE, Stage.ERROR):
                continue
            if self._active is not None and self._active.id == record.id:
                continue
            self._fail(record, OperationCancelledError("Interrupted before finishing"))
            recovered += 1
        if recovered:
            logger.info("Marked %d interrupted session(s) as failed", recovered)
        return recovered
