"""
End-to-end tests for the session orchestrator with fake collaborators.
"""

import asyncio
import shutil
from pathlib import Path

import pytest

from conftest import SUMMARY, FakeBackend, FakeSummarizer, FakeTranscriber, pcm_tone
from errors import (
    AlreadyRecordingError,
    DeviceError,
    EmptyResultError,
    ExportError,
    MixError,
    ProviderError,
    SessionNotFoundError,
    ValidationError,
)
from processing.session import SessionOrchestrator
from recorder import audio_capture
from recorder.audio_capture import AudioRecorder
from storage.history import HistoryStore
from storage.models import RecordingSource, SessionRecord, Stage
from storage.settings import SettingsStore


class Harness:
    def __init__(self, temp_dir, events, transcriber=None, summarizer=None, exporter=None,
                 save_directory=True, backend=None):
        self.backend = backend or FakeBackend()
        self.recorder = AudioRecorder(temp_dir / "recordings", events=events, backend=self.backend)
        self.transcriber = transcriber or FakeTranscriber()
        self.summarizer = summarizer or FakeSummarizer()
        self.history = HistoryStore(temp_dir / "history.json")
        self.settings = SettingsStore(temp_dir / "settings.json")
        self.export_dir = temp_dir / "summaries"
        self.settings.update(
            transcription_api_key="tk",
            summarization_api_key="sk",
            save_directory=str(self.export_dir) if save_directory else None,
            recording_source=RecordingSource.MICROPHONE,
        )
        kwargs = {"exporter": exporter} if exporter else {}
        self.orchestrator = SessionOrchestrator(self.recorder, self.transcriber, self.summarizer,
                                                self.history, self.settings, events, **kwargs)

    async def record(self, seconds=0.1):
        record = await self.orchestrator.start_recording()
        self.backend.streams["mic"].push(pcm_tone(seconds, 44100, 2))
        await self.orchestrator.stop_recording()
        return record

    async def record_and_wait(self):
        await self.record()
        return await self.orchestrator.wait()


@pytest.fixture
def harness(temp_dir, events):
    return Harness(temp_dir, events)


class TestSessionPipeline:
    """Recording through to an exported summary."""

    def test_full_session_completes(self, harness, events):
        """A recorded session ends complete with transcript, summary and export."""
        final = asyncio.run(harness.record_and_wait())

        assert final.stage is Stage.COMPLETE
        assert final.transcript == "Alice: we shipped."
        assert final.ai_summary == SUMMARY
        assert final.meeting_name == "Weekly Sync"
        assert final.duration_secs == pytest.approx(0.1, abs=0.01)
        assert final.error_message is None
        saved = Path(final.saved_file_path)
        assert saved.parent == harness.export_dir
        assert saved.read_text(encoding="utf-8") == SUMMARY
        assert harness.transcriber.calls == [(final.recording_location, "tk")]
        assert harness.summarizer.calls == [("Alice: we shipped.", "sk")]
        assert not harness.orchestrator.is_busy()

    def test_stage_changes_are_persisted_in_order(self, harness, events):
        """Session events follow the stage order."""
        final = asyncio.run(harness.record_and_wait())

        stages = [e.status for e in events.since(0) if e.source == "session" and e.session_id == final.id]
        ordered = list(dict.fromkeys(stages))
        assert ordered == ["recording", "processing", "transcribing", "summarizing", "complete"]
        assert harness.history.get(final.id).stage is Stage.COMPLETE

    def test_without_save_directory(self, temp_dir, events):
        """No configured directory means no export, still complete."""
        harness = Harness(temp_dir, events, save_directory=False)

        final = asyncio.run(harness.record_and_wait())

        assert final.stage is Stage.COMPLETE
        assert final.saved_file_path is None

    def test_transcription_failure(self, temp_dir, events):
        """A failed transcription ends in error with no transcript."""
        harness = Harness(temp_dir, events, transcriber=FakeTranscriber(error=ProviderError("boom")))

        final = asyncio.run(harness.record_and_wait())

        assert final.stage is Stage.ERROR
        assert final.transcript is None
        assert final.error_message.startswith("Transcription failed")
        assert "boom" in final.error_message
        assert harness.summarizer.calls == []
        assert not harness.orchestrator.is_busy()

    def test_summary_failure_keeps_transcript(self, temp_dir, events):
        """A failed summary leaves the stored transcript in place."""
        harness = Harness(temp_dir, events, summarizer=FakeSummarizer(error=EmptyResultError("nothing")))

        final = asyncio.run(harness.record_and_wait())

        assert final.stage is Stage.ERROR
        assert final.transcript == "Alice: we shipped."
        assert final.ai_summary is None
        assert final.error_message.startswith("Summary generation failed")

    def test_export_failure_still_completes(self, temp_dir, events):
        """Export problems are reported but do not fail the session."""
        def failing_exporter(*args):
            raise ExportError("disk full")

        harness = Harness(temp_dir, events, exporter=failing_exporter)

        final = asyncio.run(harness.record_and_wait())

        assert final.stage is Stage.COMPLETE
        assert final.saved_file_path is None
        assert "disk full" in events.latest("session").message

    def test_cancel_processing(self, temp_dir, events):
        """Cancelling marks the session as failed and frees the slot."""
        harness = Harness(temp_dir, events, transcriber=FakeTranscriber(block=True))

        async def scenario():
            await harness.record()
            await asyncio.sleep(0.05)
            assert harness.orchestrator.cancel()
            return await harness.orchestrator.wait()

        final = asyncio.run(scenario())

        assert final.stage is Stage.ERROR
        assert "cancelled" in final.error_message
        assert not harness.orchestrator.is_busy()
        assert not harness.orchestrator.cancel()


class TestSessionControl:
    """Single-session rule and recording errors."""

    def test_second_start_refused(self, harness):
        """Only one session may record at a time."""
        async def scenario():
            await harness.orchestrator.start_recording()
            with pytest.raises(AlreadyRecordingError):
                await harness.orchestrator.start_recording()
            await harness.orchestrator.stop_recording()
            await harness.orchestrator.wait()

        asyncio.run(scenario())

    def test_start_refused_while_processing(self, temp_dir, events):
        """A new recording waits until the previous session finishes."""
        harness = Harness(temp_dir, events, transcriber=FakeTranscriber(block=True))

        async def scenario():
            await harness.record()
            with pytest.raises(AlreadyRecordingError):
                await harness.orchestrator.start_recording()
            harness.orchestrator.cancel()
            await harness.orchestrator.wait()

        asyncio.run(scenario())

    def test_device_failure_creates_no_record(self, temp_dir, events):
        """A capture that cannot start leaves no history entry."""
        harness = Harness(temp_dir, events, backend=FakeBackend(fail_open={"mic"}))

        with pytest.raises(DeviceError):
            asyncio.run(harness.orchestrator.start_recording())

        assert harness.history.load() == []
        assert not harness.orchestrator.is_busy()

    def test_stop_without_recording(self, harness):
        """Stopping with nothing recording is a validation error."""
        with pytest.raises(ValidationError):
            asyncio.run(harness.orchestrator.stop_recording())

    def test_recording_record_is_stored_immediately(self, harness):
        """The session is in the history as soon as recording starts."""
        async def scenario():
            record = await harness.orchestrator.start_recording(RecordingSource.MICROPHONE)
            stored = harness.history.get(record.id)
            await harness.orchestrator.stop_recording()
            await harness.orchestrator.wait()
            return stored

        stored = asyncio.run(scenario())

        assert stored.stage is Stage.RECORDING
        assert stored.recording_location.endswith(".wav")


class TestRetries:
    """Manual re-runs of failed network stages."""

    def test_retry_transcription(self, temp_dir, events):
        """A failed transcription can be retried to completion."""
        transcriber = FakeTranscriber(error=ProviderError("boom"))
        harness = Harness(temp_dir, events, transcriber=transcriber)

        async def scenario():
            failed = await harness.record_and_wait()
            transcriber.error = None
            await harness.orchestrator.retry_transcription(failed.id)
            return await harness.orchestrator.wait()

        final = asyncio.run(scenario())

        assert final.stage is Stage.COMPLETE
        assert final.error_message is None
        assert len(transcriber.calls) == 2

    def test_retry_summary_skips_transcription(self, temp_dir, events):
        """Retrying the summary reuses the stored transcript."""
        summarizer = FakeSummarizer(error=ProviderError("down"))
        harness = Harness(temp_dir, events, summarizer=summarizer)

        async def scenario():
            failed = await harness.record_and_wait()
            summarizer.error = None
            await harness.orchestrator.retry_summary(failed.id)
            return await harness.orchestrator.wait()

        final = asyncio.run(scenario())

        assert final.stage is Stage.COMPLETE
        assert len(harness.transcriber.calls) == 1
        assert len(summarizer.calls) == 2

    def test_retry_unknown_session(self, harness):
        """Unknown ids are reported as not found."""
        with pytest.raises(SessionNotFoundError):
            asyncio.run(harness.orchestrator.retry_summary("missing"))

    def test_retry_completed_session_refused(self, harness):
        """Completed sessions are not re-run."""
        async def scenario():
            final = await harness.record_and_wait()
            with pytest.raises(ValidationError):
                await harness.orchestrator.retry_transcription(final.id)

        asyncio.run(scenario())

    def test_retry_summary_without_transcript(self, temp_dir, events):
        """A session without transcript cannot be summarized."""
        harness = Harness(temp_dir, events, transcriber=FakeTranscriber(error=ProviderError("boom")))

        async def scenario():
            failed = await harness.record_and_wait()
            with pytest.raises(ValidationError):
                await harness.orchestrator.retry_summary(failed.id)

        asyncio.run(scenario())


class TestRecoverableFailures:
    """Failures around capture leave a retryable record and a free slot."""

    def test_unwritable_recordings_dir_frees_slot(self, harness):
        """A capture file that cannot be created does not block later sessions."""
        shutil.rmtree(harness.recorder.output_dir)

        with pytest.raises(DeviceError):
            asyncio.run(harness.orchestrator.start_recording(RecordingSource.MICROPHONE))

        assert not harness.orchestrator.is_busy()
        assert harness.history.load() == []

        harness.recorder.output_dir.mkdir()
        final = asyncio.run(harness.record_and_wait())
        assert final.stage is Stage.COMPLETE

    def test_mix_failure_keeps_microphone_recording(self, harness, monkeypatch):
        """When mixing fails the record points at the captured microphone file."""
        def broken_mix(*args):
            raise RuntimeError("codec exploded")

        monkeypatch.setattr(audio_capture, "mix_sources", broken_mix)

        async def scenario():
            record = await harness.orchestrator.start_recording(RecordingSource.BOTH)
            harness.backend.streams["mic"].push(pcm_tone(0.1, 44100, 2))
            harness.backend.streams["system"].push(pcm_tone(0.1, 48000, 2))
            with pytest.raises(MixError):
                await harness.orchestrator.stop_recording()
            return record

        record = asyncio.run(scenario())

        stored = harness.history.get(record.id)
        assert stored.stage is Stage.ERROR
        assert Path(stored.recording_location).name.startswith("Microphone_")
        assert Path(stored.recording_location).exists()
        assert harness.backend.streams["mic"].closed and harness.backend.streams["system"].closed
        assert not harness.orchestrator.is_busy()

        async def retry():
            await harness.orchestrator.retry_transcription(record.id)
            return await harness.orchestrator.wait()

        assert asyncio.run(retry()).stage is Stage.COMPLETE

    def test_shutdown_while_recording(self, harness):
        """Closing the app mid-recording keeps the audio and marks the session failed."""
        async def start():
            record = await harness.orchestrator.start_recording()
            harness.backend.streams["mic"].push(pcm_tone(0.1, 44100, 2))
            return record

        record = asyncio.run(start())

        harness.orchestrator.shutdown()

        stored = harness.history.get(record.id)
        assert stored.stage is Stage.ERROR
        assert "Application closed" in stored.error_message
        assert stored.duration_secs == pytest.approx(0.1, abs=0.01)
        assert Path(stored.recording_location).exists()
        assert not harness.recorder.is_recording()
        assert not harness.orchestrator.is_busy()

    def test_shutdown_when_idle(self, harness):
        """Shutdown with no recording touches nothing."""
        harness.orchestrator.shutdown()
        assert harness.history.load() == []

    def test_recover_interrupted_sessions(self, harness):
        """Sessions left mid-pipeline by a previous run are marked failed."""
        stuck = SessionRecord(stage=Stage.TRANSCRIBING, recording_location="/tmp/a.wav")
        done = SessionRecord(stage=Stage.COMPLETE)
        harness.history.add(stuck)
        harness.history.add(done)

        assert harness.orchestrator.recover_interrupted() == 1

        assert harness.history.get(stuck.id).stage is Stage.ERROR
        assert harness.history.get(done.id).stage is Stage.COMPLETE
