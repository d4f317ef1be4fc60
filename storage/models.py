import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class RecordingSource(str, Enum):
    MICROPHONE = "microphone"
    SYSTEM_AUDIO = "system_audio"
    BOTH = "both"


class Stage(str, Enum):
    RECORDING = "recording"
    PROCESSING = "processing"
    TRANSCRIBING = "transcribing"
    SUMMARIZING = "summarizing"
    COMPLETE = "complete"
    ERROR = "error"

    def can_advance(self, target: "Stage") -> bool:
        if target is Stage.ERROR:
            return True
        if self is Stage.ERROR:
            # Manual retry re-enters one of the network stages
            return target in (Stage.TRANSCRIBING, Stage.SUMMARIZING)
        if self is Stage.COMPLETE:
            return False
        return _STAGE_ORDER.index(target) >= _STAGE_ORDER.index(self)


_STAGE_ORDER = [
    Stage.RECORDING,
    Stage.PROCESSING,
    Stage.TRANSCRIBING,
    Stage.SUMMARIZING,
    Stage.COMPLETE,
]


class SessionRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), frozen=True)
    recording_date: datetime = Field(default_factory=datetime.now)
    meeting_name: str | None = None
    recording_location: str | None = None
    transcript: str | None = None
    ai_summary: str | None = None
    saved_file_path: str | None = None
    stage: Stage = Stage.RECORDING
    source: RecordingSource | None = None
    duration_secs: float | None = None
    error_message: str | None = None

    def advance(self, stage: Stage) -> None:
        if not self.stage.can_advance(stage):
            raise ValueError(f"Cannot move session {self.id} from {self.stage.value} to {stage.value}")
        self.stage = stage
        if stage is not Stage.ERROR:
            self.error_message = None


class AppSettings(BaseModel):
    transcription_api_key: str = ""
    summarization_api_key: str = ""
    save_directory: str | None = None
    recording_source: RecordingSource = RecordingSource.BOTH
