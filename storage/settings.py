import json
import logging
import os
import threading
from pathlib import Path

import pydantic

import config
from errors import PersistenceError
from storage.models import AppSettings, RecordingSource

logger = logging.getLogger(__name__)


def default_settings() -> AppSettings:
    try:
        source = RecordingSource(config.DEFAULT_RECORDING_SOURCE)
    except ValueError:
        source = RecordingSource.BOTH
    return AppSettings(
        transcription_api_key=config.TRANSCRIPTION_API_KEY,
        summarization_api_key=config.SUMMARY_API_KEY,
        save_directory=config.SAVE_DIRECTORY or None,
        recording_source=source,
    )


class SettingsStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._cached: AppSettings | None = None

    def load(self) -> AppSettings:
        with self._lock:
            if self._cached is None:
                self._cached = self._read_file()
            return self._cached.model_copy()

    def _read_file(self) -> AppSettings:
        if not self.path.exists():
            logger.info("No settings file at %s, using defaults", self.path)
            return default_settings()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return AppSettings.model_validate({**default_settings().model_dump(), **data})
        except (OSError, ValueError, TypeError, pydantic.ValidationError) as e:
            logger.warning("Settings file %s is corrupt, using defaults: %s", self.path, e)
            return default_settings()

    def save(self, settings: AppSettings):
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with self._lock:
            try:
                tmp_path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")
                os.replace(tmp_path, self.path)
            except OSError as e:
                raise PersistenceError(f"Failed to save settings: {e}") from e
            self._cached = settings.model_copy()

    def update(self, **fields) -> AppSettings:
        settings = self.load().model_copy(update=fields)
        settings = AppSettings.model_validate(settings.model_dump())
        self.save(settings)
        return settings
