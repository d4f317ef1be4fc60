import json
import logging
import os
import threading
from pathlib import Path

import pydantic

from errors import PersistenceError
from storage.models import SessionRecord

logger = logging.getLogger(__name__)


class HistoryStore:
    """Session history kept as one JSON array on disk.

    Every write rewrites the whole collection (read, mutate, write through a
    temp file). A missing or corrupt file reads as an empty history.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._cache: list[SessionRecord] | None = None

    def _read_file(self) -> list[SessionRecord]:
        if not self.path.exists():
            logger.debug("No history file at %s, starting empty", self.path)
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, list):
                raise ValueError("history root is not a list")
            return [SessionRecord.model_validate(item) for item in data]
        except (OSError, ValueError, pydantic.ValidationError) as e:
            logger.warning("History file %s is unreadable or corrupt, treating as empty: %s", self.path, e)
            return []

    def _write_file(self, records: list[SessionRecord]):
        payload = [r.model_dump(mode="json") for r in records]
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceError(f"Failed to save history: {e}") from e

    def load(self, force_reload: bool = False) -> list[SessionRecord]:
        with self._lock:
            if self._cache is None or force_reload:
                self._cache = self._read_file()
            return [r.model_copy(deep=True) for r in self._cache]

    def _save(self, records: list[SessionRecord]):
        self._write_file(records)
        self._cache = records

    def add(self, record: SessionRecord):
        with self._lock:
            records = self.load()
            records.append(record.model_copy(deep=True))
            self._save(records)

    def update(self, record: SessionRecord) -> bool:
        with self._lock:
            records = self.load()
            for idx, existing in enumerate(records):
                if existing.id == record.id:
                    records[idx] = record.model_copy(deep=True)
                    self._save(records)
                    return True
            return False

    def delete(self, record_id: str) -> bool:
        with self._lock:
            records = self.load()
            remaining = [r for r in records if r.id != record_id]
            if len(remaining) == len(records):
                return False
            self._save(remaining)
            return True

    def get(self, record_id: str) -> SessionRecord | None:
        with self._lock:
            for record in self.load():
                if record.id == record_id:
                    return record
            return None

    def list(self, newest_first: bool = False) -> list[SessionRecord]:
        records = self.load()
        if newest_first:
            records.sort(key=lambda r: r.recording_date, reverse=True)
        return records
