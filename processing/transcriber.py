import asyncio
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path

import httpx

import config
from errors import (
    EmptyResultError,
    MalformedResponseError,
    MeetScribeError,
    OperationCancelledError,
    PollTimeoutError,
    ProviderError,
    SubmissionError,
    UnknownStatusError,
    UploadError,
    ValidationError,
)
from events import EventChannel

logger = logging.getLogger(__name__)

PENDING_STATUSES = ("queued", "processing")


class TranscriptionStatus(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


async def _iter_file(path: Path, chunk_size: int):
    # Reads run in worker threads
    f = await asyncio.to_thread(open, path, "rb")
    try:
        while True:
            data = await asyncio.to_thread(f.read, chunk_size)
            if not data:
                break
            yield data
    finally:
        f.close()


def _check_cancelled(cancel: asyncio.Event | None):
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError("Transcription cancelled")


class Transcriber:
    """Upload -> submit -> poll against the speech-to-text provider."""

    def __init__(self, base_url: str = config.TRANSCRIPTION_BASE_URL,
                 events: EventChannel | None = None,
                 poll_interval: float = config.POLL_INTERVAL_SECS,
                 max_wait: float | None = config.POLL_MAX_WAIT_SECS,
                 language: str | None = config.TRANSCRIPTION_LANGUAGE,
                 client: httpx.AsyncClient | None = None,
                 timeout: float = config.UPLOAD_TIMEOUT_SECS,
                 chunk_size: int = config.UPLOAD_CHUNK_SIZE):
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.language = language
        self.timeout = timeout
        self.chunk_size = chunk_size
        self._events = events
        self._client = client
        self._status = TranscriptionStatus.IDLE

    @property
    def status(self) -> TranscriptionStatus:
        return self._status

    def _set_status(self, status: TranscriptionStatus, message: str | None = None,
                    elapsed: float | None = None):
        self._status = status
        if self._events is not None:
            self._events.publish("transcription", status.value, message, elapsed=elapsed)

    @asynccontextmanager
    async def _session(self):
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def transcribe(self, audio_path: str | Path, api_key: str,
                         cancel: asyncio.Event | None = None) -> str:
        if self._status is TranscriptionStatus.ERROR:
            self._set_status(TranscriptionStatus.IDLE)

        try:
            if not audio_path or not str(audio_path).strip():
                raise ValidationError("Audio file path cannot be empty")
            if not api_key or not api_key.strip():
                raise ValidationError("Transcription API key is not configured")
            audio_path = Path(audio_path)

            async with self._session() as client:
                _check_cancelled(cancel)
                self._set_status(TranscriptionStatus.UPLOADING, "Uploading audio file...")
                upload_url = await self._upload(client, audio_path, api_key)

                _check_cancelled(cancel)
                self._set_status(TranscriptionStatus.PROCESSING, "Submitting transcription request...")
                job_id = await self._submit(client, upload_url, api_key)

                self._set_status(TranscriptionStatus.PROCESSING, "Processing transcription...", elapsed=0.0)
                text = await self._poll(client, job_id, api_key, cancel)
        except MeetScribeError as e:
            self._set_status(TranscriptionStatus.ERROR, f"Transcription failed: {e}")
            raise
        except asyncio.CancelledError:
            self._set_status(TranscriptionStatus.ERROR, "Transcription cancelled")
            raise

        self._set_status(TranscriptionStatus.COMPLETED, "Transcription completed successfully")
        self._set_status(TranscriptionStatus.IDLE)
        return text

    def _headers(self, api_key: str) -> dict:
        return {"authorization": api_key}

    async def _upload(self, client: httpx.AsyncClient, audio_path: Path, api_key: str) -> str:
        try:
            size = audio_path.stat().st_size
        except OSError as e:
            raise UploadError(f"Audio file not found: {audio_path}") from e
        if size == 0:
            raise UploadError(f"Audio file is empty: {audio_path}")
        try:
            with open(audio_path, "rb"):
                pass
        except OSError as e:
            raise UploadError(f"Audio file is not readable: {e}") from e

        logger.info("Uploading %s (%.2f MB)", audio_path.name, size / (1024 * 1024))
        try:
            response = await client.post(
                f"{self.base_url}/upload",
                headers={**self._headers(api_key), "content-type": "application/octet-stream"},
                content=_iter_file(audio_path, self.chunk_size),
            )
            response.raise_for_status()
            upload_url = response.json().get("upload_url")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            raise UploadError(f"Failed to upload audio file: {e}") from e

        if not upload_url:
            raise UploadError("Failed to get upload URL from provider response")
        return upload_url

    async def _submit(self, client: httpx.AsyncClient, upload_url: str, api_key: str) -> str:
        payload = {"audio_url": upload_url}
        if self.language:
            payload["language_code"] = self.language
        try:
            response = await client.post(
                f"{self.base_url}/transcript",
                headers=self._headers(api_key),
                json=payload,
            )
            response.raise_for_status()
            job_id = response.json().get("id")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            raise SubmissionError(f"Failed to submit transcription request: {e}") from e

        if not job_id:
            raise SubmissionError("Failed to get transcript ID from provider response")
        logger.info("Transcription job created: %s", job_id)
        return str(job_id)

    async def _fetch_status(self, client: httpx.AsyncClient, job_id: str, api_key: str) -> dict:
        try:
            response = await client.get(f"{self.base_url}/transcript/{job_id}",
                                        headers=self._headers(api_key))
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(f"Failed to poll transcription status: {e}") from e
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Unparseable transcription status response: {e}") from e
        if not isinstance(data, dict):
            raise MalformedResponseError("Transcription status response is not an object")
        return data

    async def _poll(self, client: httpx.AsyncClient, job_id: str, api_key: str,
                    cancel: asyncio.Event | None) -> str:
        started = time.monotonic()
        polls = 0
        while True:
            _check_cancelled(cancel)
            data = await self._fetch_status(client, job_id, api_key)
            polls += 1
            status = str(data.get("status") or "").lower()

            if status == "completed":
                text = data.get("text")
                if not text or not str(text).strip():
                    raise EmptyResultError("Transcription completed but no text was returned")
                logger.info("Transcription %s completed after %d polls (%d chars)", job_id, polls, len(text))
                return text

            if status == "error":
                error = data.get("error") or "Unknown error occurred during transcription"
                raise ProviderError(f"Transcription provider error: {error}")

            if status not in PENDING_STATUSES:
                raise UnknownStatusError(f"Unknown transcription status: {status!r}")

            elapsed = time.monotonic() - started
            if self.max_wait is not None and elapsed >= self.max_wait:
                raise PollTimeoutError(f"Transcription not finished after {elapsed:.0f}s")
            self._set_status(TranscriptionStatus.PROCESSING,
                             f"Processing transcription... ({elapsed:.0f}s elapsed)", elapsed=elapsed)
            await self._wait_interval(cancel)

    async def _wait_interval(self, cancel: asyncio.Event | None):
        if cancel is None:
            await asyncio.sleep(self.poll_interval)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            return
        raise OperationCancelledError("Transcription cancelled")
