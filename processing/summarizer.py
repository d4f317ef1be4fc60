import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum

import httpx

import config
from errors import (
    EmptyResultError,
    MalformedResponseError,
    MeetScribeError,
    OperationCancelledError,
    ProviderError,
    ValidationError,
)
from events import EventChannel
from processing.prompts import CONSOLIDATION_USER_PROMPT, SUMMARY_SYSTEM_PROMPT, SUMMARY_USER_PROMPT

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 100_000


class SummaryStatus(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


def derive_meeting_name(summary: str, recording_date: datetime) -> str:
    """Meeting name from the first top-level heading of a summary.

    The first line starting with ``#`` that is not a ``##`` heading wins; when
    there is none (or it is empty) the name is ``Meeting YYYY-MM-DD HH:MM``.
    """
    name = ""
    for line in (summary or "").splitlines():
        stripped = line.strip()
        if stripped.startswith("#") and "##" not in line:
            name = stripped.lstrip("#").strip()
            break
    return name or f"Meeting {recording_date:%Y-%m-%d %H:%M}"


class Summarizer:
    def __init__(self, base_url: str = config.SUMMARY_BASE_URL,
                 events: EventChannel | None = None,
                 model: str = config.SUMMARY_MODEL,
                 temperature: float = config.SUMMARY_TEMPERATURE,
                 max_tokens: int = config.SUMMARY_MAX_TOKENS,
                 client: httpx.AsyncClient | None = None,
                 timeout: float = config.SUMMARY_TIMEOUT_SECS):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._events = events
        self._client = client
        self._status = SummaryStatus.IDLE

    @property
    def status(self) -> SummaryStatus:
        return self._status

    def _set_status(self, status: SummaryStatus, message: str | None = None):
        self._status = status
        if self._events is not None:
            self._events.publish("summarization", status.value, message)

    @asynccontextmanager
    async def _session(self):
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def summarize(self, transcript: str, api_key: str,
                        cancel: asyncio.Event | None = None) -> str:
        if self._status is SummaryStatus.ERROR:
            self._set_status(SummaryStatus.IDLE)

        try:
            if not transcript or not transcript.strip():
                raise ValidationError("Transcript cannot be empty")
            if not api_key or not api_key.strip():
                raise ValidationError("Summarization API key is not configured")

            self._set_status(SummaryStatus.GENERATING, "Generating AI summary...")
            async with self._session() as client:
                if len(transcript) > MAX_TRANSCRIPT_CHARS:
                    summary = await self._summarize_long(client, transcript, api_key, cancel)
                else:
                    summary = await self._call_llm(client, SUMMARY_USER_PROMPT.format(transcript=transcript),
                                                   api_key, cancel)
        except MeetScribeError as e:
            self._set_status(SummaryStatus.ERROR, f"Summary generation failed: {e}")
            raise
        except asyncio.CancelledError:
            self._set_status(SummaryStatus.ERROR, "Summary generation cancelled")
            raise

        self._set_status(SummaryStatus.COMPLETED, "Summary generated successfully")
        self._set_status(SummaryStatus.IDLE)
        return summary

    async def _summarize_long(self, client: httpx.AsyncClient, transcript: str, api_key: str,
                              cancel: asyncio.Event | None) -> str:
        # Split into chunks and summarize each, then consolidate
        chunks = [transcript[i: i + MAX_TRANSCRIPT_CHARS] for i in range(0, len(transcript), MAX_TRANSCRIPT_CHARS)]

        partial_summaries = []
        for idx, chunk in enumerate(chunks):
            logger.info("Summarizing part %d/%d...", idx + 1, len(chunks))
            self._set_status(SummaryStatus.GENERATING, f"Summarizing part {idx + 1}/{len(chunks)}...")
            partial = await self._call_llm(client, SUMMARY_USER_PROMPT.format(transcript=chunk), api_key, cancel)
            partial_summaries.append(partial)

        combined = "\n\n---\n\n".join(partial_summaries)
        self._set_status(SummaryStatus.GENERATING, "Consolidating partial summaries...")
        return await self._call_llm(client, CONSOLIDATION_USER_PROMPT.format(summaries=combined), api_key, cancel)

    async def _call_llm(self, client: httpx.AsyncClient, user_prompt: str, api_key: str,
                        cancel: asyncio.Event | None) -> str:
        if cancel is not None and cancel.is_set():
            raise OperationCancelledError("Summary generation cancelled")

        request_body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {api_key}"},
                json=request_body,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(f"Failed to call summarization API: {e}") from e

        try:
            data = response.json()
            choices = data["choices"]
            if not isinstance(choices, list):
                raise TypeError("'choices' is not a list")
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedResponseError(f"Failed to parse summarization response: {e}") from e

        message = choices[0].get("message") if choices and isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not content or not str(content).strip():
            raise EmptyResultError("Failed to get summary from summarization response")
        return str(content).strip()
