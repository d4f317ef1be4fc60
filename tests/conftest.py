"""
Pytest fixtures for MeetScribe tests.
"""

import asyncio
import sys
import tempfile
from pathlib import Path

import pytest

# Modules live at the repository root
sys.path.insert(0, str(Path(__file__).parent.parent))

from events import EventChannel  # noqa: E402


class FakeStream:
    """Stands in for a PortAudio callback stream; tests push buffers by hand."""

    def __init__(self, device, fmt, callback):
        self.device = device
        self.fmt = fmt
        self.callback = callback
        self.stopped = False
        self.closed = False

    def push(self, data: bytes):
        self.callback(data)

    def stop_stream(self):
        self.stopped = True

    def close(self):
        self.closed = True


class FakeBackend:
    """Device backend with one microphone and one loopback device."""

    MIC = {"index": 1, "name": "Test Microphone", "maxInputChannels": 2,
           "maxOutputChannels": 0, "defaultSampleRate": 44100.0, "isLoopback": False}
    LOOPBACK = {"index": 2, "name": "Speakers [Loopback]", "maxInputChannels": 2,
                "maxOutputChannels": 0, "defaultSampleRate": 48000.0, "isLoopback": True}

    def __init__(self, mic=True, loopback=True, fail_open=()):
        self.mic = self.MIC if mic else None
        self.loopback = self.LOOPBACK if loopback else None
        self.fail_open = set(fail_open)
        self.streams: dict[str, FakeStream] = {}
        self.terminated = False

    def list_devices(self):
        return [d for d in (self.mic, self.loopback) if d]

    def find_microphone(self, index=None):
        return self.mic

    def find_loopback(self, index=None):
        return self.loopback

    def open_stream(self, device, fmt, callback):
        kind = "system" if device.get("isLoopback") else "mic"
        if kind in self.fail_open:
            raise OSError(f"cannot open {device['name']}")
        stream = FakeStream(device, fmt, callback)
        self.streams[kind] = stream
        return stream

    def terminate(self):
        self.terminated = True


SUMMARY = "# Weekly Sync\n\n## TL;DR\nShipped.\n\n## Next Steps\n- Deploy\n\n## ToDos\n- Notes"


class FakeTranscriber:
    """Transcriber double; can fail or block until cancelled."""

    def __init__(self, text="Alice: we shipped.", error=None, block=False):
        self.text = text
        self.error = error
        self.block = block
        self.calls = []

    async def transcribe(self, audio_path, api_key, cancel=None):
        self.calls.append((audio_path, api_key))
        if self.block:
            await asyncio.sleep(30)
        if self.error:
            raise self.error
        return self.text


class FakeSummarizer:
    def __init__(self, summary=SUMMARY, error=None):
        self.summary = summary
        self.error = error
        self.calls = []

    async def summarize(self, transcript, api_key, cancel=None):
        self.calls.append((transcript, api_key))
        if self.error:
            raise self.error
        return self.summary


def pcm_tone(seconds: float, rate: int, channels: int, amplitude: int = 8000) -> bytes:
    """Square wave as interleaved 16-bit little-endian PCM."""
    frames = int(seconds * rate)
    samples = bytearray()
    for i in range(frames):
        value = amplitude if (i // 50) % 2 == 0 else -amplitude
        samples += value.to_bytes(2, "little", signed=True) * channels
    return bytes(samples)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def events():
    return EventChannel()


@pytest.fixture
def fake_backend():
    return FakeBackend()
