import logging
import struct
import threading
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

import config
from errors import AlreadyRecordingError, DeviceError, MixError
from events import EventChannel
from recorder.devices import PyAudioBackend, StreamFormat
from recorder.mixer import has_audio, mix_sources, open_wav_writer, wav_duration
from storage.models import RecordingSource

logger = logging.getLogger(__name__)


class RecordingStatus(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class CaptureResult:
    path: Path
    source: RecordingSource
    duration_secs: float
    mixed: bool = False


def peak_level(data: bytes) -> float:
    count = len(data) // 2
    if count == 0:
        return 0.0
    samples = struct.unpack(f"<{count}h", data[: count * 2])
    return min(1.0, max(abs(s) for s in samples) / 32768)


class _SourceWriter:
    """Appends the buffers delivered by one device callback to a WAV file."""

    def __init__(self, path: Path, fmt: StreamFormat, on_level):
        self.path = path
        self._on_level = on_level
        self._lock = threading.Lock()
        self._attached = True
        self._wf = open_wav_writer(path, fmt.rate, fmt.channels, fmt.sample_width)

    def feed(self, data: bytes):
        # Runs on the capture thread
        with self._lock:
            if not self._attached:
                return
            self._wf.writeframes(data)
        if data:
            self._on_level(peak_level(data))

    def detach(self):
        with self._lock:
            self._attached = False

    def close(self):
        with self._lock:
            self._attached = False
            self._wf.close()


class AudioRecorder:
    def __init__(self, output_dir: str | Path, events: EventChannel | None = None,
                 levels: EventChannel | None = None, backend=None,
                 mic_device_index: int | None = config.MIC_DEVICE_INDEX,
                 loopback_device_index: int | None = config.LOOPBACK_DEVICE_INDEX):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._events = events
        self._levels = levels
        self._backend = backend or PyAudioBackend()
        self._mic_device_index = mic_device_index
        self._loopback_device_index = loopback_device_index
        self._lock = threading.Lock()
        self._status = RecordingStatus.IDLE
        self._source: RecordingSource | None = None
        self._resources: ExitStack | None = None
        self._files: dict[str, Path] = {}
        self._output_path: Path | None = None
        self.level = 0.0

    @property
    def status(self) -> RecordingStatus:
        return self._status

    @property
    def current_path(self) -> Path | None:
        return self._output_path

    def is_recording(self) -> bool:
        return self._status is RecordingStatus.RECORDING

    def list_devices(self) -> list[dict]:
        return self._backend.list_devices()

    def _set_status(self, status: RecordingStatus, message: str | None = None):
        self._status = status
        if status is RecordingStatus.ERROR:
            logger.error("Recorder error: %s", message)
        else:
            logger.info("Recorder %s: %s", status.value, message)
        if self._events is not None:
            path = str(self._output_path) if self._output_path else None
            self._events.publish("recording", status.value, message, path=path)

    def _on_level(self, value: float):
        self.level = value
        if self._levels is not None:
            self._levels.publish("level", RecordingStatus.RECORDING.value, level=value)

    def _stream_format(self, kind: str, device: dict) -> StreamFormat:
        if kind == "mic":
            return StreamFormat(rate=config.MIC_SAMPLE_RATE, channels=config.MIC_CHANNELS,
                                sample_width=config.SAMPLE_WIDTH, buffer_ms=config.BUFFER_MS)
        # Loopback keeps the device's native mix format
        channels = int(device.get("maxInputChannels") or device.get("maxOutputChannels") or 2)
        return StreamFormat(rate=int(device["defaultSampleRate"]), channels=max(1, channels),
                            sample_width=config.SAMPLE_WIDTH, buffer_ms=config.BUFFER_MS)

    @staticmethod
    def _close_stream(stream):
        try:
            stream.stop_stream()
        finally:
            stream.close()

    def _open_source(self, stack: ExitStack, kind: str, path: Path):
        label = "microphone" if kind == "mic" else "system audio"
        try:
            if kind == "mic":
                device = self._backend.find_microphone(self._mic_device_index)
            else:
                device = self._backend.find_loopback(self._loopback_device_index)
        except Exception as e:
            raise DeviceError(f"Failed to query {label} device: {e}") from e
        if device is None:
            raise DeviceError(f"No {label} device found")

        fmt = self._stream_format(kind, device)
        try:
            writer = _SourceWriter(path, fmt, self._on_level)
        except OSError as e:
            raise DeviceError(f"Could not create {path.name}: {e}") from e
        stack.callback(writer.close)
        try:
            stream = self._backend.open_stream(device, fmt, writer.feed)
        except Exception as e:
            raise DeviceError(f"Could not open {label} stream on {device['name']}: {e}") from e
        stack.callback(self._close_stream, stream)
        # Unwinds first: the callback stops writing before the stream and file go away
        stack.callback(writer.detach)
        logger.info("%s: %s (%d Hz, %d ch)", label.capitalize(), device["name"], fmt.rate, fmt.channels)

    def _open_sources(self, source: RecordingSource, files: dict[str, Path]) -> ExitStack:
        with ExitStack() as stack:
            opened = 0
            for kind, path in files.items():
                try:
                    self._open_source(stack, kind, path)
                    opened += 1
                except DeviceError as e:
                    if source is not RecordingSource.BOTH:
                        raise
                    logger.warning("%s, that source will be silent", e)
                    if not path.exists():
                        try:
                            open_wav_writer(path, config.MIC_SAMPLE_RATE, config.MIC_CHANNELS).close()
                        except OSError as write_error:
                            raise DeviceError(f"Could not create {path.name}: {write_error}") from write_error
            if opened == 0:
                raise DeviceError("No audio device could be opened")
            return stack.pop_all()

    def start(self, source: RecordingSource = RecordingSource.MICROPHONE) -> Path:
        source = RecordingSource(source)
        with self._lock:
            if self._status in (RecordingStatus.RECORDING, RecordingStatus.STOPPING):
                raise AlreadyRecordingError("Recording is already in progress")

            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            files = {}
            if source in (RecordingSource.MICROPHONE, RecordingSource.BOTH):
                files["mic"] = self.output_dir / f"Microphone_{timestamp}.wav"
            if source in (RecordingSource.SYSTEM_AUDIO, RecordingSource.BOTH):
                files["system"] = self.output_dir / f"SystemAudio_{timestamp}.wav"
            if source is RecordingSource.BOTH:
                self._output_path = self.output_dir / f"Mixed_{timestamp}.wav"
            else:
                self._output_path = next(iter(files.values()))

            try:
                self._resources = self._open_sources(source, files)
            except DeviceError as e:
                self._set_status(RecordingStatus.ERROR, str(e))
                raise

            self._source = source
            self._files = files
            self.level = 0.0
            self._set_status(RecordingStatus.RECORDING, f"Recording to {self._output_path.name}")
            return self._output_path

    def stop(self) -> CaptureResult | None:
        with self._lock:
            if self._status is not RecordingStatus.RECORDING:
                return None
            resources, files, source = self._resources, self._files, self._source
            self._resources = None
            self._set_status(RecordingStatus.STOPPING, "Stopping recording...")

        try:
            resources.close()
        except Exception as e:
            self._set_status(RecordingStatus.ERROR, f"Failed to release audio devices: {e}")
            raise DeviceError(f"Failed to release audio devices: {e}") from e
        finally:
            self.level = 0.0

        try:
            result = self._finalize(source, files)
        except DeviceError as e:
            self._set_status(RecordingStatus.ERROR, str(e))
            raise

        self._output_path = result.path
        self._set_status(RecordingStatus.IDLE, f"Recording saved: {result.path.name}")
        return result

    def _finalize(self, source: RecordingSource, files: dict[str, Path]) -> CaptureResult:
        if source is not RecordingSource.BOTH:
            path = next(iter(files.values()))
            return CaptureResult(path, source, wav_duration(path))

        mic, system = files["mic"], files["system"]
        mic_ok, system_ok = has_audio(mic), has_audio(system)

        if mic_ok and system_ok:
            self._set_status(RecordingStatus.STOPPING, "Mixing audio files...")
            try:
                duration = mix_sources(mic, system, self._output_path)
            except Exception as e:
                # Per-source files stay on disk
                raise MixError(f"Failed to mix audio files: {e}", fallback_path=mic) from e
            for tmp in (mic, system):
                try:
                    tmp.unlink()
                except OSError as e:
                    logger.warning("Could not remove %s: %s", tmp, e)
            return CaptureResult(self._output_path, source, duration, mixed=True)

        if system_ok:
            logger.warning("Microphone captured no audio, keeping system audio only")
            return CaptureResult(system, source, wav_duration(system))
        if mic_ok:
            logger.warning("System audio captured nothing, keeping microphone only")
        else:
            logger.warning("No audio captured from either source")
        return CaptureResult(mic, source, wav_duration(mic))

    def terminate(self):
        if self.is_recording():
            try:
                self.stop()
            except DeviceError as e:
                logger.error("Error stopping recording on shutdown: %s", e)
        self._backend.terminate()
