import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamFormat:
    rate: int
    channels: int
    sample_width: int = 2
    buffer_ms: int = 50

    @property
    def frames_per_buffer(self) -> int:
        return max(1, int(self.rate * self.buffer_ms / 1000))


class PyAudioBackend:
    """PortAudio access through PyAudioWPatch (WASAPI loopback on Windows)."""

    def __init__(self):
        self._pyaudio = None
        self._pa = None

    def _get_pa(self):
        if self._pa is None:
            import pyaudiowpatch as pyaudio

            self._pyaudio = pyaudio
            self._pa = pyaudio.PyAudio()
        return self._pa

    def list_devices(self) -> list[dict]:
        pa = self._get_pa()
        devices = []
        for i in range(pa.get_device_count()):
            info = pa.get_device_info_by_index(i)
            devices.append({
                "index": i,
                "name": info["name"],
                "maxInputChannels": info["maxInputChannels"],
                "maxOutputChannels": info["maxOutputChannels"],
                "defaultSampleRate": info["defaultSampleRate"],
                "isLoopback": info.get("isLoopbackDevice", False),
            })
        return devices

    def find_loopback(self, index: int | None = None) -> dict | None:
        pa = self._get_pa()
        if index is not None:
            return pa.get_device_info_by_index(index)
        try:
            wasapi_info = pa.get_host_api_info_by_type(self._pyaudio.paWASAPI)
        except OSError:
            logger.warning("WASAPI not available, no system audio capture")
            return None

        default_output = pa.get_device_info_by_index(wasapi_info["defaultOutputDevice"])
        loopbacks = [
            info for info in (pa.get_device_info_by_index(i) for i in range(pa.get_device_count()))
            if info.get("isLoopbackDevice", False)
        ]
        for info in loopbacks:
            if info["name"].startswith(default_output["name"].split(" (")[0]):
                return info

        # Fallback: any loopback device
        return loopbacks[0] if loopbacks else None

    def find_microphone(self, index: int | None = None) -> dict | None:
        pa = self._get_pa()
        if index is not None:
            return pa.get_device_info_by_index(index)
        try:
            wasapi_info = pa.get_host_api_info_by_type(self._pyaudio.paWASAPI)
            if wasapi_info["defaultInputDevice"] >= 0:
                return pa.get_device_info_by_index(wasapi_info["defaultInputDevice"])
        except OSError:
            pass
        try:
            return pa.get_default_input_device_info()
        except OSError:
            return None

    def open_stream(self, device: dict, fmt: StreamFormat, callback: Callable[[bytes], None]):
        pa = self._get_pa()
        pyaudio = self._pyaudio

        def _on_buffer(in_data, frame_count, time_info, status):
            callback(in_data)
            return None, pyaudio.paContinue

        return pa.open(
            format=pyaudio.paInt16,
            channels=fmt.channels,
            rate=fmt.rate,
            input=True,
            input_device_index=device["index"],
            frames_per_buffer=fmt.frames_per_buffer,
            stream_callback=_on_buffer,
        )

    def terminate(self):
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None
