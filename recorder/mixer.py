import logging
import wave
from pathlib import Path

from pydub import AudioSegment

logger = logging.getLogger(__name__)


def open_wav_writer(path: Path, rate: int, channels: int, sample_width: int = 2) -> wave.Wave_write:
    wf = wave.open(str(path), "wb")
    wf.setnchannels(channels)
    wf.setsampwidth(sample_width)
    wf.setframerate(rate)
    return wf


def wav_frames(wav_path: Path) -> tuple[int, int]:
    """Return (frames, framerate), or (0, 0) when the file is missing or unreadable."""
    if not wav_path.exists() or wav_path.stat().st_size < 44:
        return 0, 0
    try:
        with wave.open(str(wav_path), "rb") as wf:
            return wf.getnframes(), wf.getframerate()
    except (wave.Error, EOFError, OSError):
        return 0, 0


def wav_duration(wav_path: Path) -> float:
    frames, rate = wav_frames(wav_path)
    return frames / rate if rate else 0.0


def has_audio(wav_path: Path) -> bool:
    return wav_frames(wav_path)[0] > 0


def mix_sources(mic_wav: Path, system_wav: Path, output_wav: Path) -> float:
    """Mix the microphone and system recordings into one stereo 16-bit WAV.

    Both sources are brought to the higher of the two sample rates and to
    stereo, then the shorter one is overlaid (sample-wise sum, clipped) onto
    the longer one, so the result lasts as long as the longest source.
    Returns the duration of the mixed file in seconds.
    """
    mic = AudioSegment.from_wav(str(mic_wav))
    system = AudioSegment.from_wav(str(system_wav))

    rate = max(mic.frame_rate, system.frame_rate)
    mic = mic.set_frame_rate(rate).set_channels(2).set_sample_width(2)
    system = system.set_frame_rate(rate).set_channels(2).set_sample_width(2)

    base, other = (mic, system) if len(mic) >= len(system) else (system, mic)
    mixed = base.overlay(other)
    mixed.export(str(output_wav), format="wav").close()

    logger.info("Mixed %s + %s -> %s (%.1fs)", mic_wav.name, system_wav.name, output_wav.name,
                mixed.duration_seconds)
    return mixed.duration_seconds
