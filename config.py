import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _optional_float(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    return float(value) if value else None


def _optional_int(name: str) -> int | None:
    value = os.getenv(name, "").strip()
    return int(value) if value else None


# Paths
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("MEETSCRIBE_DATA_DIR", str(BASE_DIR / "data")))
RECORDINGS_DIR = DATA_DIR / "recordings"
HISTORY_PATH = DATA_DIR / "history.json"
SETTINGS_PATH = DATA_DIR / "settings.json"

# Server
HOST = "127.0.0.1"
PORT = 8787
SHOW_TRAY = os.getenv("MEETSCRIBE_TRAY", "1") != "0"
MIN_FREE_DISK_BYTES = 500 * 1024 * 1024

# Audio
MIC_SAMPLE_RATE = 44100
MIC_CHANNELS = 2
SAMPLE_WIDTH = 2
BUFFER_MS = 50
DEFAULT_RECORDING_SOURCE = os.getenv("MEETSCRIBE_SOURCE", "both")

# Audio devices (None = autodetect)
LOOPBACK_DEVICE_INDEX = _optional_int("MEETSCRIBE_LOOPBACK_DEVICE")
MIC_DEVICE_INDEX = _optional_int("MEETSCRIBE_MIC_DEVICE")

# Transcription
TRANSCRIPTION_BASE_URL = os.getenv("MEETSCRIBE_TRANSCRIPTION_URL", "https://api.assemblyai.com/v2")
TRANSCRIPTION_API_KEY = os.getenv("ASSEMBLYAI_API_KEY", "")
TRANSCRIPTION_LANGUAGE = os.getenv("MEETSCRIBE_LANGUAGE", "") or None
POLL_INTERVAL_SECS = float(os.getenv("MEETSCRIBE_POLL_INTERVAL", "3"))
POLL_MAX_WAIT_SECS = _optional_float("MEETSCRIBE_POLL_MAX_WAIT")
UPLOAD_CHUNK_SIZE = 5 * 1024 * 1024
UPLOAD_TIMEOUT_SECS = 300

# LLM
SUMMARY_BASE_URL = os.getenv("MEETSCRIBE_SUMMARY_URL", "https://api.openai.com/v1")
SUMMARY_API_KEY = os.getenv("OPENAI_API_KEY", "")
SUMMARY_MODEL = os.getenv("MEETSCRIBE_SUMMARY_MODEL", "gpt-4o")
SUMMARY_TEMPERATURE = 0.7
SUMMARY_MAX_TOKENS = 1500
SUMMARY_TIMEOUT_SECS = 120

# Export
SAVE_DIRECTORY = os.getenv("MEETSCRIBE_SAVE_DIR", "")
