import logging
import re
from datetime import datetime
from pathlib import Path

from errors import ExportError, ValidationError

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 100
INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
SEPARATOR_RUNS = re.compile(r"[\s_]+")


def sanitize_title(title: str | None) -> str:
    if not title or not title.strip():
        return "Untitled"
    sanitized = INVALID_FILENAME_CHARS.sub("_", title)
    sanitized = SEPARATOR_RUNS.sub("_", sanitized).strip("_")
    if len(sanitized) > MAX_TITLE_LENGTH:
        sanitized = sanitized[:MAX_TITLE_LENGTH].rstrip("_")
    return sanitized or "Untitled"


def save_markdown(content: str, title: str | None, directory: str | Path,
                  recording_date: datetime) -> Path:
    """Write a summary to ``<YYYY-MM-DD_HHMM>_<title>.md`` inside ``directory``.

    An existing file is never overwritten: ``_1``, ``_2``, ... is appended to
    the name until an unused one is found.
    """
    if not content or not content.strip():
        raise ValidationError("Markdown content cannot be empty")
    if not directory or not str(directory).strip():
        raise ValidationError("Save directory cannot be empty")

    directory = Path(directory)
    stem = f"{recording_date:%Y-%m-%d_%H%M}_{sanitize_title(title)}"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        counter = 0
        while True:
            name = f"{stem}.md" if counter == 0 else f"{stem}_{counter}.md"
            path = directory / name
            try:
                with open(path, "x", encoding="utf-8") as f:
                    f.write(content)
                break
            except FileExistsError:
                counter += 1
    except OSError as e:
        raise ExportError(f"Failed to save summary: {e}") from e

    logger.info("Summary saved: %s", path)
    return path
