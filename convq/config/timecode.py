import re
from typing import Any, Optional

# ffmpeg's own diagnostic format: HH:MM:SS.cc
CLOCK_PATTERN = re.compile(r"(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")


def parse_timestamp(value: Any) -> Optional[float]:
    """Parse ``HH:MM:SS[.ff]``, ``MM:SS[.ff]`` or plain seconds into seconds.

    Returns None for anything that is not a non-negative time value.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() == "n/a":
        return None
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        return seconds if seconds >= 0 else None

    parts = text.split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        numbers = [float(p) for p in parts]
    except ValueError:
        return None
    if any(n < 0 for n in numbers):
        return None
    if len(numbers) == 2:
        minutes, seconds = numbers
        return minutes * 60 + seconds
    hours, minutes, seconds = numbers
    return hours * 3600 + minutes * 60 + seconds


def format_seconds(seconds: float) -> str:
    """Seconds as an ffmpeg-friendly duration string (``12.5``, ``90``)."""
    return f"{seconds:.3f}".rstrip("0").rstrip(".")


def format_clock(seconds: Optional[float]) -> str:
    if seconds is None:
        return "--:--:--"
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
