"""Incremental parser for ffmpeg's stderr stream.

ffmpeg prints a banner, a ``Duration: HH:MM:SS.cc`` line per input, and then
rewrites a single status line (``frame=... time=HH:MM:SS.cc ...``) using
carriage returns. Reads from the pipe arrive in arbitrary chunks, so the
parser buffers partial lines and treats both ``\\n`` and ``\\r`` as line
terminators.

One instance per job; there is no way to reset it.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Union

from convq.config.timecode import CLOCK_PATTERN

TIME_PATTERN = re.compile(r"time=\s*" + CLOCK_PATTERN.pattern)
DURATION_PATTERN = re.compile(r"Duration:\s*" + CLOCK_PATTERN.pattern)
_LINE_BREAK = re.compile(r"[\r\n]+")


def _clock_to_seconds(match: "re.Match[str]") -> float:
    h, m, s = match.groups()
    return int(h) * 3600 + int(m) * 60 + float(s)


def parse_clock(text: str) -> Optional[float]:
    """Seconds for an ``HH:MM:SS.cc`` token, or None if ``text`` is not one."""
    match = CLOCK_PATTERN.fullmatch(text.strip())
    if not match:
        return None
    return _clock_to_seconds(match)


@dataclass(frozen=True)
class ParsedLine:
    text: str
    elapsed_seconds: Optional[float] = None
    percent: Optional[float] = None
    advanced: bool = False  # True when this line moved the progress forward

    @property
    def is_progress(self) -> bool:
        return self.elapsed_seconds is not None


class ProgressParser:
    """Line-oriented state machine turning encoder output into a completion percent.

    Args:
        total_duration: Expected output length in seconds, if known.
        offset: Trim start in seconds; subtracted from the ``Duration:`` header
            the total is learned from when ``total_duration`` is not given.
    """

    def __init__(self, total_duration: Optional[float] = None, offset: float = 0.0):
        self.total_duration = total_duration if total_duration and total_duration > 0 else None
        self.offset = max(0.0, offset)
        self.elapsed_seconds: Optional[float] = None
        self.percent: Optional[float] = None
        self._buffer = ""
        self._decode_tail = b""

    @property
    def is_indeterminate(self) -> bool:
        return self.total_duration is None

    def _decode(self, chunk: Union[bytes, str]) -> str:
        if isinstance(chunk, str):
            return chunk
        data = self._decode_tail + chunk
        # Hold back an incomplete trailing UTF-8 sequence for the next chunk.
        cut = len(data)
        for back in range(1, min(4, len(data)) + 1):
            byte = data[-back]
            if byte & 0xC0 == 0x80:
                continue
            if byte & 0x80:
                needed = 2 if byte & 0xE0 == 0xC0 else 3 if byte & 0xF0 == 0xE0 else 4
                if back < needed:
                    cut = len(data) - back
            break
        self._decode_tail = data[cut:]
        return data[:cut].decode("utf-8", errors="replace")

    def feed(self, chunk: Union[bytes, str]) -> List[ParsedLine]:
        """Consume a raw chunk; return one ParsedLine per completed non-empty line."""
        self._buffer += self._decode(chunk)
        pieces = _LINE_BREAK.split(self._buffer)
        # A '\r\n' split across chunks yields an empty line, which is skipped.
        self._buffer = pieces.pop()
        return [self.parse_line(p) for p in pieces if p.strip()]

    def flush(self) -> List[ParsedLine]:
        """Emit whatever is left in the buffer once the stream hit EOF."""
        rest = self._buffer
        if self._decode_tail:
            rest += self._decode_tail.decode("utf-8", errors="replace")
            self._decode_tail = b""
        self._buffer = ""
        rest = rest.rstrip("\r\n")
        return [self.parse_line(rest)] if rest.strip() else []

    def parse_line(self, line: str) -> ParsedLine:
        if self.total_duration is None:
            duration_match = DURATION_PATTERN.search(line)
            if duration_match:
                learned = _clock_to_seconds(duration_match) - self.offset
                if learned > 0:
                    self.total_duration = learned
                return ParsedLine(text=line)

        time_match = TIME_PATTERN.search(line)
        if not time_match:
            return ParsedLine(text=line)

        elapsed = _clock_to_seconds(time_match)
        if self.elapsed_seconds is not None and elapsed < self.elapsed_seconds:
            elapsed = self.elapsed_seconds
        advanced = self.elapsed_seconds is None or elapsed > self.elapsed_seconds
        self.elapsed_seconds = elapsed

        if self.total_duration is None:
            return ParsedLine(text=line, elapsed_seconds=elapsed, advanced=advanced)

        percent = min(100.0, max(0.0, elapsed / self.total_duration * 100.0))
        if self.percent is not None:
            percent = max(percent, self.percent)
        advanced = self.percent is None or percent > self.percent
        self.percent = percent
        return ParsedLine(text=line, elapsed_seconds=elapsed, percent=percent, advanced=advanced)
