"""Helpers for bitrate value parsing and display.

Bitrates in a conversion config are expressed in kbps. A bare number is kbps;
suffixes allow other units (``2.5M``, ``800k``, ``192kbps``, ``64000bps``).
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Any, Dict

_RATE_PATTERN = re.compile(r"^(?P<number>\d+(?:\.\d+)?)(?P<suffix>[A-Za-z]*)$")
_SUFFIX_TO_KBPS: Dict[str, float] = {
    "": 1.0,
    "k": 1.0,
    "kbps": 1.0,
    "bps": 0.001,
    "m": 1_000.0,
    "mbps": 1_000.0,
}

# Codecs for which an audio bitrate flag is meaningless.
LOSSLESS_AUDIO_CODECS = frozenset({"flac", "alac", "copy"})


@dataclass(frozen=True)
class ParsedRateValue:
    raw: str
    kbps: float


def _format_float(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".")


def format_kbps_human(kbps: float) -> str:
    if kbps >= 1_000:
        return f"{_format_float(kbps / 1_000)} Mbps"
    return f"{_format_float(kbps)} kbps"


def format_kbps_arg(kbps: float) -> str:
    """Render a kbps value the way ffmpeg's ``-b:v``/``-b:a`` expect it."""
    return f"{_format_float(kbps)}k"


def parse_rate_value(raw_value: Any) -> ParsedRateValue:
    text = str(raw_value).strip()
    if not text:
        raise ValueError("Bitrate value cannot be empty.")

    compact = text.replace(" ", "").replace(",", ".")
    match = _RATE_PATTERN.fullmatch(compact)
    if not match:
        raise ValueError(
            f"Invalid bitrate '{text}'. Use kbps or suffixes like k, M, Mbps."
        )

    suffix = match.group("suffix").lower()
    if suffix not in _SUFFIX_TO_KBPS:
        raise ValueError(
            f"Unsupported bitrate suffix '{suffix}' in '{text}'. Supported: k, kbps, M, Mbps, bps."
        )

    kbps = float(match.group("number")) * _SUFFIX_TO_KBPS[suffix]
    if kbps <= 0:
        raise ValueError(f"Bitrate must be > 0 (got '{text}').")
    return ParsedRateValue(raw=text, kbps=kbps)


def parse_kbps(raw_value: Any) -> float:
    return parse_rate_value(raw_value).kbps


def is_lossless_audio_codec(codec: str) -> bool:
    lowered = codec.lower()
    return lowered in LOSSLESS_AUDIO_CODECS or lowered.startswith("pcm_")
