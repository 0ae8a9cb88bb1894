"""Built-in conversion presets.

Custom presets are the UI's business; these are the shipped starting points.
"""

from typing import Dict, List

from convq.config.models import ConversionConfig

_PRESET_DATA: Dict[str, dict] = {
    "balanced-mp4": {
        "container": "mp4",
        "video_codec": "libx264",
        "video_bitrate": "5000",
        "audio_codec": "aac",
        "audio_bitrate": "128",
        "crf": 23,
        "preset": "medium",
    },
    "archive-hq": {
        "container": "mkv",
        "video_codec": "libx265",
        "video_bitrate": "8000",
        "audio_codec": "ac3",
        "audio_bitrate": "192",
        "scaling_algorithm": "lanczos",
        "crf": 18,
        "quality": 60,
        "preset": "slow",
    },
    "web-share": {
        "container": "webm",
        "video_codec": "libvpx-vp9",
        "video_bitrate": "2500",
        "audio_codec": "libopus",
        "audio_bitrate": "96",
        "audio_channels": "stereo",
        "resolution": "720p",
        "crf": 30,
        "quality": 40,
    },
    "audio-mp3": {
        "container": "mp3",
        "audio_codec": "libmp3lame",
        "audio_bitrate": "128",
        "audio_channels": "stereo",
    },
    "audio-flac": {
        "container": "flac",
        "audio_codec": "flac",
    },
    "audio-alac": {
        "container": "m4a",
        "audio_codec": "alac",
    },
    "audio-wav": {
        "container": "wav",
        "audio_codec": "pcm_s16le",
    },
}

PRESET_NAMES: Dict[str, str] = {
    "balanced-mp4": "Balanced MP4",
    "archive-hq": "Archive H.265",
    "web-share": "Web Share",
    "audio-mp3": "Audio MP3",
    "audio-flac": "Audio FLAC (Lossless)",
    "audio-alac": "Audio ALAC (Apple)",
    "audio-wav": "Audio WAV (Lossless)",
}

def list_presets() -> List[str]:
    return list(_PRESET_DATA)


def get_preset(preset_id: str) -> ConversionConfig:
    """Return a fresh config for a built-in preset (callers may mutate it)."""
    try:
        data = _PRESET_DATA[preset_id]
    except KeyError:
        raise KeyError(f"Unknown preset '{preset_id}'. Available: {', '.join(_PRESET_DATA)}")
    return ConversionConfig(**data)
