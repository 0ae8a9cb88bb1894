"""Heuristic output bitrate/size estimate for a conversion.

Pure and total: any valid config/metadata pair yields an estimate, never an
exception. The numbers are a preview for the UI, not a promise.
"""

from typing import List, Optional

from convq.config.models import ConversionConfig, RESOLUTION_HEIGHTS
from convq.config.rate_control import parse_kbps
from convq.domain.models import OutputEstimate, SourceMetadata
from convq.infrastructure.ffmpeg import effective_duration, is_hardware_encoder

FALLBACK_HEIGHT = 720
MIN_VIDEO_KBPS = 400.0
DEFAULT_AUDIO_KBPS = 128.0

# (min height, kbps) for H.264 at crf 23, highest tier first
BASE_BITRATE_TIERS = (
    (2160, 25000.0),
    (1440, 16000.0),
    (1080, 8000.0),
    (720, 5000.0),
    (480, 2500.0),
    (360, 1500.0),
)

CODEC_FAMILY_SCALE = {
    "h264": 1.0,
    "hevc": 0.65,
    "vp9": 0.7,
    "av1": 0.5,
    "prores": 1.6,
}

AUDIO_CODEC_KBPS = {
    "aac": 128.0,
    "ac3": 192.0,
    "opus": 96.0,
    "libopus": 96.0,
    "mp3": 128.0,
    "libmp3lame": 128.0,
    "flac": 900.0,
    "alac": 900.0,
}
PCM_KBPS = 1536.0


def codec_family(codec: Optional[str]) -> Optional[str]:
    """Collapse encoder/decoder names onto a format family (libx265 -> hevc)."""
    if not codec:
        return None
    name = codec.lower()
    if "264" in name or name.startswith("h264") or name == "avc":
        return "h264"
    if "265" in name or "hevc" in name:
        return "hevc"
    if "vp9" in name:
        return "vp9"
    if "av1" in name or name == "libaom":
        return "av1"
    if "prores" in name:
        return "prores"
    return None


def base_bitrate_for_height(height: int) -> float:
    for min_height, kbps in BASE_BITRATE_TIERS:
        if height >= min_height:
            return kbps
    return BASE_BITRATE_TIERS[-1][1]


def quality_scale(crf: float) -> float:
    """Each 6 crf steps roughly halves or doubles the bitrate."""
    return 2 ** ((23 - crf) / 6)


def _target_height(config: ConversionConfig, metadata: Optional[SourceMetadata]) -> int:
    if config.resolution in RESOLUTION_HEIGHTS:
        return RESOLUTION_HEIGHTS[config.resolution]
    if config.resolution == "custom" and config.custom_height:
        return config.custom_height
    if metadata and metadata.height:
        return metadata.height
    return FALLBACK_HEIGHT


def _effective_crf(config: ConversionConfig) -> float:
    if is_hardware_encoder(config.video_codec):
        return (100 - config.quality) / 1.96
    return float(config.crf)


def _estimate_video_kbps(config: ConversionConfig, metadata: Optional[SourceMetadata]) -> float:
    if config.is_audio_only:
        return 0.0
    if config.video_bitrate_mode == "bitrate":
        return parse_kbps(config.video_bitrate)

    height = _target_height(config, metadata)
    family = codec_family(config.video_codec)
    base = base_bitrate_for_height(height) * CODEC_FAMILY_SCALE.get(family, 1.0)

    if metadata and metadata.video_bitrate_kbps:
        same_height = metadata.height is not None and metadata.height == height
        same_family = family is not None and codec_family(metadata.video_codec) == family
        if same_height and same_family:
            base = metadata.video_bitrate_kbps

    return max(MIN_VIDEO_KBPS, base * quality_scale(_effective_crf(config)))


def _track_kbps(codec: str) -> float:
    name = codec.lower()
    if name.startswith("pcm_") or name == "pcm":
        return PCM_KBPS
    return AUDIO_CODEC_KBPS.get(name, DEFAULT_AUDIO_KBPS)


def _selected_track_indices(config: ConversionConfig, metadata: Optional[SourceMetadata]) -> List[Optional[int]]:
    if config.selected_audio_tracks:
        return list(dict.fromkeys(config.selected_audio_tracks))
    if metadata and metadata.audio_tracks:
        return [metadata.audio_tracks[0].index]
    return [None]


def _estimate_audio_kbps(config: ConversionConfig, metadata: Optional[SourceMetadata]) -> float:
    if metadata and metadata.has_video and not metadata.audio_tracks:
        return 0.0

    indices = _selected_track_indices(config, metadata)
    if config.audio_codec.lower() == "copy":
        total = 0.0
        for idx in indices:
            track = metadata.find_track(idx) if metadata and idx is not None else None
            total += track.bitrate_kbps if track and track.bitrate_kbps else DEFAULT_AUDIO_KBPS
        return total
    return _track_kbps(config.audio_codec) * len(indices)


def estimate_output(config: ConversionConfig, metadata: Optional[SourceMetadata] = None) -> OutputEstimate:
    video_kbps = _estimate_video_kbps(config, metadata)
    audio_kbps = _estimate_audio_kbps(config, metadata)
    total_kbps = video_kbps + audio_kbps

    duration = effective_duration(config, metadata)
    size_mb = None
    if duration:
        size_mb = max(1.0, total_kbps * duration / 8 / 1024)

    return OutputEstimate(
        video_kbps=round(video_kbps),
        audio_kbps=round(audio_kbps),
        total_kbps=round(total_kbps),
        size_mb=size_mb,
    )
