"""ffmpeg argument compilation.

Everything here is pure: a ConversionConfig (plus optional probed metadata)
goes in, an ordered argument list comes out. Process handling lives in
`infrastructure/supervisor.py`.
"""

import math
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from convq.config.models import (
    ConversionConfig,
    RESOLUTION_HEIGHTS,
    SCALING_FLAGS,
)
from convq.config.rate_control import format_kbps_arg, is_lossless_audio_codec, parse_kbps
from convq.config.timecode import format_seconds
from convq.domain.models import SourceMetadata

QUALITY_FLAGS = ("-crf", "-cq:v", "-global_quality", "-q:v")
LOUDNORM_FILTER = "loudnorm=I=-16:TP=-1.5:LRA=11"
_METADATA_TAG_CONTAINERS = {"mp4", "m4v", "mov", "m4a"}
_CHANNEL_COUNTS = {"stereo": 2, "mono": 1}


def infer_encoder_family(video_codec: str) -> str:
    """Classify an encoder by how it takes a quality target."""
    codec = video_codec.lower()
    if "nvenc" in codec:
        return "nvenc"
    if codec.endswith("_qsv"):
        return "qsv"
    if "videotoolbox" in codec:
        return "videotoolbox"
    return "software"


def is_hardware_encoder(video_codec: str) -> bool:
    return infer_encoder_family(video_codec) != "software"


def nvenc_cq_for_quality(quality: int) -> int:
    """Map quality 1..100 (100 best) onto NVENC/QSV CQ 51..1 (1 best)."""
    cq = math.floor(52.0 - quality / 2.0 + 0.5)
    return max(1, min(51, cq))


def quality_from_nvenc_cq(cq: int) -> int:
    return max(1, min(100, (52 - cq) * 2))


def build_output_path(input_path: Path, container: str, output_name: Optional[str] = None) -> Path:
    """Output path for a job: ``<dir>/<name>[.<container>]`` or ``<input>_converted.<container>``."""
    input_path = Path(input_path)
    custom = (output_name or "").strip()
    if custom:
        output = input_path.parent / custom
        if not output.suffix:
            output = output.with_name(f"{output.name}.{container}")
        return output
    return input_path.with_name(f"{input_path.name}_converted.{container}")


def effective_duration(config: ConversionConfig, metadata: Optional[SourceMetadata]) -> Optional[float]:
    """Length of the output in seconds, accounting for trim; None when unknown."""
    total = metadata.duration if metadata and metadata.duration else None
    start = config.trim_start_seconds or 0.0
    end = config.trim_end_seconds

    if end is not None:
        length = end - start
        if total is not None:
            length = min(length, total - start)
    elif total is not None:
        length = total - start
    else:
        return None
    return length if length > 0 else None


def _target_dimensions(config: ConversionConfig) -> Tuple[Optional[int], Optional[int]]:
    if config.resolution == "custom":
        return config.custom_width, config.custom_height
    return None, RESOLUTION_HEIGHTS.get(config.resolution)


def _scale_filter(config: ConversionConfig, metadata: Optional[SourceMetadata]) -> Optional[str]:
    if config.resolution == "original":
        return None
    width, height = _target_dimensions(config)
    if width is None and height is None:
        return None

    if metadata and metadata.width and metadata.height:
        if (width is None or width == metadata.width) and (height is None or height == metadata.height):
            return None

    w = str(width) if width is not None else "-2"
    h = str(height) if height is not None else "-2"
    return f"scale={w}:{h}:flags={SCALING_FLAGS[config.scaling_algorithm]}"


def _rate_control_args(config: ConversionConfig) -> List[str]:
    if config.video_bitrate_mode == "bitrate":
        return ["-b:v", format_kbps_arg(parse_kbps(config.video_bitrate))]

    family = infer_encoder_family(config.video_codec)
    if family == "nvenc":
        return ["-rc:v", "vbr", "-cq:v", str(nvenc_cq_for_quality(config.quality))]
    if family == "qsv":
        return ["-global_quality", str(nvenc_cq_for_quality(config.quality))]
    if family == "videotoolbox":
        return ["-q:v", str(config.quality)]
    return ["-crf", str(config.crf)]


def _ordered_tracks(config: ConversionConfig) -> List[int]:
    seen = set()
    ordered = []
    for idx in config.selected_audio_tracks:
        if idx not in seen:
            seen.add(idx)
            ordered.append(idx)
    return ordered


def _source_channels(config: ConversionConfig, metadata: Optional[SourceMetadata]) -> Optional[int]:
    if not metadata or not metadata.audio_tracks:
        return None
    tracks = _ordered_tracks(config)
    track = metadata.find_track(tracks[0]) if tracks else metadata.audio_tracks[0]
    return track.channels if track else None


def _audio_args(config: ConversionConfig, metadata: Optional[SourceMetadata]) -> List[str]:
    args = ["-c:a", config.audio_codec]
    if config.audio_codec.lower() == "copy":
        return args

    if not is_lossless_audio_codec(config.audio_codec):
        args.extend(["-b:a", format_kbps_arg(parse_kbps(config.audio_bitrate))])

    channels = _CHANNEL_COUNTS.get(config.audio_channels)
    if channels is not None and channels != _source_channels(config, metadata):
        args.extend(["-ac", str(channels)])

    filters = []
    if config.audio_volume != 100:
        filters.append(f"volume={config.audio_volume / 100.0:g}")
    if config.audio_normalize:
        filters.append(LOUDNORM_FILTER)
    if filters:
        args.extend(["-af", ",".join(filters)])
    return args


def _metadata_args(config: ConversionConfig) -> List[str]:
    mode = config.metadata.mode
    if mode == "preserve":
        args = ["-map_metadata", "0"]
        if config.container in _METADATA_TAG_CONTAINERS:
            args.extend(["-movflags", "use_metadata_tags"])
        return args

    args = ["-map_metadata", "-1"]
    if mode == "replace":
        for key, value in config.metadata.tags().items():
            args.extend(["-metadata", f"{key}={value}"])
    return args


def compile_ffmpeg_args(
    input_path: Path,
    output_path: Path,
    config: ConversionConfig,
    metadata: Optional[SourceMetadata] = None,
) -> List[str]:
    """Constructs the ffmpeg argument list (without the executable itself)."""
    args: List[str] = []

    start = config.trim_start_seconds
    end = config.trim_end_seconds
    if start:
        args.extend(["-ss", format_seconds(start)])
    args.extend(["-i", str(input_path)])
    if end is not None:
        args.extend(["-t", format_seconds(end - (start or 0.0))])

    audio_only = config.is_audio_only
    if audio_only:
        args.append("-vn")
    else:
        args.extend(["-c:v", config.video_codec])
        args.extend(_rate_control_args(config))
        args.extend(["-preset", config.preset])

        scale = _scale_filter(config, metadata)
        if scale:
            args.extend(["-vf", scale])

        fps = config.fps_value
        if fps is not None:
            source_fps = metadata.frame_rate if metadata else None
            if source_fps is None or abs(source_fps - fps) > 0.01:
                args.extend(["-r", config.fps])

    tracks = _ordered_tracks(config)
    if tracks:
        if not audio_only:
            args.extend(["-map", "0:v:0"])
        for idx in tracks:
            args.extend(["-map", f"0:{idx}"])

    args.extend(_audio_args(config, metadata))
    args.extend(_metadata_args(config))

    args.extend(["-y", str(output_path)])
    return args


def extract_quality_flag(args: Sequence[str]) -> Optional[str]:
    return next((a for a in args if a in QUALITY_FLAGS), None)


def extract_quality_value(args: Sequence[str]) -> Optional[int]:
    """Read back the quality value from a compiled argument list."""
    args = list(args)
    for i, arg in enumerate(args[:-1]):
        if arg in QUALITY_FLAGS:
            try:
                return int(args[i + 1])
            except ValueError:
                return None
    return None
