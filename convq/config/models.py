from typing import Any, Dict, List, Literal, Mapping, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from convq.config.rate_control import is_lossless_audio_codec, parse_kbps
from convq.config.timecode import parse_timestamp

AUDIO_ONLY_CONTAINERS = frozenset({"mp3", "wav", "flac", "aac", "m4a"})

# Audio codecs each audio-only container can hold; the first is the default.
AUDIO_CONTAINER_CODECS: Dict[str, List[str]] = {
    "mp3": ["libmp3lame", "mp3"],
    "wav": ["pcm_s16le", "pcm_s24le", "pcm_f32le"],
    "flac": ["flac"],
    "aac": ["aac"],
    "m4a": ["aac", "alac"],
}

RESOLUTION_HEIGHTS: Dict[str, int] = {
    "2160p": 2160,
    "1440p": 1440,
    "1080p": 1080,
    "720p": 720,
    "480p": 480,
}

SCALING_FLAGS: Dict[str, str] = {
    "bicubic": "bicubic",
    "lanczos": "lanczos",
    "bilinear": "bilinear",
    "nearest": "neighbor",
}

METADATA_TAG_FIELDS = ("title", "artist", "album", "genre", "date", "comment")


def is_audio_only_container(container: str) -> bool:
    return container.lower() in AUDIO_ONLY_CONTAINERS


class MetadataConfig(BaseModel):
    """How container-level tags are carried into the output."""
    mode: Literal["preserve", "clean", "replace"] = "preserve"
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    genre: Optional[str] = None
    date: Optional[str] = None
    comment: Optional[str] = None

    def tags(self) -> Dict[str, str]:
        return {
            key: value
            for key in METADATA_TAG_FIELDS
            if (value := getattr(self, key)) is not None and str(value).strip()
        }


class ConversionConfig(BaseModel):
    """Everything needed to turn one source file into one output file.

    A job keeps a deep copy taken at submission time, so editing the object a
    UI holds never affects a queued or running conversion.
    """
    container: str = "mp4"
    video_codec: str = "libx264"
    video_bitrate_mode: Literal["crf", "bitrate"] = "crf"
    video_bitrate: str = "5000"  # kbps, authoritative only in bitrate mode
    crf: int = Field(default=23, ge=0, le=63)
    quality: int = Field(default=50, ge=1, le=100)  # hardware encoders, 100 = best
    audio_codec: str = "aac"
    audio_bitrate: str = "128"  # kbps per track
    audio_channels: Literal["original", "stereo", "mono"] = "original"
    audio_volume: int = Field(default=100, ge=0, le=400)
    audio_normalize: bool = False
    selected_audio_tracks: List[int] = Field(default_factory=list)
    resolution: Literal["original", "2160p", "1440p", "1080p", "720p", "480p", "custom"] = "original"
    custom_width: Optional[int] = None
    custom_height: Optional[int] = None
    scaling_algorithm: Literal["bicubic", "lanczos", "bilinear", "nearest"] = "bicubic"
    fps: str = "original"
    preset: str = "medium"
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)

    @field_validator("container", "video_codec", "audio_codec", "preset")
    @classmethod
    def validate_token(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("container")
    @classmethod
    def normalize_container(cls, v: str) -> str:
        return v.lower().lstrip(".")

    @field_validator("custom_width", "custom_height")
    @classmethod
    def validate_dimension(cls, v: Optional[int]) -> Optional[int]:
        if v is None or v == -1:
            return None
        if v <= 0:
            raise ValueError(f"must be positive or -1, got {v}")
        return v

    @field_validator("selected_audio_tracks")
    @classmethod
    def validate_tracks(cls, v: List[int]) -> List[int]:
        if any(idx < 0 for idx in v):
            raise ValueError("audio track indices must be >= 0")
        return v

    @field_validator("fps")
    @classmethod
    def validate_fps(cls, v: str) -> str:
        text = str(v).strip().lower()
        if text == "original":
            return text
        try:
            parsed = float(text)
        except ValueError:
            raise ValueError(f"Invalid fps value: {v}")
        if parsed <= 0:
            raise ValueError(f"Frame rate must be positive, got {v}")
        return text

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_timestamp(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not str(v).strip():
            return None
        if parse_timestamp(v) is None:
            raise ValueError(f"Invalid timestamp: {v}")
        return str(v).strip()

    @model_validator(mode="after")
    def validate_consistency(self):
        if self.is_audio_only:
            allowed = AUDIO_CONTAINER_CODECS[self.container]
            if self.audio_codec.lower() not in allowed:
                self.audio_codec = allowed[0]
        elif self.video_bitrate_mode == "bitrate":
            parse_kbps(self.video_bitrate)
        if not is_lossless_audio_codec(self.audio_codec):
            parse_kbps(self.audio_bitrate)

        start = self.trim_start_seconds
        end = self.trim_end_seconds
        if end is not None and end <= (start or 0.0):
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def is_audio_only(self) -> bool:
        return is_audio_only_container(self.container)

    @property
    def trim_start_seconds(self) -> Optional[float]:
        return parse_timestamp(self.start_time)

    @property
    def trim_end_seconds(self) -> Optional[float]:
        return parse_timestamp(self.end_time)

    @property
    def fps_value(self) -> Optional[float]:
        return None if self.fps == "original" else float(self.fps)


def merge_config(base: ConversionConfig, updates: Mapping[str, Any]) -> ConversionConfig:
    """Return a new validated config with ``updates`` applied on top of ``base``.

    Unknown keys are rejected; ``metadata`` may be given as a partial mapping.
    """
    unknown = set(updates) - set(ConversionConfig.model_fields)
    if unknown:
        raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")

    data = base.model_dump()
    for key, value in updates.items():
        if key == "metadata" and isinstance(value, Mapping):
            data["metadata"] = {**data["metadata"], **value}
        elif isinstance(value, BaseModel):
            data[key] = value.model_dump()
        else:
            data[key] = value
    return ConversionConfig.model_validate(data)


class GeneralConfig(BaseModel):
    max_concurrency: int = Field(default=2, ge=1)
    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None
    binaries_dir: Optional[str] = None
    log_path: str = "/tmp/convq/convq.log"
    diagnostic_lines: int = Field(default=10, ge=1, le=200)
    terminate_grace_s: float = Field(default=3.0, gt=0)
    log_lines_per_job: int = Field(default=200, ge=1)
    debug: bool = False


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    defaults: ConversionConfig = Field(default_factory=ConversionConfig)
    default_preset: Optional[str] = None
