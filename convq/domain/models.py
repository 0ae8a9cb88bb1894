from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field

from convq.config.models import ConversionConfig

class JobStatus(str, Enum):
    IDLE = "IDLE"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

class AudioTrack(BaseModel):
    index: int
    codec: str = "unknown"
    channels: Optional[int] = None
    language: Optional[str] = None
    label: Optional[str] = None
    bitrate_kbps: Optional[float] = None

class SourceMetadata(BaseModel):
    duration: Optional[float] = None  # seconds
    bitrate_kbps: Optional[float] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    frame_rate: Optional[float] = None
    video_bitrate_kbps: Optional[float] = None
    audio_tracks: List[AudioTrack] = Field(default_factory=list)

    @property
    def resolution(self) -> Optional[str]:
        if self.width and self.height:
            return f"{self.width}x{self.height}"
        return None

    @property
    def has_video(self) -> bool:
        return self.video_codec is not None

    def find_track(self, index: int) -> Optional[AudioTrack]:
        return next((t for t in self.audio_tracks if t.index == index), None)

class ConversionJob(BaseModel):
    id: str
    input_path: Path
    output_path: Path
    config: ConversionConfig
    metadata: Optional[SourceMetadata] = None
    status: JobStatus = JobStatus.IDLE
    progress_percent: Optional[float] = None
    error_message: Optional[str] = None
    submitted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

class OutputEstimate(BaseModel):
    video_kbps: int
    audio_kbps: int
    total_kbps: int
    size_mb: Optional[float] = None
