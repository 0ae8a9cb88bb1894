import subprocess
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from convq.config.timecode import parse_timestamp
from convq.domain.errors import ProbeError
from convq.domain.models import AudioTrack, SourceMetadata

class FFprobeAdapter:
    """Wrapper around ffprobe to extract source metadata.

    Stateless: safe to call concurrently for different paths. Caching is the
    caller's job.
    """

    def __init__(self, ffprobe_path: str = "ffprobe"):
        self.ffprobe_path = ffprobe_path
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _to_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @classmethod
    def _to_kbps(cls, value: Any) -> Optional[float]:
        bps = cls._to_float(value)
        return bps / 1000.0 if bps > 0 else None

    @classmethod
    def _parse_duration_tag(cls, value: Any) -> float:
        return parse_timestamp(value) or 0.0

    @classmethod
    def _parse_time_base_duration(cls, duration_ts: Any, time_base: Any) -> float:
        if duration_ts is None or time_base is None:
            return 0.0
        time_base_text = str(time_base)
        if "/" not in time_base_text:
            return 0.0
        num_text, den_text = time_base_text.split("/", 1)
        num = cls._to_float(num_text)
        den = cls._to_float(den_text)
        if den == 0:
            return 0.0
        ticks = cls._to_float(duration_ts)
        if ticks <= 0:
            return 0.0
        return ticks * (num / den)

    @staticmethod
    def _parse_frame_rate(value: Any) -> Optional[float]:
        if value is None:
            return None
        text = str(value).strip()
        if not text or text.lower() == "n/a":
            return None
        try:
            if "/" in text:
                num, den = map(float, text.split("/", 1))
                if den == 0:
                    return None
                candidate = num / den
            else:
                candidate = float(text)
        except ValueError:
            return None
        # 1000/1 style timebases are not frame rates
        if candidate <= 0 or candidate > 240:
            return None
        return round(candidate, 3)

    def _resolve_duration(self, fmt: Dict[str, Any], stream: Optional[Dict[str, Any]]) -> Optional[float]:
        # Fallback order: format.duration, format tags, stream.duration, stream tags, duration_ts/time_base, size/bitrate
        duration = self._to_float(fmt.get("duration"))
        if duration <= 0:
            tags = fmt.get("tags", {}) or {}
            duration = self._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
        if duration <= 0 and stream:
            duration = self._to_float(stream.get("duration"))
        if duration <= 0 and stream:
            tags = stream.get("tags", {}) or {}
            duration = self._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
        if duration <= 0 and stream:
            duration = self._parse_time_base_duration(stream.get("duration_ts"), stream.get("time_base"))
        if duration <= 0:
            bit_rate = self._to_float(fmt.get("bit_rate") or (stream or {}).get("bit_rate"))
            size = self._to_float(fmt.get("size"))
            if bit_rate > 0 and size > 0:
                duration = (size * 8) / bit_rate
        return duration if duration > 0 else None

    def _build_audio_tracks(self, streams: List[Dict[str, Any]]) -> List[AudioTrack]:
        tracks = []
        for stream in streams:
            if stream.get("codec_type") != "audio":
                continue
            tags = stream.get("tags", {}) or {}
            channels = stream.get("channels")
            tracks.append(AudioTrack(
                index=int(stream.get("index", len(tracks))),
                codec=stream.get("codec_name") or "unknown",
                channels=int(channels) if isinstance(channels, (int, float)) and channels > 0 else None,
                language=tags.get("language"),
                label=tags.get("title"),
                bitrate_kbps=self._to_kbps(stream.get("bit_rate")),
            ))
        return tracks

    def probe(self, file_path: Path) -> SourceMetadata:
        """Executes ffprobe and parses its JSON output into SourceMetadata."""
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(file_path)
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise ProbeError(f"ffprobe could not be started ({self.ffprobe_path}): {e}", command=cmd)

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise ProbeError(
                f"ffprobe failed for {file_path} (code {result.returncode}): {stderr or 'no diagnostic output'}",
                command=cmd,
                output=stderr,
            )

        try:
            data = json.loads(result.stdout)
        except (json.JSONDecodeError, TypeError) as e:
            raise ProbeError(f"ffprobe returned invalid JSON for {file_path}: {e}", command=cmd, output=result.stdout)

        streams = data.get("streams") if isinstance(data, dict) else None
        if not isinstance(streams, list):
            raise ProbeError(f"ffprobe output for {file_path} has no stream list", command=cmd, output=result.stdout)

        fmt = data.get("format", {}) or {}
        video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
        audio_tracks = self._build_audio_tracks(streams)
        primary_stream = video_stream or (streams[0] if streams else None)

        metadata = SourceMetadata(
            duration=self._resolve_duration(fmt, primary_stream),
            bitrate_kbps=self._to_kbps(fmt.get("bit_rate")),
            audio_tracks=audio_tracks,
            audio_codec=audio_tracks[0].codec if audio_tracks else None,
        )

        if video_stream:
            metadata.video_codec = video_stream.get("codec_name") or "unknown"
            width = int(self._to_float(video_stream.get("width")))
            height = int(self._to_float(video_stream.get("height")))
            if width > 0 and height > 0:
                metadata.width = width
                metadata.height = height
            metadata.frame_rate = self._parse_frame_rate(video_stream.get("avg_frame_rate"))
            metadata.video_bitrate_kbps = self._to_kbps(video_stream.get("bit_rate"))

        if metadata.video_bitrate_kbps is None and video_stream and metadata.bitrate_kbps:
            audio_sum = sum(t.bitrate_kbps or 0.0 for t in audio_tracks)
            if metadata.bitrate_kbps > audio_sum:
                metadata.video_bitrate_kbps = metadata.bitrate_kbps - audio_sum

        self.logger.debug(
            f"PROBE: {file_path} duration={metadata.duration} video={metadata.video_codec} "
            f"{metadata.resolution} audio_tracks={len(audio_tracks)}"
        )
        return metadata
