import pytest
import yaml
from pathlib import Path
from convq.config.models import AppConfig, ConversionConfig
from convq.domain.models import AudioTrack, SourceMetadata
from convq.infrastructure.event_bus import EventBus

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config():
    """Returns a sample AppConfig object for testing."""
    return AppConfig(
        general={
            "max_concurrency": 2,
            "diagnostic_lines": 5,
            "terminate_grace_s": 1.0,
            "log_lines_per_job": 50,
            "debug": False,
        },
        defaults={
            "container": "mp4",
            "video_codec": "libx264",
            "crf": 23,
        },
    )

@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "convq.yaml"

    content = {
        'general': {
            'max_concurrency': 3,
            'ffmpeg_path': '/opt/ffmpeg/bin/ffmpeg',
            'log_path': str(tmp_path / "logs" / "convq.log"),
            'diagnostic_lines': 20,
            'debug': True,
        },
        'defaults': {
            'container': 'mkv',
            'video_codec': 'libx265',
            'crf': 26,
            'audio_codec': 'aac',
            'audio_bitrate': '160',
        },
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

@pytest.fixture
def conversion_config():
    """Default conversion settings (mp4 / libx264 / crf 23 / aac 128)."""
    return ConversionConfig()

# ============================================================================
# EventBus Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

# ============================================================================
# Media Fixtures
# ============================================================================

@pytest.fixture
def sample_metadata():
    """Probed metadata of a typical 1080p H.264 clip with one stereo AAC track."""
    return SourceMetadata(
        duration=120.0,
        bitrate_kbps=6128.0,
        video_codec="h264",
        audio_codec="aac",
        width=1920,
        height=1080,
        frame_rate=29.97,
        video_bitrate_kbps=6000.0,
        audio_tracks=[AudioTrack(index=1, codec="aac", channels=2, language="eng", bitrate_kbps=128.0)],
    )

@pytest.fixture
def source_files(tmp_path):
    """Creates dummy input files (content is irrelevant to fake encoders)."""
    input_dir = tmp_path / "input"
    input_dir.mkdir()
    files = []
    for i in range(4):
        f = input_dir / f"clip{i}.mov"
        f.write_bytes(b"dummy media content " * 50)
        files.append(f)
    return files
