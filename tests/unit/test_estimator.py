import pytest
from convq.config.models import ConversionConfig
from convq.domain.models import AudioTrack, SourceMetadata
from convq.pipeline.estimator import (
    base_bitrate_for_height,
    codec_family,
    estimate_output,
    quality_scale,
)


def _meta(**kwargs):
    data = dict(
        duration=120.0,
        video_codec="h264",
        width=1920,
        height=1080,
        audio_tracks=[AudioTrack(index=1, codec="aac", channels=2, bitrate_kbps=128.0)],
    )
    data.update(kwargs)
    return SourceMetadata(**data)


def test_hevc_1080p_scenario():
    config = ConversionConfig(video_codec="libx265", crf=23, audio_codec="aac", audio_bitrate="128")
    result = estimate_output(config, _meta())
    assert result.video_kbps == 5200
    assert result.audio_kbps == 128
    assert result.total_kbps == 5328
    assert result.size_mb == pytest.approx(5328 * 120 / 8 / 1024)
    assert result.size_mb == pytest.approx(78.05, abs=0.01)


def test_estimate_is_deterministic():
    config = ConversionConfig(video_codec="libvpx-vp9", crf=31, resolution="720p")
    metadata = _meta()
    assert estimate_output(config, metadata) == estimate_output(config, metadata)


@pytest.mark.parametrize(
    ("height", "kbps"),
    [(4320, 25000), (2160, 25000), (1440, 16000), (1080, 8000), (1000, 5000), (720, 5000), (480, 2500), (360, 1500), (240, 1500)],
)
def test_base_bitrate_tiers(height, kbps):
    assert base_bitrate_for_height(height) == kbps


def test_codec_family():
    assert codec_family("libx264") == "h264"
    assert codec_family("hevc_nvenc") == "hevc"
    assert codec_family("libvpx-vp9") == "vp9"
    assert codec_family("libsvtav1") == "av1"
    assert codec_family("prores_ks") == "prores"
    assert codec_family("mpeg4") is None
    assert codec_family(None) is None


def test_quality_scale_halves_every_six_steps():
    assert quality_scale(23) == pytest.approx(1.0)
    assert quality_scale(29) == pytest.approx(0.5)
    assert quality_scale(17) == pytest.approx(2.0)


def test_without_metadata_uses_720p_fallback_and_no_size():
    result = estimate_output(ConversionConfig())
    assert result.video_kbps == 5000
    assert result.audio_kbps == 128
    assert result.size_mb is None


def test_named_resolution_overrides_source_height():
    result = estimate_output(ConversionConfig(resolution="480p"), _meta())
    assert result.video_kbps == 2500


def test_custom_height_used():
    config = ConversionConfig(resolution="custom", custom_width=3840, custom_height=2160)
    assert estimate_output(config, _meta()).video_kbps == 25000


def test_source_bitrate_used_when_resolution_and_family_unchanged():
    metadata = _meta(video_bitrate_kbps=3000.0)
    assert estimate_output(ConversionConfig(video_codec="libx264"), metadata).video_kbps == 3000
    # codec family changes: heuristic applies
    assert estimate_output(ConversionConfig(video_codec="libx265"), metadata).video_kbps == 5200
    # resolution changes: heuristic applies
    assert estimate_output(ConversionConfig(resolution="720p"), metadata).video_kbps == 5000


def test_video_floor():
    result = estimate_output(ConversionConfig(resolution="480p", crf=51), _meta())
    assert result.video_kbps == 400


def test_hardware_encoder_uses_quality():
    # quality 100 -> effective crf 0 -> 2^(23/6)
    config = ConversionConfig(video_codec="hevc_nvenc", quality=100)
    expected = 8000 * 0.65 * 2 ** (23 / 6)
    assert estimate_output(config, _meta()).video_kbps == round(expected)


def test_bitrate_mode_uses_configured_value():
    config = ConversionConfig(video_bitrate_mode="bitrate", video_bitrate="3M")
    assert estimate_output(config, _meta()).video_kbps == 3000


def test_audio_only_container_has_no_video():
    result = estimate_output(ConversionConfig(container="flac"), _meta(duration=60.0))
    assert result.video_kbps == 0
    assert result.audio_kbps == 900
    assert result.size_mb == pytest.approx(900 * 60 / 8 / 1024)


@pytest.mark.parametrize(
    ("codec", "kbps"),
    [("ac3", 192), ("libopus", 96), ("pcm_s24le", 1536), ("vorbis", 128)],
)
def test_audio_codec_rates(codec, kbps):
    config = ConversionConfig(container="mkv", audio_codec=codec)
    assert estimate_output(config, _meta()).audio_kbps == kbps


def test_audio_multiplied_by_selected_tracks():
    config = ConversionConfig(audio_codec="ac3", selected_audio_tracks=[1, 2, 2])
    assert estimate_output(config, _meta()).audio_kbps == 384


def test_audio_copy_uses_probed_bitrates():
    metadata = _meta(audio_tracks=[
        AudioTrack(index=1, codec="aac", bitrate_kbps=256.0),
        AudioTrack(index=2, codec="ac3", bitrate_kbps=None),
    ])
    assert estimate_output(ConversionConfig(audio_codec="copy"), metadata).audio_kbps == 256
    config = ConversionConfig(audio_codec="copy", selected_audio_tracks=[1, 2])
    assert estimate_output(config, metadata).audio_kbps == 384


def test_video_source_without_audio_tracks():
    assert estimate_output(ConversionConfig(), _meta(audio_tracks=[])).audio_kbps == 0


def test_size_uses_trimmed_duration():
    config = ConversionConfig(video_codec="libx265", start_time="20", end_time="80")
    result = estimate_output(config, _meta())
    assert result.size_mb == pytest.approx(5328 * 60 / 8 / 1024)


def test_size_has_one_megabyte_floor():
    config = ConversionConfig(end_time="0.5")
    result = estimate_output(config, _meta())
    assert result.size_mb == 1.0


def test_zero_bitrate_with_known_duration_still_has_minimum_size():
    result = estimate_output(ConversionConfig(container="mp3"), _meta(audio_tracks=[]))
    assert result.total_kbps == 0
    assert result.size_mb == 1.0
