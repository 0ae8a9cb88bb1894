import pytest
from pathlib import Path
from convq.config.models import ConversionConfig, MetadataConfig
from convq.domain.models import AudioTrack, SourceMetadata
from convq.infrastructure.ffmpeg import (
    build_output_path,
    compile_ffmpeg_args,
    effective_duration,
    extract_quality_flag,
    extract_quality_value,
    infer_encoder_family,
    nvenc_cq_for_quality,
    quality_from_nvenc_cq,
)

IN = Path("/videos/in.mov")
OUT = Path("/videos/in.mov_converted.mp4")


def _value_after(args, flag):
    return args[args.index(flag) + 1]


def test_default_args_order():
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig())
    assert args == [
        "-i", str(IN),
        "-c:v", "libx264",
        "-crf", "23",
        "-preset", "medium",
        "-c:a", "aac",
        "-b:a", "128k",
        "-map_metadata", "0",
        "-movflags", "use_metadata_tags",
        "-y", str(OUT),
    ]


def test_trim_emits_input_seek_and_duration():
    config = ConversionConfig(start_time="00:00:10", end_time="00:00:25.5")
    args = compile_ffmpeg_args(IN, OUT, config)
    assert args[:6] == ["-ss", "10", "-i", str(IN), "-t", "15.5"]


def test_end_only_trim_has_no_seek():
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(end_time="30"))
    assert "-ss" not in args
    assert args[:4] == ["-i", str(IN), "-t", "30"]


def test_bitrate_mode():
    config = ConversionConfig(video_bitrate_mode="bitrate", video_bitrate="2.5M")
    args = compile_ffmpeg_args(IN, OUT, config)
    assert _value_after(args, "-b:v") == "2500k"
    assert "-crf" not in args


@pytest.mark.parametrize(
    ("codec", "expected"),
    [
        ("h264_nvenc", ["-rc:v", "vbr", "-cq:v", "27"]),
        ("hevc_qsv", ["-global_quality", "27"]),
        ("hevc_videotoolbox", ["-q:v", "50"]),
    ],
)
def test_hardware_rate_control(codec, expected):
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(video_codec=codec, quality=50))
    start = args.index(expected[0])
    assert args[start:start + len(expected)] == expected


def test_nvenc_mapping_clamped():
    assert nvenc_cq_for_quality(100) == 2
    assert nvenc_cq_for_quality(1) == 51
    assert nvenc_cq_for_quality(51) == 27
    assert 1 <= nvenc_cq_for_quality(100) <= 51


def test_encoder_family():
    assert infer_encoder_family("hevc_nvenc") == "nvenc"
    assert infer_encoder_family("h264_qsv") == "qsv"
    assert infer_encoder_family("h264_videotoolbox") == "videotoolbox"
    assert infer_encoder_family("libsvtav1") == "software"


@pytest.mark.parametrize("crf", [0, 18, 23, 35, 51, 63])
def test_crf_round_trip(crf):
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(crf=crf))
    assert extract_quality_flag(args) == "-crf"
    assert extract_quality_value(args) == crf


@pytest.mark.parametrize("quality", [2, 30, 50, 74, 100])
def test_nvenc_quality_round_trip(quality):
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(video_codec="hevc_nvenc", quality=quality))
    assert quality_from_nvenc_cq(extract_quality_value(args)) == quality


def test_videotoolbox_quality_round_trip():
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(video_codec="h264_videotoolbox", quality=73))
    assert extract_quality_flag(args) == "-q:v"
    assert extract_quality_value(args) == 73


def test_extract_quality_value_absent():
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(video_bitrate_mode="bitrate"))
    assert extract_quality_value(args) is None


def test_scale_filter_for_named_resolution():
    config = ConversionConfig(resolution="720p", scaling_algorithm="lanczos")
    args = compile_ffmpeg_args(IN, OUT, config)
    assert _value_after(args, "-vf") == "scale=-2:720:flags=lanczos"


def test_scale_filter_custom_and_nearest():
    config = ConversionConfig(resolution="custom", custom_width=640, custom_height=-1, scaling_algorithm="nearest")
    args = compile_ffmpeg_args(IN, OUT, config)
    assert _value_after(args, "-vf") == "scale=640:-2:flags=neighbor"


def test_scale_filter_skipped_when_source_matches(sample_metadata):
    config = ConversionConfig(resolution="1080p")
    args = compile_ffmpeg_args(IN, OUT, config, sample_metadata)
    assert "-vf" not in args


def test_fps_flag_skipped_when_equal_to_source(sample_metadata):
    assert "-r" not in compile_ffmpeg_args(IN, OUT, ConversionConfig(fps="29.97"), sample_metadata)
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(fps="24"), sample_metadata)
    assert _value_after(args, "-r") == "24"


def test_audio_track_mapping_dedupes_in_order():
    config = ConversionConfig(selected_audio_tracks=[2, 1, 2])
    args = compile_ffmpeg_args(IN, OUT, config)
    maps = [args[i + 1] for i, a in enumerate(args) if a == "-map"]
    assert maps == ["0:v:0", "0:2", "0:1"]
    assert args.index("-map") < args.index("-c:a")


def test_audio_only_container():
    config = ConversionConfig(container="mp3", audio_bitrate="192", selected_audio_tracks=[3])
    args = compile_ffmpeg_args(IN, Path("/videos/in.mp3"), config)
    assert "-vn" in args
    assert "-c:v" not in args
    assert "-crf" not in args
    maps = [args[i + 1] for i, a in enumerate(args) if a == "-map"]
    assert maps == ["0:3"]
    assert _value_after(args, "-c:a") == "libmp3lame"
    assert _value_after(args, "-b:a") == "192k"


@pytest.mark.parametrize("codec", ["flac", "alac", "pcm_s16le"])
def test_lossless_audio_has_no_bitrate(codec):
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(container="mkv", audio_codec=codec))
    assert "-b:a" not in args


def test_audio_copy_emits_only_codec():
    config = ConversionConfig(audio_codec="copy", audio_channels="mono", audio_volume=150, audio_normalize=True)
    args = compile_ffmpeg_args(IN, OUT, config)
    assert _value_after(args, "-c:a") == "copy"
    for flag in ("-b:a", "-ac", "-af"):
        assert flag not in args


def test_audio_channels_and_filters():
    config = ConversionConfig(audio_channels="mono", audio_volume=150, audio_normalize=True)
    args = compile_ffmpeg_args(IN, OUT, config)
    assert _value_after(args, "-ac") == "1"
    assert _value_after(args, "-af") == "volume=1.5,loudnorm=I=-16:TP=-1.5:LRA=11"


def test_stereo_skipped_when_source_is_stereo(sample_metadata):
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(audio_channels="stereo"), sample_metadata)
    assert "-ac" not in args


def test_channels_compared_against_selected_track():
    metadata = SourceMetadata(audio_tracks=[
        AudioTrack(index=1, codec="aac", channels=2),
        AudioTrack(index=2, codec="ac3", channels=6),
    ])
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(audio_channels="stereo", selected_audio_tracks=[2]), metadata)
    assert _value_after(args, "-ac") == "2"


def test_metadata_clean():
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(metadata=MetadataConfig(mode="clean")))
    assert _value_after(args, "-map_metadata") == "-1"
    assert "-metadata" not in args
    assert "-movflags" not in args


def test_metadata_replace():
    meta = MetadataConfig(mode="replace", title="Trip", artist="", date="2024")
    args = compile_ffmpeg_args(IN, Path("/videos/out.mkv"), ConversionConfig(container="mkv", metadata=meta))
    assert _value_after(args, "-map_metadata") == "-1"
    values = [args[i + 1] for i, a in enumerate(args) if a == "-metadata"]
    assert values == ["title=Trip", "date=2024"]


def test_preserve_without_movflags_for_mkv():
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(container="mkv"))
    assert _value_after(args, "-map_metadata") == "0"
    assert "-movflags" not in args


def test_output_is_last():
    args = compile_ffmpeg_args(IN, OUT, ConversionConfig(selected_audio_tracks=[1]))
    assert args[-2:] == ["-y", str(OUT)]


def test_compile_is_deterministic(sample_metadata):
    config = ConversionConfig(resolution="720p", selected_audio_tracks=[1], audio_channels="mono")
    assert compile_ffmpeg_args(IN, OUT, config, sample_metadata) == compile_ffmpeg_args(IN, OUT, config, sample_metadata)


def test_build_output_path():
    src = Path("/media/holiday.mov")
    assert build_output_path(src, "mp4") == Path("/media/holiday.mov_converted.mp4")
    assert build_output_path(src, "mp4", "  ") == Path("/media/holiday.mov_converted.mp4")
    assert build_output_path(src, "mkv", "final") == Path("/media/final.mkv")
    assert build_output_path(src, "mkv", "final.webm") == Path("/media/final.webm")


def test_effective_duration(sample_metadata):
    assert effective_duration(ConversionConfig(), sample_metadata) == 120.0
    assert effective_duration(ConversionConfig(start_time="20"), sample_metadata) == 100.0
    assert effective_duration(ConversionConfig(start_time="20", end_time="50"), sample_metadata) == 30.0
    assert effective_duration(ConversionConfig(end_time="500"), sample_metadata) == 120.0
    assert effective_duration(ConversionConfig(end_time="45"), None) == 45.0
    assert effective_duration(ConversionConfig(), None) is None
    assert effective_duration(ConversionConfig(start_time="200"), sample_metadata) is None
