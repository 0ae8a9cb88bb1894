import typer
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from convq.config.loader import load_config
from convq.config.models import AppConfig, ConversionConfig, merge_config
from convq.config.presets import PRESET_NAMES, get_preset, list_presets
from convq.config.rate_control import format_kbps_human
from convq.domain.errors import InvalidJobError, ProbeError
from convq.domain.models import JobStatus
from convq.infrastructure.binaries import resolve_tool
from convq.infrastructure.event_bus import EventBus
from convq.infrastructure.ffprobe import FFprobeAdapter
from convq.infrastructure.logging import setup_logging
from convq.infrastructure.supervisor import ProcessSupervisor
from convq.pipeline.estimator import estimate_output
from convq.pipeline.scheduler import JobScheduler
from convq.ui.dashboard import Dashboard, render_metadata_table
from convq.ui.manager import UIManager
from convq.ui.state import UIState

DEFAULT_CONFIG_PATH = Path("conf/convq.yaml")

app = typer.Typer(help="convq - concurrent ffmpeg conversion queue")


def _load_app_config(config_path: Optional[Path]) -> AppConfig:
    if config_path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return AppConfig()
        config_path = DEFAULT_CONFIG_PATH
    try:
        return load_config(config_path)
    except (FileNotFoundError, ValueError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


def _build_conversion_config(app_config: AppConfig, preset: Optional[str], overrides: Dict[str, Any]) -> ConversionConfig:
    """Preset (or config defaults) with CLI overrides applied on top."""
    try:
        base = get_preset(preset) if preset else app_config.defaults
        updates = {key: value for key, value in overrides.items() if value is not None}
        return merge_config(base, updates) if updates else base.model_copy(deep=True)
    except (KeyError, ValueError) as exc:
        message = exc.args[0] if isinstance(exc, KeyError) and exc.args else exc
        typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


def _prober(app_config: AppConfig) -> FFprobeAdapter:
    general = app_config.general
    binaries_dir = Path(general.binaries_dir) if general.binaries_dir else None
    return FFprobeAdapter(resolve_tool("ffprobe", general.ffprobe_path, binaries_dir))


@app.command()
def convert(
    files: List[Path] = typer.Argument(..., help="Input files to convert"),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Built-in preset id (see `convq presets`)"),
    container: Optional[str] = typer.Option(None, "--container", help="Output container, e.g. mp4, mkv, mp3"),
    video_codec: Optional[str] = typer.Option(None, "--video-codec", help="Video encoder, e.g. libx264, hevc_nvenc"),
    crf: Optional[int] = typer.Option(None, "--crf", help="Constant rate factor for software encoders (0-63)"),
    audio_codec: Optional[str] = typer.Option(None, "--audio-codec", help="Audio encoder or 'copy'"),
    resolution: Optional[str] = typer.Option(None, "--resolution", help="original, 2160p, 1440p, 1080p, 720p, 480p"),
    output_name: Optional[str] = typer.Option(None, "--output-name", "-o", help="Output file name (single input only)"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-j", help="Maximum parallel conversions"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Log file path"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Convert FILES with ffmpeg, running up to N conversions at once."""
    app_config = _load_app_config(config_path)
    general = app_config.general
    if concurrency is not None:
        if concurrency < 1:
            typer.secho("Error: --concurrency must be >= 1", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        general.max_concurrency = concurrency
    if debug:
        general.debug = True
    if output_name and len(files) > 1:
        typer.secho("Error: --output-name requires a single input file", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    conversion_config = _build_conversion_config(app_config, preset, {
        "container": container,
        "video_codec": video_codec,
        "crf": crf,
        "audio_codec": audio_codec,
        "resolution": resolution,
    })

    logger = setup_logging(log_path or Path(general.log_path), debug=general.debug)
    logger.info(f"convq started: files={len(files)}, concurrency={general.max_concurrency}, debug={general.debug}")

    binaries_dir = Path(general.binaries_dir) if general.binaries_dir else None
    bus = EventBus()
    ui_state = UIState(log_lines_per_job=general.log_lines_per_job)
    ui_state.max_concurrency = general.max_concurrency
    manager = UIManager(bus, ui_state, prober=_prober(app_config))
    supervisor = ProcessSupervisor(
        bus,
        diagnostic_lines=general.diagnostic_lines,
        terminate_grace_s=general.terminate_grace_s,
    )
    scheduler = JobScheduler(
        bus,
        supervisor,
        encoder_path=resolve_tool("ffmpeg", general.ffmpeg_path, binaries_dir),
        max_concurrency=general.max_concurrency,
    )

    rejected = 0
    try:
        with Dashboard(ui_state):
            for index, path in enumerate(files, start=1):
                metadata = manager.request_metadata(path)
                if metadata is None:
                    logger.warning(f"Continuing without metadata for {path}: {ui_state.metadata_message}")
                try:
                    scheduler.submit_job(f"job-{index}", path, output_name, conversion_config, metadata)
                except InvalidJobError as exc:
                    rejected += 1
                    logger.error(f"JOB_REJECTED: {path}: {exc.message}")
            scheduler.wait_idle()
    except KeyboardInterrupt:
        scheduler.shutdown(timeout=general.terminate_grace_s * 2)
        typer.secho("\n✓ Conversion stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)
    finally:
        manager.close()

    jobs = scheduler.jobs()
    failed = [job for job in jobs if job.status == JobStatus.FAILED]
    for job in jobs:
        if job.status == JobStatus.COMPLETED:
            typer.secho(f"✓ {job.input_path.name} -> {job.output_path}", fg=typer.colors.GREEN)
        elif job.status == JobStatus.FAILED:
            reason = (job.error_message or "failed").splitlines()[0]
            typer.secho(f"✗ {job.input_path.name}: {reason}", fg=typer.colors.RED, err=True)
    if rejected:
        typer.secho(f"{rejected} file(s) rejected, see {log_path or general.log_path}", fg=typer.colors.RED, err=True)
    logger.info(f"convq finished: completed={len(jobs) - len(failed)}, failed={len(failed)}, rejected={rejected}")
    if failed or rejected:
        raise typer.Exit(code=1)


@app.command()
def probe(
    file: Path = typer.Argument(..., help="Media file to inspect"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """Print source metadata reported by ffprobe."""
    app_config = _load_app_config(config_path)
    try:
        metadata = _prober(app_config).probe(file)
    except ProbeError as exc:
        typer.secho(f"Error: {exc.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    Console().print(render_metadata_table(metadata, title=file.name))


@app.command()
def estimate(
    file: Path = typer.Argument(..., help="Media file to estimate the output for"),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Built-in preset id"),
    container: Optional[str] = typer.Option(None, "--container", help="Output container"),
    video_codec: Optional[str] = typer.Option(None, "--video-codec", help="Video encoder"),
    crf: Optional[int] = typer.Option(None, "--crf", help="Constant rate factor (0-63)"),
    audio_codec: Optional[str] = typer.Option(None, "--audio-codec", help="Audio encoder or 'copy'"),
    resolution: Optional[str] = typer.Option(None, "--resolution", help="Target resolution"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """Estimate output bitrate and size without converting."""
    app_config = _load_app_config(config_path)
    conversion_config = _build_conversion_config(app_config, preset, {
        "container": container,
        "video_codec": video_codec,
        "crf": crf,
        "audio_codec": audio_codec,
        "resolution": resolution,
    })
    try:
        metadata = _prober(app_config).probe(file)
    except ProbeError as exc:
        typer.secho(f"Warning: {exc.message} (estimating without source metadata)", fg=typer.colors.YELLOW, err=True)
        metadata = None

    result = estimate_output(conversion_config, metadata)
    table = Table(title=f"Estimate: {file.name}", show_header=False, box=None, padding=(0, 1))
    table.add_column("key", style="bold cyan")
    table.add_column("value")
    table.add_row("Video", format_kbps_human(result.video_kbps))
    table.add_row("Audio", format_kbps_human(result.audio_kbps))
    table.add_row("Total", format_kbps_human(result.total_kbps))
    table.add_row("Size", f"{result.size_mb:.1f} MB" if result.size_mb is not None else "unknown (no duration)")
    Console().print(table)


@app.command()
def presets():
    """List built-in conversion presets."""
    table = Table(title="Presets")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Container")
    table.add_column("Video")
    table.add_column("Audio")
    for preset_id in list_presets():
        config = get_preset(preset_id)
        table.add_row(
            preset_id,
            PRESET_NAMES.get(preset_id, preset_id),
            config.container,
            "-" if config.is_audio_only else config.video_codec,
            config.audio_codec,
        )
    Console().print(table)


if __name__ == "__main__":
    app()
