import logging
import threading
from typing import Optional

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

from convq.config.timecode import format_clock
from convq.domain.models import JobStatus, SourceMetadata
from convq.ui.state import JobRow, UIState

logger = logging.getLogger(__name__)

STATUS_STYLES = {
    JobStatus.IDLE: ("·", "dim"),
    JobStatus.QUEUED: ("…", "cyan"),
    JobStatus.RUNNING: ("▶", "yellow"),
    JobStatus.COMPLETED: ("✓", "green"),
    JobStatus.FAILED: ("✗", "red"),
}


def format_percent(percent: Optional[float]) -> str:
    return "--.-%" if percent is None else f"{percent:5.1f}%"


def _sanitize_filename(filename: str, max_len: int = 40) -> str:
    if len(filename) <= max_len:
        return filename
    return filename[: max_len - 1] + "…"


def render_metadata_table(metadata: SourceMetadata, title: str = "Source") -> Table:
    table = Table(title=title, show_header=False, box=None, padding=(0, 1))
    table.add_column("key", style="bold cyan")
    table.add_column("value")
    table.add_row("Duration", format_clock(metadata.duration))
    table.add_row("Bitrate", f"{metadata.bitrate_kbps:.0f} kb/s" if metadata.bitrate_kbps else "-")
    table.add_row("Video", metadata.video_codec or "-")
    table.add_row("Resolution", metadata.resolution or "-")
    table.add_row("Frame rate", f"{metadata.frame_rate:g} fps" if metadata.frame_rate else "-")
    if metadata.video_bitrate_kbps:
        table.add_row("Video bitrate", f"{metadata.video_bitrate_kbps:.0f} kb/s")
    for track in metadata.audio_tracks:
        details = [track.codec]
        if track.channels:
            details.append(f"{track.channels}ch")
        if track.language:
            details.append(track.language)
        if track.bitrate_kbps:
            details.append(f"{track.bitrate_kbps:.0f} kb/s")
        if track.label:
            details.append(f'"{track.label}"')
        table.add_row(f"Audio #{track.index}", " ".join(details))
    return table


class Dashboard:
    """Live job table rendered from UIState on a background refresh thread."""

    def __init__(self, state: UIState, console: Optional[Console] = None, refresh_interval: float = 0.5):
        self.state = state
        self.console = console or Console()
        self.refresh_interval = refresh_interval
        self._live: Optional[Live] = None
        self._refresh_thread: Optional[threading.Thread] = None
        self._stop_refresh = threading.Event()
        self._ui_lock = threading.Lock()

    def _render_row(self, table: Table, row: JobRow):
        icon, style = STATUS_STYLES[row.status]
        if row.status == JobStatus.RUNNING and row.progress_percent is None:
            progress: RenderableType = Text(f"{format_clock(row.elapsed_seconds)} elapsed", style="dim")
        else:
            progress = ProgressBar(total=100, completed=row.progress_percent or 0.0, width=30)

        if row.status == JobStatus.FAILED:
            note = Text((row.error_message or "").splitlines()[0] if row.error_message else "", style="red")
        elif row.log and row.status == JobStatus.RUNNING:
            note = Text(row.log[-1][-60:], style="dim")
        else:
            note = Text("")

        table.add_row(
            Text(icon, style=style),
            _sanitize_filename(row.name),
            progress,
            format_percent(row.progress_percent),
            note,
        )

    def create_display(self) -> RenderableType:
        rows = self.state.snapshot()
        table = Table(expand=True, box=None, padding=(0, 1))
        table.add_column("", width=2)
        table.add_column("File", no_wrap=True)
        table.add_column("Progress", width=32)
        table.add_column("%", justify="right", width=7)
        table.add_column("Last output", no_wrap=True, overflow="ellipsis")
        for row in rows:
            self._render_row(table, row)

        counts = self.state.counts()
        with self.state._lock:
            limit = self.state.max_concurrency
            fault = self.state.last_fault
        summary = (
            f"running {counts[JobStatus.RUNNING]}/{limit}  "
            f"queued {counts[JobStatus.QUEUED]}  "
            f"done {counts[JobStatus.COMPLETED]}  "
            f"failed {counts[JobStatus.FAILED]}"
        )
        parts = [table]
        if fault:
            parts.append(Text(f"System: {fault}", style="bold red"))
        return Panel(Group(*parts), title="convq", subtitle=summary, border_style="blue")

    def _refresh_loop(self):
        while not self._stop_refresh.wait(self.refresh_interval):
            if not self._live:
                continue
            try:
                display = self.create_display()
                with self._ui_lock:
                    self._live.update(display)
            except Exception:
                logger.debug("Dashboard refresh failed", exc_info=True)

    def start(self):
        self._live = Live(self.create_display(), console=self.console, refresh_per_second=4)
        self._live.start()
        self._stop_refresh.clear()
        self._refresh_thread = threading.Thread(target=self._refresh_loop, name="dashboard", daemon=True)
        self._refresh_thread.start()
        return self

    def stop(self):
        self._stop_refresh.set()
        if self._refresh_thread:
            self._refresh_thread.join(timeout=1.0)
        if self._live:
            with self._ui_lock:
                self._live.update(self.create_display())
            self._live.stop()
            self._live = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
